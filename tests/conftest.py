from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

import pytest

# Ensure local "src/" takes precedence over any globally-installed "tbw" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from tbw.config import TbwConfig  # noqa: E402
from tbw.host import BlockEvent, DelegateWallet, MemoryChainHost  # noqa: E402
from tbw.ledger.constants import COIN  # noqa: E402
from tbw.ledger.settings import Settings, SettingsStore  # noqa: E402
from tbw.ledger.store import HistoryStore, LedgerStore  # noqa: E402
from tbw.pay.fees import MilestoneConfig  # noqa: E402
from tbw.pay.pay import Payer  # noqa: E402
from tbw.pay.rounds import RoundCalculator  # noqa: E402
from tbw.runtime import metrics  # noqa: E402
from tbw.runtime.block_handler import BlockEventHandler  # noqa: E402
from tbw.runtime.sqlite_db import SqliteDB  # noqa: E402

DELEGATE_PASSPHRASE = "delegate secret words"
VOTER_A = "D" + "a" * 33
VOTER_B = "D" + "b" * 33


@dataclass
class World:
    """A delegate on an in-memory chain with rounds of three blocks."""

    cfg: TbwConfig
    host: MemoryChainHost
    wallet: DelegateWallet
    ledger: LedgerStore
    history: HistoryStore
    settings: SettingsStore
    handler: BlockEventHandler
    payer: Payer

    def configure(self, **fields) -> Settings:
        base: Dict = {"passphrase": DELEGATE_PASSPHRASE, "sharing": 50}
        base.update(fields)
        s = Settings(**base)
        self.settings.write(s)
        return s

    def apply(self, height: int, *, generated: bool = False, reward: int = 10 * COIN, fees: int = COIN) -> None:
        self.host.apply_block(
            BlockEvent(
                height=height,
                generator_public_key=self.wallet.public_key if generated else "f" * 64,
                reward=reward,
                fees=fees,
                timestamp=1_700_000_000 + height,
            )
        )

    def apply_range(self, start: int, end: int, *, generated_at=(2, 5)) -> None:
        for h in range(start, end + 1):
            self.apply(h, generated=h in generated_at)


@pytest.fixture(autouse=True)
def _fresh_metrics():
    metrics.reset()
    yield


@pytest.fixture
def world(tmp_path: Path) -> World:
    cfg = TbwConfig(
        mode="dev",
        data_dir=str(tmp_path),
        socket_path=str(tmp_path / "tbw.sock"),
        active_delegates=3,
        max_tx_per_request=1,
        broadcast_delay_ms=0,
        worker_timeout_s=60.0,
        log_level="INFO",
    )
    host = MemoryChainHost(milestone=MilestoneConfig(max_recipients_per_transfer=2, min_fee_rate=1, addon_bytes=0))
    wallet = host.register_delegate(passphrase=DELEGATE_PASSPHRASE, username="alice", balance=1_000 * COIN)
    host.set_voters("alice", {VOTER_A: 100 * COIN, VOTER_B: 300 * COIN})

    db = SqliteDB(path=cfg.db_path)
    ledger = LedgerStore(db=db)
    history = HistoryStore(db=db)
    settings = SettingsStore(cfg.settings_path)
    handler = BlockEventHandler(
        host=host, ledger=ledger, history=history, settings=settings, rounds=RoundCalculator(cfg.active_delegates)
    )
    handler.subscribe()
    payer = Payer(cfg=cfg, host=host, history=history, settings=settings, use_worker_process=False)

    w = World(
        cfg=cfg,
        host=host,
        wallet=wallet,
        ledger=ledger,
        history=history,
        settings=settings,
        handler=handler,
        payer=payer,
    )
    w.configure()
    return w
