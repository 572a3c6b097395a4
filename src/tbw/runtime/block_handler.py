# src/tbw/runtime/block_handler.py
from __future__ import annotations

import logging
from typing import Optional

from tbw.host import BlockEvent, ChainHost, DelegateWallet
from tbw.ledger.settings import SettingsStore
from tbw.ledger.store import HistoryStore, LedgerStore
from tbw.log_events import log_event
from tbw.pay.rounds import RoundCalculator
from tbw.runtime import metrics

log = logging.getLogger("tbw.blocks")


class BlockEventHandler:
    """Keeps the ledger and settlement history in step with the host chain.

    subscribe() hands on_block_applied / on_block_reverted to the host's
    block events.
    rollback() is the operator-driven reorg: it halts the host's block queue,
    rewinds the host and the ledger, reopens settlements confirmed in the
    removed range and restarts the host.
    """

    def __init__(
        self,
        *,
        host: ChainHost,
        ledger: LedgerStore,
        history: HistoryStore,
        settings: SettingsStore,
        rounds: RoundCalculator,
    ) -> None:
        self.host = host
        self.ledger = ledger
        self.history = history
        self.settings = settings
        self.rounds = rounds

    def subscribe(self) -> None:
        self.host.subscribe(self.on_block_applied, self.on_block_reverted)

    def delegate(self) -> Optional[DelegateWallet]:
        public_key = self.settings.delegate_public_key()
        if not public_key:
            return None
        wallet = self.host.find_delegate_wallet(public_key)
        if wallet is None or not wallet.is_delegate:
            return None
        return wallet

    def confirm_forged(self) -> int:
        unconfirmed = self.history.not_confirmed()
        if not unconfirmed:
            return 0
        forged = self.host.forged_transactions([s.id for s in unconfirmed])
        for tx_id, height in forged.items():
            self.history.set_confirmed(tx_id, int(height))
            metrics.inc_counter("settlements_confirmed")
            log_event(log, "settlement_confirmed", id=tx_id, height=int(height))
        return len(forged)

    def on_block_applied(self, event: BlockEvent) -> int:
        """Record the delegate's voters at `event.height`.

        Returns the number of voter rows written.
        """
        self.confirm_forged()

        wallet = self.delegate()
        if wallet is None:
            log.debug("no delegate configured; block %s ignored", event.height)
            return 0

        voters = self.host.voters_with_balance(wallet.username)
        if not voters:
            return 0

        is_generated = wallet.public_key == event.generator_public_key
        reward = 0
        fees = 0
        if is_generated:
            reward = int(event.reward) - sum(int(v) for v in event.donations.values())
            fees = int(event.fees) - int(event.burned_fees or 0)

        written = self.ledger.append_votes(
            height=event.height,
            round=self.rounds.round_of(event.height),
            reward=reward,
            fees=fees,
            is_generated=is_generated,
            voters=voters.items(),
            timestamp=event.timestamp,
        )
        metrics.inc_counter("blocks_applied")
        metrics.set_gauge("ledger_last_height", event.height)
        if is_generated:
            log_event(
                log,
                "block_weight_recorded",
                username=wallet.username,
                height=event.height,
                reward=str(reward),
                fees=str(fees),
                voters=written,
            )
        return written

    def on_block_reverted(self, height: int) -> int:
        """Drop ledger rows >= height and reopen settlements confirmed there."""
        self.ledger.delete_from(height)
        reopened = self.history.reopen_from_height(height)
        metrics.inc_counter("blocks_reverted")
        if reopened:
            metrics.inc_counter("settlements_reopened", reopened)
        log_event(log, "block_reverted", height=int(height), reopened=reopened)
        return reopened

    def rollback(self, height: int) -> int:
        """Remove blocks >= `height` from host and ledger.

        The host resumes from `height - 1` and applies `height` onwards again.
        Errors propagate to the caller.
        """
        h = int(height)
        log_event(log, "rollback_start", level=logging.WARNING, height=h)
        self.host.stop_block_queue()
        self.host.rollback_to(h)
        reopened = self.on_block_reverted(h)
        metrics.inc_counter("rollbacks")
        self.host.restart()
        log_event(log, "rollback_done", level=logging.WARNING, height=h, reopened=reopened)
        return reopened

    def reconcile_with_host(self) -> Optional[int]:
        """Bring host and ledger heights back in line at startup.

        A ledger behind the host makes the host rewind so the missing blocks
        are applied again; a ledger ahead of the host is trimmed. Returns the
        height that was rewound to, or None when already in step.
        """
        ledger_top = self.ledger.last_block_height()
        host_top = self.host.last_height()

        if 0 < ledger_top < host_top:
            log_event(
                log,
                "ledger_behind_host",
                level=logging.WARNING,
                ledger_height=ledger_top,
                host_height=host_top,
                removing=host_top - ledger_top,
            )
            self.host.rollback_to(ledger_top + 1)
            return ledger_top

        if ledger_top > host_top:
            log_event(log, "ledger_ahead_of_host", level=logging.WARNING, ledger_height=ledger_top, host_height=host_top)
            self.on_block_reverted(host_top + 1)
            return host_top

        return None
