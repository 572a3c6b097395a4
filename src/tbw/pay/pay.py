# src/tbw/pay/pay.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from tbw.config import TbwConfig
from tbw.crypto.keys import public_key_from_passphrase
from tbw.errors import (
    BroadcastError,
    ConfigurationError,
    InsufficientBalanceError,
    NotFoundError,
    SignatureMismatchError,
)
from tbw.host import BroadcastResult, ChainHost, DelegateWallet
from tbw.ledger.settings import Settings, SettingsStore
from tbw.ledger.store import HistoryStore
from tbw.ledger.types import UNSETTLED
from tbw.log_events import log_event
from tbw.pay.distribution import Paytable
from tbw.pay.fees import chunk, chunk_payouts, count_recipients, plan_batches
from tbw.pay.reserve import apply_reserve
from tbw.pay.worker import PaytableTask, compute_paytable
from tbw.runtime import metrics

Json = Dict[str, Any]

log = logging.getLogger("tbw.pay")


@dataclass
class PayResult:
    settlements: List[str] = field(default_factory=list)
    total: int = 0
    fees: int = 0
    max_height: int = 0

    def to_dict(self) -> Json:
        return {
            "settlements": list(self.settlements),
            "total": str(self.total),
            "fees": str(self.fees),
            "max_height": int(self.max_height),
        }


class Payer:
    """Runs payout cycles, replays and unpaid previews against a ChainHost.

    Paytables are computed by a spawned PaytableTask unless
    `use_worker_process` is False, in which case the same computation runs in
    a thread of this process.
    """

    def __init__(
        self,
        *,
        cfg: TbwConfig,
        host: ChainHost,
        history: HistoryStore,
        settings: SettingsStore,
        use_worker_process: bool = True,
    ) -> None:
        self.cfg = cfg
        self.host = host
        self.history = history
        self.settings = settings
        self.use_worker_process = bool(use_worker_process)
        # One pay or replay cycle at a time.
        self._lock = asyncio.Lock()

    # ---- delegate checks ----

    def _delegate(self) -> Tuple[Settings, DelegateWallet]:
        settings = self.settings.read()
        if not settings.passphrase:
            raise ConfigurationError("no delegate registered")

        wallet = self.host.find_delegate_wallet(public_key_from_passphrase(settings.passphrase))
        if wallet is None or not wallet.is_delegate:
            raise ConfigurationError("no delegate registered")

        if wallet.has_second_signature:
            if not settings.second_passphrase:
                raise SignatureMismatchError("second passphrase not provided")
            if public_key_from_passphrase(settings.second_passphrase) != wallet.second_public_key:
                raise SignatureMismatchError("second passphrase does not match the delegate")
        return settings, wallet

    # ---- paytable ----

    async def compute_paytable(self, *, print_logs: bool = False) -> Paytable:
        if self.use_worker_process:
            task = PaytableTask(
                db_path=self.cfg.db_path,
                settings_path=self.cfg.settings_path,
                active_delegates=self.cfg.active_delegates,
                timeout_s=self.cfg.worker_timeout_s,
                print_logs=print_logs,
            )
            return await task.run()

        def emit(msg: str) -> None:
            if print_logs:
                log.debug(msg)

        return await asyncio.to_thread(
            compute_paytable,
            db_path=self.cfg.db_path,
            settings_path=self.cfg.settings_path,
            active_delegates=self.cfg.active_delegates,
            emit=emit,
        )

    async def unpaid(self, username: Optional[str] = None) -> Paytable:
        if username:
            settings = self.settings.read()
            wallet = None
            if settings.passphrase:
                wallet = self.host.find_delegate_wallet(public_key_from_passphrase(settings.passphrase))
            if wallet is None or wallet.username != username:
                raise NotFoundError(f"{username} is not the configured delegate")
        return await self.compute_paytable()

    # ---- pay ----

    async def pay(self) -> PayResult:
        async with self._lock:
            return await self._pay()

    async def _pay(self) -> PayResult:
        settings, wallet = self._delegate()
        paytable = await self.compute_paytable(print_logs=True)

        if not paytable.entries:
            log_event(log, "pay_nothing_due", max_height=paytable.max_height)
            return PayResult(max_height=paytable.max_height)

        milestone = self.host.milestone_config()
        n = max(1, int(milestone.max_recipients_per_transfer))
        plan = plan_batches(
            count_recipients(paytable.entries, settings.reserve),
            memo=settings.memo,
            has_second_signature=wallet.has_second_signature,
            extra_fee=settings.extra_fee,
            milestone=milestone,
        )

        table = apply_reserve(
            paytable.entries,
            settings.reserve,
            balance=wallet.balance,
            total_fees=plan.total_fee,
            total_to_pay=paytable.total,
        )

        nonce = int(wallet.nonce) + 1
        transactions: List[Json] = []
        result = PayResult(max_height=paytable.max_height)
        for payouts in chunk_payouts(table, n):
            fee = plan.fee_for(len(payouts), n)
            tx = self.host.sign_and_build_transfer(
                payouts,
                fee=fee,
                memo=settings.memo,
                nonce=nonce,
                passphrase=settings.passphrase,
                second_passphrase=settings.second_passphrase if wallet.has_second_signature else None,
            )
            nonce += 1
            self.history.add(paytable.max_height, tx)
            transactions.append(tx)
            result.settlements.append(str(tx["id"]))
            result.total += sum(v for _, v in payouts)
            result.fees += fee

        metrics.inc_counter("pay_cycles")
        metrics.inc_counter("settlements_created", len(transactions))
        metrics.set_gauge("last_paid_height", paytable.max_height)
        log_event(
            log,
            "pay_built",
            settlements=len(transactions),
            total=str(result.total),
            fees=str(result.fees),
            max_height=paytable.max_height,
        )

        await self.broadcast(transactions)
        return result

    # ---- replay ----

    async def replay(self, tx_id: str) -> str:
        """Re-sign a stored settlement with a fresh nonce and broadcast it.

        Recipients, amounts, fee and memo come from the stored transfer. The
        new settlement keeps the original pay height; the old one is REPAID.
        """
        async with self._lock:
            return await self._replay(str(tx_id))

    async def _replay(self, tx_id: str) -> str:
        settings, wallet = self._delegate()

        old = self.history.get(tx_id)
        if old is None or old.status not in UNSETTLED:
            raise NotFoundError("no unconfirmed transaction with this id", {"id": str(tx_id)})

        fee = int(str(old.tx.get("fee") or "0"))
        if int(wallet.balance) - fee < old.total_amount:
            raise InsufficientBalanceError(
                "insufficient balance to replay",
                {"balance": str(wallet.balance), "fee": str(fee), "amount": str(old.total_amount)},
            )

        recipients = [(str(t["recipientId"]), int(str(t["amount"]))) for t in old.recipients]
        tx = self.host.sign_and_build_transfer(
            recipients,
            fee=fee,
            memo=str(old.tx.get("memo") or ""),
            nonce=int(wallet.nonce) + 1,
            passphrase=settings.passphrase,
            second_passphrase=settings.second_passphrase if wallet.has_second_signature else None,
        )
        if str(tx["id"]) == old.id:
            # Nonce did not move since the first attempt: this is the same transfer.
            log_event(log, "settlement_rebroadcast", id=old.id, height=old.height)
            await self.broadcast([old.tx])
            return old.id

        self.history.add(old.height, tx)
        self.history.set_repaid(old.id)
        metrics.inc_counter("settlements_repaid")
        log_event(log, "settlement_replayed", old_id=old.id, new_id=str(tx["id"]), height=old.height)

        await self.broadcast([tx])
        return str(tx["id"])

    # ---- broadcast ----

    async def broadcast(self, transactions: Sequence[Json]) -> None:
        """Submit transfers in chunks of max_tx_per_request, pausing between chunks."""
        groups = chunk(list(transactions), self.cfg.max_tx_per_request)
        for i, group in enumerate(groups):
            if i > 0 and self.cfg.broadcast_delay_ms > 0:
                await asyncio.sleep(self.cfg.broadcast_delay_ms / 1000.0)
            try:
                res = self.host.broadcast(group)
            except Exception as e:
                err = BroadcastError("broadcast failed", {"error": f"{type(e).__name__}: {e}"})
                res = BroadcastResult(errors={str(tx["id"]): err.message for tx in group})
                log_event(log, "broadcast_failed", level=logging.ERROR, error=err.to_dict(), count=len(group))
            self._record(res)

    def _record(self, res: BroadcastResult) -> None:
        for tx_id in res.accepted:
            self.history.set_accepted(tx_id)
            metrics.inc_counter("settlements_accepted")
            log.debug("transaction %s accepted", tx_id)
        for tx_id in res.rejected:
            self.history.set_error(tx_id)
            metrics.inc_counter("settlements_error")
            log_event(log, "transaction_rejected", level=logging.WARNING, id=tx_id)
        for tx_id, reason in res.errors.items():
            self.history.set_error(tx_id)
            metrics.inc_counter("settlements_error")
            log_event(log, "transaction_error", level=logging.ERROR, id=tx_id, reason=str(reason))
