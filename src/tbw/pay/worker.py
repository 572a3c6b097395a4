# src/tbw/pay/worker.py
from __future__ import annotations

"""Paytable computation and its background process.

compute_paytable() reads the unpaid range of the ledger, aggregates it per
completed round, applies the configured mode and fidelity and distributes
every PayBlock. PaytableTask runs it in a spawned process so that a large
unpaid range never stalls block ingestion.

Queue messages (child -> parent):
  ("log", str)
  ("result", {"paytable": {addr: str}, "total": str, "max_height": int})
  ("error", kind, message)
Exactly one terminal message is sent.
"""

import asyncio
import logging
import multiprocessing as mp
import queue as queue_mod
import time
from typing import Any, Callable, Optional

from tbw.errors import TbwError, WorkerError, error_from_kind
from tbw.ledger.settings import SettingsStore
from tbw.ledger.store import LedgerStore
from tbw.log_events import log_event
from tbw.pay.distribution import Emit, Paytable, distribute_block
from tbw.pay.modes import mode_strategy
from tbw.pay.rounds import RoundCalculator, aggregate_rounds
from tbw.runtime.sqlite_db import SqliteDB

log = logging.getLogger("tbw.pay")


def compute_paytable(
    *,
    db_path: str,
    settings_path: str,
    active_delegates: int,
    emit: Emit = None,
) -> Paytable:
    say = emit or (lambda _msg: None)
    settings = SettingsStore(settings_path).read()
    ledger = LedgerStore(db=SqliteDB(path=db_path))
    rounds = RoundCalculator(active_delegates)
    strategy = mode_strategy(settings.mode, round_size=rounds.active_delegates)

    paytable = Paytable()

    last_paid = ledger.last_paid_height()
    start_round = rounds.round_of(last_paid) + 1
    current = rounds.round_info(ledger.last_block_height())
    end_round = current.round - 1
    end_height = current.round_height - 1

    say(f"last paid height {last_paid}; paying rounds {start_round}..{end_round}")
    if end_round < start_round or end_height < last_paid + 1:
        return paytable

    blocks = ledger.range_blocks(last_paid + 1, end_height)
    votes = ledger.range_votes(last_paid + 1, end_height)
    grouped = aggregate_rounds(blocks, votes, rounds, start_round=start_round, end_round=end_round)

    for r in sorted(grouped):
        for pb in strategy.handle_round(grouped[r], min_cap=settings.min_cap, max_cap=settings.max_cap):
            history = None
            if settings.fidelity:
                history = ledger.weights_by_address(pb.height - settings.fidelity, pb.height - 1)
            distribute_block(paytable, pb, settings=settings, strategy=strategy, history=history, emit=say)

    say(f"total to pay {paytable.total} up to height {paytable.max_height}")
    return paytable


def _worker_main(q: Any, db_path: str, settings_path: str, active_delegates: int) -> None:
    def emit(msg: str) -> None:
        q.put(("log", str(msg)))

    try:
        paytable = compute_paytable(
            db_path=db_path, settings_path=settings_path, active_delegates=active_delegates, emit=emit
        )
    except TbwError as e:
        q.put(("error", e.kind, e.message))
        return
    except Exception as e:
        q.put(("error", WorkerError.kind, f"{type(e).__name__}: {e}"))
        return
    q.put(("result", paytable.to_wire()))


class PaytableTask:
    """One-shot paytable computation in a spawned process.

    The owner awaits run(); log lines are forwarded to `on_log` (or logged at
    DEBUG when `print_logs` is set).
    """

    def __init__(
        self,
        *,
        db_path: str,
        settings_path: str,
        active_delegates: int,
        timeout_s: float = 600.0,
        print_logs: bool = False,
        on_log: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.db_path = str(db_path)
        self.settings_path = str(settings_path)
        self.active_delegates = int(active_delegates)
        self.timeout_s = float(timeout_s)
        self.print_logs = bool(print_logs)
        self.on_log = on_log
        self._ctx = mp.get_context("spawn")
        self._queue: Any = None
        self._proc: Any = None

    def start(self) -> None:
        self._queue = self._ctx.Queue()
        self._proc = self._ctx.Process(
            target=_worker_main,
            args=(self._queue, self.db_path, self.settings_path, self.active_delegates),
            daemon=True,
        )
        self._proc.start()

    def _handle(self, msg: tuple) -> Optional[Paytable]:
        tag = msg[0]
        if tag == "log":
            if self.on_log is not None:
                self.on_log(str(msg[1]))
            elif self.print_logs:
                log.debug(str(msg[1]))
            return None
        if tag == "result":
            return Paytable.from_wire(msg[1])
        if tag == "error":
            raise error_from_kind(str(msg[1]), str(msg[2]))
        raise WorkerError(f"unexpected worker message: {tag!r}")

    def wait(self) -> Paytable:
        if self._proc is None:
            raise WorkerError("paytable task was not started")
        deadline = time.monotonic() + self.timeout_s
        try:
            while True:
                try:
                    msg = self._queue.get(timeout=0.2)
                except queue_mod.Empty:
                    if not self._proc.is_alive():
                        # The process may have exited right after its last put().
                        try:
                            msg = self._queue.get(timeout=0.5)
                        except queue_mod.Empty:
                            raise WorkerError(
                                "paytable worker exited without a result", {"exitcode": self._proc.exitcode}
                            ) from None
                    elif time.monotonic() >= deadline:
                        raise WorkerError("paytable worker timed out", {"timeout_s": self.timeout_s})
                    else:
                        continue
                result = self._handle(msg)
                if result is not None:
                    return result
        finally:
            self._stop()

    def _stop(self) -> None:
        proc = self._proc
        if proc is None:
            return
        proc.join(timeout=1.0)
        if proc.is_alive():
            proc.terminate()
            proc.join(timeout=1.0)
            log_event(log, "paytable_worker_terminated", level=logging.WARNING, pid=proc.pid)

    async def run(self) -> Paytable:
        self.start()
        return await asyncio.to_thread(self.wait)
