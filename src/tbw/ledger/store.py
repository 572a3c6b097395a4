# src/tbw/ledger/store.py
from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Tuple

from tbw.errors import PersistenceError, SettlementStateError
from tbw.ledger.types import (
    TRANSITIONS,
    UNSETTLED,
    BlockRecord,
    Settlement,
    SettlementStatus,
    VoteRecord,
)
from tbw.log_events import log_event
from tbw.runtime.sqlite_db import SqliteDB, _canon_json

if TYPE_CHECKING:
    from tbw.pay.rounds import RoundCalculator

log = logging.getLogger("tbw.ledger")

_WATERMARK_KEY = "last_paid_height"


def _now_s() -> int:
    return int(time.time())


def _read_watermark(con: sqlite3.Connection) -> int:
    row = con.execute("SELECT value FROM meta WHERE key=? LIMIT 1;", (_WATERMARK_KEY,)).fetchone()
    if row is None:
        return 0
    try:
        return int(str(row["value"]))
    except ValueError:
        return 0


def _write_watermark(con: sqlite3.Connection, height: int) -> None:
    con.execute(
        """
        INSERT INTO meta(key, value) VALUES(?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value;
        """,
        (_WATERMARK_KEY, str(int(height))),
    )


def _range_clause(start: int, end: Optional[int]) -> Tuple[str, tuple]:
    if end is None:
        return "height >= ?", (int(start),)
    return "height >= ? AND height <= ?", (int(start), int(end))


class LedgerStore:
    """Append-only per-block voter weights and block rewards.

    Tables:
      blocks(height PRIMARY KEY, round, reward, fees)
      balances(height, round, address, weight, timestamp; PRIMARY KEY(height, address))

    Every mutation runs inside one SQLite write transaction so a height never
    ends up with a block row but without its voter rows, or the reverse.
    """

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    def append_votes(
        self,
        *,
        height: int,
        round: int,
        reward: int,
        fees: int,
        is_generated: bool,
        voters: Iterable[Tuple[str, int]],
        timestamp: int = 0,
    ) -> int:
        """Record the voters of `height`, replacing anything at or above it.

        Returns the number of voter rows written.
        """
        h = int(height)
        rows = [(str(a), int(w)) for a, w in voters if int(w) > 0]
        try:
            with self._db.write_tx() as con:
                con.execute("DELETE FROM balances WHERE height >= ?;", (h,))
                con.execute("DELETE FROM blocks WHERE height >= ?;", (h,))
                if is_generated or int(reward) != 0 or int(fees) != 0:
                    con.execute(
                        "INSERT INTO blocks(height, round, reward, fees) VALUES(?, ?, ?, ?);",
                        (h, int(round), str(int(reward)), str(int(fees))),
                    )
                con.executemany(
                    "INSERT INTO balances(height, round, address, weight, timestamp) VALUES(?, ?, ?, ?, ?);",
                    [(h, int(round), a, str(w), int(timestamp)) for a, w in rows],
                )
        except sqlite3.Error as e:
            raise PersistenceError("could not append votes", {"height": h, "error": str(e)}) from e
        return len(rows)

    def delete_from(self, height: int) -> None:
        """Remove block and voter rows with height >= `height`."""
        h = int(height)
        try:
            with self._db.write_tx() as con:
                con.execute("DELETE FROM balances WHERE height >= ?;", (h,))
                con.execute("DELETE FROM blocks WHERE height >= ?;", (h,))
        except sqlite3.Error as e:
            raise PersistenceError("could not delete ledger rows", {"height": h, "error": str(e)}) from e

    def delete_before(self, height: int) -> None:
        """Prune block and voter rows with height < `height`."""
        h = int(height)
        try:
            with self._db.write_tx() as con:
                con.execute("DELETE FROM balances WHERE height < ?;", (h,))
                con.execute("DELETE FROM blocks WHERE height < ?;", (h,))
        except sqlite3.Error as e:
            raise PersistenceError("could not prune ledger rows", {"height": h, "error": str(e)}) from e

    def wipe(self) -> None:
        self.delete_from(0)

    def range_blocks(self, start: int, end: Optional[int] = None) -> List[BlockRecord]:
        where, args = _range_clause(start, end)
        with self._db.connection() as con:
            rows = con.execute(
                f"SELECT height, round, reward, fees FROM blocks WHERE {where} ORDER BY height ASC;", args
            ).fetchall()
        return [
            BlockRecord(
                height=int(r["height"]),
                round=int(r["round"]),
                reward=int(str(r["reward"])),
                fees=int(str(r["fees"])),
            )
            for r in rows
        ]

    def range_votes(self, start: int, end: Optional[int] = None) -> List[VoteRecord]:
        where, args = _range_clause(start, end)
        with self._db.connection() as con:
            rows = con.execute(
                f"""
                SELECT height, round, address, weight, timestamp FROM balances
                WHERE {where} ORDER BY height ASC, address ASC;
                """,
                args,
            ).fetchall()
        return [
            VoteRecord(
                height=int(r["height"]),
                round=int(r["round"]),
                address=str(r["address"]),
                weight=int(str(r["weight"])),
                timestamp=int(r["timestamp"]),
            )
            for r in rows
        ]

    def weights_by_address(self, start: int, end: int) -> Dict[str, List[int]]:
        """Voter weights per address for heights in [start, end]."""
        out: Dict[str, List[int]] = {}
        if int(end) < int(start):
            return out
        for v in self.range_votes(start, end):
            out.setdefault(v.address, []).append(v.weight)
        return out

    def last_block_height(self) -> int:
        with self._db.connection() as con:
            row = con.execute("SELECT MAX(height) AS height FROM balances;").fetchone()
        return int(row["height"] or 0) if row is not None else 0

    def last_paid_height(self) -> int:
        """Highest height already covered by a payout.

        The watermark in `meta` survives history flushes; MAX(history.height)
        covers settlements written before the watermark existed.
        """
        with self._db.connection() as con:
            row = con.execute("SELECT MAX(height) AS height FROM history;").fetchone()
            hist = int(row["height"] or 0) if row is not None else 0
            return max(hist, _read_watermark(con))

    def set_start(self, height: int, *, rounds: "RoundCalculator", fidelity: Optional[int] = None) -> int:
        """Restart payouts from the round holding `height`.

        Wipes the ledger and moves the paid watermark to the end of the
        previous round. Returns the height the host must rewind to so the
        ledger is refilled, fidelity window included.
        """
        start = rounds.round_height(rounds.round_of(height))
        refill_from = max(1, start - int(fidelity or 0))
        with self._db.write_tx() as con:
            con.execute("DELETE FROM balances;")
            con.execute("DELETE FROM blocks;")
            _write_watermark(con, max(0, start - 1))
        log_event(log, "ledger_set_start", height=int(height), round_height=start, refill_from=refill_from)
        return refill_from


class HistoryStore:
    """Settlement rows and their status machine."""

    def __init__(self, *, db: SqliteDB, archive_dir: Optional[str] = None) -> None:
        self._db = db
        self._db.init_schema()
        self._archive_dir = Path(archive_dir) if archive_dir else Path(db.path).parent

    def add(self, height: int, tx: Dict) -> Settlement:
        """Store a freshly built transfer as a PENDING settlement for `height`."""
        transfers = tx.get("transfers") if isinstance(tx, dict) else None
        if not isinstance(tx, dict) or tx.get("type") != "transfer" or not isinstance(transfers, list):
            raise PersistenceError(
                "only transfer transactions can be stored in history",
                {"id": tx.get("id") if isinstance(tx, dict) else None},
            )
        tx_id = str(tx.get("id") or "").strip()
        if not tx_id:
            raise PersistenceError("transaction has no id")

        addresses: List[str] = []
        for t in transfers:
            rid = str(t["recipientId"])
            if rid not in addresses:
                addresses.append(rid)
        total = sum(int(str(t["amount"])) for t in transfers)
        ts = _now_s()

        try:
            with self._db.write_tx() as con:
                con.execute(
                    """
                    INSERT INTO history(id, height, addresses, total_amount, timestamp, tx, status)
                    VALUES(?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        tx_id,
                        int(height),
                        json.dumps(addresses),
                        str(total),
                        ts,
                        _canon_json(tx),
                        SettlementStatus.PENDING.value,
                    ),
                )
                if int(height) > _read_watermark(con):
                    _write_watermark(con, int(height))
        except sqlite3.IntegrityError as e:
            raise PersistenceError("settlement already stored", {"id": tx_id}) from e

        return Settlement(
            id=tx_id,
            height=int(height),
            addresses=addresses,
            total_amount=total,
            timestamp=ts,
            tx=json.loads(_canon_json(tx)),
            status=SettlementStatus.PENDING,
        )

    def get(self, tx_id: str) -> Optional[Settlement]:
        with self._db.connection() as con:
            row = con.execute("SELECT * FROM history WHERE id=? LIMIT 1;", (str(tx_id),)).fetchone()
        return Settlement.from_row(row) if row is not None else None

    def transition(self, tx_id: str, status: SettlementStatus, *, confirm_height: Optional[int] = None) -> bool:
        """Move a settlement to `status`.

        Returns False when the id is unknown. Raises SettlementStateError for
        a move the status machine does not allow.
        """
        with self._db.write_tx() as con:
            row = con.execute("SELECT status FROM history WHERE id=? LIMIT 1;", (str(tx_id),)).fetchone()
            if row is None:
                return False
            current = SettlementStatus(str(row["status"]))
            if status not in TRANSITIONS[current]:
                raise SettlementStateError(
                    f"cannot move settlement from {current.value} to {status.value}", {"id": str(tx_id)}
                )
            if status == SettlementStatus.CONFIRMED:
                con.execute(
                    "UPDATE history SET status=?, confirm_height=? WHERE id=?;",
                    (status.value, int(confirm_height or 0), str(tx_id)),
                )
            else:
                con.execute(
                    "UPDATE history SET status=?, confirm_height=NULL WHERE id=?;",
                    (status.value, str(tx_id)),
                )
        log_event(log, "settlement_status", level=logging.DEBUG, id=str(tx_id), status=status.value)
        return True

    def set_accepted(self, tx_id: str) -> bool:
        return self.transition(tx_id, SettlementStatus.ACCEPTED)

    def set_error(self, tx_id: str) -> bool:
        return self.transition(tx_id, SettlementStatus.ERROR)

    def set_confirmed(self, tx_id: str, height: int) -> bool:
        return self.transition(tx_id, SettlementStatus.CONFIRMED, confirm_height=int(height))

    def set_repaid(self, tx_id: str) -> bool:
        return self.transition(tx_id, SettlementStatus.REPAID)

    def reopen_from_height(self, height: int) -> int:
        """CONFIRMED -> ACCEPTED for every settlement confirmed at or above `height`."""
        with self._db.write_tx() as con:
            cur = con.execute(
                """
                UPDATE history SET status=?, confirm_height=NULL
                WHERE status=? AND confirm_height >= ?;
                """,
                (SettlementStatus.ACCEPTED.value, SettlementStatus.CONFIRMED.value, int(height)),
            )
            return int(cur.rowcount or 0)

    def not_confirmed(self) -> List[Settlement]:
        marks = ",".join("?" for _ in UNSETTLED)
        with self._db.connection() as con:
            rows = con.execute(
                f"SELECT * FROM history WHERE status IN ({marks}) ORDER BY num ASC;",
                tuple(s.value for s in UNSETTLED),
            ).fetchall()
        return [Settlement.from_row(r) for r in rows]

    def all(self) -> List[Settlement]:
        with self._db.connection() as con:
            rows = con.execute("SELECT * FROM history ORDER BY num ASC;").fetchall()
        return [Settlement.from_row(r) for r in rows]

    def flush(self) -> Optional[Path]:
        """Archive every settlement to a JSON file, then delete them.

        The delete only commits once the archive is on disk. Returns the
        archive path, or None when history was already empty.
        """
        with self._db.write_tx() as con:
            rows = con.execute("SELECT * FROM history ORDER BY num ASC;").fetchall()
            if not rows:
                return None
            items = [Settlement.from_row(r).to_dict() for r in rows]
            top = max(int(r["height"]) for r in rows)
            if top > _read_watermark(con):
                _write_watermark(con, top)

            self._archive_dir.mkdir(parents=True, exist_ok=True)
            path = self._archive_dir / f"history-{time.time():.3f}.json"
            path.write_text(json.dumps(items, indent=4), encoding="utf-8")

            con.execute("DELETE FROM history;")

        log_event(log, "history_flushed", archive=str(path), settlements=len(items))
        return path
