# src/tbw/runtime/sqlite_db.py
from __future__ import annotations

import json
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator


def _now_ms() -> int:
    return int(time.time() * 1000)


def _canon_json(obj: Any) -> str:
    """Canonical JSON encoding used for stored raw transactions."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


class SqliteDB:
    """SQLite manager for the TBW ledger.

    Design goals:
      - single durable DB file for vote weights, block rewards and settlements
      - safe between the node process and the paytable worker process
      - cross-thread safe by never sharing connections

    SQLite allows only one writer at a time. BEGIN IMMEDIATE can transiently
    fail with "database is locked" while the worker is reading, so write_tx()
    retries within a bounded deadline.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str) -> None:
        self.path = str(path)

    @staticmethod
    def _sqlite_synchronous_pragma() -> str:
        """Return a safe PRAGMA synchronous value.

        Defaults:
          - prod -> FULL
          - dev  -> NORMAL

        Override with TBW_SQLITE_SYNCHRONOUS in {OFF,NORMAL,FULL,EXTRA}.
        """
        mode = (os.environ.get("TBW_MODE") or "prod").strip().lower()
        default = "FULL" if mode == "prod" else "NORMAL"
        raw = (os.environ.get("TBW_SQLITE_SYNCHRONOUS") or default).strip().upper()

        if raw not in {"OFF", "NORMAL", "FULL", "EXTRA"}:
            raw = default
        return raw

    def ensure_parent_dir(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        self.ensure_parent_dir()

        connect_timeout_s = float(_env_int("TBW_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0

        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        # WAL lets the worker read the ledger while blocks keep being appended.
        row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
        mode = str(row[0]).strip().lower() if row is not None else ""
        if mode and mode != "wal":
            con.close()
            raise RuntimeError(f"sqlite journal_mode is '{mode}', expected 'wal'")

        con.execute(f"PRAGMA synchronous={self._sqlite_synchronous_pragma()};")
        con.execute("PRAGMA temp_store=MEMORY;")

        wal_ckpt = max(1, _env_int("TBW_SQLITE_WAL_AUTOCHECKPOINT", 1000))
        con.execute(f"PRAGMA wal_autocheckpoint={wal_ckpt};")

        busy_ms = max(0, _env_int("TBW_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000)))
        con.execute(f"PRAGMA busy_timeout={busy_ms};")

        return con

    def init_schema(self) -> None:
        with self.write_tx() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )

            # Amounts are stored as decimal strings: they are arbitrary
            # precision ints in base units and may exceed 64 bits.
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS blocks (
                  height INTEGER PRIMARY KEY,
                  round INTEGER NOT NULL,
                  reward TEXT NOT NULL,
                  fees TEXT NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS balances (
                  height INTEGER NOT NULL,
                  round INTEGER NOT NULL,
                  address TEXT NOT NULL,
                  weight TEXT NOT NULL,
                  timestamp INTEGER NOT NULL,
                  PRIMARY KEY (height, address)
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_balances_address ON balances(address, height);")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS history (
                  num INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
                  id TEXT NOT NULL UNIQUE,
                  height INTEGER NOT NULL,
                  confirm_height INTEGER DEFAULT NULL,
                  addresses TEXT NOT NULL,
                  total_amount TEXT NOT NULL,
                  timestamp INTEGER NOT NULL,
                  tx TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'PENDING'
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_history_status ON history(status);")
            con.execute("CREATE INDEX IF NOT EXISTS idx_history_confirm ON history(confirm_height);")

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            else:
                try:
                    v = int(str(row["value"]))
                except ValueError:
                    v = 0
                if v != self.SCHEMA_VERSION:
                    raise RuntimeError(
                        f"sqlite schema_version mismatch: have={v} want={self.SCHEMA_VERSION}. "
                        "Refuse to start to avoid corrupting data."
                    )

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return ("database is locked" in msg) or ("database is busy" in msg) or ("locked" in msg and "database" in msg)

    def _backoff(self, attempt: int) -> None:
        base_sleep = max(0.001, float(_env_int("TBW_SQLITE_WRITE_BACKOFF_BASE_MS", 5)) / 1000.0)
        max_sleep = max(base_sleep, float(_env_int("TBW_SQLITE_WRITE_BACKOFF_MAX_MS", 250)) / 1000.0)
        sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
        time.sleep(sleep_s * (0.5 + random.random()))

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction with bounded retry on writer-lock contention.

        Everything executed on the yielded connection commits together or is
        rolled back together.
        """
        deadline_ms = max(250, _env_int("TBW_SQLITE_WRITE_DEADLINE_MS", 30_000))
        deadline_ts = _now_ms() + deadline_ms

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                        raise
                    self._backoff(attempt)
                    attempt += 1

            try:
                yield con

                c_attempt = 0
                while True:
                    try:
                        con.execute("COMMIT;")
                        break
                    except sqlite3.OperationalError as e:
                        if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                            raise
                        self._backoff(c_attempt)
                        c_attempt += 1
            except BaseException:
                try:
                    con.execute("ROLLBACK;")
                except sqlite3.Error:
                    pass
                raise
