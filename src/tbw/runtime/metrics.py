from __future__ import annotations

"""In-process counters and gauges for the payout service.

Counter names in use:
  blocks_applied, blocks_reverted, rollbacks
  pay_cycles, settlements_created, settlements_accepted, settlements_error,
  settlements_confirmed, settlements_reopened, settlements_repaid
Gauges:
  ledger_last_height, last_paid_height
"""

import threading
import time
from typing import Dict


_lock = threading.Lock()
_counters: Dict[str, int] = {}
_gauges: Dict[str, int] = {}
_started_ms = int(time.time() * 1000)


def inc_counter(name: str, value: int = 1) -> None:
    n = str(name or "").strip()
    if not n:
        return
    with _lock:
        _counters[n] = int(_counters.get(n, 0)) + int(value)


def set_gauge(name: str, value: int) -> None:
    n = str(name or "").strip()
    if not n:
        return
    with _lock:
        _gauges[n] = int(value)


def snapshot() -> dict:
    with _lock:
        now = int(time.time() * 1000)
        return {
            "ts_ms": now,
            "started_ms": int(_started_ms),
            "uptime_ms": now - int(_started_ms),
            "counters": dict(_counters),
            "gauges": dict(_gauges),
        }


def reset() -> None:
    with _lock:
        _counters.clear()
        _gauges.clear()


def format_prometheus(prefix: str = "tbw_") -> str:
    """Prometheus exposition text; integer counters and gauges only."""
    pre = str(prefix or "").strip() or "tbw_"
    snap = snapshot()
    lines: list[str] = [f"{pre}uptime_ms {int(snap['uptime_ms'])}"]

    for name in sorted(snap["counters"]):
        lines.append(f"# TYPE {pre}{name} counter")
        lines.append(f"{pre}{name} {int(snap['counters'][name])}")

    for name in sorted(snap["gauges"]):
        lines.append(f"# TYPE {pre}{name} gauge")
        lines.append(f"{pre}{name} {int(snap['gauges'][name])}")

    return "\n".join(lines) + "\n"
