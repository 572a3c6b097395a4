# src/tbw/config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    if v is None or (isinstance(v, str) and not v.strip()):
        return int(default)
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_float(v: Any, default: float) -> float:
    if v is None or (isinstance(v, str) and not v.strip()):
        return float(default)
    try:
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


@dataclass(frozen=True)
class TbwConfig:
    mode: str  # "dev" | "prod"

    # Directory holding tbw.db, config.json and history archives.
    data_dir: str
    socket_path: str

    # Round size used to group heights into rounds.
    active_delegates: int

    # Broadcast throttling
    max_tx_per_request: int
    broadcast_delay_ms: int

    worker_timeout_s: float

    log_level: str

    @property
    def db_path(self) -> str:
        return str(Path(self.data_dir) / "tbw.db")

    @property
    def settings_path(self) -> str:
        return str(Path(self.data_dir) / "config.json")


_ALLOWED_MODES = {"dev", "prod"}


def validate_tbw_config(cfg: TbwConfig) -> None:
    """Fail-fast validation for operator config."""

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    for name, p in (("data_dir", cfg.data_dir), ("socket_path", cfg.socket_path)):
        if not isinstance(p, str) or not p.strip():
            raise ValueError(f"{name} must be a non-empty string")

    if int(cfg.active_delegates) <= 0:
        raise ValueError(f"active_delegates must be > 0; got: {cfg.active_delegates}")

    if int(cfg.max_tx_per_request) <= 0:
        raise ValueError(f"max_tx_per_request must be > 0; got: {cfg.max_tx_per_request}")

    if int(cfg.broadcast_delay_ms) < 0:
        raise ValueError(f"broadcast_delay_ms must be >= 0; got: {cfg.broadcast_delay_ms}")

    if float(cfg.worker_timeout_s) <= 0:
        raise ValueError(f"worker_timeout_s must be > 0; got: {cfg.worker_timeout_s}")


def default_tbw_config() -> TbwConfig:
    return TbwConfig(
        mode="prod",
        data_dir="./data/tbw",
        socket_path="./data/tbw-pay.sock",
        active_delegates=53,
        max_tx_per_request=40,
        broadcast_delay_ms=1_000,
        worker_timeout_s=600.0,
        log_level="INFO",
    )


def _merge(raw: Json, d: TbwConfig) -> TbwConfig:
    env = os.environ
    return TbwConfig(
        mode=_as_str(env.get("TBW_MODE") or raw.get("mode"), d.mode).strip().lower(),
        data_dir=_as_str(env.get("TBW_DATA_DIR") or raw.get("data_dir"), d.data_dir),
        socket_path=_as_str(env.get("TBW_SOCKET_PATH") or raw.get("socket_path"), d.socket_path),
        active_delegates=_as_int(env.get("TBW_ACTIVE_DELEGATES") or raw.get("active_delegates"), d.active_delegates),
        max_tx_per_request=_as_int(
            env.get("TBW_MAX_TX_PER_REQUEST") or raw.get("max_tx_per_request"), d.max_tx_per_request
        ),
        broadcast_delay_ms=_as_int(
            env.get("TBW_BROADCAST_DELAY_MS") or raw.get("broadcast_delay_ms"), d.broadcast_delay_ms
        ),
        worker_timeout_s=_as_float(env.get("TBW_WORKER_TIMEOUT_S") or raw.get("worker_timeout_s"), d.worker_timeout_s),
        log_level=_as_str(env.get("TBW_LOG_LEVEL") or raw.get("log_level"), d.log_level).strip().upper(),
    )


def read_tbw_config_file(path: str) -> TbwConfig:
    p = Path(path)
    raw = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("tbw config must be a JSON object")

    cfg = _merge(raw, default_tbw_config())
    validate_tbw_config(cfg)
    return cfg


def load_tbw_config(*, config_path: Optional[str] = None) -> TbwConfig:
    """Load config: JSON file (optional) overlaid by TBW_* environment variables."""
    p = config_path or os.environ.get("TBW_CONFIG_PATH")
    if p:
        return read_tbw_config_file(p)

    cfg = _merge({}, default_tbw_config())
    validate_tbw_config(cfg)
    return cfg
