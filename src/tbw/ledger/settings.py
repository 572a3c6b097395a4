# src/tbw/ledger/settings.py
from __future__ import annotations

"""Payout settings: the pydantic model and its file-backed store.

The settings file is always replaced whole. A write that does not validate is
rejected before anything touches disk, so the previous file stays
authoritative.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from tbw.crypto.keys import public_key_from_passphrase
from tbw.errors import ConfigurationError, SettingsValidationError
from tbw.ledger.constants import ADDRESS_LENGTH, MAX_MEMO_LENGTH
from tbw.ledger.types import Mode

_BASE58 = frozenset("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")

# Legacy files stored the mode as its index.
_MODE_BY_INDEX = {0: Mode.CLASSIC, 1: Mode.EVERY, 2: Mode.MIN, 3: Mode.LAST}


def is_valid_address(address: Any) -> bool:
    if not isinstance(address, str) or len(address) != ADDRESS_LENGTH:
        return False
    return all(ch in _BASE58 for ch in address)


def _check_address(address: str) -> str:
    if not is_valid_address(address):
        raise ValueError(f"invalid address: {address!r}")
    return address


def _check_address_list(values: List[str]) -> List[str]:
    for a in values:
        _check_address(a)
    if len(set(values)) != len(values):
        raise ValueError("addresses must be unique")
    return values


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    mode: Mode = Mode.CLASSIC
    blacklist: List[str] = Field(default_factory=list)
    whitelist: List[str] = Field(default_factory=list)
    routes: Dict[str, str] = Field(default_factory=dict)
    sharing: int = Field(default=0, ge=0, le=100)
    extra_fee: int = Field(default=0, ge=0, le=100)
    max_cap: Optional[int] = Field(default=None, ge=1)
    min_cap: Optional[int] = Field(default=None, ge=1)
    fidelity: Optional[int] = Field(default=None, ge=1)
    memo: str = Field(default="", max_length=MAX_MEMO_LENGTH)
    pay_fees: Literal["y", "n"] = "n"
    reserve: Dict[str, int] = Field(default_factory=dict)
    passphrase: Optional[str] = Field(default=None, min_length=1)
    second_passphrase: Optional[str] = Field(default=None, min_length=1)

    @field_validator("mode", mode="before")
    @classmethod
    def _mode_from_index(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            if v not in _MODE_BY_INDEX:
                raise ValueError(f"unknown mode index: {v}")
            return _MODE_BY_INDEX[v]
        return v

    @field_validator("blacklist", "whitelist")
    @classmethod
    def _addresses(cls, v: List[str]) -> List[str]:
        return _check_address_list(v)

    @field_validator("routes")
    @classmethod
    def _routes(cls, v: Dict[str, str]) -> Dict[str, str]:
        for src, dst in v.items():
            _check_address(src)
            _check_address(dst)
            if src == dst:
                raise ValueError(f"route {src} points to itself")
        # One hop only: a destination may not be rerouted again.
        chained = sorted(dst for dst in v.values() if dst in v)
        if chained:
            raise ValueError(f"routes must be a single hop; rerouted destinations: {chained}")
        return v

    @field_validator("reserve")
    @classmethod
    def _reserve(cls, v: Dict[str, int]) -> Dict[str, int]:
        for address, pct in v.items():
            _check_address(address)
            if isinstance(pct, bool) or not 1 <= int(pct) <= 100:
                raise ValueError(f"reserve percentage for {address} must be 1..100")
        total = sum(int(p) for p in v.values())
        if total not in (0, 100):
            raise ValueError(f"reserve percentages must sum to 0 or 100; got {total}")
        return v

    @model_validator(mode="after")
    def _second_needs_first(self) -> "Settings":
        if self.second_passphrase is not None and self.passphrase is None:
            raise ValueError("second_passphrase requires passphrase")
        return self

    def public_settings(self) -> Dict[str, Any]:
        """Settings without signing material, for display."""
        out = self.model_dump(mode="json")
        out["passphrase"] = "***" if self.passphrase else None
        out["second_passphrase"] = "***" if self.second_passphrase else None
        return out


def validate_settings(value: Dict[str, Any]) -> Settings:
    try:
        return Settings.model_validate(value)
    except ValidationError as e:
        raise SettingsValidationError(
            "settings are invalid",
            {"errors": [f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()]},
        ) from e


class SettingsStore:
    """Read-whole / replace-whole JSON settings file."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> Settings:
        if not self.path.is_file():
            raise ConfigurationError("could not read settings", {"path": str(self.path)})
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigurationError("settings file is not readable JSON", {"path": str(self.path)}) from e
        if not isinstance(raw, dict):
            raise ConfigurationError("settings file must hold a JSON object", {"path": str(self.path)})
        try:
            return validate_settings(raw)
        except SettingsValidationError as e:
            raise ConfigurationError("settings file is invalid", e.details) from e

    def get(self) -> Optional[Settings]:
        try:
            return self.read()
        except ConfigurationError:
            return None

    def write(self, settings: Settings) -> None:
        # Re-validate the whole object: validate_assignment does not cover
        # in-place mutation of lists and dicts.
        validated = validate_settings(settings.model_dump(mode="json"))
        payload = json.dumps(validated.model_dump(mode="json"), indent=4)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".config-", suffix=".json", dir=str(self.path.parent))
        try:
            os.chmod(tmp, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    def create_default(self) -> Settings:
        settings = Settings()
        self.write(settings)
        return settings

    def update(self, **changes: Any) -> Settings:
        current = self.read().model_dump(mode="json")
        current.update(changes)
        settings = validate_settings(current)
        self.write(settings)
        return settings

    # ---- lists ----

    def add_to_blacklist(self, address: str) -> Settings:
        s = self.read()
        return self.update(blacklist=[*s.blacklist, address])

    def remove_from_blacklist(self, address: str) -> Settings:
        s = self.read()
        return self.update(blacklist=[a for a in s.blacklist if a != address])

    def clear_blacklist(self) -> Settings:
        return self.update(blacklist=[])

    def add_to_whitelist(self, address: str) -> Settings:
        s = self.read()
        return self.update(whitelist=[*s.whitelist, address])

    def remove_from_whitelist(self, address: str) -> Settings:
        s = self.read()
        return self.update(whitelist=[a for a in s.whitelist if a != address])

    def clear_whitelist(self) -> Settings:
        return self.update(whitelist=[])

    # ---- routes / reserve ----

    def add_route(self, source: str, destination: str) -> Settings:
        s = self.read()
        routes = dict(s.routes)
        routes[source] = destination
        return self.update(routes=routes)

    def remove_route(self, source: str) -> Settings:
        s = self.read()
        routes = {k: v for k, v in s.routes.items() if k != source}
        return self.update(routes=routes)

    def clear_routes(self) -> Settings:
        return self.update(routes={})

    def set_reserve(self, reserve: Dict[str, int]) -> Settings:
        return self.update(reserve=dict(reserve))

    def delegate_public_key(self) -> Optional[str]:
        s = self.get()
        if s is None or not s.passphrase:
            return None
        return public_key_from_passphrase(s.passphrase)
