from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict


@dataclass(eq=False)
class TbwError(Exception):
    """Base error for the payout engine.

    `kind` is the machine-readable category reported to operators; `message`
    is the human text.
    """

    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[str] = "internal"

    def __str__(self) -> str:
        if not self.details:
            return f"{self.kind}:{self.message}"
        return f"{self.kind}:{self.message}:{self.details}"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            out["details"] = dict(self.details)
        return out


@dataclass(eq=False)
class ConfigurationError(TbwError):
    """No delegate configured, invalid or missing settings, unknown mode."""

    kind: ClassVar[str] = "configuration"


@dataclass(eq=False)
class InsufficientBalanceError(TbwError):
    kind: ClassVar[str] = "insufficient_balance"


@dataclass(eq=False)
class SignatureMismatchError(TbwError):
    kind: ClassVar[str] = "signature_mismatch"


@dataclass(eq=False)
class PersistenceError(TbwError):
    """Ledger or settings I/O failure. The previous state is left untouched."""

    kind: ClassVar[str] = "persistence"


@dataclass(eq=False)
class SettingsValidationError(PersistenceError):
    kind: ClassVar[str] = "invalid_settings"


@dataclass(eq=False)
class SettlementStateError(PersistenceError):
    kind: ClassVar[str] = "invalid_transition"


@dataclass(eq=False)
class BroadcastError(TbwError):
    kind: ClassVar[str] = "broadcast"


@dataclass(eq=False)
class NotFoundError(TbwError):
    kind: ClassVar[str] = "not_found"


@dataclass(eq=False)
class WorkerError(TbwError):
    """The paytable worker died or reported a failure it could not classify."""

    kind: ClassVar[str] = "worker"


_BY_KIND: Dict[str, type] = {
    cls.kind: cls
    for cls in (
        ConfigurationError,
        InsufficientBalanceError,
        SignatureMismatchError,
        PersistenceError,
        SettingsValidationError,
        SettlementStateError,
        BroadcastError,
        NotFoundError,
        WorkerError,
    )
}


def error_from_kind(kind: str, message: str) -> TbwError:
    """Rebuild a typed error from its wire form (worker queue, API body)."""
    cls = _BY_KIND.get(str(kind or ""), WorkerError)
    return cls(message)
