"""tbw.ledger.types

Record types shared by the ledger store, the paytable worker and the payer.

All amounts and weights are ints in base units.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

Json = Dict[str, Any]


class Mode(str, Enum):
    CLASSIC = "classic"
    EVERY = "every"
    MIN = "min"
    LAST = "last"


class SettlementStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    CONFIRMED = "CONFIRMED"
    ERROR = "ERROR"
    REPAID = "REPAID"


# Allowed status moves. CONFIRMED -> ACCEPTED only happens through a rollback
# of the confirming height; ERROR -> ACCEPTED when the identical transfer is
# broadcast again and accepted.
TRANSITIONS: Dict[SettlementStatus, frozenset] = {
    SettlementStatus.PENDING: frozenset(
        {SettlementStatus.ACCEPTED, SettlementStatus.ERROR, SettlementStatus.CONFIRMED, SettlementStatus.REPAID}
    ),
    SettlementStatus.ACCEPTED: frozenset(
        {SettlementStatus.ACCEPTED, SettlementStatus.CONFIRMED, SettlementStatus.ERROR, SettlementStatus.REPAID}
    ),
    SettlementStatus.ERROR: frozenset(
        {SettlementStatus.ACCEPTED, SettlementStatus.CONFIRMED, SettlementStatus.REPAID}
    ),
    SettlementStatus.CONFIRMED: frozenset({SettlementStatus.ACCEPTED}),
    SettlementStatus.REPAID: frozenset(),
}

UNSETTLED = (SettlementStatus.PENDING, SettlementStatus.ACCEPTED, SettlementStatus.ERROR)


@dataclass(frozen=True, slots=True)
class VoteRecord:
    height: int
    round: int
    address: str
    weight: int
    timestamp: int = 0


@dataclass(frozen=True, slots=True)
class BlockRecord:
    height: int
    round: int
    reward: int
    fees: int


@dataclass(slots=True)
class RoundBlock:
    """One height of a round: its reward/fees and the voter weights seen there."""

    height: int
    reward: int
    fees: int
    weights: Dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class PayBlock:
    """A strategy's output: the weights and reward attributed to one height."""

    height: int
    reward: int
    fees: int
    weights: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Settlement:
    id: str
    height: int
    addresses: List[str]
    total_amount: int
    timestamp: int
    tx: Json
    status: SettlementStatus
    confirm_height: Optional[int] = None

    @property
    def recipients(self) -> List[Json]:
        return list(self.tx.get("transfers") or [])

    def to_dict(self) -> Json:
        return {
            "id": self.id,
            "height": self.height,
            "confirm_height": self.confirm_height,
            "addresses": list(self.addresses),
            "total_amount": str(self.total_amount),
            "timestamp": self.timestamp,
            "status": self.status.value,
            "tx": self.tx,
        }

    @staticmethod
    def from_row(row: Any) -> "Settlement":
        return Settlement(
            id=str(row["id"]),
            height=int(row["height"]),
            addresses=list(json.loads(str(row["addresses"]))),
            total_amount=int(str(row["total_amount"])),
            timestamp=int(row["timestamp"]),
            tx=json.loads(str(row["tx"])),
            status=SettlementStatus(str(row["status"])),
            confirm_height=None if row["confirm_height"] is None else int(row["confirm_height"]),
        )
