# src/tbw/pay/distribution.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from tbw.ledger.settings import Settings
from tbw.ledger.types import PayBlock
from tbw.pay.modes import ModeStrategy

Json = Dict[str, Any]
Emit = Optional[Callable[[str], None]]


@dataclass
class Paytable:
    """Accumulated payouts per address, in first-credited order."""

    entries: Dict[str, int] = field(default_factory=dict)
    total: int = 0
    max_height: int = 0

    def credit(self, address: str, amount: int) -> None:
        if amount <= 0:
            return
        self.entries[address] = self.entries.get(address, 0) + int(amount)
        self.total += int(amount)

    def touch(self, height: int) -> None:
        if int(height) > self.max_height:
            self.max_height = int(height)

    def to_wire(self) -> Json:
        return {
            "paytable": {a: str(v) for a, v in self.entries.items()},
            "total": str(self.total),
            "max_height": int(self.max_height),
        }

    @staticmethod
    def from_wire(data: Json) -> "Paytable":
        return Paytable(
            entries={str(a): int(str(v)) for a, v in (data.get("paytable") or {}).items()},
            total=int(str(data.get("total") or "0")),
            max_height=int(data.get("max_height") or 0),
        )


def eligible_weights(
    block: PayBlock,
    *,
    settings: Settings,
    strategy: ModeStrategy,
    history: Optional[Dict[str, List[int]]] = None,
) -> List[Tuple[str, int]]:
    """Fidelity, then black/white lists on the voting address, then routes."""
    out: List[Tuple[str, int]] = []
    for address, weight in block.weights.items():
        w = int(weight)
        if settings.fidelity:
            w = strategy.apply_fidelity((history or {}).get(address, []), settings.fidelity, w)
        if address in settings.blacklist:
            continue
        if settings.whitelist and address not in settings.whitelist:
            continue
        out.append((settings.routes.get(address, address), w))
    return out


def distribute_block(
    paytable: Paytable,
    block: PayBlock,
    *,
    settings: Settings,
    strategy: ModeStrategy,
    history: Optional[Dict[str, List[int]]] = None,
    emit: Emit = None,
) -> int:
    """Credit one PayBlock's voters into `paytable` and return the amount credited.

    payout = total_reward * weight * sharing // (total_weight * 100), so the
    block never pays out more than total_reward * sharing / 100.
    """
    say = emit or (lambda _msg: None)
    paytable.touch(block.height)

    wallets = eligible_weights(block, settings=settings, strategy=strategy, history=history)
    total_weight = sum(w for _, w in wallets)
    say(f"block {block.height}: reward={block.reward} fees={block.fees} total_weight={total_weight}")
    if total_weight <= 0:
        say(f"block {block.height}: total weight is zero, skipping")
        return 0

    total_reward = int(block.reward) + (int(block.fees) if settings.pay_fees == "y" else 0)
    paid = 0
    for address, weight in wallets:
        payout = total_reward * weight * int(settings.sharing) // (total_weight * 100)
        if payout > 0:
            paytable.credit(address, payout)
            paid += payout
    say(f"block {block.height}: paid {paid} of {total_reward}")
    return paid
