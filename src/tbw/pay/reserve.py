# src/tbw/pay/reserve.py
from __future__ import annotations

from typing import Dict

from tbw.errors import ConfigurationError, InsufficientBalanceError


def apply_reserve(
    paytable: Dict[str, int],
    reserve: Dict[str, int],
    *,
    balance: int,
    total_fees: int,
    total_to_pay: int,
) -> Dict[str, int]:
    """Split the wallet surplus across the reserve addresses.

    Every entry but the first receives surplus * pct // 100; the first entry
    receives what is left, rounding dust included. Returns a new paytable.
    """
    surplus = int(balance) - int(total_fees) - int(total_to_pay)
    if surplus < 0:
        raise InsufficientBalanceError(
            "wallet balance does not cover payouts and fees",
            {"balance": str(balance), "fees": str(total_fees), "to_pay": str(total_to_pay)},
        )

    out = dict(paytable)
    if not reserve:
        return out

    items = list(reserve.items())
    remaining = surplus
    for address, pct in items[1:]:
        share = surplus * int(pct) // 100
        if share > 0:
            out[address] = out.get(address, 0) + share
            remaining -= share

    if remaining < 0:
        raise ConfigurationError("reserve percentages exceed the available surplus", {"remaining": str(remaining)})

    if remaining > 0:
        first = items[0][0]
        out[first] = out.get(first, 0) + remaining
    return out
