# src/tbw/pay/fees.py
from __future__ import annotations

"""Transfer fee estimation and batch building.

A payout is split into multi-recipient transfers of at most
`max_recipients_per_transfer` recipients. Fees are dynamic: the serialized
size of the transfer times the chain's minimum fee rate, plus a flat addon.
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from tbw.ledger.constants import (
    BYTES_PER_RECIPIENT,
    DEFAULT_MAX_RECIPIENTS,
    SIGNATURE_BYTES,
    TRANSFER_COUNT_BYTES,
    TRANSFER_HEADER_BYTES,
)


@dataclass(frozen=True, slots=True)
class MilestoneConfig:
    max_recipients_per_transfer: int = DEFAULT_MAX_RECIPIENTS
    min_fee_rate: int = 0
    addon_bytes: int = 0


@dataclass(frozen=True, slots=True)
class BatchPlan:
    recipients: int
    batches: int
    last_batch_size: int
    full_fee: int
    last_fee: int

    @property
    def total_fee(self) -> int:
        if self.batches <= 0:
            return 0
        return self.full_fee * (self.batches - 1) + self.last_fee

    def fee_for(self, size: int, max_recipients: int) -> int:
        return self.full_fee if int(size) == int(max_recipients) else self.last_fee


def transfer_size(recipients: int, memo: str, has_second_signature: bool) -> int:
    memo_bytes = len((memo or "").encode("utf-8"))
    return (
        TRANSFER_HEADER_BYTES
        + SIGNATURE_BYTES
        + (SIGNATURE_BYTES if has_second_signature else 0)
        + memo_bytes
        + TRANSFER_COUNT_BYTES
        + BYTES_PER_RECIPIENT * int(recipients)
    )


def transfer_fee(
    recipients: int,
    *,
    memo: str,
    has_second_signature: bool,
    extra_fee: int,
    milestone: MilestoneConfig,
) -> int:
    size = transfer_size(recipients, memo, has_second_signature)
    # Half-up rounding of size / 2.
    fee = (int(milestone.addon_bytes) + (size + 1) // 2) * int(milestone.min_fee_rate)
    return fee + fee * int(extra_fee) // 100


def count_recipients(paytable: Dict[str, int], reserve: Dict[str, int]) -> int:
    extra = [a for a, pct in reserve.items() if int(pct) > 0 and a not in paytable]
    return len(paytable) + len(extra)


def plan_batches(
    recipients: int,
    *,
    memo: str,
    has_second_signature: bool,
    extra_fee: int,
    milestone: MilestoneConfig,
) -> BatchPlan:
    n = max(1, int(milestone.max_recipients_per_transfer))
    k = max(0, int(recipients))
    batches = -(-k // n)
    last = k % n or (n if k else 0)

    def fee(size: int) -> int:
        return transfer_fee(
            size, memo=memo, has_second_signature=has_second_signature, extra_fee=extra_fee, milestone=milestone
        )

    full_fee = fee(n)
    last_fee = fee(last) if 0 < last < n else full_fee
    return BatchPlan(recipients=k, batches=batches, last_batch_size=last, full_fee=full_fee, last_fee=last_fee)


def chunk_payouts(paytable: Dict[str, int], size: int) -> List[List[Tuple[str, int]]]:
    """Split non-zero payouts into chunks of `size`, keeping paytable order."""
    items = [(a, int(v)) for a, v in paytable.items() if int(v) > 0]
    n = max(1, int(size))
    return [items[i : i + n] for i in range(0, len(items), n)]


def chunk(items: Sequence, size: int) -> List[list]:
    n = max(1, int(size))
    return [list(items[i : i + n]) for i in range(0, len(items), n)]
