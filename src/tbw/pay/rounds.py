# src/tbw/pay/rounds.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List

from tbw.ledger.constants import DEFAULT_ACTIVE_DELEGATES
from tbw.ledger.types import BlockRecord, RoundBlock, VoteRecord


@dataclass(frozen=True, slots=True)
class RoundInfo:
    round: int
    round_height: int
    next_round_height: int
    max_delegates: int


class RoundCalculator:
    """Maps heights to fixed-size rounds.

    Round 1 starts at height 1. Heights <= 0 belong to round 0.
    """

    def __init__(self, active_delegates: int = DEFAULT_ACTIVE_DELEGATES) -> None:
        if int(active_delegates) <= 0:
            raise ValueError("active_delegates must be > 0")
        self.active_delegates = int(active_delegates)

    def round_of(self, height: int) -> int:
        h = int(height)
        if h <= 0:
            return 0
        return (h - 1) // self.active_delegates + 1

    def round_height(self, round: int) -> int:
        r = int(round)
        if r <= 0:
            return 0
        return (r - 1) * self.active_delegates + 1

    def round_info(self, height: int) -> RoundInfo:
        r = self.round_of(height)
        start = self.round_height(r)
        return RoundInfo(
            round=r,
            round_height=start,
            next_round_height=start + self.active_delegates if r > 0 else 1,
            max_delegates=self.active_delegates,
        )


def aggregate_rounds(
    blocks: Iterable[BlockRecord],
    votes: Iterable[VoteRecord],
    rounds: RoundCalculator,
    *,
    start_round: int,
    end_round: int,
) -> Dict[int, List[RoundBlock]]:
    """Group ledger rows into per-round lists of RoundBlock, ordered by height.

    A height appears when it has a block row or at least one vote. Heights
    without a block row carry zero reward and fees. Rounds outside
    [start_round, end_round] are dropped.
    """
    by_height: Dict[int, RoundBlock] = {}
    for b in blocks:
        by_height[b.height] = RoundBlock(height=b.height, reward=b.reward, fees=b.fees)
    for v in votes:
        rb = by_height.get(v.height)
        if rb is None:
            rb = RoundBlock(height=v.height, reward=0, fees=0)
            by_height[v.height] = rb
        rb.weights[v.address] = v.weight

    out: Dict[int, List[RoundBlock]] = {}
    for height in sorted(by_height):
        r = rounds.round_of(height)
        if r < int(start_round) or r > int(end_round):
            continue
        out.setdefault(r, []).append(by_height[height])
    return out
