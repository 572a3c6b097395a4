# src/tbw/pay/modes.py
from __future__ import annotations

"""Round aggregation strategies.

Each strategy turns the RoundBlocks of one completed round into the PayBlocks
that the distribution pass pays out. Caps are whole coins; weights are base
units.
"""

from typing import Dict, List, Optional, Sequence

from tbw.errors import ConfigurationError
from tbw.ledger.constants import COIN
from tbw.ledger.types import Mode, PayBlock, RoundBlock


def _cap(value: Optional[int]) -> Optional[int]:
    return None if value is None else int(value) * COIN


def _clamp(weight: int, max_w: Optional[int]) -> int:
    if max_w is not None and weight > max_w:
        return max_w
    return weight


class ModeStrategy:
    mode: Mode

    def handle_round(
        self,
        blocks: Sequence[RoundBlock],
        *,
        min_cap: Optional[int] = None,
        max_cap: Optional[int] = None,
    ) -> List[PayBlock]:
        raise NotImplementedError

    def apply_fidelity(self, history: Sequence[int], fidelity: int, weight: int) -> int:
        """Cap `weight` to the lowest weight held over the fidelity window.

        `history` holds the voter's weights at the `fidelity` heights before
        the pay height; a voter missing from any of them gets nothing.
        """
        if len(history) < int(fidelity):
            return 0
        return min([int(weight), *(int(w) for w in history)])

    @staticmethod
    def round_totals(blocks: Sequence[RoundBlock]) -> tuple:
        reward = 0
        fees = 0
        seen = set()
        for b in blocks:
            if b.height in seen or b.reward <= 0:
                continue
            seen.add(b.height)
            reward += b.reward
            fees += b.fees
        return reward, fees

    @staticmethod
    def top_height(blocks: Sequence[RoundBlock]) -> int:
        return max((b.height for b in blocks), default=0)


class ClassicMode(ModeStrategy):
    """Every rewarded block stands alone."""

    mode = Mode.CLASSIC

    def handle_round(self, blocks, *, min_cap=None, max_cap=None):
        min_w = _cap(min_cap) or 0
        max_w = _cap(max_cap)
        out: List[PayBlock] = []
        for b in blocks:
            if b.reward <= 0:
                continue
            weights = {a: _clamp(w, max_w) for a, w in b.weights.items() if w > min_w}
            out.append(PayBlock(height=b.height, reward=b.reward, fees=b.fees, weights=weights))
        return out


class EveryMode(ModeStrategy):
    """Weights summed over every block of the round, paid once at its top height."""

    mode = Mode.EVERY

    def handle_round(self, blocks, *, min_cap=None, max_cap=None):
        reward, fees = self.round_totals(blocks)
        if reward <= 0:
            return []
        floor = _cap(min_cap) or 1
        max_w = _cap(max_cap)
        weights: Dict[str, int] = {}
        for b in blocks:
            for address, w in b.weights.items():
                if w < floor:
                    continue
                weights[address] = weights.get(address, 0) + _clamp(w, max_w)
        return [PayBlock(height=self.top_height(blocks), reward=reward, fees=fees, weights=weights)]

    def apply_fidelity(self, history, fidelity, weight):
        # Summed weights are not comparable to single-height balances.
        if len(history) < int(fidelity):
            return 0
        return int(weight)


class MinMode(ModeStrategy):
    """Lowest weight of voters present in every block of the round."""

    mode = Mode.MIN

    def handle_round(self, blocks, *, min_cap=None, max_cap=None):
        reward, fees = self.round_totals(blocks)
        if reward <= 0 or not blocks:
            return []
        min_w = _cap(min_cap)
        max_w = _cap(max_cap)

        eligible = set(blocks[0].weights)
        for b in blocks[1:]:
            eligible &= set(b.weights)

        weights: Dict[str, int] = {}
        for b in blocks:
            for address, w in b.weights.items():
                if address not in eligible:
                    continue
                if min_w is not None and w < min_w:
                    w = 0
                w = _clamp(w, max_w)
                if address not in weights or w < weights[address]:
                    weights[address] = w

        weights = {a: w for a, w in weights.items() if w > 0}
        return [PayBlock(height=self.top_height(blocks), reward=reward, fees=fees, weights=weights)]


class LastMode(ModeStrategy):
    """Weights of the round's top block, credited with the whole round's reward."""

    mode = Mode.LAST

    def __init__(self, round_size: Optional[int] = None) -> None:
        self.round_size = round_size

    def handle_round(self, blocks, *, min_cap=None, max_cap=None):
        heights = {b.height for b in blocks}
        if self.round_size is not None and len(heights) < int(self.round_size):
            return []
        reward, fees = self.round_totals(blocks)
        if reward <= 0:
            return []
        min_w = _cap(min_cap) or 0
        max_w = _cap(max_cap)
        top = self.top_height(blocks)
        weights: Dict[str, int] = {}
        for b in blocks:
            if b.height != top:
                continue
            for address, w in b.weights.items():
                if w > min_w:
                    weights[address] = _clamp(w, max_w)
        return [PayBlock(height=top, reward=reward, fees=fees, weights=weights)]


def mode_strategy(mode, *, round_size: Optional[int] = None) -> ModeStrategy:
    try:
        m = Mode(mode)
    except ValueError as e:
        raise ConfigurationError(f"unknown mode: {mode!r}") from e
    if m == Mode.CLASSIC:
        return ClassicMode()
    if m == Mode.EVERY:
        return EveryMode()
    if m == Mode.MIN:
        return MinMode()
    return LastMode(round_size=round_size)
