from __future__ import annotations

import random

from tbw.ledger.settings import Settings
from tbw.ledger.types import PayBlock
from tbw.pay.distribution import Paytable, distribute_block, eligible_weights
from tbw.pay.modes import ClassicMode, EveryMode, LastMode, MinMode


A = "D" + "a" * 33
B = "D" + "b" * 33
C = "D" + "c" * 33
R = "D" + "r" * 33


def test_sharing_fifty_single_voter_is_exact() -> None:
    pt = Paytable()
    paid = distribute_block(
        pt,
        PayBlock(height=10, reward=100, fees=0, weights={A: 123}),
        settings=Settings(sharing=50),
        strategy=ClassicMode(),
    )
    assert paid == 50
    assert pt.entries == {A: 50}
    assert pt.total == 50
    assert pt.max_height == 10


def test_fees_only_count_when_pay_fees_is_enabled() -> None:
    block = PayBlock(height=1, reward=100, fees=20, weights={A: 1})

    pt = Paytable()
    distribute_block(pt, block, settings=Settings(sharing=100), strategy=ClassicMode())
    assert pt.total == 100

    pt = Paytable()
    distribute_block(pt, block, settings=Settings(sharing=100, pay_fees="y"), strategy=ClassicMode())
    assert pt.total == 120


def test_payouts_never_exceed_shared_reward() -> None:
    rng = random.Random(1549)
    strategies = [ClassicMode(), EveryMode(), MinMode(), LastMode()]
    for _ in range(200):
        weights = {f"D{i:033d}".replace("0", "x"): rng.randint(1, 10**12) for i in range(1, rng.randint(2, 12))}
        reward = rng.randint(1, 10**10)
        sharing = rng.randint(0, 100)
        pt = Paytable()
        paid = distribute_block(
            pt,
            PayBlock(height=5, reward=reward, fees=0, weights=weights),
            settings=Settings(sharing=sharing),
            strategy=rng.choice(strategies),
        )
        assert paid * 100 <= reward * sharing
        assert pt.total == paid == sum(pt.entries.values())


def test_lists_and_routes_apply_after_fidelity() -> None:
    settings = Settings(sharing=100, blacklist=[B], routes={C: R}, fidelity=2)
    block = PayBlock(height=10, reward=1000, fees=0, weights={A: 100, B: 100, C: 300})
    history = {A: [100, 60], B: [100, 100], C: [300, 300]}

    wallets = eligible_weights(block, settings=settings, strategy=ClassicMode(), history=history)

    assert wallets == [(A, 60), (R, 300)]

    pt = Paytable()
    distribute_block(pt, block, settings=settings, strategy=ClassicMode(), history=history)
    assert pt.entries == {A: 1000 * 60 // 360, R: 1000 * 300 // 360}
    assert C not in pt.entries


def test_whitelist_keeps_only_listed_voters() -> None:
    settings = Settings(sharing=100, whitelist=[A])
    pt = Paytable()
    distribute_block(
        pt, PayBlock(height=3, reward=90, fees=0, weights={A: 1, B: 2}), settings=settings, strategy=ClassicMode()
    )
    assert pt.entries == {A: 90}


def test_zero_total_weight_skips_block_but_moves_max_height() -> None:
    pt = Paytable()
    paid = distribute_block(
        pt,
        PayBlock(height=42, reward=100, fees=0, weights={A: 10}),
        settings=Settings(sharing=100, fidelity=3),
        strategy=ClassicMode(),
        history={A: [10]},
    )
    assert paid == 0
    assert pt.entries == {}
    assert pt.max_height == 42


def test_paytable_accumulates_across_blocks_in_first_credit_order() -> None:
    pt = Paytable()
    s = Settings(sharing=100)
    distribute_block(pt, PayBlock(height=1, reward=10, fees=0, weights={B: 1}), settings=s, strategy=ClassicMode())
    distribute_block(pt, PayBlock(height=2, reward=10, fees=0, weights={A: 1, B: 1}), settings=s, strategy=ClassicMode())

    assert list(pt.entries) == [B, A]
    assert pt.entries == {B: 15, A: 5}

    wire = pt.to_wire()
    assert wire == {"paytable": {B: "15", A: "5"}, "total": "20", "max_height": 2}
    assert Paytable.from_wire(wire) == pt
