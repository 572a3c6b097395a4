from __future__ import annotations

import json
from pathlib import Path

import pytest

from tbw.errors import PersistenceError
from tbw.ledger.store import HistoryStore, LedgerStore
from tbw.pay.rounds import RoundCalculator
from tbw.runtime.sqlite_db import SqliteDB


A = "D" + "a" * 33
B = "D" + "b" * 33
C = "D" + "c" * 33


def _stores(tmp_path: Path):
    db = SqliteDB(path=str(tmp_path / "tbw.db"))
    return LedgerStore(db=db), HistoryStore(db=db)


def _transfer(tx_id: str, *pairs) -> dict:
    return {
        "id": tx_id,
        "type": "transfer",
        "fee": "10",
        "memo": "",
        "nonce": "1",
        "transfers": [{"recipientId": a, "amount": str(v)} for a, v in pairs],
    }


def _snapshot(ledger: LedgerStore):
    return ledger.range_blocks(0), ledger.range_votes(0)


def _apply(ledger: LedgerStore, height: int, generated: bool, voters: dict) -> None:
    ledger.append_votes(
        height=height,
        round=(height - 1) // 3 + 1,
        reward=100 if generated else 0,
        fees=5 if generated else 0,
        is_generated=generated,
        voters=voters.items(),
        timestamp=1_700_000_000 + height,
    )


def test_append_votes_writes_block_only_when_generated_or_rewarded(tmp_path: Path) -> None:
    ledger, _ = _stores(tmp_path)

    _apply(ledger, 1, False, {A: 10, B: 0})
    _apply(ledger, 2, True, {A: 11, B: 20})
    ledger.append_votes(height=3, round=1, reward=0, fees=0, is_generated=True, voters=[])

    blocks = ledger.range_blocks(1)
    assert [(b.height, b.reward, b.fees) for b in blocks] == [(2, 100, 5), (3, 0, 0)]

    votes = ledger.range_votes(1, 2)
    # Zero weights are never stored.
    assert [(v.height, v.address, v.weight) for v in votes] == [(1, A, 10), (2, A, 11), (2, B, 20)]
    assert ledger.last_block_height() == 2


def test_append_votes_replaces_rows_at_and_above_height(tmp_path: Path) -> None:
    ledger, _ = _stores(tmp_path)
    for h in range(1, 6):
        _apply(ledger, h, h == 4, {A: h, B: 2 * h})

    _apply(ledger, 3, False, {C: 99})

    assert ledger.last_block_height() == 3
    assert ledger.range_blocks(0) == []
    assert [(v.height, v.address) for v in ledger.range_votes(3)] == [(3, C)]


def test_rollback_then_reapply_reproduces_identical_ledger(tmp_path: Path) -> None:
    ledger, _ = _stores(tmp_path)
    script = [(h, h % 3 == 2, {A: 10 * h, B: 7, C: h}) for h in range(1, 13)]
    for h, gen, voters in script:
        _apply(ledger, h, gen, voters)
    before = _snapshot(ledger)

    ledger.delete_from(6)
    assert ledger.last_block_height() == 5

    for h, gen, voters in script[5:]:
        _apply(ledger, h, gen, voters)
    assert _snapshot(ledger) == before


def test_delete_before_prunes_old_rows(tmp_path: Path) -> None:
    ledger, _ = _stores(tmp_path)
    for h in range(1, 6):
        _apply(ledger, h, True, {A: 1})

    ledger.delete_before(4)

    assert [b.height for b in ledger.range_blocks(0)] == [4, 5]
    assert sorted({v.height for v in ledger.range_votes(0)}) == [4, 5]


def test_weights_by_address_groups_window(tmp_path: Path) -> None:
    ledger, _ = _stores(tmp_path)
    for h in range(1, 5):
        _apply(ledger, h, False, {A: h, B: 10} if h != 2 else {A: h})

    assert ledger.weights_by_address(1, 3) == {A: [1, 2, 3], B: [10, 10]}
    assert ledger.weights_by_address(3, 2) == {}


def test_last_paid_height_survives_history_flush(tmp_path: Path) -> None:
    ledger, history = _stores(tmp_path)
    assert ledger.last_paid_height() == 0

    history.add(106, _transfer("t1", (A, 5)))
    history.add(53, _transfer("t2", (B, 5)))
    assert ledger.last_paid_height() == 106

    archive = history.flush()
    assert archive is not None and archive.parent == tmp_path
    saved = json.loads(archive.read_text(encoding="utf-8"))
    assert [s["id"] for s in saved] == ["t1", "t2"]

    assert history.all() == []
    assert ledger.last_paid_height() == 106
    assert history.flush() is None


def test_set_start_wipes_ledger_and_moves_watermark(tmp_path: Path) -> None:
    ledger, history = _stores(tmp_path)
    for h in range(1, 8):
        _apply(ledger, h, True, {A: 1})

    refill_from = ledger.set_start(8, rounds=RoundCalculator(3), fidelity=2)

    # Height 8 is in round 3 (7..9).
    assert refill_from == 5
    assert ledger.last_paid_height() == 6
    assert ledger.range_votes(0) == []
    assert ledger.range_blocks(0) == []


def test_history_rejects_non_transfer_and_duplicate(tmp_path: Path) -> None:
    _, history = _stores(tmp_path)
    with pytest.raises(PersistenceError):
        history.add(1, {"id": "x", "type": "vote"})

    history.add(1, _transfer("dup", (A, 1)))
    with pytest.raises(PersistenceError):
        history.add(2, _transfer("dup", (A, 1)))


def test_history_records_addresses_and_total(tmp_path: Path) -> None:
    _, history = _stores(tmp_path)
    s = history.add(9, _transfer("t", (A, 5), (B, 7), (A, 1)))

    assert s.addresses == [A, B]
    assert s.total_amount == 13
    assert history.get("t") == s
