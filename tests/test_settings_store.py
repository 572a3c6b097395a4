from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from tbw.crypto.keys import public_key_from_passphrase, sign_message, verify_message
from tbw.errors import ConfigurationError, SettingsValidationError
from tbw.ledger.settings import Settings, SettingsStore, is_valid_address, validate_settings
from tbw.ledger.types import Mode


A = "D" + "a" * 33
B = "D" + "b" * 33
C = "D" + "c" * 33


def _store(tmp_path: Path) -> SettingsStore:
    s = SettingsStore(str(tmp_path / "config.json"))
    s.create_default()
    return s


def test_address_validation() -> None:
    assert is_valid_address(A)
    assert not is_valid_address("D" + "0" * 33)
    assert not is_valid_address(A[:-1])
    assert not is_valid_address(None)


def test_defaults_round_trip_and_file_mode(tmp_path: Path) -> None:
    store = _store(tmp_path)
    s = store.read()
    assert s.mode == Mode.CLASSIC
    assert s.sharing == 0
    assert s.pay_fees == "n"
    assert s.reserve == {}
    assert oct(os.stat(store.path).st_mode & 0o777) == oct(0o600)


def test_missing_or_corrupt_file_is_configuration_error(tmp_path: Path) -> None:
    store = SettingsStore(str(tmp_path / "nope.json"))
    with pytest.raises(ConfigurationError):
        store.read()
    assert store.get() is None

    store.path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        store.read()


def test_legacy_mode_index_is_accepted() -> None:
    assert validate_settings({"mode": 2}).mode == Mode.MIN
    with pytest.raises(SettingsValidationError):
        validate_settings({"mode": 9})


@pytest.mark.parametrize(
    "reserve, ok",
    [
        ({}, True),
        ({A: 100}, True),
        ({A: 60, B: 40}, True),
        ({A: 60, B: 30}, False),
        ({A: 60, B: 50}, False),
        ({A: 0, B: 100}, False),
    ],
)
def test_reserve_must_sum_to_zero_or_hundred(reserve: dict, ok: bool) -> None:
    if ok:
        assert validate_settings({"reserve": reserve}).reserve == reserve
    else:
        with pytest.raises(SettingsValidationError):
            validate_settings({"reserve": reserve})


def test_routes_single_hop_and_no_self_route() -> None:
    assert validate_settings({"routes": {A: B}}).routes == {A: B}
    with pytest.raises(SettingsValidationError):
        validate_settings({"routes": {A: A}})
    with pytest.raises(SettingsValidationError):
        validate_settings({"routes": {A: B, B: C}})


def test_bounds_and_unknown_fields_rejected() -> None:
    for bad in ({"sharing": 101}, {"extra_fee": -1}, {"max_cap": 0}, {"fidelity": 0}, {"memo": "x" * 256}):
        with pytest.raises(SettingsValidationError):
            validate_settings(bad)
    with pytest.raises(SettingsValidationError):
        validate_settings({"pay_fees": "yes"})
    with pytest.raises(SettingsValidationError) as ei:
        validate_settings({"colour": "blue"})
    assert ei.value.details["errors"]


def test_second_passphrase_requires_first() -> None:
    with pytest.raises(SettingsValidationError):
        validate_settings({"second_passphrase": "two"})


def test_invalid_write_keeps_previous_file(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.update(sharing=90, blacklist=[A])
    before = store.path.read_text(encoding="utf-8")

    with pytest.raises(SettingsValidationError):
        store.update(sharing=150)
    with pytest.raises(SettingsValidationError):
        store.add_to_blacklist(A)

    s = store.read()
    s.whitelist.append("not-an-address")
    with pytest.raises(SettingsValidationError):
        store.write(s)

    assert store.path.read_text(encoding="utf-8") == before
    assert [p.name for p in tmp_path.iterdir()] == ["config.json"]


def test_list_route_and_reserve_helpers(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_to_blacklist(A)
    store.add_to_whitelist(B)
    store.add_route(C, B)
    store.set_reserve({A: 25, B: 75})

    s = store.read()
    assert (s.blacklist, s.whitelist, s.routes) == ([A], [B], {C: B})
    assert list(s.reserve.items()) == [(A, 25), (B, 75)]

    store.remove_from_blacklist(A)
    store.clear_whitelist()
    store.remove_route(C)
    s = store.read()
    assert (s.blacklist, s.whitelist, s.routes) == ([], [], {})

    raw = json.loads(store.path.read_text(encoding="utf-8"))
    assert list(raw["reserve"]) == [A, B]


def test_public_settings_mask_passphrases(tmp_path: Path) -> None:
    store = _store(tmp_path)
    s = store.update(passphrase="delegate secret")
    pub = s.public_settings()
    assert pub["passphrase"] == "***"
    assert pub["second_passphrase"] is None
    assert store.delegate_public_key() == public_key_from_passphrase("delegate secret")


def test_passphrase_keys_sign_and_verify() -> None:
    pk = public_key_from_passphrase("alpha")
    assert len(pk) == 64
    assert pk == public_key_from_passphrase("alpha")
    sig = sign_message(b"payload", "alpha")
    assert verify_message(b"payload", sig, pk)
    assert not verify_message(b"other", sig, pk)
    assert not verify_message(b"payload", sig, public_key_from_passphrase("beta"))
