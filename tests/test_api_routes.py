from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from tbw.api.app import attach_runtime, create_app
from tbw.ledger.types import SettlementStatus


VOTER_A = "D" + "a" * 33


@pytest.fixture
def client(world):
    app = create_app(boot_runtime=False)
    attach_runtime(app, cfg=world.cfg, host=world.host, use_worker_process=False)
    with TestClient(app) as c:
        yield c


def test_bare_app_reports_not_ready() -> None:
    app = create_app(boot_runtime=False)
    with TestClient(app) as c:
        r = c.get("/health")
        assert r.status_code == 200
        assert r.json() == {"ok": True, "ready": False}

        r = c.post("/pay")
        assert r.status_code == 500
        assert r.json()["error"]["kind"] == "not_ready"


def test_health_reports_ledger_heights(world, client) -> None:
    world.apply_range(1, 4)
    body = client.get("/health").json()
    assert body["ready"] is True
    assert body["last_block_height"] == 4
    assert body["last_paid_height"] == 0


def test_pay_returns_settlements_with_string_amounts(world, client) -> None:
    world.apply_range(1, 7)

    r = client.post("/pay")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["total"] == str(10**9)
    assert body["fees"] == "92"
    assert body["max_height"] == 5
    assert len(body["settlements"]) == 1

    assert client.get("/health").json()["last_paid_height"] == 5


def test_pay_maps_domain_errors_to_status_codes(world, client) -> None:
    world.apply_range(1, 7)
    world.wallet.balance = 1

    r = client.post("/pay")
    assert r.status_code == 409
    body = r.json()
    assert body["success"] is False
    assert body["error"]["kind"] == "insufficient_balance"
    assert body["error"]["details"]["balance"] == "1"


def test_repay_and_unknown_id(world, client) -> None:
    world.apply_range(1, 7)
    world.host.fail_all = "down"
    tx_id = client.post("/pay").json()["settlements"][0]
    world.host.fail_all = None

    r = client.post("/repay", json={"id": tx_id})
    assert r.status_code == 200
    assert r.json() == {"success": True, "id": tx_id}
    assert world.history.get(tx_id).status == SettlementStatus.ACCEPTED

    r = client.post("/repay", json={"id": "f" * 64})
    assert r.status_code == 404
    assert r.json()["error"]["kind"] == "not_found"


def test_unpaid_preview(world, client) -> None:
    world.apply_range(1, 7)

    r = client.post("/unpaid", json={"username": "alice"})
    assert r.status_code == 200
    body = r.json()
    assert body["paytable"][VOTER_A] == "250000000"
    assert body["max_height"] == 5

    assert client.post("/unpaid", json={"username": "mallory"}).status_code == 404


def test_rollback_reopens_confirmed_settlements(world, client) -> None:
    world.apply_range(1, 7)
    tx_id = client.post("/pay").json()["settlements"][0]
    world.host.forge_pool(8)
    world.apply(8)

    r = client.post("/rollback", json={"height": 8})
    assert r.json() == {"success": True, "reopened": 1}
    assert world.history.get(tx_id).status == SettlementStatus.ACCEPTED
    assert world.host.rollbacks == [8]
    assert world.host.last_height() == 7


def test_invalid_bodies_are_bad_requests(client) -> None:
    for path, payload in (("/rollback", {"height": 0}), ("/repay", {}), ("/unpaid", {"username": 5})):
        r = client.post(path, json=payload)
        assert r.status_code == 400, path
        assert r.json()["error"]["kind"] == "invalid_request"


def test_metrics_exposition(world, client) -> None:
    world.apply_range(1, 2)
    text = client.get("/metrics").text
    assert "# TYPE tbw_blocks_applied counter" in text
    assert "tbw_blocks_applied 2" in text
    assert "tbw_ledger_last_height 2" in text


def test_lifespan_reconciles_ledger_with_host(world) -> None:
    world.apply_range(1, 6)
    world.host.height = 3

    app = create_app(boot_runtime=False)
    attach_runtime(app, cfg=world.cfg, host=world.host, use_worker_process=False)
    with TestClient(app) as c:
        assert c.get("/health").json()["last_block_height"] == 3


def test_host_factory_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    from tbw.api import app as api_app
    from tbw.errors import ConfigurationError
    from tbw.host import MemoryChainHost

    monkeypatch.delenv("TBW_HOST_FACTORY", raising=False)
    assert isinstance(api_app.build_host(), MemoryChainHost)

    monkeypatch.setenv("TBW_HOST_FACTORY", "tbw.host:MemoryChainHost")
    assert isinstance(api_app.build_host(), MemoryChainHost)

    monkeypatch.setenv("TBW_HOST_FACTORY", "tbw.host")
    with pytest.raises(ConfigurationError):
        api_app.build_host()


def test_booted_app_ingests_host_block_events(world) -> None:
    from tbw.host import BlockEvent, MemoryChainHost

    host = MemoryChainHost()
    wallet = host.register_delegate(passphrase="delegate secret words", username="alice", balance=0)
    host.set_voters("alice", {VOTER_A: 5})

    app = create_app(cfg=world.cfg, host=host)
    with TestClient(app) as c:
        for h in range(1, 5):
            generator = wallet.public_key if h == 2 else "f" * 64
            host.apply_block(BlockEvent(height=h, generator_public_key=generator, reward=10))
        assert c.get("/health").json()["last_block_height"] == 4
        assert "tbw_blocks_applied 4" in c.get("/metrics").text

        host.revert_block(3)
        assert c.get("/health").json()["last_block_height"] == 2
        assert app.state.ledger.range_blocks(1)[0].reward == 10
