"""Status endpoint tests."""

from decimal import Decimal

from conftest import make_bet
from fastapi.testclient import TestClient

from podsettle.api.main import create_app
from podsettle.config import Settings
from podsettle.models import Outcome


def _client(store):
    return TestClient(create_app(Settings(), store=store, with_service=False))


def test_health(temp_store):
    with _client(temp_store) as client:
        assert client.get("/health").json() == {"status": "ok"}


def test_unknown_bet_is_404(temp_store):
    with _client(temp_store) as client:
        resp = client.get("/api/bet/999")
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Bet 999 not found.", "code": "not_found"}


def test_bet_projection(temp_store):
    temp_store.create(make_bet(5))
    with _client(temp_store) as client:
        data = client.get("/api/bet/5").json()
    assert data["betId"] == 5
    assert data["tokenAddress"] == "0x00000000000000000000000000000000000000a1"
    assert data["initialPrice"] is None
    assert data["finalPrice"] is None
    assert data["settled"] is False
    assert data["outcome"] is None
    assert data["state"] == "AwaitingInitialSample"


def test_settled_bet_projection(temp_store):
    temp_store.create(make_bet(6))
    temp_store.set_field(6, "initial_price", Decimal("100"))
    temp_store.set_field(6, "final_price", Decimal("100"))
    temp_store.set_field(6, "outcome", Outcome.NO_CHANGE)
    temp_store.claim_settlement(6)
    temp_store.mark_settled(6, "0xbeef")
    with _client(temp_store) as client:
        data = client.get("/api/bet/6").json()
    assert data["outcome"] == "No Change"
    assert data["settled"] is True
    assert data["state"] == "Settled"
    assert data["settlementTx"] == "0xbeef"
    assert Decimal(data["finalPrice"]) == Decimal("100")
