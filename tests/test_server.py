import pytest
from fastapi.testclient import TestClient

from conftest import CLINIC_ID, FAMILY_ID, PARENT_ID
from server import app, get_intent_service
from settlement.intent_service import IntentService


@pytest.fixture
def client(session_factory, solver, family):
    service = IntentService(session_factory, solver=solver)
    app.dependency_overrides[get_intent_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def create(client, **overrides):
    body = {
        "family_id": FAMILY_ID,
        "clinic_id": CLINIC_ID,
        "fiat_amount": "200000",
        "input_method": "LEDGER_BALANCE",
    }
    body.update(overrides)
    return client.post("/intents", json=body)


def test_create_process_and_read_back(client):
    created = create(client)
    assert created.status_code == 200
    intent_id = created.json()["intent_id"]

    processed = client.post(f"/intents/{intent_id}/process")
    assert processed.status_code == 200
    assert processed.json()["status"] == "SETTLED"

    intent = client.get(f"/intents/{intent_id}").json()
    assert intent["status"] == "SETTLED"
    assert intent["settlement_tx_ref"] == "sig-settled-1"


def test_invalid_intent_is_a_400(client):
    response = create(client, input_method="CARD")

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid input method"


def test_unknown_intent_is_a_404(client):
    assert client.get("/intents/missing").status_code == 404
    assert client.post("/intents/missing/process").status_code == 404


def test_failed_settlement_is_reported_in_the_body(client):
    intent_id = create(client, fiat_amount="2000000").json()["intent_id"]

    response = client.post(f"/intents/{intent_id}/process")

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert response.json()["error"].startswith("Insufficient USDC balance")


def test_top_up(client):
    assert client.post("/wallets/top-up", json={"user_id": PARENT_ID, "asset": "SOL", "amount": "1"}).status_code == 200
    assert client.post("/wallets/top-up", json={"user_id": PARENT_ID, "asset": "BTC", "amount": "1"}).status_code == 400


def test_processing_an_intent_held_elsewhere_is_a_409(client, session_factory):
    from settlement.intent_repository import IntentRepository

    intent_id = create(client).json()["intent_id"]
    IntentRepository(session_factory).claim(intent_id, "other-worker:1", 300)

    response = client.post(f"/intents/{intent_id}/process")

    assert response.status_code == 409
