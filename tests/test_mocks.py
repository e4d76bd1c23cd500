import asyncio
import json
from importlib import reload

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import GATEWAY_SECRET, FakeActivity
from pilgrim_pay import models
from pilgrim_pay.clients.gateway_client import GatewayClient
from pilgrim_pay.config import SettlementOutcome
from pilgrim_pay.contracts.contracts import GatewayInitializeRequest, MailMessage
from pilgrim_pay.errors import NotFound
from pilgrim_pay.settlement import SettlementReconciler


@pytest.fixture
def gateway_module(tmp_path, monkeypatch):
    """
    Load the mock gateway against a disposable SQLite DB with webhooks disabled.
    """
    monkeypatch.setenv("MOCK_GATEWAY_DB_URL", f"sqlite:///{tmp_path / 'gateway.db'}")
    monkeypatch.setenv("GATEWAY_SECRET_KEY", GATEWAY_SECRET)
    monkeypatch.delenv("INTEGRATION_WEBHOOK_URL", raising=False)
    import mock_gateway.main as module

    return reload(module)


@pytest.fixture
def mailer_module(tmp_path, monkeypatch):
    monkeypatch.setenv("MOCK_MAILER_DB_URL", f"sqlite:///{tmp_path / 'mailer.db'}")
    import mock_mailer.main as module

    return reload(module)


def test_gateway_client_against_mock(gateway_module, test_settings):
    gateway = GatewayClient(test_settings)
    gateway.client = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=gateway_module.app), base_url="http://mock-gateway"
    )
    request = GatewayInitializeRequest.for_booking(
        email="payer@example.com",
        amount_minor=250000000,
        reference="RT-0001-1",
        booking_id=1,
        cancel_action="https://example.com/cancel",
        currency="NGN",
    )

    async def scenario():
        try:
            initialized = await gateway.initialize_transaction(request)
            pending = await gateway.verify_transaction("RT-0001-1")
            with pytest.raises(NotFound):
                await gateway.verify_transaction("missing")
            return initialized, pending
        finally:
            await gateway.aclose()

    initialized, pending = asyncio.run(scenario())

    assert initialized.reference == "RT-0001-1"
    assert initialized.authorization_url.endswith(initialized.access_code)
    assert pending.status == "pending"
    assert pending.booking_id == 1


def test_mock_gateway_webhook_is_accepted_by_settlement(gateway_module, db, seed, test_settings, notifier):
    mock = TestClient(gateway_module.app)
    mock.post(
        "/transaction/initialize",
        json={"email": "p@example.com", "amount": 250000000, "reference": "RT-0001-9", "metadata": {"booking_id": 1}},
    )
    event = mock.post("/transaction/RT-0001-9/complete", json={}).json()["data"]
    raw_body = json.dumps(event).encode()

    reconciler = SettlementReconciler(db, test_settings, notifier, FakeActivity())
    result = asyncio.run(reconciler.handle_webhook(raw_body, gateway_module.sign(raw_body)))

    assert result.outcome == SettlementOutcome.SETTLED
    assert db.get(models.Booking, 1).status == "confirmed"


def test_mock_gateway_rejects_duplicate_references(gateway_module):
    mock = TestClient(gateway_module.app)
    body = {"email": "p@example.com", "amount": 100, "reference": "dup"}
    assert mock.post("/transaction/initialize", json=body).status_code == 200
    duplicate = mock.post("/transaction/initialize", json=body)
    assert duplicate.status_code == 400
    assert duplicate.json() == {"status": False, "message": "Duplicate Transaction Reference"}


def test_mock_mailer_accepts_client_payload(mailer_module):
    mock = TestClient(mailer_module.app)
    message = MailMessage(sender="Pilgrim Pay <payments@example.com>", to=["a@example.com"], subject="Hi", html="<p>x</p>")

    resp = mock.post("/emails", json=message.model_dump(by_alias=True))

    assert resp.status_code == 200
    emails = mock.get("/emails").json()
    assert [(e["from"], e["to"], e["subject"]) for e in emails] == [
        ("Pilgrim Pay <payments@example.com>", ["a@example.com"], "Hi")
    ]
    assert mock.post("/admin/clear-db").json() == {"status": "cleared"}
    assert mock.get("/emails").json() == []
