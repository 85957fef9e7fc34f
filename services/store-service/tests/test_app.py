from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from store_service.app import build_gateway, build_notifier, create_app
from store_service.config import Settings
from store_service.gateway_client import GatewayStatus, HTTPGatewayClient, map_gateway_status
from store_service.notifier import LogNotifier


class ScriptedGateway:
    def __init__(self, statuses=None):
        self.statuses = dict(statuses or {})

    def check_status(self, reference, amount=None, channel=None):
        raw = self.statuses.get(reference, "pending")
        return GatewayStatus(reference=reference, verdict=map_gateway_status(raw), raw_status=raw)


class RecordingNotifier:
    def __init__(self):
        self.messages = []
        self.closed = False

    def publish(self, channel, payload):
        self.messages.append((channel, payload))

    def close(self):
        self.closed = True


@pytest.fixture()
def gateway():
    return ScriptedGateway()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def app(tmp_path, gateway, notifier):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'store.db'}",
        scheduler_enabled=False,
        sync_pace_seconds=0.0,
        payment_timeout_minutes_client=20,
    )
    return create_app(settings, gateway=gateway, notifier=notifier)


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_payment_config_serves_client_timeout(client):
    assert client.get("/config/payment").json() == {"payment_timeout_minutes": 20}


def test_scheduler_not_started_when_disabled(app, client):
    assert app.state.scheduler.running is False


def test_manual_sync_reports_pass(app, client, gateway, notifier):
    repo = app.state.repository
    repo.create_transaction("ORD-1", 10000.0)
    repo.create_transaction("ORD-2", 10000.0)
    gateway.statuses["ORD-1"] = "paid"

    response = client.post("/payments/sync")

    assert response.status_code == 200
    body = response.json()
    assert body["checked"] == 2
    assert body["updated"] == 1
    assert body["failed"] == 0
    assert body["gateway_errors"] == 0
    assert {outcome["reference"]: outcome["result"] for outcome in body["outcomes"]} == {
        "ORD-1": "updated",
        "ORD-2": "unchanged",
    }
    assert notifier.messages[0][0] == "payment:ORD-1"


def test_status_requires_a_key(client):
    response = client.get("/payments/status")
    assert response.status_code == 400


def test_status_unknown_payment(client):
    response = client.get("/payments/status", params={"order_id": "nope"})
    assert response.status_code == 404


def test_status_reconciles_pending_deposit(app, client, gateway):
    user = app.state.repository.create_user("erin")
    app.state.repository.create_deposit("DEP-1", 30000.0, user_id=user.id)
    gateway.statuses["DEP-1"] = "Success"

    response = client.get("/payments/status", params={"ref_id": "DEP-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["type"] == "deposit"
    assert body["payment"]["reference"] == "DEP-1"
    assert body["payment"]["status"] == "success"
    assert app.state.repository.get_user(user.id).balance == 30000.0


def test_status_expires_overdue_transaction(app, client):
    created = datetime.now(timezone.utc) - timedelta(minutes=30)
    app.state.repository.create_transaction("ORD-3", 5000.0, created_at=created)

    response = client.get("/payments/status", params={"order_id": "ORD-3"})

    assert response.status_code == 200
    assert response.json()["type"] == "transaction"
    assert response.json()["payment"]["status"] == "expired"


def test_refund_endpoint(app, client, gateway):
    app.state.repository.create_transaction("ORD-4", 7500.0)

    assert client.post("/transactions/ORD-4/refund").status_code == 400
    assert client.post("/transactions/ORD-missing/refund").status_code == 404

    gateway.statuses["ORD-4"] = "paid"
    client.post("/payments/sync")
    response = client.post("/transactions/ORD-4/refund")

    assert response.status_code == 200
    assert response.json()["status"] == "refund"
    assert response.json()["amount"] == 7500.0


def test_build_gateway_modes():
    assert isinstance(
        build_gateway(Settings(gateway_mode="http", gateway_merchant_id="m", gateway_secret="s")),
        HTTPGatewayClient,
    )
    with pytest.raises(RuntimeError):
        build_gateway(Settings(gateway_mode="http"))


def test_build_notifier_log_mode():
    assert isinstance(build_notifier(Settings(notifier_mode="log")), LogNotifier)


def test_shutdown_closes_built_clients_only(tmp_path, notifier):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'store.db'}",
        scheduler_enabled=False,
        gateway_mode="http",
        gateway_merchant_id="m",
        gateway_secret="s",
    )
    app = create_app(settings, notifier=notifier)

    with TestClient(app):
        assert app.state.gateway._client.is_closed is False

    assert app.state.gateway._client.is_closed is True
    assert notifier.closed is False
