"""
支付回调接口测试
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from freshbox.main import app
from freshbox.models.payment import ReconcileOutcome, ReconcileResult

ACK = {"code": "00", "desc": "success"}


@pytest.fixture
def client():
    # 不进入上下文，避免启动时连接数据库和Redis
    return TestClient(app)


@pytest.fixture
def reconcile():
    mock = AsyncMock(return_value=ReconcileResult(outcome=ReconcileOutcome.APPLIED, order_id="ORDER_1"))
    with patch("freshbox.api.payments.payment_service.reconcile", mock):
        yield mock


def test_webhook_acknowledges_and_reconciles(client, reconcile):
    body = {"orderCode": 123, "status": "PAID", "amount": 1000, "signature": "abc"}

    response = client.post("/api/payos/webhook", json=body)

    assert response.status_code == 200
    assert response.json() == ACK
    reconcile.assert_awaited_once_with(body)


def test_webhook_unwraps_data_envelope(client, reconcile):
    body = {
        "code": "00",
        "desc": "success",
        "data": {"orderCode": 123, "status": "PAID", "amount": 1000},
        "signature": "abc"
    }

    client.post("/api/payos/webhook", json=body)

    reconcile.assert_awaited_once_with({"orderCode": 123, "status": "PAID", "amount": 1000, "signature": "abc"})


def test_webhook_rejected_still_acknowledged(client, reconcile):
    reconcile.return_value = ReconcileResult(outcome=ReconcileOutcome.REJECTED, reason="INVALID_SIGNATURE")

    response = client.post("/api/payos/webhook", json={"orderCode": 1, "status": "PAID", "amount": 1})

    assert response.json() == ACK


def test_webhook_internal_error_still_acknowledged(client, reconcile):
    reconcile.side_effect = RuntimeError("database unavailable")

    response = client.post("/api/payos/webhook", json={"orderCode": 1, "status": "PAID", "amount": 1})

    assert response.status_code == 200
    assert response.json() == ACK


def test_webhook_invalid_json(client, reconcile):
    response = client.post(
        "/api/payos/webhook",
        content=b"not json",
        headers={"Content-Type": "application/json"}
    )

    assert response.json() == ACK
    reconcile.assert_not_awaited()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_database_health_without_connections(client):
    response = client.get("/health/database")

    assert response.status_code == 200
    assert response.json()["overall"] is False
