"""HTTP surface via httpx.AsyncClient + ASGITransport."""

import json

import pytest

from topup.core.config import settings
from topup.core.exceptions import GatewayError
import topup.main as main_mod
from topup.services.gateway_service import MockGatewayClient, compute_callback_signature, get_gateway_client

BASE = "/payments"


async def _pre_create(client, user_id, amount=50_000, method="qris", bank=None):
    body = {"userId": user_id, "amount": amount, "paymentMethod": method}
    if bank:
        body["bank"] = bank
    r = await client.post(f"{BASE}/pre-create", json=body)
    assert r.status_code == 200, r.text
    return body, r.json()


@pytest.mark.asyncio
async def test_full_qris_flow(client, user):
    r = await client.post(f"{BASE}/validate", json={"userId": user.id, "amount": 50_000, "paymentMethod": "qris"})
    assert r.status_code == 200, r.text
    assert r.json()["gatewayRequest"]["body"]["type"] == "DYNAMIC"

    body, pre = await _pre_create(client, user.id)
    assert pre["status"] == "waiting_payment"
    assert pre["invoiceId"].startswith("INV-")

    r = await client.post(
        f"{BASE}/create", json={**body, "invoiceId": pre["invoiceId"], "externalId": pre["externalId"]}
    )
    assert r.status_code == 200, r.text
    created = r.json()
    assert created["qrString"]
    assert created["alreadyExisted"] is False
    payment_id = created["paymentId"]

    r = await client.get(f"{BASE}/status/{payment_id}")
    assert r.status_code == 200
    assert r.json()["status"] == "PENDING"

    r = await client.post(f"{BASE}/callback", json={"status": "COMPLETED", "qrResourceId": payment_id})
    assert r.status_code == 200
    assert r.json() == {
        "success": True,
        "outcome": "credited",
        "invoiceId": pre["invoiceId"],
        "creditedAmount": 50_000,
    }

    r = await client.post(f"{BASE}/callback", json={"status": "COMPLETED", "qrResourceId": payment_id})
    assert r.status_code == 200
    assert r.json()["outcome"] == "duplicate"

    status = (await client.get(f"{BASE}/status/{pre['invoiceId']}")).json()
    assert status["status"] == "PAID"
    assert status["paymentTime"]

    notes = (await client.get(f"{BASE}/notifications/{user.id}")).json()
    assert [n["invoiceId"] for n in notes["notifications"]] == [pre["invoiceId"]]
    assert (await client.get(f"{BASE}/notifications/{user.id}")).json()["notifications"] == []

    hist = (await client.get(f"{BASE}/history/{user.id}")).json()
    assert hist["items"][0]["paymentId"] == payment_id
    assert hist["items"][0]["status"] == "PAID"


@pytest.mark.asyncio
async def test_va_cancel_then_late_callback(client, user):
    body, pre = await _pre_create(client, user.id, amount=20_000, method="va", bank="bca")
    r = await client.post(f"{BASE}/create", json={**body, "invoiceId": pre["invoiceId"]})
    assert r.status_code == 200, r.text
    assert r.json()["accountNumber"]

    r = await client.post(f"{BASE}/cancel/{pre['invoiceId']}")
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"

    r = await client.post(f"{BASE}/callback", json={"status": "PAID", "externalId": pre["externalId"]})
    assert r.status_code == 200
    assert r.json()["outcome"] == "ignored"
    assert r.json()["creditedAmount"] == 0


@pytest.mark.asyncio
async def test_amount_too_low_is_problem_json(client, user):
    r = await client.post(f"{BASE}/pre-create", json={"userId": user.id, "amount": 5_000, "paymentMethod": "qris"})
    assert r.status_code == 422
    assert r.headers["content-type"].startswith("application/problem+json")
    assert r.json()["code"] == "AMOUNT_TOO_LOW"


@pytest.mark.asyncio
async def test_va_without_bank(client, user):
    r = await client.post(f"{BASE}/validate", json={"userId": user.id, "amount": 20_000, "paymentMethod": "va"})
    assert r.status_code == 422
    assert r.json()["code"] == "BANK_REQUIRED"


@pytest.mark.asyncio
async def test_unknown_user_and_payment(client):
    r = await client.post(f"{BASE}/validate", json={"userId": "ghost", "amount": 20_000, "paymentMethod": "qris"})
    assert r.status_code == 404
    assert (await client.get(f"{BASE}/status/mock-payment-123")).status_code == 404
    assert (await client.post(f"{BASE}/cancel/mock-payment-123")).status_code == 404


@pytest.mark.asyncio
async def test_cancel_paid_conflict(client, user):
    body, pre = await _pre_create(client, user.id)
    created = (await client.post(f"{BASE}/create", json={**body, "invoiceId": pre["invoiceId"]})).json()
    await client.post(f"{BASE}/callback", json={"status": "COMPLETED", "qrResourceId": created["paymentId"]})

    r = await client.post(f"{BASE}/cancel/{created['paymentId']}")
    assert r.status_code == 409
    problem = r.json()
    assert problem["code"] == "INVALID_STATE_TRANSITION"
    assert problem["extra"]["current_status"] == "paid"


@pytest.mark.asyncio
async def test_callback_unknown_and_malformed_acknowledged(client):
    r = await client.post(f"{BASE}/callback", json={"status": "COMPLETED", "qrResourceId": "qr_nope"})
    assert r.status_code == 200
    assert r.json()["outcome"] == "unknown"

    r = await client.post(
        f"{BASE}/callback", content=b"not json", headers={"content-type": "application/json"}
    )
    assert r.status_code == 200
    assert r.json()["outcome"] == "ignored"


@pytest.mark.asyncio
async def test_callback_signature_enforced_when_enabled(client, user, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_VERIFY_SIGNATURE", True)
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_test")
    payload = json.dumps({"status": "COMPLETED", "qrResourceId": "qr_nope"}).encode()

    r = await client.post(f"{BASE}/callback", content=payload, headers={"X-Callback-Signature": "bad"})
    assert r.status_code == 401
    assert r.json()["code"] == "INVALID_SIGNATURE"

    sig = compute_callback_signature(payload, "whsec_test")
    r = await client.post(
        f"{BASE}/callback",
        content=payload,
        headers={"X-Callback-Signature": sig, "content-type": "application/json"},
    )
    assert r.status_code == 200
    assert r.json()["outcome"] == "unknown"


class _DownGateway(MockGatewayClient):
    def __init__(self, timeout: bool):
        super().__init__()
        self.timeout = timeout

    async def submit(self, gateway_request):
        raise GatewayError("gateway unavailable", status_code=None if self.timeout else 503, timeout=self.timeout)


@pytest.mark.asyncio
@pytest.mark.parametrize("timeout,expected", [(False, 502), (True, 504)])
async def test_gateway_failures_map_to_upstream_errors(app, client, user, timeout, expected):
    app.dependency_overrides[get_gateway_client] = lambda: _DownGateway(timeout)
    body, pre = await _pre_create(client, user.id)

    r = await client.post(f"{BASE}/create", json={**body, "invoiceId": pre["invoiceId"]})
    assert r.status_code == expected
    assert r.json()["code"] == ("GATEWAY_TIMEOUT" if timeout else "GATEWAY_ERROR")

    # still retryable
    assert (await client.get(f"{BASE}/status/{pre['invoiceId']}")).json()["status"] == "PENDING"


@pytest.mark.asyncio
async def test_health_and_request_id(client, monkeypatch):
    async def _ok():
        return {"ok": True, "dialect": "sqlite"}

    monkeypatch.setattr(main_mod, "health_check_db_async", _ok)
    r = await client.get("/health", headers={"X-Request-ID": "rid-42"})
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.headers["x-request-id"] == "rid-42"


@pytest.mark.asyncio
async def test_openapi_documents_problem_responses(client):
    r = await client.get("/openapi.json")
    assert r.status_code == 200
    doc = r.json()
    assert "ErrorResponse" in doc["components"]["schemas"]
    assert "404" in doc["paths"]["/payments/status/{payment_id}"]["get"]["responses"]
