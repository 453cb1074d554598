"""Three-phase creation protocol."""

import re

import pytest
from sqlalchemy import func, select

from topup.core.exceptions import (
    GatewayError,
    InvalidStateTransitionError,
    NotFoundError,
    TopupValidationError,
)
from topup.models import BillingRecord, BillingStatus
from topup.schemas.payment import CreatePaymentRequest, TopupRequest
from topup.services.gateway_service import Created, GatewayResource, MockGatewayClient
from topup.services.payment_orchestrator import PaymentOrchestrator
from topup.storage.billing_store import BillingRecordStore


async def _count(session) -> int:
    return (await session.execute(select(func.count()).select_from(BillingRecord))).scalar_one()


def _create_req(record: BillingRecord, **overrides) -> CreatePaymentRequest:
    data = dict(
        user_id=record.user_id,
        amount=record.amount,
        payment_method=record.payment_method,
        bank=record.bank,
        invoice_id=record.invoice_id,
        external_id=record.external_id,
    )
    data.update(overrides)
    return CreatePaymentRequest(**data)


class _RebindingGateway(MockGatewayClient):
    """Returns a fresh resource id on every call."""

    def __init__(self):
        super().__init__()
        self.n = 0

    async def submit(self, gateway_request):
        self.n += 1
        ref = gateway_request["body"]["referenceId"]
        return Created(GatewayResource(resource_id=f"qr_{self.n}", status="ACTIVE", reference=ref))


class _FailingGateway(MockGatewayClient):
    async def submit(self, gateway_request):
        raise GatewayError("upstream down", status_code=503)


# ---------------- validation ----------------
@pytest.mark.asyncio
async def test_validate_previews_request_without_side_effects(session, user, gateway):
    orch = PaymentOrchestrator(session, gateway)
    preview = await orch.validate(TopupRequest(user_id=user.id, amount=50_000, payment_method="qris"))

    assert preview.topup.amount == 50_000
    assert preview.gateway_request["endpoint"] == "/qr-resources"
    assert preview.gateway_request["body"]["amount"] == 50_000
    assert await _count(session) == 0
    assert gateway.submitted == []


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [9_999, 0, -5, None])
async def test_amount_below_minimum_rejected_in_every_phase(session, user, gateway, amount):
    orch = PaymentOrchestrator(session, gateway)
    req = TopupRequest(user_id=user.id, amount=amount, payment_method="qris")

    with pytest.raises(TopupValidationError):
        await orch.validate(req)
    with pytest.raises(TopupValidationError):
        await orch.pre_create(req)
    with pytest.raises(TopupValidationError):
        await orch.create(CreatePaymentRequest(**req.model_dump(), invoice_id="INV-x"))

    assert await _count(session) == 0
    assert gateway.submitted == []


@pytest.mark.asyncio
async def test_va_requires_known_bank(session, user, gateway):
    orch = PaymentOrchestrator(session, gateway)
    with pytest.raises(TopupValidationError) as ei:
        await orch.pre_create(TopupRequest(user_id=user.id, amount=20_000, payment_method="va"))
    assert ei.value.code == "BANK_REQUIRED"

    with pytest.raises(TopupValidationError) as ei:
        await orch.pre_create(TopupRequest(user_id=user.id, amount=20_000, payment_method="va", bank="hsbc"))
    assert ei.value.code == "BANK_UNSUPPORTED"
    assert await _count(session) == 0


@pytest.mark.asyncio
async def test_unknown_method_and_user(session, user, gateway):
    orch = PaymentOrchestrator(session, gateway)
    with pytest.raises(TopupValidationError):
        await orch.validate(TopupRequest(user_id=user.id, amount=20_000, payment_method="card"))
    with pytest.raises(TopupValidationError):
        await orch.validate(TopupRequest(amount=20_000, payment_method="qris"))
    with pytest.raises(NotFoundError):
        await orch.validate(TopupRequest(user_id="ghost", amount=20_000, payment_method="qris"))


# ---------------- pre-create ----------------
@pytest.mark.asyncio
async def test_pre_create_persists_waiting_record(session, user, gateway):
    orch = PaymentOrchestrator(session, gateway)
    rec = await orch.pre_create(TopupRequest(user_id=user.id, amount=20_000, payment_method="VA", bank="BCA"))

    assert re.match(r"^INV-\d{13}-[0-9a-f]{8}$", rec.invoice_id)
    assert rec.external_id.startswith("saldo-u1001-")
    stored = await BillingRecordStore(session).find_by_invoice_id(rec.invoice_id)
    assert stored.status == BillingStatus.WAITING_PAYMENT.value
    assert stored.payment_method == "va"
    assert stored.bank == "bca"
    assert stored.gateway_resource_id is None
    assert stored.gateway_request["endpoint"] == "/virtual-accounts"
    assert stored.gateway_request["body"]["externalId"] == rec.external_id
    assert stored.gateway_request["body"]["name"] == "Budi Santoso"
    assert gateway.submitted == []


@pytest.mark.asyncio
async def test_qris_drops_bank(session, user, gateway):
    rec = await PaymentOrchestrator(session, gateway).pre_create(
        TopupRequest(user_id=user.id, amount=50_000, payment_method="qris", bank="bca")
    )
    assert rec.bank is None


# ---------------- create ----------------
@pytest.mark.asyncio
async def test_create_attaches_resource_and_retry_converges(session, user, gateway):
    orch = PaymentOrchestrator(session, gateway)
    rec = await orch.pre_create(TopupRequest(user_id=user.id, amount=50_000, payment_method="qris"))

    first = await orch.create(_create_req(rec))
    second = await orch.create(_create_req(rec))

    assert first.already_existed is False
    assert second.already_existed is True
    assert first.resource.resource_id == second.resource.resource_id
    assert first.record.gateway_resource_id == first.resource.resource_id
    assert first.record.qr_string
    assert len(gateway.resources) == 1
    assert len(gateway.submitted) == 2
    # the stored snapshot is what gets submitted
    assert gateway.submitted[0]["body"] == rec.gateway_request["body"]


@pytest.mark.asyncio
async def test_create_va_stores_account_number(session, user, gateway):
    orch = PaymentOrchestrator(session, gateway)
    rec = await orch.pre_create(TopupRequest(user_id=user.id, amount=20_000, payment_method="va", bank="mandiri"))
    result = await orch.create(_create_req(rec))
    assert result.record.account_number.startswith("8888")
    assert result.record.qr_string is None


@pytest.mark.asyncio
async def test_create_unknown_invoice(session, user, gateway):
    req = CreatePaymentRequest(user_id=user.id, amount=20_000, payment_method="qris", invoice_id="INV-nope")
    with pytest.raises(NotFoundError):
        await PaymentOrchestrator(session, gateway).create(req)


@pytest.mark.asyncio
async def test_create_requires_invoice_id(session, user, gateway):
    req = CreatePaymentRequest(user_id=user.id, amount=20_000, payment_method="qris")
    with pytest.raises(TopupValidationError):
        await PaymentOrchestrator(session, gateway).create(req)


@pytest.mark.asyncio
async def test_create_rejects_mismatching_request(session, user, other_user, gateway):
    orch = PaymentOrchestrator(session, gateway)
    rec = await orch.pre_create(TopupRequest(user_id=user.id, amount=50_000, payment_method="qris"))

    for overrides in (
        {"amount": 60_000},
        {"user_id": other_user.id},
        {"payment_method": "va", "bank": "bca"},
        {"external_id": "saldo-someone-else"},
    ):
        with pytest.raises(TopupValidationError) as ei:
            await orch.create(_create_req(rec, **overrides))
        assert ei.value.code == "INVOICE_MISMATCH"
    assert gateway.submitted == []


@pytest.mark.asyncio
async def test_create_on_terminal_record(session, user, gateway):
    orch = PaymentOrchestrator(session, gateway)
    rec = await orch.pre_create(TopupRequest(user_id=user.id, amount=50_000, payment_method="qris"))
    store = BillingRecordStore(session)
    await store.compare_and_set_status(rec.invoice_id, BillingStatus.WAITING_PAYMENT, BillingStatus.CANCELLED)
    await store.commit()

    with pytest.raises(InvalidStateTransitionError):
        await orch.create(_create_req(rec))
    assert gateway.submitted == []


@pytest.mark.asyncio
async def test_differing_resource_id_is_never_stored(session, user):
    gw = _RebindingGateway()
    orch = PaymentOrchestrator(session, gw)
    rec = await orch.pre_create(TopupRequest(user_id=user.id, amount=50_000, payment_method="qris"))

    await orch.create(_create_req(rec))
    with pytest.raises(GatewayError):
        await orch.create(_create_req(rec))

    stored = await BillingRecordStore(session).find_by_invoice_id(rec.invoice_id)
    assert stored.gateway_resource_id == "qr_1"


@pytest.mark.asyncio
async def test_gateway_failure_leaves_record_retryable(session, user):
    orch = PaymentOrchestrator(session, _FailingGateway())
    rec = await orch.pre_create(TopupRequest(user_id=user.id, amount=50_000, payment_method="qris"))

    with pytest.raises(GatewayError):
        await orch.create(_create_req(rec))

    stored = await BillingRecordStore(session).find_by_invoice_id(rec.invoice_id)
    assert stored.status == BillingStatus.WAITING_PAYMENT.value
    assert stored.gateway_resource_id is None
