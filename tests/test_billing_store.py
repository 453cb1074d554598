import pytest

from topup.core.exceptions import DuplicateInvoiceError
from topup.models import BillingRecord, BillingStatus
from topup.storage.billing_store import BillingRecordStore


@pytest.mark.asyncio
async def test_create_and_find(session, user):
    store = BillingRecordStore(session)
    rec = BillingRecord(
        invoice_id="INV-1",
        external_id="saldo-u1001-1",
        user_id=user.id,
        amount=50_000,
        currency="idr",
        payment_method="qris",
        gateway_request={"endpoint": "/qr-resources", "body": {"referenceId": "saldo-u1001-1"}},
    )
    await store.create(rec)
    await store.commit()

    found = await store.find_by_invoice_id("INV-1")
    assert found is not None
    assert found.status == BillingStatus.WAITING_PAYMENT.value
    assert found.currency == "IDR"
    assert (await store.find_by_external_id("saldo-u1001-1")).invoice_id == "INV-1"
    assert await store.find_by_invoice_id("INV-missing") is None


@pytest.mark.asyncio
async def test_duplicate_invoice_rejected(session, user, make_record):
    existing = await make_record(user.id)
    store = BillingRecordStore(session)
    dup = BillingRecord(
        invoice_id=existing.invoice_id,
        external_id="saldo-other",
        user_id=user.id,
        amount=10_000,
        payment_method="qris",
        gateway_request={},
    )
    with pytest.raises(DuplicateInvoiceError):
        await store.create(dup)


@pytest.mark.asyncio
async def test_compare_and_set_only_one_winner(session, user, make_record):
    rec = await make_record(user.id)
    store = BillingRecordStore(session)

    assert await store.compare_and_set_status(rec.invoice_id, BillingStatus.WAITING_PAYMENT, BillingStatus.PAID)
    assert not await store.compare_and_set_status(
        rec.invoice_id, BillingStatus.WAITING_PAYMENT, BillingStatus.CANCELLED
    )
    await store.commit()

    assert (await store.find_by_invoice_id(rec.invoice_id)).status == "paid"


@pytest.mark.asyncio
async def test_compare_and_set_rejects_foreign_fields(session, user, make_record):
    rec = await make_record(user.id)
    with pytest.raises(ValueError):
        await BillingRecordStore(session).compare_and_set_status(
            rec.invoice_id, BillingStatus.WAITING_PAYMENT, BillingStatus.PAID, {"amount": 1}
        )


@pytest.mark.asyncio
async def test_compare_and_set_rejects_moves_out_of_terminal(session, user, make_record):
    rec = await make_record(user.id)
    with pytest.raises(ValueError):
        await BillingRecordStore(session).compare_and_set_status(
            rec.invoice_id, BillingStatus.PAID, BillingStatus.CANCELLED
        )


@pytest.mark.asyncio
async def test_attach_gateway_resource_is_idempotent_but_never_rebinds(session, user, make_record):
    rec = await make_record(user.id)
    store = BillingRecordStore(session)

    assert await store.attach_gateway_resource(rec.invoice_id, "qr_1", {"qr_string": "000201"})
    assert await store.attach_gateway_resource(rec.invoice_id, "qr_1")
    assert not await store.attach_gateway_resource(rec.invoice_id, "qr_2")
    await store.commit()

    found = await store.find_by_invoice_id(rec.invoice_id)
    assert found.gateway_resource_id == "qr_1"
    assert found.qr_string == "000201"


@pytest.mark.asyncio
async def test_find_by_payment_id_accepts_any_known_id(session, user, make_record):
    rec = await make_record(user.id)
    store = BillingRecordStore(session)
    await store.attach_gateway_resource(rec.invoice_id, "qr_abc")
    await store.commit()

    for pid in (rec.invoice_id, "qr_abc", rec.external_id):
        assert (await store.find_by_payment_id(pid)).invoice_id == rec.invoice_id
    assert await store.find_by_payment_id("nope") is None
    assert await store.find_by_payment_id("  ") is None


@pytest.mark.asyncio
async def test_list_for_user_newest_first(session, user, other_user, make_record):
    first = await make_record(user.id, amount=10_000)
    second = await make_record(user.id, amount=20_000)
    await make_record(other_user.id)

    items = await BillingRecordStore(session).list_for_user(user.id)
    assert [r.invoice_id for r in items] == [second.invoice_id, first.invoice_id]
