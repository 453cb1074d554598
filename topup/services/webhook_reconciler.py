"""
Gateway callback reconciliation.

A completion callback credits the user's balance only when this call moves the
record waiting_payment -> paid. The status change, the balance increment and
the notification are committed together, so replays and a concurrent
cancellation can never produce a second credit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from topup.core.logging import audit_logger, get_logger
from topup.models.base import utc_now
from topup.models.billing import BillingRecord, BillingStatus
from topup.storage.balance_store import UserBalanceStore
from topup.storage.billing_store import BillingRecordStore
from topup.storage.notification_store import NotificationStore

logger = get_logger(__name__)

COMPLETION_STATUSES = frozenset({"COMPLETED", "PAID", "SUCCEEDED", "SETTLED"})
EXPIRY_STATUSES = frozenset({"EXPIRED"})

OUTCOME_CREDITED = "credited"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_UNKNOWN = "unknown"


@dataclass(frozen=True)
class ReconcileOutcome:
    outcome: str
    invoice_id: Optional[str] = None
    credited_amount: int = 0
    status: Optional[str] = None


def _flatten(payload: Mapping[str, Any]) -> dict:
    # some callbacks wrap the resource in "data"
    data = payload.get("data")
    merged = dict(data) if isinstance(data, Mapping) else {}
    merged.update({k: v for k, v in payload.items() if k != "data"})
    return merged


def _pick(payload: Mapping[str, Any], *keys: str) -> Optional[str]:
    for k in keys:
        v = payload.get(k)
        if v not in (None, ""):
            return str(v).strip()
    return None


class WebhookReconciler:
    def __init__(self, session: AsyncSession):
        self.records = BillingRecordStore(session)
        self.balances = UserBalanceStore(session)
        self.notifications = NotificationStore(session)

    async def _resolve(self, payload: Mapping[str, Any]) -> Optional[BillingRecord]:
        qr_resource_id = _pick(payload, "qrResourceId", "qr_resource_id", "qr_id")
        if qr_resource_id:
            record = await self.records.find_by_gateway_resource_id(qr_resource_id)
            if record is not None:
                return record

        # VA callbacks carry externalId; QR callbacks echo our referenceId
        external_id = _pick(payload, "externalId", "external_id", "referenceId", "reference_id")
        if external_id:
            return (
                await self.records.find_by_external_id(external_id)
                or await self.records.find_by_gateway_resource_id(external_id)
            )
        return None

    async def handle(self, payload: Mapping[str, Any]) -> ReconcileOutcome:
        payload = _flatten(payload or {})
        gateway_status = str(payload.get("status") or "").strip().upper()

        record = await self._resolve(payload)
        if record is None:
            logger.warning(
                "webhook.unknown_resource",
                status=gateway_status,
                qr_resource_id=_pick(payload, "qrResourceId", "qr_resource_id", "qr_id"),
                external_id=_pick(payload, "externalId", "external_id", "referenceId", "reference_id"),
            )
            return ReconcileOutcome(OUTCOME_UNKNOWN, status=gateway_status or None)

        if gateway_status in COMPLETION_STATUSES:
            return await self._settle(record, gateway_status, payload)
        if gateway_status in EXPIRY_STATUSES:
            return await self._expire(record, gateway_status, payload)

        logger.info(
            "webhook.status_ignored",
            invoice_id=record.invoice_id,
            gateway_status=gateway_status,
            record_status=record.status,
        )
        return ReconcileOutcome(OUTCOME_IGNORED, record.invoice_id, status=record.status)

    async def _settle(self, record: BillingRecord, gateway_status: str, payload: dict) -> ReconcileOutcome:
        invoice_id, user_id, amount = record.invoice_id, record.user_id, record.amount
        try:
            changed = await self.records.compare_and_set_status(
                invoice_id,
                BillingStatus.WAITING_PAYMENT,
                BillingStatus.PAID,
                {
                    "payment_time": utc_now(),
                    "gateway_callback_payload": payload,
                    "gateway_status": gateway_status,
                },
            )
            if not changed:
                # no row changed; just close the transaction
                await self.records.commit()
                return await self._no_transition(invoice_id, gateway_status)

            new_balance = await self.balances.increment(user_id, amount)
            self.notifications.add_payment_succeeded(user_id, invoice_id, amount)
            await self.records.commit()
        except Exception:
            await self.records.rollback()
            raise

        logger.info("webhook.credited", invoice_id=invoice_id, user_id=user_id, amount=amount)
        audit_logger.log_data_change(
            user_id=user_id,
            action="payment_settled",
            resource_type="billing_record",
            resource_id=invoice_id,
            changes={
                "status": BillingStatus.PAID.value,
                "gateway_status": gateway_status,
                "credited_amount": amount,
                "balance": new_balance,
            },
        )
        return ReconcileOutcome(OUTCOME_CREDITED, invoice_id, credited_amount=amount, status=BillingStatus.PAID.value)

    async def _expire(self, record: BillingRecord, gateway_status: str, payload: dict) -> ReconcileOutcome:
        invoice_id, user_id = record.invoice_id, record.user_id
        try:
            changed = await self.records.compare_and_set_status(
                invoice_id,
                BillingStatus.WAITING_PAYMENT,
                BillingStatus.CANCELLED,
                {
                    "cancelled_at": utc_now(),
                    "gateway_callback_payload": payload,
                    "gateway_status": gateway_status,
                },
            )
            if not changed:
                await self.records.commit()
                return await self._no_transition(invoice_id, gateway_status)
            await self.records.commit()
        except Exception:
            await self.records.rollback()
            raise

        audit_logger.log_data_change(
            user_id=user_id,
            action="payment_expired",
            resource_type="billing_record",
            resource_id=invoice_id,
            changes={"status": BillingStatus.CANCELLED.value, "gateway_status": gateway_status},
        )
        return ReconcileOutcome(OUTCOME_CANCELLED, invoice_id, status=BillingStatus.CANCELLED.value)

    async def _no_transition(self, invoice_id: str, gateway_status: str) -> ReconcileOutcome:
        current = await self.records.find_by_invoice_id(invoice_id)
        current_status = current.status if current is not None else None
        outcome = (
            OUTCOME_DUPLICATE
            if current_status == BillingStatus.PAID.value and gateway_status in COMPLETION_STATUSES
            else OUTCOME_IGNORED
        )
        logger.info(
            "webhook.no_transition",
            invoice_id=invoice_id,
            gateway_status=gateway_status,
            record_status=current_status,
            outcome=outcome,
        )
        return ReconcileOutcome(outcome, invoice_id, status=current_status)
