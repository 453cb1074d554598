# topup/services/billing_queries.py
"""Status polling, cancellation, history and the per-user notification queue."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from topup.core.exceptions import InvalidStateTransitionError, NotFoundError
from topup.core.logging import audit_logger, get_logger
from topup.models.base import utc_now
from topup.models.billing import BillingRecord, BillingStatus
from topup.models.notification import PaymentNotification
from topup.storage.balance_store import UserBalanceStore
from topup.storage.billing_store import BillingRecordStore
from topup.storage.notification_store import NotificationStore

logger = get_logger(__name__)


async def _require_record(store: BillingRecordStore, payment_id: str) -> BillingRecord:
    record = await store.find_by_payment_id(payment_id)
    if record is None:
        raise NotFoundError(
            f"Payment {payment_id} not found", code="PAYMENT_NOT_FOUND", extra={"payment_id": payment_id}
        )
    return record


class StatusQueryService:
    def __init__(self, session: AsyncSession):
        self.records = BillingRecordStore(session)
        self.users = UserBalanceStore(session)

    async def get_status(self, payment_id: str) -> Dict[str, Any]:
        record = await _require_record(self.records, payment_id)
        return {
            "status": record.public_status,
            "payment_method": record.payment_method,
            "amount": record.amount,
            "bank": record.bank,
            "invoice_id": record.invoice_id,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
            "payment_time": record.payment_time,
        }

    async def history(self, user_id: str, limit: int = 50) -> Sequence[BillingRecord]:
        await self.users.require(user_id)
        return await self.records.list_for_user(user_id, limit=limit)


class CancellationService:
    def __init__(self, session: AsyncSession):
        self.records = BillingRecordStore(session)

    async def cancel(self, payment_id: str) -> BillingRecord:
        """waiting_payment -> cancelled. Terminal records are left untouched."""
        record = await _require_record(self.records, payment_id)
        invoice_id = record.invoice_id
        target = BillingStatus.CANCELLED.value

        if record.is_terminal:
            raise InvalidStateTransitionError(invoice_id, record.status, target)

        changed = await self.records.compare_and_set_status(
            invoice_id,
            BillingStatus.WAITING_PAYMENT,
            BillingStatus.CANCELLED,
            {"cancelled_at": utc_now()},
        )
        if not changed:
            # lost the race, most likely to a settlement callback
            await self.records.rollback()
            current = await self.records.find_by_invoice_id(invoice_id)
            raise InvalidStateTransitionError(invoice_id, current.status if current else "unknown", target)

        await self.records.commit()
        record = await self.records.find_by_invoice_id(invoice_id)

        audit_logger.log_data_change(
            user_id=record.user_id,
            action="cancel",
            resource_type="billing_record",
            resource_id=invoice_id,
            changes={"status": target},
        )
        return record


class PaymentNotificationService:
    def __init__(self, session: AsyncSession):
        self.notifications = NotificationStore(session)
        self.users = UserBalanceStore(session)
        self.session = session

    async def drain(self, user_id: str) -> List[PaymentNotification]:
        """Return unconsumed notifications for user_id and mark them consumed."""
        await self.users.require(user_id)
        pending = await self.notifications.pending_for_user(user_id)
        if pending:
            await self.notifications.mark_consumed([n.id for n in pending])
            await self.session.commit()
            logger.debug("notifications.drained", user_id=user_id, count=len(pending))
        return pending
