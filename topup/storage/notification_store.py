# topup/storage/notification_store.py
from __future__ import annotations

from typing import List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from topup.models.base import utc_now
from topup.models.notification import NOTIFICATION_PAYMENT_SUCCEEDED, PaymentNotification


class NotificationStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    def add_payment_succeeded(self, user_id: str, invoice_id: str, amount: int) -> PaymentNotification:
        """Stage a notification in the current transaction; flushed with the caller's commit."""
        note = PaymentNotification(
            user_id=user_id,
            invoice_id=invoice_id,
            amount=int(amount),
            kind=NOTIFICATION_PAYMENT_SUCCEEDED,
        )
        self.session.add(note)
        return note

    async def pending_for_user(self, user_id: str) -> List[PaymentNotification]:
        stmt = (
            select(PaymentNotification)
            .where(PaymentNotification.user_id == user_id, PaymentNotification.consumed_at.is_(None))
            .order_by(PaymentNotification.created_at.asc(), PaymentNotification.id.asc())
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def mark_consumed(self, ids: List[int]) -> int:
        if not ids:
            return 0
        stmt = (
            update(PaymentNotification)
            .where(PaymentNotification.id.in_(ids), PaymentNotification.consumed_at.is_(None))
            .values(consumed_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0
