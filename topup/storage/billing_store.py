# topup/storage/billing_store.py
"""
SQL storage for billing records.

compare_and_set_status() is the only way a record's status changes; it is a
single conditional UPDATE so concurrent cancellation and reconciliation
cannot both win. Mutating methods flush but do not commit: callers decide the
transaction boundary (reconciliation commits the status change together with
the balance credit).
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from topup.core.exceptions import DuplicateInvoiceError
from topup.core.logging import get_logger
from topup.models.base import utc_now
from topup.models.billing import BillingRecord, BillingStatus, can_transition

logger = get_logger(__name__)

# columns a status transition may touch besides status/updated_at
_TRANSITION_FIELDS = frozenset(
    {"payment_time", "gateway_callback_payload", "gateway_status", "cancelled_at"}
)
_GATEWAY_FIELDS = frozenset({"gateway_status", "qr_string", "account_number"})


class BillingRecordStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------ create
    async def create(self, record: BillingRecord) -> BillingRecord:
        existing = (
            await self.session.execute(
                select(BillingRecord.id).where(
                    or_(
                        BillingRecord.invoice_id == record.invoice_id,
                        BillingRecord.external_id == record.external_id,
                    )
                )
            )
        ).first()
        if existing is not None:
            raise DuplicateInvoiceError(record.invoice_id)

        self.session.add(record)
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            # гонка между проверкой и вставкой
            raise DuplicateInvoiceError(record.invoice_id) from e
        return record

    # ------------------------------------------------------------------ reads
    async def _one(self, *criteria) -> Optional[BillingRecord]:
        stmt = select(BillingRecord).where(*criteria).execution_options(populate_existing=True)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def find_by_invoice_id(self, invoice_id: str) -> Optional[BillingRecord]:
        return await self._one(BillingRecord.invoice_id == invoice_id)

    async def find_by_external_id(self, external_id: str) -> Optional[BillingRecord]:
        return await self._one(BillingRecord.external_id == external_id)

    async def find_by_gateway_resource_id(self, resource_id: str) -> Optional[BillingRecord]:
        return await self._one(BillingRecord.gateway_resource_id == resource_id)

    async def find_by_payment_id(self, payment_id: str) -> Optional[BillingRecord]:
        """Resolve an id the caller holds: invoice id, gateway resource id or external id."""
        pid = (payment_id or "").strip()
        if not pid:
            return None
        return (
            await self.find_by_invoice_id(pid)
            or await self.find_by_gateway_resource_id(pid)
            or await self.find_by_external_id(pid)
        )

    async def list_for_user(self, user_id: str, limit: int = 50) -> Sequence[BillingRecord]:
        stmt = (
            select(BillingRecord)
            .where(BillingRecord.user_id == user_id)
            .order_by(BillingRecord.created_at.desc(), BillingRecord.id.desc())
            .limit(max(1, min(int(limit or 50), 200)))
        )
        return (await self.session.execute(stmt)).scalars().all()

    # ------------------------------------------------------------------ writes
    async def compare_and_set_status(
        self,
        invoice_id: str,
        expected_status: BillingStatus,
        new_status: BillingStatus,
        extra_fields: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Atomically move invoice_id from expected_status to new_status.
        Returns True only if this call performed the transition.
        """
        extra = dict(extra_fields or {})
        unknown = set(extra) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Fields not allowed in a status transition: {sorted(unknown)}")
        if not can_transition(expected_status, new_status):
            raise ValueError(f"Illegal status transition {expected_status} -> {new_status}")

        stmt = (
            update(BillingRecord)
            .where(
                BillingRecord.invoice_id == invoice_id,
                BillingRecord.status == BillingStatus(expected_status).value,
            )
            .values(status=BillingStatus(new_status).value, updated_at=utc_now(), **extra)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        changed = result.rowcount == 1
        logger.debug(
            "billing.cas",
            invoice_id=invoice_id,
            expected=BillingStatus(expected_status).value,
            new=BillingStatus(new_status).value,
            changed=changed,
        )
        return changed

    async def attach_gateway_resource(
        self,
        invoice_id: str,
        resource_id: str,
        fields: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Store the gateway resource on the record. Re-writing the same resource id
        is a no-op success; a different id than the stored one is refused.
        """
        extra = {k: v for k, v in dict(fields or {}).items() if k in _GATEWAY_FIELDS}
        stmt = (
            update(BillingRecord)
            .where(
                BillingRecord.invoice_id == invoice_id,
                or_(
                    BillingRecord.gateway_resource_id.is_(None),
                    BillingRecord.gateway_resource_id == resource_id,
                ),
            )
            .values(gateway_resource_id=resource_id, updated_at=utc_now(), **extra)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()
