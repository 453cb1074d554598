# topup/models/billing.py
from __future__ import annotations

"""
Billing records for balance top-ups.

- One row per invoice_id; the row is the audit trail and is never deleted.
- Status is monotonic: waiting_payment -> paid | cancelled.
- gateway_request is the exact outbound request captured before the gateway call.
- All timestamps are UTC.
"""

import enum
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from topup.models.base import Base, TimestampMixin


# ---------------- enums ----------------
class BillingStatus(str, enum.Enum):
    WAITING_PAYMENT = "waiting_payment"
    PAID = "paid"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class PaymentMethod(str, enum.Enum):
    QRIS = "qris"
    VA = "va"


TERMINAL_STATUSES = frozenset({BillingStatus.PAID, BillingStatus.CANCELLED})

# caller-facing vocabulary for status polling
PUBLIC_STATUS = {
    BillingStatus.WAITING_PAYMENT: "PENDING",
    BillingStatus.PAID: "PAID",
    BillingStatus.CANCELLED: "CANCELLED",
}


def can_transition(current: BillingStatus | str, target: BillingStatus | str) -> bool:
    return BillingStatus(current) == BillingStatus.WAITING_PAYMENT and BillingStatus(target).is_terminal


# ======================================================================
# BillingRecord
# ======================================================================
class BillingRecord(TimestampMixin, Base):
    __tablename__ = "billing_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    invoice_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    external_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("user_accounts.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")
    payment_method: Mapped[str] = mapped_column(String(8), nullable=False)
    bank: Mapped[Optional[str]] = mapped_column(String(16))

    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=BillingStatus.WAITING_PAYMENT.value, index=True
    )

    gateway_request: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    gateway_resource_id: Mapped[Optional[str]] = mapped_column(String(128), unique=True, index=True)
    gateway_status: Mapped[Optional[str]] = mapped_column(String(32))
    qr_string: Mapped[Optional[str]] = mapped_column(Text)
    account_number: Mapped[Optional[str]] = mapped_column(String(64))
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    gateway_callback_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    payment_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_billing_records_user_created", "user_id", "created_at"),
        CheckConstraint("amount > 0", name="amount_positive"),
        CheckConstraint("status IN ('waiting_payment', 'paid', 'cancelled')", name="status_known"),
        CheckConstraint("payment_method IN ('qris', 'va')", name="method_known"),
        CheckConstraint(
            "(payment_method = 'va' AND bank IS NOT NULL) OR (payment_method = 'qris' AND bank IS NULL)",
            name="bank_iff_va",
        ),
    )

    @validates("currency")
    def _norm_currency(self, _k: str, v: Optional[str]) -> Optional[str]:
        return (v or "").strip().upper() or None

    @validates("bank")
    def _norm_bank(self, _k: str, v: Optional[str]) -> Optional[str]:
        return (v or "").strip().lower() or None

    @property
    def billing_status(self) -> BillingStatus:
        return BillingStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.billing_status.is_terminal

    @property
    def public_status(self) -> str:
        return PUBLIC_STATUS[self.billing_status]
