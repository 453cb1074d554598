# topup/models/__init__.py
from topup.models.base import Base, TimestampMixin, utc_now
from topup.models.billing import (
    PUBLIC_STATUS,
    TERMINAL_STATUSES,
    BillingRecord,
    BillingStatus,
    PaymentMethod,
    can_transition,
)
from topup.models.notification import NOTIFICATION_PAYMENT_SUCCEEDED, PaymentNotification
from topup.models.user import UserAccount

__all__ = [
    "Base",
    "TimestampMixin",
    "utc_now",
    "BillingRecord",
    "BillingStatus",
    "PaymentMethod",
    "PUBLIC_STATUS",
    "TERMINAL_STATUSES",
    "can_transition",
    "PaymentNotification",
    "NOTIFICATION_PAYMENT_SUCCEEDED",
    "UserAccount",
]
