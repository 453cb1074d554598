# topup/models/user.py
from __future__ import annotations

from typing import Optional

from sqlalchemy import BigInteger, CheckConstraint, String
from sqlalchemy.orm import Mapped, mapped_column, validates

from topup.models.base import Base, TimestampMixin


class UserAccount(TimestampMixin, Base):
    """
    Funding user as seen by billing. Identity lives elsewhere; this row only
    carries the payer name used for virtual accounts and the balance.
    """

    __tablename__ = "user_accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    __table_args__ = (CheckConstraint("balance >= 0", name="balance_non_negative"),)

    @validates("email")
    def _norm_email(self, _k: str, v: Optional[str]) -> Optional[str]:
        return (v or "").strip().lower() or None
