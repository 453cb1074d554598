# topup/storage/balance_store.py
from __future__ import annotations

from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from topup.core.exceptions import NotFoundError
from topup.models.base import utc_now
from topup.models.user import UserAccount


class UserBalanceStore:
    """User lookup and the atomic balance increment used by reconciliation."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: str) -> Optional[UserAccount]:
        stmt = (
            select(UserAccount)
            .where(UserAccount.id == str(user_id))
            .execution_options(populate_existing=True)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def require(self, user_id: str) -> UserAccount:
        user = await self.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", code="USER_NOT_FOUND", extra={"user_id": user_id})
        return user

    async def increment(self, user_id: str, amount: int) -> int:
        """balance = balance + amount in one statement; returns the new balance. Does not commit."""
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        stmt = (
            update(UserAccount)
            .where(UserAccount.id == str(user_id))
            .values(balance=UserAccount.balance + int(amount), updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise NotFoundError(f"User {user_id} not found", code="USER_NOT_FOUND", extra={"user_id": user_id})
        new_balance = (
            await self.session.execute(select(UserAccount.balance).where(UserAccount.id == str(user_id)))
        ).scalar_one()
        return int(new_balance)

