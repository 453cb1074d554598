# tests/conftest.py
"""
Pytest configuration and fixtures for async database testing.

- Each test gets its own SQLite file (aiosqlite) under tmp_path, schema via create_all.
- `session` is a plain AsyncSession for service/store level tests.
- `client` drives the FastAPI app through httpx ASGITransport; the DB dependency
  is overridden to the per-test database and the gateway to an in-memory mock.
"""

from __future__ import annotations

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_FORMAT", "text")

from collections.abc import AsyncIterator, Awaitable, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from topup.models import Base, BillingRecord, BillingStatus, UserAccount
from topup.services.gateway_service import MockGatewayClient
from topup.utils.invoice_ids import new_external_id, new_invoice_id


# ======================================================================================
# DB
# ======================================================================================
@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'topup-test.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as s:
        yield s


# ======================================================================================
# Domain factories
# ======================================================================================
@pytest_asyncio.fixture
async def user(session: AsyncSession) -> UserAccount:
    acc = UserAccount(id="u-1001", name="Budi Santoso", email="budi@example.com", balance=0)
    session.add(acc)
    await session.commit()
    return acc


@pytest_asyncio.fixture
async def other_user(session: AsyncSession) -> UserAccount:
    acc = UserAccount(id="u-2002", name="Siti Rahma", email="siti@example.com", balance=0)
    session.add(acc)
    await session.commit()
    return acc


@pytest.fixture
def make_record(session: AsyncSession) -> Callable[..., Awaitable[BillingRecord]]:
    """Insert a waiting_payment record directly (bypassing the orchestrator)."""

    async def _make(user_id: str, amount: int = 50_000, method: str = "qris", bank=None, **kw) -> BillingRecord:
        external_id = kw.pop("external_id", None) or new_external_id(user_id)
        rec = BillingRecord(
            invoice_id=kw.pop("invoice_id", None) or new_invoice_id(),
            external_id=external_id,
            user_id=user_id,
            amount=amount,
            currency="IDR",
            payment_method=method,
            bank=bank,
            status=kw.pop("status", BillingStatus.WAITING_PAYMENT.value),
            gateway_request=kw.pop("gateway_request", {"endpoint": "/qr-resources", "body": {}}),
            **kw,
        )
        session.add(rec)
        await session.commit()
        return rec

    return _make


# ======================================================================================
# Gateway / HTTP
# ======================================================================================
@pytest.fixture
def gateway() -> MockGatewayClient:
    return MockGatewayClient()


@pytest.fixture
def app(session_factory, gateway):
    from topup.core.db import get_async_db
    from topup.main import create_app
    from topup.services.gateway_service import get_gateway_client

    application = create_app()

    async def _db() -> AsyncIterator[AsyncSession]:
        async with session_factory() as s:
            yield s

    application.dependency_overrides[get_async_db] = _db
    application.dependency_overrides[get_gateway_client] = lambda: gateway
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
