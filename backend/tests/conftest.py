"""Pytest configuration and fixtures."""

import pytest
from datetime import datetime
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from app.main import app
from app.models import Base, get_session, enable_sqlite_savepoints
from app.models import Transaction, TransactionType, TransactionSide
from app.routers.pnl import get_price_resolver
from app.services.price_resolver import StaticPriceResolver
from app.services.ledger_engine import LedgerEngine


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

USER = "user-1"


@pytest.fixture(scope="function")
async def test_db():
    """Create a fresh test database for each test."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    enable_sqlite_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def prices():
    """Static price table; tests add current prices and history as needed."""
    return StaticPriceResolver()


@pytest.fixture
def ledger(test_db, prices):
    """Ledger engine bound to the test session."""
    return LedgerEngine(test_db, prices)


@pytest.fixture(scope="function")
async def client(test_db, prices):
    """Create test client with test database and static prices."""

    async def override_get_session():
        yield test_db

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_price_resolver] = lambda: prices

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


_external_ids = iter(range(1, 1_000_000))


async def add_transaction(
    session,
    tx_type: TransactionType,
    asset: str,
    amount: float,
    timestamp: datetime,
    side: TransactionSide = None,
    price: float = None,
    user_id: str = USER,
    exchange: str = "binance",
) -> Transaction:
    """Insert a transaction row without applying it to the ledger."""
    tx = Transaction(
        user_id=user_id,
        exchange=exchange,
        external_id=f"ext-{next(_external_ids)}",
        type=tx_type,
        side=side,
        asset=asset,
        amount=amount,
        price=price,
        timestamp=timestamp,
    )
    session.add(tx)
    await session.flush()
    return tx


async def apply(ledger, session, *args, **kwargs):
    """Insert a transaction and run it through the ledger."""
    tx = await add_transaction(session, *args, **kwargs)
    result = await ledger.process_transaction(tx)
    return tx, result
