"""
Pytest configuration and fixtures.
"""
import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from storeledger.config import Settings
from storeledger.core import LedgerService, OrderFulfillmentService
from storeledger.database import init_db, make_session_factory
from storeledger.domain import Account, AccountKind, Product
from storeledger.stores import (
    InMemoryAccountStore,
    InMemoryDatabase,
    InMemoryOrderStore,
    InMemoryProductStore,
    InMemoryTransactionLog,
)


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests against the in-memory stores")
    config.addinivalue_line("markers", "race: interleaved concurrent operations")
    config.addinivalue_line("markers", "integration: tests against a real SQL database")


@pytest.fixture
def test_settings() -> Settings:
    """Settings with instant retries."""
    return Settings(
        app_name="storeledger-test",
        app_env="test",
        log_level="DEBUG",
        database_url="sqlite+aiosqlite://",
        ledger_max_attempts=3,
        ledger_retry_base_delay=0,
        ledger_retry_max_delay=0,
    )


@pytest.fixture
def memory_db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def account_store(memory_db: InMemoryDatabase) -> InMemoryAccountStore:
    return InMemoryAccountStore(memory_db)


@pytest.fixture
def transaction_log(memory_db: InMemoryDatabase) -> InMemoryTransactionLog:
    return InMemoryTransactionLog(memory_db)


@pytest.fixture
def product_store(memory_db: InMemoryDatabase) -> InMemoryProductStore:
    return InMemoryProductStore(memory_db)


@pytest.fixture
def order_store(memory_db: InMemoryDatabase) -> InMemoryOrderStore:
    return InMemoryOrderStore(memory_db)


@pytest.fixture
def ledger(
    account_store: InMemoryAccountStore,
    transaction_log: InMemoryTransactionLog,
    test_settings: Settings,
) -> LedgerService:
    return LedgerService(account_store, transaction_log, settings=test_settings)


@pytest.fixture
def fulfillment(
    product_store: InMemoryProductStore, order_store: InMemoryOrderStore
) -> OrderFulfillmentService:
    return OrderFulfillmentService(product_store, order_store)


@pytest.fixture
def store_id() -> uuid.UUID:
    return uuid.UUID("11111111-1111-1111-1111-111111111111")


@pytest.fixture
def company_id() -> uuid.UUID:
    return uuid.UUID("22222222-2222-2222-2222-222222222222")


@pytest_asyncio.fixture
async def store_account(account_store: InMemoryAccountStore, store_id: uuid.UUID) -> Account:
    """Store account holding 100.00."""
    account = Account(kind=AccountKind.STORE, owner_id=store_id, balance=Decimal("100.00"))
    await account_store.create(account)
    return account


@pytest_asyncio.fixture
async def company_account(account_store: InMemoryAccountStore, company_id: uuid.UUID) -> Account:
    """Company account holding 1000.00."""
    account = Account(kind=AccountKind.COMPANY, owner_id=company_id, balance=Decimal("1000.00"))
    await account_store.create(account)
    return account


@pytest_asyncio.fixture
async def widget(product_store: InMemoryProductStore) -> Product:
    """Product priced 10 with 5 in stock."""
    product = Product(name="widget", price=Decimal("10"), quantity_in_stock=5)
    await product_store.create(product)
    return product


@pytest_asyncio.fixture
async def gadget(product_store: InMemoryProductStore) -> Product:
    """Product priced 2.50 with 8 in stock."""
    product = Product(name="gadget", price=Decimal("2.50"), quantity_in_stock=8)
    await product_store.create(product)
    return product


@pytest_asyncio.fixture
async def sql_session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)

    yield make_session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def sql_file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """File-backed SQLite database; every session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'storeledger.db'}")
    await init_db(engine)

    yield make_session_factory(engine)

    await engine.dispose()
