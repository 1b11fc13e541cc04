"""
SQLAlchemy store implementations.

Conditional writes are single UPDATE statements whose WHERE clause carries
the condition (version match, or enough stock); rowcount tells whether the
condition held. commit_transfer runs both balance updates and the log insert
in one database transaction; commit_order does the same for the stock
decrements, the order header and its items.

Storage errors surface as PersistenceFailureError; nothing in this module
lets a raw SQLAlchemyError escape.
"""
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storeledger.core.exceptions import (
    ConcurrencyConflictError,
    InsufficientStockError,
    NotFoundError,
    PersistenceFailureError,
)
from storeledger.database.models import (
    AccountRow,
    OrderItemRow,
    OrderRow,
    ProductRow,
    TransactionRow,
)
from storeledger.domain import (
    Account,
    AccountKind,
    BalanceWrite,
    Order,
    OrderItem,
    OrderState,
    Product,
    TransactionRecord,
    TransferDirection,
    Versioned,
)

logger = structlog.get_logger(__name__)


class _SqlStore:
    """Session handling shared by every SQL store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        """
        Open a session with a transaction that commits on success.

        Domain errors raised inside roll the transaction back and propagate
        unchanged; SQLAlchemy errors become PersistenceFailureError.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("database_operation_failed", operation=operation, error=str(e))
            raise PersistenceFailureError(
                f"Database operation {operation} failed: {e}", operation=operation
            ) from e


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_account(row: AccountRow) -> Versioned[Account]:
    account = Account(
        id=row.id,
        kind=AccountKind(row.kind),
        owner_id=row.owner_id,
        balance=Decimal(row.balance),
    )
    return Versioned(entity=account, version=row.version)


def _to_product(row: ProductRow) -> Versioned[Product]:
    product = Product(
        id=row.id,
        name=row.name,
        price=Decimal(row.price),
        quantity_in_stock=row.quantity_in_stock,
        category_id=row.category_id,
    )
    return Versioned(entity=product, version=row.version)


def _to_record(row: TransactionRow) -> TransactionRecord:
    return TransactionRecord(
        id=row.id,
        store_account_id=row.store_account_id,
        company_account_id=row.company_account_id,
        amount=Decimal(row.amount),
        direction=TransferDirection(row.direction),
        created_at=_as_utc(row.created_at),
    )


def _to_order(row: OrderRow, items: List[OrderItemRow]) -> Order:
    return Order(
        id=row.id,
        store_id=row.store_id,
        total_amount=Decimal(row.total_amount),
        created_at=_as_utc(row.created_at),
        state=OrderState.COMMITTED,
        items=[
            OrderItem(
                id=i.id,
                order_id=i.order_id,
                product_id=i.product_id,
                quantity=i.quantity,
                unit_price=Decimal(i.unit_price),
            )
            for i in items
        ],
    )


async def _decrement_stock(session: AsyncSession, product_id: uuid.UUID, quantity: int) -> None:
    """Conditional stock decrement inside the caller's transaction."""
    stmt = (
        update(ProductRow)
        .where(ProductRow.id == product_id, ProductRow.quantity_in_stock >= quantity)
        .values(
            quantity_in_stock=ProductRow.quantity_in_stock - quantity,
            version=ProductRow.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        available = await session.scalar(
            select(ProductRow.quantity_in_stock).where(ProductRow.id == product_id)
        )
        if available is None:
            raise NotFoundError("product", product_id)
        raise InsufficientStockError(product_id, quantity, available)


class SqlAccountStore(_SqlStore):
    """Account balances in the accounts table."""

    async def create(self, account: Account) -> Versioned[Account]:
        async with self.transaction("account.create") as session:
            row = AccountRow(
                id=account.id,
                kind=account.kind.value,
                owner_id=account.owner_id,
                balance=account.balance,
                version=0,
            )
            session.add(row)
        return Versioned(entity=account, version=0)

    async def read(self, account_id: uuid.UUID) -> Versioned[Account]:
        async with self.transaction("account.read") as session:
            row = await session.get(AccountRow, account_id)
            if row is None:
                raise NotFoundError("account", account_id)
            return _to_account(row)

    async def find_by_owner(
        self, owner_id: uuid.UUID, kind: AccountKind
    ) -> Optional[Versioned[Account]]:
        async with self.transaction("account.find_by_owner") as session:
            stmt = (
                select(AccountRow)
                .where(AccountRow.owner_id == owner_id, AccountRow.kind == kind.value)
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_account(row) if row is not None else None

    @staticmethod
    async def _apply_write(
        session: AsyncSession, account_id: uuid.UUID, expected_version: int, new_balance: Decimal
    ) -> None:
        """Run one conditional UPDATE inside the caller's transaction."""
        stmt = (
            update(AccountRow)
            .where(AccountRow.id == account_id, AccountRow.version == expected_version)
            .values(balance=new_balance, version=AccountRow.version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            exists = await session.scalar(
                select(func.count()).select_from(AccountRow).where(AccountRow.id == account_id)
            )
            if not exists:
                raise NotFoundError("account", account_id)
            raise ConcurrencyConflictError("account", account_id, expected_version)

    async def conditional_write(
        self, account_id: uuid.UUID, expected_version: int, new_balance: Decimal
    ) -> Versioned[Account]:
        async with self.transaction("account.conditional_write") as session:
            await self._apply_write(session, account_id, expected_version, new_balance)
            row = await session.get(AccountRow, account_id, populate_existing=True)
            return _to_account(row)

    async def commit_transfer(
        self, debit: BalanceWrite, credit: BalanceWrite, record: TransactionRecord
    ) -> TransactionRecord:
        async with self.transaction("account.commit_transfer") as session:
            await self._apply_write(
                session, debit.account_id, debit.expected_version, debit.new_balance
            )
            await self._apply_write(
                session, credit.account_id, credit.expected_version, credit.new_balance
            )
            session.add(
                TransactionRow(
                    id=record.id,
                    store_account_id=record.store_account_id,
                    company_account_id=record.company_account_id,
                    amount=record.amount,
                    direction=record.direction.value,
                    created_at=record.created_at,
                )
            )
        return record


class SqlTransactionLog(_SqlStore):
    """Read side of the transactions table."""

    async def get(self, transaction_id: uuid.UUID) -> TransactionRecord:
        async with self.transaction("transaction.get") as session:
            row = await session.get(TransactionRow, transaction_id)
            if row is None:
                raise NotFoundError("transaction", transaction_id)
            return _to_record(row)

    async def list_for_account(self, account_id: uuid.UUID) -> List[TransactionRecord]:
        async with self.transaction("transaction.list_for_account") as session:
            stmt = (
                select(TransactionRow)
                .where(
                    (TransactionRow.store_account_id == account_id)
                    | (TransactionRow.company_account_id == account_id)
                )
                .order_by(TransactionRow.created_at)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(r) for r in rows]

    async def count(self) -> int:
        async with self.transaction("transaction.count") as session:
            return int(await session.scalar(select(func.count()).select_from(TransactionRow)))


class SqlProductStore(_SqlStore):
    """Products table with conditional stock updates."""

    async def create(self, product: Product) -> Versioned[Product]:
        async with self.transaction("product.create") as session:
            session.add(
                ProductRow(
                    id=product.id,
                    name=product.name,
                    price=product.price,
                    quantity_in_stock=product.quantity_in_stock,
                    category_id=product.category_id,
                    version=0,
                )
            )
        return Versioned(entity=product, version=0)

    async def read(self, product_id: uuid.UUID) -> Versioned[Product]:
        async with self.transaction("product.read") as session:
            row = await session.get(ProductRow, product_id)
            if row is None:
                raise NotFoundError("product", product_id)
            return _to_product(row)

    async def read_many(
        self, product_ids: Iterable[uuid.UUID]
    ) -> Dict[uuid.UUID, Versioned[Product]]:
        wanted = list(product_ids)
        async with self.transaction("product.read_many") as session:
            stmt = select(ProductRow).where(ProductRow.id.in_(wanted))
            rows = {r.id: r for r in (await session.execute(stmt)).scalars().all()}
        snapshot: Dict[uuid.UUID, Versioned[Product]] = {}
        for product_id in wanted:
            if product_id not in rows:
                raise NotFoundError("product", product_id)
            snapshot[product_id] = _to_product(rows[product_id])
        return snapshot

    async def get_by_name(self, name: str) -> Optional[Versioned[Product]]:
        async with self.transaction("product.get_by_name") as session:
            stmt = select(ProductRow).where(ProductRow.name == name)
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_product(row) if row is not None else None

    async def conditional_write(
        self, product_id: uuid.UUID, expected_version: int, new_value: Product
    ) -> Versioned[Product]:
        async with self.transaction("product.conditional_write") as session:
            stmt = (
                update(ProductRow)
                .where(ProductRow.id == product_id, ProductRow.version == expected_version)
                .values(
                    name=new_value.name,
                    price=new_value.price,
                    quantity_in_stock=new_value.quantity_in_stock,
                    category_id=new_value.category_id,
                    version=ProductRow.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            row = await session.get(ProductRow, product_id, populate_existing=True)
            if row is None:
                raise NotFoundError("product", product_id)
            if result.rowcount != 1:
                raise ConcurrencyConflictError("product", product_id, expected_version)
            return _to_product(row)

    async def decrement_stock(self, product_id: uuid.UUID, quantity: int) -> Versioned[Product]:
        async with self.transaction("product.decrement_stock") as session:
            await _decrement_stock(session, product_id, quantity)
            row = await session.get(ProductRow, product_id, populate_existing=True)
            return _to_product(row)

    async def increment_stock(self, product_id: uuid.UUID, quantity: int) -> Versioned[Product]:
        async with self.transaction("product.increment_stock") as session:
            stmt = (
                update(ProductRow)
                .where(ProductRow.id == product_id)
                .values(
                    quantity_in_stock=ProductRow.quantity_in_stock + quantity,
                    version=ProductRow.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise NotFoundError("product", product_id)
            row = await session.get(ProductRow, product_id, populate_existing=True)
            return _to_product(row)


class SqlOrderStore(_SqlStore):
    """
    Order headers and items.

    Shares its database with SqlProductStore, so commit_order can take stock
    and insert the order in one transaction.
    """

    @staticmethod
    def _header_row(order: Order) -> OrderRow:
        return OrderRow(
            id=order.id,
            store_id=order.store_id,
            total_amount=order.total_amount,
            created_at=order.created_at,
        )

    @staticmethod
    def _item_rows(items: List[OrderItem]) -> List[OrderItemRow]:
        return [
            OrderItemRow(
                id=item.id,
                order_id=item.order_id,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for item in items
        ]

    async def create_order(self, order: Order) -> uuid.UUID:
        async with self.transaction("order.create") as session:
            session.add(self._header_row(order))
        return order.id

    async def create_items(self, items: List[OrderItem]) -> List[uuid.UUID]:
        async with self.transaction("order.create_items") as session:
            session.add_all(self._item_rows(items))
        return [item.id for item in items]

    async def commit_order(self, order: Order) -> Order:
        async with self.transaction("order.commit") as session:
            # Decrements come first so the transaction starts as a writer
            for item in order.items:
                await _decrement_stock(session, item.product_id, item.quantity)
            session.add(self._header_row(order))
            session.add_all(self._item_rows(order.items))
        return order

    async def delete_order(self, order_id: uuid.UUID) -> None:
        async with self.transaction("order.delete") as session:
            await session.execute(delete(OrderItemRow).where(OrderItemRow.order_id == order_id))
            await session.execute(delete(OrderRow).where(OrderRow.id == order_id))
        logger.info("order_deleted", order_id=str(order_id))

    @staticmethod
    async def _items_for(session: AsyncSession, order_ids: List[uuid.UUID]) -> Dict[uuid.UUID, List[OrderItemRow]]:
        grouped: Dict[uuid.UUID, List[OrderItemRow]] = {oid: [] for oid in order_ids}
        if not order_ids:
            return grouped
        stmt = select(OrderItemRow).where(OrderItemRow.order_id.in_(order_ids))
        for item in (await session.execute(stmt)).scalars().all():
            grouped[item.order_id].append(item)
        return grouped

    async def get(self, order_id: uuid.UUID) -> Order:
        async with self.transaction("order.get") as session:
            row = await session.get(OrderRow, order_id)
            if row is None:
                raise NotFoundError("order", order_id)
            items = await self._items_for(session, [order_id])
            return _to_order(row, items[order_id])

    async def list_for_store(self, store_id: uuid.UUID) -> List[Order]:
        async with self.transaction("order.list_for_store") as session:
            stmt = (
                select(OrderRow)
                .where(OrderRow.store_id == store_id)
                .order_by(OrderRow.created_at)
            )
            rows = list((await session.execute(stmt)).scalars().all())
            items = await self._items_for(session, [r.id for r in rows])
            return [_to_order(r, items[r.id]) for r in rows]
