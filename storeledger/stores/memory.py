"""
In-memory store implementations.

Production uses the SQLAlchemy stores, but these are useful for:
- Unit tests (fast, no DB required)
- Local development (no infrastructure needed)
- Race tests (asyncio interleaving is deterministic enough to reason about)

All stores built from one InMemoryDatabase share a single asyncio.Lock;
every conditional write and every multi-row commit runs under it, which
gives the same atomicity a database transaction would.
"""
from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from storeledger.core.exceptions import (
    ConcurrencyConflictError,
    InsufficientStockError,
    NotFoundError,
    PersistenceFailureError,
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
    Versioned,
)

logger = structlog.get_logger(__name__)


class InMemoryDatabase:
    """Shared tables and the lock guarding every atomic section."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.accounts: Dict[uuid.UUID, Tuple[Account, int]] = {}
        self.transactions: List[TransactionRecord] = []
        self.products: Dict[uuid.UUID, Tuple[Product, int]] = {}
        self.orders: Dict[uuid.UUID, Order] = {}
        self.order_items: Dict[uuid.UUID, OrderItem] = {}

    @staticmethod
    async def round_trip() -> None:
        """Yield to the event loop like a network call would."""
        await asyncio.sleep(0)


class InMemoryAccountStore:
    """Account balances with version counters."""

    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def create(self, account: Account) -> Versioned[Account]:
        async with self.db.lock:
            if account.id in self.db.accounts:
                raise PersistenceFailureError(f"Account {account.id} already exists")
            self.db.accounts[account.id] = (account, 0)
        return Versioned(entity=account, version=0)

    async def read(self, account_id: uuid.UUID) -> Versioned[Account]:
        await self.db.round_trip()
        try:
            account, version = self.db.accounts[account_id]
        except KeyError:
            raise NotFoundError("account", account_id) from None
        return Versioned(entity=account, version=version)

    async def find_by_owner(
        self, owner_id: uuid.UUID, kind: AccountKind
    ) -> Optional[Versioned[Account]]:
        await self.db.round_trip()
        for account, version in self.db.accounts.values():
            if account.owner_id == owner_id and account.kind == kind:
                return Versioned(entity=account, version=version)
        return None

    def _check_version(self, account_id: uuid.UUID, expected_version: int) -> Account:
        """Must be called with the lock held."""
        try:
            account, version = self.db.accounts[account_id]
        except KeyError:
            raise NotFoundError("account", account_id) from None
        if version != expected_version:
            raise ConcurrencyConflictError("account", account_id, expected_version)
        return account

    async def conditional_write(
        self, account_id: uuid.UUID, expected_version: int, new_balance: Decimal
    ) -> Versioned[Account]:
        async with self.db.lock:
            account = self._check_version(account_id, expected_version)
            updated = account.with_balance(new_balance)
            self.db.accounts[account_id] = (updated, expected_version + 1)
        return Versioned(entity=updated, version=expected_version + 1)

    async def commit_transfer(
        self, debit: BalanceWrite, credit: BalanceWrite, record: TransactionRecord
    ) -> TransactionRecord:
        await self.db.round_trip()
        async with self.db.lock:
            # Validate everything before touching anything
            debited = self._check_version(debit.account_id, debit.expected_version)
            credited = self._check_version(credit.account_id, credit.expected_version)

            self.db.accounts[debit.account_id] = (
                debited.with_balance(debit.new_balance),
                debit.expected_version + 1,
            )
            self.db.accounts[credit.account_id] = (
                credited.with_balance(credit.new_balance),
                credit.expected_version + 1,
            )
            self.db.transactions.append(record)
        return record


class InMemoryTransactionLog:
    """Append-only list; appends happen only through commit_transfer."""

    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def get(self, transaction_id: uuid.UUID) -> TransactionRecord:
        for record in self.db.transactions:
            if record.id == transaction_id:
                return record
        raise NotFoundError("transaction", transaction_id)

    async def list_for_account(self, account_id: uuid.UUID) -> List[TransactionRecord]:
        return [
            r
            for r in self.db.transactions
            if account_id in (r.store_account_id, r.company_account_id)
        ]

    async def count(self) -> int:
        return len(self.db.transactions)


class InMemoryProductStore:
    """Product price and stock with version counters."""

    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def create(self, product: Product) -> Versioned[Product]:
        async with self.db.lock:
            if any(p.name == product.name for p, _ in self.db.products.values()):
                raise PersistenceFailureError(f"Product name already exists: {product.name}")
            self.db.products[product.id] = (product, 0)
        return Versioned(entity=product, version=0)

    def _get(self, product_id: uuid.UUID) -> Tuple[Product, int]:
        try:
            return self.db.products[product_id]
        except KeyError:
            raise NotFoundError("product", product_id) from None

    async def read(self, product_id: uuid.UUID) -> Versioned[Product]:
        await self.db.round_trip()
        product, version = self._get(product_id)
        return Versioned(entity=product, version=version)

    async def read_many(
        self, product_ids: Iterable[uuid.UUID]
    ) -> Dict[uuid.UUID, Versioned[Product]]:
        await self.db.round_trip()
        snapshot: Dict[uuid.UUID, Versioned[Product]] = {}
        async with self.db.lock:
            for product_id in product_ids:
                product, version = self._get(product_id)
                snapshot[product_id] = Versioned(entity=product, version=version)
        return snapshot

    async def get_by_name(self, name: str) -> Optional[Versioned[Product]]:
        await self.db.round_trip()
        for product, version in self.db.products.values():
            if product.name == name:
                return Versioned(entity=product, version=version)
        return None

    async def conditional_write(
        self, product_id: uuid.UUID, expected_version: int, new_value: Product
    ) -> Versioned[Product]:
        async with self.db.lock:
            _, version = self._get(product_id)
            if version != expected_version:
                raise ConcurrencyConflictError("product", product_id, expected_version)
            updated = new_value.model_copy(update={"id": product_id})
            self.db.products[product_id] = (updated, version + 1)
        return Versioned(entity=updated, version=version + 1)

    async def decrement_stock(self, product_id: uuid.UUID, quantity: int) -> Versioned[Product]:
        await self.db.round_trip()
        async with self.db.lock:
            product, version = self._get(product_id)
            if product.quantity_in_stock < quantity:
                raise InsufficientStockError(product_id, quantity, product.quantity_in_stock)
            updated = product.model_copy(
                update={"quantity_in_stock": product.quantity_in_stock - quantity}
            )
            self.db.products[product_id] = (updated, version + 1)
        return Versioned(entity=updated, version=version + 1)

    async def increment_stock(self, product_id: uuid.UUID, quantity: int) -> Versioned[Product]:
        async with self.db.lock:
            product, version = self._get(product_id)
            updated = product.model_copy(
                update={"quantity_in_stock": product.quantity_in_stock + quantity}
            )
            self.db.products[product_id] = (updated, version + 1)
        return Versioned(entity=updated, version=version + 1)


class InMemoryOrderStore:
    """Order headers and line items."""

    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def create_order(self, order: Order) -> uuid.UUID:
        await self.db.round_trip()
        async with self.db.lock:
            self.db.orders[order.id] = order.model_copy(update={"items": []})
        return order.id

    async def create_items(self, items: List[OrderItem]) -> List[uuid.UUID]:
        await self.db.round_trip()
        async with self.db.lock:
            for item in items:
                if item.order_id not in self.db.orders:
                    raise NotFoundError("order", item.order_id)
            for item in items:
                self.db.order_items[item.id] = item
        return [item.id for item in items]

    async def delete_order(self, order_id: uuid.UUID) -> None:
        async with self.db.lock:
            self.db.orders.pop(order_id, None)
            for item_id in [i.id for i in self.db.order_items.values() if i.order_id == order_id]:
                del self.db.order_items[item_id]
        logger.info("order_deleted", order_id=str(order_id))

    async def commit_order(self, order: Order) -> Order:
        await self.db.round_trip()
        async with self.db.lock:
            # Validate everything before touching anything
            decremented: Dict[uuid.UUID, Tuple[Product, int]] = {}
            for item in order.items:
                try:
                    product, version = decremented.get(item.product_id) or self.db.products[
                        item.product_id
                    ]
                except KeyError:
                    raise NotFoundError("product", item.product_id) from None
                if product.quantity_in_stock < item.quantity:
                    raise InsufficientStockError(
                        item.product_id, item.quantity, product.quantity_in_stock
                    )
                decremented[item.product_id] = (
                    product.model_copy(
                        update={"quantity_in_stock": product.quantity_in_stock - item.quantity}
                    ),
                    version + 1,
                )

            self.db.products.update(decremented)
            self.db.orders[order.id] = order.model_copy(update={"items": []})
            for item in order.items:
                self.db.order_items[item.id] = item
        return order

    def _assemble(self, order: Order) -> Order:
        items = [i for i in self.db.order_items.values() if i.order_id == order.id]
        return order.model_copy(update={"items": items, "state": OrderState.COMMITTED})

    async def get(self, order_id: uuid.UUID) -> Order:
        try:
            order = self.db.orders[order_id]
        except KeyError:
            raise NotFoundError("order", order_id) from None
        return self._assemble(order)

    async def list_for_store(self, store_id: uuid.UUID) -> List[Order]:
        orders = [o for o in self.db.orders.values() if o.store_id == store_id]
        orders.sort(key=lambda o: o.created_at)
        return [self._assemble(o) for o in orders]
