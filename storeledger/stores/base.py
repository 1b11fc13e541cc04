"""
Persistence contracts for the ledger and order fulfillment core.

These are the only seams where the core touches durable storage. Every
versioned read returns the entity together with its version, and every
mutation of a balance or of stock is a conditional write: it is applied
only if the condition it was computed under still holds.

Example race condition without versioning:
T0: Terminal A reads company account (version 5, balance 100)
T0: Terminal B reads company account (version 5, balance 100)
T1: A writes balance 40 (version 6)
T2: B writes balance 70 at version 5 -> ConcurrencyConflictError, B retries
"""
from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

from storeledger.domain import (
    Account,
    AccountKind,
    BalanceWrite,
    Order,
    OrderItem,
    Product,
    TransactionRecord,
    Versioned,
)


class AccountStore(Protocol):
    """Interface for store/company account balances."""

    async def create(self, account: Account) -> Versioned[Account]:
        """Insert a new account at version 0."""
        ...

    async def read(self, account_id: uuid.UUID) -> Versioned[Account]:
        """Read an account and its version. Raises NotFoundError."""
        ...

    async def find_by_owner(
        self, owner_id: uuid.UUID, kind: AccountKind
    ) -> Optional[Versioned[Account]]:
        """Find the account of the given kind owned by a store or company."""
        ...

    async def conditional_write(
        self, account_id: uuid.UUID, expected_version: int, new_balance: Decimal
    ) -> Versioned[Account]:
        """
        Set the balance if the stored version still equals expected_version.

        Raises ConcurrencyConflictError on a stale version.
        """
        ...

    async def commit_transfer(
        self, debit: BalanceWrite, credit: BalanceWrite, record: TransactionRecord
    ) -> TransactionRecord:
        """
        Apply both balance writes and append the record as one atomic unit.

        Either all three effects become visible or none does.
        """
        ...


class TransactionLog(Protocol):
    """Read side of the append-only transaction log."""

    async def get(self, transaction_id: uuid.UUID) -> TransactionRecord:
        """Raises NotFoundError."""
        ...

    async def list_for_account(self, account_id: uuid.UUID) -> List[TransactionRecord]:
        """All records touching the account, oldest first."""
        ...

    async def count(self) -> int:
        ...


class ProductStore(Protocol):
    """Interface for product price and stock."""

    async def create(self, product: Product) -> Versioned[Product]:
        ...

    async def read(self, product_id: uuid.UUID) -> Versioned[Product]:
        """Raises NotFoundError."""
        ...

    async def read_many(self, product_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Versioned[Product]]:
        """
        Consistent snapshot of several products.

        Raises NotFoundError naming the first missing id.
        """
        ...

    async def get_by_name(self, name: str) -> Optional[Versioned[Product]]:
        ...

    async def conditional_write(
        self, product_id: uuid.UUID, expected_version: int, new_value: Product
    ) -> Versioned[Product]:
        """Replace price/stock if the version is unchanged. Raises ConcurrencyConflictError."""
        ...

    async def decrement_stock(self, product_id: uuid.UUID, quantity: int) -> Versioned[Product]:
        """
        Set stock = stock - quantity only if stock >= quantity.

        Raises InsufficientStockError when the condition does not hold.
        """
        ...

    async def increment_stock(self, product_id: uuid.UUID, quantity: int) -> Versioned[Product]:
        """Unconditional restock, used by compensation and catalog management."""
        ...


class OrderStore(Protocol):
    """Plain order/line-item persistence."""

    async def create_order(self, order: Order) -> uuid.UUID:
        """Insert the order header (items are ignored)."""
        ...

    async def create_items(self, items: List[OrderItem]) -> List[uuid.UUID]:
        ...

    async def delete_order(self, order_id: uuid.UUID) -> None:
        """Remove a header and its items. Only used to compensate a failed commit."""
        ...

    async def get(self, order_id: uuid.UUID) -> Order:
        """Order with its items. Raises NotFoundError."""
        ...

    async def list_for_store(self, store_id: uuid.UUID) -> List[Order]:
        """Orders of a store with their items, oldest first."""
        ...


@runtime_checkable
class AtomicOrderStore(OrderStore, Protocol):
    """
    Order store that shares a database with the product store.

    Such a store commits stock decrements, the header and the items in one
    transaction, so no reader ever sees part of an order.
    """

    async def commit_order(self, order: Order) -> Order:
        """
        Decrement stock for every item (only where stock >= quantity) and
        insert the header and items, all or nothing.

        Raises:
            NotFoundError: A product does not exist
            InsufficientStockError: A product no longer has enough stock
        """
        ...
