"""Persistence contracts and their in-memory and SQLAlchemy implementations."""
from .base import AccountStore, AtomicOrderStore, OrderStore, ProductStore, TransactionLog
from .memory import (
    InMemoryAccountStore,
    InMemoryDatabase,
    InMemoryOrderStore,
    InMemoryProductStore,
    InMemoryTransactionLog,
)
from .sql import SqlAccountStore, SqlOrderStore, SqlProductStore, SqlTransactionLog

__all__ = [
    "AccountStore",
    "AtomicOrderStore",
    "OrderStore",
    "ProductStore",
    "TransactionLog",
    "InMemoryAccountStore",
    "InMemoryDatabase",
    "InMemoryOrderStore",
    "InMemoryProductStore",
    "InMemoryTransactionLog",
    "SqlAccountStore",
    "SqlOrderStore",
    "SqlProductStore",
    "SqlTransactionLog",
]
