"""Database package for storeledger."""
from .connection import close_db, get_engine, get_session_factory, init_db, make_session_factory
from .models import (
    AccountRow,
    Base,
    OrderItemRow,
    OrderRow,
    ProductRow,
    TransactionRow,
)

__all__ = [
    "AccountRow",
    "Base",
    "OrderItemRow",
    "OrderRow",
    "ProductRow",
    "TransactionRow",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "make_session_factory",
]
