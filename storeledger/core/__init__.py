"""Ledger and order fulfillment services."""
from .exceptions import (
    ConcurrencyConflictError,
    InsufficientFundsError,
    InsufficientStockError,
    InvalidAccountPairError,
    InvalidAmountError,
    InvalidQuantityError,
    NotFoundError,
    PersistenceFailureError,
    StoreLedgerError,
)
from .fulfillment import OrderFulfillmentService
from .ledger import LedgerService
from .saga import Saga, SagaState

__all__ = [
    "ConcurrencyConflictError",
    "InsufficientFundsError",
    "InsufficientStockError",
    "InvalidAccountPairError",
    "InvalidAmountError",
    "InvalidQuantityError",
    "LedgerService",
    "NotFoundError",
    "OrderFulfillmentService",
    "PersistenceFailureError",
    "Saga",
    "SagaState",
    "StoreLedgerError",
]
