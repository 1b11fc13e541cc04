"""Domain models for accounts, the transaction log, products and orders."""
from .models import (
    Account,
    AccountKind,
    BalanceWrite,
    Order,
    OrderItem,
    OrderState,
    Product,
    RequestedItem,
    TransactionRecord,
    TransferDirection,
    Versioned,
    quantize_money,
)

__all__ = [
    "Account",
    "AccountKind",
    "BalanceWrite",
    "Order",
    "OrderItem",
    "OrderState",
    "Product",
    "RequestedItem",
    "TransactionRecord",
    "TransferDirection",
    "Versioned",
    "quantize_money",
]
