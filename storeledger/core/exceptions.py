"""
Error taxonomy for the ledger and order fulfillment core.

Every error carries:
1. A stable error code (for the presentation layer)
2. A human readable message
3. Structured context (ids, amounts) for logging

Input validation errors are raised before any read or write. Conflicts
are recoverable by re-issuing the whole operation with fresh reads.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional


class StoreLedgerError(Exception):
    """Base exception for all core errors."""

    error_code = "storeledger_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for presentation layers."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
                "context": {k: str(v) for k, v in self.context.items()},
            }
        }


class InvalidAmountError(StoreLedgerError):
    """Transfer amount is zero or negative."""

    error_code = "invalid_amount"

    def __init__(self, amount: Decimal):
        super().__init__(f"Amount must be positive, got {amount}", amount=amount)
        self.amount = amount


class InvalidQuantityError(StoreLedgerError):
    """Order request is empty or carries a non-positive quantity."""

    error_code = "invalid_quantity"

    def __init__(self, message: str, product_id: Optional[uuid.UUID] = None):
        super().__init__(message, product_id=product_id)
        self.product_id = product_id


class InvalidAccountPairError(StoreLedgerError):
    """
    Transfer endpoints are not one store account and one company account.

    Covers transfers to the same account as well.
    """

    error_code = "invalid_account_pair"


class NotFoundError(StoreLedgerError):
    """Account, product, transaction or order does not exist."""

    error_code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found: {entity_id}", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class InsufficientFundsError(StoreLedgerError):
    """Source account balance is lower than the requested amount."""

    error_code = "insufficient_funds"

    def __init__(self, account_id: uuid.UUID, balance: Decimal, requested: Decimal):
        super().__init__(
            f"Insufficient funds in account {account_id}: "
            f"balance {balance}, requested {requested}",
            account_id=account_id,
            balance=balance,
            requested=requested,
        )
        self.account_id = account_id
        self.balance = balance
        self.requested = requested


class InsufficientStockError(StoreLedgerError):
    """Requested quantity exceeds the product's stock."""

    error_code = "insufficient_stock"

    def __init__(self, product_id: uuid.UUID, requested: int, available: Optional[int] = None):
        detail = f", available {available}" if available is not None else ""
        super().__init__(
            f"Insufficient stock for product {product_id}: requested {requested}{detail}",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ConcurrencyConflictError(StoreLedgerError):
    """
    Raised when an optimistic concurrency check fails.

    The caller (or the service's own bounded retry) re-issues the whole
    operation with fresh reads.
    """

    error_code = "concurrency_conflict"

    def __init__(self, entity: str, entity_id: Any, expected_version: int):
        super().__init__(
            f"Concurrency conflict for {entity} {entity_id}: "
            f"expected version {expected_version}",
            entity=entity,
            entity_id=entity_id,
            expected_version=expected_version,
        )
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version


class PersistenceFailureError(StoreLedgerError):
    """
    Storage unreachable or a write rejected for reasons other than a version conflict.

    partial=True means compensation of an already-applied step also failed and
    the stores need manual reconciliation.
    """

    error_code = "persistence_failure"

    def __init__(self, message: str, partial: bool = False, **context: Any):
        super().__init__(message, partial=partial, **context)
        self.partial = partial

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["error"]["partial"] = self.partial
        return data
