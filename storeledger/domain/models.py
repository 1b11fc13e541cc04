"""
Domain models.

All models are immutable: a balance or stock change produces a new value
that is written back through a store's conditional write, never mutated in
place. Money is always Decimal.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Generic, List, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

T = TypeVar("T")


def quantize_money(amount: Decimal, places: int = 2) -> Decimal:
    """Round to the ledger's fixed number of decimal places."""
    return Decimal(amount).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountKind(str, Enum):
    """The two account kinds the ledger knows about."""

    STORE = "store"
    COMPANY = "company"


class TransferDirection(str, Enum):
    """Which side of a transaction the money left from."""

    STORE_TO_COMPANY = "store_to_company"
    COMPANY_TO_STORE = "company_to_store"


class OrderState(str, Enum):
    """
    Order lifecycle.

    VALIDATING: items checked, nothing persisted.
    COMMITTED: header, items and stock decrements durable. Terminal.
    """

    VALIDATING = "validating"
    COMMITTED = "committed"


class Account(BaseModel):
    """Balance-holding entity owned by a store or by the company."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    kind: AccountKind
    owner_id: uuid.UUID
    balance: Decimal = Decimal("0")

    @field_validator("balance")
    @classmethod
    def validate_balance(cls, v: Decimal) -> Decimal:
        """Balances never go below zero."""
        if v < 0:
            raise ValueError("Account balance cannot be negative")
        return v

    def with_balance(self, balance: Decimal) -> Account:
        return self.model_copy(update={"balance": balance})


class TransactionRecord(BaseModel):
    """
    One entry of the append-only transaction log.

    Both account references are always stored; direction tells which one
    was debited so the log can be replayed unambiguously.
    """

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    store_account_id: uuid.UUID
    company_account_id: uuid.UUID
    amount: Decimal = Field(..., gt=0)
    direction: TransferDirection
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def debited_account_id(self) -> uuid.UUID:
        if self.direction == TransferDirection.STORE_TO_COMPANY:
            return self.store_account_id
        return self.company_account_id

    @property
    def credited_account_id(self) -> uuid.UUID:
        if self.direction == TransferDirection.STORE_TO_COMPANY:
            return self.company_account_id
        return self.store_account_id

    def signed_amount_for(self, account_id: uuid.UUID) -> Decimal:
        """Balance change this record applied to the given account."""
        if account_id == self.debited_account_id:
            return -self.amount
        if account_id == self.credited_account_id:
            return self.amount
        return Decimal("0")


class Product(BaseModel):
    """Catalog product with price and stock."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str = Field(..., min_length=1)
    price: Decimal = Field(..., ge=0)
    quantity_in_stock: int = Field(default=0, ge=0)
    category_id: uuid.UUID | None = None


class OrderItem(BaseModel):
    """Order line. unit_price is the product price captured at order time."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    order_id: uuid.UUID
    product_id: uuid.UUID
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


class Order(BaseModel):
    """Committed request for product quantities from one store."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    store_id: uuid.UUID
    total_amount: Decimal
    created_at: datetime = Field(default_factory=utcnow)
    state: OrderState = OrderState.VALIDATING
    items: List[OrderItem] = Field(default_factory=list)

    def committed(self) -> Order:
        return self.model_copy(update={"state": OrderState.COMMITTED})


class RequestedItem(BaseModel):
    """(product_id, quantity) pair as supplied by the caller."""

    model_config = ConfigDict(frozen=True)

    product_id: uuid.UUID
    quantity: int


class Versioned(BaseModel, Generic[T]):
    """Entity paired with the version it was read at."""

    model_config = ConfigDict(frozen=True)

    entity: T
    version: int


class BalanceWrite(BaseModel):
    """Conditional balance write: apply new_balance only if version is unchanged."""

    model_config = ConfigDict(frozen=True)

    account_id: uuid.UUID
    expected_version: int
    new_balance: Decimal = Field(..., ge=0)
