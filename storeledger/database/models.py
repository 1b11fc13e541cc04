"""SQLAlchemy database models for accounts, the transaction log, products and orders."""
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

MONEY = Numeric(18, 2, asdecimal=True)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class AccountRow(Base):
    """
    Store and company account balances.

    version is bumped by every conditional write and is the optimistic
    concurrency token.
    """

    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="non_negative_balance"),
        CheckConstraint("kind IN ('store', 'company')", name="valid_account_kind"),
        Index("idx_accounts_owner_kind", "owner_id", "kind"),
    )

    def __repr__(self) -> str:
        """String representation of AccountRow."""
        return (
            f"<AccountRow(id={self.id}, kind={self.kind}, "
            f"balance={self.balance}, version={self.version})>"
        )


class TransactionRow(Base):
    """
    Append-only transaction log.

    Rows are inserted in the same database transaction as the two balance
    updates they describe and are never updated or deleted.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    store_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    company_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    direction: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "direction IN ('store_to_company', 'company_to_store')",
            name="valid_direction",
        ),
    )

    def __repr__(self) -> str:
        """String representation of TransactionRow."""
        return (
            f"<TransactionRow(id={self.id}, amount={self.amount}, "
            f"direction={self.direction})>"
        )


class ProductRow(Base):
    """Products with price and stock."""

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    quantity_in_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    category_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("quantity_in_stock >= 0", name="non_negative_stock"),
        CheckConstraint("price >= 0", name="non_negative_price"),
    )

    def __repr__(self) -> str:
        """String representation of ProductRow."""
        return (
            f"<ProductRow(id={self.id}, name={self.name}, "
            f"stock={self.quantity_in_stock}, version={self.version})>"
        )


class OrderRow(Base):
    """Order headers."""

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (Index("idx_orders_store_created", "store_id", "created_at"),)

    def __repr__(self) -> str:
        """String representation of OrderRow."""
        return f"<OrderRow(id={self.id}, store_id={self.store_id}, total={self.total_amount})>"


class OrderItemRow(Base):
    """Order lines with the unit price captured at order time."""

    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    __table_args__ = (CheckConstraint("quantity > 0", name="positive_quantity"),)

    def __repr__(self) -> str:
        """String representation of OrderItemRow."""
        return (
            f"<OrderItemRow(id={self.id}, order_id={self.order_id}, "
            f"product_id={self.product_id}, quantity={self.quantity})>"
        )
