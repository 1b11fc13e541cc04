"""
Order fulfillment: requested items -> committed order with stock decremented.

Flow:
1. Validate input (non-empty, positive quantities)
2. Snapshot-read every product, fail on a missing one
3. Check every line against stock; any shortfall fails the whole request
4. Price lines from the snapshot (unit_price) and total them
5. Commit. Stores sharing a database with the products commit stock
   decrements, header and items in one transaction. Otherwise the commit is
   a saga (decrements -> header -> items) compensating completed steps in
   reverse if a later one fails. Either way the commit, once started, runs
   to the end even if the caller is cancelled.
"""
import asyncio
import uuid
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Awaitable, Dict, Iterable, List, Sequence, Tuple, Union

import structlog

from storeledger.core.exceptions import (
    InsufficientStockError,
    InvalidQuantityError,
    StoreLedgerError,
)
from storeledger.core.saga import Saga
from storeledger.domain import Order, OrderItem, OrderState, Product, RequestedItem, Versioned
from storeledger.monitoring.logging import operation_context
from storeledger.monitoring.metrics import (
    concurrency_conflicts_total,
    order_items_per_order,
    orders_total,
)
from storeledger.stores.base import AtomicOrderStore, OrderStore, ProductStore

logger = structlog.get_logger(__name__)

ItemLike = Union[RequestedItem, Tuple[uuid.UUID, int]]


class OrderFulfillmentService:
    """
    Creates orders for a store while keeping stock non-negative.

    The whole batch is validated before anything is written, and the commit
    either persists header, items and every stock decrement, or none of them.
    Order stores implementing AtomicOrderStore commit in one transaction;
    any other order store is driven through a compensating saga.
    """

    def __init__(self, products: ProductStore, orders: OrderStore):
        """
        Initialize fulfillment service.

        Args:
            products: Product store with conditional stock decrements
            orders: Order/line-item store
        """
        self.products = products
        self.orders = orders

    @staticmethod
    def _normalize_items(requested_items: Iterable[ItemLike]) -> "OrderedDict[uuid.UUID, int]":
        """
        Validate quantities and merge repeated products into one line.

        Raises:
            InvalidQuantityError: Empty request, a malformed item or a quantity <= 0
        """
        merged: "OrderedDict[uuid.UUID, int]" = OrderedDict()
        for raw in requested_items:
            try:
                if isinstance(raw, RequestedItem):
                    item = raw
                else:
                    product_id, quantity = raw
                    item = RequestedItem(product_id=product_id, quantity=quantity)
            except (TypeError, ValueError) as e:
                # pydantic's ValidationError is a ValueError
                raise InvalidQuantityError(f"Malformed requested item: {raw!r}") from e
            if item.quantity <= 0:
                raise InvalidQuantityError(
                    f"Quantity must be positive, got {item.quantity}",
                    product_id=item.product_id,
                )
            merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity

        if not merged:
            raise InvalidQuantityError("Order must contain at least one item")
        return merged

    @staticmethod
    def _check_stock(
        quantities: Dict[uuid.UUID, int], snapshot: Dict[uuid.UUID, Versioned[Product]]
    ) -> None:
        for product_id, quantity in quantities.items():
            available = snapshot[product_id].entity.quantity_in_stock
            if quantity > available:
                raise InsufficientStockError(product_id, quantity, available)

    @staticmethod
    def _price_order(
        store_id: uuid.UUID,
        quantities: Dict[uuid.UUID, int],
        snapshot: Dict[uuid.UUID, Versioned[Product]],
    ) -> Order:
        """Build the VALIDATING order with price snapshots and exact total."""
        order_id = uuid.uuid4()
        items = [
            OrderItem(
                order_id=order_id,
                product_id=product_id,
                quantity=quantity,
                unit_price=snapshot[product_id].entity.price,
            )
            for product_id, quantity in quantities.items()
        ]
        total = sum((item.subtotal for item in items), Decimal("0"))
        return Order(
            id=order_id,
            store_id=store_id,
            total_amount=total,
            state=OrderState.VALIDATING,
            items=items,
        )

    def _build_commit_saga(self, order: Order) -> Saga:
        """
        One step per stock decrement, then the header, then the items.

        Each decrement is its own step so a shortfall on a later product
        restores exactly the decrements that were already applied.
        """
        saga = Saga(name="create_order")

        for item in order.items:
            saga.add_step(
                f"decrement_stock:{item.product_id}",
                self._decrement_action(item.product_id, item.quantity),
                self._restore_action(item.product_id, item.quantity),
            )

        async def create_header(ctx: Dict[str, Any]) -> uuid.UUID:
            return await self.orders.create_order(order)

        async def delete_header(ctx: Dict[str, Any], order_id: uuid.UUID) -> None:
            await self.orders.delete_order(order_id)

        async def create_items(ctx: Dict[str, Any]) -> List[uuid.UUID]:
            return await self.orders.create_items(order.items)

        saga.add_step("create_order", create_header, delete_header)
        saga.add_step("create_items", create_items)
        return saga

    def _decrement_action(self, product_id: uuid.UUID, quantity: int) -> Any:
        async def decrement(ctx: Dict[str, Any]) -> Versioned[Product]:
            try:
                return await self.products.decrement_stock(product_id, quantity)
            except InsufficientStockError:
                concurrency_conflicts_total.labels(entity="product").inc()
                raise

        return decrement

    def _restore_action(self, product_id: uuid.UUID, quantity: int) -> Any:
        async def restore(ctx: Dict[str, Any], result: Any) -> None:
            await self.products.increment_stock(product_id, quantity)

        return restore

    @staticmethod
    async def _commit_atomically(orders: AtomicOrderStore, order: Order) -> None:
        try:
            await orders.commit_order(order)
        except InsufficientStockError:
            concurrency_conflicts_total.labels(entity="product").inc()
            raise

    @staticmethod
    async def _run_to_completion(commit: Awaitable[Any]) -> None:
        """
        Await a commit that cancellation must not abandon halfway.

        The commit runs in its own task. If the caller is cancelled, that task
        still commits or compensates, and CancelledError reaches the caller
        only once it has settled.
        """
        task = asyncio.ensure_future(commit)
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            await asyncio.wait([task])
            error = task.exception()
            logger.warning(
                "order_commit_settled_after_cancel",
                committed=error is None,
                error=str(error) if error is not None else None,
            )
            raise

    async def create_order(
        self,
        store_id: uuid.UUID,
        requested_items: Sequence[ItemLike],
    ) -> Order:
        """
        Create an order for a store.

        Args:
            store_id: Ordering store
            requested_items: (product_id, quantity) pairs or RequestedItem models

        Returns:
            Order: The committed order with its items

        Raises:
            InvalidQuantityError: Empty request, malformed item or non-positive quantity
            NotFoundError: A product does not exist
            InsufficientStockError: A line exceeds stock at validation or commit time
            PersistenceFailureError: Storage failure (partial=True if compensation failed)
        """
        with operation_context("create_order", store_id=store_id):
            try:
                quantities = self._normalize_items(requested_items)
                snapshot = await self.products.read_many(quantities.keys())
                self._check_stock(quantities, snapshot)
                order = self._price_order(store_id, quantities, snapshot)

                logger.info(
                    "order_validated",
                    order_id=str(order.id),
                    items=len(order.items),
                    total_amount=str(order.total_amount),
                )

                if isinstance(self.orders, AtomicOrderStore):
                    commit = self._commit_atomically(self.orders, order)
                else:
                    commit = self._build_commit_saga(order).execute()
                await self._run_to_completion(commit)
            except StoreLedgerError as e:
                orders_total.labels(outcome=e.error_code).inc()
                logger.warning("order_failed", error_code=e.error_code, error=e.message)
                raise

            committed = order.committed()
            orders_total.labels(outcome="committed").inc()
            order_items_per_order.observe(len(committed.items))
            logger.info(
                "order_committed",
                order_id=str(committed.id),
                total_amount=str(committed.total_amount),
            )
            return committed

    async def get_order(self, order_id: uuid.UUID) -> Order:
        """Committed order with its items. Raises NotFoundError."""
        return await self.orders.get(order_id)

    async def orders_for_store(self, store_id: uuid.UUID) -> List[Order]:
        """All orders of a store with their items, oldest first."""
        return await self.orders.list_for_store(store_id)
