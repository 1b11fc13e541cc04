"""
Unit tests for order fulfillment.
"""
import asyncio
import uuid
from decimal import Decimal
from typing import Dict, Iterable, List

import pytest

from storeledger.core import (
    InsufficientStockError,
    InvalidQuantityError,
    NotFoundError,
    OrderFulfillmentService,
    PersistenceFailureError,
)
from storeledger.domain import Order, OrderItem, OrderState, Product, RequestedItem, Versioned
from storeledger.stores import InMemoryOrderStore, InMemoryProductStore


class SagaOnlyOrderStore:
    """Order store kept apart from the products, so commits go through the saga."""

    def __init__(self, db):
        self.inner = InMemoryOrderStore(db)

    async def create_order(self, order: Order) -> uuid.UUID:
        return await self.inner.create_order(order)

    async def create_items(self, items: List[OrderItem]) -> List[uuid.UUID]:
        return await self.inner.create_items(items)

    async def delete_order(self, order_id: uuid.UUID) -> None:
        await self.inner.delete_order(order_id)

    async def get(self, order_id: uuid.UUID) -> Order:
        return await self.inner.get(order_id)

    async def list_for_store(self, store_id: uuid.UUID) -> List[Order]:
        return await self.inner.list_for_store(store_id)


class FailingItemsOrderStore(SagaOnlyOrderStore):
    """Rejects every line-item insert."""

    async def create_items(self, items: List[OrderItem]) -> List[uuid.UUID]:
        raise PersistenceFailureError("order_items table unavailable")


class StepwiseWritesForbidden(InMemoryOrderStore):
    """Fails the test if the saga's per-step writes are used."""

    async def create_order(self, order: Order) -> uuid.UUID:
        raise AssertionError("header written outside commit_order")

    async def create_items(self, items: List[OrderItem]) -> List[uuid.UUID]:
        raise AssertionError("items written outside commit_order")


class PausingProductStore(InMemoryProductStore):
    """A decrement commits, then the call lingers until released."""

    def __init__(self, db):
        super().__init__(db)
        self.committed = asyncio.Event()
        self.release = asyncio.Event()

    async def decrement_stock(self, product_id: uuid.UUID, quantity: int) -> Versioned[Product]:
        result = await super().decrement_stock(product_id, quantity)
        self.committed.set()
        await self.release.wait()
        return result


class PausingOrderStore(InMemoryOrderStore):
    """commit_order commits, then the call lingers until released."""

    def __init__(self, db):
        super().__init__(db)
        self.committed = asyncio.Event()
        self.release = asyncio.Event()

    async def commit_order(self, order: Order) -> Order:
        result = await super().commit_order(order)
        self.committed.set()
        await self.release.wait()
        return result


class FailingRestockProductStore(InMemoryProductStore):
    """Stock can be taken but never given back."""

    async def increment_stock(self, product_id: uuid.UUID, quantity: int) -> Versioned[Product]:
        raise PersistenceFailureError("products table unavailable")


class RacingProductStore(InMemoryProductStore):
    """Another order takes stock of one product right after validation reads it."""

    def __init__(self, db, contested: uuid.UUID, taken: int):
        super().__init__(db)
        self.contested = contested
        self.taken = taken

    async def read_many(self, product_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Versioned[Product]]:
        snapshot = await super().read_many(product_ids)
        await super().decrement_stock(self.contested, self.taken)
        return snapshot


async def stock_of(product_store: InMemoryProductStore, product_id: uuid.UUID) -> int:
    return (await product_store.read(product_id)).entity.quantity_in_stock


class TestCreateOrder:
    """Test suite for OrderFulfillmentService.create_order."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_single_item_order(self, fulfillment, product_store, store_id, widget) -> None:
        """Price 10, stock 5, order 2 -> total 20 and stock 3."""
        order = await fulfillment.create_order(store_id, [(widget.id, 2)])

        assert order.state == OrderState.COMMITTED
        assert order.store_id == store_id
        assert order.total_amount == Decimal("20")
        assert len(order.items) == 1
        assert order.items[0].unit_price == Decimal("10")
        assert order.items[0].quantity == 2
        assert order.items[0].order_id == order.id
        assert await stock_of(product_store, widget.id) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_total_is_exact_sum_of_lines(
        self, fulfillment, product_store, store_id, widget, gadget
    ) -> None:
        order = await fulfillment.create_order(
            store_id,
            [RequestedItem(product_id=widget.id, quantity=1), RequestedItem(product_id=gadget.id, quantity=3)],
        )

        assert order.total_amount == Decimal("17.50")
        assert order.total_amount == sum(
            (i.quantity * i.unit_price for i in order.items), Decimal("0")
        )
        assert await stock_of(product_store, gadget.id) == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeated_product_merged(self, fulfillment, product_store, store_id, widget) -> None:
        order = await fulfillment.create_order(store_id, [(widget.id, 1), (widget.id, 2)])

        assert len(order.items) == 1
        assert order.items[0].quantity == 3
        assert await stock_of(product_store, widget.id) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_whole_stock_can_be_ordered(self, fulfillment, product_store, store_id, widget) -> None:
        await fulfillment.create_order(store_id, [(widget.id, 5)])

        assert await stock_of(product_store, widget.id) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_insufficient_stock_changes_nothing(
        self, fulfillment, product_store, memory_db, store_id, widget, gadget
    ) -> None:
        """One short line fails the whole batch before any write."""
        with pytest.raises(InsufficientStockError) as exc_info:
            await fulfillment.create_order(store_id, [(gadget.id, 2), (widget.id, 6)])

        assert exc_info.value.product_id == widget.id
        assert exc_info.value.available == 5
        assert await stock_of(product_store, widget.id) == 5
        assert await stock_of(product_store, gadget.id) == 8
        assert memory_db.orders == {}
        assert memory_db.order_items == {}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_request(self, fulfillment, store_id) -> None:
        with pytest.raises(InvalidQuantityError):
            await fulfillment.create_order(store_id, [])

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -1, 1.5, "abc", None])
    async def test_invalid_quantity(self, fulfillment, product_store, store_id, widget, quantity) -> None:
        with pytest.raises(InvalidQuantityError):
            await fulfillment.create_order(store_id, [(widget.id, 1), (widget.id, quantity)])

        assert await stock_of(product_store, widget.id) == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "make_item",
        [
            lambda product_id: (product_id,),
            lambda product_id: (product_id, 1, 1),
            lambda product_id: ("not-a-uuid", 1),
            lambda product_id: product_id,
        ],
    )
    async def test_malformed_item(self, fulfillment, memory_db, store_id, widget, make_item) -> None:
        with pytest.raises(InvalidQuantityError):
            await fulfillment.create_order(store_id, [make_item(widget.id)])

        assert memory_db.orders == {}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_product(self, fulfillment, product_store, memory_db, store_id, widget) -> None:
        missing = uuid.uuid4()

        with pytest.raises(NotFoundError) as exc_info:
            await fulfillment.create_order(store_id, [(widget.id, 1), (missing, 1)])

        assert exc_info.value.entity_id == missing
        assert await stock_of(product_store, widget.id) == 5
        assert memory_db.orders == {}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unit_price_is_a_snapshot(self, fulfillment, product_store, store_id, widget) -> None:
        """Repricing a product later does not touch existing order lines."""
        order = await fulfillment.create_order(store_id, [(widget.id, 1)])

        current = await product_store.read(widget.id)
        await product_store.conditional_write(
            widget.id, current.version, current.entity.model_copy(update={"price": Decimal("99")})
        )

        stored = await fulfillment.get_order(order.id)
        assert stored.items[0].unit_price == Decimal("10")
        assert stored.total_amount == Decimal("10")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_order_retried_succeeds_once(
        self, fulfillment, product_store, store_id, widget
    ) -> None:
        with pytest.raises(InsufficientStockError):
            await fulfillment.create_order(store_id, [(widget.id, 7)])

        await product_store.increment_stock(widget.id, 2)
        await fulfillment.create_order(store_id, [(widget.id, 7)])

        assert await stock_of(product_store, widget.id) == 0
        assert len(await fulfillment.orders_for_store(store_id)) == 1


class TestCommitCompensation:
    """Saga compensation when a commit step fails on a split order store."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_item_failure_restores_stock_and_removes_header(
        self, memory_db, product_store, store_id, widget, gadget
    ) -> None:
        service = OrderFulfillmentService(product_store, FailingItemsOrderStore(memory_db))

        with pytest.raises(PersistenceFailureError) as exc_info:
            await service.create_order(store_id, [(widget.id, 2), (gadget.id, 1)])

        assert exc_info.value.partial is False
        assert await stock_of(product_store, widget.id) == 5
        assert await stock_of(product_store, gadget.id) == 8
        assert memory_db.orders == {}
        assert memory_db.order_items == {}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_compensation_is_reported_as_partial(
        self, memory_db, store_id, widget
    ) -> None:
        service = OrderFulfillmentService(
            FailingRestockProductStore(memory_db), FailingItemsOrderStore(memory_db)
        )

        with pytest.raises(PersistenceFailureError) as exc_info:
            await service.create_order(store_id, [(widget.id, 2)])

        assert exc_info.value.partial is True
        assert exc_info.value.to_dict()["error"]["partial"] is True
        assert isinstance(exc_info.value.__cause__, PersistenceFailureError)
        assert memory_db.orders == {}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_commit_time_shortfall_restores_earlier_decrements(
        self, memory_db, store_id, widget, gadget
    ) -> None:
        """Validation passed, but a competing order took the gadgets before commit."""
        products = RacingProductStore(memory_db, contested=gadget.id, taken=7)
        service = OrderFulfillmentService(products, SagaOnlyOrderStore(memory_db))

        with pytest.raises(InsufficientStockError) as exc_info:
            await service.create_order(store_id, [(widget.id, 3), (gadget.id, 4)])

        assert exc_info.value.product_id == gadget.id
        assert await stock_of(products, widget.id) == 5
        assert await stock_of(products, gadget.id) == 1
        assert memory_db.orders == {}


class TestAtomicCommit:
    """Order stores sharing a database with the products commit in one step."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_commit_does_not_use_stepwise_writes(
        self, memory_db, product_store, store_id, widget, gadget
    ) -> None:
        service = OrderFulfillmentService(product_store, StepwiseWritesForbidden(memory_db))

        order = await service.create_order(store_id, [(widget.id, 2), (gadget.id, 1)])

        stored = await service.get_order(order.id)
        assert stored.total_amount == Decimal("22.50")
        assert len(stored.items) == 2
        assert await stock_of(product_store, widget.id) == 3
        assert await stock_of(product_store, gadget.id) == 7

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_commit_time_shortfall_writes_nothing(
        self, memory_db, order_store, store_id, widget, gadget
    ) -> None:
        products = RacingProductStore(memory_db, contested=gadget.id, taken=7)
        service = OrderFulfillmentService(products, order_store)

        with pytest.raises(InsufficientStockError) as exc_info:
            await service.create_order(store_id, [(widget.id, 3), (gadget.id, 4)])

        assert exc_info.value.product_id == gadget.id
        assert exc_info.value.available == 1
        assert await stock_of(products, widget.id) == 5
        assert await stock_of(products, gadget.id) == 1
        assert memory_db.orders == {}
        assert memory_db.order_items == {}

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_observers_never_see_a_partial_order(
        self, fulfillment, memory_db, store_id, widget, gadget
    ) -> None:
        """Every snapshot taken while orders commit is internally consistent."""
        done = asyncio.Event()
        snapshots = []

        async def observe() -> None:
            while not done.is_set():
                widget_stock = memory_db.products[widget.id][0].quantity_in_stock
                orders = list(memory_db.orders.values())
                items = list(memory_db.order_items.values())
                snapshots.append((widget_stock, orders, items))
                await asyncio.sleep(0)

        async def place_orders() -> None:
            try:
                for _ in range(3):
                    await fulfillment.create_order(store_id, [(widget.id, 1), (gadget.id, 2)])
            finally:
                done.set()

        await asyncio.gather(observe(), place_orders())

        assert len(snapshots) > 1
        for widget_stock, orders, items in snapshots:
            assert widget_stock == 5 - len(orders)
            for order in orders:
                lines = [i for i in items if i.order_id == order.id]
                assert len(lines) == 2
                assert order.total_amount == sum(
                    (i.quantity * i.unit_price for i in lines), Decimal("0")
                )


class TestCommitCancellation:
    """A caller cancelled mid-commit never leaves stock taken without an order."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_cancel_during_saga_step_finishes_the_order(
        self, memory_db, store_id, widget
    ) -> None:
        products = PausingProductStore(memory_db)
        service = OrderFulfillmentService(products, SagaOnlyOrderStore(memory_db))

        task = asyncio.create_task(service.create_order(store_id, [(widget.id, 2)]))
        await products.committed.wait()
        task.cancel()
        products.release.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        orders = await service.orders_for_store(store_id)
        assert await stock_of(products, widget.id) == 3
        assert len(orders) == 1
        assert [(i.product_id, i.quantity) for i in orders[0].items] == [(widget.id, 2)]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_cancel_after_atomic_commit_keeps_the_order(
        self, memory_db, product_store, store_id, widget
    ) -> None:
        orders = PausingOrderStore(memory_db)
        service = OrderFulfillmentService(product_store, orders)

        task = asyncio.create_task(service.create_order(store_id, [(widget.id, 2)]))
        await orders.committed.wait()
        task.cancel()
        orders.release.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert await stock_of(product_store, widget.id) == 3
        assert len(await service.orders_for_store(store_id)) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_cancel_before_commit_writes_nothing(
        self, memory_db, product_store, store_id, widget
    ) -> None:
        orders = PausingOrderStore(memory_db)
        service = OrderFulfillmentService(product_store, orders)

        task = asyncio.create_task(service.create_order(store_id, [(widget.id, 2)]))
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert await stock_of(product_store, widget.id) == 5
        assert memory_db.orders == {}


class TestOrderConcurrency:
    """Competing orders for the last units of a product."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_last_unit_sold_once(self, fulfillment, product_store, store_id) -> None:
        product = Product(name="last-one", price=Decimal("3"), quantity_in_stock=1)
        await product_store.create(product)

        results = await asyncio.gather(
            fulfillment.create_order(store_id, [(product.id, 1)]),
            fulfillment.create_order(uuid.uuid4(), [(product.id, 1)]),
            return_exceptions=True,
        )

        orders = [r for r in results if isinstance(r, Order)]
        errors = [r for r in results if not isinstance(r, Order)]
        assert len(orders) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], InsufficientStockError)
        assert await stock_of(product_store, product.id) == 0

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_many_orders_never_oversell(self, fulfillment, product_store, memory_db, store_id, widget) -> None:
        results = await asyncio.gather(
            *[fulfillment.create_order(store_id, [(widget.id, 1)]) for _ in range(12)],
            return_exceptions=True,
        )

        orders = [r for r in results if isinstance(r, Order)]
        assert len(orders) == 5
        assert all(
            isinstance(r, InsufficientStockError) for r in results if not isinstance(r, Order)
        )
        assert await stock_of(product_store, widget.id) == 0
        assert len(memory_db.orders) == 5
        assert len(memory_db.order_items) == 5


class TestOrderQueries:
    """Read operations over committed orders."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_orders_for_store(self, fulfillment, store_id, widget, gadget) -> None:
        first = await fulfillment.create_order(store_id, [(widget.id, 1)])
        second = await fulfillment.create_order(store_id, [(gadget.id, 2), (widget.id, 1)])
        await fulfillment.create_order(uuid.uuid4(), [(gadget.id, 1)])

        orders = await fulfillment.orders_for_store(store_id)

        assert [o.id for o in orders] == [first.id, second.id]
        assert len(orders[1].items) == 2
        assert all(o.state == OrderState.COMMITTED for o in orders)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_unknown_order(self, fulfillment) -> None:
        with pytest.raises(NotFoundError):
            await fulfillment.get_order(uuid.uuid4())
