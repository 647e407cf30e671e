"""In-memory order store: CRUD, transitions and the assignment compare-and-set."""

import asyncio
import threading

from conftest import READY_PATH, make_draft, run
from delivery_dispatch.domain import ErrorCode, OrderStatus


async def _ready(store):
    order = await store.create_order(make_draft())
    for status in READY_PATH:
        order = (await store.transition(order.id, status)).order
    return order


class TestCreateAndRead:
    def test_create_order(self, store):
        order = run(store.create_order(make_draft()))
        assert order.status is OrderStatus.PENDING
        assert order.total == 1520.0
        assert run(store.get_order(order.id)).order == order

    def test_get_missing_order(self, store):
        result = run(store.get_order("nope"))
        assert not result.success
        assert result.error is ErrorCode.NOT_FOUND

    def test_list_orders_filters_and_pages(self, store):
        async def scenario():
            first = await store.create_order(make_draft())
            await store.create_order(make_draft())
            await store.transition(first.id, OrderStatus.ACCEPTED)
            everything = await store.list_orders()
            accepted = await store.list_orders(OrderStatus.ACCEPTED)
            page = await store.list_orders(limit=1, offset=1)
            return everything, accepted, page

        everything, accepted, page = run(scenario())
        assert everything[0] == 2
        assert accepted[0] == 1 and accepted[1][0].status is OrderStatus.ACCEPTED
        assert page[0] == 2 and len(page[1]) == 1


class TestTransition:
    def test_walk_to_delivered(self, store):
        async def scenario():
            order = await _ready(store)
            order = (await store.assign_driver(order.id, "driver-1")).order
            order = (await store.transition(order.id, OrderStatus.IN_DELIVERY, "driver-1")).order
            return (await store.transition(order.id, OrderStatus.DELIVERED)).order

        order = run(scenario())
        assert order.status is OrderStatus.DELIVERED
        assert order.driver_id == "driver-1"
        assert order.accepted_at <= order.preparing_at <= order.ready_at
        assert order.ready_at <= order.assigned_at <= order.in_delivery_at <= order.delivered_at

    def test_invalid_transition_leaves_order_untouched(self, store):
        async def scenario():
            order = await store.create_order(make_draft())
            result = await store.transition(order.id, OrderStatus.READY)
            return order, result, await store.get_order(order.id)

        order, result, current = run(scenario())
        assert result.error is ErrorCode.INVALID_TRANSITION
        assert current.order == order

    def test_terminal_orders_do_not_move(self, store):
        async def scenario():
            order = await store.create_order(make_draft())
            await store.transition(order.id, OrderStatus.CANCELLED)
            return await store.transition(order.id, OrderStatus.ACCEPTED)

        assert run(scenario()).error is ErrorCode.INVALID_TRANSITION

    def test_transition_missing_order(self, store):
        assert run(store.transition("nope", OrderStatus.ACCEPTED)).error is ErrorCode.NOT_FOUND


class TestAssignDriver:
    def test_assign_ready_order(self, store):
        async def scenario():
            order = await _ready(store)
            return await store.assign_driver(order.id, "driver-1")

        result = run(scenario())
        assert result.success
        assert result.order.status is OrderStatus.ASSIGNED
        assert result.order.driver_id == "driver-1"
        assert result.order.assigned_at is not None

    def test_second_driver_is_already_assigned(self, store):
        async def scenario():
            order = await _ready(store)
            await store.assign_driver(order.id, "driver-1")
            return await store.assign_driver(order.id, "driver-2")

        result = run(scenario())
        assert result.error is ErrorCode.ALREADY_ASSIGNED
        assert result.order.driver_id == "driver-1"

    def test_not_ready_is_invalid_state(self, store):
        async def scenario():
            order = await store.create_order(make_draft())
            return await store.assign_driver(order.id, "driver-1")

        assert run(scenario()).error is ErrorCode.INVALID_STATE

    def test_concurrent_coroutines_one_winner(self, store):
        async def scenario():
            order = await _ready(store)
            results = await asyncio.gather(
                *(store.assign_driver(order.id, f"driver-{n}") for n in range(20))
            )
            return order.id, results

        order_id, results = run(scenario())
        winners = [r for r in results if r.success]
        assert len(winners) == 1
        assert all(r.error is ErrorCode.ALREADY_ASSIGNED for r in results if not r.success)
        final = run(store.get_order(order_id)).order
        assert final.driver_id == winners[0].order.driver_id

    def test_concurrent_threads_one_winner(self, store):
        order = run(_ready(store))
        barrier = threading.Barrier(8)
        results = []
        results_lock = threading.Lock()

        def accept(driver_id):
            barrier.wait()
            result = asyncio.run(store.assign_driver(order.id, driver_id))
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=accept, args=(f"driver-{n}",)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(results) == 8
        assert sum(1 for r in results if r.success) == 1
