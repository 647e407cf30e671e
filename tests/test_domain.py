"""Order status workflow and snapshot helpers."""

from datetime import timedelta

import pytest

from conftest import make_draft
from delivery_dispatch.domain import (
    ALLOWED_TRANSITIONS,
    DRIVER_STATUSES,
    LineItem,
    OrderStatus,
    TERMINAL_STATUSES,
    apply_changes,
    assignment_changes,
    build_order,
    can_transition,
    check_transition,
    transition_changes,
    utcnow,
    validate_draft,
)


def _order(**overrides):
    return build_order("order-1", make_draft(**overrides), default_fee=500.0, now=utcnow())


class TestTransitionTable:
    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PENDING, OrderStatus.ACCEPTED),
            (OrderStatus.ACCEPTED, OrderStatus.PREPARING),
            (OrderStatus.PREPARING, OrderStatus.READY),
            (OrderStatus.READY, OrderStatus.ASSIGNED),
            (OrderStatus.ASSIGNED, OrderStatus.IN_DELIVERY),
            (OrderStatus.IN_DELIVERY, OrderStatus.DELIVERED),
        ],
    )
    def test_forward_path(self, current, target):
        assert can_transition(current, target)

    def test_every_non_terminal_status_can_be_cancelled(self):
        for status, targets in ALLOWED_TRANSITIONS.items():
            if status in TERMINAL_STATUSES:
                assert targets == frozenset()
            else:
                assert OrderStatus.CANCELLED in targets

    def test_skipping_steps_is_not_allowed(self):
        assert not can_transition(OrderStatus.PENDING, OrderStatus.READY)
        assert not can_transition(OrderStatus.ACCEPTED, OrderStatus.READY)
        assert not can_transition(OrderStatus.READY, OrderStatus.IN_DELIVERY)

    def test_no_way_back(self):
        assert not can_transition(OrderStatus.PREPARING, OrderStatus.ACCEPTED)
        assert not can_transition(OrderStatus.DELIVERED, OrderStatus.IN_DELIVERY)


class TestStatusParsing:
    def test_case_insensitive(self):
        assert OrderStatus.parse("in_delivery") is OrderStatus.IN_DELIVERY
        assert OrderStatus.parse(" Ready ") is OrderStatus.READY

    def test_unknown_status(self):
        with pytest.raises(ValueError):
            OrderStatus.parse("LOST")


class TestCheckTransition:
    def test_assigned_is_never_a_direct_transition(self):
        order = apply_changes(_order(), {"status": OrderStatus.READY})
        assert check_transition(order, OrderStatus.ASSIGNED) is not None

    def test_allowed_transition(self):
        assert check_transition(_order(), OrderStatus.ACCEPTED) is None

    def test_other_driver_cannot_move_an_assigned_order(self):
        order = apply_changes(_order(), assignment_changes(_order(), "driver-1", utcnow()))
        assert check_transition(order, OrderStatus.IN_DELIVERY, "driver-2") is not None
        assert check_transition(order, OrderStatus.IN_DELIVERY, "driver-1") is None
        assert check_transition(order, OrderStatus.IN_DELIVERY) is None


class TestChanges:
    def test_transition_sets_its_timestamp(self):
        order = _order()
        now = order.created_at + timedelta(seconds=5)
        changes = transition_changes(order, OrderStatus.ACCEPTED, now)
        assert changes["status"] is OrderStatus.ACCEPTED
        assert changes["accepted_at"] == now
        assert changes["updated_at"] == now

    def test_timestamps_never_go_backwards(self):
        order = _order()
        earlier = order.created_at - timedelta(minutes=10)
        changes = transition_changes(order, OrderStatus.ACCEPTED, earlier)
        assert changes["accepted_at"] == order.created_at

    def test_cancelling_clears_the_driver(self):
        order = _order()
        assigned = apply_changes(order, assignment_changes(order, "driver-1", utcnow()))
        cancelled = apply_changes(assigned, transition_changes(assigned, OrderStatus.CANCELLED, utcnow()))
        assert cancelled.driver_id is None
        assert cancelled.cancelled_at is not None
        assert OrderStatus.CANCELLED not in DRIVER_STATUSES

    def test_delivery_keeps_the_driver(self):
        order = _order()
        assigned = apply_changes(order, assignment_changes(order, "driver-1", utcnow()))
        moving = apply_changes(assigned, transition_changes(assigned, OrderStatus.IN_DELIVERY, utcnow()))
        assert moving.driver_id == "driver-1"


class TestBuildOrder:
    def test_totals(self):
        order = _order()
        assert order.subtotal == 1020.0
        assert order.delivery_fee == 500.0
        assert order.total == 1520.0
        assert order.status is OrderStatus.PENDING
        assert order.driver_id is None

    def test_explicit_fee_overrides_default(self):
        order = _order(delivery_fee=0.0)
        assert order.total == order.subtotal

    def test_line_item_subtotal(self):
        assert LineItem(product_id="p", quantity=3, unit_price=1.1).subtotal == 3.3


class TestValidateDraft:
    def test_valid(self):
        assert validate_draft(make_draft()) is None

    def test_empty_items(self):
        assert validate_draft(make_draft(items=())) is not None

    def test_bad_quantity(self):
        draft = make_draft(items=(LineItem(product_id="p", quantity=0, unit_price=1.0),))
        assert "quantity" in validate_draft(draft)

    def test_negative_fee(self):
        assert validate_draft(make_draft(delivery_fee=-1.0)) is not None
