"""Tests for the item status state machine."""

import pytest

from constructmart.errors import InvalidTransitionError
from constructmart.item_status import (
    ALLOWED_TRANSITIONS,
    ItemStatus,
    OrderStatus,
    can_transition,
    check_transition,
    derive_order_status,
    is_terminal,
    parse_status,
)


class TestTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "assigned"),
            ("pending", "rejected"),
            ("assigned", "processing"),
            ("assigned", "cancelled"),
            ("processing", "shipped"),
            ("processing", "delivered"),
            ("processing", "cancelled"),
            ("shipped", "delivered"),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target)
        check_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "processing"),
            ("pending", "cancelled"),
            ("assigned", "shipped"),
            ("shipped", "cancelled"),
            ("delivered", "shipped"),
            ("rejected", "assigned"),
            ("cancelled", "processing"),
        ],
    )
    def test_disallowed_raises(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransitionError) as exc_info:
            check_transition(current, target)
        assert exc_info.value.current == current
        assert exc_info.value.target == target

    def test_terminal_statuses(self):
        terminal = {s for s in ItemStatus if is_terminal(s)}
        assert terminal == {ItemStatus.DELIVERED, ItemStatus.CANCELLED, ItemStatus.REJECTED}

    def test_every_status_has_a_row(self):
        assert set(ALLOWED_TRANSITIONS) == set(ItemStatus)

    def test_parse_unknown_status(self):
        with pytest.raises(ValueError, match="Unknown item status"):
            parse_status("lost")

    def test_parse_known_status(self):
        assert parse_status("shipped") is ItemStatus.SHIPPED


class TestDeriveOrderStatus:
    def test_all_cancelled(self):
        assert derive_order_status(["cancelled", "cancelled"]) is OrderStatus.CANCELLED

    def test_delivered_with_cancellations(self):
        assert derive_order_status(["delivered", "cancelled"]) is OrderStatus.DELIVERED

    def test_pending_wins_over_progress(self):
        assert derive_order_status(["pending", "shipped"]) is OrderStatus.PENDING

    def test_rejected_counts_as_pending(self):
        assert derive_order_status(["rejected", "assigned"]) is OrderStatus.PENDING

    def test_uniform_status(self):
        assert derive_order_status(["processing", "processing"]) is OrderStatus.PROCESSING

    def test_cancelled_items_ignored_for_uniformity(self):
        assert derive_order_status(["shipped", "cancelled"]) is OrderStatus.SHIPPED

    def test_mixed_progress_is_partial(self):
        assert derive_order_status(["assigned", "shipped"]) is OrderStatus.PARTIAL

    def test_delivered_and_shipped_is_partial(self):
        assert derive_order_status(["delivered", "shipped"]) is OrderStatus.PARTIAL

    def test_empty(self):
        assert derive_order_status([]) is OrderStatus.PENDING
