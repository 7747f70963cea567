"""Order item status state machine and derived order status."""

from collections.abc import Iterable
from enum import Enum

from .errors import InvalidTransitionError


class ItemStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class OrderStatus(str, Enum):
    """Display-level summary of an order, computed from its items."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    PARTIAL = "partial"


ALLOWED_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.PENDING: frozenset({ItemStatus.ASSIGNED, ItemStatus.REJECTED}),
    ItemStatus.ASSIGNED: frozenset({ItemStatus.PROCESSING, ItemStatus.CANCELLED}),
    ItemStatus.PROCESSING: frozenset(
        {ItemStatus.SHIPPED, ItemStatus.DELIVERED, ItemStatus.CANCELLED}
    ),
    ItemStatus.SHIPPED: frozenset({ItemStatus.DELIVERED}),
    ItemStatus.DELIVERED: frozenset(),
    ItemStatus.CANCELLED: frozenset(),
    ItemStatus.REJECTED: frozenset(),
}

# Statuses reached through update_item_status; assignment and rejection
# have dedicated operations.
PROGRESS_STATUSES = frozenset(
    {ItemStatus.PROCESSING, ItemStatus.SHIPPED, ItemStatus.DELIVERED, ItemStatus.CANCELLED}
)

_AWAITING_MERCHANT = frozenset({ItemStatus.PENDING, ItemStatus.REJECTED})


def parse_status(value: str) -> ItemStatus:
    """Convert a raw status string; raises ValueError for unknown values."""
    try:
        return ItemStatus(value)
    except ValueError:
        raise ValueError(f"Unknown item status: {value!r}") from None


def is_terminal(status: ItemStatus | str) -> bool:
    return not ALLOWED_TRANSITIONS[ItemStatus(status)]


def can_transition(current: ItemStatus | str, target: ItemStatus | str) -> bool:
    return ItemStatus(target) in ALLOWED_TRANSITIONS[ItemStatus(current)]


def check_transition(current: ItemStatus | str, target: ItemStatus | str) -> None:
    """
    Validate a status change against the transition table.

    Raises:
        InvalidTransitionError: If the change is not allowed.
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(ItemStatus(current).value, ItemStatus(target).value)


def derive_order_status(statuses: Iterable[ItemStatus | str]) -> OrderStatus:
    """
    Compute the aggregate order status from its item statuses.

    Rules, first match wins:
    - every item cancelled -> cancelled
    - every item delivered or cancelled -> delivered
    - any item pending or rejected (awaiting a merchant) -> pending
    - every non-cancelled item in the same status -> that status
    - otherwise -> partial
    """
    items = [ItemStatus(s) for s in statuses]
    if not items:
        return OrderStatus.PENDING

    if all(s is ItemStatus.CANCELLED for s in items):
        return OrderStatus.CANCELLED
    if all(s in (ItemStatus.DELIVERED, ItemStatus.CANCELLED) for s in items):
        return OrderStatus.DELIVERED
    if any(s in _AWAITING_MERCHANT for s in items):
        return OrderStatus.PENDING

    open_statuses = {s for s in items if s is not ItemStatus.CANCELLED}
    if len(open_statuses) == 1:
        return OrderStatus(open_statuses.pop().value)
    return OrderStatus.PARTIAL
