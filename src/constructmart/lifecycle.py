"""Status history and lifecycle audit entries for orders."""

from typing import Any

from .item_status import ItemStatus
from .models import Actor, LifecycleEvent, Order, OrderItem, StatusHistoryEntry, _utc_now

ORDER_CREATED = "order_created"
ITEM_ASSIGNED = "item_assigned"
ITEM_REJECTED = "item_rejected"
ITEM_REOPENED = "item_reopened"
ITEM_DECLINED = "item_declined"

# Event type recorded when an item reaches each status
STATUS_EVENTS: dict[ItemStatus, str] = {
    ItemStatus.ASSIGNED: ITEM_ASSIGNED,
    ItemStatus.REJECTED: ITEM_REJECTED,
    ItemStatus.PENDING: ITEM_REOPENED,
    ItemStatus.PROCESSING: "item_processing",
    ItemStatus.SHIPPED: "item_shipped",
    ItemStatus.DELIVERED: "item_delivered",
    ItemStatus.CANCELLED: "item_cancelled",
}


def _next_timestamp(order: Order) -> str:
    """Current time, never earlier than the newest audit entry."""
    now = _utc_now()
    latest = [h.timestamp for h in order.status_history[-1:]]
    latest += [e.timestamp for e in order.lifecycle[-1:]]
    if latest and max(latest) > now:
        return max(latest)
    return now


def describe(item: OrderItem, status: ItemStatus, actor: Actor) -> str:
    who = actor.user_name or actor.user_id
    name = f"{item.quantity} x {item.product_name}"
    if status is ItemStatus.ASSIGNED:
        merchant = item.assigned_merchant_name or item.assigned_merchant_id
        if actor.is_merchant:
            return f"{name} claimed by {merchant}"
        return f"{name} assigned to {merchant} by {who}"
    if status is ItemStatus.REJECTED:
        return f"{name} rejected by {who}"
    if status is ItemStatus.PENDING:
        return f"{name} reopened for assignment by {who}"
    return f"{name} marked {status.value} by {who}"


def record_created(order: Order, actor: Actor) -> None:
    """Append the creation entries to a new order."""
    timestamp = _next_timestamp(order)
    order.status_history.append(
        StatusHistoryEntry(status=ItemStatus.PENDING.value, timestamp=timestamp, note="Order placed")
    )
    order.lifecycle.append(
        LifecycleEvent(
            event_type=ORDER_CREATED,
            timestamp=timestamp,
            event_description=f"Order {order.order_number} placed with {len(order.items)} item(s)",
            triggered_by=actor,
            metadata={
                "total_amount": order.total_amount,
                "payment_method": order.payment_method,
            },
        )
    )
    order.updated_at = timestamp


def record_transition(
    order: Order,
    item: OrderItem,
    previous: ItemStatus,
    status: ItemStatus,
    actor: Actor,
    note: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append one status history entry and one lifecycle event for an item transition."""
    timestamp = _next_timestamp(order)
    order.status_history.append(
        StatusHistoryEntry(status=status.value, timestamp=timestamp, item_id=item.id, note=note)
    )
    order.lifecycle.append(
        LifecycleEvent(
            event_type=STATUS_EVENTS[status],
            timestamp=timestamp,
            event_description=describe(item, status, actor),
            triggered_by=actor,
            metadata={
                "item_id": item.id,
                "previous_status": previous.value,
                "new_status": status.value,
                **(metadata or {}),
            },
        )
    )
    order.updated_at = timestamp


def record_declined(order: Order, item: OrderItem, actor: Actor) -> None:
    """Append a lifecycle event for a merchant declining an item that stays pending.

    The item status does not change, so no status history entry is written.
    """
    timestamp = _next_timestamp(order)
    order.lifecycle.append(
        LifecycleEvent(
            event_type=ITEM_DECLINED,
            timestamp=timestamp,
            event_description=(
                f"{item.quantity} x {item.product_name} declined by "
                f"{actor.user_name or actor.user_id}"
            ),
            triggered_by=actor,
            metadata={"item_id": item.id, "merchant_id": actor.user_id},
        )
    )
    order.updated_at = timestamp
