"""Order storage for constructmart."""

import time
from datetime import datetime, timezone
from typing import Any

from .errors import OrderNotFoundError
from .json_store import SCHEMA_VERSION, JsonDocumentStore
from .models import Order

ORDER_NUMBER_PREFIX = "ORD"

# Idempotency keys are honoured for a day, then pruned
IDEMPOTENCY_KEY_TTL = 24 * 60 * 60


class OrderStore(JsonDocumentStore):
    """
    Manages orders, the per-day order number counter and idempotency keys.

    Mutations go through ``transaction()``; the helpers below operate on the
    loaded document so a whole workflow step (check, mutate, append audit
    entries) happens under one lock.
    """

    filename = "orders.json"

    def _empty(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "orders": [],
            "order_counters": {},
            "idempotency_keys": {},
        }

    def list_orders(self) -> list[Order]:
        """All orders, newest first."""
        data = self._load_data()
        orders = [Order.from_dict(o) for o in data.get("orders", [])]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    def get_order(self, order_id: str) -> Order:
        """
        Get an order by ID or order number.

        Raises:
            OrderNotFoundError: If order doesn't exist.
        """
        return Order.from_dict(self.find(self._load_data(), order_id))

    # In-transaction helpers

    @staticmethod
    def find(data: dict[str, Any], order_id: str) -> dict[str, Any]:
        for o in data.get("orders", []):
            if o["id"] == order_id or o["order_number"] == order_id:
                return o
        raise OrderNotFoundError(order_id)

    @staticmethod
    def replace(data: dict[str, Any], order: Order) -> None:
        for i, o in enumerate(data["orders"]):
            if o["id"] == order.id:
                data["orders"][i] = order.to_dict()
                return
        raise OrderNotFoundError(order.id)

    @staticmethod
    def next_order_number(data: dict[str, Any], now: datetime | None = None) -> str:
        """
        Allocate the next order number, e.g. ``ORD2610180001``.

        The counter is persisted per day and only ever increases.
        """
        now = now or datetime.now(timezone.utc)
        day = now.strftime("%y%m%d")
        counters = data.setdefault("order_counters", {})
        counters[day] = counters.get(day, 0) + 1
        number = f"{ORDER_NUMBER_PREFIX}{day}{counters[day]:04d}"

        # Never hand out a number that is already taken (e.g. after a manual import)
        taken = {o["order_number"] for o in data.get("orders", [])}
        while number in taken:
            counters[day] += 1
            number = f"{ORDER_NUMBER_PREFIX}{day}{counters[day]:04d}"
        return number

    @staticmethod
    def lookup_key(
        data: dict[str, Any], scope: str, key: str, now: float | None = None
    ) -> dict[str, Any] | None:
        """The record stored for a key, or None if unknown or older than the retention window."""
        now = time.time() if now is None else now
        record = data.setdefault("idempotency_keys", {}).get(f"{scope}:{key}")
        if record is None or record.get("stored_at", 0) <= now - IDEMPOTENCY_KEY_TTL:
            return None
        return record

    @staticmethod
    def remember_key(
        data: dict[str, Any],
        scope: str,
        key: str,
        record: dict[str, Any],
        now: float | None = None,
    ) -> None:
        """Store a key's result and drop keys past the retention window."""
        now = time.time() if now is None else now
        keys = data.setdefault("idempotency_keys", {})
        cutoff = now - IDEMPOTENCY_KEY_TTL
        for stale in [k for k, rec in keys.items() if rec.get("stored_at", 0) <= cutoff]:
            del keys[stale]
        keys[f"{scope}:{key}"] = {**record, "stored_at": now}
