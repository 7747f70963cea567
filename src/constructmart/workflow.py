"""Order creation, item assignment and fulfillment workflow."""

import copy
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from .address_store import AddressStore, validate_address_payload
from .catalog_store import ProductStore
from .errors import (
    ConflictError,
    ForbiddenError,
    InsufficientStockError,
    InvalidAddressError,
    InvalidTransitionError,
    ItemNotFoundError,
    AddressNotFoundError,
    MinimumOrderNotMetError,
    UserNotFoundError,
    ValidationError,
)
from .item_status import (
    PROGRESS_STATUSES,
    ItemStatus,
    OrderStatus,
    check_transition,
    derive_order_status,
    parse_status,
)
from .lifecycle import record_created, record_declined, record_transition
from .models import PAYMENT_METHODS, Actor, Order, OrderItem, _generate_id
from .order_store import OrderStore
from .pricing import PricingCalculator, PricingLine, line_total
from .settings_store import SettingsStore
from .user_store import UserStore

logger = logging.getLogger(__name__)

EXPECTED_DELIVERY_DAYS = 7
MAX_PAGE_SIZE = 100


@dataclass
class OrderView:
    """An order as one viewer sees it.

    Merchants only see their own (and still claimable) items, but
    ``order_status`` is always derived from every item of the order.
    """

    order: Order
    order_status: OrderStatus


def _get_item(order: Order, item_id: str) -> OrderItem:
    item = order.get_item(item_id)
    if item is None:
        raise ItemNotFoundError(item_id)
    return item


def _is_claimable(item: OrderItem, merchant_id: str) -> bool:
    return (
        item.item_status == ItemStatus.PENDING.value
        and item.assigned_merchant_id is None
        and merchant_id not in item.rejected_by
    )


def _parse_lines(items: list[dict[str, Any]]) -> list[tuple[str, int]]:
    """Validate requested lines into (product_id, quantity) pairs."""
    if not items:
        raise ValidationError("At least one item is required", field="items")

    requested: list[tuple[str, int]] = []
    for raw in items:
        product_id = raw.get("product_id")
        quantity = raw.get("quantity")
        if not product_id:
            raise ValidationError("Valid product ID is required", field="items")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("Quantity must be at least 1", field="items")
        requested.append((product_id, quantity))
    return requested


def _check_products(
    requested: list[tuple[str, int]], products: dict[str, dict[str, Any]]
) -> None:
    for product_id, _ in requested:
        product = products.get(product_id)
        if product is None:
            raise ValidationError(f"Product {product_id} not found", field="items")
        if not product.get("enabled", True):
            raise ValidationError(f"Product {product['name']} is not available", field="items")


class OrderService:
    """
    Applies the order rules on top of the stores.

    Every mutation loads, checks and writes inside the stores' locks, so a
    check (e.g. "item still unassigned") and the write it guards are one
    atomic step. When both catalog and orders are touched the catalog lock is
    always taken first.
    """

    def __init__(
        self,
        orders: OrderStore,
        products: ProductStore,
        addresses: AddressStore,
        settings: SettingsStore,
        users: UserStore | None = None,
    ):
        self.orders = orders
        self.products = products
        self.addresses = addresses
        self.settings = settings
        self.users = users

    # --- Creation ---

    def create_order(
        self,
        actor: Actor,
        items: list[dict[str, Any]],
        customer_phone: str,
        address_id: str | None = None,
        address: dict[str, Any] | None = None,
        payment_method: str = "cod",
        delivery_instructions: str | None = None,
        idempotency_key: str | None = None,
    ) -> Order:
        """
        Create an order from a checkout request.

        Client-supplied prices are ignored; lines are priced from the catalog.
        Nothing is written unless every check passes.

        Raises:
            ValidationError: Empty or malformed items, unknown payment method.
            MinimumOrderNotMetError: Server subtotal below the minimum order value.
            InsufficientStockError: One or more lines exceed available stock.
            InvalidAddressError: Address id unknown or payload incomplete.
        """
        if not actor.is_customer:
            raise ForbiddenError("Only customers can place orders")
        requested = self._validate_request(items, customer_phone, payment_method)
        settings = self.settings.get()
        calculator = PricingCalculator(settings)
        key_scope = f"create:{actor.user_id}"

        with self.products.transaction() as catalog, self.orders.transaction() as data:
            if idempotency_key:
                seen = self.orders.lookup_key(data, key_scope, idempotency_key)
                if seen is not None:
                    logger.info("Replaying order %s for idempotency key", seen["order_id"])
                    return Order.from_dict(self.orders.find(data, seen["order_id"]))

            products = self.products.products_by_id(catalog)
            _check_products(requested, products)

            lines = [
                PricingLine(
                    quantity=qty,
                    unit_price=products[pid]["price"],
                    weight=products[pid].get("weight", 0.0),
                )
                for pid, qty in requested
            ]
            totals = calculator.order_totals(lines)
            if not calculator.meets_minimum(totals.subtotal):
                raise MinimumOrderNotMetError(
                    float(totals.subtotal), float(settings.minimum_order_value)
                )

            self._check_stock(requested, products)
            delivery_address = self._resolve_address(actor, address_id, address)

            for pid, qty in requested:
                self.products.decrement_stock(catalog, pid, qty)

            now = datetime.now(timezone.utc)
            order = Order(
                id=_generate_id(),
                order_number=self.orders.next_order_number(data, now),
                customer_id=actor.user_id,
                customer_name=actor.user_name,
                customer_phone=customer_phone.strip(),
                delivery_address=delivery_address,
                items=[
                    OrderItem(
                        id=_generate_id(),
                        product_id=pid,
                        product_name=products[pid]["name"],
                        quantity=qty,
                        unit_price=products[pid]["price"],
                        total_price=line_total(qty, products[pid]["price"]),
                        unit=products[pid].get("unit", ""),
                        sku=products[pid].get("sku"),
                        weight=products[pid].get("weight", 0.0),
                    )
                    for pid, qty in requested
                ],
                subtotal=float(totals.subtotal),
                tax=float(totals.tax),
                delivery_charge=float(totals.delivery_charge),
                platform_fee=float(totals.platform_fee),
                total_amount=float(totals.total_amount),
                payment_method=payment_method,
                pricing_breakdown=totals.breakdown,
                delivery_instructions=(delivery_instructions or "").strip() or None,
                expected_delivery_date=(now + timedelta(days=EXPECTED_DELIVERY_DAYS))
                .isoformat()
                .replace("+00:00", "Z"),
            )
            record_created(order, actor)
            order.created_at = order.updated_at

            data["orders"].append(order.to_dict())
            if idempotency_key:
                self.orders.remember_key(
                    data, key_scope, idempotency_key, {"order_id": order.id}
                )

        logger.info(
            "Created order %s for customer %s (%d items, total %.2f)",
            order.order_number,
            actor.user_id,
            len(order.items),
            order.total_amount,
        )
        return order

    def _validate_request(
        self, items: list[dict[str, Any]], customer_phone: str, payment_method: str
    ) -> list[tuple[str, int]]:
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Invalid payment method: {payment_method}", field="payment_method")
        if not (customer_phone or "").strip():
            raise ValidationError("Phone number is required", field="customer_phone")
        return _parse_lines(items)

    @staticmethod
    def _check_stock(
        requested: list[tuple[str, int]], products: dict[str, dict[str, Any]]
    ) -> None:
        wanted: dict[str, int] = {}
        for pid, qty in requested:
            wanted[pid] = wanted.get(pid, 0) + qty

        failures = [
            {
                "product_id": pid,
                "name": products[pid]["name"],
                "requested": qty,
                "available": products[pid]["stock"],
            }
            for pid, qty in wanted.items()
            if qty > products[pid]["stock"]
        ]
        if failures:
            raise InsufficientStockError(failures)

    def _resolve_address(
        self, actor: Actor, address_id: str | None, address: dict[str, Any] | None
    ) -> dict[str, Any]:
        if address_id:
            try:
                return self.addresses.get_address(actor.user_id, address_id).snapshot()
            except AddressNotFoundError:
                raise InvalidAddressError(f"address {address_id} not found") from None
        return validate_address_payload(address)

    def calculate_pricing(
        self, items: list[dict[str, Any]], distance: float = 0.0
    ) -> dict[str, Any]:
        """
        Price a prospective order from the catalog and current settings.

        This is the authoritative figure the client shows before checkout.
        Stock is not reserved.
        """
        requested = _parse_lines(items)
        settings = self.settings.get()
        calculator = PricingCalculator(settings)
        products = {p.id: p.to_dict() for p in self.products.list_products(include_disabled=True)}
        _check_products(requested, products)

        lines = [
            PricingLine(qty, products[pid]["price"], products[pid].get("weight", 0.0))
            for pid, qty in requested
        ]
        totals = calculator.order_totals(lines, distance)
        result = totals.to_dict()
        result["items"] = [
            {
                "product_id": pid,
                "name": products[pid]["name"],
                "quantity": qty,
                "unit_price": products[pid]["price"],
                "total_price": float(line.total_price),
                "available": products[pid]["stock"],
            }
            for (pid, qty), line in zip(requested, lines)
        ]
        result["minimum_order_value"] = settings.minimum_order_value
        result["meets_minimum"] = calculator.meets_minimum(totals.subtotal)
        return result

    # --- Assignment ---

    def assign_item(
        self,
        order_id: str,
        item_id: str,
        actor: Actor,
        merchant_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> Order:
        """
        Claim a pending item (merchant) or assign it to a merchant (admin).

        The "still unassigned" check and the write happen under one lock, so
        of two concurrent claims exactly one wins; the other gets ConflictError.

        Raises:
            ForbiddenError: Caller is not an approved merchant or an admin, a merchant
                names another merchant, or the merchant declined the item.
            ConflictError: Item already has a merchant.
            InvalidTransitionError: Item is not pending (e.g. rejected).
        """
        merchant_id, merchant_name = self._resolve_assignee(actor, merchant_id)
        key_scope = f"assign:{actor.user_id}"

        with self.orders.transaction() as data:
            if idempotency_key:
                seen = self.orders.lookup_key(data, key_scope, idempotency_key)
                if seen is not None and seen["item_id"] == item_id:
                    return Order.from_dict(self.orders.find(data, seen["order_id"]))

            order = Order.from_dict(self.orders.find(data, order_id))
            item = _get_item(order, item_id)

            if item.assigned_merchant_id is not None:
                logger.warning(
                    "Claim conflict on %s/%s: %s lost to %s",
                    order.order_number,
                    item.id,
                    merchant_id,
                    item.assigned_merchant_id,
                )
                raise ConflictError(
                    f"Item already assigned to {item.assigned_merchant_name or item.assigned_merchant_id}"
                )
            if actor.is_merchant and actor.user_id in item.rejected_by:
                raise ForbiddenError("You declined this item")
            previous = ItemStatus(item.item_status)
            check_transition(previous, ItemStatus.ASSIGNED)

            item.assigned_merchant_id = merchant_id
            item.assigned_merchant_name = merchant_name
            item.item_status = ItemStatus.ASSIGNED.value
            record_transition(
                order,
                item,
                previous,
                ItemStatus.ASSIGNED,
                actor,
                metadata={"merchant_id": merchant_id},
            )
            self.orders.replace(data, order)
            if idempotency_key:
                self.orders.remember_key(
                    data, key_scope, idempotency_key, {"order_id": order.id, "item_id": item.id}
                )

        logger.info("Item %s of %s assigned to %s", item.id, order.order_number, merchant_id)
        return order

    def _resolve_assignee(self, actor: Actor, merchant_id: str | None) -> tuple[str, str]:
        if actor.is_merchant:
            if merchant_id and merchant_id != actor.user_id:
                raise ForbiddenError("Merchants can only claim items for themselves")
            if self.users is not None and actor.user_id not in self.users.active_merchant_ids():
                raise ForbiddenError("Merchant account is not approved")
            return actor.user_id, actor.user_name

        if not actor.is_admin:
            raise ForbiddenError("Only merchants and admins can assign items")
        if not merchant_id:
            raise ValidationError("merchantId is required", field="merchant_id")
        if self.users is None:
            return merchant_id, ""

        try:
            merchant = self.users.get_user(merchant_id)
        except UserNotFoundError:
            raise ValidationError(f"Merchant {merchant_id} not found", field="merchant_id") from None
        if merchant.role != "merchant" or not merchant.active:
            raise ValidationError(f"{merchant_id} is not an active merchant", field="merchant_id")
        return merchant.id, merchant.name

    def reject_item(self, order_id: str, item_id: str, actor: Actor) -> Order:
        """
        Decline a pending item (merchant) or withdraw it from the queue (admin).

        A merchant's decline is recorded in ``rejected_by`` and the item stays
        pending for the other merchants. Once every active merchant has
        declined it, or when an admin rejects it, the item becomes
        ``rejected`` and waits for an admin to reopen it.

        Raises:
            ForbiddenError: Caller is not a merchant or admin.
            InvalidTransitionError: Item is not pending.
        """
        if not (actor.is_merchant or actor.is_admin):
            raise ForbiddenError("Only merchants and admins can reject items")
        active_merchants = self.users.active_merchant_ids() if self.users is not None else None

        with self.orders.transaction() as data:
            order = Order.from_dict(self.orders.find(data, order_id))
            item = _get_item(order, item_id)
            previous = ItemStatus(item.item_status)
            check_transition(previous, ItemStatus.REJECTED)

            if actor.is_merchant:
                if actor.user_id in item.rejected_by:
                    return order
                item.rejected_by.append(actor.user_id)
                exhausted = active_merchants is not None and active_merchants <= set(item.rejected_by)
                if not exhausted:
                    record_declined(order, item, actor)
                    self.orders.replace(data, order)
                    logger.info(
                        "Item %s of %s declined by %s, still offered to other merchants",
                        item.id,
                        order.order_number,
                        actor.user_id,
                    )
                    return order

            item.item_status = ItemStatus.REJECTED.value
            record_transition(
                order,
                item,
                previous,
                ItemStatus.REJECTED,
                actor,
                metadata={"rejected_by": list(item.rejected_by)},
            )
            self.orders.replace(data, order)

        logger.info("Item %s of %s rejected by %s", item.id, order.order_number, actor.user_id)
        return order

    def reopen_item(self, order_id: str, item_id: str, actor: Actor, note: str | None = None) -> Order:
        """Administrative override: offer a rejected item to every merchant again."""
        if not actor.is_admin:
            raise ForbiddenError("Only admins can reopen items")

        with self.orders.transaction() as data:
            order = Order.from_dict(self.orders.find(data, order_id))
            item = _get_item(order, item_id)
            previous = ItemStatus(item.item_status)
            if previous is not ItemStatus.REJECTED:
                raise InvalidTransitionError(previous.value, ItemStatus.PENDING.value)

            declined = item.rejected_by
            item.item_status = ItemStatus.PENDING.value
            item.rejected_by = []
            record_transition(
                order,
                item,
                previous,
                ItemStatus.PENDING,
                actor,
                note=note,
                metadata={"cleared_rejections": declined},
            )
            self.orders.replace(data, order)

        logger.info("Item %s of %s reopened by %s", item.id, order.order_number, actor.user_id)
        return order

    # --- Fulfillment ---

    def update_item_status(
        self,
        order_id: str,
        item_id: str,
        status: str,
        actor: Actor,
        note: str | None = None,
    ) -> Order:
        """
        Move an assigned item forward, or cancel it.

        Only the assigned merchant or an admin may do this. Cancelling returns
        the quantity to catalog stock.

        Raises:
            ValidationError: Unknown status, or a status owned by assign/reject.
            ForbiddenError: Caller is not the assigned merchant or an admin.
            InvalidTransitionError: The change is not in the transition table.
        """
        try:
            target = parse_status(status)
        except ValueError as e:
            raise ValidationError(str(e), field="status") from None
        if target not in PROGRESS_STATUSES:
            raise ValidationError(
                f"Status '{target.value}' is set through the assign/reject actions", field="status"
            )
        if not (actor.is_merchant or actor.is_admin):
            raise ForbiddenError("Only merchants and admins can update item status")

        with self.products.transaction() as catalog, self.orders.transaction() as data:
            order = Order.from_dict(self.orders.find(data, order_id))
            item = _get_item(order, item_id)

            if actor.is_merchant and item.assigned_merchant_id != actor.user_id:
                raise ForbiddenError("Item is not assigned to you")

            previous = ItemStatus(item.item_status)
            check_transition(previous, target)

            item.item_status = target.value
            clean_note = (note or "").strip() or None
            record_transition(order, item, previous, target, actor, note=clean_note)

            if target is ItemStatus.CANCELLED:
                self.products.restock(catalog, item.product_id, item.quantity)
            if target is ItemStatus.DELIVERED and all(
                i.item_status in (ItemStatus.DELIVERED.value, ItemStatus.CANCELLED.value)
                for i in order.items
            ):
                order.actual_delivery_date = order.updated_at

            self.orders.replace(data, order)

        logger.info(
            "Item %s of %s: %s -> %s by %s",
            item.id,
            order.order_number,
            previous.value,
            target.value,
            actor.user_id,
        )
        return order

    # --- Read side ---

    def view(self, order: Order, actor: Actor) -> OrderView:
        """Project an order for a viewer (merchants see only their items)."""
        status = derive_order_status(i.item_status for i in order.items)
        if not actor.is_merchant:
            return OrderView(order=order, order_status=status)

        visible = copy.deepcopy(order)
        visible.items = [
            i
            for i in visible.items
            if i.assigned_merchant_id == actor.user_id or _is_claimable(i, actor.user_id)
        ]
        return OrderView(order=visible, order_status=status)

    def _can_see(self, order: Order, actor: Actor) -> bool:
        if actor.is_admin:
            return True
        if actor.is_customer:
            return order.customer_id == actor.user_id
        return any(
            i.assigned_merchant_id == actor.user_id or _is_claimable(i, actor.user_id)
            for i in order.items
        )

    def get_order(self, order_id: str, actor: Actor) -> OrderView:
        """
        Get one order as the caller may see it.

        Raises:
            OrderNotFoundError: If order doesn't exist.
            ForbiddenError: If the caller may not see it.
        """
        order = self.orders.get_order(order_id)
        if not self._can_see(order, actor):
            raise ForbiddenError("Not authorized to view this order")
        return self.view(order, actor)

    def list_orders(
        self,
        actor: Actor,
        status: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> dict[str, Any]:
        """
        List orders for the caller, newest first.

        Customers get their own orders, merchants the orders holding an item
        assigned to them, admins everything. ``status`` filters on item status.
        """
        if page < 1:
            raise ValidationError("page must be at least 1", field="page")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")
        if status is not None:
            try:
                parse_status(status)
            except ValueError as e:
                raise ValidationError(str(e), field="status") from None

        views = []
        for order in self.orders.list_orders():
            if actor.is_customer and order.customer_id != actor.user_id:
                continue
            if actor.is_merchant and not any(
                i.assigned_merchant_id == actor.user_id for i in order.items
            ):
                continue
            view = self.view(order, actor)
            if actor.is_merchant:
                view.order.items = [
                    i for i in view.order.items if i.assigned_merchant_id == actor.user_id
                ]
            if status and not any(i.item_status == status for i in view.order.items):
                continue
            views.append(view)

        total = len(views)
        start = (page - 1) * limit
        return {
            "orders": views[start:start + limit],
            "total": total,
            "page": page,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    def list_unassigned_items(self, actor: Actor) -> list[dict[str, Any]]:
        """
        The claim queue: pending items without a merchant, oldest order first.

        Merchants do not see items they declined; admins additionally
        see rejected items waiting to be reopened.
        """
        if not (actor.is_merchant or actor.is_admin):
            raise ForbiddenError("Only merchants and admins can view unassigned items")

        queue = []
        for order in reversed(self.orders.list_orders()):
            for item in order.items:
                if item.assigned_merchant_id is not None:
                    continue
                if actor.is_merchant and not _is_claimable(item, actor.user_id):
                    continue
                if actor.is_admin and item.item_status not in (
                    ItemStatus.PENDING.value,
                    ItemStatus.REJECTED.value,
                ):
                    continue
                queue.append(
                    {
                        "order_id": order.id,
                        "order_number": order.order_number,
                        "order_created_at": order.created_at,
                        "delivery_area": order.delivery_address.get("area"),
                        "delivery_city": order.delivery_address.get("city"),
                        "item": item,
                    }
                )
        return queue

    def order_summary(self, actor: Actor) -> dict[str, Any]:
        """
        Item counts per status and delivered revenue.

        Admins get marketplace-wide figures, merchants figures for their items.
        """
        if not (actor.is_merchant or actor.is_admin):
            raise ForbiddenError("Only merchants and admins can view analytics")

        orders = self.orders.list_orders()
        counts = {s.value: 0 for s in ItemStatus}
        revenue = 0.0
        order_count = 0
        order_statuses = {s.value: 0 for s in OrderStatus}

        for order in orders:
            items = order.items
            if actor.is_merchant:
                items = [i for i in items if i.assigned_merchant_id == actor.user_id]
                if not items:
                    continue
            order_count += 1
            order_statuses[derive_order_status(i.item_status for i in order.items).value] += 1
            for item in items:
                counts[item.item_status] += 1
                if item.item_status == ItemStatus.DELIVERED.value:
                    revenue += item.total_price

        return {
            "total_orders": order_count,
            "items_by_status": counts,
            "orders_by_status": order_statuses,
            "delivered_revenue": round(revenue, 2),
        }
