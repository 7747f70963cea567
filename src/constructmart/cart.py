"""Client-side cart with stock hints and a local price estimate.

The cart only ever produces an estimate. The server prices every order from
its own catalog, so totals shown here are replaced by ``calculate_pricing``
before an order is placed.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from .client_storage import CART_KEY, KeyValueStorage
from .pricing import PricingLine, to_money

logger = logging.getLogger(__name__)

# AddToCartResult reasons
OUT_OF_STOCK = "out_of_stock"
EXCEEDS_STOCK = "exceeds_stock"
INVALID_QUANTITY = "invalid_quantity"


@dataclass
class CartItem:
    """A product line in the cart. ``stock`` is the last stock value seen."""

    product_id: str
    name: str
    price: float
    quantity: int
    unit: str = ""
    weight: float = 0.0
    stock: int = 0

    @property
    def line_total(self) -> Decimal:
        return PricingLine(self.quantity, self.price, self.weight).total_price

    def to_dict(self) -> dict[str, Any]:
        return {
            "productId": self.product_id,
            "name": self.name,
            "price": self.price,
            "quantity": self.quantity,
            "unit": self.unit,
            "weight": self.weight,
            "stock": self.stock,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CartItem":
        return cls(
            product_id=data["productId"],
            name=data.get("name", ""),
            price=data["price"],
            quantity=data["quantity"],
            unit=data.get("unit", ""),
            weight=data.get("weight", 0.0),
            stock=data.get("stock", 0),
        )


@dataclass
class AddToCartResult:
    accepted: bool
    reason: str | None = None
    available: int | None = None


@dataclass
class CheckoutGate:
    """Whether the cart may proceed to checkout, and how much is missing."""

    blocked: bool
    remaining: float
    minimum_order_value: float


@dataclass
class Cart:
    """
    Ordered cart lines persisted in client storage under ``cart``.

    Adding a product already in the cart merges into its line and keeps the
    line's position.
    """

    storage: KeyValueStorage
    items: list[CartItem] = field(default_factory=list)

    @classmethod
    def load(cls, storage: KeyValueStorage) -> "Cart":
        raw = storage.get(CART_KEY) or []
        return cls(storage=storage, items=[CartItem.from_dict(i) for i in raw])

    def _save(self) -> None:
        self.storage.set(CART_KEY, [i.to_dict() for i in self.items])

    def _find(self, product_id: str) -> CartItem | None:
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    def add_to_cart(self, product: dict[str, Any], quantity: int = 1) -> AddToCartResult:
        """
        Add a product, merging with an existing line.

        Never raises for stock problems: the result says whether the add was
        accepted, and a rejected add leaves the cart unchanged.
        """
        if quantity < 1:
            return AddToCartResult(accepted=False, reason=INVALID_QUANTITY)

        stock = int(product.get("stock", 0))
        if stock <= 0:
            return AddToCartResult(accepted=False, reason=OUT_OF_STOCK, available=0)

        existing = self._find(product["id"])
        in_cart = existing.quantity if existing else 0
        if in_cart + quantity > stock:
            logger.info(
                "Rejected add of %d x %s: %d in cart, %d in stock",
                quantity,
                product["id"],
                in_cart,
                stock,
            )
            return AddToCartResult(
                accepted=False, reason=EXCEEDS_STOCK, available=max(0, stock - in_cart)
            )

        if existing:
            existing.quantity += quantity
            existing.price = product["price"]
            existing.stock = stock
        else:
            self.items.append(
                CartItem(
                    product_id=product["id"],
                    name=product.get("name", ""),
                    price=product["price"],
                    quantity=quantity,
                    unit=product.get("unit", ""),
                    weight=product.get("weight", 0.0),
                    stock=stock,
                )
            )
        self._save()
        return AddToCartResult(accepted=True, available=stock - in_cart - quantity)

    def update_quantity(self, product_id: str, quantity: int) -> AddToCartResult:
        """
        Set a line's quantity; zero or less removes the line.

        A quantity above the line's stock snapshot is refused and the line
        keeps its current quantity; ``available`` is the most it can hold.
        """
        if quantity <= 0:
            self.remove_from_cart(product_id)
            return AddToCartResult(accepted=True)
        item = self._find(product_id)
        if item is None:
            return AddToCartResult(accepted=False, reason=INVALID_QUANTITY)
        if quantity > item.stock:
            logger.info(
                "Rejected quantity %d for %s: %d in stock", quantity, product_id, item.stock
            )
            return AddToCartResult(accepted=False, reason=EXCEEDS_STOCK, available=item.stock)
        item.quantity = quantity
        self._save()
        return AddToCartResult(accepted=True, available=item.stock - quantity)

    def remove_from_cart(self, product_id: str) -> None:
        self.items = [i for i in self.items if i.product_id != product_id]
        self._save()

    def clear(self) -> None:
        self.items = []
        self.storage.remove(CART_KEY)

    def get_cart_total(self) -> float:
        """Local estimate of the subtotal, recomputed from the lines."""
        total = sum((i.line_total for i in self.items), Decimal("0.00"))
        return float(to_money(total))

    def get_total_items(self) -> int:
        return sum(i.quantity for i in self.items)

    def order_lines(self) -> list[dict[str, Any]]:
        """Lines as sent to the server, without prices."""
        return [{"productId": i.product_id, "quantity": i.quantity} for i in self.items]

    def checkout_gate(self, minimum_order_value: float) -> CheckoutGate:
        subtotal = to_money(self.get_cart_total())
        minimum = to_money(minimum_order_value)
        remaining = max(Decimal("0.00"), minimum - subtotal)
        return CheckoutGate(
            blocked=not self.items or subtotal < minimum,
            remaining=float(remaining),
            minimum_order_value=float(minimum),
        )
