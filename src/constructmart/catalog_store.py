"""Product catalog storage for constructmart."""

import logging
from typing import Any

from .errors import ProductNotFoundError, ValidationError
from .json_store import SCHEMA_VERSION, JsonDocumentStore
from .models import Product, _utc_now

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = ("name", "price", "stock", "unit", "weight", "sku", "enabled")
_NULLABLE_FIELDS = ("sku",)


def _find(data: dict[str, Any], product_id: str) -> dict[str, Any]:
    for p in data.get("products", []):
        if p["id"] == product_id:
            return p
    raise ProductNotFoundError(product_id)


class ProductStore(JsonDocumentStore):
    """Manages catalog products and their stock."""

    filename = "products.json"

    def _empty(self) -> dict[str, Any]:
        return {"schema_version": SCHEMA_VERSION, "products": []}

    def list_products(self, include_disabled: bool = False) -> list[Product]:
        data = self._load_data()
        products = [Product.from_dict(p) for p in data.get("products", [])]
        if include_disabled:
            return products
        return [p for p in products if p.enabled]

    def get_product(self, product_id: str) -> Product:
        """
        Get a product by ID.

        Raises:
            ProductNotFoundError: If product doesn't exist.
        """
        return Product.from_dict(_find(self._load_data(), product_id))

    def add_product(self, product: Product) -> Product:
        if product.price < 0:
            raise ValidationError("price must not be negative", field="price")
        if product.stock < 0:
            raise ValidationError("stock must not be negative", field="stock")

        with self.transaction() as data:
            data["products"].append(product.to_dict())
        logger.info("Added product %s (%s)", product.id, product.name)
        return product

    def update_product(self, product_id: str, updates: dict[str, Any]) -> Product:
        """
        Update catalog fields of a product.

        Price changes never affect existing orders, which hold their own snapshot.

        Raises:
            ProductNotFoundError: If product doesn't exist.
            ValidationError: If a field is unknown or out of range.
        """
        for key, value in updates.items():
            if key not in _UPDATABLE_FIELDS:
                raise ValidationError(f"Unknown product field: {key}", field=key)
            if value is None and key not in _NULLABLE_FIELDS:
                raise ValidationError(f"{key} cannot be null", field=key)
            if key in ("price", "stock", "weight") and value < 0:
                raise ValidationError(f"{key} must not be negative", field=key)

        with self.transaction() as data:
            p = _find(data, product_id)
            p.update(updates)
            p["updated_at"] = _utc_now()
            product = Product.from_dict(p)
        return product

    # Stock operations work on a document already loaded inside transaction()

    @staticmethod
    def products_by_id(data: dict[str, Any]) -> dict[str, dict[str, Any]]:
        return {p["id"]: p for p in data.get("products", [])}

    @staticmethod
    def decrement_stock(data: dict[str, Any], product_id: str, quantity: int) -> None:
        p = _find(data, product_id)
        p["stock"] -= quantity
        p["updated_at"] = _utc_now()

    @staticmethod
    def restock(data: dict[str, Any], product_id: str, quantity: int) -> None:
        """Return quantity to stock; missing products are skipped."""
        try:
            p = _find(data, product_id)
        except ProductNotFoundError:
            logger.warning("Cannot restock %s: product no longer exists", product_id)
            return
        p["stock"] += quantity
        p["updated_at"] = _utc_now()
