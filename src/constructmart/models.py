"""Data models for constructmart."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
import uuid


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _generate_id() -> str:
    """Generate a new document ID."""
    return str(uuid.uuid4())


# Roles

CUSTOMER = "customer"
MERCHANT = "merchant"
ADMIN = "admin"
SYSTEM = "system"
ROLES = (CUSTOMER, MERCHANT, ADMIN)

PAYMENT_METHODS = ("cod", "online")

# Merchant account review states; only approved merchants are active
MERCHANT_PENDING = "pending"
MERCHANT_APPROVED = "approved"
MERCHANT_REJECTED = "rejected"
MERCHANT_SUSPENDED = "suspended"
MERCHANT_STATUSES = (MERCHANT_PENDING, MERCHANT_APPROVED, MERCHANT_REJECTED, MERCHANT_SUSPENDED)


@dataclass
class Actor:
    """Who triggered an action; stored on lifecycle events."""

    user_id: str
    user_type: str  # customer | merchant | admin | system
    user_name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.user_type == ADMIN

    @property
    def is_merchant(self) -> bool:
        return self.user_type == MERCHANT

    @property
    def is_customer(self) -> bool:
        return self.user_type == CUSTOMER

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_type": self.user_type,
            "user_name": self.user_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Actor":
        return cls(
            user_id=data["user_id"],
            user_type=data["user_type"],
            user_name=data.get("user_name", ""),
        )


@dataclass
class StatusHistoryEntry:
    """One item status change."""

    status: str
    timestamp: str
    item_id: str | None = None
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"status": self.status, "timestamp": self.timestamp}
        if self.item_id is not None:
            result["item_id"] = self.item_id
        if self.note is not None:
            result["note"] = self.note
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusHistoryEntry":
        return cls(
            status=data["status"],
            timestamp=data["timestamp"],
            item_id=data.get("item_id"),
            note=data.get("note"),
        )


@dataclass
class LifecycleEvent:
    """Audit record of an order event."""

    event_type: str  # e.g. "order_created", "item_assigned"
    timestamp: str
    event_description: str
    triggered_by: Actor
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "event_description": self.event_description,
            "triggered_by": self.triggered_by.to_dict(),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LifecycleEvent":
        return cls(
            event_type=data["event_type"],
            timestamp=data["timestamp"],
            event_description=data.get("event_description", ""),
            triggered_by=Actor.from_dict(data["triggered_by"]),
            metadata=data.get("metadata", {}),
        )


@dataclass
class OrderItem:
    """One product line within an order.

    Name, unit, weight and price are snapshots taken at order time.
    """

    id: str
    product_id: str
    product_name: str
    quantity: int
    unit_price: float
    total_price: float
    unit: str = ""
    sku: str | None = None
    weight: float = 0.0
    item_status: str = "pending"
    assigned_merchant_id: str | None = None
    assigned_merchant_name: str | None = None
    rejected_by: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "unit": self.unit,
            "sku": self.sku,
            "weight": self.weight,
            "item_status": self.item_status,
            "assigned_merchant_id": self.assigned_merchant_id,
            "assigned_merchant_name": self.assigned_merchant_name,
            "rejected_by": list(self.rejected_by),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderItem":
        return cls(
            id=data["id"],
            product_id=data["product_id"],
            product_name=data["product_name"],
            quantity=data["quantity"],
            unit_price=data["unit_price"],
            total_price=data["total_price"],
            unit=data.get("unit", ""),
            sku=data.get("sku"),
            weight=data.get("weight", 0.0),
            item_status=data.get("item_status", "pending"),
            assigned_merchant_id=data.get("assigned_merchant_id"),
            assigned_merchant_name=data.get("assigned_merchant_name"),
            rejected_by=list(data.get("rejected_by", [])),
        )


@dataclass
class Order:
    """A customer's purchase request."""

    id: str
    order_number: str
    customer_id: str
    customer_name: str
    customer_phone: str
    delivery_address: dict[str, Any]  # snapshot, never a live reference
    items: list[OrderItem]
    subtotal: float
    tax: float
    delivery_charge: float
    platform_fee: float
    total_amount: float
    payment_method: str = "cod"
    payment_status: str = "pending"
    pricing_breakdown: dict[str, Any] = field(default_factory=dict)
    delivery_instructions: str | None = None
    expected_delivery_date: str | None = None
    actual_delivery_date: str | None = None
    status_history: list[StatusHistoryEntry] = field(default_factory=list)
    lifecycle: list[LifecycleEvent] = field(default_factory=list)
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def get_item(self, item_id: str) -> OrderItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "delivery_address": dict(self.delivery_address),
            "items": [i.to_dict() for i in self.items],
            "subtotal": self.subtotal,
            "tax": self.tax,
            "delivery_charge": self.delivery_charge,
            "platform_fee": self.platform_fee,
            "total_amount": self.total_amount,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "pricing_breakdown": self.pricing_breakdown,
            "delivery_instructions": self.delivery_instructions,
            "expected_delivery_date": self.expected_delivery_date,
            "actual_delivery_date": self.actual_delivery_date,
            "status_history": [h.to_dict() for h in self.status_history],
            "lifecycle": [e.to_dict() for e in self.lifecycle],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        return cls(
            id=data["id"],
            order_number=data["order_number"],
            customer_id=data["customer_id"],
            customer_name=data.get("customer_name", ""),
            customer_phone=data.get("customer_phone", ""),
            delivery_address=data.get("delivery_address", {}),
            items=[OrderItem.from_dict(i) for i in data.get("items", [])],
            subtotal=data["subtotal"],
            tax=data.get("tax", 0.0),
            delivery_charge=data.get("delivery_charge", 0.0),
            platform_fee=data.get("platform_fee", 0.0),
            total_amount=data["total_amount"],
            payment_method=data.get("payment_method", "cod"),
            payment_status=data.get("payment_status", "pending"),
            pricing_breakdown=data.get("pricing_breakdown", {}),
            delivery_instructions=data.get("delivery_instructions"),
            expected_delivery_date=data.get("expected_delivery_date"),
            actual_delivery_date=data.get("actual_delivery_date"),
            status_history=[
                StatusHistoryEntry.from_dict(h) for h in data.get("status_history", [])
            ],
            lifecycle=[LifecycleEvent.from_dict(e) for e in data.get("lifecycle", [])],
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class Product:
    """A catalog product."""

    id: str
    name: str
    price: float
    stock: int
    unit: str = "piece"
    weight: float = 0.0
    sku: str | None = None
    enabled: bool = True
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "stock": self.stock,
            "unit": self.unit,
            "weight": self.weight,
            "sku": self.sku,
            "enabled": self.enabled,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Product":
        return cls(
            id=data["id"],
            name=data["name"],
            price=data["price"],
            stock=data["stock"],
            unit=data.get("unit", "piece"),
            weight=data.get("weight", 0.0),
            sku=data.get("sku"),
            enabled=data.get("enabled", True),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    @classmethod
    def create(
        cls,
        name: str,
        price: float,
        stock: int,
        unit: str = "piece",
        weight: float = 0.0,
        sku: str | None = None,
    ) -> "Product":
        """Create a new product with generated ID and timestamps."""
        now = _utc_now()
        return cls(
            id=_generate_id(),
            name=name,
            price=price,
            stock=stock,
            unit=unit,
            weight=weight,
            sku=sku,
            enabled=True,
            created_at=now,
            updated_at=now,
        )


@dataclass
class Address:
    """A saved customer address."""

    id: str
    user_id: str
    street: str
    city: str
    area: str
    postal_code: str = ""
    label: str | None = None
    phone: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def snapshot(self) -> dict[str, Any]:
        """Address fields copied onto an order."""
        return {
            "street": self.street,
            "city": self.city,
            "area": self.area,
            "postal_code": self.postal_code,
            "label": self.label,
            "phone": self.phone,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            **self.snapshot(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Address":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            street=data["street"],
            city=data["city"],
            area=data["area"],
            postal_code=data.get("postal_code", ""),
            label=data.get("label"),
            phone=data.get("phone"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class User:
    """A customer, merchant or admin account."""

    id: str
    name: str
    email: str
    role: str
    password_hash: str
    phone: str | None = None
    active: bool = True
    merchant_status: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def actor(self) -> Actor:
        return Actor(user_id=self.id, user_type=self.role, user_name=self.name)

    def to_public_dict(self) -> dict[str, Any]:
        """User fields without the password hash."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "phone": self.phone,
            "active": self.active,
            "merchant_status": self.merchant_status,
            "created_at": self.created_at,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.to_public_dict(),
            "password_hash": self.password_hash,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        return cls(
            id=data["id"],
            name=data["name"],
            email=data["email"],
            role=data["role"],
            password_hash=data["password_hash"],
            phone=data.get("phone"),
            active=data.get("active", True),
            merchant_status=data.get("merchant_status"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


# Settings


DELIVERY_TYPES = ("fixed", "threshold", "distance", "weight")


@dataclass
class DeliveryConfig:
    """How delivery charges are computed."""

    type: str = "threshold"
    fixed_charge: float = 50
    free_delivery_threshold: float = 1000
    charge_for_below_threshold: float = 100
    per_km_rate: float = 5
    base_distance: float = 5  # km delivered free
    per_kg_rate: float = 10
    free_weight_limit: float = 50  # kg delivered free

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "fixed_charge": self.fixed_charge,
            "free_delivery_threshold": self.free_delivery_threshold,
            "charge_for_below_threshold": self.charge_for_below_threshold,
            "per_km_rate": self.per_km_rate,
            "base_distance": self.base_distance,
            "per_kg_rate": self.per_kg_rate,
            "free_weight_limit": self.free_weight_limit,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeliveryConfig":
        defaults = cls()
        return cls(**{k: data.get(k, v) for k, v in defaults.to_dict().items()})


@dataclass
class AppSettings:
    """Marketplace-wide pricing configuration (single document)."""

    tax_rate: float = 0.18
    platform_fee_rate: float = 0.02
    minimum_order_value: float = 100
    delivery_config: DeliveryConfig = field(default_factory=DeliveryConfig)
    updated_at: str = field(default_factory=_utc_now)
    updated_by: str | None = None

    def public_dict(self) -> dict[str, Any]:
        """Settings visible to customers and merchants."""
        return {
            "tax_rate": self.tax_rate,
            "platform_fee_rate": self.platform_fee_rate,
            "minimum_order_value": self.minimum_order_value,
            "delivery_config": self.delivery_config.to_dict(),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.public_dict(),
            "updated_at": self.updated_at,
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppSettings":
        return cls(
            tax_rate=data.get("tax_rate", 0.18),
            platform_fee_rate=data.get("platform_fee_rate", 0.02),
            minimum_order_value=data.get("minimum_order_value", 100),
            delivery_config=DeliveryConfig.from_dict(data.get("delivery_config", {})),
            updated_at=data.get("updated_at", ""),
            updated_by=data.get("updated_by"),
        )
