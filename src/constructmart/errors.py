"""Custom exceptions for constructmart."""

from typing import Any


class MartError(Exception):
    """Base exception for all constructmart errors."""

    def extra(self) -> dict[str, Any]:
        """Additional fields included in the error response body."""
        return {}


class ValidationError(MartError):
    """Raised when request input is malformed or missing."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)

    def extra(self) -> dict[str, Any]:
        return {"field": self.field} if self.field else {}


class InvalidAddressError(MartError):
    """Raised when a delivery address cannot be resolved."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid delivery address: {reason}")


class MinimumOrderNotMetError(MartError):
    """Raised when the server-computed subtotal is below the minimum order value."""

    def __init__(self, subtotal: float, minimum: float):
        self.subtotal = subtotal
        self.minimum = minimum
        super().__init__(
            f"Minimum order value is {minimum:.2f}; order subtotal is {subtotal:.2f}"
        )

    @property
    def shortfall(self) -> float:
        return round(max(0.0, self.minimum - self.subtotal), 2)

    def extra(self) -> dict[str, Any]:
        return {
            "subtotal": self.subtotal,
            "minimum_order_value": self.minimum,
            "shortfall": self.shortfall,
        }


class InsufficientStockError(MartError):
    """Raised when one or more requested quantities exceed available stock.

    ``failures`` lists every failing line, not just the first one.
    """

    def __init__(self, failures: list[dict[str, Any]]):
        self.failures = failures
        names = ", ".join(
            f"{f.get('name') or f['product_id']} (only {f['available']} left)"
            for f in failures
        )
        super().__init__(f"Insufficient stock for {names}")

    def extra(self) -> dict[str, Any]:
        return {"failures": self.failures}


class ConflictError(MartError):
    """Raised when a write loses against a concurrent write (e.g. item already claimed)."""

    def __init__(self, message: str):
        super().__init__(message)


class InvalidTransitionError(MartError):
    """Raised when an item status change is not in the allowed transition table."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot change item status from '{current}' to '{target}'")

    def extra(self) -> dict[str, Any]:
        return {"current_status": self.current, "requested_status": self.target}


class UnauthorizedError(MartError):
    """Raised when credentials or tokens are missing, invalid or expired."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ForbiddenError(MartError):
    """Raised when an authenticated user may not perform an action."""

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message)


class NotFoundError(MartError):
    """Base for lookups that found nothing."""

    kind = "Resource"

    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        super().__init__(f"{self.kind} not found: {resource_id}")


class OrderNotFoundError(NotFoundError):
    kind = "Order"


class ItemNotFoundError(NotFoundError):
    kind = "Order item"


class ProductNotFoundError(NotFoundError):
    kind = "Product"


class AddressNotFoundError(NotFoundError):
    kind = "Address"


class UserNotFoundError(NotFoundError):
    kind = "User"


class InvalidSchemaVersionError(MartError):
    """Raised when a data file has an unsupported schema version."""

    def __init__(self, path: str, found: int, supported: int):
        self.path = path
        self.found = found
        self.supported = supported
        super().__init__(
            f"Unsupported schema version {found} in {path}. This tool supports version {supported}."
        )


class ServerError(MartError):
    """Raised by the client for opaque 5xx responses."""

    def __init__(self, status_code: int, message: str = "Server error"):
        self.status_code = status_code
        super().__init__(f"{message} (HTTP {status_code})")
