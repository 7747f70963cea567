"""HTTP client for the constructmart API.

Used by apps and scripts that talk to a running server. It keeps the session
and cart in a ``KeyValueStorage`` and turns error responses back into
``constructmart.errors`` exceptions.
"""

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from .cart import Cart
from .client_storage import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY, KeyValueStorage
from .errors import (
    AddressNotFoundError,
    ConflictError,
    ForbiddenError,
    InsufficientStockError,
    InvalidAddressError,
    InvalidTransitionError,
    ItemNotFoundError,
    MartError,
    MinimumOrderNotMetError,
    NotFoundError,
    OrderNotFoundError,
    ProductNotFoundError,
    ServerError,
    UnauthorizedError,
    UserNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://127.0.0.1:8000"
DEFAULT_TIMEOUT = 10.0
DEFAULT_RETRIES = 2
SETTINGS_TTL = 60.0

_MESSAGE_ERRORS: dict[str, type[MartError]] = {
    "ConflictError": ConflictError,
    "UnauthorizedError": UnauthorizedError,
    "ForbiddenError": ForbiddenError,
}

_NOT_FOUND_ERRORS: dict[str, type[NotFoundError]] = {
    cls.__name__: cls
    for cls in (
        OrderNotFoundError,
        ItemNotFoundError,
        ProductNotFoundError,
        AddressNotFoundError,
        UserNotFoundError,
    )
}


def _after_colon(detail: str) -> str:
    return detail.split(": ", 1)[-1]


def error_from_response(response: httpx.Response) -> MartError:
    """Rebuild the server's exception from an error response."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    detail = body.get("detail")
    error_type = body.get("error_type")
    status = response.status_code

    if status >= 500:
        return ServerError(status, str(detail) if detail else "Server error")
    if error_type == "ValidationError":
        return ValidationError(detail, field=body.get("field"))
    if error_type == "MinimumOrderNotMetError":
        return MinimumOrderNotMetError(body["subtotal"], body["minimum_order_value"])
    if error_type == "InsufficientStockError":
        return InsufficientStockError(body["failures"])
    if error_type == "InvalidTransitionError":
        return InvalidTransitionError(body["current_status"], body["requested_status"])
    if error_type == "InvalidAddressError":
        return InvalidAddressError(_after_colon(detail))
    if error_type in _NOT_FOUND_ERRORS:
        return _NOT_FOUND_ERRORS[error_type](_after_colon(detail))
    if error_type in _MESSAGE_ERRORS:
        return _MESSAGE_ERRORS[error_type](detail)

    # Not one of ours, e.g. FastAPI's 422 for a malformed body
    if status == 401:
        return UnauthorizedError()
    if status == 403:
        return ForbiddenError()
    if status in (400, 422):
        return ValidationError(detail if isinstance(detail, str) else "Invalid request")
    return MartError(f"HTTP {status}: {detail or response.text}")


class ViewScope:
    """
    Drops results of requests that finish after the user left the view.

    Call ``navigate()`` when the view changes; ``run()`` returns None for a
    call that was started before the most recent navigation.
    """

    def __init__(self):
        self._generation = 0
        self._lock = threading.Lock()

    def navigate(self) -> None:
        with self._lock:
            self._generation += 1

    def token(self) -> int:
        with self._lock:
            return self._generation

    def is_current(self, token: int) -> bool:
        with self._lock:
            return token == self._generation

    def run(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        token = self.token()
        result = func(*args, **kwargs)
        if not self.is_current(token):
            logger.debug("Discarding stale result of %s", getattr(func, "__name__", func))
            return None
        return result


@dataclass
class CheckoutResult:
    order: dict[str, Any]
    pricing: dict[str, Any]


class MartClient:
    """
    Client for the constructmart REST API.

    Args:
        base_url: API root; defaults to ``CONSTRUCTMART_API_URL``.
        storage: Where tokens, the cached user and the cart are kept.
        http_client: Pre-built httpx client (e.g. FastAPI's TestClient).
    """

    def __init__(
        self,
        base_url: str | None = None,
        storage: KeyValueStorage | None = None,
        http_client: httpx.Client | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        settings_ttl: float = SETTINGS_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url or os.environ.get("CONSTRUCTMART_API_URL", DEFAULT_API_URL)
        self.storage = storage or KeyValueStorage()
        self.http = http_client or httpx.Client(base_url=self.base_url, timeout=timeout)
        self.retries = retries
        self.settings_ttl = settings_ttl
        self._clock = clock
        self._settings_cache: Optional[tuple[float, dict[str, Any]]] = None
        self.cart = Cart.load(self.storage)

    def close(self) -> None:
        self.http.close()

    # --- Transport ---

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = dict(extra or {})
        token = self.storage.get(ACCESS_TOKEN_KEY)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _send(
        self,
        method: str,
        path: str,
        retry: bool,
        headers: dict[str, str] | None = None,
        **kwargs,
    ) -> httpx.Response:
        attempts = self.retries + 1 if retry else 1
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.http.request(method, path, headers=self._headers(headers), **kwargs)
            except httpx.TransportError as e:
                if attempt >= attempts:
                    raise
                logger.warning("%s %s failed (%s), retry %d/%d", method, path, e, attempt, self.retries)

    def _refresh(self) -> bool:
        refresh_token = self.storage.get(REFRESH_TOKEN_KEY)
        if not refresh_token:
            return False
        try:
            response = self.http.post("/api/auth/refresh", json={"refreshToken": refresh_token})
        except httpx.TransportError as e:
            logger.warning("Token refresh failed: %s", e)
            return False
        if response.status_code != 200:
            return False
        tokens = response.json()
        self.storage.set(ACCESS_TOKEN_KEY, tokens["accessToken"])
        self.storage.set(REFRESH_TOKEN_KEY, tokens["refreshToken"])
        logger.info("Refreshed access token")
        return True

    def request(
        self,
        method: str,
        path: str,
        retry: bool | None = None,
        headers: dict[str, str] | None = None,
        **kwargs,
    ) -> Any:
        """
        Send an authenticated request and return the decoded JSON body.

        GETs are retried on transport errors; other methods only when
        ``retry`` is set (callers do this for idempotent-keyed requests).
        A 401 triggers one token refresh and retry; if that fails the session
        is cleared and UnauthorizedError raised. The cart is left alone.
        """
        if retry is None:
            retry = method.upper() == "GET"

        response = self._send(method, path, retry, headers, **kwargs)
        if response.status_code == 401 and self._refresh():
            response = self._send(method, path, retry, headers, **kwargs)
        if response.status_code == 401:
            self.storage.clear_session()
            raise error_from_response(response)
        if response.is_error:
            raise error_from_response(response)
        return response.json()

    # --- Auth ---

    def _start_session(self, data: dict[str, Any]) -> dict[str, Any]:
        self.storage.set(ACCESS_TOKEN_KEY, data["accessToken"])
        self.storage.set(REFRESH_TOKEN_KEY, data["refreshToken"])
        self.storage.set(USER_KEY, data["user"])
        return data["user"]

    def register(self, name: str, email: str, password: str, phone: str | None = None) -> dict[str, Any]:
        data = self.request(
            "POST",
            "/api/auth/register",
            json={"name": name, "email": email, "password": password, "phone": phone},
        )
        return self._start_session(data)

    def login(self, email: str, password: str) -> dict[str, Any]:
        data = self.request("POST", "/api/auth/login", json={"email": email, "password": password})
        return self._start_session(data)

    def logout(self) -> None:
        """End the session on the server and forget tokens, user and cart locally."""
        try:
            if self.storage.get(ACCESS_TOKEN_KEY):
                self.http.post("/api/auth/logout", headers=self._headers())
        except httpx.TransportError as e:
            logger.warning("Logout request failed: %s", e)
        finally:
            self.storage.clear_session()
            self.cart.clear()
            self._settings_cache = None

    @property
    def current_user(self) -> dict[str, Any] | None:
        return self.storage.get(USER_KEY)

    def me(self) -> dict[str, Any]:
        return self.request("GET", "/api/auth/me")

    # --- Merchants ---

    def register_merchant(
        self, name: str, email: str, password: str, phone: str | None = None
    ) -> dict[str, Any]:
        """Sign up as a merchant. No session starts until an admin approves the account."""
        return self.request(
            "POST",
            "/api/merchants/onboard",
            json={"name": name, "email": email, "password": password, "phone": phone},
        )

    def list_merchants(self, status: str | None = None) -> list[dict[str, Any]]:
        params = {"status": status} if status else None
        return self.request("GET", "/api/merchants", params=params)

    def set_merchant_status(self, merchant_id: str, status: str) -> dict[str, Any]:
        return self.request("PUT", f"/api/merchants/{merchant_id}/status", json={"status": status})

    # --- Catalog & addresses ---

    def list_products(self) -> list[dict[str, Any]]:
        return self.request("GET", "/api/products")

    def get_product(self, product_id: str) -> dict[str, Any]:
        return self.request("GET", f"/api/products/{product_id}")

    def list_addresses(self) -> list[dict[str, Any]]:
        return self.request("GET", "/api/addresses")

    def add_address(self, **fields: Any) -> dict[str, Any]:
        return self.request("POST", "/api/addresses", json=fields)

    # --- Settings & pricing ---

    def get_settings(self, force: bool = False) -> dict[str, Any]:
        """Current settings, cached for ``settings_ttl`` seconds."""
        now = self._clock()
        if not force and self._settings_cache is not None:
            fetched_at, settings = self._settings_cache
            if now - fetched_at < self.settings_ttl:
                return settings
        settings = self.request("GET", "/api/settings")
        self._settings_cache = (now, settings)
        return settings

    def update_settings(self, **updates: Any) -> dict[str, Any]:
        settings = self.request("PUT", "/api/settings", json=updates)
        self._settings_cache = (self._clock(), settings)
        return settings

    def calculate_pricing(self, items: list[dict[str, Any]], distance: float = 0.0) -> dict[str, Any]:
        return self.request(
            "POST",
            "/api/settings/calculate-pricing",
            json={"items": items, "distance": distance},
            retry=True,
        )

    def delivery_preview(self) -> dict[str, Any]:
        return self.request("GET", "/api/settings/delivery-preview")

    # --- Orders ---

    def create_order(
        self,
        items: list[dict[str, Any]],
        customer_phone: str,
        address_id: str | None = None,
        customer_address: dict[str, Any] | None = None,
        payment_method: str = "cod",
        delivery_instructions: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Place an order. Retries reuse the same Idempotency-Key, so at most one order is created."""
        body: dict[str, Any] = {
            "items": items,
            "customerPhone": customer_phone,
            "paymentMethod": payment_method,
        }
        if address_id:
            body["addressId"] = address_id
        if customer_address:
            body["customerAddress"] = customer_address
        if delivery_instructions:
            body["deliveryInstructions"] = delivery_instructions
        return self.request(
            "POST",
            "/api/orders",
            json=body,
            retry=True,
            headers={"Idempotency-Key": idempotency_key or str(uuid.uuid4())},
        )

    def list_orders(self, status: str | None = None, page: int = 1, limit: int = 10) -> dict[str, Any]:
        params: dict[str, Any] = {"page": page, "limit": limit}
        if status:
            params["status"] = status
        return self.request("GET", "/api/orders", params=params)

    def get_order(self, order_id: str) -> dict[str, Any]:
        return self.request("GET", f"/api/orders/{order_id}")

    def list_unassigned_items(self) -> list[dict[str, Any]]:
        return self.request("GET", "/api/orders/status/unassigned")["items"]

    def order_summary(self) -> dict[str, Any]:
        return self.request("GET", "/api/orders/analytics/summary")

    def assign_item(
        self,
        order_id: str,
        item_id: str,
        merchant_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        return self.request(
            "PUT",
            f"/api/orders/{order_id}/items/{item_id}/assign",
            json={"merchantId": merchant_id} if merchant_id else None,
            retry=True,
            headers={"Idempotency-Key": idempotency_key or str(uuid.uuid4())},
        )

    def reject_item(self, order_id: str, item_id: str) -> dict[str, Any]:
        return self.request("POST", f"/api/orders/{order_id}/items/{item_id}/reject")

    def reopen_item(self, order_id: str, item_id: str, note: str | None = None) -> dict[str, Any]:
        return self.request(
            "PUT", f"/api/orders/{order_id}/items/{item_id}/reopen", json={"note": note}
        )

    def update_item_status(
        self, order_id: str, item_id: str, status: str, note: str | None = None
    ) -> dict[str, Any]:
        return self.request(
            "PUT",
            f"/api/orders/{order_id}/items/{item_id}/status",
            json={"status": status, "note": note},
        )

    # --- Checkout ---

    def checkout(
        self,
        customer_phone: str,
        address_id: str | None = None,
        customer_address: dict[str, Any] | None = None,
        payment_method: str = "cod",
        delivery_instructions: str | None = None,
    ) -> CheckoutResult:
        """
        Turn the cart into an order.

        The local minimum-order gate is checked first, then the server prices
        the cart and that figure replaces the local estimate. The cart is
        cleared only after the order exists.

        Raises:
            ValidationError: The cart is empty.
            MinimumOrderNotMetError: The cart is below the minimum order value.
        """
        if not self.cart.items:
            raise ValidationError("Cart is empty", field="items")

        settings = self.get_settings()
        minimum = settings["minimumOrderValue"]
        gate = self.cart.checkout_gate(minimum)
        if gate.blocked:
            raise MinimumOrderNotMetError(self.cart.get_cart_total(), minimum)

        lines = self.cart.order_lines()
        pricing = self.calculate_pricing(lines)
        if not pricing["meetsMinimum"]:
            raise MinimumOrderNotMetError(pricing["subtotal"], pricing["minimumOrderValue"])

        order = self.create_order(
            lines,
            customer_phone=customer_phone,
            address_id=address_id,
            customer_address=customer_address,
            payment_method=payment_method,
            delivery_instructions=delivery_instructions,
        )
        self.cart.clear()
        logger.info("Checked out order %s", order["orderNumber"])
        return CheckoutResult(order=order, pricing=pricing)
