"""Tests for the HTTP client, run against the app through TestClient."""

import json

import httpx
import pytest

from constructmart.client import MartClient, ViewScope, error_from_response
from constructmart.client_storage import ACCESS_TOKEN_KEY, CART_KEY, KeyValueStorage
from constructmart.errors import (
    ConflictError,
    InsufficientStockError,
    MinimumOrderNotMetError,
    OrderNotFoundError,
    ServerError,
    UnauthorizedError,
    ValidationError,
)
from constructmart.models import Product

from conftest import DELIVERY_ADDRESS


@pytest.fixture
def storage(temp_dir):
    return KeyValueStorage(temp_dir / "client" / "storage.json")


@pytest.fixture
def client(api_client, storage):
    return MartClient(storage=storage, http_client=api_client)


@pytest.fixture
def logged_in(client):
    client.register("Asha", "asha@example.com", "secret123", phone="9800000000")
    return client


def _expire_access_tokens(token_store):
    with token_store.transaction() as data:
        for record in data["access"].values():
            record["expires_at"] = 0


class TestSession:
    def test_register_stores_session(self, logged_in, storage):
        assert storage.get(ACCESS_TOKEN_KEY)
        assert logged_in.current_user["email"] == "asha@example.com"
        assert logged_in.me()["role"] == "customer"

    def test_refresh_on_401(self, logged_in, storage, token_store):
        old_token = storage.get(ACCESS_TOKEN_KEY)
        _expire_access_tokens(token_store)

        assert logged_in.me()["email"] == "asha@example.com"
        assert storage.get(ACCESS_TOKEN_KEY) != old_token

    def test_failed_refresh_clears_session_keeps_cart(
        self, logged_in, storage, token_store, make_product
    ):
        brick = make_product()
        logged_in.cart.add_to_cart(brick.to_dict(), 2)
        _expire_access_tokens(token_store)
        with token_store.transaction() as data:
            data["refresh"].clear()

        with pytest.raises(UnauthorizedError):
            logged_in.me()

        assert storage.get(ACCESS_TOKEN_KEY) is None
        assert logged_in.current_user is None
        assert storage.get(CART_KEY)

    def test_logout_clears_everything(self, logged_in, storage, make_product):
        logged_in.cart.add_to_cart(make_product().to_dict(), 1)
        logged_in.logout()

        assert storage.get(ACCESS_TOKEN_KEY) is None
        assert storage.get(CART_KEY) is None
        assert logged_in.cart.items == []


class TestCheckout:
    def test_minimum_gate_boundary(self, logged_in, make_product, order_store):
        nail = make_product(name="Nail", price=1, stock=500)

        logged_in.cart.add_to_cart(nail.to_dict(), 99)
        with pytest.raises(MinimumOrderNotMetError) as exc_info:
            logged_in.checkout(customer_phone="9800000000", customer_address=DELIVERY_ADDRESS)
        assert exc_info.value.shortfall == 1
        assert order_store.list_orders() == []

        logged_in.cart.add_to_cart(nail.to_dict(), 1)
        result = logged_in.checkout(customer_phone="9800000000", customer_address=DELIVERY_ADDRESS)

        assert result.order["subtotal"] == 100
        assert result.order["orderStatus"] == "pending"
        assert logged_in.cart.items == []

    def test_server_price_replaces_estimate(self, logged_in, make_product, product_store):
        brick = make_product(price=50)
        logged_in.cart.add_to_cart(brick.to_dict(), 2)
        assert logged_in.cart.get_cart_total() == 100

        product_store.update_product(brick.id, {"price": 60})
        result = logged_in.checkout(customer_phone="9800000000", customer_address=DELIVERY_ADDRESS)

        assert result.pricing["subtotal"] == 120
        assert result.order["subtotal"] == 120
        assert result.order["items"][0]["unitPrice"] == 60

    def test_stock_failure_keeps_cart(self, logged_in, make_product, product_store):
        brick = make_product(stock=5)
        logged_in.cart.add_to_cart(brick.to_dict(), 4)
        product_store.update_product(brick.id, {"stock": 1})

        with pytest.raises(InsufficientStockError) as exc_info:
            logged_in.checkout(customer_phone="9800000000", customer_address=DELIVERY_ADDRESS)

        assert exc_info.value.failures[0]["available"] == 1
        assert logged_in.cart.get_total_items() == 4

    def test_empty_cart(self, logged_in):
        with pytest.raises(ValidationError):
            logged_in.checkout(customer_phone="9800000000", customer_address=DELIVERY_ADDRESS)


class TestOrderCalls:
    def test_claim_conflict_maps_to_exception(self, api_client, user_store, make_product, place_order):
        order = place_order((make_product(), 2))
        for email in ("bricks@example.com", "cement@example.com"):
            user_store.add_user("Merchant", email, "secret123", role="merchant")

        first = MartClient(storage=KeyValueStorage(), http_client=api_client)
        first.login("bricks@example.com", "secret123")
        second = MartClient(storage=KeyValueStorage(), http_client=api_client)
        second.login("cement@example.com", "secret123")

        first.assign_item(order.id, order.items[0].id)
        with pytest.raises(ConflictError):
            second.assign_item(order.id, order.items[0].id)

    def test_not_found(self, logged_in):
        with pytest.raises(OrderNotFoundError):
            logged_in.get_order("missing")


class TestMerchantCalls:
    def test_onboard_approve_login(self, api_client, admin):
        applicant = MartClient(storage=KeyValueStorage(), http_client=api_client)
        created = applicant.register_merchant("Steel Mart", "steel@example.com", "secret123")
        assert created["merchantStatus"] == "pending"
        with pytest.raises(UnauthorizedError):
            applicant.login("steel@example.com", "secret123")

        ops = MartClient(storage=KeyValueStorage(), http_client=api_client)
        ops.login("ops@example.com", "secret123")
        assert [m["id"] for m in ops.list_merchants(status="pending")] == [created["id"]]
        ops.set_merchant_status(created["id"], "approved")

        assert applicant.login("steel@example.com", "secret123")["active"] is True


class TestSettingsCache:
    def test_cached_for_ttl(self, logged_in, settings_store):
        now = [1000.0]
        logged_in._clock = lambda: now[0]

        assert logged_in.get_settings()["minimumOrderValue"] == 100
        settings_store.update({"minimum_order_value": 150})
        assert logged_in.get_settings()["minimumOrderValue"] == 100

        now[0] += 61
        assert logged_in.get_settings()["minimumOrderValue"] == 150


def _flaky_transport(failures: int, seen: list):
    """Mock transport that drops the first ``failures`` requests."""

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if len(seen) <= failures:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(201, json={"id": "o1", "orderNumber": "ORD2610180001"})

    return httpx.MockTransport(handler)


class TestRetries:
    def test_create_order_retried_with_same_key(self):
        seen = []
        http = httpx.Client(base_url="http://mart.test", transport=_flaky_transport(1, seen))
        client = MartClient(http_client=http)

        order = client.create_order([{"productId": "p1", "quantity": 2}], customer_phone="98")

        assert order["id"] == "o1"
        assert len(seen) == 2
        keys = {r.headers["Idempotency-Key"] for r in seen}
        assert len(keys) == 1

    def test_create_order_sends_customer_address(self):
        seen = []
        http = httpx.Client(base_url="http://mart.test", transport=_flaky_transport(0, seen))
        client = MartClient(http_client=http)

        client.create_order(
            [{"productId": "p1", "quantity": 2}], customer_phone="98", customer_address=DELIVERY_ADDRESS
        )

        body = json.loads(seen[0].content)
        assert body["customerAddress"] == DELIVERY_ADDRESS
        assert "deliveryAddress" not in body

    def test_plain_mutation_not_retried(self):
        seen = []
        http = httpx.Client(base_url="http://mart.test", transport=_flaky_transport(1, seen))
        client = MartClient(http_client=http)

        with pytest.raises(httpx.ConnectError):
            client.reject_item("o1", "i1")
        assert len(seen) == 1

    def test_get_gives_up_after_retries(self):
        seen = []
        http = httpx.Client(base_url="http://mart.test", transport=_flaky_transport(10, seen))
        client = MartClient(http_client=http, retries=2)

        with pytest.raises(httpx.ConnectError):
            client.list_products()
        assert len(seen) == 3


class TestErrorMapping:
    def test_server_error(self):
        response = httpx.Response(503, json={"detail": "down"})
        error = error_from_response(response)
        assert isinstance(error, ServerError)
        assert error.status_code == 503

    def test_validation_field(self):
        response = httpx.Response(
            400, json={"detail": "bad", "error_type": "ValidationError", "field": "items"}
        )
        error = error_from_response(response)
        assert isinstance(error, ValidationError)
        assert error.field == "items"

    def test_malformed_body_keeps_field(self, logged_in):
        with pytest.raises(ValidationError) as exc_info:
            logged_in.create_order(
                [{"productId": "p1", "quantity": "lots"}],
                customer_phone="9800000000",
                customer_address=DELIVERY_ADDRESS,
            )
        assert exc_info.value.field == "items.0.quantity"

    def test_plain_422(self):
        response = httpx.Response(422, json={"detail": [{"msg": "field required"}]})
        assert isinstance(error_from_response(response), ValidationError)


class TestViewScope:
    def test_stale_result_dropped(self):
        scope = ViewScope()

        def load():
            scope.navigate()
            return "data"

        assert scope.run(load) is None
        assert scope.run(lambda: "fresh") == "fresh"


def test_product_dict_feeds_cart(logged_in):
    product = Product.create(name="Sand", price=10, stock=3)
    result = logged_in.cart.add_to_cart(product.to_dict(), 4)
    assert not result.accepted
