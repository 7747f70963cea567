"""Pytest fixtures for constructmart tests."""

import tempfile
from pathlib import Path

import pytest
from argon2 import PasswordHasher
from fastapi.testclient import TestClient

from constructmart import api
from constructmart.address_store import AddressStore
from constructmart.catalog_store import ProductStore
from constructmart.models import Product
from constructmart.order_store import OrderStore
from constructmart.settings_store import SettingsStore
from constructmart.user_store import TokenStore, UserStore
from constructmart.workflow import OrderService

DELIVERY_ADDRESS = {"street": "12 Kiln Road", "city": "Pune", "area": "Hadapsar", "postal_code": "411028"}


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def data_dir(temp_dir, monkeypatch):
    """Point every store constructed without arguments at a temporary data directory."""
    path = temp_dir / "data"
    monkeypatch.setenv("CONSTRUCTMART_DATA_DIR", str(path))
    return path


@pytest.fixture
def hasher():
    """Cheap argon2 parameters so tests don't spend time hashing."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def user_store(data_dir, hasher):
    return UserStore(data_dir, hasher=hasher)


@pytest.fixture
def token_store(data_dir):
    return TokenStore(data_dir)


@pytest.fixture
def product_store(data_dir):
    return ProductStore(data_dir)


@pytest.fixture
def order_store(data_dir):
    return OrderStore(data_dir)


@pytest.fixture
def address_store(data_dir):
    return AddressStore(data_dir)


@pytest.fixture
def settings_store(data_dir):
    return SettingsStore(data_dir)


@pytest.fixture
def service(order_store, product_store, address_store, settings_store, user_store):
    return OrderService(order_store, product_store, address_store, settings_store, user_store)


@pytest.fixture
def customer(user_store):
    return user_store.add_user("Asha Customer", "asha@example.com", "secret123", role="customer")


@pytest.fixture
def merchant(user_store):
    return user_store.add_user("Bricks Ltd", "bricks@example.com", "secret123", role="merchant")


@pytest.fixture
def other_merchant(user_store):
    return user_store.add_user("Cement Co", "cement@example.com", "secret123", role="merchant")


@pytest.fixture
def admin(user_store):
    return user_store.add_user("Ops Admin", "ops@example.com", "secret123", role="admin")


@pytest.fixture
def make_product(product_store):
    """Factory adding a product to the catalog."""

    def _make(name="Red Brick", price=50.0, stock=100, unit="piece", weight=0.0):
        return product_store.add_product(
            Product.create(name=name, price=price, stock=stock, unit=unit, weight=weight)
        )

    return _make


@pytest.fixture
def place_order(service, customer):
    """Factory placing an order for the default customer."""

    def _place(*lines, **kwargs):
        items = [{"product_id": p.id, "quantity": qty} for p, qty in lines]
        kwargs.setdefault("customer_phone", "9800000000")
        kwargs.setdefault("address", dict(DELIVERY_ADDRESS))
        return service.create_order(customer.actor(), items, **kwargs)

    return _place


@pytest.fixture
def api_client(data_dir, hasher, monkeypatch):
    """Test client for the API over a temporary data directory."""
    monkeypatch.setattr(api, "get_user_store", lambda: UserStore(hasher=hasher))
    return TestClient(api.app)
