"""Tests for the JSON-backed stores."""

import json
from datetime import datetime, timezone

import pytest

from constructmart.address_store import validate_address_payload
from constructmart.errors import (
    AddressNotFoundError,
    ConflictError,
    InvalidAddressError,
    InvalidSchemaVersionError,
    ProductNotFoundError,
    UnauthorizedError,
    UserNotFoundError,
    ValidationError,
)
from constructmart.order_store import IDEMPOTENCY_KEY_TTL, OrderStore
from constructmart.user_store import TokenStore


class TestJsonDocumentStore:
    def test_missing_file_is_empty(self, product_store):
        assert not product_store.exists()
        assert product_store.list_products() == []

    def test_failed_transaction_writes_nothing(self, product_store, make_product):
        make_product()
        before = product_store.path.read_text()

        with pytest.raises(RuntimeError):
            with product_store.transaction() as data:
                data["products"].clear()
                raise RuntimeError("boom")

        assert product_store.path.read_text() == before

    def test_unsupported_schema_version(self, product_store, make_product):
        make_product()
        data = json.loads(product_store.path.read_text())
        data["schema_version"] = 99
        product_store.path.write_text(json.dumps(data))

        with pytest.raises(InvalidSchemaVersionError):
            product_store.list_products()


class TestSettingsStore:
    def test_defaults(self, settings_store):
        settings = settings_store.get()
        assert settings.tax_rate == 0.18
        assert settings.platform_fee_rate == 0.02
        assert settings.minimum_order_value == 100
        assert settings.delivery_config.type == "threshold"

    def test_partial_update(self, settings_store):
        settings_store.update({"minimum_order_value": 50}, updated_by="admin-1")
        settings_store.update({"delivery_config": {"type": "fixed", "fixed_charge": 25}})

        settings = settings_store.get()
        assert settings.minimum_order_value == 50
        assert settings.tax_rate == 0.18
        assert settings.delivery_config.type == "fixed"
        assert settings.delivery_config.fixed_charge == 25
        assert settings.delivery_config.free_delivery_threshold == 1000

    def test_platform_fee_bounds(self, settings_store):
        with pytest.raises(ValidationError) as exc_info:
            settings_store.update({"platform_fee_rate": 0.2})
        assert exc_info.value.field == "platform_fee_rate"

    def test_unknown_key(self, settings_store):
        with pytest.raises(ValidationError):
            settings_store.update({"currency": "INR"})

    def test_invalid_delivery_type(self, settings_store):
        with pytest.raises(ValidationError):
            settings_store.update({"delivery_config": {"type": "drone"}})


class TestProductStore:
    def test_disabled_hidden_by_default(self, product_store, make_product):
        brick = make_product()
        product_store.update_product(brick.id, {"enabled": False})

        assert product_store.list_products() == []
        assert len(product_store.list_products(include_disabled=True)) == 1

    def test_update_unknown_field(self, product_store, make_product):
        brick = make_product()
        with pytest.raises(ValidationError):
            product_store.update_product(brick.id, {"colour": "red"})

    def test_negative_price(self, product_store, make_product):
        brick = make_product()
        with pytest.raises(ValidationError):
            product_store.update_product(brick.id, {"price": -1})

    def test_null_field_rejected(self, product_store, make_product):
        brick = make_product(price=50)
        with pytest.raises(ValidationError) as exc_info:
            product_store.update_product(brick.id, {"price": None})

        assert exc_info.value.field == "price"
        assert product_store.get_product(brick.id).price == 50

    def test_sku_can_be_cleared(self, product_store, make_product):
        brick = make_product()
        product_store.update_product(brick.id, {"sku": "BRK-1"})
        assert product_store.update_product(brick.id, {"sku": None}).sku is None

    def test_get_missing(self, product_store):
        with pytest.raises(ProductNotFoundError):
            product_store.get_product("nope")

    def test_restock_missing_product_is_skipped(self, product_store):
        with product_store.transaction() as data:
            product_store.restock(data, "gone", 3)


class TestAddressStore:
    def test_add_and_get(self, address_store):
        address = address_store.add_address(
            "u1", {"street": "1 Main St", "city": "Pune", "area": "Kothrud"}
        )
        assert address_store.get_address("u1", address.id).area == "Kothrud"

    def test_other_users_address_not_found(self, address_store):
        address = address_store.add_address(
            "u1", {"street": "1 Main St", "city": "Pune", "area": "Kothrud"}
        )
        with pytest.raises(AddressNotFoundError):
            address_store.get_address("u2", address.id)

    def test_update_keeps_required_fields(self, address_store):
        address = address_store.add_address(
            "u1", {"street": "1 Main St", "city": "Pune", "area": "Kothrud"}
        )
        updated = address_store.update_address("u1", address.id, {"street": "2 Main St"})
        assert updated.street == "2 Main St"
        assert updated.city == "Pune"

    def test_payload_validation(self):
        with pytest.raises(InvalidAddressError, match="area"):
            validate_address_payload({"street": "1 Main St", "city": "Pune", "area": "  "})
        with pytest.raises(InvalidAddressError):
            validate_address_payload(None)


class TestUserStore:
    def test_add_and_authenticate(self, user_store):
        user = user_store.add_user("Asha", "Asha@Example.com", "secret123")
        assert user.email == "asha@example.com"
        assert user.password_hash != "secret123"
        assert user_store.authenticate("asha@example.com", "secret123").id == user.id

    def test_wrong_password(self, user_store):
        user_store.add_user("Asha", "asha@example.com", "secret123")
        with pytest.raises(UnauthorizedError):
            user_store.authenticate("asha@example.com", "wrong-password")

    def test_unknown_email(self, user_store):
        with pytest.raises(UnauthorizedError):
            user_store.authenticate("nobody@example.com", "secret123")

    def test_duplicate_email(self, user_store):
        user_store.add_user("Asha", "asha@example.com", "secret123")
        with pytest.raises(ConflictError):
            user_store.add_user("Other", "ASHA@example.com", "secret456")

    def test_short_password(self, user_store):
        with pytest.raises(ValidationError):
            user_store.add_user("Asha", "asha@example.com", "123")

    def test_list_by_role(self, user_store, customer, merchant, admin):
        assert [u.id for u in user_store.list_users(role="merchant")] == [merchant.id]


class TestMerchantApproval:
    @pytest.fixture
    def applicant(self, user_store):
        return user_store.add_user(
            "Steel Mart", "steel@example.com", "secret123", role="merchant", merchant_status="pending"
        )

    def test_admin_created_merchant_is_approved(self, merchant):
        assert merchant.merchant_status == "approved"
        assert merchant.active

    def test_pending_merchant_cannot_log_in(self, user_store, applicant):
        assert not applicant.active
        with pytest.raises(UnauthorizedError, match="awaiting approval"):
            user_store.authenticate("steel@example.com", "secret123")

    def test_approval_activates(self, user_store, merchant, applicant):
        assert user_store.active_merchant_ids() == {merchant.id}

        approved = user_store.set_merchant_status(applicant.id, "approved")

        assert approved.active
        assert user_store.authenticate("steel@example.com", "secret123").id == applicant.id
        assert user_store.active_merchant_ids() == {merchant.id, applicant.id}

    def test_suspend_deactivates(self, user_store, merchant):
        suspended = user_store.set_merchant_status(merchant.id, "suspended")
        assert not suspended.active
        assert user_store.active_merchant_ids() == set()
        with pytest.raises(UnauthorizedError):
            user_store.authenticate("bricks@example.com", "secret123")

    def test_list_by_status(self, user_store, merchant, applicant):
        assert [m.id for m in user_store.list_merchants(status="pending")] == [applicant.id]
        assert len(user_store.list_merchants()) == 2

    def test_customer_has_no_merchant_status(self, user_store, customer):
        assert customer.merchant_status is None
        with pytest.raises(ValidationError):
            user_store.set_merchant_status(customer.id, "approved")

    def test_unknown_status(self, user_store, merchant):
        with pytest.raises(ValidationError):
            user_store.set_merchant_status(merchant.id, "banned")

    def test_unknown_user(self, user_store):
        with pytest.raises(UserNotFoundError):
            user_store.set_merchant_status("missing", "approved")


class TestTokenStore:
    def test_issue_and_resolve(self, token_store):
        tokens = token_store.issue("u1")
        assert token_store.resolve(tokens["access_token"]) == "u1"

    def test_unknown_token(self, token_store):
        with pytest.raises(UnauthorizedError):
            token_store.resolve("bogus")

    def test_expired_token(self, data_dir):
        store = TokenStore(data_dir, access_ttl=1)
        tokens = store.issue("u1")
        with store.transaction() as data:
            data["access"][tokens["access_token"]]["expires_at"] = 0
        with pytest.raises(UnauthorizedError, match="expired"):
            store.resolve(tokens["access_token"])

    def test_refresh_rotates_pair(self, token_store):
        old = token_store.issue("u1")
        new = token_store.refresh(old["refresh_token"])

        assert token_store.resolve(new["access_token"]) == "u1"
        with pytest.raises(UnauthorizedError):
            token_store.resolve(old["access_token"])
        with pytest.raises(UnauthorizedError):
            token_store.refresh(old["refresh_token"])

    def test_revoke(self, token_store):
        tokens = token_store.issue("u1")
        token_store.revoke(tokens["access_token"])
        with pytest.raises(UnauthorizedError):
            token_store.resolve(tokens["access_token"])
        with pytest.raises(UnauthorizedError):
            token_store.refresh(tokens["refresh_token"])

    def test_revoke_user(self, token_store):
        token_store.issue("u1")
        token_store.issue("u1")
        token_store.issue("u2")
        assert token_store.revoke_user("u1") == 2


class TestOrderNumbers:
    def test_per_day_counter(self, order_store):
        data = order_store._empty()
        day = datetime(2026, 10, 18, tzinfo=timezone.utc)

        assert OrderStore.next_order_number(data, day) == "ORD2610180001"
        assert OrderStore.next_order_number(data, day) == "ORD2610180002"
        assert OrderStore.next_order_number(data, datetime(2026, 10, 19, tzinfo=timezone.utc)) == (
            "ORD2610190001"
        )

    def test_skips_taken_numbers(self, order_store):
        data = order_store._empty()
        data["orders"].append({"order_number": "ORD2610180001"})
        day = datetime(2026, 10, 18, tzinfo=timezone.utc)
        assert OrderStore.next_order_number(data, day) == "ORD2610180002"


class TestIdempotencyKeys:
    def test_lookup_within_window(self, order_store):
        data = order_store._empty()
        OrderStore.remember_key(data, "create:u1", "k1", {"order_id": "o1"}, now=1000.0)

        record = OrderStore.lookup_key(data, "create:u1", "k1", now=1000.0 + 60)
        assert record["order_id"] == "o1"
        assert OrderStore.lookup_key(data, "create:u2", "k1", now=1060.0) is None

    def test_expired_key_ignored(self, order_store):
        data = order_store._empty()
        OrderStore.remember_key(data, "create:u1", "k1", {"order_id": "o1"}, now=1000.0)

        later = 1000.0 + IDEMPOTENCY_KEY_TTL + 1
        assert OrderStore.lookup_key(data, "create:u1", "k1", now=later) is None

    def test_old_keys_pruned_on_write(self, order_store):
        data = order_store._empty()
        OrderStore.remember_key(data, "create:u1", "old", {"order_id": "o1"}, now=1000.0)
        OrderStore.remember_key(data, "assign:u2", "recent", {"order_id": "o1"}, now=5000.0)

        OrderStore.remember_key(
            data, "create:u1", "new", {"order_id": "o2"}, now=1000.0 + IDEMPOTENCY_KEY_TTL + 1
        )

        assert set(data["idempotency_keys"]) == {"assign:u2:recent", "create:u1:new"}
        assert data["idempotency_keys"]["create:u1:new"]["stored_at"] == 1000.0 + IDEMPOTENCY_KEY_TTL + 1
