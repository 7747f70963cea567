"""User accounts and API tokens for constructmart."""

import logging
import os
import secrets
import time
from pathlib import Path
from typing import Any

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from .errors import ConflictError, UnauthorizedError, UserNotFoundError, ValidationError
from .json_store import SCHEMA_VERSION, JsonDocumentStore
from .models import (
    MERCHANT,
    MERCHANT_APPROVED,
    MERCHANT_PENDING,
    MERCHANT_STATUSES,
    ROLES,
    User,
    _generate_id,
    _utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_ACCESS_TOKEN_TTL = 15 * 60
DEFAULT_REFRESH_TOKEN_TTL = 7 * 24 * 60 * 60


def _ttl_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


class UserStore(JsonDocumentStore):
    """Manages user accounts and password verification."""

    filename = "users.json"

    def __init__(self, data_dir: Path | None = None, hasher: PasswordHasher | None = None):
        super().__init__(data_dir)
        self.hasher = hasher or PasswordHasher()

    def _empty(self) -> dict[str, Any]:
        return {"schema_version": SCHEMA_VERSION, "users": []}

    def list_users(self, role: str | None = None) -> list[User]:
        data = self._load_data()
        users = [User.from_dict(u) for u in data.get("users", [])]
        if role:
            users = [u for u in users if u.role == role]
        return users

    def get_user(self, user_id: str) -> User:
        """
        Get a user by ID.

        Raises:
            UserNotFoundError: If user doesn't exist.
        """
        for u in self.list_users():
            if u.id == user_id:
                return u
        raise UserNotFoundError(user_id)

    def add_user(
        self,
        name: str,
        email: str,
        password: str,
        role: str = "customer",
        phone: str | None = None,
        merchant_status: str | None = None,
    ) -> User:
        """
        Register a user.

        Merchants default to approved, as when an admin creates them; merchants
        signing themselves up start out pending and inactive.

        Raises:
            ValidationError: If a field is invalid.
            ConflictError: If the email is already registered.
        """
        email = email.strip().lower()
        if role not in ROLES:
            raise ValidationError(f"Invalid role: {role}", field="role")
        if not name.strip():
            raise ValidationError("Name is required", field="name")
        if "@" not in email:
            raise ValidationError("A valid email is required", field="email")
        if len(password) < 6:
            raise ValidationError("Password must be at least 6 characters", field="password")
        if role == MERCHANT:
            merchant_status = merchant_status or MERCHANT_APPROVED
            if merchant_status not in MERCHANT_STATUSES:
                raise ValidationError(f"Invalid merchant status: {merchant_status}", field="status")
        else:
            merchant_status = None

        now = _utc_now()
        user = User(
            id=_generate_id(),
            name=name.strip(),
            email=email,
            role=role,
            password_hash=self.hasher.hash(password),
            phone=phone,
            active=merchant_status in (None, MERCHANT_APPROVED),
            merchant_status=merchant_status,
            created_at=now,
            updated_at=now,
        )

        with self.transaction() as data:
            if any(u["email"] == email for u in data["users"]):
                raise ConflictError(f"Email already registered: {email}")
            data["users"].append(user.to_dict())

        logger.info("Registered %s %s", role, user.id)
        return user

    def authenticate(self, email: str, password: str) -> User:
        """
        Check credentials.

        Raises:
            UnauthorizedError: If the email is unknown, the password wrong or the user inactive.
        """
        email = email.strip().lower()
        for user in self.list_users():
            if user.email != email:
                continue
            try:
                self.hasher.verify(user.password_hash, password)
            except (VerificationError, InvalidHashError):
                break
            if not user.active:
                if user.merchant_status == MERCHANT_PENDING:
                    raise UnauthorizedError("Merchant account is awaiting approval")
                raise UnauthorizedError("User is inactive")
            return user
        raise UnauthorizedError("Invalid email or password")

    def list_merchants(self, status: str | None = None) -> list[User]:
        merchants = self.list_users(role=MERCHANT)
        if status:
            merchants = [m for m in merchants if m.merchant_status == status]
        return merchants

    def active_merchant_ids(self) -> set[str]:
        return {m.id for m in self.list_merchants() if m.active}

    def set_merchant_status(self, user_id: str, status: str) -> User:
        """
        Approve, reject or suspend a merchant account.

        Only approved merchants are active; the others cannot log in or claim items.

        Raises:
            UserNotFoundError: If user doesn't exist.
            ValidationError: If the user is not a merchant or the status is unknown.
        """
        if status not in MERCHANT_STATUSES:
            raise ValidationError(f"Invalid merchant status: {status}", field="status")

        with self.transaction() as data:
            record = next((u for u in data["users"] if u["id"] == user_id), None)
            if record is None:
                raise UserNotFoundError(user_id)
            if record["role"] != MERCHANT:
                raise ValidationError(f"User {user_id} is not a merchant", field="status")
            record["merchant_status"] = status
            record["active"] = status == MERCHANT_APPROVED
            record["updated_at"] = _utc_now()
            user = User.from_dict(record)

        logger.info("Merchant %s is now %s", user_id, status)
        return user


class TokenStore(JsonDocumentStore):
    """
    Opaque bearer tokens with server-side expiry.

    Refresh tokens are single use: refreshing revokes the old pair.
    """

    filename = "tokens.json"

    def __init__(
        self,
        data_dir: Path | None = None,
        access_ttl: int | None = None,
        refresh_ttl: int | None = None,
    ):
        super().__init__(data_dir)
        self.access_ttl = access_ttl or _ttl_from_env(
            "CONSTRUCTMART_ACCESS_TOKEN_TTL", DEFAULT_ACCESS_TOKEN_TTL
        )
        self.refresh_ttl = refresh_ttl or _ttl_from_env(
            "CONSTRUCTMART_REFRESH_TOKEN_TTL", DEFAULT_REFRESH_TOKEN_TTL
        )

    def _empty(self) -> dict[str, Any]:
        return {"schema_version": SCHEMA_VERSION, "access": {}, "refresh": {}}

    @staticmethod
    def _purge_expired(data: dict[str, Any], now: float) -> None:
        for kind in ("access", "refresh"):
            expired = [t for t, rec in data[kind].items() if rec["expires_at"] <= now]
            for token in expired:
                del data[kind][token]

    def issue(self, user_id: str) -> dict[str, Any]:
        """Issue a new access/refresh token pair for a user."""
        now = time.time()
        access = secrets.token_urlsafe(32)
        refresh = secrets.token_urlsafe(48)

        with self.transaction() as data:
            self._purge_expired(data, now)
            data["access"][access] = {
                "user_id": user_id,
                "expires_at": now + self.access_ttl,
                "refresh": refresh,
            }
            data["refresh"][refresh] = {
                "user_id": user_id,
                "expires_at": now + self.refresh_ttl,
            }

        return {
            "access_token": access,
            "refresh_token": refresh,
            "token_type": "bearer",
            "expires_in": self.access_ttl,
        }

    def resolve(self, access_token: str) -> str:
        """
        Return the user ID for a valid access token.

        Raises:
            UnauthorizedError: If the token is unknown or expired.
        """
        data = self._load_data()
        record = data["access"].get(access_token)
        if record is None:
            raise UnauthorizedError("Invalid token")
        if record["expires_at"] <= time.time():
            raise UnauthorizedError("Token expired")
        return record["user_id"]

    def refresh(self, refresh_token: str) -> dict[str, Any]:
        """
        Exchange a refresh token for a new token pair.

        Raises:
            UnauthorizedError: If the refresh token is unknown or expired.
        """
        now = time.time()
        with self.transaction() as data:
            record = data["refresh"].pop(refresh_token, None)
            for token in [t for t, rec in data["access"].items() if rec.get("refresh") == refresh_token]:
                del data["access"][token]
        if record is None or record["expires_at"] <= now:
            raise UnauthorizedError("Invalid refresh token")
        logger.info("Refreshed tokens for user %s", record["user_id"])
        return self.issue(record["user_id"])

    def revoke(self, access_token: str) -> None:
        """Revoke an access token and the refresh token issued with it."""
        with self.transaction() as data:
            record = data["access"].pop(access_token, None)
            if record is not None:
                data["refresh"].pop(record.get("refresh"), None)

    def revoke_user(self, user_id: str) -> int:
        """Revoke every token held by a user; returns the number of access tokens removed."""
        with self.transaction() as data:
            access = [t for t, rec in data["access"].items() if rec["user_id"] == user_id]
            for token in access:
                del data["access"][token]
            for token in [t for t, rec in data["refresh"].items() if rec["user_id"] == user_id]:
                del data["refresh"][token]
        return len(access)
