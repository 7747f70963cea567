"""Customer address book storage."""

from typing import Any

from .errors import AddressNotFoundError, InvalidAddressError
from .json_store import SCHEMA_VERSION, JsonDocumentStore
from .models import Address, _generate_id, _utc_now

REQUIRED_FIELDS = ("street", "city", "area")
OPTIONAL_FIELDS = ("postal_code", "label", "phone")


def validate_address_payload(payload: dict[str, Any] | None) -> dict[str, Any]:
    """
    Normalize a provided address payload into an order snapshot.

    Raises:
        InvalidAddressError: If a required field is missing or blank.
    """
    if not payload:
        raise InvalidAddressError("no address given")

    missing = [f for f in REQUIRED_FIELDS if not str(payload.get(f) or "").strip()]
    if missing:
        raise InvalidAddressError(f"missing {', '.join(missing)}")

    snapshot = {f: str(payload[f]).strip() for f in REQUIRED_FIELDS}
    snapshot["postal_code"] = str(payload.get("postal_code") or "").strip()
    snapshot["label"] = payload.get("label")
    snapshot["phone"] = payload.get("phone")
    return snapshot


class AddressStore(JsonDocumentStore):
    """Manages saved addresses per customer."""

    filename = "addresses.json"

    def _empty(self) -> dict[str, Any]:
        return {"schema_version": SCHEMA_VERSION, "addresses": []}

    def list_addresses(self, user_id: str) -> list[Address]:
        data = self._load_data()
        return [
            Address.from_dict(a) for a in data.get("addresses", []) if a["user_id"] == user_id
        ]

    def get_address(self, user_id: str, address_id: str) -> Address:
        """
        Get one of a user's addresses.

        Raises:
            AddressNotFoundError: If the address doesn't exist or belongs to someone else.
        """
        for a in self.list_addresses(user_id):
            if a.id == address_id:
                return a
        raise AddressNotFoundError(address_id)

    def add_address(self, user_id: str, payload: dict[str, Any]) -> Address:
        fields = validate_address_payload(payload)
        now = _utc_now()
        address = Address(
            id=_generate_id(),
            user_id=user_id,
            street=fields["street"],
            city=fields["city"],
            area=fields["area"],
            postal_code=fields["postal_code"],
            label=fields["label"],
            phone=fields["phone"],
            created_at=now,
            updated_at=now,
        )
        with self.transaction() as data:
            data["addresses"].append(address.to_dict())
        return address

    def update_address(self, user_id: str, address_id: str, payload: dict[str, Any]) -> Address:
        """
        Replace the fields of a saved address.

        Orders placed earlier keep their own snapshot and are not affected.
        """
        with self.transaction() as data:
            for a in data["addresses"]:
                if a["id"] == address_id and a["user_id"] == user_id:
                    merged = {**a, **{k: v for k, v in payload.items() if v is not None}}
                    fields = validate_address_payload(merged)
                    a.update(fields)
                    a["updated_at"] = _utc_now()
                    return Address.from_dict(a)
        raise AddressNotFoundError(address_id)
