"""AppSettings storage for constructmart."""

import logging
from typing import Any

from .errors import ValidationError
from .json_store import JsonDocumentStore
from .models import DELIVERY_TYPES, AppSettings, DeliveryConfig, _utc_now

logger = logging.getLogger(__name__)

# (min, max) bounds for numeric settings; None means unbounded
_RATE_BOUNDS: dict[str, tuple[float, float | None]] = {
    "tax_rate": (0.0, 1.0),
    "platform_fee_rate": (0.0, 0.1),
    "minimum_order_value": (0.0, None),
}

_DELIVERY_NUMBERS = (
    "fixed_charge",
    "free_delivery_threshold",
    "charge_for_below_threshold",
    "per_km_rate",
    "base_distance",
    "per_kg_rate",
    "free_weight_limit",
)


def _check_number(name: str, value: Any, low: float, high: float | None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number", field=name)
    if value < low or (high is not None and value > high):
        bound = f"between {low} and {high}" if high is not None else f"at least {low}"
        raise ValidationError(f"{name} must be {bound}", field=name)
    return value


class SettingsStore(JsonDocumentStore):
    """Manages the single marketplace settings document."""

    filename = "settings.json"

    def get(self) -> AppSettings:
        """Return current settings, defaults if none were saved yet."""
        data = self._load_data()
        if "settings" not in data:
            return AppSettings()
        return AppSettings.from_dict(data["settings"])

    def update(self, updates: dict[str, Any], updated_by: str | None = None) -> AppSettings:
        """
        Apply a partial update.

        Args:
            updates: Top-level settings keys; ``delivery_config`` may itself be partial.
            updated_by: User ID of the admin making the change.

        Raises:
            ValidationError: If any value is out of range or unknown.
        """
        with self._lock():
            data = self._load_data()
            current = (
                AppSettings.from_dict(data["settings"]) if "settings" in data else AppSettings()
            )
            merged = current.to_dict()

            for key, value in updates.items():
                if key in _RATE_BOUNDS:
                    low, high = _RATE_BOUNDS[key]
                    merged[key] = _check_number(key, value, low, high)
                elif key == "delivery_config":
                    merged[key] = self._merge_delivery(merged[key], value)
                else:
                    raise ValidationError(f"Unknown setting: {key}", field=key)

            settings = AppSettings.from_dict(merged)
            settings.updated_at = _utc_now()
            settings.updated_by = updated_by

            data["settings"] = settings.to_dict()
            self._save_data(data)

        logger.info("Settings updated by %s: %s", updated_by or "system", sorted(updates))
        return settings

    def _merge_delivery(self, current: dict[str, Any], updates: Any) -> dict[str, Any]:
        if not isinstance(updates, dict):
            raise ValidationError("delivery_config must be an object", field="delivery_config")

        merged = dict(current)
        for key, value in updates.items():
            if key == "type":
                if value not in DELIVERY_TYPES:
                    raise ValidationError(
                        f"Invalid delivery type: {value}", field="delivery_config.type"
                    )
                merged[key] = value
            elif key in _DELIVERY_NUMBERS:
                merged[key] = _check_number(f"delivery_config.{key}", value, 0.0, None)
            else:
                raise ValidationError(
                    f"Unknown delivery setting: {key}", field=f"delivery_config.{key}"
                )
        return DeliveryConfig.from_dict(merged).to_dict()
