"""Persistent key-value storage for the client (cart, tokens, cached user)."""

import json
import os
import tempfile
from pathlib import Path
from typing import Any

CART_KEY = "cart"
ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
USER_KEY = "user"

SESSION_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY)


class KeyValueStorage:
    """
    A small JSON file of string keys, like app storage on a device.

    Without a path the values only live in memory.
    """

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path else None
        self._values: dict[str, Any] = self._read()

    def _read(self) -> dict[str, Any]:
        if self.path is None or not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".storage_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._values, f, indent=2)
            os.replace(temp_path, self.path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value
        self._write()

    def remove(self, *keys: str) -> None:
        for key in keys:
            self._values.pop(key, None)
        self._write()

    def clear_session(self) -> None:
        """Forget tokens and the cached user; the cart is kept."""
        self.remove(*SESSION_KEYS)
