"""Typed access to runtime settings held by the storage collaborator."""

import logging
from typing import Any

from .store import SecurityStore

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


class SettingsReader:
    """Read settings from storage, falling back to static configuration.

    Storage backends commonly keep settings as strings, so ``"true"`` and
    ``"5"`` are coerced to the expected type. Values that cannot be coerced
    are logged and replaced by the default.
    """

    def __init__(self, store: SecurityStore):
        self.store = store

    async def _raw(self, key: str) -> Any:
        try:
            return await self.store.get_setting(key)
        except Exception as e:
            logger.error("Failed to read setting %s: %s", key, e)
            return None

    async def get_bool(self, key: str, default: bool) -> bool:
        value = await self._raw(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        logger.warning("Setting %s has non-boolean value %r", key, value)
        return default

    async def get_int(self, key: str, default: int) -> int:
        value = await self._raw(key)
        if value is None:
            return default
        if isinstance(value, bool):
            logger.warning("Setting %s has non-integer value %r", key, value)
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning("Setting %s has non-integer value %r", key, value)
            return default

    async def get_str(self, key: str, default: str | None = None) -> str | None:
        value = await self._raw(key)
        if value is None:
            return default
        return str(value)

    async def get(self, key: str) -> Any:
        return await self._raw(key)
