"""
Client-readable key/value storage.

This is where LOCAL_FALLBACK credentials live, and where SECURE_COOKIE mode
keeps its non-secret bookkeeping (expiry, liveness flag, mode).
"""

import json
import logging
from pathlib import Path
from typing import Protocol

import anyio

logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    """Protocol for credential storage backends."""

    async def get_item(self, key: str) -> str | None:
        """Get a stored value."""
        ...

    async def set_item(self, key: str, value: str) -> None:
        """Store a value."""
        ...

    async def remove_item(self, key: str) -> None:
        """Remove a value; absent keys are ignored."""
        ...


class InMemoryStorage:
    """Storage that lives as long as the process."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._items: dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    async def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def snapshot(self) -> dict[str, str]:
        return dict(self._items)


class FileStorage:
    """
    Storage persisted as a single JSON object on disk.

    A missing or unreadable file reads as empty storage. Every write rewrites
    the whole file.
    """

    def __init__(self, path: str | Path):
        self.path = anyio.Path(path)

    async def _read(self) -> dict[str, str]:
        try:
            content = await self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}

        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring corrupt credential storage file {self.path}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring credential storage file {self.path} with unexpected layout")
            return {}

        return {str(k): str(v) for k, v in data.items()}

    async def _write(self, items: dict[str, str]) -> None:
        await self.path.parent.mkdir(parents=True, exist_ok=True)
        await self.path.write_text(json.dumps(items, indent=2, sort_keys=True), encoding="utf-8")

    async def get_item(self, key: str) -> str | None:
        return (await self._read()).get(key)

    async def set_item(self, key: str, value: str) -> None:
        items = await self._read()
        items[key] = value
        await self._write(items)

    async def remove_item(self, key: str) -> None:
        items = await self._read()
        if key in items:
            del items[key]
            await self._write(items)
