"""Cache Port - async key-value store used for durable watch state."""

from __future__ import annotations

from typing import Any, Protocol


class CachePort(Protocol):
    """Port for an async key-value store.

    Implementations:
      - DiskcacheAdapter (SQLite-based, no daemon)

    Adapters support async context-manager semantics:
        async with cache:
            await cache.set("key", value)
    """

    async def get(self, key: str) -> Any:
        """Retrieve value. None = not found."""
        ...

    async def set(self, key: str, value: Any) -> None:
        """Store value; entries never expire."""
        ...

    async def sync(self) -> None:
        """Block until previous writes are durable on disk."""
        ...

    async def aclose(self) -> None:
        """Release file handles / connections."""
        ...

    async def __aenter__(self) -> CachePort: ...

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None: ...
