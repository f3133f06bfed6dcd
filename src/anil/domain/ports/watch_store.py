"""Port for the persisted watch-state store."""

from __future__ import annotations

from typing import Protocol

from anil.domain.entities.playback import WatchProgress
from anil.domain.entities.stream import EpisodeRef


class WatchProgressStorePort(Protocol):
    """Durable mapping (title id, episode) -> WatchProgress.

    Only the watch-state tracker writes through this port.
    Write failures are raised as ``PersistenceWriteFailed``.
    """

    async def get(self, episode: EpisodeRef) -> WatchProgress | None: ...

    async def put(self, progress: WatchProgress) -> None: ...

    async def flush(self) -> None:
        """Return only once every accepted ``put`` is durable."""
        ...

    async def list_all(self) -> list[WatchProgress]: ...
