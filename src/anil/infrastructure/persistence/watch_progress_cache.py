"""Watch progress persistence backed by CachePort (diskcache)."""

from __future__ import annotations

import json
from datetime import datetime

import structlog

from anil.domain.entities.playback import WatchProgress
from anil.domain.entities.stream import EpisodeRef
from anil.domain.errors import PersistenceReadFailed, PersistenceWriteFailed
from anil.domain.ports.cache import CachePort

log = structlog.get_logger(__name__)

# Cache key for the progress index (list of all stored [title_id, episode] pairs).
_INDEX_KEY: str = "progress:_index"


def _progress_key(title_id: str, episode: int) -> str:
    return f"progress:{title_id}:{episode}"


def _serialize_progress(progress: WatchProgress) -> str:
    ref = progress.episode
    return json.dumps(
        {
            "title_id": ref.title_id,
            "episode": ref.episode,
            "title": ref.title,
            "provider_slug": ref.provider_slug,
            "fraction": progress.fraction,
            "completed": progress.completed,
            "elapsed": progress.elapsed,
            "updated_at": progress.updated_at.isoformat(),
        }
    )


def _deserialize_progress(data: str) -> WatchProgress:
    d = json.loads(data)
    return WatchProgress(
        episode=EpisodeRef(
            title_id=d["title_id"],
            episode=d["episode"],
            title=d.get("title", ""),
            provider_slug=d.get("provider_slug"),
        ),
        fraction=d["fraction"],
        completed=d["completed"],
        elapsed=d.get("elapsed", 0.0),
        updated_at=datetime.fromisoformat(d["updated_at"]),
    )


class CacheWatchProgressStore:
    """Stores watch progress records via CachePort.

    Key schema:
    - ``progress:{title_id}:{episode}`` → JSON WatchProgress
    - ``progress:_index`` → JSON list of ``[title_id, episode]`` pairs

    Records never expire. Cache failures are raised as
    ``PersistenceReadFailed`` or ``PersistenceWriteFailed``.
    """

    def __init__(self, cache: CachePort) -> None:
        self.cache = cache

    async def get(self, episode: EpisodeRef) -> WatchProgress | None:
        key = _progress_key(episode.title_id, episode.episode)
        data = await self._read(key)
        if data is None:
            return None
        try:
            return _deserialize_progress(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            log.error("progress_deserialize_error", key=key, error=str(e))
            return None

    async def put(self, progress: WatchProgress) -> None:
        ref = progress.episode
        key = _progress_key(ref.title_id, ref.episode)
        try:
            await self.cache.set(key, _serialize_progress(progress))

            pair = [ref.title_id, ref.episode]
            index = await self._load_index()
            if pair not in index:
                index.append(pair)
                await self.cache.set(_INDEX_KEY, json.dumps(index))
        except PersistenceWriteFailed:
            raise
        except Exception as e:  # noqa: BLE001
            raise PersistenceWriteFailed([key], repr(e)) from e

        log.debug(
            "progress_saved",
            key=key,
            fraction=round(progress.fraction, 4),
            completed=progress.completed,
        )

    async def flush(self) -> None:
        try:
            await self.cache.sync()
        except Exception as e:  # noqa: BLE001
            raise PersistenceWriteFailed([_INDEX_KEY], repr(e)) from e

    async def list_all(self) -> list[WatchProgress]:
        """Every stored record, most recently updated first."""
        results: list[WatchProgress] = []
        for title_id, episode in await self._load_index():
            progress = await self.get(EpisodeRef(title_id=title_id, episode=episode))
            if progress is not None:
                results.append(progress)
        results.sort(key=lambda p: p.updated_at, reverse=True)
        return results

    async def _load_index(self) -> list[list]:
        data = await self._read(_INDEX_KEY)
        if data is None:
            return []
        try:
            return json.loads(data)
        except (json.JSONDecodeError, TypeError):
            log.error("progress_index_corrupt", key=_INDEX_KEY)
            return []

    async def _read(self, key: str) -> str | None:
        try:
            return await self.cache.get(key)
        except Exception as e:  # noqa: BLE001
            raise PersistenceReadFailed(key, repr(e)) from e
