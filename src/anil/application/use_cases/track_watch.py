"""Watch-state tracking use case.

Position samples -> completion fraction -> write-through WatchProgress
-> one CompletionEvent per session when the threshold is crossed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from anil.domain.entities.playback import (
    CompletionEvent,
    PositionSample,
    TrackingPolicy,
    WatchProgress,
)
from anil.domain.entities.stream import EpisodeRef
from anil.domain.errors import PersistenceError, PersistenceWriteFailed
from anil.domain.ports.watch_store import WatchProgressStorePort

log = structlog.get_logger(__name__)

# Absorbs float error so that e.g. 85/100 counts as 85 %.
_EPSILON = 1e-9


@dataclass
class _SessionRun:
    max_fraction: float = 0.0
    max_elapsed: float = 0.0
    observed: bool = False
    completion_emitted: bool = False


class WatchStateTracker:
    """Single writer of watch progress.

    Within one session the recorded fraction never decreases; a new
    session for the same episode starts its own run. ``completed`` is
    never reverted once stored.
    """

    def __init__(self, store: WatchProgressStorePort, policy: TrackingPolicy) -> None:
        self._store = store
        self._policy = policy
        self._records: dict[str, WatchProgress] = {}
        self._sessions: dict[str, _SessionRun] = {}
        self._pending: dict[str, WatchProgress] = {}
        self._last_error = ""

    @property
    def threshold(self) -> float:
        return self._policy.completion_threshold

    @property
    def pending_keys(self) -> list[str]:
        return sorted(self._pending)

    # ------------------------------------------------------------------
    # Session bracketing
    # ------------------------------------------------------------------

    def begin_session(self, episode: EpisodeRef) -> None:
        """Start a fresh monotonic run for *episode*."""
        self._sessions[episode.key] = _SessionRun()
        log.debug("tracking_session_started", episode=episode.key)

    async def end_session(
        self, episode: EpisodeRef, last_sample: PositionSample | None = None
    ) -> CompletionEvent | None:
        """Persist the final known fraction, even below the threshold."""
        event = None
        if last_sample is not None:
            event = await self.observe(
                episode, last_sample.elapsed, last_sample.duration
            )

        run = self._sessions.pop(episode.key, None)
        record = self._records.get(episode.key)
        if run is not None and run.observed and record is not None:
            await self._write(record)
            log.info(
                "tracking_session_ended",
                episode=episode.key,
                fraction=round(record.fraction, 4),
                completed=record.completed,
            )
        return event

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    async def observe(
        self, episode: EpisodeRef, elapsed: float, duration: float | None
    ) -> CompletionEvent | None:
        """Record one position reading.

        Returns the ``CompletionEvent`` for the first reading of the
        session at or above the threshold, otherwise ``None``. Readings
        with an unknown or non-positive duration are ignored.
        """
        if duration is None or duration <= 0:
            return None

        fraction = min(max(elapsed / duration, 0.0), 1.0)
        run = self._sessions.get(episode.key)
        if run is None:
            run = self._sessions[episode.key] = _SessionRun()

        if not run.observed or fraction > run.max_fraction:
            run.max_fraction = fraction
            run.max_elapsed = max(elapsed, 0.0)
        run.observed = True

        previous = await self._current(episode)
        crossed = run.max_fraction * 100 + _EPSILON >= self.threshold
        event = None
        if crossed and not run.completion_emitted:
            run.completion_emitted = True
            event = CompletionEvent(
                episode=episode,
                fraction=run.max_fraction,
                threshold=self.threshold,
            )
            log.info(
                "episode_completed",
                episode=episode.key,
                fraction=round(run.max_fraction, 4),
                threshold=self.threshold,
            )

        completed = crossed or (previous is not None and previous.completed)
        record = WatchProgress(
            episode=episode,
            fraction=run.max_fraction,
            completed=completed,
            updated_at=datetime.now(timezone.utc),
            elapsed=run.max_elapsed,
        )
        self._records[episode.key] = record
        await self._write(record)
        return event

    async def snapshot(self, episode: EpisodeRef) -> WatchProgress:
        """Latest known progress; a zero record if nothing was stored."""
        current = await self._current(episode)
        return current if current is not None else WatchProgress(episode=episode)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def flush(self) -> None:
        """Retry pending writes and make them durable.

        Raises:
            PersistenceWriteFailed: Some records are still unwritten.
        """
        await self._drain_pending()
        if self._pending:
            raise PersistenceWriteFailed(self.pending_keys, self._last_error)
        await self._store.flush()

    async def _current(self, episode: EpisodeRef) -> WatchProgress | None:
        record = self._records.get(episode.key)
        if record is not None:
            return record
        try:
            stored = await self._store.get(episode)
        except PersistenceError as exc:
            log.warning("progress_read_failed", episode=episode.key, error=str(exc))
            return None
        if stored is not None:
            self._records[episode.key] = stored
        return stored

    async def _write(self, record: WatchProgress) -> None:
        self._pending[record.episode.key] = record
        await self._drain_pending()

    async def _drain_pending(self) -> None:
        for key, record in list(self._pending.items()):
            try:
                await self._store.put(record)
            except PersistenceError as exc:
                self._last_error = str(exc)
                log.warning(
                    "progress_write_failed",
                    episode=key,
                    pending=len(self._pending),
                    error=str(exc),
                )
                continue
            # A newer record may have replaced this one meanwhile.
            if self._pending.get(key) is record:
                del self._pending[key]
