"""Domain entities for playback sessions and watch progress.

Pure value objects: no framework dependencies, no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from anil.domain.entities.stream import EpisodeRef, StreamCandidate
from anil.domain.errors import AnilError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    STARTING = "starting"
    PLAYING = "playing"
    PAUSED = "paused"
    ENDED = "ended"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.ENDED, SessionState.FAILED)


# Allowed state changes. ENDED is reachable from every live state.
SESSION_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.STARTING: frozenset(
        {SessionState.PLAYING, SessionState.FAILED, SessionState.ENDED}
    ),
    SessionState.PLAYING: frozenset({SessionState.PAUSED, SessionState.ENDED}),
    SessionState.PAUSED: frozenset({SessionState.PLAYING, SessionState.ENDED}),
    SessionState.ENDED: frozenset(),
    SessionState.FAILED: frozenset(),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in SESSION_TRANSITIONS[current]


class EpisodeAction(str, Enum):
    """Episode change requested from inside a running player."""

    NEXT = "next"
    PREVIOUS = "previous"

    @property
    def step(self) -> int:
        return 1 if self is EpisodeAction.NEXT else -1


@dataclass(frozen=True)
class PositionSample:
    """One reading from the player's control channel.

    ``duration`` is ``None`` while the player does not know it yet
    (e.g. a live HLS stream still buffering).
    """

    elapsed: float
    duration: float | None
    paused: bool = False
    observed_at: float = 0.0

    @property
    def fraction(self) -> float | None:
        if self.duration is None or self.duration <= 0:
            return None
        return min(max(self.elapsed / self.duration, 0.0), 1.0)


@dataclass(frozen=True)
class WatchProgress:
    """Persisted viewing progress for one episode."""

    episode: EpisodeRef
    fraction: float = 0.0
    completed: bool = False
    updated_at: datetime = field(default_factory=_utcnow)
    elapsed: float = 0.0

    @property
    def percent(self) -> float:
        return round(self.fraction * 100, 1)


@dataclass(frozen=True)
class CompletionEvent:
    """Emitted once per session when the completion threshold is crossed."""

    episode: EpisodeRef
    fraction: float
    threshold: float
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class TrackingPolicy:
    """Immutable watch-tracking settings handed to the tracker."""

    completion_threshold: float = 85.0

    def __post_init__(self) -> None:
        if not 0 < self.completion_threshold <= 100:
            raise ValueError(
                f"completion_threshold must be in (0, 100], "
                f"got {self.completion_threshold}"
            )


@dataclass(frozen=True)
class PlayerPolicy:
    """Immutable player-control settings handed to the session controller."""

    command: tuple[str, ...] = ("mpv",)
    extra_args: tuple[str, ...] = ()
    ipc_connect_timeout: float = 5.0
    ipc_request_timeout: float = 2.0
    poll_interval: float = 1.0
    max_stale_polls: int = 3
    load_timeout: float = 30.0
    terminate_timeout: float = 3.0
    socket_dir: str | None = None
    next_episode_key: str | None = "Shift+N"
    previous_episode_key: str | None = "Shift+P"


@dataclass(frozen=True)
class PlaybackOutcome:
    """What happened during one play attempt, for the caller to display."""

    episode: EpisodeRef
    progress: WatchProgress
    candidate: StreamCandidate | None = None
    completion: CompletionEvent | None = None
    error: AnilError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
