"""Ports for the external media player and its control channel."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Protocol

from anil.domain.entities.playback import EpisodeAction, PositionSample, SessionState
from anil.domain.entities.stream import StreamCandidate


class PlaybackSessionPort(Protocol):
    """A live run of the player against one candidate."""

    candidate: StreamCandidate

    @property
    def state(self) -> SessionState: ...

    @property
    def loaded_at(self) -> float:
        """Monotonic time the current stream was confirmed playing."""
        ...

    async def position(self) -> tuple[float, float | None]: ...

    def subscribe(self) -> AsyncIterator[PositionSample]: ...

    def navigation_requests(self) -> AsyncIterator[EpisodeAction]: ...

    async def load(self, candidate: StreamCandidate) -> None: ...

    async def show_text(self, message: str) -> None: ...

    async def pause(self) -> None: ...

    async def resume(self) -> None: ...

    async def seek(self, seconds: float, *, relative: bool = False) -> None: ...

    async def stop(self) -> None: ...


class PlaybackControllerPort(Protocol):
    """Starts sessions, falling back across alternates on launch failure."""

    async def start(
        self,
        candidate: StreamCandidate,
        alternates: Sequence[StreamCandidate] = (),
        *,
        start_percent: float | None = None,
    ) -> PlaybackSessionPort: ...

    async def stop(self, session: PlaybackSessionPort) -> None: ...
