"""Play-episode use case.

ResolutionRequest -> resolve -> (resume point) -> start player with
fallback -> feed samples into the tracker -> PlaybackOutcome.

While the player runs, next/previous episode requests from its key
bindings resolve the neighbouring episode and switch the stream in
place. Progress of the episode left behind is saved before the switch.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field, replace

import structlog

from anil.domain.entities.playback import (
    CompletionEvent,
    EpisodeAction,
    PlaybackOutcome,
    PositionSample,
    SessionState,
)
from anil.domain.entities.stream import EpisodeRef, ResolutionRequest
from anil.domain.errors import (
    AnilError,
    LaunchError,
    PersistenceError,
    SessionEndedError,
    SessionError,
)
from anil.domain.ports.player import PlaybackControllerPort, PlaybackSessionPort

from .resolve_stream import ResolutionOrchestrator
from .track_watch import WatchStateTracker

log = structlog.get_logger(__name__)

SampleCallback = Callable[[PositionSample], None]


def neighbour_episode(episode: EpisodeRef, action: EpisodeAction) -> EpisodeRef | None:
    """The episode *action* moves to, or ``None`` before episode 1.

    The provider slug is not carried over: a slug may name one single
    episode, so the neighbour is searched by title.
    """
    number = episode.episode + action.step
    if number < 1:
        return None
    return EpisodeRef(title_id=episode.title_id, episode=number, title=episode.title)


@dataclass
class _Run:
    """What the player is showing right now."""

    episode: EpisodeRef
    last: PositionSample | None = None
    completion: CompletionEvent | None = None
    error: AnilError | None = None
    # Held while a sample is recorded and while the episode is switched.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class PlayEpisodeUseCase:
    """Glue between resolution, the player and watch tracking."""

    def __init__(
        self,
        *,
        orchestrator: ResolutionOrchestrator,
        controller: PlaybackControllerPort,
        tracker: WatchStateTracker,
        resume_min_fraction: float = 0.05,
    ) -> None:
        self._orchestrator = orchestrator
        self._controller = controller
        self._tracker = tracker
        self._resume_min_fraction = resume_min_fraction

    async def play(
        self,
        request: ResolutionRequest,
        *,
        on_sample: SampleCallback | None = None,
    ) -> PlaybackOutcome:
        """Never raises domain errors; they are returned in the outcome.

        The outcome describes the episode playing when the player closed.
        """
        episode = request.episode

        result = await self._orchestrator.resolve(request)
        if result.chosen is None:
            return PlaybackOutcome(
                episode=episode,
                progress=await self._tracker.snapshot(episode),
                error=result.error,
            )

        stored = await self._tracker.snapshot(episode)
        start_percent = None
        if not stored.completed and stored.fraction > self._resume_min_fraction:
            start_percent = stored.fraction * 100
            log.info("playback_resume", episode=episode.key, percent=stored.percent)

        try:
            session = await self._controller.start(
                result.chosen, result.alternates, start_percent=start_percent
            )
        except LaunchError as exc:
            log.error(
                "playback_launch_failed",
                episode=episode.key,
                kind=exc.kind.value,
                attempts=exc.attempts,
            )
            return PlaybackOutcome(
                episode=episode,
                progress=stored,
                error=exc,
            )

        run = _Run(episode=episode)
        self._tracker.begin_session(episode)
        navigation = asyncio.create_task(
            self._follow_navigation(session, request, run),
            name="episode-navigation",
        )
        try:
            async for sample in session.subscribe():
                async with run.lock:
                    # Queued before the last episode switch.
                    if sample.observed_at < session.loaded_at:
                        continue
                    await self._record(run, sample)
                if on_sample is not None:
                    on_sample(sample)
        except SessionError as exc:
            log.warning(
                "playback_session_error", episode=run.episode.key, error=str(exc)
            )
            run.error = run.error or exc
        finally:
            navigation.cancel()
            try:
                await navigation
            except asyncio.CancelledError:
                if not navigation.cancelled():
                    raise
            await self._controller.stop(session)
            event = await self._tracker.end_session(run.episode, run.last)
            if event is not None and run.completion is None:
                run.completion = event

        if run.error is None and session.state is SessionState.FAILED:
            run.error = SessionEndedError("player exited before playback started")

        try:
            await self._tracker.flush()
        except PersistenceError as exc:
            log.error(
                "playback_persist_failed", episode=run.episode.key, error=str(exc)
            )
            run.error = run.error or exc

        progress = await self._tracker.snapshot(run.episode)
        log.info(
            "playback_finished",
            episode=run.episode.key,
            fraction=round(progress.fraction, 4),
            completed=progress.completed,
            ok=run.error is None,
        )
        return PlaybackOutcome(
            episode=run.episode,
            progress=progress,
            candidate=session.candidate,
            completion=run.completion,
            error=run.error,
        )

    async def _record(self, run: _Run, sample: PositionSample) -> None:
        run.last = sample
        event = await self._tracker.observe(
            run.episode, sample.elapsed, sample.duration
        )
        if event is not None and run.completion is None:
            run.completion = event

    # ------------------------------------------------------------------
    # Episode navigation
    # ------------------------------------------------------------------

    async def _follow_navigation(
        self,
        session: PlaybackSessionPort,
        request: ResolutionRequest,
        run: _Run,
    ) -> None:
        async for action in session.navigation_requests():
            try:
                await self._switch(session, request, run, action)
            except SessionEndedError:
                # The feed reports how the player ended.
                return
            except (SessionError, LaunchError) as exc:
                log.warning(
                    "playback_switch_failed",
                    episode=run.episode.key,
                    action=action.value,
                    error=str(exc),
                )
                run.error = exc
                await self._controller.stop(session)
                return

    async def _switch(
        self,
        session: PlaybackSessionPort,
        request: ResolutionRequest,
        run: _Run,
        action: EpisodeAction,
    ) -> None:
        target = neighbour_episode(run.episode, action)
        if target is None:
            await session.show_text(f"No {action.value} episode found")
            return

        await session.show_text(f"Loading {target.display_name}")
        result = await self._orchestrator.resolve(replace(request, episode=target))
        if result.chosen is None:
            log.info(
                "playback_episode_unavailable",
                episode=target.key,
                error=str(result.error),
            )
            await session.show_text(f"No {action.value} episode found")
            return

        async with run.lock:
            await session.load(result.chosen)
            await self._tracker.end_session(run.episode, run.last)
            self._tracker.begin_session(target)
            log.info(
                "playback_episode_changed",
                old=run.episode.key,
                new=target.key,
                mirror=result.chosen.mirror,
            )
            run.episode = target
            run.last = None
            run.completion = None
