"""mpv playback sessions: subprocess + JSON IPC + position feed.

``MpvSessionController.start()`` launches mpv for the best candidate and
waits until mpv has actually opened the stream. A process that dies
first, an IPC socket that never comes up, or a stream that does not load
within ``load_timeout`` moves on to the next alternate. The returned
``MpvSession`` is an async context manager; leaving it always stops the
player and cleans up its socket.

A running session binds the next/previous episode keys to mpv
``script-message`` commands and can switch streams in place with
``load()``, so moving to another episode does not restart the player.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any

import structlog

from anil.domain.entities.playback import (
    EpisodeAction,
    PlayerPolicy,
    PositionSample,
    SessionState,
    can_transition,
)
from anil.domain.entities.stream import StreamCandidate
from anil.domain.errors import (
    ChannelStaleError,
    InvalidSessionTransition,
    LaunchError,
    LaunchFailureKind,
    SessionEndedError,
)

from .ipc import MpvIpcChannel, MpvIpcError

log = structlog.get_logger(__name__)

# Delay between socket connect attempts while mpv starts up.
_CONNECT_RETRY_DELAY = 0.05
# Delay between re-polls of an unresponsive channel.
_STALE_RETRY_DELAY = 0.1
# Samples buffered per subscriber; a slow reader loses the oldest ones.
_FEED_BUFFER = 64
_OSD_MILLIS = 3000

_END = object()

_CHANNEL_ERRORS = (TimeoutError, ConnectionError, OSError, MpvIpcError)

# Events that prove mpv opened the stream during launch.
_LAUNCH_EVENTS = frozenset({"file-loaded", "playback-restart"})

_NAVIGATION_MESSAGES = {
    "next-episode": EpisodeAction.NEXT,
    "previous-episode": EpisodeAction.PREVIOUS,
}


def build_mpv_args(
    policy: PlayerPolicy,
    candidate: StreamCandidate,
    socket_path: str,
    *,
    start_percent: float | None = None,
) -> list[str]:
    """Command line for one mpv launch, URL last."""
    args = [
        *policy.command,
        f"--input-ipc-server={socket_path}",
        "--force-window=yes",
    ]
    for key, value in candidate.headers:
        args.append(f"--http-header-fields-append={key}: {value}")
    if candidate.title:
        args.append(f"--title={candidate.title}")
    if start_percent is not None and start_percent > 0:
        args.append(f"--start={start_percent:.1f}%")
    for subtitle in candidate.subtitles:
        args.append(f"--sub-file={subtitle}")
    args.extend(policy.extra_args)
    args.append(candidate.url)
    return args


async def _exited_within(process: asyncio.subprocess.Process, delay: float) -> bool:
    """Wait up to *delay* seconds for *process* to exit."""
    if process.returncode is not None:
        return True
    try:
        await asyncio.wait_for(process.wait(), timeout=delay)
    except TimeoutError:
        return False
    return True


async def _terminate(process: asyncio.subprocess.Process, timeout: float) -> None:
    """SIGTERM, then SIGKILL if the process outlives *timeout*."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    if await _exited_within(process, timeout):
        return
    log.warning("mpv_kill", pid=process.pid, timeout=timeout)
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


def _remove_socket_dir(socket_path: str) -> None:
    shutil.rmtree(os.path.dirname(socket_path), ignore_errors=True)


def _offer(queue: asyncio.Queue[Any], item: Any) -> None:
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(item)


class MpvSession:
    """A running mpv bound to one candidate.

    State machine: STARTING -> PLAYING <-> PAUSED -> ENDED, STARTING ->
    FAILED, and any live state -> ENDED when the process exits or the
    session is stopped.
    """

    def __init__(
        self,
        *,
        candidate: StreamCandidate,
        process: asyncio.subprocess.Process,
        channel: MpvIpcChannel,
        socket_path: str,
        policy: PlayerPolicy,
    ) -> None:
        self.candidate = candidate
        self.socket_path = socket_path
        self._process = process
        self._channel = channel
        self._policy = policy
        self._state = SessionState.STARTING
        self._last_elapsed = 0.0
        self._last_duration: float | None = None
        self._loaded_at = time.monotonic()
        self._loaded = asyncio.Event()
        # Serializes position polls against stream switches.
        self._io_lock = asyncio.Lock()
        self._subscribers: list[asyncio.Queue[Any]] = []
        self._navigation: asyncio.Queue[Any] = asyncio.Queue()
        self._feed_task: asyncio.Task[None] | None = None
        self._feed_error: Exception | None = None
        self._shutdown: asyncio.Future[None] | None = None
        channel.on_event = self._on_event

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def loaded_at(self) -> float:
        """Monotonic time the current stream was confirmed playing.

        Samples with an earlier ``observed_at`` belong to the stream that
        was playing before the last ``load()``.
        """
        return self._loaded_at

    @property
    def last_sample(self) -> PositionSample:
        return PositionSample(
            elapsed=self._last_elapsed,
            duration=self._last_duration,
            paused=self._state is SessionState.PAUSED,
            observed_at=time.monotonic(),
        )

    # ------------------------------------------------------------------
    # Position
    # ------------------------------------------------------------------

    async def position(self) -> tuple[float, float | None]:
        """Current ``(elapsed, duration)`` in seconds.

        Raises:
            SessionEndedError: The player has exited or was stopped.
            ChannelStaleError: The player is alive but its channel did
                not answer ``max_stale_polls`` consecutive polls.
        """
        sample = await self._poll()
        return sample.elapsed, sample.duration

    async def _poll(self) -> PositionSample:
        stale = 0
        while True:
            self._ensure_live()
            try:
                async with self._io_lock:
                    elapsed = await self._channel.get_property("time-pos")
                    duration = await self._channel.get_property("duration")
                    paused = await self._channel.get_property("pause")
                    observed_at = time.monotonic()
            except _CHANNEL_ERRORS as exc:
                if await _exited_within(self._process, _STALE_RETRY_DELAY):
                    self._mark_ended("process_exited")
                    raise SessionEndedError(
                        f"mpv exited with code {self._process.returncode}"
                    ) from exc
                stale += 1
                log.debug("session_poll_failed", stale=stale, error=repr(exc))
                if stale >= self._policy.max_stale_polls:
                    log.warning(
                        "session_channel_stale",
                        pid=self._process.pid,
                        polls=stale,
                    )
                    raise ChannelStaleError(
                        f"no answer from mpv after {stale} polls"
                    ) from exc
                continue

            if elapsed is not None:
                self._last_elapsed = float(elapsed)
            if duration is not None:
                self._last_duration = float(duration)
            self._sync_pause(bool(paused))
            return PositionSample(
                elapsed=self._last_elapsed,
                duration=self._last_duration,
                paused=bool(paused),
                observed_at=observed_at,
            )

    def _sync_pause(self, paused: bool) -> None:
        if self._state is SessionState.STARTING:
            self._transition(SessionState.PLAYING)
        if paused and self._state is SessionState.PLAYING:
            self._transition(SessionState.PAUSED)
        elif not paused and self._state is SessionState.PAUSED:
            self._transition(SessionState.PLAYING)

    # ------------------------------------------------------------------
    # Feed
    # ------------------------------------------------------------------

    def subscribe(self) -> AsyncIterator[PositionSample]:
        """Independent iterator of samples; ends when the session ends.

        Each subscriber buffers at most ``_FEED_BUFFER`` samples and drops
        the oldest when it falls behind. A stale channel, a player that
        exits with an error, or any other feed failure ends the feed by
        raising that error from every subscriber's iterator.
        """
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=_FEED_BUFFER)
        if self._state.is_terminal:
            queue.put_nowait(_END)
        else:
            self._subscribers.append(queue)
            if self._feed_task is None:
                self._feed_task = asyncio.create_task(
                    self._feed(), name=f"mpv-feed-{self._process.pid}"
                )
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue[Any]) -> AsyncIterator[PositionSample]:
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                yield item
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)
        if self._feed_error is not None:
            raise self._feed_error

    async def _feed(self) -> None:
        try:
            while True:
                try:
                    sample = await self._poll()
                except SessionEndedError as exc:
                    if self._process.returncode not in (None, 0):
                        self._feed_error = exc
                    break
                except Exception as exc:  # noqa: BLE001
                    if not isinstance(exc, ChannelStaleError):
                        log.error(
                            "session_feed_failed",
                            pid=self._process.pid,
                            error=repr(exc),
                        )
                    self._feed_error = exc
                    break
                for queue in list(self._subscribers):
                    _offer(queue, sample)
                await asyncio.sleep(self._policy.poll_interval)
        finally:
            self._close_subscribers()

    def _close_subscribers(self) -> None:
        for queue in self._subscribers:
            _offer(queue, _END)
        self._subscribers.clear()

    # ------------------------------------------------------------------
    # Episode navigation
    # ------------------------------------------------------------------

    def navigation_requests(self) -> AsyncIterator[EpisodeAction]:
        """Next/previous episode key presses; ends when the session ends.

        Meant for a single consumer.
        """
        return self._drain_navigation()

    async def _drain_navigation(self) -> AsyncIterator[EpisodeAction]:
        while True:
            item = await self._navigation.get()
            if item is _END:
                return
            yield item

    async def load(self, candidate: StreamCandidate) -> None:
        """Replace the playing stream with *candidate* in the same player.

        Returns once mpv reports the new file as loaded. Position polls
        wait while the switch is in progress.

        Raises:
            SessionEndedError: mpv exited before the file loaded.
            ChannelStaleError: mpv did not accept the commands.
            LaunchError: ``LOAD_TIMEOUT`` when the file did not load
                within ``load_timeout``.
        """
        self._ensure_live()
        async with self._io_lock:
            self._loaded.clear()
            headers = [f"{key}: {value}" for key, value in candidate.headers]
            await self._command("set_property", "http-header-fields", headers)
            if candidate.title:
                await self._command("set_property", "title", candidate.title)
            await self._command("loadfile", candidate.url, "replace")
            await self._wait_loaded(candidate)
            for subtitle in candidate.subtitles:
                await self._command("sub-add", subtitle)
            self.candidate = candidate
            self._last_elapsed = 0.0
            self._last_duration = None
            self._loaded_at = time.monotonic()
        log.info(
            "session_loaded",
            pid=self._process.pid,
            provider=candidate.provider,
            mirror=candidate.mirror,
            quality=candidate.quality.label,
        )

    async def _wait_loaded(self, candidate: StreamCandidate) -> None:
        loaded = asyncio.create_task(self._loaded.wait())
        exited = asyncio.create_task(self._process.wait())
        try:
            done, _ = await asyncio.wait(
                {loaded, exited},
                timeout=self._policy.load_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            loaded.cancel()
            exited.cancel()
        if loaded in done:
            return
        if exited in done:
            self._mark_ended("process_exited")
            raise SessionEndedError(
                f"mpv exited with code {self._process.returncode} while loading"
            )
        raise LaunchError(
            LaunchFailureKind.LOAD_TIMEOUT,
            f"{candidate.mirror or candidate.url} not loaded "
            f"after {self._policy.load_timeout}s",
        )

    async def show_text(self, message: str) -> None:
        """Show *message* on mpv's OSD. Failures are only logged."""
        try:
            await self._channel.command("show-text", message, _OSD_MILLIS)
        except _CHANNEL_ERRORS as exc:
            log.debug("session_osd_failed", error=repr(exc))

    def _on_event(self, event: dict[str, Any]) -> None:
        name = event.get("event")
        log.debug("mpv_event", mpv_event=name)
        if name == "file-loaded":
            self._loaded.set()
        elif name == "client-message":
            args = event.get("args") or []
            action = _NAVIGATION_MESSAGES.get(args[0]) if args else None
            if action is not None and not self._state.is_terminal:
                log.info("session_navigation", action=action.value)
                self._navigation.put_nowait(action)

    async def _bind_navigation_keys(self) -> None:
        bindings = (
            (self._policy.next_episode_key, "next-episode"),
            (self._policy.previous_episode_key, "previous-episode"),
        )
        for key, message in bindings:
            if not key:
                continue
            try:
                await self._channel.command(
                    "keybind", key, f"script-message {message}"
                )
            except _CHANNEL_ERRORS as exc:
                log.warning("session_keybind_failed", key=key, error=repr(exc))

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def pause(self) -> None:
        await self._control(SessionState.PAUSED, "set_property", "pause", True)

    async def resume(self) -> None:
        await self._control(SessionState.PLAYING, "set_property", "pause", False)

    async def seek(self, seconds: float, *, relative: bool = False) -> None:
        await self._control(
            None, "seek", seconds, "relative" if relative else "absolute"
        )

    async def stop(self) -> None:
        await self.aclose()

    async def _control(self, target: SessionState | None, *command: Any) -> None:
        self._ensure_live()
        if (
            target is not None
            and target is not self._state
            and not can_transition(self._state, target)
        ):
            raise InvalidSessionTransition(
                f"cannot go from {self._state.value} to {target.value}"
            )
        await self._command(*command)
        if target is not None:
            self._transition(target)

    async def _command(self, *command: Any) -> Any:
        try:
            return await self._channel.command(*command)
        except _CHANNEL_ERRORS as exc:
            if await _exited_within(self._process, _STALE_RETRY_DELAY):
                self._mark_ended("process_exited")
                raise SessionEndedError("mpv exited") from exc
            raise ChannelStaleError(f"{command[0]} failed: {exc!r}") from exc

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    async def _started(self) -> None:
        self._transition(SessionState.PLAYING)
        await self._bind_navigation_keys()

    def _ensure_live(self) -> None:
        if self._state.is_terminal:
            raise SessionEndedError(f"session is {self._state.value}")
        if self._process.returncode is not None:
            self._mark_ended("process_exited")
            raise SessionEndedError(
                f"mpv exited with code {self._process.returncode}"
            )

    def _transition(self, target: SessionState) -> None:
        if target is self._state:
            return
        if not can_transition(self._state, target):
            raise InvalidSessionTransition(
                f"cannot go from {self._state.value} to {target.value}"
            )
        log.debug("session_state", old=self._state.value, new=target.value)
        self._state = target

    def _mark_ended(self, reason: str) -> None:
        if self._state.is_terminal:
            return
        # Dying with an error before playback was confirmed means it never played.
        failed = (
            reason == "process_exited"
            and self._state is SessionState.STARTING
            and self._process.returncode not in (None, 0)
        )
        self._transition(SessionState.FAILED if failed else SessionState.ENDED)
        self._navigation.put_nowait(_END)
        log.info(
            "session_ended",
            state=self._state.value,
            pid=self._process.pid,
            reason=reason,
            returncode=self._process.returncode,
            elapsed=round(self._last_elapsed, 1),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> MpvSession:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Terminate mpv, close the channel and remove the socket.

        Idempotent. Concurrent callers wait for the same shutdown, which
        runs to the end even when a caller is cancelled.
        """
        if self._shutdown is None:
            self._shutdown = asyncio.ensure_future(self._close())
        await asyncio.shield(self._shutdown)

    async def _close(self) -> None:
        try:
            if self._feed_task is not None and not self._feed_task.done():
                self._feed_task.cancel()
                try:
                    await self._feed_task
                except asyncio.CancelledError:
                    if not self._feed_task.cancelled():
                        raise
            if self._process.returncode is None and not self._channel.closed:
                try:
                    await asyncio.wait_for(
                        self._channel.command("quit"),
                        timeout=self._policy.ipc_request_timeout,
                    )
                except _CHANNEL_ERRORS:
                    log.debug("session_quit_unanswered", pid=self._process.pid)
            await self._channel.aclose()
            if not await _exited_within(
                self._process, self._policy.terminate_timeout
            ):
                await _terminate(self._process, self._policy.terminate_timeout)
        finally:
            _remove_socket_dir(self.socket_path)
            self._close_subscribers()
            self._mark_ended("stopped")


class MpvSessionController:
    """Starts mpv sessions with fallback across alternate candidates."""

    def __init__(self, policy: PlayerPolicy) -> None:
        self._policy = policy

    async def start(
        self,
        candidate: StreamCandidate,
        alternates: Sequence[StreamCandidate] = (),
        *,
        start_percent: float | None = None,
    ) -> MpvSession:
        """Launch mpv for *candidate*, then each alternate in turn.

        A launch only counts once mpv has opened the stream, so a URL
        that mpv rejects falls through to the next alternate.

        Raises:
            LaunchError: Every candidate failed; carries the last
                failure kind and the number of candidates tried.
        """
        queue = [candidate, *alternates]
        last: LaunchError | None = None
        for attempt, current in enumerate(queue, start=1):
            try:
                session = await self._launch(current, start_percent=start_percent)
            except LaunchError as exc:
                last = exc
                log.warning(
                    "session_launch_failed",
                    provider=current.provider,
                    mirror=current.mirror,
                    kind=exc.kind.value,
                    reason=exc.reason,
                    attempt=attempt,
                    remaining=len(queue) - attempt,
                )
                continue
            log.info(
                "session_started",
                pid=session.pid,
                provider=current.provider,
                mirror=current.mirror,
                quality=current.quality.label,
                attempt=attempt,
            )
            return session

        assert last is not None
        raise LaunchError(last.kind, last.reason, attempts=len(queue))

    async def stop(self, session: MpvSession) -> None:
        await session.stop()

    async def _launch(
        self, candidate: StreamCandidate, *, start_percent: float | None
    ) -> MpvSession:
        socket_dir = tempfile.mkdtemp(prefix="anil-mpv-", dir=self._policy.socket_dir)
        socket_path = os.path.join(socket_dir, "ipc.sock")
        args = build_mpv_args(
            self._policy, candidate, socket_path, start_percent=start_percent
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            _remove_socket_dir(socket_path)
            raise LaunchError(
                LaunchFailureKind.SUBPROCESS_FAILED,
                f"cannot run {args[0]}: {exc}",
            ) from exc

        loaded = asyncio.Event()
        try:
            channel = await self._connect(process, socket_path, loaded)
            try:
                await self._await_playback(process, channel, loaded)
            except BaseException:
                await channel.aclose()
                raise
        except BaseException:
            await _terminate(process, self._policy.terminate_timeout)
            _remove_socket_dir(socket_path)
            raise

        session = MpvSession(
            candidate=candidate,
            process=process,
            channel=channel,
            socket_path=socket_path,
            policy=self._policy,
        )
        await session._started()
        return session

    async def _connect(
        self,
        process: asyncio.subprocess.Process,
        socket_path: str,
        loaded: asyncio.Event,
    ) -> MpvIpcChannel:
        def on_event(event: dict[str, Any]) -> None:
            log.debug("mpv_event", mpv_event=event.get("event"))
            if event.get("event") in _LAUNCH_EVENTS:
                loaded.set()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._policy.ipc_connect_timeout
        last_error = "socket never appeared"
        while True:
            if process.returncode is not None:
                raise LaunchError(
                    LaunchFailureKind.SUBPROCESS_FAILED,
                    f"mpv exited with code {process.returncode}",
                )
            try:
                return await MpvIpcChannel.connect(
                    socket_path,
                    request_timeout=self._policy.ipc_request_timeout,
                    on_event=on_event,
                )
            except OSError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            if loop.time() >= deadline:
                raise LaunchError(
                    LaunchFailureKind.CHANNEL_UNAVAILABLE,
                    f"no IPC after {self._policy.ipc_connect_timeout}s ({last_error})",
                )
            await _exited_within(process, _CONNECT_RETRY_DELAY)

    async def _await_playback(
        self,
        process: asyncio.subprocess.Process,
        channel: MpvIpcChannel,
        loaded: asyncio.Event,
    ) -> None:
        """Return once mpv has opened the stream.

        Proof is a load event or a known ``duration``/``time-pos``. The
        socket alone proves nothing: mpv opens it before fetching the URL
        and exits with an error when the URL is dead.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._policy.load_timeout
        while not loaded.is_set():
            if process.returncode is not None:
                raise LaunchError(
                    LaunchFailureKind.SUBPROCESS_FAILED,
                    f"mpv exited with code {process.returncode} before playback",
                )
            try:
                for name in ("duration", "time-pos"):
                    if await channel.get_property(name) is not None:
                        return
            except _CHANNEL_ERRORS as exc:
                log.debug("session_load_poll_failed", error=repr(exc))
            if loop.time() >= deadline:
                raise LaunchError(
                    LaunchFailureKind.LOAD_TIMEOUT,
                    f"stream not loaded after {self._policy.load_timeout}s",
                )
            await _exited_within(process, _CONNECT_RETRY_DELAY)
