"""mpv JSON IPC client over a unix domain socket.

Wire format: one JSON object per line. Requests carry a ``request_id``
that mpv echoes in its reply; ``{"event": ...}`` lines are unsolicited
and go to the optional event callback. ``on_event`` may be reassigned
while the channel is open.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Callable
from typing import Any

import structlog

log = structlog.get_logger(__name__)

EventCallback = Callable[[dict[str, Any]], None]


class MpvIpcError(Exception):
    """mpv answered a request with an error status."""

    def __init__(self, command: tuple[Any, ...], error: str) -> None:
        super().__init__(f"{command[0] if command else '?'}: {error}")
        self.command = command
        self.error = error


class MpvIpcChannel:
    """One connection to a running mpv's ``--input-ipc-server`` socket.

    Every request is bounded by ``request_timeout`` and raises
    ``TimeoutError`` when mpv does not answer in time. Once the socket
    is closed by either side, requests raise ``ConnectionError``.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        request_timeout: float = 2.0,
        on_event: EventCallback | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._timeout = request_timeout
        self.on_event = on_event
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._write_lock = asyncio.Lock()
        self._closed = False
        self._shut = False
        self._read_task = asyncio.create_task(self._read_loop(), name="mpv-ipc-reader")

    @classmethod
    async def connect(
        cls,
        path: str,
        *,
        request_timeout: float = 2.0,
        on_event: EventCallback | None = None,
    ) -> MpvIpcChannel:
        """Open the socket at *path* once. Raises ``OSError`` if not listening."""
        reader, writer = await asyncio.open_unix_connection(path)
        log.debug("mpv_ipc_connected", path=path)
        return cls(
            reader, writer, request_timeout=request_timeout, on_event=on_event
        )

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def command(self, *args: Any) -> Any:
        """Send ``{"command": args}`` and return the reply's ``data``."""
        if self._closed:
            raise ConnectionError("mpv ipc channel closed")

        request_id = next(self._ids)
        future: asyncio.Future[dict[str, Any]] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[request_id] = future
        line = json.dumps({"command": list(args), "request_id": request_id})

        try:
            async with self._write_lock:
                self._writer.write(line.encode("utf-8") + b"\n")
                await self._writer.drain()
            reply = await asyncio.wait_for(future, timeout=self._timeout)
        except TimeoutError:
            log.debug("mpv_ipc_timeout", command=args[0] if args else None)
            raise
        except (ConnectionError, OSError) as exc:
            raise ConnectionError(f"mpv ipc write failed: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)

        error = reply.get("error", "success")
        if error != "success":
            raise MpvIpcError(args, str(error))
        return reply.get("data")

    async def get_property(self, name: str) -> Any:
        """Read property *name*; ``None`` while mpv reports it unavailable."""
        try:
            return await self.command("get_property", name)
        except MpvIpcError as exc:
            if exc.error == "property unavailable":
                return None
            raise

    async def set_property(self, name: str, value: Any) -> None:
        await self.command("set_property", name, value)

    async def aclose(self) -> None:
        if self._shut:
            return
        self._shut = True
        self._closed = True
        self._read_task.cancel()
        try:
            await self._read_task
        except asyncio.CancelledError:
            if not self._read_task.cancelled():
                raise
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass
        log.debug("mpv_ipc_closed")

    # ------------------------------------------------------------------
    # Reader
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    log.debug("mpv_ipc_eof")
                    break
                self._dispatch(line)
        except (ConnectionError, OSError) as exc:
            log.debug("mpv_ipc_read_error", error=str(exc))
        finally:
            self._closed = True
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError("mpv ipc channel closed"))
            self._pending.clear()

    def _dispatch(self, line: bytes) -> None:
        try:
            message = json.loads(line)
        except ValueError:
            log.debug("mpv_ipc_bad_line", line=line[:200])
            return
        if not isinstance(message, dict):
            return

        if "event" in message:
            if self.on_event is not None:
                self.on_event(message)
            return

        future = self._pending.get(message.get("request_id"))
        if future is not None and not future.done():
            future.set_result(message)
