"""Test doubles shared across the suite.

Importable as ``fakes`` because the root conftest puts ``tests/`` on
``sys.path``.
"""

from __future__ import annotations

import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from anil.domain.entities import (
    EpisodeRef,
    StreamCandidate,
    StreamQuality,
    TranslationType,
    WatchProgress,
)
from anil.domain.errors import PersistenceReadFailed, PersistenceWriteFailed

FAKE_MPV = Path(__file__).with_name("fake_mpv.py")

# Player command running the fake mpv with the current interpreter.
FAKE_MPV_COMMAND: tuple[str, ...] = (sys.executable, str(FAKE_MPV))


def make_candidate(
    provider: str = "allanime",
    *,
    quality: StreamQuality = StreamQuality.Q1080,
    translation: TranslationType = TranslationType.SUB,
    mirror: str = "S-mp4",
    url: str | None = None,
) -> StreamCandidate:
    return StreamCandidate(
        provider=provider,
        url=url or f"https://cdn.example/{provider}/{mirror}/{quality.label}.m3u8",
        quality=quality,
        translation=translation,
        mirror=mirror,
    )


def names(candidates: Sequence[StreamCandidate]) -> list[str]:
    return [f"{c.provider}:{c.mirror}:{c.quality.label}" for c in candidates]


class FakeProvider:
    """Scripted ProviderPort: each call pops the next response.

    A response is either a list of candidates or an exception to raise.
    The last response repeats once the script is exhausted.
    """

    def __init__(self, name: str, *responses: Any) -> None:
        self.name = name
        self._responses = list(responses) or [[]]
        self.calls = 0

    async def list_candidates(self, episode: EpisodeRef) -> list[StreamCandidate]:
        index = min(self.calls, len(self._responses) - 1)
        self.calls += 1
        response = self._responses[index]
        if isinstance(response, BaseException):
            raise response
        return list(response)


def providers_by_name(*providers: FakeProvider) -> dict[str, FakeProvider]:
    return {p.name: p for p in providers}


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class InMemoryWatchStore:
    """WatchProgressStorePort kept in a dict.

    ``fail_reads`` and ``fail_writes`` simulate disk errors.
    """

    def __init__(self) -> None:
        self.records: dict[str, WatchProgress] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.put_calls = 0
        self.flush_calls = 0

    async def get(self, episode: EpisodeRef) -> WatchProgress | None:
        if self.fail_reads:
            raise PersistenceReadFailed(episode.key, "disk I/O error")
        return self.records.get(episode.key)

    async def put(self, progress: WatchProgress) -> None:
        self.put_calls += 1
        if self.fail_writes:
            raise PersistenceWriteFailed([progress.episode.key], "disk full")
        self.records[progress.episode.key] = progress

    async def flush(self) -> None:
        self.flush_calls += 1

    async def list_all(self) -> list[WatchProgress]:
        return list(self.records.values())
