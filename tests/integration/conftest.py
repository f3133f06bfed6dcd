"""Shared fixtures for integration tests.

These tests use real infrastructure components (DiskcacheAdapter, the
mpv session controller against a fake mpv process, config files on disk).
"""

from __future__ import annotations

import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest
from fakes import FAKE_MPV_COMMAND

from anil.domain.entities import PlayerPolicy
from anil.infrastructure.cache.diskcache_adapter import DiskcacheAdapter


@pytest.fixture()
async def diskcache(tmp_path: Path) -> DiskcacheAdapter:
    """Real DiskcacheAdapter backed by tmp_path (auto-cleaned)."""
    adapter = DiskcacheAdapter(directory=tmp_path / "store", max_concurrent=5)
    async with adapter:
        yield adapter


@pytest.fixture()
def socket_dir() -> Iterator[str]:
    """Short temp dir for IPC sockets (tmp_path may exceed the path limit)."""
    directory = tempfile.mkdtemp(prefix="anil-it-")
    yield directory
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture()
def fake_player_policy(socket_dir: str) -> PlayerPolicy:
    """Player policy running the fake mpv with fast polling."""
    return PlayerPolicy(
        command=FAKE_MPV_COMMAND,
        ipc_connect_timeout=3.0,
        ipc_request_timeout=0.3,
        poll_interval=0.05,
        max_stale_polls=2,
        terminate_timeout=2.0,
        load_timeout=3.0,
        socket_dir=socket_dir,
    )
