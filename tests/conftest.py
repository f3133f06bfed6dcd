"""Shared test fixtures for the anil test suite."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fakes import InMemoryWatchStore, RecordingSleep

from anil.domain.entities import EpisodeRef, ResolutionPolicy

# ---------------------------------------------------------------------------
# Domain entity fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def episode() -> EpisodeRef:
    """Episode 3 of a title with a search name."""
    return EpisodeRef(title_id="frieren", episode=3, title="Sousou no Frieren")


@pytest.fixture()
def fast_policy() -> ResolutionPolicy:
    """Resolution policy with two retries and tiny backoff."""
    return ResolutionPolicy(max_retries=2, backoff_base=0.01, max_backoff=0.05)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def memory_store() -> InMemoryWatchStore:
    return InMemoryWatchStore()


# ---------------------------------------------------------------------------
# Mock port fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_cache() -> AsyncMock:
    """Mock CachePort."""
    cache = AsyncMock()
    cache.get = AsyncMock(return_value=None)
    cache.set = AsyncMock()
    cache.sync = AsyncMock()
    cache.aclose = AsyncMock()
    return cache
