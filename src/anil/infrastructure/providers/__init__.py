"""Provider adapters and the factory that builds them by kind."""

from __future__ import annotations

from enum import Enum
from typing import assert_never

import httpx

from anil.domain.ports.provider import ProviderPort

from .allanime import AllAnimeProvider
from .constants import DEFAULT_SEARCH_MIN_SCORE
from .httpx_base import HttpxProviderBase
from .megaplay import MegaplayProvider


class ProviderKind(str, Enum):
    """Closed set of supported stream sources."""

    ALLANIME = "allanime"
    MEGAPLAY = "megaplay"


def create_provider(
    kind: ProviderKind | str,
    *,
    http_client: httpx.AsyncClient | None = None,
    timeout: float | None = None,
    user_agent: str | None = None,
    search_min_score: float = DEFAULT_SEARCH_MIN_SCORE,
) -> HttpxProviderBase:
    """Build the adapter for *kind*.

    Raises:
        ValueError: If *kind* is not a known provider id.
    """
    kind = ProviderKind(kind)
    match kind:
        case ProviderKind.ALLANIME:
            return AllAnimeProvider(
                http_client,
                timeout=timeout,
                user_agent=user_agent,
                search_min_score=search_min_score,
            )
        case ProviderKind.MEGAPLAY:
            return MegaplayProvider(
                http_client, timeout=timeout, user_agent=user_agent
            )
        case _:
            assert_never(kind)


__all__ = [
    "AllAnimeProvider",
    "HttpxProviderBase",
    "MegaplayProvider",
    "ProviderKind",
    "ProviderPort",
    "create_provider",
]
