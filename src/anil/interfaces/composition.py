"""Composition root: builds the object graph from a validated AppConfig."""

from __future__ import annotations

import re
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
import structlog
from unidecode import unidecode

from anil.application.use_cases.play_episode import PlayEpisodeUseCase
from anil.application.use_cases.resolve_stream import ResolutionOrchestrator
from anil.application.use_cases.track_watch import WatchStateTracker
from anil.domain.entities.playback import PlayerPolicy, TrackingPolicy
from anil.domain.entities.stream import (
    EpisodeRef,
    ResolutionPolicy,
    ResolutionRequest,
    StreamQuality,
    TranslationType,
)
from anil.domain.ports.provider import ProviderPort
from anil.infrastructure.cache import DiskcacheAdapter
from anil.infrastructure.circuit_breaker import ProviderCircuitBreaker
from anil.infrastructure.config.schema import AppConfig
from anil.infrastructure.persistence import CacheWatchProgressStore
from anil.infrastructure.player import MpvSessionController
from anil.infrastructure.providers import create_provider
from anil.infrastructure.providers.constants import DEFAULT_USER_AGENT
from anil.infrastructure.resolution import CandidateSorter

log = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Config -> frozen policies
# ---------------------------------------------------------------------------


def resolution_policy(config: AppConfig) -> ResolutionPolicy:
    p = config.providers
    return ResolutionPolicy(
        max_retries=p.max_retries,
        backoff_base=p.backoff_base_seconds,
        max_backoff=p.max_backoff_seconds,
        prefer_lower_on_tie=p.prefer_lower_on_tie,
        call_timeout=p.call_timeout_seconds,
    )


def tracking_policy(config: AppConfig) -> TrackingPolicy:
    return TrackingPolicy(completion_threshold=config.stream.completion_threshold)


def player_policy(config: AppConfig) -> PlayerPolicy:
    p = config.player
    return PlayerPolicy(
        command=tuple(p.command),
        extra_args=tuple(p.extra_args),
        ipc_connect_timeout=p.ipc_connect_timeout_seconds,
        ipc_request_timeout=p.ipc_request_timeout_seconds,
        poll_interval=p.poll_interval_seconds,
        max_stale_polls=p.max_stale_polls,
        load_timeout=p.load_timeout_seconds,
        terminate_timeout=p.terminate_timeout_seconds,
        next_episode_key=p.next_episode_key,
        previous_episode_key=p.previous_episode_key,
        socket_dir=str(p.socket_dir) if p.socket_dir is not None else None,
    )


def slugify_title(title: str) -> str:
    """Stable catalog id for a bare title: ``"Frieren: Beyond"`` -> ``frieren-beyond``."""
    slug = re.sub(r"[^a-z0-9]+", "-", unidecode(title).lower()).strip("-")
    return slug or "untitled"


def build_request(
    config: AppConfig,
    *,
    title: str,
    episode: int,
    title_id: str | None = None,
    slug: str | None = None,
    quality: StreamQuality | None = None,
    translation: TranslationType | None = None,
    providers: Sequence[str] | None = None,
) -> ResolutionRequest:
    """Fill every unset request field from configuration."""
    ref = EpisodeRef(
        title_id=title_id or slugify_title(title),
        episode=episode,
        title=title,
        provider_slug=slug,
    )
    return ResolutionRequest(
        episode=ref,
        quality=quality if quality is not None else config.stream.quality,
        translation=(
            translation
            if translation is not None
            else config.stream.translation_type
        ),
        providers=tuple(providers) if providers else tuple(config.providers.order),
    )


# ---------------------------------------------------------------------------
# Object graph
# ---------------------------------------------------------------------------


@dataclass
class Services:
    orchestrator: ResolutionOrchestrator
    tracker: WatchStateTracker
    store: CacheWatchProgressStore
    controller: MpvSessionController
    play: PlayEpisodeUseCase


def build_providers(
    config: AppConfig, http_client: httpx.AsyncClient
) -> dict[str, ProviderPort]:
    p = config.providers
    return {
        name: create_provider(
            name,
            http_client=http_client,
            timeout=p.timeout_seconds,
            user_agent=p.user_agent,
            search_min_score=p.search_min_score,
        )
        for name in p.order
    }


@asynccontextmanager
async def build_services(config: AppConfig) -> AsyncIterator[Services]:
    """Open shared resources (HTTP client, store) for one CLI run."""
    user_agent = config.providers.user_agent or DEFAULT_USER_AGENT
    async with (
        httpx.AsyncClient(
            timeout=config.providers.timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": user_agent},
        ) as http_client,
        DiskcacheAdapter(directory=config.storage_dir) as cache,
    ):
        p = config.providers
        orchestrator = ResolutionOrchestrator(
            providers=build_providers(config, http_client),
            sorter=CandidateSorter(resolution_policy(config)),
            policy=resolution_policy(config),
            breaker=ProviderCircuitBreaker(
                failure_threshold=p.breaker_failure_threshold,
                cooldown_seconds=p.breaker_cooldown_seconds,
            ),
        )
        store = CacheWatchProgressStore(cache)
        tracker = WatchStateTracker(store, tracking_policy(config))
        controller = MpvSessionController(player_policy(config))
        log.debug(
            "services_built",
            providers=orchestrator.provider_names,
            storage=str(config.storage_dir),
        )
        yield Services(
            orchestrator=orchestrator,
            tracker=tracker,
            store=store,
            controller=controller,
            play=PlayEpisodeUseCase(
                orchestrator=orchestrator,
                controller=controller,
                tracker=tracker,
                resume_min_fraction=config.stream.resume_min_fraction,
            ),
        )
