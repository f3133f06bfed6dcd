"""AllAnime provider: GraphQL show/episode lookup plus clock.json mirrors.

Flow for one episode:
    1. Show id: ``EpisodeRef.provider_slug`` or a fuzzy-matched ``shows`` search.
    2. ``episode(showId, translationType, episodeString)`` → ``sourceUrls``.
    3. Each known source name (in priority order) is decoded; internal
       ``clock`` paths are fetched as ``clock.json`` and every link there
       becomes one candidate. Decoded ``http`` URLs are direct streams.

Sub and dub are listed concurrently; a missing variant is skipped.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from anil.domain.entities.stream import (
    EpisodeRef,
    StreamCandidate,
    StreamQuality,
    TranslationType,
)
from anil.domain.errors import (
    ProviderError,
    ProviderFormatChangedError,
    ProviderNotFoundError,
    ProviderTransientError,
)

from .constants import DEFAULT_SEARCH_MIN_SCORE
from .httpx_base import HttpxProviderBase
from .title_match import best_match

API_ENDPOINT = "https://api.allanime.day/api"
API_REFERER = "https://allanime.to/"
CLOCK_BASE = "https://allanime.day"
STREAM_REFERER = "https://allanime.day/"

# Mirrors in preference order; other source names are ignored.
SOURCE_PRIORITY: tuple[str, ...] = (
    "S-mp4",
    "Luf-mp4",
    "Luf-Mp4",
    "Sak",
    "Default",
    "Yt-mp4",
)

_XOR_KEY = 56

_SEARCH_GQL = """
query($search: SearchInput, $limit: Int, $page: Int,
      $translationType: VaildTranslationTypeEnumType,
      $countryOrigin: VaildCountryOriginEnumType) {
  shows(search: $search, limit: $limit, page: $page,
        translationType: $translationType, countryOrigin: $countryOrigin) {
    edges { _id name availableEpisodes }
  }
}
"""

_EPISODE_GQL = """
query($showId: String!, $translationType: VaildTranslationTypeEnumType!,
      $episodeString: String!) {
  episode(showId: $showId, translationType: $translationType,
          episodeString: $episodeString) {
    sourceUrls
  }
}
"""


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _AvailableEpisodes(_Wire):
    sub: int = 0
    dub: int = 0
    raw: int = 0


class _ShowEdge(_Wire):
    id: str = Field(alias="_id")
    name: str
    available_episodes: _AvailableEpisodes = Field(
        default_factory=_AvailableEpisodes, alias="availableEpisodes"
    )


class _Shows(_Wire):
    edges: list[_ShowEdge] = Field(default_factory=list)


class _SearchData(_Wire):
    shows: _Shows


class _SourceUrl(_Wire):
    source_name: str = Field(alias="sourceName")
    source_url: str = Field(alias="sourceUrl")


class _Episode(_Wire):
    source_urls: list[_SourceUrl] = Field(default_factory=list, alias="sourceUrls")


class _EpisodeData(_Wire):
    episode: _Episode | None = None


class _ClockLink(_Wire):
    link: str
    resolution: str = Field(default="", alias="resolutionStr")


class _ClockResponse(_Wire):
    links: list[_ClockLink] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def decode_source_url(encoded: str) -> str:
    """Decode an obfuscated ``--<hex>`` source URL (each byte XOR 56).

    Raises ``ValueError`` for malformed hex.
    """
    if encoded.startswith("--"):
        encoded = encoded[2:]
    raw = bytes.fromhex(encoded)
    return "".join(chr(b ^ _XOR_KEY) for b in raw)


def clock_json_url(path: str) -> str:
    """Turn a decoded internal ``/apivtwo/clock?...`` path into its JSON URL."""
    if not path.startswith("/"):
        path = f"/{path}"
    return CLOCK_BASE + path.replace("/clock", "/clock.json", 1)


def parse_expiry(url: str) -> datetime | None:
    """Read an ``expires``/``e`` unix timestamp query parameter, if any."""
    try:
        query = parse_qs(urlparse(url).query)
    except ValueError:
        return None
    for key in ("expires", "e"):
        values = query.get(key)
        if values and values[0].isdigit():
            return datetime.fromtimestamp(int(values[0]), tz=timezone.utc)
    return None


class AllAnimeProvider(HttpxProviderBase):
    """Lists stream candidates from AllAnime's GraphQL API."""

    name = "allanime"

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float | None = None,
        user_agent: str | None = None,
        variants: tuple[TranslationType, ...] = (
            TranslationType.SUB,
            TranslationType.DUB,
        ),
        search_min_score: float = DEFAULT_SEARCH_MIN_SCORE,
    ) -> None:
        super().__init__(http_client, timeout=timeout, user_agent=user_agent)
        self._variants = variants
        self._min_score = search_min_score
        self._show_cache: dict[tuple[str, str], _ShowEdge] = {}

    async def list_candidates(self, episode: EpisodeRef) -> list[StreamCandidate]:
        results = await asyncio.gather(
            *(self._list_variant(episode, v) for v in self._variants),
            return_exceptions=True,
        )

        candidates: list[StreamCandidate] = []
        errors: list[ProviderError] = []
        for result in results:
            if isinstance(result, ProviderError):
                errors.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                candidates.extend(result)

        if candidates:
            return candidates
        for kind in (ProviderTransientError, ProviderFormatChangedError):
            for err in errors:
                if isinstance(err, kind):
                    raise err
        raise ProviderNotFoundError(
            self.name, f"{episode.display_name} not available"
        )

    # ------------------------------------------------------------------
    # Per-variant listing
    # ------------------------------------------------------------------

    async def _list_variant(
        self, episode: EpisodeRef, variant: TranslationType
    ) -> list[StreamCandidate]:
        show_id = await self._show_id(episode, variant)
        sources = await self._episode_sources(show_id, episode.episode, variant)

        known = sorted(
            (s for s in sources if s.source_name in SOURCE_PRIORITY),
            key=lambda s: SOURCE_PRIORITY.index(s.source_name),
        )
        if not known:
            raise ProviderFormatChangedError(
                self.name,
                f"no known mirrors among {[s.source_name for s in sources]}",
            )

        results = await asyncio.gather(
            *(self._resolve_source(s, variant, episode) for s in known),
            return_exceptions=True,
        )

        candidates: list[StreamCandidate] = []
        transient = False
        for source, result in zip(known, results):
            if isinstance(result, ProviderError):
                transient = transient or result.retryable
                self._log.info(
                    "allanime_mirror_failed",
                    mirror=source.source_name,
                    reason=result.reason,
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                candidates.extend(result)

        if candidates:
            return candidates
        if transient:
            raise ProviderTransientError(self.name, "all mirrors failed transiently")
        raise ProviderFormatChangedError(self.name, "no mirror produced a stream")

    async def _show_id(self, episode: EpisodeRef, variant: TranslationType) -> str:
        if episode.provider_slug:
            return episode.provider_slug

        query = episode.title or episode.title_id
        cache_key = (query, variant.value)
        edge = self._show_cache.get(cache_key)
        if edge is None:
            edges = await self._search(query, variant)
            match = best_match(
                query,
                ((e.name, e) for e in edges),
                min_score=self._min_score,
            )
            if match is None:
                raise ProviderNotFoundError(self.name, f"no show matches {query!r}")
            edge, score = match
            self._log.info(
                "allanime_show_matched",
                query=query,
                show=edge.name,
                show_id=edge.id,
                score=round(score, 3),
            )
            self._show_cache[cache_key] = edge

        available = getattr(edge.available_episodes, variant.value)
        if available and episode.episode > available:
            raise ProviderNotFoundError(
                self.name,
                f"episode {episode.episode} > {available} available ({variant.value})",
            )
        return edge.id

    # ------------------------------------------------------------------
    # API calls
    # ------------------------------------------------------------------

    async def _graphql(self, gql: str, variables: dict, *, context: str) -> dict:
        payload = await self._fetch_json(
            API_ENDPOINT,
            context=context,
            params={"variables": json.dumps(variables), "query": gql},
            headers={"Referer": API_REFERER},
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            raise ProviderFormatChangedError(self.name, f"{context}: missing data")
        return payload["data"]

    async def _search(self, query: str, variant: TranslationType) -> list[_ShowEdge]:
        data = await self._graphql(
            _SEARCH_GQL,
            {
                "search": {"allowAdult": False, "allowUnknown": False, "query": query},
                "limit": 40,
                "page": 1,
                "translationType": variant.value,
                "countryOrigin": "ALL",
            },
            context="search",
        )
        try:
            return _SearchData.model_validate(data).shows.edges
        except ValidationError as exc:
            raise ProviderFormatChangedError(self.name, "search: bad shape") from exc

    async def _episode_sources(
        self, show_id: str, number: int, variant: TranslationType
    ) -> list[_SourceUrl]:
        data = await self._graphql(
            _EPISODE_GQL,
            {
                "showId": show_id,
                "translationType": variant.value,
                "episodeString": str(number),
            },
            context="episode",
        )
        try:
            parsed = _EpisodeData.model_validate(data)
        except ValidationError as exc:
            raise ProviderFormatChangedError(self.name, "episode: bad shape") from exc
        if parsed.episode is None:
            self._log.info(
                "allanime_episode_missing",
                show_id=show_id,
                episode=number,
                variant=variant.value,
            )
            raise ProviderNotFoundError(
                self.name, f"episode {number} ({variant.value}) not found"
            )
        return parsed.episode.source_urls

    async def _resolve_source(
        self,
        source: _SourceUrl,
        variant: TranslationType,
        episode: EpisodeRef,
    ) -> list[StreamCandidate]:
        try:
            decoded = (
                decode_source_url(source.source_url)
                if source.source_url.startswith("--")
                else source.source_url
            )
        except ValueError as exc:
            raise ProviderFormatChangedError(
                self.name, f"{source.source_name}: undecodable source url"
            ) from exc

        headers = (("User-Agent", self._user_agent), ("Referer", STREAM_REFERER))

        if decoded.startswith(("http://", "https://")):
            return [
                StreamCandidate(
                    provider=self.name,
                    url=decoded,
                    quality=StreamQuality.AUTO,
                    translation=variant,
                    mirror=source.source_name,
                    expires_at=parse_expiry(decoded),
                    headers=headers,
                    title=episode.display_name,
                )
            ]

        payload = await self._fetch_json(
            clock_json_url(decoded),
            context=f"clock:{source.source_name}",
            headers={"Referer": STREAM_REFERER},
        )
        try:
            clock = _ClockResponse.model_validate(payload)
        except ValidationError as exc:
            raise ProviderFormatChangedError(
                self.name, f"{source.source_name}: bad clock shape"
            ) from exc
        if not clock.links:
            raise ProviderFormatChangedError(
                self.name, f"{source.source_name}: no links"
            )

        return [
            StreamCandidate(
                provider=self.name,
                url=link.link,
                quality=StreamQuality.parse(link.resolution),
                translation=variant,
                mirror=source.source_name,
                expires_at=parse_expiry(link.link),
                headers=headers,
                title=episode.display_name,
            )
            for link in clock.links
        ]
