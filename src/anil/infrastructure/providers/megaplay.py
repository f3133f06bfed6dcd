"""Megaplay provider: embed page id lookup plus ``getSources`` JSON.

Megaplay has no search; the episode id at the source must be given as
``EpisodeRef.provider_slug``. Each variant yields one adaptive HLS
candidate.
"""

from __future__ import annotations

import asyncio
import re

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

from .httpx_base import HttpxProviderBase

BASE_URL = "https://megaplay.buzz"

_DATA_ID_RE = re.compile(r'data-id="(\d+)"')


class _Track(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    file: str
    label: str = ""
    kind: str = ""


class _Sources(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    file: str


class _SourcesResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sources: _Sources
    tracks: list[_Track] = Field(default_factory=list)


def embed_url(slug: str, variant: TranslationType) -> str:
    return f"{BASE_URL}/stream/s-2/{slug}/{variant.value}"


class MegaplayProvider(HttpxProviderBase):
    """Lists HLS candidates from megaplay embed pages."""

    name = "megaplay"

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
    ) -> None:
        super().__init__(http_client, timeout=timeout, user_agent=user_agent)
        self._variants = variants

    async def list_candidates(self, episode: EpisodeRef) -> list[StreamCandidate]:
        if not episode.provider_slug:
            raise ProviderNotFoundError(self.name, "episode id (slug) required")

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
                candidates.append(result)

        if candidates:
            return candidates
        for kind in (ProviderTransientError, ProviderFormatChangedError):
            for err in errors:
                if isinstance(err, kind):
                    raise err
        raise ProviderNotFoundError(
            self.name, f"{episode.display_name} not available"
        )

    async def _list_variant(
        self, episode: EpisodeRef, variant: TranslationType
    ) -> StreamCandidate:
        page_url = embed_url(episode.provider_slug or "", variant)
        resp = await self._fetch(page_url, context=f"embed:{variant.value}")

        match = _DATA_ID_RE.search(resp.text)
        if match is None:
            raise ProviderFormatChangedError(
                self.name, f"embed:{variant.value}: no data-id marker"
            )

        payload = await self._fetch_json(
            f"{BASE_URL}/stream/getSources",
            context=f"sources:{variant.value}",
            params={"id": match.group(1)},
            headers={"Referer": page_url, "X-Requested-With": "XMLHttpRequest"},
        )
        try:
            parsed = _SourcesResponse.model_validate(payload)
        except ValidationError as exc:
            raise ProviderFormatChangedError(
                self.name, f"sources:{variant.value}: bad shape"
            ) from exc
        if not parsed.sources.file:
            raise ProviderNotFoundError(
                self.name, f"sources:{variant.value}: empty file"
            )

        subtitles = tuple(
            t.file for t in parsed.tracks if t.kind in ("", "captions", "subtitles")
        )
        self._log.debug(
            "megaplay_sources",
            slug=episode.provider_slug,
            variant=variant.value,
            subtitles=len(subtitles),
        )
        return StreamCandidate(
            provider=self.name,
            url=parsed.sources.file,
            quality=StreamQuality.AUTO,
            translation=variant,
            mirror=self.name,
            headers=(("User-Agent", self._user_agent), ("Referer", page_url)),
            subtitles=subtitles,
            title=episode.display_name,
        )
