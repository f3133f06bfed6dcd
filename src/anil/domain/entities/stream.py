"""Domain entities for stream resolution.

Pure value objects: no framework dependencies, no I/O.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum

from anil.domain.errors import ResolutionError


class StreamQuality(IntEnum):
    """Ordered quality tiers (higher value = better quality).

    ``AUTO`` is an adaptive playlist whose tier is not known up front.
    It sorts above every fixed tier but is ranked separately.
    """

    Q360 = 360
    Q480 = 480
    Q720 = 720
    Q1080 = 1080
    AUTO = 9999

    @property
    def is_fixed(self) -> bool:
        return self is not StreamQuality.AUTO

    @property
    def label(self) -> str:
        return "auto" if self is StreamQuality.AUTO else f"{self.value}p"

    @classmethod
    def fixed_tiers(cls) -> list[StreamQuality]:
        """Fixed tiers in ascending order."""
        return [q for q in cls if q.is_fixed]

    @classmethod
    def parse(cls, raw: str | int | None) -> StreamQuality:
        """Parse a provider label such as ``"1080p"``, ``"720"`` or ``"hls"``.

        Heights between tiers snap down to the nearest known tier and
        heights below the lowest tier count as that tier. Anything
        unparseable is treated as ``AUTO``.
        """
        if raw is None:
            return cls.AUTO
        if isinstance(raw, cls):
            return raw
        text = str(raw).strip().lower()
        if text in ("", "auto", "hls", "adaptive", "default", "best"):
            return cls.AUTO
        match = _HEIGHT_RE.search(text)
        if match is None:
            return cls.AUTO
        height = int(match.group(1))
        tiers = cls.fixed_tiers()
        if height < tiers[0].value:
            return tiers[0]
        best = tiers[0]
        for tier in tiers:
            if tier.value <= height:
                best = tier
        return best


_HEIGHT_RE = re.compile(r"(\d{3,4})\s*p?")


class TranslationType(str, Enum):
    """Audio/subtitle variant of a stream."""

    SUB = "sub"
    DUB = "dub"


@dataclass(frozen=True)
class EpisodeRef:
    """Identifies one episode of a title.

    ``title_id`` is the catalog identifier (e.g. an AniList media id),
    ``title`` the human name used for provider search, and
    ``provider_slug`` an optional provider-specific id that skips search.
    """

    title_id: str
    episode: int
    title: str = ""
    provider_slug: str | None = None

    def __post_init__(self) -> None:
        if not self.title_id:
            raise ValueError("title_id must not be empty")
        if self.episode < 1:
            raise ValueError(f"episode must be >= 1, got {self.episode}")

    @property
    def key(self) -> str:
        """Stable storage key for this episode."""
        return f"{self.title_id}:{self.episode}"

    @property
    def display_name(self) -> str:
        name = self.title or self.title_id
        return f"{name} - Episode {self.episode}"


@dataclass(frozen=True)
class StreamCandidate:
    """One concrete, playable stream for an episode."""

    provider: str
    url: str
    quality: StreamQuality = StreamQuality.AUTO
    translation: TranslationType = TranslationType.SUB
    mirror: str = ""
    expires_at: datetime | None = None
    headers: tuple[tuple[str, str], ...] = ()
    subtitles: tuple[str, ...] = ()
    title: str = ""

    @property
    def header_dict(self) -> dict[str, str]:
        return dict(self.headers)


@dataclass(frozen=True)
class ResolutionRequest:
    """A single play attempt: what to resolve and how to choose."""

    episode: EpisodeRef
    quality: StreamQuality = StreamQuality.Q1080
    translation: TranslationType = TranslationType.SUB
    providers: tuple[str, ...] = ("allanime",)

    def __post_init__(self) -> None:
        if not self.providers:
            raise ValueError("at least one provider is required")


@dataclass(frozen=True)
class ResolutionResult:
    """Outcome of resolving a ResolutionRequest.

    On success ``chosen`` is the top of ``ranked``; on failure ``error``
    is set and ``ranked`` is empty.
    """

    request: ResolutionRequest
    chosen: StreamCandidate | None = None
    ranked: tuple[StreamCandidate, ...] = ()
    error: ResolutionError | None = None
    failures: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if (self.chosen is None) == (self.error is None):
            raise ValueError("exactly one of chosen/error must be set")

    @property
    def ok(self) -> bool:
        return self.chosen is not None

    @property
    def alternates(self) -> tuple[StreamCandidate, ...]:
        """Ranked candidates after the chosen one, best first."""
        return self.ranked[1:]


@dataclass(frozen=True)
class ResolutionPolicy:
    """Immutable resolution settings handed to the orchestrator."""

    max_retries: int = 2
    backoff_base: float = 0.5
    max_backoff: float = 8.0
    prefer_lower_on_tie: bool = True
    call_timeout: float = 60.0
