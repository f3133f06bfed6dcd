"""Port for listing playable stream candidates at one source provider."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from anil.domain.entities.stream import EpisodeRef, StreamCandidate


@runtime_checkable
class ProviderPort(Protocol):
    """Lists stream candidates for an episode at a single source.

    Implementations own their network retrieval and parsing, and convert
    every failure into a ``ProviderError`` subclass (not found, transient,
    format changed). Every network call must carry a timeout.
    """

    @property
    def name(self) -> str:
        """Provider id (e.g. 'allanime')."""
        ...

    async def list_candidates(self, episode: EpisodeRef) -> list[StreamCandidate]:
        """Return candidates in the provider's own preference order."""
        ...
