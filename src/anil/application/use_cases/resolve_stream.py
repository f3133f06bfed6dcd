"""Stream resolution use case.

EpisodeRef -> parallel provider listing (with per-provider retries)
-> merge -> rank -> ResolutionResult.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

import structlog

from anil.domain.entities.stream import (
    EpisodeRef,
    ResolutionPolicy,
    ResolutionRequest,
    ResolutionResult,
    StreamCandidate,
    StreamQuality,
    TranslationType,
)
from anil.domain.errors import (
    AllProvidersExhausted,
    ProviderError,
    ProviderFormatChangedError,
    ProviderNotFoundError,
    ProviderTransientError,
)
from anil.domain.ports.provider import ProviderPort

log = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Protocols: what this use case needs from its collaborators.
# ---------------------------------------------------------------------------


class _CandidateSorter(Protocol):
    def sort(
        self,
        candidates: Sequence[StreamCandidate],
        *,
        quality: StreamQuality,
        translation: TranslationType,
        provider_order: Sequence[str],
    ) -> list[StreamCandidate]: ...


class _CircuitBreaker(Protocol):
    def allow(self, provider: str) -> bool: ...

    def record_success(self, provider: str) -> None: ...

    def record_failure(self, provider: str) -> None: ...


_SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class _ProviderOutcome:
    provider: str
    candidates: list[StreamCandidate]
    failure: str | None = None


class ResolutionOrchestrator:
    """Turns a ResolutionRequest into a chosen candidate or a typed failure.

    Providers are listed concurrently; a single provider's retries are
    sequential with exponential backoff. Candidates from every provider
    that succeeded are merged in request order before ranking.
    """

    def __init__(
        self,
        *,
        providers: Mapping[str, ProviderPort],
        sorter: _CandidateSorter,
        policy: ResolutionPolicy,
        breaker: _CircuitBreaker | None = None,
        sleep: _SleepFn = asyncio.sleep,
    ) -> None:
        self._providers = dict(providers)
        self._sorter = sorter
        self._policy = policy
        self._breaker = breaker
        self._sleep = sleep

    @property
    def provider_names(self) -> list[str]:
        return list(self._providers)

    async def resolve(self, request: ResolutionRequest) -> ResolutionResult:
        """Resolve *request*. Cancelling the caller cancels every provider call."""
        episode = request.episode
        log.info(
            "resolution_started",
            episode=episode.key,
            providers=list(request.providers),
            quality=request.quality.label,
            translation=request.translation.value,
        )

        outcomes: list[_ProviderOutcome] = await asyncio.gather(
            *(self._list_from(name, episode) for name in request.providers)
        )

        merged: list[StreamCandidate] = []
        failures: dict[str, str] = {}
        for outcome in outcomes:
            if outcome.failure is not None:
                failures[outcome.provider] = outcome.failure
            merged.extend(outcome.candidates)

        if not merged:
            error = AllProvidersExhausted(failures)
            log.warning(
                "resolution_exhausted", episode=episode.key, failures=failures
            )
            return ResolutionResult(request=request, error=error, failures=failures)

        ranked = self._sorter.sort(
            merged,
            quality=request.quality,
            translation=request.translation,
            provider_order=request.providers,
        )
        chosen = ranked[0]
        log.info(
            "resolution_succeeded",
            episode=episode.key,
            provider=chosen.provider,
            mirror=chosen.mirror,
            quality=chosen.quality.label,
            translation=chosen.translation.value,
            candidates=len(ranked),
        )
        return ResolutionResult(
            request=request,
            chosen=chosen,
            ranked=tuple(ranked),
            failures=failures,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _list_from(self, name: str, episode: EpisodeRef) -> _ProviderOutcome:
        provider = self._providers.get(name)
        if provider is None:
            log.warning("provider_unknown", provider=name)
            return _ProviderOutcome(name, [], "not_found: provider not configured")

        if self._breaker is not None and not self._breaker.allow(name):
            log.info("provider_skipped_breaker_open", provider=name)
            return _ProviderOutcome(name, [], "transient: circuit open")

        attempts = 1 + max(self._policy.max_retries, 0)
        last_reason = ""
        for attempt in range(attempts):
            try:
                candidates = await asyncio.wait_for(
                    provider.list_candidates(episode),
                    timeout=self._policy.call_timeout,
                )
            except (ProviderNotFoundError, ProviderFormatChangedError) as exc:
                kind = (
                    "not_found"
                    if isinstance(exc, ProviderNotFoundError)
                    else "format_changed"
                )
                log.info(
                    "provider_failed", provider=name, kind=kind, reason=exc.reason
                )
                if kind == "format_changed" and self._breaker is not None:
                    self._breaker.record_failure(name)
                return _ProviderOutcome(name, [], f"{kind}: {exc.reason}")
            except ProviderTransientError as exc:
                last_reason = exc.reason
            except TimeoutError:
                last_reason = f"timed out after {self._policy.call_timeout}s"
            except ProviderError as exc:
                last_reason = exc.reason
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                # Unknown adapter failures are treated as transient.
                log.warning(
                    "provider_unexpected_error",
                    provider=name,
                    error=repr(exc),
                    exc_info=True,
                )
                last_reason = repr(exc)
            else:
                if self._breaker is not None:
                    self._breaker.record_success(name)
                if not candidates:
                    log.info("provider_empty", provider=name)
                    return _ProviderOutcome(name, [], "not_found: no candidates")
                log.debug(
                    "provider_listed",
                    provider=name,
                    candidates=len(candidates),
                    attempt=attempt + 1,
                )
                return _ProviderOutcome(name, list(candidates))

            if attempt + 1 < attempts:
                delay = self._backoff(attempt)
                log.info(
                    "provider_transient_retry",
                    provider=name,
                    attempt=attempt + 1,
                    delay=round(delay, 2),
                    reason=last_reason,
                )
                await self._sleep(delay)

        if self._breaker is not None:
            self._breaker.record_failure(name)
        log.warning(
            "provider_transient_exhausted",
            provider=name,
            attempts=attempts,
            reason=last_reason,
        )
        return _ProviderOutcome(
            name, [], f"transient: {last_reason} ({attempts} attempts)"
        )

    def _backoff(self, attempt: int) -> float:
        """Exponential backoff with a little jitter, capped at max_backoff."""
        base = self._policy.backoff_base
        delay = base * (2**attempt)
        jitter = random.uniform(0, base / 2) if base > 0 else 0.0  # noqa: S311
        return min(delay + jitter, self._policy.max_backoff)
