"""Tests for ResolutionOrchestrator: provider fallback, retries and ranking."""

from __future__ import annotations

import asyncio

import pytest
from fakes import FakeProvider, RecordingSleep, make_candidate, providers_by_name

from anil.application.use_cases.resolve_stream import ResolutionOrchestrator
from anil.domain.entities import (
    EpisodeRef,
    ResolutionPolicy,
    ResolutionRequest,
    StreamQuality,
    TranslationType,
)
from anil.domain.errors import (
    AllProvidersExhausted,
    ProviderFormatChangedError,
    ProviderNotFoundError,
    ProviderTransientError,
)
from anil.infrastructure.circuit_breaker import ProviderCircuitBreaker
from anil.infrastructure.resolution import CandidateSorter


def _orchestrator(
    *providers: FakeProvider,
    policy: ResolutionPolicy,
    sleep: RecordingSleep | None = None,
    breaker: ProviderCircuitBreaker | None = None,
) -> ResolutionOrchestrator:
    return ResolutionOrchestrator(
        providers=providers_by_name(*providers),
        sorter=CandidateSorter(policy),
        policy=policy,
        breaker=breaker,
        sleep=sleep or RecordingSleep(),
    )


def _request(episode: EpisodeRef, *providers: str, **kwargs) -> ResolutionRequest:
    return ResolutionRequest(episode=episode, providers=providers, **kwargs)


class _HangingProvider:
    """Provider whose listing never finishes until cancelled."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.started = asyncio.Event()
        self.cancelled = False

    async def list_candidates(self, episode: EpisodeRef):
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return []


# ---------------------------------------------------------------------------
# Success and fallback
# ---------------------------------------------------------------------------


class TestResolveSuccess:
    async def test_picks_best_candidate(
        self, episode: EpisodeRef, fast_policy: ResolutionPolicy
    ) -> None:
        provider = FakeProvider(
            "allanime",
            [
                make_candidate(quality=StreamQuality.Q480, mirror="low"),
                make_candidate(quality=StreamQuality.Q1080, mirror="high"),
            ],
        )
        orch = _orchestrator(provider, policy=fast_policy)

        result = await orch.resolve(_request(episode, "allanime"))

        assert result.ok
        assert result.chosen is not None
        assert result.chosen.mirror == "high"
        assert [c.mirror for c in result.alternates] == ["low"]
        assert result.failures == {}

    async def test_falls_back_when_first_provider_keeps_failing(
        self,
        episode: EpisodeRef,
        fast_policy: ResolutionPolicy,
        recording_sleep: RecordingSleep,
    ) -> None:
        a = FakeProvider("allanime", ProviderTransientError("allanime", "HTTP 503"))
        b = FakeProvider("megaplay", [make_candidate("megaplay", mirror="m")])
        orch = _orchestrator(a, b, policy=fast_policy, sleep=recording_sleep)

        result = await orch.resolve(_request(episode, "allanime", "megaplay"))

        assert result.chosen is not None
        assert result.chosen.provider == "megaplay"
        assert a.calls == 3
        assert b.calls == 1
        assert result.failures["allanime"].startswith("transient: HTTP 503")

    async def test_merges_candidates_from_all_providers(
        self, episode: EpisodeRef, fast_policy: ResolutionPolicy
    ) -> None:
        a = FakeProvider(
            "allanime", [make_candidate(quality=StreamQuality.Q720, mirror="a")]
        )
        b = FakeProvider(
            "megaplay",
            [make_candidate("megaplay", quality=StreamQuality.Q1080, mirror="m")],
        )
        orch = _orchestrator(a, b, policy=fast_policy)

        result = await orch.resolve(_request(episode, "allanime", "megaplay"))

        assert [c.provider for c in result.ranked] == ["megaplay", "allanime"]

    async def test_resolution_is_repeatable(
        self, episode: EpisodeRef, fast_policy: ResolutionPolicy
    ) -> None:
        provider = FakeProvider(
            "allanime",
            [
                make_candidate(quality=StreamQuality.Q720, mirror="a"),
                make_candidate(quality=StreamQuality.Q720, mirror="b"),
                make_candidate(
                    quality=StreamQuality.Q1080,
                    translation=TranslationType.DUB,
                    mirror="c",
                ),
            ],
        )
        orch = _orchestrator(provider, policy=fast_policy)
        request = _request(episode, "allanime", quality=StreamQuality.Q720)

        first = await orch.resolve(request)
        second = await orch.resolve(request)

        assert first.ranked == second.ranked
        assert first.chosen == second.chosen


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


class TestRetries:
    async def test_transient_then_success(
        self,
        episode: EpisodeRef,
        fast_policy: ResolutionPolicy,
        recording_sleep: RecordingSleep,
    ) -> None:
        provider = FakeProvider(
            "allanime",
            ProviderTransientError("allanime", "timeout"),
            [make_candidate()],
        )
        orch = _orchestrator(provider, policy=fast_policy, sleep=recording_sleep)

        result = await orch.resolve(_request(episode, "allanime"))

        assert result.ok
        assert provider.calls == 2
        assert len(recording_sleep.delays) == 1

    async def test_backoff_is_bounded(
        self, episode: EpisodeRef, recording_sleep: RecordingSleep
    ) -> None:
        policy = ResolutionPolicy(max_retries=4, backoff_base=1.0, max_backoff=3.0)
        provider = FakeProvider("allanime", ProviderTransientError("allanime", "x"))
        orch = _orchestrator(provider, policy=policy, sleep=recording_sleep)

        await orch.resolve(_request(episode, "allanime"))

        assert provider.calls == 5
        assert len(recording_sleep.delays) == 4
        assert recording_sleep.delays[0] >= 1.0
        assert all(d <= 3.0 for d in recording_sleep.delays)

    @pytest.mark.parametrize(
        ("error", "prefix"),
        [
            (ProviderNotFoundError("allanime", "no such show"), "not_found"),
            (ProviderFormatChangedError("allanime", "bad json"), "format_changed"),
        ],
    )
    async def test_permanent_errors_are_not_retried(
        self,
        episode: EpisodeRef,
        fast_policy: ResolutionPolicy,
        recording_sleep: RecordingSleep,
        error: Exception,
        prefix: str,
    ) -> None:
        provider = FakeProvider("allanime", error)
        orch = _orchestrator(provider, policy=fast_policy, sleep=recording_sleep)

        result = await orch.resolve(_request(episode, "allanime"))

        assert provider.calls == 1
        assert recording_sleep.delays == []
        assert result.failures["allanime"].startswith(prefix)

    async def test_unexpected_exception_is_retried(
        self, episode: EpisodeRef, fast_policy: ResolutionPolicy
    ) -> None:
        provider = FakeProvider("allanime", RuntimeError("boom"), [make_candidate()])
        orch = _orchestrator(provider, policy=fast_policy)

        result = await orch.resolve(_request(episode, "allanime"))

        assert result.ok
        assert provider.calls == 2

    async def test_call_timeout_counts_as_transient(
        self, episode: EpisodeRef
    ) -> None:
        policy = ResolutionPolicy(max_retries=0, call_timeout=0.05)
        provider = _HangingProvider("allanime")
        orch = ResolutionOrchestrator(
            providers={"allanime": provider},
            sorter=CandidateSorter(policy),
            policy=policy,
        )

        result = await orch.resolve(_request(episode, "allanime"))

        assert not result.ok
        assert "timed out" in result.failures["allanime"]


# ---------------------------------------------------------------------------
# Exhaustion
# ---------------------------------------------------------------------------


class TestExhaustion:
    async def test_all_providers_fail(
        self, episode: EpisodeRef, fast_policy: ResolutionPolicy
    ) -> None:
        a = FakeProvider("allanime", ProviderNotFoundError("allanime", "no show"))
        b = FakeProvider("megaplay", ProviderTransientError("megaplay", "HTTP 502"))
        orch = _orchestrator(a, b, policy=fast_policy)

        result = await orch.resolve(_request(episode, "allanime", "megaplay"))

        assert not result.ok
        assert isinstance(result.error, AllProvidersExhausted)
        assert set(result.error.failures) == {"allanime", "megaplay"}
        assert result.ranked == ()

    async def test_empty_listing_is_not_found(
        self, episode: EpisodeRef, fast_policy: ResolutionPolicy
    ) -> None:
        orch = _orchestrator(FakeProvider("allanime", []), policy=fast_policy)

        result = await orch.resolve(_request(episode, "allanime"))

        assert result.failures == {"allanime": "not_found: no candidates"}

    async def test_unknown_provider_is_reported(
        self, episode: EpisodeRef, fast_policy: ResolutionPolicy
    ) -> None:
        orch = _orchestrator(FakeProvider("allanime", []), policy=fast_policy)

        result = await orch.resolve(_request(episode, "nyaa"))

        assert "not configured" in result.failures["nyaa"]


# ---------------------------------------------------------------------------
# Circuit breaker integration
# ---------------------------------------------------------------------------


class TestBreaker:
    async def test_open_breaker_skips_provider(
        self, episode: EpisodeRef, fast_policy: ResolutionPolicy
    ) -> None:
        breaker = ProviderCircuitBreaker(failure_threshold=1, cooldown_seconds=60)
        breaker.record_failure("allanime")
        a = FakeProvider("allanime", [make_candidate()])
        b = FakeProvider("megaplay", [make_candidate("megaplay")])
        orch = _orchestrator(a, b, policy=fast_policy, breaker=breaker)

        result = await orch.resolve(_request(episode, "allanime", "megaplay"))

        assert a.calls == 0
        assert result.chosen is not None
        assert result.chosen.provider == "megaplay"
        assert result.failures["allanime"] == "transient: circuit open"

    async def test_exhausted_retries_count_as_failure(
        self, episode: EpisodeRef, fast_policy: ResolutionPolicy
    ) -> None:
        breaker = ProviderCircuitBreaker(failure_threshold=1)
        provider = FakeProvider("allanime", ProviderTransientError("allanime", "x"))
        orch = _orchestrator(provider, policy=fast_policy, breaker=breaker)

        await orch.resolve(_request(episode, "allanime"))

        assert breaker.state("allanime") == "open"

    async def test_not_found_does_not_trip_breaker(
        self, episode: EpisodeRef, fast_policy: ResolutionPolicy
    ) -> None:
        breaker = ProviderCircuitBreaker(failure_threshold=1)
        provider = FakeProvider("allanime", ProviderNotFoundError("allanime", "x"))
        orch = _orchestrator(provider, policy=fast_policy, breaker=breaker)

        await orch.resolve(_request(episode, "allanime"))

        assert breaker.state("allanime") == "closed"


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    async def test_cancel_propagates_to_provider_calls(
        self, episode: EpisodeRef, fast_policy: ResolutionPolicy
    ) -> None:
        a, b = _HangingProvider("allanime"), _HangingProvider("megaplay")
        orch = ResolutionOrchestrator(
            providers={"allanime": a, "megaplay": b},
            sorter=CandidateSorter(fast_policy),
            policy=fast_policy,
        )

        task = asyncio.create_task(
            orch.resolve(_request(episode, "allanime", "megaplay"))
        )
        await asyncio.wait_for(a.started.wait(), timeout=1)
        await asyncio.wait_for(b.started.wait(), timeout=1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert a.cancelled
        assert b.cancelled
