"""Per-provider circuit breaker to skip sources that keep failing.

After ``failure_threshold`` consecutive failed resolutions the breaker
opens and the provider is skipped for ``cooldown_seconds``. When the
cooldown has passed one trial resolution is let through (half-open);
success closes the breaker, failure opens it again.
"""

from __future__ import annotations

import time
from enum import Enum

import structlog

log = structlog.get_logger(__name__)


class _State(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class ProviderCircuitBreaker:
    """Track consecutive provider failures and gate calls accordingly.

    Not thread-safe; safe within a single asyncio event loop.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 3,
        cooldown_seconds: float = 300.0,
    ) -> None:
        self._threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._failures: dict[str, int] = {}
        self._states: dict[str, _State] = {}
        self._opened_at: dict[str, float] = {}

    def allow(self, provider: str) -> bool:
        """Return ``True`` if *provider* may be called now."""
        state = self._states.get(provider, _State.CLOSED)
        if state is _State.OPEN:
            elapsed = time.monotonic() - self._opened_at.get(provider, 0.0)
            if elapsed < self._cooldown:
                return False
            self._states[provider] = _State.HALF_OPEN
            log.info("provider_breaker_half_open", provider=provider)
        return True

    def record_success(self, provider: str) -> None:
        self._failures.pop(provider, None)
        self._states.pop(provider, None)
        self._opened_at.pop(provider, None)

    def record_failure(self, provider: str) -> None:
        state = self._states.get(provider, _State.CLOSED)
        if state is _State.HALF_OPEN:
            self._open(provider)
            return

        count = self._failures.get(provider, 0) + 1
        self._failures[provider] = count
        if count >= self._threshold:
            self._open(provider)

    def state(self, provider: str) -> str:
        return self._states.get(provider, _State.CLOSED).value

    def _open(self, provider: str) -> None:
        self._states[provider] = _State.OPEN
        self._opened_at[provider] = time.monotonic()
        log.warning(
            "provider_breaker_open",
            provider=provider,
            failures=self._failures.get(provider, 0),
            cooldown=self._cooldown,
        )
