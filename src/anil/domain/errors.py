"""Error taxonomy for resolution, playback and persistence.

Every failure the core can produce is one of these types, so callers
can act on or display it without inspecting library exceptions.
"""

from __future__ import annotations

from enum import Enum


class AnilError(Exception):
    """Base class for all domain errors."""


class ConfigError(AnilError):
    """Raised when configuration is invalid or cannot be loaded."""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(AnilError):
    """Base class for failures raised by a provider adapter."""

    retryable: bool = False

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason


class ProviderNotFoundError(ProviderError):
    """Title or episode is absent at this provider."""


class ProviderTransientError(ProviderError):
    """Network error, timeout or rate limit. Worth retrying."""

    retryable = True


class ProviderFormatChangedError(ProviderError):
    """Provider response could not be parsed; the adapter needs an update."""


# ---------------------------------------------------------------------------
# Resolution errors
# ---------------------------------------------------------------------------


class ResolutionError(AnilError):
    """Base class for terminal resolution failures."""


class AllProvidersExhausted(ResolutionError):
    """No configured provider produced a candidate."""

    def __init__(self, failures: dict[str, str]) -> None:
        detail = ", ".join(f"{k}={v}" for k, v in failures.items()) or "none"
        super().__init__(f"all providers exhausted ({detail})")
        self.failures = dict(failures)


# ---------------------------------------------------------------------------
# Playback errors
# ---------------------------------------------------------------------------


class LaunchFailureKind(str, Enum):
    SUBPROCESS_FAILED = "subprocess_failed"
    CHANNEL_UNAVAILABLE = "channel_unavailable"
    LOAD_TIMEOUT = "load_timeout"


class LaunchError(AnilError):
    """The player could not be started for any candidate."""

    def __init__(
        self, kind: LaunchFailureKind, reason: str, *, attempts: int = 1
    ) -> None:
        super().__init__(f"{kind.value}: {reason} (after {attempts} attempt(s))")
        self.kind = kind
        self.reason = reason
        self.attempts = attempts


class SessionError(AnilError):
    """Base class for failures of a running playback session."""


class SessionEndedError(SessionError):
    """The player process has exited; the session is over."""


class ChannelStaleError(SessionError):
    """The control channel stopped answering while the player is alive."""


class InvalidSessionTransition(SessionError):
    """A state change not allowed by the session state machine."""


# ---------------------------------------------------------------------------
# Persistence errors
# ---------------------------------------------------------------------------


class PersistenceError(AnilError):
    """Base class for watch-state storage failures."""


class PersistenceWriteFailed(PersistenceError):
    """One or more progress records could not be written."""

    def __init__(self, keys: list[str], reason: str) -> None:
        super().__init__(f"write failed for {', '.join(keys)}: {reason}")
        self.keys = list(keys)
        self.reason = reason


class PersistenceReadFailed(PersistenceError):
    """A progress record or the index could not be read."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"read failed for {key}: {reason}")
        self.key = key
        self.reason = reason
