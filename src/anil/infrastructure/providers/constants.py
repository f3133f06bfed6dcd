"""Shared constants for provider adapters."""

from __future__ import annotations

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_CLIENT_TIMEOUT = 15.0
DEFAULT_SEARCH_MIN_SCORE = 0.5

# HTTP statuses worth retrying (timeouts, rate limits, overloaded upstreams).
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504, 520, 522, 524})
NOT_FOUND_STATUS_CODES = frozenset({404, 410})
