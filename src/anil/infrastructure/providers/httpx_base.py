"""Shared base class for httpx-based provider adapters.

Handles client lifecycle and translates transport failures, HTTP status
codes and undecodable bodies into the provider error taxonomy, so
subclasses only deal with the source's page/API shape.

This base class lives in the *infrastructure* layer because it depends
on ``httpx`` and ``structlog``. The application layer only knows
``ProviderPort``; adapters inheriting from ``HttpxProviderBase``
structurally satisfy that Protocol.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog

from anil.domain.entities.stream import EpisodeRef, StreamCandidate
from anil.domain.errors import (
    ProviderFormatChangedError,
    ProviderNotFoundError,
    ProviderTransientError,
)

from .constants import (
    DEFAULT_CLIENT_TIMEOUT,
    DEFAULT_USER_AGENT,
    NOT_FOUND_STATUS_CODES,
    TRANSIENT_STATUS_CODES,
)


class HttpxProviderBase:
    """Shared base for httpx-based provider adapters.

    Subclasses **must** set ``name`` and override ``list_candidates()``.
    They may override ``_timeout`` and ``_user_agent``.

    When no client is injected, one is created lazily and closed by
    ``cleanup()``; an injected client is left open for its owner.
    """

    name: str = ""

    _timeout: float = DEFAULT_CLIENT_TIMEOUT
    _user_agent: str = DEFAULT_USER_AGENT

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float | None = None,
        user_agent: str | None = None,
    ) -> None:
        self._client = http_client
        self._owns_client = http_client is None
        if timeout is not None:
            self._timeout = timeout
        if user_agent is not None:
            self._user_agent = user_agent
        self._log = structlog.get_logger(self.name or __name__)

    # ------------------------------------------------------------------
    # Client lifecycle
    # ------------------------------------------------------------------

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                headers={"User-Agent": self._user_agent},
            )
            self._owns_client = True
        return self._client

    async def cleanup(self) -> None:
        """Close the httpx client if this adapter created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Fetch helpers (raise ProviderError subclasses)
    # ------------------------------------------------------------------

    async def _fetch(
        self,
        url: str,
        *,
        context: str,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """GET *url*; map every failure onto the provider taxonomy."""
        client = await self._ensure_client()
        request_headers = {"User-Agent": self._user_agent}
        request_headers.update(headers or {})
        try:
            resp = await client.get(
                url,
                params=params,
                headers=request_headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            self._log.warning(f"{self.name}_timeout", url=url, context=context)
            raise ProviderTransientError(self.name, f"{context}: timeout") from exc
        except httpx.HTTPError as exc:
            self._log.warning(
                f"{self.name}_fetch_error", url=url, context=context, error=str(exc)
            )
            raise ProviderTransientError(
                self.name, f"{context}: {type(exc).__name__}"
            ) from exc

        status = resp.status_code
        if status < 400:
            return resp

        self._log.warning(
            f"{self.name}_http_error", url=url, status=status, context=context
        )
        if status in NOT_FOUND_STATUS_CODES:
            raise ProviderNotFoundError(self.name, f"{context}: HTTP {status}")
        if status in TRANSIENT_STATUS_CODES or status >= 500:
            raise ProviderTransientError(self.name, f"{context}: HTTP {status}")
        raise ProviderFormatChangedError(self.name, f"{context}: HTTP {status}")

    async def _fetch_json(
        self,
        url: str,
        *,
        context: str,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        resp = await self._fetch(url, context=context, params=params, headers=headers)
        try:
            return resp.json()
        except (json.JSONDecodeError, ValueError) as exc:
            self._log.warning(
                f"{self.name}_invalid_json", url=str(resp.url), context=context
            )
            raise ProviderFormatChangedError(
                self.name, f"{context}: invalid JSON"
            ) from exc

    # ------------------------------------------------------------------
    # Abstract listing (subclass must implement)
    # ------------------------------------------------------------------

    async def list_candidates(self, episode: EpisodeRef) -> list[StreamCandidate]:
        raise NotImplementedError(
            f"{type(self).__name__}.list_candidates() not implemented"
        )
