"""Rate limited HTTPX client shared by the provider integrations."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
import time
from typing import Any

import httpx

from setlist_sync.errors import ProviderError
from setlist_sync.logging import get_logger
from setlist_sync.utils.retry import RetryDirective, with_retry
from setlist_sync.utils.time import now_utc

logger = get_logger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


def _parse_retry_after_ms(headers: Mapping[str, str]) -> int | None:
    value = headers.get("Retry-After") or headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0, int(float(value) * 1000))
    except (TypeError, ValueError):
        pass
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    delta = parsed - now_utc()
    return max(0, int(delta.total_seconds() * 1000))


@dataclass(slots=True)
class RateLimitedClient:
    """Serialise outbound calls to one provider with a minimum spacing.

    Each instance owns its pacing state (``_last_request_at``) so a single
    client per process must be shared by every handler talking to the
    provider. Transient failures (timeouts, 429, 5xx) are retried with
    exponential backoff; any other non-2xx response raises
    :class:`ProviderError` immediately.
    """

    provider: str
    base_url: str
    min_interval_ms: int = 0
    transport: httpx.AsyncBaseTransport | None = None
    timeout_ms: int = 10_000
    max_attempts: int = 3
    backoff_base_ms: int = 250
    jitter_pct: int = 20
    clock: Callable[[], float] = time.monotonic
    sleep: Sleeper = asyncio.sleep
    _pace_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _last_request_at: float | None = field(default=None, init=False, repr=False)
    request_count: int = field(default=0, init=False)

    async def call(
        self,
        endpoint: str,
        params: Mapping[str, Any] | None = None,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        data: Mapping[str, Any] | None = None,
    ) -> Any:
        """Issue a request against ``endpoint`` and return the decoded JSON."""

        response = await self._request(
            method, endpoint, params=params, headers=headers, data=data
        )
        return self._decode_json(response)

    async def _auth_headers(self) -> dict[str, str]:
        return {}

    async def _auth_params(self) -> dict[str, str]:
        return {}

    async def _respect_rate_limit(self) -> None:
        async with self._pace_lock:
            interval = max(0, self.min_interval_ms) / 1000.0
            if self._last_request_at is not None and interval > 0:
                elapsed = self.clock() - self._last_request_at
                if elapsed < interval:
                    await self.sleep(interval - elapsed)
            self._last_request_at = self.clock()

    async def _send_once(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, Any] | None,
        headers: Mapping[str, str] | None,
        data: Mapping[str, Any] | None,
        url: str | None = None,
        authenticate: bool = True,
    ) -> httpx.Response:
        request_headers = {"Accept": "application/json"}
        request_params: dict[str, Any] = {}
        if authenticate:
            request_headers.update(await self._auth_headers())
            request_params.update(await self._auth_params())
        if headers:
            request_headers.update(headers)
        await self._respect_rate_limit()
        if params:
            request_params.update(
                {key: value for key, value in params.items() if value is not None}
            )
        self.request_count += 1
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url.rstrip("/"),
                timeout=self._build_timeout(self.timeout_ms),
                transport=self.transport,
            ) as client:
                response = await client.request(
                    method,
                    url or endpoint,
                    params=request_params or None,
                    headers=request_headers,
                    data=data,
                )
        except httpx.TimeoutException as exc:
            raise ProviderError(
                self.provider, f"{self.provider} request timed out", retryable=True
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                self.provider, f"{self.provider} request failed: {exc}", retryable=True
            ) from exc

        if response.is_success:
            return response
        body_preview = response.text[:500]
        status = response.status_code
        if status == httpx.codes.TOO_MANY_REQUESTS:
            raise ProviderError(
                self.provider,
                f"{self.provider} rate limited the request",
                status_code=status,
                body=body_preview,
                retryable=True,
                retry_after_ms=_parse_retry_after_ms(response.headers),
            )
        raise ProviderError(
            self.provider,
            f"{self.provider} responded with HTTP {status} for {endpoint}",
            status_code=status,
            body=body_preview,
            retryable=status >= 500,
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        data: Mapping[str, Any] | None = None,
        url: str | None = None,
        authenticate: bool = True,
    ) -> httpx.Response:
        async def _perform() -> httpx.Response:
            return await self._send_once(
                method,
                endpoint,
                params=params,
                headers=headers,
                data=data,
                url=url,
                authenticate=authenticate,
            )

        def _classify(error: Exception) -> RetryDirective:
            if isinstance(error, ProviderError):
                return RetryDirective(
                    retry=error.retryable,
                    delay_override_ms=error.retry_after_ms,
                )
            return RetryDirective(retry=False)

        try:
            return await with_retry(
                _perform,
                attempts=max(1, int(self.max_attempts)),
                base_ms=max(1, int(self.backoff_base_ms)),
                jitter_pct=max(0, int(self.jitter_pct)),
                classify_err=_classify,
                sleep=self.sleep,
            )
        except ProviderError as exc:
            logger.warning(
                "Provider request failed",
                extra={
                    "event": "sync.provider.request_failed",
                    "provider": self.provider,
                    "endpoint": endpoint,
                    "status": exc.status_code,
                },
            )
            raise

    def _decode_json(self, response: httpx.Response) -> Any:
        if response.status_code == httpx.codes.NO_CONTENT or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                self.provider,
                f"{self.provider} returned invalid JSON",
                status_code=response.status_code,
                body=response.text[:500],
            ) from exc

    @staticmethod
    def _build_timeout(timeout_ms: int) -> httpx.Timeout:
        timeout_seconds = max(timeout_ms, 100) / 1000
        return httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0))


def pick_best_image(images: Any) -> str | None:
    """Return the URL of the widest image in a provider image list."""

    if not isinstance(images, list) or not images:
        return None
    best_url: str | None = None
    best_width = -1
    for image in images:
        if not isinstance(image, Mapping):
            continue
        url = image.get("url")
        if not isinstance(url, str) or not url:
            continue
        try:
            width = int(image.get("width") or 0)
        except (TypeError, ValueError):
            width = 0
        if width > best_width:
            best_width = width
            best_url = url
    return best_url


__all__ = ["RateLimitedClient", "pick_best_image"]
