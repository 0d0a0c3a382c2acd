"""Shared httpx request helper for provider clients."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx

from songworker.errors import ProviderError, ProviderTimeoutError
from songworker.utils.retry import RetryDirective, with_retry


def build_timeout(timeout_ms: int) -> httpx.Timeout:
    timeout_seconds = max(timeout_ms, 100) / 1000
    connect_timeout = min(timeout_seconds, 5.0)
    return httpx.Timeout(
        timeout_seconds,
        connect=connect_timeout,
        read=timeout_seconds,
        write=timeout_seconds,
    )


def _classify(error: Exception) -> RetryDirective:
    if isinstance(error, ProviderError):
        return RetryDirective(retry=error.retryable)
    return RetryDirective(retry=False)


@dataclass(slots=True)
class ProviderHttpClient:
    """Issue JSON requests against one provider and map failures to ``ProviderError``.

    ``max_attempts`` only applies to requests sent with ``retry=True``; calls
    that create remote work (task submission, generation) are sent once.
    """

    provider: str
    base_url: str
    timeout_ms: int = 30_000
    headers: Mapping[str, str] = field(default_factory=dict)
    transport: httpx.AsyncBaseTransport | None = None
    max_attempts: int = 3
    backoff_base_ms: int = 250
    jitter_pct: int = 20
    _client: httpx.AsyncClient | None = field(default=None, init=False, repr=False)

    @property
    def client(self) -> httpx.AsyncClient:
        """Pooled client shared by every request to this provider."""

        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url.rstrip("/"),
                timeout=build_timeout(self.timeout_ms),
                headers=dict(self.headers),
                transport=self.transport,
            )
        return self._client

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
        timeout_ms: int | None = None,
        retry: bool = False,
    ) -> httpx.Response:
        effective_timeout = timeout_ms or self.timeout_ms
        timeout = build_timeout(effective_timeout)

        async def _perform_request() -> httpx.Response:
            try:
                response = await self.client.request(
                    method, path, json=json, params=params, timeout=timeout
                )
            except httpx.TimeoutException as exc:
                raise ProviderTimeoutError(self.provider, effective_timeout) from exc
            except httpx.HTTPError as exc:
                raise ProviderError(
                    f"{self.provider} request failed: {exc}",
                    provider=self.provider,
                    retryable=True,
                ) from exc

            if response.is_success:
                return response

            body_preview = response.text[:200]
            status_code = response.status_code
            retryable = status_code == httpx.codes.TOO_MANY_REQUESTS or status_code >= 500
            raise ProviderError(
                f"{self.provider} error {status_code}: {body_preview}",
                provider=self.provider,
                retryable=retryable,
                status_code=status_code,
            )

        return await with_retry(
            _perform_request,
            attempts=self.max_attempts if retry else 1,
            base_ms=self.backoff_base_ms,
            jitter_pct=self.jitter_pct,
            classify_err=_classify,
        )

    async def request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self.request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{self.provider} returned invalid JSON",
                provider=self.provider,
            ) from exc


__all__ = ["ProviderHttpClient", "build_timeout"]
