from __future__ import annotations

import asyncio
from typing import Any

import httpx

from poly_trader.errors import _HttpApiError

_DEFAULT_MAX_RETRIES = 3
_DEFAULT_RETRY_BASE_SECONDS = 0.5
_DEFAULT_RETRY_MAX_SECONDS = 8.0


class RetryingHttpClient:
    """Async JSON client with exponential backoff on transient failures.

    Requests made with ``retry=False`` are sent exactly once; use that for
    calls that are not safe to repeat blindly.
    """

    error_cls: type[_HttpApiError] = _HttpApiError

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 10.0,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        retry_base_seconds: float = _DEFAULT_RETRY_BASE_SECONDS,
        retry_max_seconds: float = _DEFAULT_RETRY_MAX_SECONDS,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_retries = int(max(0, max_retries))
        self._retry_base_seconds = float(max(0.0, retry_base_seconds))
        self._retry_max_seconds = float(max(self._retry_base_seconds, retry_max_seconds))
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers or {},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: str | None = None,
        headers: dict[str, str] | None = None,
        retry: bool = True,
    ) -> Any:
        max_retries = self._max_retries if retry else 0
        request_headers = dict(headers or {})
        if body is not None:
            request_headers.setdefault("Content-Type", "application/json")
        attempt = 0
        while True:
            try:
                response = await self._client.request(
                    method,
                    path,
                    params=_compact_params(params or {}),
                    content=body.encode("utf-8") if body is not None else None,
                    headers=request_headers,
                )
            except (httpx.TimeoutException, httpx.TransportError):
                if attempt >= max_retries:
                    raise
                await asyncio.sleep(self._retry_delay_seconds(attempt=attempt, response=None))
                attempt += 1
                continue

            if response.status_code >= 400:
                payload: Any
                try:
                    payload = response.json()
                except ValueError:
                    payload = response.text

                if _should_retry_http_error(status_code=response.status_code) and attempt < max_retries:
                    await asyncio.sleep(
                        self._retry_delay_seconds(attempt=attempt, response=response)
                    )
                    attempt += 1
                    continue

                raise self.error_cls(status_code=response.status_code, payload=payload)

            if not response.content:
                return None
            return response.json()

    def _retry_delay_seconds(
        self,
        *,
        attempt: int,
        response: httpx.Response | None,
    ) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    value = float(retry_after)
                    if value > 0:
                        return value
                except ValueError:
                    pass
        delay = self._retry_base_seconds * (2**attempt)
        return float(min(delay, self._retry_max_seconds))


def _compact_params(params: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None}


def _should_retry_http_error(*, status_code: int) -> bool:
    return status_code in (418, 429) or status_code >= 500
