from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx

from llm_gateway.errors import ExecutionTimeoutError, ProviderError
from llm_gateway.providers.base import ProviderHealth

logger = logging.getLogger(__name__)

# Routing hints understood by the gateway; never forwarded upstream.
GATEWAY_ONLY_FIELDS = {"priority", "metadata", "headers", "long_context", "language"}

_BEARER_AUTH_TYPES = {"api_key", "bearer_token", "oauth2"}


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    details: dict[str, Any] = {
        "error": str(exc).strip() or repr(exc),
        "error_type": exc.__class__.__name__ or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        request = exc.request
    except RuntimeError:
        request = None
    if isinstance(request, httpx.Request):
        details["request_method"] = request.method
        details["request_url"] = str(request.url)
    return details


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:500] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return f"HTTP {response.status_code}"


class OpenAICompatibleProvider:
    def __init__(
        self,
        *,
        provider_id: str,
        base_url: str,
        model: str,
        api_key: str | None = None,
        auth_type: str = "api_key",
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.provider_id = provider_id
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.auth_type = auth_type
        self.timeout_seconds = timeout_seconds
        self._api_key = api_key
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=max(0.1, float(timeout_seconds))),
            limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if not self._api_key or self.auth_type == "none":
            return headers
        if self.auth_type in _BEARER_AUTH_TYPES:
            headers["Authorization"] = f"Bearer {self._api_key}"
        else:
            headers["x-api-key"] = self._api_key
        return headers

    def _build_payload(self, request: dict[str, Any]) -> dict[str, Any]:
        payload = {
            key: value
            for key, value in request.items()
            if key not in GATEWAY_ONLY_FIELDS
        }
        payload["model"] = self.model
        return payload

    def _upstream_request(self, request: dict[str, Any], *, stream: bool) -> httpx.Request:
        payload = self._build_payload(request)
        if stream:
            payload["stream"] = True
        else:
            payload.pop("stream", None)
        return self.client.build_request(
            "POST",
            f"{self.base_url}/chat/completions",
            json=payload,
            headers=self._headers(),
        )

    async def _send(self, request: httpx.Request, *, stream: bool) -> httpx.Response:
        try:
            return await self.client.send(request, stream=stream)
        except httpx.TimeoutException as exc:
            logger.warning(
                "provider_timeout provider=%s model=%s error=%s",
                self.provider_id,
                self.model,
                exc,
            )
            raise ExecutionTimeoutError(
                provider_id=self.provider_id, timeout_seconds=self.timeout_seconds
            ) from exc
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "provider_request_error provider=%s model=%s error_type=%s error=%s",
                self.provider_id,
                self.model,
                details["error_type"],
                details["error"],
            )
            raise ProviderError(
                details["error"], provider_id=self.provider_id, details=details
            ) from exc

    def _raise_for_status(self, response: httpx.Response, latency_ms: float) -> None:
        if response.status_code < 400:
            return
        message = _error_message(response)
        logger.warning(
            "provider_upstream_error provider=%s model=%s status=%d latency_ms=%.2f",
            self.provider_id,
            self.model,
            response.status_code,
            latency_ms,
        )
        raise ProviderError(
            message,
            provider_id=self.provider_id,
            status_code=response.status_code,
        )

    async def process(self, request: dict[str, Any]) -> dict[str, Any]:
        started = time.perf_counter()
        response = await self._send(self._upstream_request(request, stream=False), stream=False)
        latency_ms = (time.perf_counter() - started) * 1000.0
        self._raise_for_status(response, latency_ms)

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(
                "Upstream returned a non-JSON body.",
                provider_id=self.provider_id,
                status_code=response.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise ProviderError(
                "Upstream returned a non-object JSON body.",
                provider_id=self.provider_id,
                status_code=response.status_code,
            )
        logger.debug(
            "provider_response provider=%s model=%s status=%d latency_ms=%.2f",
            self.provider_id,
            self.model,
            response.status_code,
            latency_ms,
        )
        return body

    async def stream(self, request: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        """Yields the JSON chunks of an SSE chat completion stream."""
        started = time.perf_counter()
        response = await self._send(self._upstream_request(request, stream=True), stream=True)
        try:
            if response.status_code >= 400:
                await response.aread()
                self._raise_for_status(response, (time.perf_counter() - started) * 1000.0)
            try:
                async for line in response.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if not data or data == "[DONE]":
                        continue
                    try:
                        chunk = json.loads(data)
                    except ValueError:
                        continue
                    if isinstance(chunk, dict):
                        yield chunk
            except httpx.RequestError as exc:
                details = _request_error_details(exc)
                logger.warning(
                    "provider_stream_error provider=%s model=%s error_type=%s error=%s",
                    self.provider_id,
                    self.model,
                    details["error_type"],
                    details["error"],
                )
                raise ProviderError(
                    details["error"], provider_id=self.provider_id, details=details
                ) from exc
        finally:
            await response.aclose()

    async def health(self) -> ProviderHealth:
        started = time.perf_counter()
        try:
            response = await self.client.get(
                f"{self.base_url}/models", headers=self._headers()
            )
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            return ProviderHealth(
                healthy=False,
                detail=f"{details['error_type']}: {details['error']}",
                latency_ms=round((time.perf_counter() - started) * 1000.0, 3),
                checked_at_epoch=time.time(),
            )
        latency_ms = round((time.perf_counter() - started) * 1000.0, 3)
        if response.status_code >= 400:
            return ProviderHealth(
                healthy=False,
                detail=f"HTTP {response.status_code}",
                latency_ms=latency_ms,
                checked_at_epoch=time.time(),
            )
        return ProviderHealth(
            healthy=True, latency_ms=latency_ms, checked_at_epoch=time.time()
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
