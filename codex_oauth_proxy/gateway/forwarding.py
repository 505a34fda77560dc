from __future__ import annotations

import asyncio
import json
import logging
import ssl
import time
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse

from codex_oauth_proxy.gateway.errors import (
    AuthError,
    InvalidRequestError,
    NetworkError,
    ProxyError,
    StreamError,
    UpstreamError,
)
from codex_oauth_proxy.runtime.metrics import (
    Endpoint,
    MetricsAggregator,
    Outcome,
    RequestEvent,
    ResponseEvent,
)

if TYPE_CHECKING:
    from codex_oauth_proxy.gateway.credentials import CredentialCache
    from codex_oauth_proxy.settings import Settings

GENERATION_PARAMETERS = (
    "max_tokens",
    "temperature",
    "top_p",
    "frequency_penalty",
    "presence_penalty",
)

UPSTREAM_PATHS: dict[Endpoint, str] = {
    "chat": "/chat/completions",
    "completion": "/completions",
}

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class GenerationDefaults:
    max_tokens: int = 4096
    temperature: float = 0.7
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> GenerationDefaults:
        return cls(
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            top_p=settings.top_p,
            frequency_penalty=settings.frequency_penalty,
            presence_penalty=settings.presence_penalty,
        )

    def apply(self, payload: dict[str, Any]) -> dict[str, Any]:
        merged = dict(payload)
        for name in GENERATION_PARAMETERS:
            if merged.get(name) is None:
                merged[name] = getattr(self, name)
        return merged


def generate_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


def require_bearer(authorization: str | None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError(
            "Missing or invalid authorization header. Use any non-empty API key."
        )
    return token.strip()


def parse_generation_payload(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body or b"null")
    except ValueError as exc:
        raise InvalidRequestError(f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidRequestError("Expected a JSON object request body.")
    model = payload.get("model")
    if not isinstance(model, str) or not model.strip():
        raise InvalidRequestError("Request body must include a 'model' field.")
    return payload


def build_upstream_headers(
    *, bearer_token: str, request_id: str, stream: bool
) -> dict[str, str]:
    headers = {
        "Authorization": f"Bearer {bearer_token}",
        "Content-Type": "application/json",
        "X-Request-Id": request_id,
    }
    if stream:
        headers["Accept"] = "text/event-stream"
    return headers


class _RequestTracker:
    def __init__(self, *, metrics: MetricsAggregator, request_id: str) -> None:
        self._metrics = metrics
        self.request_id = request_id
        self._started = time.perf_counter()
        self._finished = False

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._started) * 1000.0)

    def finish(self, outcome: Outcome, error_detail: str | None = None) -> bool:
        if self._finished:
            return False
        self._finished = True
        self._metrics.record_response(
            ResponseEvent(
                id=self.request_id,
                duration_ms=self.elapsed_ms,
                outcome=outcome,
                error_detail=error_detail,
            )
        )
        return True


class ForwardingGateway:
    def __init__(
        self,
        *,
        base_url: str,
        credentials: CredentialCache,
        metrics: MetricsAggregator,
        defaults: GenerationDefaults | None = None,
        timeout_seconds: float = 120.0,
        verify: ssl.SSLContext | bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        served_by: str = "codex-oauth-proxy",
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._credentials = credentials
        self._metrics = metrics
        self._defaults = defaults or GenerationDefaults()
        self._served_by = served_by
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(max(0.1, float(timeout_seconds))),
            verify=verify,
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def upstream_url(self, endpoint: Endpoint) -> str:
        return f"{self._base_url}{UPSTREAM_PATHS[endpoint]}"

    async def handle(
        self,
        *,
        endpoint: Endpoint,
        headers: Mapping[str, str],
        body: bytes,
    ) -> Response:
        require_bearer(headers.get("authorization"))
        payload = self._defaults.apply(parse_generation_payload(body))
        if endpoint == "completion" and payload.get("stream"):
            payload["stream"] = False
        stream = endpoint == "chat" and bool(payload.get("stream"))

        request_id = generate_request_id()
        tracker = _RequestTracker(metrics=self._metrics, request_id=request_id)
        self._metrics.record_request(
            RequestEvent(
                id=request_id,
                model=str(payload["model"]),
                endpoint=endpoint,
                submitted_at=self._metrics.now(),
            )
        )
        messages = payload.get("messages")
        logger.info(
            (
                "proxy_request request_id=%s endpoint=%s model=%s stream=%s "
                "max_tokens=%s temperature=%s messages=%d"
            ),
            request_id,
            endpoint,
            payload["model"],
            stream,
            payload.get("max_tokens"),
            payload.get("temperature"),
            len(messages) if isinstance(messages, list) else 0,
        )

        try:
            token = await self._credentials.get_token()
            upstream_headers = build_upstream_headers(
                bearer_token=token, request_id=request_id, stream=stream
            )
            if stream:
                return await self._forward_streaming(
                    endpoint=endpoint,
                    payload=payload,
                    headers=upstream_headers,
                    tracker=tracker,
                )
            return await self._forward_buffered(
                endpoint=endpoint,
                payload=payload,
                headers=upstream_headers,
                tracker=tracker,
            )
        except ProxyError as exc:
            tracker.finish("error", exc.message)
            logger.warning(
                "proxy_request_failed request_id=%s status=%d error_type=%s duration_ms=%d error=%s",
                request_id,
                exc.status_code,
                exc.__class__.__name__,
                tracker.elapsed_ms,
                exc.message,
            )
            return exc.to_response(request_id=request_id)
        except asyncio.CancelledError:
            tracker.finish("error", "request cancelled")
            raise

    async def _forward_buffered(
        self,
        *,
        endpoint: Endpoint,
        payload: dict[str, Any],
        headers: dict[str, str],
        tracker: _RequestTracker,
    ) -> Response:
        try:
            upstream = await self.client.post(
                self.upstream_url(endpoint), json=payload, headers=headers
            )
        except httpx.RequestError as exc:
            raise self._network_error(exc, tracker.request_id) from exc

        if not upstream.is_success:
            raise UpstreamError(
                status_code=upstream.status_code,
                body=upstream.content,
                content_type=upstream.headers.get("content-type"),
                reason=upstream.reason_phrase,
            )

        response = self._buffered_response(upstream, tracker.request_id)
        tracker.finish("success")
        logger.info(
            "proxy_request_completed request_id=%s status=%d duration_ms=%d",
            tracker.request_id,
            upstream.status_code,
            tracker.elapsed_ms,
        )
        return response

    def _buffered_response(self, upstream: httpx.Response, request_id: str) -> Response:
        headers = {"X-Request-Id": request_id}
        try:
            data = upstream.json()
        except ValueError:
            return Response(
                content=upstream.content,
                status_code=upstream.status_code,
                headers=headers,
                media_type=upstream.headers.get("content-type"),
            )
        if isinstance(data, dict) and "_proxy" not in data:
            data["_proxy"] = {
                "served_by": self._served_by,
                "request_id": request_id,
            }
        return JSONResponse(
            content=data,
            status_code=upstream.status_code,
            headers=headers,
        )

    async def _forward_streaming(
        self,
        *,
        endpoint: Endpoint,
        payload: dict[str, Any],
        headers: dict[str, str],
        tracker: _RequestTracker,
    ) -> Response:
        request = self.client.build_request(
            "POST", self.upstream_url(endpoint), json=payload, headers=headers
        )
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            raise self._network_error(exc, tracker.request_id) from exc

        if not upstream.is_success:
            try:
                body = await upstream.aread()
            except httpx.RequestError as exc:
                raise StreamError(
                    f"Upstream stream failed before response started: {exc}"
                ) from exc
            finally:
                await upstream.aclose()
            raise UpstreamError(
                status_code=upstream.status_code,
                body=body,
                content_type=upstream.headers.get("content-type"),
                reason=upstream.reason_phrase,
            )

        return StreamingResponse(
            content=self._relay(upstream, tracker),
            status_code=200,
            headers={
                "Cache-Control": "no-cache",
                "X-Request-Id": tracker.request_id,
            },
            media_type="text/event-stream",
        )

    async def _relay(
        self, upstream: httpx.Response, tracker: _RequestTracker
    ) -> AsyncIterator[bytes]:
        chunks = 0
        try:
            async for chunk in upstream.aiter_raw():
                chunks += 1
                yield chunk
            tracker.finish("success")
            logger.info(
                "proxy_stream_completed request_id=%s chunks=%d duration_ms=%d",
                tracker.request_id,
                chunks,
                tracker.elapsed_ms,
            )
        except httpx.RequestError as exc:
            tracker.finish("error", f"stream error: {str(exc) or repr(exc)}")
            logger.warning(
                "proxy_upstream_stream_error request_id=%s error_type=%s chunks=%d error=%s",
                tracker.request_id,
                exc.__class__.__name__,
                chunks,
                str(exc) or repr(exc),
            )
            raise
        finally:
            if tracker.finish("error", "client disconnected before stream completed"):
                logger.info(
                    "proxy_stream_aborted request_id=%s chunks=%d",
                    tracker.request_id,
                    chunks,
                )
            # The relay may already be cancelled; the close must still run.
            await asyncio.shield(upstream.aclose())

    def _network_error(self, exc: httpx.RequestError, request_id: str) -> NetworkError:
        message = str(exc).strip() or repr(exc)
        logger.warning(
            "proxy_request_error request_id=%s error_type=%s is_timeout=%s error=%s",
            request_id,
            exc.__class__.__name__,
            isinstance(exc, httpx.TimeoutException),
            message,
        )
        return NetworkError(
            f"Could not reach upstream API ({exc.__class__.__name__}): {message}"
        )
