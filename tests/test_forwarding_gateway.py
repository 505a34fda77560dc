from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest
from fastapi.responses import Response, StreamingResponse

from codex_oauth_proxy.gateway.errors import (
    AuthError,
    CredentialFetchError,
    InvalidRequestError,
)
from codex_oauth_proxy.gateway.forwarding import (
    ForwardingGateway,
    GenerationDefaults,
    build_upstream_headers,
    generate_request_id,
    require_bearer,
)
from codex_oauth_proxy.runtime.metrics import MetricsAggregator

BASE_URL = "https://api.example.test/v1"
AUTH_HEADERS = {"authorization": "Bearer anything"}
CHUNKS = [b"data: one\n\n", b"data: two\n\n", b"data: [DONE]\n\n"]


class _StaticCredentials:
    def __init__(self, token: str = "upstream-token", *, fail: bool = False) -> None:
        self.token = token
        self.fail = fail
        self.calls = 0

    async def get_token(self) -> str:
        self.calls += 1
        if self.fail:
            raise CredentialFetchError("OAuth server returned status 500", status_code=500)
        return self.token


class _Upstream:
    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def payload(self, index: int = 0) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


async def _iter(chunks: list[bytes], error: Exception | None = None) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk
    if error is not None:
        raise error


class _StalledStream(httpx.AsyncByteStream):
    """Yields one chunk, then waits forever; closing takes a moment."""

    def __init__(self, first: bytes) -> None:
        self.first = first
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield self.first
        await asyncio.sleep(3600)
        yield b"data: never\n\n"

    async def aclose(self) -> None:
        await asyncio.sleep(0.01)
        self.closed = True


def _json_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"id": "cmpl-1", "choices": []})


def _build_gateway(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    credentials: _StaticCredentials | None = None,
) -> tuple[ForwardingGateway, _Upstream, MetricsAggregator]:
    upstream = _Upstream(handler)
    metrics = MetricsAggregator()
    gateway = ForwardingGateway(
        base_url=BASE_URL + "/",
        credentials=credentials or _StaticCredentials(),  # type: ignore[arg-type]
        metrics=metrics,
        defaults=GenerationDefaults(max_tokens=1024, temperature=0.2),
        transport=httpx.MockTransport(upstream),
        served_by="test-proxy",
    )
    return gateway, upstream, metrics


def _handle(
    gateway: ForwardingGateway,
    body: dict[str, Any] | bytes,
    *,
    endpoint: str = "chat",
    headers: dict[str, str] | None = None,
) -> Response:
    raw = body if isinstance(body, bytes) else json.dumps(body).encode()
    return asyncio.run(
        gateway.handle(
            endpoint=endpoint,  # type: ignore[arg-type]
            headers=AUTH_HEADERS if headers is None else headers,
            body=raw,
        )
    )


async def _drain(response: StreamingResponse) -> list[bytes]:
    chunks: list[bytes] = []
    async for chunk in response.body_iterator:
        chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode())
    return chunks


def test_require_bearer_accepts_any_non_empty_token() -> None:
    assert require_bearer("Bearer abc") == "abc"
    assert require_bearer("bearer  padded ") == "padded"
    for value in (None, "", "Bearer", "Bearer   ", "Basic abc", "abc"):
        with pytest.raises(AuthError):
            require_bearer(value)


def test_generate_request_id_format() -> None:
    first = generate_request_id()
    second = generate_request_id()

    assert first.startswith("req_")
    assert len(first.split("_")) == 3
    assert first != second


def test_build_upstream_headers_adds_accept_for_streams() -> None:
    headers = build_upstream_headers(bearer_token="t-1", request_id="req_1", stream=True)

    assert headers["Authorization"] == "Bearer t-1"
    assert headers["Accept"] == "text/event-stream"
    assert "Accept" not in build_upstream_headers(
        bearer_token="t-1", request_id="req_1", stream=False
    )


def test_generation_defaults_fill_only_missing_parameters() -> None:
    defaults = GenerationDefaults(max_tokens=4096, temperature=0.7)

    merged = defaults.apply({"model": "m", "temperature": 0, "max_tokens": None})

    assert merged["temperature"] == 0
    assert merged["max_tokens"] == 4096
    assert merged["top_p"] == 1.0
    assert merged["frequency_penalty"] == 0.0
    assert merged["presence_penalty"] == 0.0


def test_buffered_chat_forwards_token_and_adds_provenance() -> None:
    gateway, upstream, metrics = _build_gateway(_json_ok)

    response = _handle(gateway, {"model": "gpt-4.1", "messages": [], "top_p": 0.5})

    assert response.status_code == 200
    body = json.loads(response.body)
    request_id = response.headers["x-request-id"]
    assert body["_proxy"] == {"served_by": "test-proxy", "request_id": request_id}
    sent = upstream.requests[0]
    assert str(sent.url) == f"{BASE_URL}/chat/completions"
    assert sent.headers["authorization"] == "Bearer upstream-token"
    assert upstream.payload() == {
        "model": "gpt-4.1",
        "messages": [],
        "top_p": 0.5,
        "max_tokens": 1024,
        "temperature": 0.2,
        "frequency_penalty": 0.0,
        "presence_penalty": 0.0,
    }
    assert [event.id for event in metrics.requests] == [request_id]
    assert metrics.requests[0].endpoint == "chat"
    assert metrics.responses[request_id].outcome == "success"


def test_buffered_response_keeps_existing_provenance() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"_proxy": {"served_by": "elsewhere"}})

    gateway, _, _ = _build_gateway(handler)

    response = _handle(gateway, {"model": "gpt-4.1"})

    assert json.loads(response.body) == {"_proxy": {"served_by": "elsewhere"}}


def test_upstream_error_status_and_body_are_relayed_verbatim() -> None:
    upstream_body = {"error": {"message": "slow down", "type": "rate_limit_error"}}

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json=upstream_body)

    gateway, _, metrics = _build_gateway(handler)

    response = _handle(gateway, {"model": "gpt-4.1"})

    assert response.status_code == 429
    assert json.loads(response.body) == upstream_body
    [event] = metrics.responses.values()
    assert event.outcome == "error"
    assert event.error_detail == "upstream returned status 429"


def test_upstream_error_without_body_gets_api_error_envelope() -> None:
    gateway, _, _ = _build_gateway(lambda _: httpx.Response(503))

    response = _handle(gateway, {"model": "gpt-4.1"})

    assert response.status_code == 503
    assert json.loads(response.body)["error"]["type"] == "api_error"


@pytest.mark.parametrize(
    "error_cls",
    [httpx.ConnectError, httpx.ReadTimeout],
)
def test_network_errors_become_proxy_error_envelope(error_cls: type[Exception]) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise error_cls("upstream unreachable", request=request)

    gateway, _, metrics = _build_gateway(handler)

    response = _handle(gateway, {"model": "gpt-4.1"})

    assert response.status_code == 500
    body = json.loads(response.body)
    assert body["error"]["type"] == "proxy_error"
    assert "upstream unreachable" in body["error"]["message"]
    assert metrics.summary() == {"total": 1, "success": 0, "errors": 1, "models": 1}


def test_credential_failure_is_surfaced_as_5xx_after_request_entry() -> None:
    gateway, upstream, metrics = _build_gateway(
        _json_ok, credentials=_StaticCredentials(fail=True)
    )

    response = _handle(gateway, {"model": "gpt-4.1"})

    assert 500 <= response.status_code < 600
    assert json.loads(response.body)["error"]["type"] == "credential_error"
    assert upstream.requests == []
    assert len(metrics.requests) == 1
    assert metrics.summary()["errors"] == 1


def test_missing_authorization_fails_before_request_entry() -> None:
    credentials = _StaticCredentials()
    gateway, upstream, metrics = _build_gateway(_json_ok, credentials=credentials)

    with pytest.raises(AuthError):
        _handle(gateway, {"model": "gpt-4.1"}, headers={})

    assert credentials.calls == 0
    assert upstream.requests == []
    assert metrics.requests == []
    assert metrics.responses == {}


@pytest.mark.parametrize(
    "body",
    [b"not json", b"[1, 2]", json.dumps({"messages": []}).encode()],
)
def test_invalid_bodies_are_rejected_without_metrics(body: bytes) -> None:
    gateway, _, metrics = _build_gateway(_json_ok)

    with pytest.raises(InvalidRequestError):
        _handle(gateway, body)

    assert metrics.requests == []


def test_completion_endpoint_is_buffered_only() -> None:
    gateway, upstream, metrics = _build_gateway(_json_ok)

    response = _handle(
        gateway, {"model": "gpt-4.1", "prompt": "hi", "stream": True}, endpoint="completion"
    )

    assert response.status_code == 200
    assert not isinstance(response, StreamingResponse)
    assert str(upstream.requests[0].url) == f"{BASE_URL}/completions"
    assert upstream.payload()["stream"] is False
    assert metrics.requests[0].endpoint == "completion"


def test_streaming_relays_chunks_in_order_without_reframing() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=_iter(CHUNKS)
        )

    gateway, upstream, metrics = _build_gateway(handler)

    async def _run() -> tuple[StreamingResponse, list[bytes]]:
        response = await gateway.handle(
            endpoint="chat",
            headers=AUTH_HEADERS,
            body=json.dumps({"model": "gpt-4.1", "stream": True}).encode(),
        )
        assert isinstance(response, StreamingResponse)
        assert metrics.responses == {}
        return response, await _drain(response)

    response, chunks = asyncio.run(_run())

    assert chunks == CHUNKS
    assert response.media_type == "text/event-stream"
    assert response.headers["cache-control"] == "no-cache"
    assert upstream.requests[0].headers["accept"] == "text/event-stream"
    [event] = metrics.responses.values()
    assert event.outcome == "success"
    assert event.id == response.headers["x-request-id"]


def test_stream_error_after_headers_terminates_and_records_error() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_iter(CHUNKS[:1], httpx.ReadError("connection reset")),
        )

    gateway, _, metrics = _build_gateway(handler)
    received: list[bytes] = []

    async def _run() -> None:
        response = await gateway.handle(
            endpoint="chat",
            headers=AUTH_HEADERS,
            body=json.dumps({"model": "gpt-4.1", "stream": True}).encode(),
        )
        assert isinstance(response, StreamingResponse)
        async for chunk in response.body_iterator:
            received.append(chunk)  # type: ignore[arg-type]

    with pytest.raises(httpx.ReadError):
        asyncio.run(_run())

    assert received == CHUNKS[:1]
    [event] = metrics.responses.values()
    assert event.outcome == "error"
    assert "connection reset" in (event.error_detail or "")


def test_redirect_status_is_treated_as_upstream_error() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"location": "https://elsewhere.test/"})

    gateway, _, metrics = _build_gateway(handler)

    response = _handle(gateway, {"model": "gpt-4.1"})
    stream_response = _handle(gateway, {"model": "gpt-4.1", "stream": True})

    assert response.status_code == 302
    assert json.loads(response.body)["error"]["type"] == "api_error"
    assert stream_response.status_code == 302
    assert not isinstance(stream_response, StreamingResponse)
    assert metrics.summary() == {"total": 2, "success": 0, "errors": 2, "models": 1}


def test_stream_upstream_error_before_headers_is_relayed() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "bad token"}})

    gateway, _, metrics = _build_gateway(handler)

    response = _handle(gateway, {"model": "gpt-4.1", "stream": True})

    assert response.status_code == 401
    assert not isinstance(response, StreamingResponse)
    assert json.loads(response.body) == {"error": {"message": "bad token"}}
    assert metrics.summary()["errors"] == 1


def test_stream_connect_failure_returns_500() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    gateway, _, _ = _build_gateway(handler)

    response = _handle(gateway, {"model": "gpt-4.1", "stream": True})

    assert response.status_code == 500
    assert json.loads(response.body)["error"]["type"] == "proxy_error"


def _stalled_stream_gateway() -> tuple[ForwardingGateway, _StalledStream, MetricsAggregator]:
    stream = _StalledStream(CHUNKS[0])

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, stream=stream
        )

    gateway, _, metrics = _build_gateway(handler)
    return gateway, stream, metrics


def test_client_disconnect_cancels_relay_and_closes_upstream() -> None:
    gateway, stream, metrics = _stalled_stream_gateway()
    bodies: list[bytes] = []

    async def _run() -> None:
        response = await gateway.handle(
            endpoint="chat",
            headers=AUTH_HEADERS,
            body=json.dumps({"model": "gpt-4.1", "stream": True}).encode(),
        )
        assert isinstance(response, StreamingResponse)
        first_chunk_sent = asyncio.Event()

        async def receive() -> dict[str, Any]:
            await first_chunk_sent.wait()
            return {"type": "http.disconnect"}

        async def send(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.body" and message.get("body"):
                bodies.append(message["body"])
                first_chunk_sent.set()

        scope = {
            "type": "http",
            "method": "POST",
            "path": "/v1/chat/completions",
            "headers": [],
        }
        await response(scope, receive, send)
        await asyncio.sleep(0.05)

    asyncio.run(_run())

    assert bodies == [CHUNKS[0]]
    assert stream.closed is True
    [event] = metrics.responses.values()
    assert event.outcome == "error"
    assert event.error_detail == "client disconnected before stream completed"


def test_closing_relay_early_closes_upstream_and_records_one_response() -> None:
    gateway, stream, metrics = _stalled_stream_gateway()

    async def _run() -> None:
        response = await gateway.handle(
            endpoint="chat",
            headers=AUTH_HEADERS,
            body=json.dumps({"model": "gpt-4.1", "stream": True}).encode(),
        )
        assert isinstance(response, StreamingResponse)
        iterator = response.body_iterator
        first = await iterator.__anext__()
        assert first == CHUNKS[0]
        await iterator.aclose()  # type: ignore[attr-defined]

    asyncio.run(_run())

    assert stream.closed is True
    assert len(metrics.requests) == 1
    [event] = metrics.responses.values()
    assert event.outcome == "error"
    assert event.error_detail == "client disconnected before stream completed"
