from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import httpx
from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.staticfiles import StaticFiles

from codex_oauth_proxy.gateway.credentials import CredentialCache
from codex_oauth_proxy.gateway.errors import PayloadTooLargeError, ProxyError
from codex_oauth_proxy.gateway.forwarding import ForwardingGateway, GenerationDefaults
from codex_oauth_proxy.runtime.metrics import Endpoint, MetricsAggregator
from codex_oauth_proxy.runtime.telemetry import TelemetryBroadcaster
from codex_oauth_proxy.settings import Settings, get_settings

logger = logging.getLogger("uvicorn.error")

_QUIET_PATH_PREFIXES = ("/dashboard", "/api/metrics")


def _mount_dashboard(app_obj: FastAPI, settings: Settings) -> None:
    directory = Path(settings.dashboard_dir)
    if not directory.is_dir():
        logger.info("dashboard_assets_missing path=%s", directory)
        return
    if any(getattr(route, "name", None) == "dashboard" for route in app_obj.routes):
        return
    app_obj.mount(
        "/dashboard",
        StaticFiles(directory=str(directory), html=True),
        name="dashboard",
    )


def _log_startup_banner(settings: Settings, credentials: CredentialCache) -> None:
    logger.info(
        (
            "startup complete proxy_url=http://localhost:%d/v1 "
            "dashboard_url=http://localhost:%d/dashboard api_key=any-non-empty-value "
            "token_refresh_minutes=%.0f"
        ),
        settings.proxy_port,
        settings.proxy_port,
        credentials.refresh_interval_seconds / 60.0,
    )


@asynccontextmanager
async def lifespan(app_obj: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    missing = settings.missing_required
    if missing:
        logger.error("startup_failed reason=missing_settings missing=%s", ",".join(missing))
    settings.require_complete()

    transport: httpx.AsyncBaseTransport | None = getattr(
        app_obj.state, "http_transport", None
    )
    credentials = CredentialCache(
        client_id=str(settings.client_id),
        client_secret=str(settings.client_secret),
        token_url=str(settings.token_url),
        ca_bundle_path=settings.ca_bundle_path,
        refresh_interval_seconds=settings.token_refresh_interval_seconds,
        timeout_seconds=settings.token_fetch_timeout_seconds,
        transport=transport,
    )
    logger.info("oauth_initial_token_fetch token_url=%s", settings.token_url)
    try:
        await credentials.initialize()
    except Exception:
        logger.error("startup_failed reason=initial_token_fetch_failed")
        await credentials.close()
        raise

    metrics = MetricsAggregator(capacity=settings.metrics_capacity)
    gateway = ForwardingGateway(
        base_url=str(settings.api_base_url),
        credentials=credentials,
        metrics=metrics,
        defaults=GenerationDefaults.from_settings(settings),
        timeout_seconds=settings.upstream_timeout_seconds,
        verify=credentials.tls_verify,
        transport=transport,
        served_by=settings.served_by,
    )
    telemetry = TelemetryBroadcaster(
        metrics=metrics,
        credentials=credentials,
        interval_seconds=settings.telemetry_interval_seconds,
    )
    await telemetry.start()

    app_obj.state.settings = settings
    app_obj.state.started_at = time.monotonic()
    app_obj.state.credentials = credentials
    app_obj.state.metrics = metrics
    app_obj.state.gateway = gateway
    app_obj.state.telemetry = telemetry
    app_obj.state.request_size_limit = settings.request_size_limit_bytes
    _mount_dashboard(app_obj, settings)
    _log_startup_banner(settings, credentials)
    try:
        yield
    finally:
        await telemetry.stop()
        await gateway.close()
        await credentials.close()
        logger.info("shutdown complete")


app = FastAPI(
    title="Codex OAuth Proxy",
    description="OpenAI-compatible proxy that attaches a managed OAuth credential.",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.middleware("http")
async def request_guard_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    path = request.url.path
    if not path.startswith(_QUIET_PATH_PREFIXES):
        logger.info("http_request method=%s path=%s", request.method, path)

    limit: int | None = getattr(app.state, "request_size_limit", None)
    content_length = request.headers.get("content-length")
    if limit is not None and content_length and content_length.isdigit():
        if int(content_length) > limit:
            logger.warning(
                "request_rejected reason=payload_too_large path=%s content_length=%s limit=%d",
                path,
                content_length,
                limit,
            )
            return PayloadTooLargeError(
                f"Request body exceeds the {limit} byte limit."
            ).to_response()

    return await call_next(request)


def _process_uptime() -> int:
    started_at: float | None = getattr(app.state, "started_at", None)
    if started_at is None:
        return 0
    return int(time.monotonic() - started_at)


def _oauth_status() -> dict[str, Any]:
    credentials: CredentialCache = app.state.credentials
    return {
        "hasToken": credentials.has_valid_token(),
        "nextRefresh": credentials.next_refresh_info(),
    }


@app.get("/health")
async def health() -> dict[str, Any]:
    credentials: CredentialCache = app.state.credentials
    return {
        "status": "running",
        "uptime": _process_uptime(),
        "token_status": "valid" if credentials.has_valid_token() else "expired",
    }


async def _read_limited_body(request: Request) -> bytes:
    limit: int | None = getattr(app.state, "request_size_limit", None)
    if limit is None:
        return await request.body()
    chunks: list[bytes] = []
    received = 0
    # Chunked uploads carry no Content-Length, so count what is actually read.
    async for chunk in request.stream():
        received += len(chunk)
        if received > limit:
            logger.warning(
                "request_rejected reason=payload_too_large path=%s received=%d limit=%d",
                request.url.path,
                received,
                limit,
            )
            raise PayloadTooLargeError(f"Request body exceeds the {limit} byte limit.")
        chunks.append(chunk)
    return b"".join(chunks)


async def _forward(request: Request, endpoint: Endpoint) -> Response:
    gateway: ForwardingGateway = app.state.gateway
    body = await _read_limited_body(request)
    return await gateway.handle(endpoint=endpoint, headers=request.headers, body=body)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _forward(request, "chat")


@app.post("/v1/completions")
async def completions(request: Request) -> Response:
    return await _forward(request, "completion")


@app.get("/api/metrics")
async def api_metrics() -> dict[str, Any]:
    metrics: MetricsAggregator = app.state.metrics
    return metrics.snapshot().to_dict()


@app.get("/api/status")
async def api_status() -> dict[str, Any]:
    settings: Settings = app.state.settings
    metrics: MetricsAggregator = app.state.metrics
    return {
        "proxy": {
            "status": "running",
            "port": settings.proxy_port,
            "uptime": _process_uptime(),
        },
        "oauth": _oauth_status(),
        "metrics": metrics.summary(),
    }


@app.websocket("/ws")
async def telemetry_socket(websocket: WebSocket) -> None:
    telemetry: TelemetryBroadcaster = app.state.telemetry
    await telemetry.serve(websocket)


@app.exception_handler(ProxyError)
async def proxy_error_handler(_: Request, exc: ProxyError) -> Response:
    return exc.to_response()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "codex_oauth_proxy.main:app",
        host=settings.proxy_host,
        port=settings.proxy_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
