from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import psutil
from fastapi import WebSocket, WebSocketDisconnect

from codex_oauth_proxy.runtime.metrics import MetricsAggregator

if TYPE_CHECKING:
    from codex_oauth_proxy.gateway.credentials import CredentialCache

logger = logging.getLogger("uvicorn.error")


class ProcessStats:
    def __init__(self, process: psutil.Process | None = None) -> None:
        self._process = process or psutil.Process()

    def __call__(self) -> dict[str, Any]:
        with self._process.oneshot():
            memory = self._process.memory_info()
            return {
                "memory": {"rss": memory.rss, "vms": memory.vms},
                "cpu_percent": self._process.cpu_percent(interval=None),
                "uptime": int(max(0.0, time.time() - self._process.create_time())),
                "pid": self._process.pid,
            }


class TelemetryBroadcaster:
    def __init__(
        self,
        *,
        metrics: MetricsAggregator,
        credentials: CredentialCache,
        interval_seconds: float = 2.0,
        process_stats: Callable[[], dict[str, Any]] | None = None,
    ) -> None:
        self._metrics = metrics
        self._credentials = credentials
        self._interval_seconds = max(0.01, float(interval_seconds))
        self._process_stats = process_stats or ProcessStats()
        self._subscribers: set[WebSocket] = set()
        self._task: asyncio.Task[None] | None = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def build_update(self) -> dict[str, Any]:
        return {
            "type": "update",
            "timestamp": datetime.now(UTC).isoformat(),
            "metrics": self._metrics.snapshot().to_dict(),
            "oauth": {
                "hasToken": self._credentials.has_valid_token(),
                "nextRefresh": self._credentials.next_refresh_info(),
            },
            "system": self._process_stats(),
        }

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="telemetry-broadcast")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            finally:
                self._task = None
        subscribers = list(self._subscribers)
        self._subscribers.clear()
        for websocket in subscribers:
            try:
                await websocket.close()
            except Exception as exc:
                logger.debug("telemetry_subscriber_close_failed error=%s", str(exc))

    async def serve(self, websocket: WebSocket) -> None:
        await self.connect(websocket)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                text = message.get("text")
                if text is None:
                    logger.warning("telemetry_message_invalid reason=non_text_frame")
                    continue
                await self.handle_message(websocket, text)
        except WebSocketDisconnect:
            pass
        finally:
            self.disconnect(websocket)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._subscribers.add(websocket)
        logger.info("telemetry_subscriber_connected subscribers=%d", len(self._subscribers))
        await self._send(websocket, json.dumps(self.build_update()))

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self._subscribers:
            self._subscribers.discard(websocket)
            logger.info(
                "telemetry_subscriber_disconnected subscribers=%d",
                len(self._subscribers),
            )

    async def handle_message(self, websocket: WebSocket, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("telemetry_message_invalid reason=invalid_json")
            return
        message_type = message.get("type") if isinstance(message, dict) else None
        if message_type == "ping":
            await self._send(websocket, json.dumps({"type": "pong"}))
        elif message_type == "reset-metrics":
            self._metrics.reset()
            logger.info("telemetry_metrics_reset")
            await self.broadcast()
        else:
            logger.debug("telemetry_message_ignored type=%s", message_type)

    async def broadcast(self) -> int:
        if not self._subscribers:
            return 0
        message = json.dumps(self.build_update())
        subscribers = list(self._subscribers)
        results = await asyncio.gather(
            *(self._send(websocket, message) for websocket in subscribers)
        )
        return sum(1 for delivered in results if delivered)

    async def _send(self, websocket: WebSocket, message: str) -> bool:
        try:
            await websocket.send_text(message)
        except Exception as exc:
            self._subscribers.discard(websocket)
            logger.info("telemetry_subscriber_dropped error=%s", str(exc) or repr(exc))
            return False
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self.broadcast()
            except Exception as exc:
                logger.warning("telemetry_broadcast_failed error=%s", str(exc))
