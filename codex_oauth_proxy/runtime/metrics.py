from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from codex_oauth_proxy.runtime.bounded_maps import BoundedSequence, BoundedValueMap

Endpoint = Literal["chat", "completion"]
Outcome = Literal["success", "error"]

RECENT_REQUESTS_LIMIT = 20
HISTOGRAM_HOURS = 24


@dataclass(frozen=True, slots=True)
class RequestEvent:
    id: str
    model: str
    endpoint: Endpoint
    submitted_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "model": self.model,
            "endpoint": self.endpoint,
            "timestamp": self.submitted_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class ResponseEvent:
    id: str
    duration_ms: int
    outcome: Outcome
    error_detail: str | None = None


@dataclass(slots=True)
class MetricsSnapshot:
    uptime: int
    total_requests: int
    success_count: int
    error_count: int
    success_rate: float
    avg_response_time: int
    model_usage: dict[str, int]
    recent_requests: list[RequestEvent]
    hourly_counts: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "uptime": self.uptime,
            "totalRequests": self.total_requests,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "successRate": self.success_rate,
            "avgResponseTime": self.avg_response_time,
            "modelUsage": dict(self.model_usage),
            "recentRequests": [event.to_dict() for event in self.recent_requests],
            "hourlyCounts": list(self.hourly_counts),
        }


def _utc_now() -> datetime:
    return datetime.now(UTC)


class MetricsAggregator:
    def __init__(
        self,
        *,
        capacity: int = 100,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._clock = clock
        self._started_monotonic = time.monotonic()
        self._requests: BoundedSequence[RequestEvent] = BoundedSequence(capacity)
        self._responses: BoundedValueMap[str, ResponseEvent] = BoundedValueMap(
            capacity
        )
        self._model_counts: dict[str, int] = {}
        self._success_count = 0
        self._error_count = 0
        self._total_duration_ms = 0

    @property
    def requests(self) -> list[RequestEvent]:
        return list(self._requests)

    @property
    def responses(self) -> dict[str, ResponseEvent]:
        return self._responses.to_dict()

    @property
    def uptime_seconds(self) -> int:
        return int(time.monotonic() - self._started_monotonic)

    def now(self) -> datetime:
        return self._clock()

    def record_request(self, event: RequestEvent) -> None:
        self._requests.append(event)
        if event.model:
            self._model_counts[event.model] = self._model_counts.get(event.model, 0) + 1

    def record_response(self, event: ResponseEvent) -> None:
        self._responses.set(event.id, event)
        if event.outcome == "success":
            self._success_count += 1
        else:
            self._error_count += 1
        self._total_duration_ms += max(0, int(event.duration_ms))

    def snapshot(self) -> MetricsSnapshot:
        total = self._success_count + self._error_count
        success_rate = (
            round(self._success_count / total * 100.0, 1) if total > 0 else 0.0
        )
        avg_duration = round(self._total_duration_ms / total) if total > 0 else 0
        return MetricsSnapshot(
            uptime=self.uptime_seconds,
            total_requests=total,
            success_count=self._success_count,
            error_count=self._error_count,
            success_rate=success_rate,
            avg_response_time=int(avg_duration),
            model_usage=dict(self._model_counts),
            recent_requests=self._requests.latest(RECENT_REQUESTS_LIMIT),
            hourly_counts=self._hourly_counts(),
        )

    def summary(self) -> dict[str, int]:
        return {
            "total": self._success_count + self._error_count,
            "success": self._success_count,
            "errors": self._error_count,
            "models": len(self._model_counts),
        }

    def reset(self) -> None:
        self._requests.clear()
        self._responses.clear()
        self._model_counts = {}
        self._success_count = 0
        self._error_count = 0
        self._total_duration_ms = 0

    def _hourly_counts(self) -> list[dict[str, Any]]:
        current_hour = self._clock().astimezone(UTC).replace(
            minute=0, second=0, microsecond=0
        )
        buckets: dict[datetime, int] = {
            current_hour - timedelta(hours=offset): 0
            for offset in range(HISTOGRAM_HOURS - 1, -1, -1)
        }
        for event in self._requests:
            hour = event.submitted_at.astimezone(UTC).replace(
                minute=0, second=0, microsecond=0
            )
            if hour in buckets:
                buckets[hour] += 1
        return [
            {"hour": f"{hour.hour:02d}:00", "count": count}
            for hour, count in buckets.items()
        ]
