from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock

from fastapi import Request

logger = logging.getLogger("counterhub")

_EVENT_HELP = {
    "mutations_applied": "Counter mutations applied",
    "mutation_failures": "Counter mutations that failed",
    "milestones_crossed": "Milestone thresholds crossed",
    "webhook_deliveries": "Webhook delivery outcomes",
    "bot_state_transitions": "Bot session state transitions",
    "chat_commands": "Chat commands handled",
    "realtime_dropped": "Realtime events dropped for slow subscribers",
    "fan_out_failures": "Notification channel failures",
    "platform_events": "Inbound platform events",
}


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._by_route_status: dict[tuple[str, int], int] = {}
        self._events: dict[tuple[str, tuple[tuple[str, str], ...]], int] = {}

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            key = (route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def record_event(self, name: str, **labels: object) -> None:
        key = (name, tuple(sorted((label, str(value)) for label, value in labels.items())))
        with self._lock:
            self._events[key] = self._events.get(key, 0) + 1

    def event_count(self, name: str, **labels: object) -> int:
        wanted = {label: str(value) for label, value in labels.items()}
        with self._lock:
            return sum(
                count
                for (event, event_labels), count in self._events.items()
                if event == name and wanted.items() <= dict(event_labels).items()
            )

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        avg_latency = (
            snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0
        )
        lines = [
            "# HELP counterhub_requests_total Total HTTP requests",
            "# TYPE counterhub_requests_total counter",
            f"counterhub_requests_total {snap.requests_total}",
            "# HELP counterhub_requests_5xx_total Total 5xx HTTP requests",
            "# TYPE counterhub_requests_5xx_total counter",
            f"counterhub_requests_5xx_total {snap.requests_5xx}",
            "# HELP counterhub_request_avg_latency_ms Average request latency ms",
            "# TYPE counterhub_request_avg_latency_ms gauge",
            f"counterhub_request_avg_latency_ms {avg_latency:.2f}",
        ]
        with self._lock:
            for (route, status_code), count in sorted(self._by_route_status.items()):
                lines.append(
                    'counterhub_route_requests_total'
                    f'{{route="{route}",status="{status_code}"}} {count}'
                )
            seen: set[str] = set()
            for (name, labels), count in sorted(self._events.items()):
                metric = f"counterhub_{name}_total"
                if name not in seen:
                    seen.add(name)
                    lines.append(f"# HELP {metric} {_EVENT_HELP.get(name, name)}")
                    lines.append(f"# TYPE {metric} counter")
                rendered = ",".join(f'{label}="{value}"' for label, value in labels)
                lines.append(f"{metric}{{{rendered}}} {count}" if rendered else f"{metric} {count}")
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    path = request.url.path
    try:
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=response.status_code, latency_ms=latency_ms)
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.2f",
            request.method,
            path,
            response.status_code,
            latency_ms,
        )
        return response
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            path,
            latency_ms,
        )
        raise
