import os
import time
import logging
from typing import Optional

from prometheus_client import Counter, Histogram, Gauge, start_http_server

logger = logging.getLogger(__name__)


# ----------
# Trigger path
# ----------

EVALUATION_TRIGGERED_TOTAL = Counter(
    "evaluation_triggered_total",
    "Evaluation triggers accepted and handed to the job queue",
    labelnames=("language",),
)

EVALUATION_REJECTED_TOTAL = Counter(
    "evaluation_rejected_total",
    "Evaluation triggers rejected before any background work",
    labelnames=("reason",),
)


# ----------
# Background runs
# ----------

EVALUATION_COMPLETED_TOTAL = Counter(
    "evaluation_completed_total",
    "Evaluation runs that produced a summary",
    labelnames=("overall_status",),
)

RUNNER_FAILURES_TOTAL = Counter(
    "runner_failures_total",
    "Failed calls to the remote code runner",
    labelnames=("kind",),  # timeout | unreachable | rejected | unexpected
)

EVALUATION_PERSIST_FAILURES_TOTAL = Counter(
    "evaluation_persist_failures_total",
    "Evaluation summaries that could not be written to the submission row",
)

EVALUATION_NOTIFICATIONS_TOTAL = Counter(
    "evaluation_notifications_total",
    "Result notifications published to the push channel",
    labelnames=("result",),  # delivered | no_subscribers | failed
)

EVALUATION_DURATION_SECONDS = Histogram(
    "evaluation_duration_seconds",
    "Wall time of one evaluation run, queue wait excluded",
    labelnames=("language",),
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

EVALUATIONS_IN_FLIGHT = Gauge(
    "evaluations_in_flight",
    "Evaluation runs currently executing in this process",
)


def init_fastapi_instrumentation(app) -> None:
    """Attach Prometheus request instrumentation and expose /metrics."""
    from prometheus_fastapi_instrumentator import Instrumentator
    from prometheus_client import REGISTRY

    Instrumentator(registry=REGISTRY).instrument(app).expose(app, include_in_schema=False)


def start_worker_metrics_server(port: Optional[int] = None) -> None:
    """Start a Prometheus metrics HTTP server for the worker process."""
    p = int(port or os.getenv("WORKER_METRICS_PORT", "9101"))
    try:
        start_http_server(p, addr="0.0.0.0")
        logger.info(f"Worker metrics server listening on port {p}")
    except OSError as e:
        # Port already in use; ignore to prevent crash in forked workers
        logger.error(f"Failed to start worker metrics server on port {p}: {str(e)}")


class DurationTimer:
    """Simple context manager to measure durations with perf_counter."""

    def __init__(self):
        self._start = 0.0
        self.seconds = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.seconds = max(0.0, time.perf_counter() - self._start)
        return False
