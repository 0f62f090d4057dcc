"""Prometheus metrics for the host agent.

Exposes per-host timings for lifecycle, surgery, tuning and migration
operations. The /metrics endpoint serves these in Prometheus exposition
format.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


operation_duration = Histogram(
    "vmhost_operation_seconds",
    "Duration of host agent operations",
    ["operation", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

operation_errors = Counter(
    "vmhost_operation_errors_total",
    "Total failed host agent operations",
    ["operation"],
)

migrations_total = Counter(
    "vmhost_migrations_total",
    "Migration attempts by mode and outcome",
    ["mode", "outcome"],
)


@contextmanager
def track_operation(operation: str) -> Iterator[None]:
    """Record duration and outcome of the wrapped block."""
    start = time.monotonic()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        operation_errors.labels(operation=operation).inc()
        raise
    finally:
        operation_duration.labels(operation=operation, status=status).observe(
            time.monotonic() - start
        )


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
