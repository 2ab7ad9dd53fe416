"""Prometheus metrics for key lifecycle operations.

Exposes counters and histograms for:
- Unlock / lock transitions
- Remote unlock sessions and attempts
- Key rotations and their outcome
- Header backups
- KDF latency (the deliberately slow part of every unseal)
"""

import time
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, Gauge, Info, start_http_server


# ==================== Operation Counters ====================

VOLUME_OPERATIONS_TOTAL = Counter(
    "luksvault_volume_operations_total",
    "Total number of volume state transitions",
    ["operation", "status"],
)

UNLOCK_ATTEMPTS_TOTAL = Counter(
    "luksvault_unlock_attempts_total",
    "Unlock attempts by outcome",
    ["channel", "outcome"],
)

REMOTE_SESSIONS_TOTAL = Counter(
    "luksvault_remote_sessions_total",
    "Remote unlock sessions by final outcome",
    ["outcome"],
)

ROTATIONS_TOTAL = Counter(
    "luksvault_rotations_total",
    "Key slot rotations by outcome",
    ["trigger", "outcome"],
)

HEADER_BACKUPS_TOTAL = Counter(
    "luksvault_header_backups_total",
    "Header backup and restore operations",
    ["operation", "status"],
)

NOTIFICATION_FAILURES_TOTAL = Counter(
    "luksvault_notification_failures_total",
    "Notification deliveries that failed after retries",
    ["sink"],
)


# ==================== Latency Histograms ====================

KDF_LATENCY = Histogram(
    "luksvault_kdf_latency_seconds",
    "Latency of passphrase key derivation",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

OPERATION_LATENCY = Histogram(
    "luksvault_operation_latency_seconds",
    "Latency of volume operations",
    ["operation"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


# ==================== Gauges ====================

ACTIVE_REMOTE_SESSIONS = Gauge(
    "luksvault_remote_sessions_active",
    "Remote unlock sessions currently open",
)

PENDING_ROTATIONS = Gauge(
    "luksvault_pending_rotations",
    "Rotations scheduled or awaiting approval",
)


# ==================== Info ====================

BUILD_INFO = Info(
    "luksvault",
    "Key manager build information",
)


@contextmanager
def track_operation(operation: str):
    """Count and time a volume operation.

    Usage:
        with track_operation("unlock"):
            await backend.open(...)
    """
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        VOLUME_OPERATIONS_TOTAL.labels(operation=operation, status=status).inc()
        OPERATION_LATENCY.labels(operation=operation).observe(time.perf_counter() - start_time)


def start_metrics_server(port: int, version: str) -> None:
    """Expose /metrics for the daemon."""
    BUILD_INFO.info({"version": version})
    start_http_server(port)
