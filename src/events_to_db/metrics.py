"""
Prometheus metrics for the relay.

Focused on essential metrics:
- Events received and dropped by the subscription filter
- Batches and rows written, write latency, failed writes
- Outstanding batches (backpressure)
- Driver state and resubscriptions
"""

import errno
import logging
import socket

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

logger = logging.getLogger(__name__)

events_received_total = Counter(
    "events_to_db_events_received_total",
    "Events read from the event service",
)

events_filtered_total = Counter(
    "events_to_db_events_filtered_total",
    "Events dropped because no subscription matched",
)

batches_written_total = Counter(
    "events_to_db_batches_written_total",
    "Batches committed to the sink",
)

rows_written_total = Counter(
    "events_to_db_rows_written_total",
    "Rows sent to the sink, including already present keys",
)

rows_inserted_total = Counter(
    "events_to_db_rows_inserted_total",
    "Rows newly inserted into the sink",
)

write_failures_total = Counter(
    "events_to_db_write_failures_total",
    "Failed batch write attempts",
    ["error_category"],
)

write_duration_seconds = Histogram(
    "events_to_db_write_duration_seconds",
    "Time to commit one batch",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

outstanding_batches = Gauge(
    "events_to_db_outstanding_batches",
    "Batches taken from the accumulator but not yet committed",
)

current_batch_size = Gauge(
    "events_to_db_current_batch_size",
    "Events in the batch being accumulated",
)

resubscriptions_total = Counter(
    "events_to_db_resubscriptions_total",
    "Subscriptions opened after the first one",
)

driver_state = Gauge(
    "events_to_db_driver_state",
    "1 for the state the pipeline driver is in, 0 otherwise",
    ["state"],
)


def record_state(state: str, all_states: list[str]) -> None:
    for name in all_states:
        driver_state.labels(state=name).set(1 if name == state else 0)


def start_metrics_server(preferred_port: int, registry: CollectorRegistry = REGISTRY) -> int:
    """Start Prometheus metrics server with automatic port fallback.
    Returns actual port number that the server is listening on."""
    try:
        start_http_server(preferred_port, registry=registry)
        return preferred_port
    except OSError as e:
        if e.errno != errno.EADDRINUSE:
            raise
        logger.info(f"Port {preferred_port} already in use, finding available port")

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("", 0))
            available_port = s.getsockname()[1]

        start_http_server(available_port, registry=registry)
        return available_port
