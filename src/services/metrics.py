"""CloudWatch custom metrics emitter with background batching.

Publishes per-call metrics (count, latency, errors) for the external
services a chat session talks to:

* ``ai_proxy``            – the LLM proxy (chat stream, summary, sentiment, health)
* ``connect_auth``        – the contact-center auth API that starts a chat
* ``connect_participant`` – the Amazon Connect participant REST API

plus two stream-level counters: provider fallbacks and undecodable SSE
payloads.

Design
------
* Data points are collected in a thread-safe in-memory buffer.
* When ``METRICS_ENABLED=true`` a daemon thread flushes the buffer every
  ``FLUSH_INTERVAL_SECONDS`` and once more at interpreter exit.
* Otherwise data points are only logged at DEBUG level and dropped on flush.

Usage
-----
>>> from src.services.metrics import metrics
>>> metrics.record_success("connect_participant", "POST /participant/message", latency_ms=84.2)
>>> metrics.record_fallback("claude", "openai")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "ConnectHandoverChat"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch limit per PutMetricData call


def _datum(
    name: str,
    dimensions: list[dict[str, str]],
    value: float,
    unit: str,
    timestamp: datetime,
) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": dimensions,
        "Timestamp": timestamp,
        "Value": value,
        "Unit": unit,
    }


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self, enabled: bool | None = None) -> None:
        if enabled is None:
            enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    # ── Lazy CloudWatch client ────────────────────────────────────────

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful external call."""
        now = datetime.now(UTC)
        service_dim = {"Name": "Service", "Value": service}
        self._extend(
            _datum(
                "ExternalAPI/RequestCount",
                [service_dim, {"Name": "Status", "Value": "success"}],
                1, "Count", now,
            ),
            _datum(
                "ExternalAPI/Latency",
                [service_dim, {"Name": "Operation", "Value": operation}],
                latency_ms, "Milliseconds", now,
            ),
        )
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed external call.  Latency is only kept when known."""
        now = datetime.now(UTC)
        service_dim = {"Name": "Service", "Value": service}
        data = [
            _datum(
                "ExternalAPI/RequestCount",
                [service_dim, {"Name": "Status", "Value": "failure"}],
                1, "Count", now,
            ),
            _datum(
                "ExternalAPI/ErrorCount",
                [service_dim, {"Name": "ErrorType", "Value": error_type}],
                1, "Count", now,
            ),
        ]
        if latency_ms > 0:
            data.append(
                _datum(
                    "ExternalAPI/Latency",
                    [service_dim, {"Name": "Operation", "Value": operation}],
                    latency_ms, "Milliseconds", now,
                )
            )
        self._extend(*data)
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    def record_fallback(self, from_provider: str, to_provider: str) -> None:
        """Count a switch from the primary to the fallback LLM provider."""
        self._extend(
            _datum(
                "AIStream/FallbackCount",
                [
                    {"Name": "FromProvider", "Value": from_provider},
                    {"Name": "ToProvider", "Value": to_provider},
                ],
                1, "Count", datetime.now(UTC),
            )
        )
        logger.debug("Metric: fallback %s -> %s", from_provider, to_provider)

    def record_malformed_chunk(self, provider: str) -> None:
        """Count an SSE payload that could not be decoded."""
        self._extend(
            _datum(
                "AIStream/MalformedChunkCount",
                [{"Name": "Provider", "Value": provider}],
                1, "Count", datetime.now(UTC),
            )
        )

    def pending(self) -> int:
        """Number of buffered data points not yet flushed."""
        with self._lock:
            return len(self._buffer)

    def flush(self) -> int:
        """Send buffered data points to CloudWatch.  Returns the count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    def _extend(self, *data: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.extend(data)

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        thread = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        thread.start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
