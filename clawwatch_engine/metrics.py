"""
Prometheus metrics for the ClawWatch collector.

Exposed on a dedicated HTTP port when METRICS_PORT is set.
All counters, histograms, and gauges follow Prometheus naming conventions.

Usage:
    from clawwatch_engine.metrics import METRICS, start_metrics_server

    await start_metrics_server(port=9108)
    METRICS.frames_total.labels(event="agent").inc()
"""
import os
import sys
import time

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
    REGISTRY,
)


# ---------------------------------------------------------------------------
# Registry (tests pass a fresh CollectorRegistry)
# ---------------------------------------------------------------------------

registry = REGISTRY


# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

class CollectorMetrics:
    """All collector metrics in one place."""

    def __init__(self, reg: CollectorRegistry = registry):
        # -- System info --
        self.build_info = Info(
            "clawwatch_build",
            "ClawWatch collector build information",
            registry=reg,
        )

        # -- Gateway connection --
        self.frames_total = Counter(
            "clawwatch_gateway_frames_total",
            "Inbound gateway frames by event name",
            ["event"],
            registry=reg,
        )

        self.reconnects_total = Counter(
            "clawwatch_gateway_reconnects_total",
            "Reconnect attempts scheduled after a closed or failed connection",
            registry=reg,
        )

        self.gateway_connected = Gauge(
            "clawwatch_gateway_connected",
            "1 while an authenticated gateway connection is open",
            registry=reg,
        )

        self.rpc_duration = Histogram(
            "clawwatch_gateway_rpc_duration_seconds",
            "Gateway tool invocation round-trip time",
            ["tool", "status"],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=reg,
        )

        # -- Ingestion --
        self.cost_entries_total = Counter(
            "clawwatch_cost_entries_total",
            "Cost entries by outcome (ingested, duplicate, stale, unknown_agent)",
            ["source", "outcome"],
            registry=reg,
        )

        self.cost_dollars_total = Counter(
            "clawwatch_cost_dollars_total",
            "Dollars booked from accepted cost entries",
            ["model"],
            registry=reg,
        )

        self.activities_total = Counter(
            "clawwatch_activities_total",
            "Activities written to the store",
            ["type"],
            registry=reg,
        )

        self.transcript_lines_total = Counter(
            "clawwatch_transcript_lines_total",
            "Transcript lines read by the tailer",
            ["outcome"],
            registry=reg,
        )

        self.dedup_keys = Gauge(
            "clawwatch_dedup_keys",
            "Cost dedup keys currently remembered",
            registry=reg,
        )

        # -- Sessions --
        self.sessions_polled_total = Counter(
            "clawwatch_sessions_polled_total",
            "Sessions upserted by the session poller",
            registry=reg,
        )

        # -- Alerts --
        self.alerts_fired_total = Counter(
            "clawwatch_alerts_fired_total",
            "Alerts fired by rule type and severity",
            ["rule_type", "severity"],
            registry=reg,
        )

        # -- Retention --
        self.retention_deleted_total = Counter(
            "clawwatch_retention_deleted_total",
            "Rows deleted by the retention sweeper",
            ["table"],
            registry=reg,
        )

        # -- Scheduler --
        self.job_executions_total = Counter(
            "clawwatch_job_executions_total",
            "Scheduled job executions",
            ["job_id", "status"],
            registry=reg,
        )

        self.job_duration = Histogram(
            "clawwatch_job_duration_seconds",
            "Scheduled job execution duration",
            ["job_id"],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0],
            registry=reg,
        )

        # -- Error metrics --
        self.errors_total = Counter(
            "clawwatch_errors_total",
            "Total errors by type",
            ["error_type", "component"],
            registry=reg,
        )


# Singleton
METRICS = CollectorMetrics()


# ---------------------------------------------------------------------------
# Helper decorators
# ---------------------------------------------------------------------------

def track_job(job_id: str, metrics: CollectorMetrics | None = None):
    """Decorator to track scheduled job metrics.

    Exceptions are counted and re-raised; the scheduler decides whether a
    failing job is fatal.
    """
    def decorator(func):
        async def wrapper(*args, **kwargs):
            m = metrics or METRICS
            start = time.monotonic()
            status = "success"
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                status = "error"
                m.errors_total.labels(
                    error_type=type(e).__name__,
                    component=job_id,
                ).inc()
                raise
            finally:
                m.job_executions_total.labels(job_id=job_id, status=status).inc()
                m.job_duration.labels(job_id=job_id).observe(time.monotonic() - start)
        return wrapper
    return decorator


# ---------------------------------------------------------------------------
# Metrics server
# ---------------------------------------------------------------------------

async def start_metrics_server(port: int) -> None:
    """Start the Prometheus metrics HTTP server on a dedicated port."""
    start_http_server(port, registry=registry)

    METRICS.build_info.info({
        "version": os.getenv("CLAWWATCH_VERSION", "0.1.0"),
        "python": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        "component": "collector",
    })
