"""
Session Poller — periodic ``sessions_list`` discovery while authenticated.

Started by the Connection Manager on auth and cancelled on close. Polls once
immediately, then every ``session_poll_interval_seconds``. Each poll upserts
the gateway's sessions (creating agents on first sight) and records one
health check per agent with the poll round-trip as its response time.
"""
import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable

from clawwatch_engine.db.models import utcnow
from clawwatch_engine.db.store import TelemetryStore
from clawwatch_engine.exceptions import CollectorError
from clawwatch_engine.gateway import GatewayClient
from clawwatch_engine.jsonl_io import parse_timestamp
from clawwatch_engine.metrics import METRICS, CollectorMetrics
from clawwatch_engine.normalizer import infer_agent_name
from clawwatch_engine.records import HealthSample, SessionInfo

logger = logging.getLogger("clawwatch.engine.poller")


def map_session(raw: dict[str, Any], now: datetime) -> SessionInfo | None:
    """Map one gateway session onto canonical fields; None without a key."""
    key = raw.get("key")
    if not key:
        return None
    channel = raw.get("channel")
    if channel == "unknown":
        channel = None
    try:
        total_tokens = int(raw.get("totalTokens") or 0)
    except (TypeError, ValueError):
        total_tokens = 0
    return SessionInfo(
        key=str(key),
        agent=infer_agent_name(str(key)),
        kind=str(raw.get("kind") or "unknown"),
        updated_at=parse_timestamp(raw.get("updatedAt")) or now,
        total_tokens=total_tokens,
        channel=channel,
        display_name=raw.get("displayName"),
        model=raw.get("model"),
    )


def health_samples(sessions: list[SessionInfo], now: datetime, latency_ms: int) -> list[HealthSample]:
    """One sample per agent: active vs total sessions (5-minute staleness rule)."""
    totals: dict[str, int] = defaultdict(int)
    active: dict[str, int] = defaultdict(int)
    for info in sessions:
        totals[info.agent] += 1
        if info.is_active(now):
            active[info.agent] += 1
    return [
        HealthSample(
            agent=agent,
            response_time_ms=latency_ms,
            active_session_count=active[agent],
            total_session_count=total,
        )
        for agent, total in totals.items()
    ]


class SessionPoller:
    """Runs ``poll_once`` on an interval as a cancellable asyncio task."""

    def __init__(
        self,
        gateway: GatewayClient,
        store: TelemetryStore,
        *,
        interval_seconds: float = 60,
        gateway_url: str = "",
        metrics: CollectorMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.store = store
        self.interval_seconds = interval_seconds
        self.gateway_url = gateway_url
        self.metrics = metrics or METRICS
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="session-poller")
        logger.info("Session poller started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Session poller stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error("Unexpected session poll failure: %s", e, exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    async def poll_once(self) -> int:
        """Fetch, upsert and health-check sessions. Returns sessions ingested.

        Collector errors are logged and swallowed so the next tick runs.
        """
        try:
            start = time.monotonic()
            result = await self.gateway.invoke("sessions_list", {"messageLimit": 0})
            latency_ms = int((time.monotonic() - start) * 1000)

            details = (result or {}).get("details") if isinstance(result, dict) else None
            raw_sessions = (details or {}).get("sessions") or []
            if not raw_sessions:
                logger.info("No sessions found")
                return 0

            now = self._clock()
            sessions = [s for s in (map_session(r, now) for r in raw_sessions if isinstance(r, dict)) if s]
            ingested = await self.store.upsert_sessions(self.gateway_url, sessions, now=now)
            self.metrics.sessions_polled_total.inc(ingested)

            for sample in health_samples(sessions, now, latency_ms):
                await self.store.record_health_check(sample, now=now)

            logger.info("Ingested %d sessions (%dms)", ingested, latency_ms)
            return ingested
        except CollectorError as e:
            logger.error("Session poll failed: %s", e)
            self.metrics.errors_total.labels(error_type=type(e).__name__, component="poller").inc()
            return 0
