"""
Retention Sweeper — bounded, oldest-first pruning of append-only tables.

Thresholds (days): activities 30, health_checks 7, cost_records 365,
snitch_events 90, alerts 90 (resolved only; unresolved alerts are kept).
Each sweep deletes at most ``batch_size`` rows per table, so a large backlog
drains over consecutive daily runs.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from clawwatch_engine.db.models import utcnow
from clawwatch_engine.db.store import RETENTION_TABLES, TelemetryStore
from clawwatch_engine.exceptions import StoreError
from clawwatch_engine.metrics import METRICS, CollectorMetrics

logger = logging.getLogger("clawwatch.engine.retention")

BATCH_SIZE = 500

RETENTION_DAYS: dict[str, int] = {
    "activities": 30,
    "health_checks": 7,
    "cost_records": 365,
    "snitch_events": 90,
    "alerts": 90,
}


class RetentionSweeper:
    """Applies the retention policy through the store's delete_expired call."""

    def __init__(
        self,
        store: TelemetryStore,
        *,
        retention_days: dict[str, int] | None = None,
        batch_size: int = BATCH_SIZE,
        metrics: CollectorMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.retention_days = retention_days or dict(RETENTION_DAYS)
        self.batch_size = batch_size
        self.metrics = metrics or METRICS
        self._clock = clock

    async def sweep(self) -> dict[str, Any]:
        """Run one pass over every table; returns per-table counts and total."""
        now = self._clock()
        deleted: dict[str, int] = {}
        for table, days in self.retention_days.items():
            try:
                deleted[table] = await self._delete(table, now - timedelta(days=days))
            except StoreError as e:
                logger.error("Retention sweep of %s failed: %s", table, e)
                deleted[table] = 0

        total = sum(deleted.values())
        logger.info("Retention sweep deleted %d rows %s", total, deleted)
        return {"deleted": deleted, "total": total}

    async def manual_sweep(self, table: str, older_than_days: int) -> int:
        """Delete one batch from ``table`` with an explicit age threshold."""
        if table not in RETENTION_TABLES:
            raise ValueError(f"Unknown table {table!r}; expected one of {sorted(RETENTION_TABLES)}")
        if older_than_days < 0:
            raise ValueError("older_than_days must be >= 0")
        return await self._delete(table, self._clock() - timedelta(days=older_than_days))

    async def stats(self) -> dict[str, dict[str, Any]]:
        """Row count and oldest row per retained table, plus its policy."""
        stats = await self.store.table_stats()
        for table, info in stats.items():
            info["retention_days"] = self.retention_days.get(table)
        return stats

    async def _delete(self, table: str, cutoff: datetime) -> int:
        count = await self.store.delete_expired(table, cutoff, self.batch_size)
        if count:
            self.metrics.retention_deleted_total.labels(table=table).inc(count)
            logger.debug("Deleted %d rows from %s older than %s", count, table, cutoff.isoformat())
        return count
