"""
Ingest pipeline — dedup, persistence and aggregation for normalized batches.

Shared by the live gateway channel (one event at a time) and the transcript
scanner (one file pass at a time), so both paths go through the same Dedup
Guard.

Per batch:
  1. purge expired dedup keys
  2. drop stale (pre-watermark transcript) and already-seen cost entries
  3. insert cost records in chunks of 25, committing dedup keys per chunk
  4. book accepted entries into the stats cache and budgets
  5. insert the most recent 20 activities
  6. record health samples
"""
import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable

import structlog

from clawwatch_engine.aggregation import AggregationEngine
from clawwatch_engine.db.models import utcnow
from clawwatch_engine.db.store import TelemetryStore
from clawwatch_engine.dedup import DedupGuard
from clawwatch_engine.exceptions import StoreError
from clawwatch_engine.metrics import METRICS, CollectorMetrics
from clawwatch_engine.records import CostEntry, NormalizedBatch

logger = logging.getLogger("clawwatch.engine.ingest")

COST_CHUNK_SIZE = 25
ACTIVITY_CAP = 20


@dataclass
class IngestResult:
    costs_ingested: int = 0
    duplicates: int = 0
    stale: int = 0
    unknown_agent: int = 0
    activities: int = 0
    health_checks: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def _source_kind(entry: CostEntry) -> str:
    return "live" if entry.source.startswith("live:") else "transcript"


class Ingestor:
    """Single writer for cost, activity and health records."""

    def __init__(
        self,
        store: TelemetryStore,
        dedup: DedupGuard,
        *,
        aggregation: AggregationEngine | None = None,
        metrics: CollectorMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.dedup = dedup
        self.aggregation = aggregation or AggregationEngine(store)
        self.metrics = metrics or METRICS
        self._clock = clock
        # Live dispatcher and transcript scan share this ingestor
        self._lock = asyncio.Lock()

    def _filter_costs(self, costs: list[CostEntry], result: IngestResult) -> list[CostEntry]:
        fresh: list[CostEntry] = []
        batch_keys = set()
        for entry in costs:
            if self.dedup.is_stale(entry):
                result.stale += 1
                self.metrics.cost_entries_total.labels(source=_source_kind(entry), outcome="stale").inc()
                continue
            key = entry.dedup_key
            if key in batch_keys or self.dedup.is_duplicate(entry):
                result.duplicates += 1
                self.metrics.cost_entries_total.labels(source=_source_kind(entry), outcome="duplicate").inc()
                continue
            batch_keys.add(key)
            fresh.append(entry)
        return fresh

    async def ingest(self, batch: NormalizedBatch) -> IngestResult:
        """Persist one normalized batch.

        StoreError from cost insertion propagates after already-persisted
        chunks have been booked; entries of the failed chunk keep their
        dedup eligibility so a later pass can retry them.
        """
        result = IngestResult()
        async with self._lock:
            now = self._clock()
            self.dedup.purge(now)

            fresh = self._filter_costs(batch.costs, result)
            accepted: list[tuple[CostEntry, int]] = []
            try:
                for i in range(0, len(fresh), COST_CHUNK_SIZE):
                    chunk = fresh[i:i + COST_CHUNK_SIZE]
                    stored = await self.store.insert_cost_records(chunk, now=now)
                    self.dedup.commit((entry for entry, _ in stored), now)
                    accepted.extend(stored)
                    result.unknown_agent += len(chunk) - len(stored)
            finally:
                if accepted:
                    await self.aggregation.book(accepted)
                self._count_costs(accepted, result)

        if batch.activities:
            recent = batch.activities[-ACTIVITY_CAP:]
            result.activities = await self.store.insert_activities(recent, now=now)
            for activity in recent:
                self.metrics.activities_total.labels(type=activity.type).inc()

        for sample in batch.health:
            try:
                if await self.store.record_health_check(sample, now=now):
                    result.health_checks += 1
            except StoreError as e:
                logger.error("Health check for %s failed: %s", sample.agent, e)

        if result.costs_ingested or result.activities or result.unknown_agent:
            structlog.get_logger().info("ingest_batch", **result.as_dict())
        return result

    def _count_costs(self, accepted: list[tuple[CostEntry, int]], result: IngestResult) -> None:
        result.costs_ingested = len(accepted)
        for entry, _ in accepted:
            self.metrics.cost_entries_total.labels(source=_source_kind(entry), outcome="ingested").inc()
            self.metrics.cost_dollars_total.labels(model=entry.model).inc(max(entry.cost, 0.0))
        if result.unknown_agent:
            self.metrics.cost_entries_total.labels(source="any", outcome="unknown_agent").inc(result.unknown_agent)
        self.metrics.dedup_keys.set(len(self.dedup))
