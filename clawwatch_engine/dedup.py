"""
Dedup Guard — remembers which cost entries were already persisted.

Keys are ``(source, timestamp_ms, total_cost, record_id)``. The guard is an
insertion-ordered map of key → insertion time, so expiry only ever pops from
the oldest end. Keys are committed by the ingest pipeline *after* the cost
record is persisted; a failed insert leaves the entry eligible for retry.

Transcript entries are additionally gated by a watermark: anything stamped
before the last successful scan started (initially now − backfill window) is
skipped regardless of key novelty. Live entries are never watermark-gated.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Hashable, Iterable

from clawwatch_engine.records import CostEntry, to_epoch_ms

logger = logging.getLogger("clawwatch.engine.dedup")

DEFAULT_TTL = timedelta(days=7)
DEFAULT_BACKFILL = timedelta(days=3)
# Lines stamped shortly before a scan may still be mid-write when it runs.
WATERMARK_GRACE = timedelta(minutes=10)


class DedupGuard:
    """In-memory dedup state shared by the live channel and the transcript scanner."""

    def __init__(
        self,
        now: datetime,
        *,
        ttl: timedelta = DEFAULT_TTL,
        backfill: timedelta = DEFAULT_BACKFILL,
        grace: timedelta = WATERMARK_GRACE,
    ):
        self._seen: OrderedDict[Hashable, datetime] = OrderedDict()
        self._ttl = ttl
        self._grace = grace
        self.watermark: datetime = now - backfill

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._seen

    def seed(
        self,
        rows: Iterable[tuple[str, datetime, float, str | None]],
        now: datetime,
    ) -> int:
        """Rebuild keys from persisted cost records after a restart."""
        added = 0
        for source, timestamp, cost, record_id in rows:
            key = (source, to_epoch_ms(timestamp), cost, record_id)
            if key not in self._seen:
                self._seen[key] = now
                added += 1
        return added

    def is_stale(self, entry: CostEntry) -> bool:
        """True for transcript entries older than the scan watermark."""
        if entry.source.startswith("live:"):
            return False
        return entry.timestamp < self.watermark

    def is_duplicate(self, entry: CostEntry) -> bool:
        return entry.dedup_key in self._seen

    def commit(self, entries: Iterable[CostEntry], now: datetime) -> None:
        """Record keys of entries that were persisted."""
        for entry in entries:
            key = entry.dedup_key
            if key not in self._seen:
                self._seen[key] = now

    def purge(self, now: datetime) -> int:
        """Drop keys older than the TTL; returns how many were removed."""
        cutoff = now - self._ttl
        removed = 0
        while self._seen:
            key, inserted = next(iter(self._seen.items()))
            if inserted >= cutoff:
                break
            self._seen.popitem(last=False)
            removed += 1
        if removed:
            logger.debug("Purged %d dedup keys older than %s", removed, cutoff.isoformat())
        return removed

    def advance_watermark(self, scan_started_at: datetime) -> None:
        """Move the watermark after a successful transcript scan."""
        candidate = scan_started_at - self._grace
        if candidate > self.watermark:
            self.watermark = candidate
