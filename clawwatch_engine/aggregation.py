"""
Aggregation & Budget Engine.

Turns accepted cost entries into additive stats-cache patches and budget
spend. Key families per entry:

    today:<YYYY-MM-DD>
    hour:<epoch-ms-of-hour>
    model:<YYYY-MM-DD>:<model>
    agent:<name>:day:<YYYY-MM-DD>
    agent:<name>:hour:<epoch-ms-of-hour>

Budget periods roll over in UTC: an entry stamped at or after ``reset_at``
zeroes ``current_spend`` and advances ``reset_at`` to the next boundary after
the entry, before its cost is added.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence

from clawwatch_engine.db.models import Budget
from clawwatch_engine.db.store import TelemetryStore, round_cost
from clawwatch_engine.records import CostEntry, StatsDelta, to_epoch_ms

logger = logging.getLogger("clawwatch.engine.aggregation")

STATS_CHUNK_SIZE = 10
HOUR_MS = 3_600_000

BUDGET_PERIODS = ("hourly", "daily", "weekly", "monthly")


# ── Stats keys ───────────────────────────────────────────────────────────────

def stats_keys(entry: CostEntry) -> list[str]:
    ts = entry.timestamp.astimezone(timezone.utc)
    date_str = ts.strftime("%Y-%m-%d")
    hour_ms = (to_epoch_ms(ts) // HOUR_MS) * HOUR_MS
    return [
        f"today:{date_str}",
        f"hour:{hour_ms}",
        f"model:{date_str}:{entry.model}",
        f"agent:{entry.agent}:day:{date_str}",
        f"agent:{entry.agent}:hour:{hour_ms}",
    ]


def build_deltas(entries: Iterable[CostEntry]) -> dict[str, StatsDelta]:
    deltas: dict[str, StatsDelta] = {}
    for entry in entries:
        for key in stats_keys(entry):
            deltas.setdefault(key, StatsDelta()).add(entry)
    return deltas


# ── Budget periods ───────────────────────────────────────────────────────────

def _first_of_next_month(ts: datetime) -> datetime:
    if ts.month == 12:
        return ts.replace(year=ts.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return ts.replace(month=ts.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def next_reset_at(period: str, ts: datetime) -> datetime:
    """The first period boundary strictly after ``ts`` (UTC)."""
    ts = ts.astimezone(timezone.utc)
    if period == "hourly":
        return ts.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    midnight = ts.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "daily":
        return midnight + timedelta(days=1)
    if period == "weekly":
        # Weeks start on Monday
        return midnight + timedelta(days=7 - ts.weekday())
    if period == "monthly":
        return _first_of_next_month(ts)
    raise ValueError(f"Unknown budget period: {period!r}")


def period_start(period: str, reset_at: datetime) -> datetime:
    """Start of the period that ends at ``reset_at``."""
    reset_at = reset_at.astimezone(timezone.utc)
    if period == "hourly":
        return reset_at - timedelta(hours=1)
    if period == "daily":
        return reset_at - timedelta(days=1)
    if period == "weekly":
        return reset_at - timedelta(days=7)
    if period == "monthly":
        if reset_at.month == 1:
            return reset_at.replace(year=reset_at.year - 1, month=12)
        return reset_at.replace(month=reset_at.month - 1)
    raise ValueError(f"Unknown budget period: {period!r}")


def apply_to_budget(budget: Budget, entry: CostEntry) -> bool:
    """Book one entry against one budget. Returns True if the budget changed.

    Entries older than the budget's current period are not booked.
    """
    if entry.timestamp >= budget.reset_at:
        budget.current_spend = 0.0
        budget.reset_at = next_reset_at(budget.period, entry.timestamp)
    elif entry.timestamp < period_start(budget.period, budget.reset_at):
        return False
    budget.current_spend = round_cost((budget.current_spend or 0.0) + entry.cost)
    return True


def budget_applies(budget: Budget, agent_id: int) -> bool:
    return budget.agent_id is None or budget.agent_id == agent_id


def book_entry(budget: Budget, entry: CostEntry, agent_id: int) -> bool:
    if budget.period not in BUDGET_PERIODS or not budget_applies(budget, agent_id):
        return False
    return apply_to_budget(budget, entry)


# ── Engine ───────────────────────────────────────────────────────────────────

class AggregationEngine:
    """Books accepted cost entries into the stats cache and active budgets."""

    def __init__(self, store: TelemetryStore):
        self.store = store

    async def book(self, accepted: Sequence[tuple[CostEntry, int]]) -> dict[str, StatsDelta]:
        """Accumulate deltas for ``accepted`` entries and flush them.

        ``accepted`` pairs each persisted entry with its agent id. Entries are
        applied to budgets in timestamp order so rollover sees them in time.
        """
        if not accepted:
            return {}

        deltas = build_deltas(entry for entry, _ in accepted)

        await self.flush(deltas)
        modified = await self.store.book_budgets(
            sorted(accepted, key=lambda pair: pair[0].timestamp), book_entry,
        )
        if modified:
            logger.debug("Updated %d budgets", modified)
        return deltas

    async def flush(self, deltas: dict[str, StatsDelta]) -> None:
        keys = list(deltas)
        for i in range(0, len(keys), STATS_CHUNK_SIZE):
            chunk = {key: deltas[key] for key in keys[i:i + STATS_CHUNK_SIZE]}
            await self.store.apply_stats_deltas(chunk)
