"""
Canonical in-memory records passed between the collector stages.

Normalizer output (CostEntry, ActivityEntry, HealthSample, SessionInfo) is
handed to the store and the aggregation engine; StatsDelta is the additive
patch applied to one stats-cache row.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, get_args

ActivityType = Literal[
    "message_sent",
    "message_received",
    "tool_call",
    "session_started",
    "session_ended",
    "error",
    "heartbeat",
    "alert_fired",
]

ACTIVITY_TYPES: frozenset[str] = frozenset(get_args(ActivityType))

# A session counts as active if it was updated within this many seconds.
ACTIVE_SESSION_SECONDS = 300


def from_epoch_ms(ms: int | float) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def to_epoch_ms(dt: datetime) -> int:
    return int(round(dt.timestamp() * 1000))


@dataclass(frozen=True)
class CostEntry:
    """One billable LLM call, normalized from a live event or transcript line."""

    agent: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: float
    timestamp: datetime
    source: str
    session_key: str | None = None
    cache_read_tokens: int | None = None
    cache_write_tokens: int | None = None
    record_id: str | None = None

    @property
    def dedup_key(self) -> tuple[str, int, float, str | None]:
        return (self.source, to_epoch_ms(self.timestamp), self.cost, self.record_id)


@dataclass(frozen=True)
class ActivityEntry:
    agent: str
    type: str
    summary: str
    timestamp: datetime
    session_key: str | None = None
    channel: str | None = None
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class HealthSample:
    agent: str
    response_time_ms: int | None = None
    active_session_count: int = 0
    total_session_count: int = 0
    total_tokens_last_hour: int = 0
    cost_last_hour: float = 0.0
    error_count: int = 0

    @property
    def is_healthy(self) -> bool:
        return self.error_count < 5


@dataclass(frozen=True)
class SessionInfo:
    """A gateway session mapped to canonical Session fields."""

    key: str
    agent: str
    kind: str
    updated_at: datetime
    total_tokens: int = 0
    channel: str | None = None
    display_name: str | None = None
    model: str | None = None

    def is_active(self, now: datetime) -> bool:
        return (now - self.updated_at).total_seconds() < ACTIVE_SESSION_SECONDS


@dataclass
class StatsDelta:
    cost: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    requests: int = 0

    def add(self, entry: CostEntry) -> None:
        self.cost += entry.cost
        self.input_tokens += entry.input_tokens
        self.output_tokens += entry.output_tokens
        self.requests += 1


@dataclass
class NormalizedBatch:
    """Everything one raw event or one transcript pass produced."""

    costs: list[CostEntry] = field(default_factory=list)
    activities: list[ActivityEntry] = field(default_factory=list)
    health: list[HealthSample] = field(default_factory=list)

    def extend(self, other: "NormalizedBatch") -> None:
        self.costs.extend(other.costs)
        self.activities.extend(other.activities)
        self.health.extend(other.health)

    def __bool__(self) -> bool:
        return bool(self.costs or self.activities or self.health)
