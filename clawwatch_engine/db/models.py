"""
SQLAlchemy 2.0 ORM models for the ClawWatch telemetry store.

Canonical source of truth for all collector tables.
Driver: asyncpg (production) or aiosqlite (local runs, tests) via SQLAlchemy async.

Tables:
  - agents, sessions:           identity + rolling session state (upserted)
  - cost_records, activities,
    health_checks:              append-only ingestion records
  - stats_cache:                additive rolling aggregates
  - budgets, alert_rules,
    alerts, snitch_events:      alerting state
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON, BigInteger, Boolean, DateTime, Float, ForeignKey, Integer, String, Text, Index,
    UniqueConstraint, TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import inspect as sa_inspect


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as timezone-aware UTC.

    SQLite drops tzinfo on the way back; PostgreSQL keeps it. Either way the
    collector only ever sees aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")
IdType = BigInteger().with_variant(Integer(), "sqlite")


# ── Base ─────────────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """Shared base for all ClawWatch ORM models."""

    def to_dict(self) -> dict:
        """Serialize model instance to a JSON-friendly dict."""
        result: dict[str, Any] = {}
        mapper = sa_inspect(type(self))
        for attr in mapper.column_attrs:
            col_name = attr.columns[0].name
            val = getattr(self, attr.key)
            if isinstance(val, datetime):
                result[col_name] = val.isoformat()
            elif isinstance(val, Decimal):
                result[col_name] = float(val)
            else:
                result[col_name] = val
        return result


# ── Identity ─────────────────────────────────────────────────────────────────

class Agent(Base):
    __tablename__ = "agents"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    gateway_url: Mapped[str | None] = mapped_column(String(500))
    status: Mapped[str] = mapped_column(String(20), default="online")
    last_heartbeat: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    last_seen: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    config: Mapped[dict] = mapped_column(JSONType, default=dict)


class AgentSession(Base):
    __tablename__ = "sessions"
    __table_args__ = (UniqueConstraint("agent_id", "session_key", name="uq_sessions_agent_key"),)

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id"), nullable=False)
    session_key: Mapped[str] = mapped_column(String(500), nullable=False)
    kind: Mapped[str | None] = mapped_column(String(50))
    display_name: Mapped[str | None] = mapped_column(String(500))
    channel: Mapped[str | None] = mapped_column(String(100))
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    last_activity: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    total_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    input_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    output_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    estimated_cost: Mapped[float] = mapped_column(Float, default=0.0)
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)


Index("idx_sessions_agent_active", AgentSession.agent_id, AgentSession.is_active)
Index("idx_sessions_agent_channel_active", AgentSession.agent_id, AgentSession.channel, AgentSession.is_active)


# ── Append-only ingestion records ────────────────────────────────────────────

class CostRecord(Base):
    __tablename__ = "cost_records"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id"), nullable=False)
    session_key: Mapped[str | None] = mapped_column(String(500))
    provider: Mapped[str] = mapped_column(String(100), default="unknown")
    model: Mapped[str] = mapped_column(String(200), default="unknown")
    input_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    output_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    cache_read_tokens: Mapped[int | None] = mapped_column(BigInteger)
    cache_write_tokens: Mapped[int | None] = mapped_column(BigInteger)
    cost: Mapped[float] = mapped_column(Float, nullable=False)
    period: Mapped[str] = mapped_column(String(20), default="hourly")
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    # Dedup identity, used to rebuild the in-memory guard after a restart
    source: Mapped[str | None] = mapped_column(String(1000))
    record_id: Mapped[str | None] = mapped_column(String(200))


Index("idx_cost_records_agent_time", CostRecord.agent_id, CostRecord.timestamp)
Index("idx_cost_records_time", CostRecord.timestamp)


class Activity(Base):
    __tablename__ = "activities"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    session_key: Mapped[str | None] = mapped_column(String(500))
    channel: Mapped[str | None] = mapped_column(String(100))
    details: Mapped[dict | None] = mapped_column(JSONType)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


Index("idx_activities_agent_time", Activity.agent_id, Activity.timestamp)
Index("idx_activities_created", Activity.created_at)


class HealthCheck(Base):
    __tablename__ = "health_checks"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id"), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    is_healthy: Mapped[bool] = mapped_column(Boolean, default=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer)
    active_session_count: Mapped[int] = mapped_column(Integer, default=0)
    total_session_count: Mapped[int] = mapped_column(Integer, default=0)
    total_tokens_last_hour: Mapped[int] = mapped_column(BigInteger, default=0)
    cost_last_hour: Mapped[float] = mapped_column(Float, default=0.0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)


Index("idx_health_checks_agent_time", HealthCheck.agent_id, HealthCheck.timestamp)


# ── Aggregates ───────────────────────────────────────────────────────────────

class StatsCache(Base):
    __tablename__ = "stats_cache"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(300), unique=True, nullable=False)
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    input_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    output_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    requests: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class Budget(Base):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    agent_id: Mapped[int | None] = mapped_column(ForeignKey("agents.id"))
    period: Mapped[str] = mapped_column(String(20), nullable=False)
    limit_dollars: Mapped[float] = mapped_column(Float, nullable=False)
    current_spend: Mapped[float] = mapped_column(Float, default=0.0)
    reset_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    hard_stop: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


# ── Alerting ─────────────────────────────────────────────────────────────────

class AlertRule(Base):
    __tablename__ = "alert_rules"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    agent_id: Mapped[int | None] = mapped_column(ForeignKey("agents.id"))
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    config: Mapped[dict] = mapped_column(JSONType, default=dict)
    severity: Mapped[str | None] = mapped_column(String(20))
    channels: Mapped[list] = mapped_column(JSONType, default=list)
    cooldown_minutes: Mapped[int] = mapped_column(Integer, default=60)
    last_triggered: Mapped[datetime | None] = mapped_column(UTCDateTime)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(ForeignKey("alert_rules.id"), nullable=False)
    agent_id: Mapped[int | None] = mapped_column(ForeignKey("agents.id"))
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict | None] = mapped_column(JSONType)
    channels: Mapped[list] = mapped_column(JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    acknowledged_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime)


Index("idx_alerts_created", Alert.created_at)


class SnitchEvent(Base):
    __tablename__ = "snitch_events"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    summary: Mapped[str] = mapped_column(Text, default="")
    severity: Mapped[str] = mapped_column(String(20), default="info")
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


Index("idx_snitch_events_time", SnitchEvent.timestamp)
