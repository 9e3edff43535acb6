"""
ClawWatch database layer — SQLAlchemy 2.0 async ORM.
"""
from .models import (
    Base,
    Agent,
    AgentSession,
    CostRecord,
    Activity,
    HealthCheck,
    StatsCache,
    Budget,
    AlertRule,
    Alert,
    SnitchEvent,
)
from .session import as_async_url, check_connection, create_engine, create_session_factory, ensure_schema
from .store import RETENTION_TABLES, TelemetryStore, round_cost

__all__ = [
    "Base",
    "Agent",
    "AgentSession",
    "CostRecord",
    "Activity",
    "HealthCheck",
    "StatsCache",
    "Budget",
    "AlertRule",
    "Alert",
    "SnitchEvent",
    "as_async_url",
    "check_connection",
    "create_engine",
    "create_session_factory",
    "ensure_schema",
    "RETENTION_TABLES",
    "TelemetryStore",
    "round_cost",
]
