"""
Shared fixtures for collector unit tests.

Store-level tests run against a real SQLite database (aiosqlite) in a temp
directory; everything else uses AsyncMock/MagicMock collaborators.
"""
from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import CollectorRegistry

from clawwatch_engine.config import CollectorConfig
from clawwatch_engine.db import (
    TelemetryStore,
    create_engine,
    create_session_factory,
    ensure_schema,
)
from clawwatch_engine.metrics import CollectorMetrics
from clawwatch_engine.records import CostEntry, SessionInfo

NOW = datetime(2026, 10, 19, 12, 30, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock passed to components that accept ``clock=``."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> CollectorMetrics:
    """CollectorMetrics bound to a fresh registry."""
    return CollectorMetrics(reg=CollectorRegistry())


@pytest.fixture
def config(tmp_path) -> CollectorConfig:
    return CollectorConfig(
        gateway_url="http://gateway.test:18789",
        gateway_token="test-token",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'collector.db'}",
        sessions_dir=str(tmp_path / "agents"),
    )


@pytest.fixture
async def store(tmp_path):
    """TelemetryStore over a fresh SQLite file."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await ensure_schema(engine)
    yield TelemetryStore(create_session_factory(engine))
    await engine.dispose()


def make_entry(
    cost: float = 0.01,
    *,
    agent: str = "a",
    timestamp: datetime = NOW,
    source: str = "a/session.jsonl",
    model: str = "claude-sonnet-4",
    input_tokens: int = 100,
    output_tokens: int = 50,
    record_id: str | None = None,
) -> CostEntry:
    return CostEntry(
        agent=agent,
        provider="anthropic",
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cost=cost,
        timestamp=timestamp,
        source=source,
        record_id=record_id,
    )


def make_session(
    key: str = "agent:a:main",
    *,
    agent: str = "a",
    updated_at: datetime = NOW,
    channel: str | None = None,
    model: str | None = "claude-sonnet-4",
    total_tokens: int = 1000,
) -> SessionInfo:
    return SessionInfo(
        key=key,
        agent=agent,
        kind="direct",
        updated_at=updated_at,
        total_tokens=total_tokens,
        channel=channel,
        model=model,
    )
