"""
Unit tests for clawwatch_engine.ingest — the shared ingest pipeline.

Tests:
- Stale / duplicate / unknown-agent filtering
- Activity cap and health samples
- Chunked cost inserts and partial failure
"""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from clawwatch_engine.dedup import DedupGuard
from clawwatch_engine.exceptions import StoreError
from clawwatch_engine.ingest import ACTIVITY_CAP, COST_CHUNK_SIZE, Ingestor
from clawwatch_engine.records import ActivityEntry, HealthSample, NormalizedBatch

from conftest import NOW, make_entry


def _activity(i: int, agent: str = "a") -> ActivityEntry:
    return ActivityEntry(agent=agent, type="message_sent", summary=f"msg {i}", timestamp=NOW)


# ============================================================================
# Against the SQLite store
# ============================================================================

class TestIngestWithStore:
    async def test_filters_and_counts(self, store, metrics, clock):
        """Stale, in-batch duplicate and unknown-agent entries are not booked."""
        await store.ensure_agent("a", now=NOW)
        dedup = DedupGuard(NOW)
        ingestor = Ingestor(store, dedup, metrics=metrics, clock=clock)
        batch = NormalizedBatch(costs=[
            make_entry(0.01, record_id="r1"),
            make_entry(0.01, record_id="r1"),
            make_entry(0.02, record_id="old", timestamp=NOW - timedelta(days=5)),
            make_entry(0.03, record_id="g", agent="ghost"),
        ])

        result = await ingestor.ingest(batch)

        assert result.costs_ingested == 1
        assert result.duplicates == 1
        assert result.stale == 1
        assert result.unknown_agent == 1
        # Unknown-agent entries stay eligible for a later pass
        assert not dedup.is_duplicate(make_entry(0.03, record_id="g", agent="ghost"))
        assert metrics.cost_entries_total.labels(source="transcript", outcome="ingested")._value.get() == 1

    async def test_activity_cap_keeps_most_recent(self, store, metrics, clock):
        await store.ensure_agent("a", now=NOW)
        ingestor = Ingestor(store, DedupGuard(NOW), metrics=metrics, clock=clock)
        activities = [_activity(i) for i in range(ACTIVITY_CAP + 5)]

        result = await ingestor.ingest(NormalizedBatch(activities=activities))

        assert result.activities == ACTIVITY_CAP
        assert metrics.activities_total.labels(type="message_sent")._value.get() == ACTIVITY_CAP

    async def test_health_samples_for_known_agents_only(self, store, metrics, clock):
        await store.ensure_agent("a", now=NOW)
        ingestor = Ingestor(store, DedupGuard(NOW), metrics=metrics, clock=clock)

        result = await ingestor.ingest(NormalizedBatch(health=[
            HealthSample(agent="a", response_time_ms=12),
            HealthSample(agent="ghost"),
        ]))

        assert result.health_checks == 1
        assert (await store.table_stats())["health_checks"]["total"] == 1

    async def test_ingest_touches_agent(self, store, metrics, clock):
        """Accepted records refresh the agent's heartbeat and status."""
        agent_id = await store.ensure_agent("a", now=NOW - timedelta(hours=2))
        await store.set_agent_status(agent_id, "offline")
        ingestor = Ingestor(store, DedupGuard(NOW), metrics=metrics, clock=clock)

        await ingestor.ingest(NormalizedBatch(costs=[make_entry(record_id="t")]))

        (agent,) = await store.list_agents()
        assert agent.status == "online"
        assert agent.last_heartbeat == NOW


# ============================================================================
# Failure handling (mocked store)
# ============================================================================

class TestIngestFailures:
    @pytest.fixture
    def mock_store(self):
        store = MagicMock()
        store.insert_activities = AsyncMock(return_value=0)
        store.record_health_check = AsyncMock(return_value=True)
        return store

    async def test_failed_chunk_propagates_after_booking_prior(self, mock_store, metrics, clock):
        """Chunks persisted before a failure are committed and booked."""
        entries = [make_entry(0.01, record_id=f"r{i}") for i in range(COST_CHUNK_SIZE + 3)]

        async def insert(chunk, *, now):
            if chunk[0].record_id != "r0":
                raise StoreError("insert_cost_records failed: disk full")
            return [(e, 1) for e in chunk]

        mock_store.insert_cost_records = AsyncMock(side_effect=insert)
        aggregation = MagicMock()
        aggregation.book = AsyncMock()
        dedup = DedupGuard(NOW)
        ingestor = Ingestor(mock_store, dedup, aggregation=aggregation, metrics=metrics, clock=clock)

        with pytest.raises(StoreError):
            await ingestor.ingest(NormalizedBatch(costs=entries))

        booked = aggregation.book.await_args.args[0]
        assert len(booked) == COST_CHUNK_SIZE
        assert dedup.is_duplicate(entries[0])
        assert not dedup.is_duplicate(entries[-1])

    async def test_health_store_error_is_logged(self, mock_store, metrics, clock, caplog):
        mock_store.record_health_check = AsyncMock(side_effect=[StoreError("boom"), True])
        ingestor = Ingestor(mock_store, DedupGuard(NOW), metrics=metrics, clock=clock)

        result = await ingestor.ingest(NormalizedBatch(health=[
            HealthSample(agent="a"), HealthSample(agent="b"),
        ]))

        assert result.health_checks == 1
        assert "Health check for a failed" in caplog.text

    async def test_empty_batch_touches_nothing(self, mock_store, metrics, clock):
        mock_store.insert_cost_records = AsyncMock()
        ingestor = Ingestor(mock_store, DedupGuard(NOW), metrics=metrics, clock=clock)

        result = await ingestor.ingest(NormalizedBatch())

        assert result.as_dict() == {
            "costs_ingested": 0, "duplicates": 0, "stale": 0,
            "unknown_agent": 0, "activities": 0, "health_checks": 0,
        }
        mock_store.insert_cost_records.assert_not_awaited()
        mock_store.insert_activities.assert_not_awaited()
