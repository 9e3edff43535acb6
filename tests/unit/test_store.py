"""
Unit tests for clawwatch_engine.db.store — TelemetryStore on SQLite.

Tests:
- Agent creation and session upserts (":main" model rule)
- Additive stats deltas
- Dedup key restore
- Retention deletes (resolved-only alerts, oldest first)
- Default rules / budget seeding
"""
import asyncio
from datetime import timedelta

import pytest

from clawwatch_engine.db import Alert, AlertRule, round_cost
from clawwatch_engine.exceptions import StoreError
from clawwatch_engine.records import StatsDelta

from conftest import NOW, make_entry, make_session


# ============================================================================
# Agents & sessions
# ============================================================================

class TestAgents:
    async def test_ensure_agent_idempotent(self, store):
        first = await store.ensure_agent("mimi", "http://gw", now=NOW)
        second = await store.ensure_agent("mimi", now=NOW)
        assert first == second
        assert [a.name for a in await store.list_agents()] == ["mimi"]

    async def test_upsert_creates_agent_and_session(self, store):
        count = await store.upsert_sessions("http://gw", [make_session()], now=NOW)
        assert count == 1
        (agent,) = await store.list_agents()
        assert agent.name == "a"
        assert agent.gateway_url == "http://gw"
        sessions = await store.active_sessions(agent.id)
        assert [s.session_key for s in sessions] == ["agent:a:main"]

    async def test_main_session_owns_model(self, store):
        """Only the :main session overwrites the configured model."""
        await store.upsert_sessions("gw", [make_session("agent:a:main", model="opus")], now=NOW)
        await store.upsert_sessions(
            "gw", [make_session("agent:a:discord:1", model="haiku", channel="discord")], now=NOW,
        )
        (agent,) = await store.list_agents()
        assert agent.config["model"] == "opus"
        assert agent.config["channel"] == "discord"

        await store.upsert_sessions("gw", [make_session("agent:a:main", model="sonnet")], now=NOW)
        (agent,) = await store.list_agents()
        assert agent.config["model"] == "sonnet"

    async def test_non_main_fills_empty_model(self, store):
        await store.upsert_sessions("gw", [make_session("agent:a:cron", model="haiku")], now=NOW)
        (agent,) = await store.list_agents()
        assert agent.config["model"] == "haiku"

    async def test_session_refresh_updates_tokens_and_activity(self, store):
        old = NOW - timedelta(minutes=30)
        await store.upsert_sessions("gw", [make_session(updated_at=old, total_tokens=10)], now=NOW)
        (agent,) = await store.list_agents()
        assert await store.active_sessions(agent.id) == []

        await store.upsert_sessions("gw", [make_session(updated_at=NOW, total_tokens=99)], now=NOW)
        (session,) = await store.active_sessions(agent.id)
        assert session.total_tokens == 99
        assert session.last_activity == NOW

    async def test_latest_sessions_by_channel(self, store):
        await store.upsert_sessions("gw", [
            make_session("agent:a:discord:1", channel="discord"),
            make_session("agent:a:main"),
        ], now=NOW)
        (agent,) = await store.list_agents()
        sessions = await store.latest_sessions_by_channel(agent.id, "discord")
        assert [s.session_key for s in sessions] == ["agent:a:discord:1"]


# ============================================================================
# Cost records & stats
# ============================================================================

class TestCostsAndStats:
    async def test_unknown_agent_skipped(self, store):
        await store.ensure_agent("a", now=NOW)
        stored = await store.insert_cost_records([make_entry(), make_entry(agent="ghost")], now=NOW)
        assert [entry.agent for entry, _ in stored] == ["a"]

    async def test_recent_dedup_keys(self, store):
        await store.ensure_agent("a", now=NOW)
        await store.insert_cost_records([
            make_entry(0.01, record_id="new"),
            make_entry(0.02, record_id="old", timestamp=NOW - timedelta(days=10)),
        ], now=NOW)

        keys = await store.recent_dedup_keys(NOW - timedelta(days=3))

        assert keys == [("a/session.jsonl", NOW, 0.01, "new")]

    async def test_stats_deltas_are_additive(self, store):
        await store.apply_stats_deltas({"today:x": StatsDelta(0.1, 10, 1, 1)}, now=NOW)
        await store.apply_stats_deltas({"today:x": StatsDelta(0.2, 20, 2, 1)}, now=NOW)
        row = await store.get_stats("today:x")
        assert row["cost"] == 0.3
        assert (row["input_tokens"], row["output_tokens"], row["requests"]) == (30, 3, 2)

    async def test_concurrent_deltas_on_new_key(self, store):
        """Two writers creating the same key both land; no unique violation."""
        await asyncio.gather(
            store.apply_stats_deltas({"hour:1": StatsDelta(0.01, 10, 1, 1)}, now=NOW),
            store.apply_stats_deltas({"hour:1": StatsDelta(0.02, 20, 2, 1)}, now=NOW),
        )
        row = await store.get_stats("hour:1")
        assert row["cost"] == 0.03
        assert row["requests"] == 2

    async def test_book_budgets_persists_mutations(self, store):
        await store.seed_defaults(now=NOW)
        seen = []

        def apply(budget, entry, agent_id):
            seen.append((budget.name, entry.record_id, agent_id))
            budget.current_spend += entry.cost
            return True

        modified = await store.book_budgets([(make_entry(1.5, record_id="x"), 7)], apply)

        assert modified == 1
        assert seen == [("Daily Global Limit", "x", 7)]
        (budget,) = await store.list_active_budgets()
        assert budget.current_spend == 1.5

    async def test_missing_stats_key(self, store):
        assert await store.get_stats("nope") is None

    def test_round_cost(self):
        assert round_cost(0.1 + 0.2) == 0.3
        assert round_cost(1.23456) == 1.2346


# ============================================================================
# Retention
# ============================================================================

async def _alert(store, rule, *, created_at, resolved=False) -> int:
    alert_id = await store.insert_alert(
        rule=rule, agent_id=None, severity="warning",
        title="t", message="m", data=None, now=created_at,
    )
    if resolved:
        await store.resolve_alert(alert_id, now=created_at)
    return alert_id


class TestRetention:
    async def test_unresolved_alerts_are_kept(self, store):
        await store.seed_defaults(now=NOW)
        (rule, *_) = await store.list_active_rules()
        old = NOW - timedelta(days=120)
        await _alert(store, rule, created_at=old, resolved=True)
        kept = await _alert(store, rule, created_at=old, resolved=False)

        deleted = await store.delete_expired("alerts", NOW - timedelta(days=90), 500)

        assert deleted == 1
        assert [a.id for a in await store.list_alerts()] == [kept]

    async def test_batch_deletes_oldest_first(self, store):
        await store.ensure_agent("a", now=NOW)
        await store.insert_cost_records([
            make_entry(0.01, record_id=str(days), timestamp=NOW - timedelta(days=days))
            for days in (400, 500, 600)
        ], now=NOW)

        assert await store.delete_expired("cost_records", NOW - timedelta(days=365), 2) == 2

        remaining = await store.recent_dedup_keys(NOW - timedelta(days=1000))
        assert [row[3] for row in remaining] == ["400"]

    async def test_unknown_table(self, store):
        with pytest.raises(StoreError):
            await store.delete_expired("agents", NOW, 10)

    async def test_table_stats(self, store):
        stats = await store.table_stats()
        assert set(stats) == {"activities", "health_checks", "cost_records", "snitch_events", "alerts"}
        assert stats["alerts"] == {"total": 0, "oldest": None}


# ============================================================================
# Seeding & alert lifecycle
# ============================================================================

class TestSeedAndAlerts:
    async def test_seed_defaults_once(self, store):
        assert await store.seed_defaults(now=NOW) is True
        assert await store.seed_defaults(now=NOW) is False

        rules = await store.list_active_rules()
        assert [r.type for r in rules] == [
            "budget_exceeded", "agent_offline", "error_spike", "session_loop", "custom_threshold",
        ]
        (budget,) = await store.list_active_budgets()
        assert budget.name == "Daily Global Limit"
        assert budget.limit_dollars == 25.0

    async def test_acknowledge_and_resolve(self, store):
        await store.seed_defaults(now=NOW)
        rule: AlertRule = (await store.list_active_rules())[0]
        alert_id = await _alert(store, rule, created_at=NOW)

        await store.acknowledge_alert(alert_id, now=NOW)
        await store.resolve_alert(alert_id, now=NOW + timedelta(minutes=1))

        (alert,) = await store.list_alerts()
        assert isinstance(alert, Alert)
        assert alert.acknowledged_at == NOW
        assert alert.resolved_at == NOW + timedelta(minutes=1)
        assert alert.channels == ["discord"]

    async def test_mark_rule_triggered(self, store):
        await store.seed_defaults(now=NOW)
        rule = (await store.list_active_rules())[0]
        await store.mark_rule_triggered(rule.id, NOW)
        assert (await store.list_active_rules())[0].last_triggered == NOW
