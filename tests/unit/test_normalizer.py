"""
Unit tests for clawwatch_engine.normalizer and clawwatch_engine.jsonl_io.

Tests:
- Agent name inference from session keys
- Provider inference
- Live events: agent, health, heartbeat, presence, chat, unknown
- Transcript records: cost entries and assistant activities
- JSONL decoding of corrupt lines
"""
from datetime import datetime, timezone

import pytest

from clawwatch_engine.jsonl_io import decode_lines, parse_timestamp
from clawwatch_engine.normalizer import (
    infer_agent_name,
    infer_provider,
    normalize_event,
    normalize_transcript_record,
    truncate_summary,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
TS_MS = 1_792_411_200_000  # 2026-10-19T12:00:00Z


# ============================================================================
# Helpers
# ============================================================================

class TestInferAgentName:
    """Session key → agent name convention."""

    @pytest.mark.parametrize("key,expected", [
        ("agent:mimizuku:main", "mimizuku"),
        ("agent:mimizuku:discord:channel:123", "mimizuku"),
        ("discord:mimizuku:chan-42", "mimizuku"),
        ("cron:nightly", "nightly"),
        ("solo", "solo"),
        ("agent:x", "x"),
        ("", "unknown"),
        (None, "unknown"),
    ])
    def test_conventions(self, key, expected):
        assert infer_agent_name(key) == expected

    def test_empty_segments_ignored(self):
        """Doubled separators do not produce empty names."""
        assert infer_agent_name("agent::bob::main") == "bob"


class TestInferProvider:
    def test_explicit_provider_wins(self):
        assert infer_provider("gpt-4o", "azure") == "azure"

    def test_from_model_name(self):
        assert infer_provider("claude-sonnet-4") == "anthropic"
        assert infer_provider("gpt-4o-mini") == "openai"
        assert infer_provider("gemini-2.5-pro") == "google"

    def test_unknown_model(self):
        assert infer_provider("mystery") == "unknown"


class TestTruncateSummary:
    def test_short_text_untouched(self):
        assert truncate_summary("hello") == "hello"

    def test_long_text_marked(self):
        text = "x" * 100
        assert truncate_summary(text) == "x" * 80 + "..."

    def test_exactly_limit_not_marked(self):
        assert truncate_summary("y" * 80) == "y" * 80


# ============================================================================
# Live events
# ============================================================================

class TestAgentEvent:
    """Tests for the ``agent`` event."""

    def test_message_with_cost(self):
        """A message carrying usage.cost yields a cost entry and an activity."""
        batch = normalize_event("agent", {
            "agent": {"name": "mimi"},
            "sessionKey": "agent:mimi:main",
            "timestamp": TS_MS,
            "message": {
                "content": [{"type": "text", "text": "Done."}],
                "model": "claude-sonnet-4",
                "usage": {"input": 10, "output": 5, "cacheRead": 3, "cost": {"total": 0.0123}},
            },
        }, NOW)

        assert len(batch.costs) == 1
        cost = batch.costs[0]
        assert cost.agent == "mimi"
        assert cost.cost == pytest.approx(0.0123)
        assert cost.provider == "anthropic"
        assert cost.cache_read_tokens == 3
        assert cost.cache_write_tokens is None
        assert cost.source == "live:agent:mimi:main"
        assert batch.activities[0].summary == "Done."
        assert batch.activities[0].type == "message_sent"

    def test_tool_call_stream(self):
        batch = normalize_event("agent", {
            "agentName": "mimi", "stream": "tool_call", "data": {"name": "exec"},
        }, NOW)
        assert batch.activities[0].type == "tool_call"
        assert batch.activities[0].summary == "Tool: exec"
        assert batch.costs == []

    def test_error_stream(self):
        batch = normalize_event("agent", {
            "agentName": "mimi", "stream": "error", "data": {"message": "boom" * 40},
        }, NOW)
        assert batch.activities[0].type == "error"
        assert len(batch.activities[0].summary) == 80

    def test_session_ended_with_cost(self):
        batch = normalize_event("agent", {
            "agentName": "mimi",
            "type": "session_ended",
            "message": {"usage": {"cost": {"total": 1.5}}},
        }, NOW)
        assert batch.activities[0].summary == "Run ended ($1.5000)"

    def test_session_ended_without_cost(self):
        batch = normalize_event("agent", {"agentName": "mimi", "type": "session_ended"}, NOW)
        assert batch.activities[0].summary == "Run ended"

    def test_unknown_activity_type_defaults(self):
        batch = normalize_event("agent", {"agentName": "m", "type": "bogus"}, NOW)
        assert batch.activities[0].type == "message_sent"

    def test_missing_timestamp_uses_now(self):
        batch = normalize_event("agent", {"agentName": "m", "activity": "thinking"}, NOW)
        assert batch.activities[0].timestamp == NOW
        assert batch.activities[0].summary == "thinking"


class TestOtherEvents:
    """Tests for health, heartbeat, presence, chat and unknown events."""

    def test_health_single_agent(self):
        batch = normalize_event("health", {
            "agentName": "mimi", "responseTimeMs": 42, "errorCount": 6,
        }, NOW)
        sample = batch.health[0]
        assert sample.agent == "mimi"
        assert sample.response_time_ms == 42
        assert sample.is_healthy is False

    def test_health_multi_agent_snapshot(self):
        """One sample per agent in payload.agents."""
        batch = normalize_event("health", {
            "durationMs": 12,
            "agents": [{"id": "alpha"}, {"name": "beta"}],
            "sessions": [
                {"key": "agent:alpha:main"}, {"key": "agent:alpha:cron"}, {"key": "agent:beta:main"},
            ],
        }, NOW)
        by_agent = {s.agent: s for s in batch.health}
        assert set(by_agent) == {"alpha", "beta"}
        assert by_agent["alpha"].active_session_count == 2
        assert by_agent["beta"].active_session_count == 1
        assert by_agent["beta"].response_time_ms == 12

    def test_heartbeat(self):
        batch = normalize_event("heartbeat", {"agentName": "mimi"}, NOW)
        assert batch.activities[0].type == "heartbeat"
        assert batch.activities[0].summary == "Agent heartbeat"

    @pytest.mark.parametrize("status,expected", [
        ("online", "session_started"),
        ("offline", "session_ended"),
    ])
    def test_presence(self, status, expected):
        batch = normalize_event("presence", {"agentName": "mimi", "status": status}, NOW)
        assert batch.activities[0].type == expected
        assert batch.activities[0].summary == f"Agent {status}"

    def test_chat_outbound_with_cost(self):
        batch = normalize_event("chat", {
            "agentName": "mimi",
            "direction": "outbound",
            "message": {
                "role": "assistant",
                "content": [{"type": "text", "text": "hi"}, {"type": "image"}],
                "usage": {"inputTokens": 7, "outputTokens": 3, "cost": {"total": 0.002}},
            },
        }, NOW)
        assert batch.activities[0].type == "message_sent"
        assert batch.activities[0].summary == "hi"
        assert batch.costs[0].input_tokens == 7

    def test_chat_inbound(self):
        batch = normalize_event("chat", {"agentName": "mimi", "message": {"role": "user"}}, NOW)
        assert batch.activities[0].type == "message_received"
        assert batch.activities[0].summary == "Chat message"

    def test_unknown_event_returns_none(self):
        assert normalize_event("mystery", {"x": 1}, NOW) is None


# ============================================================================
# Transcript records
# ============================================================================

def _transcript_record(**message_overrides):
    message = {
        "role": "assistant",
        "model": "claude-sonnet-4",
        "provider": "anthropic",
        "timestamp": TS_MS,
        "usage": {"input": 100, "output": 20, "cacheWrite": 5, "cost": {"total": 0.05}},
        "content": [
            {"type": "toolCall", "name": "exec", "arguments": {"command": "ls -la " + "x" * 100}},
            {"type": "text", "text": "Listing files"},
            {"type": "text", "text": ""},
        ],
    }
    message.update(message_overrides)
    return {"type": "message", "id": "rec-1", "timestamp": "2026-10-19T11:00:00.000Z", "message": message}


class TestTranscriptRecords:
    """Tests for normalize_transcript_record()."""

    def test_cost_entry_fields(self):
        batch = normalize_transcript_record(_transcript_record(), agent="mimi", source="mimi/s.jsonl")
        cost = batch.costs[0]
        assert cost.agent == "mimi"
        assert cost.record_id == "rec-1"
        assert cost.timestamp == datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
        assert cost.cache_write_tokens == 5
        assert cost.dedup_key == ("mimi/s.jsonl", TS_MS, 0.05, "rec-1")

    def test_assistant_activities(self):
        """One activity per toolCall block and per non-empty text block."""
        batch = normalize_transcript_record(_transcript_record(), agent="mimi", source="s")
        summaries = [a.summary for a in batch.activities]
        assert summaries[0] == "Called exec: " + ("ls -la " + "x" * 100)[:60]
        assert summaries[1] == "Listing files"
        assert len(summaries) == 2

    def test_iso_timestamp_fallback(self):
        """Without message.timestamp the record's ISO timestamp is used."""
        record = _transcript_record()
        del record["message"]["timestamp"]
        batch = normalize_transcript_record(record, agent="mimi", source="s")
        assert batch.costs[0].timestamp == datetime(2026, 10, 19, 11, 0, tzinfo=timezone.utc)

    def test_no_cost_no_output(self):
        """Messages without usage.cost produce nothing, not even activities."""
        record = _transcript_record(usage={"input": 1})
        assert not normalize_transcript_record(record, agent="mimi", source="s")

    def test_non_message_records_ignored(self):
        assert not normalize_transcript_record({"type": "session"}, agent="mimi", source="s")

    def test_defaults_for_missing_model(self):
        record = _transcript_record(model=None, provider=None)
        cost = normalize_transcript_record(record, agent="mimi", source="s").costs[0]
        assert cost.model == "unknown"
        assert cost.provider == "unknown"


# ============================================================================
# jsonl_io
# ============================================================================

class TestDecodeLines:
    def test_corrupt_lines_skipped(self, caplog):
        records = decode_lines(['{"a": 1}', "{not json", "[1, 2]", '{"b": 2}'], "f.jsonl")
        assert records == [{"a": 1}, {"b": 2}]
        assert "corrupt line 2" in caplog.text

    def test_parse_timestamp_variants(self):
        assert parse_timestamp(TS_MS) == datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
        assert parse_timestamp("2026-10-19T12:00:00Z") == datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
        assert parse_timestamp("garbage") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp(True) is None
