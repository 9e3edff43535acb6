"""
Event Normalizer — maps raw gateway events and transcript records onto
canonical CostEntry / ActivityEntry / HealthSample records.

Live push events handled: agent, health, heartbeat, presence, chat.
Transcript records: only ``type == "message"`` records carrying
``message.usage.cost`` produce a CostEntry; assistant messages additionally
yield tool-call and text activities.

All functions are pure: no I/O, the caller supplies ``now``.
"""
import logging
from datetime import datetime
from typing import Any, Callable

from clawwatch_engine.jsonl_io import parse_timestamp
from clawwatch_engine.records import (
    ACTIVITY_TYPES,
    ActivityEntry,
    CostEntry,
    HealthSample,
    NormalizedBatch,
)

logger = logging.getLogger("clawwatch.engine.normalizer")

SUMMARY_LIMIT = 80
COMMAND_PREVIEW_LIMIT = 60


# ── Helpers ──────────────────────────────────────────────────────────────────

def truncate_summary(text: str, limit: int = SUMMARY_LIMIT) -> str:
    """Cut to ``limit`` characters, appending "..." when anything was dropped."""
    return text[:limit] + ("..." if len(text) > limit else "")


def infer_agent_name(session_key: str | None, fallback: str = "unknown") -> str:
    """Derive the agent name from a gateway session key.

    Keys follow ``<kind>:<name>:<rest>``, so any key with two or more
    segments names its agent in the second; single-segment keys are their
    own name.
    """
    if not session_key:
        return fallback
    parts = [p for p in session_key.split(":") if p]
    if len(parts) >= 2:
        return parts[1]
    return session_key or fallback


def infer_provider(model: str | None, provider: str | None = None) -> str:
    """Best-effort provider inference from model name."""
    if provider:
        return provider
    model_l = (model or "").lower()
    if "gpt" in model_l or "o1" in model_l or "o3" in model_l:
        return "openai"
    if "claude" in model_l:
        return "anthropic"
    if "gemini" in model_l:
        return "google"
    if "kimi" in model_l or "moonshot" in model_l:
        return "moonshot"
    if "qwen" in model_l:
        return "alibaba"
    if "llama" in model_l or "mistral" in model_l or "mixtral" in model_l:
        return "ollama"
    if "deepseek" in model_l:
        return "deepseek"
    return "unknown"


def _agent_name(payload: dict[str, Any]) -> str:
    agent = payload.get("agent")
    if isinstance(agent, dict) and agent.get("name"):
        return str(agent["name"])
    return str(payload.get("agentName") or "unknown")


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _optional_int(value: Any) -> int | None:
    return None if value is None else _int(value)


def _float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _total_cost(usage: dict[str, Any]) -> float | None:
    """The dollar total from ``usage.cost`` or None when there is no cost."""
    cost = usage.get("cost")
    if isinstance(cost, dict):
        return _float(cost.get("total"))
    if isinstance(cost, (int, float)) and not isinstance(cost, bool):
        return float(cost)
    return None


def _content_text(content: Any, *, text_only: bool = False) -> str:
    if isinstance(content, list):
        parts = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if text_only:
                if block.get("type") == "text" and block.get("text"):
                    parts.append(str(block["text"]))
            else:
                parts.append(str(block.get("text") or block.get("type") or ""))
        return " ".join(parts)
    return "" if content is None else str(content)


def cost_entry_from_message(
    message: dict[str, Any],
    *,
    agent: str,
    source: str,
    timestamp: datetime,
    session_key: str | None = None,
    record_id: str | None = None,
) -> CostEntry | None:
    """Build a CostEntry from a message carrying ``usage.cost``, else None."""
    usage = message.get("usage")
    if not isinstance(usage, dict):
        return None
    total = _total_cost(usage)
    if total is None:
        return None

    model = str(message.get("model") or "unknown")
    return CostEntry(
        agent=agent,
        provider=infer_provider(model, message.get("provider")),
        model=model,
        input_tokens=_int(usage.get("input", usage.get("inputTokens"))),
        output_tokens=_int(usage.get("output", usage.get("outputTokens"))),
        cost=total,
        timestamp=timestamp,
        source=source,
        session_key=session_key,
        cache_read_tokens=_optional_int(usage.get("cacheRead")),
        cache_write_tokens=_optional_int(usage.get("cacheWrite")),
        record_id=record_id,
    )


def live_source(payload: dict[str, Any], agent: str) -> str:
    return f"live:{payload.get('sessionKey') or agent}"


# ── Live push events ─────────────────────────────────────────────────────────

def _normalize_agent(payload: dict[str, Any], now: datetime) -> NormalizedBatch:
    agent = _agent_name(payload)
    activity_type = str(payload.get("type") or "message_sent")
    if activity_type not in ACTIVITY_TYPES:
        activity_type = "message_sent"
    session_key = payload.get("sessionKey")
    timestamp = parse_timestamp(payload.get("timestamp")) or now
    stream = payload.get("stream")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    message = payload.get("message") if isinstance(payload.get("message"), dict) else {}

    summary = "Agent activity"
    if message.get("content"):
        summary = truncate_summary(_content_text(message["content"]))
    elif payload.get("tool"):
        summary = f"Tool call: {payload['tool']}"
    elif payload.get("activity"):
        summary = str(payload["activity"])[:SUMMARY_LIMIT]

    if stream == "tool_call":
        activity_type = "tool_call"
        summary = f"Tool: {data.get('name') or data.get('tool') or 'unknown'}"
    elif stream == "error":
        activity_type = "error"
        summary = str(data.get("message") or data.get("error") or "Unknown error")[:SUMMARY_LIMIT]

    usage = message.get("usage") if isinstance(message.get("usage"), dict) else {}
    if activity_type == "session_ended":
        total = _total_cost(usage)
        summary = "Run ended" + (f" (${total:.4f})" if total is not None else "")

    batch = NormalizedBatch()
    cost = cost_entry_from_message(
        message,
        agent=agent,
        source=live_source(payload, agent),
        timestamp=timestamp,
        session_key=session_key,
        record_id=message.get("id") or payload.get("runId"),
    )
    if cost is not None:
        batch.costs.append(cost)

    batch.activities.append(ActivityEntry(
        agent=agent,
        type=activity_type,
        summary=summary,
        timestamp=timestamp,
        session_key=session_key,
        channel=payload.get("channel"),
    ))
    return batch


def _normalize_health(payload: dict[str, Any], now: datetime) -> NormalizedBatch:
    batch = NormalizedBatch()
    sessions = payload.get("sessions")
    session_keys = [
        str(s.get("key") or "") for s in sessions if isinstance(s, dict)
    ] if isinstance(sessions, list) else []
    response_time = payload.get("durationMs", payload.get("responseTimeMs", payload.get("latency")))

    agents = payload.get("agents")
    if isinstance(agents, list):
        # Multi-agent snapshot: one sample per agent
        for entry in agents:
            if not isinstance(entry, dict):
                continue
            name = str(entry.get("id") or entry.get("name") or "unknown")
            batch.health.append(HealthSample(
                agent=name,
                response_time_ms=_optional_int(response_time),
                active_session_count=sum(1 for key in session_keys if name in key),
                total_session_count=len(session_keys),
            ))
        return batch

    agent = _agent_name(payload)
    if agent == "unknown" and payload.get("defaultAgentId"):
        agent = str(payload["defaultAgentId"])
    batch.health.append(HealthSample(
        agent=agent,
        response_time_ms=_optional_int(response_time),
        active_session_count=_int(payload.get("activeSessionCount", len(session_keys))),
        total_session_count=len(session_keys),
        total_tokens_last_hour=_int(payload.get("totalTokensLastHour")),
        cost_last_hour=_float(payload.get("costLastHour")),
        error_count=_int(payload.get("errorCount")),
    ))
    return batch


def _normalize_heartbeat(payload: dict[str, Any], now: datetime) -> NormalizedBatch:
    return NormalizedBatch(activities=[ActivityEntry(
        agent=_agent_name(payload),
        type="heartbeat",
        summary="Agent heartbeat",
        timestamp=parse_timestamp(payload.get("timestamp")) or now,
        session_key=payload.get("sessionKey"),
        channel=payload.get("channel"),
    )])


def _normalize_presence(payload: dict[str, Any], now: datetime) -> NormalizedBatch:
    status = str(payload.get("status") or payload.get("presence") or "unknown")
    return NormalizedBatch(activities=[ActivityEntry(
        agent=_agent_name(payload),
        type="session_started" if status == "online" else "session_ended",
        summary=f"Agent {status}",
        timestamp=parse_timestamp(payload.get("timestamp")) or now,
        session_key=payload.get("sessionKey"),
        channel=payload.get("channel"),
    )])


def _normalize_chat(payload: dict[str, Any], now: datetime) -> NormalizedBatch:
    agent = _agent_name(payload)
    session_key = payload.get("sessionKey")
    timestamp = parse_timestamp(payload.get("timestamp")) or now
    message = payload.get("message") if isinstance(payload.get("message"), dict) else {}

    summary = "Chat message"
    text = _content_text(message.get("content"), text_only=True)
    if text:
        summary = truncate_summary(text)

    outbound = payload.get("direction") == "outbound" or message.get("role") == "assistant"
    batch = NormalizedBatch(activities=[ActivityEntry(
        agent=agent,
        type="message_sent" if outbound else "message_received",
        summary=summary,
        timestamp=timestamp,
        session_key=session_key,
        channel=payload.get("channel"),
    )])

    cost = cost_entry_from_message(
        message,
        agent=agent,
        source=live_source(payload, agent),
        timestamp=parse_timestamp(message.get("timestamp")) or timestamp,
        session_key=session_key,
        record_id=message.get("id") or payload.get("runId"),
    )
    if cost is not None:
        batch.costs.append(cost)
    return batch


EVENT_NORMALIZERS: dict[str, Callable[[dict[str, Any], datetime], NormalizedBatch]] = {
    "agent": _normalize_agent,
    "health": _normalize_health,
    "heartbeat": _normalize_heartbeat,
    "presence": _normalize_presence,
    "chat": _normalize_chat,
}


def normalize_event(event: str, payload: dict[str, Any], now: datetime) -> NormalizedBatch | None:
    """Normalize one live push event; None when the event type is not handled."""
    handler = EVENT_NORMALIZERS.get(event)
    if handler is None:
        return None
    return handler(payload, now)


# ── Transcript records ───────────────────────────────────────────────────────

def normalize_transcript_record(
    record: dict[str, Any],
    *,
    agent: str,
    source: str,
) -> NormalizedBatch:
    """Normalize one decoded transcript line.

    Records without a cost-bearing message produce nothing at all, including
    no activities.
    """
    batch = NormalizedBatch()
    if record.get("type") != "message":
        return batch
    message = record.get("message")
    if not isinstance(message, dict):
        return batch

    timestamp = parse_timestamp(message.get("timestamp")) or parse_timestamp(record.get("timestamp"))
    if timestamp is None:
        logger.debug("Skipping transcript record without timestamp in %s", source)
        return batch

    cost = cost_entry_from_message(
        message,
        agent=agent,
        source=source,
        timestamp=timestamp,
        record_id=record.get("id"),
    )
    if cost is None:
        return batch
    batch.costs.append(cost)

    content = message.get("content")
    if message.get("role") == "assistant" and isinstance(content, list):
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "toolCall":
                arguments = block.get("arguments") if isinstance(block.get("arguments"), dict) else {}
                command = arguments.get("command")
                summary = f"Called {block.get('name')}"
                if command:
                    summary += f": {str(command)[:COMMAND_PREVIEW_LIMIT]}"
                batch.activities.append(ActivityEntry(
                    agent=agent, type="tool_call", summary=summary, timestamp=timestamp,
                ))
            elif block.get("type") == "text" and block.get("text"):
                batch.activities.append(ActivityEntry(
                    agent=agent,
                    type="message_sent",
                    summary=truncate_summary(str(block["text"])),
                    timestamp=timestamp,
                ))
    return batch
