"""
JSONL decoding for agent session transcripts.

Transcript files are appended to by the agent runtime one JSON object per line:
- {"type": "session", ...}                      — session header
- {"type": "message", "id", "timestamp", "message": {role, content, usage, ...}}
- other record types (model_change, thinking_level_change, ...) are ignored

Corrupt lines are skipped individually; one bad line never aborts a file.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from clawwatch_engine.records import from_epoch_ms

logger = logging.getLogger("clawwatch.engine.jsonl_io")


# ---------------------------------------------------------------------------
# Line decoding
# ---------------------------------------------------------------------------

def decode_lines(lines: Iterable[str], source: str = "<stream>") -> list[dict[str, Any]]:
    """
    Decode complete JSONL lines into record dicts.

    Args:
        lines: Complete lines as returned by the tailer (no trailing newline).
        source: File identifier used in warnings.

    Returns:
        Decoded records in line order. Blank, malformed and non-object lines
        are skipped with a warning.
    """
    records: list[dict[str, Any]] = []
    for line_no, line in enumerate(lines, 1):
        line = line.strip()
        if not line:
            continue

        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping corrupt line %d in %s", line_no, source)
            continue

        if not isinstance(data, dict):
            logger.warning("Skipping non-dict line %d in %s", line_no, source)
            continue

        records.append(data)
    return records


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def parse_timestamp(value: Any) -> datetime | None:
    """Parse an epoch-ms number or an ISO-8601 string into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return from_epoch_ms(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None
