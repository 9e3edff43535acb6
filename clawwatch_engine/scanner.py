"""
Transcript Scanner — tails ``<sessions_dir>/<agent>/sessions/*.jsonl``.

One scan visits every transcript file, hands newly appended lines to the
normalizer and ingests the result per file. Lines of one file are processed
in file order; a file whose batch fails to persist is rewound so its lines
are read again next scan.

The dedup watermark only advances after a scan in which every file was
ingested.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

import structlog

from clawwatch_engine.db.models import utcnow
from clawwatch_engine.exceptions import CollectorError, TranscriptError
from clawwatch_engine.ingest import Ingestor
from clawwatch_engine.jsonl_io import decode_lines
from clawwatch_engine.metrics import METRICS, CollectorMetrics
from clawwatch_engine.normalizer import normalize_transcript_record
from clawwatch_engine.records import NormalizedBatch
from clawwatch_engine.tailer import TranscriptTailer

logger = logging.getLogger("clawwatch.engine.scanner")


@dataclass
class ScanResult:
    files: int = 0
    lines: int = 0
    costs_ingested: int = 0
    activities: int = 0
    failed_files: int = 0


class TranscriptScanner:
    """Incremental transcript backfill feeding the shared ingest pipeline."""

    def __init__(
        self,
        sessions_dir: Path | str,
        ingestor: Ingestor,
        *,
        tailer: TranscriptTailer | None = None,
        metrics: CollectorMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sessions_dir = Path(sessions_dir).expanduser()
        self.ingestor = ingestor
        self.tailer = tailer or TranscriptTailer()
        self.metrics = metrics or METRICS
        self._clock = clock

    def transcript_files(self) -> list[tuple[str, Path]]:
        """(agent name, path) for every transcript file, sorted for stable order."""
        files: list[tuple[str, Path]] = []
        for agent_dir in sorted(p for p in self.sessions_dir.iterdir() if p.is_dir()):
            sessions = agent_dir / "sessions"
            if not sessions.is_dir():
                continue
            for path in sorted(sessions.glob("*.jsonl")):
                files.append((agent_dir.name, path))
        return files

    async def scan(self) -> ScanResult:
        started_at = self._clock()
        result = ScanResult()

        if not self.sessions_dir.is_dir():
            logger.warning("Sessions directory %s does not exist; skipping scan", self.sessions_dir)
            return result

        files = self.transcript_files()
        present = {str(path) for _, path in files}
        for tracked in self.tailer.tracked:
            if tracked not in present:
                self.tailer.forget(tracked)

        for agent, path in files:
            result.files += 1
            if not await self._scan_file(agent, path, result):
                result.failed_files += 1

        if result.failed_files == 0:
            self.ingestor.dedup.advance_watermark(started_at)

        if result.lines:
            structlog.get_logger().info("transcript_scan", **asdict(result))
        return result

    async def _scan_file(self, agent: str, path: Path, result: ScanResult) -> bool:
        previous = self.tailer.state(path)
        try:
            lines = self.tailer.read_new_lines(path)
        except TranscriptError as e:
            logger.warning("%s", e)
            self.metrics.transcript_lines_total.labels(outcome="unreadable").inc()
            return False
        if not lines:
            return True

        source = f"{agent}/{path.name}"
        records = decode_lines(lines, source)
        self.metrics.transcript_lines_total.labels(outcome="read").inc(len(lines))
        if len(records) < len(lines):
            self.metrics.transcript_lines_total.labels(outcome="malformed").inc(len(lines) - len(records))
        result.lines += len(lines)

        batch = NormalizedBatch()
        for record in records:
            batch.extend(normalize_transcript_record(record, agent=agent, source=source))
        if not batch:
            return True

        try:
            ingested = await self.ingestor.ingest(batch)
        except CollectorError as e:
            logger.error("Ingest of %s failed, will retry next scan: %s", source, e)
            self.tailer.restore(path, previous)
            return False

        result.costs_ingested += ingested.costs_ingested
        result.activities += ingested.activities
        if ingested.costs_ingested:
            logger.info("Backfill: ingested %d cost entries from %s", ingested.costs_ingested, source)
        return True
