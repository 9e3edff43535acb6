"""
Transcript Tailer — incremental reads of append-only JSONL files.

Per tracked file we remember size, mtime, the byte offset already consumed and
any trailing fragment that did not yet end in a newline. Each call returns only
the complete lines appended since the previous call.

Rotation or truncation (file shrank below the consumed offset) restarts the
file from byte 0 and discards the carried fragment.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from clawwatch_engine.exceptions import TranscriptError

logger = logging.getLogger("clawwatch.engine.tailer")


@dataclass
class FileState:
    size: int = 0
    mtime: float = 0.0
    last_position: int = 0
    partial: bytes = b""


class TranscriptTailer:
    """Tracks read offsets for any number of transcript files."""

    def __init__(self):
        self._states: dict[str, FileState] = {}

    def state(self, path: Path | str) -> FileState | None:
        return self._states.get(str(path))

    @property
    def tracked(self) -> list[str]:
        return list(self._states)

    def forget(self, path: Path | str) -> None:
        """Drop state for a file that has disappeared."""
        self._states.pop(str(path), None)

    def restore(self, path: Path | str, state: FileState | None) -> None:
        """Rewind to a state captured before a read whose lines were not ingested."""
        if state is None:
            self._states.pop(str(path), None)
        else:
            self._states[str(path)] = state

    def read_new_lines(self, path: Path | str) -> list[str]:
        """Return complete, non-empty lines appended since the last call.

        Missing, empty and unchanged files yield an empty list; any other
        read failure raises TranscriptError with the offset left untouched.
        Bytes are joined with the carried fragment before UTF-8 decoding so a
        multi-byte character split across two appends decodes intact.
        """
        key = str(path)
        try:
            st = os.stat(key)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise TranscriptError(f"Cannot stat {key}: {e}") from e

        if st.st_size == 0:
            return []

        prev = self._states.get(key)
        if prev is not None and prev.size == st.st_size and prev.mtime == st.st_mtime:
            return []

        if prev is not None and st.st_size >= prev.last_position:
            start, carried = prev.last_position, prev.partial
        else:
            if prev is not None:
                logger.info(
                    "%s shrank (%d -> %d bytes); re-reading from start",
                    key, prev.last_position, st.st_size,
                )
            start, carried = 0, b""

        try:
            with open(key, "rb") as f:
                f.seek(start)
                chunk = f.read(st.st_size - start)
        except OSError as e:
            raise TranscriptError(f"Cannot read {key}: {e}") from e

        pieces = (carried + chunk).split(b"\n")
        partial = pieces.pop()

        self._states[key] = FileState(
            size=st.st_size,
            mtime=st.st_mtime,
            last_position=start + len(chunk),
            partial=partial,
        )

        lines: list[str] = []
        for raw in pieces:
            line = raw.decode("utf-8", errors="replace").rstrip("\r")
            if line.strip():
                lines.append(line)
        return lines
