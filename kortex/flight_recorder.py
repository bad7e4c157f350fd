"""
Flight recorder for Kortex.

Append-only JSONL trace of every action contract invocation, written
before the action runs so that failed actions are traced too.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Optional, TextIO, Union

from .types import ActionName, ActionRecord
from .utils import redact_args


logger = logging.getLogger(__name__)


class FlightRecorder:
    """Durable, append-only log of action records.

    Each record is one newline-terminated JSON object ``{"tool", "args"}``.
    Appends are serialized by a single lock. Write failures are logged and
    swallowed: recording must never abort the action being recorded.

    Usage:
        with FlightRecorder(path) as recorder:
            recorder.record("navigate", {"url": "https://example.com"})
    """

    def __init__(
        self,
        path: Union[str, Path],
        redact_secrets: bool = True,
        fsync: bool = False,
    ):
        """Initialize the recorder (the file is not opened yet).

        Args:
            path: JSONL file to append to
            redact_secrets: Replace text typed into password-like fields
            fsync: fsync after every record, not just flush
        """
        self.path = Path(path)
        self.redact_secrets = redact_secrets
        self.fsync = fsync
        self._lock = threading.Lock()
        self._handle: Optional[TextIO] = None
        self._opened = False
        self._closed = False
        self.records_written = 0
        self.write_errors = 0

    def open(self) -> "FlightRecorder":
        """Open the trace file in append mode."""
        with self._lock:
            if self._closed:
                raise RuntimeError("Flight recorder has been closed")
            self._opened = True
            self._ensure_handle()
        return self

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    def _ensure_handle(self) -> TextIO:
        if self._handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = open(self.path, "a", encoding="utf-8")
            if not self._ends_with_newline():
                # Terminate a line torn by an earlier failed write
                self._handle.write("\n")
                self._handle.flush()
        return self._handle

    def _ends_with_newline(self) -> bool:
        with open(self.path, "rb") as f:
            f.seek(0, os.SEEK_END)
            if f.tell() == 0:
                return True
            f.seek(-1, os.SEEK_END)
            return f.read(1) == b"\n"

    def _drop_handle(self) -> None:
        if self._handle is not None:
            try:
                self._handle.close()
            except OSError:
                pass
            self._handle = None

    def record(self, tool: Union[ActionName, str], args: Optional[dict[str, Any]] = None) -> bool:
        """Append one record.

        Args:
            tool: Operation name
            args: Operation arguments

        Returns:
            True if the line was written, False if it was dropped
        """
        name = tool.value if isinstance(tool, ActionName) else str(tool)
        args = dict(args or {})
        if self.redact_secrets:
            args = redact_args(name, args)

        try:
            line = json.dumps({"tool": name, "args": args}, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            logger.error(f"Flight recorder could not serialize {name} record: {e}")
            self.write_errors += 1
            return False

        with self._lock:
            if not self.is_open:
                logger.warning(f"Flight recorder is not open, dropping {name} record")
                return False
            try:
                handle = self._ensure_handle()
                handle.write(line + "\n")
                handle.flush()
                if self.fsync:
                    os.fsync(handle.fileno())
            except (OSError, ValueError) as e:
                # The handle may be half-written or closed; reopen on the next record
                logger.error(f"Failed to write to flight recorder {self.path}: {e}")
                self.write_errors += 1
                self._drop_handle()
                return False
            self.records_written += 1
            return True

    def close(self) -> None:
        """Close the trace file. Safe to call multiple times."""
        with self._lock:
            self._closed = True
            self._drop_handle()

    def __enter__(self) -> "FlightRecorder":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def read_records(path: Union[str, Path]) -> list[ActionRecord]:
    """Load a trace for offline inspection or replay.

    Malformed lines and unknown tools are skipped with a warning.

    Args:
        path: JSONL file written by FlightRecorder

    Returns:
        Records in file order
    """
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                tool = ActionName(data["tool"])
                args = data.get("args") or {}
                if not isinstance(args, dict):
                    raise ValueError("args is not an object")
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"{path}:{line_number}: skipping malformed record ({e})")
                continue
            records.append(ActionRecord(tool=tool, args=args))
    return records
