"""Structured event log for lxcdev runs, one JSON object per line."""

from __future__ import annotations

import enum
import json
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_TELEMETRY_PATH = ".lxcdev/telemetry.jsonl"


class EventType(str, enum.Enum):
    """Every event a launch run records, in the order they usually occur."""

    CONTAINER_LAUNCHED = "container_launched"
    BOOT_RESULT = "boot_result"
    PACKAGES_INSTALLED = "packages_installed"
    USER_ADDED = "user_added"
    TRANSFER = "transfer"
    COMMAND_EXECUTED = "command_executed"
    ARTIFACT_PULLED = "artifact_pulled"
    STEP_FAILED = "step_failed"
    CONTAINER_DELETED = "container_deleted"
    RUN_COMPLETED = "run_completed"


@dataclass(frozen=True)
class TelemetrySink:
    """Append-only JSONL log of launch runs.

    Event schema:
      {"timestamp": <float>, "run_id": <str>, "type": <EventType value>, "data": <object>}
    """

    enabled: bool
    path: Path

    def log(self, run_id: str, event_type: EventType | str, data: dict[str, Any]) -> None:
        # Unknown names are a programming error, caught even when disabled.
        event = EventType(event_type)
        if not self.enabled:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        entry = {"timestamp": time.time(), "run_id": run_id, "type": event.value, "data": data}
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def tail(self, lines: int = 50, run_id: str | None = None) -> list[str]:
        """The last ``lines`` raw lines, optionally only those of one run."""
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as f:
            if run_id is None:
                return list(deque(f, maxlen=max(0, lines)))
            return list(deque((ln for ln in f if _run_of(ln) == run_id), maxlen=max(0, lines)))


def _run_of(line: str) -> str | None:
    try:
        return json.loads(line).get("run_id")
    except (ValueError, AttributeError):
        return None


def prune_telemetry_file(telemetry_path: Path, retention_days: int) -> None:
    """Delete the log when it has not been written for ``retention_days`` (0 keeps it)."""
    if retention_days <= 0 or not telemetry_path.exists():
        return
    try:
        if telemetry_path.stat().st_mtime < time.time() - retention_days * 86400:
            telemetry_path.unlink(missing_ok=True)
    except OSError:
        # Telemetry must never fail a run.
        return
