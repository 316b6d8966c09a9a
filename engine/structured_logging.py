"""Structured JSONL logging for replay runs."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)


@dataclass(slots=True)
class LogPaths:
    base: Path
    shots: Path
    events: Path


class StructuredLogger:
    """Appends one JSON line per step attempt to ``events.jsonl``."""

    def __init__(self, run_id: str, paths: LogPaths) -> None:
        self.run_id = run_id
        self.paths = paths
        self._step = 0
        self._lock = threading.Lock()
        self._events_file = paths.events.open("a", encoding="utf-8")

    def log_event(self, entry: Dict[str, Any], *, metadata: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            self._step += 1
            payload = {
                "ts": time.time(),
                "run_id": self.run_id,
                "step": self._step,
                "entry": entry,
                "metadata": metadata or {},
            }
            self._events_file.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
            self._events_file.flush()
            return self._step

    def log_attempts(self, entries: List[Dict[str, Any]]) -> int:
        step = self._step
        for entry in entries:
            step = self.log_event(entry)
        return step

    def close(self) -> None:
        with self._lock:
            if not self._events_file.closed:
                self._events_file.close()


def prepare_log_paths(run_id: str, base_dir: Path) -> LogPaths:
    base = base_dir / run_id
    base.mkdir(parents=True, exist_ok=True)
    shots_dir = base / "shots"
    shots_dir.mkdir(parents=True, exist_ok=True)
    return LogPaths(base=base, shots=shots_dir, events=base / "events.jsonl")


def read_events(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    events: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if line:
                events.append(json.loads(line))
    return events
