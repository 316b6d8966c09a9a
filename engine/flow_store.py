"""Persistence for flow definitions and per-run attempt logs."""

from __future__ import annotations

import json
import logging
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Protocol

import pydantic

from replay.dsl.flow import Flow

from .errors import ValidationError
from .structured_logging import StructuredLogger, prepare_log_paths, read_events

log = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"[A-Za-z0-9_-][A-Za-z0-9._-]*")


def check_safe_id(value: Any, *, what: str, code: str) -> str:
    """Return ``value`` if it can name a single path component under the store root."""

    if not isinstance(value, str) or not _SAFE_ID.fullmatch(value):
        raise ValidationError(f"Invalid {what} '{value}'", code=code, details={what.replace(" ", "_"): value})
    return value


class FlowStore(Protocol):
    def load_flow(self, flow_id: str) -> Flow: ...

    def append_run_log(self, run_id: str, entries: List[Dict[str, Any]]) -> None: ...


def parse_flow(data: Any) -> Flow:
    """Validate a flow document, converting pydantic errors to ValidationError."""

    try:
        if isinstance(data, (str, bytes)):
            return Flow.model_validate_json(data)
        return Flow.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            f"Invalid flow document: {exc.error_count()} error(s)",
            code="INVALID_FLOW",
            details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from exc


class InMemoryFlowStore:
    def __init__(self) -> None:
        self._flows: Dict[str, Flow] = {}
        self._logs: Dict[str, List[Dict[str, Any]]] = {}

    def save_flow(self, flow: Flow) -> None:
        self._flows[flow.id] = flow

    def load_flow(self, flow_id: str) -> Flow:
        try:
            return self._flows[flow_id]
        except KeyError as exc:
            raise ValidationError(f"Unknown flow '{flow_id}'", code="UNKNOWN_FLOW", details={"flow_id": flow_id}) from exc

    def append_run_log(self, run_id: str, entries: List[Dict[str, Any]]) -> None:
        self._logs.setdefault(run_id, []).extend(entries)

    def run_log(self, run_id: str) -> List[Dict[str, Any]]:
        return list(self._logs.get(run_id, []))


class FileFlowStore:
    """Flows as ``<root>/flows/<id>.json``; logs as ``<root>/<run_id>/events.jsonl``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.flows_dir = self.root / "flows"
        self.flows_dir.mkdir(parents=True, exist_ok=True)
        self._loggers: Dict[str, StructuredLogger] = {}
        self._lock = threading.Lock()

    def _flow_path(self, flow_id: str) -> Path:
        check_safe_id(flow_id, what="flow id", code="INVALID_FLOW_ID")
        return self.flows_dir / f"{flow_id}.json"

    def save_flow(self, flow: Flow) -> Path:
        path = self._flow_path(flow.id)
        path.write_text(json.dumps(flow.to_wire(), ensure_ascii=False, indent=2), encoding="utf-8")
        return path

    def load_flow(self, flow_id: str) -> Flow:
        path = self._flow_path(flow_id)
        if not path.exists():
            raise ValidationError(f"Unknown flow '{flow_id}'", code="UNKNOWN_FLOW", details={"flow_id": flow_id})
        return parse_flow(path.read_text(encoding="utf-8"))

    def _logger(self, run_id: str) -> StructuredLogger:
        check_safe_id(run_id, what="run id", code="INVALID_RUN_ID")
        with self._lock:
            logger = self._loggers.get(run_id)
            if logger is None:
                logger = StructuredLogger(run_id, prepare_log_paths(run_id, self.root))
                self._loggers[run_id] = logger
            return logger

    def append_run_log(self, run_id: str, entries: List[Dict[str, Any]]) -> None:
        self._logger(run_id).log_attempts(entries)

    def run_log(self, run_id: str) -> List[Dict[str, Any]]:
        check_safe_id(run_id, what="run id", code="INVALID_RUN_ID")
        return [event["entry"] for event in read_events(self.root / run_id / "events.jsonl")]

    def close_run(self, run_id: str) -> None:
        with self._lock:
            logger = self._loggers.pop(run_id, None)
        if logger is not None:
            logger.close()

    def close(self) -> None:
        with self._lock:
            loggers = list(self._loggers.values())
            self._loggers.clear()
        for logger in loggers:
            logger.close()
