"""Per-run execution state: variables, cancellation, timers and the run log."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Literal, Optional

from replay.dsl.flow import FramePathSegment

from .config import RunConfig, ensure_run_directories
from .errors import ActionTimeout, RunCancelled
from .selector_engine import SelectorEngine

log = logging.getLogger(__name__)

MASK = "******"

AttemptStatus = Literal["success", "failed", "cancelled"]


@dataclass(slots=True)
class StepAttempt:
    step_id: str
    attempt: int
    started_at: float
    finished_at: float
    status: AttemptStatus
    action_type: str = ""
    error: Optional[Dict[str, Any]] = None
    output: Any = None

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at) * 1000)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "step_id": self.step_id,
            "action_type": self.action_type,
            "attempt": self.attempt,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "status": self.status,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.output is not None:
            payload["output"] = self.output
        return payload


def mask_secrets(value: Any, secrets: Iterable[str]) -> Any:
    ordered = sorted({secret for secret in secrets if secret}, key=len, reverse=True)
    if not ordered:
        return value
    return _mask(value, ordered)


def _mask(value: Any, secrets: List[str]) -> Any:
    if isinstance(value, str):
        for secret in secrets:
            value = value.replace(secret, MASK)
        return value
    if isinstance(value, dict):
        return {key: _mask(item, secrets) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_mask(item, secrets) for item in value]
    return value


AttemptListener = Callable[[str, StepAttempt], None]


class RunLog:
    """Append-only list of step attempts for one run."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self._entries: List[StepAttempt] = []
        self._listeners: List[AttemptListener] = []
        self.mask: Callable[[Any], Any] = lambda value: value

    def append(self, attempt: StepAttempt) -> StepAttempt:
        attempt.error = self.mask(attempt.error)
        attempt.output = self.mask(attempt.output)
        self._entries.append(attempt)
        for listener in list(self._listeners):
            try:
                listener(self.run_id, attempt)
            except Exception:
                log.warning("Run log listener failed for %s", self.run_id, exc_info=True)
        return attempt

    def add_listener(self, listener: AttemptListener) -> None:
        self._listeners.append(listener)

    @property
    def entries(self) -> List[StepAttempt]:
        return list(self._entries)

    def as_list(self) -> List[Dict[str, Any]]:
        return [entry.as_dict() for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)


class ExecutionContext:
    """Mutable state threaded through every node of one run."""

    def __init__(
        self,
        run_id: str,
        agent,
        *,
        engine: Optional[SelectorEngine] = None,
        config: Optional[RunConfig] = None,
        variables: Optional[Dict[str, Any]] = None,
        sensitive: Iterable[str] = (),
        log: Optional[RunLog] = None,
        tab_ref: Optional[str] = None,
        frame_chain: Optional[List[FramePathSegment]] = None,
        depth: int = 0,
    ) -> None:
        self.run_id = run_id
        self.agent = agent
        self.config = config or RunConfig()
        self.engine = engine or SelectorEngine(agent, threshold=self.config.fingerprint_threshold)
        self.variables: Dict[str, Any] = variables if variables is not None else {}
        self.sensitive = set(sensitive)
        self.log = log or RunLog(run_id)
        self.log.mask = self.mask
        self.current_tab_ref = tab_ref
        self.current_frame_chain: List[FramePathSegment] = list(frame_chain or [])
        self.depth = depth
        self._cancel_event = asyncio.Event()
        self._children: List["ExecutionContext"] = []
        self._paths: Optional[Dict[str, Path]] = None

    # -- cancellation -----------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        for child in list(self._children):
            child.cancel()
        self._cancel_event.set()

    def check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise RunCancelled(f"Run {self.run_id} was cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep that wakes up as soon as the run is cancelled."""

        self.check_cancelled()
        if seconds <= 0:
            await asyncio.sleep(0)
            self.check_cancelled()
            return
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.check_cancelled()

    async def wait_cancelled(self) -> None:
        await self._cancel_event.wait()

    async def race(self, operation: Awaitable[Any], timeout_ms: Optional[int], *, label: str = "operation") -> Any:
        """Run ``operation`` against a timer and the cancellation signal.

        Whichever loses is cancelled and awaited before this returns or raises.
        """

        if self.cancelled:
            if asyncio.iscoroutine(operation):
                operation.close()
            self.check_cancelled()

        task = asyncio.ensure_future(operation)
        watcher = asyncio.ensure_future(self._cancel_event.wait())
        timeout = None if timeout_ms is None else timeout_ms / 1000
        try:
            done, _ = await asyncio.wait({task, watcher}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await _settle(task)
            await _settle(watcher)
            raise

        await _settle(watcher)
        if task in done:
            return task.result()

        await _settle(task)
        if self.cancelled:
            raise RunCancelled(f"Run {self.run_id} was cancelled during {label}")
        raise ActionTimeout(
            f"{label} timed out after {timeout_ms}ms",
            details={"timeout_ms": timeout_ms},
        )

    # -- subflows ---------------------------------------------------------

    def child(self, run_id: str, *, isolated: bool = False) -> "ExecutionContext":
        variables = copy.deepcopy(self.variables) if isolated else self.variables
        child = ExecutionContext(
            run_id,
            self.agent,
            engine=self.engine,
            config=self.config,
            variables=variables,
            sensitive=self.sensitive,
            tab_ref=self.current_tab_ref,
            frame_chain=list(self.current_frame_chain),
            depth=self.depth + 1,
        )
        child._paths = self._paths
        self._children.append(child)
        if self.cancelled:
            child.cancel()
        return child

    def release(self, child: "ExecutionContext") -> None:
        if child in self._children:
            self._children.remove(child)

    # -- diagnostics ------------------------------------------------------

    def mask(self, value: Any) -> Any:
        secrets = [
            self.variables[name]
            for name in self.sensitive
            if isinstance(self.variables.get(name), str)
        ]
        return mask_secrets(value, secrets)

    def snapshot_variables(self) -> Dict[str, Any]:
        return {
            name: MASK if name in self.sensitive else self.mask(copy.deepcopy(value))
            for name, value in self.variables.items()
        }

    def record(
        self,
        step_id: str,
        attempt: int,
        started_at: float,
        status: AttemptStatus,
        *,
        action_type: str = "",
        error: Optional[Dict[str, Any]] = None,
        output: Any = None,
    ) -> StepAttempt:
        return self.log.append(
            StepAttempt(
                step_id=step_id,
                attempt=attempt,
                started_at=started_at,
                finished_at=time.time(),
                status=status,
                action_type=action_type,
                error=error,
                output=output,
            )
        )

    def run_paths(self) -> Dict[str, Path]:
        if self._paths is None:
            self._paths = ensure_run_directories(self.run_id, self.config)
        return self._paths


async def _settle(task: "asyncio.Future[Any]") -> None:
    if not task.done():
        task.cancel()
    await asyncio.gather(task, return_exceptions=True)
