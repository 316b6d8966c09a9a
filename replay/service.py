"""Caller surface for starting and steering replay runs.

Several runs may execute concurrently on one event loop. Each run owns its
execution context; the only shared collaborator is the optional flow store.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from engine.config import RunConfig
from engine.context import ExecutionContext, StepAttempt
from engine.errors import IllegalTransition, ReplayError, UnknownRun, ValidationError
from engine.flow_store import check_safe_id, parse_flow
from engine.registry import ActionRegistry, build_default_registry
from engine.scheduler import RunStatus, RunSummary, Scheduler

from .dsl.flow import Flow

log = logging.getLogger(__name__)


@dataclass(slots=True)
class ProgressEvent:
    run_id: str
    node_id: Optional[str]
    status: str
    timestamp: float
    output: Any = None
    attempt: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "runId": self.run_id,
            "nodeId": self.node_id,
            "status": self.status,
            "timestamp": self.timestamp,
        }
        if self.attempt is not None:
            payload["attempt"] = self.attempt
        if self.output is not None:
            payload["output"] = self.output
        return payload


ProgressListener = Callable[[ProgressEvent], None]


@dataclass(slots=True)
class _RunHandle:
    run_id: str
    flow_id: str
    scheduler: Scheduler
    ctx: ExecutionContext
    task: Optional["asyncio.Task[RunSummary]"] = None
    owned_tab: Optional[str] = None
    events: List[ProgressEvent] = field(default_factory=list)


class ReplayService:
    """Start, pause, resume, cancel and observe flow runs."""

    def __init__(
        self,
        agent,
        *,
        registry: Optional[ActionRegistry] = None,
        config: Optional[RunConfig] = None,
        flow_store=None,
        isolate_tabs: bool = False,
    ) -> None:
        self.agent = agent
        self.isolate_tabs = isolate_tabs
        self.registry = registry or build_default_registry()
        self.config = config or RunConfig()
        self.flow_store = flow_store
        self._runs: Dict[str, _RunHandle] = {}
        self._listeners: List[ProgressListener] = []

    def _resolve_flow(self, flow: Union[Flow, Mapping[str, Any], str]) -> Flow:
        if isinstance(flow, Flow):
            return flow
        if isinstance(flow, Mapping):
            return parse_flow(dict(flow))
        if self.flow_store is None:
            raise ValidationError(f"Cannot load flow '{flow}' without a flow store", code="UNKNOWN_FLOW")
        return self.flow_store.load_flow(flow)

    async def run(
        self,
        flow: Union[Flow, Mapping[str, Any], str],
        initial_variables: Optional[Mapping[str, Any]] = None,
        *,
        run_id: Optional[str] = None,
    ) -> str:
        """Validate ``flow`` and start it in the background; return the run id.

        Malformed flows raise ValidationError here, before any node runs.
        """

        if run_id is not None:
            check_safe_id(run_id, what="run id", code="INVALID_RUN_ID")
        resolved = self._resolve_flow(flow)
        run_id = run_id or f"run-{uuid.uuid4().hex[:12]}"
        if run_id in self._runs:
            raise ValidationError(f"Run id '{run_id}' is already in use", code="DUPLICATE_RUN")

        variables = resolved.initial_variables()
        variables.update(initial_variables or {})
        ctx = ExecutionContext(
            run_id,
            self.agent,
            config=self.config,
            variables=variables,
            sensitive=resolved.sensitive_names(),
        )
        scheduler = Scheduler(
            resolved,
            self.registry,
            ctx,
            flow_store=self.flow_store,
            on_status=self._on_status,
        )
        handle = _RunHandle(run_id=run_id, flow_id=resolved.id, scheduler=scheduler, ctx=ctx)
        self._runs[run_id] = handle
        if self.isolate_tabs:
            try:
                handle.owned_tab = await self.agent.open_tab(activate=False)
            except BaseException:
                del self._runs[run_id]
                raise
            ctx.current_tab_ref = handle.owned_tab
        ctx.log.add_listener(self._on_attempt)
        if self.flow_store is not None:
            store = self.flow_store
            ctx.log.add_listener(lambda rid, attempt: store.append_run_log(rid, [attempt.as_dict()]))

        log.info("Starting run %s for flow %s", run_id, resolved.id)
        handle.task = asyncio.get_running_loop().create_task(self._drive(handle))
        return run_id

    async def _drive(self, handle: _RunHandle) -> RunSummary:
        try:
            return await handle.scheduler.run()
        finally:
            if handle.owned_tab is not None:
                await self._close_owned_tab(handle)
            close_run = getattr(self.flow_store, "close_run", None)
            if close_run is not None:
                close_run(handle.run_id)

    async def _close_owned_tab(self, handle: _RunHandle) -> None:
        try:
            await self.agent.close_tab(handle.owned_tab)
        except ReplayError as exc:
            log.debug("Could not close tab %s of run %s: %s", handle.owned_tab, handle.run_id, exc.message)

    def _handle(self, run_id: str) -> _RunHandle:
        try:
            return self._runs[run_id]
        except KeyError as exc:
            raise UnknownRun(f"Unknown run '{run_id}'", details={"run_id": run_id}) from exc

    def pause(self, run_id: str) -> None:
        self._handle(run_id).scheduler.pause()

    def resume(self, run_id: str) -> None:
        self._handle(run_id).scheduler.resume()

    def cancel(self, run_id: str) -> None:
        self._handle(run_id).scheduler.cancel()

    def status(self, run_id: str) -> Dict[str, Any]:
        handle = self._handle(run_id)
        scheduler = handle.scheduler
        payload: Dict[str, Any] = {
            "run_id": run_id,
            "flow_id": handle.flow_id,
            "status": scheduler.status.value,
            "checkpoint": scheduler.checkpoint.as_dict() if scheduler.checkpoint else None,
            "attempts": len(handle.ctx.log),
        }
        if scheduler.summary is not None:
            payload["summary"] = scheduler.summary.as_dict()
        return payload

    async def wait(self, run_id: str) -> RunSummary:
        handle = self._handle(run_id)
        if handle.task is None:
            raise IllegalTransition(f"Run {run_id} was never started", details={"run_id": run_id})
        return await asyncio.shield(handle.task)

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def events(self, run_id: str) -> List[Dict[str, Any]]:
        return [event.as_dict() for event in self._handle(run_id).events]

    def runs(self) -> List[str]:
        return list(self._runs)

    async def shutdown(self) -> None:
        pending = []
        for handle in self._runs.values():
            if handle.task is not None and not handle.task.done():
                if not handle.scheduler.status.terminal:
                    handle.scheduler.cancel()
                pending.append(handle.task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -- progress feed ----------------------------------------------------

    def _emit(self, event: ProgressEvent) -> None:
        handle = self._runs.get(event.run_id)
        if handle is not None:
            handle.events.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.warning("Progress listener failed for %s", event.run_id, exc_info=True)

    def _on_status(self, run_id: str, status: RunStatus) -> None:
        self._emit(ProgressEvent(run_id=run_id, node_id=None, status=status.value, timestamp=time.time()))

    def _on_attempt(self, run_id: str, attempt: StepAttempt) -> None:
        self._emit(
            ProgressEvent(
                run_id=run_id,
                node_id=attempt.step_id,
                status=attempt.status,
                timestamp=attempt.finished_at,
                output=attempt.error if attempt.error is not None else attempt.output,
                attempt=attempt.attempt,
            )
        )
