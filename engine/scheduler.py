"""Graph traversal for recorded flows.

A run walks the flow from its entry node, dispatching action nodes through the
registry and evaluating control-flow nodes (``if``, ``foreach``, ``while``,
``switchFrame``, ``executeFlow``) itself. Nodes within a run execute strictly
one at a time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from replay.dsl.flow import Flow, FlowEdge, FlowNode
from replay.dsl.models import ActionConfig

from .context import ExecutionContext
from .errors import ExecutionError, IllegalTransition, ReplayError, RunCancelled, ValidationError
from .registry import ActionRegistry
from .templating import evaluate_condition, render

log = logging.getLogger(__name__)


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


_TRANSITIONS: Dict[RunStatus, Set[RunStatus]] = {
    RunStatus.IDLE: {RunStatus.RUNNING, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.PAUSED, RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.PAUSED: {RunStatus.RUNNING, RunStatus.CANCELLED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
    RunStatus.CANCELLED: set(),
}

_ALLOWED_LABELS = {
    "if": {"true", "false", "default"},
    "foreach": {"loop-continue", "loop-exit", "default"},
    "while": {"loop-continue", "loop-exit", "default"},
}
_ACTION_LABELS = {"default"}

# ---------------------------------------------------------------------------
# validation


@dataclass(slots=True)
class FlowPlan:
    """A flow that passed structural validation."""

    flow: Flow
    entry: str
    nodes: Dict[str, FlowNode]
    edges: Dict[str, Dict[str, FlowEdge]]
    loop_back: Set[Tuple[str, str]]
    loop_bodies: Dict[str, Set[str]]

    def edge(self, node_id: str, label: str) -> Optional[FlowEdge]:
        return self.edges.get(node_id, {}).get(label)


def _reachable(start: str, adjacency: Dict[str, List[str]], stop: str) -> Set[str]:
    seen: Set[str] = set()
    stack = [start]
    while stack:
        current = stack.pop()
        if current in seen or current == stop:
            continue
        seen.add(current)
        stack.extend(adjacency.get(current, []))
    return seen


def _has_cycle(node_ids: List[str], adjacency: Dict[str, List[str]]) -> Optional[str]:
    indegree = {node_id: 0 for node_id in node_ids}
    for targets in adjacency.values():
        for target in targets:
            indegree[target] += 1
    ready = [node_id for node_id in node_ids if indegree[node_id] == 0]
    visited = 0
    while ready:
        current = ready.pop()
        visited += 1
        for target in adjacency.get(current, []):
            indegree[target] -= 1
            if indegree[target] == 0:
                ready.append(target)
    if visited == len(node_ids):
        return None
    return next(node_id for node_id in node_ids if indegree[node_id] > 0)


def validate_flow(flow: Flow, registry: ActionRegistry) -> FlowPlan:
    """Check the flow's structure and return a traversal plan.

    Raises ValidationError listing every problem found. Edges into a loop
    node from its own body are loop-back edges; the remaining graph must be
    acyclic.
    """

    problems: List[str] = []
    if not flow.nodes:
        raise ValidationError(f"Flow '{flow.id}' has no nodes", code="INVALID_FLOW")

    nodes = {node.id: node for node in flow.nodes}
    for node in flow.nodes:
        if node.action_type not in registry:
            problems.append(f"node '{node.id}' has unknown action type '{node.action_type}'")

    edges: Dict[str, Dict[str, FlowEdge]] = defaultdict(dict)
    adjacency: Dict[str, List[str]] = defaultdict(list)
    for edge in flow.edges:
        if edge.from_ not in nodes:
            problems.append(f"edge {edge.id or '?'} starts at unknown node '{edge.from_}'")
            continue
        if edge.to not in nodes:
            problems.append(f"edge {edge.id or '?'} points to unknown node '{edge.to}'")
            continue
        source = nodes[edge.from_]
        allowed = _ALLOWED_LABELS.get(source.action_type, _ACTION_LABELS)
        if edge.label not in allowed:
            problems.append(f"node '{source.id}' ({source.action_type}) cannot have a '{edge.label}' edge")
            continue
        if edge.label in edges[edge.from_]:
            problems.append(f"node '{source.id}' has more than one '{edge.label}' edge")
            continue
        edges[edge.from_][edge.label] = edge
        adjacency[edge.from_].append(edge.to)

    loop_bodies: Dict[str, Set[str]] = {}
    loop_back: Set[Tuple[str, str]] = set()
    for node in flow.nodes:
        if not node.is_loop:
            continue
        body_edge = edges[node.id].get("loop-continue")
        if body_edge is None:
            problems.append(f"loop node '{node.id}' has no 'loop-continue' edge")
            continue
        body = _reachable(body_edge.to, adjacency, node.id)
        loop_bodies[node.id] = body
        for member in body:
            if node.id in adjacency.get(member, []):
                loop_back.add((member, node.id))

    if flow.entry is not None and flow.entry not in nodes:
        problems.append(f"entry node '{flow.entry}' does not exist")

    if problems:
        raise ValidationError(
            f"Flow '{flow.id}' is malformed: {problems[0]}",
            code="INVALID_FLOW",
            details={"errors": problems},
        )

    forward: Dict[str, List[str]] = {
        source: [target for target in targets if (source, target) not in loop_back]
        for source, targets in adjacency.items()
    }
    cyclic = _has_cycle(list(nodes), forward)
    if cyclic is not None:
        raise ValidationError(
            f"Flow '{flow.id}' contains a cycle through '{cyclic}' that is not a loop body",
            code="INVALID_FLOW",
            details={"errors": [f"cycle through '{cyclic}'"]},
        )

    entry = flow.entry
    if entry is None:
        incoming = {target for targets in forward.values() for target in targets}
        entry = next((node.id for node in flow.nodes if node.id not in incoming), None)
    if entry is None:
        raise ValidationError(f"Flow '{flow.id}' has no entry node", code="INVALID_FLOW")

    return FlowPlan(
        flow=flow,
        entry=entry,
        nodes=nodes,
        edges=dict(edges),
        loop_back=loop_back,
        loop_bodies=loop_bodies,
    )


# ---------------------------------------------------------------------------
# run bookkeeping


@dataclass(slots=True)
class Checkpoint:
    next_node_id: str
    last_completed_node_id: Optional[str]

    def as_dict(self) -> Dict[str, Any]:
        return {"next_node_id": self.next_node_id, "last_completed_node_id": self.last_completed_node_id}


@dataclass(slots=True)
class RunStats:
    nodes_executed: int = 0
    attempts: int = 0
    retries: int = 0
    failures: int = 0
    per_node: Dict[str, Dict[str, int]] = field(default_factory=dict)
    duration_ms: int = 0

    def count(self, key: str, attempts: int, failed: bool) -> None:
        self.nodes_executed += 1
        self.attempts += attempts
        self.retries += max(0, attempts - 1)
        entry = self.per_node.setdefault(key, {"executions": 0, "attempts": 0, "failures": 0})
        entry["executions"] += 1
        entry["attempts"] += attempts
        if failed:
            self.failures += 1
            entry["failures"] += 1

    def absorb(self, other: "RunStats", prefix: str) -> None:
        self.nodes_executed += other.nodes_executed
        self.attempts += other.attempts
        self.retries += other.retries
        self.failures += other.failures
        for key, counts in other.per_node.items():
            entry = self.per_node.setdefault(f"{prefix}/{key}", {"executions": 0, "attempts": 0, "failures": 0})
            for name, value in counts.items():
                entry[name] += value

    def as_dict(self) -> Dict[str, Any]:
        return {
            "nodes_executed": self.nodes_executed,
            "attempts": self.attempts,
            "retries": self.retries,
            "failures": self.failures,
            "per_node": {key: dict(value) for key, value in self.per_node.items()},
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class RunSummary:
    run_id: str
    flow_id: str
    status: RunStatus
    failing_node_id: Optional[str] = None
    last_successful_node_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    attempts: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    stats: RunStats = field(default_factory=RunStats)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "flow_id": self.flow_id,
            "status": self.status.value,
            "failing_node_id": self.failing_node_id,
            "last_successful_node_id": self.last_successful_node_id,
            "error": self.error,
            "variables": self.variables,
            "attempts": self.attempts,
            "warnings": self.warnings,
            "stats": self.stats.as_dict(),
        }


@dataclass(slots=True)
class _LoopFrame:
    node_id: str
    cap: int
    items: Optional[List[Any]] = None
    iterations: int = 0
    item_var: str = "item"
    index_var: Optional[str] = None


class _NodeFailed(Exception):
    def __init__(self, node_id: str, error: ReplayError) -> None:
        super().__init__(str(error))
        self.node_id = node_id
        self.error = error


StatusListener = Callable[[str, RunStatus], None]


class Scheduler:
    """Execute one flow against one execution context."""

    def __init__(
        self,
        flow: Flow,
        registry: ActionRegistry,
        ctx: ExecutionContext,
        *,
        flow_store=None,
        on_status: Optional[StatusListener] = None,
    ) -> None:
        self.flow = flow
        self.registry = registry
        self.ctx = ctx
        self.flow_store = flow_store
        self.on_status = on_status
        self.plan = validate_flow(flow, registry)
        self.status = RunStatus.IDLE
        self.checkpoint: Optional[Checkpoint] = None
        self.stats = RunStats()
        self.warnings: List[str] = []
        self.summary: Optional[RunSummary] = None
        self._loops: List[_LoopFrame] = []
        self._last_successful: Optional[str] = None
        self._last_completed: Optional[str] = None
        self._pause_requested = False
        self._resume_event = asyncio.Event()
        self._resume_event.set()

    # -- lifecycle --------------------------------------------------------

    def _transition(self, target: RunStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise IllegalTransition(
                f"Run {self.ctx.run_id} cannot go from {self.status.value} to {target.value}",
                details={"from": self.status.value, "to": target.value},
            )
        log.info("Run %s: %s -> %s", self.ctx.run_id, self.status.value, target.value)
        self.status = target
        if self.on_status is not None:
            self.on_status(self.ctx.run_id, target)

    def pause(self) -> None:
        if self.status is not RunStatus.RUNNING or self._pause_requested:
            raise IllegalTransition(
                f"Run {self.ctx.run_id} cannot be paused while {self.status.value}",
                details={"from": self.status.value, "to": RunStatus.PAUSED.value},
            )
        self._pause_requested = True
        self._resume_event.clear()

    def resume(self) -> None:
        if not self._pause_requested:
            raise IllegalTransition(
                f"Run {self.ctx.run_id} is not paused",
                details={"from": self.status.value, "to": RunStatus.RUNNING.value},
            )
        self._pause_requested = False
        self._resume_event.set()

    def cancel(self) -> None:
        if self.status.terminal:
            raise IllegalTransition(
                f"Run {self.ctx.run_id} already finished as {self.status.value}",
                details={"from": self.status.value, "to": RunStatus.CANCELLED.value},
            )
        self.ctx.cancel()
        self._resume_event.set()

    async def run(self) -> RunSummary:
        if self.ctx.cancelled and self.status is RunStatus.IDLE:
            self._transition(RunStatus.CANCELLED)
            return self._finish(time.time(), error=RunCancelled(f"Run {self.ctx.run_id} was cancelled").to_dict())

        self._transition(RunStatus.RUNNING)
        started = time.time()
        try:
            await self._traverse()
        except _NodeFailed as failure:
            log.info("Run %s failed at node %s: %s", self.ctx.run_id, failure.node_id, failure.error.message)
            self._transition(RunStatus.FAILED)
            return self._finish(started, failing_node_id=failure.node_id, error=failure.error.to_dict())
        except RunCancelled as exc:
            self._transition(RunStatus.CANCELLED)
            return self._finish(started, error=exc.to_dict())
        self._transition(RunStatus.COMPLETED)
        return self._finish(started)

    def _finish(
        self,
        started: float,
        *,
        failing_node_id: Optional[str] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> RunSummary:
        self.stats.duration_ms = int((time.time() - started) * 1000)
        self.summary = RunSummary(
            run_id=self.ctx.run_id,
            flow_id=self.flow.id,
            status=self.status,
            failing_node_id=failing_node_id,
            last_successful_node_id=self._last_successful,
            error=self.ctx.mask(error),
            variables=self.ctx.snapshot_variables(),
            attempts=self.ctx.log.as_list(),
            warnings=list(self.warnings),
            stats=self.stats,
        )
        return self.summary

    # -- traversal --------------------------------------------------------

    async def _traverse(self) -> None:
        current: Optional[str] = self.plan.entry
        while current is not None:
            await self._boundary(current)
            node = self.plan.nodes[current]
            label = await self._run_node(node)
            self._last_completed = node.id
            current = self._advance(node, label)

    async def _boundary(self, next_node_id: str) -> None:
        self.ctx.check_cancelled()
        if not self._pause_requested:
            return
        self.checkpoint = Checkpoint(next_node_id, self._last_completed)
        self._transition(RunStatus.PAUSED)
        resume = asyncio.ensure_future(self._resume_event.wait())
        cancelled = asyncio.ensure_future(self.ctx.wait_cancelled())
        try:
            await asyncio.wait({resume, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (resume, cancelled):
                waiter.cancel()
            await asyncio.gather(resume, cancelled, return_exceptions=True)
        self.ctx.check_cancelled()
        self._transition(RunStatus.RUNNING)
        self.checkpoint = None

    def _advance(self, node: FlowNode, label: str) -> Optional[str]:
        edge = self.plan.edge(node.id, label)
        if edge is None and label != "default":
            edge = self.plan.edge(node.id, "default")
        if edge is not None:
            return edge.to
        if self._loops:
            return self._loops[-1].node_id
        return None

    def _continues_on_error(self, node: FlowNode) -> bool:
        if node.continue_on_error is not None:
            return node.continue_on_error
        return self.flow.defaults.continue_on_error

    async def _run_node(self, node: FlowNode) -> str:
        before = len(self.ctx.log)
        failed = False
        try:
            if self.registry.get(node.action_type).control_flow:
                label = await self._control(node)
            else:
                await self.registry.dispatch(self.ctx, node, self.flow.defaults)
                label = "default"
            self._last_successful = node.id
            return label
        except RunCancelled:
            raise
        except ReplayError as exc:
            failed = True
            if node.is_loop and self._loops and self._loops[-1].node_id == node.id:
                self._loops.pop()
            if not self._continues_on_error(node):
                raise _NodeFailed(node.id, exc) from exc
            message = f"Node '{node.id}' failed with {exc.code}: {exc.message}; continuing"
            log.warning("Run %s: %s", self.ctx.run_id, message)
            self.warnings.append(self.ctx.mask(message))
            if node.action_type == "if":
                return "false"
            if node.is_loop:
                return "loop-exit"
            return "default"
        finally:
            self.stats.count(node.id, max(1, len(self.ctx.log) - before), failed)

    # -- control flow -----------------------------------------------------

    def _bind(self, node: FlowNode, *, rendered: bool = True) -> ActionConfig:
        handler = self.registry.get(node.action_type)
        raw = render(node.config, self.ctx.variables) if rendered else node.config
        return handler.validate(raw)

    async def _control(self, node: FlowNode) -> str:
        started = time.time()
        try:
            label, output = await self._evaluate(node)
        except RunCancelled as exc:
            self.ctx.record(node.id, 1, started, "cancelled", action_type=node.action_type, error=exc.to_dict())
            raise
        except ReplayError as exc:
            exc.node_id = exc.node_id or node.id
            nested_log = exc.details.pop("log", None)
            self.ctx.record(
                node.id,
                1,
                started,
                "failed",
                action_type=node.action_type,
                error=exc.to_dict(),
                output={"log": nested_log} if nested_log is not None else None,
            )
            raise
        self.ctx.record(node.id, 1, started, "success", action_type=node.action_type, output=output)
        return label

    async def _evaluate(self, node: FlowNode) -> Tuple[str, Dict[str, Any]]:
        if node.action_type == "if":
            config = self._bind(node, rendered=False)
            result = evaluate_condition(config.condition, self.ctx.variables)
            return ("true" if result else "false"), {"result": result}
        if node.action_type == "foreach":
            return self._foreach(node)
        if node.action_type == "while":
            return self._while(node)
        if node.action_type == "switchFrame":
            return self._switch_frame(node)
        if node.action_type == "executeFlow":
            return await self._subflow(node)
        raise ExecutionError(f"No evaluator for control node type '{node.action_type}'", code="UNSUPPORTED")

    def _loop_cap(self, requested: Optional[int]) -> int:
        limit = self.ctx.config.max_loop_iterations
        return min(requested, limit) if requested else limit

    def _active_frame(self, node: FlowNode) -> Optional[_LoopFrame]:
        if self._loops and self._loops[-1].node_id == node.id:
            return self._loops[-1]
        return None

    def _foreach(self, node: FlowNode) -> Tuple[str, Dict[str, Any]]:
        frame = self._active_frame(node)
        if frame is None:
            config = self._bind(node)
            frame = _LoopFrame(
                node_id=node.id,
                cap=self._loop_cap(config.max_iterations),
                items=list(config.items),
                item_var=config.item_var,
                index_var=config.index_var,
            )
            self._loops.append(frame)

        items = frame.items or []
        if frame.iterations < len(items) and frame.iterations < frame.cap:
            index = frame.iterations
            self.ctx.variables[frame.item_var] = items[index]
            if frame.index_var:
                self.ctx.variables[frame.index_var] = index
            frame.iterations += 1
            return "loop-continue", {"index": index, "iteration": frame.iterations}

        if frame.iterations < len(items):
            self._cap_warning(node, frame)
        self._loops.pop()
        return "loop-exit", {"iterations": frame.iterations}

    def _while(self, node: FlowNode) -> Tuple[str, Dict[str, Any]]:
        config = self._bind(node, rendered=False)
        frame = self._active_frame(node)
        if frame is None:
            frame = _LoopFrame(node_id=node.id, cap=self._loop_cap(config.max_iterations))
            self._loops.append(frame)
        holds = evaluate_condition(config.condition, self.ctx.variables)
        if holds and frame.iterations < frame.cap:
            frame.iterations += 1
            if config.counter_var:
                self.ctx.variables[config.counter_var] = frame.iterations
            return "loop-continue", {"iteration": frame.iterations}
        if holds:
            self._cap_warning(node, frame)
        self._loops.pop()
        return "loop-exit", {"iterations": frame.iterations}

    def _cap_warning(self, node: FlowNode, frame: _LoopFrame) -> None:
        message = f"Loop '{node.id}' stopped at its iteration cap ({frame.cap})"
        log.warning("Run %s: %s", self.ctx.run_id, message)
        self.warnings.append(message)

    def _switch_frame(self, node: FlowNode) -> Tuple[str, Dict[str, Any]]:
        config = self._bind(node)
        chain = self.ctx.current_frame_chain
        if config.strategy == "enter":
            chain.append(config.frame)
        elif config.strategy == "parent":
            if chain:
                chain.pop()
        else:
            chain.clear()
        return "default", {"frame_chain": [segment.describe() for segment in chain]}

    def _load_subflow(self, flow_id: str) -> Flow:
        if flow_id in self.flow.subflows:
            return self.flow.subflows[flow_id]
        if self.flow_store is not None:
            return self.flow_store.load_flow(flow_id)
        raise ValidationError(f"Unknown subflow '{flow_id}'", code="UNKNOWN_FLOW", details={"flow_id": flow_id})

    async def _subflow(self, node: FlowNode) -> Tuple[str, Dict[str, Any]]:
        config = self._bind(node)
        if self.ctx.depth + 1 > self.ctx.config.max_subflow_depth:
            raise ValidationError(
                f"Subflow nesting deeper than {self.ctx.config.max_subflow_depth}",
                code="SUBFLOW_DEPTH",
            )
        flow = self._load_subflow(config.flow_id)
        child = self.ctx.child(f"{self.ctx.run_id}/{node.id}", isolated=config.isolated)
        for name, value in flow.initial_variables().items():
            child.variables.setdefault(name, value)
        child.variables.update(config.variables)
        child.sensitive.update(flow.sensitive_names())
        try:
            nested = Scheduler(flow, self.registry, child, flow_store=self.flow_store)
            summary = await nested.run()
        finally:
            self.ctx.release(child)

        self.stats.absorb(nested.stats, node.id)
        nested_log = child.log.as_list()
        if summary.status is RunStatus.CANCELLED:
            raise RunCancelled(f"Subflow '{flow.id}' was cancelled", node_id=node.id)
        if summary.status is RunStatus.FAILED:
            cause = summary.error or {}
            raise ExecutionError(
                f"Subflow '{flow.id}' failed at node '{summary.failing_node_id}': {cause.get('message', '')}",
                code="SUBFLOW_FAILED",
                node_id=node.id,
                details={
                    "flow_id": flow.id,
                    "failing_node_id": summary.failing_node_id,
                    "cause": cause,
                    "log": nested_log,
                },
            )

        if config.isolated:
            for name in config.export:
                if name in child.variables:
                    self.ctx.variables[name] = child.variables[name]
        self.warnings.extend(f"{node.id}: {warning}" for warning in summary.warnings)
        return "default", {"flow_id": flow.id, "status": summary.status.value, "log": nested_log}
