"""Handler registry and the dispatch wrapper every action runs through."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterator, Optional, Type

import pydantic

from replay.dsl.flow import FlowDefaults, FlowNode, RetryPolicy, TargetLocator
from replay.dsl.models import ActionConfig, TargetedConfig

from .config import RunConfig
from .context import ExecutionContext
from .errors import ExecutionError, ReplayError, RunCancelled, ValidationError
from .templating import render

log = logging.getLogger(__name__)


@dataclass(slots=True)
class ActionResult:
    output: Any = None
    resolved_by: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.details)
        if self.output is not None:
            payload["output"] = self.output
        if self.resolved_by is not None:
            payload["resolved_by"] = self.resolved_by
        return payload


@dataclass(slots=True)
class BoundAction:
    """A validated config together with the node it came from."""

    node: FlowNode
    config: ActionConfig

    @property
    def target(self) -> Optional[TargetLocator]:
        return self.node.target


class BaseHandler:
    action_type: ClassVar[str]
    config_model: ClassVar[Type[ActionConfig]]
    control_flow: ClassVar[bool] = False
    description: ClassVar[str] = ""

    def validate(self, config: Dict[str, Any]) -> ActionConfig:
        try:
            return self.config_model.model_validate(config)
        except pydantic.ValidationError as exc:
            raise ValidationError(
                f"Invalid config for '{self.action_type}': {exc.error_count()} error(s)",
                code="INVALID_CONFIG",
                details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
            ) from exc

    def needs_target(self, config: ActionConfig) -> bool:
        return isinstance(config, TargetedConfig)

    def timeout_hint(self, config: ActionConfig, run_config: RunConfig) -> Optional[int]:
        return None

    def describe(self, action: BoundAction) -> str:
        return f"{self.action_type} {action.node.id}"

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        raise ExecutionError(f"'{self.action_type}' is evaluated by the scheduler", code="NOT_EXECUTABLE")

    async def locate(self, ctx: ExecutionContext, action: BoundAction, target: Optional[TargetLocator] = None):
        locator = target or action.target
        if locator is None:
            raise ValidationError(f"'{self.action_type}' needs a target", code="MISSING_TARGET")
        verify = getattr(action.config, "verify_fingerprint", None)
        if verify is None:
            verify = ctx.config.verify_fingerprint
        return await ctx.engine.locate(
            locator,
            verify_fingerprint=verify,
            frame_chain=ctx.current_frame_chain,
            tab_ref=ctx.current_tab_ref,
        )


@dataclass(slots=True)
class ActionSpec:
    name: str
    handler: BaseHandler
    control_flow: bool = False
    description: str | None = None

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "control_flow": self.control_flow,
            "description": self.description or "",
            "schema": self.handler.config_model.model_json_schema(by_alias=True),
        }


class ActionRegistry:
    """Explicit actionType -> handler table."""

    def __init__(self) -> None:
        self._actions: Dict[str, ActionSpec] = {}

    def register(self, handler: BaseHandler, *, name: Optional[str] = None) -> BaseHandler:
        if not isinstance(handler, BaseHandler):
            raise TypeError("handler must subclass BaseHandler")
        action_name = name or handler.action_type
        self._actions[action_name] = ActionSpec(
            name=action_name,
            handler=handler,
            control_flow=handler.control_flow,
            description=handler.description,
        )
        return handler

    def get(self, name: str) -> BaseHandler:
        try:
            return self._actions[name].handler
        except KeyError as exc:
            raise KeyError(f"Unknown action '{name}'") from exc

    def __contains__(self, name: str) -> bool:
        return name in self._actions

    def __iter__(self) -> Iterator[ActionSpec]:
        return iter(self._actions.values())

    def schema(self) -> Dict[str, Any]:
        return {name: spec.to_metadata() for name, spec in self._actions.items()}

    def bind(self, node: FlowNode, variables: Dict[str, Any]) -> BoundAction:
        """Render templates in the node config and validate it."""

        handler = self.get(node.action_type)
        config = handler.validate(render(node.config, variables))
        if handler.needs_target(config) and (node.target is None or not node.target.candidates):
            raise ValidationError(
                f"Node '{node.id}' ({node.action_type}) needs a target with at least one candidate",
                code="MISSING_TARGET",
                node_id=node.id,
            )
        return BoundAction(node=node, config=config)

    def retry_policy(self, ctx: ExecutionContext, node: FlowNode, defaults: Optional[FlowDefaults]) -> RetryPolicy:
        if node.retry is not None:
            return node.retry
        if defaults is not None and defaults.retry is not None:
            return defaults.retry
        return RetryPolicy(
            max_attempts=ctx.config.max_attempts,
            base_delay_ms=ctx.config.retry_backoff_base_ms,
            max_delay_ms=ctx.config.retry_backoff_max_ms,
        )

    def timeout_for(
        self,
        ctx: ExecutionContext,
        node: FlowNode,
        handler: BaseHandler,
        config: ActionConfig,
        defaults: Optional[FlowDefaults],
    ) -> int:
        if node.timeout_ms is not None:
            return node.timeout_ms
        if defaults is not None and defaults.timeout_ms is not None:
            return defaults.timeout_ms
        hint = handler.timeout_hint(config, ctx.config)
        if hint is not None:
            return max(hint, ctx.config.action_timeout_ms)
        return ctx.config.action_timeout_ms

    async def dispatch(
        self,
        ctx: ExecutionContext,
        node: FlowNode,
        defaults: Optional[FlowDefaults] = None,
    ) -> ActionResult:
        """Run one node with template rendering, validation, timeout and retry.

        Every attempt appends exactly one StepAttempt to ``ctx.log``. Retryable
        failures are retried with capped exponential backoff until the policy
        is exhausted; the last error propagates.
        """

        handler = self.get(node.action_type)
        policy = self.retry_policy(ctx, node, defaults)
        attempt = 0
        while True:
            attempt += 1
            started = time.time()
            try:
                ctx.check_cancelled()
                action = self.bind(node, ctx.variables)
                timeout_ms = self.timeout_for(ctx, node, handler, action.config, defaults)
                log.debug("Dispatching %s (attempt %d, timeout %dms)", handler.describe(action), attempt, timeout_ms)
                result = await ctx.race(
                    handler.execute(ctx, action),
                    timeout_ms,
                    label=f"{node.action_type} '{node.id}'",
                )
            except RunCancelled as exc:
                exc.node_id = exc.node_id or node.id
                ctx.record(node.id, attempt, started, "cancelled", action_type=node.action_type, error=exc.to_dict())
                raise
            except ReplayError as exc:
                exc.node_id = exc.node_id or node.id
                ctx.record(node.id, attempt, started, "failed", action_type=node.action_type, error=exc.to_dict())
                if not exc.retryable or attempt >= policy.max_attempts:
                    raise
                delay = policy.delay_ms(attempt)
                log.warning(
                    "Node %s attempt %d/%d failed with %s; retrying in %dms",
                    node.id,
                    attempt,
                    policy.max_attempts,
                    exc.code,
                    delay,
                )
                await ctx.sleep(delay / 1000)
                continue
            except Exception as exc:
                wrapped = ExecutionError(
                    f"Unexpected error in '{node.action_type}': {exc}",
                    code="UNEXPECTED",
                    node_id=node.id,
                    details={"exception": type(exc).__name__},
                )
                ctx.record(node.id, attempt, started, "failed", action_type=node.action_type, error=wrapped.to_dict())
                raise wrapped from exc

            ctx.record(
                node.id,
                attempt,
                started,
                "success",
                action_type=node.action_type,
                output=result.as_dict() or None,
            )
            return result


def build_default_registry() -> ActionRegistry:
    """Return a fresh registry holding every builtin handler."""

    from .handlers import BUILTIN_HANDLERS

    registry = ActionRegistry()
    for handler_cls in BUILTIN_HANDLERS:
        registry.register(handler_cls())
    return registry
