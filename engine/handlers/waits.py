"""Waiting, fixed delays and polling assertions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Tuple

from replay.dsl.flow import SelectorCandidate, TargetLocator
from replay.dsl.models import ActionConfig, AssertConfig, DelayConfig, WaitConfig

from ..config import RunConfig
from ..context import ExecutionContext
from ..errors import ActionTimeout, ElementNotFound, ExecutionError
from ..registry import ActionResult, BaseHandler, BoundAction
from ..selector_engine import SCORE_TEXT

log = logging.getLogger(__name__)

_SLACK_MS = 1000


class _PollingHandler(BaseHandler):
    def _limits(self, ctx: ExecutionContext, config: Any) -> Tuple[int, int]:
        timeout_ms = config.timeout_ms if config.timeout_ms is not None else ctx.config.wait_timeout_ms
        poll_ms = config.poll_interval_ms or ctx.config.poll_interval_ms
        return timeout_ms, poll_ms

    def timeout_hint(self, config: ActionConfig, run_config: RunConfig) -> Optional[int]:
        timeout_ms = config.timeout_ms if config.timeout_ms is not None else run_config.wait_timeout_ms
        return timeout_ms + _SLACK_MS

    async def _read(self, ctx: ExecutionContext, ref: str, prop: str, **extra: Any) -> Any:
        return await ctx.agent.perform_interaction(ref, "read", {"property": prop, **extra})


class WaitHandler(_PollingHandler):
    action_type = "wait"
    config_model = WaitConfig
    description = "Wait for an element, text, navigation, network idle or a fixed time"

    def needs_target(self, config: ActionConfig) -> bool:
        return config.mode == "selector"

    def timeout_hint(self, config: ActionConfig, run_config: RunConfig) -> Optional[int]:
        if config.mode == "sleep":
            return (config.ms or 0) + _SLACK_MS
        return super().timeout_hint(config, run_config)

    def describe(self, action: BoundAction) -> str:
        return f"wait ({action.config.mode}) {action.node.id}"

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: WaitConfig = action.config
        if config.mode == "sleep":
            await ctx.sleep((config.ms or 0) / 1000)
            return ActionResult(details={"waited_ms": config.ms})

        timeout_ms, poll_ms = self._limits(ctx, config)
        if config.mode in ("navigation", "network-idle"):
            state = "load" if config.mode == "navigation" else "networkidle"
            await ctx.agent.wait_for_load_state(state, tab_ref=ctx.current_tab_ref, timeout_ms=timeout_ms)
            return ActionResult(details={"state": state})

        target = action.target
        if config.mode == "text":
            target = TargetLocator(
                candidates=[SelectorCandidate(kind="text", value=config.text, stability_score=SCORE_TEXT)]
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        polls = 0
        while True:
            polls += 1
            satisfied, resolved_by = await self._check_state(ctx, action, target, config.state)
            if satisfied:
                return ActionResult(resolved_by=resolved_by, details={"state": config.state, "polls": polls})
            if loop.time() >= deadline:
                raise ActionTimeout(
                    f"Element did not become {config.state} within {timeout_ms}ms",
                    details={"mode": config.mode, "state": config.state, "polls": polls},
                )
            await ctx.sleep(poll_ms / 1000)

    async def _check_state(
        self,
        ctx: ExecutionContext,
        action: BoundAction,
        target: TargetLocator,
        state: str,
    ) -> Tuple[bool, Optional[str]]:
        try:
            located = await self.locate(ctx, action, target)
        except ElementNotFound:
            return state == "hidden", None
        if state == "present":
            return True, located.resolved_by
        visible = bool(await self._read(ctx, located.ref, "visible"))
        if state == "visible":
            return visible, located.resolved_by
        return not visible, located.resolved_by


class DelayHandler(BaseHandler):
    action_type = "delay"
    config_model = DelayConfig
    description = "Sleep for a fixed number of milliseconds"

    def timeout_hint(self, config: ActionConfig, run_config: RunConfig) -> Optional[int]:
        return config.ms + _SLACK_MS

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        await ctx.sleep(action.config.ms / 1000)
        return ActionResult(details={"waited_ms": action.config.ms})


class AssertHandler(_PollingHandler):
    """Poll a condition until it holds; a miss is final, never retried."""

    action_type = "assert"
    config_model = AssertConfig
    description = "Assert element existence, visibility, text or attribute value"

    def describe(self, action: BoundAction) -> str:
        return f"assert {action.config.condition} {action.node.id}"

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: AssertConfig = action.config
        timeout_ms, poll_ms = self._limits(ctx, config)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        polls = 0
        observed: Any = None
        while True:
            polls += 1
            try:
                located = await self.locate(ctx, action)
            except ElementNotFound:
                located = None
                observed = None
            if located is not None:
                holds, observed = await self._check(ctx, located.ref, config)
                if holds:
                    return ActionResult(
                        resolved_by=located.resolved_by,
                        details={"condition": config.condition, "polls": polls},
                    )
            if loop.time() >= deadline:
                break
            await ctx.sleep(poll_ms / 1000)

        raise ExecutionError(
            f"Assertion '{config.condition}' failed after {polls} poll(s)",
            code="ASSERTION_FAILED",
            retryable=False,
            details={"condition": config.condition, "polls": polls, "observed": observed},
        )

    async def _check(self, ctx: ExecutionContext, ref: str, config: AssertConfig) -> Tuple[bool, Any]:
        if config.condition == "exists":
            return True, True
        if config.condition == "visible":
            visible = bool(await self._read(ctx, ref, "visible"))
            return visible, visible
        if config.condition == "text-present":
            text = await self._read(ctx, ref, "text") or ""
            return config.text in text, text
        value = await self._read(ctx, ref, "attribute", name=config.attribute)
        return value == config.value, value
