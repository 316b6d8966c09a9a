"""Page and element interaction handlers."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from replay.dsl.models import (
    ActionConfig,
    ClickConfig,
    DblClickConfig,
    DragConfig,
    FillConfig,
    KeyConfig,
    NavigateConfig,
    ScrollConfig,
)

from ..config import RunConfig
from ..context import ExecutionContext
from ..registry import ActionResult, BaseHandler, BoundAction

log = logging.getLogger(__name__)


class NavigateHandler(BaseHandler):
    action_type = "navigate"
    config_model = NavigateConfig
    description = "Load a URL in the current tab"

    def timeout_hint(self, config: ActionConfig, run_config: RunConfig) -> Optional[int]:
        return run_config.navigation_timeout_ms

    def describe(self, action: BoundAction) -> str:
        return f"navigate to {action.config.url}"

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: NavigateConfig = action.config
        response = await ctx.agent.navigate(
            config.url,
            tab_ref=ctx.current_tab_ref,
            wait_until=config.wait_until,
            timeout_ms=ctx.config.navigation_timeout_ms,
        )
        ctx.current_frame_chain = []
        details: Dict[str, Any] = {"url": config.url}
        if isinstance(response, dict):
            details.update({key: value for key, value in response.items() if key in ("status", "final_url")})
        return ActionResult(details=details)


class ClickHandler(BaseHandler):
    action_type = "click"
    config_model = ClickConfig
    description = "Click an element"

    def describe(self, action: BoundAction) -> str:
        return f"{self.action_type} {action.node.label or action.node.id}"

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: ClickConfig = action.config
        located = await self.locate(ctx, action)
        params: Dict[str, Any] = {"button": config.button, "modifiers": list(config.modifiers)}
        if config.position is not None:
            params["position"] = config.position.model_dump()
        await ctx.agent.perform_interaction(located.ref, self.action_type, params)
        return ActionResult(resolved_by=located.resolved_by, details={"ref": located.ref, "button": config.button})


class DblClickHandler(ClickHandler):
    action_type = "dblclick"
    config_model = DblClickConfig
    description = "Double-click an element"


class FillHandler(BaseHandler):
    action_type = "fill"
    config_model = FillConfig
    description = "Type into a field, or set a checkbox when the value is boolean"

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: FillConfig = action.config
        located = await self.locate(ctx, action)
        if config.is_checkbox:
            await ctx.agent.perform_interaction(located.ref, "check", {"checked": config.value})
            details: Dict[str, Any] = {"ref": located.ref, "checked": config.value}
        else:
            text = str(config.value)
            await ctx.agent.perform_interaction(located.ref, "fill", {"value": text, "clear": config.clear})
            details = {"ref": located.ref, "length": len(text)}
        return ActionResult(resolved_by=located.resolved_by, details=details)


class KeyHandler(BaseHandler):
    action_type = "key"
    config_model = KeyConfig
    description = "Press a key sequence, optionally after focusing a target"

    def needs_target(self, config: ActionConfig) -> bool:
        return False

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: KeyConfig = action.config
        ref: Optional[str] = None
        resolved_by: Optional[str] = None
        if action.target is not None and action.target.candidates:
            located = await self.locate(ctx, action)
            ref, resolved_by = located.ref, located.resolved_by
            await ctx.agent.perform_interaction(ref, "focus", {})
        pressed = []
        for chord in config.sequence():
            ctx.check_cancelled()
            await ctx.agent.perform_interaction(ref, "press", {"key": chord}, tab_ref=ctx.current_tab_ref)
            pressed.append(chord)
        return ActionResult(resolved_by=resolved_by, details={"keys": pressed})


class ScrollHandler(BaseHandler):
    action_type = "scroll"
    config_model = ScrollConfig
    description = "Scroll the page, a container, or an element into view"

    def needs_target(self, config: ActionConfig) -> bool:
        return config.mode in ("element", "container")

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: ScrollConfig = action.config
        if config.mode == "offset":
            await ctx.agent.perform_interaction(
                None,
                "scroll_by",
                {"x": config.x, "y": config.y, "behavior": config.behavior},
                tab_ref=ctx.current_tab_ref,
            )
            return ActionResult(details={"mode": "offset", "x": config.x, "y": config.y})

        located = await self.locate(ctx, action)
        if config.mode == "element":
            await ctx.agent.perform_interaction(
                located.ref,
                "scroll_into_view",
                {"align": config.align, "behavior": config.behavior},
            )
        else:
            await ctx.agent.perform_interaction(
                located.ref,
                "scroll_by",
                {"x": config.x, "y": config.y, "behavior": config.behavior},
            )
        return ActionResult(resolved_by=located.resolved_by, details={"mode": config.mode, "ref": located.ref})


class DragHandler(BaseHandler):
    action_type = "drag"
    config_model = DragConfig
    description = "Drag from a target to another target or along a coordinate path"

    def needs_target(self, config: ActionConfig) -> bool:
        return config.end_target is not None

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: DragConfig = action.config
        if config.end_target is not None:
            start = await self.locate(ctx, action)
            end = await self.locate(ctx, action, config.end_target)
            await ctx.agent.perform_interaction(start.ref, "drag", {"to": end.ref, "steps": config.steps})
            return ActionResult(
                resolved_by=start.resolved_by,
                details={"from": start.ref, "to": end.ref},
            )

        ref: Optional[str] = None
        resolved_by: Optional[str] = None
        if action.target is not None and action.target.candidates:
            start = await self.locate(ctx, action)
            ref, resolved_by = start.ref, start.resolved_by
        path = [point.model_dump() for point in config.path]
        await ctx.agent.perform_interaction(
            ref,
            "drag_path",
            {"path": path, "steps": config.steps},
            tab_ref=ctx.current_tab_ref,
        )
        return ActionResult(resolved_by=resolved_by, details={"points": len(path)})
