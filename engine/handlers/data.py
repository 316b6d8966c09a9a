"""Handlers that read from or write to the run's variables."""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, Optional

from replay.dsl.models import ActionConfig, ExtractConfig, HttpConfig, ScreenshotConfig, ScriptConfig

from ..config import RunConfig
from ..context import ExecutionContext
from ..errors import ExecutionError
from ..registry import ActionResult, BaseHandler, BoundAction

log = logging.getLogger(__name__)

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


class ExtractHandler(BaseHandler):
    action_type = "extract"
    config_model = ExtractConfig
    description = "Read a value from the page into a variable"

    def needs_target(self, config: ActionConfig) -> bool:
        return config.mode == "selector"

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: ExtractConfig = action.config
        resolved_by: Optional[str] = None
        if config.mode == "script":
            value = await ctx.agent.eval_script(
                config.code,
                config.world,
                tab_ref=ctx.current_tab_ref,
                frame_chain=ctx.current_frame_chain,
            )
        else:
            located = await self.locate(ctx, action)
            resolved_by = located.resolved_by
            params: Dict[str, Any] = {"property": config.prop}
            if config.prop == "attribute":
                params["name"] = config.attribute
            value = await ctx.agent.perform_interaction(located.ref, "read", params)
        ctx.variables[config.variable] = value
        return ActionResult(output={config.variable: value}, resolved_by=resolved_by)


class ScriptHandler(BaseHandler):
    action_type = "script"
    config_model = ScriptConfig
    description = "Evaluate JavaScript in the page"

    def describe(self, action: BoundAction) -> str:
        return f"script ({action.config.world}) {action.node.id}"

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: ScriptConfig = action.config
        result = await ctx.agent.eval_script(
            config.code,
            config.world,
            args=config.args,
            tab_ref=ctx.current_tab_ref,
            frame_chain=ctx.current_frame_chain,
        )
        if config.assign_to:
            ctx.variables[config.assign_to] = result
        return ActionResult(output=result)


class HttpHandler(BaseHandler):
    action_type = "http"
    config_model = HttpConfig
    description = "Perform an HTTP request through the agent"

    def timeout_hint(self, config: ActionConfig, run_config: RunConfig) -> Optional[int]:
        return config.timeout_ms

    def describe(self, action: BoundAction) -> str:
        return f"{action.config.method} {action.config.url}"

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: HttpConfig = action.config
        request = {
            "method": config.method,
            "url": config.url,
            "headers": dict(config.headers),
            "params": dict(config.params),
            "body": config.body,
            "timeout_ms": config.timeout_ms or ctx.config.action_timeout_ms,
        }
        response = await ctx.agent.fetch(request)
        status = int(response.get("status", 0))
        if status >= 500:
            raise ExecutionError(
                f"{config.method} {config.url} returned {status}",
                code="HTTP_SERVER_ERROR",
                retryable=True,
                details={"status": status},
            )
        if status >= 400:
            raise ExecutionError(
                f"{config.method} {config.url} returned {status}",
                code="HTTP_CLIENT_ERROR",
                details={"status": status, "body": response.get("body")},
            )
        if config.assign_to:
            ctx.variables[config.assign_to] = response.get("body")
        return ActionResult(output={"status": status, "body": response.get("body")})


class ScreenshotHandler(BaseHandler):
    action_type = "screenshot"
    config_model = ScreenshotConfig
    description = "Capture the viewport, the full page, a region or an element"

    def needs_target(self, config: ActionConfig) -> bool:
        return False

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: ScreenshotConfig = action.config
        ref: Optional[str] = None
        resolved_by: Optional[str] = None
        if action.target is not None and action.target.candidates:
            located = await self.locate(ctx, action)
            ref, resolved_by = located.ref, located.resolved_by
        data = await ctx.agent.capture_screenshot(
            config.region.model_dump() if config.region else None,
            tab_ref=ctx.current_tab_ref,
            full_page=config.full_page,
            ref=ref,
        )
        name = config.file_name or f"{action.node.id}-{int(time.time() * 1000)}.png"
        name = _UNSAFE_FILENAME.sub("_", name)
        path = ctx.run_paths()["shots"] / name
        path.write_bytes(data)
        log.debug("Saved screenshot for %s to %s", action.node.id, path)
        if config.assign_to:
            ctx.variables[config.assign_to] = str(path)
        return ActionResult(output={"path": str(path), "bytes": len(data)}, resolved_by=resolved_by)
