"""Tab management and download capture."""

from __future__ import annotations

import logging
import re
from typing import Optional

from replay.dsl.models import (
    ActionConfig,
    CloseTabConfig,
    HandleDownloadConfig,
    OpenTabConfig,
    SwitchTabConfig,
)

from ..config import RunConfig
from ..context import ExecutionContext
from ..errors import ExecutionError
from ..registry import ActionResult, BaseHandler, BoundAction

log = logging.getLogger(__name__)


class OpenTabHandler(BaseHandler):
    action_type = "openTab"
    config_model = OpenTabConfig
    description = "Open a new tab"

    def timeout_hint(self, config: ActionConfig, run_config: RunConfig) -> Optional[int]:
        return run_config.navigation_timeout_ms if config.url else None

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: OpenTabConfig = action.config
        tab_ref = await ctx.agent.open_tab(config.url, activate=config.activate)
        if config.activate:
            ctx.current_tab_ref = tab_ref
            ctx.current_frame_chain = []
        if config.assign_to:
            ctx.variables[config.assign_to] = tab_ref
        return ActionResult(output={"tab_ref": tab_ref})


class SwitchTabHandler(BaseHandler):
    action_type = "switchTab"
    config_model = SwitchTabConfig
    description = "Make another tab current"

    def describe(self, action: BoundAction) -> str:
        return f"switchTab by {action.config.strategy}"

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: SwitchTabConfig = action.config
        tab_ref = await ctx.agent.switch_tab(config.strategy, config.value)
        if not tab_ref:
            raise ExecutionError(
                f"No tab matches {config.strategy}={config.value!r}",
                code="TAB_NOT_FOUND",
                retryable=True,
            )
        ctx.current_tab_ref = tab_ref
        ctx.current_frame_chain = []
        return ActionResult(output={"tab_ref": tab_ref})


class CloseTabHandler(BaseHandler):
    action_type = "closeTab"
    config_model = CloseTabConfig
    description = "Close a tab (the current one by default)"

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: CloseTabConfig = action.config
        closing = config.tab_ref or ctx.current_tab_ref
        active = await ctx.agent.close_tab(closing)
        if closing is None or closing == ctx.current_tab_ref:
            ctx.current_tab_ref = active
            ctx.current_frame_chain = []
        return ActionResult(output={"closed": closing, "tab_ref": ctx.current_tab_ref})


class HandleDownloadHandler(BaseHandler):
    action_type = "handleDownload"
    config_model = HandleDownloadConfig
    description = "Wait for a download started by the current tab"

    def timeout_hint(self, config: ActionConfig, run_config: RunConfig) -> Optional[int]:
        return config.timeout_ms if config.timeout_ms is not None else run_config.wait_timeout_ms

    async def execute(self, ctx: ExecutionContext, action: BoundAction) -> ActionResult:
        config: HandleDownloadConfig = action.config
        download = await ctx.agent.wait_for_download(
            tab_ref=ctx.current_tab_ref,
            timeout_ms=config.timeout_ms or ctx.config.wait_timeout_ms,
        )
        filename = str(download.get("filename", ""))
        if config.filename_pattern and not re.search(config.filename_pattern, filename):
            raise ExecutionError(
                f"Downloaded file '{filename}' does not match '{config.filename_pattern}'",
                code="DOWNLOAD_MISMATCH",
                details={"filename": filename},
            )
        if config.assign_to:
            ctx.variables[config.assign_to] = download
        return ActionResult(output=download)
