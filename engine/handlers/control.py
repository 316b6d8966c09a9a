"""Control-flow node types.

They are registered so configs validate and describe like any other action,
but the scheduler evaluates them itself.
"""

from __future__ import annotations

from replay.dsl.models import ExecuteFlowConfig, ForeachConfig, IfConfig, SwitchFrameConfig, WhileConfig

from ..registry import BaseHandler, BoundAction


class IfHandler(BaseHandler):
    action_type = "if"
    config_model = IfConfig
    control_flow = True
    description = "Branch on a boolean expression"

    def describe(self, action: BoundAction) -> str:
        return f"if {action.config.condition}"


class ForeachHandler(BaseHandler):
    action_type = "foreach"
    config_model = ForeachConfig
    control_flow = True
    description = "Run the loop body once per item"


class WhileHandler(BaseHandler):
    action_type = "while"
    config_model = WhileConfig
    control_flow = True
    description = "Run the loop body while an expression holds"

    def describe(self, action: BoundAction) -> str:
        return f"while {action.config.condition}"


class SwitchFrameHandler(BaseHandler):
    action_type = "switchFrame"
    config_model = SwitchFrameConfig
    control_flow = True
    description = "Enter a child frame or return to the parent or top frame"


class ExecuteFlowHandler(BaseHandler):
    action_type = "executeFlow"
    config_model = ExecuteFlowConfig
    control_flow = True
    description = "Run another flow as a subflow"

    def describe(self, action: BoundAction) -> str:
        return f"executeFlow {action.config.flow_id}"
