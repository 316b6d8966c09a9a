"""Builtin action handlers."""

from .control import ExecuteFlowHandler, ForeachHandler, IfHandler, SwitchFrameHandler, WhileHandler
from .data import ExtractHandler, HttpHandler, ScreenshotHandler, ScriptHandler
from .interactions import (
    ClickHandler,
    DblClickHandler,
    DragHandler,
    FillHandler,
    KeyHandler,
    NavigateHandler,
    ScrollHandler,
)
from .tabs import CloseTabHandler, HandleDownloadHandler, OpenTabHandler, SwitchTabHandler
from .waits import AssertHandler, DelayHandler, WaitHandler

BUILTIN_HANDLERS = (
    NavigateHandler,
    ClickHandler,
    DblClickHandler,
    FillHandler,
    KeyHandler,
    ScrollHandler,
    DragHandler,
    WaitHandler,
    DelayHandler,
    AssertHandler,
    ExtractHandler,
    ScriptHandler,
    HttpHandler,
    ScreenshotHandler,
    OpenTabHandler,
    SwitchTabHandler,
    CloseTabHandler,
    HandleDownloadHandler,
    IfHandler,
    ForeachHandler,
    WhileHandler,
    SwitchFrameHandler,
    ExecuteFlowHandler,
)

__all__ = [
    "BUILTIN_HANDLERS",
    "AssertHandler",
    "ClickHandler",
    "CloseTabHandler",
    "DblClickHandler",
    "DelayHandler",
    "DragHandler",
    "ExecuteFlowHandler",
    "ExtractHandler",
    "FillHandler",
    "ForeachHandler",
    "HandleDownloadHandler",
    "HttpHandler",
    "IfHandler",
    "KeyHandler",
    "NavigateHandler",
    "OpenTabHandler",
    "ScreenshotHandler",
    "ScriptHandler",
    "ScrollHandler",
    "SwitchFrameHandler",
    "SwitchTabHandler",
    "WaitHandler",
    "WhileHandler",
]
