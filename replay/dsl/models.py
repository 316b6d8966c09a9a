"""Typed configuration models for every executable action type."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from .flow import FramePathSegment, TargetLocator

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    if not _IDENTIFIER.match(value):
        raise ValueError(f"'{value}' is not a valid variable name")
    return value


class ActionConfig(BaseModel):
    """Base class for all action configurations."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class TargetedConfig(ActionConfig):
    verify_fingerprint: Optional[bool] = Field(default=None, alias="verifyFingerprint")


class Point(BaseModel):
    model_config = ConfigDict(extra="forbid")

    x: float
    y: float


class Region(BaseModel):
    model_config = ConfigDict(extra="forbid")

    x: float
    y: float
    width: float = Field(gt=0)
    height: float = Field(gt=0)


# ---------------------------------------------------------------------------
# page and element interaction


class NavigateConfig(ActionConfig):
    url: str
    wait_until: Literal["load", "domcontentloaded", "networkidle"] = Field(default="load", alias="waitUntil")

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("url must not be empty")
        if not re.match(r"^(https?|file|about|data):", value, flags=re.IGNORECASE):
            raise ValueError(f"unsupported url scheme in '{value}'")
        return value


class ClickConfig(TargetedConfig):
    button: Literal["left", "right", "middle"] = "left"
    modifiers: List[Literal["Alt", "Control", "Meta", "Shift"]] = Field(default_factory=list)
    position: Optional[Point] = None


class DblClickConfig(ClickConfig):
    """Same options as a click, dispatched as a double click."""


class FillConfig(TargetedConfig):
    value: Union[bool, int, float, str] = Field(validation_alias=AliasChoices("value", "text"))
    clear: bool = True

    @property
    def is_checkbox(self) -> bool:
        return isinstance(self.value, bool)


class KeyConfig(TargetedConfig):
    keys: str = Field(validation_alias=AliasChoices("keys", "key"))

    @field_validator("keys")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("keys must not be empty")
        return value.strip()

    def sequence(self) -> List[str]:
        """Whitespace separates successive presses; '+' joins a chord."""

        return [chunk for chunk in self.keys.split() if chunk]


class ScrollConfig(TargetedConfig):
    mode: Literal["offset", "element", "container"] = "offset"
    x: int = 0
    y: int = 0
    align: Literal["start", "center", "end", "nearest"] = "center"
    behavior: Literal["auto", "instant", "smooth"] = "auto"

    @model_validator(mode="after")
    def _offset_needs_delta(self) -> "ScrollConfig":
        if self.mode in ("offset", "container") and self.x == 0 and self.y == 0:
            raise ValueError(f"scroll mode '{self.mode}' needs a non-zero x or y offset")
        return self


class DragConfig(TargetedConfig):
    end_target: Optional[TargetLocator] = Field(default=None, alias="endTarget")
    path: List[Point] = Field(default_factory=list)
    steps: int = Field(default=10, ge=1)

    @model_validator(mode="after")
    def _one_mode(self) -> "DragConfig":
        if self.end_target is not None and self.path:
            raise ValueError("drag takes either endTarget or path, not both")
        if self.end_target is None and len(self.path) < 2:
            raise ValueError("drag needs endTarget or a path of at least two points")
        return self


# ---------------------------------------------------------------------------
# timing and verification


class WaitConfig(TargetedConfig):
    mode: Literal["selector", "text", "navigation", "network-idle", "sleep"] = "selector"
    state: Literal["present", "visible", "hidden"] = "present"
    text: Optional[str] = None
    ms: Optional[int] = Field(default=None, ge=0)
    timeout_ms: Optional[int] = Field(default=None, ge=0, alias="timeoutMs", validation_alias=AliasChoices("timeoutMs", "timeout_ms", "timeout"))
    poll_interval_ms: Optional[int] = Field(default=None, ge=10, alias="pollIntervalMs")

    @model_validator(mode="after")
    def _mode_fields(self) -> "WaitConfig":
        if self.mode == "text" and not self.text:
            raise ValueError("wait mode 'text' needs text")
        if self.mode == "sleep" and self.ms is None:
            raise ValueError("wait mode 'sleep' needs ms")
        return self


class DelayConfig(ActionConfig):
    ms: int = Field(ge=0, validation_alias=AliasChoices("ms", "duration", "sleep"))


class AssertConfig(TargetedConfig):
    condition: Literal["exists", "visible", "text-present", "attribute-equals"] = Field(
        default="exists", validation_alias=AliasChoices("condition", "assert")
    )
    text: Optional[str] = None
    attribute: Optional[str] = None
    value: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, ge=0, alias="timeoutMs", validation_alias=AliasChoices("timeoutMs", "timeout_ms", "timeout"))
    poll_interval_ms: Optional[int] = Field(default=None, ge=10, alias="pollIntervalMs")

    @model_validator(mode="after")
    def _condition_fields(self) -> "AssertConfig":
        if self.condition == "text-present" and not self.text:
            raise ValueError("assert 'text-present' needs text")
        if self.condition == "attribute-equals" and (not self.attribute or self.value is None):
            raise ValueError("assert 'attribute-equals' needs attribute and value")
        return self


# ---------------------------------------------------------------------------
# data


class ExtractConfig(TargetedConfig):
    mode: Literal["selector", "script"] = "selector"
    variable: str = Field(validation_alias=AliasChoices("variable", "saveAs", "assignTo"))
    prop: Literal["text", "value", "html", "attribute"] = Field(default="text", alias="property")
    attribute: Optional[str] = None
    code: Optional[str] = None
    world: Literal["MAIN", "ISOLATED"] = "ISOLATED"

    @field_validator("variable")
    @classmethod
    def _check_variable(cls, value: Optional[str]) -> Optional[str]:
        return _check_identifier(value)

    @model_validator(mode="after")
    def _mode_fields(self) -> "ExtractConfig":
        if self.mode == "script" and not self.code:
            raise ValueError("extract mode 'script' needs code")
        if self.prop == "attribute" and not self.attribute:
            raise ValueError("extract property 'attribute' needs attribute")
        return self


class ScriptConfig(ActionConfig):
    code: str
    world: Literal["MAIN", "ISOLATED"] = "ISOLATED"
    args: Dict[str, Any] = Field(default_factory=dict)
    assign_to: Optional[str] = Field(default=None, alias="assignTo", validation_alias=AliasChoices("assignTo", "saveAs", "assign_to"))

    @field_validator("assign_to")
    @classmethod
    def _check_assign(cls, value: Optional[str]) -> Optional[str]:
        return _check_identifier(value)


class HttpConfig(ActionConfig):
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    timeout_ms: Optional[int] = Field(default=None, ge=0, alias="timeoutMs", validation_alias=AliasChoices("timeoutMs", "timeout_ms"))
    assign_to: Optional[str] = Field(default=None, alias="assignTo", validation_alias=AliasChoices("assignTo", "saveAs", "assign_to"))

    @field_validator("assign_to")
    @classmethod
    def _check_assign(cls, value: Optional[str]) -> Optional[str]:
        return _check_identifier(value)

    @field_validator("method", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not re.match(r"^https?://", value.strip(), flags=re.IGNORECASE):
            raise ValueError(f"http action needs an absolute http(s) url, got '{value}'")
        return value.strip()


class ScreenshotConfig(TargetedConfig):
    full_page: bool = Field(default=False, alias="fullPage")
    region: Optional[Region] = None
    file_name: Optional[str] = Field(default=None, alias="fileName")
    assign_to: Optional[str] = Field(default=None, alias="assignTo", validation_alias=AliasChoices("assignTo", "saveAs", "assign_to"))

    @field_validator("assign_to")
    @classmethod
    def _check_assign(cls, value: Optional[str]) -> Optional[str]:
        return _check_identifier(value)


# ---------------------------------------------------------------------------
# tabs


class OpenTabConfig(ActionConfig):
    url: Optional[str] = None
    activate: bool = True
    assign_to: Optional[str] = Field(default=None, alias="assignTo", validation_alias=AliasChoices("assignTo", "saveAs", "assign_to"))

    @field_validator("assign_to")
    @classmethod
    def _check_assign(cls, value: Optional[str]) -> Optional[str]:
        return _check_identifier(value)


class SwitchTabConfig(ActionConfig):
    strategy: Literal["ref", "index", "url", "title", "latest"] = "ref"
    value: Optional[Union[int, str]] = None

    @model_validator(mode="after")
    def _value_required(self) -> "SwitchTabConfig":
        if self.strategy != "latest" and self.value in (None, ""):
            raise ValueError(f"switchTab strategy '{self.strategy}' needs a value")
        return self


class CloseTabConfig(ActionConfig):
    tab_ref: Optional[str] = Field(default=None, alias="tabRef")


class HandleDownloadConfig(ActionConfig):
    timeout_ms: Optional[int] = Field(default=None, ge=0, alias="timeoutMs", validation_alias=AliasChoices("timeoutMs", "timeout_ms"))
    filename_pattern: Optional[str] = Field(default=None, alias="filenamePattern")
    assign_to: Optional[str] = Field(default=None, alias="assignTo", validation_alias=AliasChoices("assignTo", "saveAs", "assign_to"))

    @field_validator("assign_to")
    @classmethod
    def _check_assign(cls, value: Optional[str]) -> Optional[str]:
        return _check_identifier(value)

    @field_validator("filename_pattern")
    @classmethod
    def _compiles(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                re.compile(value)
            except re.error as exc:
                raise ValueError(f"invalid filenamePattern: {exc}") from exc
        return value


# ---------------------------------------------------------------------------
# control flow


class IfConfig(ActionConfig):
    condition: str = Field(validation_alias=AliasChoices("condition", "expression"))


class ForeachConfig(ActionConfig):
    items: Any
    item_var: str = Field(default="item", alias="itemVar")
    index_var: Optional[str] = Field(default="index", alias="indexVar")
    max_iterations: Optional[int] = Field(default=None, ge=1, alias="maxIterations")

    @field_validator("item_var")
    @classmethod
    def _check_item(cls, value: Optional[str]) -> Optional[str]:
        return _check_identifier(value)

    @field_validator("index_var")
    @classmethod
    def _check_index(cls, value: Optional[str]) -> Optional[str]:
        return _check_identifier(value)

    @field_validator("items")
    @classmethod
    def _iterable(cls, value: Any) -> List[Any]:
        if isinstance(value, (list, tuple)):
            return list(value)
        raise ValueError(f"foreach items must resolve to a list, got {type(value).__name__}")


class WhileConfig(ActionConfig):
    condition: str = Field(validation_alias=AliasChoices("condition", "expression"))
    max_iterations: Optional[int] = Field(default=None, ge=1, alias="maxIterations")
    counter_var: Optional[str] = Field(default=None, alias="counterVar")

    @field_validator("counter_var")
    @classmethod
    def _check_counter(cls, value: Optional[str]) -> Optional[str]:
        return _check_identifier(value)


class SwitchFrameConfig(ActionConfig):
    strategy: Literal["enter", "parent", "root"] = "enter"
    frame: Optional[FramePathSegment] = None

    @model_validator(mode="after")
    def _frame_for_enter(self) -> "SwitchFrameConfig":
        if self.strategy == "enter" and self.frame is None:
            raise ValueError("switchFrame 'enter' needs a frame segment")
        return self


class ExecuteFlowConfig(ActionConfig):
    flow_id: str = Field(alias="flowId", validation_alias=AliasChoices("flowId", "flow_id", "flow"))
    isolated: bool = False
    variables: Dict[str, Any] = Field(default_factory=dict)
    export: List[str] = Field(default_factory=list)
