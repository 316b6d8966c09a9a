"""Typed workflow graph: flows, nodes, edges and element target descriptors."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

CandidateKind = Literal["testid", "aria", "css-unique", "css-path", "anchor-relpath", "text"]

EdgeLabel = Literal["default", "true", "false", "loop-continue", "loop-exit"]

LOOP_ACTION_TYPES = frozenset({"foreach", "while"})


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SelectorCandidate(_WireModel):
    kind: CandidateKind
    value: str
    stability_score: int = Field(alias="stabilityScore", ge=0, le=100)
    role: Optional[str] = None
    name: Optional[str] = None
    tag: Optional[str] = None
    anchor: Optional[str] = None
    path: Optional[str] = None

    @field_validator("value")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("candidate value must not be empty")
        return value


class FramePathSegment(_WireModel):
    selector: Optional[str] = None
    name: Optional[str] = None
    url: Optional[str] = None
    index: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _requires_one_field(self) -> "FramePathSegment":
        if self.selector is None and self.name is None and self.url is None and self.index is None:
            raise ValueError("frame segment needs one of selector, name, url or index")
        return self

    def describe(self) -> str:
        if self.selector:
            return self.selector
        if self.name:
            return f"name={self.name}"
        if self.url:
            return f"url={self.url}"
        return f"index={self.index}"


class Fingerprint(_WireModel):
    tag: str
    attributes: Dict[str, str] = Field(default_factory=dict)
    text: str = ""
    bucket: Optional[Tuple[int, int, int, int]] = None
    digest: str


class TargetLocator(_WireModel):
    candidates: List[SelectorCandidate] = Field(default_factory=list)
    frame_chain: List[FramePathSegment] = Field(default_factory=list, alias="frameChain")
    shadow_host_chain: List[str] = Field(default_factory=list, alias="shadowHostChain")
    fingerprint: Optional[Fingerprint] = None
    dom_path: Optional[str] = Field(default=None, alias="domPath")

    @field_validator("candidates")
    @classmethod
    def _order_by_stability(cls, value: List[SelectorCandidate]) -> List[SelectorCandidate]:
        # sorted() is stable: equal scores keep their recorded order.
        return sorted(value, key=lambda candidate: -candidate.stability_score)


class RetryPolicy(_WireModel):
    max_attempts: int = Field(default=1, ge=1, alias="maxAttempts")
    base_delay_ms: int = Field(
        default=500, ge=0, alias="baseDelay", validation_alias=AliasChoices("baseDelay", "baseDelayMs", "base_delay_ms")
    )
    max_delay_ms: int = Field(
        default=5000, ge=0, alias="maxDelay", validation_alias=AliasChoices("maxDelay", "maxDelayMs", "max_delay_ms")
    )

    def delay_ms(self, attempt: int) -> int:
        """Backoff before the attempt following ``attempt`` (1-based)."""

        delay = self.base_delay_ms * (2 ** max(0, attempt - 1))
        return min(delay, self.max_delay_ms)


class Variable(_WireModel):
    name: str
    default_value: Any = Field(default=None, alias="defaultValue")
    sensitive: bool = False


class FlowNode(_WireModel):
    id: str
    action_type: str = Field(alias="actionType", validation_alias=AliasChoices("actionType", "type", "action_type"))
    config: Dict[str, Any] = Field(default_factory=dict)
    target: Optional[TargetLocator] = None
    timeout_ms: Optional[int] = Field(
        default=None, ge=0, alias="timeout", validation_alias=AliasChoices("timeout", "timeoutMs", "timeout_ms")
    )
    retry: Optional[RetryPolicy] = None
    continue_on_error: Optional[bool] = Field(default=None, alias="continueOnError")
    label: Optional[str] = None

    @property
    def is_loop(self) -> bool:
        return self.action_type in LOOP_ACTION_TYPES


class FlowEdge(_WireModel):
    id: Optional[str] = None
    from_: str = Field(alias="from", validation_alias=AliasChoices("from", "from_", "source"))
    to: str = Field(validation_alias=AliasChoices("to", "target"))
    branch_label: Optional[EdgeLabel] = Field(default=None, alias="branchLabel")

    @property
    def label(self) -> EdgeLabel:
        return self.branch_label or "default"


class FlowDefaults(_WireModel):
    continue_on_error: bool = Field(default=False, alias="continueOnError")
    timeout_ms: Optional[int] = Field(
        default=None, ge=0, alias="timeout", validation_alias=AliasChoices("timeout", "timeoutMs", "timeout_ms")
    )
    retry: Optional[RetryPolicy] = None


class Flow(_WireModel):
    id: str
    version: int = 1
    name: Optional[str] = None
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)
    variables: List[Variable] = Field(default_factory=list)
    subflows: Dict[str, "Flow"] = Field(default_factory=dict)
    meta: Dict[str, Any] = Field(default_factory=dict)
    entry: Optional[str] = None
    defaults: FlowDefaults = Field(default_factory=FlowDefaults)

    @field_validator("nodes")
    @classmethod
    def _unique_ids(cls, value: List[FlowNode]) -> List[FlowNode]:
        seen = set()
        for node in value:
            if node.id in seen:
                raise ValueError(f"duplicate node id '{node.id}'")
            seen.add(node.id)
        return value

    def sensitive_names(self) -> List[str]:
        return [variable.name for variable in self.variables if variable.sensitive]

    def initial_variables(self) -> Dict[str, Any]:
        return {
            variable.name: variable.default_value
            for variable in self.variables
            if variable.default_value is not None
        }


Flow.model_rebuild()
