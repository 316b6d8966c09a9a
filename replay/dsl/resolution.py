"""Data structures for selector generation and resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .flow import FramePathSegment, SelectorCandidate

BoundingBox = Tuple[float, float, float, float]


@dataclass(slots=True, eq=False)
class ElementSnapshot:
    """Structural description of a DOM element, detached from any live page.

    The recorder hands a snapshot tree to candidate generation; a DOM agent
    returns a (childless) snapshot of a resolved ref for fingerprinting.
    """

    tag: str
    attributes: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    bbox: Optional[BoundingBox] = None
    children: List["ElementSnapshot"] = field(default_factory=list)
    parent: Optional["ElementSnapshot"] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.tag = self.tag.lower()
        for child in self.children:
            child.parent = self

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ElementSnapshot":
        bbox = data.get("bbox")
        return cls(
            tag=str(data.get("tag", "div")),
            attributes={str(k): str(v) for k, v in (data.get("attributes") or {}).items()},
            text=str(data.get("text", "")),
            bbox=tuple(bbox) if bbox else None,  # type: ignore[arg-type]
            children=[cls.from_dict(child) for child in data.get("children", [])],
        )

    def append(self, child: "ElementSnapshot") -> "ElementSnapshot":
        child.parent = self
        self.children.append(child)
        return child

    @property
    def root(self) -> "ElementSnapshot":
        node = self
        while node.parent is not None:
            node = node.parent
        return node

    @property
    def classes(self) -> List[str]:
        return [token for token in self.attributes.get("class", "").split() if token]

    def iter_tree(self) -> Iterator["ElementSnapshot"]:
        yield self
        for child in self.children:
            yield from child.iter_tree()

    def ancestors(self) -> Iterator["ElementSnapshot"]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def nth_of_type(self) -> int:
        if self.parent is None:
            return 1
        index = 0
        for sibling in self.parent.children:
            if sibling.tag == self.tag:
                index += 1
            if sibling is self:
                break
        return index


@dataclass(slots=True)
class AgentRef:
    """Opaque handle returned by a DOM agent for a located element."""

    ref: str
    resolved_by: str
    frame_chain: List[FramePathSegment] = field(default_factory=list)


@dataclass(slots=True)
class CandidateRejection:
    kind: str
    value: str
    reason: str
    similarity: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "value": self.value, "reason": self.reason}
        if self.similarity is not None:
            payload["similarity"] = round(self.similarity, 3)
        return payload


@dataclass(slots=True)
class Located:
    """Result of resolving a target locator to a single element ref."""

    ref: str
    resolved_by: str
    candidate: SelectorCandidate
    candidate_index: int
    similarity: Optional[float] = None
    rejections: List[CandidateRejection] = field(default_factory=list)
