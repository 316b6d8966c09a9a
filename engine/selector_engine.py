"""Multi-strategy selector generation and resolution with fingerprint checks.

Generation works on :class:`ElementSnapshot` trees and is a pure function of
structure. Resolution never touches DOM handles: each candidate is handed to
the DOM agent together with the frame / shadow-host chain and only an opaque
ref comes back.
"""

from __future__ import annotations

import hashlib
import itertools
import json
import logging
import re
from difflib import SequenceMatcher
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from replay.dsl.flow import Fingerprint, FramePathSegment, SelectorCandidate, TargetLocator
from replay.dsl.resolution import CandidateRejection, ElementSnapshot, Located

from .errors import ElementNotFound, ValidationError

log = logging.getLogger(__name__)

SCORE_TESTID = 100
SCORE_ARIA = 90
SCORE_CSS_UNIQUE = 70
SCORE_ANCHOR_RELPATH = 50
SCORE_CSS_PATH = 40
SCORE_TEXT = 30

TEST_ID_ATTRIBUTES = ("data-testid", "data-test-id", "data-test", "data-qa", "data-cy")
UNIQUE_ATTRIBUTES = ("name", "type", "placeholder", "aria-label", "title", "alt", "role", "href", "for")
FINGERPRINT_ATTRIBUTES = (
    "id",
    "name",
    "type",
    "role",
    "aria-label",
    "data-testid",
    "placeholder",
    "href",
    "alt",
    "title",
)

MAX_COMBINATION_SIZE = 3
MAX_ATTRIBUTE_LENGTH = 80
TEXT_CANDIDATE_MAX_LENGTH = 80
FINGERPRINT_TEXT_LENGTH = 64
BUCKET_SIZE = 64

_VOLATILE_CLASS = re.compile(
    r"^(is-|has-|ng-|css-|sc-|jsx-)|(^|[-_])(active|hover|focus|focused|selected|open|visible|hidden|disabled|checked)$|\d{3,}"
)
_VOLATILE_ID = re.compile(r"\d{4,}|^(ember|react|ng|radix|headlessui|mui)[-_:]|:|^[a-f0-9]{8,}$")
_WHITESPACE = re.compile(r"\s+")
_CSS_IDENT = re.compile(r"^-?[A-Za-z_][\w-]*$")
_LEADING_DIGIT = re.compile(r"^(-?)([0-9])")

Token = Tuple[str, ...]


def normalise_text(value: str) -> str:
    return _WHITESPACE.sub(" ", value or "").strip()


def _css_ident(value: str) -> str:
    if _CSS_IDENT.match(value):
        return value
    escaped = re.sub(r"([^\w-])", r"\\\1", value)
    # a leading digit (after an optional hyphen) must be a code point escape
    match = _LEADING_DIGIT.match(escaped)
    if match:
        escaped = f"{match.group(1)}\\3{match.group(2)} {escaped[match.end():]}"
    return escaped


def _css_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _render(tokens: Sequence[Token]) -> str:
    parts: List[str] = []
    for token in tokens:
        if token[0] == "tag":
            parts.insert(0, token[1])
        elif token[0] == "id":
            parts.append(f"#{_css_ident(token[1])}")
        elif token[0] == "class":
            parts.append(f".{_css_ident(token[1])}")
        else:
            parts.append(f'[{token[1]}="{_css_string(token[2])}"]')
    return "".join(parts)


def _matches(node: ElementSnapshot, tokens: Sequence[Token]) -> bool:
    for token in tokens:
        if token[0] == "tag":
            if node.tag != token[1]:
                return False
        elif token[0] == "id":
            if node.attributes.get("id") != token[1]:
                return False
        elif token[0] == "class":
            if token[1] not in node.classes:
                return False
        elif node.attributes.get(token[1]) != token[2]:
            return False
    return True


def _count(root: ElementSnapshot, predicate: Callable[[ElementSnapshot], bool]) -> int:
    return sum(1 for candidate in root.iter_tree() if predicate(candidate))


def _is_stable_id(value: Optional[str]) -> bool:
    return bool(value) and not _VOLATILE_ID.search(value or "")


def _stable_classes(node: ElementSnapshot) -> List[str]:
    return [token for token in node.classes if not _VOLATILE_CLASS.search(token)]


def _is_hidden(node: ElementSnapshot) -> bool:
    if node.attributes.get("aria-hidden") == "true" or "hidden" in node.attributes:
        return True
    if node.bbox is not None and (node.bbox[2] <= 0 or node.bbox[3] <= 0):
        return True
    return False


# ---------------------------------------------------------------------------
# accessibility helpers


_INPUT_ROLES = {
    "button": "button",
    "submit": "button",
    "reset": "button",
    "image": "button",
    "checkbox": "checkbox",
    "radio": "radio",
    "range": "slider",
    "search": "searchbox",
    "number": "spinbutton",
    "email": "textbox",
    "tel": "textbox",
    "text": "textbox",
    "url": "textbox",
}
_TAG_ROLES = {
    "button": "button",
    "textarea": "textbox",
    "nav": "navigation",
    "main": "main",
    "dialog": "dialog",
    "option": "option",
    "li": "listitem",
    "ul": "list",
    "ol": "list",
    "table": "table",
    "h1": "heading",
    "h2": "heading",
    "h3": "heading",
    "h4": "heading",
    "h5": "heading",
    "h6": "heading",
}
_NAME_FROM_CONTENT = {"button", "link", "tab", "menuitem", "option", "heading", "listitem", "checkbox", "radio"}


def implicit_role(node: ElementSnapshot) -> Optional[str]:
    explicit = node.attributes.get("role")
    if explicit:
        return explicit.split()[0]
    tag = node.tag
    if tag == "a":
        return "link" if "href" in node.attributes else None
    if tag == "input":
        return _INPUT_ROLES.get(node.attributes.get("type", "text").lower())
    if tag == "select":
        size = node.attributes.get("size", "").strip()
        multiple = "multiple" in node.attributes or (size.isdecimal() and int(size) > 1)
        return "listbox" if multiple else "combobox"
    if tag == "img":
        return "img" if node.attributes.get("alt") else None
    return _TAG_ROLES.get(tag)


def accessible_name(node: ElementSnapshot) -> str:
    attrs = node.attributes
    if attrs.get("aria-label"):
        return normalise_text(attrs["aria-label"])
    root = node.root
    labelled_by = attrs.get("aria-labelledby", "").split()
    if labelled_by:
        parts = []
        for ref_id in labelled_by:
            for candidate in root.iter_tree():
                if candidate.attributes.get("id") == ref_id:
                    parts.append(normalise_text(candidate.text))
                    break
        label = " ".join(part for part in parts if part)
        if label:
            return label
    if node.tag in ("input", "select", "textarea"):
        element_id = attrs.get("id")
        if element_id:
            for candidate in root.iter_tree():
                if candidate.tag == "label" and candidate.attributes.get("for") == element_id:
                    return normalise_text(candidate.text)
        for ancestor in node.ancestors():
            if ancestor.tag == "label":
                return normalise_text(ancestor.text)
        if node.tag == "input" and attrs.get("type", "").lower() in ("submit", "button", "reset"):
            if attrs.get("value"):
                return normalise_text(attrs["value"])
    if node.tag == "img" and attrs.get("alt"):
        return normalise_text(attrs["alt"])
    role = implicit_role(node)
    if role in _NAME_FROM_CONTENT and node.text:
        return normalise_text(node.text)
    for fallback in ("title", "placeholder"):
        if attrs.get(fallback):
            return normalise_text(attrs[fallback])
    return ""


# ---------------------------------------------------------------------------
# strategies


def _strategy_testid(node: ElementSnapshot) -> Optional[SelectorCandidate]:
    root = node.root
    for attribute in TEST_ID_ATTRIBUTES:
        value = node.attributes.get(attribute)
        if not value:
            continue
        if _count(root, lambda other: other.attributes.get(attribute) == value) != 1:
            continue
        return SelectorCandidate(
            kind="testid",
            value=f'[{attribute}="{_css_string(value)}"]',
            stability_score=SCORE_TESTID,
        )
    return None


def _strategy_aria(node: ElementSnapshot) -> Optional[SelectorCandidate]:
    role = implicit_role(node)
    if not role:
        return None
    name = accessible_name(node)
    if not name or len(name) > TEXT_CANDIDATE_MAX_LENGTH:
        return None
    root = node.root
    same = _count(root, lambda other: implicit_role(other) == role and accessible_name(other) == name)
    if same != 1:
        return None
    return SelectorCandidate(
        kind="aria",
        value=f'{role}[name="{_css_string(name)}"]',
        stability_score=SCORE_ARIA,
        role=role,
        name=name,
    )


def _unique_tokens(node: ElementSnapshot) -> List[Token]:
    tokens: List[Token] = []
    element_id = node.attributes.get("id")
    if _is_stable_id(element_id):
        tokens.append(("id", element_id or ""))
    for attribute in UNIQUE_ATTRIBUTES:
        value = node.attributes.get(attribute)
        if value and len(value) <= MAX_ATTRIBUTE_LENGTH:
            tokens.append(("attr", attribute, value))
    for class_name in _stable_classes(node):
        tokens.append(("class", class_name))
    return tokens


def _strategy_css_unique(node: ElementSnapshot) -> Optional[SelectorCandidate]:
    tokens = _unique_tokens(node)
    root = node.root
    for size in range(1, min(MAX_COMBINATION_SIZE, len(tokens)) + 1):
        for combo in itertools.combinations(tokens, size):
            compound: List[Token] = [("tag", node.tag), *combo]
            if _count(root, lambda other: _matches(other, compound)) == 1:
                return SelectorCandidate(
                    kind="css-unique",
                    value=_render(compound),
                    stability_score=SCORE_CSS_UNIQUE,
                )
    return None


def _anchor_selector(node: ElementSnapshot) -> Optional[str]:
    root = node.root
    element_id = node.attributes.get("id")
    if _is_stable_id(element_id):
        if _count(root, lambda other: other.attributes.get("id") == element_id) == 1:
            return f"#{_css_ident(element_id or '')}"
    for attribute in TEST_ID_ATTRIBUTES:
        value = node.attributes.get(attribute)
        if value and _count(root, lambda other: other.attributes.get(attribute) == value) == 1:
            return f'[{attribute}="{_css_string(value)}"]'
    return None


def _relative_steps(node: ElementSnapshot, stop: Optional[ElementSnapshot]) -> List[str]:
    steps: List[str] = []
    current: Optional[ElementSnapshot] = node
    while current is not None and current is not stop:
        if current.parent is None:
            steps.append(current.tag)
        else:
            steps.append(f"{current.tag}:nth-of-type({current.nth_of_type()})")
        current = current.parent
    steps.reverse()
    return steps


def css_path(node: ElementSnapshot) -> str:
    """Full document path made of ``tag:nth-of-type(n)`` steps."""

    return " > ".join(_relative_steps(node, None))


def _strategy_anchor_relpath(node: ElementSnapshot) -> Optional[SelectorCandidate]:
    for ancestor in node.ancestors():
        anchor = _anchor_selector(ancestor)
        if anchor is None:
            continue
        path = " > ".join(_relative_steps(node, ancestor))
        return SelectorCandidate(
            kind="anchor-relpath",
            value=f"{anchor} > {path}",
            stability_score=SCORE_ANCHOR_RELPATH,
            anchor=anchor,
            path=path,
        )
    if node.parent is None:
        return None
    return SelectorCandidate(kind="css-path", value=css_path(node), stability_score=SCORE_CSS_PATH)


def _strategy_text(node: ElementSnapshot) -> Optional[SelectorCandidate]:
    if _is_hidden(node):
        return None
    text = normalise_text(node.text)
    if not text or len(text) > TEXT_CANDIDATE_MAX_LENGTH:
        return None
    root = node.root
    if _count(root, lambda other: other.tag == node.tag and normalise_text(other.text) == text) != 1:
        return None
    return SelectorCandidate(kind="text", value=text, stability_score=SCORE_TEXT, tag=node.tag)


STRATEGIES: Tuple[Callable[[ElementSnapshot], Optional[SelectorCandidate]], ...] = (
    _strategy_testid,
    _strategy_aria,
    _strategy_css_unique,
    _strategy_anchor_relpath,
    _strategy_text,
)


def generate_candidates(node: ElementSnapshot) -> List[SelectorCandidate]:
    """Apply every strategy in priority order; each yields at most one candidate."""

    candidates: List[SelectorCandidate] = []
    for strategy in STRATEGIES:
        candidate = strategy(node)
        if candidate is not None:
            candidates.append(candidate)
    return candidates


# ---------------------------------------------------------------------------
# fingerprints


def generate_fingerprint(node: ElementSnapshot) -> Fingerprint:
    attributes = {}
    for attribute in FINGERPRINT_ATTRIBUTES:
        value = node.attributes.get(attribute)
        if not value:
            continue
        if attribute == "id" and not _is_stable_id(value):
            continue
        attributes[attribute] = value[:MAX_ATTRIBUTE_LENGTH]
    text = normalise_text(node.text)[:FINGERPRINT_TEXT_LENGTH]
    bucket = None
    if node.bbox is not None:
        bucket = tuple(int(value // BUCKET_SIZE) for value in node.bbox)
    raw = json.dumps([node.tag, sorted(attributes.items()), text, bucket], ensure_ascii=False)
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]
    return Fingerprint(tag=node.tag, attributes=attributes, text=text, bucket=bucket, digest=digest)


def fingerprint_similarity(expected: Fingerprint, actual: Fingerprint) -> float:
    if expected.digest == actual.digest:
        return 1.0
    if expected.tag != actual.tag:
        return 0.0

    expected_pairs = set(expected.attributes.items())
    actual_pairs = set(actual.attributes.items())
    union = expected_pairs | actual_pairs
    attribute_score = len(expected_pairs & actual_pairs) / len(union) if union else 1.0

    if expected.text or actual.text:
        text_score = SequenceMatcher(None, expected.text.lower(), actual.text.lower()).ratio()
    else:
        text_score = 1.0

    if expected.bucket is None or actual.bucket is None:
        bucket_score = 0.5
    elif expected.bucket == actual.bucket:
        bucket_score = 1.0
    elif max(abs(a - b) for a, b in zip(expected.bucket, actual.bucket)) <= 1:
        bucket_score = 0.5
    else:
        bucket_score = 0.0

    return 0.4 * attribute_score + 0.4 * text_score + 0.2 * bucket_score


def generate_target(
    node: ElementSnapshot,
    *,
    frame_chain: Iterable[FramePathSegment] = (),
    shadow_host_chain: Iterable[str] = (),
) -> TargetLocator:
    return TargetLocator(
        candidates=generate_candidates(node),
        frame_chain=list(frame_chain),
        shadow_host_chain=list(shadow_host_chain),
        fingerprint=generate_fingerprint(node),
        dom_path=css_path(node),
    )


# ---------------------------------------------------------------------------
# resolution


class SelectorEngine:
    """Resolve target locators through a DOM agent, strongest candidate first."""

    def __init__(self, agent, *, threshold: float = 0.75) -> None:
        self.agent = agent
        self.threshold = threshold

    async def locate(
        self,
        target: TargetLocator,
        *,
        verify_fingerprint: bool = False,
        frame_chain: Sequence[FramePathSegment] = (),
        tab_ref: Optional[str] = None,
        threshold: Optional[float] = None,
    ) -> Located:
        if not target.candidates:
            raise ValidationError("Target has no selector candidates", code="NO_CANDIDATES")

        chain = [*frame_chain, *target.frame_chain]
        limit = self.threshold if threshold is None else threshold
        verify = verify_fingerprint and target.fingerprint is not None
        rejections: List[CandidateRejection] = []

        for index, candidate in enumerate(target.candidates):
            found = await self.agent.locate_in_page(
                [candidate],
                chain,
                list(target.shadow_host_chain),
                tab_ref=tab_ref,
            )
            if found is None:
                log.debug("Candidate %s '%s' did not match", candidate.kind, candidate.value)
                rejections.append(CandidateRejection(candidate.kind, candidate.value, "no-match"))
                continue

            similarity: Optional[float] = None
            if verify:
                snapshot = await self.agent.snapshot(found.ref)
                similarity = fingerprint_similarity(target.fingerprint, generate_fingerprint(snapshot))
                if similarity < limit:
                    log.debug(
                        "Candidate %s '%s' rejected by fingerprint (%.2f < %.2f)",
                        candidate.kind,
                        candidate.value,
                        similarity,
                        limit,
                    )
                    rejections.append(
                        CandidateRejection(candidate.kind, candidate.value, "fingerprint-mismatch", similarity)
                    )
                    continue

            return Located(
                ref=found.ref,
                resolved_by=candidate.kind,
                candidate=candidate,
                candidate_index=index,
                similarity=similarity,
                rejections=rejections,
            )

        raise ElementNotFound(
            f"No candidate resolved after trying {len(target.candidates)} selector(s)",
            details={
                "frame_chain": [segment.describe() for segment in chain],
                "shadow_host_chain": list(target.shadow_host_chain),
                "rejections": [rejection.as_dict() for rejection in rejections],
            },
        )
