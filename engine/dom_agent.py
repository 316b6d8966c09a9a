"""Boundary between the engine and whatever drives the live page.

Only candidates, frame-path descriptors and opaque string refs cross this
boundary. The engine never holds a DOM handle.
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Protocol, Sequence

from replay.dsl.flow import FramePathSegment, SelectorCandidate
from replay.dsl.resolution import AgentRef, ElementSnapshot

InteractionKind = Literal[
    "click",
    "dblclick",
    "fill",
    "check",
    "focus",
    "press",
    "scroll_into_view",
    "scroll_by",
    "drag",
    "drag_path",
    "read",
]

ScriptWorld = Literal["MAIN", "ISOLATED"]


class DomAgent(Protocol):
    async def locate_in_page(
        self,
        candidates: Sequence[SelectorCandidate],
        frame_chain: Sequence[FramePathSegment],
        shadow_host_chain: Sequence[str] = (),
        *,
        tab_ref: Optional[str] = None,
    ) -> Optional[AgentRef]: ...

    async def snapshot(self, ref: str) -> ElementSnapshot: ...

    async def perform_interaction(
        self,
        ref: Optional[str],
        kind: InteractionKind,
        params: Dict[str, Any],
        *,
        tab_ref: Optional[str] = None,
    ) -> Any: ...

    async def navigate(
        self,
        url: str,
        *,
        tab_ref: Optional[str] = None,
        wait_until: str = "load",
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]: ...

    async def wait_for_load_state(
        self,
        state: str,
        *,
        tab_ref: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> None: ...

    async def capture_screenshot(
        self,
        region: Optional[Dict[str, float]] = None,
        *,
        tab_ref: Optional[str] = None,
        full_page: bool = False,
        ref: Optional[str] = None,
    ) -> bytes: ...

    async def eval_script(
        self,
        code: str,
        world: ScriptWorld,
        *,
        args: Optional[Dict[str, Any]] = None,
        tab_ref: Optional[str] = None,
        frame_chain: Sequence[FramePathSegment] = (),
    ) -> Any: ...

    async def fetch(self, request: Dict[str, Any]) -> Dict[str, Any]: ...

    async def open_tab(self, url: Optional[str] = None, *, activate: bool = True) -> str: ...

    async def switch_tab(self, strategy: str, value: Any) -> str: ...

    async def close_tab(self, ref: Optional[str] = None) -> Optional[str]: ...

    async def wait_for_download(
        self,
        *,
        tab_ref: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]: ...
