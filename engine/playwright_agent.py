"""DOM agent backed by Playwright.

Selector candidates become Playwright locators scoped through frame locators
and shadow hosts. Resolved locators stay inside this module behind opaque
string refs.
"""

from __future__ import annotations

import contextlib
import logging
import re
import uuid
from collections import OrderedDict
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import httpx
from playwright.async_api import (
    BrowserContext,
    Error as PlaywrightError,
    Frame,
    Locator,
    Page,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from replay.dsl.flow import FramePathSegment, SelectorCandidate
from replay.dsl.resolution import AgentRef, ElementSnapshot

from .errors import ActionTimeout, ElementNotFound, ExecutionError, ValidationError

log = logging.getLogger(__name__)

DEFAULT_ACTION_TIMEOUT = 10_000
MAX_REFS = 256

_ARIA_VALUE = re.compile(r"^([a-z0-9_-]+)(?:\[name=\"(.*)\"\])?$", re.IGNORECASE | re.DOTALL)

_SNAPSHOT_SCRIPT = """
(el) => {
    const attributes = {};
    for (const attr of el.attributes) {
        attributes[attr.name] = attr.value;
    }
    const rect = el.getBoundingClientRect();
    return {
        tag: el.tagName.toLowerCase(),
        attributes,
        text: (el.innerText || el.textContent || "").trim().slice(0, 500),
        bbox: [rect.x, rect.y, rect.width, rect.height],
    };
}
"""

_SCROLL_INTO_VIEW_SCRIPT = "(el, opts) => el.scrollIntoView({block: opts.align, behavior: opts.behavior})"
_SCROLL_ELEMENT_SCRIPT = "(el, d) => el.scrollBy({left: d.x, top: d.y, behavior: d.behavior})"
_SCROLL_WINDOW_SCRIPT = "(d) => window.scrollBy({left: d.x, top: d.y, behavior: d.behavior})"


@contextlib.asynccontextmanager
async def _browser_errors(what: str) -> AsyncIterator[None]:
    try:
        yield
    except PlaywrightTimeoutError as exc:
        raise ActionTimeout(f"{what} timed out: {exc.message}") from exc
    except PlaywrightError as exc:
        raise ExecutionError(f"{what} failed: {exc.message}", code="BROWSER_ERROR", retryable=True) from exc


async def prepare_locator(locator: Locator, timeout: Optional[int] = None) -> Locator:
    """Ensure the locator points to an interactable element."""

    timeout = timeout if timeout is not None else DEFAULT_ACTION_TIMEOUT
    await locator.wait_for(state="attached", timeout=timeout)
    await locator.scroll_into_view_if_needed(timeout=timeout)
    await locator.wait_for(state="visible", timeout=timeout)
    if not await locator.is_enabled():
        raise ExecutionError("Element is not enabled for interaction", code="NOT_INTERACTABLE", retryable=True)
    return locator


def _frame_selector(segment: FramePathSegment) -> Optional[str]:
    if segment.selector:
        return segment.selector
    if segment.name:
        return f'iframe[name="{segment.name}"], frame[name="{segment.name}"]'
    if segment.url:
        return f'iframe[src*="{segment.url}"]'
    return None


class PlaywrightDomAgent:
    def __init__(
        self,
        context: BrowserContext,
        page: Optional[Page] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        action_timeout_ms: int = DEFAULT_ACTION_TIMEOUT,
        max_refs: int = MAX_REFS,
    ) -> None:
        self.context = context
        self.action_timeout_ms = action_timeout_ms
        self.max_refs = max_refs
        self._tabs: Dict[str, Page] = {}
        # least recently used first; one ref per distinct locator
        self._refs: "OrderedDict[str, Tuple[str, Locator, Tuple[Any, ...]]]" = OrderedDict()
        self._ref_keys: Dict[Tuple[Any, ...], str] = {}
        self._active: Optional[str] = None
        self._http = http_client
        self._owns_http = http_client is None
        self._playwright = None
        self._browser = None
        if page is not None:
            self._active = self._register_page(page)
        context.on("page", self._register_page)

    @classmethod
    async def launch(cls, *, headless: bool = True, action_timeout_ms: int = DEFAULT_ACTION_TIMEOUT) -> "PlaywrightDomAgent":
        playwright = await async_playwright().start()
        browser = await playwright.chromium.launch(headless=headless)
        context = await browser.new_context(accept_downloads=True)
        page = await context.new_page()
        agent = cls(context, page, action_timeout_ms=action_timeout_ms)
        agent._playwright = playwright
        agent._browser = browser
        return agent

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        await self.context.close()
        if self._browser is not None:
            await self._browser.close()
        if self._playwright is not None:
            await self._playwright.stop()

    # -- tabs and refs ----------------------------------------------------

    def _register_page(self, page: Page) -> str:
        for ref, known in self._tabs.items():
            if known is page:
                return ref
        ref = f"tab-{uuid.uuid4().hex[:8]}"
        self._tabs[ref] = page
        return ref

    @property
    def active_tab(self) -> Optional[str]:
        return self._active

    def _page(self, tab_ref: Optional[str] = None) -> Tuple[str, Page]:
        ref = tab_ref or self._active
        if ref is None or ref not in self._tabs:
            raise ExecutionError(f"Unknown tab '{ref}'", code="TAB_NOT_FOUND")
        return ref, self._tabs[ref]

    def _remember(self, key: Tuple[Any, ...], locator: Locator) -> str:
        ref = self._ref_keys.get(key)
        if ref is None or ref not in self._refs:
            ref = f"el-{uuid.uuid4().hex[:10]}"
            self._ref_keys[key] = ref
        self._refs[ref] = (key[0], locator, key)
        self._refs.move_to_end(ref)
        while len(self._refs) > self.max_refs:
            self._forget(next(iter(self._refs)))
        return ref

    def _forget(self, ref: str) -> None:
        entry = self._refs.pop(ref, None)
        if entry is not None and self._ref_keys.get(entry[2]) == ref:
            del self._ref_keys[entry[2]]

    def _locator(self, ref: str) -> Tuple[Page, Locator]:
        try:
            tab_ref, locator, _ = self._refs[ref]
        except KeyError as exc:
            raise ElementNotFound(f"Element ref '{ref}' is no longer known") from exc
        return self._page(tab_ref)[1], locator

    # -- resolution -------------------------------------------------------

    def _scope(self, page: Page, frame_chain: Sequence[FramePathSegment]):
        scope: Any = page
        for segment in frame_chain:
            selector = _frame_selector(segment)
            if selector is not None:
                scope = scope.frame_locator(selector)
            else:
                scope = scope.frame_locator("iframe").nth(segment.index or 0)
        return scope

    def _candidate_locator(self, scope, candidate: SelectorCandidate, shadow_host_chain: Sequence[str]) -> Locator:
        # Playwright's css engine pierces open shadow roots; hosts narrow the search.
        base = scope
        for host in shadow_host_chain:
            base = base.locator(host)
        if candidate.kind == "aria":
            role, name = candidate.role, candidate.name
            if role is None:
                match = _ARIA_VALUE.match(candidate.value)
                if match is None:
                    raise ValidationError(f"Malformed aria candidate '{candidate.value}'", code="INVALID_CANDIDATE")
                role, name = match.group(1), match.group(2)
            return base.get_by_role(role, name=name, exact=True) if name else base.get_by_role(role)
        if candidate.kind == "text":
            if candidate.tag:
                pattern = re.compile(rf"^\s*{re.escape(candidate.value)}\s*$")
                return base.locator(candidate.tag).filter(has_text=pattern)
            return base.get_by_text(candidate.value, exact=True)
        return base.locator(candidate.value)

    async def locate_in_page(
        self,
        candidates: Sequence[SelectorCandidate],
        frame_chain: Sequence[FramePathSegment],
        shadow_host_chain: Sequence[str] = (),
        *,
        tab_ref: Optional[str] = None,
    ) -> Optional[AgentRef]:
        tab, page = self._page(tab_ref)
        scope = self._scope(page, frame_chain)
        for candidate in candidates:
            locator = self._candidate_locator(scope, candidate, shadow_host_chain)
            try:
                count = await locator.count()
            except PlaywrightError as exc:
                log.debug("Candidate %s '%s' raised %s", candidate.kind, candidate.value, exc.message)
                continue
            if count != 1:
                log.debug("Candidate %s '%s' matched %d elements", candidate.kind, candidate.value, count)
                continue
            key = (
                tab,
                tuple(segment.describe() for segment in frame_chain),
                tuple(shadow_host_chain),
                candidate.kind,
                candidate.value,
                candidate.role,
                candidate.name,
                candidate.tag,
            )
            ref = self._remember(key, locator)
            return AgentRef(ref=ref, resolved_by=candidate.kind, frame_chain=list(frame_chain))
        return None

    async def snapshot(self, ref: str) -> ElementSnapshot:
        _, locator = self._locator(ref)
        async with _browser_errors("snapshot"):
            data = await locator.evaluate(_SNAPSHOT_SCRIPT)
        return ElementSnapshot.from_dict(data)

    # -- interactions -----------------------------------------------------

    async def perform_interaction(
        self,
        ref: Optional[str],
        kind: str,
        params: Dict[str, Any],
        *,
        tab_ref: Optional[str] = None,
    ) -> Any:
        timeout = self.action_timeout_ms
        if ref is None:
            _, page = self._page(tab_ref)
            async with _browser_errors(kind):
                return await self._page_interaction(page, kind, params)

        page, locator = self._locator(ref)
        async with _browser_errors(kind):
            if kind in ("click", "dblclick"):
                await prepare_locator(locator, timeout)
                options: Dict[str, Any] = {
                    "button": params.get("button", "left"),
                    "modifiers": params.get("modifiers") or None,
                    "timeout": timeout,
                }
                if params.get("position"):
                    options["position"] = params["position"]
                if kind == "click":
                    await locator.click(**options)
                else:
                    await locator.dblclick(**options)
                return None
            if kind == "fill":
                await prepare_locator(locator, timeout)
                if params.get("clear", True):
                    await locator.fill(params["value"], timeout=timeout)
                else:
                    await locator.press_sequentially(params["value"], timeout=timeout)
                return None
            if kind == "check":
                await locator.set_checked(bool(params["checked"]), timeout=timeout)
                return None
            if kind == "focus":
                await locator.focus(timeout=timeout)
                return None
            if kind == "press":
                await locator.press(params["key"], timeout=timeout)
                return None
            if kind == "scroll_into_view":
                await locator.evaluate(
                    _SCROLL_INTO_VIEW_SCRIPT,
                    {"align": params.get("align", "center"), "behavior": params.get("behavior", "auto")},
                )
                return None
            if kind == "scroll_by":
                await locator.evaluate(_SCROLL_ELEMENT_SCRIPT, params)
                return None
            if kind == "drag":
                _, destination = self._locator(params["to"])
                await locator.drag_to(destination, timeout=timeout)
                return None
            if kind == "drag_path":
                box = await locator.bounding_box()
                if box is None:
                    raise ElementNotFound("Drag origin is not rendered")
                origin = {"x": box["x"] + box["width"] / 2, "y": box["y"] + box["height"] / 2}
                await self._drag_along(page, [origin, *params["path"]], params.get("steps", 10))
                return None
            if kind == "read":
                return await self._read(locator, params)
        raise ValidationError(f"Unsupported interaction '{kind}'", code="UNSUPPORTED_INTERACTION")

    async def _page_interaction(self, page: Page, kind: str, params: Dict[str, Any]) -> Any:
        if kind == "press":
            await page.keyboard.press(params["key"])
            return None
        if kind == "scroll_by":
            await page.evaluate(_SCROLL_WINDOW_SCRIPT, params)
            return None
        if kind == "drag_path":
            await self._drag_along(page, params["path"], params.get("steps", 10))
            return None
        raise ValidationError(f"Interaction '{kind}' needs an element ref", code="UNSUPPORTED_INTERACTION")

    async def _drag_along(self, page: Page, points: List[Dict[str, float]], steps: int) -> None:
        first, rest = points[0], points[1:]
        await page.mouse.move(first["x"], first["y"])
        await page.mouse.down()
        for point in rest:
            await page.mouse.move(point["x"], point["y"], steps=steps)
        await page.mouse.up()

    async def _read(self, locator: Locator, params: Dict[str, Any]) -> Any:
        prop = params.get("property", "text")
        if prop == "text":
            return await locator.inner_text()
        if prop == "value":
            return await locator.input_value()
        if prop == "html":
            return await locator.inner_html()
        if prop == "attribute":
            return await locator.get_attribute(params["name"])
        if prop == "visible":
            return await locator.is_visible()
        raise ValidationError(f"Unknown property '{prop}'", code="UNSUPPORTED_INTERACTION")

    # -- page level -------------------------------------------------------

    async def navigate(
        self,
        url: str,
        *,
        tab_ref: Optional[str] = None,
        wait_until: str = "load",
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        _, page = self._page(tab_ref)
        async with _browser_errors(f"navigate to {url}"):
            response = await page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        return {"status": response.status if response is not None else None, "final_url": page.url}

    async def wait_for_load_state(
        self,
        state: str,
        *,
        tab_ref: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> None:
        _, page = self._page(tab_ref)
        async with _browser_errors(f"wait for {state}"):
            await page.wait_for_load_state(state, timeout=timeout_ms)

    async def capture_screenshot(
        self,
        region: Optional[Dict[str, float]] = None,
        *,
        tab_ref: Optional[str] = None,
        full_page: bool = False,
        ref: Optional[str] = None,
    ) -> bytes:
        async with _browser_errors("screenshot"):
            if ref is not None:
                _, locator = self._locator(ref)
                return await locator.screenshot()
            _, page = self._page(tab_ref)
            if region is not None:
                return await page.screenshot(clip=region)
            return await page.screenshot(full_page=full_page)

    async def _frame(self, page: Page, frame_chain: Sequence[FramePathSegment]) -> Frame:
        frame = page.main_frame
        for segment in frame_chain:
            child: Optional[Frame] = None
            if segment.selector:
                handle = await frame.query_selector(segment.selector)
                child = await handle.content_frame() if handle is not None else None
            elif segment.name:
                child = next((f for f in frame.child_frames if f.name == segment.name), None)
            elif segment.url:
                child = next((f for f in frame.child_frames if segment.url in f.url), None)
            elif segment.index is not None and segment.index < len(frame.child_frames):
                child = frame.child_frames[segment.index]
            if child is None:
                raise ElementNotFound(f"Frame {segment.describe()} not found")
            frame = child
        return frame

    async def eval_script(
        self,
        code: str,
        world: str,
        *,
        args: Optional[Dict[str, Any]] = None,
        tab_ref: Optional[str] = None,
        frame_chain: Sequence[FramePathSegment] = (),
    ) -> Any:
        # Playwright exposes only the page's main world to evaluate().
        if world != "MAIN":
            log.debug("Evaluating %s-world script in the main world", world)
        _, page = self._page(tab_ref)
        async with _browser_errors("script"):
            frame = await self._frame(page, frame_chain)
            return await frame.evaluate(code, args or None)

    async def fetch(self, request: Dict[str, Any]) -> Dict[str, Any]:
        if self._http is None:
            self._http = httpx.AsyncClient()
        body = request.get("body")
        options: Dict[str, Any] = {
            "headers": request.get("headers") or None,
            "params": request.get("params") or None,
            "timeout": (request.get("timeout_ms") or self.action_timeout_ms) / 1000,
        }
        if isinstance(body, (str, bytes)):
            options["content"] = body
        elif body is not None:
            options["json"] = body
        try:
            response = await self._http.request(request["method"], request["url"], **options)
        except httpx.TimeoutException as exc:
            raise ActionTimeout(f"{request['method']} {request['url']} timed out") from exc
        except httpx.HTTPError as exc:
            raise ExecutionError(
                f"{request['method']} {request['url']} failed: {exc}",
                code="HTTP_NETWORK",
                retryable=True,
            ) from exc
        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        return {"status": response.status_code, "headers": dict(response.headers), "body": payload}

    async def open_tab(self, url: Optional[str] = None, *, activate: bool = True) -> str:
        async with _browser_errors("open tab"):
            page = await self.context.new_page()
            ref = self._register_page(page)
            if url:
                await page.goto(url)
            if activate:
                await page.bring_to_front()
        if activate:
            self._active = ref
        return ref

    async def switch_tab(self, strategy: str, value: Any) -> Optional[str]:
        found: Optional[str] = None
        refs = list(self._tabs)
        if strategy == "ref":
            found = value if value in self._tabs else None
        elif strategy == "index":
            index = int(value)
            found = refs[index] if -len(refs) <= index < len(refs) else None
        elif strategy == "url":
            found = next((ref for ref in refs if str(value) in self._tabs[ref].url), None)
        elif strategy == "title":
            for ref in refs:
                if str(value) in await self._tabs[ref].title():
                    found = ref
                    break
        elif strategy == "latest":
            found = refs[-1] if refs else None
        if found is None:
            return None
        async with _browser_errors("switch tab"):
            await self._tabs[found].bring_to_front()
        self._active = found
        return found

    async def close_tab(self, ref: Optional[str] = None) -> Optional[str]:
        closing, page = self._page(ref)
        async with _browser_errors("close tab"):
            await page.close()
        self._tabs.pop(closing, None)
        for stale in [known for known, entry in self._refs.items() if entry[0] == closing]:
            self._forget(stale)
        if self._active == closing:
            self._active = next(reversed(self._tabs), None)
        return self._active

    async def wait_for_download(
        self,
        *,
        tab_ref: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        _, page = self._page(tab_ref)
        async with _browser_errors("download"):
            download = await page.wait_for_event("download", timeout=timeout_ms)
            path = await download.path()
        return {"filename": download.suggested_filename, "url": download.url, "path": str(path) if path else None}
