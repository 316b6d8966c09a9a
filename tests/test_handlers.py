import asyncio
from pathlib import Path

import pytest

from engine.config import RunConfig
from engine.context import ExecutionContext
from engine.errors import ActionTimeout, ExecutionError
from engine.registry import build_default_registry
from replay.dsl.flow import FlowNode, FramePathSegment

from fake_agent import FakeDomAgent, target


def _run(agent, node_data, *, variables=None, config=None, before=None):
    node = FlowNode.model_validate(node_data)

    async def scenario():
        ctx = ExecutionContext(
            "run-1",
            agent,
            config=config or RunConfig(retry_backoff_base_ms=0, poll_interval_ms=10),
            variables=variables if variables is not None else {},
        )
        if before is not None:
            before(ctx)
        error = None
        result = None
        try:
            result = await build_default_registry().dispatch(ctx, node)
        except Exception as exc:
            error = exc
        return ctx, result, error

    return asyncio.run(scenario())


def test_navigate_resets_frame_chain():
    agent = FakeDomAgent()

    def inside_frame(ctx):
        ctx.current_frame_chain.append(FramePathSegment(name="checkout"))

    ctx, result, error = _run(
        agent,
        {"id": "n", "actionType": "navigate", "config": {"url": "https://shop.test", "waitUntil": "networkidle"}},
        before=inside_frame,
    )

    assert error is None
    assert agent.calls == [("navigate", "https://shop.test", None, "networkidle")]
    assert ctx.current_frame_chain == []
    assert result.details == {"url": "https://shop.test", "status": 200, "final_url": "https://shop.test"}


def test_click_and_dblclick_pass_button_and_modifiers():
    agent = FakeDomAgent({"#row": "el-row"})
    _run(agent, {"id": "c", "actionType": "click", "target": target("#row"), "config": {"modifiers": ["Shift"]}})
    _run(agent, {"id": "d", "actionType": "dblclick", "target": target("#row"), "config": {"button": "right"}})

    assert agent.interactions() == [
        ("interaction", "el-row", "click", {"button": "left", "modifiers": ["Shift"]}),
        ("interaction", "el-row", "dblclick", {"button": "right", "modifiers": []}),
    ]


def test_fill_text_and_checkbox():
    agent = FakeDomAgent({"#name": "el-name", "#agree": "el-agree"})
    _run(agent, {"id": "f", "actionType": "fill", "target": target("#name"), "config": {"value": "Ada {{last}}"}},
         variables={"last": "Lovelace"})
    _run(agent, {"id": "c", "actionType": "fill", "target": target("#agree"), "config": {"value": True}})

    assert agent.interactions("fill") == [
        ("interaction", "el-name", "fill", {"value": "Ada Lovelace", "clear": True})
    ]
    assert agent.interactions("check") == [("interaction", "el-agree", "check", {"checked": True})]


def test_key_without_target_presses_on_page():
    agent = FakeDomAgent()
    _, result, error = _run(agent, {"id": "k", "actionType": "key", "config": {"keys": "Control+a Delete"}})

    assert error is None
    assert [call[1:3] for call in agent.interactions()] == [(None, "press"), (None, "press")]
    assert result.details == {"keys": ["Control+a", "Delete"]}


def test_key_with_target_focuses_first():
    agent = FakeDomAgent({"#q": "el-q"})
    _run(agent, {"id": "k", "actionType": "key", "target": target("#q"), "config": {"key": "Enter"}})
    assert [call[2] for call in agent.interactions()] == ["focus", "press"]


def test_scroll_modes():
    agent = FakeDomAgent({"#list": "el-list"})
    _run(agent, {"id": "s1", "actionType": "scroll", "config": {"y": 400}})
    _run(agent, {"id": "s2", "actionType": "scroll", "target": target("#list"), "config": {"mode": "element"}})
    _run(agent, {"id": "s3", "actionType": "scroll", "target": target("#list"), "config": {"mode": "container", "x": 50}})

    assert [call[1:3] for call in agent.interactions()] == [
        (None, "scroll_by"),
        ("el-list", "scroll_into_view"),
        ("el-list", "scroll_by"),
    ]


def test_drag_to_target_and_along_path():
    agent = FakeDomAgent({"#card": "el-card", "#lane": "el-lane"})
    _run(
        agent,
        {"id": "d1", "actionType": "drag", "target": target("#card"), "config": {"endTarget": target("#lane")}},
    )
    _run(agent, {"id": "d2", "actionType": "drag", "config": {"path": [{"x": 0, "y": 0}, {"x": 30, "y": 40}]}})

    drag, drag_path = agent.interactions()
    assert drag == ("interaction", "el-card", "drag", {"to": "el-lane", "steps": 10})
    assert drag_path[1:3] == (None, "drag_path")
    assert drag_path[3]["path"] == [{"x": 0.0, "y": 0.0}, {"x": 30.0, "y": 40.0}]


def test_page_level_interactions_follow_current_tab():
    agent = FakeDomAgent()

    def on_second_tab(ctx):
        ctx.current_tab_ref = "tab-7"

    for node in (
        {"id": "k", "actionType": "key", "config": {"key": "Escape"}},
        {"id": "s", "actionType": "scroll", "config": {"y": 200}},
        {"id": "d", "actionType": "drag", "config": {"path": [{"x": 0, "y": 0}, {"x": 5, "y": 5}]}},
    ):
        _, _, error = _run(agent, node, before=on_second_tab)
        assert error is None

    assert [call[2] for call in agent.interactions()] == ["press", "scroll_by", "drag_path"]
    assert agent.interaction_tabs == ["tab-7", "tab-7", "tab-7"]


def test_wait_polls_until_visible():
    agent = FakeDomAgent({"#toast": "el-toast"})
    agent.reads[("el-toast", "visible")] = [False, False, True]
    _, result, error = _run(
        agent,
        {"id": "w", "actionType": "wait", "target": target("#toast"), "config": {"state": "visible", "pollIntervalMs": 10}},
    )

    assert error is None
    assert result.details == {"state": "visible", "polls": 3}


def test_wait_for_text_and_load_states():
    agent = FakeDomAgent({"Order placed": "el-msg"})
    _, result, _ = _run(agent, {"id": "t", "actionType": "wait", "config": {"mode": "text", "text": "Order placed"}})
    _run(agent, {"id": "i", "actionType": "wait", "config": {"mode": "network-idle"}})

    assert result.resolved_by == "text"
    assert ("load_state", "networkidle", None) in agent.calls


def test_wait_times_out_when_element_never_hides():
    agent = FakeDomAgent({"#spinner": "el-spin"})
    agent.reads[("el-spin", "visible")] = True
    ctx, _, error = _run(
        agent,
        {
            "id": "w",
            "actionType": "wait",
            "target": target("#spinner"),
            "config": {"state": "hidden", "timeoutMs": 40, "pollIntervalMs": 10},
            "retry": {"maxAttempts": 1},
        },
    )

    assert isinstance(error, ActionTimeout)
    assert error.details["state"] == "hidden"
    assert len(ctx.log) == 1


def test_assert_failure_is_not_retried():
    agent = FakeDomAgent({"#title": "el-title"})
    agent.reads[("el-title", "text")] = "Welcome back"
    ctx, _, error = _run(
        agent,
        {
            "id": "a",
            "actionType": "assert",
            "target": target("#title"),
            "config": {"condition": "text-present", "text": "Goodbye", "timeoutMs": 30, "pollIntervalMs": 10},
        },
    )

    assert isinstance(error, ExecutionError)
    assert error.code == "ASSERTION_FAILED"
    assert error.details["observed"] == "Welcome back"
    assert len(ctx.log) == 1


def test_assert_attribute_equals():
    agent = FakeDomAgent({"a.home": "el-a"})
    agent.reads[("el-a", "attribute")] = "/home"
    _, result, error = _run(
        agent,
        {
            "id": "a",
            "actionType": "assert",
            "target": target("a.home"),
            "config": {"condition": "attribute-equals", "attribute": "href", "value": "/home"},
        },
    )
    assert error is None
    assert agent.interactions("read")[0][3] == {"property": "attribute", "name": "href"}


def test_extract_stores_variable():
    agent = FakeDomAgent({"#price": "el-price"})
    agent.reads[("el-price", "text")] = "$12.00"
    agent.scripts["document.title"] = "Cart"
    ctx, result, _ = _run(
        agent,
        {"id": "e", "actionType": "extract", "target": target("#price"), "config": {"variable": "price"}},
    )
    assert ctx.variables == {"price": "$12.00"}
    assert result.output == {"price": "$12.00"}

    ctx, _, _ = _run(
        agent,
        {"id": "t", "actionType": "extract", "config": {"mode": "script", "code": "document.title", "saveAs": "title"}},
    )
    assert ctx.variables["title"] == "Cart"


def test_script_assigns_result():
    agent = FakeDomAgent()
    agent.scripts["(a) => a.x * 2"] = 14
    ctx, result, _ = _run(
        agent,
        {
            "id": "s",
            "actionType": "script",
            "config": {"code": "(a) => a.x * 2", "args": {"x": 7}, "world": "MAIN", "assignTo": "doubled"},
        },
    )
    assert result.output == 14
    assert ctx.variables["doubled"] == 14
    assert agent.calls[0] == ("script", "(a) => a.x * 2", "MAIN", {"x": 7})


def test_http_server_errors_retry_and_client_errors_do_not():
    agent = FakeDomAgent()
    agent.responses = [{"status": 503, "body": "busy"}, {"status": 200, "body": {"ok": True}}]
    ctx, result, error = _run(
        agent,
        {
            "id": "h",
            "actionType": "http",
            "config": {"url": "https://api.test/orders", "method": "post", "body": {"id": 1}, "assignTo": "reply"},
            "retry": {"maxAttempts": 2, "baseDelay": 0},
        },
    )
    assert error is None
    assert [entry.status for entry in ctx.log.entries] == ["failed", "success"]
    assert ctx.variables["reply"] == {"ok": True}
    assert result.output["status"] == 200

    agent = FakeDomAgent()
    agent.responses = [{"status": 404, "body": "nope"}]
    ctx, _, error = _run(agent, {"id": "h", "actionType": "http", "config": {"url": "https://api.test/x"}})
    assert error.code == "HTTP_CLIENT_ERROR"
    assert len(ctx.log) == 1


def test_screenshot_is_written_under_run_directory(tmp_path: Path):
    agent = FakeDomAgent()
    config = RunConfig(log_root=tmp_path, retry_backoff_base_ms=0)
    ctx, result, error = _run(
        agent,
        {"id": "shot", "actionType": "screenshot", "config": {"fileName": "../cart view.png", "fullPage": True}},
        config=config,
    )

    assert error is None
    path = Path(result.output["path"])
    assert path.parent == tmp_path / "run-1" / "shots"
    assert path.name == ".._cart_view.png"
    assert path.read_bytes() == b"\x89PNG-fake"
    assert agent.calls[0] == ("screenshot", None, True, None)


def test_tab_handlers_track_current_tab():
    agent = FakeDomAgent()
    ctx, result, _ = _run(agent, {"id": "o", "actionType": "openTab", "config": {"url": "https://b.test", "assignTo": "second"}})
    assert ctx.current_tab_ref == "tab-1"
    assert ctx.variables["second"] == "tab-1"

    ctx, _, _ = _run(agent, {"id": "s", "actionType": "switchTab", "config": {"strategy": "index", "value": 0}})
    assert ctx.current_tab_ref == "tab-0"

    def on_second(c):
        c.current_tab_ref = "tab-1"

    ctx, result, _ = _run(agent, {"id": "c", "actionType": "closeTab"}, before=on_second)
    assert result.output == {"closed": "tab-1", "tab_ref": "tab-0"}
    assert ctx.current_tab_ref == "tab-0"


def test_switch_tab_without_match_is_retryable():
    agent = FakeDomAgent()
    ctx, _, error = _run(
        agent,
        {"id": "s", "actionType": "switchTab", "config": {"strategy": "ref", "value": "tab-9"}, "retry": {"maxAttempts": 2, "baseDelay": 0}},
    )
    assert error.code == "TAB_NOT_FOUND"
    assert len(ctx.log) == 2


def test_download_filename_must_match_pattern():
    agent = FakeDomAgent()
    agent.downloads = [{"filename": "report.csv", "url": "https://x.test/r", "path": "/tmp/r"}]
    _, _, error = _run(agent, {"id": "d", "actionType": "handleDownload", "config": {"filenamePattern": r"\.pdf$"}})
    assert error.code == "DOWNLOAD_MISMATCH"

    agent.downloads = [{"filename": "report.pdf", "url": "https://x.test/r", "path": "/tmp/r"}]
    ctx, _, error = _run(agent, {"id": "d", "actionType": "handleDownload", "config": {"filenamePattern": r"\.pdf$", "assignTo": "file"}})
    assert error is None
    assert ctx.variables["file"]["filename"] == "report.pdf"


@pytest.mark.parametrize("ms", [0, 15])
def test_delay(ms):
    _, result, error = _run(FakeDomAgent(), {"id": "d", "actionType": "delay", "config": {"ms": ms}})
    assert error is None
    assert result.details == {"waited_ms": ms}
