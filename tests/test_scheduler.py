import asyncio
import time

import pytest

from engine.config import RunConfig
from engine.context import ExecutionContext
from engine.errors import IllegalTransition, ValidationError
from engine.flow_store import InMemoryFlowStore, parse_flow
from engine.registry import build_default_registry
from engine.scheduler import RunStatus, Scheduler, validate_flow

from fake_agent import FakeDomAgent, target


def _flow(nodes, edges, **extra):
    return parse_flow({"id": extra.pop("id", "flow"), "nodes": nodes, "edges": edges, **extra})


def _edge(source, dest, label=None):
    edge = {"from": source, "to": dest}
    if label:
        edge["branchLabel"] = label
    return edge


def _run(flow, agent, *, variables=None, config=None, flow_store=None):
    async def scenario():
        ctx = ExecutionContext(
            "run-1",
            agent,
            config=config or RunConfig(retry_backoff_base_ms=0, poll_interval_ms=10),
            variables=variables if variables is not None else {},
        )
        scheduler = Scheduler(flow, build_default_registry(), ctx, flow_store=flow_store)
        summary = await scheduler.run()
        return scheduler, summary

    return asyncio.run(scenario())


def _executed(summary):
    return [entry["step_id"] for entry in summary.attempts if entry["status"] == "success"]


def test_linear_flow_completes_after_polling():
    agent = FakeDomAgent({".btn": "el-btn", ".result": "el-result"})
    agent.locate_misses[".result"] = 2
    flow = _flow(
        [
            {"id": "open", "actionType": "navigate", "config": {"url": "https://x.test"}},
            {"id": "press", "actionType": "click", "target": target(".btn")},
            {
                "id": "check",
                "actionType": "assert",
                "target": target(".result"),
                "config": {"condition": "exists", "pollIntervalMs": 10},
            },
        ],
        [_edge("open", "press"), _edge("press", "check")],
    )

    scheduler, summary = _run(flow, agent)

    assert summary.status is RunStatus.COMPLETED
    assert [(a["step_id"], a["status"]) for a in summary.attempts] == [
        ("open", "success"),
        ("press", "success"),
        ("check", "success"),
    ]
    assert summary.last_successful_node_id == "check"
    assert summary.stats.nodes_executed == 3
    assert scheduler.status is RunStatus.COMPLETED


def test_if_branches_on_condition():
    flow = _flow(
        [
            {"id": "cond", "actionType": "if", "config": {"condition": "count > 5"}},
            {"id": "big", "actionType": "delay", "config": {"ms": 0}},
            {"id": "small", "actionType": "delay", "config": {"ms": 0}},
        ],
        [_edge("cond", "big", "true"), _edge("cond", "small", "false")],
    )

    _, summary = _run(flow, FakeDomAgent(), variables={"count": 3})

    assert summary.status is RunStatus.COMPLETED
    assert _executed(summary) == ["cond", "small"]
    assert summary.attempts[0]["output"] == {"result": False}


def test_if_without_matching_branch_follows_default_edge():
    flow = _flow(
        [
            {"id": "cond", "actionType": "if", "config": {"condition": "flag"}},
            {"id": "yes", "actionType": "delay", "config": {"ms": 0}},
            {"id": "after", "actionType": "delay", "config": {"ms": 0}},
        ],
        [_edge("cond", "yes", "true"), _edge("cond", "after", "default"), _edge("yes", "after")],
    )

    _, summary = _run(flow, FakeDomAgent(), variables={"flag": False})
    assert _executed(summary) == ["cond", "after"]


def test_subflow_timeout_surfaces_as_one_error_with_nested_log():
    inner = {
        "id": "login",
        "nodes": [
            {"id": "inner-open", "actionType": "navigate", "config": {"url": "https://x.test/login"}},
            {"id": "inner-click", "actionType": "click", "target": target("#slow"), "timeout": 20},
        ],
        "edges": [_edge("inner-open", "inner-click")],
        "defaults": {"retry": {"maxAttempts": 1}},
    }
    agent = FakeDomAgent({"#slow": "el-slow"})
    agent.interaction_delay = 1
    flow = _flow(
        [
            {"id": "sub", "actionType": "executeFlow", "config": {"flowId": "login"}},
            {"id": "never", "actionType": "delay", "config": {"ms": 0}},
        ],
        [_edge("sub", "never")],
        subflows={"login": inner},
        defaults={"retry": {"maxAttempts": 1}},
    )

    _, summary = _run(flow, agent)

    assert summary.status is RunStatus.FAILED
    assert summary.failing_node_id == "sub"
    assert summary.error["code"] == "SUBFLOW_FAILED"
    assert summary.error["details"]["failing_node_id"] == "inner-click"
    assert summary.error["details"]["cause"]["code"] == "TIMEOUT"
    assert "log" not in summary.error["details"]
    sub_entries = [entry for entry in summary.attempts if entry["step_id"] == "sub"]
    assert len(sub_entries) == 1
    nested = sub_entries[0]["output"]["log"]
    assert [(e["step_id"], e["status"]) for e in nested] == [("inner-open", "success"), ("inner-click", "failed")]
    assert all(entry["step_id"] != "never" for entry in summary.attempts)


def test_cancel_during_wait_is_prompt():
    agent = FakeDomAgent()
    flow = _flow(
        [
            {
                "id": "wait",
                "actionType": "wait",
                "target": target("#never"),
                "config": {"timeoutMs": 10000, "pollIntervalMs": 50},
            }
        ],
        [],
    )

    async def scenario():
        ctx = ExecutionContext("run-1", agent, config=RunConfig(retry_backoff_base_ms=0))
        scheduler = Scheduler(flow, build_default_registry(), ctx)
        task = asyncio.ensure_future(scheduler.run())
        await asyncio.sleep(0.12)
        cancelled_at = time.monotonic()
        scheduler.cancel()
        summary = await task
        return summary, time.monotonic() - cancelled_at

    summary, elapsed = asyncio.run(scenario())

    assert summary.status is RunStatus.CANCELLED
    assert summary.error["kind"] == "RunCancelled"
    assert summary.attempts[-1]["status"] == "cancelled"
    assert elapsed < 0.5


def test_foreach_runs_body_per_item_then_exits():
    agent = FakeDomAgent({"#row": "el-row"})
    flow = _flow(
        [
            {"id": "each", "actionType": "foreach", "config": {"items": "{{names}}", "itemVar": "name"}},
            {"id": "type", "actionType": "fill", "target": target("#row"), "config": {"value": "{{index}}:{{name}}"}},
            {"id": "done", "actionType": "delay", "config": {"ms": 0}},
        ],
        [_edge("each", "type", "loop-continue"), _edge("type", "each"), _edge("each", "done", "loop-exit")],
    )

    _, summary = _run(flow, agent, variables={"names": ["ann", "bo"]})

    assert summary.status is RunStatus.COMPLETED
    assert [call[3]["value"] for call in agent.interactions("fill")] == ["0:ann", "1:bo"]
    assert _executed(summary) == ["each", "type", "each", "type", "each", "done"]
    assert summary.stats.per_node["type"]["executions"] == 2


def test_loop_without_back_edge_returns_to_loop_node():
    flow = _flow(
        [
            {"id": "each", "actionType": "foreach", "config": {"items": [1, 2, 3]}},
            {"id": "body", "actionType": "delay", "config": {"ms": 0}},
        ],
        [_edge("each", "body", "loop-continue")],
    )
    _, summary = _run(flow, FakeDomAgent())
    assert _executed(summary).count("body") == 3


def test_while_is_capped_with_warning():
    flow = _flow(
        [
            {"id": "spin", "actionType": "while", "config": {"condition": "true", "maxIterations": 50, "counterVar": "n"}},
            {"id": "tick", "actionType": "delay", "config": {"ms": 0}},
        ],
        [_edge("spin", "tick", "loop-continue"), _edge("tick", "spin")],
    )

    _, summary = _run(flow, FakeDomAgent(), config=RunConfig(max_loop_iterations=4))

    assert summary.status is RunStatus.COMPLETED
    assert _executed(summary).count("tick") == 4
    assert summary.variables["n"] == 4
    assert summary.warnings == ["Loop 'spin' stopped at its iteration cap (4)"]


def test_while_counts_down_variable():
    flow = _flow(
        [
            {"id": "loop", "actionType": "while", "config": {"condition": "remaining > 0"}},
            {"id": "dec", "actionType": "script", "config": {"code": "dec", "assignTo": "remaining"}},
        ],
        [_edge("loop", "dec", "loop-continue"), _edge("dec", "loop")],
    )
    agent = FakeDomAgent()
    agent.scripts["dec"] = 0
    _, summary = _run(flow, agent, variables={"remaining": 2})
    assert _executed(summary) == ["loop", "dec", "loop"]


def test_continue_on_error_moves_on_with_warning():
    flow = _flow(
        [
            {"id": "optional", "actionType": "click", "target": target("#banner"), "continueOnError": True,
             "retry": {"maxAttempts": 1}},
            {"id": "next", "actionType": "delay", "config": {"ms": 0}},
        ],
        [_edge("optional", "next")],
    )

    _, summary = _run(flow, FakeDomAgent())

    assert summary.status is RunStatus.COMPLETED
    assert summary.stats.failures == 1
    assert summary.warnings and "optional" in summary.warnings[0]
    assert _executed(summary) == ["next"]


def test_failed_if_takes_false_branch_when_continuing():
    flow = _flow(
        [
            {"id": "cond", "actionType": "if", "config": {"condition": "missing > 1"}, "continueOnError": True},
            {"id": "yes", "actionType": "delay", "config": {"ms": 0}},
            {"id": "no", "actionType": "delay", "config": {"ms": 0}},
        ],
        [_edge("cond", "yes", "true"), _edge("cond", "no", "false")],
    )
    _, summary = _run(flow, FakeDomAgent())
    assert _executed(summary) == ["no"]


def test_failure_stops_the_run():
    flow = _flow(
        [
            {"id": "a", "actionType": "delay", "config": {"ms": 0}},
            {"id": "b", "actionType": "click", "target": target("#nope"), "retry": {"maxAttempts": 2, "baseDelay": 0}},
            {"id": "c", "actionType": "delay", "config": {"ms": 0}},
        ],
        [_edge("a", "b"), _edge("b", "c")],
    )

    _, summary = _run(flow, FakeDomAgent())

    assert summary.status is RunStatus.FAILED
    assert summary.failing_node_id == "b"
    assert summary.last_successful_node_id == "a"
    assert summary.stats.retries == 1
    assert summary.error["code"] == "ELEMENT_NOT_FOUND"


def test_switch_frame_scopes_later_lookups():
    agent = FakeDomAgent({"#pay": "el-pay"})
    flow = _flow(
        [
            {"id": "enter", "actionType": "switchFrame", "config": {"frame": {"name": "payment"}}},
            {"id": "pay", "actionType": "click", "target": target("#pay")},
            {"id": "leave", "actionType": "switchFrame", "config": {"strategy": "root"}},
        ],
        [_edge("enter", "pay"), _edge("pay", "leave")],
    )

    scheduler, summary = _run(flow, agent)

    assert summary.status is RunStatus.COMPLETED
    assert agent.locate_calls[0]["frame_chain"] == ["name=payment"]
    assert scheduler.ctx.current_frame_chain == []


def test_isolated_subflow_exports_selected_variables():
    store = InMemoryFlowStore()
    store.save_flow(
        parse_flow(
            {
                "id": "lookup",
                "nodes": [
                    {"id": "read", "actionType": "script", "config": {"code": "token", "assignTo": "token"}},
                    {"id": "scratch", "actionType": "script", "config": {"code": "tmp", "assignTo": "tmp"}},
                ],
                "edges": [_edge("read", "scratch")],
            }
        )
    )
    agent = FakeDomAgent()
    agent.scripts.update({"token": "abc", "tmp": "x"})
    flow = _flow(
        [
            {
                "id": "sub",
                "actionType": "executeFlow",
                "config": {"flowId": "lookup", "isolated": True, "export": ["token"]},
            }
        ],
        [],
    )

    _, summary = _run(flow, agent, variables={"user": "ann"}, flow_store=store)

    assert summary.status is RunStatus.COMPLETED
    assert summary.variables == {"user": "ann", "token": "abc"}
    assert summary.stats.per_node["sub/read"]["executions"] == 1


def test_subflow_depth_is_limited():
    flow = _flow(
        [{"id": "again", "actionType": "executeFlow", "config": {"flowId": "self"}}],
        [],
        id="self",
    )
    store = InMemoryFlowStore()
    store.save_flow(flow)

    _, summary = _run(flow, FakeDomAgent(), config=RunConfig(max_subflow_depth=3), flow_store=store)

    assert summary.status is RunStatus.FAILED
    assert summary.error["code"] == "SUBFLOW_FAILED"


def test_pause_and_resume_at_node_boundary():
    agent = FakeDomAgent({"#a": "el-a", "#b": "el-b"})
    agent.gate = asyncio.Event()
    flow = _flow(
        [
            {"id": "first", "actionType": "click", "target": target("#a")},
            {"id": "second", "actionType": "click", "target": target("#b")},
        ],
        [_edge("first", "second")],
    )
    statuses = []

    async def scenario():
        ctx = ExecutionContext("run-1", agent, config=RunConfig())
        scheduler = Scheduler(
            flow, build_default_registry(), ctx, on_status=lambda run_id, status: statuses.append(status.value)
        )
        task = asyncio.ensure_future(scheduler.run())
        await asyncio.sleep(0.02)
        scheduler.pause()
        with pytest.raises(IllegalTransition):
            scheduler.pause()
        agent.gate.set()
        await asyncio.sleep(0.05)
        paused_at = (scheduler.status, scheduler.checkpoint.as_dict(), len(agent.interactions()))
        scheduler.resume()
        summary = await task
        return paused_at, summary, scheduler

    paused_at, summary, scheduler = asyncio.run(scenario())

    status, checkpoint, clicks = paused_at
    assert status is RunStatus.PAUSED
    assert checkpoint == {"next_node_id": "second", "last_completed_node_id": "first"}
    assert clicks == 1
    assert summary.status is RunStatus.COMPLETED
    assert statuses == ["running", "paused", "running", "completed"]
    with pytest.raises(IllegalTransition):
        scheduler.cancel()


def test_cancel_while_paused():
    agent = FakeDomAgent({"#a": "el-a"})
    agent.gate = asyncio.Event()
    flow = _flow(
        [
            {"id": "first", "actionType": "click", "target": target("#a")},
            {"id": "second", "actionType": "delay", "config": {"ms": 0}},
        ],
        [_edge("first", "second")],
    )

    async def scenario():
        ctx = ExecutionContext("run-1", agent, config=RunConfig())
        scheduler = Scheduler(flow, build_default_registry(), ctx)
        task = asyncio.ensure_future(scheduler.run())
        await asyncio.sleep(0.02)
        scheduler.pause()
        agent.gate.set()
        await asyncio.sleep(0.05)
        scheduler.cancel()
        return await task

    summary = asyncio.run(scenario())
    assert summary.status is RunStatus.CANCELLED
    assert _executed(summary) == ["first"]


@pytest.mark.parametrize(
    "nodes, edges, fragment",
    [
        ([], [], "has no nodes"),
        ([{"id": "a", "actionType": "teleport"}], [], "unknown action type"),
        (
            [{"id": "a", "actionType": "delay", "config": {"ms": 0}}],
            [_edge("a", "ghost")],
            "unknown node",
        ),
        (
            [
                {"id": "a", "actionType": "delay", "config": {"ms": 0}},
                {"id": "b", "actionType": "delay", "config": {"ms": 0}},
            ],
            [_edge("a", "b"), _edge("b", "a")],
            "cycle",
        ),
        (
            [
                {"id": "a", "actionType": "delay", "config": {"ms": 0}},
                {"id": "b", "actionType": "delay", "config": {"ms": 0}},
            ],
            [_edge("a", "b", "true")],
            "cannot have a 'true' edge",
        ),
        (
            [{"id": "loop", "actionType": "foreach", "config": {"items": []}}],
            [],
            "no 'loop-continue' edge",
        ),
    ],
)
def test_malformed_flows_are_rejected_before_running(nodes, edges, fragment):
    flow = _flow(nodes, edges)
    with pytest.raises(ValidationError) as info:
        validate_flow(flow, build_default_registry())
    assert info.value.code == "INVALID_FLOW"
    assert fragment in info.value.message


def test_entry_defaults_to_first_root():
    flow = _flow(
        [
            {"id": "b", "actionType": "delay", "config": {"ms": 0}},
            {"id": "a", "actionType": "delay", "config": {"ms": 0}},
        ],
        [_edge("a", "b")],
    )
    assert validate_flow(flow, build_default_registry()).entry == "a"
