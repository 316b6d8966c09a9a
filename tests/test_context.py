import asyncio
import time

import pytest

from engine.context import MASK, ExecutionContext, RunLog, StepAttempt, mask_secrets
from engine.errors import ActionTimeout, RunCancelled

from fake_agent import FakeDomAgent


def test_mask_secrets_walks_nested_values():
    value = {"message": "login with hunter2 failed", "items": ["hunter2", 4], "nested": {"k": "x-hunter2-y"}}
    masked = mask_secrets(value, ["hunter2", ""])
    assert masked == {"message": f"login with {MASK} failed", "items": [MASK, 4], "nested": {"k": f"x-{MASK}-y"}}


def test_run_log_survives_failing_listener():
    run_log = RunLog("run-1")
    seen = []

    def broken(run_id, attempt):
        raise RuntimeError("listener exploded")

    run_log.add_listener(broken)
    run_log.add_listener(lambda run_id, attempt: seen.append((run_id, attempt.step_id)))
    run_log.append(StepAttempt("n1", 1, 0.0, 0.5, "success"))

    assert seen == [("run-1", "n1")]
    assert len(run_log) == 1
    assert run_log.as_list()[0]["status"] == "success"
    assert run_log.as_list()[0]["duration_ms"] == 500


def test_recorded_attempts_and_variable_snapshots_are_masked():
    async def scenario():
        ctx = ExecutionContext(
            "run-1",
            FakeDomAgent(),
            variables={"password": "s3cret!", "note": "pw is s3cret!"},
            sensitive=["password"],
        )
        ctx.record("fill", 1, time.time(), "failed", error={"message": "typed s3cret! into #pw"})
        return ctx

    ctx = asyncio.run(scenario())
    assert ctx.log.entries[0].error == {"message": f"typed {MASK} into #pw"}
    assert ctx.snapshot_variables() == {"password": MASK, "note": f"pw is {MASK}"}


def test_race_times_out_and_cancels_the_operation():
    cancelled = []

    async def slow():
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    async def scenario():
        ctx = ExecutionContext("run-1", FakeDomAgent())
        await ctx.race(slow(), 20, label="slow thing")

    with pytest.raises(ActionTimeout) as info:
        asyncio.run(scenario())
    assert "slow thing" in info.value.message
    assert cancelled == [True]


def test_race_returns_result_and_observes_cancellation():
    async def scenario():
        ctx = ExecutionContext("run-1", FakeDomAgent())

        async def quick():
            return 42

        assert await ctx.race(quick(), 1000) == 42

        async def cancel_soon():
            await asyncio.sleep(0.02)
            ctx.cancel()

        asyncio.get_running_loop().create_task(cancel_soon())
        started = time.monotonic()
        with pytest.raises(RunCancelled):
            await ctx.race(asyncio.sleep(5), None)
        return time.monotonic() - started

    assert asyncio.run(scenario()) < 1


def test_sleep_wakes_on_cancel():
    async def scenario():
        ctx = ExecutionContext("run-1", FakeDomAgent())
        asyncio.get_running_loop().call_later(0.02, ctx.cancel)
        started = time.monotonic()
        with pytest.raises(RunCancelled):
            await ctx.sleep(5)
        return time.monotonic() - started

    assert asyncio.run(scenario()) < 1


def test_child_contexts_share_or_copy_variables():
    async def scenario():
        parent = ExecutionContext("run-1", FakeDomAgent(), variables={"cart": ["a"]})
        shared = parent.child("run-1/sub")
        isolated = parent.child("run-1/iso", isolated=True)
        shared.variables["total"] = 3
        isolated.variables["cart"].append("b")
        parent.cancel()
        return parent, shared, isolated

    parent, shared, isolated = asyncio.run(scenario())
    assert parent.variables == {"cart": ["a"], "total": 3}
    assert isolated.variables["cart"] == ["a", "b"]
    assert shared.depth == 1
    assert shared.cancelled and isolated.cancelled
