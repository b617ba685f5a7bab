"""Process registry tests."""

from __future__ import annotations

import asyncio

import pytest

from app.core.errors import InvalidState, LaunchError, NotFound
from app.models.run_models import InstallAttempt, LineOp, OutputLog, RunKind, RunStatus
from app.services.installer import FallbackInstaller
from app.services.registry import ProcessRegistry
from helpers import py, wait_for_lines

pytestmark = pytest.mark.asyncio


async def test_run_lifecycle_and_framed_output(registry: ProcessRegistry) -> None:
    cmd, args = py("print('one'); print('two')")
    rec = await registry.create_run(cmd, args, label="hello")
    assert rec.status == RunStatus.RUNNING
    assert rec.pid is not None

    done = await registry.wait(rec.run_id)
    assert done.status == RunStatus.EXITED
    assert done.exit_code == 0
    assert done.ended_at is not None and done.ended_at >= done.started_at
    assert done.output.lines() == ["one", "two", "[RC] 0"]


async def test_non_zero_exit_is_recorded_with_code(registry: ProcessRegistry) -> None:
    cmd, args = py("import sys; print('bad'); sys.exit(3)")
    rec = await registry.create_run(cmd, args)
    done = await registry.wait(rec.run_id)
    assert done.status == RunStatus.EXITED
    assert done.exit_code == 3
    assert done.output.lines()[-1] == "[RC] 3"


async def test_launch_failure_marks_run_failed_and_raises(registry: ProcessRegistry) -> None:
    with pytest.raises(LaunchError) as exc:
        await registry.create_run("no-such-binary-for-ops-tests", [])
    run_id = exc.value.run_id
    assert run_id is not None
    rec = registry.get_run(run_id)
    assert rec.status == RunStatus.FAILED
    assert rec.exit_code is None
    assert "no-such-binary-for-ops-tests" in rec.error
    assert rec.output.lines()[0].startswith("[ERROR]")


async def test_unknown_run_is_not_found(registry: ProcessRegistry) -> None:
    with pytest.raises(NotFound):
        registry.get_run("missing")


async def test_cancel_waits_for_real_exit(registry: ProcessRegistry) -> None:
    cmd, args = py("import time\nprint('started', flush=True)\ntime.sleep(30)")
    rec = await registry.create_run(cmd, args)
    await wait_for_lines(registry, rec.run_id, 1)

    registry.cancel_run(rec.run_id)
    # 실제 종료 전까지는 RUNNING
    assert rec.status == RunStatus.RUNNING

    done = await registry.wait(rec.run_id)
    assert done.status == RunStatus.CANCELLED
    assert done.exit_code is None
    assert done.signal is not None
    assert done.output.lines()[-1].startswith("[RC] terminated by signal")


async def test_cancel_after_terminal_is_invalid_state(registry: ProcessRegistry) -> None:
    cmd, args = py("print('x')")
    rec = await registry.create_run(cmd, args)
    await registry.wait(rec.run_id)
    before = rec.output.lines()

    with pytest.raises(InvalidState):
        registry.cancel_run(rec.run_id)
    assert rec.status == RunStatus.EXITED
    assert rec.output.lines() == before


async def test_terminal_runs_expire_after_retention_window() -> None:
    registry = ProcessRegistry(retention_sec=0.05, max_runs=10)
    cmd, args = py("print('x')")
    rec = await registry.create_run(cmd, args)
    await registry.wait(rec.run_id)
    assert registry.get_run(rec.run_id) is rec

    await asyncio.sleep(0.1)
    with pytest.raises(NotFound):
        registry.get_run(rec.run_id)


async def test_run_cap_evicts_oldest_terminal_run_first() -> None:
    registry = ProcessRegistry(retention_sec=3600, max_runs=2)
    cmd, args = py("print('x')")
    first = await registry.create_run(cmd, args)
    await registry.wait(first.run_id)
    second = await registry.create_run(cmd, args)
    await registry.wait(second.run_id)

    third = await registry.create_run(cmd, args)
    await registry.wait(third.run_id)

    with pytest.raises(NotFound):
        registry.get_run(first.run_id)
    assert registry.get_run(second.run_id) is second
    assert registry.get_run(third.run_id) is third


async def test_running_runs_are_never_evicted() -> None:
    registry = ProcessRegistry(retention_sec=3600, max_runs=1)
    cmd, args = py("import time\nprint('up', flush=True)\ntime.sleep(30)")
    live = await registry.create_run(cmd, args)
    quick = await registry.create_run(*py("print('y')"))
    await registry.wait(quick.run_id)

    assert registry.get_run(live.run_id).status == RunStatus.RUNNING
    registry.cancel_run(live.run_id)
    await registry.wait(live.run_id)


async def test_output_log_is_capped_with_fifo_eviction() -> None:
    small = ProcessRegistry(max_lines=5)
    cmd, args = py("for i in range(20): print(f'line {i}')")
    rec = await small.create_run(cmd, args)
    await small.wait(rec.run_id)

    lines = rec.output.lines()
    assert len(lines) == 5
    assert lines == ["line 16", "line 17", "line 18", "line 19", "[RC] 0"]
    assert len(rec.output) == 21
    assert rec.output.first_index == 16


async def test_output_log_overwrite_only_touches_newest_entry() -> None:
    log = OutputLog(max_lines=3)
    assert log.apply(LineOp.append("a")) == 0
    assert log.apply(LineOp.append("b")) == 1
    assert log.apply(LineOp.overwrite("B")) == 1
    assert log.lines() == ["a", "B"]
    assert log.since(1) == [(1, "B")]


async def test_run_ids_are_unique(registry: ProcessRegistry) -> None:
    cmd, args = py("pass")
    ids = set()
    for _ in range(5):
        rec = await registry.create_run(cmd, args)
        ids.add(rec.run_id)
        await registry.wait(rec.run_id)
    assert len(ids) == 5


async def test_operation_mirrors_child_output_and_tracks_children(registry: ProcessRegistry) -> None:
    async def flow(ctx):
        ctx.step("greeting")
        cmd, args = py("print('from child')")
        await ctx.run_step("child", cmd, args)
        return {"status": "success"}

    op = registry.start_operation("demo", flow)
    assert op.kind == RunKind.OPERATION
    done = await registry.wait(op.run_id)

    assert done.status == RunStatus.EXITED
    assert done.exit_code == 0
    assert len(done.children) == 1
    lines = done.output.lines()
    assert lines[0] == "===== [STEP] greeting ====="
    assert "from child" in lines
    assert lines[-1] == "[RC] 0"
    child = registry.get_run(done.children[0])
    assert child.parent_id == op.run_id
    assert child.output.lines() == ["from child", "[RC] 0"]


async def test_operation_partial_outcome_exits_with_code_two(registry: ProcessRegistry) -> None:
    async def flow(ctx):
        return {"status": "partial"}

    op = registry.start_operation("partial", flow)
    done = await registry.wait(op.run_id)
    assert done.status == RunStatus.EXITED
    assert done.exit_code == 2
    assert done.outcome == {"status": "partial"}


async def test_cancelling_operation_stops_active_child(registry: ProcessRegistry) -> None:
    started = asyncio.Event()

    async def flow(ctx):
        cmd, args = py("import time\nprint('working', flush=True)\ntime.sleep(30)")
        started.set()
        await ctx.run_step("slow", cmd, args)
        ctx.log("never reached")
        return {"status": "success"}

    op = registry.start_operation("cancel me", flow)
    await started.wait()
    while "working" not in op.output.lines():
        await asyncio.sleep(0.01)

    registry.cancel_run(op.run_id)
    done = await registry.wait(op.run_id)

    assert done.status == RunStatus.CANCELLED
    assert "never reached" not in done.output.lines()
    child = registry.get_run(done.children[0])
    assert child.status == RunStatus.CANCELLED


async def test_shutdown_cancels_operation_before_next_install_attempt(tmp_path) -> None:
    registry = ProcessRegistry(retention_sec=3600, max_runs=10)
    marker = tmp_path / "second-attempt-ran"
    slow_cmd, slow_args = py("import time\nprint('slow', flush=True)\ntime.sleep(30)")
    next_cmd, next_args = py(f"open({str(marker)!r}, 'w').close()")
    attempts = [
        InstallAttempt("slow mirror", slow_cmd, slow_args),
        InstallAttempt("official", next_cmd, next_args),
    ]

    async def flow(ctx):
        await FallbackInstaller().install(ctx, "requirements:/demo", attempts)
        return {"status": "success"}

    op = registry.start_operation("install", flow)
    while "slow" not in op.output.lines():
        await asyncio.sleep(0.01)

    await registry.shutdown()

    assert op.status == RunStatus.CANCELLED
    assert not marker.exists()
    assert len(op.children) == 1
    assert registry.get_run(op.children[0]).status == RunStatus.CANCELLED


async def test_shutdown_cancels_plain_runs(registry: ProcessRegistry) -> None:
    rec = await registry.create_run(*py("import time\nprint('up', flush=True)\ntime.sleep(30)"))
    await wait_for_lines(registry, rec.run_id, 1)
    await registry.shutdown()
    assert rec.status == RunStatus.CANCELLED
    assert rec.signal is not None
