# app/services/registry.py
from __future__ import annotations
import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from app.core.config import settings
from app.core.errors import (
    Cancelled,
    InvalidState,
    LaunchError,
    NonZeroExit,
    NotFound,
    OpsError,
    format_command,
)
from app.models.run_models import LineOp, OutputLog, RunKind, RunRecord, RunStatus
from app.services.command_runner import CommandRunner, ProcessHandle
from app.services.framer import OutputFramer, status_line

logger = logging.getLogger(__name__)

# 피드 종료 표시
FEED_CLOSED = None

OperationFn = Callable[["OperationContext"], Awaitable[Optional[Dict[str, Any]]]]


def output_event(index: int, op: LineOp) -> Dict[str, Any]:
    return {"type": "output", "op": op.op, "index": index, "data": op.text}


class ProcessRegistry:
    """
    run 레코드의 유일한 소유자.

    - run 마다 펌프 태스크 1개가 유일한 writer (프레이머 → 출력 로그 → 구독 큐)
    - 구독 등록과 리플레이 스냅샷은 await 없이 한 번에 처리되므로
      이벤트 루프 위에서 누락/중복 없이 이어진다
    - 종료된 run 은 보관 기간 또는 최대 개수를 넘으면 오래된 것부터 제거
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        max_lines: Optional[int] = None,
        retention_sec: Optional[float] = None,
        max_runs: Optional[int] = None,
    ):
        self.runner = runner or CommandRunner()
        self.max_lines = max_lines or settings.OUTPUT_LOG_MAX_LINES
        self.retention_sec = settings.RUN_RETENTION_SEC if retention_sec is None else retention_sec
        self.max_runs = max_runs or settings.MAX_RUNS
        self._runs: Dict[str, RunRecord] = {}
        self._handles: Dict[str, ProcessHandle] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._feeds: Dict[str, Set[asyncio.Queue]] = {}

    # ──────────────────────────────────────────────────────────
    # 조회 / 보관 정책
    # ──────────────────────────────────────────────────────────
    def _evict(self, room: int = 0) -> None:
        now = time.time()
        for run_id, rec in list(self._runs.items()):
            if rec.status.terminal and rec.ended_at is not None and now - rec.ended_at > self.retention_sec:
                self._drop(run_id)
        terminal = [r.run_id for r in self._runs.values() if r.status.terminal]
        while len(self._runs) + room > self.max_runs and terminal:
            self._drop(terminal.pop(0))

    def _drop(self, run_id: str) -> None:
        self._runs.pop(run_id, None)
        self._done.pop(run_id, None)
        self._feeds.pop(run_id, None)
        logger.debug("evicted run %s", run_id)

    def get_run(self, run_id: str) -> RunRecord:
        self._evict()
        rec = self._runs.get(run_id)
        if rec is None:
            raise NotFound(run_id)
        return rec

    def list_runs(self) -> List[RunRecord]:
        self._evict()
        return sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)

    async def wait(self, run_id: str) -> RunRecord:
        rec = self.get_run(run_id)
        done = self._done[run_id]
        await done.wait()
        return rec

    # ──────────────────────────────────────────────────────────
    # 생성 / 실행
    # ──────────────────────────────────────────────────────────
    def _new_record(self, label: str, command: str, args: List[str], **kwargs: Any) -> RunRecord:
        self._evict(room=1)
        run_id = uuid.uuid4().hex
        while run_id in self._runs:
            run_id = uuid.uuid4().hex
        rec = RunRecord(
            run_id=run_id,
            label=label,
            command=command,
            args=list(args),
            output=OutputLog(self.max_lines),
            **kwargs,
        )
        self._runs[run_id] = rec
        self._done[run_id] = asyncio.Event()
        self._feeds[run_id] = set()
        return rec

    async def create_run(
        self,
        command: str,
        args: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        label: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> RunRecord:
        rec = self._new_record(
            label or command, command, args, cwd=cwd, env=dict(env or {}), parent_id=parent_id
        )
        if parent_id:
            self.get_run(parent_id).children.append(rec.run_id)
        try:
            handle = await self.runner.spawn(command, list(args), cwd=cwd, env=env)
        except LaunchError as e:
            e.run_id = rec.run_id
            self._append(rec, LineOp.append(f"[ERROR] {e}"))
            self._settle(rec, RunStatus.FAILED, error=str(e))
            raise
        rec.status = RunStatus.RUNNING
        rec.started_at = time.time()
        rec.pid = handle.pid
        self._handles[rec.run_id] = handle
        self._tasks[rec.run_id] = asyncio.create_task(self._pump(rec, handle))
        parent = self._runs.get(parent_id) if parent_id else None
        if parent is not None and parent.cancel_requested:
            # spawn 도중 부모 operation 이 취소됨
            rec.cancel_requested = True
            handle.terminate()
        logger.info("run %s started pid=%s: %s", rec.run_id, handle.pid, format_command(command, args))
        return rec

    async def _pump(self, rec: RunRecord, handle: ProcessHandle) -> None:
        framer = OutputFramer()
        try:
            async for chunk in handle.chunks():
                for op in framer.feed(chunk):
                    self._append(rec, op)
        except asyncio.CancelledError:
            handle.terminate()
            raise
        except Exception as e:
            # 출력 스트림 오류는 기록만 하고 실제 종료 코드를 기다린다
            logger.warning("output stream error on run %s: %s", rec.run_id, e)
            self._append(rec, LineOp.append(f"[ERROR] output stream: {e}"))
        rc = await handle.wait()
        exit_code, sig = (rc, None) if rc >= 0 else (None, -rc)
        for op in framer.finish(exit_code, sig):
            self._append(rec, op)
        status = RunStatus.CANCELLED if rec.cancel_requested else RunStatus.EXITED
        self._settle(rec, status, exit_code=exit_code, signal=sig)
        self._tasks.pop(rec.run_id, None)

    def start_operation(self, label: str, fn: OperationFn) -> RunRecord:
        """
        여러 child run 을 순서대로 묶는 operation run 생성.
        로그에는 진행 메시지와 child run 출력이 순서대로 쌓인다.
        """
        rec = self._new_record(label, label, [], kind=RunKind.OPERATION)
        rec.status = RunStatus.RUNNING
        rec.started_at = time.time()
        self._tasks[rec.run_id] = asyncio.create_task(self._drive(rec, fn))
        logger.info("operation %s started: %s", rec.run_id, label)
        return rec

    async def _drive(self, rec: RunRecord, fn: OperationFn) -> None:
        ctx = OperationContext(self, rec)
        try:
            outcome = await fn(ctx) or {"status": "success"}
        except (Cancelled, asyncio.CancelledError):
            self._append(rec, LineOp.append("[CANCELLED] operation cancelled by operator"))
            rec.outcome = {"status": "cancelled"}
            self._settle(rec, RunStatus.CANCELLED, error="cancelled")
        except OpsError as e:
            logger.warning("operation %s failed: %s", rec.run_id, e)
            self._append(rec, LineOp.append(f"[ERROR] {e}"))
            rec.outcome = {"status": "failure", "error": str(e), "error_type": type(e).__name__}
            self._settle(rec, RunStatus.FAILED, error=str(e))
        except Exception as e:
            logger.exception("operation %s crashed", rec.run_id)
            self._append(rec, LineOp.append(f"[ERROR] unexpected: {e}"))
            rec.outcome = {"status": "failure", "error": str(e), "error_type": type(e).__name__}
            self._settle(rec, RunStatus.FAILED, error=str(e))
        else:
            rec.outcome = outcome
            code = 0 if outcome.get("status", "success") == "success" else 2
            self._append(rec, LineOp.append(status_line(code)))
            self._settle(rec, RunStatus.EXITED, exit_code=code)
        finally:
            self._tasks.pop(rec.run_id, None)

    # ──────────────────────────────────────────────────────────
    # 상태 전이 / 출력 반영 (유일한 writer 경로)
    # ──────────────────────────────────────────────────────────
    def _append(self, rec: RunRecord, op: LineOp) -> None:
        index = rec.output.apply(op)
        event = output_event(index, op)
        for q in self._feeds.get(rec.run_id, ()):
            q.put_nowait(event)
        # child 출력은 부모 operation 로그에도 그대로 반영
        if rec.parent_id:
            parent = self._runs.get(rec.parent_id)
            if parent is not None and not parent.status.terminal:
                self._append(parent, op)

    def _settle(
        self,
        rec: RunRecord,
        status: RunStatus,
        exit_code: Optional[int] = None,
        signal: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        if rec.status.terminal:
            return
        rec.status = status
        rec.exit_code = exit_code
        rec.signal = signal
        rec.error = error
        rec.ended_at = time.time()
        self._handles.pop(rec.run_id, None)
        event = rec.exit_event()
        for q in self._feeds.get(rec.run_id, ()):
            q.put_nowait(event)
            q.put_nowait(FEED_CLOSED)
        self._feeds[rec.run_id] = set()
        done = self._done.get(rec.run_id)
        if done is not None:
            done.set()
        logger.info(
            "run %s finished: %s code=%s signal=%s", rec.run_id, status.value, exit_code, signal
        )

    # ──────────────────────────────────────────────────────────
    # 취소
    # ──────────────────────────────────────────────────────────
    def cancel_run(self, run_id: str) -> RunRecord:
        """
        종료 신호만 보내고, 상태는 실제 종료 이벤트가 왔을 때 CANCELLED 로 확정된다.
        """
        rec = self.get_run(run_id)
        if rec.status != RunStatus.RUNNING:
            raise InvalidState(run_id, rec.status.value, "cancel")
        if rec.cancel_requested:
            return rec
        rec.cancel_requested = True
        if rec.kind == RunKind.OPERATION:
            for child_id in rec.children:
                handle = self._handles.get(child_id)
                if handle is not None:
                    self._runs[child_id].cancel_requested = True
                    handle.terminate()
        else:
            handle = self._handles.get(run_id)
            if handle is not None:
                handle.terminate()
        logger.info("cancel requested for run %s", run_id)
        return rec

    # ──────────────────────────────────────────────────────────
    # 구독 피드 (Broadcaster 가 사용)
    # ──────────────────────────────────────────────────────────
    def open_feed(
        self, run_id: str, from_cursor: Optional[int] = None, resume: bool = False
    ) -> Tuple[asyncio.Queue, int]:
        """
        리플레이를 채운 큐를 만들어 등록. 이 메서드 안에는 await 가 없어서
        스냅샷과 등록 사이에 새 출력이 끼어들 수 없다.

        resume 이면 from_cursor 라인은 뷰어가 이미 받은 라인이므로
        append 대신 overwrite 로 다시 보낸다.
        """
        rec = self.get_run(run_id)
        cursor = 0 if from_cursor is None else from_cursor
        cursor = min(max(cursor, rec.output.first_index), len(rec.output))
        q: asyncio.Queue = asyncio.Queue()
        for index, text in rec.output.since(cursor):
            seen = resume and index == from_cursor
            op = LineOp.overwrite(text) if seen else LineOp.append(text)
            q.put_nowait(output_event(index, op))
        if rec.status.terminal:
            q.put_nowait(rec.exit_event())
            q.put_nowait(FEED_CLOSED)
        else:
            self._feeds[run_id].add(q)
        return q, cursor

    def close_feed(self, run_id: str, q: asyncio.Queue) -> None:
        feeds = self._feeds.get(run_id)
        if feeds is not None:
            feeds.discard(q)

    def feed_count(self, run_id: str) -> int:
        return len(self._feeds.get(run_id, ()))

    async def shutdown(self) -> None:
        """
        살아있는 run 전부 취소. operation 이 먼저 취소 상태여야
        child 종료 뒤 다음 설치 시도로 넘어가지 않는다.
        """
        running = [r for r in self._runs.values() if r.status == RunStatus.RUNNING]
        for rec in sorted(running, key=lambda r: r.kind != RunKind.OPERATION):
            self.cancel_run(rec.run_id)
        for handle in list(self._handles.values()):
            handle.terminate()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class OperationContext:
    """operation 함수가 child run 을 실행하고 진행 메시지를 남기는 창구."""

    def __init__(self, registry: ProcessRegistry, record: RunRecord):
        self.registry = registry
        self.record = record

    @property
    def run_id(self) -> str:
        return self.record.run_id

    @property
    def cancelled(self) -> bool:
        return self.record.cancel_requested

    def _check_cancel(self) -> None:
        if self.record.cancel_requested:
            raise Cancelled(self.record.run_id)

    def log(self, text: str) -> None:
        for line in text.split("\n"):
            self.registry._append(self.record, LineOp.append(line))

    def step(self, title: str) -> None:
        self.log(f"===== [STEP] {title} =====")

    async def run_step(
        self,
        label: str,
        command: str,
        args: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> RunRecord:
        """child run 하나 실행. 0 이 아닌 종료는 NonZeroExit, 실행 불가는 LaunchError."""
        self._check_cancel()
        self.log(f"$ {format_command(command, args)}")
        child = await self.registry.create_run(
            command, args, cwd=cwd, env=env, label=label, parent_id=self.record.run_id
        )
        await self.registry.wait(child.run_id)
        self._check_cancel()
        if child.status != RunStatus.EXITED or child.exit_code != 0:
            raise NonZeroExit(command, args, cwd, child.exit_code, child.signal, run_id=child.run_id)
        return child

    async def capture(self, command: str, args: List[str], cwd: Optional[str] = None) -> Tuple[int, str]:
        return await self.registry.runner.capture(command, args, cwd=cwd)


# 모듈 전역 서비스 싱글톤
process_registry = ProcessRegistry()
