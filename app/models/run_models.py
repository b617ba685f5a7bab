# app/models/run_models.py
from __future__ import annotations
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    EXITED = "EXITED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.EXITED, RunStatus.FAILED, RunStatus.CANCELLED)


class RunKind(str, Enum):
    COMMAND = "command"
    OPERATION = "operation"


@dataclass(frozen=True)
class LineOp:
    op: Literal["append", "overwrite"]
    text: str

    @staticmethod
    def append(text: str) -> "LineOp":
        return LineOp("append", text)

    @staticmethod
    def overwrite(text: str) -> "LineOp":
        return LineOp("overwrite", text)


class OutputLog:
    """
    프레이밍된 라인 버퍼. 최대 길이를 넘으면 가장 오래된 라인부터 버린다(FIFO).
    인덱스는 절대값이라 eviction 이후에도 커서가 그대로 유효하다.
    """

    def __init__(self, max_lines: int):
        self.max_lines = max(1, max_lines)
        self._lines: Deque[str] = deque()
        self._base = 0  # 지금까지 버려진 라인 수

    def __len__(self) -> int:
        return self._base + len(self._lines)

    @property
    def first_index(self) -> int:
        return self._base

    def apply(self, op: LineOp) -> int:
        """op 을 반영하고 영향을 받은 라인의 절대 인덱스를 돌려준다."""
        if op.op == "overwrite" and self._lines:
            self._lines[-1] = op.text
            return len(self) - 1
        self._lines.append(op.text)
        while len(self._lines) > self.max_lines:
            self._lines.popleft()
            self._base += 1
        return len(self) - 1

    def since(self, cursor: int) -> List[tuple]:
        start = max(cursor, self._base)
        return [(i, self._lines[i - self._base]) for i in range(start, len(self))]

    def lines(self) -> List[str]:
        return list(self._lines)


@dataclass
class RunRecord:
    run_id: str
    label: str
    command: str
    args: List[str]
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    kind: RunKind = RunKind.COMMAND
    status: RunStatus = RunStatus.PENDING
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    error: Optional[str] = None
    pid: Optional[int] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    output: OutputLog = field(default_factory=lambda: OutputLog(5000))
    parent_id: Optional[str] = None
    children: List[str] = field(default_factory=list)
    outcome: Optional[Dict[str, Any]] = None
    cancel_requested: bool = False

    @property
    def cmd(self) -> List[str]:
        return [self.command, *self.args]

    def exit_event(self) -> Dict[str, Any]:
        return {
            "type": "exit",
            "status": self.status.value,
            "code": self.exit_code,
            "signal": self.signal,
            "error": self.error,
            "outcome": self.outcome,
        }


@dataclass
class InstallAttempt:
    label: str
    command: str
    args: List[str]
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)


# ──────────────────────────────────────────────────────────────
# API 입출력 모델
# ──────────────────────────────────────────────────────────────
class CommandItem(BaseModel):
    name: str
    description: str
    cmd: List[str]


class RunOut(BaseModel):
    run_id: str
    label: str
    kind: str
    cmd: List[str]
    cwd: Optional[str]
    status: str
    exit_code: int | None
    signal: int | None
    error: str | None
    pid: int | None
    created_at: float
    started_at: float | None
    ended_at: float | None
    parent_id: str | None
    children: List[str]
    outcome: Dict[str, Any] | None
    lines: int

    @staticmethod
    def from_record(r: RunRecord) -> "RunOut":
        return RunOut(
            run_id=r.run_id, label=r.label, kind=r.kind.value, cmd=r.cmd, cwd=r.cwd,
            status=r.status.value, exit_code=r.exit_code, signal=r.signal, error=r.error,
            pid=r.pid, created_at=r.created_at, started_at=r.started_at, ended_at=r.ended_at,
            parent_id=r.parent_id, children=list(r.children), outcome=r.outcome,
            lines=len(r.output),
        )


class RunDetail(RunOut):
    first_index: int
    output: List[str]

    @staticmethod
    def from_record(r: RunRecord) -> "RunDetail":
        base = RunOut.from_record(r).model_dump()
        return RunDetail(**base, first_index=r.output.first_index, output=r.output.lines())


class InstallOptions(BaseModel):
    target: Literal["all", "node", "python"] = "all"
    force: bool = False
    dry_run: bool = False
    pip_index_url: Optional[str] = Field(None, description="대체 pip 인덱스(미러). 비우면 설정값 사용")
    package_manager: str = Field("auto", description="auto | pnpm | npm | cnpm")
    python_tool: Literal["auto", "uv", "venv"] = "auto"


class UpdateOptions(BaseModel):
    mode: Literal["safe", "force"] = "safe"
    scope: Literal["root", "all"] = "all"
    install_after: Literal["none", "dependenciesOnly", "python", "all"] = "dependenciesOnly"
    package_manager: str = Field("auto", description="auto | pnpm | npm | cnpm")
