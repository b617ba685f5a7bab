# app/services/installer.py
from __future__ import annotations
import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from app.core.errors import AggregateInstallFailure, LaunchError, NonZeroExit, ToolchainNotFound
from app.models.run_models import InstallAttempt, RunRecord
from app.utils.loader import pip_base_args

logger = logging.getLogger(__name__)


class StepRunner(Protocol):
    def log(self, text: str) -> None: ...

    async def run_step(
        self,
        label: str,
        command: str,
        args: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> RunRecord: ...


@dataclass
class AttemptReport:
    label: str
    status: str  # succeeded | failed | would_run
    run_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class InstallOutcome:
    target: str
    succeeded: Optional[str]
    dry_run: bool = False
    reports: List[AttemptReport] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FallbackInstaller:
    """
    설치 시도 목록을 순서대로 실행, 처음 성공한 것에서 멈춘다.
    중간 실패는 기록만 하고 다음 시도로 넘어가며, 전부 실패해야 오류가 된다.
    같은 target 의 시도는 직렬화되고, 서로 다른 target 은 동시에 돌 수 있다.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, target: str) -> asyncio.Lock:
        lock = self._locks.get(target)
        if lock is None:
            lock = self._locks[target] = asyncio.Lock()
        return lock

    async def install(
        self,
        ctx: StepRunner,
        target: str,
        attempts: List[InstallAttempt],
        dry_run: bool = False,
    ) -> InstallOutcome:
        total = len(attempts)
        outcome = InstallOutcome(target=target, succeeded=None, dry_run=dry_run)

        if dry_run:
            for i, a in enumerate(attempts, 1):
                ctx.log(f"[DRY] Attempt {i}/{total}: {a.label}")
                outcome.reports.append(AttemptReport(a.label, "would_run"))
            return outcome

        if not attempts:
            raise AggregateInstallFailure(target, [])

        failures = []
        async with self._lock(target):
            for i, a in enumerate(attempts, 1):
                ctx.log(f"Attempt {i}/{total}: {a.label}")
                try:
                    rec = await ctx.run_step(a.label, a.command, a.args, cwd=a.cwd, env=a.env or None)
                except (LaunchError, NonZeroExit) as e:
                    logger.warning("install attempt failed for %s [%s]: %s", target, a.label, e)
                    ctx.log(f"Failed: {a.label}")
                    failures.append((a.label, e))
                    outcome.reports.append(
                        AttemptReport(a.label, "failed", run_id=getattr(e, "run_id", None), error=str(e))
                    )
                    continue
                ctx.log(f"Success: {a.label}")
                outcome.reports.append(AttemptReport(a.label, "succeeded", run_id=rec.run_id))
                outcome.succeeded = a.label
                return outcome

        raise AggregateInstallFailure(target, failures)


# ──────────────────────────────────────────────────────────────
# 시도 목록 빌더
# ──────────────────────────────────────────────────────────────
def pip_requirement_attempts(
    python: str,
    cwd: str,
    index_url: Optional[str],
    pypi_url: str,
    uv_available: bool,
) -> List[InstallAttempt]:
    """
    1) 미러가 있으면 미러 + pypi extra-index
    2) 공식 pypi
    3) uv 가 있으면 uv pip (--python venv)
    """
    base = pip_base_args()
    attempts: List[InstallAttempt] = []
    if index_url:
        attempts.append(InstallAttempt(
            label=f"pip (-i {index_url} + extra-index {pypi_url})",
            command=python,
            args=[*base, "-i", index_url, "--extra-index-url", pypi_url],
            cwd=cwd,
        ))
    attempts.append(InstallAttempt(
        label=f"pip (official {pypi_url})",
        command=python,
        args=[*base, "-i", pypi_url],
        cwd=cwd,
    ))
    if uv_available:
        attempts.append(InstallAttempt(
            label="uv pip (--python venv)",
            command="uv",
            args=["pip", "install", "-r", "requirements.txt", "--python", python,
                  "--index-url", index_url or pypi_url],
            cwd=cwd,
        ))
    return attempts


def venv_attempts(
    cwd: str,
    python_tool: str,
    uv_available: bool,
    python_cmd: Optional[List[str]],
    exists: bool = False,
) -> List[InstallAttempt]:
    attempts: List[InstallAttempt] = []
    if python_tool in ("auto", "uv") and uv_available:
        args = ["venv", ".venv"]
        if exists:
            args.append("--allow-existing")
        attempts.append(InstallAttempt("uv venv", "uv", args, cwd=cwd))
    if python_cmd and (python_tool in ("auto", "venv") or not attempts):
        args = [*python_cmd[1:], "-m", "venv", ".venv"]
        if exists:
            args.append("--clear")
        attempts.append(InstallAttempt(f"{python_cmd[0]} -m venv", python_cmd[0], args, cwd=cwd))
    if not attempts:
        raise ToolchainNotFound("No Python found. Please install Python 3 or install uv.")
    return attempts


def node_install_attempt(pm: Dict[str, Any], cwd: str) -> InstallAttempt:
    name = str(pm.get("name"))
    args = list(pm.get("install_args") or ["install"])
    return InstallAttempt(
        label=f"{name} {' '.join(args)}",
        command=name,
        args=args,
        cwd=cwd,
        env={"npm_config_production": "false"},
    )


installer = FallbackInstaller()
