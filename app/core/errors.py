# app/core/errors.py
from __future__ import annotations
import shlex
from typing import List, Optional, Sequence, Tuple


def format_command(command: str, args: Sequence[str]) -> str:
    return " ".join(shlex.quote(x) for x in [command, *args])


class OpsError(Exception):
    """운영자에게 노출되는 모든 오류의 기반 클래스."""


class LaunchError(OpsError):
    """프로세스 자체를 띄우지 못함 (바이너리 없음, 권한, 잘못된 cwd). exit code 와 혼용하지 않는다."""

    def __init__(
        self,
        command: str,
        args: Sequence[str],
        cwd: Optional[str],
        cause: BaseException,
        run_id: Optional[str] = None,
    ):
        self.command = command
        self.args_list = list(args)
        self.cwd = cwd
        self.cause = cause
        self.run_id = run_id
        super().__init__(
            f"failed to launch {format_command(command, args)} (cwd={cwd or '.'}): {cause}"
        )


class NonZeroExit(OpsError):
    def __init__(
        self,
        command: str,
        args: Sequence[str],
        cwd: Optional[str],
        exit_code: Optional[int],
        signal: Optional[int] = None,
        run_id: Optional[str] = None,
    ):
        self.command = command
        self.args_list = list(args)
        self.cwd = cwd
        self.exit_code = exit_code
        self.signal = signal
        self.run_id = run_id
        how = f"signal {signal}" if exit_code is None else f"code {exit_code}"
        super().__init__(f"{format_command(command, args)} exited with {how} (cwd={cwd or '.'})")


class NotFound(OpsError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"run not found: {run_id}")


class InvalidState(OpsError):
    def __init__(self, run_id: str, status: str, action: str):
        self.run_id = run_id
        self.status = status
        self.action = action
        super().__init__(f"cannot {action} run {run_id} in state {status}")


class AggregateInstallFailure(OpsError):
    """하나의 설치 대상에 대한 모든 폴백 시도가 실패."""

    def __init__(self, target: str, failures: List[Tuple[str, OpsError]]):
        self.target = target
        self.failures = failures
        labels = ", ".join(label for label, _ in failures)
        last = failures[-1][1] if failures else "no attempts configured"
        super().__init__(f"all install attempts failed for {target} [{labels}]; last error: {last}")

    @property
    def labels(self) -> List[str]:
        return [label for label, _ in self.failures]


class UpdateAborted(OpsError):
    def __init__(self, step: str, cause: Optional[BaseException] = None, message: Optional[str] = None):
        self.step = step
        self.cause = cause
        detail = message or (str(cause) if cause else "step failed")
        super().__init__(f"update aborted at step '{step}': {detail}")


class ToolchainNotFound(OpsError):
    """호스트에 사용 가능한 패키지 매니저 / 파이썬이 없음."""


class Cancelled(OpsError):
    """operation 진행 중 운영자가 취소를 요청."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"run {run_id} was cancelled")
