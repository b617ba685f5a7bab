# app/services/command_runner.py
from __future__ import annotations
import asyncio
import codecs
import logging
import os
import signal
from typing import AsyncIterator, Dict, List, Optional, Tuple

from app.core.errors import LaunchError, format_command

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096


def build_env(overrides: Optional[Dict[str, str]]) -> Dict[str, str]:
    env = dict(os.environ)
    env.update(overrides or {})
    return env


class ProcessHandle:
    """
    실행 중인 OS 프로세스 1개. stdout/stderr 는 하나의 스트림으로 합쳐져 있다.
    """

    def __init__(self, proc: asyncio.subprocess.Process, command: str, args: List[str]):
        self._proc = proc
        self.command = command
        self.args = args

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    async def chunks(self) -> AsyncIterator[str]:
        """프로세스가 내보낸 순서 그대로 텍스트 청크를 돌려준다 (라인 경계 무시)."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stdout = self._proc.stdout
        if stdout is None:
            raise RuntimeError(f"no output pipe for pid {self._proc.pid}")
        while True:
            data = await stdout.read(CHUNK_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                yield text
        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail

    async def wait(self) -> int:
        return await self._proc.wait()

    def terminate(self) -> bool:
        if self._proc.returncode is not None:
            return False
        try:
            self._proc.send_signal(signal.SIGTERM)
            return True
        except ProcessLookupError:
            return False


class CommandRunner:
    async def spawn(
        self,
        command: str,
        args: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessHandle:
        """
        프로세스를 띄우고 바로 핸들을 돌려준다.
        실행 자체가 불가능하면 exit code 대신 LaunchError 를 던진다.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=cwd,
                env=build_env(env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            logger.warning("launch failed: %s (%s)", format_command(command, args), e)
            raise LaunchError(command, args, cwd, e) from e
        logger.debug("spawned pid=%s: %s", proc.pid, format_command(command, args))
        return ProcessHandle(proc, command, list(args))

    async def capture(
        self,
        command: str,
        args: List[str],
        cwd: Optional[str] = None,
    ) -> Tuple[int, str]:
        """짧은 조회용 명령 (git rev-parse 등). stdout 만 모아서 돌려준다."""
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise LaunchError(command, args, cwd, e) from e
        out, _ = await proc.communicate()
        return proc.returncode, out.decode(errors="replace")
