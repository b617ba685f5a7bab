"""
Small helpers shared by test modules.
"""

from __future__ import annotations

import asyncio
import sys
from typing import List, Tuple

from app.services.registry import ProcessRegistry


def py(code: str) -> Tuple[str, List[str]]:
    """(command, args) that runs a python snippet with the test interpreter."""
    return sys.executable, ["-u", "-c", code]


async def wait_for_lines(registry: ProcessRegistry, run_id: str, count: int, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(registry.get_run(run_id).output) < count:
        if loop.time() > deadline:
            raise AssertionError(f"run {run_id} never reached {count} lines")
        await asyncio.sleep(0.01)
