"""
Shared test fixtures.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core import deps
from app.main import app
from app.services.broadcaster import Broadcaster
from app.services.installer import FallbackInstaller
from app.services.registry import ProcessRegistry
from app.services.runner import RunnerService
from app.services.updater import Updater


@pytest.fixture
def registry() -> ProcessRegistry:
    return ProcessRegistry(max_lines=1000, retention_sec=3600, max_runs=50)


@pytest.fixture
def broadcaster(registry: ProcessRegistry) -> Broadcaster:
    return Broadcaster(registry)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def service(registry: ProcessRegistry, workspace: Path) -> RunnerService:
    return RunnerService(
        registry,
        installer=FallbackInstaller(),
        updater=Updater(default_branch="main", strict_branch=False),
        workspace_root=str(workspace),
        project_prefix="sentra-",
    )


@pytest_asyncio.fixture
async def async_client(registry: ProcessRegistry, broadcaster: Broadcaster, service: RunnerService):
    app.dependency_overrides[deps.get_registry] = lambda: registry
    app.dependency_overrides[deps.get_broadcaster] = lambda: broadcaster
    app.dependency_overrides[deps.get_runner_service] = lambda: service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
    await registry.shutdown()
