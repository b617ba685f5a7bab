# app/services/runner.py
from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.core.config import settings
from app.core.errors import Cancelled, LaunchError, NonZeroExit, OpsError, ToolchainNotFound
from app.models.run_models import InstallOptions, RunRecord, UpdateOptions
from app.services.installer import (
    FallbackInstaller,
    installer as default_installer,
    node_install_attempt,
    pip_requirement_attempts,
    venv_attempts,
)
from app.services.registry import OperationContext, ProcessRegistry, process_registry
from app.services.updater import Updater, updater as default_updater
from app.services.workspace import (
    choose_package_manager,
    detect_python,
    discover_projects,
    has_tool,
    is_node_installed,
    relative_label,
    venv_python,
)
from app.utils.loader import get_command, list_commands

logger = logging.getLogger(__name__)


class RunnerService:
    """
    제어 요청 → run 생성. 단일 커맨드는 registry 로 바로, 설치/업데이트는
    operation run 으로 묶어서 실행한다.
    """

    def __init__(
        self,
        registry: ProcessRegistry,
        installer: Optional[FallbackInstaller] = None,
        updater: Optional[Updater] = None,
        workspace_root: Optional[str] = None,
        project_prefix: Optional[str] = None,
    ):
        self.registry = registry
        self.installer = installer or default_installer
        self.updater = updater or default_updater
        self.workspace_root = Path(workspace_root or settings.WORKSPACE_ROOT).resolve()
        self.project_prefix = project_prefix or settings.PROJECT_PREFIX

    def _label(self, path: Path) -> str:
        return relative_label(path, self.workspace_root)

    # ──────────────────────────────────────────────────────────
    # 이름으로 실행하는 커맨드
    # ──────────────────────────────────────────────────────────
    def list_commands(self) -> List[Dict[str, Any]]:
        return list_commands()

    async def run_command(self, name: str) -> RunRecord:
        item = get_command(name)
        if not item:
            raise ValueError(f"unknown command: {name}")
        cmd = [str(x) for x in item["cmd"]]
        return await self.registry.create_run(cmd[0], cmd[1:], cwd=str(self.workspace_root), label=name)

    # ──────────────────────────────────────────────────────────
    # 설치
    # ──────────────────────────────────────────────────────────
    def start_install(self, opts: InstallOptions) -> RunRecord:
        label = f"install {opts.target}" + (" (dry-run)" if opts.dry_run else "")
        return self.registry.start_operation(label, lambda ctx: self.install_flow(ctx, opts))

    async def install_flow(self, ctx: OperationContext, opts: InstallOptions) -> Dict[str, Any]:
        projects = discover_projects(self.workspace_root, self.project_prefix)
        result: Dict[str, Any] = {"status": "success", "dry_run": opts.dry_run, "node": [], "python": []}
        if opts.target in ("all", "node"):
            pm = choose_package_manager(opts.package_manager)
            ctx.step("Node.js dependencies")
            for proj in projects.node:
                result["node"].append(await self.install_node(ctx, proj, pm, opts))
        if opts.target in ("all", "python"):
            ctx.step("Python environment")
            if not projects.python:
                ctx.log("[Python] no project with requirements.txt found, skipped")
            for proj in projects.python:
                result["python"].append(await self.install_python(ctx, proj, opts))
        ctx.log("Setup completed successfully.")
        return result

    async def install_node(
        self, ctx: OperationContext, proj: Path, pm: Dict[str, Any], opts: InstallOptions
    ) -> Dict[str, Any]:
        label = self._label(proj)
        if is_node_installed(proj) and not opts.force:
            ctx.log(f"[Node] Skipped (already installed) @ {label}")
            return {"project": label, "skipped": True}
        ctx.log(f"Installing dependencies for {label}...")
        attempt = node_install_attempt(pm, str(proj))
        outcome = await self.installer.install(ctx, f"node:{proj}", [attempt], dry_run=opts.dry_run)
        return {"project": label, "skipped": False, **outcome.to_dict()}

    async def install_python(self, ctx: OperationContext, proj: Path, opts: InstallOptions) -> Dict[str, Any]:
        label = self._label(proj)
        venv_dir = proj / ".venv"
        uv = has_tool("uv")
        report: Dict[str, Any] = {"project": label, "venv": None, "requirements": None}

        if opts.force or not venv_dir.exists():
            ctx.log(f"Creating virtual environment @ {label}...")
            attempts = venv_attempts(str(proj), opts.python_tool, uv, detect_python(), exists=venv_dir.exists())
            outcome = await self.installer.install(ctx, f"venv:{proj}", attempts, dry_run=opts.dry_run)
            report["venv"] = outcome.to_dict()

        vpy = venv_python(venv_dir)
        if not opts.dry_run and not vpy.exists():
            raise ToolchainNotFound(f"Virtualenv python not found at {vpy}. Creation may have failed.")

        index_url = opts.pip_index_url or settings.PIP_INDEX_URL or None
        attempts = pip_requirement_attempts(str(vpy), str(proj), index_url, settings.PYPI_URL, uv)

        if not opts.dry_run:
            # pip 업그레이드 실패는 치명적이지 않다
            try:
                await ctx.run_step(
                    "pip upgrade", str(vpy),
                    ["-m", "pip", "install", "--upgrade", "pip", "-i", settings.PYPI_URL],
                    cwd=str(proj),
                )
            except (LaunchError, NonZeroExit) as e:
                logger.info("pip upgrade failed in %s: %s", label, e)
                ctx.log("[WARN] pip upgrade failed, continuing")
            ctx.log(f"Installing requirements for {label}...")
        outcome = await self.installer.install(ctx, f"requirements:{proj}", attempts, dry_run=opts.dry_run)
        report["requirements"] = outcome.to_dict()
        return report

    # ──────────────────────────────────────────────────────────
    # 업데이트
    # ──────────────────────────────────────────────────────────
    def start_update(self, opts: UpdateOptions) -> RunRecord:
        label = f"update {opts.mode} ({opts.scope})"
        return self.registry.start_operation(label, lambda ctx: self.update_flow(ctx, opts))

    async def update_flow(self, ctx: OperationContext, opts: UpdateOptions) -> Dict[str, Any]:
        if opts.install_after in ("dependenciesOnly", "all"):
            # Node 설치가 포함되면 패키지 매니저부터 확인 (없으면 git 을 건드리기 전에 실패)
            choose_package_manager(opts.package_manager)

        repos = [self.workspace_root]
        if opts.scope == "all":
            repos += discover_projects(self.workspace_root, self.project_prefix).git

        updated: List[str] = []
        for repo in repos:
            ctx.step(f"{'Force' if opts.mode == 'force' else 'Safe'} update @ {self._label(repo)}")
            await self.updater.update_repo(ctx, repo, opts.mode)
            updated.append(self._label(repo))

        result: Dict[str, Any] = {"status": "success", "mode": opts.mode, "updated": updated, "install": None}
        if opts.install_after == "none":
            return result

        targets = {"dependenciesOnly": "node", "python": "python", "all": "all"}
        install_opts = InstallOptions(
            target=targets[opts.install_after],
            force=True,
            package_manager=opts.package_manager,
        )
        try:
            result["install"] = await self.install_flow(ctx, install_opts)
        except Cancelled:
            raise
        except OpsError as e:
            logger.warning("re-install after update failed: %s", e)
            ctx.log(f"[WARN] repository updated but re-install failed: {e}")
            result["status"] = "partial"
            result["install_error"] = str(e)
        return result


# 모듈 전역 서비스 싱글톤
runner_service = RunnerService(process_registry)
