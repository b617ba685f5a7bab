# app/services/updater.py
from __future__ import annotations
import asyncio
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

from app.core.config import settings
from app.core.errors import LaunchError, NonZeroExit, UpdateAborted
from app.models.run_models import RunRecord
from app.services.workspace import is_git_repo

logger = logging.getLogger(__name__)

HEAD_REF_RE = re.compile(r"refs/(heads|remotes/origin)/([\w\-./]+)")

FORCE_WARNING = (
    "[WARN] force mode runs 'git reset --hard' and 'git clean -fdx': "
    "uncommitted changes and untracked/ignored files are discarded and cannot be recovered"
)


class GitStepRunner(Protocol):
    def log(self, text: str) -> None: ...

    async def run_step(
        self,
        label: str,
        command: str,
        args: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> RunRecord: ...

    async def capture(self, command: str, args: List[str], cwd: Optional[str] = None) -> Tuple[int, str]: ...


def read_head_ref(repo: Path) -> Optional[str]:
    """
    .git/HEAD 에서 브랜치명 추출. .git 이 파일(worktree/submodule)이면 gitdir 을 따라간다.
    """
    git = repo / ".git"
    try:
        if git.is_file():
            content = git.read_text(encoding="utf-8").strip()
            if content.startswith("gitdir:"):
                git = (repo / content.split(":", 1)[1].strip()).resolve()
        head = (git / "HEAD").read_text(encoding="utf-8")
    except OSError:
        return None
    m = HEAD_REF_RE.search(head)
    return m.group(2) if m else None


class Updater:
    """
    safe : fetch → pull --ff-only → (실패 시) pull --rebase --autostash
    force: 브랜치 판별 → fetch → reset --hard origin/<branch> → clean -fdx

    어느 단계든 실패하면 남은 단계는 실행하지 않고 UpdateAborted.
    롤백은 하지 않는다. force 모드는 되돌릴 수 없다.
    """

    def __init__(self, default_branch: Optional[str] = None, strict_branch: Optional[bool] = None):
        self.default_branch = default_branch or settings.DEFAULT_BRANCH
        self.strict_branch = settings.UPDATE_STRICT_BRANCH if strict_branch is None else strict_branch
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, repo: Path) -> asyncio.Lock:
        key = str(repo.resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _step(self, ctx: GitStepRunner, step: str, args: List[str], repo: Path) -> RunRecord:
        try:
            return await ctx.run_step(f"git {step}", "git", args, cwd=str(repo))
        except (LaunchError, NonZeroExit) as e:
            raise UpdateAborted(step, e) from e

    # ──────────────────────────────────────────────────────────
    # 브랜치 판별: git 조회 → HEAD 파일 → 기본값
    # ──────────────────────────────────────────────────────────
    async def branch_from_git(self, ctx: GitStepRunner, repo: Path) -> Optional[str]:
        try:
            rc, out = await ctx.capture("git", ["rev-parse", "--abbrev-ref", "HEAD"], cwd=str(repo))
        except LaunchError:
            return None
        out = out.strip()
        if rc == 0 and out and out != "HEAD":
            return out
        return None

    async def branch_from_head_file(self, ctx: GitStepRunner, repo: Path) -> Optional[str]:
        return read_head_ref(repo)

    async def resolve_branch(self, ctx: GitStepRunner, repo: Path) -> str:
        for source, probe in (
            ("git rev-parse", self.branch_from_git),
            (".git/HEAD", self.branch_from_head_file),
        ):
            branch = await probe(ctx, repo)
            if branch:
                ctx.log(f"[branch] {branch} (from {source})")
                return branch
        if self.strict_branch:
            raise UpdateAborted("resolve-branch", message=f"could not determine current branch of {repo}")
        logger.warning("branch detection failed for %s, falling back to %s", repo, self.default_branch)
        ctx.log(
            f"[WARN] could not determine current branch, falling back to '{self.default_branch}'. "
            f"Set DEFAULT_BRANCH or UPDATE_STRICT_BRANCH=true if this is wrong."
        )
        return self.default_branch

    # ──────────────────────────────────────────────────────────
    # 모드별 시퀀스
    # ──────────────────────────────────────────────────────────
    async def safe_update(self, ctx: GitStepRunner, repo: Path) -> None:
        await self._step(ctx, "fetch", ["fetch", "--all", "--prune"], repo)
        try:
            await ctx.run_step("git pull --ff-only", "git", ["pull", "--ff-only"], cwd=str(repo))
        except (LaunchError, NonZeroExit) as e:
            logger.info("fast-forward pull failed in %s (%s), retrying with rebase", repo, e)
            ctx.log("fast-forward not possible, retrying with pull --rebase --autostash")
            await self._step(ctx, "pull-rebase", ["pull", "--rebase", "--autostash"], repo)

    async def force_update(self, ctx: GitStepRunner, repo: Path) -> str:
        branch = await self.resolve_branch(ctx, repo)
        await self._step(ctx, "fetch", ["fetch", "--all", "--prune"], repo)
        await self._step(ctx, "reset", ["reset", "--hard", f"origin/{branch}"], repo)
        await self._step(ctx, "clean", ["clean", "-fdx"], repo)
        return branch

    async def update_repo(self, ctx: GitStepRunner, repo: Path, mode: str) -> None:
        if not is_git_repo(repo):
            raise UpdateAborted("detect-repository", message=f"no git repository found at {repo}")
        lock = self._lock(repo)
        if lock.locked():
            ctx.log(f"waiting for another update of {repo} to finish...")
        # 같은 저장소에 대한 git 단계는 한 번에 하나의 업데이트만
        async with lock:
            if mode == "force":
                ctx.log(FORCE_WARNING)
                await self.force_update(ctx, repo)
            else:
                await self.safe_update(ctx, repo)


updater = Updater()
