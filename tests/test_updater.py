"""Repository updater tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

from app.core.errors import LaunchError, NonZeroExit, UpdateAborted
from app.models.run_models import RunRecord
from app.services.updater import FORCE_WARNING, Updater, read_head_ref

pytestmark = pytest.mark.asyncio


class FakeGit:
    """git 호출을 기록. fail 에 든 서브커맨드(예: 'pull --ff-only')는 NonZeroExit."""

    def __init__(
        self,
        fail: Set[str] = frozenset(),
        rev_parse: Optional[Tuple[int, str]] = (0, "main\n"),
        delay: float = 0,
    ):
        self.fail = set(fail)
        self.rev_parse = rev_parse
        self.delay = delay
        self.calls: List[str] = []
        self.lines: List[str] = []
        self.active: Dict[str, int] = {}
        self.max_active: Dict[str, int] = {}
        self.max_total = 0

    def log(self, text: str) -> None:
        self.lines.append(text)

    async def run_step(
        self,
        label: str,
        command: str,
        args: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> RunRecord:
        joined = " ".join(args)
        self.calls.append(joined)
        self.active[cwd] = self.active.get(cwd, 0) + 1
        self.max_active[cwd] = max(self.max_active.get(cwd, 0), self.active[cwd])
        self.max_total = max(self.max_total, sum(self.active.values()))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active[cwd] -= 1
        if any(joined.startswith(f) for f in self.fail):
            raise NonZeroExit(command, args, cwd, 1)
        return RunRecord(run_id="r", label=label, command=command, args=list(args), cwd=cwd)

    async def capture(self, command: str, args: List[str], cwd: Optional[str] = None) -> Tuple[int, str]:
        if self.rev_parse is None:
            raise LaunchError(command, args, cwd, FileNotFoundError(command))
        return self.rev_parse


def make_repo(root: Path, head: str = "ref: refs/heads/develop\n") -> Path:
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text(head, encoding="utf-8")
    return root


async def test_safe_update_fast_forwards_when_possible(tmp_path: Path) -> None:
    git = FakeGit()
    await Updater("main", False).update_repo(git, make_repo(tmp_path), "safe")
    assert git.calls == ["fetch --all --prune", "pull --ff-only"]


async def test_safe_update_falls_back_to_rebase(tmp_path: Path) -> None:
    git = FakeGit(fail={"pull --ff-only"})
    await Updater("main", False).update_repo(git, make_repo(tmp_path), "safe")
    assert git.calls == ["fetch --all --prune", "pull --ff-only", "pull --rebase --autostash"]
    assert any("--rebase" in line for line in git.lines)


async def test_safe_update_aborts_when_rebase_also_fails(tmp_path: Path) -> None:
    git = FakeGit(fail={"pull"})
    with pytest.raises(UpdateAborted) as exc:
        await Updater("main", False).update_repo(git, make_repo(tmp_path), "safe")
    assert exc.value.step == "pull-rebase"
    assert git.calls[-1] == "pull --rebase --autostash"


async def test_fetch_failure_stops_remaining_steps(tmp_path: Path) -> None:
    git = FakeGit(fail={"fetch"})
    with pytest.raises(UpdateAborted) as exc:
        await Updater("main", False).update_repo(git, make_repo(tmp_path), "force")
    assert exc.value.step == "fetch"
    assert git.calls == ["fetch --all --prune"]


async def test_force_update_resets_to_remote_branch_and_cleans(tmp_path: Path) -> None:
    git = FakeGit(rev_parse=(0, "release/2.0\n"))
    await Updater("main", False).update_repo(git, make_repo(tmp_path), "force")
    assert git.calls == ["fetch --all --prune", "reset --hard origin/release/2.0", "clean -fdx"]
    assert not any(c.startswith("pull") for c in git.calls)
    assert git.lines[0] == FORCE_WARNING
    assert "[branch] release/2.0 (from git rev-parse)" in git.lines


async def test_branch_falls_back_to_head_file_when_git_query_fails(tmp_path: Path) -> None:
    git = FakeGit(rev_parse=None)
    branch = await Updater("main", False).resolve_branch(git, make_repo(tmp_path))
    assert branch == "develop"
    assert git.lines == ["[branch] develop (from .git/HEAD)"]


async def test_detached_head_uses_head_file_then_default(tmp_path: Path) -> None:
    git = FakeGit(rev_parse=(0, "HEAD\n"))
    repo = make_repo(tmp_path, head="3f2c1e0d9b8a7f6e5d4c3b2a1f0e9d8c7b6a5f4e\n")
    branch = await Updater("trunk", False).resolve_branch(git, repo)
    assert branch == "trunk"
    assert any(line.startswith("[WARN]") and "trunk" in line for line in git.lines)


async def test_strict_mode_refuses_to_guess_branch(tmp_path: Path) -> None:
    git = FakeGit(rev_parse=(128, ""))
    repo = make_repo(tmp_path, head="deadbeef\n")
    with pytest.raises(UpdateAborted) as exc:
        await Updater("main", True).update_repo(git, repo, "force")
    assert exc.value.step == "resolve-branch"
    assert git.calls == []


async def test_missing_repository_is_reported(tmp_path: Path) -> None:
    git = FakeGit()
    with pytest.raises(UpdateAborted) as exc:
        await Updater("main", False).update_repo(git, tmp_path, "safe")
    assert exc.value.step == "detect-repository"
    assert git.calls == []


async def test_head_ref_follows_gitdir_file(tmp_path: Path) -> None:
    real = tmp_path / "modules" / "sub"
    real.mkdir(parents=True)
    (real / "HEAD").write_text("ref: refs/heads/feature/x\n", encoding="utf-8")
    checkout = tmp_path / "checkout"
    checkout.mkdir()
    (checkout / ".git").write_text("gitdir: ../modules/sub\n", encoding="utf-8")

    assert read_head_ref(checkout) == "feature/x"


async def test_head_ref_accepts_remote_tracking_ref(tmp_path: Path) -> None:
    repo = make_repo(tmp_path, head="ref: refs/remotes/origin/main\n")
    assert read_head_ref(repo) == "main"
    assert read_head_ref(tmp_path / "nowhere") is None


async def test_updates_of_same_repository_are_serialized(tmp_path: Path) -> None:
    (tmp_path / "a").mkdir()
    (tmp_path / "b").mkdir()
    repo = make_repo(tmp_path / "a")
    other = make_repo(tmp_path / "b")
    updater = Updater("main", False)

    same = FakeGit(delay=0.02)
    await asyncio.gather(
        updater.update_repo(same, repo, "force"),
        updater.update_repo(same, repo, "force"),
    )
    assert same.max_active[str(repo)] == 1
    assert same.calls.count("clean -fdx") == 2
    assert any(line.startswith("waiting for another update") for line in same.lines)

    both = FakeGit(delay=0.02)
    await asyncio.gather(
        updater.update_repo(both, repo, "safe"),
        updater.update_repo(both, other, "safe"),
    )
    assert both.max_active[str(repo)] == 1
    assert both.max_active[str(other)] == 1
    assert both.max_total == 2
    assert len(both.calls) == 4
