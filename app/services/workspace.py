# app/services/workspace.py
from __future__ import annotations
import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from app.core.errors import ToolchainNotFound
from app.utils.loader import package_managers, python_candidates

SKIP_DIRS = {"node_modules", ".git", ".venv", "__pycache__"}


@dataclass
class Projects:
    node: List[Path]
    python: List[Path]
    git: List[Path]


def is_node_project(path: Path) -> bool:
    return (path / "package.json").is_file()


def is_node_installed(path: Path) -> bool:
    return (path / "node_modules").exists()


def is_python_project(path: Path) -> bool:
    return (path / "requirements.txt").is_file()


def is_git_repo(path: Path) -> bool:
    return (path / ".git").exists()


def _children(path: Path) -> List[Path]:
    try:
        return sorted(p for p in path.iterdir() if p.is_dir() and p.name not in SKIP_DIRS and not p.name.startswith("."))
    except OSError:
        return []


def discover_projects(root: str | Path, prefix: str = "sentra-") -> Projects:
    """
    루트 + prefix 로 시작하는 하위 디렉터리 + 그 바로 아래 디렉터리까지 스캔.
    순서는 항상 같다 (루트 먼저, 이후 이름순).
    """
    root = Path(root).resolve()
    candidates: List[Path] = [root]
    for sub in _children(root):
        if not sub.name.startswith(prefix):
            continue
        candidates.append(sub)
        candidates.extend(_children(sub))

    seen: Dict[Path, None] = {}
    for c in candidates:
        seen.setdefault(c, None)
    ordered = list(seen)
    return Projects(
        node=[p for p in ordered if is_node_project(p)],
        python=[p for p in ordered if is_python_project(p)],
        git=[p for p in ordered if p != root and is_git_repo(p)],
    )


def relative_label(path: Path, root: str | Path) -> str:
    try:
        rel = os.path.relpath(path, Path(root).resolve())
    except ValueError:
        return str(path)
    return "." if rel == "." else rel


def has_tool(name: str) -> bool:
    return shutil.which(name) is not None


def choose_package_manager(preferred: str = "auto") -> Dict[str, object]:
    """
    explicit 이면 PATH 에 반드시 있어야 하고, auto 면 카탈로그 순서대로 첫 번째.
    """
    managers = package_managers()
    if preferred and preferred != "auto":
        if not has_tool(preferred):
            raise ToolchainNotFound(f"Package manager {preferred} not found in PATH")
        for pm in managers:
            if pm.get("name") == preferred:
                return pm
        return {"name": preferred, "install_args": ["install"]}
    for pm in managers:
        if has_tool(str(pm.get("name"))):
            return pm
    names = ", ".join(str(pm.get("name")) for pm in managers)
    raise ToolchainNotFound(f"No package manager found ({names}). Install one or pass package_manager.")


def detect_python() -> Optional[List[str]]:
    for cand in python_candidates():
        exe = shutil.which(cand[0])
        if exe:
            return [exe, *cand[1:]]
    # 서비스 자신을 돌리는 인터프리터는 항상 존재
    return [sys.executable] if sys.executable else None


def venv_python(venv_dir: Path) -> Path:
    if sys.platform == "win32":
        return venv_dir / "Scripts" / "python.exe"
    return venv_dir / "bin" / "python"
