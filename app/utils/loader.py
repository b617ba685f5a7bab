# =========================
# file: app/utils/loader.py
# =========================
from __future__ import annotations
import os
from typing import Any, Dict, List, Optional
import yaml

TOOLCHAIN_FILE = "toolchain.yaml"

_TOOLCHAIN: Optional[Dict[str, Any]] = None

def toolchain_path() -> str:
    app_dir = os.path.dirname(os.path.dirname(__file__))
    return os.path.join(app_dir, "data", TOOLCHAIN_FILE)

def load_toolchain() -> Dict[str, Any]:
    """
    패키지 매니저 / 파이썬 후보 / pip 인자 / 이름 있는 커맨드 목록.
    한 번 읽은 뒤에는 프로세스 수명 동안 캐시.
    """
    global _TOOLCHAIN
    if _TOOLCHAIN is None:
        with open(toolchain_path(), "r", encoding="utf-8") as fp:
            raw = yaml.safe_load(fp) or {}
        commands = [c for c in (raw.get("commands") or []) if c.get("name") and c.get("cmd")]
        raw["commands"] = commands
        raw["by_name"] = {str(c["name"]).strip(): c for c in commands}
        _TOOLCHAIN = raw
    return _TOOLCHAIN

def list_commands() -> List[Dict[str, Any]]:
    return load_toolchain()["commands"]

def get_command(name: str) -> Optional[Dict[str, Any]]:
    return load_toolchain()["by_name"].get(name.strip())

def package_managers() -> List[Dict[str, Any]]:
    return load_toolchain().get("package_managers") or []

def python_candidates() -> List[List[str]]:
    return [[str(x) for x in cand] for cand in (load_toolchain().get("python_candidates") or [])]

def pip_base_args() -> List[str]:
    pip = load_toolchain().get("pip") or {}
    return [str(x) for x in (pip.get("base_args") or [])]
