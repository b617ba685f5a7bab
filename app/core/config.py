# app/core/config.py
from __future__ import annotations
import os
from pydantic import BaseModel
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    APP_NAME: str = os.getenv("APP_NAME", "Workspace Ops Runner")
    APP_VERSION: str = os.getenv("APP_VERSION", "0.1.0")
    ALLOW_ORIGINS: str = os.getenv("ALLOW_ORIGINS", "*")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # 관리 대상 워크스페이스 루트 (git 체크아웃 + 하위 프로젝트들)
    WORKSPACE_ROOT: str = os.getenv("WORKSPACE_ROOT", os.getcwd())
    PROJECT_PREFIX: str = os.getenv("PROJECT_PREFIX", "sentra-")

    # run 보관 정책
    OUTPUT_LOG_MAX_LINES: int = int(os.getenv("OUTPUT_LOG_MAX_LINES", "5000"))
    RUN_RETENTION_SEC: int = int(os.getenv("RUN_RETENTION_SEC", "3600"))
    MAX_RUNS: int = int(os.getenv("MAX_RUNS", "200"))

    # pip 미러 / 공식 인덱스
    PIP_INDEX_URL: str = os.getenv("PIP_INDEX_URL", "")
    PYPI_URL: str = os.getenv("PYPI_URL", "https://pypi.org/simple")

    # 강제 업데이트 시 브랜치 판별 실패하면 사용할 기본 브랜치
    DEFAULT_BRANCH: str = os.getenv("DEFAULT_BRANCH", "main")
    UPDATE_STRICT_BRANCH: bool = _env_bool("UPDATE_STRICT_BRANCH")


settings = Settings()
