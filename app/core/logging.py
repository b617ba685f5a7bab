# app/core/logging.py
from __future__ import annotations
import logging

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """
    루트 로거 설정. uvicorn 이 이미 핸들러를 붙였으면 레벨만 맞춘다.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    else:
        root.setLevel(level.upper())
    logging.getLogger("app").setLevel(level.upper())
