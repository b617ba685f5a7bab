# app/core/deps.py
from __future__ import annotations

from app.services.broadcaster import Broadcaster, broadcaster
from app.services.registry import ProcessRegistry, process_registry
from app.services.runner import RunnerService, runner_service


def get_registry() -> ProcessRegistry:
    return process_registry


def get_broadcaster() -> Broadcaster:
    return broadcaster


def get_runner_service() -> RunnerService:
    return runner_service
