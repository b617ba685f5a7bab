# app/routers/scripts.py
from __future__ import annotations
from typing import Optional
from fastapi import APIRouter, Depends, Header, Path, Query
from app.core.deps import get_broadcaster, get_runner_service
from app.models.run_models import InstallOptions, RunOut, UpdateOptions
from app.routers.runs import open_stream
from app.services.broadcaster import Broadcaster
from app.services.runner import RunnerService

router = APIRouter(prefix="/scripts")

@router.post("/install")
async def start_install(opts: InstallOptions, service: RunnerService = Depends(get_runner_service)):
    """
    의존성 설치 operation 시작. 진행 상황은 /scripts/stream/{run_id} 로 본다.
    """
    rec = service.start_install(opts)
    return {"run": RunOut.from_record(rec).model_dump()}

@router.post("/update")
async def start_update(opts: UpdateOptions, service: RunnerService = Depends(get_runner_service)):
    """
    git 업데이트 operation 시작.
    mode=force 는 reset --hard + clean -fdx 를 실행하므로 커밋하지 않은 변경이 사라진다.
    """
    rec = service.start_update(opts)
    return {"run": RunOut.from_record(rec).model_dump()}

@router.get("/stream/{run_id}")
async def stream(
    run_id: str = Path(...),
    cursor: Optional[int] = Query(None, ge=0),
    last_event_id: Optional[str] = Header(None),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    return open_stream(broadcaster, run_id, cursor, last_event_id)
