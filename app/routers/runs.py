# app/routers/runs.py
from __future__ import annotations
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query
from app.core.deps import get_broadcaster, get_registry
from app.core.errors import InvalidState, NotFound
from app.models.run_models import RunDetail, RunOut
from app.services.broadcaster import Broadcaster
from app.services.registry import ProcessRegistry
from app.utils.sse import event_stream_response

router = APIRouter()


def open_stream(
    broadcaster: Broadcaster,
    run_id: str,
    cursor: Optional[int],
    last_event_id: Optional[str],
):
    """
    cursor 가 없으면 Last-Event-ID(마지막으로 받은 라인 인덱스)부터 다시 보낸다.
    그 라인은 이후 덮어써졌을 수 있으므로 overwrite 로 한 번 더 보낸다.
    """
    resume = False
    if cursor is None and last_event_id and last_event_id.strip().isdigit():
        cursor = int(last_event_id.strip())
        resume = True
    try:
        sub = broadcaster.attach(run_id, from_cursor=cursor, resume=resume)
    except NotFound:
        raise HTTPException(status_code=404, detail="run not found")

    async def gen():
        try:
            async for event in sub:
                yield event
        finally:
            sub.detach()

    return event_stream_response(gen())


@router.get("/runs")
async def list_runs(registry: ProcessRegistry = Depends(get_registry)):
    return {"runs": [RunOut.from_record(r).model_dump() for r in registry.list_runs()]}

@router.get("/runs/{run_id}")
async def get_run(run_id: str = Path(...), registry: ProcessRegistry = Depends(get_registry)):
    try:
        r = registry.get_run(run_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="run not found")
    return {"run": RunDetail.from_record(r).model_dump()}

@router.get("/runs/{run_id}/stream")
async def stream_run(
    run_id: str = Path(...),
    cursor: Optional[int] = Query(None, ge=0, description="이 라인 인덱스부터 리플레이 (기본: 처음부터)"),
    last_event_id: Optional[str] = Header(None),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    return open_stream(broadcaster, run_id, cursor, last_event_id)

@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str = Path(...), registry: ProcessRegistry = Depends(get_registry)):
    try:
        rec = registry.cancel_run(run_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="run not found")
    except InvalidState as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": True, "run": RunOut.from_record(rec).model_dump()}
