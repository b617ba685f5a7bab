# app/routers/commands.py
from __future__ import annotations
from fastapi import APIRouter, Depends, HTTPException, Path
from app.core.deps import get_runner_service
from app.core.errors import LaunchError
from app.models.run_models import CommandItem, RunOut
from app.services.runner import RunnerService

router = APIRouter()

@router.get("/commands")
async def command_list(service: RunnerService = Depends(get_runner_service)):
    items = []
    for item in service.list_commands():
        items.append(CommandItem(
            name=item["name"],
            description=item.get("description") or f"{item['name']} runnable command",
            cmd=[str(x) for x in item["cmd"]],
        ).model_dump())
    return {"items": items}

@router.post("/commands/{name}/run")
async def run_command(
    name: str = Path(..., description="커맨드 이름 (commands 목록 참고)"),
    service: RunnerService = Depends(get_runner_service),
):
    try:
        rec = await service.run_command(name)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LaunchError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "run_id": e.run_id})
    return {"run": RunOut.from_record(rec).model_dump()}
