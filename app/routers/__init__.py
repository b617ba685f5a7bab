# app/routers/__init__.py
from fastapi import APIRouter
from .health import router as health_router
from .commands import router as commands_router
from .runs import router as runs_router
from .scripts import router as scripts_router

api_router = APIRouter()
api_router.include_router(commands_router, tags=["commands"])
api_router.include_router(runs_router, tags=["runs"])
api_router.include_router(scripts_router, tags=["scripts"])
