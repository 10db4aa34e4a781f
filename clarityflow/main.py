from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from clarityflow.config import settings
from clarityflow.context import AppContext, build_context
from clarityflow.logging_setup import setup_logging
from clarityflow.notifications.channels import DeliveryError
from clarityflow.routers.achievements import router as achievements_router
from clarityflow.routers.admin import router as admin_router
from clarityflow.routers.notifications import router as notifications_router
from clarityflow.routers.tasks import router as tasks_router
from clarityflow.storage import StoreError
from clarityflow.task_store import TaskNotFoundError

logger = logging.getLogger(__name__)


def create_app(ctx: AppContext | None = None) -> FastAPI:
  if ctx is None:
    setup_logging(log_dir=settings.log_dir, console_level=settings.log_level, file_level="DEBUG")
    ctx = build_context(settings)

  app = FastAPI(title="ClarityFlow API", version=ctx.settings.app_version)
  app.state.ctx = ctx

  @app.exception_handler(TaskNotFoundError)
  async def _task_not_found_handler(_, exc: TaskNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})

  @app.exception_handler(StoreError)
  async def _store_error_handler(_, exc: StoreError) -> JSONResponse:
    logger.error("Store unavailable: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable"})

  @app.exception_handler(DeliveryError)
  async def _delivery_error_handler(_, exc: DeliveryError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})

  app.include_router(tasks_router)
  app.include_router(notifications_router)
  app.include_router(achievements_router)
  app.include_router(admin_router)

  @app.get("/health")
  async def health() -> dict:
    return {"ok": True}

  @app.get("/version")
  async def version() -> dict:
    return {"version": ctx.settings.app_version}

  @app.on_event("startup")
  async def _startup() -> None:
    await ctx.startup()

  @app.on_event("shutdown")
  async def _shutdown() -> None:
    await ctx.shutdown()

  return app


app = create_app()
