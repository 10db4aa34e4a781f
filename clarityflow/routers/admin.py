from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from clarityflow.context import AppContext
from clarityflow.deps import enforce_rate_limit, get_ctx
from clarityflow.schemas import DeadlineMonitorSettingsIn, DeadlineMonitorStatusOut, RateLimitOut, ScanReportOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(enforce_rate_limit)])


@router.post("/deadlines/scan", response_model=ScanReportOut)
async def scan_deadlines(ctx: AppContext = Depends(get_ctx)) -> ScanReportOut:
  return await ctx.deadlines.perform_manual_check()


@router.get("/deadlines/status", response_model=DeadlineMonitorStatusOut)
async def deadline_status(ctx: AppContext = Depends(get_ctx)) -> DeadlineMonitorStatusOut:
  return await ctx.deadlines.get_status()


@router.post("/deadlines/start", response_model=DeadlineMonitorStatusOut)
async def start_deadline_monitor(ctx: AppContext = Depends(get_ctx)) -> DeadlineMonitorStatusOut:
  return await ctx.deadlines.start()


@router.post("/deadlines/stop", response_model=DeadlineMonitorStatusOut)
async def stop_deadline_monitor(ctx: AppContext = Depends(get_ctx)) -> DeadlineMonitorStatusOut:
  return await ctx.deadlines.stop()


@router.patch("/deadlines/settings", response_model=DeadlineMonitorStatusOut)
async def update_deadline_settings(payload: DeadlineMonitorSettingsIn, ctx: AppContext = Depends(get_ctx)) -> DeadlineMonitorStatusOut:
  return await ctx.deadlines.update_settings(payload)


@router.get("/rate-limits/{credential}", response_model=RateLimitOut)
async def rate_limit_status(credential: str, ctx: AppContext = Depends(get_ctx)) -> RateLimitOut:
  info = ctx.rate_limiter.status(credential, int(ctx.settings.rate_limit_per_hour))
  return RateLimitOut(credential=credential, limit=info.limit, remaining=info.remaining, resetTime=info.reset_time, blocked=info.blocked)


@router.post("/rate-limits/{credential}/reset")
async def reset_rate_limit(credential: str, ctx: AppContext = Depends(get_ctx)) -> dict:
  cleared = ctx.rate_limiter.reset(credential)
  logger.info("Rate limit window reset for %s (cleared=%s)", credential.split(":", 1)[0], cleared)
  return {"ok": True, "cleared": cleared}
