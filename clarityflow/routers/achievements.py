from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from clarityflow.context import AppContext
from clarityflow.deps import enforce_rate_limit, get_ctx, get_user_id
from clarityflow.schemas import Achievement, AchievementStats, GoalsIn

router = APIRouter(prefix="/achievements", tags=["achievements"], dependencies=[Depends(enforce_rate_limit)])


@router.get("", response_model=list[Achievement])
async def list_achievements(user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> list[Achievement]:
  return await ctx.achievements.get_achievements(user_id)


@router.get("/recent", response_model=list[Achievement])
async def recent_achievements(
  limit: int = Query(default=5, ge=1, le=50),
  user_id: str = Depends(get_user_id),
  ctx: AppContext = Depends(get_ctx),
) -> list[Achievement]:
  return await ctx.achievements.get_recent(user_id, limit)


@router.get("/stats", response_model=AchievementStats)
async def achievement_stats(user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> AchievementStats:
  return await ctx.achievements.get_stats(user_id)


@router.patch("/goals", response_model=AchievementStats)
async def update_goals(payload: GoalsIn, user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> AchievementStats:
  return await ctx.achievements.set_goals(user_id, weekly=payload.weeklyGoal, monthly=payload.monthlyGoal)
