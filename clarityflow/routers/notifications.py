from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from clarityflow.context import AppContext
from clarityflow.deps import enforce_rate_limit, get_ctx, get_user_id
from clarityflow.notifications.channels import DeliveryError
from clarityflow.schemas import (
  MarkReadIn,
  NotificationRecord,
  NotificationSendOut,
  NotificationSettings,
  NotificationSettingsPatch,
  NotificationStats,
)

router = APIRouter(prefix="/notifications", tags=["notifications"], dependencies=[Depends(enforce_rate_limit)])


@router.get("/settings", response_model=NotificationSettings)
async def get_notification_settings(user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> NotificationSettings:
  return await ctx.notification_settings.get(user_id)


@router.patch("/settings", response_model=NotificationSettings)
async def update_notification_settings(
  payload: NotificationSettingsPatch,
  user_id: str = Depends(get_user_id),
  ctx: AppContext = Depends(get_ctx),
) -> NotificationSettings:
  return await ctx.notification_settings.update(user_id, payload)


@router.post("/settings/reset", response_model=NotificationSettings)
async def reset_notification_settings(user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> NotificationSettings:
  return await ctx.notification_settings.reset(user_id)


@router.get("", response_model=list[NotificationRecord])
async def list_notifications(
  unread_only: bool = Query(default=False, alias="unreadOnly"),
  limit: int = Query(default=50, ge=1, le=200),
  user_id: str = Depends(get_user_id),
  ctx: AppContext = Depends(get_ctx),
) -> list[NotificationRecord]:
  return await ctx.feed.list(user_id, unread_only=unread_only, limit=limit)


@router.get("/unread-count")
async def unread_count(user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> dict:
  return {"count": await ctx.feed.unread_count(user_id)}


@router.post("/mark-read")
async def mark_read(payload: MarkReadIn, user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> dict:
  return {"ok": True, "updated": await ctx.feed.mark_read(user_id, payload.ids)}


@router.post("/mark-all-read")
async def mark_all_read(user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> dict:
  return {"ok": True, "updated": await ctx.feed.mark_all_read(user_id)}


@router.get("/stats", response_model=NotificationStats)
async def notification_stats(user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> NotificationStats:
  return await ctx.stats.get(user_id)


@router.post("/test", response_model=NotificationSendOut)
async def send_test_notification(user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> NotificationSendOut:
  try:
    record = await ctx.dispatcher.send_test_notification(user_id)
  except DeliveryError as e:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
  return NotificationSendOut(ok=True, id=record.id)


@router.delete("/{notification_id}")
async def remove_notification(notification_id: str, user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> dict:
  if not await ctx.feed.remove(user_id, notification_id):
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
  return {"ok": True}


@router.delete("")
async def clear_notifications(user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> dict:
  await ctx.feed.clear(user_id)
  return {"ok": True}
