from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status

from clarityflow.context import AppContext
from clarityflow.deps import enforce_rate_limit, get_ctx, get_user_id
from clarityflow.schemas import Achievement, TaskCompleteOut, TaskCreateIn, TaskOut, TaskUpdateIn
from clarityflow.storage import StoreError
from clarityflow.task_store import TaskChange

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"], dependencies=[Depends(enforce_rate_limit)])


async def _arm_notifications(ctx: AppContext, user_id: str, task: TaskOut) -> None:
  if task.completed or task.dueDate is None:
    return
  try:
    await ctx.dispatcher.schedule_task_reminder(user_id, task)
    await ctx.dispatcher.schedule_deadline_alert(user_id, task)
  except Exception:
    logger.exception("Failed to arm notifications for task %s", task.id)


async def _record_completion(ctx: AppContext, user_id: str, task: TaskOut) -> list[Achievement]:
  try:
    return await ctx.achievements.process_completion(user_id, task)
  except StoreError:
    logger.exception("Could not record completion of task %s; marking it open again", task.id)
    reverted = await ctx.tasks.update_task(user_id, task.id, TaskUpdateIn(completed=False))
    await _arm_notifications(ctx, user_id, reverted.after)
    raise


async def _after_change(ctx: AppContext, user_id: str, change: TaskChange) -> list[Achievement]:
  if change.completed_now:
    await ctx.dispatcher.cancel_task_notifications(change.after.id)
    return await _record_completion(ctx, user_id, change.after)
  if change.after.completed:
    return []
  if change.before.dueDate != change.after.dueDate or change.before.completed:
    await ctx.dispatcher.cancel_task_notifications(change.after.id)
    await _arm_notifications(ctx, user_id, change.after)
  return []


@router.get("", response_model=list[TaskOut])
async def list_tasks(user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> list[TaskOut]:
  return await ctx.tasks.get_tasks(user_id)


@router.post("", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
async def create_task(
  payload: TaskCreateIn,
  user_id: str = Depends(get_user_id),
  ctx: AppContext = Depends(get_ctx),
) -> TaskOut:
  task = await ctx.tasks.create_task(user_id, payload)
  await _arm_notifications(ctx, user_id, task)
  return task


@router.get("/{task_id}", response_model=TaskOut)
async def get_task(task_id: str, user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> TaskOut:
  return await ctx.tasks.get_task(user_id, task_id)


@router.patch("/{task_id}", response_model=TaskOut)
async def update_task(
  task_id: str,
  payload: TaskUpdateIn,
  user_id: str = Depends(get_user_id),
  ctx: AppContext = Depends(get_ctx),
) -> TaskOut:
  change = await ctx.tasks.update_task(user_id, task_id, payload)
  await _after_change(ctx, user_id, change)
  return change.after


@router.post("/{task_id}/complete", response_model=TaskCompleteOut)
async def complete_task(task_id: str, user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> TaskCompleteOut:
  change = await ctx.tasks.update_task(user_id, task_id, TaskUpdateIn(completed=True))
  unlocked = await _after_change(ctx, user_id, change)
  return TaskCompleteOut(task=change.after, achievements=unlocked)


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: str, user_id: str = Depends(get_user_id), ctx: AppContext = Depends(get_ctx)) -> None:
  await ctx.tasks.delete_task(user_id, task_id)
  await ctx.dispatcher.cancel_task_notifications(task_id)
