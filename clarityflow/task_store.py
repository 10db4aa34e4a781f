from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clarityflow.clock import Clock, utcnow
from clarityflow.models import Task
from clarityflow.schemas import TaskCreateIn, TaskOut, TaskUpdateIn


class TaskNotFoundError(LookupError):
  def __init__(self, task_id: str) -> None:
    super().__init__(f"Task not found: {task_id}")
    self.task_id = task_id


@dataclass(frozen=True)
class TaskChange:
  before: TaskOut
  after: TaskOut

  @property
  def completed_now(self) -> bool:
    return not self.before.completed and self.after.completed


def _task_out(t: Task) -> TaskOut:
  return TaskOut(
    id=t.id,
    userId=t.user_id,
    title=t.title,
    description=t.description or "",
    quadrant=t.quadrant,
    priority=t.priority,
    dueDate=t.due_date,
    completed=bool(t.completed),
    completedAt=t.completed_at,
    createdAt=t.created_at,
    updatedAt=t.updated_at,
  )


class SqlTaskStore:
  """Task CRUD partitioned by user id."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, clock: Clock = utcnow) -> None:
    self._sessions = session_factory
    self._clock = clock

  async def _get_row(self, db: AsyncSession, user_id: str, task_id: str) -> Task:
    res = await db.execute(select(Task).where(Task.id == task_id, Task.user_id == user_id))
    t = res.scalar_one_or_none()
    if not t:
      raise TaskNotFoundError(task_id)
    return t

  async def get_tasks(self, user_id: str) -> list[TaskOut]:
    async with self._sessions() as db:
      res = await db.execute(select(Task).where(Task.user_id == user_id).order_by(Task.created_at.asc(), Task.id.asc()))
      return [_task_out(t) for t in res.scalars().all()]

  async def get_task(self, user_id: str, task_id: str) -> TaskOut:
    async with self._sessions() as db:
      return _task_out(await self._get_row(db, user_id, task_id))

  async def create_task(self, user_id: str, payload: TaskCreateIn) -> TaskOut:
    now = self._clock()
    t = Task(
      user_id=user_id,
      title=payload.title.strip(),
      description=payload.description,
      quadrant=payload.quadrant,
      priority=payload.priority,
      due_date=payload.dueDate,
      completed=False,
      created_at=now,
      updated_at=now,
    )
    async with self._sessions() as db:
      db.add(t)
      await db.commit()
      await db.refresh(t)
      return _task_out(t)

  async def update_task(self, user_id: str, task_id: str, patch: TaskUpdateIn) -> TaskChange:
    async with self._sessions() as db:
      t = await self._get_row(db, user_id, task_id)
      before = _task_out(t)
      now = self._clock()
      fields = patch.model_fields_set
      if "title" in fields and patch.title is not None:
        t.title = patch.title.strip()
      if "description" in fields and patch.description is not None:
        t.description = patch.description
      if "quadrant" in fields and patch.quadrant is not None:
        t.quadrant = patch.quadrant
      if "priority" in fields and patch.priority is not None:
        t.priority = patch.priority
      if "dueDate" in fields:
        t.due_date = patch.dueDate
      if "completed" in fields and patch.completed is not None and bool(patch.completed) != bool(t.completed):
        t.completed = bool(patch.completed)
        t.completed_at = now if t.completed else None
      t.updated_at = now
      await db.commit()
      await db.refresh(t)
      return TaskChange(before=before, after=_task_out(t))

  async def delete_task(self, user_id: str, task_id: str) -> None:
    async with self._sessions() as db:
      res = await db.execute(delete(Task).where(Task.id == task_id, Task.user_id == user_id))
      if res.rowcount == 0:
        raise TaskNotFoundError(task_id)
      await db.commit()

  async def list_user_ids(self) -> list[str]:
    async with self._sessions() as db:
      res = await db.execute(select(Task.user_id).distinct().order_by(Task.user_id.asc()))
      return [row[0] for row in res.all()]
