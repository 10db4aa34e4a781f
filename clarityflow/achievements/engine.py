from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from clarityflow.clock import Clock, local_date, resolve_tz, utcnow
from clarityflow.notifications.dispatcher import NotificationDispatcher
from clarityflow.notifications.settings import NotificationSettingsStore
from clarityflow.schemas import Achievement, AchievementStats, TaskOut
from clarityflow.storage import KeyedLocks, KeyValueStore, StoreError, kv_key, read_json, write_json

logger = logging.getLogger(__name__)

COMPLETION_MILESTONES = (1, 5, 10, 25, 50, 100, 250, 500)
STREAK_MILESTONES = (3, 7, 14, 30, 60, 100)
QUADRANT_MILESTONES = (10, 25, 50)

QUADRANT_LABELS = {
  "urgent-important": "Urgent Task Master",
  "not-urgent-important": "Strategic Planner",
  "urgent-not-important": "Delegation Pro",
  "not-urgent-not-important": "Clutter Cutter",
}


def week_start(d: date) -> date:
  """Sunday on or before d."""
  return d - timedelta(days=(d.weekday() + 1) % 7)


@dataclass
class _Candidate:
  dedupe_key: str
  type: str
  title: str
  description: str
  icon: str
  payload: dict[str, Any] = field(default_factory=dict)


class AchievementEngine:
  """
  Streak, goal and milestone bookkeeping for task completions.

  Stats are written before milestones are evaluated. Each milestone unlocks
  at most once per user (dedupe key checked against the full history), and
  every unlock is persisted before it is announced.
  """

  def __init__(
    self,
    kv: KeyValueStore,
    *,
    namespace: str,
    dispatcher: NotificationDispatcher | None = None,
    settings_store: NotificationSettingsStore | None = None,
    clock: Clock = utcnow,
    timezone: str = "UTC",
    weekly_goal: int = 7,
    monthly_goal: int = 30,
  ) -> None:
    self._kv = kv
    self._namespace = namespace
    self._dispatcher = dispatcher
    self._settings_store = settings_store
    self._clock = clock
    self._default_tz = timezone
    self._weekly_goal = int(weekly_goal)
    self._monthly_goal = int(monthly_goal)
    self._locks = KeyedLocks()

  def _stats_key(self, user_id: str) -> str:
    return kv_key(self._namespace, "achievement-stats", user_id)

  def _history_key(self, user_id: str) -> str:
    return kv_key(self._namespace, "achievements", user_id)

  def _default_stats(self) -> AchievementStats:
    return AchievementStats(weeklyGoal=self._weekly_goal, monthlyGoal=self._monthly_goal)

  async def _load_stats(self, user_id: str) -> AchievementStats:
    raw = await read_json(self._kv, self._stats_key(user_id), expect=dict)
    if not raw:
      return self._default_stats()
    try:
      return AchievementStats.model_validate({**self._default_stats().model_dump(), **raw})
    except ValidationError:
      logger.warning("Malformed achievement stats for user %s; rebuilding from defaults", user_id)
      return self._default_stats()

  async def _load_history(self, user_id: str) -> list[Achievement]:
    raw = await read_json(self._kv, self._history_key(user_id), expect=list)
    out: list[Achievement] = []
    for item in raw or []:
      try:
        out.append(Achievement.model_validate(item))
      except ValidationError:
        logger.warning("Dropping malformed achievement for user %s", user_id)
    return out

  async def get_stats(self, user_id: str) -> AchievementStats:
    try:
      return await self._load_stats(user_id)
    except StoreError:
      logger.exception("Failed to load achievement stats for user %s", user_id)
      return self._default_stats()

  async def get_achievements(self, user_id: str) -> list[Achievement]:
    try:
      history = await self._load_history(user_id)
    except StoreError:
      logger.exception("Failed to load achievements for user %s", user_id)
      return []
    return sorted(history, key=lambda a: a.unlockedAt, reverse=True)

  async def get_recent(self, user_id: str, limit: int = 5) -> list[Achievement]:
    return (await self.get_achievements(user_id))[: max(0, int(limit))]

  async def set_goals(self, user_id: str, *, weekly: int | None = None, monthly: int | None = None) -> AchievementStats:
    async with self._locks(user_id):
      stats = await self._load_stats(user_id)
      if weekly is not None:
        stats.weeklyGoal = int(weekly)
      if monthly is not None:
        stats.monthlyGoal = int(monthly)
      await write_json(self._kv, self._stats_key(user_id), stats.model_dump())
      return stats

  async def _user_tz(self, user_id: str) -> ZoneInfo:
    name = None
    if self._settings_store is not None:
      name = (await self._settings_store.get(user_id)).timezone
    return resolve_tz(name, self._default_tz)

  async def process_completion(self, user_id: str, task: TaskOut) -> list[Achievement]:
    """
    Record one completion and return only the achievements it newly unlocked.

    Raises StoreError when the stats cannot be read or written; the completion
    is then not counted and the caller may retry it. Failures after the stats
    are saved are logged and yield no (or fewer) unlocks.
    """
    tz = await self._user_tz(user_id)
    async with self._locks(user_id):
      stats = await self._load_stats(user_id)
      self._apply_completion(stats, task, tz)
      await write_json(self._kv, self._stats_key(user_id), stats.model_dump())
      unlocked = await self._unlock(user_id, self._candidates(stats))

    for achievement in unlocked:
      await self._announce(user_id, achievement)
    return unlocked

  def _apply_completion(self, stats: AchievementStats, task: TaskOut, tz: ZoneInfo) -> None:
    now = self._clock()
    today = local_date(now, tz)
    last = local_date(stats.lastCompletionDate, tz) if stats.lastCompletionDate else None

    if last == today:
      stats.currentStreak = max(1, stats.currentStreak)
    elif last == today - timedelta(days=1):
      stats.currentStreak += 1
    else:
      stats.currentStreak = 1
    stats.longestStreak = max(stats.longestStreak, stats.currentStreak)
    stats.totalCompleted += 1

    if last is not None and week_start(last) == week_start(today):
      stats.weeklyCompleted += 1
    else:
      stats.weeklyCompleted = 1
    if last is not None and (last.year, last.month) == (today.year, today.month):
      stats.monthlyCompleted += 1
    else:
      stats.monthlyCompleted = 1

    stats.quadrantCompleted[task.quadrant] = stats.quadrantCompleted.get(task.quadrant, 0) + 1
    stats.lastCompletionDate = now

  def _candidates(self, stats: AchievementStats) -> list[_Candidate]:
    out: list[_Candidate] = []
    for m in COMPLETION_MILESTONES:
      if stats.totalCompleted < m:
        break
      if m == 1:
        out.append(_Candidate("completion:first", "completion-count", "First Task Completed!", "You completed your first task. Great start!", "🎯", {"milestone": "first"}))
      else:
        out.append(_Candidate(f"completion:{m}", "completion-count", f"{m} Tasks Completed!", f"You've completed {m} tasks. Amazing progress!", "🏆", {"milestone": m}))

    for m in STREAK_MILESTONES:
      if stats.currentStreak < m:
        break
      out.append(_Candidate(f"streak:{m}", "streak", f"{m} Day Streak!", f"You've completed tasks for {m} consecutive days!", "🔥", {"milestone": m}))

    if stats.weeklyCompleted >= stats.weeklyGoal:
      out.append(_Candidate("goal:weekly", "goal", "Weekly Goal Reached!", f"You've completed your weekly goal of {stats.weeklyGoal} tasks!", "📅", {"goal": "weekly", "target": stats.weeklyGoal}))
    if stats.monthlyCompleted >= stats.monthlyGoal:
      out.append(_Candidate("goal:monthly", "goal", "Monthly Goal Reached!", f"You've completed your monthly goal of {stats.monthlyGoal} tasks!", "🗓️", {"goal": "monthly", "target": stats.monthlyGoal}))

    for quadrant, count in sorted(stats.quadrantCompleted.items()):
      label = QUADRANT_LABELS.get(quadrant)
      if label is None:
        continue
      for m in QUADRANT_MILESTONES:
        if count < m:
          break
        title = f"{label}!" if m == QUADRANT_MILESTONES[0] else f"{label} x{m}!"
        out.append(_Candidate(f"quadrant:{quadrant}:{m}", "category-milestone", title, f"You've completed {m} {quadrant} tasks!", "⚡", {"quadrant": quadrant, "milestone": m}))
    return out

  async def _unlock(self, user_id: str, candidates: list[_Candidate]) -> list[Achievement]:
    unlocked: list[Achievement] = []
    try:
      await self._unlock_into(user_id, candidates, unlocked)
    except StoreError:
      logger.exception("Completion recorded for user %s but achievements could not be saved", user_id)
    return unlocked

  async def _unlock_into(self, user_id: str, candidates: list[_Candidate], unlocked: list[Achievement]) -> None:
    history = await self._load_history(user_id)
    seen = {a.dedupeKey for a in history}
    for c in candidates:
      if c.dedupe_key in seen:
        continue
      achievement = Achievement(
        id=uuid.uuid4().hex,
        type=c.type,
        title=c.title,
        description=c.description,
        icon=c.icon,
        unlockedAt=self._clock(),
        dedupeKey=c.dedupe_key,
        payload=c.payload,
      )
      history.append(achievement)
      await write_json(self._kv, self._history_key(user_id), [a.model_dump() for a in history])
      seen.add(c.dedupe_key)
      unlocked.append(achievement)
      logger.info("User %s unlocked achievement %s", user_id, c.dedupe_key)

  async def _announce(self, user_id: str, achievement: Achievement) -> None:
    if self._dispatcher is None:
      return
    try:
      await self._dispatcher.schedule_achievement(user_id, achievement)
    except Exception:
      logger.exception("Failed to announce achievement %s for user %s", achievement.dedupeKey, user_id)
