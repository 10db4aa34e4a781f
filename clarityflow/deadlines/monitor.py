from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from pydantic import ValidationError

from clarityflow.clock import Clock, as_utc, utcnow
from clarityflow.notifications.dispatcher import DEADLINE_LEAD_DAYS, NotificationDispatcher, overdue_alert_id, upcoming_alert_id
from clarityflow.notifications.settings import NotificationSettingsStore
from clarityflow.schemas import (
  DeadlineMonitorSettings,
  DeadlineMonitorSettingsIn,
  DeadlineMonitorStatusOut,
  NotificationTemplate,
  ScanReportOut,
  TaskOut,
)
from clarityflow.storage import KeyValueStore, StoreError, kv_key, read_json, write_json
from clarityflow.task_store import SqlTaskStore

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class DeadlineClass:
  kind: str  # upcoming | overdue
  days: int
  urgency: str  # urgent | warning | overdue


def classify_deadline(due: datetime, now: datetime, lead_days: int) -> DeadlineClass | None:
  """
  Day distance rounded up in both directions.

  Due in 23h gives an urgent upcoming alert at 1 day; due 2h ago gives
  overdue by 1 day. Exactly now produces nothing.
  """
  delta = (as_utc(due) - as_utc(now)).total_seconds()
  if delta < 0:
    return DeadlineClass(kind="overdue", days=math.ceil(-delta / DAY_SECONDS), urgency="overdue")
  if delta == 0:
    return None
  days = math.ceil(delta / DAY_SECONDS)
  if days > lead_days:
    return None
  return DeadlineClass(kind="upcoming", days=days, urgency="urgent" if days <= 1 else "warning")


def _plural(n: int, word: str) -> str:
  return f"{n} {word}" if n == 1 else f"{n} {word}s"


def alert_template(task: TaskOut, c: DeadlineClass) -> NotificationTemplate:
  if c.kind == "overdue":
    return NotificationTemplate(
      id=overdue_alert_id(task.id),
      category="deadline_alert",
      level="error",
      title="Task Overdue",
      body=f'"{task.title}" is {_plural(c.days, "day")} overdue',
      payload={"taskId": task.id, "daysOverdue": c.days, "urgency": c.urgency},
    )
  return NotificationTemplate(
    id=upcoming_alert_id(task.id),
    category="deadline_alert",
    level="warn" if c.urgency == "urgent" else "info",
    title="Urgent: Deadline Approaching" if c.urgency == "urgent" else "Deadline Approaching",
    body=f'"{task.title}" is due in {_plural(c.days, "day")}',
    payload={"taskId": task.id, "daysDiff": c.days, "urgency": c.urgency},
  )


class DeadlineMonitor:
  """
  Periodic scan of every user's open tasks for upcoming and overdue deadlines.

  The timer is a cancellable asyncio task. `monitoringActive` is persisted
  separately and can drift from the timer after a crash; resync() repairs it.
  """

  def __init__(
    self,
    kv: KeyValueStore,
    *,
    namespace: str,
    task_store: SqlTaskStore,
    settings_store: NotificationSettingsStore,
    dispatcher: NotificationDispatcher,
    clock: Clock = utcnow,
    default_interval_minutes: int = 60,
  ) -> None:
    self._kv = kv
    self._key = kv_key(namespace, "deadline-monitor")
    self._tasks = task_store
    self._settings_store = settings_store
    self._dispatcher = dispatcher
    self._clock = clock
    self._default_interval = max(1, int(default_interval_minutes))
    self._timer: asyncio.Task | None = None

  @property
  def timer_live(self) -> bool:
    return self._timer is not None and not self._timer.done()

  def _defaults(self) -> DeadlineMonitorSettings:
    return DeadlineMonitorSettings(checkIntervalMinutes=self._default_interval)

  async def get_settings(self) -> DeadlineMonitorSettings:
    try:
      raw = await read_json(self._kv, self._key, expect=dict)
    except StoreError:
      logger.exception("Failed to load deadline monitor settings; using defaults")
      return self._defaults()
    if not raw:
      return self._defaults()
    try:
      return DeadlineMonitorSettings.model_validate({**self._defaults().model_dump(), **raw})
    except ValidationError:
      logger.warning("Malformed deadline monitor settings; using defaults")
      return self._defaults()

  async def _save_settings(self, s: DeadlineMonitorSettings) -> None:
    try:
      await write_json(self._kv, self._key, s.model_dump())
    except StoreError:
      logger.exception("Failed to persist deadline monitor settings")

  async def _cancel_timer(self) -> None:
    task, self._timer = self._timer, None
    if task is None or task.done():
      return
    task.cancel()
    try:
      await task
    except asyncio.CancelledError:
      pass

  async def start(self) -> DeadlineMonitorStatusOut:
    await self._cancel_timer()
    await self._safe_scan()
    s = await self.get_settings()
    self._timer = asyncio.create_task(self._loop(s.checkIntervalMinutes), name="deadline-monitor")
    s.monitoringActive = True
    await self._save_settings(s)
    logger.info("Deadline monitor started (every %s min)", s.checkIntervalMinutes)
    return await self.get_status()

  async def stop(self) -> DeadlineMonitorStatusOut:
    was_live = self.timer_live
    await self._cancel_timer()
    s = await self.get_settings()
    if s.monitoringActive:
      s.monitoringActive = False
      await self._save_settings(s)
    if was_live:
      logger.info("Deadline monitor stopped")
    return await self.get_status()

  async def _loop(self, interval_minutes: int) -> None:
    while True:
      await asyncio.sleep(max(1, int(interval_minutes)) * 60)
      await self._safe_scan()

  async def _safe_scan(self) -> ScanReportOut | None:
    try:
      return await self.check_upcoming_deadlines()
    except Exception:
      logger.exception("Deadline scan failed")
      return None

  async def check_upcoming_deadlines(self) -> ScanReportOut:
    now = self._clock()
    report = ScanReportOut(startedAt=now)
    dispatched: set[str] = set()
    for user_id in await self._tasks.list_user_ids():
      report.usersScanned += 1
      try:
        await self._scan_user(user_id, now, report, dispatched)
      except Exception:
        report.usersFailed += 1
        logger.exception("Deadline scan failed for user %s", user_id)

    report.finishedAt = self._clock()
    s = await self.get_settings()
    s.lastCheckAt = now
    await self._save_settings(s)
    logger.info(
      "Deadline scan: users=%s failed=%s tasks=%s upcoming=%s overdue=%s delivered=%s",
      report.usersScanned,
      report.usersFailed,
      report.tasksChecked,
      report.upcomingAlerts,
      report.overdueAlerts,
      report.delivered,
    )
    return report

  async def _scan_user(self, user_id: str, now: datetime, report: ScanReportOut, dispatched: set[str]) -> None:
    prefs = await self._settings_store.get(user_id)
    lead = DEADLINE_LEAD_DAYS[prefs.frequency.deadlineAlerts]
    for task in await self._tasks.get_tasks(user_id):
      if task.completed or task.dueDate is None:
        continue
      report.tasksChecked += 1
      c = classify_deadline(task.dueDate, now, lead)
      if c is None:
        continue
      template = alert_template(task, c)
      if template.id in dispatched:
        continue
      dispatched.add(template.id)
      if c.kind == "overdue":
        report.overdueAlerts += 1
      else:
        report.upcomingAlerts += 1
      if await self._dispatcher.schedule(user_id, template):
        report.delivered += 1

  async def update_settings(self, patch: DeadlineMonitorSettingsIn) -> DeadlineMonitorStatusOut:
    s = await self.get_settings()
    fields = patch.model_fields_set
    restart = False
    if "enabled" in fields and patch.enabled is not None and patch.enabled != s.enabled:
      s.enabled = patch.enabled
      restart = True
    if "checkIntervalMinutes" in fields and patch.checkIntervalMinutes is not None and patch.checkIntervalMinutes != s.checkIntervalMinutes:
      s.checkIntervalMinutes = patch.checkIntervalMinutes
      restart = True
    await self._save_settings(s)
    if restart:
      if s.enabled:
        return await self.start()
      return await self.stop()
    return await self.get_status()

  async def get_status(self) -> DeadlineMonitorStatusOut:
    s = await self.get_settings()
    active = bool(s.monitoringActive and self.timer_live)
    next_check = None
    if active and s.lastCheckAt is not None:
      next_check = s.lastCheckAt + timedelta(minutes=s.checkIntervalMinutes)
    return DeadlineMonitorStatusOut(isActive=active, lastCheckAt=s.lastCheckAt, nextCheckAt=next_check, settings=s)

  async def resync(self) -> DeadlineMonitorStatusOut:
    s = await self.get_settings()
    live = self.timer_live
    if s.monitoringActive != live:
      logger.warning("Deadline monitor flag out of sync (persisted=%s, timer=%s); repairing", s.monitoringActive, live)
      s.monitoringActive = live
      await self._save_settings(s)
    return await self.get_status()

  async def initialize(self) -> DeadlineMonitorStatusOut:
    s = await self.get_settings()
    if s.enabled:
      return await self.start()
    return await self.resync()

  async def perform_manual_check(self) -> ScanReportOut:
    return await self.check_upcoming_deadlines()
