from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta

from clarityflow.clock import Clock, as_utc, hhmm_to_minutes, resolve_tz, utcnow
from clarityflow.notifications.channels import DeliveryChannel, DeliveryError, DeliveryMessage
from clarityflow.notifications.feed import NotificationFeed
from clarityflow.notifications.settings import NotificationSettingsStore
from clarityflow.notifications.stats import NotificationStatsStore
from clarityflow.schemas import Achievement, NotificationRecord, NotificationSettings, NotificationTemplate, QuietHours, TaskOut
from clarityflow.storage import StoreError

logger = logging.getLogger(__name__)

CATEGORY_TOGGLES = {
  "task_reminder": "taskReminders",
  "deadline_alert": "deadlineAlerts",
  "weekly_update": "weeklyUpdates",
  "achievement": "achievements",
}

DEADLINE_LEAD_DAYS = {"1day": 1, "3days": 3, "1week": 7}

REMINDER_OFFSETS = {
  "hourly": timedelta(hours=1),
  "daily": timedelta(hours=24),
}
IMMEDIATE_REMINDER_DELAY = timedelta(minutes=5)


def reminder_id(task_id: str) -> str:
  return f"task:reminder:{task_id}"


def deadline_alert_id(task_id: str) -> str:
  return f"task:deadline:{task_id}"


def upcoming_alert_id(task_id: str) -> str:
  return f"deadline:upcoming:{task_id}"


def overdue_alert_id(task_id: str) -> str:
  return f"deadline:overdue:{task_id}"


def in_quiet_hours(qh: QuietHours, minute_of_day: int) -> bool:
  """
  Quiet-hours check on minutes since local midnight.

  A window whose start is after its end spans midnight. Both bounds are inclusive.
  """
  if not qh.enabled:
    return False
  start = hhmm_to_minutes(qh.start)
  end = hhmm_to_minutes(qh.end)
  if start is None or end is None:
    return False
  if start > end:
    return minute_of_day >= start or minute_of_day <= end
  return start <= minute_of_day <= end


def category_enabled(prefs: NotificationSettings, category: str) -> bool:
  toggle = CATEGORY_TOGGLES.get(category)
  if toggle is None:
    return True
  return bool(getattr(prefs, toggle, True))


def _priority(level: str) -> int:
  return 1 if level in ("warn", "error") else 0


class NotificationDispatcher:
  """
  Gates, delivers and records notifications.

  Gates run in order: category toggle, channel availability, quiet hours. A
  failing gate returns None. Deferred notifications are pending asyncio tasks
  keyed by notification id; all gates run again when one fires.
  """

  def __init__(
    self,
    *,
    settings_store: NotificationSettingsStore,
    feed: NotificationFeed,
    stats: NotificationStatsStore,
    push_channel: DeliveryChannel,
    email_channel: DeliveryChannel,
    clock: Clock = utcnow,
    default_timezone: str = "UTC",
    delivered_limit: int = 1000,
  ) -> None:
    self.settings_store = settings_store
    self.feed = feed
    self.stats = stats
    self.push_channel = push_channel
    self.email_channel = email_channel
    self._clock = clock
    self._default_tz = default_timezone
    self._pending: dict[str, asyncio.Task] = {}
    self._delivered: dict[str, DeliveryChannel] = {}
    self.delivered_limit = delivered_limit

  def channel_for(self, prefs: NotificationSettings) -> DeliveryChannel | None:
    if prefs.pushNotifications and self.push_channel.can_deliver():
      return self.push_channel
    if prefs.emailNotifications and self.email_channel.can_deliver():
      return self.email_channel
    return None

  def is_quiet(self, prefs: NotificationSettings, now: datetime) -> bool:
    local = as_utc(now).astimezone(resolve_tz(prefs.timezone, self._default_tz))
    return in_quiet_hours(prefs.quietHours, local.hour * 60 + local.minute)

  def pending_ids(self) -> list[str]:
    return sorted(k for k, t in self._pending.items() if not t.done())

  async def schedule(self, user_id: str, template: NotificationTemplate, trigger: datetime | None = None) -> str | None:
    now = self._clock()
    if trigger is not None and as_utc(trigger) > now:
      prefs = await self.settings_store.get(user_id)
      if not category_enabled(prefs, template.category):
        logger.debug("Notification %s for user %s skipped: category %s disabled", template.id, user_id, template.category)
        return None
      if self.channel_for(prefs) is None:
        logger.info("Notification %s for user %s skipped: no delivery channel available", template.id, user_id)
        return None
      self._arm(user_id, template, as_utc(trigger) - now)
      try:
        await self.stats.record_scheduled(user_id)
      except StoreError:
        logger.exception("Failed to record scheduled notification for user %s", user_id)
      return template.id
    return await self._dispatch_now(user_id, template)

  async def _dispatch_now(self, user_id: str, template: NotificationTemplate) -> str | None:
    prefs = await self.settings_store.get(user_id)
    if not category_enabled(prefs, template.category):
      logger.debug("Notification %s for user %s skipped: category %s disabled", template.id, user_id, template.category)
      return None
    channel = self.channel_for(prefs)
    if channel is None:
      logger.info("Notification %s for user %s skipped: no delivery channel available", template.id, user_id)
      return None
    if self.is_quiet(prefs, self._clock()):
      logger.info("Notification %s for user %s suppressed by quiet hours", template.id, user_id)
      return None
    try:
      await self._deliver(user_id, template, channel)
    except DeliveryError as e:
      logger.warning("Delivery of %s via %s failed for user %s: %s", template.id, channel.name, user_id, e)
      return None
    return template.id

  async def _deliver(self, user_id: str, template: NotificationTemplate, channel: DeliveryChannel) -> NotificationRecord:
    await channel.deliver(DeliveryMessage(title=template.title, body=template.body, tag=template.id, priority=_priority(template.level)))
    self._remember_delivery(template.id, channel)
    now = self._clock()
    record = NotificationRecord(
      id=uuid.uuid4().hex,
      category=template.category,
      level=template.level,
      title=template.title,
      body=template.body,
      createdAt=now,
      payload={**template.payload, "notificationId": template.id, "channel": channel.name},
    )
    try:
      await self.feed.append(user_id, record)
      await self.stats.record_sent(user_id, template.category, now)
    except StoreError:
      logger.exception("Delivered %s but failed to record it for user %s", template.id, user_id)
    return record

  def _remember_delivery(self, notification_id: str, channel: DeliveryChannel) -> None:
    self._delivered.pop(notification_id, None)
    self._delivered[notification_id] = channel
    while len(self._delivered) > self.delivered_limit:
      del self._delivered[next(iter(self._delivered))]

  def delivered_ids(self) -> list[str]:
    return list(self._delivered)

  def _arm(self, user_id: str, template: NotificationTemplate, delay: timedelta) -> None:
    previous = self._pending.pop(template.id, None)
    if previous is not None and not previous.done():
      previous.cancel()
    self._pending[template.id] = asyncio.create_task(
      self._fire_later(user_id, template, max(0.0, delay.total_seconds())),
      name=f"notify:{template.id}",
    )

  async def _fire_later(self, user_id: str, template: NotificationTemplate, delay_seconds: float) -> None:
    await asyncio.sleep(delay_seconds)
    if self._pending.get(template.id) is asyncio.current_task():
      del self._pending[template.id]
    try:
      await self._dispatch_now(user_id, template)
    except Exception:
      logger.exception("Deferred notification %s for user %s failed", template.id, user_id)

  async def cancel(self, notification_id: str) -> bool:
    """
    Advisory cancel.

    Pending notifications are always cancelled. Delivered ones are retracted
    only when the channel supports it; otherwise False is returned.
    """
    task = self._pending.pop(notification_id, None)
    if task is not None and not task.done():
      task.cancel()
      return True
    channel = self._delivered.pop(notification_id, None)
    if channel is None:
      return False
    retracted = await channel.retract(notification_id)
    if not retracted:
      logger.info("Channel %s cannot retract delivered notification %s", channel.name, notification_id)
    return retracted

  async def cancel_task_notifications(self, task_id: str) -> int:
    n = 0
    for nid in (reminder_id(task_id), deadline_alert_id(task_id), upcoming_alert_id(task_id), overdue_alert_id(task_id)):
      if await self.cancel(nid):
        n += 1
    return n

  async def schedule_task_reminder(self, user_id: str, task: TaskOut) -> str | None:
    if task.completed or task.dueDate is None:
      return None
    prefs = await self.settings_store.get(user_id)
    now = self._clock()
    mode = prefs.frequency.taskReminders
    if mode == "immediate":
      trigger = now + IMMEDIATE_REMINDER_DELAY
    else:
      trigger = as_utc(task.dueDate) - REMINDER_OFFSETS[mode]
    if trigger <= now:
      logger.debug("Reminder for task %s not armed: trigger %s already passed", task.id, trigger.isoformat())
      return None
    template = NotificationTemplate(
      id=reminder_id(task.id),
      category="task_reminder",
      title="Task Reminder",
      body=f"Don't forget: {task.title}",
      payload={"taskId": task.id, "quadrant": task.quadrant},
    )
    return await self.schedule(user_id, template, trigger)

  async def schedule_deadline_alert(self, user_id: str, task: TaskOut) -> str | None:
    if task.completed or task.dueDate is None:
      return None
    prefs = await self.settings_store.get(user_id)
    lead = DEADLINE_LEAD_DAYS[prefs.frequency.deadlineAlerts]
    trigger = as_utc(task.dueDate) - timedelta(days=lead)
    if trigger <= self._clock():
      return None
    template = NotificationTemplate(
      id=deadline_alert_id(task.id),
      category="deadline_alert",
      level="warn",
      title="Deadline Approaching",
      body=f'"{task.title}" is due in {lead} day{"s" if lead != 1 else ""}',
      payload={"taskId": task.id, "leadDays": lead},
    )
    return await self.schedule(user_id, template, trigger)

  async def schedule_achievement(self, user_id: str, achievement: Achievement) -> str | None:
    template = NotificationTemplate(
      id=f"achievement:{achievement.dedupeKey}",
      category="achievement",
      level="ok",
      title=f"Achievement Unlocked: {achievement.title}",
      body=achievement.description,
      payload={"achievementId": achievement.id, "type": achievement.type},
    )
    return await self.schedule(user_id, template)

  async def send_test_notification(self, user_id: str) -> NotificationRecord:
    """Foreground delivery check; skips category and quiet-hours gates and raises DeliveryError on failure."""
    prefs = await self.settings_store.get(user_id)
    channel = self.channel_for(prefs)
    if channel is None:
      raise DeliveryError("No delivery channel is enabled and available")
    template = NotificationTemplate(
      id=f"test:{uuid.uuid4().hex}",
      category="system",
      title="Test Notification",
      body="Notifications are working.",
    )
    return await self._deliver(user_id, template, channel)

  async def aclose(self) -> None:
    tasks = [t for t in self._pending.values() if not t.done()]
    self._pending.clear()
    for t in tasks:
      t.cancel()
    if tasks:
      await asyncio.gather(*tasks, return_exceptions=True)
