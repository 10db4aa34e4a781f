from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from clarityflow.notifications.channels import DeliveryError
from clarityflow.notifications.dispatcher import in_quiet_hours, reminder_id
from clarityflow.schemas import Achievement, NotificationSettingsPatch, NotificationTemplate, QuietHours

from tests.conftest import FailingChannel, make_task


def _template(nid: str = "n1", category: str = "task_reminder") -> NotificationTemplate:
  return NotificationTemplate(id=nid, category=category, title="Hello", body="World")


def _minute(hhmm: str) -> int:
  hh, mm = hhmm.split(":")
  return int(hh) * 60 + int(mm)


def test_quiet_hours_spanning_midnight():
  qh = QuietHours(enabled=True, start="22:00", end="07:00")
  assert in_quiet_hours(qh, _minute("23:30"))
  assert in_quiet_hours(qh, _minute("02:00"))
  assert in_quiet_hours(qh, _minute("07:00"))
  assert not in_quiet_hours(qh, _minute("12:00"))
  assert not in_quiet_hours(qh, _minute("21:59"))


def test_quiet_hours_same_day_window_and_disabled():
  qh = QuietHours(enabled=True, start="09:00", end="17:00")
  assert in_quiet_hours(qh, _minute("12:00"))
  assert not in_quiet_hours(qh, _minute("08:59"))
  assert not in_quiet_hours(QuietHours(enabled=False), _minute("23:30"))


@pytest.mark.anyio
async def test_delivery_records_feed_and_stats(ctx, push_channel, clock):
  nid = await ctx.dispatcher.schedule("u1", _template())
  assert nid == "n1"
  assert [m.tag for m in push_channel.sent] == ["n1"]

  feed = await ctx.feed.list("u1")
  assert len(feed) == 1
  assert feed[0].payload["notificationId"] == "n1"
  assert feed[0].read is False

  stats = await ctx.stats.get("u1")
  assert stats.totalSent == 1
  assert stats.countsByCategory["task_reminder"] == 1
  assert stats.lastSentAt == clock()


@pytest.mark.anyio
async def test_category_gate(ctx, push_channel):
  await ctx.notification_settings.update("u1", NotificationSettingsPatch(taskReminders=False))
  assert await ctx.dispatcher.schedule("u1", _template()) is None
  assert push_channel.sent == []
  assert await ctx.dispatcher.schedule("u1", _template("a1", "achievement")) == "a1"


@pytest.mark.anyio
async def test_channel_gate_falls_back_to_email(ctx, push_channel, email_channel):
  await ctx.notification_settings.update("u1", NotificationSettingsPatch(pushNotifications=False))
  assert await ctx.dispatcher.schedule("u1", _template()) is None

  email_channel.available = True
  await ctx.notification_settings.update("u1", NotificationSettingsPatch(emailNotifications=True))
  assert await ctx.dispatcher.schedule("u1", _template()) == "n1"
  assert len(email_channel.sent) == 1
  assert push_channel.sent == []


@pytest.mark.anyio
async def test_quiet_hours_gate_uses_user_timezone(ctx, push_channel, clock):
  await ctx.notification_settings.update(
    "u1", NotificationSettingsPatch.model_validate({"quietHours": {"enabled": True, "start": "22:00", "end": "07:00"}})
  )
  clock.set(datetime(2026, 3, 11, 23, 30, tzinfo=timezone.utc))
  assert await ctx.dispatcher.schedule("u1", _template()) is None
  clock.set(datetime(2026, 3, 11, 2, 0, tzinfo=timezone.utc))
  assert await ctx.dispatcher.schedule("u1", _template()) is None
  clock.set(datetime(2026, 3, 11, 12, 0, tzinfo=timezone.utc))
  assert await ctx.dispatcher.schedule("u1", _template()) == "n1"

  # 23:30 UTC is 08:30 in Tokyo.
  await ctx.notification_settings.update("u1", NotificationSettingsPatch(timezone="Asia/Tokyo"))
  clock.set(datetime(2026, 3, 11, 23, 30, tzinfo=timezone.utc))
  assert await ctx.dispatcher.schedule("u1", _template()) == "n1"


@pytest.mark.anyio
async def test_delivery_error_returns_none(ctx, clock):
  ctx.dispatcher.push_channel = FailingChannel("push")
  assert await ctx.dispatcher.schedule("u1", _template()) is None
  assert await ctx.feed.list("u1") == []
  assert (await ctx.stats.get("u1")).totalSent == 0


@pytest.mark.anyio
async def test_deferred_notification_fires_and_can_be_replaced(ctx, push_channel, clock):
  trigger = clock() + timedelta(milliseconds=20)
  assert await ctx.dispatcher.schedule("u1", _template("later"), trigger) == "later"
  assert await ctx.dispatcher.schedule("u1", _template("later"), trigger) == "later"
  assert ctx.dispatcher.pending_ids() == ["later"]
  assert (await ctx.stats.get("u1")).totalScheduled == 2

  await asyncio.sleep(0.2)
  assert [m.tag for m in push_channel.sent] == ["later"]
  assert ctx.dispatcher.pending_ids() == []
  assert (await ctx.stats.get("u1")).totalSent == 1


@pytest.mark.anyio
async def test_cancel_pending_and_delivered(ctx, push_channel, clock):
  await ctx.dispatcher.schedule("u1", _template("later"), clock() + timedelta(hours=1))
  assert await ctx.dispatcher.cancel("later") is True
  assert ctx.dispatcher.pending_ids() == []

  await ctx.dispatcher.schedule("u1", _template("now"))
  assert await ctx.dispatcher.cancel("now") is False
  assert push_channel.retract_calls == ["now"]
  assert await ctx.dispatcher.cancel("unknown") is False


@pytest.mark.anyio
async def test_task_reminder_trigger_follows_frequency(ctx, clock):
  due = clock() + timedelta(hours=3)
  task = make_task("t1", due=due)
  assert await ctx.dispatcher.schedule_task_reminder("u1", task) == reminder_id("t1")
  assert ctx.dispatcher.pending_ids() == [reminder_id("t1")]

  await ctx.notification_settings.update("u1", NotificationSettingsPatch.model_validate({"frequency": {"taskReminders": "daily"}}))
  assert await ctx.dispatcher.schedule_task_reminder("u1", make_task("t2", due=due)) is None
  assert await ctx.dispatcher.schedule_task_reminder("u1", make_task("t3")) is None

  assert await ctx.dispatcher.cancel_task_notifications("t1") == 1


@pytest.mark.anyio
async def test_deadline_alert_uses_lead_time(ctx, clock):
  task = make_task("t1", due=clock() + timedelta(days=2))
  assert await ctx.dispatcher.schedule_deadline_alert("u1", task) == "task:deadline:t1"
  await ctx.notification_settings.update("u1", NotificationSettingsPatch.model_validate({"frequency": {"deadlineAlerts": "3days"}}))
  assert await ctx.dispatcher.schedule_deadline_alert("u1", make_task("t2", due=clock() + timedelta(days=2))) is None


@pytest.mark.anyio
async def test_achievement_announcement(ctx, push_channel, clock):
  a = Achievement(id="x", type="streak", title="3 Day Streak!", description="d", unlockedAt=clock(), dedupeKey="streak:3")
  assert await ctx.dispatcher.schedule_achievement("u1", a) == "achievement:streak:3"
  assert push_channel.sent[0].title == "Achievement Unlocked: 3 Day Streak!"


@pytest.mark.anyio
async def test_send_test_notification_raises_without_channel(ctx, push_channel):
  record = await ctx.dispatcher.send_test_notification("u1")
  assert record.category == "system"
  push_channel.available = False
  with pytest.raises(DeliveryError):
    await ctx.dispatcher.send_test_notification("u1")


@pytest.mark.anyio
async def test_cancel_forgets_delivered_notification(ctx, push_channel):
  await ctx.dispatcher.schedule("u1", _template("now"))
  assert ctx.dispatcher.delivered_ids() == ["now"]
  await ctx.dispatcher.cancel("now")
  assert ctx.dispatcher.delivered_ids() == []
  assert await ctx.dispatcher.cancel("now") is False
  assert push_channel.retract_calls == ["now"]


@pytest.mark.anyio
async def test_delivered_ids_are_capped(ctx):
  ctx.dispatcher.delivered_limit = 2
  for _ in range(3):
    await ctx.dispatcher.send_test_notification("u1")
  await ctx.dispatcher.schedule("u1", _template("latest"))
  ids = ctx.dispatcher.delivered_ids()
  assert len(ids) == 2
  assert ids[-1] == "latest"
