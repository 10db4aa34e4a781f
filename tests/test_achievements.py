from __future__ import annotations

from datetime import datetime, timezone

import pytest

from clarityflow.achievements.engine import week_start
from clarityflow.schemas import NotificationSettingsPatch
from clarityflow.storage import StoreError

from tests.conftest import make_task


async def _complete(ctx, n: int = 1, *, quadrant: str = "not-urgent-important", user_id: str = "u1"):
  unlocked = []
  for i in range(n):
    unlocked.extend(await ctx.achievements.process_completion(user_id, make_task(f"t{i}", user_id=user_id, quadrant=quadrant)))
  return unlocked


def test_week_starts_on_sunday():
  assert week_start(datetime(2026, 3, 11).date()).isoformat() == "2026-03-08"
  assert week_start(datetime(2026, 3, 8).date()).isoformat() == "2026-03-08"
  assert week_start(datetime(2026, 3, 14).date()).isoformat() == "2026-03-08"


@pytest.mark.anyio
async def test_first_completion_unlocks_first_task(ctx):
  unlocked = await _complete(ctx)
  assert [a.dedupeKey for a in unlocked] == ["completion:first"]
  stats = await ctx.achievements.get_stats("u1")
  assert stats.totalCompleted == 1
  assert stats.currentStreak == 1
  assert stats.longestStreak == 1
  assert stats.weeklyCompleted == 1
  assert stats.monthlyCompleted == 1


@pytest.mark.anyio
async def test_same_day_completions_do_not_inflate_streak(ctx, clock):
  await _complete(ctx)
  clock.advance(hours=3)
  await _complete(ctx)
  stats = await ctx.achievements.get_stats("u1")
  assert stats.currentStreak == 1
  assert stats.totalCompleted == 2


@pytest.mark.anyio
async def test_consecutive_days_increment_and_gap_resets(ctx, clock):
  unlocked = []
  for _ in range(3):
    unlocked += await _complete(ctx)
    clock.advance(days=1)
  stats = await ctx.achievements.get_stats("u1")
  assert stats.currentStreak == 3
  assert "streak:3" in [a.dedupeKey for a in unlocked]

  clock.advance(days=1)  # skip a day
  await _complete(ctx)
  stats = await ctx.achievements.get_stats("u1")
  assert stats.currentStreak == 1
  assert stats.longestStreak == 3


@pytest.mark.anyio
async def test_streak_uses_calendar_dates_not_elapsed_hours(ctx, clock):
  clock.set(datetime(2026, 3, 11, 23, 50, tzinfo=timezone.utc))
  await _complete(ctx)
  clock.advance(minutes=20)
  await _complete(ctx)
  assert (await ctx.achievements.get_stats("u1")).currentStreak == 2


@pytest.mark.anyio
async def test_milestone_fires_exactly_once_on_replay(ctx, kv):
  unlocked = await _complete(ctx, 10)
  keys = [a.dedupeKey for a in unlocked]
  assert keys.count("completion:10") == 1
  assert keys.count("completion:5") == 1

  # Rewind stats so the next completion lands on 10 again.
  stats = await ctx.achievements.get_stats("u1")
  stats.totalCompleted = 9
  await kv.set("cf-test:achievement-stats:u1", stats.model_dump_json())
  replay = await _complete(ctx)
  assert "completion:10" not in [a.dedupeKey for a in replay]
  history = await ctx.achievements.get_achievements("u1")
  assert [a.dedupeKey for a in history].count("completion:10") == 1


@pytest.mark.anyio
async def test_weekly_goal_and_window_reset(ctx, clock):
  await ctx.achievements.set_goals("u1", weekly=2)
  unlocked = await _complete(ctx, 2)
  assert "goal:weekly" in [a.dedupeKey for a in unlocked]

  # Wednesday -> following Monday is a new week, same month.
  clock.advance(days=5)
  await _complete(ctx)
  stats = await ctx.achievements.get_stats("u1")
  assert stats.weeklyCompleted == 1
  assert stats.monthlyCompleted == 3


@pytest.mark.anyio
async def test_monthly_counter_resets_in_new_month(ctx, clock):
  clock.set(datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc))
  await _complete(ctx, 2)
  clock.advance(days=1)
  await _complete(ctx)
  stats = await ctx.achievements.get_stats("u1")
  assert stats.monthlyCompleted == 1
  assert stats.weeklyCompleted == 3


@pytest.mark.anyio
async def test_quadrant_milestone(ctx):
  unlocked = await _complete(ctx, 10, quadrant="urgent-important")
  hits = [a for a in unlocked if a.dedupeKey == "quadrant:urgent-important:10"]
  assert len(hits) == 1
  assert hits[0].title == "Urgent Task Master!"
  assert (await ctx.achievements.get_stats("u1")).quadrantCompleted["urgent-important"] == 10


@pytest.mark.anyio
async def test_unlock_is_persisted_and_announced(ctx, push_channel):
  await _complete(ctx)
  assert [a.dedupeKey for a in await ctx.achievements.get_recent("u1")] == ["completion:first"]
  assert push_channel.sent[0].tag == "achievement:completion:first"
  assert (await ctx.stats.get("u1")).countsByCategory["achievement"] == 1


@pytest.mark.anyio
async def test_announcement_failure_does_not_roll_back(ctx, monkeypatch):
  async def boom(user_id, achievement):
    raise RuntimeError("dispatcher down")

  monkeypatch.setattr(ctx.dispatcher, "schedule_achievement", boom)
  unlocked = await _complete(ctx)
  assert [a.dedupeKey for a in unlocked] == ["completion:first"]
  assert len(await ctx.achievements.get_achievements("u1")) == 1


@pytest.mark.anyio
async def test_disabled_achievement_notifications_still_unlock(ctx, push_channel):
  await ctx.notification_settings.update("u1", NotificationSettingsPatch(achievements=False))
  unlocked = await _complete(ctx)
  assert len(unlocked) == 1
  assert push_channel.sent == []


@pytest.mark.anyio
async def test_users_are_isolated(ctx):
  await _complete(ctx, 3, user_id="u1")
  await _complete(ctx, 1, user_id="u2")
  assert (await ctx.achievements.get_stats("u1")).totalCompleted == 3
  assert (await ctx.achievements.get_stats("u2")).totalCompleted == 1


@pytest.mark.anyio
async def test_streak_follows_user_timezone(ctx, clock):
  await ctx.notification_settings.update("u1", NotificationSettingsPatch(timezone="Asia/Tokyo"))
  clock.set(datetime(2026, 1, 1, 14, 0, tzinfo=timezone.utc))  # Jan 1, 23:00 in Tokyo
  await _complete(ctx, user_id="u1")
  await _complete(ctx, user_id="u2")
  clock.set(datetime(2026, 1, 1, 16, 0, tzinfo=timezone.utc))  # Jan 2, 01:00 in Tokyo
  await _complete(ctx, user_id="u1")
  await _complete(ctx, user_id="u2")
  assert (await ctx.achievements.get_stats("u1")).currentStreak == 2
  assert (await ctx.achievements.get_stats("u2")).currentStreak == 1


@pytest.mark.anyio
async def test_stats_write_failure_is_not_counted(ctx, kv, monkeypatch):
  real_set = kv.set

  async def failing_set(key, value):
    if ":achievement-stats:" in key:
      raise StoreError("backend down")
    await real_set(key, value)

  monkeypatch.setattr(kv, "set", failing_set)
  with pytest.raises(StoreError):
    await _complete(ctx)
  monkeypatch.setattr(kv, "set", real_set)
  assert (await ctx.achievements.get_stats("u1")).totalCompleted == 0


@pytest.mark.anyio
async def test_history_write_failure_keeps_count_and_unlocks_later(ctx, kv, monkeypatch):
  real_set = kv.set

  async def failing_set(key, value):
    if key.endswith(":achievements:u1"):
      raise StoreError("backend down")
    await real_set(key, value)

  monkeypatch.setattr(kv, "set", failing_set)
  assert await _complete(ctx) == []
  assert (await ctx.achievements.get_stats("u1")).totalCompleted == 1

  monkeypatch.setattr(kv, "set", real_set)
  unlocked = await _complete(ctx)
  assert [a.dedupeKey for a in unlocked] == ["completion:first"]
