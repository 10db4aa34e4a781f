from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from clarityflow.achievements.engine import AchievementEngine
from clarityflow.clock import Clock, utcnow
from clarityflow.config import Settings
from clarityflow.db import create_tables, make_engine, make_session_factory
from clarityflow.deadlines.monitor import DeadlineMonitor
from clarityflow.notifications.channels import DeliveryChannel, email_channel_for, push_channel_for
from clarityflow.notifications.dispatcher import NotificationDispatcher
from clarityflow.notifications.feed import NotificationFeed
from clarityflow.notifications.settings import NotificationSettingsStore
from clarityflow.notifications.stats import NotificationStatsStore
from clarityflow.rate_limit import RateLimiter
from clarityflow.storage import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from clarityflow.task_store import SqlTaskStore

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
  """Every service instance the process uses, built once and passed explicitly."""

  settings: Settings
  clock: Clock
  kv: KeyValueStore
  engine: AsyncEngine
  sessions: async_sessionmaker[AsyncSession]
  tasks: SqlTaskStore
  notification_settings: NotificationSettingsStore
  feed: NotificationFeed
  stats: NotificationStatsStore
  dispatcher: NotificationDispatcher
  achievements: AchievementEngine
  deadlines: DeadlineMonitor
  rate_limiter: RateLimiter

  async def startup(self) -> None:
    await create_tables(self.engine)
    self.rate_limiter.start_sweeper()
    if self.settings.background_jobs_enabled:
      try:
        await self.deadlines.initialize()
      except Exception:
        logger.exception("Deadline monitor failed to initialize")
    else:
      await self.deadlines.resync()
    logger.info("ClarityFlow %s started", self.settings.app_version)

  async def shutdown(self) -> None:
    await self.deadlines.stop()
    await self.rate_limiter.stop_sweeper()
    await self.dispatcher.aclose()
    await self.kv.close()
    await self.engine.dispose()
    logger.info("ClarityFlow stopped")


def build_context(
  cfg: Settings,
  *,
  clock: Clock = utcnow,
  kv: KeyValueStore | None = None,
  push_channel: DeliveryChannel | None = None,
  email_channel: DeliveryChannel | None = None,
) -> AppContext:
  if kv is None:
    kv = RedisKeyValueStore.from_url(cfg.redis_url) if cfg.redis_url else MemoryKeyValueStore()
  ns = cfg.kv_namespace
  engine = make_engine(cfg.database_url)
  sessions = make_session_factory(engine)
  tasks = SqlTaskStore(sessions, clock=clock)
  notification_settings = NotificationSettingsStore(kv, namespace=ns)
  feed = NotificationFeed(kv, namespace=ns, limit=cfg.notification_feed_limit)
  stats = NotificationStatsStore(kv, namespace=ns)
  dispatcher = NotificationDispatcher(
    settings_store=notification_settings,
    feed=feed,
    stats=stats,
    push_channel=push_channel or push_channel_for(cfg),
    email_channel=email_channel or email_channel_for(cfg),
    clock=clock,
    default_timezone=cfg.default_timezone,
  )
  achievements = AchievementEngine(
    kv,
    namespace=ns,
    dispatcher=dispatcher,
    settings_store=notification_settings,
    clock=clock,
    timezone=cfg.default_timezone,
    weekly_goal=cfg.weekly_goal,
    monthly_goal=cfg.monthly_goal,
  )
  deadlines = DeadlineMonitor(
    kv,
    namespace=ns,
    task_store=tasks,
    settings_store=notification_settings,
    dispatcher=dispatcher,
    clock=clock,
    default_interval_minutes=cfg.deadline_check_interval_minutes,
  )
  rate_limiter = RateLimiter(clock=clock, window_seconds=cfg.rate_limit_window_seconds, sweep_seconds=cfg.rate_limit_sweep_seconds)
  return AppContext(
    settings=cfg,
    clock=clock,
    kv=kv,
    engine=engine,
    sessions=sessions,
    tasks=tasks,
    notification_settings=notification_settings,
    feed=feed,
    stats=stats,
    dispatcher=dispatcher,
    achievements=achievements,
    deadlines=deadlines,
    rate_limiter=rate_limiter,
  )
