from __future__ import annotations

import logging
from datetime import datetime

from pydantic import ValidationError

from clarityflow.schemas import NotificationStats
from clarityflow.storage import KeyedLocks, KeyValueStore, StoreError, kv_key, read_json, write_json

logger = logging.getLogger(__name__)


class NotificationStatsStore:
  def __init__(self, kv: KeyValueStore, *, namespace: str) -> None:
    self._kv = kv
    self._namespace = namespace
    self._locks = KeyedLocks()

  def _key(self, user_id: str) -> str:
    return kv_key(self._namespace, "notification-stats", user_id)

  async def _load(self, user_id: str) -> NotificationStats:
    raw = await read_json(self._kv, self._key(user_id), expect=dict)
    if not raw:
      return NotificationStats()
    try:
      stats = NotificationStats.model_validate(raw)
    except ValidationError:
      logger.warning("Malformed notification stats for user %s; starting over", user_id)
      return NotificationStats()
    for cat, n in NotificationStats().countsByCategory.items():
      stats.countsByCategory.setdefault(cat, n)
    return stats

  async def get(self, user_id: str) -> NotificationStats:
    try:
      return await self._load(user_id)
    except StoreError:
      logger.exception("Failed to load notification stats for user %s", user_id)
      return NotificationStats()

  async def record_sent(self, user_id: str, category: str, at: datetime) -> NotificationStats:
    async with self._locks(user_id):
      stats = await self._load(user_id)
      stats.totalSent += 1
      stats.countsByCategory[category] = stats.countsByCategory.get(category, 0) + 1
      stats.lastSentAt = at
      await write_json(self._kv, self._key(user_id), stats.model_dump())
      return stats

  async def record_scheduled(self, user_id: str) -> NotificationStats:
    async with self._locks(user_id):
      stats = await self._load(user_id)
      stats.totalScheduled += 1
      await write_json(self._kv, self._key(user_id), stats.model_dump())
      return stats
