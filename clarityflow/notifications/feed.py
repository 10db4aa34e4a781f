from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from clarityflow.schemas import NotificationRecord
from clarityflow.storage import KeyedLocks, KeyValueStore, StoreError, kv_key, read_json, write_json

logger = logging.getLogger(__name__)


class NotificationFeed:
  """
  Newest-first in-app notification history per user.

  The list is capped at `limit` entries; the oldest are evicted on append.
  """

  def __init__(self, kv: KeyValueStore, *, namespace: str, limit: int = 50) -> None:
    self._kv = kv
    self._namespace = namespace
    self.limit = max(1, int(limit))
    self._locks = KeyedLocks()

  def _key(self, user_id: str) -> str:
    return kv_key(self._namespace, "notification-feed", user_id)

  async def _load(self, user_id: str) -> list[NotificationRecord]:
    raw = await read_json(self._kv, self._key(user_id), expect=list)
    out: list[NotificationRecord] = []
    for item in raw or []:
      try:
        out.append(NotificationRecord.model_validate(item))
      except ValidationError:
        logger.warning("Dropping malformed feed entry for user %s", user_id)
    return out

  async def _save(self, user_id: str, records: list[NotificationRecord]) -> None:
    await write_json(self._kv, self._key(user_id), [r.model_dump() for r in records[: self.limit]])

  async def append(self, user_id: str, record: NotificationRecord) -> None:
    async with self._locks(user_id):
      records = await self._load(user_id)
      records.insert(0, record)
      await self._save(user_id, records)

  async def list(self, user_id: str, *, unread_only: bool = False, limit: int | None = None) -> list[NotificationRecord]:
    try:
      records = await self._load(user_id)
    except StoreError:
      logger.exception("Failed to load notification feed for user %s", user_id)
      return []
    if unread_only:
      records = [r for r in records if not r.read]
    if limit is not None:
      records = records[: max(0, int(limit))]
    return records

  async def unread_count(self, user_id: str) -> int:
    return len(await self.list(user_id, unread_only=True))

  async def _mutate(self, user_id: str, fn: Any) -> int:
    async with self._locks(user_id):
      records = await self._load(user_id)
      changed, records = fn(records)
      if changed:
        await self._save(user_id, records)
      return changed

  async def mark_read(self, user_id: str, ids: list[str]) -> int:
    wanted = set(ids)

    def _apply(records: list[NotificationRecord]) -> tuple[int, list[NotificationRecord]]:
      n = 0
      for r in records:
        if r.id in wanted and not r.read:
          r.read = True
          n += 1
      return n, records

    return await self._mutate(user_id, _apply)

  async def mark_all_read(self, user_id: str) -> int:
    def _apply(records: list[NotificationRecord]) -> tuple[int, list[NotificationRecord]]:
      n = 0
      for r in records:
        if not r.read:
          r.read = True
          n += 1
      return n, records

    return await self._mutate(user_id, _apply)

  async def remove(self, user_id: str, record_id: str) -> bool:
    def _apply(records: list[NotificationRecord]) -> tuple[int, list[NotificationRecord]]:
      kept = [r for r in records if r.id != record_id]
      return len(records) - len(kept), kept

    return bool(await self._mutate(user_id, _apply))

  async def clear(self, user_id: str) -> None:
    async with self._locks(user_id):
      await self._kv.delete(self._key(user_id))
