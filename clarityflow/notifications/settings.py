from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from clarityflow.schemas import NotificationSettings, NotificationSettingsPatch
from clarityflow.storage import KeyedLocks, KeyValueStore, StoreError, kv_key, read_json, write_json

logger = logging.getLogger(__name__)

NESTED_KEYS = ("quietHours", "frequency", "sound")


def _merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
  out = dict(base)
  for k, v in overlay.items():
    if k in NESTED_KEYS and isinstance(v, dict) and isinstance(out.get(k), dict):
      out[k] = {**out[k], **v}
    else:
      out[k] = v
  return out


class NotificationSettingsStore:
  """
  Per-user notification preferences persisted as one JSON blob.

  Reads never fail: a missing, malformed or unreadable blob yields defaults,
  and stored fields are layered over the defaults key-by-key.
  """

  def __init__(self, kv: KeyValueStore, *, namespace: str) -> None:
    self._kv = kv
    self._namespace = namespace
    self._locks = KeyedLocks()

  def _key(self, user_id: str) -> str:
    return kv_key(self._namespace, "notification-settings", user_id)

  async def get(self, user_id: str) -> NotificationSettings:
    try:
      stored = await read_json(self._kv, self._key(user_id), expect=dict)
    except StoreError:
      logger.exception("Failed to load notification settings for user %s; using defaults", user_id)
      return NotificationSettings()
    return self._from_stored(user_id, stored or {})

  def _from_stored(self, user_id: str, stored: dict[str, Any]) -> NotificationSettings:
    defaults = NotificationSettings().model_dump()
    merged = _merge(defaults, stored)
    try:
      return NotificationSettings.model_validate(merged)
    except ValidationError as e:
      bad = {err["loc"][0] for err in e.errors() if err.get("loc")}
      logger.warning("Invalid stored notification settings for user %s (%s); using defaults for those fields", user_id, sorted(map(str, bad)))
      for k in bad:
        if k in defaults:
          merged[k] = defaults[k]
        else:
          merged.pop(k, None)
    try:
      return NotificationSettings.model_validate(merged)
    except ValidationError:
      return NotificationSettings()

  async def update(self, user_id: str, patch: NotificationSettingsPatch) -> NotificationSettings:
    changes = patch.model_dump(exclude_unset=True, exclude_none=True)
    async with self._locks(user_id):
      current = (await self.get(user_id)).model_dump()
      nxt = NotificationSettings.model_validate(_merge(current, changes))
      await write_json(self._kv, self._key(user_id), nxt.model_dump())
      return nxt

  async def reset(self, user_id: str) -> NotificationSettings:
    defaults = NotificationSettings()
    async with self._locks(user_id):
      await write_json(self._kv, self._key(user_id), defaults.model_dump())
    return defaults
