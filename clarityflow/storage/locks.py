from __future__ import annotations

import asyncio


class KeyedLocks:
  """asyncio.Lock per key, created lazily. Serialises read-modify-write within one process only."""

  def __init__(self) -> None:
    self._locks: dict[str, asyncio.Lock] = {}

  def __call__(self, key: str) -> asyncio.Lock:
    lock = self._locks.get(key)
    if lock is None:
      lock = asyncio.Lock()
      self._locks[key] = lock
    return lock
