from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from fastapi.encoders import jsonable_encoder
from redis.asyncio import Redis
from redis.asyncio import from_url as redis_from_url
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
  pass


class KeyValueStore(Protocol):
  async def get(self, key: str) -> str | None: ...
  async def set(self, key: str, value: str) -> None: ...
  async def delete(self, key: str) -> None: ...
  async def keys(self, prefix: str) -> list[str]: ...
  async def close(self) -> None: ...


class MemoryKeyValueStore:
  """
  Process-local key-value store.

  Used when no redis_url is configured (single-process deployments, tests).
  Contents are lost on restart.
  """

  def __init__(self) -> None:
    self._data: dict[str, str] = {}

  async def get(self, key: str) -> str | None:
    return self._data.get(key)

  async def set(self, key: str, value: str) -> None:
    self._data[key] = value

  async def delete(self, key: str) -> None:
    self._data.pop(key, None)

  async def keys(self, prefix: str) -> list[str]:
    return sorted(k for k in self._data if k.startswith(prefix))

  async def close(self) -> None:
    return


class RedisKeyValueStore:
  def __init__(self, client: Redis) -> None:
    self._client = client

  @classmethod
  def from_url(cls, url: str) -> "RedisKeyValueStore":
    return cls(redis_from_url(url, encoding="utf-8", decode_responses=True))

  async def get(self, key: str) -> str | None:
    try:
      return await self._client.get(key)
    except RedisError as e:
      raise StoreError(f"redis get failed for {key}: {e}") from e

  async def set(self, key: str, value: str) -> None:
    try:
      await self._client.set(key, value)
    except RedisError as e:
      raise StoreError(f"redis set failed for {key}: {e}") from e

  async def delete(self, key: str) -> None:
    try:
      await self._client.delete(key)
    except RedisError as e:
      raise StoreError(f"redis delete failed for {key}: {e}") from e

  async def keys(self, prefix: str) -> list[str]:
    try:
      return sorted([k async for k in self._client.scan_iter(match=f"{prefix}*")])
    except RedisError as e:
      raise StoreError(f"redis scan failed for {prefix}: {e}") from e

  async def close(self) -> None:
    await self._client.aclose()


def kv_key(namespace: str, *parts: str) -> str:
  return ":".join([namespace, *[str(p) for p in parts]])


async def read_json(kv: KeyValueStore, key: str, *, expect: type | None = None) -> Any | None:
  """
  Load a JSON blob.

  Missing key and malformed JSON both return None; backend failures raise StoreError.
  """
  raw = await kv.get(key)
  if raw is None:
    return None
  try:
    data = json.loads(raw)
  except (TypeError, ValueError):
    logger.warning("Malformed JSON at %s; treating as missing", key)
    return None
  if expect is not None and not isinstance(data, expect):
    logger.warning("Unexpected JSON shape at %s (%s); treating as missing", key, type(data).__name__)
    return None
  return data


async def write_json(kv: KeyValueStore, key: str, value: Any) -> None:
  await kv.set(key, json.dumps(jsonable_encoder(value), ensure_ascii=False))
