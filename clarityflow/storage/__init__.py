from clarityflow.storage.kv import (
  KeyValueStore,
  MemoryKeyValueStore,
  RedisKeyValueStore,
  StoreError,
  kv_key,
  read_json,
  write_json,
)
from clarityflow.storage.locks import KeyedLocks

__all__ = [
  "KeyedLocks",
  "KeyValueStore",
  "MemoryKeyValueStore",
  "RedisKeyValueStore",
  "StoreError",
  "kv_key",
  "read_json",
  "write_json",
]
