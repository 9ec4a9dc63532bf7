"""
VEIL - Record storage

Every component persists through a RecordStore. Two backends ship:
  - InMemoryStore - dicts guarded by threading locks (tests, single process)
  - RedisStore    - JSON records in Redis (shared between gateway workers)

Contract shared by both:
  insert()  is atomic insert-if-absent and assigns a per-table integer id
  update()  merges a patch into an existing record
  delete()  removes a record, used to roll back a failed unit of work
  lock()    returns a per-key context manager for read-modify-write sections
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
import weakref
from abc import ABC, abstractmethod
from typing import Dict, Iterator, Optional, Tuple

import redis

from engine.errors import DuplicateRecordError, RecordNotFoundError

logger = logging.getLogger("veil.storage")

# ── Configuration ──────────────────────────────────────────────────────────────
STORE_BACKEND   = os.getenv("VEIL_STORE_BACKEND", "memory")
REDIS_URL       = os.getenv("VEIL_REDIS_URL", "redis://localhost:6379/0")
REDIS_PREFIX    = os.getenv("VEIL_REDIS_PREFIX", "veil")
LOCK_TIMEOUT_S  = float(os.getenv("VEIL_LOCK_TIMEOUT_S", "10"))


class RecordStore(ABC):

    @abstractmethod
    def find_by_hash(self, table: str, key: str) -> Optional[dict]:
        ...

    @abstractmethod
    def insert(self, table: str, key: str, record: dict) -> dict:
        ...

    @abstractmethod
    def update(self, table: str, key: str, patch: dict) -> dict:
        ...

    @abstractmethod
    def delete(self, table: str, key: str) -> bool:
        ...

    @abstractmethod
    def lock(self, table: str, key: str):
        ...

    @abstractmethod
    def scan(self, table: str) -> Iterator[dict]:
        ...


# ══════════════════════════════════════════════════════════════════════════════
#  In-memory backend
# ══════════════════════════════════════════════════════════════════════════════

class InMemoryStore(RecordStore):

    def __init__(self):
        self._tables: Dict[str, Dict[str, dict]] = {}
        self._seq:    Dict[str, int]             = {}
        self._mutex = threading.Lock()
        # Entries vanish once no caller holds the lock
        self._key_locks: "weakref.WeakValueDictionary[Tuple[str, str], threading.RLock]" = (
            weakref.WeakValueDictionary()
        )

    def find_by_hash(self, table: str, key: str) -> Optional[dict]:
        with self._mutex:
            record = self._tables.get(table, {}).get(key)
            return copy.deepcopy(record) if record is not None else None

    def insert(self, table: str, key: str, record: dict) -> dict:
        with self._mutex:
            rows = self._tables.setdefault(table, {})
            if key in rows:
                raise DuplicateRecordError(table, key)
            self._seq[table] = self._seq.get(table, 0) + 1
            stored = {**copy.deepcopy(record), "id": self._seq[table]}
            rows[key] = stored
            return copy.deepcopy(stored)

    def update(self, table: str, key: str, patch: dict) -> dict:
        with self._mutex:
            rows = self._tables.get(table, {})
            if key not in rows:
                raise RecordNotFoundError(table, key)
            rows[key] = {**rows[key], **copy.deepcopy(patch)}
            return copy.deepcopy(rows[key])

    def delete(self, table: str, key: str) -> bool:
        with self._mutex:
            return self._tables.get(table, {}).pop(key, None) is not None

    def lock(self, table: str, key: str) -> threading.RLock:
        with self._mutex:
            lock = self._key_locks.get((table, key))
            if lock is None:
                lock = threading.RLock()
                self._key_locks[(table, key)] = lock
            return lock

    def scan(self, table: str) -> Iterator[dict]:
        with self._mutex:
            rows = [copy.deepcopy(r) for r in self._tables.get(table, {}).values()]
        return iter(sorted(rows, key=lambda r: r["id"]))


# ══════════════════════════════════════════════════════════════════════════════
#  Redis backend
# ══════════════════════════════════════════════════════════════════════════════

class RedisStore(RecordStore):
    """
    Layout:
      {prefix}:{table}:{key}   JSON record
      {prefix}:seq:{table}     INCR counter for ids
      {prefix}:index:{table}   SET of keys, used by scan()
      {prefix}:lock:{table}:{key}
    """

    def __init__(self, client: redis.Redis, prefix: str = REDIS_PREFIX):
        self.client = client
        self.prefix = prefix

    def _key(self, table: str, key: str) -> str:
        return f"{self.prefix}:{table}:{key}"

    def find_by_hash(self, table: str, key: str) -> Optional[dict]:
        raw = self.client.get(self._key(table, key))
        return json.loads(raw) if raw else None

    def insert(self, table: str, key: str, record: dict) -> dict:
        rid    = int(self.client.incr(f"{self.prefix}:seq:{table}"))
        stored = {**record, "id": rid}
        if not self.client.set(self._key(table, key), json.dumps(stored), nx=True):
            raise DuplicateRecordError(table, key)
        self.client.sadd(f"{self.prefix}:index:{table}", key)
        return stored

    def update(self, table: str, key: str, patch: dict) -> dict:
        rkey = self._key(table, key)

        def _apply(pipe) -> dict:
            raw = pipe.get(rkey)
            if raw is None:
                raise RecordNotFoundError(table, key)
            merged = {**json.loads(raw), **patch}
            pipe.multi()
            pipe.set(rkey, json.dumps(merged))
            return merged

        return self.client.transaction(_apply, rkey, value_from_callable=True)

    def delete(self, table: str, key: str) -> bool:
        removed = self.client.delete(self._key(table, key))
        self.client.srem(f"{self.prefix}:index:{table}", key)
        return bool(removed)

    def lock(self, table: str, key: str):
        return self.client.lock(
            f"{self.prefix}:lock:{table}:{key}",
            timeout=LOCK_TIMEOUT_S,
            blocking_timeout=LOCK_TIMEOUT_S,
        )

    def scan(self, table: str) -> Iterator[dict]:
        rows = []
        for key in self.client.smembers(f"{self.prefix}:index:{table}"):
            raw = self.client.get(self._key(table, key))
            if raw:
                rows.append(json.loads(raw))
        return iter(sorted(rows, key=lambda r: r["id"]))


def build_store_from_env() -> RecordStore:
    if STORE_BACKEND == "redis":
        client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
        try:
            client.ping()
        except redis.ConnectionError as e:
            logger.warning(f"[STORE] Redis at {REDIS_URL} not reachable yet: {e}")
        logger.info(f"[STORE] Using Redis backend ({REDIS_URL})")
        return RedisStore(client)
    logger.info("[STORE] Using in-memory backend")
    return InMemoryStore()
