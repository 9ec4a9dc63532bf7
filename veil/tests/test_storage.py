"""
VEIL - RecordStore Unit Tests
pytest test suite

Coverage:
  - InMemoryStore: insert-if-absent, ids, update, copies, scan order
  - RedisStore: SET NX insert, WATCH/MULTI update, scan, lock (mocked client)
"""

import json
import os
import sys
from unittest import mock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.errors import DuplicateRecordError, RecordNotFoundError
from engine.storage import InMemoryStore, RedisStore


class TestInMemoryStore:

    def setup_method(self):
        self.store = InMemoryStore()

    def test_insert_assigns_ids(self):
        assert self.store.insert("t", "a", {"v": 1})["id"] == 1
        assert self.store.insert("t", "b", {"v": 2})["id"] == 2
        assert self.store.insert("other", "a", {"v": 3})["id"] == 1

    def test_duplicate_insert(self):
        self.store.insert("t", "a", {"v": 1})
        with pytest.raises(DuplicateRecordError):
            self.store.insert("t", "a", {"v": 2})
        assert self.store.find_by_hash("t", "a")["v"] == 1

    def test_update_merges(self):
        self.store.insert("t", "a", {"v": 1, "w": 1})
        assert self.store.update("t", "a", {"v": 5}) == {"v": 5, "w": 1, "id": 1}

    def test_update_missing(self):
        with pytest.raises(RecordNotFoundError):
            self.store.update("t", "missing", {"v": 1})

    def test_returns_copies(self):
        self.store.insert("t", "a", {"items": [1]})
        self.store.find_by_hash("t", "a")["items"].append(2)
        assert self.store.find_by_hash("t", "a")["items"] == [1]

    def test_scan_in_insert_order(self):
        for key in ["z", "y", "x"]:
            self.store.insert("t", key, {"k": key})
        assert [r["k"] for r in self.store.scan("t")] == ["z", "y", "x"]

    def test_lock_is_per_key(self):
        held = self.store.lock("t", "a")
        assert self.store.lock("t", "a") is held
        assert self.store.lock("t", "b") is not held

    def test_lock_map_does_not_grow(self):
        for i in range(100):
            with self.store.lock("identities", f"missing-{i}"):
                pass
        assert len(self.store._key_locks) == 0

    def test_delete(self):
        self.store.insert("t", "a", {"v": 1})
        assert self.store.delete("t", "a") is True
        assert self.store.find_by_hash("t", "a") is None
        assert self.store.delete("t", "a") is False
        assert self.store.delete("other", "a") is False

    def test_key_reusable_after_delete(self):
        self.store.insert("t", "a", {"v": 1})
        self.store.delete("t", "a")
        assert self.store.insert("t", "a", {"v": 2})["v"] == 2


class TestRedisStore:

    def setup_method(self):
        self.client = mock.MagicMock()
        self.store  = RedisStore(self.client, prefix="test")

    def test_insert_uses_set_nx(self):
        self.client.incr.return_value = 7
        self.client.set.return_value  = True

        stored = self.store.insert("picks", "abc", {"v": 1})

        assert stored == {"v": 1, "id": 7}
        self.client.set.assert_called_once_with("test:picks:abc", json.dumps(stored), nx=True)
        self.client.sadd.assert_called_once_with("test:index:picks", "abc")

    def test_insert_duplicate(self):
        self.client.incr.return_value = 8
        self.client.set.return_value  = None
        with pytest.raises(DuplicateRecordError):
            self.store.insert("picks", "abc", {"v": 1})
        self.client.sadd.assert_not_called()

    def test_find(self):
        self.client.get.return_value = json.dumps({"v": 1, "id": 1})
        assert self.store.find_by_hash("picks", "abc") == {"v": 1, "id": 1}
        self.client.get.return_value = None
        assert self.store.find_by_hash("picks", "nope") is None

    def _run_transaction(self, existing):
        pipe = mock.MagicMock()
        pipe.get.return_value = existing
        self.client.transaction.side_effect = lambda func, *keys, **kw: func(pipe)
        return pipe

    def test_update(self):
        pipe = self._run_transaction(json.dumps({"v": 1, "id": 3}))
        merged = self.store.update("picks", "abc", {"v": 2})
        assert merged == {"v": 2, "id": 3}
        pipe.multi.assert_called_once()
        pipe.set.assert_called_once_with("test:picks:abc", json.dumps(merged))

    def test_update_missing(self):
        pipe = self._run_transaction(None)
        with pytest.raises(RecordNotFoundError):
            self.store.update("picks", "abc", {"v": 2})
        pipe.set.assert_not_called()

    def test_scan_sorted_by_id(self):
        records = {
            "test:t:a": json.dumps({"k": "a", "id": 2}),
            "test:t:b": json.dumps({"k": "b", "id": 1}),
        }
        self.client.smembers.return_value = {"a", "b"}
        self.client.get.side_effect = records.get
        assert [r["k"] for r in self.store.scan("t")] == ["b", "a"]

    def test_delete(self):
        self.client.delete.return_value = 1
        assert self.store.delete("picks", "abc") is True
        self.client.delete.assert_called_once_with("test:picks:abc")
        self.client.srem.assert_called_once_with("test:index:picks", "abc")

    def test_delete_missing(self):
        self.client.delete.return_value = 0
        assert self.store.delete("picks", "abc") is False

    def test_lock(self):
        self.store.lock("identities", "h")
        name = self.client.lock.call_args[0][0]
        assert name == "test:lock:identities:h"
