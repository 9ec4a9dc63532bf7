"""
VEIL - NullifierRegistry Unit Tests
pytest test suite

Coverage:
  - Domain-separated derivation per kind
  - First registration accepted, second rejected, first record untouched
  - Concurrent registration of one nullifier: exactly one acceptance
  - Reputation kind carries no nullifier
"""

import os
import sys
from concurrent.futures import ThreadPoolExecutor

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.errors import DuplicateNullifierError
from engine.nullifier_registry import (
    NullifierKind,
    NullifierRegistry,
    derive_nullifier,
)
from engine.storage import InMemoryStore


class TestDerivation:

    def test_deterministic(self):
        a = derive_nullifier(NullifierKind.DUPLICATE_ITEM, "img", "user")
        b = derive_nullifier(NullifierKind.DUPLICATE_ITEM, "img", "user")
        assert a == b and len(a) == 64

    def test_kinds_are_separated(self):
        item = derive_nullifier(NullifierKind.DUPLICATE_ITEM, "x", "y")
        loc  = derive_nullifier(NullifierKind.LOCATION_CLAIM, "x", "y")
        assert item != loc

    def test_reputation_has_none(self):
        assert derive_nullifier(NullifierKind.REPUTATION_CLAIM, "user") is None


class TestRegister:

    def setup_method(self):
        self.registry  = NullifierRegistry(InMemoryStore())
        self.nullifier = derive_nullifier(NullifierKind.DUPLICATE_ITEM, "img", "user")

    def test_first_registration_accepted(self):
        record = self.registry.register(self.nullifier, metadata={"pick": 1})
        assert record.kind == "duplicate-item"
        assert self.registry.is_registered(self.nullifier)

    def test_duplicate_rejected_without_mutation(self):
        first = self.registry.register(self.nullifier, metadata={"pick": 1})
        with pytest.raises(DuplicateNullifierError) as exc:
            self.registry.register(self.nullifier, metadata={"pick": 2})
        assert exc.value.nullifier == self.nullifier

        stored = self.registry.lookup(self.nullifier)
        assert stored.metadata == {"pick": 1}
        assert stored.registered_at == first.registered_at

    def test_same_value_in_other_namespace_is_independent(self):
        self.registry.register(self.nullifier, NullifierKind.DUPLICATE_ITEM)
        self.registry.register(self.nullifier, NullifierKind.LOCATION_CLAIM)
        assert self.registry.is_registered(self.nullifier, NullifierKind.LOCATION_CLAIM)

    def test_release_allows_reregistration(self):
        self.registry.register(self.nullifier)
        assert self.registry.release(self.nullifier) is True
        assert not self.registry.is_registered(self.nullifier)
        assert self.registry.release(self.nullifier) is False
        self.registry.register(self.nullifier)

    def test_release_is_per_namespace(self):
        self.registry.register(self.nullifier, NullifierKind.DUPLICATE_ITEM)
        self.registry.register(self.nullifier, NullifierKind.LOCATION_CLAIM)
        self.registry.release(self.nullifier, NullifierKind.LOCATION_CLAIM)
        assert self.registry.is_registered(self.nullifier, NullifierKind.DUPLICATE_ITEM)

    def test_unknown_is_not_registered(self):
        assert not self.registry.is_registered("f" * 64)
        assert self.registry.lookup("f" * 64) is None

    def test_reputation_kind_refused(self):
        with pytest.raises(ValueError):
            self.registry.register("a" * 64, NullifierKind.REPUTATION_CLAIM)

    def test_empty_nullifier_refused(self):
        with pytest.raises(ValueError):
            self.registry.register("")


class TestConcurrency:

    def test_exactly_one_acceptance(self):
        registry  = NullifierRegistry(InMemoryStore())
        nullifier = derive_nullifier(NullifierKind.DUPLICATE_ITEM, "race", "user")

        def _attempt(i):
            try:
                registry.register(nullifier, metadata={"attempt": i})
                return True
            except DuplicateNullifierError:
                return False

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(_attempt, range(64)))

        assert results.count(True) == 1
        winner = results.index(True)
        assert registry.lookup(nullifier).metadata == {"attempt": winner}
