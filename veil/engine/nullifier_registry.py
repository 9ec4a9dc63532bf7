"""
VEIL - Nullifier Registry

A nullifier is a one-way tag that lets the pipeline say "this was already
claimed" without learning who claimed it. Each kind hashes under its own
domain tag, so the same inputs never collide across namespaces:

    veil/nullifier/duplicate-item/v1    item hash + anonymous identity
    veil/nullifier/location-claim/v1    identity + coarse location + timestamp
    reputation-claim                    no nullifier (proofs are repeatable)

Registration is at-most-once per (kind, nullifier). It relies on the store's
atomic insert-if-absent, so two concurrent registrations of the same value
yield exactly one acceptance.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from engine.content_hasher import hash_content
from engine.errors import DuplicateNullifierError, DuplicateRecordError
from engine.storage import RecordStore

logger = logging.getLogger("veil.nullifier")

TABLE = "nullifiers"


class NullifierKind(str, Enum):
    DUPLICATE_ITEM   = "duplicate-item"
    LOCATION_CLAIM   = "location-claim"
    REPUTATION_CLAIM = "reputation-claim"


UNSALTED_KINDS = {NullifierKind.REPUTATION_CLAIM}


def domain_tag(kind: NullifierKind) -> str:
    return f"veil/nullifier/{kind.value}/v1"


def derive_nullifier(kind: NullifierKind, *parts: Any) -> Optional[str]:
    """
    Hash `parts` under the kind's domain tag.
    Returns None for kinds that carry no nullifier.
    """
    kind = NullifierKind(kind)
    if kind in UNSALTED_KINDS:
        return None
    return hash_content("|".join([domain_tag(kind), *(str(p) for p in parts)]))


@dataclass
class NullifierRecord:
    kind:          str
    nullifier:     str
    registered_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    metadata:      Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class NullifierRegistry:

    def __init__(self, store: RecordStore):
        self.store = store

    @staticmethod
    def _key(nullifier: str, kind: NullifierKind) -> str:
        return f"{kind.value}:{nullifier.lower()}"

    def register(
        self,
        nullifier: str,
        kind:      NullifierKind = NullifierKind.DUPLICATE_ITEM,
        metadata:  Optional[Dict[str, Any]] = None,
    ) -> NullifierRecord:
        kind = NullifierKind(kind)
        if kind in UNSALTED_KINDS:
            raise ValueError(f"{kind.value} proofs carry no nullifier")
        if not nullifier:
            raise ValueError("nullifier must be a non-empty hex string")

        record = NullifierRecord(kind=kind.value, nullifier=nullifier.lower(), metadata=metadata or {})
        try:
            self.store.insert(TABLE, self._key(nullifier, kind), record.to_dict())
        except DuplicateRecordError:
            logger.warning(f"[NULLIFIER] Rejected duplicate {kind.value} nullifier {nullifier[:12]}…")
            raise DuplicateNullifierError(kind.value, nullifier)

        logger.info(f"[NULLIFIER] Registered {kind.value} nullifier {nullifier[:12]}…")
        return record

    def release(
        self,
        nullifier: str,
        kind:      NullifierKind = NullifierKind.DUPLICATE_ITEM,
    ) -> bool:
        """Drop a registration whose unit of work failed before completing."""
        kind    = NullifierKind(kind)
        removed = self.store.delete(TABLE, self._key(nullifier, kind))
        if removed:
            logger.warning(f"[NULLIFIER] Released {kind.value} nullifier {nullifier[:12]}…")
        return removed

    def lookup(
        self,
        nullifier: str,
        kind:      NullifierKind = NullifierKind.DUPLICATE_ITEM,
    ) -> Optional[NullifierRecord]:
        kind = NullifierKind(kind)
        row  = self.store.find_by_hash(TABLE, self._key(nullifier, kind))
        if row is None:
            return None
        return NullifierRecord(
            kind          = row["kind"],
            nullifier     = row["nullifier"],
            registered_at = row["registered_at"],
            metadata      = row.get("metadata", {}),
        )

    def is_registered(
        self,
        nullifier: str,
        kind:      NullifierKind = NullifierKind.DUPLICATE_ITEM,
    ) -> bool:
        return self.lookup(nullifier, kind) is not None
