"""
VEIL - Strike Tracker

Append-only abuse strikes per anonymous commitment. Whether a record counts
as banned is decided by an injected ban policy; the tracker only stamps
banned_at the first time the policy says so.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from engine.content_hasher import hash_content
from engine.errors import DuplicateRecordError
from engine.storage import RecordStore

logger = logging.getLogger("veil.strikes")

STRIKE_BAN_THRESHOLD = int(os.getenv("VEIL_STRIKE_BAN_THRESHOLD", "5"))
TABLE = "strikes"


def derive_anonymous_commitment(anonymous_id: str) -> str:
    return hash_content(f"veil/strike/v1|{anonymous_id}")


@dataclass
class StrikeRecord:
    anonymous_commitment: str
    strike_count:         int = 0
    reasons:              List[str] = field(default_factory=list)
    last_strike_at:       Optional[str] = None
    banned_at:            Optional[str] = None

    @property
    def is_banned(self) -> bool:
        return self.banned_at is not None

    def to_dict(self) -> dict:
        return {
            "anonymousCommitment": self.anonymous_commitment,
            "strikeCount":         self.strike_count,
            "reasons":             list(self.reasons),
            "lastStrikeAt":        self.last_strike_at,
            "bannedAt":            self.banned_at,
        }

    @classmethod
    def from_row(cls, row: dict) -> "StrikeRecord":
        return cls(
            anonymous_commitment = row["anonymousCommitment"],
            strike_count         = int(row["strikeCount"]),
            reasons              = list(row["reasons"]),
            last_strike_at       = row.get("lastStrikeAt"),
            banned_at            = row.get("bannedAt"),
        )


BanPolicy = Callable[[StrikeRecord], bool]


def threshold_ban_policy(threshold: int = STRIKE_BAN_THRESHOLD) -> BanPolicy:
    def _policy(record: StrikeRecord) -> bool:
        return record.strike_count >= threshold
    return _policy


class StrikeTracker:

    def __init__(self, store: RecordStore, ban_policy: Optional[BanPolicy] = None):
        self.store      = store
        self.ban_policy = ban_policy

    def add_strike(self, commitment: str, reason: str) -> StrikeRecord:
        if not commitment:
            raise ValueError("commitment must be non-empty")

        now = datetime.now(timezone.utc).isoformat()
        with self.store.lock(TABLE, commitment):
            row = self.store.find_by_hash(TABLE, commitment)
            if row is None:
                try:
                    row = self.store.insert(TABLE, commitment, StrikeRecord(commitment).to_dict())
                except DuplicateRecordError:
                    row = self.store.find_by_hash(TABLE, commitment)

            record = StrikeRecord.from_row(row)
            record.strike_count  += 1
            record.reasons.append(reason)
            record.last_strike_at = now
            if record.banned_at is None and self.ban_policy and self.ban_policy(record):
                record.banned_at = now
                logger.warning(f"[STRIKES] {commitment[:12]}… banned after {record.strike_count} strikes")

            self.store.update(TABLE, commitment, record.to_dict())

        logger.info(f"[STRIKES] {commitment[:12]}… strike #{record.strike_count}: {reason}")
        return record

    def check_strikes(self, commitment: str) -> Optional[StrikeRecord]:
        row = self.store.find_by_hash(TABLE, commitment)
        return StrikeRecord.from_row(row) if row else None
