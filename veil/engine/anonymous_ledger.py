"""
VEIL - Anonymous Ledger

Balances and action counts keyed by an anonymous public hash. No real-world
identifier is ever stored; an identity is found only by its public hash.

  - balance is an int with 18 implied decimals (1 point = 10**18 units)
  - recovery phrases are 12 BIP-39 English words; only their salted hash is
    kept, as the identity's public hash
  - every read-modify-write runs under the store's per-key lock and lands in
    a single update() call

Also home to RewardAccumulator, the per-reward-hash aggregate the submission
pipeline accrues into.
"""

import logging
import os
import re
import secrets
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

from mnemonic import Mnemonic

from engine.content_hasher import hash_content
from engine.errors import (
    DuplicateRecordError,
    IdentityNotFoundError,
    InsufficientBalanceError,
)
from engine.storage import RecordStore

logger = logging.getLogger("veil.ledger")

# ── Configuration ──────────────────────────────────────────────────────────────
RECOVERY_SALT  = os.getenv("VEIL_RECOVERY_SALT", "oxycollect-midnight-salt")
TOKEN_SYMBOL   = os.getenv("VEIL_TOKEN_SYMBOL", "OXY")
TOKEN_DECIMALS = 18
UNIT           = 10 ** TOKEN_DECIMALS
PHRASE_STRENGTH_BITS = 128   # 12 words

IDENTITY_TABLE = "identities"
REWARD_TABLE   = "rewards"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_phrase(phrase: str) -> str:
    return re.sub(r"\s+", " ", phrase.strip().lower())


def derive_public_hash(phrase: str) -> str:
    return hash_content(normalize_phrase(phrase) + RECOVERY_SALT)


def format_balance(balance: int) -> str:
    whole, frac = divmod(balance, UNIT)
    return f"{whole}.{frac // 10 ** (TOKEN_DECIMALS - 2):02d} {TOKEN_SYMBOL}"


@dataclass
class AnonymousIdentity:
    public_hash:   str
    balance:       int
    total_actions: int
    created_at:    str
    last_active:   str

    def to_dict(self) -> dict:
        return {
            "publicHash":   self.public_hash,
            "balance":      self.balance,
            "totalActions": self.total_actions,
            "createdAt":    self.created_at,
            "lastActive":   self.last_active,
        }

    @classmethod
    def from_row(cls, row: dict) -> "AnonymousIdentity":
        return cls(
            public_hash   = row["publicHash"],
            balance       = int(row["balance"]),
            total_actions = int(row["totalActions"]),
            created_at    = row["createdAt"],
            last_active   = row["lastActive"],
        )


@dataclass(frozen=True)
class RecoveryMaterial:
    recovery_phrase: str
    public_hash:     str
    instructions:    str = (
        "Write these 12 words down and keep them offline. They are the only way "
        "to recover this identity; they are never stored."
    )


@dataclass
class GlobalStats:
    total_identities: int
    total_balance:    int
    total_actions:    int
    average_actions:  float

    def to_dict(self) -> dict:
        return {
            "totalAnonymousUsers":   self.total_identities,
            "totalTokens":           str(self.total_balance),
            "totalTokensFormatted":  format_balance(self.total_balance),
            "totalActions":          self.total_actions,
            "averageActionsPerUser": self.average_actions,
        }


class AnonymousLedger:

    def __init__(self, store: RecordStore, language: str = "english"):
        self.store  = store
        self._mnemo = Mnemonic(language)

    # ── Identities ─────────────────────────────────────────────────────────────
    def create(self, with_recovery: bool = False) -> Tuple[AnonymousIdentity, Optional[RecoveryMaterial]]:
        recovery = None
        if with_recovery:
            phrase      = self._mnemo.generate(strength=PHRASE_STRENGTH_BITS)
            public_hash = derive_public_hash(phrase)
            recovery    = RecoveryMaterial(recovery_phrase=phrase, public_hash=public_hash)
        else:
            public_hash = hash_content(secrets.token_bytes(32))

        now = _utcnow()
        identity = AnonymousIdentity(
            public_hash   = public_hash,
            balance       = 0,
            total_actions = 0,
            created_at    = now,
            last_active   = now,
        )
        self.store.insert(IDENTITY_TABLE, public_hash, identity.to_dict())
        logger.info(f"[LEDGER] Created identity {public_hash[:12]}… (recovery={with_recovery})")
        return identity, recovery

    def get(self, public_hash: str) -> Optional[AnonymousIdentity]:
        row = self.store.find_by_hash(IDENTITY_TABLE, public_hash)
        return AnonymousIdentity.from_row(row) if row else None

    def recover(self, phrase: str) -> Optional[AnonymousIdentity]:
        if not self._mnemo.check(normalize_phrase(phrase)):
            logger.info("[LEDGER] Recovery rejected: phrase is not a valid 12-word mnemonic")
            return None

        public_hash = derive_public_hash(phrase)
        with self.store.lock(IDENTITY_TABLE, public_hash):
            if self.store.find_by_hash(IDENTITY_TABLE, public_hash) is None:
                logger.info(f"[LEDGER] Recovery found no identity for {public_hash[:12]}…")
                return None
            row = self.store.update(IDENTITY_TABLE, public_hash, {"lastActive": _utcnow()})
        logger.info(f"[LEDGER] Recovered identity {public_hash[:12]}…")
        return AnonymousIdentity.from_row(row)

    # ── Mutations ──────────────────────────────────────────────────────────────
    def reward(self, public_hash: str, points: int) -> bool:
        if points < 0:
            raise ValueError(f"points must be non-negative, got {points}")

        with self.store.lock(IDENTITY_TABLE, public_hash):
            row = self.store.find_by_hash(IDENTITY_TABLE, public_hash)
            if row is None:
                logger.warning(f"[LEDGER] Reward skipped: unknown identity {public_hash[:12]}…")
                return False
            self.store.update(IDENTITY_TABLE, public_hash, {
                "balance":      int(row["balance"]) + points * UNIT,
                "totalActions": int(row["totalActions"]) + 1,
                "lastActive":   _utcnow(),
            })
        logger.info(f"[LEDGER] +{points} points → {public_hash[:12]}…")
        return True

    def transfer_or_raise(self, from_hash: str, to_hash: str, amount: int) -> None:
        """
        Move `amount` base units between identities, all or nothing.
        Raises IdentityNotFoundError / InsufficientBalanceError.
        """
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        if from_hash == to_hash:
            raise ValueError("cannot transfer to the same identity")

        with ExitStack() as stack:
            for key in sorted((from_hash, to_hash)):
                stack.enter_context(self.store.lock(IDENTITY_TABLE, key))

            src = self.store.find_by_hash(IDENTITY_TABLE, from_hash)
            if src is None:
                raise IdentityNotFoundError(from_hash)
            dst = self.store.find_by_hash(IDENTITY_TABLE, to_hash)
            if dst is None:
                raise IdentityNotFoundError(to_hash)

            src_balance = int(src["balance"])
            if src_balance < amount:
                raise InsufficientBalanceError(from_hash, src_balance, amount)

            now = _utcnow()
            self.store.update(IDENTITY_TABLE, from_hash, {
                "balance": src_balance - amount, "lastActive": now,
            })
            try:
                self.store.update(IDENTITY_TABLE, to_hash, {
                    "balance": int(dst["balance"]) + amount, "lastActive": now,
                })
            except Exception:
                logger.error(f"[LEDGER] Credit to {to_hash[:12]}… failed; restoring debit", exc_info=True)
                self.store.update(IDENTITY_TABLE, from_hash, {
                    "balance": src_balance, "lastActive": src["lastActive"],
                })
                raise

        logger.info(f"[LEDGER] Transfer {amount} units {from_hash[:12]}… → {to_hash[:12]}…")

    def transfer(self, from_hash: str, to_hash: str, amount: int) -> bool:
        """
        Boolean form of transfer_or_raise. Any refused transfer returns False:
        non-positive amount, same identity, unknown identity, short balance.
        """
        if amount <= 0 or from_hash == to_hash:
            logger.info(f"[LEDGER] Transfer refused: amount={amount}, same identity={from_hash == to_hash}")
            return False
        try:
            self.transfer_or_raise(from_hash, to_hash, amount)
        except (IdentityNotFoundError, InsufficientBalanceError) as e:
            logger.info(f"[LEDGER] Transfer refused: {e}")
            return False
        return True

    # ── Reads ──────────────────────────────────────────────────────────────────
    def stats(self, public_hash: str) -> Optional[dict]:
        identity = self.get(public_hash)
        if identity is None:
            return None
        return {
            **identity.to_dict(),
            "balance":          str(identity.balance),
            "balanceFormatted": format_balance(identity.balance),
        }

    def aggregate(self) -> GlobalStats:
        count = balance = actions = 0
        for row in self.store.scan(IDENTITY_TABLE):
            count   += 1
            balance += int(row["balance"])
            actions += int(row["totalActions"])
        return GlobalStats(
            total_identities = count,
            total_balance    = balance,
            total_actions    = actions,
            average_actions  = round(actions / count, 2) if count else 0.0,
        )


# ══════════════════════════════════════════════════════════════════════════════
#  Reward aggregate
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class AnonymousReward:
    reward_hash:      str
    total_points:     int
    total_picks:      int
    commitment:       str
    last_activity_at: str

    def to_dict(self) -> dict:
        return {
            "rewardHash":     self.reward_hash,
            "totalPoints":    self.total_points,
            "totalPicks":     self.total_picks,
            "commitment":     self.commitment,
            "lastActivityAt": self.last_activity_at,
        }

    @classmethod
    def from_row(cls, row: dict) -> "AnonymousReward":
        return cls(
            reward_hash      = row["rewardHash"],
            total_points     = int(row["totalPoints"]),
            total_picks      = int(row["totalPicks"]),
            commitment       = row["commitment"],
            last_activity_at = row["lastActivityAt"],
        )


class RewardAccumulator:
    """Created on the first reward for a hash, incremented afterwards."""

    def __init__(self, store: RecordStore):
        self.store = store

    def accrue(self, reward_hash: str, points: int, commitment_hash: str) -> AnonymousReward:
        now = _utcnow()
        with self.store.lock(REWARD_TABLE, reward_hash):
            row = self.store.find_by_hash(REWARD_TABLE, reward_hash)
            if row is None:
                try:
                    row = self.store.insert(REWARD_TABLE, reward_hash, {
                        "rewardHash":     reward_hash,
                        "totalPoints":    points,
                        "totalPicks":     1,
                        "commitment":     commitment_hash[:64],
                        "lastActivityAt": now,
                    })
                    return AnonymousReward.from_row(row)
                except DuplicateRecordError:
                    row = self.store.find_by_hash(REWARD_TABLE, reward_hash)
            row = self.store.update(REWARD_TABLE, reward_hash, {
                "totalPoints":    int(row["totalPoints"]) + points,
                "totalPicks":     int(row["totalPicks"]) + 1,
                "lastActivityAt": now,
            })
        return AnonymousReward.from_row(row)

    def revert(self, reward_hash: str, points: int) -> None:
        """Undo one accrue(); the row disappears with its last pick."""
        with self.store.lock(REWARD_TABLE, reward_hash):
            row = self.store.find_by_hash(REWARD_TABLE, reward_hash)
            if row is None:
                return
            if int(row["totalPicks"]) <= 1:
                self.store.delete(REWARD_TABLE, reward_hash)
            else:
                self.store.update(REWARD_TABLE, reward_hash, {
                    "totalPoints": int(row["totalPoints"]) - points,
                    "totalPicks":  int(row["totalPicks"]) - 1,
                })
        logger.warning(f"[REWARD] Reverted {points} pts from {reward_hash[:12]}…")

    def lookup(self, reward_hash: str) -> Optional[AnonymousReward]:
        row = self.store.find_by_hash(REWARD_TABLE, reward_hash)
        return AnonymousReward.from_row(row) if row else None
