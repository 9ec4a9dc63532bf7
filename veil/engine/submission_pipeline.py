"""
VEIL - Anonymous Submission Pipeline

submit() order of operations:
  1. Validate input (nothing hashed or stored on failure)
  2. Derive the submitter's anonymous id; refuse banned submitters
  3. Hash + classify the image, build the commitment
  4. Strip image metadata, then register the duplicate-item nullifier
  5. Persist the pick (keyed by image hash, published under a per-pick pseudonym)
  6. Accrue the anonymous reward aggregate, then optionally credit the ledger

Steps 4-6 form one unit: if a later step fails, the earlier writes are
deleted again so the same submission can be retried.

Claim proofs (location, unique item, reputation) and the public read models
(map, stats, reward lookup) are exposed here as well.
"""

import logging
import os
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union

from engine.anonymous_ledger import UNIT, AnonymousLedger, AnonymousReward, RewardAccumulator
from engine.classifier import HashDerivedClassifier, points_for
from engine.content_hasher import hash_content
from engine.errors import (
    DuplicateNullifierError,
    DuplicateRecordError,
    DuplicateSubmissionError,
    IdentityNotFoundError,
    InvalidSubmissionError,
    PickNotFoundError,
    SubmissionBlockedError,
)
from engine.geo_anonymizer import GeoAnonymizer, PrivacyLevel, parse_privacy_level, validate_coordinates
from engine.image_sanitizer import to_data_url
from engine.nullifier_registry import NullifierKind, NullifierRegistry
from engine.storage import RecordStore
from engine.strike_tracker import (
    StrikeRecord,
    StrikeTracker,
    derive_anonymous_commitment,
    threshold_ban_policy,
)
from zkp.commitment_builder import (
    ClaimProof,
    CommitmentBuilder,
    DuplicateItemClaim,
    LocationClaim,
    ReputationClaim,
    Submission,
    derive_anonymous_id,
)

logger = logging.getLogger("veil.pipeline")

MAX_IMAGE_BYTES = int(os.getenv("VEIL_MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))
MAP_LIMIT       = 100

PICK_TABLE  = "picks"
CLAIM_TABLE = "claims"


def derive_pick_pseudonym(anonymous_id: str, image_hash: str) -> str:
    """Public handle for one pick; two picks by the same submitter never share it."""
    return hash_content(f"veil/pick/v1|{anonymous_id}|{image_hash}")


@dataclass
class SubmissionResult:
    pick_id:          int
    reward_hash:      str
    points:           int
    classification:   str
    confidence:       float
    commitment_hash:  str
    accuracy_km:      float
    ledger_credited:  bool = False

    def to_dict(self) -> dict:
        return {
            "pickId":          self.pick_id,
            "rewardHash":      self.reward_hash,
            "points":          self.points,
            "classification":  self.classification,
            "confidence":      self.confidence,
            "commitmentHash":  self.commitment_hash,
            "accuracyKm":      self.accuracy_km,
            "ledgerCredited":  self.ledger_credited,
        }


class SubmissionPipeline:

    def __init__(
        self,
        store:      RecordStore,
        classifier=None,
        anonymizer: Optional[GeoAnonymizer] = None,
        clock:      Callable[[], float] = time.time,
    ):
        self.store      = store
        self.clock      = clock
        self.classifier = classifier or HashDerivedClassifier()
        self.builder    = CommitmentBuilder(anonymizer=anonymizer, clock=clock)
        self.registry   = NullifierRegistry(store)
        self.ledger     = AnonymousLedger(store)
        self.rewards    = RewardAccumulator(store)
        self.strikes    = StrikeTracker(store, ban_policy=threshold_ban_policy())

    # ── Submission ─────────────────────────────────────────────────────────────
    def submit(
        self,
        image_bytes:   bytes,
        latitude:      float,
        longitude:     float,
        user_secret:   Optional[str] = None,
        privacy_level: Union[str, PrivacyLevel] = PrivacyLevel.ANONYMOUS,
        public_hash:   Optional[str] = None,
    ) -> SubmissionResult:
        if not image_bytes:
            raise InvalidSubmissionError("Image payload is empty", field="image")
        if len(image_bytes) > MAX_IMAGE_BYTES:
            raise InvalidSubmissionError(
                f"Image too large: {len(image_bytes):,} bytes (max {MAX_IMAGE_BYTES:,})",
                field="image",
            )
        level = parse_privacy_level(privacy_level)
        validate_coordinates(latitude, longitude)

        anonymous_id = derive_anonymous_id(user_secret)
        strike_key   = derive_anonymous_commitment(anonymous_id)
        record       = self.strikes.check_strikes(strike_key)
        if record is not None and record.is_banned:
            logger.warning(f"[SUBMIT] Blocked submitter {strike_key[:12]}… ({record.strike_count} strikes)")
            raise SubmissionBlockedError(strike_key, record.strike_count)

        image_hash     = hash_content(image_bytes)
        classification = self.classifier.classify(image_hash, image_bytes)
        commitment     = self.builder.build(
            Submission(
                image_bytes  = image_bytes,
                latitude     = latitude,
                longitude    = longitude,
                anonymous_id = anonymous_id,
                user_secret  = user_secret,
            ),
            level,
            classification,
        )

        if self.store.find_by_hash(PICK_TABLE, image_hash) is not None:
            logger.info(f"[SUBMIT] Duplicate image {image_hash[:12]}…")
            raise DuplicateSubmissionError(image_hash)

        # Sanitize before anything is registered so a rejected image leaves no trace
        image_data = to_data_url(image_bytes)
        points     = points_for(classification.label)
        # A secret gives a stable reward hash; without one every pick stands alone
        reward_hash = anonymous_id if user_secret else hash_content(f"anonymous_{commitment.commitment_hash}")

        try:
            self.registry.register(
                commitment.nullifier,
                NullifierKind.DUPLICATE_ITEM,
                {"commitment": commitment.commitment_hash[:64]},
            )
        except DuplicateNullifierError:
            raise DuplicateSubmissionError(image_hash)

        pick = None
        try:
            pick = self.store.insert(PICK_TABLE, image_hash, {
                "imageHash":        image_hash,
                "imageData":        image_data,
                "classification":   classification.label,
                "locationRange":    commitment.location_range.to_dict(),
                "anonymousHash":    derive_pick_pseudonym(anonymous_id, image_hash),
                "strikeCommitment": strike_key,
                "points":           points,
                "commitmentHash":   commitment.commitment_hash,
                "publicSignals":    commitment.public_signals,
                "isVerified":       True,
                "confidenceScore":  classification.confidence,
                "submittedAt":      datetime.now(timezone.utc).isoformat(),
            })
            self.rewards.accrue(reward_hash, points, commitment.commitment_hash)
        except DuplicateRecordError:
            self.registry.release(commitment.nullifier, NullifierKind.DUPLICATE_ITEM)
            raise DuplicateSubmissionError(image_hash)
        except Exception:
            logger.error(f"[SUBMIT] Persisting {image_hash[:12]}… failed; rolling back", exc_info=True)
            if pick is not None:
                self.store.delete(PICK_TABLE, image_hash)
            self.registry.release(commitment.nullifier, NullifierKind.DUPLICATE_ITEM)
            raise

        credited = False
        if public_hash:
            try:
                credited = self.ledger.reward(public_hash, points)
            except Exception:
                logger.error(f"[SUBMIT] Ledger credit for {image_hash[:12]}… failed; rolling back", exc_info=True)
                self.rewards.revert(reward_hash, points)
                self.store.delete(PICK_TABLE, image_hash)
                self.registry.release(commitment.nullifier, NullifierKind.DUPLICATE_ITEM)
                raise

        logger.info(
            f"[SUBMIT] Pick #{pick['id']} {classification.label} +{points} pts "
            f"(±{commitment.location_range.accuracy_km} km)"
        )
        return SubmissionResult(
            pick_id         = pick["id"],
            reward_hash     = reward_hash,
            points          = points,
            classification  = classification.label,
            confidence      = classification.confidence,
            commitment_hash = commitment.commitment_hash,
            accuracy_km     = commitment.location_range.accuracy_km,
            ledger_credited = credited,
        )

    # ── Read models ────────────────────────────────────────────────────────────
    def picks_for_map(self, limit: int = MAP_LIMIT) -> List[dict]:
        picks = sorted(self.store.scan(PICK_TABLE), key=lambda p: p["id"], reverse=True)
        return [
            {
                "id":             p["id"],
                "imageUrl":       p["imageData"],
                "classification": p["classification"],
                "centerLat":      p["locationRange"]["centerLat"],
                "centerLng":      p["locationRange"]["centerLng"],
                "accuracyKm":     p["locationRange"]["accuracyKm"],
                "points":         p["points"],
                "submittedAt":    p["submittedAt"],
                "isVerified":     p["isVerified"],
                "anonymousHash":  p["anonymousHash"],
            }
            for p in picks[:max(0, limit)]
        ]

    def pick_stats(self) -> dict:
        picks = list(self.store.scan(PICK_TABLE))
        labels = Counter(p["classification"] for p in picks)
        return {
            "totalPicks":  len(picks),
            "totalPoints": sum(p["points"] for p in picks),
            "topClassifications": [
                {"classification": label, "count": count}
                for label, count in labels.most_common(5)
            ],
            "averageAccuracy": (
                round(sum(p["locationRange"]["accuracyKm"] for p in picks) / len(picks), 2)
                if picks else 0.0
            ),
        }

    def check_rewards(self, reward_hash: str) -> Optional[AnonymousReward]:
        return self.rewards.lookup(reward_hash)

    # ── Strikes ────────────────────────────────────────────────────────────────
    def add_strike(self, anonymous_hash: str, reason: str) -> StrikeRecord:
        return self.strikes.add_strike(derive_anonymous_commitment(anonymous_hash), reason)

    def check_strikes(self, anonymous_hash: str) -> Optional[StrikeRecord]:
        return self.strikes.check_strikes(derive_anonymous_commitment(anonymous_hash))

    def _strike_key_for_pick(self, pick_hash: str) -> str:
        for p in self.store.scan(PICK_TABLE):
            if p["anonymousHash"] == pick_hash:
                return p["strikeCommitment"]
        raise PickNotFoundError(pick_hash)

    def strike_pick(self, pick_hash: str, reason: str) -> StrikeRecord:
        """Strike whoever submitted the pick published under `pick_hash`."""
        return self.strikes.add_strike(self._strike_key_for_pick(pick_hash), reason)

    def check_pick_strikes(self, pick_hash: str) -> Optional[StrikeRecord]:
        return self.strikes.check_strikes(self._strike_key_for_pick(pick_hash))

    # ── Claim proofs ───────────────────────────────────────────────────────────
    def _persist_claim(self, proof: ClaimProof, nullifier_kind: Optional[NullifierKind]) -> ClaimProof:
        if nullifier_kind is not None:
            self.registry.register(proof.nullifier, nullifier_kind, {"commitment": proof.commitment_hash})
        try:
            self.store.insert(CLAIM_TABLE, proof.commitment_hash, proof.to_dict())
        except DuplicateRecordError:
            logger.info(f"[CLAIM] {proof.kind} proof {proof.commitment_hash[:12]}… already stored")
        except Exception:
            if nullifier_kind is not None:
                self.registry.release(proof.nullifier, nullifier_kind)
            raise
        return proof

    def claim_location(
        self,
        anonymous_id:  str,
        latitude:      float,
        longitude:     float,
        timestamp:     Optional[int] = None,
        privacy_level: Union[str, PrivacyLevel] = PrivacyLevel.ANONYMOUS,
    ) -> ClaimProof:
        proof = self.builder.build_claim(LocationClaim(
            anonymous_id  = anonymous_id,
            latitude      = latitude,
            longitude     = longitude,
            timestamp     = int(self.clock()) if timestamp is None else timestamp,
            privacy_level = privacy_level,
        ))
        return self._persist_claim(proof, NullifierKind.LOCATION_CLAIM)

    def claim_unique_item(
        self,
        anonymous_id: str,
        image_bytes:  bytes,
        latitude:     float,
        longitude:    float,
        timestamp:    Optional[int] = None,
    ) -> ClaimProof:
        proof = self.builder.build_claim(DuplicateItemClaim(
            anonymous_id = anonymous_id,
            image_bytes  = image_bytes,
            latitude     = latitude,
            longitude    = longitude,
            timestamp    = int(self.clock()) if timestamp is None else timestamp,
        ))
        return self._persist_claim(proof, NullifierKind.DUPLICATE_ITEM)

    def prove_reputation(
        self,
        public_hash:         str,
        claimed_min_actions: int,
        claimed_min_points:  int,
    ) -> ClaimProof:
        identity = self.ledger.get(public_hash)
        if identity is None:
            raise IdentityNotFoundError(public_hash)
        proof = self.builder.build_claim(ReputationClaim(
            anonymous_id        = public_hash,
            claimed_min_actions = claimed_min_actions,
            claimed_min_points  = claimed_min_points,
            actual_actions      = identity.total_actions,
            actual_points       = identity.balance // UNIT,
        ))
        return self._persist_claim(proof, None)
