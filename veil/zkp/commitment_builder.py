"""
VEIL - Commitment Builder
Hash-based commitment scheme standing in for a zero-knowledge proof.

A Commitment binds the private inputs (image hash, exact coordinates, salt)
to a public-signal vector without revealing them:

    commitment_hash = H( canonical(private_inputs) || canonical(public_signals) )
    public_signals  = [ floor(center_lat*1000), floor(center_lng*1000),
                        floor(confidence*100),  unix_seconds ]

Anyone holding the opening (exact coordinates + salt) can recompute the hash
with verify_opening(). Nothing here is a succinct proof; soundness comes only
from SHA-256 preimage resistance.

Claim proofs (location, duplicate item, reputation) share one builder that
dispatches on ProofKind.
"""

import logging
import math
import secrets
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from engine.classifier import Classification
from engine.content_hasher import hash_composite, hash_content, hash_coordinates
from engine.errors import InvalidSubmissionError
from engine.geo_anonymizer import (
    GeoAnonymizer,
    LocationRange,
    PrivacyLevel,
    parse_privacy_level,
    validate_coordinates,
)
from engine.nullifier_registry import NullifierKind, derive_nullifier

logger = logging.getLogger("veil.commitment")

PROOF_TYPE = "commitment_v1"

# Zone cell size in degrees for location claims
ZONE_DEGREES = {
    PrivacyLevel.PUBLIC:    0.001,
    PrivacyLevel.ANONYMOUS: 0.01,
    PrivacyLevel.PRIVATE:   0.1,
}


def derive_anonymous_id(user_secret: Optional[str] = None) -> str:
    """Stable pseudonym for a secret; a throwaway one when no secret is given."""
    if user_secret:
        return hash_content(f"anonymous_{user_secret}")
    return hash_content(secrets.token_bytes(32))


# ══════════════════════════════════════════════════════════════════════════════
#  Submission commitment
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class Submission:
    image_bytes:  bytes
    latitude:     float
    longitude:    float
    anonymous_id: str
    user_secret:  Optional[str] = None   # doubles as the commitment salt


@dataclass(frozen=True)
class Commitment:
    image_hash:       str
    location_range:   LocationRange
    classification:   str
    confidence_score: float
    public_signals:   List[int]
    commitment_hash:  str
    nullifier:        str          # duplicate-item nullifier for this submission
    proof_type:       str = PROOF_TYPE
    circuit:          str = "veil_submission_v1"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imageHash":       self.image_hash,
            "locationRange":   self.location_range.to_dict(),
            "classification":  self.classification,
            "confidenceScore": self.confidence_score,
            "publicSignals":   list(self.public_signals),
            "commitmentHash":  self.commitment_hash,
            "nullifier":       self.nullifier,
            "proofType":       self.proof_type,
            "circuit":         self.circuit,
        }


def _private_inputs(image_hash: str, lat: float, lng: float, salt: str) -> Dict[str, Any]:
    return {"imageHash": image_hash, "exactLat": lat, "exactLng": lng, "salt": salt}


# ══════════════════════════════════════════════════════════════════════════════
#  Claim proofs
# ══════════════════════════════════════════════════════════════════════════════

class ProofKind(str, Enum):
    LOCATION       = "location"
    DUPLICATE_ITEM = "duplicate_item"
    REPUTATION     = "reputation"


@dataclass
class LocationClaim:
    anonymous_id:  str
    latitude:      float
    longitude:     float
    timestamp:     int
    privacy_level: Union[str, PrivacyLevel] = PrivacyLevel.ANONYMOUS
    kind:          ProofKind = ProofKind.LOCATION


@dataclass
class DuplicateItemClaim:
    anonymous_id: str
    image_bytes:  bytes
    latitude:     float
    longitude:    float
    timestamp:    int
    kind:         ProofKind = ProofKind.DUPLICATE_ITEM


@dataclass
class ReputationClaim:
    anonymous_id:        str
    claimed_min_actions: int
    claimed_min_points:  int
    actual_actions:      int
    actual_points:       int
    kind:                ProofKind = ProofKind.REPUTATION


Claim = Union[LocationClaim, DuplicateItemClaim, ReputationClaim]


@dataclass
class ClaimProof:
    kind:             str
    commitment_hash:  str
    public_signals:   List[Any]
    nullifier:        Optional[str]
    verification_key: str
    created_at:       str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CommitmentBuilder:
    """
    Builds submission commitments and claim proofs.

    The proof guarantees:
    ✅ The image hash, anonymized range and classification are bound together
    ✅ The holder of the opening can show the exact point lies in the range
    ❌ The exact coordinates and salt are NEVER part of the returned object
    """

    def __init__(
        self,
        anonymizer: Optional[GeoAnonymizer] = None,
        clock:      Callable[[], float] = time.time,
    ):
        self.anonymizer = anonymizer or GeoAnonymizer()
        self.clock      = clock
        self._claim_builders = {
            ProofKind.LOCATION:       self._build_location,
            ProofKind.DUPLICATE_ITEM: self._build_duplicate_item,
            ProofKind.REPUTATION:     self._build_reputation,
        }

    # ── Submission ─────────────────────────────────────────────────────────────
    def build(
        self,
        submission:     Submission,
        privacy_level:  Union[str, PrivacyLevel],
        classification: Classification,
    ) -> Commitment:
        # Everything is validated before the first hash is taken
        if not submission.image_bytes:
            raise InvalidSubmissionError("Image payload is empty", field="image")
        conf = classification.confidence
        if not (isinstance(conf, (int, float)) and math.isfinite(conf) and 0.0 <= conf <= 1.0):
            raise InvalidSubmissionError(f"Confidence out of range [0, 1]: {conf}", field="confidence")
        level = parse_privacy_level(privacy_level)
        validate_coordinates(submission.latitude, submission.longitude)

        image_hash     = hash_content(submission.image_bytes)
        location_range = self.anonymizer.anonymize(submission.latitude, submission.longitude, level)

        public_signals = [
            math.floor(location_range.center_lat * 1000),
            math.floor(location_range.center_lng * 1000),
            math.floor(conf * 100),
            int(self.clock()),
        ]
        salt = submission.user_secret or secrets.token_hex(32)
        commitment_hash = hash_composite(
            _private_inputs(image_hash, submission.latitude, submission.longitude, salt),
            public_signals,
        )
        nullifier = derive_nullifier(NullifierKind.DUPLICATE_ITEM, image_hash, submission.anonymous_id)

        logger.info(
            f"[COMMIT] {commitment_hash[:12]}… image={image_hash[:12]}… "
            f"label={classification.label} level={level.value}"
        )
        return Commitment(
            image_hash       = image_hash,
            location_range   = location_range,
            classification   = classification.label,
            confidence_score = conf,
            public_signals   = public_signals,
            commitment_hash  = commitment_hash,
            nullifier        = nullifier,
        )

    @staticmethod
    def verify_opening(commitment: Commitment, exact_lat: float, exact_lng: float, salt: str) -> bool:
        """Recompute the commitment from its opening; also checks the point lies in the range."""
        recomputed = hash_composite(
            _private_inputs(commitment.image_hash, exact_lat, exact_lng, salt),
            list(commitment.public_signals),
        )
        return (
            recomputed == commitment.commitment_hash
            and commitment.location_range.contains(exact_lat, exact_lng)
        )

    # ── Claims ─────────────────────────────────────────────────────────────────
    def build_claim(self, claim: Claim) -> ClaimProof:
        builder = self._claim_builders.get(ProofKind(claim.kind))
        if builder is None:
            raise InvalidSubmissionError(f"Unsupported proof kind: {claim.kind}", field="kind")
        proof = builder(claim)
        logger.info(f"[CLAIM] {proof.kind} proof {proof.commitment_hash[:12]}…")
        return proof

    def _build_location(self, claim: LocationClaim) -> ClaimProof:
        level = parse_privacy_level(claim.privacy_level)
        validate_coordinates(claim.latitude, claim.longitude)

        deg     = ZONE_DEGREES[level]
        zone_id = math.floor(claim.latitude / deg) * 1000 + math.floor(claim.longitude / deg)
        ts      = int(claim.timestamp)
        public_signals = [zone_id, deg, ts]

        commitment_hash = hash_composite(
            {
                "identity":     claim.anonymous_id,
                "locationHash": hash_coordinates(claim.latitude, claim.longitude),
                "timestamp":    ts,
            },
            public_signals,
        )
        nullifier = derive_nullifier(
            NullifierKind.LOCATION_CLAIM,
            claim.anonymous_id,
            math.floor(claim.latitude * 1000),
            math.floor(claim.longitude * 1000),
            ts,
        )
        return ClaimProof(
            kind             = ProofKind.LOCATION.value,
            commitment_hash  = commitment_hash,
            public_signals   = public_signals,
            nullifier        = nullifier,
            verification_key = "veil_location_claim_v1",
        )

    def _build_duplicate_item(self, claim: DuplicateItemClaim) -> ClaimProof:
        if not claim.image_bytes:
            raise InvalidSubmissionError("Image payload is empty", field="image")
        validate_coordinates(claim.latitude, claim.longitude)

        ts        = int(claim.timestamp)
        item_hash = hash_content(
            f"{hash_content(claim.image_bytes)}_{claim.latitude:.6f}_{claim.longitude:.6f}_{ts}"
        )
        action_commitment = hash_composite({"identity": claim.anonymous_id, "itemHash": item_hash})
        return ClaimProof(
            kind             = ProofKind.DUPLICATE_ITEM.value,
            commitment_hash  = action_commitment,
            public_signals   = [item_hash, ts],
            nullifier        = derive_nullifier(NullifierKind.DUPLICATE_ITEM, item_hash, claim.anonymous_id),
            verification_key = "veil_item_claim_v1",
        )

    def _build_reputation(self, claim: ReputationClaim) -> ClaimProof:
        if claim.claimed_min_actions < 0 or claim.claimed_min_points < 0:
            raise InvalidSubmissionError("Reputation claims must be non-negative", field="claim")
        if (
            claim.claimed_min_actions > claim.actual_actions
            or claim.claimed_min_points > claim.actual_points
        ):
            raise InvalidSubmissionError("Claimed reputation exceeds actual totals", field="claim")

        public_signals = [claim.claimed_min_actions, claim.claimed_min_points]
        commitment_hash = hash_composite(
            {"identity": claim.anonymous_id, "timestamp": int(self.clock())},
            public_signals,
        )
        return ClaimProof(
            kind             = ProofKind.REPUTATION.value,
            commitment_hash  = commitment_hash,
            public_signals   = public_signals,
            nullifier        = None,
            verification_key = "veil_reputation_claim_v1",
        )
