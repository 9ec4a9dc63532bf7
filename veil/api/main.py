"""
VEIL - Anonymous Submission API Gateway
FastAPI server exposing the submission pipeline, the anonymous ledger and
the strike tracker.

  - X-VEIL-Key API key on every route except /health
  - CORS allow_origins from VEIL_ALLOWED_ORIGINS
  - Rate limiting on submission via slowapi (VEIL_RATE_LIMIT_SUBMIT)
  - Store backend chosen by VEIL_STORE_BACKEND (memory | redis)
"""

import base64
import binascii
import logging
import os
import time
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, Security, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security.api_key import APIKeyHeader
from pydantic import BaseModel, Field
from dotenv import load_dotenv
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from engine.errors import (
    DuplicateNullifierError,
    IdentityNotFoundError,
    InsufficientBalanceError,
    InvalidSubmissionError,
    PickNotFoundError,
    SubmissionBlockedError,
    VeilError,
)
from engine.geo_anonymizer import PrivacyLevel
from engine.storage import RecordStore, build_store_from_env
from engine.submission_pipeline import MAP_LIMIT, SubmissionPipeline

load_dotenv()

# ─── Setup ────────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] VEIL :: %(name)s :: %(message)s",
)
log = logging.getLogger("veil.api")

DEFAULT_KEY    = "veil-dev-key-change-in-prod"
VEIL_API_KEY   = os.getenv("VEIL_API_KEY", DEFAULT_KEY)
API_KEY_HEADER = APIKeyHeader(name="X-VEIL-Key", auto_error=True)

# Limit configurable via env: e.g. VEIL_RATE_LIMIT_SUBMIT="10/minute"
RATE_LIMIT_SUBMIT = os.getenv("VEIL_RATE_LIMIT_SUBMIT", "30/minute")

_raw_origins = os.getenv("VEIL_ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
ALLOWED_ORIGINS: List[str] = [o.strip() for o in _raw_origins.split(",") if o.strip()]

VERSION = "1.0.0"


# ─── Auth ─────────────────────────────────────────────────────────────────────
async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> str:
    if api_key != VEIL_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid VEIL API key",
        )
    return api_key


# ─── Request Models ───────────────────────────────────────────────────────────
class SubmitRequest(BaseModel):
    image_base64:  str
    latitude:      float
    longitude:     float
    user_secret:   Optional[str] = None
    privacy_level: PrivacyLevel  = PrivacyLevel.ANONYMOUS
    public_hash:   Optional[str] = Field(default=None, description="Ledger identity to credit")


class CheckRewardsRequest(BaseModel):
    reward_hash: str


class CreateIdentityRequest(BaseModel):
    with_recovery: bool = False


class RecoverIdentityRequest(BaseModel):
    recovery_phrase: str


class TransferRequest(BaseModel):
    from_hash: str
    to_hash:   str
    amount:    int = Field(..., description="Base units (18 implied decimals)")


class StrikeRequest(BaseModel):
    pick_hash: str  # the pick's anonymousHash as published on the map
    reason:    str


class LocationClaimRequest(BaseModel):
    anonymous_hash: str
    latitude:       float
    longitude:      float
    timestamp:      Optional[int] = None
    privacy_level:  PrivacyLevel  = PrivacyLevel.ANONYMOUS


class ItemClaimRequest(BaseModel):
    anonymous_hash: str
    image_base64:   str
    latitude:       float
    longitude:      float
    timestamp:      Optional[int] = None


class ReputationClaimRequest(BaseModel):
    public_hash:         str
    claimed_min_actions: int = 0
    claimed_min_points:  int = 0


# ─── Helpers ──────────────────────────────────────────────────────────────────
def _decode_image(image_base64: str) -> bytes:
    payload = image_base64.split(",", 1)[1] if image_base64.startswith("data:") else image_base64
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"image_base64 is not valid base64: {e}")


def _to_http(err: Exception) -> HTTPException:
    if isinstance(err, InvalidSubmissionError):
        return HTTPException(status_code=422, detail=str(err))
    if isinstance(err, SubmissionBlockedError):
        return HTTPException(status_code=403, detail=str(err))
    if isinstance(err, (IdentityNotFoundError, PickNotFoundError)):
        return HTTPException(status_code=404, detail=str(err))
    if isinstance(err, (DuplicateNullifierError, InsufficientBalanceError)):
        return HTTPException(status_code=409, detail=str(err))
    if isinstance(err, ValueError):
        return HTTPException(status_code=422, detail=str(err))
    log.error(f"Unhandled pipeline error: {err}", exc_info=err)
    return HTTPException(status_code=500, detail="Internal error")


def create_app(store: Optional[RecordStore] = None, classifier=None) -> FastAPI:
    pipeline = SubmissionPipeline(store or build_store_from_env(), classifier=classifier)
    limiter  = Limiter(key_func=get_remote_address)

    app = FastAPI(
        title="VEIL - Anonymous Submission API",
        description="Anonymous litter reports: location ranges, commitments, nullifiers and rewards",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.pipeline = pipeline
    app.state.limiter  = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # ─── Startup Validation ───────────────────────────────────────────────────
    @app.on_event("startup")
    async def _startup_validation():
        if VEIL_API_KEY == DEFAULT_KEY:
            log.critical(
                f"\n{'='*70}\nSECURITY WARNING: DEFAULT API KEY IN USE ('{DEFAULT_KEY}'). "
                f"Set a strong VEIL_API_KEY in .env before going to production.\n{'='*70}"
            )
        else:
            log.info("Startup validation passed. API key is configured.")
        log.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

    # ─── Routes ───────────────────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {
            "status":    "operational",
            "version":   VERSION,
            "timestamp": int(time.time()),
        }

    # ── Anonymous submissions ─────────────────────────────────────────────────
    @app.post("/api/v1/anonymous/submit", summary="Submit Anonymous Pick")
    @limiter.limit(RATE_LIMIT_SUBMIT)
    async def submit_pick(
        request: Request,                          # required by slowapi
        body:    SubmitRequest,
        api_key: str = Security(verify_api_key),
    ) -> Dict[str, Any]:
        t_start     = time.perf_counter()
        image_bytes = _decode_image(body.image_base64)
        log.info(f"Image received - {len(image_bytes):,} bytes, level={body.privacy_level.value}")
        try:
            result = pipeline.submit(
                image_bytes   = image_bytes,
                latitude      = body.latitude,
                longitude     = body.longitude,
                user_secret   = body.user_secret,
                privacy_level = body.privacy_level,
                public_hash   = body.public_hash,
            )
        except VeilError as e:
            raise _to_http(e)
        return {
            **result.to_dict(),
            "processing_time_ms": round((time.perf_counter() - t_start) * 1000, 2),
        }

    @app.get("/api/v1/anonymous/picks-for-map", summary="Anonymized Picks for Map")
    async def picks_for_map(
        limit:   int = MAP_LIMIT,
        api_key: str = Security(verify_api_key),
    ) -> Dict[str, Any]:
        items = pipeline.picks_for_map(limit=min(max(limit, 0), MAP_LIMIT))
        return {"count": len(items), "items": items}

    @app.get("/api/v1/anonymous/stats", summary="Anonymous Pick Statistics")
    async def anonymous_stats(api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
        return pipeline.pick_stats()

    @app.post("/api/v1/anonymous/check-rewards", summary="Look Up Anonymous Rewards")
    async def check_rewards(
        body:    CheckRewardsRequest,
        api_key: str = Security(verify_api_key),
    ) -> Dict[str, Any]:
        reward = pipeline.check_rewards(body.reward_hash)
        if reward is None:
            raise HTTPException(status_code=404, detail="No rewards found for this hash.")
        return reward.to_dict()

    # ── Identity ledger ───────────────────────────────────────────────────────
    @app.post("/api/v1/identity", summary="Create Anonymous Identity")
    async def create_identity(
        body:    CreateIdentityRequest,
        api_key: str = Security(verify_api_key),
    ) -> Dict[str, Any]:
        identity, recovery = pipeline.ledger.create(with_recovery=body.with_recovery)
        response: Dict[str, Any] = {"identity": {**identity.to_dict(), "balance": str(identity.balance)}}
        if recovery is not None:
            response["recovery"] = {
                "recoveryPhrase": recovery.recovery_phrase,
                "publicHash":     recovery.public_hash,
                "instructions":   recovery.instructions,
            }
        return response

    @app.post("/api/v1/identity/recover", summary="Recover Identity from Phrase")
    async def recover_identity(
        body:    RecoverIdentityRequest,
        api_key: str = Security(verify_api_key),
    ) -> Dict[str, Any]:
        identity = pipeline.ledger.recover(body.recovery_phrase)
        if identity is None:
            raise HTTPException(status_code=404, detail="No identity for this recovery phrase.")
        return pipeline.ledger.stats(identity.public_hash)

    @app.get("/api/v1/identity/{public_hash}", summary="Identity Balance and Activity")
    async def get_identity(
        public_hash: str,
        api_key:     str = Security(verify_api_key),
    ) -> Dict[str, Any]:
        stats = pipeline.ledger.stats(public_hash)
        if stats is None:
            raise HTTPException(status_code=404, detail="Identity not found.")
        return stats

    @app.post("/api/v1/identity/transfer", summary="Transfer Between Identities")
    async def transfer(
        body:    TransferRequest,
        api_key: str = Security(verify_api_key),
    ) -> Dict[str, Any]:
        try:
            pipeline.ledger.transfer_or_raise(body.from_hash, body.to_hash, body.amount)
        except (VeilError, ValueError) as e:
            raise _to_http(e)
        return {
            "success": True,
            "from":    pipeline.ledger.stats(body.from_hash),
            "to":      pipeline.ledger.stats(body.to_hash),
        }

    @app.get("/api/v1/identity-stats", summary="Global Ledger Statistics")
    async def identity_stats(api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
        return pipeline.ledger.aggregate().to_dict()

    # ── Strikes ───────────────────────────────────────────────────────────────
    @app.post("/api/v1/strikes", summary="Record a Strike")
    async def add_strike(
        body:    StrikeRequest,
        api_key: str = Security(verify_api_key),
    ) -> Dict[str, Any]:
        try:
            return pipeline.strike_pick(body.pick_hash, body.reason).to_dict()
        except (PickNotFoundError, ValueError) as e:
            raise _to_http(e)

    @app.get("/api/v1/strikes/{pick_hash}", summary="Strike Record")
    async def get_strikes(
        pick_hash: str,
        api_key:   str = Security(verify_api_key),
    ) -> Dict[str, Any]:
        try:
            record = pipeline.check_pick_strikes(pick_hash)
        except PickNotFoundError as e:
            raise _to_http(e)
        if record is None:
            raise HTTPException(status_code=404, detail="No strikes recorded.")
        return record.to_dict()

    # ── Claim proofs ──────────────────────────────────────────────────────────
    @app.post("/api/v1/claims/location", summary="Location Claim Proof")
    async def claim_location(
        body:    LocationClaimRequest,
        api_key: str = Security(verify_api_key),
    ) -> Dict[str, Any]:
        try:
            proof = pipeline.claim_location(
                body.anonymous_hash, body.latitude, body.longitude,
                timestamp=body.timestamp, privacy_level=body.privacy_level,
            )
        except VeilError as e:
            raise _to_http(e)
        return proof.to_dict()

    @app.post("/api/v1/claims/item", summary="Unique Item Claim Proof")
    async def claim_item(
        body:    ItemClaimRequest,
        api_key: str = Security(verify_api_key),
    ) -> Dict[str, Any]:
        image_bytes = _decode_image(body.image_base64)
        try:
            proof = pipeline.claim_unique_item(
                body.anonymous_hash, image_bytes, body.latitude, body.longitude,
                timestamp=body.timestamp,
            )
        except VeilError as e:
            raise _to_http(e)
        return proof.to_dict()

    @app.post("/api/v1/claims/reputation", summary="Reputation Claim Proof")
    async def claim_reputation(
        body:    ReputationClaimRequest,
        api_key: str = Security(verify_api_key),
    ) -> Dict[str, Any]:
        try:
            proof = pipeline.prove_reputation(
                body.public_hash, body.claimed_min_actions, body.claimed_min_points,
            )
        except VeilError as e:
            raise _to_http(e)
        return proof.to_dict()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("VEIL_HOST", "0.0.0.0"), port=int(os.getenv("VEIL_PORT", "8000")))
