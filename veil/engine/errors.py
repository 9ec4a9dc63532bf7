"""
VEIL - Error taxonomy

Every failure the core raises derives from VeilError so the gateway can map
the whole family to HTTP responses in one place.
"""

from typing import Optional


class VeilError(Exception):
    """Base class for all pipeline errors."""


class InvalidSubmissionError(VeilError, ValueError):
    """Malformed input, rejected before any hashing or persistence."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class DuplicateNullifierError(VeilError):
    """The nullifier is already registered; the existing record is authoritative."""

    def __init__(self, kind: str, nullifier: str):
        super().__init__(f"Nullifier already registered ({kind}): {nullifier[:12]}…")
        self.kind      = kind
        self.nullifier = nullifier


class DuplicateSubmissionError(DuplicateNullifierError):
    """The submitted image hash already exists."""

    def __init__(self, image_hash: str):
        VeilError.__init__(self, f"Duplicate submission: image {image_hash[:12]}… already recorded")
        self.kind       = "submission"
        self.nullifier  = image_hash
        self.image_hash = image_hash


class IdentityNotFoundError(VeilError):
    def __init__(self, public_hash: str):
        super().__init__(f"Anonymous identity not found: {public_hash[:12]}…")
        self.public_hash = public_hash


class PickNotFoundError(VeilError):
    def __init__(self, pick_hash: str):
        super().__init__(f"No pick published under {pick_hash[:12]}…")
        self.pick_hash = pick_hash


class InsufficientBalanceError(VeilError):
    def __init__(self, public_hash: str, balance: int, requested: int):
        super().__init__(
            f"Insufficient balance for {public_hash[:12]}…: "
            f"has {balance}, requested {requested}"
        )
        self.public_hash = public_hash
        self.balance     = balance
        self.requested   = requested


class SubmissionBlockedError(VeilError):
    """The submitter's strike record carries a ban."""

    def __init__(self, anonymous_commitment: str, strike_count: int):
        super().__init__(
            f"Submissions blocked for {anonymous_commitment[:12]}… "
            f"after {strike_count} strikes"
        )
        self.anonymous_commitment = anonymous_commitment
        self.strike_count         = strike_count


# ── Storage ───────────────────────────────────────────────────────────────────

class StorageError(VeilError):
    pass


class DuplicateRecordError(StorageError):
    def __init__(self, table: str, key: str):
        super().__init__(f"Record already exists in {table}: {key[:24]}")
        self.table = table
        self.key   = key


class RecordNotFoundError(StorageError):
    def __init__(self, table: str, key: str):
        super().__init__(f"Record not found in {table}: {key[:24]}")
        self.table = table
        self.key   = key
