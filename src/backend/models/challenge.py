"""
Challenge record models.

Challenge records are created by the external issuance step and consumed
exactly once by the challenge verifier.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ChallengeRecord(BaseModel):
    """A single-use human-verification challenge scoped to a session and poll."""

    token: str = Field(description="Opaque challenge token presented by the client")
    session_id: str
    poll_id: str
    issued_at: datetime
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None

    def is_redeemable(self, now: datetime) -> bool:
        """A record can be redeemed only while unused and unexpired."""
        return not self.used and now < self.expires_at


class ChallengeOutcome(str, Enum):
    """Answer from the challenge verifier."""

    VALID = "valid"
    INVALID = "invalid"


class ChallengeRejection(str, Enum):
    """Why a challenge token was rejected."""

    NOT_FOUND = "not_found"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    STORE_ERROR = "store_error"
    TIMEOUT = "timeout"


class ChallengeVerification(BaseModel):
    """Typed verdict returned by the challenge verifier."""

    outcome: ChallengeOutcome
    reason: Optional[ChallengeRejection] = None

    @property
    def valid(self) -> bool:
        return self.outcome == ChallengeOutcome.VALID

    @classmethod
    def accept(cls) -> "ChallengeVerification":
        return cls(outcome=ChallengeOutcome.VALID)

    @classmethod
    def reject(cls, reason: ChallengeRejection) -> "ChallengeVerification":
        return cls(outcome=ChallengeOutcome.INVALID, reason=reason)
