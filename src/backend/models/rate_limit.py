"""
Rate limit models.

A RateLimitRecord counts actions for one (identifier, poll, action) key in a
window that starts at the first observation and is reset only by expiry.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class RateLimitOutcome(str, Enum):
    """Answer from the rate limiter."""

    ALLOWED = "allowed"
    DENIED = "denied"


class RateLimitRecord(BaseModel):
    """Counter state for one rate limit key."""

    identifier_type: str
    identifier_value: str
    poll_id: str
    action_type: str
    count: int = Field(0, ge=0)
    window_start: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        """Check if the window has elapsed."""
        return now >= self.expires_at


class RateLimitIncrement(BaseModel):
    """Result of an atomic bounded increment at the store."""

    accepted: bool
    record: RateLimitRecord


class RateLimitDecision(BaseModel):
    """Typed answer returned to callers of the rate limiter."""

    outcome: RateLimitOutcome
    limit: int
    remaining: int = 0
    count: int = 0
    degraded: bool = False

    @property
    def allowed(self) -> bool:
        return self.outcome == RateLimitOutcome.ALLOWED
