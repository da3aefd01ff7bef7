"""
Vote attempt and risk assessment models.

A VoteAttempt lives only for the duration of one gate decision. The
AttemptObservation is the derivative row kept for fraud history.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class VoteAttempt(BaseModel):
    """One request to cast a ballot, after identifier hashing."""

    poll_id: str
    session_id: str
    hashed_identifier: Optional[str] = None
    identifier_type: str
    identifier_value: str
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    challenge_token: Optional[str] = None
    timestamp: datetime


class SignalScore(BaseModel):
    """Contribution of a single fraud signal."""

    name: str
    score: int = Field(0, ge=0)
    detail: Optional[str] = None
    failed: bool = False


class RiskAssessment(BaseModel):
    """Explainable risk score for a vote attempt."""

    score: int = Field(0, ge=0, le=100)
    signals: list[SignalScore] = Field(default_factory=list)

    @property
    def contributing_signals(self) -> list[SignalScore]:
        """Signals that added to the score."""
        return [s for s in self.signals if s.score > 0]

    def breakdown(self) -> dict[str, int]:
        """Signal name -> sub-score, for audit details."""
        return {s.name: s.score for s in self.signals}


class AttemptObservation(BaseModel):
    """Fraud-history row written after an attempt has been scored."""

    poll_id: str
    session_id: str
    hashed_identifier: Optional[str] = None
    fingerprint_hash: Optional[str] = None
    observed_at: datetime
