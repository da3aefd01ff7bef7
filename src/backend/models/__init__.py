"""Domain models module."""

from models.audit_event import AuditAction, AuditSeverity, SecurityAuditEvent
from models.challenge import (
    ChallengeOutcome,
    ChallengeRecord,
    ChallengeRejection,
    ChallengeVerification,
)
from models.rate_limit import (
    RateLimitDecision,
    RateLimitIncrement,
    RateLimitOutcome,
    RateLimitRecord,
)
from models.vote_attempt import AttemptObservation, RiskAssessment, SignalScore, VoteAttempt

__all__ = [
    "AuditAction",
    "AuditSeverity",
    "SecurityAuditEvent",
    "ChallengeOutcome",
    "ChallengeRecord",
    "ChallengeRejection",
    "ChallengeVerification",
    "RateLimitDecision",
    "RateLimitIncrement",
    "RateLimitOutcome",
    "RateLimitRecord",
    "AttemptObservation",
    "RiskAssessment",
    "SignalScore",
    "VoteAttempt",
]
