"""
Security audit event model.

Append-only record of security-relevant gate outcomes. Stored as a Cosmos DB
document (partitioned by resource_id) or kept in memory for local runs.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class AuditSeverity(str, Enum):
    """Severity of a security audit event."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditAction(str, Enum):
    """Gate outcomes that produce audit events."""

    VOTE_RATE_LIMITED = "vote_rate_limited"
    VOTE_BLOCKED = "vote_blocked"
    VOTE_CHALLENGE_REQUIRED = "vote_challenge_required"
    VOTE_CHALLENGE_FAILED = "vote_challenge_failed"
    VOTE_ALLOWED_AFTER_CHALLENGE = "vote_allowed_after_challenge"


class SecurityAuditEvent(BaseModel):
    """One append-only security audit record."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    action_type: AuditAction
    resource_type: str = "poll"
    resource_id: str
    severity: AuditSeverity
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_document(self) -> dict[str, Any]:
        """Serialize for document storage."""
        return self.model_dump(mode="json")
