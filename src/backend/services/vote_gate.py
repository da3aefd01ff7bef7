"""
Vote gate decision engine.

Every vote attempt on a public poll passes through here before the voting
service records it:

1. Rate limit the hashed identifier for the "vote" action
2. Score the attempt for fraud/bot risk
3. Apply thresholds: block, demand a challenge, or allow
4. Queue security audit events for every non-trivial outcome

Callers talk to the engine through typed commands and dispatch():

    decision = await engine.dispatch(VerifyVoteCommand(poll_id=..., session_id=...))

The voting service persists the vote only when the decision is ALLOW.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from pydantic import BaseModel

from core.config import Settings
from core.exceptions import GateValidationError, InfrastructureError
from core.security import IP_IDENTIFIER_TYPE, UNIDENTIFIED_TYPE, UNIDENTIFIED_VALUE, IdentityHasher
from models.audit_event import AuditAction, AuditSeverity, SecurityAuditEvent
from models.challenge import ChallengeVerification
from models.rate_limit import RateLimitDecision
from models.vote_attempt import AttemptObservation, RiskAssessment, VoteAttempt
from repositories.provider import AttemptHistoryStore, GateStores
from services.audit_logger import AuditLogger
from services.challenge_verifier import ChallengeVerifier
from services.fraud_detection import FraudConfig, FraudScorer
from services.rate_limiter import VOTE_ACTION, RateLimiter

logger = structlog.get_logger(__name__)


# =============================================================================
# Decisions
# =============================================================================


class GateOutcome(str, Enum):
    ALLOW = "allow"
    CHALLENGE_REQUIRED = "challenge_required"
    BLOCKED = "blocked"


class GateReason(str, Enum):
    """Why the gate answered the way it did."""

    LOW_RISK = "low_risk"
    RATE_LIMITED = "rate_limited"
    HIGH_RISK = "high_risk"
    CHALLENGE_PASSED = "challenge_passed"
    CHALLENGE_FAILED = "challenge_failed"
    BLOCKED = "blocked"


_ERROR_MESSAGES = {
    GateReason.RATE_LIMITED: "Too many vote attempts. Please complete verification to continue.",
    GateReason.HIGH_RISK: "Please complete verification to vote.",
    GateReason.CHALLENGE_FAILED: "Verification failed. Please try again.",
    GateReason.BLOCKED: "Vote blocked due to suspicious activity.",
}


class GateDecision(BaseModel):
    """Outcome of one gate run, with everything that went into it."""

    outcome: GateOutcome
    reason: GateReason
    risk_score: int = 0
    assessment: Optional[RiskAssessment] = None
    rate_limit: Optional[RateLimitDecision] = None
    challenge: Optional[ChallengeVerification] = None

    @property
    def success(self) -> bool:
        return self.outcome == GateOutcome.ALLOW

    @property
    def require_captcha(self) -> bool:
        return self.outcome == GateOutcome.CHALLENGE_REQUIRED

    @property
    def blocked(self) -> bool:
        return self.outcome == GateOutcome.BLOCKED

    @property
    def error(self) -> Optional[str]:
        return _ERROR_MESSAGES.get(self.reason)


# =============================================================================
# Commands
# =============================================================================


@dataclass(frozen=True)
class VerifyVoteCommand:
    """Full gate decision for a vote about to be cast."""

    poll_id: str
    session_id: str
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    raw_client_identifier: Optional[str] = None
    challenge_token: Optional[str] = None


@dataclass(frozen=True)
class FraudCheckCommand:
    """Pre-vote risk check: no counter increment, no history write."""

    poll_id: str
    session_id: str
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    raw_client_identifier: Optional[str] = None


@dataclass(frozen=True)
class RateLimitCheckCommand:
    poll_id: str
    action_type: str
    raw_client_identifier: Optional[str] = None
    limit_per_window: Optional[int] = None


@dataclass(frozen=True)
class CaptchaVerifyCommand:
    """Redeem a challenge token outside a vote."""

    poll_id: str
    session_id: str
    token: Optional[str] = None


GateCommand = Union[VerifyVoteCommand, FraudCheckCommand, RateLimitCheckCommand, CaptchaVerifyCommand]


def _require(value: Optional[str], field: str) -> str:
    if value is None or not value.strip():
        raise GateValidationError(f"{field} is required", field=field)
    return value.strip()


# =============================================================================
# Decision Engine
# =============================================================================


class DecisionEngine:
    """
    Orchestrates rate limiting, fraud scoring and challenge verification.

    Holds no mutable state of its own; counters, challenges and history live
    in the injected stores.
    """

    def __init__(
        self,
        hasher: IdentityHasher,
        rate_limiter: RateLimiter,
        scorer: FraudScorer,
        verifier: ChallengeVerifier,
        audit: AuditLogger,
        history: Optional[AttemptHistoryStore] = None,
        challenge_threshold: int = 50,
        block_threshold: int = 85,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not 0 <= challenge_threshold <= block_threshold <= 100:
            raise ValueError("thresholds must satisfy 0 <= challenge <= block <= 100")

        self.hasher = hasher
        self.rate_limiter = rate_limiter
        self.scorer = scorer
        self.verifier = verifier
        self.audit = audit
        self.history = history
        self.challenge_threshold = challenge_threshold
        self.block_threshold = block_threshold
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._handlers: dict[type, Callable[[Any], Awaitable[Any]]] = {
            VerifyVoteCommand: self.verify_vote,
            FraudCheckCommand: self.fraud_check,
            RateLimitCheckCommand: self.rate_limit_check,
            CaptchaVerifyCommand: self.captcha_verify,
        }

    async def dispatch(self, command: GateCommand) -> Any:
        """Route a command to its handler."""
        handler = self._handlers.get(type(command))
        if handler is None:
            raise TypeError(f"Unsupported gate command: {type(command).__name__}")
        return await handler(command)

    # =========================================================================
    # Handlers
    # =========================================================================

    async def verify_vote(self, command: VerifyVoteCommand) -> GateDecision:
        """Decide ALLOW, CHALLENGE_REQUIRED or BLOCKED for a vote attempt."""
        attempt = self._build_attempt(
            poll_id=command.poll_id,
            session_id=command.session_id,
            user_agent=command.user_agent,
            device_fingerprint=command.device_fingerprint,
            raw_client_identifier=command.raw_client_identifier,
            challenge_token=command.challenge_token,
        )

        # 1. Rate limit
        rate_limit = await self.rate_limiter.check_and_increment(
            attempt.identifier_type,
            attempt.identifier_value,
            attempt.poll_id,
            VOTE_ACTION,
        )
        if not rate_limit.allowed:
            self._audit(
                AuditAction.VOTE_RATE_LIMITED,
                AuditSeverity.MEDIUM,
                attempt,
                count=rate_limit.count,
                limit=rate_limit.limit,
            )
            return GateDecision(
                outcome=GateOutcome.CHALLENGE_REQUIRED,
                reason=GateReason.RATE_LIMITED,
                rate_limit=rate_limit,
            )

        # 2. Score
        assessment = await self.scorer.score(attempt)
        await self._observe(attempt)

        # 3. Block overrides any challenge token
        if assessment.score >= self.block_threshold:
            self._audit(AuditAction.VOTE_BLOCKED, AuditSeverity.HIGH, attempt, assessment)
            logger.warning(
                "vote_blocked",
                poll_id=attempt.poll_id,
                risk_score=assessment.score,
                signals=[s.name for s in assessment.contributing_signals],
            )
            return GateDecision(
                outcome=GateOutcome.BLOCKED,
                reason=GateReason.BLOCKED,
                risk_score=assessment.score,
                assessment=assessment,
                rate_limit=rate_limit,
            )

        # 4. Challenge band
        if assessment.score >= self.challenge_threshold:
            if not attempt.challenge_token:
                self._audit(AuditAction.VOTE_CHALLENGE_REQUIRED, AuditSeverity.LOW, attempt, assessment)
                return GateDecision(
                    outcome=GateOutcome.CHALLENGE_REQUIRED,
                    reason=GateReason.HIGH_RISK,
                    risk_score=assessment.score,
                    assessment=assessment,
                    rate_limit=rate_limit,
                )

            verification = await self.verifier.verify(attempt.challenge_token, attempt.session_id, attempt.poll_id)
            if not verification.valid:
                self._audit(
                    AuditAction.VOTE_CHALLENGE_FAILED,
                    AuditSeverity.MEDIUM,
                    attempt,
                    assessment,
                    challenge_reason=verification.reason.value if verification.reason else None,
                )
                return GateDecision(
                    outcome=GateOutcome.CHALLENGE_REQUIRED,
                    reason=GateReason.CHALLENGE_FAILED,
                    risk_score=assessment.score,
                    assessment=assessment,
                    rate_limit=rate_limit,
                    challenge=verification,
                )

            self._audit(AuditAction.VOTE_ALLOWED_AFTER_CHALLENGE, AuditSeverity.LOW, attempt, assessment)
            return GateDecision(
                outcome=GateOutcome.ALLOW,
                reason=GateReason.CHALLENGE_PASSED,
                risk_score=assessment.score,
                assessment=assessment,
                rate_limit=rate_limit,
                challenge=verification,
            )

        # 5. Low risk
        return GateDecision(
            outcome=GateOutcome.ALLOW,
            reason=GateReason.LOW_RISK,
            risk_score=assessment.score,
            assessment=assessment,
            rate_limit=rate_limit,
        )

    async def fraud_check(self, command: FraudCheckCommand) -> GateDecision:
        """Tell the client up front whether a challenge will be needed."""
        attempt = self._build_attempt(
            poll_id=command.poll_id,
            session_id=command.session_id,
            user_agent=command.user_agent,
            device_fingerprint=command.device_fingerprint,
            raw_client_identifier=command.raw_client_identifier,
        )
        assessment = await self.scorer.score(attempt)

        if assessment.score >= self.block_threshold:
            outcome, reason = GateOutcome.BLOCKED, GateReason.BLOCKED
        elif assessment.score >= self.challenge_threshold:
            outcome, reason = GateOutcome.CHALLENGE_REQUIRED, GateReason.HIGH_RISK
        else:
            outcome, reason = GateOutcome.ALLOW, GateReason.LOW_RISK

        return GateDecision(outcome=outcome, reason=reason, risk_score=assessment.score, assessment=assessment)

    async def rate_limit_check(self, command: RateLimitCheckCommand) -> RateLimitDecision:
        poll_id = _require(command.poll_id, "poll_id")
        action_type = _require(command.action_type, "action_type")
        identifier_type, identifier_value, _ = self._identify(command.raw_client_identifier)

        return await self.rate_limiter.check_and_increment(
            identifier_type,
            identifier_value,
            poll_id,
            action_type,
            limit_per_window=command.limit_per_window,
        )

    async def captcha_verify(self, command: CaptchaVerifyCommand) -> ChallengeVerification:
        poll_id = _require(command.poll_id, "poll_id")
        session_id = _require(command.session_id, "session_id")
        return await self.verifier.verify(command.token, session_id, poll_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _identify(self, raw_client_identifier: Optional[str]) -> tuple[str, str, Optional[str]]:
        """(identifier_type, identifier_value, hashed_identifier) for rate limiting."""
        hashed = self.hasher.hash(raw_client_identifier)
        if hashed is None:
            return UNIDENTIFIED_TYPE, UNIDENTIFIED_VALUE, None
        return IP_IDENTIFIER_TYPE, hashed, hashed

    def _build_attempt(
        self,
        poll_id: Optional[str],
        session_id: Optional[str],
        user_agent: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
        raw_client_identifier: Optional[str] = None,
        challenge_token: Optional[str] = None,
    ) -> VoteAttempt:
        poll_id = _require(poll_id, "poll_id")
        session_id = _require(session_id, "session_id")
        identifier_type, identifier_value, hashed = self._identify(raw_client_identifier)

        return VoteAttempt(
            poll_id=poll_id,
            session_id=session_id,
            hashed_identifier=hashed,
            identifier_type=identifier_type,
            identifier_value=identifier_value,
            user_agent=user_agent,
            device_fingerprint=device_fingerprint,
            challenge_token=challenge_token.strip() if challenge_token and challenge_token.strip() else None,
            timestamp=self._clock(),
        )

    async def _observe(self, attempt: VoteAttempt) -> None:
        """Append the attempt to fraud history. Failure only degrades future scoring."""
        if self.history is None:
            return

        observation = AttemptObservation(
            poll_id=attempt.poll_id,
            session_id=attempt.session_id,
            hashed_identifier=attempt.hashed_identifier,
            fingerprint_hash=self.hasher.hash_fingerprint(attempt.device_fingerprint),
            observed_at=attempt.timestamp,
        )
        try:
            await self.history.record_attempt(observation)
        except InfrastructureError as e:
            logger.warning("attempt_history_degraded", poll_id=attempt.poll_id, error=str(e))

    def _audit(
        self,
        action: AuditAction,
        severity: AuditSeverity,
        attempt: VoteAttempt,
        assessment: Optional[RiskAssessment] = None,
        **extra: Any,
    ) -> None:
        details: dict[str, Any] = {
            "session_id": attempt.session_id,
            "identifier_type": attempt.identifier_type,
            "hashed_identifier": attempt.hashed_identifier,
        }
        if assessment is not None:
            details["risk_score"] = assessment.score
            details["signals"] = assessment.breakdown()
            details["signal_details"] = {s.name: s.detail for s in assessment.contributing_signals}
        details.update(extra)

        self.audit.record(
            SecurityAuditEvent(
                action_type=action,
                resource_id=attempt.poll_id,
                severity=severity,
                details=details,
            )
        )


# =============================================================================
# Factory
# =============================================================================


def build_decision_engine(settings: Settings, stores: GateStores) -> DecisionEngine:
    """Wire the gate components from settings and the configured stores."""
    timeout = settings.GATE_STEP_TIMEOUT_SECONDS
    hasher = IdentityHasher(settings.identity_hash_key)

    rate_limiter = RateLimiter(
        stores.rate_limits,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        vote_limit=settings.RATE_LIMIT_VOTE_PER_WINDOW,
        default_limit=settings.RATE_LIMIT_DEFAULT_PER_WINDOW,
        timeout_seconds=timeout,
    )
    scorer = FraudScorer(
        stores.attempts,
        hash_fingerprint=hasher.hash_fingerprint,
        config=FraudConfig(
            FINGERPRINT_WINDOW_SECONDS=settings.FRAUD_FINGERPRINT_WINDOW_SECONDS,
            FINGERPRINT_SESSION_ALLOWANCE=settings.FRAUD_FINGERPRINT_SESSION_ALLOWANCE,
            VELOCITY_WINDOW_SECONDS=settings.FRAUD_VELOCITY_WINDOW_SECONDS,
            VELOCITY_POLL_ALLOWANCE=settings.FRAUD_VELOCITY_POLL_ALLOWANCE,
        ),
        timeout_seconds=timeout,
    )
    verifier = ChallengeVerifier(stores.challenges, timeout_seconds=timeout)
    audit = AuditLogger(
        stores.audit_events,
        max_queue_size=settings.AUDIT_QUEUE_MAX_SIZE,
        max_retries=settings.AUDIT_MAX_RETRIES,
        retry_base_delay=settings.AUDIT_RETRY_BASE_DELAY_SECONDS,
    )

    return DecisionEngine(
        hasher=hasher,
        rate_limiter=rate_limiter,
        scorer=scorer,
        verifier=verifier,
        audit=audit,
        history=stores.attempts,
        challenge_threshold=settings.RISK_CHALLENGE_THRESHOLD,
        block_threshold=settings.RISK_BLOCK_THRESHOLD,
    )
