"""
Fraud and bot risk scoring for poll vote attempts.

Additive, explainable scoring from independent signals:
1. User-agent anomaly - missing, malformed or automation user agents
2. Device fingerprint reuse - one device cycling through many sessions
3. Identifier velocity - one network identifier voting across many polls
4. Temporal regularity - machine-like spacing between attempts

Each signal yields a sub-score; the final score is their sum clamped to
0-100. Scoring is deterministic: "now" is the attempt timestamp and the
history stores are only read here, never written. A signal that fails to
compute contributes 0 instead of aborting the assessment.
"""

import asyncio
import math
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Optional

import structlog

from core.exceptions import InfrastructureError
from models.vote_attempt import RiskAssessment, SignalScore, VoteAttempt
from repositories.provider import AttemptHistoryStore

logger = structlog.get_logger(__name__)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class FraudConfig:
    """Signal weights and windows."""

    # User-agent anomaly
    MISSING_USER_AGENT_SCORE: int = 25
    MALFORMED_USER_AGENT_SCORE: int = 15
    AUTOMATION_USER_AGENT_SCORE: int = 40
    MIN_USER_AGENT_LENGTH: int = 12
    MAX_USER_AGENT_LENGTH: int = 512

    # Device fingerprint reuse
    MISSING_FINGERPRINT_SCORE: int = 10
    FINGERPRINT_WINDOW_SECONDS: int = 900
    FINGERPRINT_SESSION_ALLOWANCE: int = 2
    FINGERPRINT_REUSE_STEP: int = 10
    FINGERPRINT_REUSE_CAP: int = 40

    # Identifier velocity
    VELOCITY_WINDOW_SECONDS: int = 600
    VELOCITY_POLL_ALLOWANCE: int = 3
    VELOCITY_STEP: int = 8
    VELOCITY_CAP: int = 40

    # Temporal regularity
    REGULARITY_MIN_PRIOR_ATTEMPTS: int = 4
    REGULARITY_MAX_STD_DEV_SECONDS: float = 1.0
    REGULARITY_MAX_MEAN_INTERVAL_SECONDS: float = 60.0
    REGULARITY_SCORE: int = 30


# Substrings of user agents sent by automation frameworks and scripted clients
AUTOMATION_PATTERNS = (
    "headless",
    "puppeteer",
    "playwright",
    "selenium",
    "webdriver",
    "phantomjs",
    "python-requests",
    "python-urllib",
    "aiohttp",
    "httpx",
    "curl/",
    "wget/",
    "go-http-client",
    "okhttp",
    "scrapy",
    "bot",
    "spider",
    "crawler",
)

# Browsers and well-behaved clients start with a product token like "Mozilla/5.0"
_PRODUCT_TOKEN = re.compile(r"^[A-Za-z][A-Za-z0-9._-]*/[0-9A-Za-z.]+")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


# =============================================================================
# User-Agent Analysis
# =============================================================================


def analyze_user_agent(user_agent: Optional[str], config: FraudConfig) -> tuple[int, Optional[str]]:
    """Return (sub_score, detail) for a user-agent string."""
    if user_agent is None or not user_agent.strip():
        return config.MISSING_USER_AGENT_SCORE, "Missing user agent"

    ua_lower = user_agent.lower()
    for pattern in AUTOMATION_PATTERNS:
        if pattern in ua_lower:
            return config.AUTOMATION_USER_AGENT_SCORE, f"Automation user agent ({pattern.rstrip('/')})"

    stripped = user_agent.strip()
    if (
        len(stripped) < config.MIN_USER_AGENT_LENGTH
        or len(stripped) > config.MAX_USER_AGENT_LENGTH
        or _CONTROL_CHARS.search(stripped)
        or not _PRODUCT_TOKEN.match(stripped)
    ):
        return config.MALFORMED_USER_AGENT_SCORE, "Malformed user agent"

    return 0, None


# =============================================================================
# Timing Analysis
# =============================================================================


def interval_stats(timestamps: list) -> Optional[tuple[float, float]]:
    """Mean and standard deviation of the gaps between sorted timestamps."""
    if len(timestamps) < 2:
        return None

    intervals = [(timestamps[i] - timestamps[i - 1]).total_seconds() for i in range(1, len(timestamps))]
    avg_interval = sum(intervals) / len(intervals)
    variance = sum((i - avg_interval) ** 2 for i in intervals) / len(intervals)
    return avg_interval, math.sqrt(variance)


# =============================================================================
# Main Fraud Scorer
# =============================================================================


class FraudScorer:
    """
    Combines all signals into a single risk assessment.

    History lookups go through the injected AttemptHistoryStore; each lookup
    is bounded by timeout_seconds and fails open for its own signal only.
    """

    def __init__(
        self,
        history: AttemptHistoryStore,
        hash_fingerprint: Callable[[Optional[str]], Optional[str]],
        config: Optional[FraudConfig] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.history = history
        self.hash_fingerprint = hash_fingerprint
        self.config = config or FraudConfig()
        self.timeout_seconds = timeout_seconds

    async def score(self, attempt: VoteAttempt) -> RiskAssessment:
        """Compute the risk assessment for a vote attempt."""
        signals = [
            await self._run_signal("user_agent_anomaly", self._user_agent_signal, attempt),
            await self._run_signal("fingerprint_reuse", self._fingerprint_signal, attempt),
            await self._run_signal("identifier_velocity", self._velocity_signal, attempt),
            await self._run_signal("temporal_regularity", self._regularity_signal, attempt),
        ]

        total = sum(s.score for s in signals)
        return RiskAssessment(score=max(0, min(total, 100)), signals=signals)

    async def _run_signal(
        self,
        name: str,
        signal: Callable[[VoteAttempt], Awaitable[tuple[int, Optional[str]]]],
        attempt: VoteAttempt,
    ) -> SignalScore:
        try:
            sub_score, detail = await asyncio.wait_for(signal(attempt), timeout=self.timeout_seconds)
        except (InfrastructureError, asyncio.TimeoutError, ValueError, KeyError) as e:
            logger.warning(
                "fraud_signal_degraded",
                signal=name,
                poll_id=attempt.poll_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return SignalScore(name=name, score=0, detail="signal unavailable", failed=True)

        return SignalScore(name=name, score=max(0, sub_score), detail=detail)

    # =========================================================================
    # Signals
    # =========================================================================

    async def _user_agent_signal(self, attempt: VoteAttempt) -> tuple[int, Optional[str]]:
        return analyze_user_agent(attempt.user_agent, self.config)

    async def _fingerprint_signal(self, attempt: VoteAttempt) -> tuple[int, Optional[str]]:
        """Same device seen with many distinct sessions in a short window."""
        fingerprint_hash = self.hash_fingerprint(attempt.device_fingerprint)
        if fingerprint_hash is None:
            return self.config.MISSING_FINGERPRINT_SCORE, "No device fingerprint provided"

        since = attempt.timestamp - timedelta(seconds=self.config.FINGERPRINT_WINDOW_SECONDS)
        history = await self.history.attempts_by_fingerprint(fingerprint_hash, since, attempt.timestamp)

        sessions = {o.session_id for o in history}
        sessions.add(attempt.session_id)
        excess = len(sessions) - 1 - self.config.FINGERPRINT_SESSION_ALLOWANCE
        if excess <= 0:
            return 0, None

        score = min(excess * self.config.FINGERPRINT_REUSE_STEP, self.config.FINGERPRINT_REUSE_CAP)
        return score, f"Device associated with {len(sessions)} sessions"

    async def _velocity_signal(self, attempt: VoteAttempt) -> tuple[int, Optional[str]]:
        """Same identifier voting across many polls in a short window."""
        if attempt.hashed_identifier is None:
            return 0, None

        since = attempt.timestamp - timedelta(seconds=self.config.VELOCITY_WINDOW_SECONDS)
        history = await self.history.attempts_by_identifier(attempt.hashed_identifier, since, attempt.timestamp)

        polls = {o.poll_id for o in history}
        polls.add(attempt.poll_id)
        excess = len(polls) - 1 - self.config.VELOCITY_POLL_ALLOWANCE
        if excess <= 0:
            return 0, None

        score = min(excess * self.config.VELOCITY_STEP, self.config.VELOCITY_CAP)
        return score, f"Identifier voted on {len(polls)} polls"

    async def _regularity_signal(self, attempt: VoteAttempt) -> tuple[int, Optional[str]]:
        """Check for suspiciously consistent timing (bot-like regularity)."""
        if attempt.hashed_identifier is None:
            return 0, None

        since = attempt.timestamp - timedelta(seconds=self.config.VELOCITY_WINDOW_SECONDS)
        history = await self.history.attempts_by_identifier(attempt.hashed_identifier, since, attempt.timestamp)
        if len(history) < self.config.REGULARITY_MIN_PRIOR_ATTEMPTS:
            return 0, None

        timestamps = sorted(o.observed_at for o in history)
        if timestamps[-1] < attempt.timestamp:
            timestamps.append(attempt.timestamp)

        stats = interval_stats(timestamps)
        if stats is None:
            return 0, None

        avg_interval, std_dev = stats
        if (
            std_dev < self.config.REGULARITY_MAX_STD_DEV_SECONDS
            and avg_interval < self.config.REGULARITY_MAX_MEAN_INTERVAL_SECONDS
        ):
            return self.config.REGULARITY_SCORE, "Machine-like voting timing pattern"

        return 0, None
