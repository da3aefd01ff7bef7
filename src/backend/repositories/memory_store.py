"""
In-memory gate stores.

Used for local development, tests and single-replica deployments. All
check-then-act operations run under one asyncio.Lock, so concurrent
requests on the same event loop observe them as indivisible. Multi-replica
deployments must use the Azure backend instead.
"""

import asyncio
import hashlib
from datetime import datetime, timedelta

from models.audit_event import SecurityAuditEvent
from models.challenge import ChallengeRecord, ChallengeRejection, ChallengeVerification
from models.rate_limit import RateLimitIncrement, RateLimitRecord
from models.vote_attempt import AttemptObservation


# Attempt history is kept for the widest fraud window by default
DEFAULT_HISTORY_RETENTION_SECONDS = 3600

# Minimum spacing between sweeps of expired rate limit counters
RATE_LIMIT_SWEEP_INTERVAL = timedelta(minutes=1)


def _token_key(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class InMemoryGateStore:
    """
    Rate limit, challenge and attempt-history store held in process memory.

    Challenge tokens are kept under their SHA-256 so the raw token is not
    retained after issuance. Attempt observations older than the retention
    period and expired rate limit counters are evicted as new writes arrive.
    """

    def __init__(self, history_retention_seconds: int = DEFAULT_HISTORY_RETENTION_SECONDS) -> None:
        self._lock = asyncio.Lock()
        self._rate_limits: dict[tuple[str, str, str, str], RateLimitRecord] = {}
        self._next_rate_limit_sweep: datetime | None = None
        self._challenges: dict[str, ChallengeRecord] = {}
        self._attempts: list[AttemptObservation] = []
        self._history_retention = timedelta(seconds=history_retention_seconds)

    # =========================================================================
    # Rate Limits
    # =========================================================================

    async def increment_with_limit(
        self,
        identifier_type: str,
        identifier_value: str,
        poll_id: str,
        action_type: str,
        limit: int,
        window_seconds: int,
        now: datetime,
    ) -> RateLimitIncrement:
        key = (identifier_type, identifier_value, poll_id, action_type)

        async with self._lock:
            self._sweep_rate_limits(now)
            record = self._rate_limits.get(key)
            if record is None or record.is_expired(now):
                record = RateLimitRecord(
                    identifier_type=identifier_type,
                    identifier_value=identifier_value,
                    poll_id=poll_id,
                    action_type=action_type,
                    count=0,
                    window_start=now,
                    expires_at=now + timedelta(seconds=window_seconds),
                )

            if record.count >= limit:
                self._rate_limits[key] = record
                return RateLimitIncrement(accepted=False, record=record.model_copy())

            record.count += 1
            self._rate_limits[key] = record
            return RateLimitIncrement(accepted=True, record=record.model_copy())

    def _sweep_rate_limits(self, now: datetime) -> None:
        if self._next_rate_limit_sweep is not None and now < self._next_rate_limit_sweep:
            return
        self._rate_limits = {k: r for k, r in self._rate_limits.items() if not r.is_expired(now)}
        self._next_rate_limit_sweep = now + RATE_LIMIT_SWEEP_INTERVAL

    def rate_limit_records(self) -> list[RateLimitRecord]:
        """Snapshot of stored counters."""
        return [r.model_copy() for r in self._rate_limits.values()]

    # =========================================================================
    # Challenges
    # =========================================================================

    async def put_challenge(self, record: ChallengeRecord) -> None:
        """Store a challenge issued by the external issuance step."""
        stored = record.model_copy(update={"token": _token_key(record.token)})
        async with self._lock:
            self._challenges[stored.token] = stored

    async def consume_challenge(
        self,
        token: str,
        session_id: str,
        poll_id: str,
        now: datetime,
    ) -> ChallengeVerification:
        key = _token_key(token)

        async with self._lock:
            record = self._challenges.get(key)
            if record is None:
                return ChallengeVerification.reject(ChallengeRejection.NOT_FOUND)
            if record.session_id != session_id or record.poll_id != poll_id:
                return ChallengeVerification.reject(ChallengeRejection.MISMATCH)
            if record.used:
                return ChallengeVerification.reject(ChallengeRejection.ALREADY_USED)
            if now >= record.expires_at:
                return ChallengeVerification.reject(ChallengeRejection.EXPIRED)

            record.used = True
            record.used_at = now
            return ChallengeVerification.accept()

    def challenge_records(self) -> list[ChallengeRecord]:
        """Snapshot of stored challenges (tokens hashed)."""
        return [r.model_copy() for r in self._challenges.values()]

    # =========================================================================
    # Attempt History
    # =========================================================================

    async def record_attempt(self, observation: AttemptObservation) -> None:
        async with self._lock:
            self._attempts.append(observation.model_copy())
            cutoff = observation.observed_at - self._history_retention
            if self._attempts[0].observed_at < cutoff:
                self._attempts = [o for o in self._attempts if o.observed_at >= cutoff]

    async def attempts_by_identifier(
        self, hashed_identifier: str, since: datetime, until: datetime
    ) -> list[AttemptObservation]:
        return self._select(lambda o: o.hashed_identifier == hashed_identifier, since, until)

    async def attempts_by_fingerprint(
        self, fingerprint_hash: str, since: datetime, until: datetime
    ) -> list[AttemptObservation]:
        return self._select(lambda o: o.fingerprint_hash == fingerprint_hash, since, until)

    def _select(self, predicate, since: datetime, until: datetime) -> list[AttemptObservation]:
        matches = [
            o.model_copy() for o in self._attempts if predicate(o) and since <= o.observed_at <= until
        ]
        return sorted(matches, key=lambda o: o.observed_at)


class InMemoryAuditStore:
    """Append-only audit event list."""

    def __init__(self) -> None:
        self._events: list[SecurityAuditEvent] = []

    async def append(self, event: SecurityAuditEvent) -> None:
        self._events.append(event)

    @property
    def events(self) -> list[SecurityAuditEvent]:
        return list(self._events)
