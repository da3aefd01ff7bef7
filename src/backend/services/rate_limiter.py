"""
Rate limiting for vote gate actions.

Counts actions per (identifier, poll, action type) in a window that opens at
the first observation and closes on expiry. The bounded increment happens
atomically in the store, so concurrent callers cannot push a key past its
limit.

Infrastructure failures fail OPEN: refusing every vote during a store
outage is worse than briefly under-enforcing limits.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from core.exceptions import InfrastructureError
from models.rate_limit import RateLimitDecision, RateLimitOutcome
from repositories.provider import RateLimitStore

logger = structlog.get_logger(__name__)

VOTE_ACTION = "vote"

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_VOTE_LIMIT = 10
DEFAULT_ACTION_LIMIT = 100


class RateLimiter:
    """Rolling-window limiter over an atomic counter store."""

    def __init__(
        self,
        store: RateLimitStore,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        vote_limit: int = DEFAULT_VOTE_LIMIT,
        default_limit: int = DEFAULT_ACTION_LIMIT,
        timeout_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.window_seconds = window_seconds
        self.vote_limit = vote_limit
        self.default_limit = default_limit
        self.timeout_seconds = timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def limit_for(self, action_type: str) -> int:
        """Default per-window limit for an action type."""
        return self.vote_limit if action_type == VOTE_ACTION else self.default_limit

    async def check_and_increment(
        self,
        identifier_type: str,
        identifier_value: str,
        poll_id: str,
        action_type: str,
        limit_per_window: Optional[int] = None,
    ) -> RateLimitDecision:
        """
        Count one action and answer whether it is within the limit.

        Args:
            identifier_type: "ip" for hashed addresses, "unidentified" for the shared bucket
            identifier_value: Hashed identifier (never the raw address)
            poll_id: Poll the action targets
            action_type: "vote", "challenge_request", ...
            limit_per_window: Override for the action type's default limit

        Returns:
            RateLimitDecision (ALLOWED with degraded=True when the store failed)
        """
        limit = limit_per_window if limit_per_window is not None else self.limit_for(action_type)

        try:
            increment = await asyncio.wait_for(
                self.store.increment_with_limit(
                    identifier_type=identifier_type,
                    identifier_value=identifier_value,
                    poll_id=poll_id,
                    action_type=action_type,
                    limit=limit,
                    window_seconds=self.window_seconds,
                    now=self._clock(),
                ),
                timeout=self.timeout_seconds,
            )
        except (InfrastructureError, asyncio.TimeoutError) as e:
            logger.warning(
                "rate_limiter_degraded",
                action_type=action_type,
                poll_id=poll_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return RateLimitDecision(
                outcome=RateLimitOutcome.ALLOWED,
                limit=limit,
                remaining=limit,
                degraded=True,
            )

        count = increment.record.count
        if not increment.accepted:
            logger.info(
                "rate_limit_exceeded",
                action_type=action_type,
                poll_id=poll_id,
                identifier=identifier_value[:8],
                count=count,
                limit=limit,
            )
            return RateLimitDecision(
                outcome=RateLimitOutcome.DENIED,
                limit=limit,
                remaining=0,
                count=count,
            )

        return RateLimitDecision(
            outcome=RateLimitOutcome.ALLOWED,
            limit=limit,
            remaining=max(0, limit - count),
            count=count,
        )
