"""
Single-use challenge token verification.

A token is valid only when a record matches token, session and poll, is
unused and unexpired. The used flag flips in the same atomic store
operation that checks it, so two concurrent redemptions of one token
cannot both succeed.

Failures resolve CLOSED: an unreachable store or a timeout rejects the
token, since accepting an unverified token would bypass the challenge.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from core.exceptions import InfrastructureError
from models.challenge import ChallengeRejection, ChallengeVerification
from repositories.provider import ChallengeStore

logger = structlog.get_logger(__name__)


class ChallengeVerifier:
    def __init__(
        self,
        store: ChallengeStore,
        timeout_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.timeout_seconds = timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def verify(self, token: Optional[str], session_id: str, poll_id: str) -> ChallengeVerification:
        """Redeem a challenge token; a VALID answer consumes it."""
        if not token or not token.strip():
            return ChallengeVerification.reject(ChallengeRejection.NOT_FOUND)

        try:
            result = await asyncio.wait_for(
                self.store.consume_challenge(
                    token=token.strip(),
                    session_id=session_id,
                    poll_id=poll_id,
                    now=self._clock(),
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("challenge_verifier_degraded", poll_id=poll_id, error_type="TimeoutError")
            return ChallengeVerification.reject(ChallengeRejection.TIMEOUT)
        except InfrastructureError as e:
            logger.warning(
                "challenge_verifier_degraded",
                poll_id=poll_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return ChallengeVerification.reject(ChallengeRejection.STORE_ERROR)

        if not result.valid:
            logger.info("challenge_rejected", poll_id=poll_id, reason=result.reason.value if result.reason else None)

        return result
