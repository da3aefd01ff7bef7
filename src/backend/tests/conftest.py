"""
Pytest fixtures for PollGuard backend tests.
"""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from httpx import ASGITransport, AsyncClient

# Set test environment variables before importing app
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("GATE_STORE_BACKEND", "memory")

from core.security import IdentityHasher  # noqa: E402
from models.vote_attempt import RiskAssessment, SignalScore, VoteAttempt  # noqa: E402
from repositories.memory_store import InMemoryAuditStore, InMemoryGateStore  # noqa: E402
from services.audit_logger import AuditLogger  # noqa: E402
from services.challenge_verifier import ChallengeVerifier  # noqa: E402
from services.fraud_detection import FraudScorer  # noqa: E402
from services.rate_limiter import RateLimiter  # noqa: E402
from services.vote_gate import DecisionEngine  # noqa: E402

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
HEADLESS_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 HeadlessChrome/120.0.0.0 Safari/537.36"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FixedScorer:
    """Scorer stub returning a preset score and remembering what it saw."""

    def __init__(self, score: int):
        self.score_value = score
        self.seen: list[VoteAttempt] = []

    async def score(self, attempt: VoteAttempt) -> RiskAssessment:
        self.seen.append(attempt)
        return RiskAssessment(
            score=self.score_value,
            signals=[SignalScore(name="preset", score=self.score_value, detail="fixed score")],
        )


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio backend for async tests."""
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def hasher() -> IdentityHasher:
    return IdentityHasher("test-identity-pepper")


@pytest.fixture
def gate_store() -> InMemoryGateStore:
    return InMemoryGateStore()


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def audit_logger(audit_store: InMemoryAuditStore) -> AuditLogger:
    return AuditLogger(audit_store, max_queue_size=100, max_retries=3, retry_base_delay=0)


@pytest.fixture
def make_engine(
    clock: FakeClock,
    hasher: IdentityHasher,
    gate_store: InMemoryGateStore,
    audit_logger: AuditLogger,
) -> Any:
    """Build a DecisionEngine over in-memory stores, optionally with a preset score."""

    def _make(score: Optional[int] = None, vote_limit: int = 10) -> DecisionEngine:
        scorer = (
            FixedScorer(score)
            if score is not None
            else FraudScorer(gate_store, hash_fingerprint=hasher.hash_fingerprint)
        )
        return DecisionEngine(
            hasher=hasher,
            rate_limiter=RateLimiter(gate_store, vote_limit=vote_limit, clock=clock),
            scorer=scorer,
            verifier=ChallengeVerifier(gate_store, clock=clock),
            audit=audit_logger,
            history=gate_store,
            clock=clock,
        )

    return _make


@pytest.fixture
async def app() -> Any:
    """Create FastAPI application for testing."""
    from main import app as fastapi_app

    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
