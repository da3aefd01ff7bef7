"""
Tests for single-use challenge verification.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from core.exceptions import StoreUnavailableError
from models.challenge import ChallengeRecord, ChallengeRejection
from repositories.memory_store import InMemoryGateStore
from services.challenge_verifier import ChallengeVerifier


@pytest.fixture
def verifier(gate_store: InMemoryGateStore, clock) -> ChallengeVerifier:
    return ChallengeVerifier(gate_store, clock=clock)


@pytest.fixture
async def issued(gate_store: InMemoryGateStore, clock) -> ChallengeRecord:
    record = ChallengeRecord(
        token="tok-123",
        session_id="S1",
        poll_id="P1",
        issued_at=clock(),
        expires_at=clock() + timedelta(minutes=5),
    )
    await gate_store.put_challenge(record)
    return record


@pytest.mark.unit
class TestChallengeVerifier:
    async def test_valid_token_accepted_once(self, verifier: ChallengeVerifier, issued):
        first = await verifier.verify("tok-123", "S1", "P1")
        second = await verifier.verify("tok-123", "S1", "P1")

        assert first.valid
        assert not second.valid
        assert second.reason == ChallengeRejection.ALREADY_USED

    async def test_consumed_record_marked_used(self, verifier, issued, gate_store, clock):
        await verifier.verify("tok-123", "S1", "P1")

        [record] = gate_store.challenge_records()
        assert record.used
        assert record.used_at == clock()

    async def test_unknown_token_rejected(self, verifier, issued):
        result = await verifier.verify("tok-999", "S1", "P1")

        assert result.reason == ChallengeRejection.NOT_FOUND

    @pytest.mark.parametrize("token", [None, "", "   "])
    async def test_blank_token_rejected(self, verifier, issued, token):
        assert not (await verifier.verify(token, "S1", "P1")).valid

    @pytest.mark.parametrize("session_id, poll_id", [("S2", "P1"), ("S1", "P2")])
    async def test_token_scoped_to_session_and_poll(self, verifier, issued, session_id, poll_id):
        result = await verifier.verify("tok-123", session_id, poll_id)

        assert result.reason == ChallengeRejection.MISMATCH

    async def test_mismatch_does_not_consume(self, verifier, issued):
        await verifier.verify("tok-123", "S2", "P1")

        assert (await verifier.verify("tok-123", "S1", "P1")).valid

    async def test_expired_token_rejected(self, verifier, issued, clock):
        clock.advance(300)

        result = await verifier.verify("tok-123", "S1", "P1")

        assert result.reason == ChallengeRejection.EXPIRED

    async def test_concurrent_redemption_succeeds_once(self, verifier, issued):
        results = await asyncio.gather(*[verifier.verify("tok-123", "S1", "P1") for _ in range(20)])

        assert sum(1 for r in results if r.valid) == 1

    async def test_raw_token_not_stored(self, gate_store, issued):
        [record] = gate_store.challenge_records()

        assert record.token != "tok-123"


@pytest.mark.unit
class TestChallengeVerifierFailClosed:
    async def test_store_error_rejects(self, clock):
        store = AsyncMock()
        store.consume_challenge.side_effect = StoreUnavailableError("down")

        result = await ChallengeVerifier(store, clock=clock).verify("tok-123", "S1", "P1")

        assert not result.valid
        assert result.reason == ChallengeRejection.STORE_ERROR

    async def test_timeout_rejects(self, clock):
        async def slow_consume(**kwargs):
            await asyncio.sleep(1)

        store = AsyncMock()
        store.consume_challenge.side_effect = slow_consume

        result = await ChallengeVerifier(store, timeout_seconds=0.01, clock=clock).verify("tok-123", "S1", "P1")

        assert result.reason == ChallengeRejection.TIMEOUT
