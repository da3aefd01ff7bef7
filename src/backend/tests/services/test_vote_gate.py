"""
Tests for the vote gate decision engine.

Covers the threshold policy, the rate-limit boundary, audit events for each
outcome, the typed command dispatch and the guarantee that no raw client
identifier reaches a store.
"""

from datetime import timedelta

import pytest

from core.exceptions import GateValidationError
from models.audit_event import AuditAction, AuditSeverity
from models.challenge import ChallengeRecord, ChallengeVerification
from models.rate_limit import RateLimitDecision
from services.vote_gate import (
    CaptchaVerifyCommand,
    FraudCheckCommand,
    GateOutcome,
    GateReason,
    RateLimitCheckCommand,
    VerifyVoteCommand,
)
from tests.conftest import BROWSER_UA, HEADLESS_UA

RAW_IP = "203.0.113.77"


def vote(session_id: str = "S1", poll_id: str = "P1", **kwargs) -> VerifyVoteCommand:
    kwargs.setdefault("user_agent", BROWSER_UA)
    kwargs.setdefault("device_fingerprint", "fp-device-1")
    kwargs.setdefault("raw_client_identifier", RAW_IP)
    return VerifyVoteCommand(poll_id=poll_id, session_id=session_id, **kwargs)


async def issue_challenge(gate_store, clock, token="tok-1", session_id="S1", poll_id="P1") -> None:
    await gate_store.put_challenge(
        ChallengeRecord(
            token=token,
            session_id=session_id,
            poll_id=poll_id,
            issued_at=clock(),
            expires_at=clock() + timedelta(minutes=10),
        )
    )


@pytest.mark.unit
class TestDecisionScenarios:
    async def test_low_risk_first_attempt_allowed(self, make_engine, audit_store, audit_logger):
        """Session S1, poll P1, risk 30, first attempt of the hour."""
        engine = make_engine(score=30)

        decision = await engine.dispatch(vote("S1", "P1"))
        await audit_logger.flush()

        assert decision.outcome == GateOutcome.ALLOW
        assert decision.success
        assert decision.risk_score == 30
        assert not decision.require_captcha
        assert not decision.blocked
        assert decision.error is None
        assert audit_store.events == []

    async def test_eleventh_attempt_rate_limited(self, make_engine, audit_store, audit_logger):
        """Session S2, poll P1, 11 attempts within one hour, limit 10."""
        engine = make_engine(score=0)

        decisions = [await engine.dispatch(vote("S2", "P1")) for _ in range(11)]
        await audit_logger.flush()

        assert all(d.success for d in decisions[:10])
        last = decisions[10]
        assert not last.success
        assert last.require_captcha
        assert last.reason == GateReason.RATE_LIMITED
        assert not last.rate_limit.allowed

        [event] = audit_store.events
        assert event.action_type == AuditAction.VOTE_RATE_LIMITED
        assert event.severity == AuditSeverity.MEDIUM

    async def test_rate_limited_attempt_is_not_scored(self, make_engine):
        engine = make_engine(score=0, vote_limit=1)
        await engine.dispatch(vote())

        await engine.dispatch(vote())

        assert len(engine.scorer.seen) == 1

    async def test_high_risk_blocked_with_single_audit_event(self, make_engine, audit_store, audit_logger):
        """Risk 90 for session S3."""
        engine = make_engine(score=90)

        decision = await engine.dispatch(vote("S3", "P1"))
        await audit_logger.flush()

        assert not decision.success
        assert decision.blocked
        assert decision.outcome == GateOutcome.BLOCKED

        [event] = audit_store.events
        assert event.action_type == AuditAction.VOTE_BLOCKED
        assert event.severity == AuditSeverity.HIGH
        assert event.resource_type == "poll"
        assert event.resource_id == "P1"
        assert event.details["risk_score"] == 90
        assert event.details["signals"] == {"preset": 90}
        assert event.details["session_id"] == "S3"


@pytest.mark.unit
class TestThresholdPolicy:
    @pytest.mark.parametrize("score", [0, 30, 49])
    async def test_below_challenge_threshold_allows(self, make_engine, score):
        decision = await make_engine(score=score).dispatch(vote())

        assert decision.outcome == GateOutcome.ALLOW

    @pytest.mark.parametrize("score", [50, 70, 84])
    async def test_challenge_band_without_token(self, make_engine, audit_store, audit_logger, score):
        decision = await make_engine(score=score).dispatch(vote())
        await audit_logger.flush()

        assert decision.outcome == GateOutcome.CHALLENGE_REQUIRED
        assert decision.reason == GateReason.HIGH_RISK
        [event] = audit_store.events
        assert event.action_type == AuditAction.VOTE_CHALLENGE_REQUIRED
        assert event.severity == AuditSeverity.LOW

    async def test_challenge_band_with_valid_token_allows(
        self, make_engine, gate_store, clock, audit_store, audit_logger
    ):
        await issue_challenge(gate_store, clock)

        decision = await make_engine(score=60).dispatch(vote(challenge_token="tok-1"))
        await audit_logger.flush()

        assert decision.outcome == GateOutcome.ALLOW
        assert decision.reason == GateReason.CHALLENGE_PASSED
        [event] = audit_store.events
        assert event.action_type == AuditAction.VOTE_ALLOWED_AFTER_CHALLENGE
        assert event.severity == AuditSeverity.LOW

    async def test_challenge_token_single_use_across_votes(self, make_engine, gate_store, clock):
        await issue_challenge(gate_store, clock)
        engine = make_engine(score=60)

        first = await engine.dispatch(vote(challenge_token="tok-1"))
        second = await engine.dispatch(vote(challenge_token="tok-1"))

        assert first.outcome == GateOutcome.ALLOW
        assert second.outcome == GateOutcome.CHALLENGE_REQUIRED
        assert second.reason == GateReason.CHALLENGE_FAILED

    async def test_challenge_band_with_invalid_token(self, make_engine, audit_store, audit_logger):
        decision = await make_engine(score=60).dispatch(vote(challenge_token="forged"))
        await audit_logger.flush()

        assert decision.outcome == GateOutcome.CHALLENGE_REQUIRED
        assert decision.reason == GateReason.CHALLENGE_FAILED
        [event] = audit_store.events
        assert event.action_type == AuditAction.VOTE_CHALLENGE_FAILED
        assert event.severity == AuditSeverity.MEDIUM
        assert event.details["challenge_reason"] == "not_found"

    @pytest.mark.parametrize("score", [85, 90, 100])
    async def test_block_overrides_valid_token(self, make_engine, gate_store, clock, score):
        await issue_challenge(gate_store, clock)

        decision = await make_engine(score=score).dispatch(vote(challenge_token="tok-1"))

        assert decision.outcome == GateOutcome.BLOCKED
        # Token is not spent by a blocked attempt
        [record] = gate_store.challenge_records()
        assert not record.used

    async def test_low_risk_ignores_token(self, make_engine, gate_store, clock):
        await issue_challenge(gate_store, clock)

        decision = await make_engine(score=10).dispatch(vote(challenge_token="tok-1"))

        assert decision.outcome == GateOutcome.ALLOW
        [record] = gate_store.challenge_records()
        assert not record.used

    def test_thresholds_must_be_ordered(self, make_engine, hasher):
        from services.vote_gate import DecisionEngine

        engine = make_engine(score=0)
        with pytest.raises(ValueError):
            DecisionEngine(
                hasher=hasher,
                rate_limiter=engine.rate_limiter,
                scorer=engine.scorer,
                verifier=engine.verifier,
                audit=engine.audit,
                challenge_threshold=90,
                block_threshold=80,
            )


@pytest.mark.unit
class TestValidation:
    @pytest.mark.parametrize("poll_id, session_id", [("", "S1"), ("P1", ""), ("  ", "S1"), ("P1", "   ")])
    async def test_blank_ids_rejected_without_side_effects(
        self, make_engine, gate_store, audit_store, audit_logger, poll_id, session_id
    ):
        engine = make_engine(score=90)

        with pytest.raises(GateValidationError):
            await engine.dispatch(vote(session_id=session_id, poll_id=poll_id))
        await audit_logger.flush()

        assert gate_store.rate_limit_records() == []
        assert audit_store.events == []
        assert engine.scorer.seen == []

    async def test_unknown_command_type(self, make_engine):
        with pytest.raises(TypeError):
            await make_engine(score=0).dispatch(object())


@pytest.mark.unit
class TestIdentifierHandling:
    async def test_unidentified_requests_share_one_bucket(self, make_engine):
        engine = make_engine(score=0, vote_limit=2)

        results = [
            await engine.dispatch(vote(session_id=f"S-{i}", raw_client_identifier=raw))
            for i, raw in enumerate([None, "unknown", ""])
        ]

        assert [r.success for r in results] == [True, True, False]

    async def test_equivalent_addresses_share_a_bucket(self, make_engine):
        engine = make_engine(score=0, vote_limit=1)

        first = await engine.dispatch(vote(raw_client_identifier="192.0.2.10"))
        second = await engine.dispatch(vote(raw_client_identifier="::ffff:192.0.2.10"))

        assert first.success
        assert second.reason == GateReason.RATE_LIMITED

    async def test_raw_identifier_never_stored(self, make_engine, gate_store, clock, audit_store, audit_logger):
        engine = make_engine(score=90)
        await issue_challenge(gate_store, clock)
        await engine.dispatch(vote())
        await engine.dispatch(vote(session_id="S9", challenge_token="tok-1"))
        await audit_logger.flush()

        stored = [
            *(r.model_dump_json() for r in gate_store.rate_limit_records()),
            *(r.model_dump_json() for r in gate_store.challenge_records()),
            *(e.model_dump_json() for e in audit_store.events),
        ]
        assert stored
        assert all(RAW_IP not in blob for blob in stored)


@pytest.mark.unit
class TestFullPipeline:
    """Decision engine wired to the real fraud scorer."""

    async def test_browser_vote_allowed_and_observed(self, make_engine, gate_store, hasher, clock):
        engine = make_engine()

        decision = await engine.dispatch(vote())

        assert decision.outcome == GateOutcome.ALLOW
        history = await gate_store.attempts_by_identifier(
            hasher.hash(RAW_IP), clock() - timedelta(minutes=1), clock()
        )
        assert len(history) == 1
        assert history[0].fingerprint_hash == hasher.hash_fingerprint("fp-device-1")

    async def test_unencodable_fingerprint_treated_as_missing(self, make_engine, gate_store, hasher, clock):
        """A lone surrogate is valid JSON but cannot be UTF-8 encoded for hashing."""
        engine = make_engine()

        decision = await engine.dispatch(vote(device_fingerprint="\ud800"))

        assert decision.outcome == GateOutcome.ALLOW
        assert decision.assessment.breakdown()["fingerprint_reuse"] == 10
        [observation] = await gate_store.attempts_by_identifier(
            hasher.hash(RAW_IP), clock() - timedelta(minutes=1), clock()
        )
        assert observation.fingerprint_hash is None

    async def test_headless_bot_sweeping_polls_is_blocked(self, make_engine, clock):
        engine = make_engine()

        decisions = []
        for i in range(8):
            decisions.append(
                await engine.dispatch(vote(poll_id=f"P-{i}", user_agent=HEADLESS_UA, device_fingerprint=None))
            )
            clock.advance(37)

        assert decisions[0].outcome == GateOutcome.CHALLENGE_REQUIRED
        assert decisions[-1].outcome == GateOutcome.BLOCKED
        assert decisions[-1].assessment.breakdown()["user_agent_anomaly"] == 40


@pytest.mark.unit
class TestAuxiliaryCommands:
    async def test_fraud_check_has_no_side_effects(self, make_engine, gate_store, audit_store, audit_logger):
        engine = make_engine()

        decision = await engine.dispatch(
            FraudCheckCommand(poll_id="P1", session_id="S1", user_agent=HEADLESS_UA, raw_client_identifier=RAW_IP)
        )
        await audit_logger.flush()

        assert decision.outcome == GateOutcome.CHALLENGE_REQUIRED
        assert decision.risk_score == 50
        assert gate_store.rate_limit_records() == []
        assert audit_store.events == []

    async def test_fraud_check_reports_block(self, make_engine):
        decision = await make_engine(score=95).dispatch(FraudCheckCommand(poll_id="P1", session_id="S1"))

        assert decision.blocked

    async def test_rate_limit_check_uses_action_default(self, make_engine):
        decision = await make_engine(score=0).dispatch(
            RateLimitCheckCommand(poll_id="P1", action_type="challenge_request", raw_client_identifier=RAW_IP)
        )

        assert isinstance(decision, RateLimitDecision)
        assert decision.limit == 100
        assert decision.remaining == 99

    async def test_rate_limit_check_requires_poll(self, make_engine):
        with pytest.raises(GateValidationError):
            await make_engine(score=0).dispatch(RateLimitCheckCommand(poll_id="", action_type="vote"))

    async def test_captcha_verify_consumes_token(self, make_engine, gate_store, clock):
        await issue_challenge(gate_store, clock)
        engine = make_engine(score=0)

        first = await engine.dispatch(CaptchaVerifyCommand(poll_id="P1", session_id="S1", token="tok-1"))
        second = await engine.dispatch(CaptchaVerifyCommand(poll_id="P1", session_id="S1", token="tok-1"))

        assert isinstance(first, ChallengeVerification)
        assert first.valid
        assert not second.valid
