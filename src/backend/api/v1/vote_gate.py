"""
Vote gate API endpoints.

Called by the Poll Voting Service before it records a ballot:
1. /fraud-check - pre-vote risk check (widget load)
2. /rate-limit-check - check for non-vote actions (challenge requests)
3. /captcha-verify - standalone challenge redemption
4. /verify-vote - the full gate decision; persist the vote only on success
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from api.deps import get_client_ip, get_vote_gate
from core.exceptions import GateValidationError
from schemas.vote_gate import (
    CaptchaVerifyRequest,
    CaptchaVerifyResponse,
    FraudCheckRequest,
    FraudCheckResponse,
    RateLimitCheckRequest,
    RateLimitCheckResponse,
    VoteGateRequest,
    VoteGateResponse,
)
from services.vote_gate import (
    CaptchaVerifyCommand,
    DecisionEngine,
    FraudCheckCommand,
    GateDecision,
    GateOutcome,
    GateReason,
    RateLimitCheckCommand,
    VerifyVoteCommand,
)

logger = structlog.get_logger(__name__)

router = APIRouter()

VoteGate = Annotated[DecisionEngine, Depends(get_vote_gate)]


def _decision_status(decision: GateDecision) -> int:
    if decision.outcome == GateOutcome.BLOCKED:
        return status.HTTP_403_FORBIDDEN
    if decision.reason == GateReason.RATE_LIMITED:
        return status.HTTP_429_TOO_MANY_REQUESTS
    return status.HTTP_200_OK


def _gate_response(status_code: int, body: VoteGateResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


@router.post(
    "/verify-vote",
    response_model=VoteGateResponse,
    responses={
        400: {"model": VoteGateResponse},
        403: {"model": VoteGateResponse},
        429: {"model": VoteGateResponse},
    },
)
async def verify_vote(body: VoteGateRequest, request: Request, gate: VoteGate) -> JSONResponse:
    """
    Decide whether a vote attempt may be recorded.

    - 200 with success=true: record the vote
    - 200 with requireCaptcha=true: show a challenge and resubmit with its token
    - 429: rate limited, challenge required
    - 403: blocked
    """
    command = VerifyVoteCommand(
        poll_id=body.poll_id,
        session_id=body.session_id,
        user_agent=body.user_agent,
        device_fingerprint=body.device_fingerprint,
        raw_client_identifier=body.raw_client_identifier or get_client_ip(request),
        challenge_token=body.challenge_token,
    )

    try:
        decision: GateDecision = await gate.dispatch(command)
    except GateValidationError as e:
        return _gate_response(
            status.HTTP_400_BAD_REQUEST,
            VoteGateResponse(success=False, error=str(e)),
        )

    logger.info(
        "vote_gate_decision",
        poll_id=command.poll_id,
        outcome=decision.outcome.value,
        reason=decision.reason.value,
        risk_score=decision.risk_score,
    )

    return _gate_response(
        _decision_status(decision),
        VoteGateResponse(
            success=decision.success,
            risk_score=decision.risk_score,
            require_captcha=decision.require_captcha,
            blocked=decision.blocked,
            error=decision.error,
        ),
    )


@router.post("/fraud-check", response_model=FraudCheckResponse)
async def fraud_check(body: FraudCheckRequest, request: Request, gate: VoteGate) -> JSONResponse:
    """Pre-vote risk check. Does not count against the vote rate limit."""
    command = FraudCheckCommand(
        poll_id=body.poll_id,
        session_id=body.session_id,
        user_agent=body.user_agent,
        device_fingerprint=body.device_fingerprint,
        raw_client_identifier=body.raw_client_identifier or get_client_ip(request),
    )

    try:
        decision: GateDecision = await gate.dispatch(command)
    except GateValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    response = FraudCheckResponse(
        risk_score=decision.risk_score,
        require_captcha=decision.require_captcha,
        blocked=decision.blocked,
        signals=decision.assessment.breakdown() if decision.assessment else {},
    )
    status_code = status.HTTP_403_FORBIDDEN if decision.blocked else status.HTTP_200_OK
    return JSONResponse(status_code=status_code, content=response.model_dump(by_alias=True))


@router.post("/rate-limit-check", response_model=RateLimitCheckResponse)
async def rate_limit_check(body: RateLimitCheckRequest, request: Request, gate: VoteGate) -> JSONResponse:
    """Count one action of the given type and report whether it is allowed."""
    command = RateLimitCheckCommand(
        poll_id=body.poll_id,
        action_type=body.action_type,
        raw_client_identifier=body.raw_client_identifier or get_client_ip(request),
    )

    try:
        decision = await gate.dispatch(command)
    except GateValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    response = RateLimitCheckResponse(
        allowed=decision.allowed,
        limit=decision.limit,
        remaining=decision.remaining,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if decision.allowed else status.HTTP_429_TOO_MANY_REQUESTS,
        content=response.model_dump(by_alias=True),
        headers={
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
        },
    )


@router.post("/captcha-verify", response_model=CaptchaVerifyResponse)
async def captcha_verify(body: CaptchaVerifyRequest, gate: VoteGate) -> JSONResponse:
    """Redeem a challenge token. A valid token cannot be redeemed again."""
    command = CaptchaVerifyCommand(poll_id=body.poll_id, session_id=body.session_id, token=body.token)

    try:
        verification = await gate.dispatch(command)
    except GateValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    response = CaptchaVerifyResponse(
        valid=verification.valid,
        reason=verification.reason.value if verification.reason else None,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if verification.valid else status.HTTP_400_BAD_REQUEST,
        content=response.model_dump(by_alias=True),
    )
