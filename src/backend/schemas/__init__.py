"""Schemas module initialization."""

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

__all__ = [
    "VoteGateRequest",
    "VoteGateResponse",
    "FraudCheckRequest",
    "FraudCheckResponse",
    "RateLimitCheckRequest",
    "RateLimitCheckResponse",
    "CaptchaVerifyRequest",
    "CaptchaVerifyResponse",
]
