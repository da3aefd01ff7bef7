"""
Vote gate Pydantic schemas.

Wire format for the Poll Voting Service. Fields are accepted in either
snake_case or camelCase and serialized as camelCase.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _GateSchema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VoteGateRequest(_GateSchema):
    """Vote attempt as submitted by the Poll Voting Service."""

    poll_id: str = ""
    session_id: str = ""
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    raw_client_identifier: Optional[str] = Field(
        None,
        description="Client IP; derived from the request when omitted",
    )
    challenge_token: Optional[str] = None


class VoteGateResponse(_GateSchema):
    """Decision returned to the Poll Voting Service."""

    success: bool
    risk_score: int = 0
    require_captcha: bool = False
    blocked: bool = False
    error: Optional[str] = None


class FraudCheckRequest(_GateSchema):
    """Pre-vote risk check, sent before the ballot is shown."""

    poll_id: str = ""
    session_id: str = ""
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    raw_client_identifier: Optional[str] = None


class FraudCheckResponse(_GateSchema):
    """Whether the upcoming vote will need a challenge or is blocked."""

    risk_score: int
    require_captcha: bool
    blocked: bool
    signals: dict[str, int] = Field(default_factory=dict)


class RateLimitCheckRequest(_GateSchema):
    """Rate limit check for a non-vote action type."""

    poll_id: str = ""
    action_type: str = Field("challenge_request", min_length=1, max_length=64)
    raw_client_identifier: Optional[str] = None


class RateLimitCheckResponse(_GateSchema):
    allowed: bool
    limit: int
    remaining: int


class CaptchaVerifyRequest(_GateSchema):
    """Standalone redemption of a previously issued challenge."""

    poll_id: str = ""
    session_id: str = ""
    token: str = ""


class CaptchaVerifyResponse(_GateSchema):
    valid: bool
    reason: Optional[str] = None
