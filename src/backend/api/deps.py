"""
Shared dependencies for API endpoints.
"""

from typing import Optional

from fastapi import HTTPException, Request, status

from services.vote_gate import DecisionEngine


def get_vote_gate(request: Request) -> DecisionEngine:
    """The decision engine built at startup."""
    engine = getattr(request.app.state, "vote_gate", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Vote gate is not initialized",
        )
    return engine


def get_client_ip(request: Request) -> Optional[str]:
    """Extract real client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # First hop is the original client
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return None
