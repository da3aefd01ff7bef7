"""
API v1 router aggregating all endpoints.
"""

from fastapi import APIRouter

from api.v1.vote_gate import router as vote_gate_router

router = APIRouter()

router.include_router(vote_gate_router, prefix="/vote-gate", tags=["Vote Gate"])
