"""Database module."""

from db.cosmos_session import SECURITY_AUDIT_CONTAINER, CosmosSession

__all__ = ["CosmosSession", "SECURITY_AUDIT_CONTAINER"]
