"""
Cosmos DB repository for security audit events.

Events are append-only documents in the security-audit-events container,
partitioned by resource_id (the poll id) so a poll's review history is a
single-partition query.
"""

from azure.core.exceptions import AzureError

from core.exceptions import StoreUnavailableError
from db.cosmos_session import SECURITY_AUDIT_CONTAINER, CosmosSession
from models.audit_event import SecurityAuditEvent


class CosmosAuditRepository:
    """Repository for writing and reviewing security audit events."""

    def __init__(self, session: CosmosSession):
        self.session = session

    async def append(self, event: SecurityAuditEvent) -> None:
        """Append one event. Raises StoreUnavailableError on write failure."""
        try:
            await self.session.create_item(SECURITY_AUDIT_CONTAINER, event.to_document())
        except AzureError as e:
            raise StoreUnavailableError(f"audit store failed: {e}") from e

    async def list_for_poll(self, poll_id: str, limit: int = 100) -> list[SecurityAuditEvent]:
        """Most recent events recorded for a poll."""
        try:
            docs = await self.session.query_items(
                SECURITY_AUDIT_CONTAINER,
                "SELECT * FROM c WHERE c.resource_id = @poll_id ORDER BY c.created_at DESC",
                parameters=[{"name": "@poll_id", "value": poll_id}],
                partition_key=poll_id,
                max_items=limit,
            )
        except AzureError as e:
            raise StoreUnavailableError(f"audit store failed: {e}") from e
        return [SecurityAuditEvent.model_validate(doc) for doc in docs]

    async def close(self) -> None:
        await self.session.close()
