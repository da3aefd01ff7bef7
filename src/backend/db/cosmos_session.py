"""
Azure Cosmos DB session for the security audit log.

One CosmosSession owns one async client. It is built at startup from
settings and handed to the repositories that need it.
"""

from typing import Any, Optional

import structlog
from azure.cosmos.aio import ContainerProxy, CosmosClient
from azure.identity.aio import DefaultAzureCredential

logger = structlog.get_logger(__name__)

# Container names
SECURITY_AUDIT_CONTAINER = "security-audit-events"


def parse_connection_string(connection_string: str) -> tuple[str, str]:
    """Split "AccountEndpoint=...;AccountKey=...;" into (endpoint, key)."""
    parts = dict(part.split("=", 1) for part in connection_string.split(";") if "=" in part)
    endpoint = parts.get("AccountEndpoint", "")
    key = parts.get("AccountKey", "")
    if not endpoint or not key:
        raise ValueError("Cosmos connection string must contain AccountEndpoint and AccountKey")
    return endpoint, key


class CosmosSession:
    """
    Lazily connected Cosmos DB client for one database.

    Supports two authentication modes:
    1. Connection string (local development with the Cosmos DB Emulator)
    2. DefaultAzureCredential/RBAC (Azure deployment)
    """

    def __init__(
        self,
        database_name: str,
        endpoint: Optional[str] = None,
        connection_string: Optional[str] = None,
        verify_ssl: bool = True,
    ):
        if not endpoint and not connection_string:
            raise ValueError("Either a Cosmos endpoint or a connection string must be set")

        self.database_name = database_name
        self._endpoint = endpoint
        self._connection_string = connection_string
        self._verify_ssl = verify_ssl
        self._client: Optional[CosmosClient] = None
        self._credential: Optional[DefaultAzureCredential] = None

    def _connect(self) -> CosmosClient:
        if self._client is not None:
            return self._client

        if self._connection_string:
            endpoint, key = parse_connection_string(self._connection_string)
            # Emulator uses a self-signed cert
            self._client = CosmosClient(url=endpoint, credential=key, connection_verify=self._verify_ssl)
            logger.info("cosmos_client_initialized", endpoint=endpoint, mode="connection_string")
        else:
            self._credential = DefaultAzureCredential()
            self._client = CosmosClient(url=self._endpoint, credential=self._credential)
            logger.info("cosmos_client_initialized", endpoint=self._endpoint, mode="rbac")

        return self._client

    def container(self, container_name: str) -> ContainerProxy:
        """Container proxy in this session's database."""
        return self._connect().get_database_client(self.database_name).get_container_client(container_name)

    async def create_item(self, container_name: str, item: dict[str, Any]) -> dict[str, Any]:
        """Create a document; the item must carry 'id' and its partition key field."""
        return await self.container(container_name).create_item(body=item)

    async def query_items(
        self,
        container_name: str,
        query: str,
        parameters: Optional[list[dict[str, Any]]] = None,
        partition_key: Optional[str] = None,
        max_items: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Query items using SQL-like syntax.

        Example:
            await session.query_items(
                SECURITY_AUDIT_CONTAINER,
                'SELECT * FROM c WHERE c.resource_id = @poll_id',
                parameters=[{'name': '@poll_id', 'value': 'poll-1'}],
                partition_key='poll-1',
            )
        """
        query_kwargs: dict[str, Any] = {"query": query}
        if parameters:
            query_kwargs["parameters"] = parameters
        if partition_key:
            query_kwargs["partition_key"] = partition_key
        if max_items:
            query_kwargs["max_item_count"] = max_items

        items: list[dict[str, Any]] = []
        async for item in self.container(container_name).query_items(**query_kwargs):
            items.append(item)
            if max_items and len(items) >= max_items:
                break
        return items

    async def close(self) -> None:
        """Close the client. Should be called during application shutdown."""
        if self._client is not None:
            await self._client.close()
            self._client = None
            logger.info("cosmos_client_closed")

        if self._credential is not None:
            await self._credential.close()
            self._credential = None
