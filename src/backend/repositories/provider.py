"""
Store provider for dependency injection.

This module defines the store interfaces the gate components depend on and
builds the configured implementation set:

- memory: in-process stores (local development, tests, single replica)
- azure: Azure Table Storage for rate limits, challenges and attempt
  history; Azure Cosmos DB for security audit events

Usage:
    stores = await build_gate_stores(settings)
    limiter = RateLimiter(stores.rate_limits, ...)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

import structlog

from core.config import Settings
from models.audit_event import SecurityAuditEvent
from models.challenge import ChallengeRecord, ChallengeVerification
from models.rate_limit import RateLimitIncrement
from models.vote_attempt import AttemptObservation

logger = structlog.get_logger(__name__)


# =============================================================================
# Store Protocols (Interfaces)
# =============================================================================


@runtime_checkable
class RateLimitStore(Protocol):
    """Counter store supporting an atomic increment-with-bound."""

    async def increment_with_limit(
        self,
        identifier_type: str,
        identifier_value: str,
        poll_id: str,
        action_type: str,
        limit: int,
        window_seconds: int,
        now: datetime,
    ) -> RateLimitIncrement: ...


@runtime_checkable
class ChallengeStore(Protocol):
    """Challenge record store supporting compare-and-set on the used flag."""

    async def put_challenge(self, record: ChallengeRecord) -> None: ...

    async def consume_challenge(
        self,
        token: str,
        session_id: str,
        poll_id: str,
        now: datetime,
    ) -> ChallengeVerification: ...


@runtime_checkable
class AttemptHistoryStore(Protocol):
    """Append-only history of scored vote attempts."""

    async def record_attempt(self, observation: AttemptObservation) -> None: ...

    async def attempts_by_identifier(
        self, hashed_identifier: str, since: datetime, until: datetime
    ) -> list[AttemptObservation]: ...

    async def attempts_by_fingerprint(
        self, fingerprint_hash: str, since: datetime, until: datetime
    ) -> list[AttemptObservation]: ...


@runtime_checkable
class AuditEventStore(Protocol):
    """Append-only security audit event store."""

    async def append(self, event: SecurityAuditEvent) -> None: ...


@dataclass
class GateStores:
    """The set of stores the gate is wired with."""

    backend: str
    rate_limits: RateLimitStore
    challenges: ChallengeStore
    attempts: AttemptHistoryStore
    audit_events: AuditEventStore


# =============================================================================
# Store Factory Functions
# =============================================================================


def is_cosmos_enabled(settings: Settings) -> bool:
    """Check if Cosmos DB is configured."""
    return bool(settings.AZURE_COSMOS_ENDPOINT or settings.AZURE_COSMOS_CONNECTION_STRING)


def build_memory_stores(history_retention_seconds: Optional[int] = None) -> GateStores:
    """In-process stores sharing one lock domain."""
    from repositories.memory_store import (
        DEFAULT_HISTORY_RETENTION_SECONDS,
        InMemoryAuditStore,
        InMemoryGateStore,
    )

    gate_store = InMemoryGateStore(history_retention_seconds or DEFAULT_HISTORY_RETENTION_SECONDS)
    return GateStores(
        backend="memory",
        rate_limits=gate_store,
        challenges=gate_store,
        attempts=gate_store,
        audit_events=InMemoryAuditStore(),
    )


async def build_gate_stores(settings: Settings) -> GateStores:
    """Build the stores selected by GATE_STORE_BACKEND."""
    if settings.GATE_STORE_BACKEND == "memory":
        logger.info("gate_stores_initialized", backend="memory")
        return build_memory_stores(settings.attempt_history_retention_seconds)

    from services.table_service import AzureTableService

    table_service = AzureTableService(
        table_endpoint=settings.AZURE_STORAGE_TABLE_ENDPOINT,
        connection_string=settings.AZURE_STORAGE_CONNECTION_STRING,
        history_retention_seconds=settings.attempt_history_retention_seconds,
    )
    await table_service.initialize()

    if is_cosmos_enabled(settings):
        from db.cosmos_session import CosmosSession
        from repositories.cosmos_audit_repository import CosmosAuditRepository

        session = CosmosSession(
            database_name=settings.AZURE_COSMOS_DATABASE,
            endpoint=settings.AZURE_COSMOS_ENDPOINT,
            connection_string=settings.AZURE_COSMOS_CONNECTION_STRING,
            verify_ssl=not settings.AZURE_COSMOS_DISABLE_SSL,
        )
        audit_store: AuditEventStore = CosmosAuditRepository(session)
    else:
        from repositories.memory_store import InMemoryAuditStore

        logger.warning("audit_store_not_configured", fallback="in_memory")
        audit_store = InMemoryAuditStore()

    logger.info("gate_stores_initialized", backend="azure", audit_backend=type(audit_store).__name__)
    return GateStores(
        backend="azure",
        rate_limits=table_service,
        challenges=table_service,
        attempts=table_service,
        audit_events=audit_store,
    )


async def close_gate_stores(stores: GateStores) -> None:
    """Release store connections."""
    for store in (stores.rate_limits, stores.audit_events):
        close = getattr(store, "close", None)
        if close is not None:
            await close()
