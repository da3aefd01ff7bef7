"""
Tests for the Cosmos DB audit event repository.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from azure.core.exceptions import ServiceRequestError

from core.exceptions import StoreUnavailableError
from db.cosmos_session import CosmosSession, parse_connection_string
from models.audit_event import AuditAction, AuditSeverity, SecurityAuditEvent
from repositories.cosmos_audit_repository import CosmosAuditRepository


def make_event() -> SecurityAuditEvent:
    return SecurityAuditEvent(
        action_type=AuditAction.VOTE_CHALLENGE_FAILED,
        resource_id="P1",
        severity=AuditSeverity.MEDIUM,
        details={"risk_score": 62, "challenge_reason": "expired"},
    )


@pytest.fixture
def session() -> MagicMock:
    session = MagicMock(spec=CosmosSession)
    session.create_item = AsyncMock()
    session.query_items = AsyncMock(return_value=[])
    session.close = AsyncMock()
    return session


@pytest.mark.unit
class TestCosmosAuditRepository:
    async def test_append_writes_json_document(self, session):
        event = make_event()

        await CosmosAuditRepository(session).append(event)

        container, document = session.create_item.await_args.args
        assert container == "security-audit-events"
        assert document["id"] == event.id
        assert document["action_type"] == "vote_challenge_failed"
        assert document["severity"] == "medium"
        assert isinstance(document["created_at"], str)

    async def test_append_failure_raises_store_unavailable(self, session):
        session.create_item.side_effect = ServiceRequestError("unreachable")

        with pytest.raises(StoreUnavailableError):
            await CosmosAuditRepository(session).append(make_event())

    async def test_list_for_poll_queries_single_partition(self, session):
        session.query_items.return_value = [make_event().to_document()]

        events = await CosmosAuditRepository(session).list_for_poll("P1", limit=10)

        assert session.query_items.await_args.kwargs["partition_key"] == "P1"
        assert session.query_items.await_args.kwargs["max_items"] == 10
        assert events[0].action_type == AuditAction.VOTE_CHALLENGE_FAILED
        assert events[0].details["challenge_reason"] == "expired"

    async def test_close_closes_session(self, session):
        await CosmosAuditRepository(session).close()

        session.close.assert_awaited_once()


@pytest.mark.unit
class TestCosmosSession:
    def test_parse_connection_string(self):
        endpoint, key = parse_connection_string("AccountEndpoint=https://localhost:8081/;AccountKey=abc==;")

        assert endpoint == "https://localhost:8081/"
        assert key == "abc=="

    def test_parse_connection_string_requires_key(self):
        with pytest.raises(ValueError):
            parse_connection_string("AccountEndpoint=https://localhost:8081/;")

    def test_session_requires_endpoint_or_connection_string(self):
        with pytest.raises(ValueError):
            CosmosSession(database_name="pollguard")
