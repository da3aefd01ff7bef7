"""
Azure Tables Service for the vote gate.

Provides Azure Table Storage operations for:
- Rate limits (atomic bounded increment per identifier/poll/action)
- Challenge records (single-use compare-and-set on the used flag)
- Attempt history (fraud signal lookups by identifier and by fingerprint)

Atomicity comes from ETag optimistic concurrency: every read-modify-write
is committed with If-Match and retried from a fresh read when another
writer got there first.

Uses managed identity authentication in production,
falls back to connection string for local development.
"""

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import uuid4

import structlog
from azure.core import MatchConditions
from azure.core.exceptions import (
    AzureError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)
from azure.data.tables import UpdateMode
from azure.data.tables.aio import (
    TableClient as AsyncTableClient,
)
from azure.data.tables.aio import (
    TableServiceClient as AsyncTableServiceClient,
)
from azure.identity.aio import DefaultAzureCredential as AsyncDefaultAzureCredential

from core.exceptions import StoreContentionError, StoreUnavailableError
from models.challenge import ChallengeRecord, ChallengeRejection, ChallengeVerification
from models.rate_limit import RateLimitIncrement, RateLimitRecord
from models.vote_attempt import AttemptObservation

logger = structlog.get_logger(__name__)


# Table names
RATE_LIMITS_TABLE = "ratelimits"
CHALLENGES_TABLE = "pollchallenges"
ATTEMPTS_TABLE = "voteattempts"

CHALLENGE_PARTITION = "challenge"

# Optimistic concurrency retries before giving up on a hot key
MAX_CAS_ATTEMPTS = 5


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def _time_key(moment: datetime) -> str:
    """Lexicographically sortable UTC timestamp for RowKeys."""
    return moment.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%f")


def _parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


class AzureTableService:
    """
    Azure Table Storage implementation of the rate limit, challenge and
    attempt history stores.

    Rate limit entities:   PartitionKey=identifier_type, RowKey=sha256(value:poll:action)
    Challenge entities:    PartitionKey="challenge", RowKey=sha256(token)
    Attempt entities:      PartitionKey="id-<hash>" or "fp-<hash>", RowKey=<time>_<uuid>
    """

    def __init__(
        self,
        table_endpoint: Optional[str] = None,
        connection_string: Optional[str] = None,
        history_retention_seconds: Optional[int] = None,
    ):
        """
        Initialize the Azure Table Service.

        Args:
            table_endpoint: Azure Storage table endpoint URL
            connection_string: Optional connection string (for local dev)
            history_retention_seconds: Age after which attempt rows are pruned
                from the partitions being written (None keeps everything)
        """
        self.table_endpoint = table_endpoint
        self._connection_string = connection_string
        self._history_retention = (
            timedelta(seconds=history_retention_seconds) if history_retention_seconds else None
        )

        self._service_client: Optional[AsyncTableServiceClient] = None
        self._credential: Optional[AsyncDefaultAzureCredential] = None
        self._is_initialized = False

    async def initialize(self) -> None:
        """Initialize the table service client and ensure tables exist."""
        if self._is_initialized:
            return

        try:
            if self._connection_string:
                # Use connection string (local development)
                self._service_client = AsyncTableServiceClient.from_connection_string(self._connection_string)
                logger.info("azure_tables_init", method="connection_string")
            else:
                # Use managed identity (production)
                if not self.table_endpoint:
                    raise ValueError("AZURE_STORAGE_TABLE_ENDPOINT must be set for managed identity auth")
                self._credential = AsyncDefaultAzureCredential()
                self._service_client = AsyncTableServiceClient(
                    endpoint=self.table_endpoint,
                    credential=self._credential,
                )
                logger.info(
                    "azure_tables_init",
                    method="managed_identity",
                    endpoint=self.table_endpoint,
                )

            await self._ensure_tables_exist()
            self._is_initialized = True

        except Exception as e:
            logger.error("azure_tables_init_failed", error=str(e))
            raise

    async def _ensure_tables_exist(self) -> None:
        """Create tables if they don't exist."""
        if not self._service_client:
            raise RuntimeError("Azure Table Service client not initialized")

        for table_name in (RATE_LIMITS_TABLE, CHALLENGES_TABLE, ATTEMPTS_TABLE):
            try:
                await self._service_client.create_table(table_name)
                logger.info("table_created", table=table_name)
            except ResourceExistsError:
                pass
            except AzureError as e:
                logger.warning("table_create_failed", table=table_name, error=str(e))

    def _get_table_client(self, table_name: str) -> AsyncTableClient:
        """Get a table client for the specified table."""
        if not self._service_client:
            raise StoreUnavailableError("Azure Table Service not initialized. Call initialize() first.")
        return self._service_client.get_table_client(table_name)

    async def close(self) -> None:
        """Close the service client."""
        if self._service_client:
            await self._service_client.close()
            self._service_client = None
            self._is_initialized = False
        if self._credential:
            await self._credential.close()
            self._credential = None

    # =========================================================================
    # Rate Limiting Operations
    # =========================================================================

    async def increment_with_limit(
        self,
        identifier_type: str,
        identifier_value: str,
        poll_id: str,
        action_type: str,
        limit: int,
        window_seconds: int,
        now: datetime,
    ) -> RateLimitIncrement:
        """
        Increment the counter for a key only while it is below the limit.

        The read, the bound check and the write form one optimistic
        transaction: a concurrent writer invalidates the ETag and this call
        re-reads and re-checks.

        Returns:
            RateLimitIncrement with accepted=False when the limit was reached
        """
        table_client = self._get_table_client(RATE_LIMITS_TABLE)
        partition = identifier_type
        row_key = _sha256(f"{identifier_value}:{poll_id}:{action_type}")

        try:
            for _ in range(MAX_CAS_ATTEMPTS):
                try:
                    entity = await table_client.get_entity(partition, row_key)
                except ResourceNotFoundError:
                    entity = None

                if entity is None or now >= _parse_time(entity["expires_at"]):
                    record = RateLimitRecord(
                        identifier_type=identifier_type,
                        identifier_value=identifier_value,
                        poll_id=poll_id,
                        action_type=action_type,
                        count=1 if limit > 0 else 0,
                        window_start=now,
                        expires_at=now + timedelta(seconds=window_seconds),
                    )
                    new_entity = self._rate_limit_entity(partition, row_key, record)
                    try:
                        if entity is None:
                            await table_client.create_entity(new_entity)
                        else:
                            await table_client.update_entity(
                                new_entity,
                                mode=UpdateMode.REPLACE,
                                etag=entity.metadata["etag"],
                                match_condition=MatchConditions.IfNotModified,
                            )
                    except (ResourceExistsError, ResourceModifiedError):
                        continue
                    return RateLimitIncrement(accepted=limit > 0, record=record)

                record = self._rate_limit_record(entity)
                if record.count >= limit:
                    return RateLimitIncrement(accepted=False, record=record)

                record.count += 1
                entity["count"] = record.count
                try:
                    await table_client.update_entity(
                        entity,
                        mode=UpdateMode.REPLACE,
                        etag=entity.metadata["etag"],
                        match_condition=MatchConditions.IfNotModified,
                    )
                except ResourceModifiedError:
                    continue
                return RateLimitIncrement(accepted=True, record=record)

        except AzureError as e:
            raise StoreUnavailableError(f"rate limit store failed: {e}") from e

        raise StoreContentionError(f"rate limit key contended after {MAX_CAS_ATTEMPTS} attempts")

    @staticmethod
    def _rate_limit_entity(partition: str, row_key: str, record: RateLimitRecord) -> dict[str, Any]:
        return {
            "PartitionKey": partition,
            "RowKey": row_key,
            "identifier_type": record.identifier_type,
            "identifier_value": record.identifier_value,
            "poll_id": record.poll_id,
            "action_type": record.action_type,
            "count": record.count,
            "window_start": record.window_start.isoformat(),
            "expires_at": record.expires_at.isoformat(),
        }

    @staticmethod
    def _rate_limit_record(entity: Any) -> RateLimitRecord:
        return RateLimitRecord(
            identifier_type=entity["identifier_type"],
            identifier_value=entity["identifier_value"],
            poll_id=entity["poll_id"],
            action_type=entity["action_type"],
            count=int(entity.get("count", 0)),
            window_start=_parse_time(entity["window_start"]),
            expires_at=_parse_time(entity["expires_at"]),
        )

    # =========================================================================
    # Challenge Operations
    # =========================================================================

    async def put_challenge(self, record: ChallengeRecord) -> None:
        """
        Store a challenge created by the external issuance step.

        The token itself is never stored, only its SHA-256.
        """
        table_client = self._get_table_client(CHALLENGES_TABLE)

        entity = {
            "PartitionKey": CHALLENGE_PARTITION,
            "RowKey": _sha256(record.token),
            "session_id": record.session_id,
            "poll_id": record.poll_id,
            "issued_at": record.issued_at.isoformat(),
            "expires_at": record.expires_at.isoformat(),
            "used": record.used,
        }

        try:
            await table_client.create_entity(entity)
        except ResourceExistsError as e:
            raise ValueError("challenge token already issued") from e
        except AzureError as e:
            raise StoreUnavailableError(f"challenge store failed: {e}") from e

    async def consume_challenge(
        self,
        token: str,
        session_id: str,
        poll_id: str,
        now: datetime,
    ) -> ChallengeVerification:
        """
        Redeem a challenge: compare-and-set used=False -> True.

        Only one caller can win the If-Match write; every other concurrent
        caller re-reads the entity, sees used=True and is rejected.
        """
        table_client = self._get_table_client(CHALLENGES_TABLE)
        row_key = _sha256(token)

        try:
            for _ in range(MAX_CAS_ATTEMPTS):
                try:
                    entity = await table_client.get_entity(CHALLENGE_PARTITION, row_key)
                except ResourceNotFoundError:
                    return ChallengeVerification.reject(ChallengeRejection.NOT_FOUND)

                if entity.get("session_id") != session_id or entity.get("poll_id") != poll_id:
                    return ChallengeVerification.reject(ChallengeRejection.MISMATCH)
                if entity.get("used"):
                    return ChallengeVerification.reject(ChallengeRejection.ALREADY_USED)
                if now >= _parse_time(entity["expires_at"]):
                    return ChallengeVerification.reject(ChallengeRejection.EXPIRED)

                entity["used"] = True
                entity["used_at"] = now.isoformat()
                try:
                    await table_client.update_entity(
                        entity,
                        mode=UpdateMode.REPLACE,
                        etag=entity.metadata["etag"],
                        match_condition=MatchConditions.IfNotModified,
                    )
                except ResourceModifiedError:
                    continue
                return ChallengeVerification.accept()

        except AzureError as e:
            raise StoreUnavailableError(f"challenge store failed: {e}") from e

        raise StoreContentionError(f"challenge record contended after {MAX_CAS_ATTEMPTS} attempts")

    # =========================================================================
    # Attempt History Operations
    # =========================================================================

    async def record_attempt(self, observation: AttemptObservation) -> None:
        """
        Append an attempt observation under each index it can be found by.

        Partition "id-<hash>" serves velocity and timing lookups,
        partition "fp-<hash>" serves fingerprint reuse lookups.
        """
        table_client = self._get_table_client(ATTEMPTS_TABLE)
        row_key = f"{_time_key(observation.observed_at)}_{uuid4().hex}"

        body = {
            "RowKey": row_key,
            "poll_id": observation.poll_id,
            "session_id": observation.session_id,
            "hashed_identifier": observation.hashed_identifier or "",
            "fingerprint_hash": observation.fingerprint_hash or "",
            "observed_at": observation.observed_at.isoformat(),
        }

        partitions = []
        if observation.hashed_identifier:
            partitions.append(f"id-{observation.hashed_identifier}")
        if observation.fingerprint_hash:
            partitions.append(f"fp-{observation.fingerprint_hash}")

        try:
            for partition in partitions:
                await table_client.create_entity({"PartitionKey": partition, **body})
                if self._history_retention is not None:
                    await self._prune_attempts(
                        table_client, partition, observation.observed_at - self._history_retention
                    )
        except AzureError as e:
            raise StoreUnavailableError(f"attempt store failed: {e}") from e

    async def _prune_attempts(self, table_client: AsyncTableClient, partition: str, cutoff: datetime) -> None:
        """Delete rows in one partition observed before the cutoff."""
        async for entity in table_client.query_entities(
            query_filter="PartitionKey eq @pk and RowKey lt @cutoff",
            parameters={"pk": partition, "cutoff": _time_key(cutoff)},
            select=["PartitionKey", "RowKey"],
        ):
            await table_client.delete_entity(partition_key=partition, row_key=entity["RowKey"])

    async def attempts_by_identifier(
        self, hashed_identifier: str, since: datetime, until: datetime
    ) -> list[AttemptObservation]:
        return await self._query_attempts(f"id-{hashed_identifier}", since, until)

    async def attempts_by_fingerprint(
        self, fingerprint_hash: str, since: datetime, until: datetime
    ) -> list[AttemptObservation]:
        return await self._query_attempts(f"fp-{fingerprint_hash}", since, until)

    async def _query_attempts(
        self, partition: str, since: datetime, until: datetime
    ) -> list[AttemptObservation]:
        table_client = self._get_table_client(ATTEMPTS_TABLE)

        observations = []
        try:
            async for entity in table_client.query_entities(
                query_filter="PartitionKey eq @pk and RowKey ge @lo and RowKey le @hi",
                parameters={
                    "pk": partition,
                    "lo": _time_key(since),
                    # "~" sorts after the "_<uuid>" suffix
                    "hi": f"{_time_key(until)}~",
                },
            ):
                observations.append(
                    AttemptObservation(
                        poll_id=entity["poll_id"],
                        session_id=entity["session_id"],
                        hashed_identifier=entity.get("hashed_identifier") or None,
                        fingerprint_hash=entity.get("fingerprint_hash") or None,
                        observed_at=_parse_time(entity["observed_at"]),
                    )
                )
        except AzureError as e:
            raise StoreUnavailableError(f"attempt store failed: {e}") from e

        return sorted(observations, key=lambda o: o.observed_at)
