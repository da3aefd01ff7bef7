#!/usr/bin/env python3
"""
Initialize Cosmos DB Emulator with the PollGuard audit database.

Creates the database and the security audit container in the local Cosmos DB
Emulator. Run this once after starting the emulator.

Prerequisites:
1. Install Cosmos DB Emulator: https://aka.ms/cosmosdb-emulator
2. Start the emulator (it runs on https://localhost:8081)
3. Run this script: python scripts/init-cosmos-emulator.py

The emulator uses a well-known key that is safe for local development only.
"""

import asyncio
import sys

from azure.core.exceptions import AzureError
from azure.cosmos import PartitionKey
from azure.cosmos.aio import CosmosClient

# Cosmos DB Emulator connection details (well-known credentials)
EMULATOR_ENDPOINT = "https://localhost:8081"
EMULATOR_KEY = "C2y6yDjf5/R+ob0N8A7Cgv30VRDJIWEHLM+4QDU5DE2nQ9nDuVTqobD4b8mGGyPMbIZnqyMsEcaGQy67XIw/Jw=="
DATABASE_NAME = "pollguard"

# Audit events are partitioned by poll id
CONTAINERS = [
    {"name": "security-audit-events", "partition_key": "/resource_id"},
]


async def init_emulator() -> int:
    """Create the database and containers. Returns a process exit code."""
    print(f"Connecting to Cosmos DB Emulator at {EMULATOR_ENDPOINT}...")

    # Emulator uses a self-signed certificate
    client = CosmosClient(url=EMULATOR_ENDPOINT, credential=EMULATOR_KEY, connection_verify=False)

    try:
        database = await client.create_database_if_not_exists(id=DATABASE_NAME)
        print(f"  Database '{DATABASE_NAME}' ready")

        for container_def in CONTAINERS:
            await database.create_container_if_not_exists(
                id=container_def["name"],
                partition_key=PartitionKey(path=container_def["partition_key"]),
            )
            print(f"  Container '{container_def['name']}' (partition: {container_def['partition_key']})")

        print("\nDone. Set in .env:")
        print(f"  AZURE_COSMOS_CONNECTION_STRING=AccountEndpoint={EMULATOR_ENDPOINT}/;AccountKey={EMULATOR_KEY};")
        print("  AZURE_COSMOS_DISABLE_SSL=true")
        print("  GATE_STORE_BACKEND=azure")
        return 0

    except AzureError as e:
        print(f"\nFailed to initialize emulator: {e}")
        print("Make sure the Cosmos DB Emulator is running on https://localhost:8081")
        return 1

    finally:
        await client.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(init_emulator()))
