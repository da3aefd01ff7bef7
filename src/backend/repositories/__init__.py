"""Repository modules for gate storage."""

from repositories.memory_store import InMemoryAuditStore, InMemoryGateStore
from repositories.provider import GateStores, build_gate_stores, build_memory_stores

__all__ = [
    "GateStores",
    "InMemoryAuditStore",
    "InMemoryGateStore",
    "build_gate_stores",
    "build_memory_stores",
]
