"""
Document store abstraction for the resource client.

This module provides a pluggable store interface supporting:
- MongoDB via motor (production)
- In-memory (for testing and local development)

Invariants:
    - Components receive the store explicitly, there is no global client
    - Multi-document writes go through transaction()

How to change safely:
    - New backends must implement the ResourceStore protocol
    - Run the e2e suite against a replica set after changing mongo.py
"""

from typing import Any, Optional

from ..config import ClientConfig
from .base import Document, Pipeline, ResourceStore, UpdateOutcome, index_name
from .memory import InMemoryResourceStore, InMemorySession
from .mongo import MongoResourceStore


def create_resource_store(config: ClientConfig, client: Optional[Any] = None) -> ResourceStore:
    """Factory function to create a store from configuration.

    Args:
        config: Client configuration
        client: Optional motor client to use instead of creating one;
            the caller keeps ownership of it

    Returns:
        A MongoResourceStore
    """
    if client is not None:
        return MongoResourceStore(
            client,
            config.mongo.database,
            config.transaction,
            transactions_enabled=config.mongo.transactions_enabled,
        )
    return MongoResourceStore.from_settings(config.mongo, config.transaction)


__all__ = [
    # Protocol and types
    "ResourceStore",
    "UpdateOutcome",
    "Document",
    "Pipeline",
    "index_name",
    # Factory
    "create_resource_store",
    # Implementations
    "MongoResourceStore",
    "InMemoryResourceStore",
    "InMemorySession",
]
