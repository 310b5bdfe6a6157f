"""
E2E test fixtures for the resource client.

These tests require a MongoDB replica set (transactions need one), e.g.:

    docker run -d -p 27017:27017 mongo:7 --replSet rs0
    docker exec <container> mongosh --eval "rs.initiate()"
"""

import os
import uuid

import pytest
import pytest_asyncio

from resource_client.config import MongoSettings
from resource_client.store import MongoResourceStore

# Skip E2E tests if not in E2E mode
E2E_ENABLED = os.environ.get("RESOURCE_CLIENT_E2E_TESTS", "0") == "1"

pytestmark = pytest.mark.skipif(
    not E2E_ENABLED,
    reason="E2E tests disabled. Set RESOURCE_CLIENT_E2E_TESTS=1 to enable.",
)


@pytest.fixture
def mongo_settings() -> MongoSettings:
    """Settings pointing at a fresh database per test."""
    url = os.environ.get(
        "RESOURCE_CLIENT_MONGO_URL", "mongodb://127.0.0.1:27017/?replicaSet=rs0"
    )
    return MongoSettings(url=url, database=f"e2e_{uuid.uuid4().hex[:8]}")


@pytest_asyncio.fixture
async def mongo_store(mongo_settings):
    """MongoResourceStore that drops its database afterwards."""
    store = MongoResourceStore.from_settings(mongo_settings)
    yield store
    await store.client.drop_database(mongo_settings.database)
    await store.close()
