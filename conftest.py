"""Shared test configuration — must be loaded before src modules."""

import os

# Override settings before any src modules are imported.
os.environ["DISPATCH_DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DISPATCH_QUEUE_WORKER_ENABLED"] = "false"
os.environ["DISPATCH_RENEWAL_ENABLED"] = "false"
os.environ["DISPATCH_WEBHOOK_CLIENT_STATE"] = "expected-client-state"
os.environ["DISPATCH_JOB_SUBSCRIPTION_ID"] = "sub-0000"
os.environ["DISPATCH_JOB_RESOURCE_GROUP"] = "rg-transcripts"
os.environ["DISPATCH_JOB_NAME"] = "transcript-job"
os.environ["DISPATCH_JOB_IMAGE"] = "registry.example/transcript-processor:latest"
os.environ["DISPATCH_CANCEL_URL"] = "https://dispatch.example/api/v1/cancel"
os.environ["DISPATCH_AZURE_TENANT_ID"] = "tenant-0000"
os.environ["DISPATCH_AZURE_CLIENT_ID"] = "client-0000"
os.environ["DISPATCH_AZURE_CLIENT_SECRET"] = "test-secret"

import pytest
from src.clients.identity import clear_token_cache
from src.database import engine, Base
from src.models.queue_message import QueueMessage  # noqa: F401  registers the table
from src.services.caches import cancellation_marks, dedup_cache, execution_tracker


@pytest.fixture(autouse=True)
async def _reset_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def _reset_caches():
    dedup_cache.clear()
    execution_tracker.clear()
    cancellation_marks.clear()
    clear_token_cache()
    yield
