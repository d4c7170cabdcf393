"""Shared fixtures for sync engine tests.

Provides:
- An in-memory SyncStore (no database needed)
- A fixed acting user ID
- Settings with the default conflict window
- Helpers to seed accounts, analyses and operations
"""

from __future__ import annotations

import uuid

import pytest

from src.crmsync.config import Settings
from src.crmsync.sync.audit import AuditTrail
from src.crmsync.sync.executor import SyncOperationExecutor
from src.crmsync.sync.schemas import SyncOperationCreate, SyncType
from src.crmsync.sync.store.memory import InMemorySyncStore


@pytest.fixture
def settings() -> Settings:
    """Settings independent of any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def user_id() -> str:
    return str(uuid.UUID("11111111-1111-4111-8111-111111111111"))


@pytest.fixture
def audit(store) -> AuditTrail:
    return AuditTrail(store)


@pytest.fixture
def executor(store, audit, settings) -> SyncOperationExecutor:
    return SyncOperationExecutor(store, audit, settings=settings)


@pytest.fixture
async def account(store, user_id):
    """An account in the Discovery stage."""
    return await store.insert_entity(
        "account",
        {
            "user_id": user_id,
            "account_name": "Acme Corp",
            "deal_stage": "Discovery",
            "notes": None,
        },
    )


@pytest.fixture
async def analysis(store, user_id):
    """A conversation analysis with one existing recommendation."""
    return await store.insert_entity(
        "analysis",
        {
            "user_id": user_id,
            "recommendations": {"next_step": "send pricing"},
            "heat_level": "warm",
        },
    )


@pytest.fixture
async def operation(store, user_id):
    """A pending CRM-to-local deal_update operation from Zoho."""
    return await store.insert_operation(
        user_id,
        SyncOperationCreate(
            sync_type=SyncType.CRM_TO_LOCAL,
            operation_type="deal_update",
            source_system="zoho",
            source_record_id="zoho-deal-1",
            target_system="local",
        ),
    )
