"""Unit tests for the sync operation executor and entity handlers.

Covers operation creation, the pending -> completed / failed lifecycle, each
entity handler, audit entries, best-effort audit behaviour and the
completed_at / status invariant.
"""

from __future__ import annotations

import asyncio
import inspect
from unittest.mock import AsyncMock, patch

import pytest

from src.crmsync.config import Settings
from src.crmsync.sync.audit import AuditTrail
from src.crmsync.sync.errors import (
    EntityNotFoundError,
    OperationCompletedError,
    OperationInProgressError,
    OperationNotFoundError,
    StaleEntityError,
    SyncValidationError,
    UnknownOperationTypeError,
)
from src.crmsync.sync.executor import SyncOperationExecutor, parse_payload
from src.crmsync.sync.handlers import TaskCompletionHandler
from src.crmsync.sync.schemas import (
    AuditAction,
    DealUpdatePayload,
    EntitySnapshot,
    HandlerResult,
    OperationStatus,
    OperationType,
    SyncExecutionResult,
    SyncOperationCreate,
    SyncType,
    TaskCompletionPayload,
)
from src.crmsync.sync.store.memory import InMemorySyncStore


def _assert_status_invariant(operation):
    """completed_at is set exactly when the operation is completed."""
    assert (operation.completed_at is not None) == (
        operation.operation_status == OperationStatus.COMPLETED
    )


def _deal_update(target_record_id, **sync_data) -> SyncOperationCreate:
    return SyncOperationCreate(
        sync_type=SyncType.CRM_TO_LOCAL,
        operation_type="deal_update",
        source_system="zoho",
        source_record_id="zoho-deal-1",
        target_system="local",
        target_record_id=target_record_id,
        sync_data=sync_data,
    )


# ── Creation ───────────────────────────────────────────────────────────────


class TestCreateOperation:
    """Test validation and storage of new operations."""

    async def test_create_stores_pending_operation(self, executor, user_id):
        """A new operation is pending with retry_count 0."""
        operation = await executor.create_operation(user_id, _deal_update("acct-1"))

        assert operation.operation_status == OperationStatus.PENDING
        assert operation.retry_count == 0
        assert operation.user_id == user_id
        _assert_status_invariant(operation)

    async def test_create_accepts_mapping(self, executor, user_id):
        """Plain dicts are validated into SyncOperationCreate."""
        operation = await executor.create_operation(
            user_id,
            {
                "operation_type": "contact_sync",
                "source_system": "hubspot",
                "target_system": "local",
            },
        )

        assert operation.sync_type == SyncType.BIDIRECTIONAL
        assert operation.operation_type == "contact_sync"

    @pytest.mark.parametrize(
        "data",
        [
            {"source_system": "zoho", "target_system": "local"},
            {"operation_type": "deal_update", "source_system": "", "target_system": "local"},
            {"operation_type": "deal_update", "source_system": "zoho"},
        ],
    )
    async def test_create_rejects_missing_fields(self, executor, store, user_id, data):
        """Missing required fields raise SyncValidationError and store nothing."""
        with pytest.raises(SyncValidationError):
            await executor.create_operation(user_id, data)

        assert await store.list_operations(user_id) == []

    async def test_unknown_type_accepted_at_creation(self, executor, user_id):
        """Operation types are only checked when executed."""
        operation = await executor.create_operation(
            user_id,
            {"operation_type": "unknown_type", "source_system": "zoho", "target_system": "local"},
        )

        assert operation.operation_status == OperationStatus.PENDING


# ── Execution lifecycle ────────────────────────────────────────────────────


class TestExecute:
    """Test the pending -> completed / failed lifecycle."""

    async def test_deal_update_completes(self, executor, store, account, user_id):
        """A deal_update moves the account to Proposal and completes the operation."""
        operation = await executor.create_operation(
            user_id,
            _deal_update(account.entity_id, stage="Proposal", notes="demo scheduled"),
        )

        result = await executor.execute(operation.id)

        assert result.operation.operation_status == OperationStatus.COMPLETED
        assert result.operation.completed_at is not None
        assert result.audit_failures == []
        updated = await store.get_entity("account", account.entity_id)
        assert updated.data["deal_stage"] == "Proposal"
        assert updated.data["notes"] == "demo scheduled"
        _assert_status_invariant(result.operation)

    async def test_deal_update_audits_before_and_after(self, executor, store, account, user_id):
        """sync_started and sync_completed entries are written, the latter with snapshots."""
        operation = await executor.create_operation(
            user_id, _deal_update(account.entity_id, stage="Proposal")
        )

        await executor.execute(operation.id)

        entries = await store.list_audit_entries(sync_operation_id=operation.id)
        actions = [e.action_type for e in reversed(entries)]
        assert actions == [AuditAction.SYNC_STARTED, AuditAction.SYNC_COMPLETED]
        completed = entries[0]
        assert completed.entity_type == "account"
        assert completed.entity_id == account.entity_id
        assert completed.before_data == {"deal_stage": "Discovery"}
        assert completed.after_data == {"deal_stage": "Proposal"}

    async def test_deal_update_only_writes_provided_fields(
        self, executor, store, account, user_id
    ):
        """Omitted payload keys leave their columns untouched."""
        await store.update_entity("account", account.entity_id, {"notes": "keep me"})
        operation = await executor.create_operation(
            user_id, _deal_update(account.entity_id, stage="Negotiation")
        )

        await executor.execute(operation.id)

        updated = await store.get_entity("account", account.entity_id)
        assert updated.data["notes"] == "keep me"
        assert updated.data["deal_stage"] == "Negotiation"

    async def test_unknown_operation_type_fails(self, executor, store, user_id):
        """An unknown operation type fails immediately, non-retryable, retry_count 1."""
        operation = await executor.create_operation(
            user_id,
            {"operation_type": "unknown_type", "source_system": "zoho", "target_system": "local"},
        )

        with pytest.raises(UnknownOperationTypeError) as exc_info:
            await executor.execute(operation.id)

        assert exc_info.value.retryable is False
        failed = await store.get_operation(operation.id)
        assert failed.operation_status == OperationStatus.FAILED
        assert failed.retry_count == 1
        assert "unknown_type" in failed.error_message
        _assert_status_invariant(failed)

    async def test_failure_writes_sync_failed_entry(self, executor, store, user_id):
        """A failed execution is audited as sync_failed."""
        operation = await executor.create_operation(
            user_id,
            {"operation_type": "unknown_type", "source_system": "zoho", "target_system": "local"},
        )

        with pytest.raises(UnknownOperationTypeError):
            await executor.execute(operation.id)

        entries = await store.list_audit_entries(
            sync_operation_id=operation.id, action_type=AuditAction.SYNC_FAILED.value
        )
        assert len(entries) == 1
        assert entries[0].metadata["retryable"] is False

    async def test_each_failed_attempt_increments_retry_count(self, executor, store, user_id):
        """retry_count increases by one per failed attempt."""
        operation = await executor.create_operation(
            user_id, _deal_update("00000000-0000-4000-8000-000000000000", stage="Won")
        )

        for _ in range(2):
            with pytest.raises(EntityNotFoundError):
                await executor.execute(operation.id)

        failed = await store.get_operation(operation.id)
        assert failed.retry_count == 2
        assert failed.operation_status == OperationStatus.FAILED

    async def test_failed_operation_can_complete_later(self, executor, store, account, user_id):
        """A failed operation re-executed successfully ends completed."""
        operation = await executor.create_operation(
            user_id, _deal_update(account.entity_id, stage="Won")
        )

        with patch.object(
            store, "update_entity", new_callable=AsyncMock, side_effect=RuntimeError("db down")
        ):
            with pytest.raises(RuntimeError):
                await executor.execute(operation.id)

        result = await executor.execute(operation.id)

        assert result.operation.operation_status == OperationStatus.COMPLETED
        assert result.operation.retry_count == 1
        assert result.operation.error_message is None
        _assert_status_invariant(result.operation)

    async def test_completed_operation_is_not_reexecuted(
        self, executor, store, account, user_id
    ):
        """Executing a completed operation returns it unchanged without side effects."""
        operation = await executor.create_operation(
            user_id, _deal_update(account.entity_id, stage="Proposal")
        )
        await executor.execute(operation.id)
        version_after_first = (await store.get_entity("account", account.entity_id)).version

        result = await executor.execute(operation.id)

        assert result.operation.operation_status == OperationStatus.COMPLETED
        assert (await store.get_entity("account", account.entity_id)).version == version_after_first

    async def test_unknown_operation_id(self, executor):
        """Executing a nonexistent operation raises OperationNotFoundError."""
        with pytest.raises(OperationNotFoundError):
            await executor.execute("missing-op")

    async def test_invalid_payload_fails_operation(self, executor, store, user_id):
        """A task_completion without task_id fails validation and the operation."""
        operation = await executor.create_operation(
            user_id,
            {
                "operation_type": "task_completion",
                "source_system": "zoho",
                "target_system": "local",
                "sync_data": {"subject": "Follow up"},
            },
        )

        with pytest.raises(SyncValidationError):
            await executor.execute(operation.id)

        failed = await store.get_operation(operation.id)
        assert failed.operation_status == OperationStatus.FAILED

    async def test_stale_entity_version_fails_retryable(
        self, executor, store, account, user_id
    ):
        """A concurrent write between read and update surfaces StaleEntityError."""
        operation = await executor.create_operation(
            user_id, _deal_update(account.entity_id, stage="Proposal")
        )
        stale = EntitySnapshot(
            entity_type="account",
            entity_id=account.entity_id,
            version=account.version - 1,
            data=account.data,
        )

        with patch.object(store, "get_entity", new_callable=AsyncMock, return_value=stale):
            with pytest.raises(StaleEntityError) as exc_info:
                await executor.execute(operation.id)

        assert exc_info.value.retryable is True
        current = await store.get_entity("account", account.entity_id)
        assert current.data["deal_stage"] == "Discovery"

    async def test_audit_failure_does_not_fail_operation(
        self, executor, store, account, user_id
    ):
        """The operation completes when audit writes fail; failures are reported."""
        operation = await executor.create_operation(
            user_id, _deal_update(account.entity_id, stage="Proposal")
        )

        with patch.object(
            store,
            "insert_audit_entry",
            new_callable=AsyncMock,
            side_effect=RuntimeError("audit table unavailable"),
        ):
            result = await executor.execute(operation.id)

        assert result.operation.operation_status == OperationStatus.COMPLETED
        assert [f.action_type for f in result.audit_failures] == [
            AuditAction.SYNC_STARTED,
            AuditAction.SYNC_COMPLETED,
        ]
        assert all(not f.ok for f in result.audit_failures)

    async def test_list_operations_filters_by_status(self, executor, account, user_id):
        """list_operations filters on status."""
        done = await executor.create_operation(
            user_id, _deal_update(account.entity_id, stage="Proposal")
        )
        await executor.create_operation(user_id, _deal_update(account.entity_id, stage="Won"))
        await executor.execute(done.id)

        completed = await executor.list_operations(user_id, OperationStatus.COMPLETED)

        assert [op.id for op in completed] == [done.id]


# ── Concurrent execution ───────────────────────────────────────────────────


class _YieldingStore(InMemorySyncStore):
    """In-memory store that hands control to the event loop before every call."""

    def __getattribute__(self, name):
        attr = super().__getattribute__(name)
        if name.startswith("_") or not inspect.iscoroutinefunction(attr):
            return attr

        async def yielding(*args, **kwargs):
            await asyncio.sleep(0)
            return await attr(*args, **kwargs)

        return yielding


class TestConcurrentExecution:
    """Test the operation claim that serialises executions of one operation."""

    @pytest.fixture
    def store(self):
        return _YieldingStore()

    async def test_parallel_executions_apply_once(self, executor, store, account, user_id):
        """Two interleaved executions apply the change once and end completed."""
        operation = await executor.create_operation(
            user_id, _deal_update(account.entity_id, stage="Proposal")
        )

        results = await asyncio.gather(
            executor.execute(operation.id),
            executor.execute(operation.id),
            return_exceptions=True,
        )

        assert any(isinstance(r, SyncExecutionResult) for r in results)
        assert all(
            isinstance(r, (SyncExecutionResult, OperationInProgressError)) for r in results
        )

        final = await store.get_operation(operation.id)
        assert final.operation_status == OperationStatus.COMPLETED
        assert final.retry_count == 0
        assert final.claimed_at is None
        _assert_status_invariant(final)

        entity = await store.get_entity("account", account.entity_id)
        assert entity.data["deal_stage"] == "Proposal"
        assert entity.version == account.version + 1

        completed = await store.list_audit_entries(
            sync_operation_id=operation.id, action_type=AuditAction.SYNC_COMPLETED.value
        )
        failed = await store.list_audit_entries(
            sync_operation_id=operation.id, action_type=AuditAction.SYNC_FAILED.value
        )
        assert len(completed) == 1
        assert failed == []

    async def test_live_claim_refuses_execution(self, executor, store, account, user_id):
        """An operation claimed by another execution is refused without bookkeeping."""
        operation = await executor.create_operation(
            user_id, _deal_update(account.entity_id, stage="Proposal")
        )
        await store.claim_operation(operation.id, stale_after_seconds=300)

        with pytest.raises(OperationInProgressError) as exc_info:
            await executor.execute(operation.id)

        assert exc_info.value.retryable is True
        current = await store.get_operation(operation.id)
        assert current.retry_count == 0
        assert current.operation_status == OperationStatus.PENDING
        entity = await store.get_entity("account", account.entity_id)
        assert entity.data["deal_stage"] == "Discovery"

    async def test_abandoned_claim_is_taken_over(self, store, audit, account, user_id):
        """A claim older than the timeout no longer blocks execution."""
        executor = SyncOperationExecutor(
            store,
            audit,
            settings=Settings(_env_file=None, OPERATION_CLAIM_TIMEOUT_SECONDS=0),
        )
        operation = await executor.create_operation(
            user_id, _deal_update(account.entity_id, stage="Proposal")
        )
        await store.claim_operation(operation.id, stale_after_seconds=300)

        result = await executor.execute(operation.id)

        assert result.operation.operation_status == OperationStatus.COMPLETED

    async def test_failure_releases_claim(self, executor, store, user_id):
        """A failed attempt releases its claim so the operation can be retried."""
        operation = await executor.create_operation(
            user_id, _deal_update("00000000-0000-4000-8000-000000000000", stage="Won")
        )

        with pytest.raises(EntityNotFoundError):
            await executor.execute(operation.id)

        failed = await store.get_operation(operation.id)
        assert failed.claimed_at is None
        with pytest.raises(EntityNotFoundError):
            await executor.execute(operation.id)

    async def test_completed_operation_is_terminal(self, executor, store, account, user_id):
        """Neither failure bookkeeping nor a status update can reopen a completed operation."""
        operation = await executor.create_operation(
            user_id, _deal_update(account.entity_id, stage="Proposal")
        )
        await executor.execute(operation.id)

        with pytest.raises(OperationCompletedError):
            await store.record_operation_failure(operation.id, "late failure")
        with pytest.raises(OperationCompletedError):
            await store.update_operation(
                operation.id, {"operation_status": OperationStatus.FAILED}
            )

        final = await store.get_operation(operation.id)
        assert final.operation_status == OperationStatus.COMPLETED
        assert final.retry_count == 0
        _assert_status_invariant(final)


# ── Handlers ───────────────────────────────────────────────────────────────


class TestHandlers:
    """Test the entity-specific handlers through the executor."""

    async def test_contact_sync_is_read_only(self, executor, store, account, user_id):
        """contact_sync completes without touching any entity."""
        operation = await executor.create_operation(
            user_id,
            {
                "operation_type": "contact_sync",
                "source_system": "zoho",
                "source_record_id": "zoho-contact-9",
                "target_system": "local",
                "sync_data": {"email": "pat@acme.test", "name": "Pat"},
            },
        )

        result = await executor.execute(operation.id)

        assert result.operation.operation_status == OperationStatus.COMPLETED
        assert (await store.get_entity("account", account.entity_id)).version == account.version
        completed = await store.list_audit_entries(
            sync_operation_id=operation.id, action_type=AuditAction.SYNC_COMPLETED.value
        )
        assert completed[0].entity_type == "contact"
        assert completed[0].before_data is None

    async def test_task_completion_records_task(self, executor, store, user_id):
        """task_completion writes a task_completed audit entry for the task."""
        operation = await executor.create_operation(
            user_id,
            {
                "operation_type": "task_completion",
                "source_system": "zoho",
                "target_system": "local",
                "sync_data": {"task_id": "task-42", "subject": "Send proposal"},
            },
        )

        await executor.execute(operation.id)

        entries = await store.list_audit_entries(
            action_type=AuditAction.TASK_COMPLETED.value, entity_id="task-42"
        )
        assert len(entries) == 1
        assert entries[0].after_data["subject"] == "Send proposal"

    async def test_task_completion_handler_is_idempotent(self, store, audit, operation):
        """Running the handler twice records the task once."""
        handler = TaskCompletionHandler(store, audit)
        payload = TaskCompletionPayload(task_id="task-7")

        await handler(operation, payload)
        await handler(operation, payload)

        entries = await store.list_audit_entries(
            action_type=AuditAction.TASK_COMPLETED.value, entity_id="task-7"
        )
        assert len(entries) == 1

    async def test_task_completion_fails_when_record_fails(self, store, operation):
        """The task record is the handler's effect; failing to write it fails the handler."""
        audit = AuditTrail(store)
        handler = TaskCompletionHandler(store, audit)

        with patch.object(
            store,
            "insert_audit_entry",
            new_callable=AsyncMock,
            side_effect=RuntimeError("audit table unavailable"),
        ):
            with pytest.raises(Exception, match="task-7"):
                await handler(operation, TaskCompletionPayload(task_id="task-7"))

    async def test_analysis_update_merges_crm_context(
        self, executor, store, analysis, user_id
    ):
        """analysis_update replaces recommendations with payload plus crm_context."""
        operation = await executor.create_operation(
            user_id,
            {
                "operation_type": "analysis_update",
                "source_system": "zoho",
                "target_system": "local",
                "target_record_id": analysis.entity_id,
                "sync_data": {
                    "recommendations": {"next_step": "book demo"},
                    "crm_data": {"deal_stage": "Proposal"},
                },
            },
        )

        await executor.execute(operation.id)

        updated = await store.get_entity("analysis", analysis.entity_id)
        assert updated.data["recommendations"] == {
            "next_step": "book demo",
            "crm_context": {"deal_stage": "Proposal"},
        }
        assert updated.data["heat_level"] == "warm"

    async def test_custom_handler_registry(self, store, audit, operation):
        """A caller-supplied dispatch table replaces the default handlers."""
        handler = AsyncMock(return_value=HandlerResult(entity_type="account"))
        executor = SyncOperationExecutor(
            store, audit, handlers={OperationType.DEAL_UPDATE: handler}
        )

        result = await executor.execute(operation.id)

        handler.assert_awaited_once()
        assert result.operation.operation_status == OperationStatus.COMPLETED


class TestParsePayload:
    """Test typed payload parsing."""

    async def test_parses_deal_update(self, store, user_id):
        """deal_update sync_data parses into DealUpdatePayload."""
        operation = await store.insert_operation(user_id, _deal_update("acct-1", stage="Won"))

        payload = parse_payload(operation)

        assert isinstance(payload, DealUpdatePayload)
        assert payload.stage == "Won"

    async def test_rejects_unknown_type(self, store, user_id):
        """Unknown operation types raise UnknownOperationTypeError."""
        operation = await store.insert_operation(
            user_id,
            SyncOperationCreate(
                operation_type="invoice_sync", source_system="zoho", target_system="local"
            ),
        )

        with pytest.raises(UnknownOperationTypeError):
            parse_payload(operation)
