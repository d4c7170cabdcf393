"""Entity-specific sync handlers, one per operation type.

Each handler applies a parsed payload to the local store and reports what it
changed as a HandlerResult, which the executor writes into the
``sync_completed`` audit entry. Handlers use set/upsert semantics, so running
one twice with the same payload leaves the same end state.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.crmsync.sync.audit import AuditTrail
from src.crmsync.sync.errors import EntityNotFoundError, SyncHandlerError
from src.crmsync.sync.schemas import (
    AnalysisUpdatePayload,
    AuditAction,
    AuditEntryCreate,
    ContactSyncPayload,
    DealUpdatePayload,
    HandlerResult,
    OperationType,
    SyncOperationRead,
    TaskCompletionPayload,
)
from src.crmsync.sync.store.base import SyncStore

logger = structlog.get_logger(__name__)

SyncHandler = Callable[[SyncOperationRead, Any], Awaitable[HandlerResult]]

# Deal payload keys mapped onto account columns.
DEAL_FIELD_MAP: dict[str, str] = {
    "stage": "deal_stage",
    "notes": "notes",
}


class DealUpdateHandler:
    """Writes deal stage and notes onto the target account row."""

    def __init__(self, store: SyncStore) -> None:
        self._store = store

    async def __call__(
        self, operation: SyncOperationRead, payload: DealUpdatePayload
    ) -> HandlerResult:
        target_id = operation.target_record_id
        if not target_id:
            logger.info("sync.deal_update_no_target", operation_id=operation.id)
            return HandlerResult(entity_type="account")

        provided = payload.model_dump(exclude_unset=True, exclude={"kind"})
        fields = {
            DEAL_FIELD_MAP[key]: value
            for key, value in provided.items()
            if key in DEAL_FIELD_MAP
        }

        current = await self._store.get_entity("account", target_id)
        if current is None:
            raise EntityNotFoundError("account", target_id)

        before = {column: current.data.get(column) for column in fields}
        if fields:
            await self._store.update_entity(
                "account", target_id, fields, expected_version=current.version
            )

        logger.info(
            "sync.deal_updated",
            operation_id=operation.id,
            account_id=target_id,
            fields=sorted(fields),
        )
        return HandlerResult(
            entity_type="account",
            entity_id=target_id,
            before_data=before,
            after_data=fields,
        )


class ContactSyncHandler:
    """Read-only contact sync: nothing is written locally."""

    async def __call__(
        self, operation: SyncOperationRead, payload: ContactSyncPayload
    ) -> HandlerResult:
        logger.info(
            "sync.contact_synced",
            operation_id=operation.id,
            source_record_id=operation.source_record_id,
        )
        return HandlerResult(
            entity_type="contact",
            entity_id=operation.source_record_id,
            after_data=payload.model_dump(exclude={"kind"}),
        )


class TaskCompletionHandler:
    """Records a task_completed audit entry, once per (operation, task)."""

    def __init__(self, store: SyncStore, audit: AuditTrail) -> None:
        self._store = store
        self._audit = audit

    async def __call__(
        self, operation: SyncOperationRead, payload: TaskCompletionPayload
    ) -> HandlerResult:
        task_data = payload.model_dump(exclude={"kind"})

        existing = await self._store.list_audit_entries(
            sync_operation_id=operation.id,
            action_type=AuditAction.TASK_COMPLETED.value,
            entity_id=payload.task_id,
            limit=1,
        )
        if existing:
            logger.info(
                "sync.task_already_recorded",
                operation_id=operation.id,
                task_id=payload.task_id,
            )
        else:
            result = await self._audit.record(
                AuditEntryCreate(
                    user_id=operation.user_id,
                    sync_operation_id=operation.id,
                    action_type=AuditAction.TASK_COMPLETED,
                    entity_type="task",
                    entity_id=payload.task_id,
                    after_data=task_data,
                )
            )
            if not result.ok:
                raise SyncHandlerError(
                    f"Could not record completion of task {payload.task_id}: {result.error}"
                )

        return HandlerResult(
            entity_type="task",
            entity_id=payload.task_id,
            after_data=task_data,
        )


class AnalysisUpdateHandler:
    """Merges CRM context into a conversation analysis' recommendations."""

    def __init__(self, store: SyncStore) -> None:
        self._store = store

    async def __call__(
        self, operation: SyncOperationRead, payload: AnalysisUpdatePayload
    ) -> HandlerResult:
        target_id = operation.target_record_id
        if not target_id:
            logger.info("sync.analysis_update_no_target", operation_id=operation.id)
            return HandlerResult(entity_type="analysis")

        current = await self._store.get_entity("analysis", target_id)
        if current is None:
            raise EntityNotFoundError("analysis", target_id)

        recommendations = {**payload.recommendations, "crm_context": payload.crm_data}
        await self._store.update_entity(
            "analysis",
            target_id,
            {"recommendations": recommendations},
            expected_version=current.version,
        )

        logger.info(
            "sync.analysis_updated",
            operation_id=operation.id,
            analysis_id=target_id,
        )
        return HandlerResult(
            entity_type="analysis",
            entity_id=target_id,
            before_data={"recommendations": current.data.get("recommendations")},
            after_data={"recommendations": recommendations},
        )


def build_handler_registry(
    store: SyncStore, audit: AuditTrail
) -> dict[OperationType, SyncHandler]:
    """Dispatch table from operation type to handler."""
    return {
        OperationType.DEAL_UPDATE: DealUpdateHandler(store),
        OperationType.CONTACT_SYNC: ContactSyncHandler(),
        OperationType.TASK_COMPLETION: TaskCompletionHandler(store, audit),
        OperationType.ANALYSIS_UPDATE: AnalysisUpdateHandler(store),
    }
