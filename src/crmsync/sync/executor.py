"""Sync operation executor -- owns the operation lifecycle.

Lifecycle per execution attempt:
    pending --(handler ok)--> completed   (completed_at stamped)
    pending --(any error)---> failed      (error_message, retry_count + 1, re-raised)

Each attempt first claims the operation through the store. A second
execution of the same operation is refused while the claim is live, and a
completed operation is terminal.

The executor makes exactly one attempt. Retrying a failed operation is the
caller's decision (see ``src.crmsync.sync.retry.execute_with_retry``).
Audit writes along the way are best-effort; failures are collected on the
returned SyncExecutionResult rather than raised.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from src.crmsync.config import Settings, get_settings
from src.crmsync.sync.audit import AuditTrail
from src.crmsync.sync.errors import (
    OperationNotFoundError,
    SyncValidationError,
    UnknownOperationTypeError,
)
from src.crmsync.sync.handlers import SyncHandler, build_handler_registry
from src.crmsync.sync.schemas import (
    AuditAction,
    AuditEntryCreate,
    AuditWriteResult,
    HandlerResult,
    OperationStatus,
    OperationType,
    SyncExecutionResult,
    SyncOperationCreate,
    SyncOperationRead,
    SyncPayload,
)
from src.crmsync.sync.store.base import SyncStore

logger = structlog.get_logger(__name__)

_payload_adapter: TypeAdapter[Any] = TypeAdapter(SyncPayload)


def parse_payload(operation: SyncOperationRead) -> Any:
    """Parse an operation's untyped sync_data into its typed payload.

    Raises:
        UnknownOperationTypeError: No handler exists for operation_type.
        SyncValidationError: sync_data does not match the payload schema.
    """
    try:
        OperationType(operation.operation_type)
    except ValueError as exc:
        raise UnknownOperationTypeError(operation.operation_type) from exc

    try:
        return _payload_adapter.validate_python(
            {**operation.sync_data, "kind": operation.operation_type}
        )
    except ValidationError as exc:
        raise SyncValidationError(
            f"Invalid {operation.operation_type} payload: {exc.errors()}"
        ) from exc


class SyncOperationExecutor:
    """Creates operations and runs them through their entity handler.

    Args:
        store: Persistence backend.
        audit: Audit trail for lifecycle entries.
        handlers: Optional dispatch table; defaults to build_handler_registry().
        settings: Optional settings; defaults to get_settings().
    """

    def __init__(
        self,
        store: SyncStore,
        audit: AuditTrail,
        handlers: Mapping[OperationType, SyncHandler] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._settings = settings or get_settings()
        self._handlers = (
            dict(handlers) if handlers is not None else build_handler_registry(store, audit)
        )

    async def create_operation(
        self,
        user_id: str,
        data: SyncOperationCreate | Mapping[str, Any],
    ) -> SyncOperationRead:
        """Validate and store a new pending operation.

        Raises:
            SyncValidationError: Required fields missing or malformed.
        """
        if not isinstance(data, SyncOperationCreate):
            try:
                data = SyncOperationCreate.model_validate(dict(data))
            except ValidationError as exc:
                raise SyncValidationError(
                    f"Invalid sync operation: {exc.errors()}"
                ) from exc

        operation = await self._store.insert_operation(user_id, data)
        logger.info(
            "sync.operation_created",
            operation_id=operation.id,
            operation_type=operation.operation_type,
            source_system=operation.source_system,
            target_system=operation.target_system,
        )
        return operation

    async def get_operation(self, operation_id: str) -> SyncOperationRead:
        operation = await self._store.get_operation(operation_id)
        if operation is None:
            raise OperationNotFoundError(operation_id)
        return operation

    async def list_operations(
        self, user_id: str, status: OperationStatus | None = None
    ) -> list[SyncOperationRead]:
        return await self._store.list_operations(user_id, status)

    async def execute(self, operation_id: str) -> SyncExecutionResult:
        """Run one attempt of an operation.

        The operation is claimed first, so only one execution runs it at a
        time. A completed operation is returned unchanged. Any handler error
        marks the operation failed and is re-raised.

        Raises:
            OperationNotFoundError: Unknown operation ID.
            OperationInProgressError: Another execution holds the claim.
            UnknownOperationTypeError: No handler for the operation type.
            SyncValidationError: Payload does not match the operation type.
            SyncError / Exception: Whatever the handler or store raised.
        """
        operation = await self.get_operation(operation_id)
        if operation.operation_status == OperationStatus.COMPLETED:
            logger.info("sync.operation_already_completed", operation_id=operation_id)
            return SyncExecutionResult(operation=operation)

        previous_status = operation.operation_status
        operation = await self._store.claim_operation(
            operation_id, self._settings.OPERATION_CLAIM_TIMEOUT_SECONDS
        )
        # Another execution completed it between the read and the claim.
        if operation.operation_status == OperationStatus.COMPLETED:
            logger.info("sync.operation_already_completed", operation_id=operation_id)
            return SyncExecutionResult(operation=operation)

        audit_failures: list[AuditWriteResult] = []
        self._collect(
            audit_failures,
            await self._audit.record(
                AuditEntryCreate(
                    user_id=operation.user_id,
                    sync_operation_id=operation.id,
                    action_type=AuditAction.SYNC_STARTED,
                    entity_type="sync_operation",
                    entity_id=operation.id,
                    before_data={"operation_status": previous_status.value},
                    after_data={"operation_status": OperationStatus.PENDING.value},
                    metadata={
                        "operation_type": operation.operation_type,
                        "source_system": operation.source_system,
                        "target_system": operation.target_system,
                        "retry_count": operation.retry_count,
                    },
                )
            ),
        )

        try:
            result = await self._dispatch(operation)
        except Exception as exc:
            failed = await self._store.record_operation_failure(operation_id, str(exc))
            self._collect(
                audit_failures,
                await self._audit.record(
                    AuditEntryCreate(
                        user_id=failed.user_id,
                        sync_operation_id=failed.id,
                        action_type=AuditAction.SYNC_FAILED,
                        entity_type="sync_operation",
                        entity_id=failed.id,
                        before_data={"operation_status": OperationStatus.PENDING.value},
                        after_data={
                            "operation_status": OperationStatus.FAILED.value,
                            "error_message": failed.error_message,
                            "retry_count": failed.retry_count,
                        },
                        metadata={
                            "operation_type": failed.operation_type,
                            "error_type": type(exc).__name__,
                            "retryable": bool(getattr(exc, "retryable", False)),
                        },
                    )
                ),
            )
            logger.error(
                "sync.operation_failed",
                operation_id=operation_id,
                operation_type=operation.operation_type,
                error=str(exc),
                retry_count=failed.retry_count,
            )
            raise

        completed = await self._store.update_operation(
            operation_id,
            {
                "operation_status": OperationStatus.COMPLETED,
                "completed_at": datetime.now(timezone.utc),
                "error_message": None,
                "claimed_at": None,
            },
        )
        self._collect(
            audit_failures,
            await self._audit.record(
                AuditEntryCreate(
                    user_id=completed.user_id,
                    sync_operation_id=completed.id,
                    action_type=AuditAction.SYNC_COMPLETED,
                    entity_type=result.entity_type,
                    entity_id=result.entity_id,
                    before_data=result.before_data,
                    after_data=result.after_data,
                    metadata={
                        "operation_type": completed.operation_type,
                        "source_system": completed.source_system,
                        "target_system": completed.target_system,
                    },
                )
            ),
        )
        logger.info(
            "sync.operation_completed",
            operation_id=operation_id,
            operation_type=completed.operation_type,
            entity_type=result.entity_type,
            entity_id=result.entity_id,
            audit_failures=len(audit_failures),
        )
        return SyncExecutionResult(operation=completed, audit_failures=audit_failures)

    async def _dispatch(self, operation: SyncOperationRead) -> HandlerResult:
        payload = parse_payload(operation)
        handler = self._handlers.get(OperationType(operation.operation_type))
        if handler is None:
            raise UnknownOperationTypeError(operation.operation_type)
        return await handler(operation, payload)

    @staticmethod
    def _collect(failures: list[AuditWriteResult], result: AuditWriteResult) -> None:
        if not result.ok:
            failures.append(result)
