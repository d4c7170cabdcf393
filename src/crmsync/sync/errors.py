"""Exception hierarchy for the sync engine.

Every error carries a ``retryable`` class attribute that the caller-side
retry policy (``src.crmsync.sync.retry``) reads. Programmer/configuration
errors (unknown operation or entity types) and validation errors are never
retryable; a stale entity version and an operation claimed by another
execution are.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync engine errors."""

    retryable: bool = False


class SyncValidationError(SyncError):
    """Missing or malformed operation fields or payload."""


class NotFoundError(SyncError):
    """A referenced record does not exist."""


class OperationNotFoundError(NotFoundError):
    def __init__(self, operation_id: str) -> None:
        super().__init__(f"Sync operation not found: {operation_id}")
        self.operation_id = operation_id


class ConflictNotFoundError(NotFoundError):
    def __init__(self, conflict_id: str) -> None:
        super().__init__(f"Sync conflict not found: {conflict_id}")
        self.conflict_id = conflict_id


class EntityNotFoundError(NotFoundError):
    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"{entity_type} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class UnknownOperationTypeError(SyncError):
    def __init__(self, operation_type: str) -> None:
        super().__init__(f"Unknown operation type: {operation_type}")
        self.operation_type = operation_type


class UnknownEntityTypeError(SyncError):
    def __init__(self, entity_type: str) -> None:
        super().__init__(f"Unknown entity type for rollback: {entity_type}")
        self.entity_type = entity_type


class ManualResolutionRequiredError(SyncError):
    """The ``manual`` strategy was requested without a resolution payload."""

    def __init__(self, conflict_id: str) -> None:
        super().__init__(
            f"Manual resolution of conflict {conflict_id} requires a resolution payload"
        )
        self.conflict_id = conflict_id


class StaleEntityError(SyncError):
    """The entity changed between read and write (optimistic version mismatch)."""

    retryable = True

    def __init__(self, entity_type: str, entity_id: str, expected_version: int) -> None:
        super().__init__(
            f"{entity_type} {entity_id} was modified concurrently "
            f"(expected version {expected_version})"
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version


class SyncHandlerError(SyncError):
    """An entity-specific handler could not apply its effect."""


class OperationInProgressError(SyncError):
    """Another execution currently holds the operation's claim."""

    retryable = True

    def __init__(self, operation_id: str) -> None:
        super().__init__(f"Sync operation {operation_id} is already being executed")
        self.operation_id = operation_id


class OperationCompletedError(SyncError):
    """A completed operation is terminal and cannot change status again."""

    def __init__(self, operation_id: str) -> None:
        super().__init__(f"Sync operation {operation_id} is already completed")
        self.operation_id = operation_id
