"""BidirectionalSyncService -- one entry point wiring the sync components.

The service is constructed explicitly with its store and the acting user;
there is no module-level instance. Each component (detector, resolver,
executor, rollback, preferences) is also usable on its own.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from src.crmsync.config import Settings, get_settings
from src.crmsync.sync.audit import AuditTrail
from src.crmsync.sync.detector import ConflictDetector
from src.crmsync.sync.executor import SyncOperationExecutor
from src.crmsync.sync.preferences import PreferenceStore
from src.crmsync.sync.resolver import ConflictResolver
from src.crmsync.sync.retry import ErrorClassifier, RuleBasedErrorClassifier, execute_with_retry
from src.crmsync.sync.rollback import RollbackCoordinator
from src.crmsync.sync.schemas import (
    AuditEntryRead,
    OperationStatus,
    ResolutionStatus,
    ResolutionStrategy,
    RollbackResult,
    SyncConflictRead,
    SyncExecutionResult,
    SyncOperationCreate,
    SyncOperationRead,
    SyncType,
    UserSyncPreferencesRead,
    UserSyncPreferencesUpdate,
)
from src.crmsync.sync.store.base import SyncStore

logger = structlog.get_logger(__name__)


class BidirectionalSyncService:
    """Sync engine facade bound to one acting user.

    Args:
        store: Persistence backend shared by all components.
        user_id: User on whose behalf operations are created and resolved.
        settings: Optional settings; defaults to get_settings().
        classifier: Optional error classifier for execute_with_retry.
    """

    def __init__(
        self,
        store: SyncStore,
        user_id: str,
        settings: Settings | None = None,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        self._store = store
        self._user_id = user_id
        self._settings = settings or get_settings()
        self._classifier = classifier or RuleBasedErrorClassifier()

        self.audit = AuditTrail(store)
        self.detector = ConflictDetector(store, self._settings)
        self.resolver = ConflictResolver(store, self.audit)
        self.executor = SyncOperationExecutor(store, self.audit, settings=self._settings)
        self.rollbacks = RollbackCoordinator(store, self.audit)
        self.preferences = PreferenceStore(store, self._settings)

    @property
    def user_id(self) -> str:
        return self._user_id

    # ── Operations ──────────────────────────────────────────────────────────

    async def create_sync_operation(
        self, data: SyncOperationCreate | Mapping[str, Any]
    ) -> SyncOperationRead:
        return await self.executor.create_operation(self._user_id, data)

    async def execute_sync_operation(self, operation_id: str) -> SyncExecutionResult:
        return await self.executor.execute(operation_id)

    async def execute_with_retry(self, operation_id: str) -> SyncExecutionResult:
        """Execute, retrying failures the classifier considers retryable."""
        return await execute_with_retry(
            self.executor,
            operation_id,
            self._classifier,
            max_delay_seconds=self._settings.RETRY_MAX_DELAY_SECONDS,
        )

    async def get_sync_operations(
        self, status: OperationStatus | None = None
    ) -> list[SyncOperationRead]:
        return await self.executor.list_operations(self._user_id, status)

    async def rollback_sync_operation(self, operation_id: str) -> RollbackResult:
        return await self.rollbacks.rollback(operation_id, performed_by=self._user_id)

    async def get_audit_trail(
        self,
        *,
        sync_operation_id: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntryRead]:
        return await self.audit.history(
            sync_operation_id=sync_operation_id,
            entity_type=entity_type,
            entity_id=entity_id,
            limit=limit,
        )

    # ── Conflicts ───────────────────────────────────────────────────────────

    async def detect_conflicts(
        self,
        operation_id: str,
        local: dict[str, Any],
        remote: dict[str, Any],
    ) -> SyncConflictRead | None:
        """Detect a conflict for an operation, auto-resolving it if configured.

        The CRM whose preferences apply is the operation's remote side:
        target_system for local_to_crm operations, source_system otherwise.
        """
        operation = await self.executor.get_operation(operation_id)
        conflict = await self.detector.detect(operation, local, remote)
        if conflict is None:
            return None

        crm_type = self._crm_for(operation)
        prefs = await self.preferences.get_effective(operation.user_id, crm_type)
        if not (prefs.enabled and prefs.auto_resolve_conflicts):
            return conflict

        strategy = ResolutionStrategy(prefs.preferred_resolution_strategy.value)
        logger.info(
            "sync.conflict_auto_resolving",
            conflict_id=conflict.id,
            crm_type=crm_type,
            strategy=strategy.value,
        )
        return await self.resolver.resolve(
            conflict.id, strategy, resolved_by=self._user_id
        )

    async def resolve_conflict(
        self,
        conflict_id: str,
        strategy: ResolutionStrategy | str,
        manual_resolution: dict[str, Any] | None = None,
    ) -> SyncConflictRead:
        return await self.resolver.resolve(
            conflict_id, strategy, manual_resolution, resolved_by=self._user_id
        )

    async def ignore_conflict(self, conflict_id: str) -> SyncConflictRead:
        return await self.resolver.ignore(conflict_id, resolved_by=self._user_id)

    async def get_pending_conflicts(self) -> list[SyncConflictRead]:
        return await self._store.list_conflicts(self._user_id, ResolutionStatus.PENDING)

    # ── Preferences ─────────────────────────────────────────────────────────

    async def get_sync_preferences(self, crm_type: str) -> UserSyncPreferencesRead:
        return await self.preferences.get_effective(self._user_id, crm_type)

    async def update_sync_preferences(
        self,
        crm_type: str,
        changes: UserSyncPreferencesUpdate | dict[str, Any],
    ) -> UserSyncPreferencesRead:
        return await self.preferences.update(self._user_id, crm_type, changes)

    def _crm_for(self, operation: SyncOperationRead) -> str:
        if operation.sync_type == SyncType.LOCAL_TO_CRM:
            primary, other = operation.target_system, operation.source_system
        else:
            primary, other = operation.source_system, operation.target_system
        if primary == self._settings.LOCAL_SYSTEM_NAME:
            return other
        return primary
