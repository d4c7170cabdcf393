"""Per-user, per-CRM sync preferences."""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import ValidationError

from src.crmsync.config import Settings, get_settings
from src.crmsync.sync.errors import SyncValidationError
from src.crmsync.sync.schemas import UserSyncPreferencesRead, UserSyncPreferencesUpdate
from src.crmsync.sync.store.base import SyncStore

logger = structlog.get_logger(__name__)


class PreferenceStore:
    """Reads and upserts UserSyncPreferences rows."""

    def __init__(self, store: SyncStore, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()

    async def get(self, user_id: str, crm_type: str) -> UserSyncPreferencesRead | None:
        """Stored preferences, or None if the user never configured this CRM."""
        return await self._store.get_preferences(user_id, crm_type)

    async def get_effective(self, user_id: str, crm_type: str) -> UserSyncPreferencesRead:
        """Stored preferences, falling back to defaults (id=None) when absent."""
        prefs = await self._store.get_preferences(user_id, crm_type)
        if prefs is not None:
            return prefs
        return UserSyncPreferencesRead(
            user_id=user_id,
            crm_type=crm_type,
            sync_frequency_minutes=self._settings.DEFAULT_SYNC_FREQUENCY_MINUTES,
        )

    async def update(
        self,
        user_id: str,
        crm_type: str,
        changes: UserSyncPreferencesUpdate | dict[str, Any],
    ) -> UserSyncPreferencesRead:
        """Upsert only the provided fields.

        Raises:
            SyncValidationError: A field value is out of range or unknown.
        """
        if not crm_type:
            raise SyncValidationError("crm_type is required")
        if not isinstance(changes, UserSyncPreferencesUpdate):
            try:
                changes = UserSyncPreferencesUpdate.model_validate(changes)
            except ValidationError as exc:
                raise SyncValidationError(f"Invalid sync preferences: {exc}") from exc

        fields = changes.model_dump(exclude_unset=True, exclude_none=True)
        existing = await self._store.get_preferences(user_id, crm_type)
        if existing is None:
            fields.setdefault(
                "sync_frequency_minutes", self._settings.DEFAULT_SYNC_FREQUENCY_MINUTES
            )

        prefs = await self._store.upsert_preferences(user_id, crm_type, fields)
        logger.info(
            "sync.preferences_updated",
            user_id=user_id,
            crm_type=crm_type,
            fields=sorted(fields),
        )
        return prefs
