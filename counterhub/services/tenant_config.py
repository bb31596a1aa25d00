from __future__ import annotations

import logging

from pydantic import ValidationError

from counterhub.models import (
    CustomCounterDefinition,
    MilestoneConfiguration,
    NotificationPreference,
    TenantSettings,
)
from counterhub.store import CounterStore, CounterStoreError, KeyedLocks

logger = logging.getLogger("counterhub.settings")

SETTINGS_KIND = "settings"


class TenantConfigService:
    """Reads and writes the per-tenant settings document.

    Every read goes through ``TenantSettings.from_document`` so callers always
    see a fully populated, current-version model. Partial updates hold a
    per-tenant lock across their read and write.
    """

    def __init__(self, store: CounterStore) -> None:
        self.store = store
        self._locks = KeyedLocks()

    async def get(self, tenant_id: str) -> TenantSettings:
        document = await self.store.get_document(tenant_id, SETTINGS_KIND)
        try:
            settings = TenantSettings.from_document(document)
        except ValidationError as exc:
            logger.error("settings_invalid tenant=%s errors=%s", tenant_id, exc.error_count())
            raise CounterStoreError(f"stored settings for {tenant_id} are invalid") from exc
        if document is not None and "schema_version" not in document:
            await self.store.put_document(tenant_id, SETTINGS_KIND, settings.to_document())
            logger.info("settings_migrated tenant=%s schema_version=%s", tenant_id, settings.schema_version)
        return settings

    async def save(self, tenant_id: str, settings: TenantSettings) -> TenantSettings:
        async with self._locks.hold(tenant_id):
            return await self._write(tenant_id, settings)

    async def update_notifications(
        self, tenant_id: str, preference: NotificationPreference
    ) -> TenantSettings:
        async with self._locks.hold(tenant_id):
            current = await self.get(tenant_id)
            return await self._write(tenant_id, current.model_copy(update={"notifications": preference}))

    async def update_milestones(
        self, tenant_id: str, thresholds: dict[str, list[int]]
    ) -> TenantSettings:
        async with self._locks.hold(tenant_id):
            current = await self.get(tenant_id)
            merged = {**current.milestones.thresholds, **thresholds}
            milestones = MilestoneConfiguration(thresholds=merged)
            return await self._write(tenant_id, current.model_copy(update={"milestones": milestones}))

    async def put_custom_counter(
        self, tenant_id: str, key: str, definition: CustomCounterDefinition
    ) -> TenantSettings:
        async with self._locks.hold(tenant_id):
            current = await self.get(tenant_id)
            document = current.to_document()
            document["custom_counters"][key] = definition.model_dump(mode="json")
            # Re-validated so the new key goes through the custom counter key rules.
            return await self._write(tenant_id, TenantSettings.model_validate(document))

    async def _write(self, tenant_id: str, settings: TenantSettings) -> TenantSettings:
        await self.store.put_document(tenant_id, SETTINGS_KIND, settings.to_document())
        logger.info("settings_saved tenant=%s", tenant_id)
        return settings
