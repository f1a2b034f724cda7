"""Per-tenant NDR settings with platform defaults."""
from datetime import timedelta
from typing import Optional, FrozenSet

from ndr_backend.app.core.config import get_settings
from ndr_backend.app.models.tenant_orm import TenantNDRConfigORM


def normalise_status(status: str) -> str:
    return "_".join(status.strip().lower().replace("-", " ").split())


class TenantConfigService:
    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.settings = get_settings()

    async def _get(self, tenant_id: str) -> Optional[TenantNDRConfigORM]:
        async with self.session_factory() as session:
            return await session.get(TenantNDRConfigORM, tenant_id)

    async def failure_statuses(self, tenant_id: str) -> FrozenSet[str]:
        config = await self._get(tenant_id)
        statuses = config.failure_statuses if config and config.failure_statuses else self.settings.ndr_failure_statuses
        return frozenset(normalise_status(s) for s in statuses)

    async def resolution_window(self, tenant_id: str) -> timedelta:
        config = await self._get(tenant_id)
        hours = (
            config.resolution_window_hours
            if config and config.resolution_window_hours
            else self.settings.resolution_window_hours
        )
        return timedelta(hours=hours)

    async def upsert(
        self,
        tenant_id: str,
        failure_statuses: Optional[list] = None,
        resolution_window_hours: Optional[int] = None,
    ) -> TenantNDRConfigORM:
        async with self.session_factory() as session:
            config = await session.get(TenantNDRConfigORM, tenant_id)
            if config is None:
                config = TenantNDRConfigORM(tenant_id=tenant_id)
                session.add(config)
            config.failure_statuses = failure_statuses
            config.resolution_window_hours = resolution_window_hours
            await session.commit()
        return config
