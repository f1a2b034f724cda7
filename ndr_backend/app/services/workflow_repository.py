"""
Workflow Definition Repository.

Resolution is a priority-ordered lookup: the tenant's active definition for a
category, else the platform default (tenant_id NULL). Exactly one definition
must win; zero or several is a configuration error, never papered over.
"""
from pathlib import Path
from typing import Optional, List, Tuple

import yaml
from sqlalchemy import select

from ndr_backend.app.core.config import get_settings
from ndr_backend.app.core.exceptions import WorkflowConflictError, WorkflowNotFoundError
from ndr_backend.app.core.logging import get_logger
from ndr_backend.app.models.workflow_orm import WorkflowDefinitionORM
from ndr_backend.app.schemas.workflows import WorkflowDefinition

logger = get_logger(__name__)

DEFAULT_WORKFLOWS_PATH = Path(__file__).parent.parent / "workflows" / "default_workflows.yaml"


def load_workflow_file(path: Optional[Path] = None) -> List[WorkflowDefinition]:
    """Parse and validate a workflow YAML file."""
    if path is None:
        configured = get_settings().workflow_defaults_path
        path = Path(configured) if configured else DEFAULT_WORKFLOWS_PATH

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    definitions = [WorkflowDefinition(**w) for w in data.get("workflows", [])]
    logger.info(f"Loaded {len(definitions)} workflow definitions (version {data.get('version', 'n/a')}) from {path}")
    return definitions


def _to_definition(row: WorkflowDefinitionORM) -> WorkflowDefinition:
    return WorkflowDefinition(**{**row.definition, "id": row.id, "tenant_id": row.tenant_id})


class WorkflowRepository:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def resolve(self, category: str, tenant_id: Optional[str]) -> WorkflowDefinition:
        async with self.session_factory() as session:
            if tenant_id is not None:
                tenant_rows = await self._active_rows(session, category, tenant_id)
                if len(tenant_rows) > 1:
                    raise WorkflowConflictError(
                        f"{len(tenant_rows)} active workflows for category={category} tenant={tenant_id}"
                    )
                if tenant_rows:
                    return _to_definition(tenant_rows[0])

            global_rows = await self._active_rows(session, category, None)
            if len(global_rows) > 1:
                raise WorkflowConflictError(f"{len(global_rows)} active global workflows for category={category}")
            if not global_rows:
                raise WorkflowNotFoundError(category, tenant_id)
            return _to_definition(global_rows[0])

    async def list_rows(self, tenant_id: Optional[str] = None) -> List[WorkflowDefinitionORM]:
        query = select(WorkflowDefinitionORM).order_by(WorkflowDefinitionORM.category)
        if tenant_id is not None:
            query = query.where(
                (WorkflowDefinitionORM.tenant_id == tenant_id) | (WorkflowDefinitionORM.tenant_id.is_(None))
            )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def save(self, definition: WorkflowDefinition, deactivate_existing: bool = True) -> WorkflowDefinitionORM:
        """Store a definition as the active one for its (category, tenant) key."""
        async with self.session_factory() as session:
            if deactivate_existing:
                for row in await self._active_rows(session, definition.category.value, definition.tenant_id):
                    row.is_active = False
            row = WorkflowDefinitionORM(
                tenant_id=definition.tenant_id,
                category=definition.category.value,
                name=definition.name,
                definition=definition.model_dump(mode="json", exclude={"id", "tenant_id"}),
                is_active=True,
            )
            session.add(row)
            await session.commit()
        return row

    async def seed_defaults(self, path: Optional[Path] = None) -> Tuple[int, int]:
        """
        Insert packaged global definitions for categories that have none.
        Returns (created, skipped). Safe to run on every startup.
        """
        created, skipped = 0, 0
        for definition in load_workflow_file(path):
            async with self.session_factory() as session:
                existing = await self._active_rows(session, definition.category.value, None)
            if existing:
                skipped += 1
                continue
            await self.save(definition.model_copy(update={"tenant_id": None}), deactivate_existing=False)
            created += 1
        if created:
            logger.info(f"Seeded {created} default workflow definitions ({skipped} already present)")
        return created, skipped

    async def _active_rows(self, session, category: str, tenant_id: Optional[str]) -> List[WorkflowDefinitionORM]:
        query = select(WorkflowDefinitionORM).where(
            WorkflowDefinitionORM.category == category,
            WorkflowDefinitionORM.is_active.is_(True),
        )
        if tenant_id is None:
            query = query.where(WorkflowDefinitionORM.tenant_id.is_(None))
        else:
            query = query.where(WorkflowDefinitionORM.tenant_id == tenant_id)
        result = await session.execute(query)
        return list(result.scalars().all())
