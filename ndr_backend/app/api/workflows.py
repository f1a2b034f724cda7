"""Workflow definition API: inspection and seeding of the packaged defaults."""
from typing import List

from fastapi import APIRouter, Depends, Security

from ndr_backend.app.core.logging import get_logger
from ndr_backend.app.core.security import NDR_READ, WORKFLOW_ADMIN, User, get_current_user, tenant_for
from ndr_backend.app.schemas.workflows import WorkflowDefinition, WorkflowResponse
from ndr_backend.app.services.wiring import NDRServices, get_services

logger = get_logger(__name__)
router = APIRouter()


@router.get("", response_model=List[WorkflowResponse])
async def list_workflows(
    services: NDRServices = Depends(get_services),
    current_user: User = Security(get_current_user, scopes=[NDR_READ]),
):
    """Active and inactive definitions visible to the caller's tenant (own plus global)."""
    rows = await services.workflows.list_rows(tenant_for(current_user))
    return [
        WorkflowResponse(
            id=row.id,
            name=row.name,
            category=row.category,
            tenant_id=row.tenant_id,
            is_active=row.is_active,
            definition=WorkflowDefinition(**{**row.definition, "id": row.id, "tenant_id": row.tenant_id}),
        )
        for row in rows
    ]


@router.post("/seed")
async def seed_workflows(
    services: NDRServices = Depends(get_services),
    current_user: User = Security(get_current_user, scopes=[WORKFLOW_ADMIN]),
):
    created, skipped = await services.workflows.seed_defaults()
    logger.info(f"Workflow seed by {current_user.username}: created={created} skipped={skipped}")
    return {"created": created, "skipped": skipped}
