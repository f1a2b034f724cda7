"""
NDR Operator API.

Read access to failure events and their audit trail, plus the manual
lifecycle operations. Manual operations go through the WorkflowEngine so they
take part in the same version-checked writes as the automated path.
"""
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, Security

from ndr_backend.app.core.exceptions import FailureEventNotFoundError
from ndr_backend.app.core.logging import get_logger
from ndr_backend.app.core.security import NDR_READ, NDR_WRITE, RTO_WRITE, User, get_current_user, tenant_for
from ndr_backend.app.models.failure_event_orm import FailureEventORM
from ndr_backend.app.schemas.ndr import (
    AuditTrailEntry,
    EscalateRequest,
    FailureEventResponse,
    FailureStatus,
    ManualRTORequest,
    ResolveRequest,
)
from ndr_backend.app.schemas.rto import ReturnEventResponse
from ndr_backend.app.services.wiring import NDRServices, get_services

logger = get_logger(__name__)
router = APIRouter()


async def _get_for_tenant(services: NDRServices, failure_event_id: str, user: User) -> FailureEventORM:
    """Load a failure event; other tenants' records look like missing ones."""
    event = await services.repository.get(failure_event_id)
    if event.tenant_id != tenant_for(user):
        raise FailureEventNotFoundError(failure_event_id)
    return event


@router.get("", response_model=List[FailureEventResponse])
async def list_failure_events(
    status: Optional[FailureStatus] = None,
    shipment_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    services: NDRServices = Depends(get_services),
    current_user: User = Security(get_current_user, scopes=[NDR_READ]),
):
    return await services.repository.list_events(
        tenant_for(current_user),
        status=status.value if status else None,
        shipment_id=shipment_id,
        limit=limit,
        offset=offset,
    )


@router.get("/{failure_event_id}", response_model=FailureEventResponse)
async def get_failure_event(
    failure_event_id: str,
    services: NDRServices = Depends(get_services),
    current_user: User = Security(get_current_user, scopes=[NDR_READ]),
):
    return await _get_for_tenant(services, failure_event_id, current_user)


@router.post("/{failure_event_id}/resolve", response_model=FailureEventResponse)
async def resolve_failure_event(
    failure_event_id: str,
    payload: ResolveRequest,
    services: NDRServices = Depends(get_services),
    current_user: User = Security(get_current_user, scopes=[NDR_WRITE]),
):
    await _get_for_tenant(services, failure_event_id, current_user)
    return await services.engine.resolve_manually(
        failure_event_id, payload.resolution, current_user.username, payload.notes
    )


@router.post("/{failure_event_id}/escalate", response_model=FailureEventResponse)
async def escalate_failure_event(
    failure_event_id: str,
    payload: EscalateRequest,
    services: NDRServices = Depends(get_services),
    current_user: User = Security(get_current_user, scopes=[NDR_WRITE]),
):
    await _get_for_tenant(services, failure_event_id, current_user)
    return await services.engine.escalate_manually(
        failure_event_id, payload.reason, current_user.username, payload.escalate_to
    )


@router.post("/{failure_event_id}/actions/{sequence}/approve", response_model=FailureEventResponse)
async def approve_action(
    failure_event_id: str,
    sequence: int,
    services: NDRServices = Depends(get_services),
    current_user: User = Security(get_current_user, scopes=[NDR_WRITE]),
):
    """Release an action configured with auto_execute=false."""
    await _get_for_tenant(services, failure_event_id, current_user)
    return await services.engine.approve_action(failure_event_id, sequence, current_user.username)


@router.post("/{failure_event_id}/rto", response_model=ReturnEventResponse)
async def trigger_rto(
    failure_event_id: str,
    payload: ManualRTORequest,
    services: NDRServices = Depends(get_services),
    current_user: User = Security(get_current_user, scopes=[RTO_WRITE]),
):
    await _get_for_tenant(services, failure_event_id, current_user)
    return_event = await services.engine.trigger_rto_manually(
        failure_event_id, payload.reason, current_user.username
    )
    logger.info(f"Manual RTO for {failure_event_id} by {current_user.username}: {return_event.id}")
    return return_event


@router.get("/{failure_event_id}/audit", response_model=List[AuditTrailEntry])
async def get_audit_trail(
    failure_event_id: str,
    services: NDRServices = Depends(get_services),
    current_user: User = Security(get_current_user, scopes=[NDR_READ]),
):
    event = await _get_for_tenant(services, failure_event_id, current_user)
    return await services.repository.list_audit(event.id)
