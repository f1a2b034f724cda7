"""RTO (Return-To-Origin) API: return shipment tracking, QC and booking retries."""
from fastapi import APIRouter, Depends, Security

from ndr_backend.app.core.exceptions import ReturnEventNotFoundError
from ndr_backend.app.core.security import NDR_READ, RTO_WRITE, User, get_current_user, tenant_for
from ndr_backend.app.models.return_event_orm import ReturnEventORM
from ndr_backend.app.schemas.rto import QCResultRequest, ReturnEventResponse, ReturnStatusUpdate
from ndr_backend.app.services.wiring import NDRServices, get_services

router = APIRouter()


async def _get_for_tenant(services: NDRServices, return_event_id: str, user: User) -> ReturnEventORM:
    return_event = await services.coordinator.get(return_event_id)
    if return_event.tenant_id != tenant_for(user):
        raise ReturnEventNotFoundError(return_event_id)
    return return_event


@router.get("/{return_event_id}", response_model=ReturnEventResponse)
async def get_return_event(
    return_event_id: str,
    services: NDRServices = Depends(get_services),
    current_user: User = Security(get_current_user, scopes=[NDR_READ]),
):
    return await _get_for_tenant(services, return_event_id, current_user)


@router.post("/{return_event_id}/status", response_model=ReturnEventResponse)
async def update_return_status(
    return_event_id: str,
    payload: ReturnStatusUpdate,
    services: NDRServices = Depends(get_services),
    current_user: User = Security(get_current_user, scopes=[RTO_WRITE]),
):
    await _get_for_tenant(services, return_event_id, current_user)
    return await services.coordinator.update_return_status(return_event_id, payload.status, payload.occurred_at)


@router.post("/{return_event_id}/qc", response_model=ReturnEventResponse)
async def record_qc(
    return_event_id: str,
    payload: QCResultRequest,
    services: NDRServices = Depends(get_services),
    current_user: User = Security(get_current_user, scopes=[RTO_WRITE]),
):
    await _get_for_tenant(services, return_event_id, current_user)
    return await services.coordinator.record_qc(
        return_event_id,
        payload.passed,
        payload.remarks,
        payload.inspected_by or current_user.username,
    )


@router.post("/{return_event_id}/retry-booking", response_model=ReturnEventResponse)
async def retry_booking(
    return_event_id: str,
    services: NDRServices = Depends(get_services),
    current_user: User = Security(get_current_user, scopes=[RTO_WRITE]),
):
    await _get_for_tenant(services, return_event_id, current_user)
    return await services.coordinator.rebook(return_event_id)
