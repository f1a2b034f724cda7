"""
Public address update endpoint (magic link target).

No operator auth: the single-use token is the credential. Every rejection,
malformed bodies included, gets the same message so a caller cannot probe
which check failed.
"""
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import ValidationError

from ndr_backend.app.core.logging import get_logger
from ndr_backend.app.schemas.ndr import AddressUpdateRequest
from ndr_backend.app.services.wiring import NDRServices, get_services

logger = get_logger(__name__)
router = APIRouter()

INVALID_LINK_MESSAGE = "This link is invalid or has expired."


def _reject() -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_LINK_MESSAGE)


@router.post("/address-update")
async def submit_address_update(
    body: Dict[str, Any] = Body(...),
    services: NDRServices = Depends(get_services),
):
    try:
        payload = AddressUpdateRequest.model_validate(body)
    except ValidationError as e:
        logger.info(f"Malformed address update rejected: {e.error_count()} errors")
        raise _reject()

    if not await services.address_updates.submit(payload.token, payload.new_address):
        raise _reject()
    return {"status": "updated", "message": "Thank you. Your delivery address has been updated."}
