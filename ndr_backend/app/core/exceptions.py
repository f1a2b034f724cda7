"""
Typed errors for the NDR/RTO resolution engine.

Detection and classification never raise to their callers; the workflow
engine, RTO coordinator and token service raise these so the job runner
(or API layer) can log, retry or map them to a response.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class NDRError(Exception):
    """Base class for all resolution engine errors."""

    code = "ndr_error"


class FailureEventNotFoundError(NDRError):
    code = "failure_event_not_found"

    def __init__(self, failure_event_id: str):
        super().__init__(f"Failure event {failure_event_id} not found")
        self.failure_event_id = failure_event_id


class ReturnEventNotFoundError(NDRError):
    code = "return_event_not_found"

    def __init__(self, return_event_id: str):
        super().__init__(f"Return event {return_event_id} not found")
        self.return_event_id = return_event_id


class InvalidTransitionError(NDRError):
    """Requested lifecycle change is not allowed from the current status."""

    code = "invalid_transition"


class InvalidReturnStatusError(NDRError):
    code = "invalid_return_status"


class ConcurrencyConflictError(NDRError):
    """A version-checked write kept losing to concurrent writers."""

    code = "concurrency_conflict"


class WorkflowNotFoundError(NDRError):
    code = "workflow_not_found"

    def __init__(self, category: str, tenant_id: str | None):
        super().__init__(
            f"No active workflow definition for category={category} tenant={tenant_id}"
        )
        self.category = category
        self.tenant_id = tenant_id


class WorkflowConflictError(NDRError):
    """More than one active definition matched the same (category, tenant) key."""

    code = "workflow_conflict"


class ClassifierError(NDRError):
    """Classification provider failed or returned unusable output."""

    code = "classifier_error"


class ChannelError(NDRError):
    code = "channel_error"


class ChannelTransientError(ChannelError):
    """Timeouts, 5xx and other errors worth retrying."""

    code = "channel_transient_error"


class ChannelPermanentError(ChannelError):
    """Invalid phone number, unserviceable pincode and similar hard rejections."""

    code = "channel_permanent_error"


_STATUS_CODES = {
    FailureEventNotFoundError: 404,
    ReturnEventNotFoundError: 404,
    WorkflowNotFoundError: 404,
    InvalidTransitionError: 409,
    InvalidReturnStatusError: 409,
    ConcurrencyConflictError: 409,
    WorkflowConflictError: 409,
    ChannelError: 502,
}


def register_exception_handlers(app: FastAPI) -> None:
    """Map engine errors to JSON responses."""

    @app.exception_handler(NDRError)
    async def _ndr_error(request: Request, exc: NDRError) -> JSONResponse:
        status_code = 400
        for exc_type, code in _STATUS_CODES.items():
            if isinstance(exc, exc_type):
                status_code = code
                break
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "code": exc.code},
        )
