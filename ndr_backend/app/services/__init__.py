"""Services package."""

from ndr_backend.app.services.failure_repository import FailureEventRepository
from ndr_backend.app.services.workflow_repository import WorkflowRepository

__all__ = [
    "FailureEventRepository",
    "WorkflowRepository",
]
