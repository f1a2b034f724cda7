"""Models package."""

from ndr_backend.app.models.failure_event_orm import FailureEventORM
from ndr_backend.app.models.workflow_orm import WorkflowDefinitionORM
from ndr_backend.app.models.address_token_orm import AddressUpdateTokenORM
from ndr_backend.app.models.return_event_orm import ReturnEventORM
from ndr_backend.app.models.scheduled_job_orm import ScheduledJobORM
from ndr_backend.app.models.tenant_orm import TenantNDRConfigORM
from ndr_backend.app.models.audit_orm import NDRAuditEntryORM

__all__ = [
    "FailureEventORM",
    "WorkflowDefinitionORM",
    "AddressUpdateTokenORM",
    "ReturnEventORM",
    "ScheduledJobORM",
    "TenantNDRConfigORM",
    "NDRAuditEntryORM",
]
