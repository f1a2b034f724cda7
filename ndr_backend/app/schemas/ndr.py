"""
NDR Failure Event Schemas and Enums.

Shared contract used by detection, the workflow engine, the sweeper,
the RTO coordinator and the operator API.
"""
from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator


class FailureStatus(str, Enum):
    """FailureEvent lifecycle. RESOLVED and RTO_TRIGGERED are terminal."""
    DETECTED = "detected"
    IN_RESOLUTION = "in_resolution"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    RTO_TRIGGERED = "rto_triggered"


# detected/in_resolution form the "open" superstate the workflow works on
OPEN_STATUSES = frozenset({FailureStatus.DETECTED.value, FailureStatus.IN_RESOLUTION.value})
TERMINAL_STATUSES = frozenset({FailureStatus.RESOLVED.value, FailureStatus.RTO_TRIGGERED.value})
NON_TERMINAL_STATUSES = frozenset(
    {FailureStatus.DETECTED.value, FailureStatus.IN_RESOLUTION.value, FailureStatus.ESCALATED.value}
)


class FailureCategory(str, Enum):
    ADDRESS_ISSUE = "address_issue"
    CUSTOMER_UNAVAILABLE = "customer_unavailable"
    REFUSED = "refused"
    PAYMENT_ISSUE = "payment_issue"
    OTHER = "other"


class ActionType(str, Enum):
    CONTACT_CUSTOMER = "contact_customer"
    SEND_MESSAGE = "send_message"
    REQUEST_ADDRESS_UPDATE = "request_address_update"
    REQUEST_REATTEMPT = "request_reattempt"
    TRIGGER_RTO = "trigger_rto"


class ActionState(str, Enum):
    SCHEDULED = "scheduled"
    AWAITING_APPROVAL = "awaiting_approval"
    AWAITING_RESPONSE = "awaiting_response"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ActionResult(str, Enum):
    """Recorded outcome of a workflow action."""
    RESOLVED = "resolved"
    DELIVERED = "delivered"
    NOT_DELIVERED = "not_delivered"
    NOT_CONNECTED = "not_connected"
    NOT_CONFIRMED = "not_confirmed"
    ADDRESS_UPDATED = "address_updated"
    NO_RESPONSE = "no_response"
    REATTEMPT_ACCEPTED = "reattempt_accepted"
    REATTEMPT_REJECTED = "reattempt_rejected"
    RTO_TRIGGERED = "rto_triggered"
    FAILED = "failed"
    FAILED_PERMANENTLY = "failed_permanently"
    CANCELLED = "cancelled"


class ClassificationSource(str, Enum):
    PROVIDER = "provider"
    KEYWORD_FALLBACK = "keyword_fallback"
    DEFAULT = "default"


class TriggeredBy(str, Enum):
    WORKFLOW_ACTION = "workflow_action"
    DEADLINE_SWEEP = "deadline_sweep"
    MANUAL = "manual"


class TrackingUpdate(BaseModel):
    """A carrier tracking update as delivered by the tracking feed."""
    shipment_id: str = Field(min_length=1, max_length=64)
    status: str = Field(min_length=1, max_length=64)
    remarks: str = ""
    location: Optional[str] = None
    occurred_at: datetime


class ClassificationResult(BaseModel):
    category: FailureCategory
    explanation: str
    source: ClassificationSource = ClassificationSource.PROVIDER


class DetectionOutcome(str, Enum):
    NOT_FAILURE = "not_failure"
    DUPLICATE = "duplicate"
    APPENDED = "appended"
    CREATED = "created"
    ERROR = "error"


class DetectionResult(BaseModel):
    outcome: DetectionOutcome
    failure_event_id: Optional[str] = None
    detail: Optional[str] = None


class ActionRecord(BaseModel):
    """One entry of FailureEvent.actions_taken."""
    sequence: int
    action_type: ActionType
    state: ActionState = ActionState.SCHEDULED
    scheduled_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    result: Optional[ActionResult] = None
    outcome_note: Optional[str] = None
    attempts: int = 0
    respond_by: Optional[datetime] = None


class FailureEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    shipment_id: str
    attempt_number: int
    raw_reason: str
    remarks: Optional[str] = None
    classified_category: FailureCategory
    classification_explanation: Optional[str] = None
    classification_source: Optional[str] = None
    detected_at: datetime
    resolution_deadline: datetime
    status: FailureStatus
    actions_taken: List[ActionRecord] = []
    customer_contacted: bool = False
    escalated_at: Optional[datetime] = None
    escalation_notified_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    rto_triggered_at: Optional[datetime] = None
    version: int

    @field_validator("actions_taken", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or []


class ResolveRequest(BaseModel):
    resolution: str = Field(min_length=1, max_length=255)
    notes: Optional[str] = None


class EscalateRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    escalate_to: Optional[str] = None


class ManualRTORequest(BaseModel):
    reason: str = "ndr_unresolved"


class AuditTrailEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    action: str
    action_type: str
    actor: str
    details: Optional[str] = None
    trace_id: Optional[str] = None


class AddressUpdateRequest(BaseModel):
    """Body of the public magic-link endpoint."""
    token: str = Field(min_length=1)
    new_address: Dict[str, Any]

    @field_validator("new_address")
    @classmethod
    def _address_has_lines(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        line1 = str(value.get("line1", "")).strip()
        pincode = str(value.get("pincode", "")).strip()
        if not line1 or not pincode:
            raise ValueError("new_address requires line1 and pincode")
        return value
