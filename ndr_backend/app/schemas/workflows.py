"""
Workflow definition schemas.

A WorkflowDefinition is configuration: an ordered list of tagged actions plus
escalation and RTO rules. The engine copies a validated snapshot onto each
FailureEvent when it opens, so edits never affect in-flight resolutions.
"""
from datetime import timedelta
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ndr_backend.app.schemas.ndr import ActionType, FailureCategory


class WorkflowActionSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    sequence: int = Field(ge=1)
    action_type: ActionType
    delay_after_previous: timedelta = timedelta(0)
    auto_execute: bool = True
    config: Dict[str, Any] = Field(default_factory=dict)


class EscalationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    after_duration: timedelta = timedelta(hours=24)
    escalate_to_role: str = "ndr_supervisor"


class RTOTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: Optional[int] = Field(default=3, ge=1)
    max_duration: Optional[timedelta] = None
    auto_trigger: bool = True


class WorkflowDefinition(BaseModel):
    """Validated, immutable workflow definition."""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    name: str
    category: FailureCategory
    tenant_id: Optional[str] = None
    actions: List[WorkflowActionSpec] = Field(default_factory=list)
    escalation: EscalationRule = Field(default_factory=EscalationRule)
    rto_trigger: RTOTrigger = Field(default_factory=RTOTrigger)
    reattempt_resets_deadline: bool = False

    @field_validator("actions")
    @classmethod
    def _ordered_unique_sequences(cls, actions: List[WorkflowActionSpec]) -> List[WorkflowActionSpec]:
        ordered = sorted(actions, key=lambda a: a.sequence)
        sequences = [a.sequence for a in ordered]
        if len(set(sequences)) != len(sequences):
            raise ValueError(f"duplicate action sequence in {sequences}")
        return ordered

    def action(self, sequence: int) -> Optional[WorkflowActionSpec]:
        for spec in self.actions:
            if spec.sequence == sequence:
                return spec
        return None

    def snapshot(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        return cls.model_validate(data)


class WorkflowResponse(BaseModel):
    id: str
    name: str
    category: FailureCategory
    tenant_id: Optional[str] = None
    is_active: bool
    definition: WorkflowDefinition
