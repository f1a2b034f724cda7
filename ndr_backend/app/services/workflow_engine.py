"""
NDR Workflow Engine.

Owns the FailureEvent lifecycle:

    detected -> in_resolution -> resolved
                              -> escalated -> rto_triggered

Actions of a workflow run strictly one after another. Each action is a
persisted job (`action:{event}:{sequence}`) due at the previous action's
result time plus its delay; zero-delay actions are claimed and run in-process
right away. Every state change is a version-checked write through
FailureEventRepository, so a job that fires after the record left the open
state, or loses a race to the deadline sweeper, changes nothing.
"""
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Dict, Any, List

from ndr_backend.app.core.config import get_settings
from ndr_backend.app.core.database import utcnow
from ndr_backend.app.core.exceptions import (
    ChannelPermanentError,
    ChannelTransientError,
    InvalidTransitionError,
)
from ndr_backend.app.core.logging import failure_event_id_ctx, get_logger
from ndr_backend.app.core.resilience import compute_next_retry_at
from ndr_backend.app.models.failure_event_orm import FailureEventORM
from ndr_backend.app.models.return_event_orm import ReturnEventORM
from ndr_backend.app.models.scheduled_job_orm import ScheduledJobORM
from ndr_backend.app.schemas.ndr import (
    ActionRecord,
    ActionResult,
    ActionState,
    ActionType,
    ClassificationResult,
    FailureStatus,
    NON_TERMINAL_STATUSES,
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    TriggeredBy,
)
from ndr_backend.app.schemas.workflows import WorkflowActionSpec, WorkflowDefinition
from ndr_backend.app.services.action_executors import ActionContext, ActionExecutor, ActionOutcome, call_channel
from ndr_backend.app.services.channels import EscalationNotifier, ShipmentDirectory
from ndr_backend.app.services.failure_repository import (
    AuditRecord,
    FailureEventRepository,
    Mutation,
    copy_actions,
)
from ndr_backend.app.services.rto_coordinator import RTOCoordinator
from ndr_backend.app.services.tenant_config_service import TenantConfigService
from ndr_backend.app.services.workflow_repository import WorkflowRepository
from ndr_backend.app.workers.job_queue import JobQueue, JobType, build_job, default_worker_id

logger = get_logger(__name__)

_PENDING_STATES = frozenset({
    ActionState.SCHEDULED.value,
    ActionState.AWAITING_APPROVAL.value,
    ActionState.AWAITING_RESPONSE.value,
})


def action_job_key(failure_event_id: str, sequence: int) -> str:
    return f"action:{failure_event_id}:{sequence}"


def escalation_job_key(failure_event_id: str) -> str:
    return f"escalation:{failure_event_id}"


def duration_job_key(failure_event_id: str) -> str:
    return f"rto-duration:{failure_event_id}"


def response_window_job_key(failure_event_id: str, sequence: int) -> str:
    return f"address-window:{failure_event_id}:{sequence}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _find(records: List[Dict[str, Any]], sequence: int) -> Optional[Dict[str, Any]]:
    for record in records:
        if record["sequence"] == sequence:
            return record
    return None


def _cancel_pending_actions(records: List[Dict[str, Any]]) -> None:
    for record in records:
        if record["state"] in _PENDING_STATES and record.get("result") is None:
            record["state"] = ActionState.CANCELLED.value
            record["result"] = ActionResult.CANCELLED.value


class WorkflowEngine:
    def __init__(
        self,
        repository: FailureEventRepository,
        workflows: WorkflowRepository,
        job_queue: JobQueue,
        executors: Dict[ActionType, ActionExecutor],
        coordinator: RTOCoordinator,
        shipments: ShipmentDirectory,
        notifier: EscalationNotifier,
        tenant_config: TenantConfigService,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.repository = repository
        self.workflows = workflows
        self.job_queue = job_queue
        self.executors = executors
        self.coordinator = coordinator
        self.shipments = shipments
        self.notifier = notifier
        self.tenant_config = tenant_config
        self.clock = clock
        self.max_retries = settings.executor_max_retries
        self.backoff_seconds = settings.executor_backoff_seconds
        self.channel_timeout = settings.channel_timeout_seconds
        self.worker_id = f"inline:{default_worker_id()}:{uuid.uuid4().hex[:6]}"

    # ------------------------------------------------------------------
    # Lifecycle entry points
    # ------------------------------------------------------------------

    async def start(self, failure_event_id: str, classification: ClassificationResult) -> FailureEventORM:
        """Attach classification and workflow to a new FailureEvent and schedule its first action."""
        event = await self.repository.get(failure_event_id)
        if event.status != FailureStatus.DETECTED.value or event.workflow_snapshot:
            logger.info(f"Workflow already started for failure event {failure_event_id}")
            return event

        workflow = await self.workflows.resolve(classification.category.value, event.tenant_id)
        now = self.clock()
        planned: Dict[str, Any] = {}

        def mutator(ev: FailureEventORM) -> Optional[Mutation]:
            planned.clear()
            if ev.status != FailureStatus.DETECTED.value or ev.workflow_snapshot:
                return None
            values = {
                "classified_category": classification.category.value,
                "classification_explanation": classification.explanation,
                "classification_source": classification.source.value,
                "workflow_snapshot": workflow.snapshot(),
            }
            if not workflow.actions:
                values.update({
                    "status": FailureStatus.ESCALATED.value,
                    "escalated_at": now,
                    "actions_taken": [],
                })
                planned["escalated"] = True
                return Mutation(
                    values=values,
                    audit=AuditRecord(action="escalated", details=f"workflow {workflow.name} has no actions"),
                )

            record, job = self._plan_action(ev, workflow.actions[0], now)
            jobs = [job] if job else []
            jobs.append(build_job(
                JobType.ESCALATION_CHECK,
                ev.tenant_id,
                ev.detected_at + workflow.escalation.after_duration,
                escalation_job_key(ev.id),
                failure_event_id=ev.id,
            ))
            if workflow.rto_trigger.max_duration:
                jobs.append(build_job(
                    JobType.RTO_DURATION_CHECK,
                    ev.tenant_id,
                    ev.detected_at + workflow.rto_trigger.max_duration,
                    duration_job_key(ev.id),
                    failure_event_id=ev.id,
                ))
            values.update({"status": FailureStatus.IN_RESOLUTION.value, "actions_taken": [record]})
            planned["jobs"] = jobs
            return Mutation(
                values=values,
                jobs=jobs,
                audit=AuditRecord(
                    action="workflow_started",
                    details=f"workflow={workflow.name} category={classification.category.value}",
                ),
            )

        updated = await self.repository.mutate(failure_event_id, mutator)
        if updated is None:
            return await self.repository.get(failure_event_id)

        logger.info(
            f"Started workflow {workflow.name} for failure event {failure_event_id}",
            extra={"extra_data": {"category": classification.category.value, "actions": len(workflow.actions)}},
        )
        await self._after_transition(updated, planned)
        return await self.repository.get(failure_event_id)

    async def register_repeat_failure(self, failure_event_id: str, carrier_event: Dict[str, Any]) -> Optional[FailureEventORM]:
        """Fold another carrier failure into the open FailureEvent for the shipment."""
        event = await self.repository.get(failure_event_id)
        window = await self.tenant_config.resolution_window(event.tenant_id)
        now = self.clock()
        planned: Dict[str, Any] = {}

        def mutator(ev: FailureEventORM) -> Optional[Mutation]:
            planned.clear()
            if ev.status not in NON_TERMINAL_STATUSES:
                return None
            attempt = ev.attempt_number + 1
            values = {
                "carrier_events": list(ev.carrier_events or []) + [carrier_event],
                "attempt_number": attempt,
                "last_event_at": now,
            }
            if ev.workflow_snapshot:
                workflow = WorkflowDefinition.from_snapshot(ev.workflow_snapshot)
                if workflow.reattempt_resets_deadline:
                    values["resolution_deadline"] = now + window
                rto = workflow.rto_trigger
                if rto.auto_trigger and rto.max_attempts and attempt >= rto.max_attempts:
                    planned["force_rto"] = True
            return Mutation(
                values=values,
                audit=AuditRecord(action="repeat_failure", details=f"attempt={attempt} status={carrier_event.get('status')}"),
            )

        updated = await self.repository.mutate(failure_event_id, mutator)
        if updated is None:
            return None
        logger.info(f"Failure event {failure_event_id} now at attempt {updated.attempt_number}")
        if planned.get("force_rto"):
            await self.force_rto(failure_event_id, TriggeredBy.WORKFLOW_ACTION.value, "max_attempts_reached")
            return await self.repository.get(failure_event_id)
        return updated

    async def handle_job(self, job: ScheduledJobORM) -> Optional[datetime]:
        """Job dispatcher for the workflow job types."""
        token = failure_event_id_ctx.set(job.failure_event_id)
        try:
            if job.job_type == JobType.EXECUTE_ACTION:
                return await self._execute_action_job(job)
            if job.job_type == JobType.ADDRESS_RESPONSE_WINDOW:
                await self._response_window_closed(job)
            elif job.job_type == JobType.ESCALATION_CHECK:
                await self._escalation_check(job)
            elif job.job_type == JobType.RTO_DURATION_CHECK:
                await self._duration_check(job)
            else:
                raise ValueError(f"WorkflowEngine cannot handle job type {job.job_type}")
            return None
        finally:
            failure_event_id_ctx.reset(token)

    # ------------------------------------------------------------------
    # Manual operations
    # ------------------------------------------------------------------

    async def resolve_manually(
        self, failure_event_id: str, resolution: str, actor: str, notes: Optional[str] = None
    ) -> FailureEventORM:
        now = self.clock()

        def mutator(ev: FailureEventORM) -> Optional[Mutation]:
            if ev.status in TERMINAL_STATUSES:
                raise InvalidTransitionError(f"Failure event {ev.id} is already {ev.status}")
            records = copy_actions(ev)
            _cancel_pending_actions(records)
            return Mutation(
                values={
                    "status": FailureStatus.RESOLVED.value,
                    "resolved_at": now,
                    "resolution": resolution,
                    "resolved_by": actor,
                    "actions_taken": records,
                },
                cancel_pending_jobs=True,
                audit=AuditRecord(action="resolved", actor=actor, action_type="human", details=notes or resolution),
            )

        updated = await self.repository.mutate(failure_event_id, mutator)
        logger.info(f"Failure event {failure_event_id} resolved manually by {actor}: {resolution}")
        return updated

    async def escalate_manually(
        self, failure_event_id: str, reason: str, actor: str, escalate_to: Optional[str] = None
    ) -> FailureEventORM:
        now = self.clock()

        def mutator(ev: FailureEventORM) -> Optional[Mutation]:
            if ev.status not in OPEN_STATUSES:
                raise InvalidTransitionError(f"Failure event {ev.id} cannot be escalated from {ev.status}")
            records = copy_actions(ev)
            _cancel_pending_actions(records)
            return Mutation(
                values={
                    "status": FailureStatus.ESCALATED.value,
                    "escalated_at": now,
                    "actions_taken": records,
                },
                cancel_pending_jobs=True,
                audit=AuditRecord(action="escalated", actor=actor, action_type="human", details=reason),
            )

        updated = await self.repository.mutate(failure_event_id, mutator)
        role = escalate_to
        if role is None and updated.workflow_snapshot:
            role = WorkflowDefinition.from_snapshot(updated.workflow_snapshot).escalation.escalate_to_role
        if role:
            try:
                await self.notifier.notify(role, updated, reason)
            except Exception as e:
                logger.error(f"Escalation notification for {failure_event_id} to {role} failed: {e!r}", exc_info=True)
        return updated

    async def approve_action(self, failure_event_id: str, sequence: int, actor: str) -> FailureEventORM:
        """Release an action that was waiting in `awaiting_approval`."""
        now = self.clock()
        planned: Dict[str, Any] = {}

        def mutator(ev: FailureEventORM) -> Optional[Mutation]:
            planned.clear()
            if ev.status not in OPEN_STATUSES:
                raise InvalidTransitionError(f"Failure event {ev.id} is {ev.status}")
            records = copy_actions(ev)
            record = _find(records, sequence)
            if record is None or record["state"] != ActionState.AWAITING_APPROVAL.value:
                raise InvalidTransitionError(f"Action {sequence} of {ev.id} is not awaiting approval")
            due = max(now, _parse(record.get("scheduled_at")) or now)
            record["state"] = ActionState.SCHEDULED.value
            record["scheduled_at"] = _iso(due)
            job = build_job(
                JobType.EXECUTE_ACTION,
                ev.tenant_id,
                due,
                action_job_key(ev.id, sequence),
                failure_event_id=ev.id,
                payload={"sequence": sequence},
            )
            planned["jobs"] = [job]
            return Mutation(
                values={"actions_taken": records},
                jobs=[job],
                audit=AuditRecord(
                    action="action_approved",
                    actor=actor,
                    action_type="human",
                    details=f"sequence={sequence} action={record['action_type']}",
                ),
            )

        updated = await self.repository.mutate(failure_event_id, mutator)
        await self._after_transition(updated, planned)
        return await self.repository.get(failure_event_id)

    async def trigger_rto_manually(self, failure_event_id: str, reason: str, actor: str) -> ReturnEventORM:
        event = await self.repository.get(failure_event_id)
        if event.status == FailureStatus.RESOLVED.value:
            raise InvalidTransitionError(f"Failure event {failure_event_id} is already resolved")
        return_event = await self.force_rto(failure_event_id, TriggeredBy.MANUAL.value, reason, actor=actor)
        if return_event is None:
            return_event = await self.coordinator.find_for_failure_event(failure_event_id)
        if return_event is None:
            raise InvalidTransitionError(f"Failure event {failure_event_id} can no longer be sent to RTO")
        return return_event

    async def record_address_update(self, failure_event_id: str, address_summary: str) -> bool:
        """
        Customer submitted a new address through the magic link. Resolves the
        event when a request_address_update action is still waiting and its
        response window is open. Returns whether the event was resolved.
        """
        event = await self.repository.get(failure_event_id)
        now = self.clock()
        waiting = [
            r for r in (event.actions_taken or [])
            if r["action_type"] == ActionType.REQUEST_ADDRESS_UPDATE.value
            and r["state"] == ActionState.AWAITING_RESPONSE.value
        ]
        if event.status in OPEN_STATUSES and waiting:
            updated = await self._record_outcome(
                failure_event_id,
                waiting[-1]["sequence"],
                ActionOutcome(
                    result=ActionResult.ADDRESS_UPDATED,
                    resolved=True,
                    customer_contacted=True,
                    note=address_summary,
                ),
                expected_state=ActionState.AWAITING_RESPONSE,
                require_open_window=True,
            )
            if updated is not None and updated.status == FailureStatus.RESOLVED.value:
                return True

        await self.repository.add_audit(event, AuditRecord(
            action="address_update_received",
            actor="customer",
            action_type="human",
            details=f"not applied to workflow (status={event.status}, at={now.isoformat()})",
        ))
        return False

    async def force_rto(
        self,
        failure_event_id: str,
        triggered_by: str,
        reason: str,
        actor: str = "system",
    ) -> Optional[ReturnEventORM]:
        """
        Move a non-terminal event to escalated, cancel whatever is still
        pending and hand it to the RTO coordinator. Returns None when another
        writer already closed the event or already opened its return.
        """
        now = self.clock()

        def mutator(ev: FailureEventORM) -> Optional[Mutation]:
            if ev.status not in NON_TERMINAL_STATUSES:
                return None
            records = copy_actions(ev)
            _cancel_pending_actions(records)
            return Mutation(
                values={
                    "status": FailureStatus.ESCALATED.value,
                    "escalated_at": ev.escalated_at or now,
                    "actions_taken": records,
                },
                cancel_pending_jobs=True,
                audit=AuditRecord(
                    action="rto_requested",
                    actor=actor,
                    action_type="human" if triggered_by == TriggeredBy.MANUAL.value else "automated",
                    details=f"triggered_by={triggered_by} reason={reason}",
                ),
            )

        updated = await self.repository.mutate(failure_event_id, mutator)
        if updated is None:
            logger.info(f"Failure event {failure_event_id} already closed; RTO request by {triggered_by} skipped")
            return None
        return_event, created = await self.coordinator.open_return(updated, triggered_by, reason)
        if not created:
            logger.info(f"Failure event {failure_event_id} already handed to RTO as {return_event.id}")
            return None
        return return_event

    # ------------------------------------------------------------------
    # Job handlers
    # ------------------------------------------------------------------

    async def _execute_action_job(self, job: ScheduledJobORM) -> Optional[datetime]:
        sequence = int(job.payload["sequence"])
        event = await self.repository.get(job.failure_event_id)
        if event.status not in OPEN_STATUSES:
            logger.debug(f"Skipping action {sequence}: failure event is {event.status}")
            return None

        records = event.actions_taken or []
        record = _find(records, sequence)
        if record is None or record["state"] != ActionState.SCHEDULED.value or record.get("result"):
            return None
        pending_predecessors = [
            r["sequence"] for r in records if r["sequence"] < sequence and r.get("result") is None
        ]
        if pending_predecessors:
            logger.warning(f"Action {sequence} held back; predecessors {pending_predecessors} have no result")
            return self.clock() + timedelta(seconds=self.backoff_seconds)

        workflow = WorkflowDefinition.from_snapshot(event.workflow_snapshot)
        spec = workflow.action(sequence)
        if spec.action_type == ActionType.TRIGGER_RTO:
            await self._run_trigger_rto(event, spec)
            return None

        now = self.clock()
        try:
            shipment = await call_channel(
                self.shipments.get_shipment(event.shipment_id), self.channel_timeout, "get_shipment"
            )
            if shipment is None:
                raise ChannelPermanentError(f"Shipment {event.shipment_id} not found")
            outcome = await self.executors[spec.action_type].execute(ActionContext(event, spec, shipment, now))
        except ChannelTransientError as e:
            attempts = record.get("attempts", 0) + 1
            if attempts <= self.max_retries:
                retry_at = compute_next_retry_at(now, attempts, self.backoff_seconds)
                logger.warning(
                    f"{spec.action_type.value} attempt {attempts} failed, retrying at {retry_at.isoformat()}: {e}"
                )
                await self._note_failed_attempt(event.id, sequence, attempts, str(e))
                return retry_at
            logger.error(f"{spec.action_type.value} failed permanently after {attempts} attempts: {e}")
            outcome = ActionOutcome(result=ActionResult.FAILED_PERMANENTLY, note=str(e))
        except ChannelPermanentError as e:
            logger.error(f"{spec.action_type.value} rejected by channel: {e}")
            outcome = ActionOutcome(result=ActionResult.FAILED, note=str(e))

        await self._record_outcome(event.id, sequence, outcome)
        return None

    async def _response_window_closed(self, job: ScheduledJobORM) -> None:
        await self._record_outcome(
            job.failure_event_id,
            int(job.payload["sequence"]),
            ActionOutcome(result=ActionResult.NO_RESPONSE, note="no address submitted before respond_by"),
            expected_state=ActionState.AWAITING_RESPONSE,
        )

    async def _escalation_check(self, job: ScheduledJobORM) -> None:
        event = await self.repository.get(job.failure_event_id)
        if event.status not in OPEN_STATUSES or event.escalation_notified_at:
            return
        workflow = WorkflowDefinition.from_snapshot(event.workflow_snapshot)
        role = workflow.escalation.escalate_to_role
        await self.notifier.notify(
            role, event, f"NDR unresolved {workflow.escalation.after_duration} after detection"
        )
        now = self.clock()

        def mutator(ev: FailureEventORM) -> Optional[Mutation]:
            if ev.escalation_notified_at:
                return None
            return Mutation(
                values={"escalation_notified_at": now},
                audit=AuditRecord(action="escalation_notified", details=f"role={role}"),
            )

        await self.repository.mutate(event.id, mutator)
        logger.info(f"Escalation for failure event {event.id} notified to {role}")

    async def _duration_check(self, job: ScheduledJobORM) -> None:
        event = await self.repository.get(job.failure_event_id)
        if event.status not in NON_TERMINAL_STATUSES:
            return
        await self.force_rto(event.id, TriggeredBy.WORKFLOW_ACTION.value, "max_duration_exceeded")

    async def _run_trigger_rto(self, event: FailureEventORM, spec: WorkflowActionSpec) -> None:
        now = self.clock()

        def mutator(ev: FailureEventORM) -> Optional[Mutation]:
            if ev.status not in OPEN_STATUSES:
                return None
            records = copy_actions(ev)
            record = _find(records, spec.sequence)
            if record is None or record["state"] != ActionState.SCHEDULED.value or record.get("result"):
                return None
            record.update({
                "state": ActionState.COMPLETED.value,
                "executed_at": _iso(now),
                "result": ActionResult.RTO_TRIGGERED.value,
                "attempts": record.get("attempts", 0) + 1,
            })
            _cancel_pending_actions(records)
            return Mutation(
                values={
                    "status": FailureStatus.ESCALATED.value,
                    "escalated_at": now,
                    "actions_taken": records,
                },
                cancel_pending_jobs=True,
                audit=AuditRecord(action="escalated", details=f"trigger_rto action {spec.sequence}"),
            )

        updated = await self.repository.mutate(event.id, mutator)
        if updated is None:
            return
        await self.coordinator.escalate(
            updated, TriggeredBy.WORKFLOW_ACTION.value, spec.config.get("reason", "ndr_unresolved")
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _plan_action(
        self,
        event: FailureEventORM,
        spec: WorkflowActionSpec,
        base: datetime,
        not_before: Optional[datetime] = None,
    ):
        due = base + spec.delay_after_previous
        if not_before is not None and due < not_before:
            due = not_before
        state = ActionState.SCHEDULED if spec.auto_execute else ActionState.AWAITING_APPROVAL
        record = ActionRecord(
            sequence=spec.sequence,
            action_type=spec.action_type,
            state=state,
            scheduled_at=due,
        ).model_dump(mode="json")
        if not spec.auto_execute:
            return record, None
        job = build_job(
            JobType.EXECUTE_ACTION,
            event.tenant_id,
            due,
            action_job_key(event.id, spec.sequence),
            failure_event_id=event.id,
            payload={"sequence": spec.sequence},
        )
        return record, job

    async def _note_failed_attempt(self, failure_event_id: str, sequence: int, attempts: int, error: str) -> None:
        def mutator(ev: FailureEventORM) -> Optional[Mutation]:
            if ev.status not in OPEN_STATUSES:
                return None
            records = copy_actions(ev)
            record = _find(records, sequence)
            if record is None or record["state"] != ActionState.SCHEDULED.value:
                return None
            record["attempts"] = attempts
            record["outcome_note"] = error
            return Mutation(values={"actions_taken": records})

        await self.repository.mutate(failure_event_id, mutator)

    async def _record_outcome(
        self,
        failure_event_id: str,
        sequence: int,
        outcome: ActionOutcome,
        expected_state: ActionState = ActionState.SCHEDULED,
        require_open_window: bool = False,
    ) -> Optional[FailureEventORM]:
        """Write an action outcome and take the resulting transition."""
        now = self.clock()
        planned: Dict[str, Any] = {}

        def mutator(ev: FailureEventORM) -> Optional[Mutation]:
            planned.clear()
            if ev.status not in OPEN_STATUSES:
                return None
            records = copy_actions(ev)
            record = _find(records, sequence)
            if record is None or record["state"] != expected_state.value or record.get("result"):
                return None
            if require_open_window:
                respond_by = _parse(record.get("respond_by"))
                if respond_by is not None and now >= respond_by:
                    return None

            workflow = WorkflowDefinition.from_snapshot(ev.workflow_snapshot)
            action_type = record["action_type"]
            if expected_state == ActionState.SCHEDULED:
                record["executed_at"] = _iso(now)
                record["attempts"] = record.get("attempts", 0) + 1
            if outcome.note:
                record["outcome_note"] = outcome.note
            values: Dict[str, Any] = {"actions_taken": records}
            if outcome.customer_contacted:
                values["customer_contacted"] = True

            if outcome.respond_by is not None:
                record["state"] = ActionState.AWAITING_RESPONSE.value
                record["respond_by"] = _iso(outcome.respond_by)
                return Mutation(
                    values=values,
                    jobs=[build_job(
                        JobType.ADDRESS_RESPONSE_WINDOW,
                        ev.tenant_id,
                        outcome.respond_by,
                        response_window_job_key(ev.id, sequence),
                        failure_event_id=ev.id,
                        payload={"sequence": sequence},
                    )],
                    audit=AuditRecord(action=f"{action_type}_awaiting_response", details=outcome.note),
                )

            record["state"] = ActionState.COMPLETED.value
            record["result"] = outcome.result.value

            if outcome.resolved:
                _cancel_pending_actions(records)
                values.update({
                    "status": FailureStatus.RESOLVED.value,
                    "resolved_at": now,
                    "resolution": f"{action_type}:{outcome.result.value}",
                    "resolved_by": "system",
                })
                return Mutation(
                    values=values,
                    cancel_pending_jobs=True,
                    audit=AuditRecord(action="resolved", details=f"action {sequence} {action_type} -> {outcome.result.value}"),
                )

            next_spec = next((a for a in workflow.actions if a.sequence > sequence), None)
            if next_spec is not None:
                next_record, job = self._plan_action(
                    ev, next_spec, _parse(record.get("executed_at")) or now, not_before=now
                )
                records.append(next_record)
                planned["jobs"] = [job] if job else []
                return Mutation(
                    values=values,
                    jobs=planned["jobs"],
                    audit=AuditRecord(
                        action=f"{action_type}_completed",
                        details=f"result={outcome.result.value} next={next_spec.action_type.value}",
                    ),
                )

            values.update({"status": FailureStatus.ESCALATED.value, "escalated_at": now})
            planned["escalated"] = True
            return Mutation(
                values=values,
                cancel_pending_jobs=True,
                audit=AuditRecord(action="escalated", details="workflow actions exhausted"),
            )

        updated = await self.repository.mutate(failure_event_id, mutator)
        if updated is None:
            logger.info(f"Outcome of action {sequence} discarded; failure event moved on")
            return None

        logger.info(
            f"Action {sequence} of {failure_event_id} recorded: "
            f"{outcome.result.value if outcome.result else 'awaiting_response'} (status={updated.status})"
        )
        await self._after_transition(updated, planned)
        return updated

    async def _after_transition(self, event: FailureEventORM, planned: Dict[str, Any]) -> None:
        for job in planned.get("jobs", []):
            if job.job_type == JobType.EXECUTE_ACTION and job.due_at <= self.clock():
                await self._run_inline(job)

        if planned.get("escalated") and event.workflow_snapshot:
            workflow = WorkflowDefinition.from_snapshot(event.workflow_snapshot)
            if workflow.rto_trigger.auto_trigger:
                await self.coordinator.escalate(event, TriggeredBy.WORKFLOW_ACTION.value, "ndr_unresolved")

    async def _run_inline(self, job: ScheduledJobORM) -> None:
        claimed = await self.job_queue.claim(job.id, self.worker_id)
        if claimed is None:
            return
        await self.job_queue.run_claimed(claimed, self.handle_job, self.max_retries + 1, self.backoff_seconds)
