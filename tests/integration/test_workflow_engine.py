"""
Integration tests for the workflow engine: action sequencing, delays through
the persisted job queue, retries, approvals, address links and the RTO
hand-off.
"""
from datetime import datetime, timedelta, timezone

import pytest

from ndr_backend.app.core.exceptions import ChannelPermanentError, ChannelTransientError, InvalidTransitionError
from ndr_backend.app.schemas.ndr import ActionResult, ActionState, DetectionOutcome, FailureStatus
from ndr_backend.app.schemas.workflows import WorkflowDefinition
from ndr_backend.app.services.channels import CallResult, ReattemptResult
from ndr_backend.app.services.workflow_engine import action_job_key, escalation_job_key
from ndr_backend.app.workers.job_queue import JobStatus, JobType

TENANT = "tenant-a"
T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

REFUSED = "Customer refused delivery"
BAD_ADDRESS = "Incomplete address, house not found"
NEW_ADDRESS = {"line1": "14 Residency Road", "city": "Bengaluru", "pincode": "560025"}


async def _open(services, make_update, remarks=None):
    update = make_update(remarks=remarks) if remarks else make_update()
    result = await services.detection.process(update, TENANT)
    assert result.outcome == DetectionOutcome.CREATED
    return await services.repository.get(result.failure_event_id)


def _results(event):
    return [r.get("result") for r in event.actions_taken]


def _link_token(services) -> str:
    link = services.messaging.script.calls[-1]["params"]["link"]
    return link.split("?token=", 1)[1]


@pytest.mark.asyncio
async def test_customer_unavailable_runs_through_to_rto(services, worker, make_update, clock):
    event = await _open(services, make_update)

    assert event.status == FailureStatus.IN_RESOLUTION.value
    first, second = event.actions_taken
    assert first["state"] == ActionState.COMPLETED.value
    assert first["result"] == ActionResult.DELIVERED.value
    assert second["state"] == ActionState.SCHEDULED.value
    assert datetime.fromisoformat(second["scheduled_at"]) == T0 + timedelta(minutes=30)
    assert event.customer_contacted is True
    assert services.voice.script.calls == []

    clock.advance(minutes=29)
    assert await worker.run_once("worker-1") == 0

    clock.advance(minutes=1)
    assert await worker.run_once("worker-1") == 1

    event = await services.repository.get(event.id)
    assert event.status == FailureStatus.RTO_TRIGGERED.value
    assert event.open_shipment_key is None
    assert _results(event) == ["delivered", "not_connected", "rto_triggered"]

    return_event = await services.coordinator.find_for_failure_event(event.id)
    assert return_event.triggered_by == "workflow_action"
    assert return_event.booking_status == "booked"
    assert return_event.reverse_shipment_ref.startswith("RTO-")

    escalation = await services.job_queue.get_by_key(escalation_job_key(event.id))
    assert escalation.status == JobStatus.CANCELLED


@pytest.mark.asyncio
async def test_confirmed_call_resolves_and_cancels_remaining_actions(services, make_update):
    services.voice.script.enqueue(CallResult(connected=True, customer_response="Confirmed"))

    event = await _open(services, make_update, REFUSED)

    assert event.status == FailureStatus.RESOLVED.value
    assert event.resolution == "contact_customer:resolved"
    assert event.resolved_by == "system"
    assert _results(event) == ["resolved"]
    assert await services.job_queue.get_by_key(action_job_key(event.id, 2)) is None
    escalation = await services.job_queue.get_by_key(escalation_job_key(event.id))
    assert escalation.status == JobStatus.CANCELLED
    assert await services.coordinator.find_for_failure_event(event.id) is None


@pytest.mark.asyncio
async def test_next_action_waits_for_its_delay(services, worker, make_update, clock):
    event = await _open(services, make_update, REFUSED)

    assert _results(event) == ["not_connected", None]
    job = await services.job_queue.get_by_key(action_job_key(event.id, 2))
    assert job.due_at == T0 + timedelta(hours=1)

    clock.advance(minutes=59)
    await worker.run_once("worker-1")
    assert (await services.repository.get(event.id)).status == FailureStatus.IN_RESOLUTION.value

    clock.advance(minutes=1)
    await worker.run_once("worker-1")
    assert (await services.repository.get(event.id)).status == FailureStatus.RTO_TRIGGERED.value


@pytest.mark.asyncio
async def test_job_for_unplanned_action_is_a_no_op(services, worker, make_update, clock):
    event = await _open(services, make_update)
    await services.job_queue.enqueue(
        JobType.EXECUTE_ACTION,
        TENANT,
        clock(),
        "out-of-order-probe",
        failure_event_id=event.id,
        payload={"sequence": 3},
    )

    await worker.run_once("worker-1")

    event = await services.repository.get(event.id)
    assert event.status == FailureStatus.IN_RESOLUTION.value
    assert len(event.actions_taken) == 2
    assert await services.coordinator.find_for_failure_event(event.id) is None


@pytest.mark.asyncio
async def test_action_requiring_approval_waits_for_supervisor(services, make_update):
    await services.workflows.save(WorkflowDefinition(
        name="refused_supervised",
        category="refused",
        tenant_id=TENANT,
        actions=[
            {"sequence": 1, "action_type": "contact_customer", "auto_execute": False},
            {"sequence": 2, "action_type": "trigger_rto", "delay_after_previous": "PT1H"},
        ],
    ))

    event = await _open(services, make_update, REFUSED)

    assert event.actions_taken[0]["state"] == ActionState.AWAITING_APPROVAL.value
    assert services.voice.script.calls == []
    assert await services.job_queue.get_by_key(action_job_key(event.id, 1)) is None

    services.voice.script.enqueue(CallResult(connected=True, customer_response="will_accept"))
    event = await services.engine.approve_action(event.id, 1, "supervisor-1")

    assert event.status == FailureStatus.RESOLVED.value
    assert len(services.voice.script.calls) == 1
    audit = await services.repository.list_audit(event.id)
    approved = [a for a in audit if a.action == "action_approved"]
    assert approved[0].actor == "supervisor-1"

    with pytest.raises(InvalidTransitionError):
        await services.engine.approve_action(event.id, 1, "supervisor-1")


@pytest.mark.asyncio
async def test_approving_an_automatic_action_is_rejected(services, make_update):
    event = await _open(services, make_update, REFUSED)

    with pytest.raises(InvalidTransitionError):
        await services.engine.approve_action(event.id, 2, "supervisor-1")


@pytest.mark.asyncio
async def test_transient_channel_errors_retry_then_fail_permanently(services, worker, make_update, clock):
    busy = ChannelTransientError("IVR trunk busy")
    services.voice.script.enqueue(busy, busy, busy, busy)

    event = await _open(services, make_update, REFUSED)
    first = event.actions_taken[0]
    assert first["state"] == ActionState.SCHEDULED.value
    assert first["attempts"] == 1
    job = await services.job_queue.get_by_key(action_job_key(event.id, 1))
    assert job.due_at == T0 + timedelta(seconds=60)

    for _ in range(3):
        clock.advance(minutes=10)
        await worker.run_once("worker-1")

    event = await services.repository.get(event.id)
    first = event.actions_taken[0]
    assert first["result"] == ActionResult.FAILED_PERMANENTLY.value
    assert first["attempts"] == 4
    assert len(services.voice.script.calls) == 4
    assert event.status == FailureStatus.IN_RESOLUTION.value
    assert event.actions_taken[1]["state"] == ActionState.SCHEDULED.value


@pytest.mark.asyncio
async def test_unexpected_transport_errors_follow_channel_retry_path(services, worker, make_update, clock):
    reset = ConnectionError("voice gateway connection reset")
    services.voice.script.enqueue(reset, reset, reset, reset)

    event = await _open(services, make_update, REFUSED)
    assert event.actions_taken[0]["attempts"] == 1

    for _ in range(3):
        clock.advance(minutes=10)
        await worker.run_once("worker-1")

    event = await services.repository.get(event.id)
    first = event.actions_taken[0]
    assert first["result"] == ActionResult.FAILED_PERMANENTLY.value
    assert "connection reset" in first["outcome_note"]
    assert len(services.voice.script.calls) == 4
    assert event.actions_taken[1]["state"] == ActionState.SCHEDULED.value


@pytest.mark.asyncio
async def test_permanent_channel_error_is_not_retried(services, make_update):
    services.voice.script.enqueue(ChannelPermanentError("number on do-not-call list"))

    event = await _open(services, make_update, REFUSED)

    assert _results(event) == ["failed", None]
    assert "do-not-call" in event.actions_taken[0]["outcome_note"]
    assert len(services.voice.script.calls) == 1


@pytest.mark.asyncio
async def test_address_update_within_window_resolves(services, make_update, clock):
    event = await _open(services, make_update, BAD_ADDRESS)

    record = event.actions_taken[0]
    assert record["state"] == ActionState.AWAITING_RESPONSE.value
    assert datetime.fromisoformat(record["respond_by"]) == T0 + timedelta(hours=24)
    token = _link_token(services)

    clock.advance(hours=3)
    assert await services.address_updates.submit(token, NEW_ADDRESS) is True

    event = await services.repository.get(event.id)
    assert event.status == FailureStatus.RESOLVED.value
    assert event.resolution == "request_address_update:address_updated"
    assert event.actions_taken[0]["result"] == ActionResult.ADDRESS_UPDATED.value
    assert services.shipments.shipments["AWB1001"].delivery_address == NEW_ADDRESS

    # Single use
    assert await services.address_updates.submit(token, NEW_ADDRESS) is False


@pytest.mark.asyncio
async def test_address_without_pincode_is_rejected(services, make_update):
    await _open(services, make_update, BAD_ADDRESS)
    token = _link_token(services)

    assert await services.address_updates.submit(token, {"line1": "Somewhere"}) is False
    assert services.shipments.address_updates == []


@pytest.mark.asyncio
async def test_response_window_expiry_moves_workflow_on(services, worker, make_update, clock):
    event = await _open(services, make_update, BAD_ADDRESS)
    token = _link_token(services)

    clock.advance(hours=24, minutes=1)
    await worker.run_once("worker-1")

    event = await services.repository.get(event.id)
    assert _results(event) == ["no_response", "not_connected", "rto_triggered"]
    assert event.status == FailureStatus.RTO_TRIGGERED.value

    # The link is still unexpired, but the workflow has moved on
    assert await services.address_updates.submit(token, NEW_ADDRESS) is True
    event = await services.repository.get(event.id)
    assert event.status == FailureStatus.RTO_TRIGGERED.value
    audit = await services.repository.list_audit(event.id)
    assert "address_update_received" in [a.action for a in audit]


@pytest.mark.asyncio
async def test_escalation_role_is_notified_once(services, worker, make_update, clock):
    await services.workflows.save(WorkflowDefinition(
        name="unavailable_slow",
        category="customer_unavailable",
        tenant_id=TENANT,
        actions=[
            {"sequence": 1, "action_type": "send_message"},
            {"sequence": 2, "action_type": "contact_customer", "delay_after_previous": "P3D"},
        ],
        escalation={"after_duration": "PT24H", "escalate_to_role": "tenant_supervisor"},
    ))
    event = await _open(services, make_update)

    clock.advance(hours=23)
    await worker.run_once("worker-1")
    assert services.notifier.notifications == []

    clock.advance(hours=1)
    await worker.run_once("worker-1")
    clock.advance(hours=1)
    await worker.run_once("worker-1")

    assert [n["role"] for n in services.notifier.notifications] == ["tenant_supervisor"]
    event = await services.repository.get(event.id)
    assert event.escalation_notified_at == clock.now - timedelta(hours=1)
    assert event.status == FailureStatus.IN_RESOLUTION.value


@pytest.mark.asyncio
async def test_max_duration_forces_rto(services, worker, make_update, clock):
    await services.workflows.save(WorkflowDefinition(
        name="other_bounded",
        category="other",
        tenant_id=TENANT,
        actions=[
            {"sequence": 1, "action_type": "send_message"},
            {"sequence": 2, "action_type": "contact_customer", "delay_after_previous": "P3D"},
        ],
        rto_trigger={"max_duration": "PT6H", "auto_trigger": False},
    ))
    event = await _open(services, make_update, "Shipment held at hub")

    clock.advance(hours=6)
    await worker.run_once("worker-1")

    event = await services.repository.get(event.id)
    assert event.status == FailureStatus.RTO_TRIGGERED.value
    return_event = await services.coordinator.find_for_failure_event(event.id)
    assert return_event.reason == "max_duration_exceeded"


@pytest.mark.asyncio
async def test_exhausted_workflow_without_auto_trigger_stays_escalated(services, make_update):
    event = await _open(services, make_update, "Shipment held at hub")

    assert _results(event) == ["not_connected", "reattempt_rejected"]
    assert event.status == FailureStatus.ESCALATED.value
    assert await services.coordinator.find_for_failure_event(event.id) is None


@pytest.mark.asyncio
async def test_accepted_reattempt_resolves(services, make_update):
    services.carrier.reattempts.enqueue(ReattemptResult(accepted=True, message="Slot booked"))

    event = await _open(services, make_update, "Shipment held at hub")

    assert event.status == FailureStatus.RESOLVED.value
    assert event.resolution == "request_reattempt:reattempt_accepted"


@pytest.mark.asyncio
async def test_repeat_failures_reaching_max_attempts_trigger_rto(services, make_update, clock):
    event = await _open(services, make_update, REFUSED)

    clock.advance(minutes=10)
    result = await services.detection.process(make_update(remarks="Customer refused again, does not want parcel"), TENANT)

    assert result.outcome == DetectionOutcome.APPENDED
    event = await services.repository.get(event.id)
    assert event.attempt_number == 2
    assert event.status == FailureStatus.RTO_TRIGGERED.value
    return_event = await services.coordinator.find_for_failure_event(event.id)
    assert return_event.reason == "max_attempts_reached"
    assert return_event.triggered_by == "workflow_action"


@pytest.mark.asyncio
async def test_repeat_failure_can_reset_deadline(services, make_update, clock):
    await services.workflows.save(WorkflowDefinition(
        name="unavailable_resetting",
        category="customer_unavailable",
        tenant_id=TENANT,
        actions=[{"sequence": 1, "action_type": "contact_customer", "delay_after_previous": "P1D"}],
        reattempt_resets_deadline=True,
    ))
    event = await _open(services, make_update)
    assert event.resolution_deadline == T0 + timedelta(hours=48)

    clock.advance(hours=5)
    await services.detection.process(make_update(remarks="Door locked, customer not at home"), TENANT)

    event = await services.repository.get(event.id)
    assert event.resolution_deadline == T0 + timedelta(hours=53)


@pytest.mark.asyncio
async def test_workflow_snapshot_is_not_affected_by_later_edits(services, worker, make_update, clock):
    event = await _open(services, make_update, REFUSED)

    await services.workflows.save(WorkflowDefinition(
        name="refused_no_rto",
        category="refused",
        tenant_id=TENANT,
        actions=[{"sequence": 1, "action_type": "send_message"}],
    ))
    clock.advance(hours=1)
    await worker.run_once("worker-1")

    event = await services.repository.get(event.id)
    assert event.workflow_snapshot["name"] == "refused_default"
    assert event.status == FailureStatus.RTO_TRIGGERED.value


@pytest.mark.asyncio
async def test_manual_resolution_of_closed_event_is_rejected(services, make_update):
    event = await _open(services, make_update)
    await services.engine.resolve_manually(event.id, "customer_collected", "ops-user", notes="Picked up at hub")

    with pytest.raises(InvalidTransitionError):
        await services.engine.resolve_manually(event.id, "customer_collected", "ops-user")
    with pytest.raises(InvalidTransitionError):
        await services.engine.trigger_rto_manually(event.id, "seller_request", "ops-user")


@pytest.mark.asyncio
async def test_manual_escalation_notifies_and_allows_rto(services, make_update):
    event = await _open(services, make_update)

    event = await services.engine.escalate_manually(event.id, "VIP customer", "ops-user")
    assert event.status == FailureStatus.ESCALATED.value
    assert services.notifier.notifications[-1]["role"] == "ndr_supervisor"
    assert all(r.get("result") is not None for r in event.actions_taken)

    return_event = await services.engine.trigger_rto_manually(event.id, "seller_request", "ops-user")
    assert return_event.triggered_by == "manual"

    again = await services.engine.trigger_rto_manually(event.id, "seller_request", "ops-user")
    assert again.id == return_event.id
