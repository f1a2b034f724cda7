"""
Integration tests for the RTO coordinator: idempotent return creation,
reverse pickup booking with retries, and the return lifecycle.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ndr_backend.app.core.exceptions import ChannelPermanentError, ChannelTransientError, InvalidReturnStatusError
from ndr_backend.app.schemas.ndr import FailureStatus
from ndr_backend.app.schemas.rto import BookingStatus, ReturnStatus
from ndr_backend.app.services.channels import ShipmentInfo
from ndr_backend.app.services.rto_coordinator import booking_retry_key
from ndr_backend.app.workers.job_queue import JobStatus

TENANT = "tenant-a"
T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


async def _open(services, make_update, shipment_id="AWB1001"):
    result = await services.detection.process(make_update(shipment_id=shipment_id), TENANT)
    return await services.repository.get(result.failure_event_id)


@pytest.mark.asyncio
async def test_concurrent_escalations_create_one_return(services, make_update):
    event = await _open(services, make_update)

    returns = await asyncio.gather(*[
        services.coordinator.escalate(event, "manual", "seller_request") for _ in range(3)
    ])

    assert len({r.id for r in returns}) == 1
    assert len(services.carrier.pickups.calls) == 1
    event = await services.repository.get(event.id)
    assert event.status == FailureStatus.RTO_TRIGGERED.value


@pytest.mark.asyncio
async def test_successful_booking_records_charges_and_eta(services, make_update):
    event = await _open(services, make_update)

    return_event = await services.coordinator.escalate(event, "manual", "seller_request")

    assert return_event.booking_status == BookingStatus.BOOKED.value
    assert return_event.booking_attempts == 1
    assert return_event.charges == Decimal("85.00")
    assert return_event.expected_return_date is not None
    assert return_event.return_status == ReturnStatus.INITIATED.value
    assert services.carrier.pickups.calls[0]["address"]["pincode"] == "122001"


@pytest.mark.asyncio
async def test_transient_booking_failure_is_retried_by_worker(services, worker, make_update, clock):
    services.carrier.pickups.enqueue(ChannelTransientError("carrier API returned 503"))
    event = await _open(services, make_update)

    return_event = await services.coordinator.escalate(event, "manual", "seller_request")

    assert return_event.booking_status == BookingStatus.PENDING_BOOKING.value
    assert return_event.reverse_shipment_ref is None
    assert "503" in return_event.booking_error
    job = await services.job_queue.get_by_key(booking_retry_key(return_event.id))
    assert job.due_at == T0 + timedelta(seconds=300)

    clock.advance(minutes=5)
    await worker.run_once("worker-1")

    return_event = await services.coordinator.get(return_event.id)
    assert return_event.booking_status == BookingStatus.BOOKED.value
    assert return_event.booking_attempts == 2
    assert return_event.reverse_shipment_ref is not None
    assert (await services.job_queue.get_by_key(booking_retry_key(return_event.id))).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_rate_card_connection_error_schedules_booking_retry(services, worker, make_update, clock):
    services.rate_card.quotes.enqueue(ConnectionError("rate card socket reset"))
    event = await _open(services, make_update)

    return_event = await services.coordinator.escalate(event, "manual", "seller_request")

    assert return_event.booking_status == BookingStatus.PENDING_BOOKING.value
    assert "socket reset" in return_event.booking_error
    job = await services.job_queue.get_by_key(booking_retry_key(return_event.id))
    assert job.status == JobStatus.PENDING
    assert job.due_at == T0 + timedelta(seconds=300)

    clock.advance(minutes=5)
    await worker.run_once("worker-1")

    return_event = await services.coordinator.get(return_event.id)
    assert return_event.booking_status == BookingStatus.BOOKED.value
    assert return_event.booking_attempts == 2


@pytest.mark.asyncio
async def test_booking_gives_up_after_max_attempts(services, worker, make_update, clock):
    outage = ChannelTransientError("carrier API timeout")
    services.carrier.pickups.enqueue(*[outage] * 5)
    event = await _open(services, make_update)

    return_event = await services.coordinator.escalate(event, "manual", "seller_request")
    for _ in range(4):
        clock.advance(hours=2)
        await worker.run_once("worker-1")

    return_event = await services.coordinator.get(return_event.id)
    assert return_event.booking_status == BookingStatus.BOOKING_FAILED.value
    assert return_event.booking_attempts == 5
    assert return_event.reverse_shipment_ref is None


@pytest.mark.asyncio
async def test_permanent_booking_failure_is_not_retried(services, make_update):
    services.carrier.pickups.enqueue(ChannelPermanentError("origin pincode not serviceable"))
    event = await _open(services, make_update)

    return_event = await services.coordinator.escalate(event, "manual", "seller_request")

    assert return_event.booking_status == BookingStatus.BOOKING_FAILED.value
    assert return_event.reverse_shipment_ref is None
    assert await services.job_queue.get_by_key(booking_retry_key(return_event.id)) is None


@pytest.mark.asyncio
async def test_missing_origin_address_fails_booking(services, make_update):
    services.shipments.add(ShipmentInfo(shipment_id="AWB3003", customer_phone="+919811111111"))
    event = await _open(services, make_update, shipment_id="AWB3003")

    return_event = await services.coordinator.escalate(event, "manual", "seller_request")

    assert return_event.booking_status == BookingStatus.BOOKING_FAILED.value
    assert "origin address" in return_event.booking_error
    assert services.carrier.pickups.calls == []


@pytest.mark.asyncio
async def test_failed_booking_can_be_rebooked(services, make_update):
    services.carrier.pickups.enqueue(ChannelPermanentError("pickup slots closed"))
    event = await _open(services, make_update)
    return_event = await services.coordinator.escalate(event, "manual", "seller_request")

    return_event = await services.coordinator.rebook(return_event.id)

    assert return_event.booking_status == BookingStatus.BOOKED.value
    with pytest.raises(InvalidReturnStatusError):
        await services.coordinator.rebook(return_event.id)


@pytest.mark.asyncio
async def test_return_status_only_moves_forward(services, make_update):
    event = await _open(services, make_update)
    return_event = await services.coordinator.escalate(event, "manual", "seller_request")

    updated = await services.coordinator.update_return_status(return_event.id, ReturnStatus.IN_TRANSIT)
    assert updated.return_status == ReturnStatus.IN_TRANSIT.value

    with pytest.raises(InvalidReturnStatusError):
        await services.coordinator.update_return_status(return_event.id, ReturnStatus.INITIATED)
    with pytest.raises(InvalidReturnStatusError):
        await services.coordinator.update_return_status(return_event.id, ReturnStatus.IN_TRANSIT)
    with pytest.raises(InvalidReturnStatusError):
        await services.coordinator.update_return_status(return_event.id, ReturnStatus.QC_COMPLETED)


@pytest.mark.asyncio
async def test_qc_requires_delivery_to_warehouse(services, make_update, clock):
    event = await _open(services, make_update)
    return_event = await services.coordinator.escalate(event, "manual", "seller_request")

    with pytest.raises(InvalidReturnStatusError):
        await services.coordinator.record_qc(return_event.id, passed=True)

    clock.advance(days=4)
    delivered = await services.coordinator.update_return_status(
        return_event.id, ReturnStatus.DELIVERED_TO_WAREHOUSE
    )
    assert delivered.actual_return_date == clock()

    checked = await services.coordinator.record_qc(
        return_event.id, passed=False, remarks="Outer box damaged", inspected_by="wh-gurugram"
    )
    assert checked.return_status == ReturnStatus.QC_COMPLETED.value
    assert checked.qc_outcome["passed"] is False
    assert checked.qc_outcome["inspected_by"] == "wh-gurugram"

    with pytest.raises(InvalidReturnStatusError):
        await services.coordinator.record_qc(return_event.id, passed=True)


@pytest.mark.asyncio
async def test_closing_failure_event_keeps_booking_retry(services, worker, make_update, clock):
    services.carrier.pickups.enqueue(ChannelTransientError("carrier API returned 502"))
    event = await _open(services, make_update)
    return_event = await services.coordinator.escalate(event, "manual", "seller_request")

    # rto_triggered cancels the failure event's jobs, not the return's
    job = await services.job_queue.get_by_key(booking_retry_key(return_event.id))
    assert job.status == JobStatus.PENDING

    clock.advance(minutes=5)
    await worker.run_once("worker-1")
    assert (await services.coordinator.get(return_event.id)).booking_status == BookingStatus.BOOKED.value
