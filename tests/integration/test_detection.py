"""
Integration tests for NDR detection: failure filtering, duplicate
suppression, repeat failures and the one-open-record-per-shipment rule.
"""
import asyncio

import pytest
from sqlalchemy import func, select

from ndr_backend.app.models.failure_event_orm import FailureEventORM
from ndr_backend.app.schemas.ndr import DetectionOutcome, FailureCategory, FailureStatus

TENANT = "tenant-a"


async def _open_events(session_factory, shipment_id="AWB1001"):
    async with session_factory() as session:
        result = await session.execute(
            select(func.count()).select_from(FailureEventORM).where(
                FailureEventORM.shipment_id == shipment_id,
                FailureEventORM.open_shipment_key.is_not(None),
            )
        )
        return result.scalar_one()


@pytest.mark.asyncio
async def test_non_failure_status_is_ignored(services, make_update):
    result = await services.detection.process(make_update(status="out_for_delivery", remarks=""), TENANT)

    assert result.outcome == DetectionOutcome.NOT_FAILURE
    assert services.classifier.calls == 0


@pytest.mark.asyncio
async def test_status_matching_is_normalised(services, make_update):
    result = await services.detection.process(make_update(status="Delivery-Failed"), TENANT)
    assert result.outcome == DetectionOutcome.CREATED


@pytest.mark.asyncio
async def test_failure_opens_classified_event(services, make_update):
    result = await services.detection.process(make_update(), TENANT)

    assert result.outcome == DetectionOutcome.CREATED
    event = await services.repository.get(result.failure_event_id)
    assert event.classified_category == FailureCategory.CUSTOMER_UNAVAILABLE.value
    assert event.status == FailureStatus.IN_RESOLUTION.value
    assert event.attempt_number == 1
    assert (event.resolution_deadline - event.detected_at).total_seconds() == 48 * 3600
    assert event.workflow_snapshot["name"] == "customer_unavailable_default"


@pytest.mark.asyncio
async def test_tenant_failure_statuses_override_defaults(services, make_update):
    await services.tenant_config.upsert(TENANT, failure_statuses=["held_at_hub"])

    ignored = await services.detection.process(make_update(status="undelivered"), TENANT)
    opened = await services.detection.process(make_update(status="HELD AT HUB"), TENANT)

    assert ignored.outcome == DetectionOutcome.NOT_FAILURE
    assert opened.outcome == DetectionOutcome.CREATED


@pytest.mark.asyncio
async def test_duplicate_event_is_not_reclassified(services, make_update):
    update = make_update()
    first = await services.detection.process(update, TENANT)
    second = await services.detection.process(update, TENANT)

    assert first.outcome == DetectionOutcome.CREATED
    assert second.outcome == DetectionOutcome.DUPLICATE
    assert second.failure_event_id == first.failure_event_id
    assert services.classifier.calls == 1


@pytest.mark.asyncio
async def test_same_signature_within_window_is_duplicate(services, make_update, clock):
    first = await services.detection.process(make_update(), TENANT)
    clock.advance(hours=3)

    again = await services.detection.process(make_update(), TENANT)

    assert again.outcome == DetectionOutcome.DUPLICATE
    event = await services.repository.get(first.failure_event_id)
    assert event.attempt_number == 1


@pytest.mark.asyncio
async def test_new_failure_appends_to_open_event(services, make_update, clock):
    first = await services.detection.process(make_update(), TENANT)
    clock.advance(hours=1)

    second = await services.detection.process(make_update(remarks="Door locked, customer not at home"), TENANT)

    assert second.outcome == DetectionOutcome.APPENDED
    assert second.failure_event_id == first.failure_event_id
    event = await services.repository.get(first.failure_event_id)
    assert event.attempt_number == 2
    assert len(event.carrier_events) == 2
    assert services.classifier.calls == 1


@pytest.mark.asyncio
async def test_exact_replay_of_closed_event_is_duplicate(services, make_update):
    update = make_update()
    first = await services.detection.process(update, TENANT)
    await services.engine.resolve_manually(first.failure_event_id, "delivered_on_reattempt", "ops-user")

    replay = await services.detection.process(update, TENANT)

    assert replay.outcome == DetectionOutcome.DUPLICATE
    assert await _open_events(services.session_factory) == 0


@pytest.mark.asyncio
async def test_later_failure_after_resolution_opens_next_attempt(services, make_update, clock):
    first = await services.detection.process(make_update(), TENANT)
    await services.engine.resolve_manually(first.failure_event_id, "reattempt_scheduled", "ops-user")
    clock.advance(days=1)

    second = await services.detection.process(make_update(), TENANT)

    assert second.outcome == DetectionOutcome.CREATED
    assert second.failure_event_id != first.failure_event_id
    event = await services.repository.get(second.failure_event_id)
    assert event.attempt_number == 2


@pytest.mark.asyncio
async def test_concurrent_detection_keeps_one_open_event(services, make_update):
    update = make_update()

    results = await asyncio.gather(*[services.detection.process(update, TENANT) for _ in range(4)])

    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes.count(DetectionOutcome.CREATED.value) == 1
    assert await _open_events(services.session_factory) == 1


@pytest.mark.asyncio
async def test_tenants_are_isolated(services, make_update):
    a = await services.detection.process(make_update(), "tenant-a")
    b = await services.detection.process(make_update(), "tenant-b")

    assert a.outcome == DetectionOutcome.CREATED
    assert b.outcome == DetectionOutcome.CREATED
    assert a.failure_event_id != b.failure_event_id


@pytest.mark.asyncio
async def test_detection_errors_are_reported_not_raised(services, make_update):
    async def broken(*args, **kwargs):
        raise RuntimeError("database unavailable")

    services.detection.tenant_config.failure_statuses = broken

    result = await services.detection.process(make_update(), TENANT)

    assert result.outcome == DetectionOutcome.ERROR
    assert "database unavailable" in result.detail
