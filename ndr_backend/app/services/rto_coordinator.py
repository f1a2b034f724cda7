"""
RTO Coordinator.

Turns an escalated FailureEvent into exactly one ReturnEvent and books the
reverse pickup. Idempotency rests on the unique
`originating_failure_event_id`: concurrent escalations for the same failure
converge on one row, and only the inserting caller talks to the carrier.

A failed booking is an explicit state (`pending_booking` with a retry job, or
`booking_failed`); no reverse shipment reference is ever invented.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ndr_backend.app.core.config import get_settings
from ndr_backend.app.core.database import utcnow
from ndr_backend.app.core.exceptions import (
    ChannelPermanentError,
    ChannelTransientError,
    InvalidReturnStatusError,
    ReturnEventNotFoundError,
)
from ndr_backend.app.core.logging import get_logger
from ndr_backend.app.core.resilience import compute_next_retry_at
from ndr_backend.app.models.failure_event_orm import FailureEventORM
from ndr_backend.app.models.return_event_orm import ReturnEventORM
from ndr_backend.app.schemas.ndr import FailureStatus, NON_TERMINAL_STATUSES
from ndr_backend.app.schemas.rto import (
    BookingStatus,
    QC_ALLOWED_STATUSES,
    RETURN_STATUS_ORDER,
    ReturnStatus,
    rto_reason_text,
)
from ndr_backend.app.services.action_executors import call_channel
from ndr_backend.app.services.channels import CarrierGateway, RateCardClient, ShipmentDirectory
from ndr_backend.app.services.failure_repository import AuditRecord, FailureEventRepository, Mutation
from ndr_backend.app.workers.job_queue import JobQueue, JobType

logger = get_logger(__name__)


def booking_retry_key(return_event_id: str) -> str:
    return f"rto-booking:{return_event_id}"


class RTOCoordinator:
    def __init__(
        self,
        session_factory,
        repository: FailureEventRepository,
        job_queue: JobQueue,
        carrier: CarrierGateway,
        rate_card: RateCardClient,
        shipments: ShipmentDirectory,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.repository = repository
        self.job_queue = job_queue
        self.carrier = carrier
        self.rate_card = rate_card
        self.shipments = shipments
        self.clock = clock
        self.max_booking_attempts = settings.rto_booking_max_attempts
        self.booking_backoff_seconds = settings.rto_booking_backoff_seconds
        self.expected_return_days = settings.rto_expected_return_days
        self.channel_timeout = settings.channel_timeout_seconds

    async def get(self, return_event_id: str) -> ReturnEventORM:
        async with self.session_factory() as session:
            return_event = await session.get(ReturnEventORM, return_event_id)
        if return_event is None:
            raise ReturnEventNotFoundError(return_event_id)
        return return_event

    async def find_for_failure_event(self, failure_event_id: str) -> Optional[ReturnEventORM]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ReturnEventORM).where(ReturnEventORM.originating_failure_event_id == failure_event_id)
            )
            return result.scalar_one_or_none()

    async def escalate(
        self,
        failure_event: FailureEventORM,
        triggered_by: str,
        reason: str = "ndr_unresolved",
    ) -> ReturnEventORM:
        """Create (or return the existing) ReturnEvent for a failure and book its pickup."""
        return_event, _ = await self.open_return(failure_event, triggered_by, reason)
        return return_event

    async def open_return(
        self,
        failure_event: FailureEventORM,
        triggered_by: str,
        reason: str = "ndr_unresolved",
    ) -> Tuple[ReturnEventORM, bool]:
        """Like escalate, also telling whether this call created the ReturnEvent."""
        existing = await self.find_for_failure_event(failure_event.id)
        if existing is not None:
            await self._mark_rto_triggered(failure_event.id, existing)
            return existing, False

        return_event = ReturnEventORM(
            tenant_id=failure_event.tenant_id,
            shipment_id=failure_event.shipment_id,
            originating_failure_event_id=failure_event.id,
            triggered_by=triggered_by,
            reason=reason,
            booking_status=BookingStatus.PENDING_BOOKING.value,
            booking_attempts=0,
            return_status=ReturnStatus.INITIATED.value,
            created_at=self.clock(),
        )
        async with self.session_factory() as session:
            session.add(return_event)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"RTO for failure event {failure_event.id} already created by a concurrent caller")
                existing = await self.find_for_failure_event(failure_event.id)
                await self._mark_rto_triggered(failure_event.id, existing)
                return existing, False

        logger.info(
            f"RTO initiated for shipment {failure_event.shipment_id}: {rto_reason_text(reason)}",
            extra={"extra_data": {"return_event_id": return_event.id, "triggered_by": triggered_by}},
        )
        next_attempt_at = await self._attempt_booking(return_event.id)
        # Retry jobs hang off the return, so closing the failure event leaves them alone
        if next_attempt_at is not None:
            await self.job_queue.enqueue(
                JobType.RTO_BOOKING_RETRY,
                tenant_id=failure_event.tenant_id,
                due_at=next_attempt_at,
                dedupe_key=booking_retry_key(return_event.id),
                return_event_id=return_event.id,
            )

        return_event = await self.get(return_event.id)
        await self._mark_rto_triggered(failure_event.id, return_event)
        return return_event, True

    async def retry_booking(self, return_event_id: str) -> Optional[datetime]:
        """
        Job handler for `rto_booking_retry`. Returns the next due time while
        the booking is still pending, None once it is settled.
        """
        return_event = await self.get(return_event_id)
        if return_event.booking_status != BookingStatus.PENDING_BOOKING.value:
            return None
        return await self._attempt_booking(return_event_id)

    async def rebook(self, return_event_id: str) -> ReturnEventORM:
        """Operator-initiated booking attempt for a pending or failed booking."""
        return_event = await self.get(return_event_id)
        if return_event.booking_status == BookingStatus.BOOKED.value:
            raise InvalidReturnStatusError(f"Return event {return_event_id} is already booked")
        async with self.session_factory() as session:
            await session.execute(
                update(ReturnEventORM)
                .where(ReturnEventORM.id == return_event_id)
                .values(booking_status=BookingStatus.PENDING_BOOKING.value, booking_attempts=0)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        next_attempt_at = await self._attempt_booking(return_event_id)
        if next_attempt_at is not None:
            await self.job_queue.enqueue(
                JobType.RTO_BOOKING_RETRY,
                tenant_id=return_event.tenant_id,
                due_at=next_attempt_at,
                dedupe_key=f"{booking_retry_key(return_event_id)}:manual:{int(self.clock().timestamp())}",
                return_event_id=return_event_id,
            )
        return await self.get(return_event_id)

    async def update_return_status(
        self,
        return_event_id: str,
        status: ReturnStatus,
        occurred_at: Optional[datetime] = None,
    ) -> ReturnEventORM:
        if status == ReturnStatus.QC_COMPLETED:
            raise InvalidReturnStatusError("qc_completed is set by recording a QC result")

        return_event = await self.get(return_event_id)
        current = ReturnStatus(return_event.return_status)
        if RETURN_STATUS_ORDER.index(status) <= RETURN_STATUS_ORDER.index(current):
            raise InvalidReturnStatusError(
                f"Return status cannot move from {current.value} to {status.value}"
            )

        values = {"return_status": status.value, "updated_at": self.clock()}
        if status == ReturnStatus.DELIVERED_TO_WAREHOUSE:
            values["actual_return_date"] = occurred_at or self.clock()

        async with self.session_factory() as session:
            result = await session.execute(
                update(ReturnEventORM)
                .where(ReturnEventORM.id == return_event_id, ReturnEventORM.return_status == current.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            raise InvalidReturnStatusError(f"Return event {return_event_id} changed concurrently")

        logger.info(f"Return {return_event_id} status {current.value} -> {status.value}")
        return await self.get(return_event_id)

    async def record_qc(
        self,
        return_event_id: str,
        passed: bool,
        remarks: Optional[str] = None,
        inspected_by: Optional[str] = None,
    ) -> ReturnEventORM:
        return_event = await self.get(return_event_id)
        if return_event.return_status not in QC_ALLOWED_STATUSES:
            raise InvalidReturnStatusError("RTO must be delivered to warehouse before QC")

        now = self.clock()
        qc_outcome = {
            "passed": passed,
            "remarks": remarks,
            "inspected_by": inspected_by,
            "inspected_at": now.isoformat(),
        }
        async with self.session_factory() as session:
            result = await session.execute(
                update(ReturnEventORM)
                .where(
                    ReturnEventORM.id == return_event_id,
                    ReturnEventORM.return_status.in_(QC_ALLOWED_STATUSES),
                )
                .values(
                    qc_outcome=qc_outcome,
                    return_status=ReturnStatus.QC_COMPLETED.value,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            raise InvalidReturnStatusError(f"QC already recorded for return {return_event_id}")

        logger.info(f"QC recorded for return {return_event_id}: passed={passed}")
        return await self.get(return_event_id)

    async def _attempt_booking(self, return_event_id: str) -> Optional[datetime]:
        """
        One booking attempt. Returns when to try again, or None when the
        booking ended as booked or booking_failed.
        """
        return_event = await self.get(return_event_id)
        attempt = return_event.booking_attempts + 1
        now = self.clock()
        values = {"booking_attempts": attempt, "updated_at": now}
        next_attempt_at = None

        try:
            shipment = await call_channel(
                self.shipments.get_shipment(return_event.shipment_id), self.channel_timeout, "get_shipment"
            )
            if shipment is None or not shipment.origin_address:
                raise ChannelPermanentError(f"No origin address for shipment {return_event.shipment_id}")
            charges = await call_channel(
                self.rate_card.quote_rto_charges(return_event.shipment_id),
                self.channel_timeout,
                "quote_rto_charges",
            )
            booking = await call_channel(
                self.carrier.schedule_reverse_pickup(return_event.shipment_id, shipment.origin_address),
                self.channel_timeout,
                "schedule_reverse_pickup",
            )
        except ChannelTransientError as e:
            values["booking_error"] = str(e)
            if attempt >= self.max_booking_attempts:
                values["booking_status"] = BookingStatus.BOOKING_FAILED.value
                logger.error(f"Reverse pickup for return {return_event_id} failed after {attempt} attempts: {e}")
            else:
                next_attempt_at = compute_next_retry_at(now, attempt, self.booking_backoff_seconds)
                logger.warning(
                    f"Reverse pickup booking attempt {attempt} for return {return_event_id} failed, "
                    f"retrying at {next_attempt_at.isoformat()}: {e}"
                )
        except ChannelPermanentError as e:
            values["booking_status"] = BookingStatus.BOOKING_FAILED.value
            values["booking_error"] = str(e)
            logger.error(f"Reverse pickup for return {return_event_id} rejected: {e}")
        else:
            values.update({
                "booking_status": BookingStatus.BOOKED.value,
                "booking_error": None,
                "reverse_shipment_ref": booking.reverse_shipment_ref,
                "charges": booking.charges if booking.charges is not None else Decimal(str(charges)),
                "expected_return_date": booking.eta or now + timedelta(days=self.expected_return_days),
            })
            logger.info(f"Reverse pickup booked for return {return_event_id}: {booking.reverse_shipment_ref}")

        async with self.session_factory() as session:
            await session.execute(
                update(ReturnEventORM)
                .where(
                    ReturnEventORM.id == return_event_id,
                    ReturnEventORM.booking_status == BookingStatus.PENDING_BOOKING.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return next_attempt_at

    async def _mark_rto_triggered(self, failure_event_id: str, return_event: ReturnEventORM) -> None:
        now = self.clock()

        def mutator(event: FailureEventORM) -> Optional[Mutation]:
            if event.status not in NON_TERMINAL_STATUSES:
                return None
            return Mutation(
                values={
                    "status": FailureStatus.RTO_TRIGGERED.value,
                    "rto_triggered_at": now,
                    "escalated_at": event.escalated_at or now,
                },
                cancel_pending_jobs=True,
                audit=AuditRecord(
                    action="rto_triggered",
                    actor=return_event.triggered_by,
                    details=f"return_event={return_event.id} booking={return_event.booking_status}",
                ),
            )

        await self.repository.mutate(failure_event_id, mutator)
