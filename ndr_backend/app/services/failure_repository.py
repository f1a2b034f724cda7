"""
Failure Event Repository - version-checked persistence for FailureEvents.

Every lifecycle mutation is a compare-and-swap:

    UPDATE ndr_failure_events SET ..., version = version + 1
    WHERE id = :id AND version = :expected

Jobs to schedule, pending jobs to cancel and audit entries are written in the
same transaction as the swap, so a losing writer leaves no trace.
"""
import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, List, Dict, Any

from sqlalchemy import select, update, desc

from ndr_backend.app.core.database import utcnow
from ndr_backend.app.core.exceptions import ConcurrencyConflictError, FailureEventNotFoundError
from ndr_backend.app.core.logging import correlation_id_ctx, get_logger
from ndr_backend.app.models.audit_orm import NDRAuditEntryORM
from ndr_backend.app.models.failure_event_orm import FailureEventORM
from ndr_backend.app.models.scheduled_job_orm import ScheduledJobORM
from ndr_backend.app.schemas.ndr import NON_TERMINAL_STATUSES, TERMINAL_STATUSES

logger = get_logger(__name__)

MAX_CAS_ATTEMPTS = 5


def open_shipment_key(tenant_id: str, shipment_id: str) -> str:
    return f"{tenant_id}:{shipment_id}"


@dataclass
class AuditRecord:
    action: str
    actor: str = "system"
    action_type: str = "automated"  # human | automated
    details: Optional[str] = None


@dataclass
class Mutation:
    """Changes produced by a mutator for one compare-and-swap attempt."""
    values: Dict[str, Any]
    jobs: List[ScheduledJobORM] = field(default_factory=list)
    cancel_pending_jobs: bool = False
    audit: Optional[AuditRecord] = None


class FailureEventRepository:
    """Repository for FailureEvent database operations."""

    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def get(self, failure_event_id: str) -> FailureEventORM:
        async with self.session_factory() as session:
            event = await session.get(FailureEventORM, failure_event_id)
        if event is None:
            raise FailureEventNotFoundError(failure_event_id)
        return event

    async def find_open(self, tenant_id: str, shipment_id: str) -> Optional[FailureEventORM]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FailureEventORM).where(
                    FailureEventORM.open_shipment_key == open_shipment_key(tenant_id, shipment_id)
                )
            )
            return result.scalar_one_or_none()

    async def find_latest(self, tenant_id: str, shipment_id: str) -> Optional[FailureEventORM]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FailureEventORM)
                .where(
                    FailureEventORM.tenant_id == tenant_id,
                    FailureEventORM.shipment_id == shipment_id,
                )
                .order_by(desc(FailureEventORM.attempt_number), desc(FailureEventORM.detected_at))
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def create(self, event: FailureEventORM, audit: Optional[AuditRecord] = None) -> FailureEventORM:
        """Insert a new open FailureEvent. IntegrityError propagates when one is already open."""
        async with self.session_factory() as session:
            session.add(event)
            if audit:
                session.add(self._audit_row(event, audit))
            await session.commit()
        return event

    async def list_events(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        shipment_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[FailureEventORM]:
        query = select(FailureEventORM).where(FailureEventORM.tenant_id == tenant_id)
        if status:
            query = query.where(FailureEventORM.status == status)
        if shipment_id:
            query = query.where(FailureEventORM.shipment_id == shipment_id)
        query = query.order_by(desc(FailureEventORM.detected_at)).offset(offset).limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_past_deadline(self, now: datetime, limit: int) -> List[FailureEventORM]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FailureEventORM)
                .where(
                    FailureEventORM.status.in_(NON_TERMINAL_STATUSES),
                    FailureEventORM.resolution_deadline <= now,
                )
                .order_by(FailureEventORM.resolution_deadline)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_audit(self, failure_event_id: str) -> List[NDRAuditEntryORM]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(NDRAuditEntryORM)
                .where(NDRAuditEntryORM.failure_event_id == failure_event_id)
                .order_by(NDRAuditEntryORM.timestamp)
            )
            return list(result.scalars().all())

    async def add_audit(self, event: FailureEventORM, audit: AuditRecord) -> None:
        async with self.session_factory() as session:
            session.add(self._audit_row(event, audit))
            await session.commit()

    async def compare_and_swap(self, event: FailureEventORM, mutation: Mutation) -> bool:
        """
        Apply `mutation` iff the stored version still equals `event.version`.
        Returns False when another writer got there first.
        """
        now = self.clock()
        values = dict(mutation.values)
        values["version"] = event.version + 1
        values["updated_at"] = now
        if values.get("status") in TERMINAL_STATUSES:
            values["open_shipment_key"] = None

        async with self.session_factory() as session:
            result = await session.execute(
                update(FailureEventORM)
                .where(
                    FailureEventORM.id == event.id,
                    FailureEventORM.version == event.version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return False

            if mutation.cancel_pending_jobs:
                await session.execute(
                    update(ScheduledJobORM)
                    .where(
                        ScheduledJobORM.failure_event_id == event.id,
                        ScheduledJobORM.status == "pending",
                    )
                    .values(status="cancelled", updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            for job in mutation.jobs:
                session.add(job)
            if mutation.audit:
                session.add(self._audit_row(event, mutation.audit))
            await session.commit()
        return True

    async def mutate(
        self,
        failure_event_id: str,
        mutator: Callable[[FailureEventORM], Optional[Mutation]],
    ) -> Optional[FailureEventORM]:
        """
        Read-modify-write loop around compare_and_swap.

        `mutator` sees the freshly loaded record and returns the Mutation to
        apply, or None to discard the transition (e.g. the record is already
        terminal). It is re-invoked on every lost race. Returns the reloaded
        record after a successful swap, None when the mutator declined.
        """
        for attempt in range(MAX_CAS_ATTEMPTS):
            event = await self.get(failure_event_id)
            mutation = mutator(event)
            if mutation is None:
                return None
            if await self.compare_and_swap(event, mutation):
                return await self.get(failure_event_id)
            logger.debug(
                f"Version conflict on failure event {failure_event_id} "
                f"(v{event.version}, attempt {attempt + 1})"
            )
        raise ConcurrencyConflictError(
            f"Failure event {failure_event_id} kept changing after {MAX_CAS_ATTEMPTS} attempts"
        )

    def _audit_row(self, event: FailureEventORM, audit: AuditRecord) -> NDRAuditEntryORM:
        return NDRAuditEntryORM(
            failure_event_id=event.id,
            tenant_id=event.tenant_id,
            timestamp=self.clock(),
            action=audit.action,
            action_type=audit.action_type,
            actor=audit.actor,
            details=audit.details,
            trace_id=correlation_id_ctx.get(),
        )


def copy_actions(event: FailureEventORM) -> List[Dict[str, Any]]:
    """Deep copy of actions_taken safe to modify inside a mutator."""
    return copy.deepcopy(event.actions_taken or [])

