"""
NDR Detection Service.

Entry point for carrier tracking updates. Decides whether an update is a
delivery failure, suppresses duplicates, folds repeat failures into the open
FailureEvent for the shipment, or opens a new one and hands it to the
workflow engine.

At most one non-terminal FailureEvent exists per shipment; the unique
`open_shipment_key` column enforces it, so two workers racing on the same
shipment end up with one insert and one repeat/duplicate.
"""
import hashlib
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Dict, Any

from sqlalchemy.exc import IntegrityError

from ndr_backend.app.core.config import get_settings
from ndr_backend.app.core.database import utcnow
from ndr_backend.app.core.logging import failure_event_id_ctx, get_logger
from ndr_backend.app.models.failure_event_orm import FailureEventORM
from ndr_backend.app.schemas.ndr import (
    DetectionOutcome,
    DetectionResult,
    FailureCategory,
    FailureStatus,
    TrackingUpdate,
)
from ndr_backend.app.services.classification_service import ClassificationService
from ndr_backend.app.services.failure_repository import AuditRecord, FailureEventRepository, open_shipment_key
from ndr_backend.app.services.tenant_config_service import TenantConfigService, normalise_status
from ndr_backend.app.services.workflow_engine import WorkflowEngine

logger = get_logger(__name__)


def event_signature(status: str, remarks: Optional[str]) -> str:
    """SHA-256 over the normalised carrier status and remarks."""
    normalised_remarks = " ".join((remarks or "").lower().split())
    payload = f"{normalise_status(status)}|{normalised_remarks}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _carrier_event(update: TrackingUpdate, signature: str) -> Dict[str, Any]:
    return {
        "status": update.status,
        "remarks": update.remarks,
        "location": update.location,
        "occurred_at": update.occurred_at.isoformat(),
        "signature": signature,
    }


def _is_exact_replay(event: FailureEventORM, signature: str, occurred_at: datetime) -> bool:
    for seen in event.carrier_events or []:
        if seen.get("signature") == signature and datetime.fromisoformat(seen["occurred_at"]) == occurred_at:
            return True
    return False


def _has_signature(event: FailureEventORM, signature: str) -> bool:
    if event.raw_signature == signature:
        return True
    return any(seen.get("signature") == signature for seen in event.carrier_events or [])


class DetectionService:
    def __init__(
        self,
        repository: FailureEventRepository,
        classifier: ClassificationService,
        engine: WorkflowEngine,
        tenant_config: TenantConfigService,
        clock: Callable[[], datetime] = utcnow,
        duplicate_window: Optional[timedelta] = None,
    ):
        self.repository = repository
        self.classifier = classifier
        self.engine = engine
        self.tenant_config = tenant_config
        self.clock = clock
        self.duplicate_window = duplicate_window or timedelta(hours=get_settings().duplicate_window_hours)

    async def process(self, update: TrackingUpdate, tenant_id: str) -> DetectionResult:
        """Handle one tracking update. Never raises; failures come back as outcome=error."""
        try:
            return await self._process(update, tenant_id)
        except Exception as e:
            logger.error(
                f"Detection failed for shipment {update.shipment_id}: {e!r}",
                exc_info=True,
                extra={"extra_data": {"status": update.status}},
            )
            return DetectionResult(outcome=DetectionOutcome.ERROR, detail=str(e))

    async def _process(self, update: TrackingUpdate, tenant_id: str) -> DetectionResult:
        status = normalise_status(update.status)
        failure_statuses = await self.tenant_config.failure_statuses(tenant_id)
        if status not in failure_statuses:
            return DetectionResult(outcome=DetectionOutcome.NOT_FAILURE)

        signature = event_signature(update.status, update.remarks)
        latest = await self.repository.find_latest(tenant_id, update.shipment_id)
        if latest is not None and _is_exact_replay(latest, signature, update.occurred_at):
            logger.info(f"Replayed tracking event for {update.shipment_id} ignored")
            return DetectionResult(outcome=DetectionOutcome.DUPLICATE, failure_event_id=latest.id)

        open_event = await self.repository.find_open(tenant_id, update.shipment_id)
        if open_event is not None:
            return await self._repeat_failure(open_event, update, signature)

        return await self._open_failure(update, tenant_id, signature, latest)

    async def _repeat_failure(
        self, open_event: FailureEventORM, update: TrackingUpdate, signature: str
    ) -> DetectionResult:
        now = self.clock()
        if _has_signature(open_event, signature) and now - open_event.detected_at <= self.duplicate_window:
            logger.info(f"Duplicate failure for {update.shipment_id} suppressed")
            return DetectionResult(outcome=DetectionOutcome.DUPLICATE, failure_event_id=open_event.id)

        updated = await self.engine.register_repeat_failure(open_event.id, _carrier_event(update, signature))
        if updated is None:
            # Closed between the read and the write; nothing left to append to
            return DetectionResult(
                outcome=DetectionOutcome.DUPLICATE,
                failure_event_id=open_event.id,
                detail="failure event closed concurrently",
            )
        return DetectionResult(outcome=DetectionOutcome.APPENDED, failure_event_id=open_event.id)

    async def _open_failure(
        self,
        update: TrackingUpdate,
        tenant_id: str,
        signature: str,
        previous: Optional[FailureEventORM],
    ) -> DetectionResult:
        now = self.clock()
        window = await self.tenant_config.resolution_window(tenant_id)
        event = FailureEventORM(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            shipment_id=update.shipment_id,
            attempt_number=(previous.attempt_number + 1) if previous else 1,
            raw_reason=update.status,
            remarks=update.remarks,
            location=update.location,
            raw_signature=signature,
            carrier_events=[_carrier_event(update, signature)],
            classified_category=FailureCategory.OTHER.value,
            status=FailureStatus.DETECTED.value,
            detected_at=now,
            resolution_deadline=now + window,
            last_event_at=now,
            open_shipment_key=open_shipment_key(tenant_id, update.shipment_id),
            version=1,
            actions_taken=[],
            created_at=now,
        )
        try:
            await self.repository.create(
                event,
                audit=AuditRecord(action="detected", details=f"status={update.status} attempt={event.attempt_number}"),
            )
        except IntegrityError:
            logger.info(f"Concurrent detection for {update.shipment_id}; re-reading open failure event")
            open_event = await self.repository.find_open(tenant_id, update.shipment_id)
            if open_event is None:
                raise
            return await self._repeat_failure(open_event, update, signature)

        token = failure_event_id_ctx.set(event.id)
        try:
            logger.info(
                f"NDR detected for shipment {update.shipment_id}",
                extra={"extra_data": {"status": normalise_status(update.status), "attempt": event.attempt_number}},
            )
            classification = await self.classifier.classify(update.status, update.remarks)
            await self.engine.start(event.id, classification)
        finally:
            failure_event_id_ctx.reset(token)
        return DetectionResult(outcome=DetectionOutcome.CREATED, failure_event_id=event.id)