"""
Deadline Sweeper.

Periodically forces FailureEvents that outlived their resolution window into
RTO. The sweeper owns no state of its own: each overdue record goes through
WorkflowEngine.force_rto, whose version-checked write decides the race with a
concurrently running action job.
"""
from datetime import datetime
from typing import Callable, Optional

from ndr_backend.app.core.config import get_settings
from ndr_backend.app.core.database import utcnow
from ndr_backend.app.core.logging import failure_event_id_ctx, get_logger
from ndr_backend.app.schemas.ndr import TriggeredBy
from ndr_backend.app.services.failure_repository import FailureEventRepository
from ndr_backend.app.services.workflow_engine import WorkflowEngine

logger = get_logger(__name__)


class DeadlineSweeper:
    def __init__(
        self,
        repository: FailureEventRepository,
        engine: WorkflowEngine,
        clock: Callable[[], datetime] = utcnow,
        batch_size: Optional[int] = None,
    ):
        self.repository = repository
        self.engine = engine
        self.clock = clock
        self.batch_size = batch_size or get_settings().sweeper_batch_size

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Escalate every overdue record once. Returns how many this run escalated."""
        now = now or self.clock()
        overdue = await self.repository.list_past_deadline(now, self.batch_size)
        if not overdue:
            return 0

        escalated = 0
        for event in overdue:
            token = failure_event_id_ctx.set(event.id)
            try:
                return_event = await self.engine.force_rto(
                    event.id,
                    TriggeredBy.DEADLINE_SWEEP.value,
                    "deadline_exceeded",
                )
                if return_event is not None:
                    escalated += 1
            except Exception as e:
                # One bad record must not stall the rest of the batch
                logger.error(f"Deadline sweep failed for {event.id}: {e!r}", exc_info=True)
            finally:
                failure_event_id_ctx.reset(token)

        logger.info(f"Deadline sweep at {now.isoformat()}: {len(overdue)} overdue, {escalated} escalated")
        return escalated
