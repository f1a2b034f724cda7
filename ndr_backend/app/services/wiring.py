"""
Service wiring.

Builds the object graph once per process. The API, event handlers and
background workers all reach the services through `get_services()`; tests
call `build_services` with their own session factory, clock and channel
fakes and install the result with `set_services`.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ndr_backend.app.core.database import async_session_maker, utcnow
from ndr_backend.app.core.logging import get_logger
from ndr_backend.app.services.action_executors import build_executors
from ndr_backend.app.services.address_update_service import AddressUpdateService
from ndr_backend.app.services.channels import (
    CarrierGateway,
    EscalationNotifier,
    MessagingChannel,
    MockCarrierGateway,
    MockEscalationNotifier,
    MockMessagingChannel,
    MockRateCardClient,
    MockShipmentDirectory,
    MockVoiceChannel,
    RateCardClient,
    ShipmentDirectory,
    VoiceChannel,
)
from ndr_backend.app.services.classification_service import ClassificationService
from ndr_backend.app.services.deadline_sweeper import DeadlineSweeper
from ndr_backend.app.services.detection_service import DetectionService
from ndr_backend.app.services.failure_repository import FailureEventRepository
from ndr_backend.app.services.rto_coordinator import RTOCoordinator
from ndr_backend.app.services.tenant_config_service import TenantConfigService
from ndr_backend.app.services.token_service import TokenService
from ndr_backend.app.services.workflow_engine import WorkflowEngine
from ndr_backend.app.services.workflow_repository import WorkflowRepository
from ndr_backend.app.workers.job_queue import JobQueue

logger = get_logger(__name__)


@dataclass
class NDRServices:
    session_factory: Callable
    repository: FailureEventRepository
    workflows: WorkflowRepository
    tenant_config: TenantConfigService
    job_queue: JobQueue
    tokens: TokenService
    classifier: ClassificationService
    coordinator: RTOCoordinator
    engine: WorkflowEngine
    detection: DetectionService
    sweeper: DeadlineSweeper
    address_updates: AddressUpdateService
    voice: VoiceChannel
    messaging: MessagingChannel
    carrier: CarrierGateway
    rate_card: RateCardClient
    shipments: ShipmentDirectory
    notifier: EscalationNotifier


def build_services(
    session_factory: Callable = async_session_maker,
    clock: Callable[[], datetime] = utcnow,
    classifier: Optional[ClassificationService] = None,
    voice: Optional[VoiceChannel] = None,
    messaging: Optional[MessagingChannel] = None,
    carrier: Optional[CarrierGateway] = None,
    rate_card: Optional[RateCardClient] = None,
    shipments: Optional[ShipmentDirectory] = None,
    notifier: Optional[EscalationNotifier] = None,
) -> NDRServices:
    """Assemble the services. Collaborators default to the in-process mocks."""
    voice = voice or MockVoiceChannel()
    messaging = messaging or MockMessagingChannel()
    carrier = carrier or MockCarrierGateway()
    rate_card = rate_card or MockRateCardClient()
    shipments = shipments or MockShipmentDirectory()
    notifier = notifier or MockEscalationNotifier()
    classifier = classifier or ClassificationService.from_settings()

    repository = FailureEventRepository(session_factory, clock=clock)
    workflows = WorkflowRepository(session_factory)
    tenant_config = TenantConfigService(session_factory)
    job_queue = JobQueue(session_factory, clock=clock)
    tokens = TokenService(session_factory, clock=clock)
    coordinator = RTOCoordinator(
        session_factory, repository, job_queue, carrier, rate_card, shipments, clock=clock
    )
    engine = WorkflowEngine(
        repository=repository,
        workflows=workflows,
        job_queue=job_queue,
        executors=build_executors(voice, messaging, carrier, tokens),
        coordinator=coordinator,
        shipments=shipments,
        notifier=notifier,
        tenant_config=tenant_config,
        clock=clock,
    )
    return NDRServices(
        session_factory=session_factory,
        repository=repository,
        workflows=workflows,
        tenant_config=tenant_config,
        job_queue=job_queue,
        tokens=tokens,
        classifier=classifier,
        coordinator=coordinator,
        engine=engine,
        detection=DetectionService(repository, classifier, engine, tenant_config, clock=clock),
        sweeper=DeadlineSweeper(repository, engine, clock=clock),
        address_updates=AddressUpdateService(tokens, shipments, engine),
        voice=voice,
        messaging=messaging,
        carrier=carrier,
        rate_card=rate_card,
        shipments=shipments,
        notifier=notifier,
    )


_services: Optional[NDRServices] = None


def get_services() -> NDRServices:
    global _services
    if _services is None:
        _services = build_services()
        logger.info("NDR services initialized with default collaborators")
    return _services


def set_services(services: Optional[NDRServices]) -> None:
    global _services
    _services = services
