"""
External Collaborator Interfaces.

Voice/IVR, messaging, carrier, rate card, shipment directory and escalation
notification are narrow ABCs so that concrete vendors can be plugged in
without touching the workflow engine. Adapters raise ChannelTransientError
for retryable faults and ChannelPermanentError for hard rejections.

The Mock* implementations are in-process and used for local runs and tests.
"""
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List
from pydantic import BaseModel

from ndr_backend.app.core.exceptions import ChannelPermanentError


class CallResult(BaseModel):
    connected: bool
    customer_response: Optional[str] = None  # confirmed | reattempt_requested | will_accept | declined | ...


class MessageResult(BaseModel):
    delivered: bool
    message_id: Optional[str] = None


class ReversePickupBooking(BaseModel):
    reverse_shipment_ref: str
    charges: Optional[Decimal] = None
    eta: Optional[datetime] = None


class ReattemptResult(BaseModel):
    accepted: bool
    message: Optional[str] = None


class ShipmentInfo(BaseModel):
    shipment_id: str
    tenant_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    delivery_address: Dict[str, Any] = {}
    origin_address: Dict[str, Any] = {}
    status: Optional[str] = None


class VoiceChannel(ABC):
    @abstractmethod
    async def place_call(self, shipment_id: str, phone: str, script: str) -> CallResult:
        ...


class MessagingChannel(ABC):
    @abstractmethod
    async def send_template(self, phone: str, template_id: str, params: Dict[str, Any]) -> MessageResult:
        ...


class CarrierGateway(ABC):
    @abstractmethod
    async def schedule_reverse_pickup(self, shipment_id: str, address: Dict[str, Any]) -> ReversePickupBooking:
        ...

    @abstractmethod
    async def request_reattempt(
        self, shipment_id: str, preferred_date: Optional[datetime], notes: Optional[str]
    ) -> ReattemptResult:
        ...


class RateCardClient(ABC):
    @abstractmethod
    async def quote_rto_charges(self, shipment_id: str) -> Decimal:
        ...


class ShipmentDirectory(ABC):
    @abstractmethod
    async def get_shipment(self, shipment_id: str) -> Optional[ShipmentInfo]:
        ...

    @abstractmethod
    async def update_delivery_address(self, shipment_id: str, address: Dict[str, Any]) -> None:
        ...


class EscalationNotifier(ABC):
    @abstractmethod
    async def notify(self, role: str, failure_event: Any, reason: str) -> None:
        ...


class _Scripted:
    """
    Replays queued outcomes in order, then falls back to a default.
    A queued exception instance is raised instead of returned.
    """

    def __init__(self, default):
        self.default = default
        self._queue: List[Any] = []
        self.calls: List[Dict[str, Any]] = []

    def enqueue(self, *outcomes) -> None:
        self._queue.extend(outcomes)

    def next(self, **call):
        self.calls.append(call)
        outcome = self._queue.pop(0) if self._queue else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class MockVoiceChannel(VoiceChannel):
    def __init__(self, default: Optional[CallResult] = None):
        self.script = _Scripted(default or CallResult(connected=False))

    async def place_call(self, shipment_id: str, phone: str, script: str) -> CallResult:
        return self.script.next(shipment_id=shipment_id, phone=phone, script=script)


class MockMessagingChannel(MessagingChannel):
    def __init__(self, default: Optional[MessageResult] = None):
        self.script = _Scripted(default)

    async def send_template(self, phone: str, template_id: str, params: Dict[str, Any]) -> MessageResult:
        result = self.script.next(phone=phone, template_id=template_id, params=params)
        return result or MessageResult(delivered=True, message_id=f"msg-{uuid.uuid4().hex[:12]}")


class MockCarrierGateway(CarrierGateway):
    def __init__(self):
        self.pickups = _Scripted(None)
        self.reattempts = _Scripted(ReattemptResult(accepted=False, message="Re-attempt slots full"))

    async def schedule_reverse_pickup(self, shipment_id: str, address: Dict[str, Any]) -> ReversePickupBooking:
        booking = self.pickups.next(shipment_id=shipment_id, address=address)
        return booking or ReversePickupBooking(
            reverse_shipment_ref=f"RTO-{uuid.uuid4().hex[:10].upper()}",
            eta=datetime.now(timezone.utc) + timedelta(days=5),
        )

    async def request_reattempt(
        self, shipment_id: str, preferred_date: Optional[datetime], notes: Optional[str]
    ) -> ReattemptResult:
        return self.reattempts.next(shipment_id=shipment_id, preferred_date=preferred_date, notes=notes)


class MockRateCardClient(RateCardClient):
    def __init__(self, default_charge: Decimal = Decimal("85.00")):
        self.quotes = _Scripted(default_charge)

    async def quote_rto_charges(self, shipment_id: str) -> Decimal:
        return self.quotes.next(shipment_id=shipment_id)


class MockShipmentDirectory(ShipmentDirectory):
    def __init__(self):
        self.shipments: Dict[str, ShipmentInfo] = {}
        self.address_updates: List[Dict[str, Any]] = []

    def add(self, shipment: ShipmentInfo) -> None:
        self.shipments[shipment.shipment_id] = shipment

    async def get_shipment(self, shipment_id: str) -> Optional[ShipmentInfo]:
        shipment = self.shipments.get(shipment_id)
        if shipment is None:
            # Unknown shipments still get a contactable placeholder
            shipment = ShipmentInfo(
                shipment_id=shipment_id,
                customer_name="Customer",
                customer_phone="+919800000000",
                origin_address={"line1": "Seller warehouse", "pincode": "110001"},
            )
        return shipment

    async def update_delivery_address(self, shipment_id: str, address: Dict[str, Any]) -> None:
        if not address.get("pincode"):
            raise ChannelPermanentError("Address update rejected: pincode missing")
        self.address_updates.append({"shipment_id": shipment_id, "address": address})
        shipment = self.shipments.get(shipment_id)
        if shipment is not None:
            self.shipments[shipment_id] = shipment.model_copy(update={"delivery_address": address})


class MockEscalationNotifier(EscalationNotifier):
    def __init__(self):
        self.notifications: List[Dict[str, Any]] = []

    async def notify(self, role: str, failure_event: Any, reason: str) -> None:
        self.notifications.append({
            "role": role,
            "failure_event_id": getattr(failure_event, "id", None),
            "reason": reason,
        })
