"""
Workflow Action Executors.

One executor per channel-backed action type. An executor performs the
external call and reports an ActionOutcome; it never touches the
FailureEvent. Recording the outcome, deciding whether the case is resolved
and advancing the workflow belong to the WorkflowEngine.

Channel calls are bounded by `channel_timeout_seconds`. A timeout, or any
error that is not one of ours, counts as a transient channel error.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict

from ndr_backend.app.core.config import get_settings
from ndr_backend.app.core.exceptions import ChannelPermanentError, ChannelTransientError, NDRError
from ndr_backend.app.core.logging import get_logger
from ndr_backend.app.models.failure_event_orm import FailureEventORM
from ndr_backend.app.schemas.ndr import ActionResult, ActionType
from ndr_backend.app.schemas.workflows import WorkflowActionSpec
from ndr_backend.app.services.channels import (
    CarrierGateway,
    MessagingChannel,
    ShipmentInfo,
    VoiceChannel,
)
from ndr_backend.app.services.token_service import TokenService

logger = get_logger(__name__)

# Customer answers on a connected call that settle the NDR
CONFIRMATION_RESPONSES = frozenset({"confirmed", "reattempt_requested", "will_accept"})


@dataclass
class ActionContext:
    failure_event: FailureEventORM
    spec: WorkflowActionSpec
    shipment: ShipmentInfo
    now: datetime


@dataclass
class ActionOutcome:
    result: Optional[ActionResult]
    resolved: bool = False
    customer_contacted: bool = False
    note: Optional[str] = None
    # Set when the action waits for the customer instead of completing now
    respond_by: Optional[datetime] = None


async def call_channel(coro, timeout: float, description: str):
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ChannelTransientError(f"{description} timed out after {timeout}s") from e
    except NDRError:
        raise
    except Exception as e:
        # Transport faults outside the channel error types retry like any transient failure
        raise ChannelTransientError(f"{description} failed: {e!r}") from e


def _require_phone(shipment: ShipmentInfo) -> str:
    if not shipment.customer_phone:
        raise ChannelPermanentError(f"No customer phone on shipment {shipment.shipment_id}")
    return shipment.customer_phone


class ActionExecutor(ABC):
    action_type: ActionType

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout = timeout_seconds or get_settings().channel_timeout_seconds

    @abstractmethod
    async def execute(self, ctx: ActionContext) -> ActionOutcome:
        ...


class SendMessageExecutor(ActionExecutor):
    """Template message (WhatsApp/SMS). Informational only, never resolves."""

    action_type = ActionType.SEND_MESSAGE

    def __init__(self, messaging: MessagingChannel, timeout_seconds: Optional[float] = None):
        super().__init__(timeout_seconds)
        self.messaging = messaging

    async def execute(self, ctx: ActionContext) -> ActionOutcome:
        phone = _require_phone(ctx.shipment)
        event = ctx.failure_event
        template_id = ctx.spec.config.get("template_id", f"ndr_{event.classified_category}")
        result = await call_channel(
            self.messaging.send_template(phone, template_id, {
                "shipment_id": event.shipment_id,
                "customer_name": ctx.shipment.customer_name,
                "attempt_number": event.attempt_number,
                "reason": event.classified_category,
            }),
            self.timeout,
            "send_template",
        )
        if result.delivered:
            return ActionOutcome(
                result=ActionResult.DELIVERED,
                customer_contacted=True,
                note=f"message_id={result.message_id}",
            )
        return ActionOutcome(result=ActionResult.NOT_DELIVERED)


class ContactCustomerExecutor(ActionExecutor):
    action_type = ActionType.CONTACT_CUSTOMER

    def __init__(self, voice: VoiceChannel, timeout_seconds: Optional[float] = None):
        super().__init__(timeout_seconds)
        self.voice = voice

    async def execute(self, ctx: ActionContext) -> ActionOutcome:
        phone = _require_phone(ctx.shipment)
        script = ctx.spec.config.get("script", "ndr_generic")
        result = await call_channel(
            self.voice.place_call(ctx.failure_event.shipment_id, phone, script),
            self.timeout,
            "place_call",
        )
        if not result.connected:
            return ActionOutcome(result=ActionResult.NOT_CONNECTED)

        response = (result.customer_response or "").strip().lower()
        if response in CONFIRMATION_RESPONSES:
            return ActionOutcome(
                result=ActionResult.RESOLVED,
                resolved=True,
                customer_contacted=True,
                note=f"customer_response={response}",
            )
        return ActionOutcome(
            result=ActionResult.NOT_CONFIRMED,
            customer_contacted=True,
            note=f"customer_response={response or 'none'}",
        )


class RequestAddressUpdateExecutor(ActionExecutor):
    """
    Sends a single-use address update link. The action stays open until the
    customer submits an address or its response window job fires.
    """

    action_type = ActionType.REQUEST_ADDRESS_UPDATE

    def __init__(
        self,
        token_service: TokenService,
        messaging: MessagingChannel,
        base_url: Optional[str] = None,
        response_window: Optional[timedelta] = None,
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__(timeout_seconds)
        settings = get_settings()
        self.token_service = token_service
        self.messaging = messaging
        self.base_url = base_url or settings.address_update_base_url
        self.response_window = response_window or timedelta(hours=settings.address_response_window_hours)

    async def execute(self, ctx: ActionContext) -> ActionOutcome:
        phone = _require_phone(ctx.shipment)
        event = ctx.failure_event
        token = await self.token_service.issue(event.shipment_id, event.id)
        link = f"{self.base_url}?token={token}"
        window = ctx.spec.config.get("response_window_hours")
        respond_by = ctx.now + (timedelta(hours=window) if window else self.response_window)

        result = await call_channel(
            self.messaging.send_template(
                phone,
                ctx.spec.config.get("template_id", "ndr_address_update_link"),
                {"shipment_id": event.shipment_id, "link": link, "respond_by": respond_by.isoformat()},
            ),
            self.timeout,
            "send_template",
        )
        if not result.delivered:
            return ActionOutcome(result=ActionResult.NOT_DELIVERED, note="address link not delivered")
        return ActionOutcome(
            result=None,
            customer_contacted=True,
            respond_by=respond_by,
            note=f"link sent, message_id={result.message_id}",
        )


class RequestReattemptExecutor(ActionExecutor):
    action_type = ActionType.REQUEST_REATTEMPT

    def __init__(self, carrier: CarrierGateway, timeout_seconds: Optional[float] = None):
        super().__init__(timeout_seconds)
        self.carrier = carrier

    async def execute(self, ctx: ActionContext) -> ActionOutcome:
        days = int(ctx.spec.config.get("preferred_in_days", 1))
        result = await call_channel(
            self.carrier.request_reattempt(
                ctx.failure_event.shipment_id,
                ctx.now + timedelta(days=days),
                ctx.spec.config.get("notes"),
            ),
            self.timeout,
            "request_reattempt",
        )
        if result.accepted:
            return ActionOutcome(result=ActionResult.REATTEMPT_ACCEPTED, resolved=True, note=result.message)
        return ActionOutcome(result=ActionResult.REATTEMPT_REJECTED, note=result.message)


def build_executors(
    voice: VoiceChannel,
    messaging: MessagingChannel,
    carrier: CarrierGateway,
    token_service: TokenService,
) -> Dict[ActionType, ActionExecutor]:
    executors = [
        SendMessageExecutor(messaging),
        ContactCustomerExecutor(voice),
        RequestAddressUpdateExecutor(token_service, messaging),
        RequestReattemptExecutor(carrier),
    ]
    return {e.action_type: e for e in executors}
