"""Customer-facing address update through a single-use magic link."""
from typing import Any, Dict

from ndr_backend.app.core.exceptions import ChannelError, FailureEventNotFoundError
from ndr_backend.app.core.logging import failure_event_id_ctx, get_logger
from ndr_backend.app.services.channels import ShipmentDirectory
from ndr_backend.app.services.token_service import TokenService
from ndr_backend.app.services.workflow_engine import WorkflowEngine

logger = get_logger(__name__)


def _summarise(address: Dict[str, Any]) -> str:
    parts = [address.get("line1"), address.get("city"), address.get("pincode")]
    return ", ".join(str(p) for p in parts if p)


class AddressUpdateService:
    def __init__(self, tokens: TokenService, shipments: ShipmentDirectory, engine: WorkflowEngine):
        self.tokens = tokens
        self.shipments = shipments
        self.engine = engine

    async def submit(self, token: str, new_address: Dict[str, Any]) -> bool:
        """
        Consume the token, write the address to the shipment and record the
        update on the owning FailureEvent. Returns False for any rejected
        link; callers must not tell the customer which check failed.
        """
        claims = await self.tokens.validate_and_consume(token)
        if claims is None:
            logger.info("Address update rejected: invalid, expired or used link")
            return False

        ctx_token = failure_event_id_ctx.set(claims.failure_event_id)
        try:
            try:
                await self.shipments.update_delivery_address(claims.shipment_id, new_address)
            except ChannelError as e:
                logger.warning(f"Shipment {claims.shipment_id} refused the new address: {e}")
                return False

            try:
                resolved = await self.engine.record_address_update(claims.failure_event_id, _summarise(new_address))
            except FailureEventNotFoundError:
                logger.warning(f"Address link for {claims.shipment_id} points at a missing failure event")
                return True

            logger.info(
                f"Address updated for shipment {claims.shipment_id}",
                extra={"extra_data": {"resolved": resolved}},
            )
            return True
        finally:
            failure_event_id_ctx.reset(ctx_token)
