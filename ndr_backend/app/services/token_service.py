"""
Address Update Token Service.

Issues signed, single-use magic-link tokens that let a customer correct the
delivery address of a failed shipment. A token is valid only while its
signature verifies, its purpose matches, it is unexpired and unconsumed;
consumption is one conditional UPDATE so two concurrent submissions cannot
both succeed.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from jose import JWTError, jwt
from sqlalchemy import update

from ndr_backend.app.core.config import get_settings
from ndr_backend.app.core.database import utcnow
from ndr_backend.app.core.logging import get_logger
from ndr_backend.app.models.address_token_orm import AddressUpdateTokenORM

logger = get_logger(__name__)

ADDRESS_UPDATE_PURPOSE = "address_update"


@dataclass(frozen=True)
class TokenClaims:
    token_id: str
    shipment_id: str
    failure_event_id: str
    expires_at: datetime


class TokenService:
    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow, ttl_hours: Optional[int] = None):
        settings = get_settings()
        self.session_factory = session_factory
        self.clock = clock
        self.ttl = timedelta(hours=ttl_hours or settings.address_token_ttl_hours)
        self.secret_key = settings.secret_key
        self.algorithm = settings.algorithm

    async def issue(self, shipment_id: str, failure_event_id: str) -> str:
        """Mint a token and persist its row. Returns the encoded JWT."""
        now = self.clock()
        token_id = str(uuid.uuid4())
        expires_at = now + self.ttl

        async with self.session_factory() as session:
            session.add(AddressUpdateTokenORM(
                token_id=token_id,
                shipment_id=shipment_id,
                failure_event_id=failure_event_id,
                purpose=ADDRESS_UPDATE_PURPOSE,
                issued_at=now,
                expires_at=expires_at,
            ))
            await session.commit()

        claims = {
            "sub": shipment_id,
            "fev": failure_event_id,
            "jti": token_id,
            "purpose": ADDRESS_UPDATE_PURPOSE,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        logger.info(f"Issued address update token {token_id} for shipment {shipment_id}")
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def decode(self, token: str) -> Optional[dict]:
        # Expiry is enforced against the injected clock and the stored row
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTError:
            return None
        if payload.get("purpose") != ADDRESS_UPDATE_PURPOSE:
            return None
        if not payload.get("jti") or not payload.get("sub") or not payload.get("fev"):
            return None
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or self.clock().timestamp() >= exp:
            return None
        return payload

    async def validate_and_consume(self, token: str) -> Optional[TokenClaims]:
        """
        Returns the claims when this call consumed the token, otherwise None.

        Expired, tampered, wrong-purpose, unknown and already-consumed tokens
        are all the same to the caller: invalid.
        """
        payload = self.decode(token)
        if payload is None:
            return None

        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                update(AddressUpdateTokenORM)
                .where(
                    AddressUpdateTokenORM.token_id == payload["jti"],
                    AddressUpdateTokenORM.shipment_id == payload["sub"],
                    AddressUpdateTokenORM.purpose == ADDRESS_UPDATE_PURPOSE,
                    AddressUpdateTokenORM.consumed_at.is_(None),
                    AddressUpdateTokenORM.expires_at > now,
                )
                .values(consumed_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount != 1:
            logger.info(f"Rejected address update token {payload['jti']}")
            return None

        return TokenClaims(
            token_id=payload["jti"],
            shipment_id=payload["sub"],
            failure_event_id=payload["fev"],
            expires_at=datetime.fromtimestamp(payload["exp"], tz=now.tzinfo),
        )
