"""
Security for the NDR operator API.

Bearer JWT validation with role-derived scopes. Token issuance for operators
is owned by the platform's auth service; `create_access_token` exists so that
service (and the tests) can mint compatible tokens.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, List

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, SecurityScopes
from jose import JWTError, jwt
from pydantic import BaseModel

from ndr_backend.app.core.config import get_settings

settings = get_settings()

NDR_READ = "ndr:read"
NDR_WRITE = "ndr:write"
RTO_WRITE = "rto:write"
WORKFLOW_ADMIN = "workflow:admin"
TRACKING_WRITE = "tracking:write"

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="api/v1/auth/token",
    scopes={
        NDR_READ: "Read failure events, actions and audit trail",
        NDR_WRITE: "Resolve, escalate and approve NDR actions",
        RTO_WRITE: "Trigger RTO and update return shipments",
        WORKFLOW_ADMIN: "Manage NDR workflow definitions",
        TRACKING_WRITE: "Push carrier tracking events",
    },
)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """
    Generate a signed JWT token.
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    return encoded_jwt


class Role:
    ADMIN = "admin"
    OPERATOR = "operator"
    VIEWER = "viewer"
    CARRIER = "carrier"  # machine identity for tracking webhooks


ROLE_SCOPES = {
    Role.ADMIN: [NDR_READ, NDR_WRITE, RTO_WRITE, WORKFLOW_ADMIN, TRACKING_WRITE],
    Role.OPERATOR: [NDR_READ, NDR_WRITE, RTO_WRITE],
    Role.VIEWER: [NDR_READ],
    Role.CARRIER: [TRACKING_WRITE],
}


class User(BaseModel):
    username: str
    role: str
    scopes: List[str] = []
    tenant_id: Optional[str] = None


async def get_current_user(
    security_scopes: SecurityScopes,
    token: str = Depends(oauth2_scheme)
) -> User:
    """
    Validate JWT token and check required scopes based on Role-Based Access Control.
    """
    if security_scopes.scopes:
        authenticate_value = f'Bearer scope="{security_scopes.scope_str}"'
    else:
        authenticate_value = "Bearer"

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": authenticate_value},
    )

    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        raise credentials_exception

    username = payload.get("sub")
    if username is None:
        raise credentials_exception

    role = payload.get("role", Role.VIEWER)
    tenant_id = payload.get("tenant_id")
    token_scopes = payload.get("scopes", ROLE_SCOPES.get(role, []))

    for scope in security_scopes.scopes:
        if scope not in token_scopes:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Not enough permissions. Required scope: {scope}",
                headers={"WWW-Authenticate": authenticate_value},
            )

    return User(username=username, role=role, scopes=token_scopes, tenant_id=tenant_id)


def tenant_for(user: User) -> str:
    """Tenant a request acts for. Tokens without a tenant claim act for the default tenant."""
    return user.tenant_id or settings.default_tenant_id
