"""
FastAPI dependencies for authentication and authorization.

Callers authenticate with a bearer token minted by the marketplace's auth
provider. The token's ``sub`` is the acting user's id and its ``role``
decides which delivery endpoints they may call; a delivery partner's user
id is their partner id.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_service.core.logging import get_logger, set_actor_id
from delivery_service.core.security import Identity, Role, TokenError, identity_from_token
from delivery_service.database.connection import get_db

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)

DatabaseSession = Annotated[AsyncSession, Depends(get_db)]


async def get_current_identity(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Identity:
    """
    Verify the bearer token and return the caller's identity.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        identity = identity_from_token(credentials.credentials)
    except TokenError as e:
        logger.warning(
            "Authentication failed",
            code=e.code,
            error=str(e),
        )
        raise credentials_exception from e

    set_actor_id(str(identity.user_id))
    return identity


CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]


def require_role(*allowed_roles: Role):
    """
    Create a dependency that requires one of the given roles.

    Example:
        @router.post("/assignments")
        async def create(identity: Annotated[Identity, Depends(require_role(Role.VENDOR))]):
            ...
    """

    async def role_checker(identity: CurrentIdentity) -> Identity:
        if identity.role not in allowed_roles:
            logger.warning(
                "Access denied: Insufficient permissions",
                user_id=str(identity.user_id),
                user_role=identity.role.value,
                required_roles=[role.value for role in allowed_roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return identity

    return role_checker


async def get_current_partner_id(
    identity: Annotated[Identity, Depends(require_role(Role.DELIVERY_PARTNER))],
) -> UUID:
    """Partner id of the calling delivery partner."""
    return identity.user_id


CurrentPartnerId = Annotated[UUID, Depends(get_current_partner_id)]

VendorOrAdmin = Annotated[Identity, Depends(require_role(Role.VENDOR, Role.ADMIN))]
