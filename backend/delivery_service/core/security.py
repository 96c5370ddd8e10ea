"""
Bearer token verification for the delivery API.

Tokens are issued by the marketplace's auth provider; this service only
verifies them and reads the acting user's id (``sub``) and role. Token
minting is kept for internal tooling and the test suite.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from jose import ExpiredSignatureError, JWTError, jwt

from delivery_service.core.config import get_settings
from delivery_service.core.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """Marketplace roles that can appear in a token's ``role`` claim."""

    CUSTOMER = "customer"
    VENDOR = "vendor"
    DELIVERY_PARTNER = "delivery_partner"
    ADMIN = "admin"

    @classmethod
    def from_claim(cls, value: Optional[str]) -> "Role":
        """
        Parse a role claim, defaulting to customer when absent.

        Raises:
            ValueError: If the claim names an unknown role
        """
        if not value:
            return cls.CUSTOMER
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([r.value for r in cls])
            raise ValueError(
                f"Invalid role: {value}. Valid values are: {valid_values}"
            )


class TokenError(Exception):
    """Raised when a bearer token cannot be verified."""

    def __init__(self, message: str, code: str, **context: Any):
        super().__init__(message)
        self.code = code
        self.context = context


@dataclass(frozen=True)
class Identity:
    """Authenticated caller extracted from a verified token."""

    user_id: UUID
    role: Role


def create_access_token(
    subject: UUID,
    role: Role,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Mint a signed access token.

    Args:
        subject: User id placed in the ``sub`` claim
        role: Role placed in the ``role`` claim
        expires_delta: Optional custom lifetime

    Returns:
        Encoded JWT string
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (
        expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    )
    claims: Dict[str, Any] = {
        "sub": str(subject),
        "role": role.value,
        "iat": now,
        "exp": expire,
    }
    if settings.jwt_audience:
        claims["aud"] = settings.jwt_audience

    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    logger.debug("Access token created", subject=str(subject), role=role.value)
    return token


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string to decode

    Returns:
        Dictionary of decoded token claims

    Raises:
        TokenError: If token is empty, invalid, or expired
    """
    if not token:
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    settings = get_settings()
    options = {"verify_aud": settings.jwt_audience is not None}

    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options,
        )
    except ExpiredSignatureError as e:
        logger.warning("Token has expired", error=str(e))
        raise TokenError("Token has expired", code="TOKEN_EXPIRED") from e
    except JWTError as e:
        logger.warning(
            "Invalid token",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise TokenError("Invalid token", code="TOKEN_INVALID") from e


def identity_from_token(token: str) -> Identity:
    """
    Verify a token and build the caller identity from its claims.

    Raises:
        TokenError: If the token is invalid or its claims are malformed
    """
    payload = decode_token(token)

    subject = payload.get("sub")
    if not subject:
        raise TokenError("Token missing 'sub' claim", code="TOKEN_NO_SUBJECT")

    try:
        user_id = UUID(str(subject))
        role = Role.from_claim(payload.get("role"))
    except ValueError as e:
        raise TokenError(
            "Token claims are malformed",
            code="TOKEN_BAD_CLAIMS",
            subject=str(subject),
        ) from e

    return Identity(user_id=user_id, role=role)
