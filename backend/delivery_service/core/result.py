"""
Result types and the response envelope for delivery operations.

Service operations never raise past their public boundary. They return
either ``Ok(value)`` or ``Err(kind, message)``; the API layer converts that
into the ``{success, data, error, message}`` envelope callers already rely
on, plus an ``error_code`` so clients can branch on the kind of failure
instead of parsing the human message.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union

from fastapi import status
from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Closed set of failure kinds a delivery operation can report."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    ALREADY_ASSIGNED = "already_assigned"
    PARTNER_UNAVAILABLE = "partner_unavailable"
    INVALID_STATE = "invalid_state"
    INVALID_OTP = "invalid_otp"
    TRANSIENT = "transient"

    @property
    def http_status(self) -> int:
        """HTTP status code used when this kind reaches the API boundary."""
        return _HTTP_STATUS[self]

    @property
    def is_retryable(self) -> bool:
        """Whether repeating the same call later may succeed."""
        return self in (ErrorKind.TRANSIENT, ErrorKind.INVALID_OTP)


_HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ALREADY_ASSIGNED: status.HTTP_409_CONFLICT,
    ErrorKind.PARTNER_UNAVAILABLE: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_OTP: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying the operation's payload."""

    value: T
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed outcome with a machine-readable kind and a display message."""

    kind: ErrorKind
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return False


Result = Union[Ok[T], Err]


class ReconcilerError(Exception):
    """
    Domain failure raised inside the delivery service layers.

    Caught at each operation boundary and turned into an ``Err``; it never
    escapes a public service method.
    """

    def __init__(self, kind: ErrorKind, message: str, **context: Any):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.context = context

    def to_err(self) -> Err:
        return Err(kind=self.kind, message=self.message, context=self.context)


class Envelope(BaseModel):
    """Uniform response body for every delivery endpoint."""

    model_config = ConfigDict(use_enum_values=True)

    success: bool = Field(..., description="Whether the operation succeeded")
    data: Optional[Any] = Field(None, description="Operation payload on success")
    error: Optional[str] = Field(None, description="Human-readable failure reason")
    message: Optional[str] = Field(None, description="Informational message")
    error_code: Optional[ErrorKind] = Field(
        None, description="Machine-readable failure kind"
    )


def to_envelope(result: Result) -> Envelope:
    """
    Convert an operation result into the wire envelope.

    Args:
        result: ``Ok`` or ``Err`` returned by a service operation

    Returns:
        Envelope ready for serialization
    """
    if isinstance(result, Ok):
        return Envelope(success=True, data=result.value, message=result.message)
    return Envelope(success=False, error=result.message, error_code=result.kind)


def http_status_for(result: Result, success_status: int = status.HTTP_200_OK) -> int:
    """Pick the HTTP status code matching a result."""
    if isinstance(result, Ok):
        return success_status
    return result.kind.http_status
