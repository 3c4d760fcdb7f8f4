"""
Standardized error models and exceptions for the reservation pipeline
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field


class ErrorCategory(str, Enum):
    """Error categories for classification"""
    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    NOT_FOUND = "not_found"
    AUTH = "auth"
    UNKNOWN = "unknown"


class FailureCode(str, Enum):
    """Pipeline specific codes surfaced next to the categories"""
    NO_AVAILABLE_RATES = "no_available_rates"
    MISSING_BOOKING_HASH = "missing_booking_hash"
    INVALID_RATE_REFERENCE = "invalid_rate_reference"
    PRICE_CHANGED = "price_changed"
    BOOKING_FAILED = "booking_failed"
    DUPLICATE_IDEMPOTENCY_KEY = "duplicate_idempotency_key"


# code -> (category, suggested external status)
FAILURE_PROFILES: Dict[FailureCode, tuple] = {
    FailureCode.NO_AVAILABLE_RATES: (ErrorCategory.NOT_FOUND, 409),
    FailureCode.MISSING_BOOKING_HASH: (ErrorCategory.VALIDATION, 400),
    FailureCode.INVALID_RATE_REFERENCE: (ErrorCategory.VALIDATION, 400),
    FailureCode.PRICE_CHANGED: (ErrorCategory.VALIDATION, 409),
    FailureCode.BOOKING_FAILED: (ErrorCategory.UNKNOWN, 502),
    FailureCode.DUPLICATE_IDEMPOTENCY_KEY: (ErrorCategory.VALIDATION, 409),
}


class ErrorDetail(BaseModel):
    """Error information handed to the HTTP layer"""
    code: str = Field(..., description="Machine readable code: a category or a pipeline code")
    message: str = Field(..., description="Human-readable error message")
    category: ErrorCategory = Field(..., description="Error category")
    retryable: bool = Field(False, description="Whether a later retry may succeed")
    status_code: int = Field(500, description="Suggested HTTP status for the caller")
    room_index: Optional[int] = Field(None, description="Index of the affected room, if any")
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass(frozen=True)
class ClassifiedError:
    """Typed outcome of one failure. Created per failure and never mutated."""

    category: ErrorCategory
    retryable: bool
    status_code: int
    message: str
    code: str = ""
    original: Optional[BaseException] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if not self.code:
            object.__setattr__(self, "code", self.category.value)

    def to_error_detail(
        self, room_index: Optional[int] = None, correlation_id: Optional[str] = None
    ) -> ErrorDetail:
        fields: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "category": self.category,
            "retryable": self.retryable,
            "status_code": self.status_code,
            "room_index": room_index,
        }
        if correlation_id:
            fields["correlation_id"] = correlation_id
        return ErrorDetail(**fields)


def failure(
    code: FailureCode, message: str, original: Optional[BaseException] = None
) -> ClassifiedError:
    """Build the ClassifiedError for a pipeline specific failure code"""
    category, status_code = FAILURE_PROFILES[code]
    return ClassifiedError(
        category=category,
        retryable=False,
        status_code=status_code,
        message=message,
        code=code.value,
        original=original,
    )


# Custom Exception Classes
class ReservationError(Exception):
    """Base exception for reservation pipeline errors"""

    def __init__(self, message: str, classified: Optional[ClassifiedError] = None):
        super().__init__(message)
        self.message = message
        self.classified = classified


class UpstreamHTTPError(ReservationError):
    """Upstream answered with a non-2xx HTTP status"""

    def __init__(
        self,
        status_code: int,
        body: Union[Dict[str, Any], str, None] = None,
        operation: str = "request",
        retry_after: Optional[int] = None,
    ):
        super().__init__(f"{operation} failed with HTTP {status_code}")
        self.status_code = status_code
        self.body = body
        self.operation = operation
        self.retry_after = retry_after

    @property
    def body_message(self) -> str:
        """Best effort human message extracted from the response body"""
        if isinstance(self.body, dict):
            error = self.body.get("error")
            if isinstance(error, dict):
                error = error.get("message") or error.get("code")
            return str(self.body.get("message") or error or "")
        return self.body or ""


class UpstreamEnvelopeError(ReservationError):
    """Upstream answered 2xx but the JSON envelope reports an error"""

    def __init__(self, code: str, operation: str = "request", status_code: int = 200, debug: Any = None):
        super().__init__(f"{operation} failed: {code}")
        self.code = code
        self.operation = operation
        self.status_code = status_code
        self.debug = debug


class PipelineError(ReservationError):
    """Failure with a pipeline specific code, already classified"""

    def __init__(self, code: FailureCode, message: str, original: Optional[BaseException] = None):
        super().__init__(message, failure(code, message, original))
        self.code = code


class OperationFailedError(ReservationError):
    """
    Raised by the retry executor once an operation can no longer succeed.

    Wraps the last failure, how many retries were spent and the operation label.
    """

    def __init__(self, operation: str, retries: int, classified: ClassifiedError):
        super().__init__(
            f"{operation} failed after {retries} retries: {classified.message}",
            classified,
        )
        self.operation = operation
        self.retries = retries

    @property
    def original(self) -> Optional[BaseException]:
        return self.classified.original


class IntentValidationError(ReservationError):
    """A booking intent was rejected before any upstream call"""

    def __init__(self, detail: ErrorDetail):
        super().__init__(detail.message)
        self.detail = detail
