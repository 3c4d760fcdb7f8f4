"""
Hotel reservation orchestration

Books 1-6 rooms against an upstream booking API through a per-room pipeline:
- lock the rate and check the price against the quote
- collect the required booking fields
- submit once, then poll until the booking is confirmed or failed
Every upstream call is retried according to a classified error taxonomy.
"""

from .contracts import (
    ReservationStepClient,
    RateReference,
    RateReferenceKind,
    # Domain models
    Guests,
    GuestName,
    RoomRequest,
    ContactInfo,
    PaymentMethod,
    BookingIntent,
    PriceInfo,
    PaymentOption,
    RateLock,
    OrderForm,
    SubmissionReceipt,
    StatusReport,
    OrderStatus,
    RoomState,
    RoomReservation,
    BookingStatus,
    BookingOutcome,
)

from .error_models import (
    ErrorCategory,
    FailureCode,
    ErrorDetail,
    ClassifiedError,
    ReservationError,
    UpstreamHTTPError,
    UpstreamEnvelopeError,
    PipelineError,
    OperationFailedError,
    IntentValidationError,
)

from .error_classifier import classify_error
from .retry import RetryConfig, RetryExecutor, compute_backoff
from .config import ReservationSettings, PriceComparisonMode, get_settings
from .state_machine import RoomReservationStateMachine, InvalidTransition
from .orchestrator import BookingOrchestrator
from .session_store import SessionStore, InMemorySessionStore, RedisSessionStore
from .rate_limiter import EndpointLimit, EndpointRateLimiter, RedisEndpointRateLimiter
from .adapters.etg import EtgStepClient

__all__ = [
    # Contracts
    "ReservationStepClient",
    "RateReference",
    "RateReferenceKind",
    # Domain models
    "Guests",
    "GuestName",
    "RoomRequest",
    "ContactInfo",
    "PaymentMethod",
    "BookingIntent",
    "PriceInfo",
    "PaymentOption",
    "RateLock",
    "OrderForm",
    "SubmissionReceipt",
    "StatusReport",
    "OrderStatus",
    "RoomState",
    "RoomReservation",
    "BookingStatus",
    "BookingOutcome",
    # Errors
    "ErrorCategory",
    "FailureCode",
    "ErrorDetail",
    "ClassifiedError",
    "ReservationError",
    "UpstreamHTTPError",
    "UpstreamEnvelopeError",
    "PipelineError",
    "OperationFailedError",
    "IntentValidationError",
    "classify_error",
    # Retry
    "RetryConfig",
    "RetryExecutor",
    "compute_backoff",
    # Configuration
    "ReservationSettings",
    "PriceComparisonMode",
    "get_settings",
    # Pipeline
    "RoomReservationStateMachine",
    "InvalidTransition",
    "BookingOrchestrator",
    # Session storage
    "SessionStore",
    "InMemorySessionStore",
    "RedisSessionStore",
    # Rate limiting
    "EndpointLimit",
    "EndpointRateLimiter",
    "RedisEndpointRateLimiter",
    # Adapters
    "EtgStepClient",
]
