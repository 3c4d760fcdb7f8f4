"""
Reservation pipeline contracts
Vendor-agnostic domain models and the interface every upstream step client implements
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from .error_models import ClassifiedError, ErrorDetail, FailureCode, PipelineError

MAX_ROOMS = 6
MAX_CHILD_AGE = 17


class RateReferenceKind(str, Enum):
    """Origin of a rate reference, encoded as its prefix"""
    MATCH = "m-"    # raw match hash from a region search
    BOOK = "h-"     # book hash from a hotel page, not yet locked
    LOCKED = "p-"   # hash returned by the lock (prebook) step


@dataclass(frozen=True)
class RateReference:
    value: str
    kind: RateReferenceKind

    @classmethod
    def parse(cls, value: Optional[str]) -> "RateReference":
        """Parse a tagged rate reference, rejecting unknown prefixes"""
        if not value or not isinstance(value, str) or not value.strip():
            raise PipelineError(FailureCode.MISSING_BOOKING_HASH, "Rate reference is required")
        value = value.strip()
        for kind in RateReferenceKind:
            if value.startswith(kind.value) and len(value) > len(kind.value):
                return cls(value=value, kind=kind)
        prefixes = ", ".join(f'"{k.value}"' for k in RateReferenceKind)
        raise PipelineError(
            FailureCode.INVALID_RATE_REFERENCE,
            f"Invalid rate reference format. Must start with one of {prefixes}",
        )

    @property
    def is_locked(self) -> bool:
        return self.kind is RateReferenceKind.LOCKED


# Booking request models
@dataclass(frozen=True)
class Guests:
    adults: int
    children: Tuple[int, ...] = ()  # ages 0-17

    def to_payload(self) -> Dict[str, Any]:
        return {"adults": self.adults, "children": list(self.children)}


@dataclass(frozen=True)
class GuestName:
    first_name: str
    last_name: str
    is_child: bool = False
    age: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"first_name": self.first_name, "last_name": self.last_name}
        if self.is_child:
            payload["is_child"] = True
            payload["age"] = self.age
        return payload


@dataclass(frozen=True)
class RoomRequest:
    rate_reference: str
    guests: Guests
    residency: str = "us"
    price_increase_percent: float = 0.0
    quoted_price: Optional[Decimal] = None
    guest_names: Tuple[GuestName, ...] = ()


@dataclass(frozen=True)
class ContactInfo:
    email: str
    phone: str
    first_name: str = ""
    last_name: str = ""


@dataclass(frozen=True)
class PaymentMethod:
    type: str  # deposit, now or hotel
    currency_code: Optional[str] = None


@dataclass(frozen=True)
class BookingIntent:
    idempotency_key: str
    rooms: Tuple[RoomRequest, ...]
    payment: PaymentMethod
    contact: ContactInfo
    language: str = "en"
    user_ip: str = "127.0.0.1"
    abort_on_price_change: bool = False


# Upstream step results
@dataclass(frozen=True)
class PaymentOption:
    type: str
    amount: Decimal
    currency_code: str
    show_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class PriceInfo:
    # None when the upstream returned no priced payment option
    amount: Optional[Decimal]
    currency: str
    payment_options: Tuple[PaymentOption, ...] = ()


@dataclass(frozen=True)
class RateLock:
    token: str
    price: PriceInfo
    changes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OrderForm:
    order_id: str
    item_id: str
    payment_types: Tuple[PaymentOption, ...] = ()
    form_schema: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubmissionReceipt:
    accepted: bool
    order_id: str


class OrderStatus(str, Enum):
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class StatusReport:
    status: OrderStatus
    raw_status: str
    message: Optional[str] = None


# Per-room pipeline record
class RoomState(str, Enum):
    CREATED = "created"
    LOCKED = "locked"
    FORM_READY = "form_ready"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (RoomState.CONFIRMED, RoomState.FAILED)


_STATE_RANK = {
    RoomState.CREATED: 0,
    RoomState.LOCKED: 1,
    RoomState.FORM_READY: 2,
    RoomState.SUBMITTED: 3,
    RoomState.PROCESSING: 4,
    RoomState.CONFIRMED: 5,
    RoomState.FAILED: 5,
}

_WRITE_ONCE = ("order_id", "item_id")


@dataclass
class RoomReservation:
    """Mutable record of one room, owned by exactly one state machine"""

    index: int
    request: RoomRequest
    idempotency_key: str = ""
    state: RoomState = RoomState.CREATED
    lock_token: Optional[str] = None
    order_id: Optional[str] = None
    item_id: Optional[str] = None
    quoted_price: Optional[Decimal] = None
    locked_price: Optional[Decimal] = None
    currency: Optional[str] = None
    price_changed: bool = False
    price_drift_percent: Optional[Decimal] = None
    payment_options: Tuple[PaymentOption, ...] = ()
    form_schema: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ClassifiedError] = None
    unconfirmed: bool = False
    submit_attempts: int = 0
    poll_count: int = 0
    history: List[RoomState] = field(default_factory=list)

    def __setattr__(self, name, value):
        # Upstream identifiers are immutable once assigned
        if name in _WRITE_ONCE:
            current = self.__dict__.get(name)
            if current is not None and value != current:
                raise AttributeError(f"{name} already assigned ({current}) for room {self.index}")
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def failure_reason(self) -> Optional[str]:
        return self.error.code if self.error else None

    def to_error_detail(self) -> Optional[ErrorDetail]:
        if self.error is None:
            return None
        return self.error.to_error_detail(room_index=self.index)


class BookingStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    PENDING = "pending"


def derive_booking_status(rooms: Sequence[RoomReservation]) -> BookingStatus:
    confirmed = sum(1 for r in rooms if r.state is RoomState.CONFIRMED)
    failed = sum(1 for r in rooms if r.state is RoomState.FAILED)
    pending = len(rooms) - confirmed - failed

    if rooms and confirmed == len(rooms):
        return BookingStatus.SUCCESS
    if pending:
        return BookingStatus.PENDING
    if confirmed and failed:
        return BookingStatus.PARTIAL
    return BookingStatus.FAILED


@dataclass(frozen=True)
class BookingOutcome:
    idempotency_key: str
    status: BookingStatus
    rooms: Tuple[RoomReservation, ...]

    @classmethod
    def from_rooms(cls, idempotency_key: str, rooms: Sequence[RoomReservation]) -> "BookingOutcome":
        ordered = tuple(sorted(rooms, key=lambda r: r.index))
        return cls(idempotency_key, derive_booking_status(ordered), ordered)

    @property
    def failures(self) -> List[ErrorDetail]:
        return [
            r.to_error_detail() for r in self.rooms
            if r.state is RoomState.FAILED and r.error is not None
        ]

    @property
    def failed_room_indexes(self) -> List[int]:
        return [r.index for r in self.rooms if r.state is RoomState.FAILED]

    @property
    def unconfirmed_room_indexes(self) -> List[int]:
        return [r.index for r in self.rooms if not r.is_terminal]


# Main Protocol
class ReservationStepClient(Protocol):
    """
    Upstream reservation steps.
    All methods are async; failures are raised, never returned.
    """

    async def lock_rate(
        self,
        rate_reference: str,
        guests: Guests,
        residency: str,
        price_increase_percent: float,
    ) -> RateLock:
        """Validate availability and lock the price of a rate"""
        ...

    async def collect_required_fields(
        self,
        lock_token: str,
        idempotency_key: str,
        language: str = "en",
        user_ip: str = "127.0.0.1",
    ) -> OrderForm:
        """Create the order and fetch the fields the booking needs"""
        ...

    async def submit(
        self,
        order_id: str,
        item_id: str,
        guests: Sequence[GuestName],
        payment: PaymentMethod,
        idempotency_key: str,
        contact: ContactInfo,
        amount: Optional[Decimal] = None,
        currency_code: Optional[str] = None,
        language: str = "en",
    ) -> SubmissionReceipt:
        """Submit the booking for asynchronous processing"""
        ...

    async def poll_status(self, order_id: str, idempotency_key: Optional[str] = None) -> StatusReport:
        """Single read of the order status"""
        ...
