"""
Wire schemas for booking intents and outcomes

Pydantic models for the normalized request/response shapes. They check the
structure; business rules (room count, rate reference prefixes, ages) are
enforced by the orchestrator so every rejection carries the same codes.
"""

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .contracts import (
    BookingIntent,
    BookingOutcome,
    BookingStatus,
    ContactInfo,
    GuestName,
    Guests,
    PaymentMethod,
    PaymentOption,
    RoomRequest,
    RoomReservation,
    RoomState,
)
from .error_models import ClassifiedError, ErrorCategory, ErrorDetail
from .utils.residency import DEFAULT_RESIDENCY


class GuestsPayload(BaseModel):
    adults: int = Field(..., description="Number of adults")
    children: List[int] = Field(default_factory=list, description="Child ages")

    def to_domain(self) -> Guests:
        return Guests(adults=self.adults, children=tuple(self.children))


class GuestNamePayload(BaseModel):
    first_name: str
    last_name: str
    is_child: bool = False
    age: Optional[int] = None

    def to_domain(self) -> GuestName:
        return GuestName(self.first_name, self.last_name, self.is_child, self.age)


class RoomRequestPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rate_reference: str = Field(..., alias="book_hash", description="Match hash, book hash or lock token")
    guests: GuestsPayload
    residency: str = Field(DEFAULT_RESIDENCY)
    price_increase_percent: float = Field(0.0, description="Accepted price increase, clamped to 0-100")
    quoted_price: Optional[Decimal] = Field(None, description="Price shown to the guest at quote time")
    guest_names: List[GuestNamePayload] = Field(default_factory=list)

    @field_validator("rate_reference", mode="before")
    @classmethod
    def strip_reference(cls, v):
        return v.strip() if isinstance(v, str) else v

    def to_domain(self) -> RoomRequest:
        return RoomRequest(
            rate_reference=self.rate_reference,
            guests=self.guests.to_domain(),
            residency=self.residency,
            price_increase_percent=self.price_increase_percent,
            quoted_price=self.quoted_price,
            guest_names=tuple(g.to_domain() for g in self.guest_names),
        )

    @classmethod
    def from_domain(cls, request: RoomRequest) -> "RoomRequestPayload":
        return cls(
            rate_reference=request.rate_reference,
            guests=GuestsPayload(adults=request.guests.adults, children=list(request.guests.children)),
            residency=request.residency,
            price_increase_percent=request.price_increase_percent,
            quoted_price=request.quoted_price,
            guest_names=[
                GuestNamePayload(first_name=g.first_name, last_name=g.last_name, is_child=g.is_child, age=g.age)
                for g in request.guest_names
            ],
        )


class ContactPayload(BaseModel):
    email: str
    phone: str
    first_name: str = ""
    last_name: str = ""


class PaymentPayload(BaseModel):
    type: str = Field("deposit", description="deposit, now or hotel")
    currency_code: Optional[str] = None


class BookingIntentPayload(BaseModel):
    idempotency_key: str = Field(..., alias="partner_order_id")
    rooms: List[RoomRequestPayload]
    payment: PaymentPayload = Field(default_factory=PaymentPayload)
    contact: ContactPayload
    language: str = "en"
    user_ip: str = "127.0.0.1"
    abort_on_price_change: bool = False

    model_config = ConfigDict(populate_by_name=True)

    def to_domain(self) -> BookingIntent:
        return BookingIntent(
            idempotency_key=self.idempotency_key.strip(),
            rooms=tuple(room.to_domain() for room in self.rooms),
            payment=PaymentMethod(type=self.payment.type, currency_code=self.payment.currency_code),
            contact=ContactInfo(**self.contact.model_dump()),
            language=self.language,
            user_ip=self.user_ip,
            abort_on_price_change=self.abort_on_price_change,
        )


class PaymentOptionPayload(BaseModel):
    type: str
    amount: Decimal
    currency_code: str
    show_amount: Optional[Decimal] = None


class RoomReservationPayload(BaseModel):
    """One room of a booking outcome"""
    index: int
    state: RoomState
    idempotency_key: str
    request: RoomRequestPayload
    lock_token: Optional[str] = None
    order_id: Optional[str] = None
    item_id: Optional[str] = None
    quoted_price: Optional[Decimal] = None
    locked_price: Optional[Decimal] = None
    currency: Optional[str] = None
    price_changed: bool = False
    price_drift_percent: Optional[Decimal] = None
    payment_options: List[PaymentOptionPayload] = Field(default_factory=list)
    unconfirmed: bool = False
    submit_attempts: int = 0
    poll_count: int = 0
    history: List[RoomState] = Field(default_factory=list)
    error: Optional[ErrorDetail] = None

    @classmethod
    def from_domain(cls, room: RoomReservation) -> "RoomReservationPayload":
        return cls(
            index=room.index,
            state=room.state,
            idempotency_key=room.idempotency_key,
            request=RoomRequestPayload.from_domain(room.request),
            lock_token=room.lock_token,
            order_id=room.order_id,
            item_id=room.item_id,
            quoted_price=room.quoted_price,
            locked_price=room.locked_price,
            currency=room.currency,
            price_changed=room.price_changed,
            price_drift_percent=room.price_drift_percent,
            payment_options=[
                PaymentOptionPayload(
                    type=o.type, amount=o.amount, currency_code=o.currency_code, show_amount=o.show_amount
                )
                for o in room.payment_options
            ],
            unconfirmed=room.unconfirmed,
            submit_attempts=room.submit_attempts,
            poll_count=room.poll_count,
            history=list(room.history),
            error=room.to_error_detail(),
        )

    def to_domain(self) -> RoomReservation:
        room = RoomReservation(
            index=self.index,
            request=self.request.to_domain(),
            idempotency_key=self.idempotency_key,
            state=self.state,
            lock_token=self.lock_token,
            order_id=self.order_id,
            item_id=self.item_id,
            quoted_price=self.quoted_price,
            locked_price=self.locked_price,
            currency=self.currency,
            price_changed=self.price_changed,
            price_drift_percent=self.price_drift_percent,
            payment_options=tuple(
                PaymentOption(o.type, o.amount, o.currency_code, o.show_amount) for o in self.payment_options
            ),
            unconfirmed=self.unconfirmed,
            submit_attempts=self.submit_attempts,
            poll_count=self.poll_count,
            history=list(self.history),
        )
        if self.error is not None:
            room.error = ClassifiedError(
                category=ErrorCategory(self.error.category),
                retryable=self.error.retryable,
                status_code=self.error.status_code,
                message=self.error.message,
                code=self.error.code,
            )
        return room


class BookingOutcomePayload(BaseModel):
    idempotency_key: str
    status: BookingStatus
    rooms: List[RoomReservationPayload]
    failures: List[ErrorDetail] = Field(default_factory=list)
    failed_rooms: List[int] = Field(default_factory=list)
    unconfirmed_rooms: List[int] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, outcome: BookingOutcome) -> "BookingOutcomePayload":
        return cls(
            idempotency_key=outcome.idempotency_key,
            status=outcome.status,
            rooms=[RoomReservationPayload.from_domain(room) for room in outcome.rooms],
            failures=outcome.failures,
            failed_rooms=outcome.failed_room_indexes,
            unconfirmed_rooms=outcome.unconfirmed_room_indexes,
        )

    def to_domain(self) -> BookingOutcome:
        return BookingOutcome.from_rooms(self.idempotency_key, [room.to_domain() for room in self.rooms])
