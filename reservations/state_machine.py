"""
Room reservation state machine

Drives one room through lock -> collect fields -> submit -> poll. Every
failure ends up on the room record as a ClassifiedError; only a backward
transition (a programming error) escapes as an exception.
"""

import asyncio
import time
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Tuple

from .config import PriceComparisonMode, ReservationSettings, get_settings
from .contracts import (
    ContactInfo,
    GuestName,
    OrderStatus,
    PaymentMethod,
    PaymentOption,
    RateLock,
    ReservationStepClient,
    RoomRequest,
    RoomReservation,
    RoomState,
)
from .error_classifier import classify_error
from .error_models import ClassifiedError, ErrorCategory, FailureCode, failure
from .metrics import room_failures_total, room_transitions_total
from .utils.logging import get_safe_logger

logger = get_safe_logger("reservations.state_machine")

# Differences at or below one cent are rounding noise
PRICE_EPSILON = Decimal("0.01")

# Smallest window given to a status call once the poll deadline has passed
POLL_CALL_MIN_WINDOW = 0.05


class InvalidTransition(Exception):
    """A transition that would move a room backwards or out of a terminal state"""

    def __init__(self, index: int, current: RoomState, target: RoomState):
        super().__init__(f"Room {index}: invalid transition {current.value} -> {target.value}")
        self.index = index
        self.current = current
        self.target = target


def clamp_tolerance(value: Optional[float]) -> float:
    """Clamp a price increase tolerance to [0, 100]"""
    if value is None:
        return 0.0
    return min(max(float(value), 0.0), 100.0)


def locked_amount(lock: RateLock, mode: PriceComparisonMode) -> Optional[Decimal]:
    """The locked price that is compared against the quote"""
    options = lock.price.payment_options
    if mode is PriceComparisonMode.ALL_OPTIONS and options:
        # Worst case across every payment option
        return max(option.amount for option in options)
    return lock.price.amount


def price_drift_percent(quoted: Decimal, locked: Decimal) -> Decimal:
    """Signed drift of the locked price relative to the quote, in percent"""
    if quoted == 0:
        return Decimal("0") if locked == 0 else Decimal("100")
    return ((locked - quoted) / quoted * 100).quantize(Decimal("0.01"))


class RoomReservationStateMachine:
    """
    Owns exactly one RoomReservation.

    CREATED -> LOCKED -> FORM_READY -> SUBMITTED -> PROCESSING -> CONFIRMED
    with FAILED reachable from every non-terminal state.
    """

    def __init__(
        self,
        index: int,
        request: RoomRequest,
        client: ReservationStepClient,
        settings: Optional[ReservationSettings] = None,
        *,
        idempotency_key: str = "",
        contact: Optional[ContactInfo] = None,
        payment: Optional[PaymentMethod] = None,
        language: Optional[str] = None,
        user_ip: str = "127.0.0.1",
        reservation: Optional[RoomReservation] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.client = client
        self.contact = contact
        self.payment = payment
        self.language = language or self.settings.language
        self.user_ip = user_ip
        self._sleep = sleep
        self._clock = clock

        self.reservation = reservation or RoomReservation(
            index=index,
            request=request,
            idempotency_key=idempotency_key,
            quoted_price=request.quoted_price,
        )
        if not self.reservation.history:
            self.reservation.history.append(self.reservation.state)
        self.tolerance = clamp_tolerance(request.price_increase_percent)
        self.logger = logger.bind(room_index=index, idempotency_key=self.reservation.idempotency_key)

    @property
    def state(self) -> RoomState:
        return self.reservation.state

    @property
    def index(self) -> int:
        return self.reservation.index

    def _transition(self, target: RoomState):
        current = self.reservation.state
        if current.is_terminal or (target is not RoomState.FAILED and target.rank <= current.rank):
            raise InvalidTransition(self.index, current, target)

        self.reservation.state = target
        self.reservation.history.append(target)
        room_transitions_total.labels(state=target.value).inc()
        self.logger.info("room_transition", from_state=current.value, to_state=target.value)

    def fail(self, error: ClassifiedError) -> RoomReservation:
        """Move the room to FAILED with a classified reason"""
        self._transition(RoomState.FAILED)
        self.reservation.error = error
        self.reservation.unconfirmed = False
        room_failures_total.labels(code=error.code).inc()
        self.logger.warning(
            "room_failed",
            code=error.code,
            category=error.category.value,
            error=error.message,
        )
        return self.reservation

    def _fail_with(self, exc: BaseException) -> RoomReservation:
        return self.fail(classify_error(exc))

    # Phase 1

    async def prepare(self) -> RoomReservation:
        """CREATED -> LOCKED -> FORM_READY, or FAILED"""
        if self.state is not RoomState.CREATED:
            return self.reservation

        request = self.reservation.request
        try:
            lock = await self.client.lock_rate(
                request.rate_reference,
                request.guests,
                request.residency,
                self.tolerance,
            )
        except Exception as e:
            return self._fail_with(e)

        self._record_lock(lock)
        self._transition(RoomState.LOCKED)

        if not self._check_price():
            return self.reservation

        try:
            form = await self.client.collect_required_fields(
                lock.token,
                self.reservation.idempotency_key,
                self.language,
                self.user_ip,
            )
        except Exception as e:
            return self._fail_with(e)

        self.reservation.order_id = form.order_id
        self.reservation.item_id = form.item_id
        if form.payment_types:
            self.reservation.payment_options = form.payment_types
        self.reservation.form_schema = dict(form.form_schema)
        self._transition(RoomState.FORM_READY)
        return self.reservation

    def _record_lock(self, lock: RateLock):
        self.reservation.lock_token = lock.token
        self.reservation.locked_price = locked_amount(lock, self.settings.price_comparison)
        self.reservation.currency = lock.price.currency
        self.reservation.payment_options = lock.price.payment_options

    def _check_price(self) -> bool:
        """
        Compare the locked price with the quote.

        Drift beyond the tolerance flags the room. With a zero tolerance any
        increase fails it. Returns False when the room failed.
        """
        quoted = self.reservation.quoted_price
        locked = self.reservation.locked_price
        if quoted is None or locked is None:
            return True

        difference = locked - quoted
        if abs(difference) <= PRICE_EPSILON:
            return True

        drift = price_drift_percent(quoted, locked)
        self.reservation.price_drift_percent = drift
        if abs(drift) <= Decimal(str(self.tolerance)):
            return True

        self.reservation.price_changed = True
        self.logger.warning(
            "price_changed",
            quoted=str(quoted),
            locked=str(locked),
            drift_percent=str(drift),
            tolerance=self.tolerance,
        )

        if self.tolerance == 0 and difference > 0:
            self.fail(failure(
                FailureCode.PRICE_CHANGED,
                f"Price increased from {quoted} to {locked} {self.reservation.currency or ''}".rstrip(),
            ))
            return False
        return True

    # Phase 2

    def _payment_amount(self) -> Tuple[Optional[Decimal], Optional[str]]:
        """Amount and currency of the payment option matching the payment type"""
        options = self.reservation.payment_options
        match: Optional[PaymentOption] = next(
            (option for option in options if self.payment and option.type == self.payment.type),
            options[0] if options else None,
        )
        if match is not None:
            return match.amount, match.currency_code or self.reservation.currency
        return self.reservation.locked_price, self.reservation.currency

    def _guest_names(self) -> Tuple[GuestName, ...]:
        request = self.reservation.request
        if request.guest_names:
            return request.guest_names
        if self.contact and (self.contact.first_name or self.contact.last_name):
            return (GuestName(self.contact.first_name, self.contact.last_name),)
        return ()

    async def submit(self) -> RoomReservation:
        """FORM_READY -> SUBMITTED. Attempted at most once per room."""
        if self.reservation.submit_attempts or self.state is not RoomState.FORM_READY:
            return self.reservation

        self.reservation.submit_attempts += 1
        if self.contact is None or self.payment is None:
            return self.fail(ClassifiedError(
                ErrorCategory.VALIDATION, False, 400, "Contact and payment details are required to submit"
            ))

        amount, currency_code = self._payment_amount()
        try:
            receipt = await self.client.submit(
                self.reservation.order_id,
                self.reservation.item_id,
                self._guest_names(),
                self.payment,
                self.reservation.idempotency_key,
                self.contact,
                amount=amount,
                currency_code=currency_code,
                language=self.language,
            )
        except Exception as e:
            return self._fail_with(e)

        if not receipt.accepted:
            return self.fail(failure(FailureCode.BOOKING_FAILED, "Upstream did not accept the booking"))

        self._transition(RoomState.SUBMITTED)
        return self.reservation

    def _poll_timed_out(self, timeout: float) -> RoomReservation:
        self.reservation.unconfirmed = True
        self.logger.info("poll_timeout", polls=self.reservation.poll_count, timeout=timeout)
        return self.reservation

    async def poll(self, timeout: Optional[float] = None) -> RoomReservation:
        """
        SUBMITTED -> PROCESSING -> CONFIRMED | FAILED.

        Polls on a fixed interval until a terminal status or the timeout. On
        timeout the room stays PROCESSING and is flagged unconfirmed.
        """
        if self.state is RoomState.SUBMITTED:
            self._transition(RoomState.PROCESSING)
        if self.state is not RoomState.PROCESSING:
            return self.reservation

        timeout = self.settings.poll_timeout if timeout is None else max(timeout, 0.0)
        deadline = self._clock() + timeout
        self.reservation.unconfirmed = False

        while True:
            remaining = deadline - self._clock()
            try:
                report = await asyncio.wait_for(
                    self.client.poll_status(self.reservation.order_id, self.reservation.idempotency_key),
                    timeout=max(remaining, POLL_CALL_MIN_WINDOW),
                )
            except asyncio.TimeoutError:
                return self._poll_timed_out(timeout)
            except Exception as e:
                classified = classify_error(e)
                if not classified.retryable:
                    return self.fail(classified)
                self.logger.warning("poll_transient_error", category=classified.category.value,
                                    error=classified.message)
            else:
                self.reservation.poll_count += 1
                if report.status is OrderStatus.CONFIRMED:
                    self._transition(RoomState.CONFIRMED)
                    return self.reservation
                if report.status is OrderStatus.FAILED:
                    return self.fail(failure(
                        FailureCode.BOOKING_FAILED,
                        report.message or f"Booking failed upstream ({report.raw_status})",
                    ))

            remaining = deadline - self._clock()
            if remaining <= 0:
                return self._poll_timed_out(timeout)
            await self._sleep(min(self.settings.poll_interval, remaining))

    async def run(self, poll_timeout: Optional[float] = None) -> RoomReservation:
        """Full single-room pipeline"""
        await self.prepare()
        await self.submit()
        return await self.poll(poll_timeout)
