"""
Booking orchestrator

Fans a booking intent out to one state machine per room. All rooms are
locked and their forms collected before any room is submitted, so the caller
sees the full price/availability picture before payment is committed.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from .config import ConfigurationError, ReservationSettings, get_settings
from .contracts import (
    MAX_CHILD_AGE,
    MAX_ROOMS,
    BookingIntent,
    BookingOutcome,
    RateReference,
    ReservationStepClient,
    RoomState,
)
from .error_models import (
    ClassifiedError,
    ErrorCategory,
    FailureCode,
    IntentValidationError,
    PipelineError,
    failure,
)
from .metrics import booking_outcomes_total, bookings_in_flight, session_store_errors_total
from .schemas import BookingIntentPayload, BookingOutcomePayload
from .session_store import SessionStore, booking_key
from .state_machine import RoomReservationStateMachine
from .utils.logging import correlation_id, get_safe_logger

logger = get_safe_logger("reservations.orchestrator")


def room_idempotency_key(intent_key: str, index: int, room_count: int) -> str:
    """The intent key for a single room, '<key>-<n>' (1-based) for room n of many"""
    if room_count == 1:
        return intent_key
    return f"{intent_key}-{index + 1}"


def _invalid(message: str, room_index: Optional[int] = None) -> IntentValidationError:
    classified = ClassifiedError(ErrorCategory.VALIDATION, False, 400, message)
    return IntentValidationError(classified.to_error_detail(room_index=room_index))


def validate_intent(intent: BookingIntent):
    """Reject a malformed intent before any upstream call"""
    if not intent.idempotency_key or not intent.idempotency_key.strip():
        raise _invalid("Idempotency key (partner order id) is required")

    if not 1 <= len(intent.rooms) <= MAX_ROOMS:
        raise _invalid(f"A booking must contain between 1 and {MAX_ROOMS} rooms, got {len(intent.rooms)}")

    for index, room in enumerate(intent.rooms):
        try:
            RateReference.parse(room.rate_reference)
        except PipelineError as e:
            raise IntentValidationError(e.classified.to_error_detail(room_index=index)) from e

        if room.guests.adults < 1:
            raise _invalid("Each room needs at least one adult", index)

        for age in room.guests.children:
            if not 0 <= age <= MAX_CHILD_AGE:
                raise _invalid(f"Child age must be between 0 and {MAX_CHILD_AGE}, got {age}", index)


class BookingOrchestrator:
    """
    Books 1-6 rooms for one intent.

    Holds no per-booking state; concurrent book() calls only share the step
    client and the optional session store.
    """

    def __init__(
        self,
        client: ReservationStepClient,
        settings: Optional[ReservationSettings] = None,
        session_store: Optional[SessionStore] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.settings = settings or get_settings()
        self.session_store = session_store
        self._sleep = sleep

    def _machines(self, intent: BookingIntent) -> List[RoomReservationStateMachine]:
        room_count = len(intent.rooms)
        return [
            RoomReservationStateMachine(
                index,
                room,
                self.client,
                self.settings,
                idempotency_key=room_idempotency_key(intent.idempotency_key, index, room_count),
                contact=intent.contact,
                payment=intent.payment,
                language=intent.language,
                user_ip=intent.user_ip,
                sleep=self._sleep,
            )
            for index, room in enumerate(intent.rooms)
        ]

    async def _claim(self, intent: BookingIntent, machines: List[RoomReservationStateMachine]):
        """Reserve the idempotency key in the session store"""
        if self.session_store is None:
            return
        pending = BookingOutcome.from_rooms(intent.idempotency_key, [m.reservation for m in machines])
        try:
            claimed = await self.session_store.add(
                booking_key(intent.idempotency_key),
                BookingOutcomePayload.from_domain(pending).model_dump(mode="json"),
            )
        except Exception as e:
            # Nothing was sent upstream yet, the caller can retry with the same key
            session_store_errors_total.labels(operation="claim").inc()
            logger.error("booking_claim_failed", idempotency_key=intent.idempotency_key, error=str(e))
            detail = ClassifiedError(
                ErrorCategory.UPSTREAM_UNAVAILABLE, True, 503, f"Session store unavailable: {e}"
            ).to_error_detail()
            raise IntentValidationError(detail) from e
        if not claimed:
            detail = failure(
                FailureCode.DUPLICATE_IDEMPOTENCY_KEY,
                f"Idempotency key {intent.idempotency_key} was already used by another booking",
            ).to_error_detail()
            raise IntentValidationError(detail)

    async def _save(self, outcome: BookingOutcome):
        """Persist the outcome; rooms are already submitted, so a store failure is only logged"""
        if self.session_store is None:
            return
        try:
            await self.session_store.set(
                booking_key(outcome.idempotency_key),
                BookingOutcomePayload.from_domain(outcome).model_dump(mode="json"),
            )
        except Exception as e:
            session_store_errors_total.labels(operation="save").inc()
            logger.error(
                "outcome_save_failed",
                idempotency_key=outcome.idempotency_key,
                status=outcome.status.value,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _submit_and_poll(self, machine: RoomReservationStateMachine, poll_timeout: Optional[float]):
        await machine.submit()
        await machine.poll(poll_timeout)

    async def book(self, intent: BookingIntent, poll_timeout: Optional[float] = None) -> BookingOutcome:
        """
        Run the booking pipeline for every room of the intent.

        Raises IntentValidationError for a malformed intent, a reused key or an
        unreachable session store; every other failure is reported per room
        on the outcome.
        """
        validate_intent(intent)
        token = correlation_id.set(intent.idempotency_key)
        try:
            with bookings_in_flight.track_inprogress():
                machines = self._machines(intent)
                await self._claim(intent, machines)

                logger.info("booking_started", idempotency_key=intent.idempotency_key, rooms=len(machines))

                # Phase 1: lock and collect fields for every room
                await asyncio.gather(*(m.prepare() for m in machines))

                if intent.abort_on_price_change:
                    for machine in machines:
                        if machine.state is RoomState.FORM_READY and machine.reservation.price_changed:
                            machine.fail(failure(
                                FailureCode.PRICE_CHANGED,
                                f"Price changed by {machine.reservation.price_drift_percent}% since quote",
                            ))

                # Phase 2: submit and poll the rooms that are ready
                ready = [m for m in machines if m.state is RoomState.FORM_READY]
                await asyncio.gather(*(self._submit_and_poll(m, poll_timeout) for m in ready))

                outcome = BookingOutcome.from_rooms(intent.idempotency_key, [m.reservation for m in machines])
                await self._save(outcome)
        finally:
            correlation_id.reset(token)

        booking_outcomes_total.labels(status=outcome.status.value).inc()
        logger.info(
            "booking_finished",
            idempotency_key=outcome.idempotency_key,
            status=outcome.status.value,
            failed_rooms=outcome.failed_room_indexes,
            unconfirmed_rooms=outcome.unconfirmed_room_indexes,
        )
        return outcome

    async def book_payload(self, payload: Dict[str, Any], poll_timeout: Optional[float] = None) -> Dict[str, Any]:
        """Dict in, dict out entry point for the HTTP layer"""
        try:
            intent = BookingIntentPayload.model_validate(payload).to_domain()
        except ValidationError as e:
            errors = "; ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise _invalid(f"Invalid booking request: {errors}") from e

        outcome = await self.book(intent, poll_timeout)
        return BookingOutcomePayload.from_domain(outcome).model_dump(mode="json")

    async def resume_polling(self, idempotency_key: str, poll_timeout: Optional[float] = None) -> BookingOutcome:
        """Poll the unconfirmed rooms of a stored booking again"""
        if self.session_store is None:
            raise ConfigurationError("resume_polling requires a session store")

        stored = await self.session_store.get(booking_key(idempotency_key))
        if stored is None:
            detail = ClassifiedError(
                ErrorCategory.NOT_FOUND, False, 404, f"No booking found for idempotency key {idempotency_key}"
            ).to_error_detail()
            raise IntentValidationError(detail)

        rooms = BookingOutcomePayload.model_validate(stored).to_domain().rooms
        pollable = [
            RoomReservationStateMachine(
                room.index, room.request, self.client, self.settings, reservation=room, sleep=self._sleep
            )
            for room in rooms
            if room.state in (RoomState.SUBMITTED, RoomState.PROCESSING)
        ]

        token = correlation_id.set(idempotency_key)
        try:
            logger.info("booking_resumed", idempotency_key=idempotency_key, rooms=len(pollable))
            await asyncio.gather(*(m.poll(poll_timeout) for m in pollable))
            outcome = BookingOutcome.from_rooms(idempotency_key, rooms)
            await self._save(outcome)
        finally:
            correlation_id.reset(token)

        booking_outcomes_total.labels(status=outcome.status.value).inc()
        return outcome
