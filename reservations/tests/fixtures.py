"""
Shared test fixtures for reservation tests
Uses pytest-httpx for upstream responses and a scripted fake step client
"""

from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Union

import pytest
from pytest_httpx import HTTPXMock

from reservations.contracts import (
    BookingIntent,
    ContactInfo,
    Guests,
    OrderForm,
    OrderStatus,
    PaymentMethod,
    PaymentOption,
    PriceInfo,
    RateLock,
    RoomRequest,
    StatusReport,
    SubmissionReceipt,
)
from reservations.retry import RetryExecutor

BASE_URL = "https://api.worldota.net/api/b2b/v3"
PREBOOK_URL = f"{BASE_URL}/hotel/order/prebook/"
FORM_URL = f"{BASE_URL}/hotel/order/booking/form/"
FINISH_URL = f"{BASE_URL}/hotel/order/booking/finish/"
STATUS_URL = f"{BASE_URL}/hotel/order/booking/finish/status/"
INFO_URL = f"{BASE_URL}/hotel/order/info/"


def envelope(data: Any = None, status: str = "ok", error: Optional[str] = None) -> Dict[str, Any]:
    return {"status": status, "data": data, "error": error, "debug": None}


@pytest.fixture
def prebook_response() -> Dict[str, Any]:
    """Prebook answer with one locked rate"""
    return envelope(
        {
            "hotels": [
                {
                    "id": "test_hotel",
                    "rates": [
                        {
                            "book_hash": "p-locked-123",
                            "payment_options": {
                                "payment_types": [
                                    {
                                        "type": "deposit",
                                        "amount": "150.00",
                                        "show_amount": "150.00",
                                        "currency_code": "USD",
                                    },
                                    {
                                        "type": "hotel",
                                        "amount": "162.50",
                                        "show_amount": "162.50",
                                        "currency_code": "USD",
                                    },
                                ]
                            },
                        }
                    ],
                }
            ],
            "changes": {"price_changed": False},
        }
    )


@pytest.fixture
def order_form_response() -> Dict[str, Any]:
    return envelope(
        {
            "order_id": 90210,
            "item_id": 4411,
            "partner_order_id": "booking-1",
            "payment_types": [
                {"type": "deposit", "amount": "150.00", "currency_code": "USD", "is_need_credit_card_data": False}
            ],
            "is_gender_specification_required": False,
            "upsell_data": [],
        }
    )


@pytest.fixture
def mock_prebook(httpx_mock: HTTPXMock, prebook_response: Dict[str, Any]):
    httpx_mock.add_response(method="POST", url=PREBOOK_URL, json=prebook_response)


@pytest.fixture
def mock_order_form(httpx_mock: HTTPXMock, order_form_response: Dict[str, Any]):
    httpx_mock.add_response(method="POST", url=FORM_URL, json=order_form_response)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def no_sleep(sleeps: List[float]):
    """Sleep replacement that records the requested delays"""

    async def _sleep(seconds: float):
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def retry_executor(no_sleep) -> RetryExecutor:
    return RetryExecutor(sleep=no_sleep)


# Scripted step client

Scripted = Union[str, BaseException]


class FakeStepClient:
    """
    In-memory ReservationStepClient.

    Behaviour is keyed by rate reference (lock) and order id (poll); poll
    scripts are consumed in order and the last entry repeats.
    """

    def __init__(
        self,
        price: Optional[str] = "100.00",
        prices: Optional[Dict[str, str]] = None,
        lock_errors: Optional[Dict[str, BaseException]] = None,
        form_error: Optional[BaseException] = None,
        submit_error: Optional[BaseException] = None,
        statuses: Sequence[Scripted] = ("confirmed",),
        statuses_by_order: Optional[Dict[str, Sequence[Scripted]]] = None,
        payment_options: Optional[Sequence[PaymentOption]] = None,
        lock_token: str = "p-locked",
    ):
        self.price = price
        self.prices = prices or {}
        self.lock_errors = lock_errors or {}
        self.form_error = form_error
        self.submit_error = submit_error
        self.statuses = list(statuses)
        self.statuses_by_order = {k: list(v) for k, v in (statuses_by_order or {}).items()}
        self.payment_options = payment_options
        self.lock_token = lock_token
        self.calls: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

    async def lock_rate(self, rate_reference, guests, residency, price_increase_percent) -> RateLock:
        self.calls["lock_rate"].append(
            {"rate_reference": rate_reference, "guests": guests, "tolerance": price_increase_percent}
        )
        if rate_reference in self.lock_errors:
            raise self.lock_errors[rate_reference]
        raw_price = self.prices.get(rate_reference, self.price)
        amount = Decimal(raw_price) if raw_price is not None else None
        if self.payment_options:
            options = tuple(self.payment_options)
        elif amount is None:
            options = ()
        else:
            options = (PaymentOption(type="deposit", amount=amount, currency_code="USD"),)
        return RateLock(token=self.lock_token, price=PriceInfo(amount, "USD", options))

    async def collect_required_fields(self, lock_token, idempotency_key, language="en", user_ip="127.0.0.1"):
        self.calls["collect_required_fields"].append({"lock_token": lock_token, "idempotency_key": idempotency_key})
        if self.form_error is not None:
            raise self.form_error
        return OrderForm(order_id=f"order-{idempotency_key}", item_id=f"item-{idempotency_key}")

    async def submit(self, order_id, item_id, guests, payment, idempotency_key, contact,
                     amount=None, currency_code=None, language="en"):
        self.calls["submit"].append(
            {"order_id": order_id, "guests": guests, "amount": amount, "idempotency_key": idempotency_key}
        )
        if self.submit_error is not None:
            raise self.submit_error
        return SubmissionReceipt(accepted=True, order_id=order_id)

    async def poll_status(self, order_id, idempotency_key=None) -> StatusReport:
        self.calls["poll_status"].append({"order_id": order_id})
        script = self.statuses_by_order.get(order_id, self.statuses)
        entry = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(entry, BaseException):
            raise entry
        return StatusReport(status=OrderStatus(entry), raw_status=entry)


@pytest.fixture
def fake_client() -> FakeStepClient:
    return FakeStepClient()


def make_room(
    rate_reference: str = "h-rate-1",
    adults: int = 2,
    children: Sequence[int] = (),
    tolerance: float = 0.0,
    quoted_price: Optional[str] = "100.00",
) -> RoomRequest:
    return RoomRequest(
        rate_reference=rate_reference,
        guests=Guests(adults=adults, children=tuple(children)),
        price_increase_percent=tolerance,
        quoted_price=Decimal(quoted_price) if quoted_price is not None else None,
    )


def make_intent(rooms: Sequence[RoomRequest], key: str = "booking-1", **kwargs) -> BookingIntent:
    return BookingIntent(
        idempotency_key=key,
        rooms=tuple(rooms),
        payment=PaymentMethod(type="deposit", currency_code="USD"),
        contact=ContactInfo(email="guest@example.com", phone="+15551234567", first_name="Ada", last_name="Lovelace"),
        **kwargs,
    )
