"""
ETG B2B v3 step client
Implements the four reservation steps over httpx with per-step timeouts,
retry budgets and client side endpoint rate limiting
"""

import re
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from ...config import ReservationSettings, get_settings
from ...contracts import (
    ContactInfo,
    GuestName,
    Guests,
    OrderForm,
    OrderStatus,
    PaymentMethod,
    PaymentOption,
    PriceInfo,
    RateLock,
    RateReference,
    RateReferenceKind,
    StatusReport,
    SubmissionReceipt,
)
from ...error_classifier import ENVELOPE_ERRORS
from ...error_models import (
    ClassifiedError,
    ErrorCategory,
    FailureCode,
    PipelineError,
    ReservationError,
    UpstreamEnvelopeError,
    UpstreamHTTPError,
)
from ...metrics import upstream_call_duration, upstream_calls_total
from ...rate_limiter import EndpointRateLimiter, RedisEndpointRateLimiter
from ...retry import DEFAULT_RETRY_CONFIGS, RetryConfig, RetryExecutor
from ...utils.logging import StepLogger, log_performance
from ...utils.residency import normalize_residency

PREBOOK_PATH = "/hotel/order/prebook/"
ORDER_FORM_PATH = "/hotel/order/booking/form/"
ORDER_FINISH_PATH = "/hotel/order/booking/finish/"
ORDER_STATUS_PATH = "/hotel/order/booking/finish/status/"
ORDER_INFO_PATH = "/hotel/order/info/"
ORDER_DOCUMENTS_PATH = "/hotel/order/documents/"

# Order ids generated by a frontend simulation, never issued upstream
FAKE_ORDER_ID = re.compile(r"^ORD-\d+$")

_CONFIRMED = frozenset({"ok", "confirmed", "completed"})
_PROCESSING = frozenset({"processing", "pending"})
_FAILED = frozenset({"failed", "error", "cancelled", "rejected"})

# Form response keys that are not part of the guest field schema
_FORM_KEYS = frozenset({"order_id", "item_id", "partner_order_id", "payment_types"})


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def parse_payment_types(payment_types: Optional[Sequence[Dict[str, Any]]]) -> Tuple[PaymentOption, ...]:
    """Map upstream payment_types entries to PaymentOption, skipping unpriced ones"""
    options: List[PaymentOption] = []
    for entry in payment_types or ():
        amount = _decimal(entry.get("amount"))
        show_amount = _decimal(entry.get("show_amount"))
        if amount is None and show_amount is None:
            continue
        options.append(
            PaymentOption(
                type=entry.get("type", ""),
                amount=amount if amount is not None else show_amount,
                currency_code=entry.get("currency_code") or entry.get("show_currency_code") or "",
                show_amount=show_amount,
            )
        )
    return tuple(options)


def map_order_status(raw_status: Optional[str]) -> OrderStatus:
    """Map an upstream order status string onto processing / confirmed / failed"""
    normalized = (raw_status or "").strip().lower()
    if normalized in _CONFIRMED:
        return OrderStatus.CONFIRMED
    if normalized in _FAILED:
        return OrderStatus.FAILED
    # Unknown values are treated as still in flight
    return OrderStatus.PROCESSING


class EtgStepClient:
    """ETG B2B v3 implementation of ReservationStepClient"""

    vendor_name = "etg"

    def __init__(
        self,
        settings: Optional[ReservationSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[EndpointRateLimiter] = None,
        retry_executor: Optional[RetryExecutor] = None,
        redis_client=None,
    ):
        self.settings = settings or get_settings()
        self.logger = StepLogger(f"reservations.adapters.{self.vendor_name}", self.vendor_name)
        self._client = http_client
        self._owns_client = http_client is None
        self._rate_limiter = rate_limiter
        if self._rate_limiter is None and self.settings.rate_limiting_enabled:
            # Upstream budgets are per account; redis shares the window across workers
            if redis_client is not None:
                self._rate_limiter = RedisEndpointRateLimiter(redis_client)
            else:
                self._rate_limiter = EndpointRateLimiter()
        self._executor = retry_executor or RetryExecutor()

        retry_defaults = dict(
            initial_delay=self.settings.initial_delay,
            max_delay=self.settings.max_delay,
        )
        self._read_retry = RetryConfig(
            max_retries=self.settings.max_retries,
            jitter_ratio=DEFAULT_RETRY_CONFIGS["read"].jitter_ratio,
            **retry_defaults,
        )
        self._submit_retry = RetryConfig(
            max_retries=self.settings.submit_max_retries,
            jitter_ratio=DEFAULT_RETRY_CONFIGS["submit"].jitter_ratio,
            **retry_defaults,
        )

    async def connect(self):
        """Create the pooled HTTP client unless one was injected"""
        if self._client is not None:
            return

        partner_id, api_key = self.settings.credentials()
        connection_limits = httpx.Limits(
            max_keepalive_connections=self.settings.max_keepalive_connections,
            max_connections=self.settings.max_connections,
            keepalive_expiry=30.0,
        )
        self._client = httpx.AsyncClient(
            base_url=self.settings.base_url,
            auth=httpx.BasicAuth(partner_id, api_key),
            timeout=httpx.Timeout(self.settings.timeouts.order_finish, connect=10.0),
            limits=connection_limits,
            headers={
                "User-Agent": "hotel-reservations/1.0",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )
        self._owns_client = True

        self.logger.info(
            "etg_connection_pool_configured",
            max_keepalive=connection_limits.max_keepalive_connections,
            max_connections=connection_limits.max_connections,
        )

    async def disconnect(self):
        """Close the HTTP client if this instance created it"""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "EtgStepClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.disconnect()

    # Transport

    async def _post(
        self,
        path: str,
        payload: Dict[str, Any],
        timeout: float,
        operation: str,
        accepted_statuses: Tuple[str, ...] = ("ok",),
    ) -> Dict[str, Any]:
        """
        Single upstream POST.

        Returns the whole envelope when its status is accepted. Raises
        UpstreamHTTPError for non-2xx answers and UpstreamEnvelopeError for
        error envelopes; transport errors propagate as raised by httpx.
        """
        if self._client is None:
            await self.connect()

        if self._rate_limiter is not None:
            await self._rate_limiter.acquire(path)

        start_time = time.perf_counter()
        try:
            response = await self._client.post(path, json=payload, timeout=timeout)
        except httpx.HTTPError as e:
            upstream_calls_total.labels(operation=operation, outcome="transport_error").inc()
            self.logger.log_api_call(
                operation=operation,
                request_data=payload,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                error=e,
            )
            raise
        finally:
            upstream_call_duration.labels(operation=operation).observe(time.perf_counter() - start_time)

        duration_ms = (time.perf_counter() - start_time) * 1000
        body = self._parse_body(response)

        if response.status_code >= 400:
            retry_after = response.headers.get("Retry-After")
            error = UpstreamHTTPError(
                response.status_code,
                body,
                operation=operation,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
            upstream_calls_total.labels(operation=operation, outcome="http_error").inc()
            self.logger.log_api_call(
                operation=operation,
                request_data=payload,
                duration_ms=duration_ms,
                status_code=response.status_code,
                error=error,
            )
            raise error

        if not isinstance(body, dict):
            upstream_calls_total.labels(operation=operation, outcome="invalid_body").inc()
            raise UpstreamEnvelopeError("unknown", operation, response.status_code, debug=body)

        status = str(body.get("status") or "").lower()
        if status not in accepted_statuses:
            error_code = body.get("error")
            if isinstance(error_code, dict):
                error_code = error_code.get("code") or error_code.get("message")
            error = UpstreamEnvelopeError(
                str(error_code or "unknown"), operation, response.status_code, debug=body.get("debug")
            )
            upstream_calls_total.labels(operation=operation, outcome="envelope_error").inc()
            self.logger.log_api_call(
                operation=operation,
                request_data=payload,
                duration_ms=duration_ms,
                status_code=response.status_code,
                error=error,
            )
            raise error

        upstream_calls_total.labels(operation=operation, outcome="ok").inc()
        self.logger.log_api_call(
            operation=operation,
            duration_ms=duration_ms,
            status_code=response.status_code,
        )
        return body

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _call(
        self,
        path: str,
        payload: Dict[str, Any],
        timeout: float,
        operation: str,
        retry: RetryConfig,
        accepted_statuses: Tuple[str, ...] = ("ok",),
    ) -> Dict[str, Any]:
        """_post under the retry executor"""
        return await self._executor.execute(
            lambda: self._post(path, payload, timeout, operation, accepted_statuses),
            retry.for_operation(operation),
        )

    @staticmethod
    def _ensure_real_order_id(order_id: str, operation: str):
        if not order_id:
            raise ReservationError(
                f"{operation} failed - order id is required",
                ClassifiedError(ErrorCategory.VALIDATION, False, 400, f"{operation} failed - order id is required"),
            )
        if FAKE_ORDER_ID.match(str(order_id)):
            message = f"Invalid order ID format: {order_id}. This appears to be a simulated order ID."
            raise ReservationError(message, ClassifiedError(ErrorCategory.VALIDATION, False, 400, message))

    # Reservation steps

    @log_performance("lock_rate")
    async def lock_rate(
        self,
        rate_reference: str,
        guests: Guests,
        residency: str,
        price_increase_percent: float,
    ) -> RateLock:
        """Validate availability and lock the price of a rate (prebook)"""
        reference = RateReference.parse(rate_reference)
        payload = {
            "hash": reference.value,
            "price_increase_percent": int(round(price_increase_percent)),
            "residency": normalize_residency(residency, self.settings.default_residency),
            "guests": [guests.to_payload()],
        }

        body = await self._call(PREBOOK_PATH, payload, self.settings.timeouts.prebook, "lock_rate", self._read_retry)
        data = body.get("data") or {}

        hotels = data.get("hotels") or []
        rates = (hotels[0].get("rates") or []) if hotels else []
        if not rates:
            raise PipelineError(
                FailureCode.NO_AVAILABLE_RATES,
                "Rate is no longer available: the upstream returned no hotels or rates",
            )

        rate = rates[0]
        token = rate.get("book_hash")
        if not token:
            raise PipelineError(FailureCode.MISSING_BOOKING_HASH, "Locked rate did not include a book_hash")

        options = parse_payment_types((rate.get("payment_options") or {}).get("payment_types"))
        if options:
            first = options[0]
            price = PriceInfo(amount=first.amount, currency=first.currency_code or self.settings.currency,
                              payment_options=options)
        else:
            price = PriceInfo(amount=None, currency=self.settings.currency)

        self.logger.info(
            "rate_locked",
            locked=token.startswith(RateReferenceKind.LOCKED.value),
            amount=str(price.amount) if price.amount is not None else None,
            currency=price.currency,
        )
        return RateLock(token=token, price=price, changes=data.get("changes") or {})

    @log_performance("collect_required_fields")
    async def collect_required_fields(
        self,
        lock_token: str,
        idempotency_key: str,
        language: str = "en",
        user_ip: str = "127.0.0.1",
    ) -> OrderForm:
        """Create the upstream order and fetch the booking form"""
        reference = RateReference.parse(lock_token)
        if not reference.is_locked:
            raise PipelineError(
                FailureCode.INVALID_RATE_REFERENCE,
                f'Booking form requires a locked rate reference starting with "{RateReferenceKind.LOCKED.value}"',
            )

        payload = {
            "partner_order_id": idempotency_key,
            "book_hash": reference.value,
            "language": language,
            "user_ip": user_ip,
        }
        body = await self._call(
            ORDER_FORM_PATH, payload, self.settings.timeouts.order_form, "collect_required_fields", self._read_retry
        )
        data = body.get("data") or {}

        order_id = data.get("order_id")
        item_id = data.get("item_id")
        if order_id is None or item_id is None:
            raise UpstreamEnvelopeError("unknown", "collect_required_fields", debug="form without order_id/item_id")

        return OrderForm(
            order_id=str(order_id),
            item_id=str(item_id),
            payment_types=parse_payment_types(data.get("payment_types")),
            form_schema={k: v for k, v in data.items() if k not in _FORM_KEYS},
        )

    @log_performance("submit")
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
        """Submit the booking; acceptance means queued, not confirmed"""
        payment_type: Dict[str, Any] = {
            "type": payment.type,
            "currency_code": currency_code or payment.currency_code or self.settings.currency,
        }
        if amount is not None:
            payment_type["amount"] = str(amount)

        payload = {
            "user": {"email": contact.email, "phone": contact.phone},
            "supplier_data": {
                "first_name_original": contact.first_name,
                "last_name_original": contact.last_name,
                "phone": contact.phone,
                "email": contact.email,
            },
            "partner": {"partner_order_id": idempotency_key},
            "language": language,
            "rooms": [{"guests": [guest.to_payload() for guest in guests]}],
            "payment_type": payment_type,
        }

        await self._call(
            ORDER_FINISH_PATH, payload, self.settings.timeouts.order_finish, "submit", self._submit_retry
        )
        self.logger.info("booking_submitted", order_id=order_id, item_id=item_id)
        return SubmissionReceipt(accepted=True, order_id=order_id)

    async def poll_status(self, order_id: str, idempotency_key: Optional[str] = None) -> StatusReport:
        """
        Single read of the booking status.

        The envelope status itself carries the state ("ok" or "processing").
        Error envelopes with a transient code are raised so the caller keeps
        polling; any other error code is a final failure of the booking.
        """
        self._ensure_real_order_id(order_id, "poll_status")

        payload: Dict[str, Any] = {"order_id": order_id}
        if idempotency_key:
            payload["partner_order_id"] = idempotency_key

        try:
            body = await self._call(
                ORDER_STATUS_PATH,
                payload,
                self.settings.timeouts.order_status,
                "poll_status",
                self._read_retry,
                accepted_statuses=tuple(_CONFIRMED | _PROCESSING),
            )
        except ReservationError as e:
            original = e.classified.original if e.classified else None
            if isinstance(original, UpstreamEnvelopeError):
                transient = ENVELOPE_ERRORS.get(original.code.lower(), (None, False, None))[1]
                if not transient:
                    return StatusReport(OrderStatus.FAILED, original.code, f"Booking failed: {original.code}")
            raise

        data = body.get("data") or {}
        raw_status = str(data.get("status") or body.get("status"))
        return StatusReport(status=map_order_status(raw_status), raw_status=raw_status, message=data.get("message"))

    # Read-only order lookups

    @log_performance("get_order_info")
    async def get_order_info(self, order_id: str) -> Dict[str, Any]:
        """Full order details after booking"""
        self._ensure_real_order_id(order_id, "get_order_info")
        body = await self._call(
            ORDER_INFO_PATH, {"order_id": order_id}, self.settings.timeouts.order_info,
            "get_order_info", self._read_retry,
        )
        return body.get("data") or {}

    @log_performance("get_order_documents")
    async def get_order_documents(self, order_id: str) -> Dict[str, Any]:
        """Voucher and invoice references for an order"""
        self._ensure_real_order_id(order_id, "get_order_documents")
        body = await self._call(
            ORDER_DOCUMENTS_PATH, {"order_id": order_id}, self.settings.timeouts.order_documents,
            "get_order_documents", self._read_retry,
        )
        return body.get("data") or {}
