"""
Error classification for upstream failures

Turns whatever the step client raised (transport error, HTTP status, error
envelope) into a ClassifiedError. Pure function of its input.
"""

import asyncio
import socket
from typing import Dict, Tuple

import httpx

from .error_models import (
    ClassifiedError,
    ErrorCategory,
    FailureCode,
    ReservationError,
    UpstreamEnvelopeError,
    UpstreamHTTPError,
    failure,
)

TRANSPORT_ERRORS: Tuple[type, ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    socket.gaierror,
)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Envelope error code -> (category, retryable, suggested status)
ENVELOPE_ERRORS: Dict[str, Tuple[ErrorCategory, bool, int]] = {
    "overlimit": (ErrorCategory.RATE_LIMITED, True, 429),
    "timeout": (ErrorCategory.UPSTREAM_UNAVAILABLE, True, 503),
    "unknown": (ErrorCategory.UPSTREAM_UNAVAILABLE, True, 503),
    "order_not_found": (ErrorCategory.NOT_FOUND, False, 404),
    "not_found": (ErrorCategory.NOT_FOUND, False, 404),
    "incorrect_credentials": (ErrorCategory.AUTH, False, 502),
    "contract_mismatch": (ErrorCategory.AUTH, False, 502),
    "double_booking_form": (ErrorCategory.VALIDATION, False, 409),
    "duplicate_reservation": (ErrorCategory.VALIDATION, False, 409),
}

NO_RATES_ENVELOPE_CODES = frozenset({"no_available_rates", "rate_not_found", "sandbox_restriction"})


def classify_error(exc: BaseException) -> ClassifiedError:
    """
    Classify a failure. Rules are checked in order, first match wins.
    """
    # Already classified further down the stack
    if isinstance(exc, ReservationError) and exc.classified is not None:
        return exc.classified

    if isinstance(exc, TRANSPORT_ERRORS):
        return ClassifiedError(
            category=ErrorCategory.UPSTREAM_UNAVAILABLE,
            retryable=True,
            status_code=503,
            message=f"Upstream unreachable: {type(exc).__name__}: {exc}",
            original=exc,
        )

    if isinstance(exc, UpstreamHTTPError):
        return _classify_http(exc)

    if isinstance(exc, UpstreamEnvelopeError):
        return _classify_envelope(exc)

    return ClassifiedError(
        category=ErrorCategory.UNKNOWN,
        retryable=False,
        status_code=500,
        message=str(exc) or type(exc).__name__,
        original=exc,
    )


def _classify_http(exc: UpstreamHTTPError) -> ClassifiedError:
    status = exc.status_code
    detail = exc.body_message

    if status in RETRYABLE_STATUS_CODES:
        if status == 429:
            suffix = f", retry after {exc.retry_after}s" if exc.retry_after else ""
            return ClassifiedError(
                category=ErrorCategory.RATE_LIMITED,
                retryable=True,
                status_code=429,
                message=f"{exc.operation} failed - rate limit exceeded{suffix}",
                original=exc,
            )
        return ClassifiedError(
            category=ErrorCategory.UPSTREAM_UNAVAILABLE,
            retryable=True,
            status_code=503,
            message=f"{exc.operation} failed - upstream temporarily unavailable ({status})",
            original=exc,
        )

    if status == 404 and "page not found" not in detail.lower():
        return ClassifiedError(
            category=ErrorCategory.NOT_FOUND,
            retryable=False,
            status_code=404,
            message=f"{exc.operation} failed - resource not found: {detail}".rstrip(": "),
            original=exc,
        )

    if status in (401, 403):
        return ClassifiedError(
            category=ErrorCategory.AUTH,
            retryable=False,
            status_code=502,
            message=f"{exc.operation} failed - upstream rejected credentials ({status})",
            original=exc,
        )

    if 400 <= status < 500:
        message = f"{exc.operation} failed - invalid request: {detail}" if detail else (
            f"{exc.operation} failed - invalid request ({status})"
        )
        if status == 404:
            message = f"{exc.operation} failed - upstream endpoint not found"
        return ClassifiedError(
            category=ErrorCategory.VALIDATION,
            retryable=False,
            status_code=400,
            message=message,
            original=exc,
        )

    return ClassifiedError(
        category=ErrorCategory.UNKNOWN,
        retryable=False,
        status_code=500,
        message=f"{exc.operation} failed with status {status}: {detail}".rstrip(": "),
        original=exc,
    )


def _classify_envelope(exc: UpstreamEnvelopeError) -> ClassifiedError:
    code = (exc.code or "unknown").lower()

    if code in NO_RATES_ENVELOPE_CODES:
        return failure(
            FailureCode.NO_AVAILABLE_RATES,
            f"{exc.operation} failed - rate can no longer be honoured ({code})",
            original=exc,
        )

    if code in ENVELOPE_ERRORS:
        category, retryable, status_code = ENVELOPE_ERRORS[code]
        return ClassifiedError(
            category=category,
            retryable=retryable,
            status_code=status_code,
            message=f"{exc.operation} failed: {code}",
            original=exc,
        )

    if code.endswith("_invalid") or code.startswith(("wrong_", "invalid_")):
        return ClassifiedError(
            category=ErrorCategory.VALIDATION,
            retryable=False,
            status_code=400,
            message=f"{exc.operation} failed - invalid request: {code}",
            original=exc,
        )

    return ClassifiedError(
        category=ErrorCategory.UNKNOWN,
        retryable=False,
        status_code=500,
        message=f"{exc.operation} failed: {code}",
        original=exc,
    )
