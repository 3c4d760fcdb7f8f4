"""
Tests for upstream error classification
"""

import asyncio
import socket

import httpx
import pytest

from reservations.error_classifier import classify_error
from reservations.error_models import (
    ClassifiedError,
    ErrorCategory,
    FailureCode,
    OperationFailedError,
    PipelineError,
    UpstreamEnvelopeError,
    UpstreamHTTPError,
)


class TestTransportErrors:
    @pytest.mark.parametrize(
        "exc",
        [
            httpx.ConnectTimeout("connect timed out"),
            httpx.ReadTimeout("read timed out"),
            httpx.ConnectError("connection refused"),
            httpx.RemoteProtocolError("server disconnected"),
            asyncio.TimeoutError(),
            ConnectionResetError("reset by peer"),
            socket.gaierror("name resolution failed"),
        ],
    )
    def test_transport_errors_are_retryable(self, exc):
        classified = classify_error(exc)

        assert classified.category is ErrorCategory.UPSTREAM_UNAVAILABLE
        assert classified.retryable is True
        assert classified.status_code == 503
        assert classified.original is exc


class TestHTTPErrors:
    @pytest.mark.parametrize("status", [408, 500, 502, 503, 504])
    def test_transient_statuses(self, status):
        classified = classify_error(UpstreamHTTPError(status, operation="submit"))

        assert classified.category is ErrorCategory.UPSTREAM_UNAVAILABLE
        assert classified.retryable is True
        assert classified.status_code == 503

    def test_rate_limited_mentions_retry_after(self):
        classified = classify_error(UpstreamHTTPError(429, operation="lock_rate", retry_after=12))

        assert classified.category is ErrorCategory.RATE_LIMITED
        assert classified.retryable is True
        assert classified.status_code == 429
        assert "retry after 12s" in classified.message

    def test_resource_not_found(self):
        error = UpstreamHTTPError(404, {"message": "order not found"}, operation="poll_status")
        classified = classify_error(error)

        assert classified.category is ErrorCategory.NOT_FOUND
        assert classified.retryable is False
        assert classified.status_code == 404

    def test_page_not_found_is_a_bad_endpoint(self):
        error = UpstreamHTTPError(404, "<html>Page not found</html>", operation="lock_rate")
        classified = classify_error(error)

        assert classified.category is ErrorCategory.VALIDATION
        assert classified.retryable is False
        assert "endpoint not found" in classified.message

    @pytest.mark.parametrize("status", [401, 403])
    def test_credential_failures_are_upstream_auth(self, status):
        classified = classify_error(UpstreamHTTPError(status, operation="lock_rate"))

        assert classified.category is ErrorCategory.AUTH
        assert classified.retryable is False
        assert classified.status_code == 502

    def test_bad_request(self):
        error = UpstreamHTTPError(400, {"error": {"message": "invalid guests"}}, operation="submit")
        classified = classify_error(error)

        assert classified.category is ErrorCategory.VALIDATION
        assert classified.status_code == 400
        assert "invalid guests" in classified.message


class TestEnvelopeErrors:
    @pytest.mark.parametrize("code", ["no_available_rates", "rate_not_found"])
    def test_lost_rate_keeps_its_code(self, code):
        classified = classify_error(UpstreamEnvelopeError(code, operation="lock_rate"))

        assert classified.code == FailureCode.NO_AVAILABLE_RATES.value
        assert classified.category is ErrorCategory.NOT_FOUND
        assert classified.retryable is False
        assert classified.status_code == 409

    def test_overlimit_is_rate_limited(self):
        classified = classify_error(UpstreamEnvelopeError("overlimit"))

        assert classified.category is ErrorCategory.RATE_LIMITED
        assert classified.retryable is True

    @pytest.mark.parametrize("code", ["timeout", "unknown"])
    def test_upstream_hiccups_are_retryable(self, code):
        classified = classify_error(UpstreamEnvelopeError(code))

        assert classified.category is ErrorCategory.UPSTREAM_UNAVAILABLE
        assert classified.retryable is True

    def test_order_not_found(self):
        assert classify_error(UpstreamEnvelopeError("order_not_found")).category is ErrorCategory.NOT_FOUND

    def test_incorrect_credentials(self):
        assert classify_error(UpstreamEnvelopeError("incorrect_credentials")).category is ErrorCategory.AUTH

    @pytest.mark.parametrize("code", ["checkin_invalid", "wrong_residency", "invalid_guests"])
    def test_invalid_input_codes(self, code):
        classified = classify_error(UpstreamEnvelopeError(code))

        assert classified.category is ErrorCategory.VALIDATION
        assert classified.retryable is False


class TestAlreadyClassified:
    def test_pipeline_error_passes_through(self):
        error = PipelineError(FailureCode.MISSING_BOOKING_HASH, "no book_hash")
        classified = classify_error(error)

        assert classified is error.classified
        assert classified.code == "missing_booking_hash"
        assert classified.status_code == 400

    def test_operation_failed_error_passes_through(self):
        inner = ClassifiedError(ErrorCategory.UPSTREAM_UNAVAILABLE, True, 503, "down")
        error = OperationFailedError("submit", 1, inner)

        assert classify_error(error) is inner


def test_unexpected_exception_is_unknown():
    classified = classify_error(KeyError("hotels"))

    assert classified.category is ErrorCategory.UNKNOWN
    assert classified.retryable is False
    assert classified.status_code == 500
    assert classified.code == "unknown"


def test_error_detail_carries_room_index():
    detail = classify_error(UpstreamHTTPError(503)).to_error_detail(room_index=2)

    assert detail.room_index == 2
    assert detail.category is ErrorCategory.UPSTREAM_UNAVAILABLE
    assert detail.retryable is True
