"""
Test PII redaction in reservation logs
"""

import json
import logging
from io import StringIO

import pytest

from reservations.utils.logging import StepLogger, StructuredFormatter, correlation_id
from reservations.utils.pii_redactor import PIIRedactor, PIIRedactorFilter, redact_pii
from reservations.utils.residency import normalize_residency


class TestPIIRedactor:
    """Test PII redaction functionality"""

    def test_redact_email(self):
        result = redact_pii("Send the voucher to john.doe@example.com today")

        assert "john.doe" not in result
        assert "<REDACTED>" in result

    @pytest.mark.parametrize("text", ["Call +1-555-123-4567", "Phone: +49 30 12345678", "Mobile +33612345678"])
    def test_redact_phone_numbers(self, text):
        result = PIIRedactor().redact_text(text)

        assert "<REDACTED>" in result
        assert not any(char.isdigit() for char in result)

    def test_redact_card_number(self):
        result = PIIRedactor().redact_text("card 4111 1111 1111 1111 used")

        assert "4111" not in result

    def test_redact_nested_payload(self):
        payload = {
            "user": {"email": "guest@example.com", "phone": "+15551234567"},
            "rooms": [{"guests": [{"first_name": "Ada", "last_name": "Lovelace"}]}],
            "partner": {"partner_order_id": "booking-1"},
        }

        redacted = PIIRedactor().redact_dict(payload)

        assert redacted["user"] == {"email": "<REDACTED>", "phone": "<REDACTED>"}
        assert redacted["rooms"][0]["guests"][0] == {"first_name": "<REDACTED>", "last_name": "<REDACTED>"}
        assert redacted["partner"] == {"partner_order_id": "booking-1"}
        assert payload["user"]["email"] == "guest@example.com"


class TestLoggingIntegration:
    def _capture(self, name: str):
        stream = StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(StructuredFormatter())
        logger = StepLogger(name, "etg")
        logger.logger.handlers = [handler]
        logger.logger.setLevel(logging.DEBUG)
        logger.logger.propagate = False
        return logger, stream

    def test_filter_redacts_message_and_extra_fields(self):
        logger, stream = self._capture("reservations.tests.redaction")

        logger.info("booking for guest@example.com", email="guest@example.com", order_id="abc")

        record = json.loads(stream.getvalue())
        assert "guest@example.com" not in stream.getvalue()
        assert record["email"] == "<REDACTED>"
        assert record["order_id"] == "abc"
        assert record["vendor"] == "etg"

    def test_api_call_log_redacts_request(self):
        logger, stream = self._capture("reservations.tests.api_call")

        logger.log_api_call("submit", request_data={"user": {"email": "a@b.com"}}, duration_ms=12.5, status_code=200)

        record = json.loads(stream.getvalue())
        assert record["operation"] == "submit"
        assert record["request"]["user"]["email"] == "<REDACTED>"

    def test_correlation_id_is_attached(self):
        logger, stream = self._capture("reservations.tests.correlation")
        token = correlation_id.set("booking-1")
        try:
            logger.info("lock started")
        finally:
            correlation_id.reset(token)

        assert json.loads(stream.getvalue())["correlation_id"] == "booking-1"

    def test_filter_is_installed_once(self):
        StepLogger("reservations.tests.once", "etg")
        logger = StepLogger("reservations.tests.once", "etg")

        assert sum(isinstance(f, PIIRedactorFilter) for f in logger.logger.filters) == 1


@pytest.mark.parametrize(
    "value,expected",
    [("US", "us"), ("en-GB", "gb"), ("de_de", "de"), ("", "us"), (None, "us"), ("!", "us")],
)
def test_normalize_residency(value, expected):
    assert normalize_residency(value) == expected
