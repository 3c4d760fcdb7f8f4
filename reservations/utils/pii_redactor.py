"""
PII Redaction for reservation logs

Booking payloads carry contact details (e-mail, phone) and guest names.
This module masks them before log records leave the process.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional


class PIIRedactor:
    """
    Regex based redactor for reservation data

    Detects and redacts:
    - Email addresses
    - Phone numbers
    - Payment card numbers
    - Values of known personal fields (names, email, phone)
    """

    EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
    CARD_PATTERN = re.compile(r"\b(?:\d[ -]?){13,19}\b")
    PHONE_PATTERN = re.compile(r"(?<![\w-])\+?\d[\d\s().-]{7,}\d(?![\w-])")

    SENSITIVE_KEYS = frozenset(
        {
            "email",
            "phone",
            "first_name",
            "last_name",
            "guest_name",
            "card_number",
            "user_ip",
        }
    )

    def __init__(self, mask: str = "<REDACTED>", extra_keys: Optional[Iterable[str]] = None):
        self.mask = mask
        self.sensitive_keys = self.SENSITIVE_KEYS | frozenset(extra_keys or ())

    def redact_text(self, text: str) -> str:
        """Mask e-mail addresses, card numbers and phone numbers in free text"""
        if not text:
            return text
        text = self.EMAIL_PATTERN.sub(self.mask, text)
        text = self.CARD_PATTERN.sub(self.mask, text)
        return self.PHONE_PATTERN.sub(self.mask, text)

    def redact_value(self, key: Optional[str], value: Any) -> Any:
        if key is not None and key.lower() in self.sensitive_keys and value not in (None, ""):
            return self.mask
        if isinstance(value, str):
            return self.redact_text(value)
        if isinstance(value, dict):
            return self.redact_dict(value)
        if isinstance(value, (list, tuple)):
            return [self.redact_value(None, item) for item in value]
        return value

    def redact_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Return a redacted copy of a (possibly nested) mapping"""
        return {key: self.redact_value(key, value) for key, value in data.items()}


_default_redactor: Optional[PIIRedactor] = None


def get_default_redactor() -> PIIRedactor:
    global _default_redactor
    if _default_redactor is None:
        _default_redactor = PIIRedactor()
    return _default_redactor


def redact_pii(text: str) -> str:
    return get_default_redactor().redact_text(text)


class PIIRedactorFilter(logging.Filter):
    """Logging filter that redacts the message and any extra fields of a record"""

    # LogRecord attributes that never carry user data
    _RESERVED: List[str] = [
        "name", "msg", "args", "created", "msecs", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "exc_info", "exc_text",
        "stack_info", "pathname", "process", "processName", "relativeCreated",
        "thread", "threadName", "taskName",
    ]

    def __init__(self, redactor: Optional[PIIRedactor] = None):
        super().__init__()
        self.redactor = redactor or get_default_redactor()

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.redactor.redact_text(record.getMessage())
        record.args = None
        for key, value in list(record.__dict__.items()):
            if key in self._RESERVED:
                continue
            record.__dict__[key] = self.redactor.redact_value(key, value)
        return True
