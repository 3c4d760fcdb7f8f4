"""
Utility modules for the reservation pipeline
"""

from .pii_redactor import (
    PIIRedactor,
    PIIRedactorFilter,
    get_default_redactor,
    redact_pii,
)

from .logging import (
    StepLogger,
    SafeLogger,
    StructuredFormatter,
    get_safe_logger,
    log_performance,
    correlation_id,
)

from .residency import normalize_residency, DEFAULT_RESIDENCY

__all__ = [
    # PII Redaction
    "PIIRedactor",
    "PIIRedactorFilter",
    "get_default_redactor",
    "redact_pii",
    # Logging
    "StepLogger",
    "SafeLogger",
    "StructuredFormatter",
    "get_safe_logger",
    "log_performance",
    "correlation_id",
    # Residency
    "normalize_residency",
    "DEFAULT_RESIDENCY",
]
