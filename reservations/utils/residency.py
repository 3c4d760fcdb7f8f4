"""
Residency normalization

The upstream expects a lowercase two letter country code. Callers send
country codes ("US"), locale codes ("en-us") or nothing at all.
"""

import re
from typing import Optional

DEFAULT_RESIDENCY = "us"

_COUNTRY = re.compile(r"^[a-z]{2}$")
_LOCALE = re.compile(r"^[a-z]{2}[-_]([a-z]{2})$")


def normalize_residency(residency: Optional[str], default: str = DEFAULT_RESIDENCY) -> str:
    """Normalize a residency value to a two letter lowercase country code"""
    if not residency or not isinstance(residency, str):
        return default

    normalized = residency.strip().lower()

    if _COUNTRY.match(normalized):
        return normalized

    locale_match = _LOCALE.match(normalized)
    if locale_match:
        return locale_match.group(1)

    last_two = normalized[-2:]
    if _COUNTRY.match(last_two):
        return last_two

    return default
