"""
ETG (WorldOTA / RateHawk) B2B v3 step client

Booking flow: prebook -> booking form -> booking finish -> finish status.
"""

from .client import EtgStepClient

__all__ = ["EtgStepClient"]
