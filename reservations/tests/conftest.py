"""
Pytest configuration for reservation tests
"""

import pytest

from reservations.config import ReservationSettings

# Shared upstream and fake client fixtures
from .fixtures import *  # noqa: F401, F403


@pytest.fixture
def settings() -> ReservationSettings:
    """Settings with test credentials and no real waiting"""
    return ReservationSettings(
        partner_id="test_partner",
        api_key="test_key",
        initial_delay=0.0,
        max_delay=0.0,
        poll_interval=0.0,
        poll_timeout=0.0,
    )


def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "integration: mark test as requiring external services"
    )
    config.addinivalue_line("markers", "slow: mark test as slow running")
