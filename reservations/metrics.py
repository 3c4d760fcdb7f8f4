"""
Prometheus metrics for the reservation pipeline
"""

from prometheus_client import Counter, Gauge, Histogram

# Upstream call metrics
upstream_calls_total = Counter(
    'reservations_upstream_calls_total',
    'Upstream step calls',
    ['operation', 'outcome']
)

upstream_call_duration = Histogram(
    'reservations_upstream_call_duration_seconds',
    'Upstream step call duration',
    ['operation']
)

retry_attempts_total = Counter(
    'reservations_retry_attempts_total',
    'Retries scheduled by the retry executor',
    ['operation', 'category']
)

rate_limit_waits_total = Counter(
    'reservations_rate_limit_waits_total',
    'Calls delayed by the client side endpoint rate limiter',
    ['endpoint']
)

# Pipeline metrics
room_transitions_total = Counter(
    'reservations_room_transitions_total',
    'Room state machine transitions',
    ['state']
)

room_failures_total = Counter(
    'reservations_room_failures_total',
    'Rooms that ended in FAILED',
    ['code']
)

booking_outcomes_total = Counter(
    'reservations_booking_outcomes_total',
    'Booking outcomes',
    ['status']
)

bookings_in_flight = Gauge(
    'reservations_bookings_in_flight',
    'Bookings currently being orchestrated'
)

session_store_errors_total = Counter(
    'reservations_session_store_errors_total',
    'Session store reads or writes that failed',
    ['operation']
)
