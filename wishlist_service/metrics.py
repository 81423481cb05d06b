"""Business metrics for the wishlist service."""

from opentelemetry import metrics

from .logging_config import get_logger

logger = get_logger(__name__)

meter = metrics.get_meter(__name__)

# HTTP Request Metrics
http_request_duration = meter.create_histogram(
    name="http_request_duration_seconds",
    description="Duration of HTTP requests in seconds",
    unit="s",
)

http_requests_total = meter.create_counter(
    name="http_requests_total",
    description="Total number of HTTP requests",
)

http_request_errors = meter.create_counter(
    name="http_request_errors_total",
    description="Total number of HTTP request errors",
)

# Business Metrics
wishlists_created_total = meter.create_counter(
    name="wishlists_created_total",
    description="Total number of wishlists created",
)

idempotent_replays_total = meter.create_counter(
    name="idempotent_replays_total",
    description="Create requests answered from the idempotency ledger",
)

qr_redemptions_total = meter.create_counter(
    name="qr_redemptions_total",
    description="QR redemption attempts by outcome",
)

wishlist_transitions_total = meter.create_counter(
    name="wishlist_transitions_total",
    description="Wishlist status transitions by target status",
)


def record_http_request(method: str, endpoint: str, status_code: int, duration: float):
    """Record HTTP request metrics."""
    labels = {"method": method, "endpoint": endpoint, "status_code": str(status_code)}

    http_request_duration.record(duration, labels)
    http_requests_total.add(1, labels)

    if status_code >= 400:
        http_request_errors.add(1, labels)


def record_wishlist_created(source: str):
    """Record when a wishlist is created."""
    wishlists_created_total.add(1, {"source": source})


def record_idempotent_replay(operation_type: str):
    """Record a replayed response."""
    idempotent_replays_total.add(1, {"operation_type": operation_type})


def record_redemption(outcome: str):
    """Record a redemption attempt (success, conflict, expired, ...)."""
    qr_redemptions_total.add(1, {"outcome": outcome})


def record_transition(to_status: str):
    """Record a status transition."""
    wishlist_transitions_total.add(1, {"to_status": to_status})


logger.info("Business metrics instruments created")
