"""
Venue error classification.

Decides, for any exception raised by an order call, whether another attempt
is worthwhile and which human-readable message goes onto the mirror record.

    transport failure / timeout      retryable
    5xx, 429                         retryable
    401 / 403                        final
    400 mentioning timeout/temporary retryable
    other 400                        final, humanized
    anything else                    final
"""
from dataclasses import dataclass

from copytrader.exceptions import (
    AuthenticationError,
    DataError,
    RateLimitError,
    VenueHTTPError,
    VenueTransportError,
)

_TRANSIENT_400_MARKERS = ("timeout", "temporary")

# First match wins; keys are lowercase substrings of the venue message
_HUMANIZED_400 = (
    (("insufficient", "balance"), "Insufficient balance on exchange to place this order"),
    (("insufficient", "margin"), "Insufficient margin on exchange to place this order"),
    (("leverage",), "Leverage rejected by exchange"),
    (("quantity",), "Order quantity rejected by exchange"),
    (("price",), "Order price rejected by exchange"),
)


@dataclass(frozen=True)
class ErrorClassification:
    retryable: bool
    message: str


def humanize_bad_request(venue_message: str) -> str:
    lowered = venue_message.lower()
    for markers, text in _HUMANIZED_400:
        if all(m in lowered for m in markers):
            return f"{text}: {venue_message}"
    return f"Bad request: {venue_message or 'Invalid order parameters'}"


def classify_error(exc: BaseException) -> ErrorClassification:
    """Classify an exception raised while placing an order."""
    if isinstance(exc, VenueTransportError):
        if exc.timeout:
            return ErrorClassification(True, "Order timeout - connection failed")
        return ErrorClassification(True, f"Connection failed: {exc}")

    if isinstance(exc, AuthenticationError):
        if exc.status == 401:
            return ErrorClassification(False, "Invalid API credentials")
        return ErrorClassification(False, "API access forbidden - check trading permissions")

    if isinstance(exc, RateLimitError):
        return ErrorClassification(True, "Rate limit exceeded")

    if isinstance(exc, VenueHTTPError):
        if exc.status >= 500:
            return ErrorClassification(True, f"Exchange error {exc.status}: {exc.venue_message}")
        if exc.status == 400:
            lowered = exc.venue_message.lower()
            if any(marker in lowered for marker in _TRANSIENT_400_MARKERS):
                return ErrorClassification(True, f"Bad request: {exc.venue_message}")
            return ErrorClassification(False, humanize_bad_request(exc.venue_message))
        return ErrorClassification(False, f"Order failed ({exc.status}): {exc.venue_message}")

    if isinstance(exc, DataError):
        return ErrorClassification(False, str(exc))

    return ErrorClassification(False, f"Order failed: {exc}")
