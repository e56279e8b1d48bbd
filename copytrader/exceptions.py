"""
Custom exception hierarchy for the copy trading system.

Hierarchy:

    CopyTradingError (base)
    ├── OperationalError        transient/retryable (venue, network, timeouts)
    │   └── VenueError
    │       ├── VenueTransportError   DNS failure, connection reset, client timeout
    │       └── VenueHTTPError        venue answered with a non-2xx status
    │           ├── AuthenticationError   401 / 403
    │           └── RateLimitError        429
    ├── DataError               bad input or business rejection, fail this mirror only
    │   ├── ValidationError
    │   ├── MetadataUnavailableError
    │   ├── SizingRejectedError
    │   └── InsufficientFundsError
    ├── CredentialDecryptionError  stored credential cannot be decrypted
    └── InvariantError          illegal state transition, never swallowed

Rules:
    - OperationalError: the retrying executor decides, via error_classification,
      whether another attempt is made.
    - DataError: the mirror goes to failed with the error message, other
      followers are unaffected.
    - InvariantError: propagate.
"""
from typing import Optional


class CopyTradingError(Exception):
    """Base exception for all copy trading errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(CopyTradingError):
    """Transient error: venue API, network, timeouts."""
    pass


class VenueError(OperationalError):
    """Error raised while talking to the trading venue."""
    pass


class VenueTransportError(VenueError):
    """The request never produced an HTTP response (DNS, reset, timeout)."""

    def __init__(self, message: str, *, timeout: bool = False):
        super().__init__(message)
        self.timeout = timeout


class VenueHTTPError(VenueError):
    """The venue answered with a non-success HTTP status."""

    def __init__(self, status: int, message: str, payload: Optional[dict] = None):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.venue_message = message
        self.payload = payload or {}


class AuthenticationError(VenueHTTPError):
    """401/403 from the venue. Never retried."""
    pass


class RateLimitError(VenueHTTPError):
    """429 from the venue."""
    pass


# ============ DATA (bad input, fail this mirror) ============

class DataError(CopyTradingError):
    """Bad data or business rejection for a single mirror."""
    pass


class ValidationError(DataError):
    """Raised when input validation fails."""
    pass


class MetadataUnavailableError(DataError):
    """Instrument metadata is missing or matches the fallback-default shape."""
    pass


class SizingRejectedError(DataError):
    """Position sizing produced no valid order.

    Carries the typed rejection reason so callers can branch on it.
    """

    def __init__(self, reason, message: str):
        super().__init__(message)
        self.reason = reason


class InsufficientFundsError(DataError):
    """Follower cannot cover the required margin."""
    pass


# ============ SECURITY ============

class CredentialDecryptionError(CopyTradingError):
    """A stored credential could not be decrypted. Never falls back to ciphertext."""
    pass


# ============ INVARIANT (illegal transition) ============

class InvariantError(CopyTradingError):
    """Mirror lifecycle invariant violated. Must not be caught and ignored."""
    pass
