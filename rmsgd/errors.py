"""Error taxonomy for the messaging hub.

Runtime errors caused by clients or collaborators derive from ``RelayError``
and carry a ``reason`` that is safe to send back to the originating
connection. Errors that indicate a bug in connection bookkeeping derive from
``LifecycleError`` instead and are never reported to clients.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for errors scoped to a single connection or operation."""

    default_reason = "request failed"

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class AuthDenied(RelayError):
    """Connection refused during the handshake."""

    default_reason = "authentication failed"


class AuthInvalid(AuthDenied):
    default_reason = "invalid token"


class AuthExpired(AuthDenied):
    default_reason = "token expired"


class RecipientNotFound(RelayError):
    default_reason = "recipient not found"


class PersistenceFailure(RelayError):
    default_reason = "storage unavailable"


class ValidationFailure(RelayError):
    default_reason = "malformed payload"


class RateLimitExceeded(RelayError):
    default_reason = "rate limit exceeded"


class LifecycleError(RuntimeError):
    """Presence or room bookkeeping was driven out of order."""


class DuplicateRegistration(LifecycleError):
    pass


class UnknownRegistration(LifecycleError):
    pass


class InvalidTransition(LifecycleError):
    pass


class PresenceNotFound(LookupError):
    """No presence record exists for the user (never connected)."""
