"""Exception hierarchy for feedbus."""

from __future__ import annotations


class FeedbusError(Exception):
    """Root exception for the feedbus package."""


class ConfigurationError(FeedbusError):
    """Raised when required configuration is missing or invalid."""


# ── Messaging ────────────────────────────────────────────────────────


class MessagingError(FeedbusError):
    """Base class for all broker-related errors."""


class MessagingConnectionError(MessagingError):
    """Raised when connectivity to the message broker fails.

    Also raised after the connection manager has been closed, and when the
    bounded reconnect loop gives up.
    """


class MessagingSerializationError(MessagingError):
    """Raised when message serialization or deserialization fails."""


class DeadLetterError(MessagingError):
    """Raised when a dead-lettered message cannot be inspected or replayed."""

    def __init__(self, message: str, message_id: str | None = None) -> None:
        self.message_id = message_id
        super().__init__(message)


# ── Message processing ───────────────────────────────────────────────


class ProcessingError(FeedbusError):
    """Base class for handler failures raised while processing a message."""


class TransientProcessingError(ProcessingError):
    """A temporary failure; the message may succeed if delivered again."""


class PermanentProcessingError(ProcessingError):
    """A failure that will not go away on redelivery (routed to dead-letter)."""


class UnhandledMessageTypeError(PermanentProcessingError):
    """Raised when no handler is registered for an envelope type."""

    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        super().__init__(f"No handler registered for message type {event_type!r}")


# ── Data sources ─────────────────────────────────────────────────────


class SourceFetchError(FeedbusError):
    """Raised when a data source fetch fails (network, status or shape)."""

    def __init__(self, source: str, message: str) -> None:
        self.source = source
        super().__init__(f"[{source}] {message}")


class SourceRateLimitedError(SourceFetchError):
    """The source signalled that its throughput limit was exceeded (HTTP 429)."""


class SourceAuthenticationError(SourceFetchError):
    """The source rejected our credentials; needs operator intervention."""
