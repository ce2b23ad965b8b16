"""feedbus — polling feed ingesters and RabbitMQ consumers with reliable delivery."""

from __future__ import annotations

from .dead_letter import DeadLetterInspector, DeadLetterRecord
from .envelope import MessageEnvelope, MessageSource, MessageType
from .exceptions import (
    ConfigurationError,
    DeadLetterError,
    FeedbusError,
    MessagingConnectionError,
    MessagingError,
    MessagingSerializationError,
    PermanentProcessingError,
    ProcessingError,
    SourceAuthenticationError,
    SourceFetchError,
    SourceRateLimitedError,
    TransientProcessingError,
    UnhandledMessageTypeError,
)
from .idempotency import IdempotencyFilter
from .memory import InMemoryBroker
from .ports import IBroker, IDelivery
from .retry import Disposition, RetryPolicy
from .serialization import EnvelopeSerializer
from .settings import FeedbusSettings
from .topology import Exchanges, Queues, Topology, default_topology

__all__ = [
    "ConfigurationError",
    "DeadLetterError",
    "DeadLetterInspector",
    "DeadLetterRecord",
    "Disposition",
    "EnvelopeSerializer",
    "Exchanges",
    "FeedbusError",
    "FeedbusSettings",
    "IBroker",
    "IDelivery",
    "IdempotencyFilter",
    "InMemoryBroker",
    "MessageEnvelope",
    "MessageSource",
    "MessageType",
    "MessagingConnectionError",
    "MessagingError",
    "MessagingSerializationError",
    "PermanentProcessingError",
    "ProcessingError",
    "Queues",
    "RetryPolicy",
    "SourceAuthenticationError",
    "SourceFetchError",
    "SourceRateLimitedError",
    "Topology",
    "TransientProcessingError",
    "UnhandledMessageTypeError",
    "default_topology",
]
