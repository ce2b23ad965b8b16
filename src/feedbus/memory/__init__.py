"""In-memory broker fake."""

from .broker import InMemoryBroker, InMemoryDelivery, StoredMessage

__all__ = ["InMemoryBroker", "InMemoryDelivery", "StoredMessage"]
