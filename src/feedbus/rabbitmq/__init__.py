"""RabbitMQ transport adapter (aio-pika)."""

from __future__ import annotations

from .broker import RabbitMQBroker, RabbitMQDelivery
from .connection import ConnectionManager, ConnectionState

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "RabbitMQBroker",
    "RabbitMQDelivery",
]
