"""Consumption: the per-delivery decision tree and the consumer roles."""

from .engine import ConsumerStats, ConsumptionEngine, default_consumer_policy
from .handlers import CarbonAggregator, HandlerRegistry, LogSummaryHandler, summarize

__all__ = [
    "CarbonAggregator",
    "ConsumerStats",
    "ConsumptionEngine",
    "HandlerRegistry",
    "LogSummaryHandler",
    "default_consumer_policy",
    "summarize",
]
