"""Ingestion gateway: dedup, rate limiting, and sequential dispatch."""

from chat_orchestrator.gateway.dedup import DedupCache
from chat_orchestrator.gateway.gateway import CompletionCallback, IngestionGateway
from chat_orchestrator.gateway.queue import MessageQueue
from chat_orchestrator.gateway.rate_limiter import RateLimiter

__all__ = [
    "CompletionCallback",
    "DedupCache",
    "IngestionGateway",
    "MessageQueue",
    "RateLimiter",
]
