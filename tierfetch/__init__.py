"""
tierfetch: adversarial tiered web content retrieval.

Fetches a URL with the cheapest strategy that yields valid content,
escalating from direct HTTP to browser-like HTTP to a stealth browser.
"""

from tierfetch.crawler.fetch_result import FetchIntent, FetchRequest, FetchResult, FetchTier
from tierfetch.crawler.orchestrator import (
    TieredFetchOrchestrator,
    close_orchestrator,
    fetch,
    get_orchestrator,
)

__version__ = "0.1.0"

__all__ = [
    "FetchIntent",
    "FetchRequest",
    "FetchResult",
    "FetchTier",
    "TieredFetchOrchestrator",
    "close_orchestrator",
    "fetch",
    "get_orchestrator",
]
