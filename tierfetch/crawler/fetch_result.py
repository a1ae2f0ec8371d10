"""Request/result data classes for the tiered fetcher."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class FetchTier(str, Enum):
    """Retrieval strategy, ordered from cheapest to most expensive."""

    DIRECT_HTTP = "direct_http"
    ENHANCED_HTTP = "enhanced_http"
    BROWSER = "browser"


class FetchIntent(str, Enum):
    """What the caller expects at the URL."""

    ARTICLE = "article"
    SOURCE = "source"  # listing / index page, judged by its links


@dataclass(frozen=True)
class FetchRequest:
    """A single retrieval request.

    timeout_budget_ms bounds the whole escalation ladder; None uses
    fetch.total_budget from settings.
    """

    url: str
    is_article_hint: bool = False
    timeout_budget_ms: int | None = None

    @property
    def intent(self) -> FetchIntent:
        return FetchIntent.ARTICLE if self.is_article_hint else FetchIntent.SOURCE


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one fetch() call. Never mutated after it is returned."""

    html: str
    success: bool
    tier_used: FetchTier
    status_code: int | None = None
    response_time_ms: int = 0
    final_url: str | None = None
    redirect_chain: tuple[str, ...] = field(default_factory=tuple)
    # Diagnostic message from the last tier when success is False
    error: str | None = None
    # Tiers attempted, in order
    tiers_attempted: tuple[FetchTier, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "success": self.success,
            "tier_used": self.tier_used.value,
            "status_code": self.status_code,
            "response_time_ms": self.response_time_ms,
            "final_url": self.final_url,
            "redirect_chain": list(self.redirect_chain),
            "content_length": len(self.html),
            "tiers_attempted": [t.value for t in self.tiers_attempted],
        }
        if self.error:
            result["error"] = self.error
        return result


@dataclass(frozen=True)
class HTTPResponse:
    """Response from one of the HTTP transports."""

    status: int
    headers: dict[str, str]
    text: str
    url: str
    redirect_chain: tuple[str, ...] = field(default_factory=tuple)
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400
