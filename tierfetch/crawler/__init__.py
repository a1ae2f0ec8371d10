"""
tierfetch crawler module.

Tiered retrieval, protection handling, browser sessions, dynamic content
resolution and content validation.
"""

from tierfetch.crawler.browser_pool import (
    BrowserPool,
    NavigationResponse,
    Page,
    PageConfig,
    PlaywrightBrowserPool,
    WaitPolicy,
)
from tierfetch.crawler.challenge_detector import (
    ProtectionKind,
    ProtectionSignal,
    detect_protection,
)
from tierfetch.crawler.content_validator import (
    ValidationVerdict,
    classify_error_page,
    validate,
)
from tierfetch.crawler.dynamic_content import (
    DynamicContentResolver,
    ResolveReport,
    needs_dynamic_loading,
    rank_endpoints,
)
from tierfetch.crawler.errors import (
    BrowserDisconnectedError,
    FrameDetachedError,
    SessionClosedError,
    SessionFault,
    TierFetchError,
    TransportError,
)
from tierfetch.crawler.fetch_result import (
    FetchIntent,
    FetchRequest,
    FetchResult,
    FetchTier,
    HTTPResponse,
)
from tierfetch.crawler.fingerprint import BrowserProfile, FingerprintPool, get_fingerprint_pool
from tierfetch.crawler.http_fetcher import (
    DirectHTTPTransport,
    EnhancedHTTPTransport,
    SpoofedHTTPTransport,
)
from tierfetch.crawler.orchestrator import TieredFetchOrchestrator, fetch
from tierfetch.crawler.protection import ProtectionBypassEngine
from tierfetch.crawler.session import BrowserSession, SessionConfigurator, SessionOptions
from tierfetch.crawler.tls_client import (
    BinaryInventory,
    SpoofClientHandle,
    TLSClientConfig,
    TLSClientManager,
)

__all__ = [
    # Browser pool
    "BrowserPool",
    "NavigationResponse",
    "Page",
    "PageConfig",
    "PlaywrightBrowserPool",
    "WaitPolicy",
    # Protection
    "ProtectionKind",
    "ProtectionSignal",
    "detect_protection",
    "ProtectionBypassEngine",
    # Validation
    "ValidationVerdict",
    "classify_error_page",
    "validate",
    # Dynamic content
    "DynamicContentResolver",
    "ResolveReport",
    "needs_dynamic_loading",
    "rank_endpoints",
    # Errors
    "BrowserDisconnectedError",
    "FrameDetachedError",
    "SessionClosedError",
    "SessionFault",
    "TierFetchError",
    "TransportError",
    # Requests and results
    "FetchIntent",
    "FetchRequest",
    "FetchResult",
    "FetchTier",
    "HTTPResponse",
    # Identity
    "BrowserProfile",
    "FingerprintPool",
    "get_fingerprint_pool",
    # Transports
    "DirectHTTPTransport",
    "EnhancedHTTPTransport",
    "SpoofedHTTPTransport",
    # Sessions
    "BrowserSession",
    "SessionConfigurator",
    "SessionOptions",
    # TLS
    "BinaryInventory",
    "SpoofClientHandle",
    "TLSClientConfig",
    "TLSClientManager",
    # Orchestration
    "TieredFetchOrchestrator",
    "fetch",
]
