"""
Exception taxonomy for the tiered fetcher.

Validation failures are not exceptions (see ValidationVerdict). Everything
here is caught inside the package; fetch() converts leftovers into a failed
FetchResult.
"""

from enum import Enum


class TierFetchError(Exception):
    """Base exception for tierfetch errors."""

    def __init__(self, message: str, *, url: str | None = None):
        super().__init__(message)
        self.message = message
        self.url = url


class TransportError(TierFetchError):
    """Raised when an HTTP request fails (connection refused, timeout, HTTP error status)."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status: int | None = None,
        body: str = "",
    ):
        super().__init__(message, url=url)
        self.status = status
        # Partial body when the server answered with an error status
        self.body = body


class SessionFault(TierFetchError):
    """Base class for browser session faults during navigation."""


class FrameDetachedError(SessionFault):
    """The main frame was detached mid-navigation; recoverable in place."""


class BrowserDisconnectedError(SessionFault):
    """The browser process went away; only a full restart helps."""


class SessionClosedError(TierFetchError):
    """Raised when a closed BrowserSession is used."""


class TLSClientUnavailableError(TierFetchError):
    """The native TLS-spoofing client failed compatibility validation."""


class FaultKind(str, Enum):
    """Classification of a navigation exception."""

    FRAME_DETACHED = "frame_detached"
    DISCONNECTED = "disconnected"
    TIMEOUT = "timeout"
    OTHER = "other"


FRAME_DETACHED_MARKERS = (
    "navigating frame was detached",
    "frame was detached",
    "frame detached",
)

DISCONNECTED_MARKERS = (
    "target page, context or browser has been closed",
    "browser has been closed",
    "browser disconnected",
    "connection closed",
    "protocol error",
    "target closed",
)


def classify_fault(exc: BaseException) -> FaultKind:
    """Classify a browser exception by type and message.

    Frame-detach markers are checked first: Playwright reports some detached
    frames as protocol errors.
    """
    if isinstance(exc, FrameDetachedError):
        return FaultKind.FRAME_DETACHED
    if isinstance(exc, BrowserDisconnectedError):
        return FaultKind.DISCONNECTED

    message = str(exc).lower()
    if any(marker in message for marker in FRAME_DETACHED_MARKERS):
        return FaultKind.FRAME_DETACHED
    if any(marker in message for marker in DISCONNECTED_MARKERS):
        return FaultKind.DISCONNECTED
    if isinstance(exc, TimeoutError) or "timeout" in type(exc).__name__.lower():
        return FaultKind.TIMEOUT
    return FaultKind.OTHER


def to_session_fault(exc: BaseException, *, url: str | None = None) -> SessionFault | None:
    """Wrap a raw browser exception in the matching SessionFault, if any."""
    if isinstance(exc, SessionFault):
        return exc
    kind = classify_fault(exc)
    if kind == FaultKind.FRAME_DETACHED:
        return FrameDetachedError(str(exc), url=url)
    if kind == FaultKind.DISCONNECTED:
        return BrowserDisconnectedError(str(exc), url=url)
    return None
