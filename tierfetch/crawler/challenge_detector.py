"""Protection/challenge page detection.

A pure, ordered scan over a marker table. Each marker maps to a protection
kind with a fixed confidence reflecting how specific it is. The first
matching marker wins, so the table is ordered from most to least specific.

Weak markers (a vendor name, the word "captcha") are only trusted on small
pages, where they cannot come from article text or a third-party script
embedded in an otherwise normal page.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

# Challenge and block pages are small; weak markers only count below this
SMALL_PAGE_BYTES = 20_000

_BLOCK_STATUSES = frozenset({401, 403, 429, 503})


class ProtectionKind(str, Enum):
    """Protection vendor / mechanism."""

    NONE = "none"
    CLOUDFLARE = "cloudflare"
    DATADOME = "datadome"
    INCAPSULA = "incapsula"
    CAPTCHA = "captcha"
    GENERIC = "generic"


@dataclass(frozen=True)
class ProtectionSignal:
    """Protection detected for one navigation. Derived fresh, never persisted."""

    present: bool
    kind: ProtectionKind = ProtectionKind.NONE
    confidence: float = 0.0
    evidence: str = ""

    def to_dict(self) -> dict:
        return {
            "present": self.present,
            "kind": self.kind.value,
            "confidence": self.confidence,
            "evidence": self.evidence,
        }


NO_PROTECTION = ProtectionSignal(present=False)


@dataclass(frozen=True)
class ProtectionMarker:
    """One row of the detection table.

    body: lowercase substrings searched in the HTML.
    headers: response header names (lowercase); only trusted when the response
        looks blocked (error status or small body), since vendors send them on
        every response.
    small_page_only: body substrings only count on small pages.
    """

    kind: ProtectionKind
    confidence: float
    evidence: str
    body: tuple[str, ...] = ()
    headers: tuple[str, ...] = ()
    small_page_only: bool = False


PROTECTION_MARKERS: tuple[ProtectionMarker, ...] = (
    ProtectionMarker(
        ProtectionKind.DATADOME,
        0.95,
        "datadome_challenge",
        body=(
            "captcha-delivery.com",
            "please enable js and disable any ad blocker",
        ),
        headers=("x-datadome", "x-dd-b"),
    ),
    ProtectionMarker(
        ProtectionKind.CLOUDFLARE,
        0.95,
        "cloudflare_js_challenge",
        body=(
            "_cf_chl_opt",
            "cf-browser-verification",
            "/cdn-cgi/challenge-platform/h/",
            "please wait while we verify your browser",
        ),
    ),
    # Cloudflare injects its bot-management loader
    # (/cdn-cgi/challenge-platform/scripts/jsd/main.js) into ordinary pages
    ProtectionMarker(
        ProtectionKind.CLOUDFLARE,
        0.95,
        "cloudflare_js_challenge",
        body=("/cdn-cgi/challenge-platform/", "cf_chl_"),
        small_page_only=True,
    ),
    ProtectionMarker(
        ProtectionKind.INCAPSULA,
        0.9,
        "incapsula_challenge",
        body=("_incapsula_resource", "/_incapsula_", "window._icdt", "incapsula incident id"),
        headers=("x-iinfo",),
    ),
    ProtectionMarker(
        ProtectionKind.CAPTCHA,
        0.9,
        "captcha_widget",
        body=(
            'class="g-recaptcha"',
            'class="h-captcha"',
            'class="cf-turnstile"',
            "challenges.cloudflare.com/turnstile",
            'src="https://hcaptcha.com',
            'src="https://www.hcaptcha.com',
            "www.google.com/recaptcha/api2/anchor",
            "grecaptcha.execute",
            "hcaptcha.execute",
            'id="captcha-container"',
        ),
    ),
    ProtectionMarker(
        ProtectionKind.CLOUDFLARE,
        0.85,
        "cloudflare_interstitial",
        body=(
            "checking your browser before accessing",
            "ddos protection by cloudflare",
            "attention required! | cloudflare",
        ),
        headers=("cf-mitigated",),
    ),
    ProtectionMarker(
        ProtectionKind.DATADOME,
        0.85,
        "datadome_tag",
        body=("datadome",),
        small_page_only=True,
    ),
    ProtectionMarker(
        ProtectionKind.CAPTCHA,
        0.8,
        "captcha_text",
        body=("captcha", "are you a human", "are you a robot", "verify you are human"),
        small_page_only=True,
    ),
    ProtectionMarker(
        ProtectionKind.GENERIC,
        0.8,
        "rate_limited",
        body=("too many requests", "rate limit exceeded", "please slow down"),
        small_page_only=True,
    ),
)


def _looks_blocked(content: str, status: int | None) -> bool:
    return (status is not None and status in _BLOCK_STATUSES) or len(content) < 5000


def _is_cloudflare_stub(content_lower: str, headers: Mapping[str, str]) -> bool:
    """Tiny Cloudflare-served page with almost no structure ("Just a moment")."""
    server = headers.get("server", "").lower()
    if "just a moment" in content_lower and (
        "cloudflare" in content_lower or "_cf_" in content_lower
    ):
        return True
    if "cloudflare" in server and headers.get("cf-ray") and len(content_lower) < 5000:
        return "<body" in content_lower and content_lower.count("<div") < 10
    return False


def detect_protection(
    content: str,
    headers: Mapping[str, str] | None = None,
    status: int | None = None,
) -> ProtectionSignal:
    """Detect a protection challenge in a response or rendered page.

    Args:
        content: Page HTML.
        headers: Response headers (any case).
        status: HTTP status code, when known.

    Returns:
        ProtectionSignal; NO_PROTECTION when nothing matched.
    """
    headers_lower = {k.lower(): str(v) for k, v in (headers or {}).items()}
    content_lower = content.lower()
    small = len(content) < SMALL_PAGE_BYTES
    blocked = _looks_blocked(content, status)

    for marker in PROTECTION_MARKERS:
        if marker.small_page_only and not small:
            continue
        hit = next((m for m in marker.body if m in content_lower), None)
        if hit is None and blocked:
            hit = next((h for h in marker.headers if h in headers_lower), None)
        if hit is not None:
            return ProtectionSignal(
                present=True,
                kind=marker.kind,
                confidence=marker.confidence,
                evidence=f"{marker.evidence}:{hit}",
            )

    if _is_cloudflare_stub(content_lower, headers_lower):
        return ProtectionSignal(
            present=True,
            kind=ProtectionKind.CLOUDFLARE,
            confidence=0.85,
            evidence="cloudflare_interstitial:stub_page",
        )

    if status == 429:
        return ProtectionSignal(
            present=True,
            kind=ProtectionKind.GENERIC,
            confidence=0.8,
            evidence="rate_limited:http_429",
        )

    return NO_PROTECTION


def is_rate_limited(content: str, status: int | None = None) -> bool:
    """True when the response is a rate-limit block rather than a challenge."""
    signal = detect_protection(content, status=status)
    return signal.present and signal.evidence.startswith("rate_limited")
