"""
Content validation for fetched HTML.

Decides whether a page is an error/challenge page and whether its content is
sufficient, so the orchestrator can decide to escalate to the next tier.

Error classification is a declarative rule table scanned in priority order:
vendor error signatures > URL error markers > accumulated generic patterns >
minimal-content heuristic. validate() is pure: the same (html, url, rules)
always produces the same verdict.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from tierfetch.crawler.fetch_result import FetchIntent
from tierfetch.utils.config import get_settings
from tierfetch.utils.domain_rules import DomainRule, DomainRuleManager, get_domain_rule_manager


@dataclass(frozen=True)
class ErrorRule:
    """One entry of the error-page rule table."""

    pattern: re.Pattern[str]
    kind: str
    confidence: float


def _rule(pattern: str, kind: str, confidence: float) -> ErrorRule:
    return ErrorRule(re.compile(pattern, re.IGNORECASE), kind, confidence)


# Protection-vendor error signatures, matched against raw HTML
VENDOR_ERROR_RULES: tuple[ErrorRule, ...] = (
    _rule(r"cloudflare\.com/5xx-error", "cloudflare_error", 0.95),
    _rule(r"cf-error-details", "cloudflare_error", 0.95),
    _rule(r"cf-error-overview", "cloudflare_error", 0.95),
    _rule(r"cf-wrapper[^>]{0,80}cf-error", "cloudflare_error", 0.95),
    _rule(r"cloudflare\s+ray\s+id", "cloudflare_error", 0.95),
    _rule(r"error\s+1\d{3}\b[^<]{0,80}cloudflare", "cloudflare_error", 0.95),
    _rule(r"web\s+server\s+is\s+down", "cloudflare_error", 0.95),
    _rule(r"origin\s+is\s+unreachable", "cloudflare_error", 0.95),
    _rule(r"bad\s+gateway[^<]{0,40}cloudflare", "cloudflare_error", 0.95),
)

# Error markers embedded in the (final) URL
URL_ERROR_RULES: tuple[ErrorRule, ...] = (
    _rule(r"error-landing", "error_url", 0.9),
    _rule(r"5xx-error", "error_url", 0.9),
)

# Generic patterns, matched line by line against visible text. Confidence is a
# floor: the verdict uses max(min(0.9, 0.3 + 0.2 * matches), highest floor).
GENERIC_ERROR_RULES: tuple[ErrorRule, ...] = (
    _rule(r"error\s*\d{3}", "generic_error", 0.0),
    _rule(r"\b(404|403|500|502|503|504)\b.*error", "generic_error", 0.0),
    _rule(r"page.*not.*found", "generic_error", 0.0),
    _rule(r"access.*denied", "generic_error", 0.0),
    _rule(r"forbidden.*access", "generic_error", 0.0),
    _rule(r"service.*unavailable", "generic_error", 0.0),
    _rule(r"bad.*gateway", "generic_error", 0.0),
    _rule(r"gateway.*timeout", "generic_error", 0.0),
    _rule(r"request.*timeout", "generic_error", 0.0),
    _rule(r"too.*many.*requests", "generic_error", 0.0),
    _rule(r"rate.*limit.*exceeded", "generic_error", 0.0),
    _rule(r"under.*maintenance", "generic_error", 0.0),
    _rule(r"temporarily.*unavailable", "generic_error", 0.0),
    _rule(r"scheduled.*maintenance", "generic_error", 0.0),
    _rule(r"be.*right.*back", "generic_error", 0.0),
    _rule(r"security.*check", "security_check", 0.8),
    _rule(r"human.*verification", "security_check", 0.8),
    _rule(r"bot.*protection", "security_check", 0.8),
    _rule(r"verify.*you.*are.*human", "security_check", 0.8),
    _rule(r"are\s+you\s+a\s+(human|robot)", "security_check", 0.8),
    _rule(r"\bcaptcha\b", "security_check", 0.8),
    _rule(r"challenge.*required", "security_check", 0.8),
    _rule(r"blocked.*security.*reasons", "security_check", 0.8),
)

MINIMAL_CONTENT_KIND = "minimal_content"
MINIMAL_CONTENT_CONFIDENCE = 0.6

# Error pages are short; generic patterns are only scanned on thin pages so
# that headlines on a healthy listing page do not read as error text.
GENERIC_SCAN_TEXT_LIMIT = 10_000

ARTICLE_LINK_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"/article/",
        r"/news/",
        r"/blog/",
        r"/post/",
        r"/story/",
        r"/\d{4}/\d{2}/",
        r"/p/[\w-]+",
        r"/reports?/",
        r"/analysis/",
        r"/opinion/",
    )
)

ERROR_LINK_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"5xx-error",
        r"error-landing",
        r"/errors?(/|\.html?|\?|$)",
        r"/(403|404|500|502|503)(/|\.html?|\?|$)",
        r"page-not-found",
        r"access-denied",
        r"captcha",
    )
)

FETCH_ATTRIBUTES = ("hx-get", "data-hx-get")
_SKIPPED_SCHEMES = ("javascript:", "mailto:", "tel:", "data:")


@dataclass(frozen=True)
class ErrorClassification:
    """Result of error-page classification."""

    is_error_page: bool
    kind: str | None = None
    confidence: float = 0.0
    matches: tuple[str, ...] = ()


@dataclass(frozen=True)
class ValidationVerdict:
    """Validity and sufficiency of one page.

    confidence is the confidence of the error classification (0.0 when the
    page is not an error page).
    """

    is_valid: bool
    is_error_page: bool
    error_kind: str | None
    confidence: float
    link_count: int
    article_link_ratio: float
    error_link_ratio: float
    issues: tuple[str, ...] = ()
    content_length: int = 0
    domain_rule: str | None = None
    article_links: int = 0
    error_links: int = 0

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "is_error_page": self.is_error_page,
            "error_kind": self.error_kind,
            "confidence": self.confidence,
            "link_count": self.link_count,
            "article_link_ratio": round(self.article_link_ratio, 3),
            "error_link_ratio": round(self.error_link_ratio, 3),
            "issues": list(self.issues),
            "content_length": self.content_length,
            "domain_rule": self.domain_rule,
        }


@dataclass
class _ParsedPage:
    links: list[str] = field(default_factory=list)
    text: str = ""
    has_required_marker: bool = True


def _parse(html: str, url: str, required_markers: tuple[str, ...]) -> _ParsedPage:
    soup = BeautifulSoup(html, "html.parser")
    page = _ParsedPage()

    seen: set[str] = set()
    candidates = [a.get("href") for a in soup.find_all("a", href=True)]
    for attr in FETCH_ATTRIBUTES:
        candidates.extend(el.get(attr) for el in soup.find_all(attrs={attr: True}))

    for raw in candidates:
        if not isinstance(raw, str):
            continue
        href = raw.strip()
        if not href or href == "/" or href.startswith("#"):
            continue
        if href.lower().startswith(_SKIPPED_SCHEMES):
            continue
        absolute = urljoin(url, href)
        if urlparse(absolute).scheme not in ("http", "https"):
            continue
        if absolute not in seen:
            seen.add(absolute)
            page.links.append(absolute)

    if required_markers:
        page.has_required_marker = any(
            soup.select_one(selector) is not None for selector in required_markers
        )

    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    page.text = soup.get_text("\n", strip=True)
    return page


def classify_error_page(
    html: str,
    url: str,
    text: str | None = None,
    minimal_content_chars: int | None = None,
) -> ErrorClassification:
    """Classify html/url as an error page; first matching rule group wins.

    Args:
        html: Raw HTML.
        url: Page URL (final URL when known).
        text: Visible text; extracted from html when None.
        minimal_content_chars: Text length below which an "error" substring
            alone marks the page. Uses settings if None.
    """
    if minimal_content_chars is None:
        minimal_content_chars = get_settings().validation.minimal_content_chars
    if text is None:
        text = _parse(html, url, ()).text

    for rule in VENDOR_ERROR_RULES:
        if rule.pattern.search(html):
            return ErrorClassification(True, rule.kind, rule.confidence, (rule.pattern.pattern,))

    for rule in URL_ERROR_RULES:
        if rule.pattern.search(url):
            return ErrorClassification(True, rule.kind, rule.confidence, (rule.pattern.pattern,))

    if len(text) <= GENERIC_SCAN_TEXT_LIMIT:
        lines = text.splitlines()
        matched = [
            rule for rule in GENERIC_ERROR_RULES if any(rule.pattern.search(line) for line in lines)
        ]
        if matched:
            strongest = max(matched, key=lambda r: r.confidence)
            accumulated = min(0.9, 0.3 + 0.2 * len(matched))
            confidence = min(0.9, max(accumulated, strongest.confidence))
            kind = strongest.kind if strongest.confidence > 0 else "generic_error"
            return ErrorClassification(
                True, kind, round(confidence, 2), tuple(r.pattern.pattern for r in matched)
            )

    if len(text) < minimal_content_chars and "error" in text.lower():
        return ErrorClassification(True, MINIMAL_CONTENT_KIND, MINIMAL_CONTENT_CONFIDENCE)

    return ErrorClassification(False)


def is_article_link(link: str) -> bool:
    path = urlparse(link).path or "/"
    return any(p.search(path) for p in ARTICLE_LINK_PATTERNS)


def is_error_link(link: str) -> bool:
    lowered = link.lower()
    if "cloudflare.com" in lowered and "error" in lowered:
        return True
    parsed = urlparse(link)
    target = parsed.path + ("?" + parsed.query if parsed.query else "")
    return any(p.search(target) for p in ERROR_LINK_PATTERNS)


def validate(
    html: str,
    url: str,
    *,
    intent: FetchIntent = FetchIntent.SOURCE,
    rules: DomainRuleManager | None = None,
) -> ValidationVerdict:
    """Validate fetched HTML.

    For source pages the verdict is valid when there are enough links, few
    error-like links and a minimum share of article-like links. For article
    pages a minimum content length replaces the link count and article share.
    Every violated condition is recorded in issues.

    Args:
        html: Raw HTML.
        url: Page URL (final URL when known).
        intent: Whether the page is an article or a source/listing page.
        rules: DomainRule table; the shared manager when None.

    Returns:
        ValidationVerdict.
    """
    thresholds = get_settings().validation
    rule: DomainRule = (rules or get_domain_rule_manager()).rule_for(url)

    required = rule.required_markers if intent == FetchIntent.ARTICLE else ()
    page = _parse(html, url, required)
    classification = classify_error_page(
        html, url, text=page.text, minimal_content_chars=thresholds.minimal_content_chars
    )

    link_count = len(page.links)
    article_links = sum(1 for link in page.links if is_article_link(link))
    error_links = sum(1 for link in page.links if is_error_link(link))
    article_ratio = article_links / link_count if link_count else 0.0
    error_ratio = error_links / link_count if link_count else 0.0
    content_length = len(html)

    issues: list[str] = []
    if intent == FetchIntent.ARTICLE:
        if content_length < rule.min_content_length:
            issues.append(
                f"Content too short: {content_length} < {rule.min_content_length}"
            )
    else:
        if link_count < rule.min_link_count:
            issues.append(f"Insufficient links: {link_count} < {rule.min_link_count}")
        if article_ratio < thresholds.min_article_link_ratio:
            issues.append(
                f"Low article link ratio: {article_ratio:.2f} < "
                f"{thresholds.min_article_link_ratio}"
            )

    if error_ratio > thresholds.max_error_link_ratio:
        issues.append(
            f"High error link ratio: {error_ratio:.2f} > {thresholds.max_error_link_ratio}"
        )

    if not page.has_required_marker:
        issues.append("None of the required markers present")

    for pattern in rule.forbidden_patterns:
        if pattern.search(html) or pattern.search(url):
            issues.append(f"Forbidden pattern present: {pattern.pattern}")

    # Error pages are reported through is_error_page, not is_valid
    is_valid = not issues
    if classification.is_error_page:
        issues.append(
            f"Error page detected: {classification.kind} ({classification.confidence:.2f})"
        )

    return ValidationVerdict(
        is_valid=is_valid,
        is_error_page=classification.is_error_page,
        error_kind=classification.kind,
        confidence=classification.confidence,
        link_count=link_count,
        article_link_ratio=article_ratio,
        error_link_ratio=error_ratio,
        issues=tuple(issues),
        content_length=content_length,
        domain_rule=rule.key,
        article_links=article_links,
        error_links=error_links,
    )


def is_acceptable(verdict: ValidationVerdict, intent: FetchIntent, min_links: int) -> bool:
    """Final success criterion used by the orchestrator."""
    if not verdict.is_valid or verdict.is_error_page:
        return False
    if intent == FetchIntent.ARTICLE:
        return True
    return verdict.link_count >= min_links
