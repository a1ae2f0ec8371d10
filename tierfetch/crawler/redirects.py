"""Client-side redirect detection.

Some sites answer with a 200 interstitial that forwards the visitor with a
meta refresh or a script assignment to location. HTTP clients never follow
these, so the tiers look for them in the body and follow them explicitly.

Meta refresh is trusted on any page as long as its delay is short; a long
delay is a timed reload of a real page. Script redirects only count on small
pages and only with an absolute http(s) target, since ordinary pages assign
location in click handlers.
"""

import re
from dataclasses import dataclass
from html import unescape
from urllib.parse import urldefrag, urljoin, urlparse

from tierfetch.crawler.challenge_detector import SMALL_PAGE_BYTES

_META_TAG_RE = re.compile(r"<meta\b[^>]*>", re.IGNORECASE)
_ATTR_RE = re.compile(r"""([a-zA-Z][\w-]*)\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s>]+))""")
# "5; url=/next", "0;URL='https://...'", "3, https://..."
_REFRESH_RE = re.compile(
    r"^\s*(\d+(?:\.\d+)?)\s*(?:[;,]\s*(?:url\s*=\s*)?(.*))?$",
    re.IGNORECASE | re.DOTALL,
)

SCRIPT_REDIRECT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "location_replace",
        re.compile(
            r"""(?:window\.|document\.)?location\.replace\s*\(\s*["'](https?://[^"']+)["']""",
            re.IGNORECASE,
        ),
    ),
    (
        "location_href",
        re.compile(
            r"""(?:window\.|document\.)?location\.href\s*=\s*["'](https?://[^"']+)["']""",
            re.IGNORECASE,
        ),
    ),
    (
        "location_assign",
        re.compile(
            r"""(?:window|document)\.location\s*=\s*["'](https?://[^"']+)["']""",
            re.IGNORECASE,
        ),
    ),
)


@dataclass(frozen=True)
class ClientRedirect:
    """A redirect the page asks the client to perform itself."""

    url: str
    method: str
    delay: float = 0.0


def _attributes(tag: str) -> dict[str, str]:
    attrs: dict[str, str] = {}
    for match in _ATTR_RE.finditer(tag):
        name, *values = match.groups()
        attrs[name.lower()] = next((v for v in values if v is not None), "")
    return attrs


def _meta_refresh(html: str, base_url: str, max_delay: float) -> ClientRedirect | None:
    for tag in _META_TAG_RE.findall(html):
        attrs = _attributes(tag)
        if attrs.get("http-equiv", "").strip().lower() != "refresh":
            continue
        match = _REFRESH_RE.match(unescape(attrs.get("content", "")))
        if match is None or not match.group(2):
            continue
        delay = float(match.group(1))
        target = match.group(2).strip().strip("'\"").strip()
        if not target or delay > max_delay:
            continue
        return ClientRedirect(urljoin(base_url, target), "meta_refresh", delay)
    return None


def _script_redirect(html: str) -> ClientRedirect | None:
    for method, pattern in SCRIPT_REDIRECT_PATTERNS:
        match = pattern.search(html)
        if match:
            return ClientRedirect(unescape(match.group(1)), method)
    return None


def find_client_redirect(
    html: str,
    base_url: str,
    max_delay: float = 10.0,
) -> ClientRedirect | None:
    """Find a client-side redirect in a page.

    Args:
        html: Page body.
        base_url: URL the body was served from; relative targets resolve
            against it.
        max_delay: Longest meta refresh delay (seconds) treated as a redirect.

    Returns:
        The redirect, or None when the page does not redirect anywhere else.
    """
    if not html:
        return None
    found = _meta_refresh(html, base_url, max_delay)
    if found is None and len(html) < SMALL_PAGE_BYTES:
        found = _script_redirect(html)
    if found is None:
        return None

    if urlparse(found.url).scheme not in ("http", "https"):
        return None
    # Refreshing to itself is a reload
    if urldefrag(found.url)[0] == urldefrag(base_url)[0]:
        return None
    return found
