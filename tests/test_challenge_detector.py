"""
Tests for protection signal detection.

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-PD-N-01 | Cloudflare JS challenge | Equivalence – normal | cloudflare 0.95 | - |
| TC-PD-N-02 | DataDome captcha-delivery | Equivalence – normal | datadome 0.95 | - |
| TC-PD-N-03 | Incapsula resource | Equivalence – normal | incapsula 0.9 | - |
| TC-PD-N-04 | reCAPTCHA widget | Equivalence – normal | captcha 0.9 | - |
| TC-PD-N-05 | "captcha" text on small page | Equivalence – normal | captcha 0.8 | weak marker |
| TC-PD-A-01 | "captcha" text on large page | Equivalence – abnormal | no protection | false positive |
| TC-PD-N-06 | x-datadome header on 403 | Equivalence – normal | datadome | header trusted |
| TC-PD-A-02 | x-datadome header on large 200 | Equivalence – abnormal | no protection | header ignored |
| TC-PD-N-07 | "Just a moment" stub | Equivalence – normal | cloudflare 0.85 | - |
| TC-PD-N-08 | HTTP 429, no markers | Equivalence – normal | generic rate_limited | - |
| TC-PD-N-09 | Rate-limit text | Equivalence – normal | is_rate_limited True | - |
| TC-PD-A-03 | Normal listing | Equivalence – abnormal | NO_PROTECTION | - |
| TC-PD-N-10 | Two vendor markers | Equivalence – priority | First table row wins | - |
| TC-PD-A-04 | Bot-management loader on large 200 page | Equivalence – abnormal | NO_PROTECTION | jsd script |
| TC-PD-N-11 | Challenge orchestrate path on large page | Equivalence – normal | cloudflare 0.95 | - |
| TC-PD-N-12 | Loader path on small page | Equivalence – normal | cloudflare 0.95 | - |
"""

import pytest

from tierfetch.crawler.challenge_detector import (
    NO_PROTECTION,
    SMALL_PAGE_BYTES,
    ProtectionKind,
    detect_protection,
    is_rate_limited,
)

pytestmark = pytest.mark.unit


class TestVendorMarkers:
    """Body markers of protection vendors."""

    def test_cloudflare_js_challenge(self):
        """TC-PD-N-01: Cloudflare challenge script."""
        # Given
        html = (
            "<html><head><title>Just a moment...</title></head>"
            "<script>var _cf_chl_opt={};</script>"
        )

        # When
        signal = detect_protection(html)

        # Then
        assert signal.present is True
        assert signal.kind == ProtectionKind.CLOUDFLARE
        assert signal.confidence == 0.95
        assert signal.evidence == "cloudflare_js_challenge:_cf_chl_opt"

    def test_datadome(self):
        """TC-PD-N-02: DataDome challenge iframe."""
        # Given
        html = '<iframe src="https://geo.captcha-delivery.com/captcha/?initialCid=x"></iframe>'

        # When
        signal = detect_protection(html)

        # Then
        assert signal.kind == ProtectionKind.DATADOME
        assert signal.confidence == 0.95

    def test_incapsula(self):
        """TC-PD-N-03: Incapsula resource script."""
        # When
        signal = detect_protection('<script src="/_Incapsula_Resource?SWJIYLWA=1"></script>')

        # Then
        assert signal.kind == ProtectionKind.INCAPSULA
        assert signal.confidence == 0.9

    def test_recaptcha_widget(self):
        """TC-PD-N-04: reCAPTCHA widget markup."""
        # When
        signal = detect_protection('<form><div class="g-recaptcha" data-sitekey="k"></div></form>')

        # Then
        assert signal.kind == ProtectionKind.CAPTCHA
        assert signal.confidence == 0.9

    def test_first_row_wins(self):
        """TC-PD-N-10: DataDome row precedes the Cloudflare row."""
        # Given
        html = "captcha-delivery.com ... _cf_chl_opt"

        # When
        signal = detect_protection(html)

        # Then
        assert signal.kind == ProtectionKind.DATADOME


JSD_LOADER = (
    "<script>(function(){var a=document.createElement('script');"
    "a.src='/cdn-cgi/challenge-platform/scripts/jsd/main.js';"
    "document.getElementsByTagName('head')[0].appendChild(a);})();</script>"
)


class TestCloudflareLoader:
    """Cloudflare paths that also appear on healthy pages."""

    def test_loader_on_large_page(self, make_listing_html):
        """TC-PD-A-04: Bot-management loader is not a challenge."""
        # Given
        html = make_listing_html(links=60, padding=64_000).replace(
            "</body>", JSD_LOADER + "</body>"
        )
        headers = {"Server": "cloudflare", "CF-RAY": "8abc-FRA"}

        # When
        signal = detect_protection(html, headers, 200)

        # Then
        assert signal == NO_PROTECTION

    def test_challenge_path_on_large_page(self, make_listing_html):
        """TC-PD-N-11: The challenge orchestrate path counts at any size."""
        # Given
        html = make_listing_html(links=60, padding=64_000).replace(
            "</body>",
            '<script src="/cdn-cgi/challenge-platform/h/b/orchestrate/chl_page/v1">'
            "</script></body>",
        )

        # When
        signal = detect_protection(html)

        # Then
        assert signal.kind == ProtectionKind.CLOUDFLARE
        assert signal.evidence == "cloudflare_js_challenge:/cdn-cgi/challenge-platform/h/"

    def test_loader_on_small_page(self):
        """TC-PD-N-12: On a small page the loader path is still trusted."""
        # When
        signal = detect_protection(f"<html><body>{JSD_LOADER}</body></html>")

        # Then
        assert signal.kind == ProtectionKind.CLOUDFLARE
        assert signal.confidence == 0.95


class TestWeakMarkers:
    """Weak markers only count on small pages."""

    def test_captcha_text_small_page(self):
        """TC-PD-N-05: Bare 'captcha' word on a short page."""
        # When
        signal = detect_protection("<html><body>Please solve the CAPTCHA</body></html>")

        # Then
        assert signal.kind == ProtectionKind.CAPTCHA
        assert signal.confidence == 0.8

    def test_captcha_text_large_page(self, make_listing_html):
        """TC-PD-A-01: Article text mentioning captcha is not a challenge."""
        # Given
        html = make_listing_html(links=25, padding=SMALL_PAGE_BYTES) + "<p>captcha solvers</p>"

        # When
        signal = detect_protection(html)

        # Then
        assert signal == NO_PROTECTION


class TestHeaders:
    """Header markers are only trusted on blocked-looking responses."""

    def test_datadome_header_on_403(self):
        """TC-PD-N-06: Vendor header with block status."""
        # When
        signal = detect_protection("<html></html>", {"X-DataDome": "protected"}, 403)

        # Then
        assert signal.kind == ProtectionKind.DATADOME
        assert signal.evidence == "datadome_challenge:x-datadome"

    def test_datadome_header_on_normal_page(self, make_listing_html):
        """TC-PD-A-02: Vendor header on a healthy response."""
        # Given
        html = make_listing_html(links=25, padding=6000)

        # When
        signal = detect_protection(html, {"x-datadome": "protected"}, 200)

        # Then
        assert signal.present is False

    def test_cloudflare_stub(self):
        """TC-PD-N-07: Tiny Cloudflare-served page."""
        # Given
        html = "<html><body><div>Just a moment</div></body></html>"
        headers = {"Server": "cloudflare", "CF-RAY": "8abc"}

        # When
        signal = detect_protection(html, headers, 200)

        # Then
        assert signal.kind == ProtectionKind.CLOUDFLARE
        assert signal.confidence == 0.85

    def test_http_429(self):
        """TC-PD-N-08: Rate limit status without markers."""
        # When
        signal = detect_protection("<html><body>Slow</body></html>", {}, 429)

        # Then
        assert signal.kind == ProtectionKind.GENERIC
        assert signal.evidence == "rate_limited:http_429"


class TestRateLimit:
    """Tests for is_rate_limited()."""

    def test_rate_limit_text(self):
        """TC-PD-N-09: Rate-limit wording."""
        assert is_rate_limited("<p>Too many requests, please slow down</p>") is True

    def test_challenge_is_not_rate_limit(self):
        assert is_rate_limited('<div class="g-recaptcha"></div>', 403) is False


def test_normal_listing(make_listing_html):
    """TC-PD-A-03: Healthy page."""
    assert detect_protection(make_listing_html()) == NO_PROTECTION
