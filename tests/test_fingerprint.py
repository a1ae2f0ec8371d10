"""
Tests for browser profiles and the fingerprint pool.

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-FP-N-01 | Repository fingerprints.yaml | Equivalence – normal | Profiles loaded | - |
| TC-FP-N-02 | rotate(current) | Equivalence – normal | Different profile | - |
| TC-FP-B-01 | rotate with single profile | Boundary – one profile | Same profile | - |
| TC-FP-N-03 | random_profile(desktop_only) | Equivalence – normal | Never mobile | - |
| TC-FP-N-04 | enhanced_headers with referer | Equivalence – normal | Referer + same-origin | - |
| TC-FP-N-05 | session_headers overrides | Equivalence – normal | Overrides win | - |
| TC-FP-A-01 | Malformed YAML | Equivalence – abnormal | Built-in defaults | - |
| TC-FP-N-06 | Profile consistency | Equivalence – invariant | Firefox has no client hints | - |
"""

import pytest

from tierfetch.crawler.fingerprint import (
    DEFAULT_PROFILES,
    BrowserProfile,
    FingerprintPool,
    get_fingerprint_pool,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def pool() -> FingerprintPool:
    pool = FingerprintPool()
    pool.seed(7)
    return pool


class TestLoading:
    """Loading profiles from YAML."""

    def test_repository_profiles(self):
        """TC-FP-N-01: Shared pool reads config/fingerprints.yaml."""
        # When
        pool = get_fingerprint_pool()

        # Then
        names = {p.name for p in pool.profiles}
        assert {"chrome_windows", "chrome_macos", "firefox_windows"} <= names
        assert pool.user_agents

    def test_malformed_yaml_falls_back(self, tmp_path):
        """TC-FP-A-01: Broken file gives defaults."""
        # Given
        path = tmp_path / "fingerprints.yaml"
        path.write_text("profiles: [\n", encoding="utf-8")

        # When
        pool = FingerprintPool.from_yaml(path)

        # Then
        assert pool.profiles == DEFAULT_PROFILES

    def test_missing_file_falls_back(self, tmp_path):
        # When
        pool = FingerprintPool.from_yaml(tmp_path / "absent.yaml")

        # Then
        assert pool.profiles == DEFAULT_PROFILES

    def test_from_dict_ignores_unknown_keys(self):
        # When
        profile = BrowserProfile.from_dict(
            {"name": "x", "user_agent": "UA", "ja3": "J", "languages": ["de"], "extra": 1}
        )

        # Then
        assert profile.languages == ("de",)


class TestRotation:
    """Profile selection."""

    def test_rotate_changes_profile(self, pool):
        """TC-FP-N-02: rotate() never returns the current profile."""
        current = pool.profiles[0]
        for _ in range(20):
            assert pool.rotate(current).name != current.name

    def test_rotate_single_profile(self):
        """TC-FP-B-01: With one profile there is nothing else to pick."""
        # Given
        only = DEFAULT_PROFILES[0]
        pool = FingerprintPool(profiles=[only])

        # When / Then
        assert pool.rotate(only) is only

    def test_desktop_only(self, pool):
        """TC-FP-N-03: Mobile profiles are excluded."""
        for _ in range(20):
            assert pool.random_profile(desktop_only=True).device_type == "desktop"

    def test_seeded_rotation_is_repeatable(self):
        # Given
        first, second = FingerprintPool(), FingerprintPool()
        first.seed(3)
        second.seed(3)

        # When / Then
        assert [first.random_user_agent() for _ in range(5)] == [
            second.random_user_agent() for _ in range(5)
        ]


class TestHeaders:
    """Header sets."""

    def test_enhanced_headers_with_referer(self, pool):
        """TC-FP-N-04: Referer switches Sec-Fetch-Site to same-origin."""
        # Given
        profile = pool.get_profile("chrome_windows")

        # When
        headers = pool.enhanced_headers(profile, referer="https://example.com")

        # Then
        assert headers["User-Agent"] == profile.user_agent
        assert headers["Referer"] == "https://example.com"
        assert headers["Sec-Fetch-Site"] == "same-origin"
        assert headers["Sec-Ch-Ua-Platform"] == '"Windows"'

    def test_enhanced_headers_without_referer(self, pool):
        # When
        headers = pool.enhanced_headers(pool.get_profile("chrome_windows"))

        # Then
        assert "Referer" not in headers
        assert headers["Sec-Fetch-Site"] == "none"

    def test_session_headers_overrides(self, pool):
        """TC-FP-N-05: Caller overrides win over stealth defaults."""
        # When
        headers = pool.session_headers({"Accept-Language": "de-DE", "X-Custom": "1"})

        # Then
        assert headers["Accept-Language"] == "de-DE"
        assert headers["X-Custom"] == "1"
        assert headers["DNT"] == "1"

    @pytest.mark.parametrize("profile", DEFAULT_PROFILES, ids=lambda p: p.name)
    def test_profiles_consistent(self, profile):
        """TC-FP-N-06: Client hints only on Chromium identities."""
        has_hints = any(k.startswith("Sec-Ch-Ua") for k in profile.headers)
        assert has_hints == profile.is_chromium

    def test_navigator_overrides(self):
        # Given
        mobile = next(p for p in DEFAULT_PROFILES if p.device_type == "mobile")

        # When
        overrides = mobile.navigator_overrides()

        # Then
        assert overrides["userAgent"] == mobile.user_agent
        assert overrides["maxTouchPoints"] == 5
        assert overrides["languages"] == list(mobile.languages)
