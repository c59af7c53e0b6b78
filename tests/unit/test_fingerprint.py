"""Device fingerprint tests — hashing, header parsing, similarity, suspicion."""

from __future__ import annotations

import json
from dataclasses import replace

from ieco.fraud.fingerprint import (
    ClientInfo,
    detect_platform,
    generate,
    generate_from_headers,
    is_suspicious,
    similarity,
    validate,
)

CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
CHROME_ANDROID = "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 Chrome/120.0 Mobile Safari/537.36"


def _client(**overrides) -> ClientInfo:
    base = ClientInfo(
        user_agent=CHROME_MAC,
        screen_width=1920,
        screen_height=1080,
        timezone="Europe/Berlin",
        language="de",
        platform="macOS",
        cookie_enabled=True,
    )
    return replace(base, **overrides)


class TestGenerate:
    """Test fingerprint generation from client info."""

    def test_deterministic(self):
        assert generate(_client()).hash == generate(_client()).hash

    def test_hash_is_sha256_hex(self):
        fp = generate(_client())
        assert len(fp.hash) == 64
        int(fp.hash, 16)

    def test_any_field_changes_hash(self):
        base = generate(_client()).hash
        assert generate(_client(timezone="UTC")).hash != base
        assert generate(_client(cookie_enabled=False)).hash != base
        assert generate(_client(screen_width=1280)).hash != base

    def test_missing_fields_default(self):
        fp = generate({})
        assert fp.user_agent == ""
        assert fp.screen_resolution == "0x0"
        assert fp.cookie_enabled is False
        assert len(fp.hash) == 64

    def test_none_and_garbage_never_raise(self):
        assert generate(None).screen_resolution == "0x0"
        fp = generate({"screenWidth": "wide", "screenHeight": None, "userAgent": 42})
        assert fp.screen_resolution == "0x0"
        assert fp.user_agent == ""

    def test_non_finite_numbers_never_raise(self):
        """JSON payloads may carry Infinity or NaN for screen sizes."""
        fp = generate(json.loads('{"userAgent": "x", "screenWidth": Infinity, "screenHeight": 1080}'))
        assert fp.screen_resolution == "0x1080"
        assert generate({"screenWidth": float("nan"), "screenHeight": -float("inf")}).screen_resolution == "0x0"

    def test_camel_case_mapping_matches_client_info(self):
        mapping = {
            "userAgent": CHROME_MAC,
            "screen": {"width": 1920, "height": 1080},
            "timezone": "Europe/Berlin",
            "language": "de",
            "platform": "macOS",
            "cookieEnabled": True,
        }
        assert generate(mapping).hash == generate(_client()).hash

    def test_resolution_string(self):
        fp = generate({"screen_resolution": "1366x768"})
        assert fp.screen_resolution == "1366x768"

    def test_to_dict_uses_camel_case(self):
        data = generate(_client()).to_dict()
        assert data["screenResolution"] == "1920x1080"
        assert data["cookieEnabled"] is True


class TestValidate:
    """Test hash validation."""

    def test_valid(self):
        assert validate(generate(_client())) is True

    def test_tampered_field(self):
        fp = generate(_client())
        assert validate(replace(fp, language="en")) is False

    def test_empty_hash(self):
        assert validate(replace(generate(_client()), hash="")) is False


class TestPlatformDetection:
    """Test user-agent platform mapping."""

    def test_windows(self):
        assert detect_platform("Mozilla/5.0 (Windows NT 10.0; Win64; x64)") == "Windows"

    def test_macintosh(self):
        assert detect_platform(CHROME_MAC) == "macOS"

    def test_android_is_not_linux(self):
        assert detect_platform(CHROME_ANDROID) == "Android"

    def test_linux(self):
        assert detect_platform("Mozilla/5.0 (X11; Linux x86_64)") == "Linux"

    def test_ios(self):
        assert detect_platform("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)") == "iOS"
        assert detect_platform("Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X)") == "iOS"

    def test_unknown(self):
        assert detect_platform("curl/8.0") == "Unknown"
        assert detect_platform("") == "Unknown"


class TestGenerateFromHeaders:
    """Test fingerprinting from HTTP headers."""

    def test_basic_headers(self):
        fp = generate_from_headers({"User-Agent": CHROME_ANDROID, "Accept-Language": "en-US,en;q=0.9"})
        assert fp.platform == "Android"
        assert fp.language == "en"
        assert fp.cookie_enabled is False

    def test_case_insensitive_and_list_values(self):
        lower = generate_from_headers({"user-agent": [CHROME_MAC, "ignored"], "accept-language": ["fr;q=0.8"]})
        upper = generate_from_headers({"USER-AGENT": CHROME_MAC, "ACCEPT-LANGUAGE": "fr"})
        assert lower.user_agent == CHROME_MAC
        assert lower.language == "fr"
        assert lower.hash == upper.hash

    def test_hint_headers(self):
        fp = generate_from_headers(
            {
                "User-Agent": CHROME_MAC,
                "X-Screen-Resolution": "2560x1440",
                "X-Timezone": "America/New_York",
                "Cookie": "session=abc",
            }
        )
        assert fp.screen_resolution == "2560x1440"
        assert fp.timezone == "America/New_York"
        assert fp.cookie_enabled is True

    def test_language_list_without_region(self):
        assert generate_from_headers({"Accept-Language": "en,fr;q=0.8"}).language == "en"

    def test_no_headers(self):
        fp = generate_from_headers(None)
        assert fp.platform == "Unknown"
        assert validate(fp) is True


class TestSimilarity:
    """Test weighted similarity."""

    def test_identical(self):
        assert similarity(generate(_client()), generate(_client())) == 1.0

    def test_disjoint_is_below_half(self):
        other = generate(
            ClientInfo(
                user_agent="Mozilla/5.0 (Windows NT 10.0)",
                screen_width=800,
                screen_height=600,
                timezone="Asia/Tokyo",
                language="ja",
                platform="Windows",
            )
        )
        assert similarity(generate(_client()), other) == 0.0

    def test_single_field_never_exceeds_half(self):
        a = generate(_client())
        for field_name, value in [
            ("user_agent", CHROME_MAC),
            ("timezone", "Europe/Berlin"),
            ("language", "de"),
            ("platform", "macOS"),
        ]:
            other = generate(
                replace(
                    ClientInfo(
                        user_agent="x",
                        screen_width=1,
                        screen_height=1,
                        timezone="y",
                        language="z",
                        platform="w",
                    ),
                    **{field_name: value},
                )
            )
            assert similarity(a, other) < 0.5

    def test_two_fields_can_exceed_half(self):
        a = generate(_client())
        b = generate(_client(timezone="UTC", language="en", platform="Linux"))
        # user agent + resolution agree
        assert similarity(a, b) == 0.5
        c = generate(_client(language="en", platform="Linux"))
        assert similarity(a, c) > 0.5


class TestIsSuspicious:
    """Test suspicion heuristics."""

    def test_normal_browser(self):
        result = is_suspicious(generate(_client()))
        assert result.is_suspicious is False
        assert result.reasons == []

    def test_headless_chrome(self):
        result = is_suspicious(generate(_client(user_agent="Mozilla/5.0 HeadlessChrome/120.0")))
        assert result.is_suspicious is True
        assert "automation_user_agent:HeadlessChrome" in result.reasons

    def test_signature_match_is_case_insensitive(self):
        result = is_suspicious(generate(_client(user_agent="Googlebot/2.1")))
        assert "automation_user_agent:bot" in result.reasons

    def test_missing_user_agent(self):
        result = is_suspicious(generate(_client(user_agent="")))
        assert result.reasons == ["missing_user_agent"]

    def test_zero_axis(self):
        result = is_suspicious(generate(_client(screen_height=0)))
        assert result.reasons == ["zero_screen_resolution"]

    def test_extreme_resolution(self):
        assert is_suspicious(generate(_client(screen_width=99))).reasons == ["extreme_screen_resolution"]
        assert is_suspicious(generate(_client(screen_width=8001))).reasons == ["extreme_screen_resolution"]
        assert is_suspicious(generate(_client(screen_width=8000))).is_suspicious is False

    def test_reasons_accumulate(self):
        result = is_suspicious(generate(_client(user_agent="Selenium WebDriver", screen_width=0)))
        assert result.reasons == [
            "automation_user_agent:Selenium",
            "automation_user_agent:WebDriver",
            "zero_screen_resolution",
        ]
