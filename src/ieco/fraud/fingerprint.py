"""Device fingerprinting for the invitation fraud gate.

A fingerprint is a SHA-256 over normalized client attributes. It is used
for deduplication and similarity scoring, never as proof of identity.
All functions here are pure and never raise on malformed input.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

AUTOMATION_SIGNATURES = (
    "HeadlessChrome",
    "PhantomJS",
    "Selenium",
    "WebDriver",
    "bot",
    "crawler",
    "spider",
)

MIN_SCREEN_AXIS = 100
MAX_SCREEN_AXIS = 8000

# Field weights for similarity(); no single field exceeds 0.5
SIMILARITY_WEIGHTS = {
    "user_agent": 0.30,
    "screen_resolution": 0.20,
    "timezone": 0.20,
    "language": 0.15,
    "platform": 0.15,
}

_LANGUAGE_SPLIT = re.compile(r"[-;,]")


@dataclass(frozen=True)
class ClientInfo:
    """Raw attributes reported by the client."""

    user_agent: str = ""
    screen_width: int = 0
    screen_height: int = 0
    timezone: str = ""
    language: str = ""
    platform: str = ""
    cookie_enabled: bool = False


@dataclass(frozen=True)
class DeviceFingerprint:
    user_agent: str
    screen_resolution: str
    timezone: str
    language: str
    platform: str
    cookie_enabled: bool
    hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "userAgent": self.user_agent,
            "screenResolution": self.screen_resolution,
            "timezone": self.timezone,
            "language": self.language,
            "platform": self.platform,
            "cookieEnabled": self.cookie_enabled,
            "hash": self.hash,
        }


@dataclass(frozen=True)
class SuspicionResult:
    is_suspicious: bool
    reasons: list[str] = field(default_factory=list)


def _as_int(value: Any) -> int:  # noqa: ANN401
    try:
        return max(0, int(value))
    except (TypeError, ValueError, OverflowError):
        return 0


def _as_str(value: Any) -> str:  # noqa: ANN401
    return value.strip() if isinstance(value, str) else ""


def _parse_resolution(value: Any) -> tuple[int, int]:  # noqa: ANN401
    """Parse 'WxH' into integers; anything else is (0, 0)."""
    if not isinstance(value, str) or "x" not in value.lower():
        return 0, 0
    width, _, height = value.lower().partition("x")
    return _as_int(width), _as_int(height)


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:  # noqa: ANN401
    for key in keys:
        if key in mapping and mapping[key] is not None:
            return mapping[key]
    return None


def _coerce_client_info(client_info: ClientInfo | Mapping[str, Any] | None) -> ClientInfo:
    """Accept a ClientInfo or a camelCase/snake_case mapping."""
    if isinstance(client_info, ClientInfo):
        return client_info
    if not isinstance(client_info, Mapping):
        return ClientInfo()

    width = _first(client_info, "screen_width", "screenWidth")
    height = _first(client_info, "screen_height", "screenHeight")
    screen = client_info.get("screen")
    if isinstance(screen, Mapping):
        width = screen.get("width", width)
        height = screen.get("height", height)
    if width is None and height is None:
        width, height = _parse_resolution(_first(client_info, "screen_resolution", "screenResolution"))

    return ClientInfo(
        user_agent=_as_str(_first(client_info, "user_agent", "userAgent")),
        screen_width=_as_int(width),
        screen_height=_as_int(height),
        timezone=_as_str(client_info.get("timezone")),
        language=_as_str(client_info.get("language")),
        platform=_as_str(client_info.get("platform")),
        cookie_enabled=bool(_first(client_info, "cookie_enabled", "cookieEnabled")),
    )


def _canonical(
    user_agent: str,
    screen_resolution: str,
    timezone: str,
    language: str,
    platform: str,
    cookie_enabled: bool,
) -> str:
    return "|".join(
        [user_agent, screen_resolution, timezone, language, platform, "1" if cookie_enabled else "0"]
    )


def _hash(canonical: str) -> str:
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def generate(client_info: ClientInfo | Mapping[str, Any] | None) -> DeviceFingerprint:
    """Build a fingerprint from client-reported attributes."""
    info = _coerce_client_info(client_info)
    resolution = f"{info.screen_width}x{info.screen_height}"
    canonical = _canonical(
        info.user_agent, resolution, info.timezone, info.language, info.platform, info.cookie_enabled
    )
    return DeviceFingerprint(
        user_agent=info.user_agent,
        screen_resolution=resolution,
        timezone=info.timezone,
        language=info.language,
        platform=info.platform,
        cookie_enabled=info.cookie_enabled,
        hash=_hash(canonical),
    )


def detect_platform(user_agent: str) -> str:
    """Map a user agent to a coarse platform name."""
    if "Windows" in user_agent:
        return "Windows"
    if "Macintosh" in user_agent:
        return "macOS"
    if "Android" in user_agent:
        return "Android"
    if "Linux" in user_agent:
        return "Linux"
    if "iPhone" in user_agent or "iPad" in user_agent:
        return "iOS"
    return "Unknown"


def _header(headers: Mapping[str, Any], name: str) -> str:
    """Case-insensitive header lookup; list values yield their first element."""
    wanted = name.lower()
    for key, value in headers.items():
        if not isinstance(key, str) or key.lower() != wanted:
            continue
        if isinstance(value, (list, tuple)):
            value = value[0] if value else ""
        return _as_str(value)
    return ""


def generate_from_headers(headers: Mapping[str, Any] | None) -> DeviceFingerprint:
    """Build a fingerprint from HTTP request headers.

    Screen size and timezone are not sent by browsers; the optional
    X-Screen-Resolution ("WxH") and X-Timezone hint headers fill them in.
    """
    headers = headers if isinstance(headers, Mapping) else {}
    user_agent = _header(headers, "user-agent")
    accept_language = _header(headers, "accept-language")
    language = _LANGUAGE_SPLIT.split(accept_language, maxsplit=1)[0].strip() if accept_language else ""
    width, height = _parse_resolution(_header(headers, "x-screen-resolution"))

    return generate(
        ClientInfo(
            user_agent=user_agent,
            screen_width=width,
            screen_height=height,
            timezone=_header(headers, "x-timezone"),
            language=language,
            platform=detect_platform(user_agent),
            cookie_enabled=bool(_header(headers, "cookie")),
        )
    )


def validate(fingerprint: DeviceFingerprint) -> bool:
    """Recompute the hash and compare. Empty hashes never validate."""
    if not fingerprint.hash:
        return False
    canonical = _canonical(
        fingerprint.user_agent,
        fingerprint.screen_resolution,
        fingerprint.timezone,
        fingerprint.language,
        fingerprint.platform,
        fingerprint.cookie_enabled,
    )
    return _hash(canonical) == fingerprint.hash


def similarity(a: DeviceFingerprint, b: DeviceFingerprint) -> float:
    """Weighted field agreement in [0, 1]."""
    if a.hash and a.hash == b.hash:
        return 1.0
    score = sum(weight for name, weight in SIMILARITY_WEIGHTS.items() if getattr(a, name) == getattr(b, name))
    return round(min(score, 1.0), 4)


def is_suspicious(fingerprint: DeviceFingerprint) -> SuspicionResult:
    """Flag automation user agents and implausible screens. Reasons accumulate."""
    reasons: list[str] = []

    user_agent = fingerprint.user_agent
    if not user_agent:
        reasons.append("missing_user_agent")
    else:
        lowered = user_agent.lower()
        for signature in AUTOMATION_SIGNATURES:
            if signature.lower() in lowered:
                reasons.append(f"automation_user_agent:{signature}")

    width, height = _parse_resolution(fingerprint.screen_resolution)
    if width == 0 or height == 0:
        reasons.append("zero_screen_resolution")
    elif min(width, height) < MIN_SCREEN_AXIS or max(width, height) > MAX_SCREEN_AXIS:
        reasons.append("extreme_screen_resolution")

    return SuspicionResult(is_suspicious=bool(reasons), reasons=reasons)
