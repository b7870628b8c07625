"""Device fingerprinting.

Derives a stable device identity from the signals a client reports (user
agent, screen, timezone, language, platform) and parses the user agent into
browser/OS/device metadata. Stateless.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Optional

AUTOMATION_MARKERS = ("selenium", "phantomjs", "headless", "bot", "crawler")


@dataclass
class ScreenInfo:
    width: int = 0
    height: int = 0
    color_depth: Optional[int] = None


@dataclass
class ParsedUserAgent:
    browser: str = "Unknown"
    browser_version: Optional[str] = None
    os: str = "Unknown"
    os_version: Optional[str] = None
    device_type: str = "desktop"
    is_bot: bool = False


@dataclass
class DeviceInfo:
    """Everything the risk engine knows about the calling device."""

    device_id: str
    fingerprint: str
    user_agent: str
    parsed: ParsedUserAgent = field(default_factory=ParsedUserAgent)
    screen: Optional[ScreenInfo] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.parsed.browser} on {self.parsed.os} ({self.parsed.device_type})"

    def metadata(self) -> dict[str, Any]:
        return {
            "user_agent": self.user_agent,
            "browser": self.parsed.browser,
            "browser_version": self.parsed.browser_version,
            "os": self.parsed.os,
            "os_version": self.parsed.os_version,
            "device_type": self.parsed.device_type,
            "screen": asdict(self.screen) if self.screen else None,
            "timezone": self.timezone,
            "language": self.language,
            "platform": self.platform,
        }


class UserAgentParser:
    """Regex user-agent parser; first matching pattern wins."""

    # Edge, Opera and Samsung all embed "Chrome/", so they are tried first
    BROWSER_PATTERNS = [
        (r"(?:Edg|EdgA|EdgiOS)/([\d.]+)", "Edge"),
        (r"(?:OPR|Opera)/([\d.]+)", "Opera"),
        (r"SamsungBrowser/([\d.]+)", "Samsung Internet"),
        (r"(?:Chrome|CriOS)/([\d.]+)", "Chrome"),
        (r"(?:Firefox|FxiOS)/([\d.]+)", "Firefox"),
        (r"Version/([\d.]+).*Safari/", "Safari"),
        (r"(?:MSIE |Trident.*rv:)([\d.]+)", "Internet Explorer"),
    ]

    # iOS UAs contain "like Mac OS X", Android UAs contain "Linux"
    OS_PATTERNS = [
        (r"(?:iPhone|iPad|iPod).*?OS ([\d_]+)", "iOS"),
        (r"Android ([\d.]+)", "Android"),
        (r"Windows NT ([\d.]+)", "Windows"),
        (r"Mac OS X ([\d_.]+)", "Mac OS"),
        (r"CrOS", "Chrome OS"),
        (r"Linux", "Linux"),
    ]

    BOT_PATTERNS = [
        r"bot\b",
        r"crawler",
        r"spider",
        r"headless",
        r"phantomjs",
        r"selenium",
        r"curl/",
        r"python-requests",
    ]

    TABLET_PATTERNS = [r"iPad", r"Android(?!.*Mobile)", r"Tablet"]
    MOBILE_PATTERNS = [r"Mobile", r"iPhone", r"iPod", r"Windows Phone"]

    def parse(self, user_agent: Optional[str]) -> ParsedUserAgent:
        result = ParsedUserAgent()
        if not user_agent:
            return result

        result.is_bot = any(
            re.search(pattern, user_agent, re.IGNORECASE) for pattern in self.BOT_PATTERNS
        )

        for pattern, name in self.BROWSER_PATTERNS:
            match = re.search(pattern, user_agent)
            if match:
                result.browser = name
                result.browser_version = match.group(1)
                break

        for pattern, name in self.OS_PATTERNS:
            match = re.search(pattern, user_agent)
            if match:
                result.os = name
                if match.lastindex:
                    result.os_version = match.group(1).replace("_", ".")
                break

        if result.is_bot:
            result.device_type = "bot"
        elif any(re.search(p, user_agent) for p in self.TABLET_PATTERNS):
            result.device_type = "tablet"
        elif any(re.search(p, user_agent) for p in self.MOBILE_PATTERNS):
            result.device_type = "mobile"
        return result


class DeviceFingerprinter:
    def __init__(self, parser: Optional[UserAgentParser] = None) -> None:
        self.parser = parser or UserAgentParser()

    @staticmethod
    def compute_fingerprint(
        user_agent: Optional[str],
        screen: Optional[ScreenInfo],
        timezone: Optional[str],
        language: Optional[str],
        platform: Optional[str],
    ) -> str:
        """SHA-256 over the non-empty signals, pipe-joined in a fixed order."""
        parts = [
            user_agent,
            screen.width if screen else None,
            screen.height if screen else None,
            screen.color_depth if screen else None,
            timezone,
            language,
            platform,
        ]
        material = "|".join(str(part) for part in parts if part not in (None, ""))
        return hashlib.sha256(material.encode()).hexdigest()

    @staticmethod
    def _screen_from(raw: Any) -> Optional[ScreenInfo]:
        if raw is None:
            return None
        if isinstance(raw, ScreenInfo):
            return raw
        if isinstance(raw, Mapping):
            return ScreenInfo(
                width=int(raw.get("width") or 0),
                height=int(raw.get("height") or 0),
                color_depth=raw.get("color_depth", raw.get("colorDepth")),
            )
        raise TypeError(f"unsupported screen payload: {type(raw).__name__}")

    def identify(
        self,
        user_agent: Optional[str],
        signals: Optional[Mapping[str, Any]] = None,
    ) -> DeviceInfo:
        """Build a DeviceInfo from a user agent and optional client signals.

        ``signals`` may contain ``screen`` ({width, height, color_depth}),
        ``timezone`` (IANA name), ``language`` and ``platform``.
        """
        signals = signals or {}
        screen = self._screen_from(signals.get("screen"))
        timezone = signals.get("timezone")
        language = signals.get("language")
        platform = signals.get("platform")
        fingerprint = self.compute_fingerprint(
            user_agent, screen, timezone, language, platform
        )
        return DeviceInfo(
            device_id=fingerprint[:32],
            fingerprint=fingerprint,
            user_agent=user_agent or "",
            parsed=self.parser.parse(user_agent),
            screen=screen,
            timezone=timezone,
            language=language,
            platform=platform,
        )


def is_suspicious(device: DeviceInfo) -> bool:
    """Zero-size or missing screen, or an automation tool in the user agent."""
    screen = device.screen
    if screen is None or screen.width <= 0 or screen.height <= 0:
        return True
    user_agent = device.user_agent.lower()
    return any(marker in user_agent for marker in AUTOMATION_MARKERS)
