"""Human-friendly device labels from user-agent strings."""

import re
from typing import Optional

UNKNOWN_DEVICE = "Unknown device"

# Order matters: more specific tokens first.
_BROWSERS = [
    ("edg/", "Edge"),
    ("edga/", "Edge"),
    ("edg", "Edge"),
    ("opr/", "Opera"),
    ("opera/", "Opera"),
    ("firefox/", "Firefox"),
    ("fxios/", "Firefox"),
    ("chrome/", "Chrome"),
    ("crios/", "Chrome"),
    ("safari/", "Safari"),
    ("msie ", "Internet Explorer"),
    ("trident/", "Internet Explorer"),
]

# Chromium browsers also advertise Safari/
_NOT_SAFARI = ("chrome/", "crios/", "edg", "opr/")

_OPERATING_SYSTEMS = [
    (re.compile(r"windows nt|win16", re.I), "Windows"),
    (re.compile(r"iphone|ipad|ipod", re.I), "iOS"),
    (re.compile(r"macintosh|mac os x|mac_powerpc", re.I), "macOS"),
    (re.compile(r"android", re.I), "Android"),
    (re.compile(r"linux|ubuntu|fedora|debian", re.I), "Linux"),
]


def parse_browser(user_agent: str) -> Optional[str]:
    lowered = user_agent.lower()
    for token, name in _BROWSERS:
        if token not in lowered:
            continue
        if name == "Safari" and any(marker in lowered for marker in _NOT_SAFARI):
            continue
        return name
    return None


def parse_os(user_agent: str) -> Optional[str]:
    for pattern, name in _OPERATING_SYSTEMS:
        if pattern.search(user_agent):
            return name
    return None


def parse_device_name(user_agent: Optional[str]) -> str:
    """
    Label a device as "Browser on OS"

    Falls back to whichever half is known, then to "Unknown device".
    """
    if not user_agent:
        return UNKNOWN_DEVICE

    browser = parse_browser(user_agent)
    os_name = parse_os(user_agent)

    if browser and os_name:
        return f"{browser} on {os_name}"
    return browser or os_name or UNKNOWN_DEVICE
