# backend/tracking/utils/user_agent.py
import re
from typing import Optional, Tuple

_TABLET_RE = re.compile(r"(tablet|ipad|playbook|silk)|(android(?!.*mobi))", re.IGNORECASE)
_MOBILE_RE = re.compile(
    r"Mobile|Android|iP(hone|od)|IEMobile|BlackBerry|Kindle|Silk-Accelerated|(hpw|web)OS|Opera M(obi|ini)"
)


def detect_device(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "unknown"
    if _TABLET_RE.search(user_agent):
        return "tablet"
    if _MOBILE_RE.search(user_agent):
        return "mobile"
    return "desktop"


def detect_browser(user_agent: Optional[str]) -> str:
    ua = (user_agent or "").lower()
    # Order matters: Edge and Opera UAs also carry "chrome", Chrome UAs carry "safari".
    if "edg" in ua:
        return "Edge"
    if "opr/" in ua or "opera" in ua:
        return "Opera"
    if "chrome" in ua or "crios" in ua:
        return "Chrome"
    if "firefox" in ua or "fxios" in ua:
        return "Firefox"
    if "safari" in ua:
        return "Safari"
    if "msie" in ua or "trident" in ua:
        return "IE"
    return "Unknown"


def detect_os(user_agent: Optional[str]) -> str:
    ua = (user_agent or "").lower()
    if "windows" in ua:
        return "Windows"
    # iOS UAs contain "like Mac OS X", check them before macOS
    if "iphone" in ua or "ipad" in ua or "ipod" in ua:
        return "iOS"
    if "android" in ua:
        return "Android"
    if "mac" in ua:
        return "macOS"
    if "linux" in ua:
        return "Linux"
    return "Unknown"


def classify(user_agent: Optional[str]) -> Tuple[str, str, str]:
    """Returns (device, browser, os) for a raw User-Agent header."""
    return detect_device(user_agent), detect_browser(user_agent), detect_os(user_agent)
