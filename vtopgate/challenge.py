"""
Login page captcha detection.

The VTOP setup page sometimes serves the built-in image captcha and sometimes
a different challenge (or none). Detection order, first match wins:
  1. captcha container / image element / form-control image class
  2. inline script `var captchaType = 1;`
  3. any base64 data URI image on the page
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass

from bs4 import BeautifulSoup

from vtopgate.errors import ChallengeNotFound

logger = logging.getLogger(__name__)

_CAPTCHA_TYPE_RE = re.compile(r"var\s+captchaType\s*=\s*(\d+);")
_DATA_URI_RE = re.compile(r'data:image/(jpeg|png|gif);base64,[^"]+')

_INBUILT_CAPTCHA_TYPE = 1


class CaptchaType(enum.Enum):
    INBUILT = "inbuilt"
    NONE = "none"


@dataclass(frozen=True)
class Challenge:
    """One image captcha plus its single-use anti-forgery token."""
    image_src: str
    csrf_token: str


def detect_captcha_type(html: str, soup: BeautifulSoup | None = None) -> CaptchaType:
    """Classify the login page as carrying the built-in image captcha or not."""
    soup = soup or BeautifulSoup(html, "html.parser")

    if (
        soup.find(id="captchaBlock") is not None
        or soup.find("img", alt="vtopCaptcha") is not None
        or soup.select_one(".form-control.img-fluid") is not None
    ):
        return CaptchaType.INBUILT

    match = _CAPTCHA_TYPE_RE.search(html)
    if match and int(match.group(1)) == _INBUILT_CAPTCHA_TYPE:
        return CaptchaType.INBUILT

    if _DATA_URI_RE.search(html):
        return CaptchaType.INBUILT

    return CaptchaType.NONE


def _extract_captcha_image(html: str, soup: BeautifulSoup) -> str | None:
    for candidate in (
        soup.find("img", alt="vtopCaptcha"),
        soup.select_one(".form-control.img-fluid"),
    ):
        if candidate is not None and candidate.get("src"):
            return candidate["src"]

    match = _DATA_URI_RE.search(html)
    if match:
        return match.group(0)

    first_img = soup.find("img")
    if first_img is not None and "base64" in (first_img.get("src") or ""):
        return first_img["src"]

    return None


def _extract_csrf(soup: BeautifulSoup) -> str | None:
    field = soup.find("input", attrs={"name": "_csrf"})
    if field is not None and field.get("value"):
        return field["value"]
    meta = soup.find("meta", attrs={"name": "_csrf"})
    if meta is not None and meta.get("content"):
        return meta["content"]
    return None


def extract_challenge(html: str) -> Challenge:
    """
    Return the captcha image and csrf token from a login setup page.

    Raises ChallengeNotFound when no image captcha is present, or when it is
    present but the image or the token cannot be located.
    """
    soup = BeautifulSoup(html, "html.parser")

    if detect_captcha_type(html, soup) is not CaptchaType.INBUILT:
        raise ChallengeNotFound("No image captcha on login page")

    image_src = _extract_captcha_image(html, soup)
    if not image_src:
        raise ChallengeNotFound("Captcha detected but image not found")

    csrf_token = _extract_csrf(soup)
    if not csrf_token:
        raise ChallengeNotFound("Captcha detected but _csrf token not found")

    return Challenge(image_src=image_src, csrf_token=csrf_token)
