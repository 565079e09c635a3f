"""
Text helpers for inbound messages: token markers, force keywords, slugs,
alt text and sender address normalization.
"""

import re
import time
from collections.abc import Iterable
from email.utils import parseaddr

TOKEN_PATTERN = re.compile(r"#?\bTOKEN[:\-]([A-Z0-9\-_]+)", re.IGNORECASE)
TOKEN_SPACED_PATTERN = re.compile(r"#?\bTOKEN\s+([A-Z0-9\-_]+)", re.IGNORECASE)
_LEADING_HASH = re.compile(r"^#\s*", re.MULTILINE)

_SEPARATORS = re.compile(r"[\s_]+")
_NON_SLUG_CHARS = re.compile(r"[^\u0600-\u06FFa-z0-9-]")
_DASH_RUNS = re.compile(r"-+")
_PHONE_NOISE = re.compile(r"[\s\-\+\(\)]")

WHATSAPP_PREFIX = "whatsapp:"


def extract_token(text: str | None) -> str | None:
    """Return the uppercased token named in ``text`` or None."""
    if not text:
        return None

    match = TOKEN_PATTERN.search(text) or TOKEN_SPACED_PATTERN.search(text)
    return match.group(1).upper() if match else None


def remove_token(text: str | None) -> str:
    """Strip token markers and leading hashes so only the message body remains."""
    if not text:
        return ""

    cleaned = TOKEN_PATTERN.sub("", text)
    cleaned = TOKEN_SPACED_PATTERN.sub("", cleaned)
    cleaned = _LEADING_HASH.sub("", cleaned)
    return cleaned.strip()


def should_force_process(text: str | None, keywords: Iterable[str]) -> bool:
    """True when the trimmed text equals or starts with one of ``keywords``."""
    if not text:
        return False

    normalized = text.strip().lower()
    if not normalized:
        return False

    for keyword in keywords:
        candidate = keyword.strip().lower()
        if candidate and (normalized == candidate or normalized.startswith(candidate)):
            return True
    return False


def slugify(text: str) -> str:
    """Lowercase slug keeping Arabic letters, ascii letters, digits and dashes."""
    slug = _SEPARATORS.sub("-", (text or "").lower().strip())
    slug = _NON_SLUG_CHARS.sub("", slug)
    slug = _DASH_RUNS.sub("-", slug)
    return slug.strip("-")


def unique_slug(title: str, now_ms: int | None = None) -> str:
    """Slug for an article title with a millisecond timestamp suffix."""
    suffix = now_ms if now_ms is not None else int(time.time() * 1000)
    base = slugify(title) or "article"
    return f"{base}-{suffix}"


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."


def build_alt_text(title: str, lead: str, index: int, max_length: int = 125) -> str:
    """
    Alt text for the image at ``index``.

    The hero image (index 0) is described by the title; later images use the
    start of the lead plus their position.
    """
    if index == 0:
        words = " ".join((title or "").split()[:8])
        alt_text = f"صورة {words}".strip()
    else:
        words = " ".join((lead or title or "").split()[:5])
        alt_text = f"{words} - صورة {index + 1}".strip()

    return truncate(alt_text, max_length)


def media_title(title: str, index: int) -> str:
    words = " ".join((title or "").split()[:8])
    return f"{words} - صورة {index + 1}".strip()


def file_name_from_url(url: str, index: int) -> str:
    tail = url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
    return tail or f"image-{index + 1}.jpg"


def normalize_phone(address: str | None) -> str:
    """Drop the WhatsApp prefix and formatting characters from a phone number."""
    if not address:
        return ""

    value = address.strip()
    if value.lower().startswith(WHATSAPP_PREFIX):
        value = value[len(WHATSAPP_PREFIX) :]
    return _PHONE_NOISE.sub("", value)


def normalize_email(address: str | None) -> str:
    """Lowercase an email address and drop any display name."""
    if not address:
        return ""

    _, email = parseaddr(address.strip())
    return (email or address).strip().lower()


def is_email_address(address: str) -> bool:
    return "@" in (address or "")
