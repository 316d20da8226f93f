"""Utility helpers for EventCall."""

from __future__ import annotations

import math
import re
import secrets
import unicodedata
import uuid
from datetime import UTC, datetime
from hashlib import blake2s

_slug_invalid = re.compile(r"[^a-z0-9]+")
_angle_brackets = re.compile(r"[<>]")
_email_pattern = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_phone_pattern = re.compile(r"^\+?[1-9]\d{0,15}$")
_name_pattern = re.compile(r"^[A-Za-z\s\-.]{2,50}$")
_whitespace = re.compile(r"\s+")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def now_ms() -> int:
    """Return the current time as epoch milliseconds (the wire timestamp format)."""
    return int(datetime.now(UTC).timestamp() * 1000)


def new_uuid() -> str:
    return str(uuid.uuid4())


def new_token() -> str:
    return secrets.token_urlsafe(24)


def slugify(value: str) -> str:
    """Return a canonical slug suitable for URLs and file names."""
    value = (
        unicodedata.normalize("NFKD", value or "")
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    value = value.strip().lower()
    value = _slug_invalid.sub("-", value)
    value = value.strip("-")
    return value


def sanitize_text(value: object) -> str:
    """Trim user input and strip angle brackets."""
    if value is None:
        return ""
    return _angle_brackets.sub("", str(value).strip())


def normalize_email(value: str | None) -> str:
    return (value or "").strip().casefold()


def is_valid_email(value: str | None) -> bool:
    return bool(value) and bool(_email_pattern.match(value))


def is_valid_phone(value: str | None) -> bool:
    if not value:
        return False
    return bool(_phone_pattern.match(_whitespace.sub("", value)))


def is_valid_name(value: str | None) -> bool:
    return bool(value) and bool(_name_pattern.match(value))


def coerce_guest_count(raw: object) -> int:
    """Return ``raw`` as a non-negative integer, defaulting to zero."""
    if isinstance(raw, bool):
        return 0
    try:
        value = int(str(raw).strip()) if isinstance(raw, str) else int(raw or 0)
    except (TypeError, ValueError):
        return 0
    return max(value, 0)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def validation_hash(event_id: str, email: str, timestamp: int) -> str:
    """Return a short, stable fingerprint of an RSVP submission.

    Tamper evidence only; this is not a security boundary.
    """
    data = f"{event_id}|{email}|{timestamp}".encode("utf-8")
    return blake2s(data, digest_size=8).hexdigest()
