"""Normalizers that turn messy identity input into stable comparison values.

Every normalizer accepts ``None`` (or any other junk) and degrades to ``""``
instead of raising, so a single bad field never fails a whole submission.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
import re
import unicodedata
from typing import Any


_WHITESPACE_RE = re.compile(r"\s+")
_NON_DIGIT_RE = re.compile(r"\D")
# Day-first numeric forms are what field teams type; ISO forms are tried before these.
# Month names are matched in English.
_DOB_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%Y%m%d",
    "%d/%m/%Y",
    "%d.%m.%Y",
    "%d-%m-%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
)


def normalize_name(value: Any) -> str:
    if value is None:
        return ""
    text = unicodedata.normalize("NFKD", str(value))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return _WHITESPACE_RE.sub(" ", text).strip().casefold()


def normalize_dob(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return _datetime_to_date(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return ""
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    else:
        return _datetime_to_date(parsed).isoformat()
    for fmt in _DOB_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return ""


def normalize_phone(value: Any) -> str:
    if value is None:
        return ""
    text = str(value).strip()
    digits = _NON_DIGIT_RE.sub("", text)
    # "+<cc>" and "00<cc>" are the same international prefix convention.
    if not text.startswith("+") and digits.startswith("00"):
        digits = digits[2:]
    return digits


def _datetime_to_date(value: datetime) -> date:
    # Aware timestamps are compared on their UTC calendar date.
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()
