"""
Small helpers shared by the engines: label normalization, time handling
and the key conventions used inside stored documents.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any
from zoneinfo import ZoneInfo

import math
import os
import re
import unicodedata

DEFAULT_REFERENCE_TZ = "America/Chicago"


def normalize_string(text: str) -> str:
    """
    Normalize a label for case/accent/punctuation-insensitive lookups.

    Steps: NFC normalize, casefold, strip diacritics, drop apostrophes and
    periods, turn other punctuation (except hyphens) into spaces, collapse
    whitespace and trim.

    Examples:
        >>> normalize_string("Awards Rating")
        'awards rating'
        >>> normalize_string("  CLOSED ")
        'closed'
        >>> normalize_string("1-10")
        '1-10'
    """
    if not text:
        return ""

    normalized = unicodedata.normalize("NFC", text).casefold()

    # Decompose, then drop combining marks (é -> e)
    normalized = unicodedata.normalize("NFD", normalized)
    normalized = "".join(char for char in normalized if unicodedata.category(char) != "Mn")

    normalized = re.sub(r"[''ʼ`']", "", normalized)
    normalized = re.sub(r"\.", "", normalized)
    normalized = re.sub(r"[^\w\s\-]", " ", normalized)
    normalized = re.sub(r"\s+", " ", normalized)

    return normalized.strip()


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(moment: datetime) -> datetime:
    """Attach UTC to naive datetimes; aware datetimes pass through unchanged."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def movie_key(movie_id: int | str) -> str:
    """
    Key used for a movie inside nested document maps (votes, ratings).

    Document maps only have string keys, so catalog ids are stringified.
    """
    return str(movie_id)


def parse_float(value: Any) -> float | None:
    """
    Parse a loosely-typed score ("8", 6.5, " 7.0 ") into a finite float.

    Returns None for anything unparseable, NaN or infinite.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed):
        return None
    return parsed


def reference_timezone(name: str | None = None) -> ZoneInfo:
    """
    The single fixed timezone awards ballots lock against.

    Defaults to AWARDS_REFERENCE_TZ (America/Chicago) so every voter shares
    one cutoff regardless of device locale.
    """
    return ZoneInfo(name or os.getenv("AWARDS_REFERENCE_TZ", DEFAULT_REFERENCE_TZ))


# Resolved once at import; lock decisions never re-read the environment
REFERENCE_TZ: ZoneInfo = reference_timezone()


def round_half_up(value: float, digits: int = 1) -> float:
    """
    Round half away from zero (7.25 -> 7.3), unlike round()'s banker's rounding.

    Goes through the shortest repr so 7.25 rounds the way it reads.
    """
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
