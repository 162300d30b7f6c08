# team_identity/utils/misc_utils.py
import re
import hashlib
from datetime import datetime, timezone
from typing import Optional


def generate_canonical_id(*args: str) -> str:
    """Generates a consistent, URL-safe ID from one or more strings."""
    combined = "_".join(str(arg).lower() for arg in args if arg)
    # Remove non-alphanumeric characters (except underscore)
    safe_string = re.sub(r"[^\w]+", "", combined.replace(" ", "_"))
    if len(safe_string) > 100:
        return hashlib.sha1(safe_string.encode()).hexdigest()[:16]
    return safe_string


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def country_key(country: Optional[str]) -> Optional[str]:
    """Case/whitespace-insensitive key for comparing country names."""
    if country is None:
        return None
    key = " ".join(str(country).split()).casefold()
    return key or None


def countries_conflict(a: Optional[str], b: Optional[str]) -> bool:
    """True only when both countries are known and differ."""
    key_a, key_b = country_key(a), country_key(b)
    return key_a is not None and key_b is not None and key_a != key_b
