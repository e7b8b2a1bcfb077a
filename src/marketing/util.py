from __future__ import annotations

import hashlib
import math
import re
import secrets
from datetime import date, datetime, timedelta, timezone
from typing import Any, Sequence, TypeVar

T = TypeVar("T")

_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def now_utc_iso() -> str:
    return now_utc().replace(microsecond=0).isoformat()


def new_id(prefix: str) -> str:
    # URL-safe, reasonably short
    return f"{prefix}_{secrets.token_urlsafe(10)}"


def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8", errors="strict")).hexdigest()


def parse_ts(value: Any) -> datetime:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
        if not s:
            raise ValueError("empty timestamp")
        if s.endswith("Z") or s.endswith("z"):
            s = s[:-1] + "+00:00"
        elif "T" in s:
            s = _COMPACT_OFFSET.sub(r"\1:\2", s)
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_utc(value: Any) -> str:
    """Canonical stored form for event timestamps. Sorts lexicographically."""
    return parse_ts(value).isoformat(timespec="milliseconds")


def to_float(v: Any, default: float = 0.0) -> float:
    if v is None or v == "":
        return default
    try:
        f = float(v)
    except (TypeError, ValueError):
        return default
    if math.isnan(f):
        return default
    return f


def to_int(v: Any, default: int = 0) -> int:
    if v is None or v == "":
        return default
    try:
        return int(float(v))
    except (TypeError, ValueError):
        return default


# Date range helpers used by the platform sync.


def get_historical_date_range(days_back: int = 90, *, now: datetime | None = None) -> tuple[datetime, datetime]:
    end = now or now_utc()
    return end - timedelta(days=days_back), end


def format_date_ymd(value: datetime | date) -> str:
    if isinstance(value, datetime):
        value = value.astimezone(timezone.utc) if value.tzinfo else value
        return value.date().isoformat()
    return value.isoformat()


def to_unix_timestamp(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def split_date_range(start: datetime, end: datetime, max_days: int = 31) -> list[tuple[datetime, datetime]]:
    if max_days <= 0:
        raise ValueError("max_days must be positive")
    chunks: list[tuple[datetime, datetime]] = []
    current = start
    while current < end:
        chunk_end = min(current + timedelta(days=max_days), end)
        chunks.append((current, chunk_end))
        current = chunk_end
    return chunks


def chunk_list(items: Sequence[T], size: int) -> list[list[T]]:
    if size <= 0:
        raise ValueError("size must be positive")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round halves up (2.5 -> 3.0, 0.125 -> 0.13 at ndigits=2)."""
    q = 10**ndigits
    return math.floor(value * q + 0.5) / q


def json_safe(value: Any) -> Any:
    """Replace non-finite floats with None so the value serializes as strict JSON."""
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value
