from __future__ import annotations

import logging
import math
import time
import uuid
from collections import deque
from threading import Lock
from typing import Any, Literal, Mapping
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from marketing.repo import Repo
from marketing.util import iso_utc, parse_ts, sha256_hex

logger = logging.getLogger(__name__)

PIXEL_ID_PATTERN = r"^pix_[a-f0-9]{32}$"
DEFAULT_CURRENCY = "PHP"


def _is_url(value: str) -> bool:
    parsed = urlparse(value)
    return bool(parsed.scheme) and bool(parsed.netloc or parsed.path)


class PixelEvent(BaseModel):
    """A single event posted by the tracking pixel."""

    pixel_id: str = Field(pattern=PIXEL_ID_PATTERN)
    session_id: uuid.UUID
    event_type: Literal["page_view", "conversion", "custom"]
    page_url: str
    referrer: str = ""
    utm_source: str | None = Field(default=None, max_length=255)
    utm_medium: str | None = Field(default=None, max_length=255)
    utm_campaign: str | None = Field(default=None, max_length=255)
    utm_term: str | None = Field(default=None, max_length=255)
    utm_content: str | None = Field(default=None, max_length=255)
    timestamp: str
    metadata: dict[str, Any] | None = None

    @field_validator("page_url")
    @classmethod
    def _page_url(cls, v: str) -> str:
        if not _is_url(v):
            raise ValueError("page_url must be a valid URL")
        return v

    @field_validator("referrer")
    @classmethod
    def _referrer(cls, v: str) -> str:
        if v and not _is_url(v):
            raise ValueError("referrer must be a valid URL or empty")
        return v

    @field_validator("timestamp")
    @classmethod
    def _timestamp(cls, v: str) -> str:
        # Date-only values parse as midnight; require the time part.
        date_part, sep, _ = v.strip().upper().replace(" ", "T").partition("T")
        if not sep or not date_part:
            raise ValueError("timestamp must be an ISO-8601 datetime")
        try:
            parse_ts(v)
        except ValueError as e:
            raise ValueError("timestamp must be an ISO-8601 datetime") from e
        return v


def dedup_key(event: PixelEvent) -> str:
    """Page views dedupe per session+page; other events also include the timestamp."""
    parts = [event.pixel_id, str(event.session_id), event.event_type, event.page_url]
    if event.event_type != "page_view":
        parts.append(event.timestamp)
    return sha256_hex("|".join(parts))


def _meta_str(metadata: dict[str, Any], key: str) -> str | None:
    v = metadata.get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _meta_float(metadata: dict[str, Any], key: str) -> float | None:
    v = metadata.get(key)
    if v is None or v == "":
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(f) else f


def store_event(
    repo: Repo,
    event: PixelEvent,
    *,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> int:
    metadata = dict(event.metadata or {})
    email = _meta_str(metadata, "email")

    row = {
        "pixel_id": event.pixel_id,
        "session_id": str(event.session_id),
        "event_type": event.event_type,
        "page_url": event.page_url,
        "page_title": _meta_str(metadata, "page_title") or _meta_str(metadata, "title"),
        "referrer": event.referrer or None,
        "utm_source": event.utm_source,
        "utm_medium": event.utm_medium,
        "utm_campaign": event.utm_campaign,
        "utm_term": event.utm_term,
        "utm_content": event.utm_content,
        "timestamp": iso_utc(event.timestamp),
        "metadata": metadata,
        "dedup_key": dedup_key(event),
        "visitor_id": _meta_str(metadata, "visitor_id"),
        "visitor_email": email.lower() if email else None,
        "visitor_name": _meta_str(metadata, "name"),
        "value": _meta_float(metadata, "value"),
        "currency": _meta_str(metadata, "currency") or DEFAULT_CURRENCY,
        "consent_status": _meta_str(metadata, "consent_status"),
        "user_agent": user_agent,
        "ip_address": ip_address,
    }
    event_id = repo.upsert_pixel_event(row)
    logger.debug("pixel event stored id=%s type=%s", event_id, event.event_type)
    return event_id


def generate_pixel_id() -> str:
    return "pix_" + uuid.uuid4().hex


def get_or_create_pixel(repo: Repo, user_id: str) -> str:
    user = repo.get_user(user_id)
    if user is None:
        raise LookupError(f"Unknown user: {user_id}")
    if user.get("pixel_id"):
        return str(user["pixel_id"])
    pixel_id = generate_pixel_id()
    repo.set_user_pixel(user_id=user_id, pixel_id=pixel_id)
    logger.info("created pixel %s for user %s", pixel_id, user_id)
    return pixel_id


def client_ip(headers: Mapping[str, str], peer: str | None) -> str | None:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real = (headers.get("x-real-ip") or "").strip()
    if real:
        return real
    return peer


class RateLimiter:
    """Sliding-window request limiter keyed by client (in-process)."""

    def __init__(self, limit: int = 100, window_sec: float = 60.0, clock=time.monotonic):
        self.limit = limit
        self.window_sec = window_sec
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = clock()
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.window_sec:
                self._sweep(now)
            q = self._hits.setdefault(key, deque())
            while q and now - q[0] >= self.window_sec:
                q.popleft()
            if len(q) >= self.limit:
                return False
            q.append(now)
            return True

    def _sweep(self, now: float) -> None:
        # Drop clients with no hits left in the window.
        stale = [k for k, q in self._hits.items() if not q or now - q[-1] >= self.window_sec]
        for k in stale:
            del self._hits[k]
        self._last_sweep = now
