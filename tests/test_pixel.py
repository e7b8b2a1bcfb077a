from __future__ import annotations

import uuid
from pathlib import Path

import pytest
from pydantic import ValidationError

from marketing.db import AnalyticsDB
from marketing.pixel import (
    PixelEvent,
    RateLimiter,
    client_ip,
    dedup_key,
    generate_pixel_id,
    get_or_create_pixel,
    store_event,
)
from marketing.repo import Repo

PIXEL_ID = "pix_" + "0123456789abcdef" * 2
SESSION = "2b7e1516-28ae-4d2a-a6d2-abf7158809cf"


def _event(**overrides) -> PixelEvent:
    payload = {
        "pixel_id": PIXEL_ID,
        "session_id": SESSION,
        "event_type": "page_view",
        "page_url": "https://shop.example.com/products/1",
        "referrer": "",
        "utm_source": "facebook",
        "utm_medium": "cpc",
        "utm_campaign": "spring",
        "timestamp": "2024-03-01T10:00:00.000Z",
    }
    payload.update(overrides)
    return PixelEvent.model_validate(payload)


def _repo(tmp_path: Path) -> Repo:
    db_path = tmp_path / "mi.sqlite3"
    AnalyticsDB(db_path).init()
    repo = Repo(db_path)
    repo.ensure_user(user_id="u1", email="owner@example.com")
    return repo


def test_event_validation() -> None:
    assert _event().session_id == uuid.UUID(SESSION)

    with pytest.raises(ValidationError):
        _event(pixel_id="pix_short")
    with pytest.raises(ValidationError):
        _event(session_id="not-a-uuid")
    with pytest.raises(ValidationError):
        _event(event_type="click")
    with pytest.raises(ValidationError):
        _event(page_url="not a url")
    with pytest.raises(ValidationError):
        _event(referrer="nope")
    with pytest.raises(ValidationError):
        _event(timestamp="yesterday")
    for date_only in ("2024-03-01", "20240301"):
        with pytest.raises(ValidationError):
            _event(timestamp=date_only)
    assert _event(timestamp="2024-03-01 10:00:00+08:00").timestamp == "2024-03-01 10:00:00+08:00"
    with pytest.raises(ValidationError):
        _event(utm_source="x" * 256)


def test_dedup_key_rules() -> None:
    a = _event()
    b = _event(timestamp="2024-03-01T10:05:00.000Z")
    assert dedup_key(a) == dedup_key(b)

    c = _event(event_type="conversion")
    d = _event(event_type="conversion", timestamp="2024-03-01T10:05:00.000Z")
    assert dedup_key(c) != dedup_key(d)


def test_store_event_dedupes_page_views(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    first = store_event(repo, _event(), user_agent="UA", ip_address="1.2.3.4")
    again = store_event(repo, _event(timestamp="2024-03-01T10:01:00.000Z"))
    assert first == again

    rows = repo.list_pixel_events(pixel_id=PIXEL_ID)
    assert len(rows) == 1
    assert rows[0]["timestamp"] == "2024-03-01T10:01:00.000+00:00"


def test_store_event_maps_metadata(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    store_event(
        repo,
        _event(
            event_type="conversion",
            metadata={"email": "Buyer@Example.com", "value": "1999.5", "name": "Ana", "title": "Checkout"},
        ),
    )
    row = repo.list_pixel_events(pixel_id=PIXEL_ID)[0]
    assert row["visitor_email"] == "buyer@example.com"
    assert row["visitor_name"] == "Ana"
    assert row["value"] == 1999.5
    assert row["currency"] == "PHP"
    assert row["page_title"] == "Checkout"
    assert row["metadata"]["email"] == "Buyer@Example.com"


def test_get_or_create_pixel_is_stable(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel_id = get_or_create_pixel(repo, "u1")
    assert pixel_id.startswith("pix_") and len(pixel_id) == 36
    assert get_or_create_pixel(repo, "u1") == pixel_id
    with pytest.raises(LookupError):
        get_or_create_pixel(repo, "missing")
    assert generate_pixel_id() != generate_pixel_id()


def test_client_ip_prefers_forwarded_headers() -> None:
    assert client_ip({"x-forwarded-for": "9.9.9.9, 10.0.0.1"}, "127.0.0.1") == "9.9.9.9"
    assert client_ip({"x-real-ip": "8.8.8.8"}, "127.0.0.1") == "8.8.8.8"
    assert client_ip({}, "127.0.0.1") == "127.0.0.1"


def test_rate_limiter_window() -> None:
    now = {"t": 0.0}
    limiter = RateLimiter(limit=2, window_sec=60, clock=lambda: now["t"])
    assert limiter.allow("a")
    assert limiter.allow("a")
    assert not limiter.allow("a")
    assert limiter.allow("b")

    now["t"] = 60.0
    assert limiter.allow("a")
    assert list(limiter._hits) == ["a"]


def test_rate_limiter_forgets_idle_clients() -> None:
    now = {"t": 0.0}
    limiter = RateLimiter(limit=5, window_sec=60, clock=lambda: now["t"])
    for i in range(1000):
        assert limiter.allow(f"10.0.{i // 256}.{i % 256}")
    assert len(limiter._hits) == 1000

    now["t"] = 61.0
    assert limiter.allow("203.0.113.9")
    assert list(limiter._hits) == ["203.0.113.9"]

    now["t"] = 90.0
    assert limiter.allow("198.51.100.7")
    assert len(limiter._hits) == 2
