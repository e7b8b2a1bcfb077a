from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from marketing.attribution import (
    AttributionMatch,
    TransactionData,
    attribute_recent_transactions,
    attribute_transaction,
    attribution_stats,
    calculate_confidence_score,
    detect_over_attribution,
    match_ga4_session_to_pixel,
    time_proximity,
    transaction_from_raw_event,
    validate_with_ga4,
)
from marketing.db import AnalyticsDB
from marketing.pixel import PixelEvent, store_event
from marketing.repo import Repo

PIXEL_ID = "pix_" + "ab" * 16
FULL_UTM = {
    "utm_source": "facebook",
    "utm_medium": "cpc",
    "utm_campaign": "spring",
    "utm_term": "shoes",
    "utm_content": "ad1",
}


def _repo(tmp_path: Path, *, with_pixel: bool = True) -> Repo:
    db_path = tmp_path / "mi.sqlite3"
    AnalyticsDB(db_path).init()
    repo = Repo(db_path)
    repo.ensure_user(user_id="u1", email="owner@example.com")
    if with_pixel:
        repo.set_user_pixel(user_id="u1", pixel_id=PIXEL_ID)
    return repo


def _track(
    repo: Repo,
    session_id: str,
    timestamp: str,
    *,
    event_type: str = "page_view",
    page: str = "https://shop.example.com/",
    email: str | None = None,
    **utm: str,
) -> None:
    event = PixelEvent.model_validate(
        {
            "pixel_id": PIXEL_ID,
            "session_id": session_id,
            "event_type": event_type,
            "page_url": page,
            "timestamp": timestamp,
            "metadata": {"email": email} if email else None,
            **utm,
        }
    )
    store_event(repo, event)


def _ga4(repo: Repo, day: str, source: str, sessions: int) -> None:
    repo.insert_raw_events(
        user_id="u1",
        platform="google_analytics_4",
        events=[
            {
                "event_type": "ga4_traffic_source",
                "event_data": {"date": day, "source": source, "medium": "cpc", "sessions": sessions, "conversions": 1},
                "timestamp": f"{day[:4]}-{day[4:6]}-{day[6:]}T00:00:00.000+00:00",
            }
        ],
    )


def _txn(txn_id: str = "ch_1", email: str | None = "buyer@example.com") -> TransactionData:
    return TransactionData(
        transaction_id=txn_id,
        amount=2500.0,
        currency="PHP",
        timestamp="2024-03-01T12:00:00.000+00:00",
        email=email,
        platform="stripe",
    )


def test_confidence_score_levels() -> None:
    full_pixel = AttributionMatch(
        pixel_match=True,
        pixel_channel="facebook",
        pixel_time_proximity=1.0,
        pixel_has_conversion=True,
        pixel_utm_completeness=1.0,
    )
    r = calculate_confidence_score(full_pixel)
    assert (r.score, r.level, r.method) == (70, "medium", "single_source")

    agreed = AttributionMatch(**{**full_pixel.__dict__, "ga4_match": True, "ga4_channel": "FB"})
    r = calculate_confidence_score(agreed)
    assert (r.score, r.level, r.method) == (100, "high", "dual_verified")

    conflict = AttributionMatch(
        **{**full_pixel.__dict__, "ga4_match": True, "ga4_channel": "google", "conflict_reason": "channel_mismatch"}
    )
    r = calculate_confidence_score(conflict)
    assert (r.score, r.level, r.method) == (50, "low", "single_source")

    r = calculate_confidence_score(AttributionMatch())
    assert (r.score, r.level, r.method) == (0, "low", "uncertain")

    traffic_only = AttributionMatch(ga4_match=True, ga4_has_traffic=True)
    assert calculate_confidence_score(traffic_only).score == 20


def test_time_proximity_decays_linearly() -> None:
    t = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
    assert time_proximity(t, t, 24) == 1.0
    assert time_proximity(datetime(2024, 3, 1, 0, tzinfo=timezone.utc), t, 24) == 0.5
    assert time_proximity(datetime(2024, 2, 27, tzinfo=timezone.utc), t, 24) == 0.0


def test_attribute_with_pixel_only(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    session = str(uuid.uuid4())
    _track(repo, session, "2024-03-01T11:00:00.000Z", **FULL_UTM)
    _track(repo, session, "2024-03-01T12:00:00.000Z", event_type="conversion", page="https://shop.example.com/thanks", **FULL_UTM)

    conv = attribute_transaction(repo, "u1", _txn())
    assert conv["pixel_session_id"] == session
    assert conv["attributed_channel"] == "facebook"
    assert conv["confidence_score"] == 70
    assert conv["confidence_level"] == "medium"
    assert conv["attribution_method"] == "single_source"
    assert conv["metadata"]["all_candidate_sessions"] == [session]
    assert conv["metadata"]["platform"] == "stripe"


def test_attribute_dual_verified_when_ga4_agrees(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    session = str(uuid.uuid4())
    _track(repo, session, "2024-03-01T12:00:00.000Z", event_type="conversion", **FULL_UTM)
    _ga4(repo, "20240301", "facebook", 40)

    conv = attribute_transaction(repo, "u1", _txn())
    assert conv["confidence_score"] == 100
    assert conv["confidence_level"] == "high"
    assert conv["attribution_method"] == "dual_verified"
    assert conv["conflicting_sources"] is None


def test_attribute_channel_conflict_caps_score(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    session = str(uuid.uuid4())
    _track(repo, session, "2024-03-01T12:00:00.000Z", event_type="conversion", **FULL_UTM)
    _ga4(repo, "20240301", "facebook", 10)
    _ga4(repo, "20240301", "google", 100)

    conv = attribute_transaction(repo, "u1", _txn())
    assert conv["confidence_score"] == 50
    assert conv["confidence_level"] == "low"
    assert conv["conflicting_sources"] == ["facebook", "google"]
    assert conv["metadata"]["conflict_reason"] == "channel_mismatch"


def test_attribute_prefers_session_with_buyer_email(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    anonymous = str(uuid.uuid4())
    identified = str(uuid.uuid4())
    _track(repo, anonymous, "2024-03-01T12:00:00.000Z", event_type="conversion", **FULL_UTM)
    _track(repo, identified, "2024-03-01T02:00:00.000Z", email="Buyer@Example.com", utm_source="Google")

    conv = attribute_transaction(repo, "u1", _txn())
    assert conv["pixel_session_id"] == identified
    assert conv["attributed_channel"] == "google"


def test_attribute_outside_window_is_direct(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    _track(repo, str(uuid.uuid4()), "2024-02-27T12:00:00.000Z", **FULL_UTM)

    conv = attribute_transaction(repo, "u1", _txn())
    assert conv["pixel_session_id"] is None
    assert conv["attributed_channel"] == "direct"
    assert conv["attribution_method"] == "uncertain"
    assert conv["metadata"]["reason"] == "no_pixel_match"


def test_attribute_without_pixel_and_duplicate(tmp_path: Path) -> None:
    repo = _repo(tmp_path, with_pixel=False)
    first = attribute_transaction(repo, "u1", _txn())
    assert first["attributed_channel"] == "direct"
    assert first["confidence_score"] == 0

    again = attribute_transaction(repo, "u1", _txn())
    assert again["id"] == first["id"]
    assert repo.count_verified_conversions(user_id="u1") == 1


def test_validate_with_ga4(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    _ga4(repo, "20240301", "facebook", 10)
    _ga4(repo, "20240301", "google", 30)
    _ga4(repo, "20240302", "email", 99)

    day = datetime(2024, 3, 1, 15, tzinfo=timezone.utc)
    v = validate_with_ga4(repo, "u1", "fb", day)
    assert v.has_traffic is True
    assert v.top_channels == ("google", "facebook")
    assert v.conversion_count == 2
    assert validate_with_ga4(repo, "u1", "email", day).has_traffic is False


def test_validate_with_ga4_reads_only_the_transaction_day(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    _ga4(repo, "20240229", "facebook", 10)
    _ga4(repo, "20240301", "facebook", 20)
    _ga4(repo, "20240302", "facebook", 30)

    with patch.object(repo, "list_raw_events", wraps=repo.list_raw_events) as spy:
        v = validate_with_ga4(repo, "u1", "facebook", datetime(2024, 3, 1, 23, 30, tzinfo=timezone.utc))

    assert v.has_traffic is True
    assert v.conversion_count == 1
    kwargs = spy.call_args.kwargs
    assert kwargs["start"] == "2024-03-01T00:00:00.000+00:00"
    assert kwargs["end"] == "2024-03-01T23:59:59.999+00:00"
    assert len(repo.list_raw_events(user_id="u1", start=kwargs["start"], end=kwargs["end"])) == 1


def test_detect_over_attribution(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.insert_raw_events(
        user_id="u1",
        platform="stripe",
        events=[{"event_type": "stripe_charge", "event_data": {"id": "ch_1"}, "timestamp": "2024-03-01T00:00:00.000+00:00"}],
    )
    repo.insert_raw_events(
        user_id="u1",
        platform="meta",
        events=[
            {
                "event_type": "meta_campaign_insights",
                "event_data": {"actions": [{"action_type": "purchase", "value": 5}]},
                "timestamp": "2024-03-01T00:00:00.000+00:00",
            }
        ],
    )
    start = datetime(2024, 2, 25, tzinfo=timezone.utc)
    end = datetime(2024, 3, 2, tzinfo=timezone.utc)
    over = detect_over_attribution(repo, "u1", start, end)
    assert over.is_over_attributed is True
    assert over.actual_sales == 1
    assert over.platform_claimed == 5
    assert over.discrepancy == 4


def test_match_ga4_session_to_pixel(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    session = str(uuid.uuid4())
    event = PixelEvent.model_validate(
        {
            "pixel_id": PIXEL_ID,
            "session_id": session,
            "event_type": "page_view",
            "page_url": "https://shop.example.com/",
            "timestamp": "2024-03-01T12:00:00.000Z",
            "utm_source": "facebook",
            "utm_medium": "cpc",
            "metadata": {"ga4_client_id": "GA1.1.123"},
        }
    )
    store_event(repo, event)
    ts = datetime(2024, 3, 1, 12, 10, tzinfo=timezone.utc)

    by_id = match_ga4_session_to_pixel(repo, "u1", "GA1.1.123", ts, {})
    assert (by_id.matched, by_id.match_method, by_id.pixel_session_id) == (True, "client_id", session)

    by_utm = match_ga4_session_to_pixel(repo, "u1", None, ts, {"source": "Facebook", "medium": "cpc"})
    assert by_utm.match_method == "utm_timestamp"
    assert by_utm.pixel_session_id == session
    assert 0 < by_utm.match_confidence < 1

    assert match_ga4_session_to_pixel(repo, "u1", None, ts, {"source": "google"}).matched is False


def test_transaction_from_raw_event() -> None:
    paypal = transaction_from_raw_event(
        {
            "platform": "paypal",
            "event_type": "paypal_transaction",
            "timestamp": "2024-03-01T00:00:00.000+00:00",
            "event_data": {"transaction_id": "PP1", "gross_amount": 99.5, "currency": "php", "payer_email": "a@b.c"},
        }
    )
    assert paypal == TransactionData("PP1", 99.5, "PHP", "2024-03-01T00:00:00.000+00:00", "a@b.c", "paypal")
    assert transaction_from_raw_event({"event_type": "stripe_charge", "timestamp": "x", "event_data": {}}) is None
    customer = {"event_type": "stripe_customer", "timestamp": "x", "event_data": {"id": "cus_1"}}
    assert transaction_from_raw_event(customer) is None
    intent = {"event_type": "stripe_payment_intent", "timestamp": "x", "event_data": {"id": "pi_1", "amount": 10}}
    assert transaction_from_raw_event(intent) is None


def test_attribute_recent_transactions_and_stats(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    session = str(uuid.uuid4())
    _track(repo, session, "2024-03-01T12:00:00.000Z", event_type="conversion", **FULL_UTM)

    events = [
        {
            "platform": "stripe",
            "event_type": "stripe_charge",
            "timestamp": "2024-03-01T12:00:00.000+00:00",
            "event_data": {"id": "ch_1", "amount": 2500, "receipt_email": "buyer@example.com"},
        },
        {
            "platform": "stripe",
            "event_type": "stripe_charge",
            "timestamp": "2024-03-05T12:00:00.000+00:00",
            "event_data": {"id": "ch_2", "amount": 500},
        },
        {"platform": "stripe", "event_type": "stripe_charge", "timestamp": "2024-03-05T12:00:00.000+00:00", "event_data": {}},
        {"platform": "stripe", "event_type": "stripe_customer", "timestamp": "2024-03-05T12:00:00.000+00:00", "event_data": {"id": "cus_9"}},
    ]
    results = attribute_recent_transactions(repo, "u1", events)
    assert [r["transaction_id"] for r in results] == ["ch_1", "ch_2"]

    stats = attribution_stats(repo, "u1")
    assert stats["total_conversions"] == 2
    assert stats["attributed_conversions"] == 1
    assert stats["attribution_rate"] == 50.0
    assert stats["avg_confidence_score"] == 35.0
    assert stats["by_confidence_level"] == {"high": 0, "medium": 1, "low": 1}
    assert stats["by_attribution_method"] == {"dual_verified": 0, "single_source": 1, "uncertain": 1}


def test_attribution_stats_empty(tmp_path: Path) -> None:
    stats = attribution_stats(_repo(tmp_path), "u1")
    assert stats["total_conversions"] == 0
    assert stats["attribution_rate"] == 0
