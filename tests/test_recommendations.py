from __future__ import annotations

import asyncio
import json
import math
from datetime import datetime, timezone
from pathlib import Path

import httpx

from marketing import recommendations
from marketing.config import Settings
from marketing.db import AnalyticsDB
from marketing.recommendations import (
    RecommendationCache,
    analyze_and_generate_recommendations,
    build_recommendation_prompt,
    calculate_performance_rating,
    enhance_recommendations_with_ai,
    generate_fallback_recommendations,
    generate_recommendations,
    gemini_client,
)
from marketing.repo import Repo
from marketing.synergy import DateRange

MARCH = DateRange(start=datetime(2024, 3, 1, tzinfo=timezone.utc), end=datetime(2024, 3, 31, tzinfo=timezone.utc))


def _settings_for_db(db_path: Path, *, gemini_api_key: str | None = "test-key") -> Settings:
    return Settings(
        db_path=db_path,
        timezone="Asia/Manila",
        web_host="127.0.0.1",
        web_port=0,
        default_user_id="u1",
        default_user_email="owner@example.com",
        frontend_url="http://localhost:5173",
        pixel_url="http://localhost:3001/pixel.js",
        backend_url="http://localhost:3001",
        token_encryption_key=None,
        gemini_api_key=gemini_api_key,
        gemini_model="gemini-test",
        paypal_env="sandbox",
        demo_mode=False,
    )


def _seeded_repo(db_path: Path) -> Repo:
    AnalyticsDB(db_path).init()
    repo = Repo(db_path)
    repo.ensure_user(user_id="u1", email="owner@example.com")
    for txn_id, ts, amount, channel in (
        ("ch_1", "2024-03-10T12:00:00.000+00:00", 2000, "facebook"),
        ("ch_2", "2024-03-20T12:00:00.000+00:00", 500, "email"),
    ):
        repo.insert_verified_conversion(
            {"user_id": "u1", "transaction_id": txn_id, "amount": amount, "timestamp": ts, "attributed_channel": channel}
        )
    repo.insert_raw_events(
        user_id="u1",
        platform="meta",
        events=[{"event_type": "meta_campaign_insights", "event_data": {"spend": 500}, "timestamp": "2024-03-05T00:00:00.000+00:00"}],
    )
    return repo


def _gemini_reply(payload: dict) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": json.dumps(payload)}]}}]}


GOOD_REPLY = {
    "enhanced": [
        {
            "id": "rec-fallback-1",
            "action": "Tighten facebook targeting on the spring campaign",
            "reason": "ROI of 300% on ₱500 spend",
            "ai_explanation": "Facebook converts but below the excellent band.",
            "after_implementation": "ROI above 500%",
            "why_it_matters": ["₱2,000 revenue", "1 conversion"],
        }
    ],
    "additional": [
        {
            "type": "scale",
            "channel": "google",
            "action": "Test google search",
            "reason": "Untested channel",
            "ai_explanation": "No spend recorded.",
            "after_implementation": "New traffic",
            "why_it_matters": ["No data yet"],
            "estimated_impact": 250,
            "confidence": 55,
            "priority": "low",
        }
    ],
}


def test_performance_rating_labels() -> None:
    assert calculate_performance_rating(math.inf) == "Exceptional"
    assert calculate_performance_rating(300) == "Satisfactory"
    assert calculate_performance_rating(-5) == "Failing"


def test_fallback_rules_cap_at_three() -> None:
    perf = [
        {"channel": "facebook", "revenue": 10000, "spend": 500, "roi": 1900, "performance_rating": "exceptional"},
        {"channel": "google", "revenue": 3000, "spend": 1000, "roi": 200, "performance_rating": "satisfactory"},
        {"channel": "email", "revenue": 100, "spend": 400, "roi": -75, "performance_rating": "failing"},
        {"channel": "tiktok", "revenue": 100, "spend": 90, "roi": 11, "performance_rating": "poor"},
    ]
    synergies = [{"channel_a": "email", "channel_b": "facebook", "synergy_score": 2.5, "confidence": 60, "frequency": 3}]
    recs = generate_fallback_recommendations("u1", perf, synergies)

    assert [r["id"] for r in recs] == ["rec-fallback-1", "rec-fallback-2", "rec-fallback-3"]
    scale, optimize, stop = recs
    assert (scale["type"], scale["estimated_impact"], scale["reason"], scale["priority"]) == (
        "scale",
        1000,
        "High ROI (1900%)",
        "high",
    )
    assert (optimize["type"], optimize["estimated_impact"], optimize["confidence_score"]) == ("optimize", 150, 70)
    assert (stop["action"], stop["estimated_impact"], stop["priority"]) == ("Cut email budget", 400, "high")
    assert stop["reason"] == "Low/negative ROI (-75%)"


def test_fallback_reasons_quote_cost_per_lead_in_leads_mode() -> None:
    perf = [
        {"channel": "email", "spend": 90, "roi": 0.0, "cpl": 45.0, "performance_rating": "exceptional"},
        {"channel": "google", "spend": 600, "roi": 0.0, "cpl": 150.0, "performance_rating": "satisfactory"},
        {"channel": "facebook", "spend": 1200, "roi": 0.0, "cpl": 600.0, "performance_rating": "failing"},
    ]
    scale, optimize, stop = generate_fallback_recommendations("u1", perf, [])
    assert scale["reason"] == "Low cost per lead (₱45 CPL)"
    assert optimize["reason"] == "Above target CPL (₱150)"
    assert stop["reason"] == "High cost per lead (₱600 CPL)"
    assert all("ROI" not in r["reason"] for r in (scale, optimize, stop))

    roles = [{"channel": "tiktok", "primary_role": "isolated", "solo_conversions": 2, "assisted_conversions": 0}]
    perf.append({"channel": "tiktok", "spend": 1500, "roi": 0.0, "cpl": 750.0, "performance_rating": "failing"})
    pause = generate_recommendations("u1", perf, [], roles)[-1]
    assert pause["reason"] == "Isolated (100% alone), high cost per lead (₱750 CPL)"

def test_synergy_rule() -> None:
    synergies = [
        {"channel_a": "email", "channel_b": "facebook", "synergy_score": 3.2, "confidence": 60, "frequency": 4},
        {"channel_a": "a", "channel_b": "b", "synergy_score": 2.5, "confidence": 40, "frequency": 9},
    ]
    [rec] = generate_fallback_recommendations("u1", [], synergies)
    assert rec["action"] == "Combine email & facebook"
    assert rec["channel"] == "email + facebook"
    assert rec["priority"] == "high"
    assert rec["estimated_impact"] == 13


def test_isolated_losing_channel_is_paused() -> None:
    perf = [
        {"channel": "facebook", "revenue": 10000, "spend": 500, "roi": 1900, "performance_rating": "exceptional"},
        {"channel": "google", "revenue": 3000, "spend": 1000, "roi": 200, "performance_rating": "satisfactory"},
        {"channel": "email", "revenue": 5000, "spend": 100, "roi": 4900, "performance_rating": "exceptional"},
        {"channel": "tiktok", "revenue": 240, "spend": 300, "roi": -20, "performance_rating": "failing"},
    ]
    roles = [
        {"channel": "tiktok", "primary_role": "isolated", "solo_conversions": 4, "assisted_conversions": 1},
        {"channel": "google", "primary_role": "isolated", "solo_conversions": 4, "assisted_conversions": 0},
    ]
    recs = generate_recommendations("u1", perf, [], roles)
    assert len(recs) == 4
    pause = recs[-1]
    assert pause["id"] == "rec-fallback-4"
    assert pause["action"] == "Pause tiktok and reallocate budget"
    assert pause["reason"] == "Isolated (80% alone), losing money (-20% ROI)"
    assert (pause["confidence_score"], pause["priority"], pause["estimated_impact"]) == (95, "high", 300)


def test_prompt_is_strict_json() -> None:
    perf = [{"channel": "email", "roi": math.inf, "performance_rating": "exceptional"}]
    prompt = build_recommendation_prompt(perf, [], [], [], [])
    assert "Infinity" not in prompt
    assert '"roi": null' in prompt


def test_gemini_client_requires_real_key(tmp_path: Path) -> None:
    db_path = tmp_path / "mi.sqlite3"
    assert gemini_client(_settings_for_db(db_path, gemini_api_key=None)) is None
    assert gemini_client(_settings_for_db(db_path, gemini_api_key="your_gemini_api_key")) is None
    assert gemini_client(_settings_for_db(db_path)) is not None


def test_cache_expires() -> None:
    now = {"t": 0.0}
    cache = RecommendationCache(ttl_sec=300, clock=lambda: now["t"])
    key = RecommendationCache.key("u1", MARCH)
    cache.set(key, [{"id": "x"}])
    now["t"] = 299.0
    assert cache.get(key) == [{"id": "x"}]
    now["t"] = 301.0
    assert cache.get(key) is None


def test_cache_key_includes_business_type() -> None:
    assert RecommendationCache.key("u1", MARCH) == RecommendationCache.key("u1", MARCH, "sales")
    assert RecommendationCache.key("u1", MARCH, "sales") != RecommendationCache.key("u1", MARCH, "leads")


def test_enhance_caches_sales_and_leads_separately(tmp_path: Path) -> None:
    db_path = tmp_path / "mi.sqlite3"
    repo = _seeded_repo(db_path)
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_gemini_reply({"enhanced": [], "additional": []}))

    cache = RecommendationCache()
    transport = httpx.MockTransport(handler)
    settings = _settings_for_db(db_path)
    sales = asyncio.run(enhance_recommendations_with_ai(repo, settings, "u1", MARCH, "sales", transport=transport, cache=cache))
    leads = asyncio.run(enhance_recommendations_with_ai(repo, settings, "u1", MARCH, "leads", transport=transport, cache=cache))

    assert len(seen) == 2
    assert cache.get(RecommendationCache.key("u1", MARCH, "sales")) == sales
    assert cache.get(RecommendationCache.key("u1", MARCH, "leads")) == leads
    assert any("CPL" in r["reason"] for r in leads)
    assert all("CPL" not in r["reason"] for r in sales)


def test_enhance_merges_gemini_output_and_caches(tmp_path: Path) -> None:
    db_path = tmp_path / "mi.sqlite3"
    repo = _seeded_repo(db_path)
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_gemini_reply(GOOD_REPLY))

    cache = RecommendationCache()
    transport = httpx.MockTransport(handler)
    recs = asyncio.run(
        enhance_recommendations_with_ai(repo, _settings_for_db(db_path), "u1", MARCH, transport=transport, cache=cache)
    )

    assert [r["id"] for r in recs] == ["rec-fallback-1", "rec-fallback-2", "rec-ai-1"]
    assert recs[0]["action"] == "Tighten facebook targeting on the spring campaign"
    assert recs[0]["ai_enhanced"] is True
    assert recs[0]["why_it_matters"] == ["₱2,000 revenue", "1 conversion"]
    assert "ai_enhanced" not in recs[1]
    assert recs[2]["confidence_score"] == 55
    assert recs[2]["is_active"] is True

    assert len(seen) == 1
    assert seen[0].url.path.endswith("/models/gemini-test:generateContent")
    assert seen[0].url.params["key"] == "test-key"
    body = json.loads(seen[0].content)
    assert body["generationConfig"]["responseMimeType"] == "application/json"

    again = asyncio.run(
        enhance_recommendations_with_ai(repo, _settings_for_db(db_path), "u1", MARCH, transport=transport, cache=cache)
    )
    assert again == recs
    assert len(seen) == 1


def test_enhance_falls_back_on_bad_schema(tmp_path: Path) -> None:
    db_path = tmp_path / "mi.sqlite3"
    repo = _seeded_repo(db_path)
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=_gemini_reply({"enhanced": "nope"})))
    cache = RecommendationCache()

    recs = asyncio.run(
        enhance_recommendations_with_ai(repo, _settings_for_db(db_path), "u1", MARCH, transport=transport, cache=cache)
    )
    assert [r["id"] for r in recs] == ["rec-fallback-1", "rec-fallback-2"]
    assert cache.get(RecommendationCache.key("u1", MARCH)) is None


def test_enhance_falls_back_on_api_error(tmp_path: Path) -> None:
    db_path = tmp_path / "mi.sqlite3"
    repo = _seeded_repo(db_path)
    transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"error": {"message": "bad"}}))

    recs = asyncio.run(
        enhance_recommendations_with_ai(
            repo, _settings_for_db(db_path), "u1", MARCH, transport=transport, cache=RecommendationCache()
        )
    )
    assert [r["type"] for r in recs] == ["optimize", "scale"]


def test_enhance_without_data_returns_nothing(tmp_path: Path) -> None:
    db_path = tmp_path / "mi.sqlite3"
    AnalyticsDB(db_path).init()
    repo = Repo(db_path)
    repo.ensure_user(user_id="u1", email="owner@example.com")

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("Gemini should not be called")

    recs = asyncio.run(
        enhance_recommendations_with_ai(
            repo, _settings_for_db(db_path), "u1", MARCH, transport=httpx.MockTransport(handler), cache=RecommendationCache()
        )
    )
    assert recs == []


def test_analyze_and_generate_persists_active_set(tmp_path: Path) -> None:
    db_path = tmp_path / "mi.sqlite3"
    repo = _seeded_repo(db_path)
    recommendations._cache.clear()

    recs = asyncio.run(analyze_and_generate_recommendations(repo, _settings_for_db(db_path, gemini_api_key=None), "u1", MARCH))
    assert len(recs) == 2

    active = repo.list_active_recommendations(user_id="u1")
    assert sorted(r["channel"] for r in active) == ["email", "facebook"]
    assert all(r["expires_at"] > datetime.now(tz=timezone.utc).isoformat() for r in active)

    asyncio.run(analyze_and_generate_recommendations(repo, _settings_for_db(db_path, gemini_api_key=None), "u1", MARCH))
    assert len(repo.list_active_recommendations(user_id="u1")) == 2
