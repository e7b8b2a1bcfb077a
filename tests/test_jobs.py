from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

from marketing.config import Settings
from marketing.db import AnalyticsDB
from marketing.jobs import build_scheduler, run_daily_attribution_job, run_recommendation_job, yesterday_range
from marketing.repo import Repo


def _settings_for_db(db_path: Path) -> Settings:
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
        gemini_api_key=None,
        gemini_model="gemini-test",
        paypal_env="sandbox",
        demo_mode=False,
    )


def _charge(repo: Repo, user_id: str, txn_id: str, ts: str) -> None:
    repo.insert_raw_events(
        user_id=user_id,
        platform="stripe",
        events=[{"event_type": "stripe_charge", "event_data": {"id": txn_id, "amount": 100}, "timestamp": ts}],
    )


def test_yesterday_range_uses_business_day() -> None:
    # 2024-03-02 01:00 in Manila.
    now = datetime(2024, 3, 1, 17, 0, tzinfo=timezone.utc)
    start, end = yesterday_range("Asia/Manila", now=now)
    assert start.astimezone(timezone.utc) == datetime(2024, 2, 29, 16, 0, tzinfo=timezone.utc)
    assert end.astimezone(timezone.utc) == datetime(2024, 3, 1, 16, 0, tzinfo=timezone.utc)


def test_daily_attribution_covers_previous_day_for_all_users(tmp_path: Path) -> None:
    db_path = tmp_path / "mi.sqlite3"
    AnalyticsDB(db_path).init()
    repo = Repo(db_path)
    repo.ensure_user(user_id="u1", email="one@example.com")
    repo.ensure_user(user_id="u2", email="two@example.com")

    # Inside 2024-03-01 Manila.
    _charge(repo, "u1", "ch_1", "2024-02-29T16:00:00.000+00:00")
    _charge(repo, "u2", "ch_2", "2024-03-01T15:59:59.000+00:00")
    # Next day in Manila.
    _charge(repo, "u1", "ch_3", "2024-03-01T16:00:00.000+00:00")

    now = datetime(2024, 3, 1, 17, 0, tzinfo=timezone.utc)
    totals = run_daily_attribution_job(_settings_for_db(db_path), repo=repo, now=now)

    assert totals == {"users": 2, "success": 2, "failed": 0}
    assert repo.attributed_transaction_ids(["ch_1", "ch_2", "ch_3"]) == {"ch_1", "ch_2"}

    again = run_daily_attribution_job(_settings_for_db(db_path), repo=repo, now=now)
    assert again["success"] == 0


def test_recommendation_job_only_runs_for_pixel_users(tmp_path: Path) -> None:
    db_path = tmp_path / "mi.sqlite3"
    AnalyticsDB(db_path).init()
    repo = Repo(db_path)
    repo.ensure_user(user_id="u1", email="one@example.com")
    repo.ensure_user(user_id="u2", email="two@example.com")
    repo.set_user_pixel(user_id="u1", pixel_id="pix_" + "e" * 32)
    repo.insert_verified_conversion(
        {
            "user_id": "u1",
            "transaction_id": "ch_1",
            "amount": 900,
            "timestamp": "2024-03-10T12:00:00.000+00:00",
            "attributed_channel": "facebook",
        }
    )

    now = datetime(2024, 3, 15, tzinfo=timezone.utc)
    result = asyncio.run(run_recommendation_job(_settings_for_db(db_path), repo=repo, now=now))

    assert result["success"] is True
    assert result["users_processed"] == 1
    assert result["recommendations_generated"] == 1
    assert result["errors"] == []
    assert [r["type"] for r in repo.list_active_recommendations(user_id="u1")] == ["scale"]
    assert repo.list_active_recommendations(user_id="u2") == []


def test_build_scheduler_registers_daily_jobs(tmp_path: Path) -> None:
    db_path = tmp_path / "mi.sqlite3"
    AnalyticsDB(db_path).init()
    repo = Repo(db_path)
    scheduler = build_scheduler(_settings_for_db(db_path), repo=repo)

    assert scheduler.get_scheduled_job_names() == ["daily-attribution", "ai-recommendations"]
    assert asyncio.run(scheduler.trigger_job("daily-attribution")) is True
    assert scheduler.get_job_status("daily-attribution").last_status == "success"
    assert asyncio.run(scheduler.trigger_job("ai-recommendations")) is True
    assert scheduler.get_job_status("ai-recommendations").last_status == "success"
