from __future__ import annotations

import asyncio
import json
import threading
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from marketing.config import Settings
from marketing.db import AnalyticsDB
from marketing.repo import Repo
from marketing.sync import SyncError, sync_historical_data
from marketing.synergy import DateRange, get_channel_spend
from marketing.util import iso_utc, now_utc
from marketing.worker import _tick


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
        token_encryption_key="unit-test-key",
        gemini_api_key=None,
        gemini_model="gemini-test",
        paypal_env="sandbox",
        demo_mode=False,
    )


def _write_fixture(fixture_dir: Path, events: list[dict]) -> Path:
    fixture_dir.mkdir(parents=True, exist_ok=True)
    (fixture_dir / "raw_events.json").write_text(json.dumps(events), encoding="utf-8")
    return fixture_dir


def _setup(tmp_path: Path) -> tuple[Settings, Repo]:
    db_path = tmp_path / "mi.sqlite3"
    AnalyticsDB(db_path).init()
    settings = _settings_for_db(db_path)
    repo = Repo(db_path, token_key=settings.token_encryption_key)
    repo.ensure_user(user_id="u1", email="owner@example.com")
    return settings, repo


def test_sync_stores_events_and_attributes_payments(tmp_path: Path) -> None:
    settings, repo = _setup(tmp_path)
    day = now_utc() - timedelta(days=2)
    fixture = _write_fixture(
        tmp_path / "stripe",
        [
            {"event_type": "stripe_charge", "event_data": {"id": "ch_1", "amount": 1200}, "timestamp": iso_utc(day)},
            {"event_type": "stripe_customer", "event_data": {"id": "cus_1"}, "timestamp": iso_utc(day)},
            {"event_type": "stripe_charge", "event_data": {"id": "ch_old"}, "timestamp": iso_utc(day - timedelta(days=200))},
        ],
    )
    repo.upsert_connection(
        user_id="u1",
        platform="stripe",
        status="connected",
        access_token="sk_test",
        metadata={"config": {"mode": "fixture", "fixture_dir": str(fixture)}},
    )

    n = asyncio.run(sync_historical_data(repo, settings, "u1", "stripe"))

    assert n == 2
    assert repo.count_raw_events(user_id="u1", platform="stripe") == 2
    conn = repo.get_connection(user_id="u1", platform="stripe")
    assert conn["status"] == "connected"
    assert conn["last_synced_at"]
    conv = repo.get_verified_conversion(transaction_id="ch_1")
    assert conv is not None
    assert conv["metadata"]["platform"] == "stripe"
    assert repo.get_verified_conversion(transaction_id="cus_1") is None


def test_resync_updates_events_in_place(tmp_path: Path) -> None:
    settings, repo = _setup(tmp_path)
    day = now_utc() - timedelta(days=2)
    fixture = tmp_path / "meta"
    repo.upsert_connection(
        user_id="u1",
        platform="meta",
        status="connected",
        access_token="tok",
        metadata={"config": {"mode": "fixture", "fixture_dir": str(fixture)}},
    )
    insight = {"campaign_id": "c1", "date": day.date().isoformat(), "spend": 10}
    _write_fixture(fixture, [{"event_type": "meta_campaign_insights", "event_data": insight, "timestamp": iso_utc(day)}])

    asyncio.run(sync_historical_data(repo, settings, "u1", "meta"))
    asyncio.run(sync_historical_data(repo, settings, "u1", "meta"))
    assert repo.count_raw_events(user_id="u1", platform="meta") == 1
    assert get_channel_spend(repo, "u1", DateRange.last_days(7)) == {"facebook": 10.0}

    # A later pull with restated spend replaces the stored row.
    _write_fixture(
        fixture,
        [{"event_type": "meta_campaign_insights", "event_data": {**insight, "spend": 12}, "timestamp": iso_utc(day)}],
    )
    asyncio.run(sync_historical_data(repo, settings, "u1", "meta"))
    assert repo.count_raw_events(user_id="u1", platform="meta") == 1
    assert get_channel_spend(repo, "u1", DateRange.last_days(7)) == {"facebook": 12.0}


def test_sync_attribution_runs_off_the_event_loop(tmp_path: Path) -> None:
    settings, repo = _setup(tmp_path)
    day = now_utc() - timedelta(days=1)
    fixture = _write_fixture(
        tmp_path / "stripe",
        [{"event_type": "stripe_charge", "event_data": {"id": "ch_1", "amount": 100}, "timestamp": iso_utc(day)}],
    )
    repo.upsert_connection(
        user_id="u1",
        platform="stripe",
        status="connected",
        access_token="sk_test",
        metadata={"config": {"mode": "fixture", "fixture_dir": str(fixture)}},
    )
    threads: list[int] = []

    def record(*args, **kwargs) -> list:
        threads.append(threading.get_ident())
        return []

    async def run() -> int:
        with patch("marketing.sync.attribute_recent_transactions", side_effect=record):
            await sync_historical_data(repo, settings, "u1", "stripe")
        return threading.get_ident()

    loop_thread = asyncio.run(run())
    assert len(threads) == 1
    assert threads[0] != loop_thread

def test_sync_without_connection_raises(tmp_path: Path) -> None:
    settings, repo = _setup(tmp_path)
    with pytest.raises(SyncError, match="No active connection found for meta"):
        asyncio.run(sync_historical_data(repo, settings, "u1", "meta"))


def test_sync_unknown_platform_is_a_noop(tmp_path: Path) -> None:
    settings, repo = _setup(tmp_path)
    assert asyncio.run(sync_historical_data(repo, settings, "u1", "tiktok")) == 0


def test_sync_failure_marks_connection_error(tmp_path: Path) -> None:
    settings, repo = _setup(tmp_path)
    broken = tmp_path / "broken"
    broken.mkdir()
    (broken / "raw_events.json").write_text('{"not": "a list"}', encoding="utf-8")
    repo.upsert_connection(
        user_id="u1",
        platform="meta",
        status="connected",
        access_token="tok",
        metadata={"config": {"mode": "fixture", "fixture_dir": str(broken)}},
    )

    with pytest.raises(ValueError):
        asyncio.run(sync_historical_data(repo, settings, "u1", "meta"))

    conn = repo.get_connection(user_id="u1", platform="meta")
    assert conn["status"] == "error"
    assert conn["last_error"].startswith("ValueError:")


def test_tick_resyncs_stale_connections(tmp_path: Path) -> None:
    settings, repo = _setup(tmp_path)
    day = now_utc() - timedelta(days=1)
    fixture = _write_fixture(
        tmp_path / "meta",
        [{"event_type": "meta_campaign_insights", "event_data": {"spend": 10}, "timestamp": iso_utc(day)}],
    )
    repo.upsert_connection(
        user_id="u1",
        platform="meta",
        status="connected",
        access_token="tok",
        metadata={"config": {"mode": "fixture", "fixture_dir": str(fixture)}},
    )
    repo.upsert_connection(
        user_id="u1",
        platform="mailchimp",
        status="connected",
        access_token="key-us1",
        metadata={"config": {"mode": "fixture", "fixture_dir": str(tmp_path / "empty")}},
    )
    repo.set_connection_status(user_id="u1", platform="mailchimp", status="connected", synced=True)

    counts = asyncio.run(_tick(settings))
    assert counts == {"synced": 1, "failed": 0, "skipped": 1}
    assert repo.count_raw_events(user_id="u1", platform="meta") == 1

    counts = asyncio.run(_tick(settings))
    assert counts == {"synced": 0, "failed": 0, "skipped": 2}
