from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from marketing.config import Settings
from marketing.db import AnalyticsDB
from marketing.jobs import build_scheduler
from marketing.repo import Repo
from marketing.scheduler import Scheduler
from marketing.sync import sync_historical_data
from marketing.util import now_utc, parse_ts

logger = logging.getLogger(__name__)

TICK_INTERVAL_SEC = 300
RESYNC_DAYS_BACK = 7


def _is_stale(connection: dict, cutoff: datetime) -> bool:
    last = connection.get("last_synced_at")
    if not last:
        return True
    try:
        return parse_ts(last) < cutoff
    except ValueError:
        return True


async def _tick(settings: Settings, *, now: datetime | None = None) -> dict[str, int]:
    """Re-sync connected platforms whose last sync is older than the sync interval."""
    AnalyticsDB(settings.db_path).init()
    repo = Repo(settings.db_path, token_key=settings.token_encryption_key)
    cutoff = (now or now_utc()) - timedelta(hours=settings.sync_interval_hours)

    counts = {"synced": 0, "failed": 0, "skipped": 0}
    for c in repo.list_connections(status="connected"):
        if not _is_stale(c, cutoff):
            counts["skipped"] += 1
            continue
        try:
            await sync_historical_data(repo, settings, c["user_id"], c["platform"], days_back=RESYNC_DAYS_BACK)
            counts["synced"] += 1
        except Exception as e:  # noqa: BLE001
            # sync_historical_data already marked the connection as errored.
            logger.warning("resync failed for %s/%s: %s", c["user_id"], c["platform"], e)
            counts["failed"] += 1
    return counts


def run_tick(settings: Settings) -> dict[str, int]:
    return asyncio.run(_tick(settings))


async def _run_forever(settings: Settings, scheduler: Scheduler | None = None) -> None:
    scheduler = scheduler or build_scheduler(settings)
    while True:
        try:
            await scheduler.run_pending()
        except Exception as e:  # noqa: BLE001
            logger.error("scheduler pass failed: %s: %s", type(e).__name__, e)
        try:
            await _tick(settings)
        except Exception as e:  # noqa: BLE001
            logger.error("tick failed: %s: %s", type(e).__name__, e)
        await asyncio.sleep(TICK_INTERVAL_SEC)


def run_worker(settings: Settings) -> None:
    asyncio.run(_run_forever(settings))
