from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, time as dtime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from marketing.attribution import attribute_transaction
from marketing.batch import pending_transactions
from marketing.config import Settings
from marketing.recommendations import analyze_and_generate_recommendations
from marketing.repo import Repo
from marketing.scheduler import Scheduler
from marketing.synergy import DateRange
from marketing.util import now_utc

logger = logging.getLogger(__name__)

RECOMMENDATION_DAYS = 30


def yesterday_range(timezone: str, *, now: datetime | None = None) -> tuple[datetime, datetime]:
    """[start, end) of the previous calendar day in the business timezone."""
    tz = ZoneInfo(timezone)
    local_now = (now or now_utc()).astimezone(tz)
    start = datetime.combine(local_now.date() - timedelta(days=1), dtime.min, tzinfo=tz)
    return start, start + timedelta(days=1)


def run_attribution_for_user(repo: Repo, user_id: str, start: datetime, end: datetime) -> dict[str, int]:
    transactions, already = pending_transactions(repo, user_id, start, end)
    logger.info(
        "attribution user=%s to_attribute=%d already_attributed=%d", user_id, len(transactions), already
    )
    success = failed = 0
    for txn in transactions:
        try:
            attribute_transaction(repo, user_id, txn)
            success += 1
        except Exception as e:  # noqa: BLE001
            logger.error("failed to attribute %s for %s: %s", txn.transaction_id, user_id, e)
            failed += 1
    return {"success": success, "failed": failed}


def run_daily_attribution_job(settings: Settings, *, repo: Repo | None = None, now: datetime | None = None) -> dict[str, int]:
    repo = repo or Repo(settings.db_path, token_key=settings.token_encryption_key)
    start, end = yesterday_range(settings.timezone, now=now)
    # The payment range query is inclusive at both ends.
    end_inclusive = end - timedelta(milliseconds=1)
    logger.info("daily attribution for %s .. %s", start.isoformat(), end.isoformat())

    totals = {"users": 0, "success": 0, "failed": 0}
    for user in repo.list_users():
        result = run_attribution_for_user(repo, user["id"], start, end_inclusive)
        totals["users"] += 1
        totals["success"] += result["success"]
        totals["failed"] += result["failed"]

    logger.info("daily attribution done success=%d failed=%d", totals["success"], totals["failed"])
    return totals


async def run_recommendation_job(
    settings: Settings, *, repo: Repo | None = None, now: datetime | None = None
) -> dict[str, Any]:
    started = time.monotonic()
    repo = repo or Repo(settings.db_path, token_key=settings.token_encryption_key)
    errors: list[str] = []
    users_processed = 0
    recommendations_generated = 0

    if not settings.gemini_api_key:
        logger.warning("Gemini API not configured, using rule-based recommendations")

    date_range = DateRange.last_days(RECOMMENDATION_DAYS, now=now)
    users = repo.list_users(with_pixel=True)
    logger.info("recommendation job: %d users", len(users))

    for user in users:
        try:
            recs = await analyze_and_generate_recommendations(repo, settings, user["id"], date_range)
            users_processed += 1
            recommendations_generated += len(recs)
        except Exception as e:  # noqa: BLE001
            errors.append(f"User {user['id']}: {e}")
            logger.error("recommendations failed for %s: %s", user["id"], e)

    result = {
        "success": not errors,
        "users_processed": users_processed,
        "recommendations_generated": recommendations_generated,
        "errors": errors,
        "duration": int((time.monotonic() - started) * 1000),
    }
    logger.info(
        "recommendation job done users=%d recommendations=%d errors=%d",
        users_processed,
        recommendations_generated,
        len(errors),
    )
    return result


DAILY_ATTRIBUTION_AT = dtime(0, 0)
AI_RECOMMENDATIONS_AT = dtime(1, 0)


def build_scheduler(settings: Settings, *, repo: Repo | None = None) -> Scheduler:
    repo = repo or Repo(settings.db_path, token_key=settings.token_encryption_key)
    scheduler = Scheduler(settings.timezone)

    async def _daily_attribution() -> None:
        await asyncio.to_thread(run_daily_attribution_job, settings, repo=repo)

    async def _ai_recommendations() -> None:
        result = await run_recommendation_job(settings, repo=repo)
        if not result["success"]:
            raise RuntimeError("; ".join(result["errors"]))

    scheduler.schedule_job("daily-attribution", _daily_attribution, at=DAILY_ATTRIBUTION_AT)
    scheduler.schedule_job("ai-recommendations", _ai_recommendations, at=AI_RECOMMENDATIONS_AT)
    return scheduler
