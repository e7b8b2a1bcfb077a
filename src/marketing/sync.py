from __future__ import annotations

import asyncio
import logging
from typing import Any

from marketing.attribution import attribute_recent_transactions
from marketing.config import Settings
from marketing.registry import PAYMENT_PLATFORMS, PLATFORMS, build_connector
from marketing.repo import Repo
from marketing.util import chunk_list, get_historical_date_range

logger = logging.getLogger(__name__)

INSERT_CHUNK_SIZE = 500
DEFAULT_DAYS_BACK = 90


class SyncError(RuntimeError):
    pass


def connector_for_connection(settings: Settings, connection: dict[str, Any], *, config: dict[str, Any] | None = None):
    """Build the platform connector for a stored connection.

    Connector config (mode, fixture_dir, ...) is read from the connection metadata's
    "config" key unless given explicitly.
    """
    metadata = connection.get("metadata") or {}
    return build_connector(
        connection["platform"],
        user_id=connection["user_id"],
        access_token=connection.get("access_token"),
        account_id=connection.get("platform_account_id"),
        refresh_token=connection.get("refresh_token"),
        config=config if config is not None else metadata.get("config"),
        demo_mode=settings.demo_mode,
        paypal_env=settings.paypal_env,
    )


async def sync_historical_data(
    repo: Repo,
    settings: Settings,
    user_id: str,
    platform: str,
    days_back: int = DEFAULT_DAYS_BACK,
    *,
    config: dict[str, Any] | None = None,
) -> int:
    """Pull historical platform data into raw_events; returns the number of events stored."""
    if platform not in PLATFORMS:
        logger.warning("no connector for platform %s", platform)
        return 0

    try:
        connection = await asyncio.to_thread(repo.get_connection, user_id=user_id, platform=platform)
        if not connection or not connection.get("access_token"):
            raise SyncError(f"No active connection found for {platform}")

        connector = connector_for_connection(settings, connection, config=config)
        await asyncio.to_thread(repo.set_connection_status, user_id=user_id, platform=platform, status="syncing")
        logger.info("starting historical sync for %s user=%s", platform, user_id)

        start, end = get_historical_date_range(days_back)
        events = [e.to_dict() for e in await connector.fetch_historical_data(start, end)]
        logger.info("fetched %d events from %s", len(events), platform)

        for chunk in chunk_list(events, INSERT_CHUNK_SIZE):
            await asyncio.to_thread(repo.insert_raw_events, user_id=user_id, platform=platform, events=chunk)

        if events and platform in PAYMENT_PLATFORMS:
            logger.info("triggering attribution for %s transactions user=%s", platform, user_id)
            try:
                payments = [{**e, "platform": platform} for e in events]
                await asyncio.to_thread(attribute_recent_transactions, repo, user_id, payments)
            except Exception as e:  # noqa: BLE001
                logger.error("attribution failed for %s: %s", platform, e)

        await asyncio.to_thread(
            repo.set_connection_status, user_id=user_id, platform=platform, status="connected", synced=True
        )
        logger.info("sync completed for %s", platform)
        return len(events)
    except Exception as e:
        logger.error("sync failed for %s: %s", platform, e)
        await asyncio.to_thread(
            repo.set_connection_status,
            user_id=user_id,
            platform=platform,
            status="error",
            error=f"{type(e).__name__}: {e}",
        )
        raise
