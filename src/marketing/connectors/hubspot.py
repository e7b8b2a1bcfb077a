from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

import httpx

from marketing.connectors.base import (
    ConnectorCapabilities,
    ConnectorContext,
    HttpConnectorMixin,
    RawEventInput,
    connector_mode,
)
from marketing.connectors.fixtures import fixture_dir, load_raw_events
from marketing.retry import get_json
from marketing.util import iso_utc, now_utc, parse_ts, to_int

logger = logging.getLogger(__name__)

HUBSPOT_API_BASE = "https://api.hubapi.com"


class HubSpotConnector(HttpConnectorMixin):
    """HubSpot marketing email statistics and campaigns."""

    capabilities = ConnectorCapabilities(read_email=True)

    def __init__(self, ctx: ConnectorContext, *, transport: httpx.AsyncBaseTransport | None = None):
        self.ctx = ctx
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.ctx.access_token}"}

    async def health_check(self) -> tuple[bool, str | None]:
        mode = connector_mode(self.ctx)
        if mode == "fixture":
            return True, None
        if mode != "api":
            return False, "bad mode"
        if not self.ctx.access_token:
            return False, "Missing HubSpot access token"
        return True, None

    async def _email_statistics(self, client: httpx.AsyncClient, email_id: str) -> dict[str, Any]:
        try:
            obj = await get_json(
                client,
                f"{HUBSPOT_API_BASE}/marketing/v3/emails/{email_id}/statistics",
                headers=self._headers(),
            )
        except httpx.HTTPError:
            # Drafts and some automated emails have no statistics.
            logger.warning("hubspot: no statistics available for email %s", email_id)
            return {}
        counters = obj.get("counters") if isinstance(obj, dict) else None
        return counters if isinstance(counters, dict) else {}

    async def _marketing_emails(self, client: httpx.AsyncClient, start: datetime, end: datetime) -> list[RawEventInput]:
        events: list[RawEventInput] = []
        after: str | None = None
        pause = self._page_pause(0.3)
        while True:
            params: dict[str, Any] = {"limit": 100}
            if after:
                params["after"] = after
            obj = await get_json(client, f"{HUBSPOT_API_BASE}/marketing/v3/emails", params=params, headers=self._headers())

            for email in obj.get("results") or []:
                raw_ts = email.get("updatedAt") or email.get("createdAt")
                if not raw_ts:
                    continue
                ts = parse_ts(raw_ts)
                if ts < start or ts > end:
                    continue
                counters = await self._email_statistics(client, str(email.get("id")))
                events.append(
                    RawEventInput(
                        event_type="hubspot_marketing_email",
                        event_data={
                            "email_id": email.get("id"),
                            "email_name": email.get("name") or "",
                            "subject": email.get("subject") or "",
                            "state": email.get("state") or "",
                            "sends": to_int(counters.get("sent")),
                            "opens": to_int(counters.get("open")),
                            "clicks": to_int(counters.get("click")),
                            "bounces": to_int(counters.get("bounce")),
                            "unsubscribes": to_int(counters.get("unsubscribed")),
                            "spam_reports": to_int(counters.get("spamreport")),
                            "delivered": to_int(counters.get("delivered")),
                        },
                        timestamp=iso_utc(ts),
                    )
                )

            after = ((obj.get("paging") or {}).get("next") or {}).get("after")
            if not after:
                break
            if pause > 0:
                await asyncio.sleep(pause)
        return events

    async def _campaigns(self, client: httpx.AsyncClient) -> list[RawEventInput]:
        try:
            obj = await get_json(
                client,
                f"{HUBSPOT_API_BASE}/marketing/v3/campaigns",
                params={"limit": 100},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.error("hubspot: failed to fetch campaigns: %s", e)
            return []
        seen_at = iso_utc(now_utc())
        return [
            RawEventInput(
                event_type="hubspot_campaign",
                event_data={
                    "campaign_id": c.get("id"),
                    "campaign_name": c.get("name") or "",
                    "campaign_type": c.get("type") or "",
                },
                timestamp=seen_at,
            )
            for c in obj.get("results") or []
            if isinstance(c, dict)
        ]

    async def fetch_historical_data(self, start: datetime, end: datetime) -> list[RawEventInput]:
        mode = connector_mode(self.ctx)
        if mode == "fixture":
            return load_raw_events(fixture_dir(self.ctx.platform, self.ctx.config), start, end)
        if not self.ctx.access_token:
            raise RuntimeError("Missing HubSpot access token")

        async with self._client() as client:
            events = await self._marketing_emails(client, start, end)
            events.extend(await self._campaigns(client))
        logger.info("hubspot: fetched %d events", len(events))
        return events
