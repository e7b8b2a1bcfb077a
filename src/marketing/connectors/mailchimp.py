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
from marketing.util import iso_utc, now_utc, to_float, to_int

logger = logging.getLogger(__name__)

MAILCHIMP_API_VERSION = "3.0"
PAGE_SIZE = 100


def data_center(token: str | None, account_id: str | None) -> str:
    """API keys end with `-<dc>`; OAuth connections store the dc as the account id."""
    if account_id:
        return account_id.strip()
    if token and "-" in token:
        return token.rsplit("-", 1)[1].strip() or "us1"
    return "us1"


class MailchimpConnector(HttpConnectorMixin):
    """Mailchimp sent campaigns and their reports."""

    capabilities = ConnectorCapabilities(read_email=True)

    def __init__(self, ctx: ConnectorContext, *, transport: httpx.AsyncBaseTransport | None = None):
        self.ctx = ctx
        self.transport = transport

    @property
    def base_url(self) -> str:
        dc = data_center(self.ctx.access_token, self.ctx.account_id)
        return f"https://{dc}.api.mailchimp.com/{MAILCHIMP_API_VERSION}"

    def _auth_kwargs(self) -> dict[str, Any]:
        token = str(self.ctx.access_token or "")
        if "-" in token:
            return {"auth": ("anystring", token)}
        return {"headers": {"Authorization": f"Bearer {token}"}}

    async def health_check(self) -> tuple[bool, str | None]:
        mode = connector_mode(self.ctx)
        if mode == "fixture":
            return True, None
        if mode != "api":
            return False, "bad mode"
        if not self.ctx.access_token:
            return False, "Missing Mailchimp API key"
        return True, None

    async def _campaigns(self, client: httpx.AsyncClient, start: datetime, end: datetime) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        offset = 0
        pause = self._page_pause(0.3)
        while True:
            obj = await get_json(
                client,
                f"{self.base_url}/campaigns",
                params={
                    "status": "sent",
                    "since_send_time": iso_utc(start),
                    "before_send_time": iso_utc(end),
                    "count": PAGE_SIZE,
                    "offset": offset,
                },
                **self._auth_kwargs(),
            )
            data = [c for c in obj.get("campaigns") or [] if isinstance(c, dict)]
            out.extend(data)
            if len(data) < PAGE_SIZE:
                break
            offset += PAGE_SIZE
            if pause > 0:
                await asyncio.sleep(pause)
        return out

    async def fetch_historical_data(self, start: datetime, end: datetime) -> list[RawEventInput]:
        mode = connector_mode(self.ctx)
        if mode == "fixture":
            return load_raw_events(fixture_dir(self.ctx.platform, self.ctx.config), start, end)
        if not self.ctx.access_token:
            raise RuntimeError("Missing Mailchimp API key")

        events: list[RawEventInput] = []
        pause = self._page_pause(0.3)
        async with self._client() as client:
            for campaign in await self._campaigns(client, start, end):
                cid = str(campaign.get("id") or "")
                report = await get_json(client, f"{self.base_url}/reports/{cid}", **self._auth_kwargs())
                settings = campaign.get("settings") or {}
                opens = report.get("opens") or {}
                clicks = report.get("clicks") or {}
                bounces = report.get("bounces") or {}
                events.append(
                    RawEventInput(
                        event_type="mailchimp_campaign_report",
                        event_data={
                            "campaign_id": cid,
                            "campaign_title": settings.get("title") or "",
                            "campaign_type": campaign.get("type"),
                            "list_id": (campaign.get("recipients") or {}).get("list_id") or "",
                            "subject_line": settings.get("subject_line") or "",
                            "emails_sent": to_int(report.get("emails_sent")),
                            "unique_opens": to_int(opens.get("unique_opens")),
                            "open_rate": to_float(opens.get("open_rate")),
                            "unique_clicks": to_int(clicks.get("unique_clicks")),
                            "click_rate": to_float(clicks.get("click_rate")),
                            "unsubscribes": to_int(report.get("unsubscribed")),
                            "bounces": to_int(bounces.get("hard_bounces")) + to_int(bounces.get("soft_bounces")),
                        },
                        timestamp=iso_utc(campaign.get("send_time") or now_utc()),
                    )
                )
                if pause > 0:
                    await asyncio.sleep(pause)
        logger.info("mailchimp: fetched %d campaign reports", len(events))
        return events
