from __future__ import annotations

import asyncio
import json
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
from marketing.retry import with_retry
from marketing.util import format_date_ymd, iso_utc, to_float, to_int

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"
GRAPH_VERSION = "v19.0"


class MetaConnector(HttpConnectorMixin):
    """
    Meta Marketing API (Graph) reader.

    Pulls daily campaign-level insights for every active ad account the token can see.
    """

    capabilities = ConnectorCapabilities(read_spend=True)

    def __init__(self, ctx: ConnectorContext, *, transport: httpx.AsyncBaseTransport | None = None):
        self.ctx = ctx
        self.transport = transport

    def _graph_url(self, path: str) -> str:
        base = str(self.ctx.config.get("graph_base_url") or GRAPH_BASE_URL).rstrip("/")
        ver = str(self.ctx.config.get("graph_version") or GRAPH_VERSION).strip()
        return f"{base}/{ver}/{path.lstrip('/')}"

    async def _iter_graph_data(self, client: httpx.AsyncClient, *, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Return the full data list for a Graph collection endpoint with cursor pagination."""
        p = dict(params)
        p["access_token"] = self.ctx.access_token

        url: str | None = self._graph_url(path)
        next_params: dict[str, Any] | None = p
        out: list[dict[str, Any]] = []
        pause = self._page_pause(0.5)

        while url:
            req_url, req_params = url, next_params

            async def _call() -> httpx.Response:
                r = await client.get(req_url, params=req_params)
                if r.status_code in (429, 500, 502, 503):
                    r.raise_for_status()
                return r

            r = await with_retry(_call)
            try:
                obj = r.json()
            except ValueError as e:
                raise RuntimeError(f"Meta Graph API non-JSON response: {r.status_code}") from e
            if isinstance(obj, dict) and obj.get("error"):
                err = obj.get("error") or {}
                msg = str(err.get("message") or "unknown error")
                code = err.get("code")
                raise RuntimeError(f"Meta Graph API error: {msg} (code={code})")
            r.raise_for_status()

            data = obj.get("data") if isinstance(obj, dict) else None
            if isinstance(data, list):
                out.extend(it for it in data if isinstance(it, dict))
            paging = obj.get("paging") if isinstance(obj, dict) else None
            next_url = paging.get("next") if isinstance(paging, dict) else None
            url = str(next_url) if next_url else None
            next_params = None  # next URL already includes query params.
            if url and pause > 0:
                await asyncio.sleep(pause)
        return out

    async def health_check(self) -> tuple[bool, str | None]:
        mode = connector_mode(self.ctx)
        if mode == "fixture":
            return True, None
        if mode != "api":
            return False, "bad mode"
        if not self.ctx.access_token:
            return False, "Missing Meta access token"
        return True, None

    async def get_ad_accounts(self, client: httpx.AsyncClient) -> list[dict[str, Any]]:
        accounts = await self._iter_graph_data(
            client,
            path="me/adaccounts",
            params={"fields": "name,account_id,account_status"},
        )
        # account_status 1 == ACTIVE
        return [
            {"id": str(a.get("id")), "name": a.get("name")}
            for a in accounts
            if to_int(a.get("account_status")) == 1 and a.get("id")
        ]

    async def fetch_historical_data(self, start: datetime, end: datetime) -> list[RawEventInput]:
        mode = connector_mode(self.ctx)
        if mode == "fixture":
            return load_raw_events(fixture_dir(self.ctx.platform, self.ctx.config), start, end)
        if not self.ctx.access_token:
            raise RuntimeError("Missing Meta access token")

        events: list[RawEventInput] = []
        pause = self._page_pause(0.5)
        async with self._client() as client:
            accounts = await self.get_ad_accounts(client)
            if self.ctx.account_id:
                wanted = self.ctx.account_id if self.ctx.account_id.startswith("act_") else f"act_{self.ctx.account_id}"
                accounts = [a for a in accounts if a["id"] == wanted]

            for i, account in enumerate(accounts):
                if i > 0 and pause > 0:
                    await asyncio.sleep(pause)
                rows = await self._iter_graph_data(
                    client,
                    path=f"{account['id']}/insights",
                    params={
                        "fields": "campaign_name,campaign_id,impressions,clicks,spend,actions,action_values,cpc,cpm,ctr",
                        "time_range": json.dumps({"since": format_date_ymd(start), "until": format_date_ymd(end)}),
                        "time_increment": 1,
                        "level": "campaign",
                        "limit": 500,
                    },
                )
                for row in rows:
                    day = str(row.get("date_start") or "").strip()
                    if not day:
                        continue
                    events.append(
                        RawEventInput(
                            event_type="meta_campaign_insights",
                            event_data=_insight_event_data(row, account),
                            timestamp=iso_utc(f"{day}T00:00:00+00:00"),
                        )
                    )
                logger.info("meta: %d insight rows for %s", len(rows), account["id"])
        return events


def _parse_actions(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [
        {"action_type": str(a.get("action_type") or ""), "value": to_float(a.get("value"))}
        for a in raw
        if isinstance(a, dict)
    ]


def _insight_event_data(row: dict[str, Any], account: dict[str, Any]) -> dict[str, Any]:
    return {
        "account_id": account.get("id"),
        "account_name": account.get("name"),
        "campaign_name": row.get("campaign_name"),
        "campaign_id": row.get("campaign_id"),
        "date": row.get("date_start"),
        "impressions": to_int(row.get("impressions")),
        "clicks": to_int(row.get("clicks")),
        "spend": to_float(row.get("spend")),
        "cpc": to_float(row.get("cpc")),
        "cpm": to_float(row.get("cpm")),
        "ctr": to_float(row.get("ctr")),
        "actions": _parse_actions(row.get("actions")),
        "action_values": _parse_actions(row.get("action_values")),
    }
