from __future__ import annotations

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
from marketing.retry import get_json, post_json
from marketing.util import format_date_ymd, to_int

logger = logging.getLogger(__name__)

DATA_API_BASE = "https://analyticsdata.googleapis.com/v1beta"
ADMIN_API_BASE = "https://analyticsadmin.googleapis.com/v1beta"


def _ga4_date_to_iso(d: str) -> str:
    return f"{d[0:4]}-{d[4:6]}-{d[6:8]}T00:00:00.000+00:00"


def _dims(row: dict[str, Any]) -> list[str]:
    return [str((v or {}).get("value") or "") for v in row.get("dimensionValues") or []]


def _metrics(row: dict[str, Any]) -> list[int]:
    return [to_int((v or {}).get("value")) for v in row.get("metricValues") or []]


def _at(values: list[Any], i: int, default: Any) -> Any:
    return values[i] if i < len(values) else default


class GoogleAnalyticsConnector(HttpConnectorMixin):
    """GA4 Data API reader: sessions by channel group and traffic by source/medium."""

    capabilities = ConnectorCapabilities(read_sessions=True)

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
            return False, "Missing Google Analytics access token"
        return True, None

    async def discover_property_id(self, client: httpx.AsyncClient) -> str | None:
        try:
            obj = await get_json(
                client,
                f"{ADMIN_API_BASE}/properties",
                params={"filter": "parent:accounts/-"},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.error("ga4: failed to discover properties: %s", e)
            return None
        props = obj.get("properties") if isinstance(obj, dict) else None
        if not props:
            return None
        return str(props[0].get("name") or "").replace("properties/", "") or None

    async def _run_report(
        self,
        client: httpx.AsyncClient,
        property_id: str,
        *,
        start: str,
        end: str,
        dimensions: list[str],
        metrics: list[str],
    ) -> list[dict[str, Any]]:
        obj = await post_json(
            client,
            f"{DATA_API_BASE}/properties/{property_id}:runReport",
            json={
                "dateRanges": [{"startDate": start, "endDate": end}],
                "dimensions": [{"name": d} for d in dimensions],
                "metrics": [{"name": m} for m in metrics],
            },
            headers=self._headers(),
        )
        rows = obj.get("rows") if isinstance(obj, dict) else None
        return [r for r in rows or [] if isinstance(r, dict)]

    async def fetch_historical_data(self, start: datetime, end: datetime) -> list[RawEventInput]:
        mode = connector_mode(self.ctx)
        if mode == "fixture":
            return load_raw_events(fixture_dir(self.ctx.platform, self.ctx.config), start, end)
        if not self.ctx.access_token:
            raise RuntimeError("Missing Google Analytics access token")

        d0, d1 = format_date_ymd(start), format_date_ymd(end)
        events: list[RawEventInput] = []
        async with self._client() as client:
            property_id = self.ctx.account_id or await self.discover_property_id(client)
            if not property_id:
                logger.warning("ga4: no property found for user %s", self.ctx.user_id)
                return []

            for row in await self._run_report(
                client,
                property_id,
                start=d0,
                end=d1,
                dimensions=["date", "sessionDefaultChannelGroup"],
                metrics=["sessions", "screenPageViews", "conversions", "totalUsers"],
            ):
                dims, vals = _dims(row), _metrics(row)
                day = _at(dims, 0, "")
                if len(day) != 8:
                    continue
                events.append(
                    RawEventInput(
                        event_type="ga4_sessions",
                        event_data={
                            "date": day,
                            "channel_group": _at(dims, 1, ""),
                            "sessions": _at(vals, 0, 0),
                            "page_views": _at(vals, 1, 0),
                            "conversions": _at(vals, 2, 0),
                            "total_users": _at(vals, 3, 0),
                        },
                        timestamp=_ga4_date_to_iso(day),
                    )
                )

            for row in await self._run_report(
                client,
                property_id,
                start=d0,
                end=d1,
                dimensions=["date", "sessionSource", "sessionMedium"],
                metrics=["sessions", "totalUsers", "conversions"],
            ):
                dims, vals = _dims(row), _metrics(row)
                day = _at(dims, 0, "")
                if len(day) != 8:
                    continue
                events.append(
                    RawEventInput(
                        event_type="ga4_traffic_source",
                        event_data={
                            "date": day,
                            "source": _at(dims, 1, ""),
                            "medium": _at(dims, 2, ""),
                            "sessions": _at(vals, 0, 0),
                            "total_users": _at(vals, 1, 0),
                            "conversions": _at(vals, 2, 0),
                        },
                        timestamp=_ga4_date_to_iso(day),
                    )
                )

        logger.info("ga4: fetched %d events", len(events))
        return events
