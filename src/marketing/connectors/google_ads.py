from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from typing import Any

from marketing.connectors.base import ConnectorCapabilities, ConnectorContext, RawEventInput, connector_mode
from marketing.connectors.fixtures import fixture_dir, load_raw_events
from marketing.util import format_date_ymd, iso_utc, to_float, to_int

logger = logging.getLogger(__name__)

_CAMPAIGN_METRICS_QUERY = """
SELECT
  segments.date,
  campaign.id,
  campaign.name,
  metrics.impressions,
  metrics.clicks,
  metrics.cost_micros,
  metrics.conversions,
  metrics.conversions_value
FROM campaign
WHERE segments.date BETWEEN '{date_from}' AND '{date_to}'
"""


def _normalize_customer_id(raw: str) -> str:
    return "".join(ch for ch in str(raw or "") if ch.isdigit())


class GoogleAdsConnector:
    """
    Google Ads reader (google-ads client library, GAQL).

    Developer token and OAuth client come from env; the refresh token comes from the
    stored connection (falling back to env).
    """

    capabilities = ConnectorCapabilities(read_spend=True)

    def __init__(self, ctx: ConnectorContext, *, client: Any = None):
        self.ctx = ctx
        self._client_override = client

    def _google_client(self):
        if self._client_override is not None:
            return self._client_override
        try:
            from google.ads.googleads.client import GoogleAdsClient  # type: ignore
        except ImportError as e:
            raise RuntimeError("Missing dependency: google-ads") from e

        refresh_token = (self.ctx.refresh_token or os.getenv("GOOGLE_ADS_REFRESH_TOKEN") or "").strip()
        cfg: dict[str, Any] = {
            "developer_token": (os.getenv("GOOGLE_ADS_DEVELOPER_TOKEN") or "").strip(),
            "client_id": (os.getenv("GOOGLE_ADS_CLIENT_ID") or "").strip(),
            "client_secret": (os.getenv("GOOGLE_ADS_CLIENT_SECRET") or "").strip(),
            "refresh_token": refresh_token,
            "use_proto_plus": True,
        }
        login_customer_id = _normalize_customer_id(os.getenv("GOOGLE_ADS_LOGIN_CUSTOMER_ID") or "")
        if login_customer_id:
            cfg["login_customer_id"] = login_customer_id
        return GoogleAdsClient.load_from_dict(cfg)

    def _customer_id(self) -> str:
        raw = self.ctx.account_id or os.getenv("GOOGLE_ADS_CUSTOMER_ID") or self.ctx.config.get("customer_id") or ""
        return _normalize_customer_id(str(raw))

    async def health_check(self) -> tuple[bool, str | None]:
        mode = connector_mode(self.ctx)
        if mode == "fixture":
            return True, None
        if mode != "api":
            return False, "bad mode"
        if not self._customer_id():
            return False, "Missing Google Ads customer id"
        if self._client_override is None:
            for name in ("GOOGLE_ADS_DEVELOPER_TOKEN", "GOOGLE_ADS_CLIENT_ID", "GOOGLE_ADS_CLIENT_SECRET"):
                if not (os.getenv(name) or "").strip():
                    return False, f"Missing {name}"
        try:
            self._google_client()
        except Exception as e:  # noqa: BLE001
            return False, f"Google Ads client init failed: {e}"
        return True, None

    async def fetch_historical_data(self, start: datetime, end: datetime) -> list[RawEventInput]:
        mode = connector_mode(self.ctx)
        if mode == "fixture":
            return load_raw_events(fixture_dir(self.ctx.platform, self.ctx.config), start, end)
        return await asyncio.to_thread(self._fetch_api, format_date_ymd(start), format_date_ymd(end))

    def _fetch_api(self, date_from: str, date_to: str) -> list[RawEventInput]:
        customer_id = self._customer_id()
        if not customer_id:
            raise RuntimeError("Missing Google Ads customer id")
        client = self._google_client()
        ga_service = client.get_service("GoogleAdsService")
        query = _CAMPAIGN_METRICS_QUERY.format(date_from=date_from, date_to=date_to)

        events: list[RawEventInput] = []
        for batch in ga_service.search_stream(customer_id=customer_id, query=query):
            for row in batch.results:
                day = str(getattr(row.segments, "date", "") or "")
                if not day:
                    continue
                metrics = row.metrics
                events.append(
                    RawEventInput(
                        event_type="google_ads_campaign_metrics",
                        event_data={
                            "customer_id": customer_id,
                            "date": day,
                            "campaign_id": str(getattr(row.campaign, "id", "") or ""),
                            "campaign_name": str(getattr(row.campaign, "name", "") or ""),
                            "impressions": to_int(getattr(metrics, "impressions", 0)),
                            "clicks": to_int(getattr(metrics, "clicks", 0)),
                            "cost": to_float(getattr(metrics, "cost_micros", 0)) / 1_000_000,
                            "conversions": to_float(getattr(metrics, "conversions", 0)),
                            "conversion_value": to_float(getattr(metrics, "conversions_value", 0)),
                            "channel": "google",
                        },
                        timestamp=iso_utc(f"{day}T00:00:00+00:00"),
                    )
                )
        logger.info("google_ads: fetched %d campaign rows for %s", len(events), customer_id)
        return events
