from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
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
from marketing.util import iso_utc, now_utc, split_date_range, to_float

logger = logging.getLogger(__name__)

PAYPAL_API_BASE = {
    "production": "https://api-m.paypal.com",
    "sandbox": "https://api-m.sandbox.paypal.com",
}

# The reporting API rejects windows longer than 31 days.
MAX_WINDOW_DAYS = 31


def paypal_date(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S") + "-0000"


def _transaction(txn: dict[str, Any]) -> tuple[dict[str, Any], str]:
    info = txn.get("transaction_info") or {}
    payer = txn.get("payer_info") or {}
    cart = txn.get("cart_info") or {}
    amount = info.get("transaction_amount") or {}
    data = {
        "transaction_id": info.get("transaction_id"),
        "transaction_status": info.get("transaction_status"),
        "transaction_event_code": info.get("transaction_event_code"),
        "gross_amount": to_float(amount.get("value")),
        "currency": amount.get("currency_code") or "USD",
        "fee_amount": to_float((info.get("fee_amount") or {}).get("value")),
        "payer_email": payer.get("email_address"),
        "payer_name": (payer.get("payer_name") or {}).get("alternate_full_name"),
        "item_details": cart.get("item_details") or [],
    }
    raw_ts = info.get("transaction_initiation_date")
    return data, iso_utc(raw_ts) if raw_ts else iso_utc(now_utc())


class PayPalConnector(HttpConnectorMixin):
    """PayPal Transaction Search (reporting) reader."""

    capabilities = ConnectorCapabilities(read_transactions=True)

    def __init__(
        self,
        ctx: ConnectorContext,
        *,
        environment: str = "sandbox",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.ctx = ctx
        self.environment = environment if environment in PAYPAL_API_BASE else "sandbox"
        self.transport = transport

    @property
    def base_url(self) -> str:
        return str(self.ctx.config.get("api_base") or PAYPAL_API_BASE[self.environment]).rstrip("/")

    async def health_check(self) -> tuple[bool, str | None]:
        mode = connector_mode(self.ctx)
        if mode == "fixture":
            return True, None
        if mode != "api":
            return False, "bad mode"
        if not self.ctx.access_token:
            return False, "Missing PayPal credentials"
        return True, None

    async def _bearer_token(self, client: httpx.AsyncClient) -> str:
        """
        Stored credentials are either an OAuth access token or `client_id:client_secret`,
        which is exchanged for a token with the client-credentials grant.
        """
        token = str(self.ctx.access_token or "")
        if ":" not in token:
            return token
        client_id, client_secret = token.split(":", 1)
        obj = await post_json(
            client,
            f"{self.base_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(client_id, client_secret),
        )
        access = obj.get("access_token") if isinstance(obj, dict) else None
        if not access:
            raise RuntimeError("PayPal token exchange returned no access_token")
        return str(access)

    async def _fetch_window(
        self, client: httpx.AsyncClient, token: str, start: datetime, end: datetime
    ) -> list[RawEventInput]:
        events: list[RawEventInput] = []
        page = 1
        pause = self._page_pause(1.0)
        while True:
            obj = await get_json(
                client,
                f"{self.base_url}/v1/reporting/transactions",
                params={
                    "start_date": paypal_date(start),
                    "end_date": paypal_date(end),
                    "fields": "all",
                    "page_size": 500,
                    "page": page,
                },
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
            for txn in obj.get("transaction_details") or []:
                if not isinstance(txn, dict):
                    continue
                data, ts = _transaction(txn)
                events.append(RawEventInput(event_type="paypal_transaction", event_data=data, timestamp=ts))

            total_pages = int(obj.get("total_pages") or 1)
            if page >= total_pages:
                break
            page += 1
            if pause > 0:
                await asyncio.sleep(pause)
        return events

    async def fetch_historical_data(self, start: datetime, end: datetime) -> list[RawEventInput]:
        mode = connector_mode(self.ctx)
        if mode == "fixture":
            return load_raw_events(fixture_dir(self.ctx.platform, self.ctx.config), start, end)
        if not self.ctx.access_token:
            raise RuntimeError("Missing PayPal credentials")

        events: list[RawEventInput] = []
        chunk_pause = self._page_pause(2.0)
        async with self._client() as client:
            token = await self._bearer_token(client)
            chunks = split_date_range(start, end, MAX_WINDOW_DAYS)
            for i, (chunk_start, chunk_end) in enumerate(chunks):
                events.extend(await self._fetch_window(client, token, chunk_start, chunk_end))
                if i < len(chunks) - 1 and chunk_pause > 0:
                    await asyncio.sleep(chunk_pause)
        logger.info("paypal: fetched %d events", len(events))
        return events
