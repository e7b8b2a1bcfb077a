from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

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
from marketing.util import iso_utc, to_float, to_unix_timestamp

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"


def _created_iso(obj: dict[str, Any]) -> str:
    return iso_utc(datetime.fromtimestamp(int(obj.get("created") or 0), tz=timezone.utc))


def _cents(v: Any) -> float:
    return to_float(v) / 100


def _charge(c: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": c.get("id"),
        "amount": _cents(c.get("amount")),
        "currency": c.get("currency"),
        "status": c.get("status"),
        "description": c.get("description"),
        "customer": c.get("customer"),
        "payment_method": c.get("payment_method"),
        "receipt_email": c.get("receipt_email") or (c.get("billing_details") or {}).get("email"),
        "metadata": c.get("metadata") or {},
    }


def _payment_intent(p: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": p.get("id"),
        "amount": _cents(p.get("amount")),
        "currency": p.get("currency"),
        "status": p.get("status"),
        "description": p.get("description"),
        "customer": p.get("customer"),
        "payment_method": p.get("payment_method"),
        "metadata": p.get("metadata") or {},
    }


def _customer(c: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": c.get("id"),
        "email": c.get("email"),
        "name": c.get("name"),
        "phone": c.get("phone"),
        "metadata": c.get("metadata") or {},
    }


class StripeConnector(HttpConnectorMixin):
    """Stripe REST reader for charges, payment intents and customers."""

    capabilities = ConnectorCapabilities(read_transactions=True, read_customers=True)

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
            return False, "Missing Stripe API key"
        return True, None

    async def validate_api_key(self) -> bool:
        """Check the key against /v1/balance. Returns False on auth errors."""
        async with self._client() as client:
            r = await client.get(f"{STRIPE_API_BASE}/balance", headers=self._headers())
        if r.status_code in (401, 403):
            return False
        r.raise_for_status()
        return True

    async def _list_all(
        self,
        client: httpx.AsyncClient,
        resource: str,
        created: tuple[int, int],
    ) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        starting_after: str | None = None
        while True:
            params: dict[str, Any] = {
                "created[gte]": created[0],
                "created[lte]": created[1],
                "limit": 100,
            }
            if starting_after:
                params["starting_after"] = starting_after
            obj = await get_json(client, f"{STRIPE_API_BASE}/{resource}", params=params, headers=self._headers())
            if isinstance(obj, dict) and obj.get("error"):
                raise RuntimeError(f"Stripe API error: {(obj['error'] or {}).get('message')}")
            data = [d for d in (obj.get("data") or []) if isinstance(d, dict)]
            out.extend(data)
            if not obj.get("has_more") or not data:
                break
            starting_after = str(data[-1].get("id"))
        return out

    async def fetch_historical_data(self, start: datetime, end: datetime) -> list[RawEventInput]:
        mode = connector_mode(self.ctx)
        if mode == "fixture":
            return load_raw_events(fixture_dir(self.ctx.platform, self.ctx.config), start, end)
        if not self.ctx.access_token:
            raise RuntimeError("Missing Stripe API key")

        created = (to_unix_timestamp(start), to_unix_timestamp(end))
        resources: list[tuple[str, str, Callable[[dict[str, Any]], dict[str, Any]]]] = [
            ("charges", "stripe_charge", _charge),
            ("payment_intents", "stripe_payment_intent", _payment_intent),
            ("customers", "stripe_customer", _customer),
        ]
        events: list[RawEventInput] = []
        async with self._client() as client:
            for resource, event_type, shape in resources:
                for obj in await self._list_all(client, resource, created):
                    events.append(
                        RawEventInput(event_type=event_type, event_data=shape(obj), timestamp=_created_iso(obj))
                    )
        logger.info("stripe: fetched %d events", len(events))
        return events
