from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx


@dataclass(frozen=True)
class ConnectorCapabilities:
    read_spend: bool = False
    read_sessions: bool = False
    read_transactions: bool = False
    read_customers: bool = False
    read_email: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "read_spend": self.read_spend,
            "read_sessions": self.read_sessions,
            "read_transactions": self.read_transactions,
            "read_customers": self.read_customers,
            "read_email": self.read_email,
        }


@dataclass(frozen=True)
class ConnectorContext:
    user_id: str
    platform: str
    access_token: str | None
    account_id: str | None = None
    config: dict[str, Any] = field(default_factory=dict)
    refresh_token: str | None = None


@dataclass(frozen=True)
class RawEventInput:
    event_type: str
    event_data: dict[str, Any]
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {"event_type": self.event_type, "event_data": self.event_data, "timestamp": self.timestamp}


class BaseConnector(Protocol):
    capabilities: ConnectorCapabilities

    async def health_check(self) -> tuple[bool, str | None]:
        """Return (ok, error). Must never raise."""

    async def fetch_historical_data(self, start: datetime, end: datetime) -> list[RawEventInput]:
        """Fetch platform data for [start, end] as raw events."""


def connector_mode(ctx: ConnectorContext) -> str:
    return str(ctx.config.get("mode", "api")).strip().lower()


class HttpConnectorMixin:
    """Shared httpx plumbing; tests inject a transport."""

    ctx: ConnectorContext
    transport: httpx.AsyncBaseTransport | None = None

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        timeout = float(self.ctx.config.get("http_timeout_sec", 30.0))
        return httpx.AsyncClient(timeout=timeout, transport=self.transport, **kwargs)

    def _page_pause(self, default: float) -> float:
        return float(self.ctx.config.get("page_pause_sec", default))
