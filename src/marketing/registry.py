from __future__ import annotations

import json
from typing import Any

from marketing.connectors.base import ConnectorContext
from marketing.connectors.demo import DemoConnector
from marketing.connectors.google_ads import GoogleAdsConnector
from marketing.connectors.google_analytics import GoogleAnalyticsConnector
from marketing.connectors.hubspot import HubSpotConnector
from marketing.connectors.mailchimp import MailchimpConnector
from marketing.connectors.meta import MetaConnector
from marketing.connectors.paypal import PayPalConnector
from marketing.connectors.stripe import StripeConnector

PLATFORMS = (
    "meta",
    "google_analytics_4",
    "google_ads",
    "stripe",
    "paypal",
    "hubspot",
    "mailchimp",
)

PAYMENT_PLATFORMS = ("stripe", "paypal")

PLATFORM_NAMES = {
    "meta": "Meta",
    "google_analytics_4": "Google Analytics 4",
    "google_ads": "Google Ads",
    "stripe": "Stripe",
    "paypal": "PayPal",
    "hubspot": "HubSpot",
    "mailchimp": "Mailchimp",
}


def _config_dict(config: dict[str, Any] | str | None) -> dict[str, Any]:
    if isinstance(config, dict):
        return dict(config)
    loaded = json.loads(config or "{}")
    return loaded if isinstance(loaded, dict) else {}


def build_connector(
    platform: str,
    *,
    user_id: str,
    access_token: str | None,
    account_id: str | None = None,
    refresh_token: str | None = None,
    config: dict[str, Any] | str | None = None,
    demo_mode: bool = False,
    paypal_env: str = "sandbox",
):
    ctx = ConnectorContext(
        user_id=user_id,
        platform=platform,
        access_token=access_token,
        account_id=account_id,
        config=_config_dict(config),
        refresh_token=refresh_token,
    )

    if platform not in PLATFORMS:
        raise ValueError(f"Unknown platform: {platform}")
    if demo_mode:
        return DemoConnector(ctx)

    if platform == "meta":
        return MetaConnector(ctx)
    if platform == "google_analytics_4":
        return GoogleAnalyticsConnector(ctx)
    if platform == "google_ads":
        return GoogleAdsConnector(ctx)
    if platform == "stripe":
        return StripeConnector(ctx)
    if platform == "paypal":
        return PayPalConnector(ctx, environment=paypal_env)
    if platform == "hubspot":
        return HubSpotConnector(ctx)
    return MailchimpConnector(ctx)
