from __future__ import annotations

import random
from datetime import datetime, timedelta

from marketing.connectors.base import ConnectorCapabilities, ConnectorContext, RawEventInput
from marketing.util import iso_utc, new_id


class DemoConnector:
    """
    Generates fake platform events so sync and analytics flows can be exercised
    without real API keys.
    """

    capabilities = ConnectorCapabilities(read_spend=True, read_sessions=True, read_transactions=True)

    def __init__(self, ctx: ConnectorContext):
        self.ctx = ctx

    async def health_check(self) -> tuple[bool, str | None]:
        return True, None

    def _event(self, day: datetime) -> RawEventInput | None:
        ts = iso_utc(day.replace(hour=12, minute=0, second=0, microsecond=0))
        p = self.ctx.platform
        if p == "meta":
            spend = round(random.uniform(200, 5000), 2)
            return RawEventInput(
                "meta_campaign_insights",
                {
                    "campaign_id": "demo_campaign_1",
                    "campaign_name": "Demo Campaign",
                    "date": day.date().isoformat(),
                    "impressions": int(spend * 40),
                    "clicks": int(spend / 10),
                    "spend": spend,
                    "actions": [{"action_type": "purchase", "value": float(random.choice([0, 1, 2]))}],
                    "action_values": [],
                },
                ts,
            )
        if p == "google_analytics_4":
            return RawEventInput(
                "ga4_sessions",
                {
                    "date": day.strftime("%Y%m%d"),
                    "channel_group": random.choice(["Paid Social", "Organic Search", "Direct", "Email"]),
                    "sessions": random.randint(10, 400),
                    "page_views": random.randint(20, 900),
                    "conversions": random.randint(0, 5),
                    "total_users": random.randint(10, 300),
                },
                ts,
            )
        if p == "google_ads":
            cost = round(random.uniform(100, 3000), 2)
            return RawEventInput(
                "google_ads_campaign_metrics",
                {"date": day.date().isoformat(), "campaign_id": "demo_gads_1", "cost": cost, "channel": "google"},
                ts,
            )
        if p == "stripe":
            return RawEventInput(
                "stripe_charge",
                {
                    "id": new_id("ch_demo"),
                    "amount": round(random.uniform(300, 8000), 2),
                    "currency": "php",
                    "status": "succeeded",
                    "receipt_email": f"buyer{random.randint(1, 50)}@example.com",
                    "metadata": {},
                },
                ts,
            )
        if p == "paypal":
            return RawEventInput(
                "paypal_transaction",
                {
                    "transaction_id": new_id("PAYDEMO"),
                    "transaction_status": "S",
                    "gross_amount": round(random.uniform(300, 8000), 2),
                    "currency": "PHP",
                    "payer_email": f"buyer{random.randint(1, 50)}@example.com",
                },
                ts,
            )
        if p == "hubspot":
            return RawEventInput(
                "hubspot_marketing_email",
                {"email_id": f"demo_email_{day:%Y%m%d}", "email_name": "Demo Newsletter", "sends": 500, "opens": 180, "clicks": 40},
                ts,
            )
        if p == "mailchimp":
            return RawEventInput(
                "mailchimp_campaign_report",
                {"campaign_id": f"demo_mc_{day:%Y%m%d}", "campaign_title": "Demo Blast", "emails_sent": 800, "unique_opens": 240},
                ts,
            )
        return None

    async def fetch_historical_data(self, start: datetime, end: datetime) -> list[RawEventInput]:
        out: list[RawEventInput] = []
        cur = start
        while cur <= end:
            e = self._event(cur)
            if e is not None:
                out.append(e)
            cur += timedelta(days=1)
        return out
