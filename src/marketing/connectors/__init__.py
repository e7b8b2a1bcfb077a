from marketing.connectors.base import BaseConnector, ConnectorCapabilities, ConnectorContext, RawEventInput
from marketing.connectors.demo import DemoConnector
from marketing.connectors.google_ads import GoogleAdsConnector
from marketing.connectors.google_analytics import GoogleAnalyticsConnector
from marketing.connectors.hubspot import HubSpotConnector
from marketing.connectors.mailchimp import MailchimpConnector
from marketing.connectors.meta import MetaConnector
from marketing.connectors.paypal import PayPalConnector
from marketing.connectors.stripe import StripeConnector

__all__ = [
    "BaseConnector",
    "ConnectorCapabilities",
    "ConnectorContext",
    "RawEventInput",
    "DemoConnector",
    "MetaConnector",
    "GoogleAnalyticsConnector",
    "GoogleAdsConnector",
    "StripeConnector",
    "PayPalConnector",
    "HubSpotConnector",
    "MailchimpConnector",
]
