from __future__ import annotations

import math

_DIRECT = {"", "direct", "(direct)", "none", "(none)", "(not set)", "null", "undefined"}
_FACEBOOK = {"facebook", "fb", "meta", "facebook ads", "meta ads"}
_GOOGLE = {"adwords", "cpc", "ppc", "paid search"}
_EMAIL = {"email", "e-mail", "mailchimp", "hubspot", "newsletter"}

PERFORMANCE_RATINGS = ("exceptional", "excellent", "satisfactory", "poor", "failing")


def normalize_channel(value: str | None) -> str:
    """Map raw UTM sources, GA4 channel groups and platform names to one channel key."""
    n = (value or "").strip().lower()
    if n in _DIRECT:
        return "direct"
    if n in _FACEBOOK or "facebook" in n:
        return "facebook"
    if n in _GOOGLE or "google" in n:
        return "google"
    if n in _EMAIL or "email" in n:
        return "email"
    return n


def calculate_roi(revenue: float, spend: float) -> float:
    if spend <= 0:
        return math.inf
    return (revenue - spend) / spend * 100


def performance_rating(roi: float) -> str:
    if math.isinf(roi) and roi > 0:
        return "exceptional"
    if roi >= 1000:
        return "exceptional"
    if roi >= 500:
        return "excellent"
    if roi >= 200:
        return "satisfactory"
    if roi >= 0:
        return "poor"
    return "failing"


def calculate_cpl(spend: float, conversions: int) -> float:
    if conversions <= 0:
        return math.inf
    return spend / conversions


# Cost-per-lead thresholds in PHP.
CPL_THRESHOLDS = (
    (50.0, "exceptional"),
    (100.0, "excellent"),
    (200.0, "satisfactory"),
    (500.0, "poor"),
)


def leads_performance_rating(cpl: float) -> str:
    if math.isinf(cpl):
        return "failing"
    for limit, rating in CPL_THRESHOLDS:
        if cpl <= limit:
            return rating
    return "failing"


def synergy_status(score: float) -> str:
    if score >= 1.5:
        return "strong"
    if score >= 1.0:
        return "needs_improvement"
    if score >= 0.5:
        return "needs_attention"
    return "urgent"


def synergy_strength(score: float) -> str:
    if score >= 1.5:
        return "strong"
    if score >= 1.0:
        return "medium"
    return "weak"
