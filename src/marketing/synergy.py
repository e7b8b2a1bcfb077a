"""
Channel synergy analysis.

Conversion journeys are rebuilt from verified conversions and the pixel sessions
in the seven days before each purchase. From those journeys we derive channel
performance, pairwise synergy scores, recurring paths, funnel roles and
per-channel insights.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

from marketing.channels import (
    calculate_cpl,
    calculate_roi,
    leads_performance_rating,
    normalize_channel,
    performance_rating,
    synergy_status,
    synergy_strength,
)
from marketing.repo import Repo
from marketing.util import iso_utc, now_utc, parse_ts, round_half_up, to_float

logger = logging.getLogger(__name__)

BusinessType = Literal["sales", "leads"]

JOURNEY_LOOKBACK_DAYS = 7
SPEND_PLATFORMS = ("meta", "google_analytics_4", "google_ads", "hubspot", "mailchimp")

RATING_SCORES = {"exceptional": 5, "excellent": 4, "satisfactory": 3, "poor": 2, "failing": 1}


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    @classmethod
    def last_days(cls, days: int, *, now: datetime | None = None) -> "DateRange":
        end = now or now_utc()
        return cls(start=end - timedelta(days=days), end=end)

    @property
    def start_iso(self) -> str:
        return iso_utc(self.start)

    @property
    def end_iso(self) -> str:
        return iso_utc(self.end)

    def cache_key(self) -> str:
        return f"{self.start_iso}:{self.end_iso}"


def _pct(value: float) -> str:
    if math.isinf(value):
        return "unbounded"
    return f"{int(round_half_up(value))}%"


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" + ("" if n == 1 else "s")


# ---------------------------------------------------------------------------- #
# Journeys
# ---------------------------------------------------------------------------- #


def _collapse_repeats(seq: list[str]) -> list[str]:
    out: list[str] = []
    for ch in seq:
        if not out or out[-1] != ch:
            out.append(ch)
    return out


def _touchpoints(events: list[dict[str, Any]]) -> list[dict[str, Any]]:
    by_session: dict[str, list[dict[str, Any]]] = {}
    for e in events:
        by_session.setdefault(str(e["session_id"]), []).append(e)

    touchpoints: list[dict[str, Any]] = []
    for session_id, evs in by_session.items():
        evs.sort(key=lambda e: e["timestamp"])
        first = evs[0]
        touchpoints.append(
            {
                "session_id": session_id,
                "channel": normalize_channel(first.get("utm_source") or first.get("utm_medium") or "direct"),
                "timestamp": first["timestamp"],
                "utm_source": first.get("utm_source") or None,
                "utm_medium": first.get("utm_medium") or None,
                "utm_campaign": first.get("utm_campaign") or None,
                "event_count": len(evs),
            }
        )
    touchpoints.sort(key=lambda t: t["timestamp"])
    return touchpoints


def get_conversion_journeys(repo: Repo, user_id: str, date_range: DateRange) -> list[dict[str, Any]]:
    conversions = repo.list_verified_conversions(
        user_id=user_id, start=date_range.start_iso, end=date_range.end_iso, order="ASC"
    )
    if not conversions:
        return []

    user = repo.get_user(user_id)
    pixel_id = user.get("pixel_id") if user else None
    if not pixel_id:
        logger.info("no pixel for user %s, journeys are single-touch", user_id)
        return [
            {
                "conversion_id": c["id"],
                "amount": float(c["amount"] or 0),
                "channel_sequence": [normalize_channel(c.get("attributed_channel") or "direct")],
                "touchpoints": [],
                "is_multi_touch": False,
            }
            for c in conversions
        ]

    lookback = timedelta(days=JOURNEY_LOOKBACK_DAYS)
    earliest = parse_ts(conversions[0]["timestamp"])
    latest = parse_ts(conversions[-1]["timestamp"])
    all_events = repo.list_pixel_events(pixel_id=pixel_id, start=iso_utc(earliest - lookback), end=iso_utc(latest))

    journeys: list[dict[str, Any]] = []
    for c in conversions:
        conv_ts = parse_ts(c["timestamp"])
        window_start = iso_utc(conv_ts - lookback)
        window_end = iso_utc(conv_ts)
        relevant = [e for e in all_events if window_start <= e["timestamp"] <= window_end]

        touchpoints = _touchpoints(relevant)
        sequence = _collapse_repeats([t["channel"] for t in touchpoints])
        if not sequence:
            sequence = [normalize_channel(c.get("attributed_channel") or "direct")]

        journeys.append(
            {
                "conversion_id": c["id"],
                "amount": float(c["amount"] or 0),
                "channel_sequence": sequence,
                "touchpoints": touchpoints,
                "is_multi_touch": len(sequence) > 1,
            }
        )

    logger.info(
        "built %d journeys (%d multi-touch) for user %s",
        len(journeys),
        sum(1 for j in journeys if j["is_multi_touch"]),
        user_id,
    )
    return journeys


# ---------------------------------------------------------------------------- #
# Performance
# ---------------------------------------------------------------------------- #


def _spend_channel(platform: str, data: dict[str, Any]) -> str:
    if platform == "meta":
        return "facebook"
    if platform == "google_ads":
        return "google"
    if platform in ("hubspot", "mailchimp"):
        return normalize_channel(data.get("channel") or "email")
    return normalize_channel(data.get("channel_group") or data.get("sessionSource") or "google")


def get_channel_spend(repo: Repo, user_id: str, date_range: DateRange) -> dict[str, float]:
    spend_by_channel: dict[str, float] = {}
    for e in repo.list_raw_events(
        user_id=user_id, platforms=SPEND_PLATFORMS, start=date_range.start_iso, end=date_range.end_iso
    ):
        data = e["event_data"]
        spend = to_float(data.get("spend")) or to_float(data.get("cost")) or to_float(data.get("amount_spent"))
        if spend > 0:
            ch = _spend_channel(e["platform"], data)
            spend_by_channel[ch] = spend_by_channel.get(ch, 0.0) + spend
    return spend_by_channel


def get_channel_performance(
    repo: Repo, user_id: str, date_range: DateRange, business_type: BusinessType = "sales"
) -> list[dict[str, Any]]:
    stats: dict[str, dict[str, float]] = {}
    for c in repo.list_verified_conversions(user_id=user_id, start=date_range.start_iso, end=date_range.end_iso):
        ch = normalize_channel(c.get("attributed_channel") or "direct")
        s = stats.setdefault(ch, {"revenue": 0.0, "conversions": 0})
        s["revenue"] += float(c.get("amount") or 0)
        s["conversions"] += 1

    spend_by_channel = get_channel_spend(repo, user_id, date_range)

    performance: list[dict[str, Any]] = []
    for ch, s in stats.items():
        spend = spend_by_channel.get(ch, 0.0)
        conversions = int(s["conversions"])
        if business_type == "leads":
            cpl = calculate_cpl(spend, conversions)
            performance.append(
                {
                    "channel": ch,
                    "revenue": 0.0,
                    "spend": spend,
                    "roi": 0.0,
                    "conversions": conversions,
                    "cpl": 0.0 if math.isinf(cpl) else round_half_up(cpl, 2),
                    "performance_rating": leads_performance_rating(cpl),
                }
            )
        else:
            roi = calculate_roi(s["revenue"], spend)
            performance.append(
                {
                    "channel": ch,
                    "revenue": s["revenue"],
                    "spend": spend,
                    "roi": roi,
                    "conversions": conversions,
                    "performance_rating": performance_rating(roi),
                }
            )

    sort_key = "conversions" if business_type == "leads" else "revenue"
    performance.sort(key=lambda p: p[sort_key], reverse=True)
    return performance


# ---------------------------------------------------------------------------- #
# Synergies
# ---------------------------------------------------------------------------- #


def _synergy(channel_a: str, channel_b: str, score: float, frequency: int, confidence: int) -> dict[str, Any]:
    rounded = round_half_up(score, 2)
    return {
        "channel_a": channel_a,
        "channel_b": channel_b,
        "synergy_score": rounded,
        "frequency": frequency,
        "confidence": confidence,
        "status": synergy_status(rounded),
        "strength": synergy_strength(rounded),
    }


def synergies_from_journeys(journeys: list[dict[str, Any]], business_type: BusinessType = "sales") -> list[dict[str, Any]]:
    """
    Sales: average pair revenue over the better solo-channel average.
    Leads: pair co-occurrence over the geometric mean of solo counts.
    A score of 1.0 means the pair does no better than its stronger member alone.
    """
    solo: dict[str, dict[str, float]] = {}
    for j in journeys:
        if not j["is_multi_touch"]:
            s = solo.setdefault(j["channel_sequence"][0], {"total": 0.0, "count": 0})
            s["total"] += j["amount"]
            s["count"] += 1

    pairs: dict[tuple[str, str], dict[str, float]] = {}
    for j in journeys:
        if not j["is_multi_touch"]:
            continue
        unique = list(dict.fromkeys(j["channel_sequence"]))
        for i in range(len(unique)):
            for k in range(i + 1, len(unique)):
                a, b = sorted((unique[i], unique[k]))
                p = pairs.setdefault((a, b), {"revenue": 0.0, "count": 0})
                p["revenue"] += j["amount"]
                p["count"] += 1

    out: list[dict[str, Any]] = []
    for (a, b), p in pairs.items():
        count = int(p["count"])
        if business_type == "leads":
            denom = math.sqrt(solo.get(a, {}).get("count", 0) * solo.get(b, {}).get("count", 0))
            score = count / denom if denom > 0 else 1.0
        else:
            best_solo = max(
                (s["total"] / s["count"]) if (s := solo.get(ch)) and s["count"] else 0.0 for ch in (a, b)
            )
            score = (p["revenue"] / count) / best_solo if best_solo > 0 else 1.0
        confidence = min(95, int(round_half_up(20 + 25 * math.log2(count))))
        out.append(_synergy(a, b, score, count, confidence))

    out.sort(key=lambda s: s["synergy_score"], reverse=True)
    return out


def synergies_from_performance(performance: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Estimate pair potential from performance ratings when no multi-touch journeys exist."""
    if len(performance) < 2:
        return []
    out: list[dict[str, Any]] = []
    for i in range(len(performance)):
        for k in range(i + 1, len(performance)):
            a, b = performance[i], performance[k]
            avg = (RATING_SCORES.get(a["performance_rating"], 2) + RATING_SCORES.get(b["performance_rating"], 2)) / 2
            total = int(a["conversions"]) + int(b["conversions"])
            confidence = min(70, int(round_half_up(30 + math.log2(total + 1) * 10)))
            out.append(_synergy(a["channel"], b["channel"], avg / 3, total, confidence))
    out.sort(key=lambda s: s["synergy_score"], reverse=True)
    return out


def analyze_channel_synergies(
    repo: Repo,
    user_id: str,
    date_range: DateRange,
    business_type: BusinessType = "sales",
    *,
    journeys: list[dict[str, Any]] | None = None,
) -> list[dict[str, Any]]:
    if journeys is None:
        journeys = get_conversion_journeys(repo, user_id, date_range)
    if any(j["is_multi_touch"] for j in journeys):
        return synergies_from_journeys(journeys, business_type)

    logger.info("no multi-touch journeys for user %s, estimating synergies from performance", user_id)
    return synergies_from_performance(get_channel_performance(repo, user_id, date_range, business_type))


# ---------------------------------------------------------------------------- #
# Patterns and roles
# ---------------------------------------------------------------------------- #


def journey_patterns(journeys: list[dict[str, Any]], business_type: BusinessType = "sales") -> list[dict[str, Any]]:
    grouped: dict[str, dict[str, Any]] = {}
    for j in journeys:
        key = " > ".join(j["channel_sequence"])
        g = grouped.setdefault(key, {"pattern": list(j["channel_sequence"]), "revenue": 0.0, "count": 0})
        g["revenue"] += j["amount"]
        g["count"] += 1

    patterns: list[dict[str, Any]] = []
    for g in grouped.values():
        if business_type == "leads":
            patterns.append(
                {
                    "pattern": g["pattern"],
                    "frequency": g["count"],
                    "total_revenue": 0.0,
                    "avg_revenue": 0.0,
                    "total_conversions": g["count"],
                    "avg_conversions": 1,
                }
            )
        else:
            patterns.append(
                {
                    "pattern": g["pattern"],
                    "frequency": g["count"],
                    "total_revenue": g["revenue"],
                    "avg_revenue": round_half_up(g["revenue"] / g["count"], 2),
                    "total_conversions": g["count"],
                }
            )
    patterns.sort(key=lambda p: p["frequency"], reverse=True)
    return patterns


def get_journey_patterns(
    repo: Repo, user_id: str, date_range: DateRange, business_type: BusinessType = "sales"
) -> list[dict[str, Any]]:
    return journey_patterns(get_conversion_journeys(repo, user_id, date_range), business_type)


def channel_roles(journeys: list[dict[str, Any]]) -> list[dict[str, Any]]:
    counts: dict[str, dict[str, int]] = {}

    def _entry(ch: str) -> dict[str, int]:
        return counts.setdefault(ch, {"introducer": 0, "closer": 0, "supporter": 0, "solo": 0, "appearances": 0})

    for j in journeys:
        seq = j["channel_sequence"]
        if len(seq) == 1:
            d = _entry(seq[0])
            d["solo"] += 1
            d["appearances"] += 1
            continue
        for i, ch in enumerate(seq):
            d = _entry(ch)
            d["appearances"] += 1
            if i == 0:
                d["introducer"] += 1
            elif i == len(seq) - 1:
                d["closer"] += 1
            else:
                d["supporter"] += 1

    roles: list[dict[str, Any]] = []
    for ch, d in counts.items():
        solo_ratio = d["solo"] / d["appearances"] if d["appearances"] else 0.0
        if solo_ratio > 0.6:
            primary = "isolated"
        else:
            # Ties resolve in funnel order.
            primary = max(("introducer", "closer", "supporter"), key=lambda r: (d[r], -("introducer", "closer", "supporter").index(r)))
        roles.append(
            {
                "channel": ch,
                "primary_role": primary,
                "solo_conversions": d["solo"],
                "assisted_conversions": d["introducer"] + d["closer"] + d["supporter"],
                "introducer_count": d["introducer"],
                "closer_count": d["closer"],
                "supporter_count": d["supporter"],
            }
        )
    roles.sort(key=lambda r: r["solo_conversions"] + r["assisted_conversions"], reverse=True)
    return roles


def identify_channel_roles(repo: Repo, user_id: str, date_range: DateRange) -> list[dict[str, Any]]:
    return channel_roles(get_conversion_journeys(repo, user_id, date_range))


# ---------------------------------------------------------------------------- #
# Campaigns and insights
# ---------------------------------------------------------------------------- #


def get_campaign_data(repo: Repo, user_id: str, date_range: DateRange) -> list[dict[str, Any]]:
    user = repo.get_user(user_id)
    pixel_id = user.get("pixel_id") if user else None
    if not pixel_id:
        return []

    grouped: dict[tuple[str, str], dict[str, Any]] = {}
    for e in repo.list_pixel_events(
        pixel_id=pixel_id, start=date_range.start_iso, end=date_range.end_iso, with_campaign=True
    ):
        campaign = e.get("utm_campaign")
        if not campaign:
            continue
        ch = normalize_channel(e.get("utm_source") or "direct")
        g = grouped.setdefault((campaign, ch), {"sessions": set(), "conversions": 0})
        g["sessions"].add(e["session_id"])
        if e.get("event_type") == "conversion":
            g["conversions"] += 1

    channels_by_campaign: dict[str, list[str]] = {}
    for campaign, ch in grouped:
        channels_by_campaign.setdefault(campaign, []).append(ch)

    insights: list[dict[str, Any]] = []
    for (campaign, ch), g in grouped.items():
        others = [c for c in channels_by_campaign[campaign] if c != ch]
        insights.append(
            {
                "campaign_name": campaign,
                "channel": ch,
                "observation": f"{len(g['sessions'])} sessions, {g['conversions']} conversions",
                "cross_platform_impact": f"Also appears on {', '.join(others)}" if others else None,
            }
        )
    return insights


def _strengths(perf: dict[str, Any], role: dict[str, Any] | None, syns: list[dict[str, Any]], business_type: str) -> list[str]:
    out: list[str] = []
    if perf["performance_rating"] in ("exceptional", "excellent"):
        if business_type == "leads":
            out.append(
                f"Strong performer: CPL of ₱{int(round_half_up(perf.get('cpl') or 0))} across {perf['conversions']} conversions"
            )
        else:
            out.append(f"High ROI at {_pct(perf['roi'])} across {perf['conversions']} conversions")
    if role:
        total = role["solo_conversions"] + role["assisted_conversions"]
        if total > 0 and role["primary_role"] == "introducer":
            out.append(
                f"Strong introducer: first touch in {int(round_half_up(role['introducer_count'] / total * 100))}% of multi-touch journeys"
            )
        elif total > 0 and role["primary_role"] == "closer":
            out.append(
                f"Strong closer: last touch in {int(round_half_up(role['closer_count'] / total * 100))}% of multi-touch conversions"
            )
        elif total > 0 and role["primary_role"] == "supporter":
            out.append(f"Key supporter: assists in {role['assisted_conversions']} multi-touch journeys")
    strong = [s for s in syns if s["synergy_score"] >= 1.5]
    if strong:
        out.append(f"Strong synergy with {_plural(len(strong), 'channel')}")
    if not out:
        out.append(f"Active channel with {perf['conversions']} conversions in period")
    return out


def _weaknesses(perf: dict[str, Any], role: dict[str, Any] | None, syns: list[dict[str, Any]], business_type: str) -> list[str]:
    out: list[str] = []
    rating = perf["performance_rating"]
    if rating in ("poor", "failing"):
        if business_type == "leads":
            out.append(f"{rating} CPL (₱{int(round_half_up(perf.get('cpl') or 0))}): above target threshold")
        else:
            out.append(f"{rating} ROI ({_pct(perf['roi'])}): below target threshold")
    if role and role["primary_role"] == "isolated":
        total = role["solo_conversions"] + role["assisted_conversions"]
        ratio = int(round_half_up(role["solo_conversions"] / total * 100)) if total else 0
        out.append(f"Operates in isolation: {ratio}% solo conversion ratio")
    weak = [s for s in syns if s["synergy_score"] < 0.5]
    if weak:
        out.append(f"Urgent synergy status with {_plural(len(weak), 'channel pair')}")
    return out


def _cross_channel_effects(channel: str, syns: list[dict[str, Any]]) -> list[dict[str, Any]]:
    effects: list[dict[str, Any]] = []
    for s in syns:
        target = s["channel_b"] if s["channel_a"] == channel else s["channel_a"]
        score = s["synergy_score"]
        if score > 1.0:
            effect = "amplifies"
            description = f"{channel} audiences convert better when also exposed to {target}"
        elif score < 1.0:
            effect = "weakens"
            description = f"Combined {channel} + {target} journeys underperform solo conversions"
        else:
            effect = "neutral"
            description = f"Neutral interaction between {channel} and {target}"
        effects.append({"target_channel": target, "effect": effect, "magnitude": score, "description": description})
    return effects


def generate_channel_insights(
    repo: Repo,
    user_id: str,
    date_range: DateRange,
    business_type: BusinessType = "sales",
    *,
    synergies: list[dict[str, Any]] | None = None,
    performance: list[dict[str, Any]] | None = None,
    roles: list[dict[str, Any]] | None = None,
) -> list[dict[str, Any]]:
    if synergies is None or performance is None or roles is None:
        journeys = get_conversion_journeys(repo, user_id, date_range)
        if performance is None:
            performance = get_channel_performance(repo, user_id, date_range, business_type)
        if synergies is None:
            synergies = analyze_channel_synergies(repo, user_id, date_range, business_type, journeys=journeys)
        if roles is None:
            roles = channel_roles(journeys)
    campaigns = get_campaign_data(repo, user_id, date_range)

    role_by_channel = {r["channel"]: r for r in roles}
    syns_by_channel: dict[str, list[dict[str, Any]]] = {}
    for s in synergies:
        syns_by_channel.setdefault(s["channel_a"], []).append(s)
        syns_by_channel.setdefault(s["channel_b"], []).append(s)
    campaigns_by_channel: dict[str, list[dict[str, Any]]] = {}
    for c in campaigns:
        campaigns_by_channel.setdefault(c["channel"], []).append(c)

    insights: list[dict[str, Any]] = []
    for perf in performance:
        ch = perf["channel"]
        role = role_by_channel.get(ch)
        syns = syns_by_channel.get(ch, [])
        appearances = role["solo_conversions"] + role["assisted_conversions"] if role else perf["conversions"]
        insights.append(
            {
                "id": f"insight-{ch}",
                "channel": ch,
                "strengths": _strengths(perf, role, syns, business_type),
                "weaknesses": _weaknesses(perf, role, syns, business_type),
                "cross_channel_effects": _cross_channel_effects(ch, syns),
                "campaign_insights": campaigns_by_channel.get(ch, []),
                "ai_summary": "",
                "confidence": min(95, int(round_half_up(30 + 20 * math.log2(max(1, appearances))))),
            }
        )
    return insights
