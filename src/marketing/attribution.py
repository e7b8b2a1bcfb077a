"""
Dual-tracking attribution.

A payment (Stripe charge, PayPal transaction) is matched to first-party pixel
sessions around the purchase time, cross-checked against GA4 traffic for that
day, scored for confidence and stored as a verified conversion.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable

from marketing.channels import normalize_channel
from marketing.repo import Repo
from marketing.util import iso_utc, parse_ts, round_half_up, to_float

logger = logging.getLogger(__name__)

UTM_FIELDS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")

SESSION_WINDOW_HOURS = 24
OVER_ATTRIBUTION_LOOKBACK_DAYS = 7
OVER_ATTRIBUTION_TOLERANCE = 1.1
GA4_MATCH_WINDOW_MINUTES = 30

PAYMENT_EVENT_TYPES = ("stripe_charge", "paypal_transaction")


@dataclass
class TransactionData:
    transaction_id: str
    amount: float
    currency: str
    timestamp: str
    email: str | None = None
    platform: str | None = None


@dataclass
class PixelSession:
    session_id: str
    pixel_id: str
    events: list[dict[str, Any]]
    first_event_timestamp: datetime
    last_event_timestamp: datetime
    utm_source: str | None
    utm_medium: str | None
    utm_campaign: str | None
    utm_term: str | None
    utm_content: str | None
    has_conversion_event: bool
    event_count: int
    composite_score: float = 0.0


@dataclass
class AttributionMatch:
    pixel_match: bool = False
    pixel_session_id: str | None = None
    pixel_channel: str | None = None
    pixel_time_proximity: float | None = None
    pixel_has_conversion: bool = False
    pixel_utm_completeness: float | None = None
    ga4_match: bool = False
    ga4_channel: str | None = None
    ga4_has_traffic: bool = False
    ga4_conversion_count: int = 0
    conflict_reason: str | None = None
    all_candidate_sessions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ConfidenceResult:
    score: int
    level: str
    method: str


@dataclass(frozen=True)
class GA4Validation:
    has_traffic: bool = False
    conversion_count: int = 0
    top_channels: tuple[str, ...] = ()


@dataclass(frozen=True)
class OverAttribution:
    is_over_attributed: bool = False
    actual_sales: int = 0
    platform_claimed: float = 0.0
    discrepancy: float = 0.0


@dataclass(frozen=True)
class GA4SessionMatch:
    matched: bool
    match_method: str
    match_confidence: float
    pixel_session_id: str | None = None
    ga4_client_id: str | None = None


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


# ---------------------------------------------------------------------------- #
# Session scoring
# ---------------------------------------------------------------------------- #


def group_events_by_session(events: Iterable[dict[str, Any]]) -> list[PixelSession]:
    by_session: dict[str, list[dict[str, Any]]] = {}
    for e in events:
        by_session.setdefault(str(e["session_id"]), []).append(e)

    sessions: list[PixelSession] = []
    for session_id, evs in by_session.items():
        evs.sort(key=lambda e: parse_ts(e["timestamp"]))
        first = evs[0]
        stamps = [parse_ts(e["timestamp"]) for e in evs]
        sessions.append(
            PixelSession(
                session_id=session_id,
                pixel_id=str(first.get("pixel_id") or ""),
                events=evs,
                first_event_timestamp=min(stamps),
                last_event_timestamp=max(stamps),
                utm_source=first.get("utm_source"),
                utm_medium=first.get("utm_medium"),
                utm_campaign=first.get("utm_campaign"),
                utm_term=first.get("utm_term"),
                utm_content=first.get("utm_content"),
                has_conversion_event=any(e.get("event_type") == "conversion" for e in evs),
                event_count=len(evs),
            )
        )
    return sessions


def utm_completeness(session: PixelSession) -> float:
    present = sum(1 for f in UTM_FIELDS if getattr(session, f) not in (None, ""))
    return present / len(UTM_FIELDS)


def time_proximity(session_ts: datetime, transaction_ts: datetime, window_hours: float) -> float:
    """Linear decay: 1.0 at the transaction time, 0.0 at the window edge."""
    diff = abs((session_ts - transaction_ts).total_seconds())
    window = window_hours * 3600
    return max(0.0, min(1.0, 1 - diff / window))


def session_score(session: PixelSession, transaction_ts: datetime, window_hours: float) -> float:
    prox = time_proximity(session.last_event_timestamp, transaction_ts, window_hours)
    conv = 1.0 if session.has_conversion_event else 0.0
    return prox * 0.5 + utm_completeness(session) * 0.3 + conv * 0.2


def determine_channel(session: PixelSession) -> str:
    if session.utm_source:
        return session.utm_source.lower()
    if session.utm_medium:
        return session.utm_medium.lower()
    return "unknown"


def _resolve_pixel_id(repo: Repo, *, user_id: str | None, email: str | None) -> str | None:
    user = repo.get_user(user_id) if user_id else None
    if user is None and email:
        user = repo.get_user_by_email(email)
    return str(user["pixel_id"]) if user and user.get("pixel_id") else None


def find_pixel_sessions(
    repo: Repo,
    email: str | None,
    timestamp: datetime,
    *,
    user_id: str | None = None,
    window_hours: float = SESSION_WINDOW_HOURS,
) -> list[PixelSession]:
    """
    Sessions of the owner's pixel within +/- window_hours of the transaction, best first.

    Sessions that identified the buyer (visitor_email) win over anonymous ones; when no
    session carries the buyer's email every session in the window is a candidate.
    """
    pixel_id = _resolve_pixel_id(repo, user_id=user_id, email=email)
    if not pixel_id:
        logger.info("no pixel for user=%s email=%s", user_id, email)
        return []

    window = timedelta(hours=window_hours)
    events = repo.list_pixel_events(
        pixel_id=pixel_id,
        start=iso_utc(timestamp - window),
        end=iso_utc(timestamp + window),
    )
    if not events:
        return []

    sessions = group_events_by_session(events)
    buyer = normalize_email(email)
    if buyer:
        identified = [
            s for s in sessions if any(normalize_email(e.get("visitor_email")) == buyer for e in s.events)
        ]
        if identified:
            sessions = identified

    for s in sessions:
        s.composite_score = session_score(s, timestamp, window_hours)
    sessions.sort(key=lambda s: s.composite_score, reverse=True)
    return sessions


# ---------------------------------------------------------------------------- #
# GA4 cross-check
# ---------------------------------------------------------------------------- #


def validate_with_ga4(repo: Repo, user_id: str, channel: str | None, date: datetime) -> GA4Validation:
    """Check whether GA4 recorded traffic for the channel on the transaction's (UTC) day."""
    try:
        day_start = parse_ts(date).replace(hour=0, minute=0, second=0, microsecond=0)
        day = day_start.strftime("%Y%m%d")
        events = repo.list_raw_events(
            user_id=user_id,
            platforms=["google_analytics_4"],
            event_types=["ga4_sessions", "ga4_traffic_source"],
            start=iso_utc(day_start),
            end=iso_utc(day_start + timedelta(days=1) - timedelta(milliseconds=1)),
        )
        sessions_by_channel: dict[str, int] = {}
        conversions = 0
        for e in events:
            data = e["event_data"]
            if str(data.get("date") or "") != day:
                continue
            for raw in (data.get("channel_group"), data.get("source") or data.get("sessionSource")):
                if raw:
                    ch = normalize_channel(str(raw))
                    sessions_by_channel[ch] = sessions_by_channel.get(ch, 0) + int(to_float(data.get("sessions")))
            conversions += int(to_float(data.get("conversions")))

        top = tuple(sorted(sessions_by_channel, key=lambda c: sessions_by_channel[c], reverse=True))
        if channel:
            has_traffic = normalize_channel(channel) in sessions_by_channel
        else:
            has_traffic = bool(top)
        return GA4Validation(has_traffic=has_traffic, conversion_count=conversions, top_channels=top)
    except Exception as e:  # noqa: BLE001
        # GA4 is corroborating evidence only.
        logger.error("GA4 validation failed for user %s: %s", user_id, e)
        return GA4Validation()


def match_ga4_session_to_pixel(
    repo: Repo,
    user_id: str,
    ga4_client_id: str | None,
    timestamp: datetime,
    utm: dict[str, str | None],
) -> GA4SessionMatch:
    """Link a GA4 session to a pixel session by client id, else by UTM + time proximity."""
    user = repo.get_user(user_id)
    pixel_id = user.get("pixel_id") if user else None
    if not pixel_id:
        return GA4SessionMatch(matched=False, match_method="none", match_confidence=0.0)

    if ga4_client_id:
        for e in repo.list_pixel_events(pixel_id=pixel_id):
            if str((e.get("metadata") or {}).get("ga4_client_id") or "") == ga4_client_id:
                return GA4SessionMatch(
                    matched=True,
                    match_method="client_id",
                    match_confidence=1.0,
                    pixel_session_id=e["session_id"],
                    ga4_client_id=ga4_client_id,
                )

    wanted = {k: (utm.get(k) or "").lower() for k in ("source", "medium", "campaign")}
    if any(wanted.values()):
        window = timedelta(minutes=GA4_MATCH_WINDOW_MINUTES)
        candidates = [
            e
            for e in repo.list_pixel_events(
                pixel_id=pixel_id, start=iso_utc(timestamp - window), end=iso_utc(timestamp + window)
            )
            if all(not v or (e.get(f"utm_{k}") or "").lower() == v for k, v in wanted.items())
        ][:5]
        if candidates:
            best = min(candidates, key=lambda e: abs((parse_ts(e["timestamp"]) - timestamp).total_seconds()))
            diff = abs((parse_ts(best["timestamp"]) - timestamp).total_seconds())
            proximity = 1 - diff / window.total_seconds()
            utm_hits = sum(1 for k, v in wanted.items() if v and best.get(f"utm_{k}"))
            return GA4SessionMatch(
                matched=True,
                match_method="utm_timestamp",
                match_confidence=proximity * 0.5 + (utm_hits / 3) * 0.5,
                pixel_session_id=best["session_id"],
                ga4_client_id=ga4_client_id,
            )

    return GA4SessionMatch(matched=False, match_method="none", match_confidence=0.0)


# ---------------------------------------------------------------------------- #
# Confidence and over-attribution
# ---------------------------------------------------------------------------- #


def calculate_confidence_score(match: AttributionMatch) -> ConfidenceResult:
    """
    Pixel evidence is worth up to 70 points (30 base, 20 proximity, 10 conversion event,
    10 UTM completeness); GA4 up to 30 (15 for data, 15 for channel agreement).
    """
    score = 0.0
    if match.pixel_match:
        score += 30
        if match.pixel_time_proximity is not None:
            score += match.pixel_time_proximity * 20
        if match.pixel_has_conversion:
            score += 10
        if match.pixel_utm_completeness is not None:
            score += match.pixel_utm_completeness * 10

    if match.ga4_match:
        score += 15
        if match.pixel_channel and match.ga4_channel:
            if normalize_channel(match.pixel_channel) == normalize_channel(match.ga4_channel):
                score += 15
        elif match.ga4_has_traffic:
            score += 5

    if match.conflict_reason:
        score = min(score, 50)

    if score >= 85:
        level, method = "high", "dual_verified"
    elif score >= 70:
        level, method = "medium", "dual_verified" if match.ga4_match else "single_source"
    elif score >= 40:
        level, method = "low", "single_source"
    else:
        level, method = "low", "uncertain"
    return ConfidenceResult(score=int(round_half_up(score)), level=level, method=method)


def detect_over_attribution(repo: Repo, user_id: str, start: datetime, end: datetime) -> OverAttribution:
    """Flag when ad platforms claim more conversions than payments actually recorded."""
    try:
        actual = len(
            repo.list_raw_events(
                user_id=user_id,
                platforms=["stripe", "paypal"],
                event_types=PAYMENT_EVENT_TYPES,
                start=iso_utc(start),
                end=iso_utc(end),
            )
        )
        claimed = 0.0
        for e in repo.list_raw_events(
            user_id=user_id,
            platforms=["meta", "google_analytics_4"],
            start=iso_utc(start),
            end=iso_utc(end),
        ):
            data = e["event_data"]
            claimed += to_float(data.get("conversions"))
            for action in data.get("actions") or []:
                if isinstance(action, dict) and action.get("action_type") in ("purchase", "conversion"):
                    claimed += to_float(action.get("value"))
        return OverAttribution(
            is_over_attributed=claimed > actual * OVER_ATTRIBUTION_TOLERANCE,
            actual_sales=actual,
            platform_claimed=claimed,
            discrepancy=claimed - actual,
        )
    except Exception as e:  # noqa: BLE001
        logger.error("over-attribution check failed for user %s: %s", user_id, e)
        return OverAttribution()


# ---------------------------------------------------------------------------- #
# Attribution
# ---------------------------------------------------------------------------- #


def attribute_transaction(repo: Repo, user_id: str, txn: TransactionData) -> dict[str, Any]:
    """Attribute one payment and store it; an already attributed transaction returns the stored row."""
    ts = parse_ts(txn.timestamp)
    sessions = find_pixel_sessions(repo, txn.email, ts, user_id=user_id, window_hours=SESSION_WINDOW_HOURS)

    match = AttributionMatch()
    if sessions:
        best = sessions[0]
        channel = determine_channel(best)
        match = AttributionMatch(
            pixel_match=True,
            pixel_session_id=best.session_id,
            pixel_channel=channel,
            pixel_time_proximity=time_proximity(best.last_event_timestamp, ts, SESSION_WINDOW_HOURS),
            pixel_has_conversion=best.has_conversion_event,
            pixel_utm_completeness=utm_completeness(best),
            all_candidate_sessions=[s.session_id for s in sessions],
        )

        ga4 = validate_with_ga4(repo, user_id, channel, ts)
        if ga4.top_channels:
            match.ga4_match = True
            match.ga4_has_traffic = ga4.has_traffic
            match.ga4_conversion_count = ga4.conversion_count
            match.ga4_channel = ga4.top_channels[0]
            if normalize_channel(channel) != normalize_channel(match.ga4_channel):
                match.conflict_reason = "channel_mismatch"

    confidence = calculate_confidence_score(match)
    over = detect_over_attribution(repo, user_id, ts - timedelta(days=OVER_ATTRIBUTION_LOOKBACK_DAYS), ts)

    conflicting = None
    if match.conflict_reason and match.pixel_channel and match.ga4_channel:
        conflicting = [match.pixel_channel, match.ga4_channel]

    metadata: dict[str, Any] = {
        "platform": txn.platform,
        "all_candidate_sessions": match.all_candidate_sessions,
        "conflict_reason": match.conflict_reason,
        "ga4_top_channels": [match.ga4_channel] if match.ga4_match else [],
    }
    if not match.pixel_match:
        metadata["reason"] = "no_pixel_match"

    record = {
        "user_id": user_id,
        "transaction_id": txn.transaction_id,
        "email": txn.email or None,
        "amount": txn.amount,
        "currency": txn.currency,
        "pixel_session_id": match.pixel_session_id,
        "ga4_session_id": None,
        "attributed_channel": match.pixel_channel or "direct",
        "confidence_score": confidence.score,
        "confidence_level": confidence.level,
        "attribution_method": confidence.method,
        "is_platform_over_attributed": over.is_over_attributed,
        "conflicting_sources": conflicting,
        "timestamp": iso_utc(ts),
        "metadata": metadata,
    }
    stored = repo.insert_verified_conversion(record)
    if stored is None:
        logger.info("transaction %s already attributed", txn.transaction_id)
        existing = repo.get_verified_conversion(transaction_id=txn.transaction_id)
        assert existing is not None
        return existing

    logger.info(
        "attributed %s -> %s (score=%s level=%s)",
        txn.transaction_id,
        record["attributed_channel"],
        confidence.score,
        confidence.level,
    )
    return stored


def transaction_from_raw_event(event: dict[str, Any]) -> TransactionData | None:
    """Map a stored stripe_charge / paypal_transaction raw event to a transaction."""
    if event.get("event_type") not in PAYMENT_EVENT_TYPES:
        return None
    data = event.get("event_data") or {}
    txn_id = data.get("id") or data.get("transaction_id")
    if not txn_id:
        return None
    return TransactionData(
        transaction_id=str(txn_id),
        amount=to_float(data.get("amount") if data.get("amount") is not None else data.get("gross_amount")),
        currency=str(data.get("currency") or "PHP").upper(),
        timestamp=str(event["timestamp"]),
        email=data.get("receipt_email") or data.get("payer_email"),
        platform=event.get("platform"),
    )


def attribute_recent_transactions(repo: Repo, user_id: str, events: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    results: list[dict[str, Any]] = []
    for event in events:
        txn = transaction_from_raw_event(event)
        if txn is None:
            continue
        try:
            results.append(attribute_transaction(repo, user_id, txn))
        except Exception as e:  # noqa: BLE001
            logger.error("failed to attribute %s: %s", txn.transaction_id, e)
    return results


def attribution_stats(repo: Repo, user_id: str) -> dict[str, Any]:
    conversions = repo.list_verified_conversions(user_id=user_id)
    total = len(conversions)
    by_level = {"high": 0, "medium": 0, "low": 0}
    by_method = {"dual_verified": 0, "single_source": 0, "uncertain": 0}
    if not total:
        return {
            "total_conversions": 0,
            "attributed_conversions": 0,
            "attribution_rate": 0,
            "avg_confidence_score": 0,
            "by_confidence_level": by_level,
            "by_attribution_method": by_method,
            "over_attributed_count": 0,
        }

    for c in conversions:
        if c.get("confidence_level") in by_level:
            by_level[c["confidence_level"]] += 1
        if c.get("attribution_method") in by_method:
            by_method[c["attribution_method"]] += 1
    attributed = sum(1 for c in conversions if c.get("pixel_session_id"))
    avg_score = sum(float(c.get("confidence_score") or 0) for c in conversions) / total
    return {
        "total_conversions": total,
        "attributed_conversions": attributed,
        "attribution_rate": round_half_up(attributed / total * 100, 2),
        "avg_confidence_score": round_half_up(avg_score, 2),
        "by_confidence_level": by_level,
        "by_attribution_method": by_method,
        "over_attributed_count": sum(1 for c in conversions if c.get("is_platform_over_attributed")),
    }
