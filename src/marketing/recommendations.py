"""
Budget recommendations.

Rule-based recommendations are derived from channel performance, synergies and roles.
When a Gemini API key is configured, the rule-based list is sent to Gemini for narrative
enhancement and up to two extra recommendations; any failure falls back to the rules.
"""

from __future__ import annotations

import json
import logging
import math
import time
from datetime import timedelta
from typing import Any, Callable, Literal

import httpx
from pydantic import BaseModel, ValidationError

from marketing.channels import performance_rating
from marketing.config import Settings
from marketing.repo import Repo
from marketing.retry import post_json
from marketing.synergy import (
    BusinessType,
    DateRange,
    analyze_channel_synergies,
    channel_roles,
    get_channel_performance,
    get_conversion_journeys,
    journey_patterns,
)
from marketing.util import json_safe, now_utc, round_half_up

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_PLACEHOLDER_KEY = "your_gemini_api_key"
GENERATION_CONFIG = {"temperature": 0.2, "responseMimeType": "application/json"}

CACHE_TTL_SEC = 300
RECOMMENDATION_TTL_DAYS = 7
MAX_RULE_RECOMMENDATIONS = 3


def _pct(roi: float) -> str:
    if math.isinf(roi):
        return "unbounded"
    return f"{int(round_half_up(roi))}%"


def _cpl(p: dict[str, Any]) -> str:
    return f"₱{int(round_half_up(float(p.get('cpl') or 0)))}"


def calculate_performance_rating(roi: float) -> str:
    """Capitalized rating label, e.g. "Exceptional"."""
    return performance_rating(roi).capitalize()


def generate_fallback_recommendations(
    user_id: str,
    performance: list[dict[str, Any]],
    synergies: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    recs: list[dict[str, Any]] = []

    def _add(rec: dict[str, Any]) -> None:
        rec.update(user_id=user_id, id=f"rec-fallback-{len(recs) + 1}", is_active=True)
        recs.append(rec)

    for p in performance or []:
        rating = str(p.get("performance_rating") or "").lower()
        roi = float(p.get("roi") or 0)
        leads = "cpl" in p
        if rating == "exceptional":
            revenue_impact = float(p.get("revenue") or 0) * 0.1
            _add(
                {
                    "type": "scale",
                    "channel": p["channel"],
                    "action": f"Scale {p['channel']}",
                    "reason": f"Low cost per lead ({_cpl(p)} CPL)" if leads else f"High ROI ({_pct(roi)})",
                    "estimated_impact": round_half_up(revenue_impact),
                    "confidence_score": 90,
                    "priority": "high",
                }
            )
        elif rating == "satisfactory":
            _add(
                {
                    "type": "optimize",
                    "channel": p["channel"],
                    "action": f"Optimize {p['channel']}",
                    "reason": f"Above target CPL ({_cpl(p)})" if leads else f"Below target ROI ({_pct(roi)})",
                    "estimated_impact": round_half_up(float(p.get("revenue") or 0) * 0.05),
                    "confidence_score": 70,
                    "priority": "medium",
                }
            )
        elif rating in ("poor", "failing"):
            _add(
                {
                    "type": "stop",
                    "channel": p["channel"],
                    "action": f"Cut {p['channel']} budget",
                    "reason": f"High cost per lead ({_cpl(p)} CPL)" if leads else f"Low/negative ROI ({_pct(roi)})",
                    "estimated_impact": float(p.get("spend") or 0),
                    "confidence_score": 85,
                    "priority": "high" if rating == "failing" else "medium",
                }
            )
        if len(recs) >= MAX_RULE_RECOMMENDATIONS:
            break

    for s in synergies or []:
        if len(recs) >= MAX_RULE_RECOMMENDATIONS:
            break
        score = float(s["synergy_score"])
        confidence = s.get("confidence") or 0
        if score >= 2.0 and confidence >= 50:
            _add(
                {
                    "type": "scale",
                    "channel": f"{s['channel_a']} + {s['channel_b']}",
                    "action": f"Combine {s['channel_a']} & {s['channel_b']}",
                    "reason": f"Synergy {score}x across {s['frequency']} conversions",
                    "estimated_impact": round_half_up(score * (s.get("frequency") or 1)),
                    "confidence_score": confidence or 50,
                    "priority": "high" if score >= 3 else "medium",
                }
            )

    return recs


def generate_recommendations(
    user_id: str,
    performance: list[dict[str, Any]],
    synergies: list[dict[str, Any]],
    roles: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Fallback rules plus a stop recommendation for isolated, losing channels."""
    recs = generate_fallback_recommendations(user_id, performance, synergies)
    stopped = {r["channel"] for r in recs if r["type"] == "stop"}
    perf_by_channel = {p["channel"]: p for p in performance}

    for role in roles:
        ch = role["channel"]
        perf = perf_by_channel.get(ch)
        if role["primary_role"] != "isolated" or perf is None or ch in stopped:
            continue
        if perf["performance_rating"] not in ("poor", "failing"):
            continue
        total = role["solo_conversions"] + role["assisted_conversions"]
        solo_pct = int(round_half_up(role["solo_conversions"] / total * 100)) if total else 0
        if "cpl" in perf:
            cost = f"high cost per lead ({_cpl(perf)} CPL)"
        else:
            cost = f"losing money ({_pct(float(perf['roi']))} ROI)"
        recs.append(
            {
                "user_id": user_id,
                "id": f"rec-fallback-{len(recs) + 1}",
                "type": "stop",
                "channel": ch,
                "action": f"Pause {ch} and reallocate budget",
                "reason": f"Isolated ({solo_pct}% alone), {cost}",
                "estimated_impact": float(perf.get("spend") or 0),
                "confidence_score": 95,
                "priority": "high",
                "is_active": True,
            }
        )
    return recs


def build_recommendation_prompt(
    performance: list[dict[str, Any]],
    synergies: list[dict[str, Any]],
    roles: list[dict[str, Any]],
    patterns: list[dict[str, Any]],
    rule_based: list[dict[str, Any]],
) -> str:
    def _block(value: Any) -> str:
        return json.dumps(json_safe(value), indent=2, ensure_ascii=False)

    return f"""You are a senior marketing analytics consultant advising a Philippine business (₱ PHP currency).

## Input Data

### Channel Performance
{_block(performance)}

### Channel Synergies
{_block(synergies)}

### Channel Roles
{_block(roles)}

### Top Journey Patterns
{_block(patterns[:15])}

### Rule-Based Recommendations
{_block(rule_based)}

## Task

1. Enhance each rule-based recommendation:
   - Rewrite "action" with specific data references (keep under 120 characters)
   - Rewrite "reason" with concrete metrics from the data
   - Add "ai_explanation": 2-3 sentence narrative context (under 300 characters)
   - Add "after_implementation": projected outcome description
   - Add "why_it_matters": 2-4 data-grounded bullet points

2. Identify 0-2 additional recommendations the rules missed, based on patterns in the data.

## Constraints
- Do NOT invent data, only reference numbers from the input
- Use ₱ symbol for currency values

## Output Format
Return strictly valid JSON matching this schema:
{{
  "enhanced": [
    {{"id": "<rule-based rec id>", "action": "...", "reason": "...", "ai_explanation": "...",
      "after_implementation": "...", "why_it_matters": ["..."]}}
  ],
  "additional": [
    {{"type": "scale" | "optimize" | "stop", "channel": "...", "action": "...", "reason": "...",
      "ai_explanation": "...", "after_implementation": "...", "why_it_matters": ["..."],
      "estimated_impact": <number>, "confidence": <number 0-100>, "priority": "high" | "medium" | "low"}}
  ]
}}"""


class EnhancedRecommendation(BaseModel):
    id: str
    action: str
    reason: str
    ai_explanation: str
    after_implementation: str
    why_it_matters: list[str]


class AdditionalRecommendation(BaseModel):
    type: Literal["scale", "optimize", "stop"]
    channel: str
    action: str
    reason: str
    ai_explanation: str
    after_implementation: str
    why_it_matters: list[str]
    estimated_impact: float
    confidence: float
    priority: Literal["high", "medium", "low"]


class GeminiRecommendations(BaseModel):
    enhanced: list[EnhancedRecommendation]
    additional: list[AdditionalRecommendation]


def merge_results(rule_based: list[dict[str, Any]], response: GeminiRecommendations) -> list[dict[str, Any]]:
    enhanced = {e.id: e for e in response.enhanced}
    merged: list[dict[str, Any]] = []
    for rec in rule_based:
        ai = enhanced.get(rec["id"])
        if ai is None:
            merged.append(dict(rec))
            continue
        merged.append(
            {
                **rec,
                "action": ai.action or rec["action"],
                "reason": ai.reason or rec["reason"],
                "ai_explanation": ai.ai_explanation,
                "after_implementation": ai.after_implementation,
                "why_it_matters": list(ai.why_it_matters),
                "ai_enhanced": True,
            }
        )

    for i, add in enumerate(response.additional, start=1):
        merged.append(
            {
                "id": f"rec-ai-{i}",
                "type": add.type,
                "channel": add.channel,
                "action": add.action,
                "reason": add.reason,
                "estimated_impact": add.estimated_impact,
                "confidence_score": add.confidence,
                "priority": add.priority,
                "ai_explanation": add.ai_explanation,
                "after_implementation": add.after_implementation,
                "why_it_matters": list(add.why_it_matters),
                "ai_enhanced": True,
                "is_active": True,
            }
        )
    return merged


class RecommendationCache:
    """In-process TTL cache keyed by user, date range and business type."""

    def __init__(self, ttl_sec: float = CACHE_TTL_SEC, clock: Callable[[], float] = time.monotonic):
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._entries: dict[str, tuple[float, list[dict[str, Any]]]] = {}

    @staticmethod
    def key(user_id: str, date_range: DateRange, business_type: BusinessType = "sales") -> str:
        return f"{user_id}:{date_range.cache_key()}:{business_type}"

    def get(self, key: str) -> list[dict[str, Any]] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, data = entry
        if self._clock() > expires_at:
            del self._entries[key]
            return None
        return data

    def set(self, key: str, data: list[dict[str, Any]]) -> None:
        self._entries[key] = (self._clock() + self.ttl_sec, data)

    def clear(self) -> None:
        self._entries.clear()


_cache = RecommendationCache()


class GeminiClient:
    def __init__(self, api_key: str, model: str, *, transport: httpx.AsyncBaseTransport | None = None):
        self.api_key = api_key
        self.model = model
        self.transport = transport

    async def generate_json(self, prompt: str) -> Any:
        url = f"{GEMINI_API_BASE}/models/{self.model}:generateContent"
        body = {"contents": [{"role": "user", "parts": [{"text": prompt}]}], "generationConfig": GENERATION_CONFIG}
        async with httpx.AsyncClient(timeout=60.0, transport=self.transport) as client:
            data = await post_json(client, url, params={"key": self.api_key}, json=body)

        candidates = data.get("candidates") or []
        if not candidates:
            raise RuntimeError("gemini: empty response")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(str(p.get("text") or "") for p in parts)
        return json.loads(text)


def gemini_client(settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> GeminiClient | None:
    key = settings.gemini_api_key
    if not key or key == GEMINI_PLACEHOLDER_KEY:
        return None
    return GeminiClient(key, settings.gemini_model, transport=transport)


async def enhance_recommendations_with_ai(
    repo: Repo,
    settings: Settings,
    user_id: str,
    date_range: DateRange,
    business_type: BusinessType = "sales",
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    cache: RecommendationCache | None = None,
) -> list[dict[str, Any]]:
    cache = cache if cache is not None else _cache

    journeys = get_conversion_journeys(repo, user_id, date_range)
    performance = get_channel_performance(repo, user_id, date_range, business_type)
    synergies = analyze_channel_synergies(repo, user_id, date_range, business_type, journeys=journeys)
    roles = channel_roles(journeys)
    patterns = journey_patterns(journeys, business_type)

    rule_based = generate_recommendations(user_id, performance, synergies, roles)
    if not rule_based:
        return []

    key = RecommendationCache.key(user_id, date_range, business_type)
    cached = cache.get(key)
    if cached is not None:
        logger.info("returning cached AI recommendations for %s", user_id)
        return cached

    client = gemini_client(settings, transport=transport)
    if client is None:
        logger.info("no Gemini API key, returning rule-based recommendations")
        return rule_based

    try:
        prompt = build_recommendation_prompt(performance, synergies, roles, patterns, rule_based)
        parsed = await client.generate_json(prompt)
        response = GeminiRecommendations.model_validate(parsed)
    except ValidationError:
        logger.warning("Gemini response failed schema validation, falling back")
        return rule_based
    except Exception as e:  # noqa: BLE001
        logger.error("Gemini API call failed, falling back to rule-based: %s", e)
        return rule_based

    merged = merge_results(rule_based, response)
    cache.set(key, merged)
    logger.info("AI enhancement complete enhanced=%d additional=%d", len(response.enhanced), len(response.additional))
    return merged


async def analyze_and_generate_recommendations(
    repo: Repo,
    settings: Settings,
    user_id: str,
    date_range: DateRange,
    business_type: BusinessType = "sales",
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[dict[str, Any]]:
    """Generate recommendations and replace the user's active set."""
    recs = await enhance_recommendations_with_ai(
        repo, settings, user_id, date_range, business_type, transport=transport
    )
    expires_at = (now_utc() + timedelta(days=RECOMMENDATION_TTL_DAYS)).replace(microsecond=0).isoformat()
    stored = repo.replace_active_recommendations(
        user_id=user_id,
        recommendations=[json_safe(r) for r in recs],
        expires_at=expires_at,
    )
    logger.info("stored %d recommendations for %s", stored, user_id)
    return recs
