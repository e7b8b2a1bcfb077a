from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Literal

from fastapi import BackgroundTasks, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from pydantic import BaseModel, Field, ValidationError, field_validator
import uvicorn

from marketing.attribution import attribution_stats
from marketing.batch import run_batch_attribution
from marketing.config import Settings
from marketing.connectors.base import ConnectorContext
from marketing.connectors.stripe import StripeConnector
from marketing.db import AnalyticsDB
from marketing.jobs import build_scheduler
from marketing.links import build_redirect_url, create_short_link, resolve_short_link
from marketing.pixel import PixelEvent, RateLimiter, client_ip, get_or_create_pixel, store_event
from marketing.recommendations import analyze_and_generate_recommendations
from marketing.registry import PLATFORMS, build_connector
from marketing.repo import Repo
from marketing.sync import sync_historical_data
from marketing.synergy import (
    BusinessType,
    DateRange,
    analyze_channel_synergies,
    generate_channel_insights,
    get_campaign_data,
    get_channel_performance,
    get_conversion_journeys,
    identify_channel_roles,
    journey_patterns,
)
from marketing.util import iso_utc, json_safe, now_utc, now_utc_iso, parse_ts

logger = logging.getLogger(__name__)

ANALYTICS_DEFAULT_DAYS = 30
ATTRIBUTION_DEFAULT_DAYS = 7


def _error(message: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse({"success": False, "error": message, **extra}, status_code=status_code)


def _ok(data: Any = None, **extra: Any) -> JSONResponse:
    body: dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = json_safe(data)
    body.update(json_safe(extra))
    return JSONResponse(body)


def _error_details(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg"), "type": e.get("type")} for e in errors]


class InvalidDateError(ValueError):
    def __init__(self, field: str, value: str):
        super().__init__(f"{field} is not an ISO-8601 date: {value!r}")
        self.field = field


def _parse_date(value: str, field: str) -> datetime:
    try:
        return parse_ts(value)
    except ValueError as e:
        raise InvalidDateError(field, value) from e


def _date_range(start: str | None, end: str | None, *, default_days: int) -> DateRange:
    end_dt = _parse_date(end, "end") if end else now_utc()
    start_dt = _parse_date(start, "start") if start else end_dt - timedelta(days=default_days)
    return DateRange(start=start_dt, end=end_dt)


class ConnectRequest(BaseModel):
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    account_id: str | None = None
    token_expires_at: str | None = None
    config: dict[str, Any] | None = None


class ApiKeyRequest(BaseModel):
    api_key: str = Field(default="", alias="apiKey")

    model_config = {"populate_by_name": True}


class AttributionRunRequest(BaseModel):
    start: str | None = None
    end: str | None = None


class CreateLinkRequest(BaseModel):
    original_url: str
    metadata: dict[str, Any] | None = None
    expires_in_days: int | None = Field(default=None, ge=1)

    @field_validator("original_url")
    @classmethod
    def _url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("original_url must be an http(s) URL")
        return v


def create_app(settings: Settings) -> FastAPI:
    AnalyticsDB(settings.db_path).init()
    repo = Repo(settings.db_path, token_key=settings.token_encryption_key)
    repo.ensure_user(user_id=settings.default_user_id, email=settings.default_user_email)

    app = FastAPI(title="Marketing Intelligence")
    app.state.rate_limiter = RateLimiter(limit=100, window_sec=60)
    app.state.scheduler = build_scheduler(settings, repo=repo)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Auth is out of scope; every request acts as the development user.
    user_id = settings.default_user_id

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request: Request, exc: RequestValidationError):
        return _error("Invalid input", 400, details=_error_details(list(exc.errors())))

    @app.exception_handler(InvalidDateError)
    async def _invalid_date(_request: Request, exc: InvalidDateError):
        return _error("Invalid date", 400, details=[{"loc": [exc.field], "msg": str(exc), "type": "value_error"}])

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return _error(str(exc) or "Internal server error", 500)

    async def _background_sync(platform: str) -> None:
        try:
            await sync_historical_data(repo, settings, user_id, platform)
        except Exception as e:  # noqa: BLE001
            logger.error("background sync failed for %s: %s", platform, e)

    @app.get("/health")
    def health():
        return {"status": "ok", "timestamp": now_utc_iso()}

    # ------------------------------------------------------------------ #
    # integrations
    # ------------------------------------------------------------------ #

    @app.get("/api/integrations")
    def list_integrations():
        by_platform = {c["platform"]: c for c in repo.list_connections(user_id=user_id)}
        out: list[dict[str, Any]] = []
        for platform in PLATFORMS:
            c = by_platform.get(platform)
            if c is None:
                out.append({"platform": platform, "status": "disconnected"})
                continue
            out.append(
                {
                    "platform": platform,
                    "status": c["status"],
                    "connected_at": c.get("connected_at"),
                    "last_synced_at": c.get("last_synced_at"),
                    "platform_account_id": c.get("platform_account_id"),
                    "last_error": c.get("last_error"),
                }
            )
        return _ok(out)

    @app.post("/api/integrations/{platform}/connect")
    async def connect_platform(platform: str, body: ConnectRequest, background: BackgroundTasks):
        if platform not in PLATFORMS:
            return _error(f"Unsupported platform: {platform}", 400)

        connector = build_connector(
            platform,
            user_id=user_id,
            access_token=body.access_token,
            account_id=body.account_id,
            refresh_token=body.refresh_token,
            config=body.config,
            demo_mode=settings.demo_mode,
            paypal_env=settings.paypal_env,
        )
        ok, err = await connector.health_check()
        if not ok:
            return _error(f"Connection check failed: {err}", 400)

        await run_in_threadpool(
            lambda: repo.upsert_connection(
                user_id=user_id,
                platform=platform,
                status="connected",
                access_token=body.access_token,
                refresh_token=body.refresh_token,
                token_expires_at=body.token_expires_at,
                platform_account_id=body.account_id,
                metadata={"config": body.config} if body.config else None,
            )
        )
        logger.info("%s connected for user %s", platform, user_id)
        background.add_task(_background_sync, platform)
        return _ok(message=f"{platform} connected. Syncing historical data...")

    @app.post("/api/integrations/{platform}/api-key")
    async def connect_api_key(platform: str, body: ApiKeyRequest, background: BackgroundTasks):
        if not body.api_key:
            return _error("API key is required", 400)
        if platform != "stripe":
            return _error(f"API key connection is not supported for {platform}", 400)

        if not settings.demo_mode:
            ctx = ConnectorContext(user_id=user_id, platform=platform, access_token=body.api_key)
            if not await StripeConnector(ctx).validate_api_key():
                return _error("Invalid Stripe API key", 400)

        await run_in_threadpool(
            lambda: repo.upsert_connection(
                user_id=user_id, platform=platform, status="connected", access_token=body.api_key
            )
        )
        logger.info("stripe connected for user %s", user_id)
        background.add_task(_background_sync, platform)
        return _ok(message="Stripe connected successfully. Syncing historical data...")

    @app.delete("/api/integrations/{platform}")
    def disconnect_platform(platform: str):
        repo.delete_connection(user_id=user_id, platform=platform)
        return _ok(message=f"Disconnected from {platform}")

    # ------------------------------------------------------------------ #
    # sync
    # ------------------------------------------------------------------ #

    @app.get("/api/sync/status")
    def sync_status():
        return _ok(
            [
                {
                    "platform": c["platform"],
                    "status": c["status"],
                    "last_synced_at": c.get("last_synced_at"),
                    "connected_at": c.get("connected_at"),
                    "last_error": c.get("last_error"),
                }
                for c in repo.list_connections(user_id=user_id)
            ]
        )

    @app.post("/api/sync/{platform}")
    def trigger_sync(platform: str, background: BackgroundTasks):
        connection = repo.get_connection(user_id=user_id, platform=platform)
        if not connection or connection["status"] == "disconnected":
            return _error(f"No active connection for {platform}. Please connect first.", 400)
        if connection["status"] == "syncing":
            return _error(f"Sync is already in progress for {platform}.", 400)
        background.add_task(_background_sync, platform)
        return _ok(message=f"Sync started for {platform}")

    # ------------------------------------------------------------------ #
    # pixel
    # ------------------------------------------------------------------ #

    @app.post("/api/pixel/generate")
    def pixel_generate():
        return _ok({"pixel_id": get_or_create_pixel(repo, user_id)})

    @app.post("/api/pixel/track")
    async def pixel_track(request: Request):
        limiter: RateLimiter = request.app.state.rate_limiter
        ip = client_ip(request.headers, request.client.host if request.client else None)
        if not limiter.allow(ip or "unknown"):
            return _error("Too many requests, please try again later", 429)

        try:
            payload = await request.json()
        except ValueError:
            return _error("Invalid event data", 400, details=[])
        try:
            event = PixelEvent.model_validate(payload)
        except ValidationError as e:
            return _error("Invalid event data", 400, details=_error_details(e.errors()))

        event_id = await run_in_threadpool(
            store_event, repo, event, user_agent=request.headers.get("user-agent"), ip_address=ip
        )
        return JSONResponse({"success": True, "event_id": event_id})

    # ------------------------------------------------------------------ #
    # attribution
    # ------------------------------------------------------------------ #

    @app.post("/api/attribution/run")
    async def attribution_run(body: AttributionRunRequest | None = None):
        body = body or AttributionRunRequest()
        rng = _date_range(body.start, body.end, default_days=ATTRIBUTION_DEFAULT_DAYS)
        logger.info("manual attribution user=%s %s..%s", user_id, rng.start_iso, rng.end_iso)
        result = await run_batch_attribution(repo, user_id, rng.start, rng.end)
        stats = {
            "transactions_found": result.progress.total + result.already_attributed,
            "already_attributed": result.already_attributed,
            "newly_attributed": result.progress.successful,
            "failed": result.progress.failed,
        }
        message = "Attribution completed" if stats["transactions_found"] else "No transactions found in date range"
        return _ok(message=message, stats=stats, errors=result.errors)

    @app.get("/api/attribution/status")
    def attribution_status():
        return _ok(attribution_stats(repo, user_id))

    @app.get("/api/attribution/verified-conversions")
    def verified_conversions(
        confidence: Literal["high", "medium", "low"] | None = None,
        channel: str | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
    ):
        start = iso_utc(_parse_date(start_date, "start_date")) if start_date else None
        end = iso_utc(_parse_date(end_date, "end_date")) if end_date else None
        filters = {"user_id": user_id, "start": start, "end": end, "confidence_level": confidence, "channel": channel}
        rows = repo.list_verified_conversions(**filters, order="DESC", limit=limit, offset=offset)
        total = repo.count_verified_conversions(**filters)
        return _ok(rows, pagination={"total": total, "limit": limit, "offset": offset})

    # ------------------------------------------------------------------ #
    # analytics
    # ------------------------------------------------------------------ #

    @app.get("/api/analytics/performance")
    def analytics_performance(start: str | None = None, end: str | None = None, business_type: BusinessType = "sales"):
        rng = _date_range(start, end, default_days=ANALYTICS_DEFAULT_DAYS)
        return _ok(get_channel_performance(repo, user_id, rng, business_type))

    @app.get("/api/analytics/synergies")
    def analytics_synergies(start: str | None = None, end: str | None = None, business_type: BusinessType = "sales"):
        rng = _date_range(start, end, default_days=ANALYTICS_DEFAULT_DAYS)
        return _ok(analyze_channel_synergies(repo, user_id, rng, business_type))

    @app.get("/api/analytics/journeys")
    def analytics_journeys(start: str | None = None, end: str | None = None, business_type: BusinessType = "sales"):
        rng = _date_range(start, end, default_days=ANALYTICS_DEFAULT_DAYS)
        journeys = get_conversion_journeys(repo, user_id, rng)
        return _ok(journey_patterns(journeys, business_type), total_journeys=len(journeys))

    @app.get("/api/analytics/roles")
    def analytics_roles(start: str | None = None, end: str | None = None):
        rng = _date_range(start, end, default_days=ANALYTICS_DEFAULT_DAYS)
        return _ok(identify_channel_roles(repo, user_id, rng))

    @app.get("/api/analytics/campaigns")
    def analytics_campaigns(start: str | None = None, end: str | None = None):
        rng = _date_range(start, end, default_days=ANALYTICS_DEFAULT_DAYS)
        return _ok(get_campaign_data(repo, user_id, rng))

    @app.get("/api/analytics/insights")
    def analytics_insights(start: str | None = None, end: str | None = None, business_type: BusinessType = "sales"):
        rng = _date_range(start, end, default_days=ANALYTICS_DEFAULT_DAYS)
        return _ok(generate_channel_insights(repo, user_id, rng, business_type))

    @app.get("/api/analytics/recommendations")
    def analytics_recommendations():
        recs = repo.list_active_recommendations(user_id=user_id)
        total_impact = sum(float(r.get("estimated_impact") or 0) for r in recs)
        return _ok(recs, total_impact=total_impact)

    @app.post("/api/analytics/recommendations/generate")
    async def analytics_generate(start: str | None = None, end: str | None = None, business_type: BusinessType = "sales"):
        rng = _date_range(start, end, default_days=ANALYTICS_DEFAULT_DAYS)
        logger.info("manual recommendation generation user=%s", user_id)
        recs = await analyze_and_generate_recommendations(repo, settings, user_id, rng, business_type)
        performance = get_channel_performance(repo, user_id, rng, business_type)
        synergies = analyze_channel_synergies(repo, user_id, rng, business_type)
        return _ok(
            {
                "recommendations": recs,
                "channel_performance": performance,
                "synergies": synergies,
                "total_estimated_impact": sum(float(r.get("estimated_impact") or 0) for r in recs),
                "analysis_timestamp": now_utc_iso(),
            }
        )

    # ------------------------------------------------------------------ #
    # short links
    # ------------------------------------------------------------------ #

    @app.post("/api/links")
    def create_link(body: CreateLinkRequest):
        result = create_short_link(
            repo,
            original_url=body.original_url,
            backend_url=settings.backend_url,
            metadata=body.metadata,
            expires_in_days=body.expires_in_days,
        )
        return _ok(result)

    @app.get("/s/{code}")
    def redirect_link(code: str):
        link = resolve_short_link(repo, code)
        if link is None:
            return PlainTextResponse("Link not found or expired", status_code=404)
        return RedirectResponse(url=build_redirect_url(link["original_url"], link["metadata"]), status_code=302)

    # ------------------------------------------------------------------ #
    # jobs
    # ------------------------------------------------------------------ #

    @app.get("/api/jobs")
    def list_jobs(request: Request):
        return _ok([s.to_dict() for s in request.app.state.scheduler.get_all_job_statuses()])

    @app.post("/api/jobs/{name}/trigger")
    async def trigger_job(name: str, request: Request):
        scheduler = request.app.state.scheduler
        if not await scheduler.trigger_job(name):
            return _error(f"Job not found: {name}", 404)
        status = scheduler.get_job_status(name)
        return _ok(status.to_dict() if status else None)

    return app


def run_web(settings: Settings) -> None:
    app = create_app(settings)
    uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level="info")
