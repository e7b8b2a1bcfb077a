from __future__ import annotations

import asyncio
import json
import logging

import typer

from marketing.batch import run_batch_attribution
from marketing.config import Settings
from marketing.db import AnalyticsDB
from marketing.jobs import build_scheduler
from marketing.recommendations import analyze_and_generate_recommendations
from marketing.registry import PLATFORMS, build_connector
from marketing.repo import Repo
from marketing.sync import sync_historical_data
from marketing.synergy import DateRange
from marketing.web.app import run_web
from marketing.worker import run_tick, run_worker

app = typer.Typer(no_args_is_help=True)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging.")) -> None:
    settings = Settings.load()
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _repo(settings: Settings) -> Repo:
    AnalyticsDB(settings.db_path).init()
    return Repo(settings.db_path, token_key=settings.token_encryption_key)


def _require_valid(settings: Settings) -> None:
    missing = settings.validate()
    if missing:
        typer.echo(f"ERROR: missing required settings: {', '.join(missing)}")
        raise typer.Exit(code=2)


def _require_platform(platform: str) -> str:
    p = (platform or "").strip().lower()
    if p not in PLATFORMS:
        typer.echo(f"ERROR: platform must be one of: {'|'.join(PLATFORMS)}")
        raise typer.Exit(code=2)
    return p


@app.command("db")
def db_cmd(
    action: str = typer.Argument(..., help="init|seed"),
) -> None:
    settings = Settings.load()
    db = AnalyticsDB(settings.db_path)
    if action == "init":
        db.init()
        typer.echo(f"OK db init: {settings.db_path}")
        return
    if action == "seed":
        db.init()
        db.seed_default_user(settings.default_user_id, settings.default_user_email)
        typer.echo(f"OK db seeded default user {settings.default_user_id}")
        return
    raise typer.BadParameter("action must be one of: init, seed")


@app.command("web")
def web_cmd() -> None:
    settings = Settings.load()
    _require_valid(settings)
    run_web(settings)


@app.command("worker")
def worker_cmd() -> None:
    settings = Settings.load()
    _require_valid(settings)
    run_worker(settings)


@app.command("tick")
def tick_cmd() -> None:
    settings = Settings.load()
    typer.echo(json_dumps(run_tick(settings)))


@app.command("connect")
def connect_cmd(
    platform: str = typer.Argument(..., help="|".join(PLATFORMS)),
    token: str = typer.Option(..., help="Access token or API key."),
    account_id: str | None = typer.Option(None, help="Platform account id (ad account, property, customer id)."),
    refresh_token: str | None = typer.Option(None),
    user_id: str | None = typer.Option(None, help="Defaults to DEFAULT_USER_ID."),
    fixture_dir: str | None = typer.Option(None, help="Read raw_events.json from this dir instead of the API."),
) -> None:
    """Store a platform connection after a health check."""
    settings = Settings.load()
    repo = _repo(settings)
    p = _require_platform(platform)
    uid = user_id or settings.default_user_id
    repo.ensure_user(user_id=uid, email=settings.default_user_email if uid == settings.default_user_id else f"{uid}@localhost")

    config = {"mode": "fixture", "fixture_dir": fixture_dir} if fixture_dir else None
    connector = build_connector(
        p,
        user_id=uid,
        access_token=token,
        account_id=account_id,
        refresh_token=refresh_token,
        config=config,
        demo_mode=settings.demo_mode,
        paypal_env=settings.paypal_env,
    )
    ok, err = asyncio.run(connector.health_check())
    if not ok:
        typer.echo(f"ERROR: health check failed: {err}")
        raise typer.Exit(code=2)

    repo.upsert_connection(
        user_id=uid,
        platform=p,
        status="connected",
        access_token=token,
        refresh_token=refresh_token,
        platform_account_id=account_id,
        metadata={"config": config} if config else None,
    )
    typer.echo(f"OK connected {p} for {uid}")


@app.command("sync")
def sync_cmd(
    platform: str = typer.Argument(..., help="|".join(PLATFORMS)),
    days: int = typer.Option(90, help="Days of history to fetch."),
    user_id: str | None = typer.Option(None, help="Defaults to DEFAULT_USER_ID."),
) -> None:
    settings = Settings.load()
    repo = _repo(settings)
    p = _require_platform(platform)
    if days <= 0:
        typer.echo("ERROR: days must be > 0")
        raise typer.Exit(code=2)
    try:
        n = asyncio.run(sync_historical_data(repo, settings, user_id or settings.default_user_id, p, days_back=days))
    except Exception as e:  # noqa: BLE001
        typer.echo(f"ERROR: {type(e).__name__}: {e}")
        raise typer.Exit(code=2) from e
    typer.echo(f"OK {p}: {n} events")


@app.command("attribute")
def attribute_cmd(
    days: int = typer.Option(7, help="Attribute payments from the last N days."),
    user_id: str | None = typer.Option(None, help="Defaults to DEFAULT_USER_ID."),
) -> None:
    settings = Settings.load()
    repo = _repo(settings)
    rng = DateRange.last_days(days)

    def _progress(p) -> None:
        typer.echo(f"batch {p.current_batch}/{p.total_batches}: {p.successful} ok, {p.failed} failed")

    result = asyncio.run(
        run_batch_attribution(repo, user_id or settings.default_user_id, rng.start, rng.end, on_progress=_progress)
    )
    typer.echo(
        json_dumps(
            {
                "success": result.success,
                "already_attributed": result.already_attributed,
                "progress": result.progress.to_dict(),
                "errors": result.errors,
            }
        )
    )
    if not result.success:
        raise typer.Exit(code=1)


@app.command("recommend")
def recommend_cmd(
    days: int = typer.Option(30, help="Analysis window in days."),
    business_type: str = typer.Option("sales", help="sales|leads"),
    user_id: str | None = typer.Option(None, help="Defaults to DEFAULT_USER_ID."),
) -> None:
    settings = Settings.load()
    repo = _repo(settings)
    bt = business_type.strip().lower()
    if bt not in {"sales", "leads"}:
        typer.echo("ERROR: business_type must be one of: sales, leads")
        raise typer.Exit(code=2)
    recs = asyncio.run(
        analyze_and_generate_recommendations(
            repo, settings, user_id or settings.default_user_id, DateRange.last_days(days), bt
        )
    )
    for r in recs:
        typer.echo(f"[{r['priority']}] {r['type']} {r['channel']}: {r['action']} ({r['reason']})")
    typer.echo(f"OK {len(recs)} recommendations")


@app.command("job")
def job_cmd(
    name: str = typer.Argument(..., help="daily-attribution|ai-recommendations"),
) -> None:
    """Run a scheduled job once, now."""
    settings = Settings.load()
    scheduler = build_scheduler(settings, repo=_repo(settings))
    if not asyncio.run(scheduler.trigger_job(name)):
        typer.echo(f"ERROR: unknown job {name}; choose from {', '.join(scheduler.get_scheduled_job_names())}")
        raise typer.Exit(code=2)
    status = scheduler.get_job_status(name)
    typer.echo(json_dumps(status.to_dict() if status else {}))
    if status and status.last_status == "failed":
        raise typer.Exit(code=1)


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=True, indent=2, default=str)
