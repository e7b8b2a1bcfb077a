from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv


def _truthy(v: str | None) -> bool:
    if v is None:
        return False
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _blank_to_none(v: str | None) -> str | None:
    if v is None:
        return None
    s = v.strip()
    return s or None


@dataclass(frozen=True)
class Settings:
    db_path: Path
    timezone: str
    web_host: str
    web_port: int
    default_user_id: str
    default_user_email: str
    frontend_url: str | None
    pixel_url: str | None
    backend_url: str
    token_encryption_key: str | None
    gemini_api_key: str | None
    gemini_model: str
    paypal_env: str
    demo_mode: bool
    log_level: str = "INFO"
    sync_interval_hours: float = 24.0

    @staticmethod
    def load() -> "Settings":
        load_dotenv()

        db_path = Path(os.getenv("MI_DB_PATH", "./data/marketing.sqlite3"))
        timezone = os.getenv("MI_TIMEZONE", "Asia/Manila").strip() or "Asia/Manila"
        web_host = os.getenv("MI_WEB_HOST", "127.0.0.1")
        web_port = int(os.getenv("MI_WEB_PORT", os.getenv("PORT", "3001")))

        default_user_id = os.getenv("DEFAULT_USER_ID", "default-dev-user").strip() or "default-dev-user"
        default_user_email = os.getenv("DEFAULT_USER_EMAIL", "dev@localhost").strip() or "dev@localhost"

        backend_url = (os.getenv("BACKEND_URL") or f"http://{web_host}:{web_port}").rstrip("/")
        paypal_env = os.getenv("PAYPAL_ENV", "sandbox").strip().lower() or "sandbox"

        return Settings(
            db_path=db_path,
            timezone=timezone,
            web_host=web_host,
            web_port=web_port,
            default_user_id=default_user_id,
            default_user_email=default_user_email,
            frontend_url=_blank_to_none(os.getenv("FRONTEND_URL")),
            pixel_url=_blank_to_none(os.getenv("PIXEL_URL")),
            backend_url=backend_url,
            token_encryption_key=_blank_to_none(os.getenv("TOKEN_ENCRYPTION_KEY")),
            gemini_api_key=_blank_to_none(os.getenv("GEMINI_API_KEY")),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash").strip() or "gemini-2.0-flash",
            paypal_env=paypal_env,
            demo_mode=_truthy(os.getenv("MI_DEMO_MODE", "0")),
            log_level=os.getenv("MI_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            sync_interval_hours=float(os.getenv("MI_SYNC_INTERVAL_HOURS", "24")),
        )

    def validate(self) -> list[str]:
        """Return the names of required settings that are missing."""
        missing: list[str] = []
        if not self.frontend_url:
            missing.append("FRONTEND_URL")
        if not self.pixel_url:
            missing.append("PIXEL_URL")
        return missing
