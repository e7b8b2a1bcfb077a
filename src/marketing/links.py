from __future__ import annotations

import json
import logging
import secrets
from datetime import timedelta
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from marketing.repo import Repo
from marketing.util import now_utc

logger = logging.getLogger(__name__)

# No 0/O, 1/I/l.
ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz"
CODE_LENGTH = 6
MAX_CODE_ATTEMPTS = 5
DEFAULT_EXPIRY_DAYS = 30


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def create_short_link(
    repo: Repo,
    *,
    original_url: str,
    backend_url: str,
    metadata: dict[str, Any] | None = None,
    expires_in_days: int | None = None,
) -> dict[str, str]:
    days = DEFAULT_EXPIRY_DAYS if expires_in_days is None else expires_in_days
    expires_at = (now_utc() + timedelta(days=days)).replace(microsecond=0).isoformat()

    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_code()
        if repo.short_link_exists(code):
            continue
        if repo.insert_short_link(code=code, original_url=original_url, metadata=metadata, expires_at=expires_at):
            logger.info("created short link %s", code)
            return {"code": code, "short_url": f"{backend_url.rstrip('/')}/s/{code}"}

    raise RuntimeError("Failed to generate unique code")


def resolve_short_link(repo: Repo, code: str) -> dict[str, Any] | None:
    """Return the link (original_url, metadata) and count the click; None if missing or expired."""
    link = repo.get_active_short_link(code)
    if link is None:
        return None
    repo.increment_link_clicks(code)
    return {"original_url": link["original_url"], "metadata": link.get("metadata") or {}}


def build_redirect_url(original_url: str, metadata: dict[str, Any] | None) -> str:
    parts = urlsplit(original_url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    for key, value in (metadata or {}).items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            query.append((key, json.dumps(value, separators=(",", ":"))))
        elif isinstance(value, bool):
            query.append((key, "true" if value else "false"))
        else:
            query.append((key, str(value)))
    query.append(("utm_source", "shortlink"))
    return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", urlencode(query), parts.fragment))
