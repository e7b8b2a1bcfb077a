from __future__ import annotations

from pathlib import Path
from unittest.mock import patch
from urllib.parse import parse_qsl, urlsplit

import pytest

from marketing.db import AnalyticsDB
from marketing.links import ALPHABET, CODE_LENGTH, build_redirect_url, create_short_link, generate_code, resolve_short_link
from marketing.repo import Repo


def _repo(tmp_path: Path) -> Repo:
    db_path = tmp_path / "mi.sqlite3"
    AnalyticsDB(db_path).init()
    return Repo(db_path)


def test_generate_code_uses_unambiguous_alphabet() -> None:
    code = generate_code()
    assert len(code) == CODE_LENGTH
    assert all(ch in ALPHABET for ch in code)
    for ch in "0O1Il":
        assert ch not in ALPHABET


def test_create_and_resolve(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    link = create_short_link(
        repo,
        original_url="https://shop.example.com/sale",
        backend_url="http://localhost:3001/",
        metadata={"utm_campaign": "spring"},
    )
    assert link["short_url"] == f"http://localhost:3001/s/{link['code']}"

    resolved = resolve_short_link(repo, link["code"])
    assert resolved == {"original_url": "https://shop.example.com/sale", "metadata": {"utm_campaign": "spring"}}
    resolve_short_link(repo, link["code"])
    assert repo.get_active_short_link(link["code"])["clicks"] == 2

    assert resolve_short_link(repo, "nope42") is None


def test_expired_link_does_not_resolve(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.insert_short_link(code="old123", original_url="https://x.test", metadata=None, expires_at="2000-01-01T00:00:00+00:00")
    assert resolve_short_link(repo, "old123") is None


def test_collisions_retry_then_give_up(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.insert_short_link(code="AAAAAA", original_url="https://x.test", metadata=None, expires_at=None)

    with patch("marketing.links.generate_code", side_effect=["AAAAAA", "BBBBBB"]):
        link = create_short_link(repo, original_url="https://y.test", backend_url="http://b")
    assert link["code"] == "BBBBBB"

    with patch("marketing.links.generate_code", return_value="AAAAAA"):
        with pytest.raises(RuntimeError, match="Failed to generate unique code"):
            create_short_link(repo, original_url="https://y.test", backend_url="http://b")


def test_build_redirect_url() -> None:
    url = build_redirect_url(
        "https://shop.example.com/p?ref=a#top",
        {"utm_medium": "sms", "tags": ["a", "b"], "vip": True, "skip": None, "n": 3},
    )
    parts = urlsplit(url)
    assert parts.path == "/p"
    assert parts.fragment == "top"
    assert parse_qsl(parts.query) == [
        ("ref", "a"),
        ("utm_medium", "sms"),
        ("tags", '["a","b"]'),
        ("vip", "true"),
        ("n", "3"),
        ("utm_source", "shortlink"),
    ]
    assert build_redirect_url("https://shop.example.com", None) == "https://shop.example.com/?utm_source=shortlink"
