from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any, Iterable

from marketing import crypto
from marketing.util import new_id, now_utc_iso, sha256_hex

# event_data fields that identify a platform record; daily metric rows add their date.
RAW_EVENT_KEY_FIELDS = ("id", "transaction_id", "email_id", "campaign_id", "date", "channel_group", "source", "medium")


def _loads(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


def raw_event_dedup_key(user_id: str, platform: str, event: dict[str, Any]) -> str:
    """Stable identity of a raw event so re-syncing the same record updates it in place."""
    data = event.get("event_data") or {}
    parts = [f"{k}={data[k]}" for k in RAW_EVENT_KEY_FIELDS if data.get(k) not in (None, "")]
    if not parts:
        parts = [str(event["timestamp"]), json.dumps(data, ensure_ascii=True, default=str, sort_keys=True)]
    return sha256_hex("|".join([user_id, platform, str(event["event_type"]), *parts]))


class Repo:
    """
    Repository shared by the worker, web app and CLI.
    Keeps DB access centralized; everything else works with plain dicts.
    """

    def __init__(self, db_path: Path, *, token_key: str | None = None):
        self.db_path = db_path
        self.token_key = token_key

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    # ------------------------------------------------------------------ #
    # users
    # ------------------------------------------------------------------ #

    def ensure_user(self, *, user_id: str, email: str) -> dict[str, Any]:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO users(id, email, pixel_id, created_at, updated_at)
                VALUES(?, ?, NULL, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (user_id, email.strip().lower(), now, now),
            )
            row = conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
            return dict(row)

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
            return dict(row) if row else None

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE lower(email)=?",
                (email.strip().lower(),),
            ).fetchone()
            return dict(row) if row else None

    def get_user_by_pixel(self, pixel_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE pixel_id=?", (pixel_id,)).fetchone()
            return dict(row) if row else None

    def set_user_pixel(self, *, user_id: str, pixel_id: str) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE users SET pixel_id=?, updated_at=? WHERE id=?",
                (pixel_id, now_utc_iso(), user_id),
            )

    def list_users(self, *, with_pixel: bool = False) -> list[dict[str, Any]]:
        sql = "SELECT * FROM users"
        if with_pixel:
            sql += " WHERE pixel_id IS NOT NULL"
        sql += " ORDER BY created_at ASC"
        with self.connect() as conn:
            rows = conn.execute(sql).fetchall()
            return [dict(r) for r in rows]

    # ------------------------------------------------------------------ #
    # platform connections
    # ------------------------------------------------------------------ #

    def _seal(self, token: str | None) -> str | None:
        if not token or not self.token_key:
            return token
        return crypto.encrypt(token, self.token_key)

    def _open(self, token: str | None) -> str | None:
        if not token or not self.token_key or not crypto.looks_encrypted(token):
            return token
        return crypto.decrypt(token, self.token_key)

    def _connection_row(self, row: sqlite3.Row) -> dict[str, Any]:
        d = dict(row)
        d["access_token"] = self._open(d.get("access_token"))
        d["refresh_token"] = self._open(d.get("refresh_token"))
        d["metadata"] = _loads(d.pop("metadata_json", None), {})
        return d

    def upsert_connection(
        self,
        *,
        user_id: str,
        platform: str,
        status: str,
        access_token: str | None = None,
        refresh_token: str | None = None,
        token_expires_at: str | None = None,
        platform_account_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        now = now_utc_iso()
        connected_at = now if status == "connected" else None
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO platform_connections(
                  id, user_id, platform, access_token, refresh_token, token_expires_at,
                  platform_account_id, status, connected_at, metadata_json, created_at, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, platform) DO UPDATE SET
                  access_token=excluded.access_token,
                  refresh_token=excluded.refresh_token,
                  token_expires_at=excluded.token_expires_at,
                  platform_account_id=excluded.platform_account_id,
                  status=excluded.status,
                  connected_at=COALESCE(excluded.connected_at, platform_connections.connected_at),
                  last_error=NULL,
                  metadata_json=excluded.metadata_json,
                  updated_at=excluded.updated_at
                """,
                (
                    new_id("conn"),
                    user_id,
                    platform,
                    self._seal(access_token),
                    self._seal(refresh_token),
                    token_expires_at,
                    platform_account_id,
                    status,
                    connected_at,
                    _dumps(metadata or {}),
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM platform_connections WHERE user_id=? AND platform=?",
                (user_id, platform),
            ).fetchone()
            return self._connection_row(row)

    def get_connection(self, *, user_id: str, platform: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM platform_connections WHERE user_id=? AND platform=?",
                (user_id, platform),
            ).fetchone()
            return self._connection_row(row) if row else None

    def list_connections(
        self, *, user_id: str | None = None, status: str | None = None
    ) -> list[dict[str, Any]]:
        where: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            where.append("user_id=?")
            params.append(user_id)
        if status is not None:
            where.append("status=?")
            params.append(status)
        sql = "SELECT * FROM platform_connections"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY platform ASC"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [self._connection_row(r) for r in rows]

    def set_connection_status(
        self,
        *,
        user_id: str,
        platform: str,
        status: str,
        error: str | None = None,
        synced: bool = False,
    ) -> None:
        now = now_utc_iso()
        sets = ["status=?", "last_error=?", "updated_at=?"]
        params: list[Any] = [status, error, now]
        if synced:
            sets.append("last_synced_at=?")
            params.append(now)
        params.extend([user_id, platform])
        with self.connect() as conn:
            conn.execute(
                f"UPDATE platform_connections SET {', '.join(sets)} WHERE user_id=? AND platform=?",
                params,
            )

    def delete_connection(self, *, user_id: str, platform: str) -> bool:
        with self.connect() as conn:
            cur = conn.execute(
                "DELETE FROM platform_connections WHERE user_id=? AND platform=?",
                (user_id, platform),
            )
            return cur.rowcount > 0

    # ------------------------------------------------------------------ #
    # raw platform events
    # ------------------------------------------------------------------ #

    def insert_raw_events(self, *, user_id: str, platform: str, events: Iterable[dict[str, Any]]) -> int:
        now = now_utc_iso()
        rows = [
            (
                user_id,
                platform,
                str(e["event_type"]),
                _dumps(e.get("event_data") or {}),
                str(e["timestamp"]),
                now,
                raw_event_dedup_key(user_id, platform, e),
            )
            for e in events
        ]
        if not rows:
            return 0
        with self.connect() as conn:
            conn.executemany(
                """
                INSERT INTO raw_events(user_id, platform, event_type, event_data_json, timestamp, created_at, dedup_key)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(dedup_key) DO UPDATE SET
                  event_data_json=excluded.event_data_json,
                  timestamp=excluded.timestamp
                """,
                rows,
            )
        return len(rows)

    def list_raw_events(
        self,
        *,
        user_id: str | None = None,
        platforms: Iterable[str] | None = None,
        event_types: Iterable[str] | None = None,
        start: str | None = None,
        end: str | None = None,
        order: str = "ASC",
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        where: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            where.append("user_id=?")
            params.append(user_id)
        for col, values in (("platform", platforms), ("event_type", event_types)):
            if values is None:
                continue
            vals = list(values)
            if not vals:
                return []
            where.append(f"{col} IN ({','.join('?' for _ in vals)})")
            params.extend(vals)
        if start is not None:
            where.append("timestamp >= ?")
            params.append(start)
        if end is not None:
            where.append("timestamp <= ?")
            params.append(end)

        sql = "SELECT * FROM raw_events"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY timestamp " + ("DESC" if order.upper() == "DESC" else "ASC") + ", id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        out: list[dict[str, Any]] = []
        for r in rows:
            d = dict(r)
            d["event_data"] = _loads(d.pop("event_data_json", None), {})
            out.append(d)
        return out

    def count_raw_events(self, *, user_id: str, platform: str | None = None) -> int:
        sql = "SELECT COUNT(*) AS n FROM raw_events WHERE user_id=?"
        params: list[Any] = [user_id]
        if platform is not None:
            sql += " AND platform=?"
            params.append(platform)
        with self.connect() as conn:
            row = conn.execute(sql, params).fetchone()
            return int(row["n"] or 0)

    # ------------------------------------------------------------------ #
    # pixel events
    # ------------------------------------------------------------------ #

    _PIXEL_COLUMNS = (
        "pixel_id",
        "session_id",
        "event_type",
        "page_url",
        "page_title",
        "referrer",
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "timestamp",
        "metadata_json",
        "dedup_key",
        "visitor_id",
        "visitor_email",
        "visitor_name",
        "value",
        "currency",
        "consent_status",
        "user_agent",
        "ip_address",
    )

    def upsert_pixel_event(self, event: dict[str, Any]) -> int:
        """Insert or refresh a pixel event keyed by its dedup_key; returns the row id."""
        values = dict(event)
        values["metadata_json"] = _dumps(values.pop("metadata", None) or {})
        cols = self._PIXEL_COLUMNS
        updates = ",\n                  ".join(
            f"{c}=excluded.{c}" for c in cols if c not in {"dedup_key", "pixel_id", "session_id"}
        )
        with self.connect() as conn:
            conn.execute(
                f"""
                INSERT INTO pixel_events({', '.join(cols)}, created_at)
                VALUES({', '.join('?' for _ in cols)}, ?)
                ON CONFLICT(dedup_key) DO UPDATE SET
                  {updates}
                """,
                [values.get(c) for c in cols] + [now_utc_iso()],
            )
            row = conn.execute(
                "SELECT id FROM pixel_events WHERE dedup_key=?",
                (values["dedup_key"],),
            ).fetchone()
            return int(row["id"])

    def list_pixel_events(
        self,
        *,
        pixel_id: str,
        start: str | None = None,
        end: str | None = None,
        session_ids: Iterable[str] | None = None,
        with_campaign: bool = False,
    ) -> list[dict[str, Any]]:
        where = ["pixel_id=?"]
        params: list[Any] = [pixel_id]
        if start is not None:
            where.append("timestamp >= ?")
            params.append(start)
        if end is not None:
            where.append("timestamp <= ?")
            params.append(end)
        if session_ids is not None:
            ids = list(session_ids)
            if not ids:
                return []
            where.append(f"session_id IN ({','.join('?' for _ in ids)})")
            params.extend(ids)
        if with_campaign:
            where.append("utm_campaign IS NOT NULL AND utm_campaign != ''")
        sql = "SELECT * FROM pixel_events WHERE " + " AND ".join(where) + " ORDER BY timestamp ASC, id ASC"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        out: list[dict[str, Any]] = []
        for r in rows:
            d = dict(r)
            d["metadata"] = _loads(d.pop("metadata_json", None), {})
            out.append(d)
        return out

    # ------------------------------------------------------------------ #
    # verified conversions
    # ------------------------------------------------------------------ #

    @staticmethod
    def _conversion_row(row: sqlite3.Row) -> dict[str, Any]:
        d = dict(row)
        d["is_platform_over_attributed"] = bool(d.get("is_platform_over_attributed"))
        d["conflicting_sources"] = _loads(d.pop("conflicting_sources_json", None), None)
        d["metadata"] = _loads(d.pop("metadata_json", None), {})
        return d

    def insert_verified_conversion(self, record: dict[str, Any]) -> dict[str, Any] | None:
        """Insert a conversion; returns None when the transaction is already recorded."""
        conv_id = record.get("id") or new_id("vc")
        try:
            with self.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO verified_conversions(
                      id, user_id, transaction_id, amount, currency, timestamp, email,
                      pixel_session_id, ga4_session_id, attributed_channel,
                      confidence_score, confidence_level, attribution_method,
                      is_platform_over_attributed, conflicting_sources_json, metadata_json, created_at
                    ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        conv_id,
                        record["user_id"],
                        record["transaction_id"],
                        float(record.get("amount") or 0),
                        record.get("currency") or "PHP",
                        record["timestamp"],
                        record.get("email"),
                        record.get("pixel_session_id"),
                        record.get("ga4_session_id"),
                        record.get("attributed_channel"),
                        float(record.get("confidence_score") or 0),
                        record.get("confidence_level") or "low",
                        record.get("attribution_method") or "uncertain",
                        1 if record.get("is_platform_over_attributed") else 0,
                        _dumps(record["conflicting_sources"]) if record.get("conflicting_sources") else None,
                        _dumps(record.get("metadata") or {}),
                        now_utc_iso(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            if "transaction_id" in str(e):
                return None
            raise
        return self.get_verified_conversion(transaction_id=record["transaction_id"])

    def get_verified_conversion(self, *, transaction_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM verified_conversions WHERE transaction_id=?",
                (transaction_id,),
            ).fetchone()
            return self._conversion_row(row) if row else None

    def attributed_transaction_ids(self, transaction_ids: Iterable[str]) -> set[str]:
        ids = [str(t) for t in transaction_ids if t]
        found: set[str] = set()
        if not ids:
            return found
        with self.connect() as conn:
            # Stay well under SQLite's bound-parameter limit.
            for i in range(0, len(ids), 500):
                part = ids[i : i + 500]
                rows = conn.execute(
                    f"SELECT transaction_id FROM verified_conversions WHERE transaction_id IN ({','.join('?' for _ in part)})",
                    part,
                ).fetchall()
                found.update(str(r["transaction_id"]) for r in rows)
        return found

    @staticmethod
    def _conversion_filters(
        *,
        user_id: str,
        start: str | None,
        end: str | None,
        confidence_level: str | None,
        channel: str | None,
    ) -> tuple[str, list[Any]]:
        where = ["user_id=?"]
        params: list[Any] = [user_id]
        if start is not None:
            where.append("timestamp >= ?")
            params.append(start)
        if end is not None:
            where.append("timestamp <= ?")
            params.append(end)
        if confidence_level:
            where.append("confidence_level=?")
            params.append(confidence_level)
        if channel:
            where.append("attributed_channel=?")
            params.append(channel)
        return " WHERE " + " AND ".join(where), params

    def list_verified_conversions(
        self,
        *,
        user_id: str,
        start: str | None = None,
        end: str | None = None,
        confidence_level: str | None = None,
        channel: str | None = None,
        order: str = "ASC",
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        where, params = self._conversion_filters(
            user_id=user_id, start=start, end=end, confidence_level=confidence_level, channel=channel
        )
        sql = "SELECT * FROM verified_conversions" + where
        sql += " ORDER BY timestamp " + ("DESC" if order.upper() == "DESC" else "ASC")
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [self._conversion_row(r) for r in rows]

    def count_verified_conversions(
        self,
        *,
        user_id: str,
        start: str | None = None,
        end: str | None = None,
        confidence_level: str | None = None,
        channel: str | None = None,
    ) -> int:
        where, params = self._conversion_filters(
            user_id=user_id, start=start, end=end, confidence_level=confidence_level, channel=channel
        )
        with self.connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM verified_conversions" + where, params).fetchone()
            return int(row["n"] or 0)

    # ------------------------------------------------------------------ #
    # ai recommendations
    # ------------------------------------------------------------------ #

    def replace_active_recommendations(
        self,
        *,
        user_id: str,
        recommendations: list[dict[str, Any]],
        expires_at: str | None,
    ) -> int:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                "UPDATE ai_recommendations SET is_active=0 WHERE user_id=? AND is_active=1",
                (user_id,),
            )
            for rec in recommendations:
                why = rec.get("why_it_matters")
                conn.execute(
                    """
                    INSERT INTO ai_recommendations(
                      id, user_id, rec_key, type, channel, action, reason, estimated_impact,
                      confidence_score, priority, is_active, ai_explanation, after_implementation,
                      why_it_matters_json, ai_enhanced, created_at, expires_at
                    ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        new_id("rec"),
                        user_id,
                        rec.get("id"),
                        rec["type"],
                        rec["channel"],
                        rec["action"],
                        rec["reason"],
                        float(rec.get("estimated_impact") or 0),
                        float(rec.get("confidence_score") or 0),
                        rec.get("priority") or "medium",
                        rec.get("ai_explanation"),
                        rec.get("after_implementation"),
                        _dumps(why) if why is not None else None,
                        1 if rec.get("ai_enhanced") else 0,
                        now,
                        expires_at,
                    ),
                )
        return len(recommendations)

    def list_active_recommendations(self, *, user_id: str, now: str | None = None) -> list[dict[str, Any]]:
        now = now or now_utc_iso()
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM ai_recommendations
                WHERE user_id=? AND is_active=1 AND (expires_at IS NULL OR expires_at > ?)
                ORDER BY estimated_impact DESC, created_at DESC
                """,
                (user_id, now),
            ).fetchall()
        out: list[dict[str, Any]] = []
        for r in rows:
            d = dict(r)
            d["is_active"] = bool(d["is_active"])
            d["ai_enhanced"] = bool(d.get("ai_enhanced"))
            d["why_it_matters"] = _loads(d.pop("why_it_matters_json", None), None)
            out.append(d)
        return out

    # ------------------------------------------------------------------ #
    # short links
    # ------------------------------------------------------------------ #

    def insert_short_link(
        self,
        *,
        code: str,
        original_url: str,
        metadata: dict[str, Any] | None,
        expires_at: str | None,
    ) -> bool:
        try:
            with self.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO short_links(code, original_url, metadata_json, clicks, expires_at, created_at)
                    VALUES(?, ?, ?, 0, ?, ?)
                    """,
                    (code, original_url, _dumps(metadata or {}), expires_at, now_utc_iso()),
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def short_link_exists(self, code: str) -> bool:
        with self.connect() as conn:
            row = conn.execute("SELECT code FROM short_links WHERE code=?", (code,)).fetchone()
            return row is not None

    def get_active_short_link(self, code: str, *, now: str | None = None) -> dict[str, Any] | None:
        now = now or now_utc_iso()
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM short_links WHERE code=? AND (expires_at IS NULL OR expires_at > ?)",
                (code, now),
            ).fetchone()
        if not row:
            return None
        d = dict(row)
        d["metadata"] = _loads(d.pop("metadata_json", None), {})
        return d

    def increment_link_clicks(self, code: str) -> None:
        with self.connect() as conn:
            conn.execute("UPDATE short_links SET clicks = clicks + 1 WHERE code=?", (code,))

    # ------------------------------------------------------------------ #
    # meta
    # ------------------------------------------------------------------ #

    def get_meta(self, key: str) -> str | None:
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key=?", (key,)).fetchone()
            return str(row["value"]) if row else None
