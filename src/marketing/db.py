from __future__ import annotations

import sqlite3
from pathlib import Path

from marketing.util import now_utc_iso


SCHEMA_VERSION = 4

CONNECTION_STATUSES = ("connected", "disconnected", "error", "pending", "syncing")


class AnalyticsDB:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def init(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            current_version = self._get_schema_version(conn)

            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                  id TEXT PRIMARY KEY,
                  email TEXT NOT NULL UNIQUE,
                  pixel_id TEXT UNIQUE,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS platform_connections (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                  platform TEXT NOT NULL,
                  access_token TEXT,
                  refresh_token TEXT,
                  token_expires_at TEXT,
                  platform_account_id TEXT,
                  status TEXT NOT NULL DEFAULT 'pending',
                  connected_at TEXT,
                  last_synced_at TEXT,
                  last_error TEXT,
                  metadata_json TEXT NOT NULL DEFAULT '{}',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE (user_id, platform)
                );

                CREATE TABLE IF NOT EXISTS raw_events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                  platform TEXT NOT NULL,
                  event_type TEXT NOT NULL,
                  event_data_json TEXT NOT NULL DEFAULT '{}',
                  timestamp TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  dedup_key TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_raw_events_user_platform_ts
                ON raw_events(user_id, platform, timestamp);

                CREATE INDEX IF NOT EXISTS idx_raw_events_type_ts
                ON raw_events(event_type, timestamp);

                CREATE TABLE IF NOT EXISTS pixel_events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  pixel_id TEXT NOT NULL,
                  session_id TEXT NOT NULL,
                  event_type TEXT NOT NULL,
                  page_url TEXT NOT NULL,
                  page_title TEXT,
                  referrer TEXT,
                  utm_source TEXT,
                  utm_medium TEXT,
                  utm_campaign TEXT,
                  utm_term TEXT,
                  utm_content TEXT,
                  timestamp TEXT NOT NULL,
                  metadata_json TEXT NOT NULL DEFAULT '{}',
                  dedup_key TEXT NOT NULL UNIQUE,
                  visitor_id TEXT,
                  visitor_email TEXT,
                  visitor_name TEXT,
                  value REAL,
                  currency TEXT,
                  consent_status TEXT,
                  user_agent TEXT,
                  ip_address TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_pixel_events_pixel_ts
                ON pixel_events(pixel_id, timestamp);

                CREATE INDEX IF NOT EXISTS idx_pixel_events_session
                ON pixel_events(session_id);

                CREATE TABLE IF NOT EXISTS verified_conversions (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                  transaction_id TEXT NOT NULL UNIQUE,
                  amount REAL NOT NULL,
                  currency TEXT NOT NULL DEFAULT 'PHP',
                  timestamp TEXT NOT NULL,
                  email TEXT,
                  pixel_session_id TEXT,
                  ga4_session_id TEXT,
                  attributed_channel TEXT,
                  confidence_score REAL NOT NULL DEFAULT 0,
                  confidence_level TEXT NOT NULL DEFAULT 'low',
                  attribution_method TEXT NOT NULL DEFAULT 'uncertain',
                  is_platform_over_attributed INTEGER NOT NULL DEFAULT 0,
                  conflicting_sources_json TEXT,
                  metadata_json TEXT NOT NULL DEFAULT '{}',
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_verified_conversions_user_ts
                ON verified_conversions(user_id, timestamp);

                CREATE TABLE IF NOT EXISTS ai_recommendations (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                  rec_key TEXT,
                  type TEXT NOT NULL,
                  channel TEXT NOT NULL,
                  action TEXT NOT NULL,
                  reason TEXT NOT NULL,
                  estimated_impact REAL NOT NULL DEFAULT 0,
                  confidence_score REAL NOT NULL DEFAULT 0,
                  priority TEXT NOT NULL DEFAULT 'medium',
                  is_active INTEGER NOT NULL DEFAULT 1,
                  ai_explanation TEXT,
                  after_implementation TEXT,
                  why_it_matters_json TEXT,
                  ai_enhanced INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL,
                  expires_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_ai_recommendations_user_active
                ON ai_recommendations(user_id, is_active);

                CREATE TABLE IF NOT EXISTS short_links (
                  code TEXT PRIMARY KEY,
                  original_url TEXT NOT NULL,
                  metadata_json TEXT NOT NULL DEFAULT '{}',
                  clicks INTEGER NOT NULL DEFAULT 0,
                  expires_at TEXT,
                  created_at TEXT NOT NULL
                );
                """
            )
            if current_version < 2:
                self._migrate_to_v2(conn)
            if current_version < 3:
                self._migrate_to_v3(conn)
            if current_version < 4:
                self._migrate_to_v4(conn)
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        row = conn.execute(
            "SELECT value FROM meta WHERE key='schema_version'"
        ).fetchone()
        if not row:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    def _table_exists(self, conn: sqlite3.Connection, table: str) -> bool:
        row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            (table,),
        ).fetchone()
        return row is not None

    def _column_exists(self, conn: sqlite3.Connection, table: str, column: str) -> bool:
        rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(str(r["name"]) == column for r in rows)

    def _add_missing_columns(self, conn: sqlite3.Connection, table: str, columns: list[tuple[str, str]]) -> None:
        if not self._table_exists(conn, table):
            return
        for name, decl in columns:
            if not self._column_exists(conn, table, name):
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")

    def _migrate_to_v2(self, conn: sqlite3.Connection) -> None:
        # v1 pixel_events stored only the page view fields.
        self._add_missing_columns(
            conn,
            "pixel_events",
            [
                ("visitor_id", "TEXT"),
                ("visitor_email", "TEXT"),
                ("visitor_name", "TEXT"),
                ("value", "REAL"),
                ("currency", "TEXT"),
                ("consent_status", "TEXT"),
                ("user_agent", "TEXT"),
                ("ip_address", "TEXT"),
            ],
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_pixel_events_visitor_email ON pixel_events(visitor_email)"
        )

    def _migrate_to_v3(self, conn: sqlite3.Connection) -> None:
        self._add_missing_columns(
            conn,
            "ai_recommendations",
            [
                ("rec_key", "TEXT"),
                ("ai_explanation", "TEXT"),
                ("after_implementation", "TEXT"),
                ("why_it_matters_json", "TEXT"),
                ("ai_enhanced", "INTEGER NOT NULL DEFAULT 0"),
            ],
        )

    def _migrate_to_v4(self, conn: sqlite3.Connection) -> None:
        # Rows stored before v4 keep a NULL key and are never merged.
        self._add_missing_columns(conn, "raw_events", [("dedup_key", "TEXT")])
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_raw_events_dedup_key ON raw_events(dedup_key)"
        )

    def seed_default_user(self, user_id: str, email: str) -> None:
        """Ensure the development user exists (auth is bypassed locally)."""
        now = now_utc_iso()
        with self._connect() as conn:
            row = conn.execute("SELECT id FROM users WHERE id=?", (user_id,)).fetchone()
            if row:
                return
            taken = conn.execute("SELECT id FROM users WHERE email=?", (email,)).fetchone()
            if taken:
                email = f"{user_id}@localhost"
            conn.execute(
                "INSERT INTO users(id, email, pixel_id, created_at, updated_at) VALUES(?, ?, ?, ?, ?)",
                (user_id, email, None, now, now),
            )
