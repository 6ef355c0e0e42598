from __future__ import annotations

import json
import sqlite3
from typing import Any, Dict, Optional

from fastapi import HTTPException

from . import settings


# -----------------------
# Connection + schema
# -----------------------
def db() -> sqlite3.Connection:
    conn = sqlite3.connect(settings.DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def init_db():
    with db() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                slug TEXT NOT NULL UNIQUE,
                city TEXT NOT NULL,
                year INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'draft',
                is_active INTEGER NOT NULL DEFAULT 0,
                config TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS admin_users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL UNIQUE,
                pw_hash TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'admin',
                session_ids TEXT
            );

            CREATE TABLE IF NOT EXISTS admin_tokens (
                token TEXT PRIMARY KEY,
                email TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS candidates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL,
                first_name TEXT NOT NULL,
                last_name TEXT NOT NULL,
                stage_name TEXT,
                date_of_birth TEXT NOT NULL,
                email TEXT NOT NULL,
                phone TEXT,
                city TEXT,
                category TEXT,
                song_title TEXT,
                song_artist TEXT,
                bio TEXT,
                accent_color TEXT NOT NULL DEFAULT '#E91E8C',
                slug TEXT NOT NULL,
                photo_url TEXT,
                video_url TEXT,
                mp3_url TEXT,
                video_public INTEGER NOT NULL DEFAULT 0,
                youtube_url TEXT,
                instagram_url TEXT,
                tiktok_url TEXT,
                website_url TEXT,
                fingerprint TEXT,
                referred_by TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                likes_count INTEGER NOT NULL DEFAULT 0,
                shares_count INTEGER NOT NULL DEFAULT 0,
                correction_token TEXT,
                correction_fields TEXT,
                finale_songs TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                UNIQUE(session_id, email),
                UNIQUE(session_id, slug)
            );

            CREATE TABLE IF NOT EXISTS jurors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL,
                first_name TEXT,
                last_name TEXT,
                email TEXT,
                role TEXT NOT NULL,
                qr_token TEXT NOT NULL UNIQUE,
                is_active INTEGER NOT NULL DEFAULT 1,
                onboarding_done INTEGER NOT NULL DEFAULT 0,
                login_count INTEGER NOT NULL DEFAULT 0,
                last_login_at TEXT,
                created_at TEXT NOT NULL
            );

            -- scores holds the raw payload (decision / stars / criteria), total_score the derived value
            CREATE TABLE IF NOT EXISTS jury_scores (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL,
                juror_id INTEGER NOT NULL,
                candidate_id INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                scores TEXT NOT NULL DEFAULT '{}',
                total_score REAL NOT NULL DEFAULT 0,
                comment TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                UNIQUE(juror_id, candidate_id, event_type)
            );

            CREATE TABLE IF NOT EXISTS votes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL,
                candidate_id INTEGER NOT NULL,
                fingerprint TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(candidate_id, fingerprint)
            );

            CREATE TABLE IF NOT EXISTS live_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                current_candidate_id INTEGER,
                current_category TEXT,
                is_voting_open INTEGER NOT NULL DEFAULT 0,
                winner_candidate_id INTEGER,
                winner_revealed_at TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS lineup (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                live_event_id INTEGER NOT NULL,
                candidate_id INTEGER NOT NULL,
                position INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'pending',
                started_at TEXT,
                ended_at TEXT,
                vote_opened_at TEXT,
                vote_closed_at TEXT,
                UNIQUE(live_event_id, candidate_id)
            );

            CREATE TABLE IF NOT EXISTS live_votes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                live_event_id INTEGER NOT NULL,
                candidate_id INTEGER NOT NULL,
                fingerprint TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(live_event_id, candidate_id, fingerprint)
            );

            CREATE TABLE IF NOT EXISTS push_subscriptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL,
                endpoint TEXT NOT NULL,
                p256dh TEXT NOT NULL,
                auth TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'public',
                juror_id INTEGER,
                fingerprint TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS email_subscribers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL,
                email TEXT NOT NULL,
                token TEXT NOT NULL,
                unsubscribed_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(session_id, email)
            );

            CREATE TABLE IF NOT EXISTS page_views (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL,
                candidate_id INTEGER,
                page_path TEXT NOT NULL,
                fingerprint TEXT,
                ip_address TEXT,
                user_agent TEXT,
                referrer TEXT,
                duration_seconds INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS social_posts_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL,
                post_type TEXT NOT NULL,
                source TEXT NOT NULL,
                message TEXT NOT NULL,
                link TEXT,
                facebook_post_id TEXT,
                instagram_post_id TEXT,
                error TEXT,
                created_at TEXT NOT NULL
            );
            """
        )

        # Simple migration safety for databases created before these columns existed
        cols = [r["name"] for r in conn.execute("PRAGMA table_info(candidates)").fetchall()]
        if "shares_count" not in cols:
            conn.execute("ALTER TABLE candidates ADD COLUMN shares_count INTEGER NOT NULL DEFAULT 0")
        if "correction_fields" not in cols:
            conn.execute("ALTER TABLE candidates ADD COLUMN correction_fields TEXT")
        if "finale_songs" not in cols:
            conn.execute("ALTER TABLE candidates ADD COLUMN finale_songs TEXT")

        cols = [r["name"] for r in conn.execute("PRAGMA table_info(jurors)").fetchall()]
        if "onboarding_done" not in cols:
            conn.execute("ALTER TABLE jurors ADD COLUMN onboarding_done INTEGER NOT NULL DEFAULT 0")


# -----------------------
# JSON columns
# -----------------------
def load_json(value: Optional[str], default: Any = None) -> Any:
    if not value:
        return {} if default is None else default
    return json.loads(value)


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


# -----------------------
# Common lookups
# -----------------------
def fetch_one(conn: sqlite3.Connection, table: str, row_id: int, detail: str) -> sqlite3.Row:
    row = conn.execute(f"SELECT * FROM {table} WHERE id=?", (row_id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail=detail)
    return row


def get_session(conn: sqlite3.Connection, session_id: int) -> sqlite3.Row:
    return fetch_one(conn, "sessions", session_id, "Session introuvable.")


def get_config(conn: sqlite3.Connection, session_id: int) -> Dict[str, Any]:
    return load_json(get_session(conn, session_id)["config"])


def save_config(conn: sqlite3.Connection, session_id: int, config: Dict[str, Any]) -> None:
    conn.execute("UPDATE sessions SET config=? WHERE id=?", (dump_json(config), session_id))


def active_session(conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM sessions WHERE is_active=1 ORDER BY id LIMIT 1").fetchone()
