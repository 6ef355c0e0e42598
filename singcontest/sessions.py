from __future__ import annotations

import copy
import logging
import re
import sqlite3
from typing import Any, Dict, Optional

from fastapi import HTTPException

from . import emails, push, settings
from .db import db, dump_json, get_session, load_json, save_config
from .phases import PHASE_DATE_FIELDS, SESSION_STATUSES, next_status, phase_message
from .utils import new_token, now_iso, today_local

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

DEFAULT_CONFIG: Dict[str, Any] = {
    "age_categories": [
        {"name": "Enfant", "min_age": 6, "max_age": 12},
        {"name": "Ado", "min_age": 13, "max_age": 17},
        {"name": "Adulte", "min_age": 18, "max_age": 99},
    ],
    "registration_start": "",
    "registration_end": "",
    "semifinal_date": "",
    "final_date": "",
    "semifinal_location": "",
    "final_location": "",
    "max_video_duration_sec": 180,
    "max_video_size_mb": 100,
    "max_mp3_size_mb": 20,
    "max_photo_size_mb": 5,
    "max_votes_per_device": 50,
    "registration_fee": 0,
    "semifinalists_per_category": 10,
    "finalists_per_category": 5,
    "jury_weight_percent": 60,
    "public_weight_percent": 40,
    "jury_criteria": [
        {"name": "Justesse vocale", "max_score": 5},
        {"name": "Interprétation", "max_score": 5},
        {"name": "Présence scénique", "max_score": 5},
        {"name": "Originalité", "max_score": 5},
    ],
    "vote_duration_sec": 60,
    "performance_recommended_sec": 180,
}


def _insert_session(conn: sqlite3.Connection, name: str, slug: str, city: str, year: int,
                    config: Dict[str, Any], duplicate_msg: str) -> int:
    try:
        cur = conn.execute(
            "INSERT INTO sessions(name, slug, city, year, status, is_active, config, created_at) VALUES(?,?,?,?,?,?,?,?)",
            (name, slug, city, year, "draft", 0, dump_json(config), now_iso()),
        )
    except sqlite3.IntegrityError:
        raise HTTPException(409, duplicate_msg)
    return cur.lastrowid


def create_session(name: str, slug: str, city: str, year: Optional[int]) -> int:
    name, slug, city = (name or "").strip(), (slug or "").strip(), (city or "").strip()
    if not name or not slug or not city or not year:
        raise HTTPException(400, "Tous les champs sont requis.")
    with db() as conn:
        return _insert_session(conn, name, slug, city, int(year), copy.deepcopy(DEFAULT_CONFIG),
                               "Ce slug est déjà utilisé.")


def update_session(session_id: int, name: str, city: str, status: str) -> None:
    if status not in SESSION_STATUSES:
        raise HTTPException(400, f"Statut invalide : {status}")
    with db() as conn:
        get_session(conn, session_id)
        conn.execute(
            "UPDATE sessions SET name=?, city=?, status=?, updated_at=? WHERE id=?",
            (name.strip(), city.strip(), status, now_iso(), session_id),
        )


def set_active_session(session_id: int) -> None:
    with db() as conn:
        get_session(conn, session_id)
        conn.execute("UPDATE sessions SET is_active=0")
        conn.execute("UPDATE sessions SET is_active=1 WHERE id=?", (session_id,))


def duplicate_session(session_id: int) -> int:
    """Copy a session's config into next year's edition."""
    with db() as conn:
        source = get_session(conn, session_id)
        new_year = source["year"] + 1
        new_slug = re.sub(r"\d{4}$", str(new_year), source["slug"])
        new_name = re.sub(r"\d{4}", str(new_year), source["name"], count=1)
        return _insert_session(conn, new_name, new_slug, source["city"], new_year,
                               load_json(source["config"]), "Une session avec ce slug existe déjà.")


def archive_session(session_id: int) -> None:
    with db() as conn:
        get_session(conn, session_id)
        conn.execute("UPDATE sessions SET status='archived', is_active=0, updated_at=? WHERE id=?",
                     (now_iso(), session_id))


def delete_session(session_id: int) -> None:
    with db() as conn:
        get_session(conn, session_id)
        count = conn.execute("SELECT COUNT(*) AS n FROM candidates WHERE session_id=?", (session_id,)).fetchone()["n"]
        if count:
            raise HTTPException(409, "Impossible de supprimer une session qui contient des candidats.")
        conn.execute("DELETE FROM sessions WHERE id=?", (session_id,))


# -----------------------
# Config
# -----------------------
def update_session_config(session_id: int, config: Dict[str, Any]) -> None:
    with db() as conn:
        get_session(conn, session_id)
        save_config(conn, session_id, config)


def patch_session_config(session_id: int, **changes: Any) -> Dict[str, Any]:
    with db() as conn:
        config = load_json(get_session(conn, session_id)["config"])
        config.update(changes)
        save_config(conn, session_id, config)
    return config


def update_scoring_weights(session_id: int, jury: int, public: int, social: int) -> None:
    for w in (jury, public, social):
        if w < 0 or w > 100:
            raise HTTPException(400, "Les poids doivent être compris entre 0 et 100.")
    patch_session_config(
        session_id,
        jury_weight_percent=jury,
        public_weight_percent=public,
        social_weight_percent=social,
    )


# -----------------------
# Phases
# -----------------------
def _stamp_phase_date(config: Dict[str, Any], status: str) -> None:
    field = PHASE_DATE_FIELDS.get(status)
    if field:
        config[field] = today_local().isoformat()


def update_session_status(session_id: int, status: str) -> None:
    if status not in SESSION_STATUSES:
        raise HTTPException(400, f"Statut invalide : {status}")
    with db() as conn:
        config = load_json(get_session(conn, session_id)["config"])
        _stamp_phase_date(config, status)
        conn.execute(
            "UPDATE sessions SET status=?, config=?, updated_at=? WHERE id=?",
            (status, dump_json(config), now_iso(), session_id),
        )


def advance_session_phase(session_id: int) -> str:
    with db() as conn:
        session = get_session(conn, session_id)
        new_status = next_status(session["status"])
        if not new_status:
            raise HTTPException(400, "Cette session ne peut pas avancer de phase.")
        config = load_json(session["config"])
        _stamp_phase_date(config, new_status)
        conn.execute(
            "UPDATE sessions SET status=?, config=?, updated_at=? WHERE id=?",
            (new_status, dump_json(config), now_iso(), session_id),
        )

    logger.info(f"Session {session_id} advanced {session['status']} -> {new_status}")
    message = phase_message(new_status, config)
    if message:
        push.notify(
            session_id,
            {"title": message["title"], "body": message["body"], "url": f"{settings.SITE_URL}/{session['slug']}"},
            role="public",
        )
    return new_status


# -----------------------
# Email subscribers
# -----------------------
def subscribe_email(session_id: int, email: str) -> Dict[str, bool]:
    email = (email or "").strip().lower()
    if not EMAIL_RE.match(email):
        raise HTTPException(400, "Adresse email invalide.")
    with db() as conn:
        get_session(conn, session_id)
        existing = conn.execute(
            "SELECT id, unsubscribed_at FROM email_subscribers WHERE session_id=? AND email=?",
            (session_id, email),
        ).fetchone()
        if existing:
            if existing["unsubscribed_at"]:
                conn.execute("UPDATE email_subscribers SET unsubscribed_at=NULL WHERE id=?", (existing["id"],))
                return {"success": True, "already": False}
            return {"success": True, "already": True}
        conn.execute(
            "INSERT INTO email_subscribers(session_id, email, token, created_at) VALUES(?,?,?,?)",
            (session_id, email, new_token(), now_iso()),
        )
    return {"success": True, "already": False}


def unsubscribe(token: str) -> bool:
    with db() as conn:
        cur = conn.execute(
            "UPDATE email_subscribers SET unsubscribed_at=? WHERE token=? AND unsubscribed_at IS NULL",
            (now_iso(), token),
        )
        return cur.rowcount > 0


def active_subscribers(session_id: int):
    with db() as conn:
        return conn.execute(
            "SELECT email, token FROM email_subscribers WHERE session_id=? AND unsubscribed_at IS NULL ORDER BY id",
            (session_id,),
        ).fetchall()


def send_newsletter(session_id: int, subject: str, body_html: str) -> Dict[str, int]:
    """Bulk send through SMTP, one message per subscriber with its own unsubscribe link."""
    if not (subject or "").strip() or not (body_html or "").strip():
        raise HTTPException(400, "Sujet et contenu requis.")
    sent = 0
    failed = 0
    for subscriber in active_subscribers(session_id):
        unsubscribe_url = f"{settings.SITE_URL}/unsubscribe/{subscriber['token']}"
        mail = emails.newsletter_email(subject.strip(), body_html, unsubscribe_url)
        error = emails.send_smtp(
            subscriber["email"], mail["subject"], mail["html"], headers={"List-Unsubscribe": f"<{unsubscribe_url}>"}
        )
        if error:
            failed += 1
        else:
            sent += 1
    logger.info(f"Newsletter '{subject}' session={session_id}: sent={sent} failed={failed}")
    return {"sent": sent, "failed": failed}
