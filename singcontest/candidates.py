from __future__ import annotations

import logging
import sqlite3
from typing import Dict, List, Mapping, Optional

from fastapi import HTTPException

from . import emails, push, settings
from .db import db, dump_json, fetch_one, get_session, load_json
from .utils import display_name, get_category, new_token, now_iso, slugify, today_local

logger = logging.getLogger(__name__)

CANDIDATE_STATUSES = ("pending", "approved", "rejected", "semifinalist", "finalist", "winner")
# Statuses visible on the public site
PUBLIC_STATUSES = ("approved", "semifinalist", "finalist", "winner")
CORRECTION_FIELDS = ("song_title", "song_artist", "video", "photo")

REQUIRED_FIELDS = ("session_id", "first_name", "last_name", "email", "date_of_birth")
OPTIONAL_TEXT_FIELDS = (
    "stage_name", "phone", "city", "bio", "youtube_url", "instagram_url",
    "tiktok_url", "website_url", "video_url", "fingerprint", "referred_by",
)


def get_candidate(conn: sqlite3.Connection, candidate_id: int) -> sqlite3.Row:
    return fetch_one(conn, "candidates", candidate_id, "Candidat introuvable.")


def _unique_slug(conn: sqlite3.Connection, session_id: int, base: str) -> str:
    slug = base or "candidat"
    n = 1
    while conn.execute("SELECT 1 FROM candidates WHERE session_id=? AND slug=?", (session_id, slug)).fetchone():
        n += 1
        slug = f"{base}-{n}"
    return slug


# -----------------------
# Registration
# -----------------------
def register_candidate(form: Mapping[str, Optional[str]]) -> int:
    missing = [f for f in REQUIRED_FIELDS if not (form.get(f) or "").strip()]
    if missing:
        raise HTTPException(400, "Champs obligatoires manquants")
    if not (form.get("photo_url") or "").strip():
        raise HTTPException(400, "Photo obligatoire")

    session_id = int(form["session_id"])
    with db() as conn:
        session = get_session(conn, session_id)
        if session["status"] != "registration_open":
            raise HTTPException(400, "Les inscriptions ne sont pas ouvertes.")
        config = load_json(session["config"])

        reference = config.get("final_date") or today_local().isoformat()
        category = get_category(form["date_of_birth"], config.get("age_categories", []), reference)
        if not category:
            raise HTTPException(400, "Aucune catégorie ne correspond à votre âge.")

        first_name = form["first_name"].strip()
        last_name = form["last_name"].strip()
        stage_name = (form.get("stage_name") or "").strip() or None
        slug = _unique_slug(conn, session_id, slugify(stage_name or f"{first_name} {last_name}"))

        optional = {f: (form.get(f) or "").strip() or None for f in OPTIONAL_TEXT_FIELDS}
        optional["stage_name"] = stage_name
        try:
            cur = conn.execute(
                """
                INSERT INTO candidates(session_id, first_name, last_name, stage_name, date_of_birth, email, phone, city,
                    category, song_title, song_artist, bio, accent_color, slug, photo_url, video_url, video_public,
                    youtube_url, instagram_url, tiktok_url, website_url, fingerprint, referred_by, status, created_at)
                VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    session_id, first_name, last_name, optional["stage_name"], form["date_of_birth"],
                    form["email"].strip().lower(), optional["phone"], optional["city"], category,
                    (form.get("song_title") or "").strip(), (form.get("song_artist") or "").strip(),
                    optional["bio"], form.get("accent_color") or "#E91E8C", slug, form["photo_url"].strip(),
                    optional["video_url"], 1 if str(form.get("video_public", "")).lower() in ("1", "true", "on") else 0,
                    optional["youtube_url"], optional["instagram_url"], optional["tiktok_url"],
                    optional["website_url"], optional["fingerprint"], optional["referred_by"], "pending", now_iso(),
                ),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(409, "Un candidat avec cet email est déjà inscrit pour cette session.")
        candidate_id = cur.lastrowid
        candidate = get_candidate(conn, candidate_id)

    logger.info(f"Candidate {candidate_id} registered for session {session_id} ({category})")
    mail = emails.registration_confirmation_email(candidate, session["name"])
    emails.send_email(candidate["email"], mail["subject"], mail["html"])
    return candidate_id


# -----------------------
# Moderation
# -----------------------
def update_candidate_status(candidate_id: int, status: str) -> None:
    if status not in CANDIDATE_STATUSES:
        raise HTTPException(400, f"Statut invalide : {status}")
    with db() as conn:
        get_candidate(conn, candidate_id)
        conn.execute("UPDATE candidates SET status=?, updated_at=? WHERE id=?", (status, now_iso(), candidate_id))
        candidate = get_candidate(conn, candidate_id)
        session = get_session(conn, candidate["session_id"])

    if status != "approved":
        return

    # A notification problem must not undo the status change
    name = display_name(candidate)
    profile_url = f"{settings.SITE_URL}/{session['slug']}/candidats/{candidate['slug']}"
    mail = emails.candidate_approved_email(candidate, session["name"], profile_url)
    emails.send_email(candidate["email"], mail["subject"], mail["html"])
    push.notify(
        candidate["session_id"],
        {
            "title": "Nouveau candidat à évaluer !",
            "body": f"{name} vient d'être inscrit(e). Découvrez sa candidature et votez !",
            "url": "/jury",
            "tag": f"new-candidate-{candidate_id}",
        },
        role="jury",
    )


def toggle_video_public(candidate_id: int, video_public: bool) -> None:
    with db() as conn:
        get_candidate(conn, candidate_id)
        conn.execute("UPDATE candidates SET video_public=? WHERE id=?", (1 if video_public else 0, candidate_id))


def save_mp3_url(candidate_id: int, mp3_url: str) -> None:
    with db() as conn:
        get_candidate(conn, candidate_id)
        conn.execute("UPDATE candidates SET mp3_url=?, updated_at=? WHERE id=?", (mp3_url, now_iso(), candidate_id))


def record_share(candidate_id: int) -> None:
    with db() as conn:
        conn.execute("UPDATE candidates SET shares_count = shares_count + 1 WHERE id=?", (candidate_id,))


def delete_candidate(candidate_id: int) -> None:
    with db() as conn:
        get_candidate(conn, candidate_id)
        # No foreign keys: clear every reference first
        conn.execute("DELETE FROM votes WHERE candidate_id=?", (candidate_id,))
        conn.execute("DELETE FROM live_votes WHERE candidate_id=?", (candidate_id,))
        conn.execute("DELETE FROM lineup WHERE candidate_id=?", (candidate_id,))
        conn.execute("DELETE FROM jury_scores WHERE candidate_id=?", (candidate_id,))
        conn.execute("DELETE FROM page_views WHERE candidate_id=?", (candidate_id,))
        conn.execute("UPDATE live_events SET current_candidate_id=NULL WHERE current_candidate_id=?", (candidate_id,))
        conn.execute(
            "UPDATE live_events SET winner_candidate_id=NULL, winner_revealed_at=NULL WHERE winner_candidate_id=?",
            (candidate_id,),
        )
        conn.execute("DELETE FROM candidates WHERE id=?", (candidate_id,))
    logger.info(f"Candidate {candidate_id} deleted")


# -----------------------
# Corrections
# -----------------------
def request_correction(candidate_id: int, fields: List[str]) -> str:
    fields = [f for f in fields if f in CORRECTION_FIELDS]
    if not fields:
        raise HTTPException(400, "Aucun champ à corriger.")
    token = new_token()
    with db() as conn:
        get_candidate(conn, candidate_id)
        conn.execute(
            "UPDATE candidates SET correction_token=?, correction_fields=? WHERE id=?",
            (token, dump_json(fields), candidate_id),
        )
        candidate = get_candidate(conn, candidate_id)

    mail = emails.correction_request_email(candidate, fields, f"{settings.SITE_URL}/corriger/{token}")
    emails.send_email(candidate["email"], mail["subject"], mail["html"])
    return token


def submit_correction(token: str, updates: Mapping[str, Optional[str]]) -> int:
    with db() as conn:
        candidate = conn.execute("SELECT * FROM candidates WHERE correction_token=?", (token,)).fetchone()
        if not candidate:
            raise HTTPException(404, "Lien de correction invalide.")
        if candidate["status"] == "approved":
            raise HTTPException(400, "Votre candidature a déjà été validée. Aucune correction possible.")

        allowed = load_json(candidate["correction_fields"], [])
        column_for = {"song_title": "song_title", "song_artist": "song_artist", "video": "video_url", "photo": "photo_url"}
        data: Dict[str, str] = {}
        for field in allowed:
            value = (updates.get(column_for[field]) or "").strip()
            if value:
                data[column_for[field]] = value
        if not data:
            raise HTTPException(400, "Aucune modification détectée.")

        assignments = ", ".join(f"{col}=?" for col in data)
        conn.execute(
            f"UPDATE candidates SET {assignments}, correction_token=NULL, correction_fields=NULL, updated_at=? WHERE id=?",
            (*data.values(), now_iso(), candidate["id"]),
        )
    logger.info(f"Candidate {candidate['id']} submitted corrections: {sorted(data)}")
    return candidate["id"]


# -----------------------
# Queries
# -----------------------
def list_candidates(session_id: int, statuses=None, category: Optional[str] = None) -> List[sqlite3.Row]:
    sql = "SELECT * FROM candidates WHERE session_id=?"
    params: list = [session_id]
    if statuses:
        sql += f" AND status IN ({','.join(['?'] * len(statuses))})"
        params.extend(statuses)
    if category:
        sql += " AND category=?"
        params.append(category)
    sql += " ORDER BY likes_count DESC, id"
    with db() as conn:
        return conn.execute(sql, params).fetchall()


def public_candidates(session_id: int) -> List[sqlite3.Row]:
    return list_candidates(session_id, PUBLIC_STATUSES)


def candidate_by_slug(session_id: int, slug: str) -> sqlite3.Row:
    with db() as conn:
        row = conn.execute("SELECT * FROM candidates WHERE session_id=? AND slug=?", (session_id, slug)).fetchone()
    if not row or row["status"] not in PUBLIC_STATUSES:
        raise HTTPException(404, "Candidat introuvable.")
    return row


# -----------------------
# Self-service profile
# -----------------------
# Fields a candidate edits from /{slug}/mon-profil; an empty value clears the optional ones
PROFILE_FIELDS = (
    "stage_name", "bio", "accent_color", "song_title", "song_artist", "city", "phone",
    "youtube_url", "instagram_url", "tiktok_url", "website_url",
)
PROFILE_KEEP_EMPTY = ("accent_color", "song_title", "song_artist")
MAX_FINALE_SONGS = 3


def profile_by_token(session_id: int, token: str) -> sqlite3.Row:
    """The profile token is the candidate's public slug."""
    with db() as conn:
        row = conn.execute(
            "SELECT * FROM candidates WHERE session_id=? AND slug=?", (session_id, (token or "").strip())
        ).fetchone()
    if not row:
        raise HTTPException(404, "Aucune candidature ne correspond à ce code.")
    return row


def _verify_ownership(conn: sqlite3.Connection, candidate_id: int, token: str) -> sqlite3.Row:
    candidate = get_candidate(conn, candidate_id)
    if candidate["slug"] != token:
        raise HTTPException(403, "Accès non autorisé")
    return candidate


def update_candidate_profile(candidate_id: int, token: str, data: Mapping[str, Optional[str]]) -> None:
    """Only the keys present in data are written; None means "not sent"."""
    changes: Dict[str, Optional[str]] = {}
    for field in PROFILE_FIELDS:
        if data.get(field) is None:
            continue
        value = data[field].strip()
        changes[field] = value if field in PROFILE_KEEP_EMPTY else (value or None)
    if not changes:
        raise HTTPException(400, "Aucune modification détectée.")

    with db() as conn:
        _verify_ownership(conn, candidate_id, token)
        assignments = ", ".join(f"{col}=?" for col in changes)
        conn.execute(
            f"UPDATE candidates SET {assignments}, updated_at=? WHERE id=?",
            (*changes.values(), now_iso(), candidate_id),
        )
    logger.info(f"Candidate {candidate_id} updated profile: {sorted(changes)}")


def update_finale_songs(candidate_id: int, token: str, songs: List[Mapping[str, str]], phone: str) -> None:
    with db() as conn:
        _verify_ownership(conn, candidate_id, token)
        if not (phone or "").strip():
            raise HTTPException(400, "Le numéro de téléphone est obligatoire.")
        cleaned = [
            {
                "title": (s.get("title") or "").strip(),
                "artist": (s.get("artist") or "").strip(),
                "youtube_url": (s.get("youtube_url") or "").strip(),
            }
            for s in songs
            if (s.get("title") or "").strip()
        ][:MAX_FINALE_SONGS]
        conn.execute(
            "UPDATE candidates SET finale_songs=?, phone=?, updated_at=? WHERE id=?",
            (dump_json(cleaned), phone.strip(), now_iso(), candidate_id),
        )


# -----------------------
# Palmares
# -----------------------
def winners(archived_only: bool = False) -> List[sqlite3.Row]:
    """Every crowned candidate with the edition they won, newest edition first."""
    sql = (
        "SELECT c.*, s.name AS session_name, s.year AS session_year FROM candidates c "
        "JOIN sessions s ON s.id = c.session_id WHERE c.status='winner'"
    )
    if archived_only:
        sql += " AND s.status='archived'"
    with db() as conn:
        return conn.execute(sql + " ORDER BY s.year DESC, s.id DESC, c.category, c.id").fetchall()


def update_winner(candidate_id: int, first_name: str, last_name: str, stage_name: str = "",
                  song_title: str = "", song_artist: str = "") -> None:
    first_name, last_name = (first_name or "").strip(), (last_name or "").strip()
    if not first_name or not last_name:
        raise HTTPException(400, "Le prénom et le nom sont obligatoires.")
    with db() as conn:
        candidate = get_candidate(conn, candidate_id)
        if candidate["status"] != "winner":
            raise HTTPException(400, "Ce candidat n'est pas un lauréat.")
        conn.execute(
            "UPDATE candidates SET first_name=?, last_name=?, stage_name=?, song_title=?, song_artist=?, "
            "updated_at=? WHERE id=?",
            (first_name, last_name, stage_name.strip() or None, song_title.strip() or None,
             song_artist.strip() or None, now_iso(), candidate_id),
        )
