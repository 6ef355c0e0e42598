from __future__ import annotations

import logging
from typing import Dict

from fastapi import HTTPException

from .candidates import PUBLIC_STATUSES, get_candidate
from .db import db, fetch_one, load_json
from .utils import now_iso

logger = logging.getLogger(__name__)


# -----------------------
# Online votes (likes)
# -----------------------
def vote_for_candidate(session_id: int, candidate_id: int, fingerprint: str) -> int:
    """Record one like per device and candidate; returns the candidate's new likes count."""
    if not fingerprint:
        raise HTTPException(400, "Empreinte manquante.")
    with db() as conn:
        session = fetch_one(conn, "sessions", session_id, "Session introuvable.")
        candidate = get_candidate(conn, candidate_id)
        if candidate["session_id"] != session_id or candidate["status"] not in PUBLIC_STATUSES:
            raise HTTPException(404, "Candidat introuvable.")

        if conn.execute(
            "SELECT 1 FROM votes WHERE candidate_id=? AND fingerprint=?", (candidate_id, fingerprint)
        ).fetchone():
            raise HTTPException(409, "Vous avez déjà voté pour ce candidat.")

        max_votes = int(load_json(session["config"]).get("max_votes_per_device") or 50)
        used = conn.execute(
            "SELECT COUNT(*) AS n FROM votes WHERE session_id=? AND fingerprint=?", (session_id, fingerprint)
        ).fetchone()["n"]
        if used >= max_votes:
            raise HTTPException(429, "Nombre maximum de votes atteint pour cet appareil.")

        conn.execute(
            "INSERT INTO votes(session_id, candidate_id, fingerprint, created_at) VALUES(?,?,?,?)",
            (session_id, candidate_id, fingerprint, now_iso()),
        )
        conn.execute("UPDATE candidates SET likes_count = likes_count + 1 WHERE id=?", (candidate_id,))
        return conn.execute("SELECT likes_count FROM candidates WHERE id=?", (candidate_id,)).fetchone()["likes_count"]


def has_voted(candidate_id: int, fingerprint: str) -> bool:
    with db() as conn:
        return conn.execute(
            "SELECT 1 FROM votes WHERE candidate_id=? AND fingerprint=?", (candidate_id, fingerprint)
        ).fetchone() is not None


# -----------------------
# Live votes
# -----------------------
def cast_live_vote(event_id: int, candidate_id: int, fingerprint: str) -> None:
    if not fingerprint:
        raise HTTPException(400, "Empreinte manquante.")
    with db() as conn:
        event = fetch_one(conn, "live_events", event_id, "Événement introuvable.")
        if not event["is_voting_open"]:
            raise HTTPException(400, "Le vote est fermé.")
        if event["current_candidate_id"] != candidate_id:
            raise HTTPException(400, "Ce candidat n'est pas sur scène.")
        if conn.execute(
            "SELECT 1 FROM live_votes WHERE live_event_id=? AND candidate_id=? AND fingerprint=?",
            (event_id, candidate_id, fingerprint),
        ).fetchone():
            raise HTTPException(409, "Vous avez déjà voté pour ce candidat.")
        conn.execute(
            "INSERT INTO live_votes(live_event_id, candidate_id, fingerprint, created_at) VALUES(?,?,?,?)",
            (event_id, candidate_id, fingerprint, now_iso()),
        )


def live_vote_counts(event_id: int) -> Dict[int, int]:
    with db() as conn:
        rows = conn.execute(
            "SELECT candidate_id, COUNT(*) AS n FROM live_votes WHERE live_event_id=? GROUP BY candidate_id",
            (event_id,),
        ).fetchall()
    return {r["candidate_id"]: r["n"] for r in rows}


def live_voted_ids(event_id: int, fingerprint: str):
    with db() as conn:
        rows = conn.execute(
            "SELECT candidate_id FROM live_votes WHERE live_event_id=? AND fingerprint=?",
            (event_id, fingerprint),
        ).fetchall()
    return {r["candidate_id"] for r in rows}
