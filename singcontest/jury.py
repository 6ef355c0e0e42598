from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Mapping, Optional

from fastapi import HTTPException

from . import emails, settings
from .candidates import PUBLIC_STATUSES, get_candidate
from .db import active_session, db, dump_json, fetch_one, get_config, get_session, load_json
from .utils import new_token, now_iso

logger = logging.getLogger(__name__)

JUROR_ROLES = ("online", "semifinal", "final")
DECISION_POINTS = {"oui": 2, "peut-etre": 1, "non": 0}
MAX_STARS = 5
MAX_CRITERION_SCORE = 5


def get_juror(conn: sqlite3.Connection, juror_id: int) -> sqlite3.Row:
    return fetch_one(conn, "jurors", juror_id, "Juré non trouvé")


def juror_name(juror: Mapping) -> str:
    return f"{juror['first_name'] or ''} {juror['last_name'] or ''}".strip() or "Juré"


# -----------------------
# Management
# -----------------------
def add_juror(session_id: int, first_name: str, last_name: str, role: str, email: str = "") -> Dict[str, Any]:
    if role not in JUROR_ROLES:
        raise HTTPException(400, f"Rôle invalide : {role}")
    clean_email = (email or "").strip().lower() or None
    with db() as conn:
        get_session(conn, session_id)
        cur = conn.execute(
            """
            INSERT INTO jurors(session_id, first_name, last_name, email, role, qr_token, created_at)
            VALUES(?,?,?,?,?,?,?)
            """,
            (session_id, first_name.strip(), last_name.strip(), clean_email, role, new_token(), now_iso()),
        )
        juror_id = cur.lastrowid
        token = conn.execute("SELECT qr_token FROM jurors WHERE id=?", (juror_id,)).fetchone()["qr_token"]

    email_sent = False
    if clean_email:
        try:
            email_sent = send_jury_invitation(juror_id) in ("sent", "simulated")
        except HTTPException as e:
            logger.error(f"Invitation for juror {juror_id} not sent: {e.detail}")
    return {"id": juror_id, "qr_token": token, "email_sent": email_sent}


def toggle_juror(juror_id: int, is_active: bool) -> None:
    with db() as conn:
        get_juror(conn, juror_id)
        conn.execute("UPDATE jurors SET is_active=? WHERE id=?", (1 if is_active else 0, juror_id))


def delete_juror(juror_id: int) -> None:
    with db() as conn:
        get_juror(conn, juror_id)
        conn.execute("DELETE FROM jury_scores WHERE juror_id=?", (juror_id,))
        conn.execute("DELETE FROM jurors WHERE id=?", (juror_id,))


def send_jury_invitation(juror_id: int) -> str:
    with db() as conn:
        juror = get_juror(conn, juror_id)
        session = get_session(conn, juror["session_id"])
    if not juror["email"]:
        raise HTTPException(400, "Ce juré n'a pas d'email")

    mail = emails.jury_invitation_email(
        juror_name(juror),
        juror["role"],
        session["name"],
        f"{settings.SITE_URL}/jury/{juror['qr_token']}",
        f"{settings.SITE_URL}/jury",
    )
    result = emails.send_email(juror["email"], mail["subject"], mail["html"])
    if result["status"] == "failed":
        raise HTTPException(502, f"Échec d'envoi: {result['detail']}")
    return result["status"]


def list_jurors(session_id: int, role: Optional[str] = None) -> List[sqlite3.Row]:
    sql = "SELECT * FROM jurors WHERE session_id=?"
    params: list = [session_id]
    if role:
        sql += " AND role=?"
        params.append(role)
    with db() as conn:
        return conn.execute(sql + " ORDER BY last_name, first_name", params).fetchall()


# -----------------------
# Login
# -----------------------
def login_juror(email: str) -> str:
    """Return the juror's access token for the active session."""
    with db() as conn:
        session = active_session(conn)
        if not session:
            raise HTTPException(404, "Aucune session active pour le moment.")
        juror = conn.execute(
            "SELECT qr_token, role FROM jurors WHERE session_id=? AND email=? AND is_active=1",
            (session["id"], (email or "").strip().lower()),
        ).fetchone()
    if not juror:
        raise HTTPException(404, "Aucun compte jury trouvé avec cet email.")

    # Online jury stays open until the admin closes it
    if juror["role"] == "online" and load_json(session["config"]).get("jury_online_voting_closed"):
        raise HTTPException(403, "Le jury en ligne est terminé. Merci pour votre participation !")
    return juror["qr_token"]


def track_juror_login(juror_id: int) -> None:
    with db() as conn:
        conn.execute(
            "UPDATE jurors SET login_count = login_count + 1, last_login_at=? WHERE id=?",
            (now_iso(), juror_id),
        )


def complete_onboarding(juror_id: int) -> None:
    with db() as conn:
        conn.execute("UPDATE jurors SET onboarding_done=1 WHERE id=?", (juror_id,))


# -----------------------
# Scoring
# -----------------------
def _require_on_stage(conn: sqlite3.Connection, session_id: int, event_type: str, candidate_id: int) -> None:
    item = conn.execute(
        """
        SELECT l.vote_opened_at, l.vote_closed_at
        FROM lineup l JOIN live_events e ON e.id = l.live_event_id
        WHERE e.session_id=? AND e.event_type=? AND e.current_candidate_id=? AND l.candidate_id=?
          AND l.status='performing'
        ORDER BY e.id DESC LIMIT 1
        """,
        (session_id, event_type, candidate_id, candidate_id),
    ).fetchone()
    if not item:
        raise HTTPException(400, "Ce candidat n'est pas sur scène.")
    if not item["vote_opened_at"]:
        raise HTTPException(400, "Le vote n'est pas encore ouvert.")
    if item["vote_closed_at"]:
        raise HTTPException(400, "Le vote est fermé pour ce candidat.")


def score_payload(role: str, payload: Mapping[str, Any], criteria: List[Dict]) -> Dict[str, Any]:
    """Validate a juror's input and return {"scores": ..., "total_score": ...}."""
    if role == "online":
        decision = payload.get("decision")
        if decision not in DECISION_POINTS:
            raise HTTPException(400, "Décision invalide.")
        return {"scores": {"decision": decision}, "total_score": DECISION_POINTS[decision]}

    if role == "semifinal":
        try:
            stars = int(payload.get("stars") or 0)
        except (TypeError, ValueError):
            raise HTTPException(400, "Note invalide.")
        if stars < 1 or stars > MAX_STARS:
            raise HTTPException(400, f"La note doit être comprise entre 1 et {MAX_STARS}.")
        return {"scores": {"stars": stars}, "total_score": stars}

    if role == "final":
        if not criteria:
            raise HTTPException(400, "Aucun critère configuré.")
        scores: Dict[str, int] = {}
        for c in criteria:
            try:
                v = int(payload.get(c["name"]) or 0)
            except (TypeError, ValueError):
                raise HTTPException(400, f"Note invalide pour {c['name']}.")
            if v < 1 or v > MAX_CRITERION_SCORE:
                raise HTTPException(400, f"Tous les critères doivent être notés (1 à {MAX_CRITERION_SCORE}).")
            scores[c["name"]] = v
        return {"scores": scores, "total_score": sum(scores.values())}

    raise HTTPException(400, f"Rôle invalide : {role}")


def submit_score(juror: Mapping, candidate_id: int, payload: Mapping[str, Any]) -> float:
    role = juror["role"]
    session_id = juror["session_id"]
    with db() as conn:
        candidate = get_candidate(conn, candidate_id)
        if candidate["session_id"] != session_id:
            raise HTTPException(404, "Candidat introuvable.")
        config = get_config(conn, session_id)

        if role == "online":
            if config.get("jury_online_voting_closed"):
                raise HTTPException(403, "Le jury en ligne est terminé. Merci pour votre participation !")
            if candidate["status"] not in PUBLIC_STATUSES:
                raise HTTPException(400, "Ce candidat n'est pas encore validé.")
        else:
            _require_on_stage(conn, session_id, role, candidate_id)

        data = score_payload(role, payload, config.get("jury_criteria") or [])
        now = now_iso()
        conn.execute(
            """
            INSERT INTO jury_scores(session_id, juror_id, candidate_id, event_type, scores, total_score, comment, created_at)
            VALUES(?,?,?,?,?,?,?,?)
            ON CONFLICT(juror_id, candidate_id, event_type)
            DO UPDATE SET scores=excluded.scores, total_score=excluded.total_score,
                          comment=excluded.comment, updated_at=?
            """,
            (session_id, juror["id"], candidate_id, role, dump_json(data["scores"]), data["total_score"],
             (payload.get("comment") or "").strip() or None, now, now),
        )
    return data["total_score"]


def juror_scores(juror_id: int) -> Dict[int, sqlite3.Row]:
    with db() as conn:
        rows = conn.execute("SELECT * FROM jury_scores WHERE juror_id=?", (juror_id,)).fetchall()
    return {r["candidate_id"]: r for r in rows}


def jury_score_count(session_id: int, candidate_id: int, event_type: str) -> int:
    with db() as conn:
        return conn.execute(
            "SELECT COUNT(*) AS n FROM jury_scores WHERE session_id=? AND candidate_id=? AND event_type=?",
            (session_id, candidate_id, event_type),
        ).fetchone()["n"]


def reset_jury_scores(session_id: int, candidate_id: int, event_type: str) -> int:
    with db() as conn:
        cur = conn.execute(
            "DELETE FROM jury_scores WHERE session_id=? AND candidate_id=? AND event_type=?",
            (session_id, candidate_id, event_type),
        )
    logger.info(f"Reset {cur.rowcount} {event_type} scores for candidate {candidate_id}")
    return cur.rowcount
