from __future__ import annotations

import logging
import sqlite3
from datetime import date, timedelta
from typing import Dict, Optional

from .db import load_json
from .utils import now_iso, parse_day

logger = logging.getLogger(__name__)

SESSION_STATUSES = [
    "draft",
    "registration_open",
    "registration_closed",
    "semifinal",
    "final",
    "archived",
]

STATUS_LABELS: Dict[str, str] = {
    "draft": "Brouillon",
    "registration_open": "Inscriptions ouvertes",
    "registration_closed": "Inscriptions fermées",
    "semifinal": "Demi-finale",
    "final": "Finale",
    "archived": "Archivée",
}

NEXT_LABELS: Dict[str, str] = {
    "draft": "Ouvrir les inscriptions",
    "registration_open": "Clôturer les inscriptions",
    "registration_closed": "Passer en demi-finale",
    "semifinal": "Passer à la finale",
    "final": "Archiver la session",
}

# Config date field stamped with today's date when a session enters the phase
PHASE_DATE_FIELDS: Dict[str, str] = {
    "registration_open": "registration_start",
    "registration_closed": "registration_end",
    "semifinal": "semifinal_date",
    "final": "final_date",
}

# Overridable per session via config["custom_phase_notifications"][status]
PHASE_PUSH_MESSAGES: Dict[str, Dict[str, str]] = {
    "registration_open": {
        "title": "Les inscriptions sont ouvertes !",
        "body": "Inscrivez-vous dès maintenant au concours ChanteEnScène 🎤",
    },
    "registration_closed": {
        "title": "Inscriptions fermées — Votes ouverts !",
        "body": "Découvrez les candidats et votez pour vos favoris ❤️",
    },
    "semifinal": {
        "title": "La demi-finale commence !",
        "body": "Suivez la demi-finale en direct sur l'app 🌟",
    },
    "final": {
        "title": "C'est la finale !",
        "body": "Qui sera le grand gagnant ? Suivez la finale en direct 🏆",
    },
}


def status_index(status: str) -> int:
    try:
        return SESSION_STATUSES.index(status)
    except ValueError:
        return -1


def next_status(current: str) -> Optional[str]:
    idx = status_index(current)
    if idx < 0 or idx >= len(SESSION_STATUSES) - 1:
        return None
    return SESSION_STATUSES[idx + 1]


def is_at_or_past(current: str, target: str) -> bool:
    return status_index(current) >= status_index(target)


def is_before(current: str, target: str) -> bool:
    return status_index(current) < status_index(target)


def timeline_step(status: str) -> int:
    """Homepage timeline: 0 before registration ... 4 grand final."""
    return {
        "draft": 0,
        "registration_open": 1,
        "registration_closed": 2,
        "semifinal": 3,
        "final": 4,
        "archived": 4,
    }.get(status, 0)


def phase_message(status: str, config: Dict) -> Optional[Dict[str, str]]:
    custom = (config.get("custom_phase_notifications") or {}).get(status)
    return custom or PHASE_PUSH_MESSAGES.get(status)


def due_status(status: str, config: Dict, today: date) -> Optional[str]:
    """Status the session should be in given its configured dates, or None."""
    if status == "draft":
        start = parse_day(config.get("registration_start"))
        if start and today >= start:
            return "registration_open"
    if status == "registration_open":
        end = parse_day(config.get("registration_end"))
        # Registrations close the day after the end date
        if end and today >= end + timedelta(days=1):
            return "registration_closed"
    return None


def auto_advance_status(conn: sqlite3.Connection, session: sqlite3.Row, today: date) -> str:
    config = load_json(session["config"])
    new_status = due_status(session["status"], config, today)
    if not new_status:
        return session["status"]

    try:
        conn.execute(
            "UPDATE sessions SET status=?, updated_at=? WHERE id=?",
            (new_status, now_iso(), session["id"]),
        )
    except sqlite3.Error as e:
        logger.error(f"Auto-advance failed for session {session['id']}: {e}")
        return session["status"]

    logger.info(f"Session {session['id']} auto-advanced {session['status']} -> {new_status}")
    return new_status
