from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import HTTPException

from . import push
from .candidates import get_candidate
from .db import db, fetch_one, get_config, get_session
from .scoring import CATEGORY_ORDER
from .utils import display_name, format_timer, now_iso, parse_ts, utcnow

logger = logging.getLogger(__name__)

EVENT_TYPES = ("semifinal", "final")
EVENT_STATUSES = ("pending", "live", "paused", "completed")
LINEUP_STATUSES = ("pending", "performing", "completed", "absent")

# Chrono turns amber at this share of the recommended performance time, red past 100%
CHRONO_WARNING_RATIO = 0.8


def get_event(conn: sqlite3.Connection, event_id: int) -> sqlite3.Row:
    return fetch_one(conn, "live_events", event_id, "Événement introuvable.")


def _performing(conn: sqlite3.Connection, event_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM lineup WHERE live_event_id=? AND status='performing' ORDER BY position LIMIT 1",
        (event_id,),
    ).fetchone()


def _lineup_item(conn: sqlite3.Connection, event_id: int, candidate_id: int) -> sqlite3.Row:
    item = conn.execute(
        "SELECT * FROM lineup WHERE live_event_id=? AND candidate_id=?", (event_id, candidate_id)
    ).fetchone()
    if not item:
        raise HTTPException(404, "Ce candidat n'est pas dans la programmation.")
    return item


def _stage_audience(event: sqlite3.Row) -> str:
    # The semifinal is held behind closed doors: only the jury is notified
    return "jury" if event["event_type"] == "semifinal" else "public"


# -----------------------
# Events
# -----------------------
def create_event(session_id: int, event_type: str, ordered_ids: Optional[List[int]] = None) -> int:
    if event_type not in EVENT_TYPES:
        raise HTTPException(400, f"Type d'événement invalide : {event_type}")
    with db() as conn:
        get_session(conn, session_id)
        cur = conn.execute(
            "INSERT INTO live_events(session_id, event_type, status, created_at) VALUES(?,?,?,?)",
            (session_id, event_type, "pending", now_iso()),
        )
        event_id = cur.lastrowid

        if event_type == "final":
            if ordered_ids:
                candidate_ids = list(ordered_ids)
            else:
                finalists = conn.execute(
                    "SELECT id, category FROM candidates WHERE session_id=? AND status='finalist' ORDER BY last_name",
                    (session_id,),
                ).fetchall()
                ranked = sorted(
                    finalists,
                    key=lambda c: CATEGORY_ORDER.index(c["category"]) if c["category"] in CATEGORY_ORDER else 99,
                )
                candidate_ids = [c["id"] for c in ranked]
            conn.executemany(
                "INSERT INTO lineup(live_event_id, candidate_id, position) VALUES(?,?,?)",
                [(event_id, cid, i) for i, cid in enumerate(candidate_ids, start=1)],
            )

    logger.info(f"Created {event_type} event {event_id} for session {session_id}")
    return event_id


def update_event_status(event_id: int, status: str) -> None:
    if status not in EVENT_STATUSES:
        raise HTTPException(400, f"Statut invalide : {status}")
    with db() as conn:
        get_event(conn, event_id)
        conn.execute("UPDATE live_events SET status=? WHERE id=?", (status, event_id))


def set_current_category(event_id: int, category: Optional[str]) -> None:
    with db() as conn:
        get_event(conn, event_id)
        conn.execute("UPDATE live_events SET current_category=? WHERE id=?", (category or None, event_id))


def delete_event(event_id: int) -> None:
    with db() as conn:
        get_event(conn, event_id)
        conn.execute("DELETE FROM lineup WHERE live_event_id=?", (event_id,))
        conn.execute("DELETE FROM live_votes WHERE live_event_id=?", (event_id,))
        conn.execute("DELETE FROM live_events WHERE id=?", (event_id,))


def list_events(session_id: int, event_type: Optional[str] = None) -> List[sqlite3.Row]:
    sql = "SELECT * FROM live_events WHERE session_id=?"
    params: list = [session_id]
    if event_type:
        sql += " AND event_type=?"
        params.append(event_type)
    with db() as conn:
        return conn.execute(sql + " ORDER BY id DESC", params).fetchall()


def latest_event(session_id: int, event_type: str) -> Optional[sqlite3.Row]:
    events = list_events(session_id, event_type)
    return events[0] if events else None


# -----------------------
# Lineup
# -----------------------
def lineup(event_id: int) -> List[sqlite3.Row]:
    with db() as conn:
        return conn.execute(
            """
            SELECT l.*, c.first_name, c.last_name, c.stage_name, c.category, c.song_title, c.song_artist,
                   c.photo_url, c.slug, c.mp3_url
            FROM lineup l JOIN candidates c ON c.id = l.candidate_id
            WHERE l.live_event_id=?
            ORDER BY l.position, l.id
            """,
            (event_id,),
        ).fetchall()


def checkin_candidate(event_id: int, candidate_id: int) -> None:
    with db() as conn:
        get_event(conn, event_id)
        get_candidate(conn, candidate_id)
        if conn.execute(
            "SELECT 1 FROM lineup WHERE live_event_id=? AND candidate_id=?", (event_id, candidate_id)
        ).fetchone():
            raise HTTPException(409, "Ce candidat est déjà enregistré.")
        position = conn.execute(
            "SELECT COALESCE(MAX(position), 0) + 1 AS p FROM lineup WHERE live_event_id=?", (event_id,)
        ).fetchone()["p"]
        conn.execute(
            "INSERT INTO lineup(live_event_id, candidate_id, position, status) VALUES(?,?,?,'pending')",
            (event_id, candidate_id, position),
        )


def open_semifinal(session_id: int) -> Optional[sqlite3.Row]:
    """The most recent semifinal that still accepts check-ins."""
    with db() as conn:
        return conn.execute(
            "SELECT * FROM live_events WHERE session_id=? AND event_type='semifinal' "
            "AND status IN ('pending', 'live', 'paused') ORDER BY created_at DESC, id DESC LIMIT 1",
            (session_id,),
        ).fetchone()


def checked_in_ids(event_id: int) -> List[int]:
    with db() as conn:
        return [r["candidate_id"] for r in conn.execute(
            "SELECT candidate_id FROM lineup WHERE live_event_id=? ORDER BY position, id", (event_id,)
        )]


def self_checkin(session_id: int, candidate_id: int) -> int:
    """A semifinalist announces their arrival; returns the event they joined."""
    event = open_semifinal(session_id)
    if not event:
        raise HTTPException(400, "Aucune demi-finale n'est ouverte au check-in.")
    with db() as conn:
        candidate = get_candidate(conn, candidate_id)
    if candidate["session_id"] != session_id or candidate["status"] != "semifinalist":
        raise HTTPException(404, "Candidat introuvable.")
    checkin_candidate(event["id"], candidate_id)
    logger.info(f"Candidate {candidate_id} checked in for event {event['id']}")
    return event["id"]


def save_lineup(event_id: int, candidate_ids: List[int]) -> None:
    with db() as conn:
        get_event(conn, event_id)
        conn.execute("DELETE FROM lineup WHERE live_event_id=?", (event_id,))
        conn.executemany(
            "INSERT INTO lineup(live_event_id, candidate_id, position) VALUES(?,?,?)",
            [(event_id, cid, i) for i, cid in enumerate(candidate_ids, start=1)],
        )


def reorder_lineup(event_id: int, lineup_ids: List[int]) -> None:
    """Positions follow the given order of lineup row ids."""
    with db() as conn:
        get_event(conn, event_id)
        for position, lineup_id in enumerate(lineup_ids, start=1):
            conn.execute(
                "UPDATE lineup SET position=? WHERE id=? AND live_event_id=?", (position, lineup_id, event_id)
            )


def add_replacement(event_id: int, candidate_id: int, position: int) -> None:
    """Insert a replacement candidate at a position, shifting the following ones down."""
    with db() as conn:
        get_event(conn, event_id)
        get_candidate(conn, candidate_id)
        if conn.execute(
            "SELECT 1 FROM lineup WHERE live_event_id=? AND candidate_id=?", (event_id, candidate_id)
        ).fetchone():
            raise HTTPException(409, "Ce candidat est déjà enregistré.")
        conn.execute(
            "UPDATE lineup SET position = position + 1 WHERE live_event_id=? AND position >= ?",
            (event_id, position),
        )
        conn.execute(
            "INSERT INTO lineup(live_event_id, candidate_id, position, status) VALUES(?,?,?,'pending')",
            (event_id, candidate_id, position),
        )


# -----------------------
# Stage control
# -----------------------
def call_to_stage(event_id: int, candidate_id: int) -> None:
    with db() as conn:
        event = get_event(conn, event_id)
        item = _lineup_item(conn, event_id, candidate_id)
        previous = _performing(conn, event_id)
        if previous and previous["id"] != item["id"]:
            _complete(conn, event_id, previous)
        conn.execute(
            """
            UPDATE lineup SET status='performing', started_at=?, ended_at=NULL,
                              vote_opened_at=NULL, vote_closed_at=NULL
            WHERE id=?
            """,
            (now_iso(), item["id"]),
        )
        conn.execute(
            "UPDATE live_events SET current_candidate_id=?, status='live', is_voting_open=0 WHERE id=?",
            (candidate_id, event_id),
        )
        name = display_name(get_candidate(conn, candidate_id))

    audience = _stage_audience(event)
    push.notify(
        event["session_id"],
        {
            "title": f"{name} monte sur scène !",
            "body": "Préparez-vous à noter." if audience == "jury" else "Regardez la performance en direct !",
            "tag": "on-stage",
        },
        role=audience,
    )


def open_voting(event_id: int) -> None:
    now = now_iso()
    with db() as conn:
        event = get_event(conn, event_id)
        item = _performing(conn, event_id)
        if not item:
            raise HTTPException(400, "Aucun candidat sur scène.")
        # Opening the vote freezes the performance chrono
        conn.execute(
            "UPDATE lineup SET ended_at=COALESCE(ended_at, ?), vote_opened_at=?, vote_closed_at=NULL WHERE id=?",
            (now, now, item["id"]),
        )
        conn.execute("UPDATE live_events SET is_voting_open=1 WHERE id=?", (event_id,))
        name = display_name(get_candidate(conn, item["candidate_id"]))

    if _stage_audience(event) == "jury":
        payload = {
            "title": "C'est à vous de noter !",
            "body": f"{name} a terminé sa prestation. Notez maintenant !",
            "tag": "jury-score",
        }
    else:
        payload = {"title": "Le vote est ouvert !", "body": f"Votez maintenant pour {name} !", "tag": "vote-open"}
    push.notify(event["session_id"], payload, role=_stage_audience(event))


def close_voting(event_id: int) -> None:
    with db() as conn:
        event = get_event(conn, event_id)
        item = _performing(conn, event_id)
        if item:
            conn.execute("UPDATE lineup SET vote_closed_at=? WHERE id=?", (now_iso(), item["id"]))
        conn.execute("UPDATE live_events SET is_voting_open=0 WHERE id=?", (event_id,))

    if event["event_type"] == "final":
        push.notify(
            event["session_id"],
            {"title": "Le vote est fermé", "body": "Merci pour vos votes !", "tag": "vote-close"},
            role="public",
        )


def _complete(conn: sqlite3.Connection, event_id: int, item: sqlite3.Row) -> None:
    now = now_iso()
    conn.execute(
        """
        UPDATE lineup SET status='completed', ended_at=COALESCE(ended_at, ?),
                          vote_opened_at=COALESCE(vote_opened_at, ?), vote_closed_at=?
        WHERE id=?
        """,
        (now, now, now, item["id"]),
    )
    conn.execute(
        "UPDATE live_events SET current_candidate_id=NULL, is_voting_open=0 WHERE id=?", (event_id,)
    )


def finish_performance(event_id: int) -> None:
    with db() as conn:
        get_event(conn, event_id)
        item = _performing(conn, event_id)
        if not item:
            raise HTTPException(400, "Aucun candidat sur scène.")
        _complete(conn, event_id, item)


def advance_to_next(event_id: int) -> Optional[int]:
    """Complete the performer and put the next pending candidate on stage. Returns its id or None."""
    with db() as conn:
        get_event(conn, event_id)
        item = _performing(conn, event_id)
        if item:
            _complete(conn, event_id, item)
        upcoming = conn.execute(
            "SELECT candidate_id FROM lineup WHERE live_event_id=? AND status='pending' ORDER BY position, id LIMIT 1",
            (event_id,),
        ).fetchone()

    if not upcoming:
        logger.info(f"Event {event_id}: lineup finished")
        return None
    call_to_stage(event_id, upcoming["candidate_id"])
    return upcoming["candidate_id"]


def replay_candidate(event_id: int, candidate_id: int) -> None:
    with db() as conn:
        get_event(conn, event_id)
        item = _lineup_item(conn, event_id, candidate_id)
        previous = _performing(conn, event_id)
        if previous and previous["id"] != item["id"]:
            _complete(conn, event_id, previous)
        conn.execute(
            """
            UPDATE lineup SET status='performing', started_at=?, ended_at=NULL,
                              vote_opened_at=NULL, vote_closed_at=NULL
            WHERE id=?
            """,
            (now_iso(), item["id"]),
        )
        conn.execute(
            "UPDATE live_events SET current_candidate_id=?, is_voting_open=0 WHERE id=?", (candidate_id, event_id)
        )


def mark_absent(event_id: int, candidate_id: int) -> None:
    with db() as conn:
        event = get_event(conn, event_id)
        item = _lineup_item(conn, event_id, candidate_id)
        conn.execute("UPDATE lineup SET status='absent' WHERE id=?", (item["id"],))
        if event["current_candidate_id"] == candidate_id:
            conn.execute(
                "UPDATE live_events SET current_candidate_id=NULL, is_voting_open=0 WHERE id=?", (event_id,)
            )


# -----------------------
# Winner
# -----------------------
def reveal_winner(event_id: int, candidate_id: int) -> None:
    with db() as conn:
        event = get_event(conn, event_id)
        winner = get_candidate(conn, candidate_id)
        conn.execute(
            "UPDATE live_events SET winner_candidate_id=?, winner_revealed_at=? WHERE id=?",
            (candidate_id, now_iso(), event_id),
        )
        conn.execute("UPDATE candidates SET status='winner', updated_at=? WHERE id=?", (now_iso(), candidate_id))

    prize = f"la catégorie {winner['category']}" if winner["category"] else "le concours"
    push.notify(
        event["session_id"],
        {
            "title": f"{display_name(winner)} remporte {prize} !",
            "body": "Félicitations au gagnant de ChanteEnScène !",
            "tag": "winner-reveal",
        },
        role="all",
    )


def reset_winner_reveal(event_id: int) -> None:
    with db() as conn:
        event = get_event(conn, event_id)
        if event["winner_candidate_id"]:
            conn.execute(
                "UPDATE candidates SET status='finalist' WHERE id=? AND status='winner'",
                (event["winner_candidate_id"],),
            )
        conn.execute(
            "UPDATE live_events SET winner_candidate_id=NULL, winner_revealed_at=NULL WHERE id=?", (event_id,)
        )


# -----------------------
# Derived state
# -----------------------
def _seconds_between(start: Optional[str], end: Optional[datetime]) -> int:
    began = parse_ts(start)
    if not began or not end:
        return 0
    return max(0, int((end - began).total_seconds()))


def chrono_color(elapsed: int, recommended: int) -> str:
    if recommended <= 0:
        return "green"
    if elapsed >= recommended:
        return "red"
    if elapsed >= recommended * CHRONO_WARNING_RATIO:
        return "amber"
    return "green"


def live_state(event_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Everything the stage screens need, recomputed from the stored timestamps."""
    now = now or utcnow()
    with db() as conn:
        event = get_event(conn, event_id)
        config = get_config(conn, event["session_id"])
    items = lineup(event_id)

    current = next((i for i in items if i["status"] == "performing"), None)
    upcoming = next((i for i in items if i["status"] == "pending"), None)
    recommended = int(config.get("performance_recommended_sec") or 180)
    vote_duration = int(config.get("vote_duration_sec") or 60)

    state: Dict[str, Any] = {
        "event_id": event["id"],
        "event_type": event["event_type"],
        "status": event["status"],
        "current_category": event["current_category"],
        "is_voting_open": bool(event["is_voting_open"]),
        "current": None,
        "next": None,
        "performance_elapsed": 0,
        "performance_timer": format_timer(0),
        "chrono_color": "green",
        "vote_phase": False,
        "vote_elapsed": 0,
        "vote_countdown": vote_duration,
        "vote_timer": format_timer(vote_duration),
        "winner_candidate_id": event["winner_candidate_id"],
        "winner_revealed": bool(event["winner_revealed_at"]),
        "completed": sum(1 for i in items if i["status"] == "completed"),
        "total": len(items),
    }

    if upcoming:
        state["next"] = {"candidate_id": upcoming["candidate_id"], "name": display_name(upcoming)}

    if current:
        perf_end = parse_ts(current["ended_at"]) or now
        elapsed = _seconds_between(current["started_at"], perf_end)
        vote_phase = bool(current["vote_opened_at"]) and not current["vote_closed_at"]
        vote_elapsed = _seconds_between(current["vote_opened_at"], parse_ts(current["vote_closed_at"]) or now)
        countdown = max(0, vote_duration - vote_elapsed) if current["vote_opened_at"] else vote_duration
        state.update(
            current={
                "candidate_id": current["candidate_id"],
                "name": display_name(current),
                "category": current["category"],
                "song_title": current["song_title"],
                "song_artist": current["song_artist"],
                "photo_url": current["photo_url"],
            },
            performance_elapsed=elapsed,
            performance_timer=format_timer(elapsed),
            chrono_color=chrono_color(elapsed, recommended),
            vote_phase=vote_phase,
            vote_elapsed=vote_elapsed,
            vote_countdown=countdown,
            vote_timer=format_timer(countdown),
        )
    return state
