from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from fastapi import HTTPException
from pywebpush import WebPushException, webpush

from . import settings
from .db import db
from .utils import now_iso, utcnow

logger = logging.getLogger(__name__)

ROLES = ("public", "jury", "admin")
SEGMENT_STATUSES = {
    "approved": "approved",
    "semifinalist": "semifinalist",
    "finalist": "finalist",
}
SEGMENTS = ("all_candidates", "specific_candidate", *SEGMENT_STATUSES)

DEFAULT_ICON = "/images/pwa-icon-192.png"
DEFAULT_BADGE = "/images/pwa-badge-96.png"
PUSH_TTL = 3600


def push_enabled() -> bool:
    return bool(settings.VAPID_PUBLIC_KEY and settings.VAPID_PRIVATE_KEY)


# -----------------------
# Subscriptions
# -----------------------
def subscribe(session_id: int, endpoint: str, p256dh: str, auth: str, role: Optional[str] = None,
              juror_id: Optional[int] = None, fingerprint: Optional[str] = None) -> None:
    if not session_id or not endpoint or not p256dh or not auth:
        raise HTTPException(400, "Missing required fields")
    role = role or "public"
    if role not in ROLES:
        raise HTTPException(400, f"Invalid role: {role}")

    with db() as conn:
        # One subscription per endpoint and session
        conn.execute(
            "DELETE FROM push_subscriptions WHERE endpoint=? AND session_id=?",
            (endpoint, session_id),
        )
        conn.execute(
            """
            INSERT INTO push_subscriptions(session_id, endpoint, p256dh, auth, role, juror_id, fingerprint, created_at)
            VALUES(?,?,?,?,?,?,?,?)
            """,
            (session_id, endpoint, p256dh, auth, role, juror_id, fingerprint, now_iso()),
        )


def unsubscribe(session_id: int, endpoint: str) -> None:
    if not session_id or not endpoint:
        raise HTTPException(400, "Missing required fields")
    with db() as conn:
        conn.execute(
            "DELETE FROM push_subscriptions WHERE session_id=? AND endpoint=?",
            (session_id, endpoint),
        )


def cleanup_stale(max_age_days: int = 90) -> int:
    """Drop anonymous subscriptions older than max_age_days; juror devices are kept."""
    cutoff = (utcnow() - timedelta(days=max_age_days)).isoformat(timespec="seconds")
    with db() as conn:
        cur = conn.execute(
            "DELETE FROM push_subscriptions WHERE juror_id IS NULL AND created_at < ?",
            (cutoff,),
        )
        return cur.rowcount


# -----------------------
# Dispatch
# -----------------------
def _targets(conn, session_id: int, role: str, juror_id: Optional[int], endpoint: Optional[str],
             segment: Optional[str], candidate_id: Optional[int]) -> List:
    if segment:
        if segment not in SEGMENTS:
            raise ValueError(f"Unknown push segment: {segment}")
        # Segment targeting goes through the candidates' device fingerprints
        sql = "SELECT fingerprint FROM candidates WHERE session_id=? AND fingerprint IS NOT NULL"
        params: list = [session_id]
        if segment == "specific_candidate":
            sql += " AND id=?"
            params.append(candidate_id)
        elif segment in SEGMENT_STATUSES:
            sql += " AND status=?"
            params.append(SEGMENT_STATUSES[segment])
        fingerprints = [r["fingerprint"] for r in conn.execute(sql, params).fetchall()]
        if not fingerprints:
            return []
        placeholders = ",".join(["?"] * len(fingerprints))
        return conn.execute(
            f"SELECT id, endpoint, p256dh, auth FROM push_subscriptions "
            f"WHERE session_id=? AND fingerprint IN ({placeholders})",
            (session_id, *fingerprints),
        ).fetchall()

    sql = "SELECT id, endpoint, p256dh, auth FROM push_subscriptions WHERE session_id=?"
    params = [session_id]
    if endpoint:
        sql += " AND endpoint=?"
        params.append(endpoint)
    elif role != "all":
        sql += " AND role=?"
        params.append(role)
    if juror_id:
        sql += " AND juror_id=?"
        params.append(juror_id)
    return conn.execute(sql, params).fetchall()


def send_push(session_id: int, payload: Dict, role: str = "all", juror_id: Optional[int] = None,
              endpoint: Optional[str] = None, segment: Optional[str] = None,
              candidate_id: Optional[int] = None) -> Dict[str, int]:
    if not push_enabled():
        return {"sent": 0, "failed": 0, "expired": 0}

    with db() as conn:
        subscriptions = _targets(conn, session_id, role, juror_id, endpoint, segment, candidate_id)
    if not subscriptions:
        return {"sent": 0, "failed": 0, "expired": 0}

    data = json.dumps({"icon": DEFAULT_ICON, "badge": DEFAULT_BADGE, **payload}, ensure_ascii=False)
    sent = 0
    failed = 0
    expired_ids: List[int] = []

    for sub in subscriptions:
        try:
            webpush(
                subscription_info={"endpoint": sub["endpoint"], "keys": {"p256dh": sub["p256dh"], "auth": sub["auth"]}},
                data=data,
                vapid_private_key=settings.VAPID_PRIVATE_KEY,
                vapid_claims={"sub": settings.VAPID_SUBJECT},
                ttl=PUSH_TTL,
            )
            sent += 1
        except WebPushException as e:
            status = e.response.status_code if e.response is not None else None
            if status in (404, 410):
                expired_ids.append(sub["id"])
            else:
                logger.warning(f"Push to subscription {sub['id']} failed: {e}")
            failed += 1

    if expired_ids:
        placeholders = ",".join(["?"] * len(expired_ids))
        with db() as conn:
            conn.execute(f"DELETE FROM push_subscriptions WHERE id IN ({placeholders})", expired_ids)

    logger.info(f"Push '{payload.get('title')}' session={session_id}: sent={sent} failed={failed} expired={len(expired_ids)}")
    return {"sent": sent, "failed": failed, "expired": len(expired_ids)}


def notify(session_id: int, payload: Dict, **kwargs) -> None:
    """Fire-and-forget push: a delivery problem is logged, never raised to the caller."""
    try:
        send_push(session_id, payload, **kwargs)
    except Exception as e:
        logger.error(f"Push notification '{payload.get('title')}' failed: {e}")
