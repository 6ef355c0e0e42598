from __future__ import annotations

import logging
import os
import sqlite3
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo

from . import analytics, emails, push, settings, social
from .db import active_session, db, get_config, load_json, save_config
from .phases import auto_advance_status, phase_message
from .sessions import active_subscribers, update_session_status
from .utils import display_name, parse_day, parse_ts, today_local, utcnow

logger = logging.getLogger(__name__)

REMINDER_DAYS = (5, 0)
PUSH_MAX_AGE_DAYS = 90


def current_session(conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
    """The active session, or the most recent one still running."""
    return active_session(conn) or conn.execute(
        "SELECT * FROM sessions WHERE status != 'archived' ORDER BY created_at DESC, id DESC LIMIT 1"
    ).fetchone()


# -----------------------
# Phases
# -----------------------
def run_auto_advance(today: Optional[date] = None) -> Dict[str, Any]:
    today = today or today_local()
    with db() as conn:
        session = current_session(conn)
        if not session:
            return {"advanced": False, "message": "No active session"}
        new_status = auto_advance_status(conn, session, today)

    if new_status == session["status"]:
        return {"advanced": False, "status": new_status}

    message = phase_message(new_status, load_json(session["config"]))
    if message:
        push.notify(
            session["id"],
            {"title": message["title"], "body": message["body"], "url": f"{settings.SITE_URL}/{session['slug']}"},
            role="public",
        )
    return {"advanced": True, "from": session["status"], "status": new_status}


def run_push_cleanup() -> Dict[str, int]:
    removed = push.cleanup_stale(PUSH_MAX_AGE_DAYS)
    logger.info(f"Removed {removed} stale push subscriptions")
    return {"removed": removed}


# -----------------------
# Inscription reminder
# -----------------------
def run_inscription_reminder(today: Optional[date] = None) -> Dict[str, Any]:
    """
    Five days before registrations open, and on the opening day, email the
    subscribers and push the public. The opening day also opens registrations.
    """
    today = today or today_local()
    with db() as conn:
        session = current_session(conn)
    if not session or session["status"] != "draft":
        return {"sent": False, "message": "No draft session"}

    config = load_json(session["config"])
    opening = parse_day(config.get("registration_start"))
    if not opening:
        return {"sent": False, "message": "No registration_start configured"}
    days_left = (opening - today).days
    if days_left not in REMINDER_DAYS:
        return {"sent": False, "days_left": days_left}
    if config.get("last_inscription_reminder") == today.isoformat():
        return {"sent": False, "message": "Already sent today"}

    session_url = f"{settings.SITE_URL}/{session['slug']}"
    sent = 0
    failed = 0
    for subscriber in active_subscribers(session["id"]):
        unsubscribe_url = f"{settings.SITE_URL}/unsubscribe/{subscriber['token']}"
        mail = emails.inscription_reminder_email(
            session["name"], days_left, opening.isoformat(), f"{session_url}/inscription", unsubscribe_url
        )
        error = emails.send_smtp(
            subscriber["email"], mail["subject"], mail["html"], headers={"List-Unsubscribe": f"<{unsubscribe_url}>"}
        )
        if error:
            failed += 1
        else:
            sent += 1

    if days_left == 0:
        update_session_status(session["id"], "registration_open")
        payload = {"title": "Les inscriptions sont ouvertes !", "body": f"Inscrivez-vous à {session['name']} 🎤"}
    else:
        payload = {
            "title": f"Inscriptions dans {days_left} jours !",
            "body": f"Préparez-vous pour {session['name']} 🎤",
        }
    push.notify(session["id"], {**payload, "url": f"{session_url}/inscription"}, role="public")

    with db() as conn:
        config = get_config(conn, session["id"])
        config["last_inscription_reminder"] = today.isoformat()
        save_config(conn, session["id"], config)

    logger.info(f"Inscription reminder J-{days_left} session={session['id']}: sent={sent} failed={failed}")
    return {"sent": True, "days_left": days_left, "emails_sent": sent, "emails_failed": failed}


# -----------------------
# Jury recap
# -----------------------
def run_jury_recap(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    week_ago = (now - timedelta(days=7)).isoformat(timespec="seconds")
    with db() as conn:
        session = current_session(conn)
        if not session:
            return {"sent": 0, "message": "No active session"}
        if load_json(session["config"]).get("jury_online_voting_closed"):
            return {"sent": 0, "message": "Online jury closed"}

        jurors = conn.execute(
            "SELECT * FROM jurors WHERE session_id=? AND role='online' AND is_active=1 AND email IS NOT NULL",
            (session["id"],),
        ).fetchall()
        total = conn.execute(
            "SELECT COUNT(*) AS n FROM candidates WHERE session_id=? AND status IN ('approved', 'semifinalist')",
            (session["id"],),
        ).fetchone()["n"]

        recaps = []
        for juror in jurors:
            voted = conn.execute(
                "SELECT COUNT(*) AS n FROM jury_scores WHERE juror_id=? AND event_type='online'", (juror["id"],)
            ).fetchone()["n"]
            fresh = conn.execute(
                """
                SELECT first_name, last_name, stage_name, category, song_title FROM candidates
                WHERE session_id=? AND status='approved' AND created_at >= ?
                  AND id NOT IN (SELECT candidate_id FROM jury_scores WHERE juror_id=? AND event_type='online')
                ORDER BY created_at DESC
                """,
                (session["id"], week_ago, juror["id"]),
            ).fetchall()
            recaps.append((juror, voted, fresh))

    sent = 0
    for juror, voted, fresh in recaps:
        name = f"{juror['first_name'] or ''} {juror['last_name'] or ''}".strip() or "Juré"
        mail = emails.jury_recap_email(
            name,
            session["name"],
            total,
            voted,
            f"{settings.SITE_URL}/jury/{juror['qr_token']}",
            [
                {"name": c["stage_name"] or f"{c['first_name']} {c['last_name']}", "category": c["category"],
                 "song_title": c["song_title"]}
                for c in fresh
            ],
        )
        if emails.send_email(juror["email"], mail["subject"], mail["html"])["status"] != "failed":
            sent += 1
    return {"sent": sent, "jurors": len(recaps)}


# -----------------------
# Admin report
# -----------------------
def run_admin_report(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    with db() as conn:
        session = current_session(conn)
    if not session:
        return {"sent": False, "message": "No active session"}

    config = load_json(session["config"])
    frequency = config.get("report_frequency") or "disabled"
    recipient = config.get("report_email") or ""
    if frequency == "disabled" or not recipient:
        return {"sent": False, "message": "Reports disabled or no email configured"}

    last_sent = parse_ts(config.get("last_report_sent_at"))
    interval = timedelta(hours=analytics.FREQUENCY_HOURS.get(frequency, 24))
    if last_sent and now - last_sent < interval:
        return {"sent": False, "message": "Too soon for next report"}

    report = analytics.admin_report(session["id"], frequency)
    mail = emails.admin_report_email(session["name"], report)
    result = emails.send_email(recipient, mail["subject"], mail["html"])
    if result["status"] == "failed":
        return {"sent": False, "message": result["detail"]}

    with db() as conn:
        config = get_config(conn, session["id"])
        config["last_report_sent_at"] = now.isoformat(timespec="seconds")
        save_config(conn, session["id"], config)
    return {"sent": True, "status": result["status"]}


# -----------------------
# Social posts
# -----------------------
LISTED_STATUSES = ("approved", "semifinalist", "finalist")
REGISTRATION_COUNTDOWN = (30, 14, 7, 3, 1)
PHASE_COUNTDOWN_DAYS = 7


def _days(n: int) -> str:
    return f"{n} jour{'s' if n > 1 else ''}"


def generate_posts(session: Mapping, total_candidates: int, new_candidates: List[Mapping],
                   today: date) -> List[Dict[str, Any]]:
    """
    Candidate posts for one session, most important first (lower priority value).
    Only the first one is published on a given day.
    """
    config = load_json(session["config"])
    status = session["status"]
    name = session["name"]
    url = f"{settings.SITE_URL}/{session['slug']}"
    posts: List[Dict[str, Any]] = []

    def add(post_type: str, priority: int, message: str, link: str) -> None:
        posts.append({"type": post_type, "priority": priority, "message": message, "link": link})

    def days_until(key: str) -> Optional[int]:
        day = parse_day(config.get(key))
        return (day - today).days if day else None

    if new_candidates and status == "registration_open":
        if len(new_candidates) == 1:
            c = new_candidates[0]
            link = f"{url}/candidats/{c['slug']}"
            add("new_candidate_welcome", 1,
                f"🎤 Bienvenue à {display_name(c)} qui rejoint l'aventure {name} ! Bonne chance ! 🍀\n\n"
                f"Découvrez son profil 👉 {link}\n\n#ChanteEnScène #ConcoursDeChant", link)
        elif len(new_candidates) <= 5:
            names = ", ".join(c["stage_name"] or c["first_name"] for c in new_candidates)
            add("new_candidates_welcome", 1,
                f"🎤 {len(new_candidates)} nouveaux candidats rejoignent {name} !\n\n"
                f"Bienvenue à {names} ! Bonne chance à tous ! 🍀\n\n"
                f"Découvrez-les 👉 {url}/candidats\n\n#ChanteEnScène #ConcoursDeChant", f"{url}/candidats")
        else:
            add("new_candidates_wave", 1,
                f"🔥 {len(new_candidates)} nouveaux candidats ont rejoint {name} ! La compétition s'annonce intense !\n\n"
                f"Découvrez-les tous 👉 {url}/candidats\n\n#ChanteEnScène #ConcoursDeChant", f"{url}/candidats")

    left = days_until("registration_end")
    if status == "registration_open" and total_candidates >= 5 and left in REGISTRATION_COUNTDOWN:
        add("countdown_registration_close", 2,
            f"⏳ Plus que {_days(left)} pour s'inscrire à {name} !\n\n"
            f"Ne manquez pas votre chance de monter sur scène ! 🎤\n\n"
            f"Inscription 👉 {url}/inscription\n\n#ChanteEnScène #DernièreChance", f"{url}/inscription")

    left = days_until("semifinal_date")
    if left is not None and 0 < left <= PHASE_COUNTDOWN_DAYS:
        add("countdown_semifinal", 2,
            f"🔥 Plus que {_days(left)} avant la demi-finale de {name} !\n\n"
            f"Qui passera en finale ? 🎶\n\n{url}/live\n\n#ChanteEnScène #DemiFinale", f"{url}/live")

    left = days_until("final_date")
    if left is not None and 0 < left <= PHASE_COUNTDOWN_DAYS:
        add("countdown_final", 2,
            f"🏆 Plus que {_days(left)} avant la GRANDE FINALE de {name} !\n\n"
            f"Qui sera le grand gagnant ? 🎤🔥\n\n{url}/live\n\n#ChanteEnScène #Finale", f"{url}/live")

    # Thursday
    if today.weekday() == 3 and total_candidates > 0 and status in ("registration_open", "registration_closed"):
        add("voting_reminder", 3,
            f"🗳️ Avez-vous voté pour votre candidat préféré de {name} ?\n\n"
            f"Chaque vote compte ! Soutenez vos favoris 👉 {url}/candidats\n\n#ChanteEnScène #Votez",
            f"{url}/candidats")

    # Monday
    if today.weekday() == 0:
        if status == "registration_open":
            add("weekly_promo", 4,
                f"🎵 Les inscriptions pour {name} sont ouvertes !\n\n"
                f"Vous avez du talent ? Tentez votre chance et montez sur scène ! 🎤✨\n\n"
                f"Inscrivez-vous 👉 {url}/inscription\n\n#ChanteEnScène #ConcoursDeChant #LaSceneEstAToi",
                f"{url}/inscription")
        elif status in ("registration_closed", "semifinal", "final"):
            add("weekly_promo", 4,
                f"🎵 {name} bat son plein ! {total_candidates} candidats en lice !\n\n"
                f"Suivez la compétition et votez pour vos favoris 🗳️🎤\n\n"
                f"👉 {url}/candidats\n\n#ChanteEnScène #ConcoursDeChant #VoteEnDirect", f"{url}/candidats")

    posts.sort(key=lambda p: p["priority"])
    return posts


def _social_sessions(conn: sqlite3.Connection) -> List[sqlite3.Row]:
    rows = conn.execute("SELECT * FROM sessions WHERE is_active=1 ORDER BY id").fetchall()
    if rows:
        return rows
    fallback = current_session(conn)
    return [fallback] if fallback else []


def _publish(session_id: int, post_type: str, source: str, message: str, image_url: Optional[str],
             link: Optional[str], now: datetime) -> Dict[str, Dict]:
    """Publish and log one post. Any failure ends up in the log instead of aborting the run."""
    try:
        result = social.publish_everywhere(message, image_url, link)
    except Exception as e:
        logger.exception(f"Social post '{post_type}' for session {session_id} failed")
        result = {"facebook": {"error": str(e)}}
    social.log_post(session_id, post_type, source, message, link, result,
                    created_at=now.isoformat(timespec="seconds"))
    return result


def _run_schedule(session_id: int, now: datetime) -> int:
    """Publish the due config["social_schedule"] entries; each one is marked as posted before going out."""
    with db() as conn:
        schedule = get_config(conn, session_id).get("social_schedule") or []
    posted = 0
    for i, entry in enumerate(schedule):
        due = parse_ts(entry.get("at"))
        if entry.get("posted_at") or not due or due > now:
            continue
        _save_entry(session_id, i, posted_at=now.isoformat(timespec="seconds"))
        result = _publish(session_id, "scheduled", "schedule", entry["message"], entry.get("image_url"),
                          entry.get("link"), now)
        errors = [r["error"] for r in result.values() if "error" in r]
        changes = {"result": {network: ("error" if "error" in r else "ok") for network, r in result.items()}}
        if errors:
            changes["errors"] = errors
            logger.error(f"Scheduled post for session {session_id} failed: {errors}")
        _save_entry(session_id, i, **changes)
        posted += 1
    return posted


def _save_entry(session_id: int, index: int, **changes: Any) -> None:
    with db() as conn:
        config = get_config(conn, session_id)
        config["social_schedule"][index].update(changes)
        save_config(conn, session_id, config)


def _run_daily_post(session: sqlite3.Row, now: datetime, today: date) -> Optional[Dict[str, Any]]:
    """At most one generated post per session and per local day."""
    day_start = datetime.combine(today, time.min, tzinfo=ZoneInfo(settings.TIMEZONE)).astimezone(timezone.utc)
    since = (now - timedelta(hours=24)).isoformat(timespec="seconds")
    with db() as conn:
        already = conn.execute(
            "SELECT 1 FROM social_posts_log WHERE session_id=? AND source='cron' AND created_at >= ?",
            (session["id"], day_start.isoformat(timespec="seconds")),
        ).fetchone()
        if already:
            return None
        marks = ",".join("?" * len(LISTED_STATUSES))
        total = conn.execute(
            f"SELECT COUNT(*) FROM candidates WHERE session_id=? AND status IN ({marks})",
            (session["id"], *LISTED_STATUSES),
        ).fetchone()[0]
        new_candidates = conn.execute(
            f"SELECT first_name, last_name, stage_name, slug FROM candidates "
            f"WHERE session_id=? AND status IN ({marks}) AND created_at >= ? ORDER BY created_at, id",
            (session["id"], *LISTED_STATUSES, since),
        ).fetchall()

    posts = generate_posts(session, total, new_candidates, today)
    if not posts:
        return None
    post = posts[0]
    result = _publish(session["id"], post["type"], "cron", post["message"], None, post["link"], now)
    facebook = result.get("facebook") or {}
    return {"type": post["type"], "success": "error" not in facebook, "error": facebook.get("error")}


def run_social_posts(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Due scheduled posts, then the generated post of the day, for every active session."""
    now = now or utcnow()
    today = now.astimezone(ZoneInfo(settings.TIMEZONE)).date()
    with db() as conn:
        sessions = _social_sessions(conn)
    if not sessions:
        return {"posted": 0, "message": "No active session"}

    posted = 0
    results = []
    for session in sessions:
        posted += _run_schedule(session["id"], now)
        daily = _run_daily_post(session, now, today)
        if daily:
            posted += 1
        results.append({"session": session["name"], "post": daily})
    return {"posted": posted, "results": results}


# -----------------------
# Health check
# -----------------------
DB_SIZE_LIMIT = 500 * 1024 * 1024


def _check(category: str, label: str, status: str, value: str, detail: str = "") -> Dict[str, str]:
    return {"category": category, "label": label, "status": status, "value": value, "detail": detail}


def health_checks() -> List[Dict[str, str]]:
    checks = []
    size = os.path.getsize(settings.DB_PATH) if os.path.exists(settings.DB_PATH) else 0
    checks.append(_check(
        "Base", "Base de données", "ko" if not size else ("warn" if size > DB_SIZE_LIMIT * 0.8 else "ok"),
        f"{size / (1024 * 1024):.1f} MB / {DB_SIZE_LIMIT // (1024 * 1024)} MB",
    ))

    with db() as conn:
        tables = [r["name"] for r in conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )]
        rows = sum(conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0] for t in tables)
        push_by_role = dict(conn.execute("SELECT role, COUNT(*) FROM push_subscriptions GROUP BY role").fetchall())
        email_count = conn.execute("SELECT COUNT(*) FROM email_subscribers WHERE unsubscribed_at IS NULL").fetchone()[0]
        last_post = conn.execute("SELECT * FROM social_posts_log ORDER BY created_at DESC, id DESC LIMIT 1").fetchone()
    checks.append(_check("Base", "Tables", "ok", f"{len(tables)} tables, {rows} lignes"))

    total_push = sum(push_by_role.values())
    checks.append(_check(
        "Push", "Abonnés push", "ok" if total_push else "warn", f"{total_push} total",
        ", ".join(f"{n} {role}" for role, n in sorted(push_by_role.items())),
    ))
    vapid = bool(settings.VAPID_PUBLIC_KEY and settings.VAPID_PRIVATE_KEY)
    checks.append(_check("Push", "Clés VAPID", "ok" if vapid else "ko", "Présentes" if vapid else "Manquantes !"))

    checks.append(_check("Emails", "Abonnés email actifs", "ok" if email_count else "warn", str(email_count)))
    checks.append(_check(
        "Emails", "Envoi transactionnel", "ok" if settings.RESEND_API_KEY else "warn",
        "Configuré" if settings.RESEND_API_KEY else "Mode simulation",
    ))

    checks.append(_check(
        "Réseaux", "Token Facebook", "ok" if settings.FACEBOOK_PAGE_TOKEN else "warn",
        "Présent" if settings.FACEBOOK_PAGE_TOKEN else "Absent",
    ))
    if last_post:
        checks.append(_check(
            "Réseaux", "Dernière publication", "warn" if last_post["error"] else "ok",
            last_post["created_at"][:10], last_post["error"] or last_post["post_type"],
        ))
    return checks


def run_health_check() -> Dict[str, Any]:
    checks = health_checks()
    summary = {s: sum(1 for c in checks if c["status"] == s) for s in ("ok", "warn", "ko")}
    summary["total"] = len(checks)
    global_status = "ko" if summary["ko"] else ("warn" if summary["warn"] else "ok")

    with db() as conn:
        session = current_session(conn)
    recipient = load_json(session["config"]).get("report_email") if session else None

    email_sent = False
    if recipient:
        mail = emails.health_check_email(checks, summary, global_status)
        email_sent = emails.send_email(recipient, mail["subject"], mail["html"])["status"] != "failed"
    if session:
        details = f"{summary['ok']}/{summary['total']} OK"
        if summary["warn"]:
            details += f", {summary['warn']} avertissement(s)"
        if summary["ko"]:
            details += f", {summary['ko']} erreur(s)"
        push.notify(
            session["id"],
            {"title": f"Checkup {'OK' if global_status == 'ok' else 'attention'}", "body": details,
             "url": f"{settings.SITE_URL}/admin"},
            role="admin",
        )
    logger.info(f"Health check: {global_status} {summary}")
    return {"message": "Health check complete", "global_status": global_status, "summary": summary,
            "checks": checks, "email_sent": email_sent}
