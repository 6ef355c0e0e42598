from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import pandas as pd
from fastapi import HTTPException

from .db import db, get_session
from .utils import display_name, now_iso, today_local, utcnow

logger = logging.getLogger(__name__)

FREQUENCY_HOURS = {"daily": 23, "weekly": 6.5 * 24, "monthly": 29 * 24}


# -----------------------
# Tracking
# -----------------------
def track_page_view(session_id: int, page_path: str, candidate_id: Optional[int] = None,
                    fingerprint: Optional[str] = None, referrer: Optional[str] = None,
                    duration: Optional[float] = None, ip_address: Optional[str] = None,
                    user_agent: Optional[str] = None) -> None:
    """
    Record a page view. A call with a positive duration reports the time spent on a
    page already viewed and updates that view instead of adding a new one.
    """
    if not session_id or not page_path:
        raise HTTPException(400, "Missing required fields")

    with db() as conn:
        if duration and duration > 0:
            latest = conn.execute(
                """
                SELECT id FROM page_views WHERE session_id=? AND page_path=? AND fingerprint IS ?
                ORDER BY created_at DESC, id DESC LIMIT 1
                """,
                (session_id, page_path, fingerprint or None),
            ).fetchone()
            if latest:
                conn.execute("UPDATE page_views SET duration_seconds=? WHERE id=?", (round(duration), latest["id"]))
                return

        conn.execute(
            """
            INSERT INTO page_views(session_id, candidate_id, page_path, fingerprint, ip_address, user_agent,
                                   referrer, duration_seconds, created_at)
            VALUES(?,?,?,?,?,?,?,?,?)
            """,
            (session_id, candidate_id, page_path, fingerprint or None, ip_address, user_agent,
             referrer or None, round(duration or 0), now_iso()),
        )


def _frame(sql: str, params) -> pd.DataFrame:
    with db() as conn:
        return pd.read_sql_query(sql, conn, params=params)


def _day(series: pd.Series) -> pd.Series:
    return series.str.slice(0, 10)


# -----------------------
# Dashboards
# -----------------------
def daily_stats(session_id: int, days: int = 30) -> pd.DataFrame:
    """One row per day (oldest first): Views, Visitors, Votes, Registrations."""
    days = max(1, days)
    end = today_local()
    index = pd.Index([(end - timedelta(days=n)).isoformat() for n in range(days - 1, -1, -1)], name="Day")
    since = index[0]

    views = _frame("SELECT fingerprint, created_at FROM page_views WHERE session_id=? AND created_at >= ?",
                   (session_id, since))
    votes = _frame("SELECT created_at FROM votes WHERE session_id=? AND created_at >= ?", (session_id, since))
    regs = _frame("SELECT created_at FROM candidates WHERE session_id=? AND created_at >= ?", (session_id, since))

    views["Day"] = _day(views["created_at"])
    out = pd.DataFrame(index=index)
    out["Views"] = views.groupby("Day").size()
    out["Visitors"] = views.dropna(subset=["fingerprint"]).groupby("Day")["fingerprint"].nunique()
    out["Votes"] = _day(votes["created_at"]).value_counts()
    out["Registrations"] = _day(regs["created_at"]).value_counts()
    return out.fillna(0).astype(int).reset_index()


def top_pages(session_id: int, limit: int = 10) -> pd.DataFrame:
    views = _frame("SELECT page_path, fingerprint, duration_seconds FROM page_views WHERE session_id=?",
                   (session_id,))
    if views.empty:
        return pd.DataFrame(columns=["Page", "Views", "Visitors", "AvgDuration"])
    grouped = views.groupby("page_path").agg(
        Views=("page_path", "size"),
        Visitors=("fingerprint", "nunique"),
        AvgDuration=("duration_seconds", "mean"),
    )
    grouped["AvgDuration"] = grouped["AvgDuration"].round().astype(int)
    grouped = grouped.sort_values("Views", ascending=False, kind="mergesort").head(limit)
    return grouped.rename_axis("Page").reset_index()


def top_candidates(session_id: int, limit: int = 10) -> pd.DataFrame:
    candidates = _frame(
        "SELECT id, first_name, last_name, stage_name, category, likes_count, shares_count FROM candidates "
        "WHERE session_id=? AND status IN ('approved', 'semifinalist', 'finalist', 'winner')",
        (session_id,),
    )
    views = _frame("SELECT candidate_id FROM page_views WHERE session_id=? AND candidate_id IS NOT NULL",
                   (session_id,))
    candidates["Views"] = candidates["id"].map(views["candidate_id"].value_counts()).fillna(0).astype(int)
    candidates["Name"] = [
        r["stage_name"] if isinstance(r["stage_name"], str) and r["stage_name"] else f"{r['first_name']} {r['last_name']}"
        for _, r in candidates.iterrows()
    ]
    out = candidates.rename(columns={"id": "CandidateId", "category": "Category",
                                     "likes_count": "Likes", "shares_count": "Shares"})
    out = out.sort_values(["Views", "Likes"], ascending=False, kind="mergesort").head(limit)
    return out[["CandidateId", "Name", "Category", "Views", "Likes", "Shares"]].reset_index(drop=True)


def _referrer_source(referrer: Optional[str]) -> str:
    if not referrer:
        return "direct"
    host = (urlparse(referrer).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    for name in ("facebook", "instagram", "google", "tiktok", "youtube"):
        if name in host:
            return name
    return host or "direct"


def referrer_breakdown(session_id: int) -> pd.DataFrame:
    views = _frame("SELECT referrer FROM page_views WHERE session_id=?", (session_id,))
    if views.empty:
        return pd.DataFrame(columns=["Source", "Views", "Share"])
    counts = views["referrer"].map(_referrer_source).value_counts()
    out = counts.rename_axis("Source").reset_index(name="Views")
    out["Share"] = (out["Views"] / out["Views"].sum() * 100).round(1)
    return out


def registration_funnel(session_id: int) -> List[Dict[str, Any]]:
    """Visitors -> inscription page -> registered -> approved, with each step's rate."""
    with db() as conn:
        visitors = conn.execute(
            "SELECT COUNT(DISTINCT fingerprint) AS n FROM page_views WHERE session_id=? AND fingerprint IS NOT NULL",
            (session_id,),
        ).fetchone()["n"]
        form_visitors = conn.execute(
            "SELECT COUNT(DISTINCT fingerprint) AS n FROM page_views "
            "WHERE session_id=? AND fingerprint IS NOT NULL AND page_path LIKE '%inscription%'",
            (session_id,),
        ).fetchone()["n"]
        registered = conn.execute(
            "SELECT COUNT(*) AS n FROM candidates WHERE session_id=?", (session_id,)
        ).fetchone()["n"]
        approved = conn.execute(
            "SELECT COUNT(*) AS n FROM candidates WHERE session_id=? AND status != 'pending' AND status != 'rejected'",
            (session_id,),
        ).fetchone()["n"]

    steps = [("Visiteurs", visitors), ("Page inscription", form_visitors),
             ("Inscrits", registered), ("Validés", approved)]
    funnel = []
    previous = None
    for label, count in steps:
        rate = round(count / previous * 100, 1) if previous else None
        funnel.append({"step": label, "count": count, "rate": rate})
        previous = count
    return funnel


def jury_engagement(session_id: int) -> pd.DataFrame:
    jurors = _frame(
        "SELECT id, first_name, last_name, role, login_count, last_login_at, is_active FROM jurors WHERE session_id=?",
        (session_id,),
    )
    scores = _frame("SELECT juror_id, created_at FROM jury_scores WHERE session_id=?", (session_id,))
    stats = scores.groupby("juror_id")["created_at"].agg(["count", "max"])
    jurors["Scores"] = jurors["id"].map(stats["count"]).fillna(0).astype(int)
    jurors["LastScoreAt"] = jurors["id"].map(stats["max"])
    jurors["Juror"] = (jurors["first_name"].fillna("") + " " + jurors["last_name"].fillna("")).str.strip()
    out = jurors.rename(columns={"id": "JurorId", "role": "Role", "login_count": "Logins",
                                 "last_login_at": "LastLoginAt", "is_active": "Active"})
    out = out.sort_values(["Role", "Scores"], ascending=[True, False], kind="mergesort")
    return out[["JurorId", "Juror", "Role", "Active", "Logins", "LastLoginAt", "Scores", "LastScoreAt"]].reset_index(drop=True)


def admin_report(session_id: int, frequency: str = "daily") -> Dict[str, Any]:
    """Totals plus what changed over the report period."""
    since = (utcnow() - timedelta(hours=FREQUENCY_HOURS.get(frequency, 24))).isoformat(timespec="seconds")
    with db() as conn:
        session = get_session(conn, session_id)

        def count(sql: str, *params) -> int:
            return conn.execute(sql, params).fetchone()[0]

        report: Dict[str, Any] = {
            "Session": session["name"],
            "Statut": session["status"],
            "Candidats": count("SELECT COUNT(*) FROM candidates WHERE session_id=?", session_id),
            "Nouveaux candidats": count(
                "SELECT COUNT(*) FROM candidates WHERE session_id=? AND created_at >= ?", session_id, since),
            "Votes": count("SELECT COUNT(*) FROM votes WHERE session_id=?", session_id),
            "Nouveaux votes": count("SELECT COUNT(*) FROM votes WHERE session_id=? AND created_at >= ?",
                                    session_id, since),
            "Abonnés push": count("SELECT COUNT(*) FROM push_subscriptions WHERE session_id=? AND role='public'",
                                  session_id),
            "Abonnés email": count(
                "SELECT COUNT(*) FROM email_subscribers WHERE session_id=? AND unsubscribed_at IS NULL", session_id),
            "Visiteurs": count(
                "SELECT COUNT(DISTINCT fingerprint) FROM page_views WHERE session_id=? AND created_at >= ? "
                "AND fingerprint IS NOT NULL", session_id, since),
        }
        recent = conn.execute(
            "SELECT first_name, last_name, stage_name, category FROM candidates "
            "WHERE session_id=? AND created_at >= ? ORDER BY created_at DESC LIMIT 10",
            (session_id, since),
        ).fetchall()
    report["recent_candidates"] = [{"name": display_name(r), "category": r["category"]} for r in recent]
    return report
