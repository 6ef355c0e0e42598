from __future__ import annotations

import logging
from io import StringIO
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from fastapi import HTTPException

from . import emails
from .candidates import get_candidate
from .db import db, fetch_one, get_config, get_session, load_json, save_config
from .utils import display_name, now_iso

FINAL_DEFAULT_WEIGHTS = (40, 40, 20)
FALLBACK_WEIGHTS = (0.4, 0.4, 0.2)
CATEGORY_ORDER = ["Enfant", "Ado", "Adulte"]

logger = logging.getLogger(__name__)


def round1(values):
    """Round half up to one decimal, the way the dashboards display scores."""
    return np.floor(np.asarray(values, dtype=float) * 10 + 0.5) / 10


# -----------------------
# Scores -> placements
# -----------------------
def scores_to_placements(scores_by_candidate: Dict[int, float]) -> Dict[int, int]:
    """
    Convert one juror's totals into placements:
    highest score => placement 1, lowest => placement N.
    Equal scores are ordered by candidate id.
    """
    ordered = sorted(scores_by_candidate.items(), key=lambda kv: (-kv[1], kv[0]))
    placements: Dict[int, int] = {}
    for idx, (candidate_id, _score) in enumerate(ordered, start=1):
        placements[candidate_id] = idx
    return placements


# -----------------------
# Online preselection
# -----------------------
def compute_online_scores(candidates: pd.DataFrame, decisions: pd.DataFrame, nb_jurors: int,
                          jury_weight_percent: float) -> pd.DataFrame:
    """
    candidates: columns id, category, likes_count, status
    decisions:  columns candidate_id, decision ("oui" / "peut-etre" / "non")

    Jury score = (2 x oui + peut-etre) / (2 x jurors) x 100, public score = likes
    normalized by the best candidate, combined with the jury weight.
    """
    df = candidates.copy()
    if decisions.empty:
        counts = pd.DataFrame(0, index=df["id"], columns=["oui", "peut-etre"])
    else:
        counts = (
            decisions.pivot_table(index="candidate_id", columns="decision", aggfunc="size", fill_value=0)
            .reindex(columns=["oui", "peut-etre"], fill_value=0)
        )
    counts = counts.reindex(df["id"], fill_value=0)
    df["Oui"] = counts["oui"].to_numpy()
    df["PeutEtre"] = counts["peut-etre"].to_numpy()

    max_jury_points = max(1, nb_jurors) * 2
    jury = (df["Oui"] * 2 + df["PeutEtre"]) / max_jury_points * 100
    likes = df["likes_count"].fillna(0).astype(float)
    public = likes / max(1.0, likes.max() if len(likes) else 0.0) * 100

    w = jury_weight_percent / 100
    df["JuryScore"] = round1(jury)
    df["PublicScore"] = round1(public)
    df["CombinedScore"] = round1(jury * w + public * (1 - w))
    return df


def select_top_per_category(scored: pd.DataFrame, categories: List[str], per_category: int) -> List[int]:
    selected: List[int] = []
    ranked = scored.sort_values("CombinedScore", ascending=False, kind="mergesort")
    for cat in categories:
        selected.extend(ranked[ranked["category"] == cat]["id"].head(per_category).tolist())
    # Candidates whose category is not configured compete together
    unknown = ranked[~ranked["category"].isin(categories)]
    selected.extend(unknown["id"].head(per_category).tolist())
    return [int(i) for i in selected]


def load_online_scores(session_id: int, jury_weight: Optional[float] = None) -> Tuple[pd.DataFrame, dict]:
    with db() as conn:
        config = get_config(conn, session_id)
        candidates = pd.read_sql_query(
            "SELECT id, first_name, last_name, stage_name, category, likes_count, status FROM candidates "
            "WHERE session_id=? AND status IN ('approved', 'semifinalist')",
            conn,
            params=(session_id,),
        )
        nb_jurors = conn.execute(
            "SELECT COUNT(*) AS n FROM jurors WHERE session_id=? AND role='online' AND is_active=1",
            (session_id,),
        ).fetchone()["n"]
        rows = conn.execute(
            "SELECT candidate_id, scores FROM jury_scores WHERE session_id=? AND event_type='online'",
            (session_id,),
        ).fetchall()

    decisions = pd.DataFrame(
        [{"candidate_id": r["candidate_id"], "decision": load_json(r["scores"]).get("decision")} for r in rows],
        columns=["candidate_id", "decision"],
    )
    weight = jury_weight if jury_weight is not None else (config.get("jury_weight_percent") or 60)
    return compute_online_scores(candidates, decisions, nb_jurors, weight), config


def auto_select_semifinalists(session_id: int, jury_weight: Optional[float] = None) -> dict:
    scored, config = load_online_scores(session_id, jury_weight)
    if config.get("selection_notifications_sent_at"):
        raise HTTPException(409, "Les notifications ont déjà été envoyées. La liste ne peut plus être modifiée.")
    if scored.empty:
        raise HTTPException(400, "Aucun candidat à sélectionner.")

    per_category = int(config.get("semifinalists_per_category") or 10)
    categories = [c["name"] for c in config.get("age_categories", [])]
    selected = set(select_top_per_category(scored, categories, per_category))

    to_promote = scored[scored["id"].isin(selected) & (scored["status"] != "semifinalist")]["id"].tolist()
    to_demote = scored[~scored["id"].isin(selected) & (scored["status"] == "semifinalist")]["id"].tolist()
    with db() as conn:
        for cid in to_promote:
            conn.execute("UPDATE candidates SET status='semifinalist' WHERE id=?", (int(cid),))
        for cid in to_demote:
            conn.execute("UPDATE candidates SET status='approved' WHERE id=?", (int(cid),))

    return {
        "selected": len(selected),
        "promoted": len(to_promote),
        "demoted": len(to_demote),
        "per_category": [
            {
                "category": cat,
                "count": int(scored[(scored["category"] == cat) & scored["id"].isin(selected)].shape[0]),
                "target": per_category,
            }
            for cat in categories
        ],
    }


# -----------------------
# Manual selection
# -----------------------
def _set_status(candidate_id: int, status: str) -> None:
    with db() as conn:
        get_candidate(conn, candidate_id)
        conn.execute("UPDATE candidates SET status=? WHERE id=?", (status, candidate_id))


def promote_to_semifinalist(candidate_id: int) -> None:
    _set_status(candidate_id, "semifinalist")


def remove_from_semifinalist(candidate_id: int) -> None:
    with db() as conn:
        candidate = get_candidate(conn, candidate_id)
        if get_config(conn, candidate["session_id"]).get("selection_notifications_sent_at"):
            raise HTTPException(
                409, "Impossible : les notifications ont déjà été envoyées. La liste ne peut plus être modifiée."
            )
    _set_status(candidate_id, "approved")


def promote_to_finalist(candidate_id: int) -> None:
    _set_status(candidate_id, "finalist")


def remove_from_finalist(candidate_id: int) -> None:
    with db() as conn:
        candidate = get_candidate(conn, candidate_id)
        if get_config(conn, candidate["session_id"]).get("finale_notifications_sent_at"):
            raise HTTPException(
                409, "Impossible : les notifications ont déjà été envoyées. La liste ne peut plus être modifiée."
            )
    _set_status(candidate_id, "semifinalist")


# -----------------------
# Semifinal
# -----------------------
def semifinal_rankings(session_id: int) -> Dict[str, pd.DataFrame]:
    """Per category: semifinalists sorted by average stars (AvgStars, ScoreCount)."""
    with db() as conn:
        candidates = pd.read_sql_query(
            "SELECT id, first_name, last_name, stage_name, category, status FROM candidates "
            "WHERE session_id=? AND status IN ('semifinalist', 'finalist', 'winner')",
            conn,
            params=(session_id,),
        )
        scores = pd.read_sql_query(
            "SELECT candidate_id, total_score FROM jury_scores WHERE session_id=? AND event_type='semifinal'",
            conn,
            params=(session_id,),
        )

    candidates["category"] = candidates["category"].fillna("Autre")
    stats = scores.groupby("candidate_id")["total_score"].agg(["mean", "count"])
    candidates["AvgStars"] = round1(candidates["id"].map(stats["mean"]).fillna(0))
    candidates["ScoreCount"] = candidates["id"].map(stats["count"]).fillna(0).astype(int)
    candidates["Name"] = [_frame_name(r) for _, r in candidates.iterrows()]

    out: Dict[str, pd.DataFrame] = {}
    for cat, group in candidates.groupby("category", sort=False):
        out[cat] = group.sort_values(["AvgStars", "ScoreCount", "id"], ascending=[False, False, True],
                                     kind="mergesort").reset_index(drop=True)
    return dict(sorted(out.items(), key=lambda kv: _category_rank(kv[0])))


def _frame_name(row: pd.Series) -> str:
    stage = row.get("stage_name")
    if isinstance(stage, str) and stage:
        return stage
    return f"{row['first_name']} {row['last_name']}"


def _category_rank(category: Optional[str]) -> int:
    return CATEGORY_ORDER.index(category) if category in CATEGORY_ORDER else len(CATEGORY_ORDER)


# -----------------------
# Final
# -----------------------
def compute_final_results(jury_totals: pd.DataFrame, live_votes: pd.Series, likes: pd.Series,
                          weights: Tuple[float, float, float], max_criteria_score: float
                          ) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    jury_totals:
      rows = juror id
      cols = candidate id
      values = juror total over the criteria (NaN when not scored yet)
    live_votes / likes: indexed by candidate id

    Returns:
      results_df columns: Rank, CandidateId, JuryAvg, JuryNormalized, PublicVotes,
        PublicNormalized, SocialVotes, SocialNormalized, TotalScore, SumPlacements
      placements_matrix rows=juror cols=candidate values=placement
    """
    candidate_ids = list(likes.index)
    if not candidate_ids:
        raise ValueError("No candidates in the lineup.")

    totals = jury_totals.reindex(columns=candidate_ids).astype(float)

    # Placement matrix per juror; an unscored candidate gets the worst placement
    placement_rows = {}
    for juror_id in totals.index:
        row = {int(c): float(v) for c, v in totals.loc[juror_id].items() if pd.notna(v)}
        placements = scores_to_placements(row)
        placement_rows[juror_id] = {c: placements.get(int(c), len(candidate_ids)) for c in candidate_ids}
    placements = pd.DataFrame.from_dict(placement_rows, orient="index", columns=candidate_ids)

    jury_avg = totals.mean(axis=0, skipna=True).fillna(0.0)
    jury_norm = jury_avg / max_criteria_score * 100 if max_criteria_score > 0 else jury_avg * 0

    votes = live_votes.reindex(candidate_ids, fill_value=0).astype(float)
    social = likes.reindex(candidate_ids, fill_value=0).astype(float)
    public_norm = votes / max(1.0, votes.max()) * 100
    social_norm = social / max(1.0, social.max()) * 100

    wsum = float(sum(weights))
    if wsum > 0:
        jw, pw, sw = (w / wsum for w in weights)
    else:
        jw, pw, sw = FALLBACK_WEIGHTS
    total = jury_norm * jw + public_norm * pw + social_norm * sw

    results = pd.DataFrame(
        {
            "CandidateId": candidate_ids,
            "JuryAvg": round1(jury_avg.to_numpy()),
            "JuryNormalized": round1(jury_norm.to_numpy()),
            "PublicVotes": votes.astype(int).to_numpy(),
            "PublicNormalized": round1(public_norm.to_numpy()),
            "SocialVotes": social.astype(int).to_numpy(),
            "SocialNormalized": round1(social_norm.to_numpy()),
            "TotalScore": round1(total.to_numpy()),
            "SumPlacements": [int(placements[c].sum()) if not placements.empty else 0 for c in candidate_ids],
        }
    )

    # Sort: higher total wins; tie-breaker: lower sum placements; then candidate id
    results = results.sort_values(
        by=["TotalScore", "SumPlacements", "CandidateId"],
        ascending=[False, True, True],
        kind="mergesort",
    ).reset_index(drop=True)

    results.insert(0, "Rank", range(1, len(results) + 1))
    return results, placements


def load_final_inputs(event_id: int, category: Optional[str] = None):
    with db() as conn:
        event = fetch_one(conn, "live_events", event_id, "Événement introuvable.")
        config = get_config(conn, event["session_id"])
        sql = (
            "SELECT c.id, c.first_name, c.last_name, c.stage_name, c.category, c.likes_count "
            "FROM lineup l JOIN candidates c ON c.id = l.candidate_id "
            "WHERE l.live_event_id=? AND l.status != 'absent'"
        )
        params: list = [event_id]
        if category:
            sql += " AND c.category=?"
            params.append(category)
        candidates = pd.read_sql_query(sql + " ORDER BY l.position", conn, params=params)
        scores = pd.read_sql_query(
            "SELECT s.juror_id, s.candidate_id, s.total_score FROM jury_scores s "
            "JOIN jurors j ON j.id = s.juror_id "
            "WHERE s.session_id=? AND s.event_type='final' AND j.is_active=1",
            conn,
            params=(event["session_id"],),
        )
        votes = pd.read_sql_query(
            "SELECT candidate_id, COUNT(*) AS n FROM live_votes WHERE live_event_id=? GROUP BY candidate_id",
            conn,
            params=(event_id,),
        )

    if scores.empty:
        jury_totals = pd.DataFrame(columns=candidates["id"].tolist(), dtype=float)
    else:
        jury_totals = scores.pivot_table(index="juror_id", columns="candidate_id", values="total_score", aggfunc="last")
    live_votes = votes.set_index("candidate_id")["n"] if not votes.empty else pd.Series(dtype=float)
    likes = candidates.set_index("id")["likes_count"].fillna(0)

    weights = (
        config.get("jury_weight_percent", FINAL_DEFAULT_WEIGHTS[0]),
        config.get("public_weight_percent", FINAL_DEFAULT_WEIGHTS[1]),
        config.get("social_weight_percent", FINAL_DEFAULT_WEIGHTS[2]),
    )
    max_criteria_score = len(config.get("jury_criteria") or []) * 5
    return candidates, jury_totals, live_votes, likes, weights, max_criteria_score


def final_rankings(event_id: int, category: Optional[str] = None) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Rankings are always computed within a category: the vote and like maxima
    and the ranks restart for each one. Without a category every category of
    the lineup is ranked and the frames are stacked in category order.
    """
    candidates, jury_totals, live_votes, likes, weights, max_score = load_final_inputs(event_id, category)
    if candidates.empty:
        raise ValueError("No candidates in the lineup.")

    names = {row["id"]: _frame_name(row) for _, row in candidates.iterrows()}
    frames, matrices = [], []
    for cat in sorted(candidates["category"].unique(), key=_category_rank):
        ids = candidates.loc[candidates["category"] == cat, "id"].tolist()
        results, placements = compute_final_results(
            jury_totals.reindex(columns=ids).dropna(how="all"), live_votes, likes.loc[ids], weights, max_score
        )
        results.insert(2, "Name", results["CandidateId"].map(names))
        results.insert(3, "Category", cat)
        frames.append(results)
        matrices.append(placements)

    return pd.concat(frames, ignore_index=True), pd.concat(matrices, axis=1)


# -----------------------
# Exports
# -----------------------
def results_csv(results: pd.DataFrame) -> str:
    buf = StringIO()
    results.to_csv(buf, index=False)
    return buf.getvalue()


def placements_csv(placements: pd.DataFrame) -> str:
    out = placements.copy()
    out.insert(0, "Juror", out.index)
    buf = StringIO()
    out.to_csv(buf, index=False)
    return buf.getvalue()


# -----------------------
# Selection notifications
# -----------------------
def _notify_candidates(session_id: int, selected_status: str, other_status: str, stamp_field: str,
                       selected_mail, other_mail) -> Dict:
    """
    Email every selected candidate and every remaining one, then stamp the
    session config. The stamp locks the selection, so it is only written
    when at least one email went out.
    """
    with db() as conn:
        session = get_session(conn, session_id)
        config = load_json(session["config"])
        if config.get(stamp_field):
            raise HTTPException(409, "Les notifications ont déjà été envoyées.")
        selected = conn.execute(
            "SELECT * FROM candidates WHERE session_id=? AND status=? ORDER BY id", (session_id, selected_status)
        ).fetchall()
        others = conn.execute(
            "SELECT * FROM candidates WHERE session_id=? AND status=? ORDER BY id", (session_id, other_status)
        ).fetchall()
    if not selected:
        raise HTTPException(400, "Aucun candidat sélectionné.")

    report: List[Dict[str, str]] = []
    outgoing = [(c, selected_mail(c, config, session)) for c in selected]
    outgoing += [(c, other_mail(c)) for c in others]
    for candidate, (subject, html) in outgoing:
        result = emails.send_email(candidate["email"], subject, html)
        report.append({"email": candidate["email"], "name": display_name(candidate), **result})

    ok = [r for r in report if r["status"] in ("sent", "simulated")]
    if ok:
        with db() as conn:
            config = get_config(conn, session_id)
            config[stamp_field] = now_iso()
            save_config(conn, session_id, config)
    logger.info(f"{stamp_field} session={session_id}: {len(ok)}/{len(report)} delivered")
    return {
        "selected": len(selected),
        "others": len(others),
        "delivered": len(ok),
        "failed": len(report) - len(ok),
        "report": report,
    }


def send_selection_notifications(session_id: int) -> Dict:
    return _notify_candidates(
        session_id,
        "semifinalist",
        "approved",
        "selection_notifications_sent_at",
        lambda c, config, session: (emails.SELECTION_SUBJECT, emails.selection_email(c, config)),
        lambda c: (emails.REJECTION_SUBJECT, emails.rejection_email(c)),
    )


def send_finale_notifications(session_id: int) -> Dict:
    return _notify_candidates(
        session_id,
        "finalist",
        "semifinalist",
        "finale_notifications_sent_at",
        lambda c, config, session: (emails.FINALE_SUBJECT, emails.finale_email(c, config, session["slug"])),
        lambda c: (emails.FINALE_REJECTION_SUBJECT, emails.finale_rejection_email(c)),
    )


def email_previews(session_id: int) -> Dict[str, Dict[str, str]]:
    """Render each selection email with a sample candidate for the admin preview."""
    with db() as conn:
        session = get_session(conn, session_id)
    config = load_json(session["config"])
    sample = {
        "id": 0,
        "first_name": "Marie",
        "last_name": "Dupont",
        "stage_name": None,
        "slug": "marie-dupont",
        "song_title": "",
        "song_artist": "",
    }
    return {
        "selection": {"subject": emails.SELECTION_SUBJECT, "html": emails.selection_email(sample, config)},
        "rejection": {"subject": emails.REJECTION_SUBJECT, "html": emails.rejection_email(sample)},
        "finale": {"subject": emails.FINALE_SUBJECT, "html": emails.finale_email(sample, config, session["slug"])},
        "finale_rejection": {
            "subject": emails.FINALE_REJECTION_SUBJECT,
            "html": emails.finale_rejection_email(sample),
        },
    }
