import pytest
from fastapi import HTTPException

from conftest import add_candidate
from singcontest import analytics, jury
from singcontest.auth import require_juror
from singcontest.db import db
from singcontest.utils import now_iso


def _view(session_id, path, fingerprint=None, referrer=None, candidate_id=None, duration=None):
    analytics.track_page_view(session_id, path, candidate_id, fingerprint, referrer, duration)


def test_track_then_report_duration(session_id):
    _view(session_id, "/aubagne-2026", "fp")
    _view(session_id, "/aubagne-2026", "fp", duration=41.6)
    with db() as conn:
        rows = conn.execute("SELECT duration_seconds FROM page_views").fetchall()
    assert [r["duration_seconds"] for r in rows] == [42]


def test_duration_without_previous_view_is_inserted(session_id):
    _view(session_id, "/aubagne-2026/live", "fp", duration=12)
    with db() as conn:
        assert conn.execute("SELECT COUNT(*) FROM page_views").fetchone()[0] == 1


def test_track_requires_path(session_id):
    with pytest.raises(HTTPException):
        analytics.track_page_view(session_id, "")


def test_daily_stats(session_id):
    _view(session_id, "/a", "fp-1")
    _view(session_id, "/b", "fp-1")
    _view(session_id, "/a", "fp-2")
    cid = add_candidate(session_id)
    with db() as conn:
        conn.execute("INSERT INTO votes(session_id, candidate_id, fingerprint, created_at) VALUES(?,?,?,?)",
                     (session_id, cid, "fp-1", now_iso()))

    stats = analytics.daily_stats(session_id, days=7)
    assert len(stats) == 7
    assert stats.columns.tolist() == ["Day", "Views", "Visitors", "Votes", "Registrations"]
    assert stats["Views"].sum() == 3
    assert stats["Visitors"].sum() == 2
    assert stats["Votes"].sum() == 1
    assert stats["Registrations"].sum() == 1


def test_top_pages(session_id):
    _view(session_id, "/a", "fp-1", duration=None)
    _view(session_id, "/a", "fp-2")
    _view(session_id, "/b", "fp-1")
    with db() as conn:
        conn.execute("UPDATE page_views SET duration_seconds=20 WHERE page_path='/a'")
    pages = analytics.top_pages(session_id)
    assert pages["Page"].tolist() == ["/a", "/b"]
    assert pages.loc[0, "Views"] == 2
    assert pages.loc[0, "Visitors"] == 2
    assert pages.loc[0, "AvgDuration"] == 20
    assert analytics.top_pages(999).empty


def test_top_candidates_by_views(session_id):
    quiet = add_candidate(session_id, "Ana", "A", likes=9)
    popular = add_candidate(session_id, "Bea", "B", stage_name="Bee")
    add_candidate(session_id, "Cid", "C", status="pending")
    for _ in range(2):
        _view(session_id, "/aubagne-2026/candidats/bee", candidate_id=popular)
    top = analytics.top_candidates(session_id)
    assert top["CandidateId"].tolist() == [popular, quiet]
    assert top["Name"].tolist() == ["Bee", "Ana A"]
    assert top["Views"].tolist() == [2, 0]


def test_referrer_sources():
    assert analytics._referrer_source(None) == "direct"
    assert analytics._referrer_source("https://www.facebook.com/share") == "facebook"
    assert analytics._referrer_source("https://l.instagram.com/?u=x") == "instagram"
    assert analytics._referrer_source("https://www.blog.example.org/post") == "blog.example.org"


def test_referrer_breakdown(session_id):
    for referrer in ("https://m.facebook.com/", "https://www.facebook.com/", None, "https://www.google.fr/"):
        _view(session_id, "/", referrer=referrer)
    breakdown = analytics.referrer_breakdown(session_id).set_index("Source")
    assert breakdown.loc["facebook", "Views"] == 2
    assert breakdown.loc["facebook", "Share"] == 50.0
    assert breakdown.loc["direct", "Views"] == 1


def test_registration_funnel(session_id):
    _view(session_id, "/aubagne-2026", "fp-1")
    _view(session_id, "/aubagne-2026/inscription", "fp-1")
    _view(session_id, "/", "fp-2")
    add_candidate(session_id, "Ana", "A", status="pending")
    add_candidate(session_id, "Bea", "B", status="approved")

    funnel = analytics.registration_funnel(session_id)
    assert [s["count"] for s in funnel] == [2, 1, 2, 1]
    assert [s["rate"] for s in funnel] == [None, 50.0, 200.0, 50.0]


def test_jury_engagement(session_id, outbox):
    active = require_juror(jury.add_juror(session_id, "Paul", "Durand", "online")["qr_token"])
    jury.add_juror(session_id, "Idle", "Juror", "online")
    jury.submit_score(active, add_candidate(session_id), {"decision": "oui"})
    jury.track_juror_login(active["id"])

    engagement = analytics.jury_engagement(session_id)
    assert engagement["Juror"].tolist() == ["Paul Durand", "Idle Juror"]
    assert engagement["Scores"].tolist() == [1, 0]
    assert engagement.loc[0, "Logins"] == 1


def test_admin_report(session_id):
    add_candidate(session_id, "Ana", "A")
    with db() as conn:
        conn.execute(
            "INSERT INTO candidates(session_id, first_name, last_name, date_of_birth, email, category, song_title, "
            "song_artist, slug, status, created_at) VALUES(?,?,?,?,?,?,?,?,?,?,?)",
            (session_id, "Old", "Timer", "1980-01-01", "old@example.com", "Adulte", "x", "y", "old-timer", "approved",
             "2020-01-01T00:00:00+00:00"),
        )
    _view(session_id, "/", "fp-1")

    report = analytics.admin_report(session_id, "daily")
    assert report["Session"] == "ChanteEnScène Aubagne 2026"
    assert report["Candidats"] == 2
    assert report["Nouveaux candidats"] == 1
    assert report["Visiteurs"] == 1
    assert report["recent_candidates"] == [{"name": "Ana A", "category": "Adulte"}]


def test_daily_stats_window_is_at_least_one_day(session_id):
    for days in (0, -5):
        stats = analytics.daily_stats(session_id, days=days)
        assert len(stats) == 1
        assert stats.columns.tolist() == ["Day", "Views", "Visitors", "Votes", "Registrations"]
