import json

import pytest
from fastapi import HTTPException

from conftest import add_candidate
from singcontest import candidates
from singcontest.db import db
from singcontest.sessions import patch_session_config


def _form(session_id, **overrides):
    form = {
        "session_id": str(session_id),
        "first_name": "Léa",
        "last_name": "Martin",
        "email": "Lea@Example.com",
        "date_of_birth": "2011-03-10",
        "song_title": "Je veux",
        "song_artist": "Zaz",
        "photo_url": "https://img.example.com/lea.jpg",
    }
    form.update(overrides)
    return form


def _row(candidate_id):
    with db() as conn:
        return conn.execute("SELECT * FROM candidates WHERE id=?", (candidate_id,)).fetchone()


def test_register_assigns_category_and_slug(open_session, outbox):
    patch_session_config(open_session, final_date="2026-06-20")
    cid = candidates.register_candidate(_form(open_session))
    c = _row(cid)
    assert c["category"] == "Ado"
    assert c["slug"] == "lea-martin"
    assert c["email"] == "lea@example.com"
    assert c["status"] == "pending"
    assert outbox["email"][0]["to"] == "lea@example.com"


def test_register_makes_slugs_unique(open_session, outbox):
    first = candidates.register_candidate(_form(open_session))
    second = candidates.register_candidate(_form(open_session, email="other@example.com"))
    assert _row(first)["slug"] == "lea-martin"
    assert _row(second)["slug"] == "lea-martin-2"


def test_register_uses_stage_name_for_slug(open_session, outbox):
    cid = candidates.register_candidate(_form(open_session, stage_name="La Voix"))
    assert _row(cid)["slug"] == "la-voix"


def test_register_rejects_duplicates_and_missing_fields(open_session, outbox):
    candidates.register_candidate(_form(open_session))
    with pytest.raises(HTTPException) as exc:
        candidates.register_candidate(_form(open_session))
    assert exc.value.status_code == 409

    with pytest.raises(HTTPException):
        candidates.register_candidate(_form(open_session, email="x@example.com", photo_url=""))
    with pytest.raises(HTTPException):
        candidates.register_candidate(_form(open_session, email="y@example.com", last_name=""))


def test_register_requires_open_registrations(session_id, outbox):
    with pytest.raises(HTTPException) as exc:
        candidates.register_candidate(_form(session_id))
    assert "pas ouvertes" in exc.value.detail


def test_register_rejects_age_outside_categories(open_session, outbox):
    with pytest.raises(HTTPException):
        candidates.register_candidate(_form(open_session, date_of_birth="2023-01-01"))


def test_approval_notifies_candidate_and_jury(session_id, outbox):
    cid = add_candidate(session_id, status="pending")
    candidates.update_candidate_status(cid, "approved")
    assert _row(cid)["status"] == "approved"
    assert "validée" in outbox["email"][0]["subject"]
    assert outbox["push"][0]["role"] == "jury"


def test_invalid_status_is_rejected(session_id):
    cid = add_candidate(session_id)
    with pytest.raises(HTTPException):
        candidates.update_candidate_status(cid, "famous")


def test_correction_round_trip(session_id, outbox):
    cid = add_candidate(session_id, status="pending")
    token = candidates.request_correction(cid, ["song_title", "photo", "nonsense"])
    assert "/corriger/" in outbox["email"][0]["html"]

    candidates.submit_correction(token, {"song_title": "Nouveau titre", "photo_url": "https://img/x.png",
                                         "song_artist": "ignored"})
    c = _row(cid)
    assert c["song_title"] == "Nouveau titre"
    assert c["photo_url"] == "https://img/x.png"
    assert c["song_artist"] == "Leonard Cohen"
    assert c["correction_token"] is None

    with pytest.raises(HTTPException) as exc:
        candidates.submit_correction(token, {"song_title": "Encore"})
    assert exc.value.status_code == 404


def test_correction_refused_once_approved(session_id, outbox):
    cid = add_candidate(session_id, status="pending")
    token = candidates.request_correction(cid, ["song_title"])
    candidates.update_candidate_status(cid, "approved")
    with pytest.raises(HTTPException):
        candidates.submit_correction(token, {"song_title": "Trop tard"})


def test_delete_cascades(session_id):
    cid = add_candidate(session_id)
    with db() as conn:
        conn.execute("INSERT INTO votes(session_id, candidate_id, fingerprint, created_at) VALUES(?,?,?,?)",
                     (session_id, cid, "fp", "2026-01-01T00:00:00+00:00"))
    candidates.delete_candidate(cid)
    with db() as conn:
        assert conn.execute("SELECT COUNT(*) FROM votes").fetchone()[0] == 0
    assert _row(cid) is None


def test_public_listing_hides_pending(session_id):
    add_candidate(session_id, "Ana", "A", status="pending")
    visible = add_candidate(session_id, "Bea", "B", status="approved")
    assert [c["id"] for c in candidates.public_candidates(session_id)] == [visible]
    with pytest.raises(HTTPException):
        candidates.candidate_by_slug(session_id, "ana-a")
    assert candidates.candidate_by_slug(session_id, "bea-b")["id"] == visible


def _row(cid):
    with db() as conn:
        return conn.execute("SELECT * FROM candidates WHERE id=?", (cid,)).fetchone()


def test_profile_is_found_by_slug(session_id):
    cid = add_candidate(session_id, "Ana", "A")
    assert candidates.profile_by_token(session_id, " ana-a ")["id"] == cid
    with pytest.raises(HTTPException) as exc:
        candidates.profile_by_token(session_id, "nobody")
    assert exc.value.status_code == 404


def test_profile_update_only_touches_sent_fields(session_id):
    cid = add_candidate(session_id, "Ana", "A", stage_name="Anouk")
    candidates.update_candidate_profile(cid, "ana-a", {"bio": " Chanteuse de jazz ", "stage_name": "", "city": None})
    row = _row(cid)
    assert row["bio"] == "Chanteuse de jazz"
    assert row["stage_name"] is None
    assert row["song_title"] == "Hallelujah"

    with pytest.raises(HTTPException) as exc:
        candidates.update_candidate_profile(cid, "bea-b", {"bio": "x"})
    assert exc.value.status_code == 403
    with pytest.raises(HTTPException):
        candidates.update_candidate_profile(cid, "ana-a", {})


def test_finale_songs_need_a_phone(session_id):
    cid = add_candidate(session_id, "Ana", "A", status="finalist")
    songs = [{"title": "Je veux", "artist": "Zaz", "youtube_url": ""}, {"title": " ", "artist": "skip"}]
    with pytest.raises(HTTPException) as exc:
        candidates.update_finale_songs(cid, "ana-a", songs, "  ")
    assert exc.value.status_code == 400

    candidates.update_finale_songs(cid, "ana-a", songs, " 06 12 34 56 78 ")
    row = _row(cid)
    assert row["phone"] == "06 12 34 56 78"
    assert json.loads(row["finale_songs"]) == [{"title": "Je veux", "artist": "Zaz", "youtube_url": ""}]


def test_update_winner(session_id):
    winner = add_candidate(session_id, "Ana", "A", status="winner", stage_name="Anouk")
    candidates.update_winner(winner, "Anna", "Arnaud", "", "Je veux", "Zaz")
    row = _row(winner)
    assert (row["first_name"], row["last_name"], row["stage_name"]) == ("Anna", "Arnaud", None)
    assert row["song_title"] == "Je veux"

    with pytest.raises(HTTPException):
        candidates.update_winner(winner, "", "Arnaud")
    other = add_candidate(session_id, "Bea", "B", status="finalist")
    with pytest.raises(HTTPException):
        candidates.update_winner(other, "Bea", "B")


def test_winners_list_archived_editions(session_id):
    add_candidate(session_id, "Ana", "A", status="winner")
    assert [w["session_year"] for w in candidates.winners()] == [2026]
    assert candidates.winners(archived_only=True) == []
