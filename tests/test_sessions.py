import pytest
from fastapi import HTTPException

from conftest import add_candidate
from singcontest import sessions
from singcontest.db import db, get_config, get_session
from singcontest.utils import today_local


def _session(session_id):
    with db() as conn:
        return get_session(conn, session_id)


def test_create_session_uses_default_config(session_id):
    s = _session(session_id)
    assert s["status"] == "draft"
    assert s["is_active"] == 1
    with db() as conn:
        config = get_config(conn, session_id)
    assert config["jury_weight_percent"] == 60
    assert [c["name"] for c in config["age_categories"]] == ["Enfant", "Ado", "Adulte"]


def test_duplicate_slug_is_rejected(session_id):
    with pytest.raises(HTTPException) as exc:
        sessions.create_session("Autre", "aubagne-2026", "Aubagne", 2026)
    assert exc.value.status_code == 409


def test_only_one_active_session(session_id):
    other = sessions.create_session("Marseille 2026", "marseille-2026", "Marseille", 2026)
    sessions.set_active_session(other)
    assert _session(session_id)["is_active"] == 0
    assert _session(other)["is_active"] == 1


def test_duplicate_moves_to_next_year(session_id):
    new_id = sessions.duplicate_session(session_id)
    s = _session(new_id)
    assert s["slug"] == "aubagne-2027"
    assert s["name"] == "ChanteEnScène Aubagne 2027"
    assert s["year"] == 2027
    assert s["status"] == "draft"


def test_delete_refuses_sessions_with_candidates(session_id):
    add_candidate(session_id)
    with pytest.raises(HTTPException) as exc:
        sessions.delete_session(session_id)
    assert exc.value.status_code == 409


def test_advance_phase_stamps_date_and_notifies(session_id, outbox):
    assert sessions.advance_session_phase(session_id) == "registration_open"
    with db() as conn:
        config = get_config(conn, session_id)
    assert config["registration_start"] == today_local().isoformat()
    assert outbox["push"][0]["payload"]["title"] == "Les inscriptions sont ouvertes !"
    assert outbox["push"][0]["role"] == "public"


def test_archived_session_cannot_advance(session_id):
    sessions.archive_session(session_id)
    with pytest.raises(HTTPException):
        sessions.advance_session_phase(session_id)


def test_scoring_weights_are_bounded(session_id):
    sessions.update_scoring_weights(session_id, 50, 30, 20)
    with db() as conn:
        config = get_config(conn, session_id)
    assert (config["jury_weight_percent"], config["public_weight_percent"], config["social_weight_percent"]) == (50, 30, 20)
    with pytest.raises(HTTPException):
        sessions.update_scoring_weights(session_id, 120, 0, 0)


def test_subscribe_and_unsubscribe(session_id):
    assert sessions.subscribe_email(session_id, " Fan@Example.com ") == {"success": True, "already": False}
    assert sessions.subscribe_email(session_id, "fan@example.com") == {"success": True, "already": True}
    [sub] = sessions.active_subscribers(session_id)
    assert sub["email"] == "fan@example.com"

    assert sessions.unsubscribe(sub["token"]) is True
    assert sessions.unsubscribe(sub["token"]) is False
    assert sessions.active_subscribers(session_id) == []

    # Subscribing again reactivates the address
    assert sessions.subscribe_email(session_id, "fan@example.com")["already"] is False
    assert len(sessions.active_subscribers(session_id)) == 1


def test_subscribe_rejects_invalid_email(session_id):
    with pytest.raises(HTTPException):
        sessions.subscribe_email(session_id, "not-an-email")


def test_newsletter_goes_to_active_subscribers(session_id, outbox):
    sessions.subscribe_email(session_id, "a@example.com")
    sessions.subscribe_email(session_id, "b@example.com")
    token = sessions.active_subscribers(session_id)[1]["token"]
    sessions.unsubscribe(token)

    assert sessions.send_newsletter(session_id, "Nouvelles", "<p>Bonjour</p>") == {"sent": 1, "failed": 0}
    [mail] = outbox["smtp"]
    assert mail["to"] == "a@example.com"
    assert "List-Unsubscribe" in mail["headers"]
    assert "/unsubscribe/" in mail["html"]
