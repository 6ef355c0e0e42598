import json
from datetime import date, timedelta

from conftest import add_candidate
from singcontest import cron, jury, social
from singcontest.db import db, get_config, get_session
from singcontest.sessions import patch_session_config, subscribe_email
from singcontest.utils import utcnow


def _session(session_id):
    with db() as conn:
        return get_session(conn, session_id)


def _config(session_id):
    with db() as conn:
        return get_config(conn, session_id)


def test_nothing_to_do_without_session():
    assert cron.run_auto_advance()["advanced"] is False
    assert cron.run_admin_report()["sent"] is False
    assert cron.run_social_posts()["posted"] == 0
    assert cron.run_push_cleanup() == {"removed": 0}


def test_auto_advance_opens_registrations_on_start_date(session_id, outbox):
    patch_session_config(session_id, registration_start="2026-03-01", registration_end="2026-04-30")

    assert cron.run_auto_advance(date(2026, 2, 28)) == {"advanced": False, "status": "draft"}
    result = cron.run_auto_advance(date(2026, 3, 1))
    assert result == {"advanced": True, "from": "draft", "status": "registration_open"}
    assert _session(session_id)["status"] == "registration_open"
    assert outbox["push"][-1]["payload"]["title"] == "Les inscriptions sont ouvertes !"

    # Closes the day after the end date
    assert cron.run_auto_advance(date(2026, 4, 30))["advanced"] is False
    assert cron.run_auto_advance(date(2026, 5, 1))["status"] == "registration_closed"


def test_custom_phase_message(session_id, outbox):
    patch_session_config(
        session_id,
        registration_start="2026-03-01",
        custom_phase_notifications={"registration_open": {"title": "C'est parti", "body": "Go"}},
    )
    cron.run_auto_advance(date(2026, 3, 2))
    assert outbox["push"][-1]["payload"]["title"] == "C'est parti"


def test_inscription_reminder_five_days_before(session_id, outbox):
    patch_session_config(session_id, registration_start="2026-03-10")
    subscribe_email(session_id, "fan@example.com")

    assert cron.run_inscription_reminder(date(2026, 3, 4)) == {"sent": False, "days_left": 6}
    result = cron.run_inscription_reminder(date(2026, 3, 5))
    assert result == {"sent": True, "days_left": 5, "emails_sent": 1, "emails_failed": 0}
    mail = outbox["smtp"][0]
    assert mail["to"] == "fan@example.com"
    assert "5 jours" in mail["subject"]
    assert "/unsubscribe/" in mail["headers"]["List-Unsubscribe"]
    assert outbox["push"][-1]["payload"]["title"] == "Inscriptions dans 5 jours !"
    assert _config(session_id)["last_inscription_reminder"] == "2026-03-05"

    assert cron.run_inscription_reminder(date(2026, 3, 5))["message"] == "Already sent today"
    assert _session(session_id)["status"] == "draft"


def test_inscription_reminder_opening_day(session_id, outbox):
    patch_session_config(session_id, registration_start="2026-03-10")
    result = cron.run_inscription_reminder(date(2026, 3, 10))
    assert result["sent"] is True and result["emails_sent"] == 0
    assert _session(session_id)["status"] == "registration_open"
    assert outbox["push"][-1]["payload"]["title"] == "Les inscriptions sont ouvertes !"

    assert cron.run_inscription_reminder(date(2026, 3, 10))["message"] == "No draft session"


def test_inscription_reminder_needs_a_start_date(session_id):
    assert cron.run_inscription_reminder(date(2026, 3, 10))["message"] == "No registration_start configured"


def test_jury_recap(session_id, outbox):
    juror = jury.add_juror(session_id, "Paul", "Durand", "online", "paul@example.com")
    jury.add_juror(session_id, "No", "Mail", "online")
    add_candidate(session_id, "Ana", "A", stage_name="Anouk")

    result = cron.run_jury_recap()
    assert result == {"sent": 1, "jurors": 1}
    mail = outbox["email"][-1]
    assert mail["to"] == "paul@example.com"
    assert juror["qr_token"] in mail["html"]
    assert "Anouk" in mail["html"]

    patch_session_config(session_id, jury_online_voting_closed=True)
    assert cron.run_jury_recap()["message"] == "Online jury closed"


def test_admin_report_respects_frequency(session_id, outbox):
    assert cron.run_admin_report()["sent"] is False
    patch_session_config(session_id, report_frequency="daily", report_email="boss@example.com")

    now = utcnow()
    assert cron.run_admin_report(now) == {"sent": True, "status": "sent"}
    assert outbox["email"][-1]["to"] == "boss@example.com"
    assert cron.run_admin_report(now + timedelta(hours=2))["message"] == "Too soon for next report"
    assert cron.run_admin_report(now + timedelta(hours=24))["sent"] is True
    assert len(outbox["email"]) == 2


def test_social_posts_publish_due_entries(session_id, outbox, monkeypatch):
    now = utcnow()
    patch_session_config(session_id, social_schedule=[
        {"at": (now - timedelta(minutes=5)).isoformat(), "message": "Votez !"},
        {"at": (now + timedelta(days=1)).isoformat(), "message": "Demain"},
        {"at": (now - timedelta(days=1)).isoformat(), "message": "Déjà fait", "posted_at": "2026-01-01T00:00:00+00:00"},
    ])
    published = []
    monkeypatch.setattr(social, "publish_everywhere",
                        lambda message, image_url=None, link=None: published.append(message) or {"facebook": {"id": "1"}})

    assert cron.run_social_posts(now)["posted"] == 1
    assert published == ["Votez !"]
    schedule = _config(session_id)["social_schedule"]
    assert schedule[0]["result"] == {"facebook": "ok"}
    assert "posted_at" not in schedule[1]

    assert cron.run_social_posts(now)["posted"] == 0
    assert [p["source"] for p in social.recent_posts(session_id)] == ["schedule"]


def test_social_post_errors_are_kept(session_id, outbox, monkeypatch):
    now = utcnow()
    patch_session_config(session_id, social_schedule=[{"at": now.isoformat(), "message": "Photo"}])
    monkeypatch.setattr(social, "publish_everywhere",
                        lambda *a, **k: {"facebook": {"error": "token expired"}})
    assert cron.run_social_posts(now)["posted"] == 1
    entry = _config(session_id)["social_schedule"][0]
    assert entry["result"] == {"facebook": "error"}
    assert entry["errors"] == ["token expired"]
    assert social.recent_posts(session_id)[0]["error"] == "token expired"


def test_failing_entry_does_not_republish_the_others(session_id, outbox, monkeypatch):
    now = utcnow()
    patch_session_config(session_id, social_schedule=[
        {"at": now.isoformat(), "message": "one"},
        {"at": now.isoformat(), "message": "two"},
    ])
    published = []

    def flaky(message, image_url=None, link=None):
        published.append(message)
        if message == "two":
            raise KeyError("id")
        return {"facebook": {"id": "1"}}

    monkeypatch.setattr(social, "publish_everywhere", flaky)
    cron.run_social_posts(now)
    cron.run_social_posts(now)
    assert published == ["one", "two"]
    schedule = _config(session_id)["social_schedule"]
    assert all(entry["posted_at"] for entry in schedule)
    assert schedule[1]["result"] == {"facebook": "error"}


def _post_session(status, **config):
    return {"name": "ChanteEnScène Aubagne 2026", "slug": "aubagne-2026", "status": status,
            "config": json.dumps(config)}


def test_generated_posts_follow_the_calendar():
    session = _post_session("registration_closed", final_date="2026-06-19")
    # 2026-06-15 is a Monday, 2026-06-18 a Thursday
    tuesday = cron.generate_posts(session, 12, [], date(2026, 6, 16))
    assert [p["type"] for p in tuesday] == ["countdown_final"]
    assert "Plus que 3 jours avant la GRANDE FINALE" in tuesday[0]["message"]
    assert tuesday[0]["link"].endswith("/aubagne-2026/live")

    monday = cron.generate_posts(session, 12, [], date(2026, 6, 15))
    assert [p["type"] for p in monday] == ["countdown_final", "weekly_promo"]
    assert "12 candidats en lice" in monday[1]["message"]

    thursday = cron.generate_posts(session, 12, [], date(2026, 6, 18))
    assert [p["type"] for p in thursday] == ["countdown_final", "voting_reminder"]
    assert "Plus que 1 jour avant" in thursday[0]["message"]


def test_registration_countdown_needs_five_candidates():
    session = _post_session("registration_open", registration_end="2026-06-23")
    assert [p["type"] for p in cron.generate_posts(session, 5, [], date(2026, 6, 16))] == ["countdown_registration_close"]
    assert cron.generate_posts(session, 4, [], date(2026, 6, 16)) == []


def test_new_candidates_come_first():
    session = _post_session("registration_open", registration_end="2026-06-23")
    newcomers = [{"first_name": f"N{i}", "last_name": "X", "stage_name": None, "slug": f"n{i}-x"} for i in range(3)]
    posts = cron.generate_posts(session, 8, newcomers, date(2026, 6, 16))
    assert posts[0]["type"] == "new_candidates_welcome"
    assert "Bienvenue à N0, N1, N2" in posts[0]["message"]
    assert cron.generate_posts(session, 8, newcomers * 2, date(2026, 6, 16))[0]["type"] == "new_candidates_wave"


def test_one_generated_post_per_day(open_session, outbox, monkeypatch):
    add_candidate(open_session, "Ana", "A", stage_name="Anouk")
    published = []
    monkeypatch.setattr(social, "publish_everywhere",
                        lambda message, image_url=None, link=None: published.append(message) or {"facebook": {"id": "9"}})
    now = utcnow()

    result = cron.run_social_posts(now)
    assert result["posted"] == 1
    assert result["results"][0]["post"]["type"] == "new_candidate_welcome"
    assert "Bienvenue à Anouk" in published[0]

    assert cron.run_social_posts(now)["posted"] == 0
    assert len(published) == 1
    [row] = social.recent_posts(open_session)
    assert (row["source"], row["post_type"], row["facebook_post_id"]) == ("cron", "new_candidate_welcome", "9")
