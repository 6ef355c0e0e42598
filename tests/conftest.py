import pytest
from fastapi.testclient import TestClient

from singcontest import emails, push, settings, social
from singcontest.db import db, init_db
from singcontest.sessions import create_session, set_active_session, update_session_status
from singcontest.utils import now_iso


@pytest.fixture(autouse=True)
def tmp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DB_PATH", str(tmp_path / "contest.sqlite"))
    monkeypatch.setattr(settings, "RESEND_API_KEY", "")
    monkeypatch.setattr(settings, "VAPID_PUBLIC_KEY", "")
    monkeypatch.setattr(settings, "VAPID_PRIVATE_KEY", "")
    monkeypatch.setattr(settings, "ADMIN_PASSWORD", "secret")
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret")
    init_db()


@pytest.fixture
def outbox(monkeypatch):
    """Captures every email, SMTP message and push instead of sending them."""
    box = {"email": [], "smtp": [], "push": []}

    def fake_send_email(to, subject, html):
        box["email"].append({"to": to, "subject": subject, "html": html})
        return {"status": "sent", "detail": ""}

    def fake_send_smtp(to, subject, html, headers=None):
        box["smtp"].append({"to": to, "subject": subject, "html": html, "headers": headers or {}})
        return None

    def fake_send_push(session_id, payload, **kwargs):
        box["push"].append({"session_id": session_id, "payload": payload, **kwargs})
        return {"sent": 1, "failed": 0, "expired": 0}

    monkeypatch.setattr(emails, "send_email", fake_send_email)
    monkeypatch.setattr(emails, "send_smtp", fake_send_smtp)
    monkeypatch.setattr(push, "send_push", fake_send_push)
    monkeypatch.setattr(social, "publish_everywhere", lambda *a, **k: {"facebook": {"id": "1"}})
    return box


@pytest.fixture
def session_id():
    sid = create_session("ChanteEnScène Aubagne 2026", "aubagne-2026", "Aubagne", 2026)
    set_active_session(sid)
    return sid


@pytest.fixture
def open_session(session_id):
    update_session_status(session_id, "registration_open")
    return session_id


def add_candidate(session_id, first_name="Marie", last_name="Dupont", category="Adulte", status="approved",
                  likes=0, stage_name=None, email=None):
    with db() as conn:
        cur = conn.execute(
            """
            INSERT INTO candidates(session_id, first_name, last_name, stage_name, date_of_birth, email, category,
                                   song_title, song_artist, slug, photo_url, status, likes_count, created_at)
            VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (session_id, first_name, last_name, stage_name, "1990-05-01",
             email or f"{first_name.lower()}.{last_name.lower()}@example.com", category,
             "Hallelujah", "Leonard Cohen", f"{first_name.lower()}-{last_name.lower()}",
             "https://img.example.com/p.jpg", status, likes, now_iso()),
        )
        return cur.lastrowid


@pytest.fixture
def client():
    from singcontest.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_client(client):
    resp = client.post("/admin/login", data={"email": "", "password": "secret"}, follow_redirects=False)
    assert resp.status_code == 303
    return client
