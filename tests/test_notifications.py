import json

import pytest
import requests
from fastapi import HTTPException
from pywebpush import WebPushException

from conftest import add_candidate
from singcontest import emails, push, settings, social
from singcontest.db import db


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=None):
        self.status_code = status_code
        self._data = data or {}
        self.text = text

    def json(self):
        if self.text is not None:
            raise ValueError("not JSON")
        return self._data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")


@pytest.fixture
def vapid(monkeypatch):
    monkeypatch.setattr(settings, "VAPID_PUBLIC_KEY", "pub")
    monkeypatch.setattr(settings, "VAPID_PRIVATE_KEY", "priv")


def _subscriptions():
    with db() as conn:
        return [r["endpoint"] for r in conn.execute("SELECT endpoint FROM push_subscriptions ORDER BY id")]


# -----------------------
# Push
# -----------------------
def test_subscribe_replaces_same_endpoint(session_id):
    push.subscribe(session_id, "https://push/1", "key", "auth")
    push.subscribe(session_id, "https://push/1", "key2", "auth2", role="jury")
    with db() as conn:
        rows = conn.execute("SELECT role, p256dh FROM push_subscriptions").fetchall()
    assert [(r["role"], r["p256dh"]) for r in rows] == [("jury", "key2")]

    with pytest.raises(HTTPException):
        push.subscribe(session_id, "https://push/2", "key", "auth", role="vip")
    push.unsubscribe(session_id, "https://push/1")
    assert _subscriptions() == []


def test_send_push_targets_role_and_drops_expired(session_id, vapid, monkeypatch):
    push.subscribe(session_id, "https://push/public-ok", "k", "a")
    push.subscribe(session_id, "https://push/public-gone", "k", "a")
    push.subscribe(session_id, "https://push/jury", "k", "a", role="jury")
    sent = []

    def fake_webpush(subscription_info, data, **kwargs):
        if subscription_info["endpoint"].endswith("gone"):
            raise WebPushException("gone", response=FakeResponse(410))
        sent.append((subscription_info["endpoint"], json.loads(data)))

    monkeypatch.setattr(push, "webpush", fake_webpush)
    result = push.send_push(session_id, {"title": "Hello"}, role="public")
    assert result == {"sent": 1, "failed": 1, "expired": 1}
    assert sent[0][0] == "https://push/public-ok"
    assert sent[0][1]["title"] == "Hello"
    assert sent[0][1]["icon"] == push.DEFAULT_ICON
    assert _subscriptions() == ["https://push/public-ok", "https://push/jury"]


def test_send_push_by_segment(session_id, vapid, monkeypatch):
    cid = add_candidate(session_id, status="semifinalist")
    with db() as conn:
        conn.execute("UPDATE candidates SET fingerprint='fp-cand' WHERE id=?", (cid,))
    push.subscribe(session_id, "https://push/cand", "k", "a", fingerprint="fp-cand")
    push.subscribe(session_id, "https://push/other", "k", "a", fingerprint="fp-other")
    sent = []
    monkeypatch.setattr(push, "webpush", lambda subscription_info, **kw: sent.append(subscription_info["endpoint"]))

    assert push.send_push(session_id, {"title": "Demi"}, segment="semifinalist")["sent"] == 1
    assert sent == ["https://push/cand"]
    with pytest.raises(ValueError):
        push.send_push(session_id, {"title": "x"}, segment="vips")


def test_push_disabled_without_vapid_keys(session_id, monkeypatch):
    push.subscribe(session_id, "https://push/1", "k", "a")
    monkeypatch.setattr(push, "webpush", lambda **kw: pytest.fail("should not send"))
    assert push.send_push(session_id, {"title": "x"}) == {"sent": 0, "failed": 0, "expired": 0}


def test_notify_logs_instead_of_raising(session_id, monkeypatch, caplog):
    def broken(*args, **kwargs):
        raise RuntimeError("push service down")

    monkeypatch.setattr(push, "send_push", broken)
    push.notify(session_id, {"title": "x"})
    assert "push service down" in caplog.text


def test_cleanup_keeps_juror_devices(session_id):
    with db() as conn:
        for endpoint, juror_id, created in (
            ("https://push/old", None, "2020-01-01T00:00:00+00:00"),
            ("https://push/old-juror", 1, "2020-01-01T00:00:00+00:00"),
            ("https://push/new", None, "2999-01-01T00:00:00+00:00"),
        ):
            conn.execute(
                "INSERT INTO push_subscriptions(session_id, endpoint, p256dh, auth, role, juror_id, created_at) "
                "VALUES(?,?,?,?,?,?,?)",
                (session_id, endpoint, "k", "a", "public", juror_id, created),
            )
    assert push.cleanup_stale(90) == 1
    assert _subscriptions() == ["https://push/old-juror", "https://push/new"]


# -----------------------
# Email
# -----------------------
def test_email_is_simulated_without_api_key():
    result = emails.send_email("a@example.com", "Sujet", "<p>x</p>")
    assert result["status"] == "simulated"


def test_email_failure_is_reported(monkeypatch):
    monkeypatch.setattr(settings, "RESEND_API_KEY", "re_test")

    def boom(params):
        raise RuntimeError("quota exceeded")

    monkeypatch.setattr(emails.resend.Emails, "send", boom)
    result = emails.send_email("a@example.com", "Sujet", "<p>x</p>")
    assert result == {"status": "failed", "detail": "quota exceeded"}


def test_smtp_error_is_returned(monkeypatch):
    def refuse(*args, **kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(emails.smtplib, "SMTP", refuse)
    assert emails.send_smtp("a@example.com", "Sujet", "<p>x</p>") == "connection refused"


def test_templates_escape_user_values():
    candidate = {"id": 4, "first_name": "<script>", "last_name": "X", "stage_name": None, "slug": "x",
                 "song_title": "A & B", "song_artist": "C"}
    html = emails.selection_email(candidate, {"semifinal_date": "2026-05-16", "semifinal_location": "Espace Bernard"})
    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert "samedi 16 mai 2026" in html
    assert "/upload-mp3/4" in html

    mail = emails.inscription_reminder_email("Aubagne 2026", 5, "2026-03-01", "https://x/inscription", "https://x/u")
    assert "5 jours" in mail["subject"]


# -----------------------
# Social
# -----------------------
def test_publish_text_goes_to_facebook_only(monkeypatch):
    monkeypatch.setattr(settings, "FACEBOOK_PAGE_TOKEN", "fb-token")
    calls = []

    def fake_get(url, params=None, timeout=None):
        calls.append(("GET", url))
        return FakeResponse(data={"id": "page-1", "name": "ChanteEnScène"})

    def fake_post(url, json=None, timeout=None):
        calls.append(("POST", url, json))
        return FakeResponse(data={"id": "post-9"})

    monkeypatch.setattr(social.requests, "get", fake_get)
    monkeypatch.setattr(social.requests, "post", fake_post)
    result = social.publish_everywhere("Bonjour !", link="https://chantenscene.fr")
    assert result == {"facebook": {"id": "post-9"}}
    assert calls[1][1].endswith("/page-1/feed")
    assert calls[1][2]["link"] == "https://chantenscene.fr"


def test_publish_reports_errors_per_network(monkeypatch):
    monkeypatch.setattr(settings, "FACEBOOK_PAGE_TOKEN", "")
    monkeypatch.setattr(settings, "INSTAGRAM_TOKEN", "ig")
    monkeypatch.setattr(settings, "INSTAGRAM_ACCOUNT_ID", "42")

    def down(*args, **kwargs):
        raise requests.ConnectionError("network down")

    monkeypatch.setattr(social.requests, "post", down)
    result = social.publish_everywhere("Photo", image_url="https://i.imgur.com/abc.png")
    assert result["facebook"] == {"error": "FACEBOOK_PAGE_TOKEN manquant"}
    assert result["instagram"] == {"error": "network down"}


def test_non_json_error_page_is_reported(monkeypatch):
    monkeypatch.setattr(settings, "FACEBOOK_PAGE_TOKEN", "fb-token")
    monkeypatch.setattr(social.requests, "get", lambda *a, **k: FakeResponse(502, text="<html>Bad gateway</html>"))
    result = social.publish_everywhere("Bonjour !")
    assert result == {"facebook": {"error": "502 Server Error"}}


def test_instagram_container_without_id(monkeypatch):
    monkeypatch.setattr(settings, "FACEBOOK_PAGE_TOKEN", "")
    monkeypatch.setattr(settings, "INSTAGRAM_TOKEN", "ig")
    monkeypatch.setattr(settings, "INSTAGRAM_ACCOUNT_ID", "42")
    monkeypatch.setattr(social.requests, "post", lambda *a, **k: FakeResponse(data={"status": "queued"}))
    result = social.publish_everywhere("Photo", image_url="https://i.imgur.com/abc.png")
    assert "conteneur manquant" in result["instagram"]["error"]

def test_image_urls_are_validated():
    assert social.validate_image_url("https://i.imgur.com/abc.png") is None
    assert social.validate_image_url("https://imgur.com/a/album") is not None
    assert social.validate_image_url("ftp://example.com/x.png") == "URL image invalide"
    result = social.publish_everywhere("x", image_url="https://example.com/page")
    assert "error" in result["facebook"] and "error" in result["instagram"]
