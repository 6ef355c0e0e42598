from conftest import add_candidate
from singcontest import jury, regie, settings
from singcontest.db import db, get_session
from singcontest.sessions import patch_session_config


def test_admin_requires_login(client):
    assert client.get("/admin").status_code == 403
    assert client.post("/admin/sessions/create", data={"name": "x", "slug": "x", "city": "x", "year": 2026}).status_code == 403


def test_admin_login_rejects_wrong_password(client):
    resp = client.post("/admin/login", data={"password": "nope"}, follow_redirects=False)
    assert resp.status_code == 403
    assert "Identifiants invalides" in resp.text


def test_admin_login_with_accented_password(client, monkeypatch):
    resp = client.post("/admin/login", data={"password": "mélodie"}, follow_redirects=False)
    assert resp.status_code == 403

    monkeypatch.setattr(settings, "ADMIN_PASSWORD", "mélodie")
    resp = client.post("/admin/login", data={"password": "mélodie"}, follow_redirects=False)
    assert resp.status_code == 303


def test_admin_creates_and_advances_session(admin_client, outbox):
    resp = admin_client.post(
        "/admin/sessions/create",
        data={"name": "ChanteEnScène Marseille 2027", "slug": "marseille-2027", "city": "Marseille", "year": 2027},
        follow_redirects=False,
    )
    assert resp.status_code == 303
    assert "ChanteEnScène Marseille 2027" in admin_client.get("/admin").text

    with db() as conn:
        session_id = conn.execute("SELECT id FROM sessions WHERE slug='marseille-2027'").fetchone()["id"]
    admin_client.post(f"/admin/sessions/{session_id}/advance", follow_redirects=False)
    with db() as conn:
        assert get_session(conn, session_id)["status"] == "registration_open"
    assert outbox["push"][-1]["role"] == "public"


def test_admin_action_error_is_rendered(admin_client, session_id):
    add_candidate(session_id)
    resp = admin_client.post(f"/admin/sessions/{session_id}/delete", follow_redirects=False)
    assert resp.status_code == 409
    assert "Retour" in resp.text


def test_admin_pages_render(admin_client, session_id, outbox):
    add_candidate(session_id, stage_name="<b>Bold</b>")
    for path in ("candidats", "jury", "selection", "evenements", "stats", "communication", "config"):
        resp = admin_client.get(f"/admin/sessions/{session_id}/{path}")
        assert resp.status_code == 200, path
    assert "&lt;b&gt;Bold&lt;/b&gt;" in admin_client.get(f"/admin/sessions/{session_id}/candidats").text


def test_public_pages(client, session_id):
    add_candidate(session_id, "Ana", "A")
    assert "ChanteEnScène Aubagne 2026" in client.get("/").text
    assert client.get("/aubagne-2026").status_code == 200
    assert "Ana A" in client.get("/aubagne-2026/candidats").text
    assert client.get("/aubagne-2026/candidats/ana-a").status_code == 200
    assert client.get("/aubagne-2026/candidats/nobody").status_code == 404
    assert client.get("/nowhere").status_code == 404
    assert "pas ouvertes" in client.get("/aubagne-2026/inscription").text


def test_registration_form(client, open_session, outbox):
    data = {
        "first_name": "Léa", "last_name": "Martin", "email": "lea@example.com", "date_of_birth": "1995-03-10",
        "song_title": "Je veux", "song_artist": "Zaz", "photo_url": "https://img.example.com/lea.jpg",
    }
    resp = client.post("/aubagne-2026/inscription", data=data)
    assert resp.status_code == 200
    assert "candidature a bien été envoyée" in resp.text

    resp = client.post("/aubagne-2026/inscription", data=data)
    assert resp.status_code == 409


def test_api_vote(client, session_id):
    cid = add_candidate(session_id, likes=2)
    body = {"session_id": session_id, "candidate_id": cid, "fingerprint": "fp"}
    resp = client.post("/api/vote", json=body)
    assert resp.json() == {"success": True, "likes_count": 3}
    resp = client.post("/api/vote", json=body)
    assert resp.status_code == 409


def test_api_live_state_and_vote(client, session_id, outbox):
    cid = add_candidate(session_id, status="finalist")
    event_id = regie.create_event(session_id, "final")
    regie.call_to_stage(event_id, cid)
    regie.open_voting(event_id)

    resp = client.post("/api/live-vote", json={"event_id": event_id, "candidate_id": cid, "fingerprint": "fp"})
    assert resp.json() == {"success": True}
    state = client.get(f"/api/live/{event_id}/state", params={"fingerprint": "fp"}).json()
    assert state["current"]["candidate_id"] == cid
    assert state["voted_ids"] == [cid]


def test_api_subscribe_and_unsubscribe(client, session_id):
    resp = client.post("/api/subscribe", json={"session_id": session_id, "email": "Fan@Example.com"})
    assert resp.json() == {"success": True, "already": False}
    assert client.post("/api/subscribe", json={"session_id": session_id, "email": "bad"}).status_code == 400

    with db() as conn:
        token = conn.execute("SELECT token FROM email_subscribers").fetchone()["token"]
    assert "désinscrit" in client.get(f"/unsubscribe/{token}").text
    assert "Lien invalide" in client.get(f"/unsubscribe/{token}").text


def test_api_track_uses_forwarded_ip(client, session_id):
    resp = client.post("/api/track", json={"session_id": session_id, "page_path": "/aubagne-2026"},
                       headers={"x-forwarded-for": "203.0.113.9, 10.0.0.1"})
    assert resp.json() == {"ok": True}
    with db() as conn:
        assert conn.execute("SELECT ip_address FROM page_views").fetchone()["ip_address"] == "203.0.113.9"


def test_push_send_is_admin_only(client, admin_client, session_id, outbox):
    body = {"session_id": session_id, "title": "Hello", "body": "World", "role": "public"}
    client.cookies.clear()
    assert client.post("/api/push/send", json=body).status_code == 403

    resp = admin_client.post("/admin/login", data={"password": "secret"}, follow_redirects=False)
    assert resp.status_code == 303
    assert admin_client.post("/api/push/send", json=body).json() == {"sent": 1, "failed": 0, "expired": 0}
    assert outbox["push"][-1]["payload"] == {"title": "Hello", "body": "World"}


def test_cron_needs_secret(client, session_id, outbox):
    assert client.get("/api/cron/auto-advance").status_code == 401
    headers = {"Authorization": "Bearer cron-secret"}
    assert client.get("/api/cron/auto-advance", headers=headers).json()["advanced"] is False
    assert client.get("/api/cron/unknown", headers=headers).status_code == 404


def test_jury_login_flow(client, session_id, outbox):
    info = jury.add_juror(session_id, "Paul", "Durand", "online", "paul@example.com")
    cid = add_candidate(session_id, "Ana", "A")

    resp = client.post("/jury/login", data={"email": "paul@example.com"}, follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == f"/jury/{info['qr_token']}"
    assert "Ana A" in client.get(f"/jury/{info['qr_token']}").text

    resp = client.post(f"/jury/{info['qr_token']}/score", data={"candidate_id": cid, "decision": "oui"},
                       follow_redirects=False)
    assert resp.status_code == 303
    assert jury.juror_scores(info["id"])[cid]["total_score"] == 2

    assert client.post("/jury/login", data={"email": "who@example.com"}).status_code == 404


def test_correction_pages(client, session_id, outbox):
    from singcontest import candidates

    cid = add_candidate(session_id, status="pending")
    token = candidates.request_correction(cid, ["song_title"])
    assert 'name="song_title"' in client.get(f"/corriger/{token}").text
    assert "bien été enregistrées" in client.post(f"/corriger/{token}", data={"song_title": "Nouveau"}).text
    assert client.get(f"/corriger/{token}").status_code == 404


def test_mp3_link_for_semifinalists(client, session_id):
    cid = add_candidate(session_id, status="semifinalist")
    assert client.get(f"/upload-mp3/{cid}").status_code == 200
    assert "Lien invalide" in client.post(f"/upload-mp3/{cid}", data={"mp3_url": "ftp://x"}).text
    client.post(f"/upload-mp3/{cid}", data={"mp3_url": "https://files.example.com/track.mp3"})
    with db() as conn:
        assert conn.execute("SELECT mp3_url FROM candidates WHERE id=?", (cid,)).fetchone()[0].endswith("track.mp3")

    other = add_candidate(session_id, "Bea", "B")
    assert client.get(f"/upload-mp3/{other}").status_code == 404


def test_regie_actions_and_csv(admin_client, session_id, outbox):
    patch_session_config(session_id, jury_weight_percent=100, public_weight_percent=0, social_weight_percent=0)
    first = add_candidate(session_id, "Ana", "A", status="finalist")
    second = add_candidate(session_id, "Bea", "B", status="finalist")

    resp = admin_client.post(f"/admin/sessions/{session_id}/events/create", data={"event_type": "final"},
                             follow_redirects=False)
    assert resp.status_code == 303
    event_path = resp.headers["location"]
    event_id = int(event_path.rsplit("/", 1)[1])

    resp = admin_client.post(f"{event_path}/lineup/reorder", data={"order": f"{second},{first}"},
                             follow_redirects=False)
    assert resp.status_code == 303
    assert [i["candidate_id"] for i in regie.lineup(event_id)] == [second, first]

    admin_client.post(f"{event_path}/next", follow_redirects=False)
    admin_client.post(f"{event_path}/open", follow_redirects=False)
    assert regie.live_state(event_id)["current"]["candidate_id"] == second
    assert admin_client.get(event_path).status_code == 200
    assert admin_client.post(f"{event_path}/call", follow_redirects=False).status_code == 400

    resp = admin_client.get(f"{event_path}/download/results")
    assert resp.headers["content-type"].startswith("text/csv")
    assert resp.text.splitlines()[0].startswith("Rank,CandidateId,Name,Category")


def test_csv_download_without_lineup(admin_client, session_id):
    event_id = regie.create_event(session_id, "final")
    resp = admin_client.get(f"/admin/events/{event_id}/download/results")
    assert resp.status_code == 400
    assert "Aucun candidat" in resp.json()["detail"]
    assert admin_client.get(f"/admin/events/{event_id}/download/placements").status_code == 400


def test_candidate_profile_pages(client, session_id):
    cid = add_candidate(session_id, "Ana", "A", status="finalist")
    assert 'name="token"' in client.get("/aubagne-2026/mon-profil").text
    assert client.get("/aubagne-2026/mon-profil", params={"token": "nobody"}).status_code == 404
    page_html = client.get("/aubagne-2026/mon-profil", params={"token": "ana-a"}).text
    assert 'name="bio"' in page_html
    assert "chansons pour la finale" in page_html

    resp = client.post("/aubagne-2026/mon-profil",
                       data={"token": "ana-a", "candidate_id": cid, "bio": "Jazz", "stage_name": "Anouk"},
                       follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/aubagne-2026/mon-profil?token=ana-a"
    assert client.post("/aubagne-2026/mon-profil", data={"token": "x", "candidate_id": cid, "bio": "y"}).status_code == 403

    resp = client.post("/aubagne-2026/mon-profil/finale",
                       data={"token": "ana-a", "candidate_id": cid, "title_0": "Je veux", "artist_0": "Zaz",
                             "phone": "0612345678"},
                       follow_redirects=False)
    assert resp.status_code == 303
    with db() as conn:
        row = conn.execute("SELECT stage_name, finale_songs FROM candidates WHERE id=?", (cid,)).fetchone()
    assert row["stage_name"] == "Anouk"
    assert "Je veux" in row["finale_songs"]


def test_self_checkin_pages(client, session_id):
    cid = add_candidate(session_id, "Ana", "A", status="semifinalist")
    assert "pas ouvert" in client.get("/aubagne-2026/checkin").text
    event_id = regie.create_event(session_id, "semifinal")
    assert "Je suis arrivé(e)" in client.get("/aubagne-2026/checkin").text

    resp = client.post("/aubagne-2026/checkin", data={"candidate_id": cid}, follow_redirects=False)
    assert resp.status_code == 303
    assert "✅ Présent" in client.get("/aubagne-2026/checkin").text
    assert client.get("/api/checkin-status", params={"event_id": event_id}).json() == {"checked_in_ids": [cid]}
    assert client.get("/api/checkin-status").status_code == 400


def test_palmares_pages(admin_client, session_id):
    winner = add_candidate(session_id, "Ana", "A", status="winner")
    assert "Aucun lauréat" in admin_client.get("/palmares").text
    with db() as conn:
        conn.execute("UPDATE sessions SET status='archived' WHERE id=?", (session_id,))
    assert "Ana A" in admin_client.get("/palmares").text

    assert 'value="Ana"' in admin_client.get("/admin/palmares").text
    resp = admin_client.post(f"/admin/palmares/{winner}",
                             data={"first_name": "Anna", "last_name": "A", "stage_name": "Anouk"},
                             follow_redirects=False)
    assert resp.status_code == 303
    assert "Anouk" in admin_client.get("/palmares").text


def test_health_check_cron(client, session_id, outbox):
    patch_session_config(session_id, report_email="boss@example.com")
    headers = {"Authorization": "Bearer cron-secret"}
    result = client.get("/api/cron/health-check", headers=headers).json()
    assert result["global_status"] == "ko"
    labels = {c["label"]: c["status"] for c in result["checks"]}
    assert labels["Clés VAPID"] == "ko"
    assert labels["Base de données"] == "ok"
    assert result["email_sent"] is True
    assert outbox["email"][-1]["to"] == "boss@example.com"
    assert outbox["push"][-1]["role"] == "admin"
