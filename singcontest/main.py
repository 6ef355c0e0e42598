from __future__ import annotations

import json
import logging
from typing import Callable, Dict, List, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from pydantic import BaseModel

from . import analytics, auth, candidates, cron, jury, push, regie, scoring, sessions, settings, social, votes
from .db import active_session, db, init_db, load_json
from .pages import admin_nav, button_form, df_table, error_page, page
from .phases import NEXT_LABELS, STATUS_LABELS, SESSION_STATUSES, timeline_step
from .utils import display_name, escape_html as e, format_date_fr

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()


@app.on_event("startup")
def _startup():
    init_db()


def _done(action: Callable[[], object], back: str) -> Response:
    """Run a form action and redirect back, or show its error message."""
    try:
        action()
    except HTTPException as exc:
        return error_page(str(exc.detail), back, exc.status_code)
    return RedirectResponse(url=back, status_code=303)


def _session_by_slug(slug: str):
    with db() as conn:
        row = conn.execute("SELECT * FROM sessions WHERE slug=?", (slug,)).fetchone()
    if not row:
        raise HTTPException(404, "Session introuvable.")
    return row


def _session(session_id: int):
    with db() as conn:
        row = conn.execute("SELECT * FROM sessions WHERE id=?", (session_id,)).fetchone()
    if not row:
        raise HTTPException(404, "Session introuvable.")
    return row


# -----------------------
# JSON bodies
# -----------------------
class VoteIn(BaseModel):
    session_id: int
    candidate_id: int
    fingerprint: str


class LiveVoteIn(BaseModel):
    event_id: int
    candidate_id: int
    fingerprint: str


class PushSubscriptionIn(BaseModel):
    session_id: int
    endpoint: str
    p256dh: str = ""
    auth: str = ""
    role: Optional[str] = None
    juror_id: Optional[int] = None
    fingerprint: Optional[str] = None


class TrackIn(BaseModel):
    session_id: int
    page_path: str
    candidate_id: Optional[int] = None
    fingerprint: Optional[str] = None
    referrer: Optional[str] = None
    duration: Optional[float] = None


class SubscribeIn(BaseModel):
    session_id: int
    email: str


class PushSendIn(BaseModel):
    session_id: int
    title: str
    body: str
    url: Optional[str] = None
    role: str = "all"
    segment: Optional[str] = None
    candidate_id: Optional[int] = None


# -----------------------
# Routes: API
# -----------------------
@app.post("/api/vote")
def api_vote(data: VoteIn):
    likes = votes.vote_for_candidate(data.session_id, data.candidate_id, data.fingerprint)
    return {"success": True, "likes_count": likes}


@app.post("/api/live-vote")
def api_live_vote(data: LiveVoteIn):
    votes.cast_live_vote(data.event_id, data.candidate_id, data.fingerprint)
    return {"success": True}


@app.get("/api/live/{event_id}/state")
def api_live_state(event_id: int, fingerprint: str = ""):
    state = regie.live_state(event_id)
    if fingerprint:
        state["voted_ids"] = sorted(votes.live_voted_ids(event_id, fingerprint))
    return state


@app.get("/api/checkin-status")
def api_checkin_status(event_id: Optional[int] = None):
    if event_id is None:
        raise HTTPException(400, "event_id required")
    return {"checked_in_ids": regie.checked_in_ids(event_id)}


@app.post("/api/push/subscribe")
def api_push_subscribe(data: PushSubscriptionIn):
    push.subscribe(data.session_id, data.endpoint, data.p256dh, data.auth, data.role, data.juror_id, data.fingerprint)
    return {"success": True}


@app.post("/api/push/unsubscribe")
def api_push_unsubscribe(data: PushSubscriptionIn):
    push.unsubscribe(data.session_id, data.endpoint)
    return {"success": True}


@app.post("/api/push/send")
def api_push_send(data: PushSendIn, admin: str = Depends(auth.require_admin)):
    payload = {"title": data.title, "body": data.body}
    if data.url:
        payload["url"] = data.url
    try:
        result = push.send_push(data.session_id, payload, role=data.role, segment=data.segment,
                                candidate_id=data.candidate_id)
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return result


@app.post("/api/track")
def api_track(data: TrackIn, request: Request):
    forwarded = request.headers.get("x-forwarded-for") or request.headers.get("x-real-ip") or ""
    ip = forwarded.split(",")[0].strip() or (request.client.host if request.client else None)
    analytics.track_page_view(
        data.session_id, data.page_path, data.candidate_id, data.fingerprint, data.referrer, data.duration,
        ip, request.headers.get("user-agent"),
    )
    return {"ok": True}


@app.post("/api/subscribe")
def api_subscribe(data: SubscribeIn):
    return sessions.subscribe_email(data.session_id, data.email)


@app.post("/api/share/{candidate_id}")
def api_share(candidate_id: int):
    candidates.record_share(candidate_id)
    return {"ok": True}


CRON_JOBS: Dict[str, Callable[[], dict]] = {
    "auto-advance": cron.run_auto_advance,
    "push-cleanup": cron.run_push_cleanup,
    "inscription-reminder": cron.run_inscription_reminder,
    "jury-recap": cron.run_jury_recap,
    "admin-report": cron.run_admin_report,
    "social-post": cron.run_social_posts,
    "health-check": cron.run_health_check,
}


@app.get("/api/cron/{job}")
def api_cron(job: str, request: Request):
    auth.require_cron(request)
    if job not in CRON_JOBS:
        raise HTTPException(404, "Unknown job")
    return JSONResponse(CRON_JOBS[job]())


# -----------------------
# Routes: Jury
# -----------------------
@app.get("/jury", response_class=HTMLResponse)
def jury_home():
    body = """
    <div class="card">
      <form method="post" action="/jury/login">
        <div class="row">
          <input name="email" type="email" placeholder="Votre email" required />
        </div>
        <button type="submit">Accéder à l'espace jury</button>
      </form>
      <p class="muted">Utilisez l'email auquel vous avez reçu votre invitation.</p>
    </div>
    """
    return page("Espace jury", body)


@app.post("/jury/login")
def jury_login(email: str = Form(...)):
    try:
        token = jury.login_juror(email)
    except HTTPException as exc:
        return error_page(str(exc.detail), "/jury", exc.status_code)
    return RedirectResponse(url=f"/jury/{token}", status_code=303)


def _stage_candidate(juror) -> Optional[dict]:
    event = regie.latest_event(juror["session_id"], juror["role"])
    if not event:
        return None
    state = regie.live_state(event["id"])
    if not state["current"]:
        return None
    return {**state["current"], "vote_phase": state["vote_phase"]}


@app.get("/jury/{token}", response_class=HTMLResponse)
def jury_page(token: str):
    juror = auth.require_juror(token)
    jury.track_juror_login(juror["id"])
    with db() as conn:
        session = conn.execute("SELECT * FROM sessions WHERE id=?", (juror["session_id"],)).fetchone()
    config = load_json(session["config"])
    mine = jury.juror_scores(juror["id"])

    onboarding = ""
    if not juror["onboarding_done"]:
        onboarding = f"""
        <div class="card">
          <p>Bienvenue dans le jury de <b>{e(session['name'])}</b> !</p>
          {button_form(f"/jury/{token}/onboarding", "C'est compris")}
        </div>
        """

    if juror["role"] == "online":
        if config.get("jury_online_voting_closed"):
            return page("Jury en ligne", '<div class="card">Le jury en ligne est terminé. Merci pour votre participation !</div>')
        rows = ""
        for c in candidates.public_candidates(juror["session_id"]):
            current = load_json(mine[c["id"]]["scores"]).get("decision") if c["id"] in mine else ""
            buttons = "".join(
                button_form(f"/jury/{token}/score", label + (" ✓" if current == value else ""),
                            {"candidate_id": c["id"], "decision": value})
                for value, label in (("oui", "Oui"), ("peut-etre", "Peut-être"), ("non", "Non"))
            )
            video = f'<a href="{e(c["video_url"])}" target="_blank">Vidéo</a>' if c["video_url"] else ""
            rows += (
                f"<tr><td>{e(display_name(c))}</td><td>{e(c['category'])}</td>"
                f"<td>{e(c['song_title'])} — {e(c['song_artist'])}</td><td>{video}</td><td>{buttons}</td></tr>"
            )
        body = f"""
        {onboarding}
        <div class="card">
          <p>{len(mine)} candidat(s) évalué(s).</p>
          <table>
            <thead><tr><th>Candidat</th><th>Catégorie</th><th>Chanson</th><th></th><th>Votre avis</th></tr></thead>
            <tbody>{rows or '<tr><td colspan="5" class="muted">Aucun candidat pour le moment.</td></tr>'}</tbody>
          </table>
        </div>
        """
        return page("Jury en ligne", body)

    on_stage = _stage_candidate(juror)
    if not on_stage:
        body = f'{onboarding}<div class="card"><p class="muted">En attente du prochain candidat…</p></div>'
        return page("Jury", body)

    header = (
        f"<h2>{e(on_stage['name'])}</h2>"
        f"<p class='muted'>{e(on_stage['category'])} — {e(on_stage['song_title'])}</p>"
    )
    if not on_stage["vote_phase"]:
        return page("Jury", f'{onboarding}<div class="card">{header}<p>Prestation en cours… Le vote ouvrira à la fin.</p></div>')

    existing = load_json(mine[on_stage["candidate_id"]]["scores"]) if on_stage["candidate_id"] in mine else {}
    if juror["role"] == "semifinal":
        inputs = (
            f'<select name="stars">'
            + "".join(
                f'<option value="{n}"{" selected" if existing.get("stars") == n else ""}>{"★" * n}</option>'
                for n in range(1, jury.MAX_STARS + 1)
            )
            + "</select>"
        )
    else:
        inputs = ""
        for c in config.get("jury_criteria") or []:
            inputs += f"<label>{e(c['name'])} <select name=\"{e(c['name'])}\">" + "".join(
                f'<option value="{n}"{" selected" if existing.get(c["name"]) == n else ""}>{n}</option>'
                for n in range(1, jury.MAX_CRITERION_SCORE + 1)
            ) + "</select></label><br/>"

    body = f"""
    {onboarding}
    <div class="card">
      {header}
      <form method="post" action="/jury/{e(token)}/score">
        <input type="hidden" name="candidate_id" value="{on_stage['candidate_id']}" />
        {inputs}
        <textarea name="comment" rows="2" placeholder="Commentaire (optionnel)"></textarea>
        <button type="submit">{'Modifier ma note' if existing else 'Valider ma note'}</button>
      </form>
    </div>
    """
    return page("Jury", body)


@app.post("/jury/{token}/score")
async def jury_score(token: str, request: Request, candidate_id: int = Form(...)):
    juror = auth.require_juror(token)
    form = await request.form()
    payload = {k: v for k, v in form.items() if k != "candidate_id"}
    return _done(lambda: jury.submit_score(juror, candidate_id, payload), f"/jury/{token}")


@app.post("/jury/{token}/onboarding")
def jury_onboarding(token: str):
    juror = auth.require_juror(token)
    jury.complete_onboarding(juror["id"])
    return RedirectResponse(url=f"/jury/{token}", status_code=303)


# -----------------------
# Routes: Admin auth
# -----------------------
@app.get("/admin/login", response_class=HTMLResponse)
def admin_login_page():
    body = """
    <div class="card">
      <form method="post" action="/admin/login">
        <div class="row">
          <input name="email" type="email" placeholder="Email" />
          <input name="password" type="password" placeholder="Mot de passe" required />
        </div>
        <button type="submit">Connexion</button>
      </form>
    </div>
    """
    return page("Administration", body)


@app.post("/admin/login")
def admin_login(email: str = Form(""), password: str = Form(...)):
    try:
        token = auth.login_admin(email, password)
    except HTTPException as exc:
        return error_page(str(exc.detail), "/admin/login", exc.status_code)
    response = RedirectResponse(url="/admin", status_code=303)
    response.set_cookie(settings.ADMIN_COOKIE, token, httponly=True, samesite="lax")
    return response


@app.post("/admin/logout")
def admin_logout(request: Request):
    auth.logout_admin(request.cookies.get(settings.ADMIN_COOKIE))
    response = RedirectResponse(url="/admin/login", status_code=303)
    response.delete_cookie(settings.ADMIN_COOKIE)
    return response


# -----------------------
# Routes: Admin sessions
# -----------------------
@app.get("/admin", response_class=HTMLResponse)
def admin_home(admin: str = Depends(auth.require_admin)):
    with db() as conn:
        rows_db = conn.execute("SELECT * FROM sessions ORDER BY year DESC, id DESC").fetchall()

    rows = ""
    for s in rows_db:
        next_label = NEXT_LABELS.get(s["status"])
        actions = [
            f'<a href="/admin/sessions/{s["id"]}/candidats">Ouvrir</a>',
            button_form(f"/admin/sessions/{s['id']}/activate", "Activer") if not s["is_active"] else "",
            button_form(f"/admin/sessions/{s['id']}/advance", next_label) if next_label else "",
            button_form(f"/admin/sessions/{s['id']}/duplicate", "Dupliquer"),
            button_form(f"/admin/sessions/{s['id']}/archive", "Archiver", confirm="Archiver cette session ?"),
            button_form(f"/admin/sessions/{s['id']}/delete", "Supprimer", confirm="Supprimer cette session ?"),
        ]
        rows += f"""
        <tr>
          <td>{e(s['name'])}</td>
          <td>{e(s['city'])}</td>
          <td><span class="pill">{e(STATUS_LABELS.get(s['status'], s['status']))}</span></td>
          <td>{'✅' if s['is_active'] else ''}</td>
          <td>{' '.join(a for a in actions if a)}</td>
        </tr>
        """

    body = f"""
    <div class="card">
      <h2>Nouvelle session</h2>
      <form method="post" action="/admin/sessions/create">
        <div class="row">
          <input name="name" placeholder="Nom (ex. ChanteEnScène Aubagne 2026)" required />
          <input name="slug" placeholder="Slug (ex. aubagne-2026)" required />
          <input name="city" placeholder="Ville" required />
          <input name="year" type="number" placeholder="Année" required />
        </div>
        <button type="submit">Créer</button>
      </form>
    </div>

    <div class="card">
      <h2>Sessions</h2>
      <table>
        <thead><tr><th>Nom</th><th>Ville</th><th>Statut</th><th>Active</th><th></th></tr></thead>
        <tbody>{rows or '<tr><td colspan="5" class="muted">Aucune session.</td></tr>'}</tbody>
      </table>
    </div>
    """
    return page("Sessions", body, admin_nav())


@app.post("/admin/sessions/create")
def admin_session_create(name: str = Form(...), slug: str = Form(...), city: str = Form(...), year: int = Form(...),
                         admin: str = Depends(auth.require_admin)):
    return _done(lambda: sessions.create_session(name, slug, city, year), "/admin")


@app.post("/admin/sessions/{session_id}/activate")
def admin_session_activate(session_id: int, admin: str = Depends(auth.require_admin)):
    return _done(lambda: sessions.set_active_session(session_id), "/admin")


@app.post("/admin/sessions/{session_id}/advance")
def admin_session_advance(session_id: int, admin: str = Depends(auth.require_admin)):
    return _done(lambda: sessions.advance_session_phase(session_id), "/admin")


@app.post("/admin/sessions/{session_id}/duplicate")
def admin_session_duplicate(session_id: int, admin: str = Depends(auth.require_admin)):
    return _done(lambda: sessions.duplicate_session(session_id), "/admin")


@app.post("/admin/sessions/{session_id}/archive")
def admin_session_archive(session_id: int, admin: str = Depends(auth.require_admin)):
    return _done(lambda: sessions.archive_session(session_id), "/admin")


@app.post("/admin/sessions/{session_id}/delete")
def admin_session_delete(session_id: int, admin: str = Depends(auth.require_admin)):
    return _done(lambda: sessions.delete_session(session_id), "/admin")


@app.post("/admin/sessions/{session_id}/edit")
def admin_session_edit(session_id: int, name: str = Form(...), city: str = Form(...), status: str = Form(...),
                       admin: str = Depends(auth.require_admin)):
    return _done(lambda: sessions.update_session(session_id, name, city, status),
                 f"/admin/sessions/{session_id}/config")


@app.post("/admin/sessions/{session_id}/status")
def admin_session_status(session_id: int, status: str = Form(...), admin: str = Depends(auth.require_admin)):
    return _done(lambda: sessions.update_session_status(session_id, status), f"/admin/sessions/{session_id}/config")


@app.get("/admin/sessions/{session_id}/config", response_class=HTMLResponse)
def admin_session_config(session_id: int, admin: str = Depends(auth.require_admin)):
    session = _session(session_id)
    config = load_json(session["config"])
    options = "".join(
        f'<option value="{s}"{" selected" if s == session["status"] else ""}>{e(STATUS_LABELS[s])}</option>'
        for s in SESSION_STATUSES
    )
    body = f"""
    <div class="card">
      <h3>Session</h3>
      <form method="post" action="/admin/sessions/{session_id}/edit">
        <div class="row">
          <input name="name" value="{e(session['name'])}" required />
          <input name="city" value="{e(session['city'])}" required />
          <select name="status">{options}</select>
        </div>
        <button type="submit">Enregistrer</button>
      </form>
    </div>
    <div class="card">
      <h3>Pondération</h3>
      <form method="post" action="/admin/sessions/{session_id}/weights">
        <div class="row">
          <label>Jury % <input name="jury" type="number" value="{config.get('jury_weight_percent', scoring.FINAL_DEFAULT_WEIGHTS[0])}" /></label>
          <label>Public % <input name="public" type="number" value="{config.get('public_weight_percent', scoring.FINAL_DEFAULT_WEIGHTS[1])}" /></label>
          <label>Réseaux % <input name="social" type="number" value="{config.get('social_weight_percent', scoring.FINAL_DEFAULT_WEIGHTS[2])}" /></label>
        </div>
        <button type="submit">Enregistrer</button>
      </form>
    </div>
    <div class="card">
      <h3>Configuration (JSON)</h3>
      <form method="post" action="/admin/sessions/{session_id}/config">
        <textarea name="config" rows="24">{e(json.dumps(config, ensure_ascii=False, indent=2))}</textarea>
        <button type="submit">Enregistrer</button>
      </form>
    </div>
    """
    return page(f"Configuration — {session['name']}", body, admin_nav(session_id))


@app.post("/admin/sessions/{session_id}/config")
def admin_session_config_save(session_id: int, config: str = Form(...), admin: str = Depends(auth.require_admin)):
    back = f"/admin/sessions/{session_id}/config"
    try:
        parsed = json.loads(config)
    except json.JSONDecodeError as exc:
        return error_page(f"JSON invalide : {exc}", back)
    if not isinstance(parsed, dict):
        return error_page("La configuration doit être un objet JSON.", back)
    return _done(lambda: sessions.update_session_config(session_id, parsed), back)


@app.post("/admin/sessions/{session_id}/weights")
def admin_session_weights(session_id: int, jury: int = Form(...), public: int = Form(...), social: int = Form(0),
                          admin: str = Depends(auth.require_admin)):
    return _done(lambda: sessions.update_scoring_weights(session_id, jury, public, social),
                 f"/admin/sessions/{session_id}/config")


# -----------------------
# Routes: Admin candidates
# -----------------------
@app.get("/admin/sessions/{session_id}/candidats", response_class=HTMLResponse)
def admin_candidates(session_id: int, status: str = "", admin: str = Depends(auth.require_admin)):
    session = _session(session_id)
    rows_db = candidates.list_candidates(session_id, [status] if status else None)

    rows = ""
    for c in rows_db:
        back = f"/admin/candidates/{c['id']}"
        status_buttons = " ".join(
            button_form(f"{back}/status", label, {"status": value})
            for value, label in (("approved", "Valider"), ("rejected", "Refuser"), ("pending", "En attente"))
            if value != c["status"]
        )
        rows += f"""
        <tr>
          <td>{e(display_name(c))}<br/><span class="muted">{e(c['email'])}</span></td>
          <td>{e(c['category'])}</td>
          <td>{e(c['song_title'])} — {e(c['song_artist'])}</td>
          <td><span class="pill">{e(c['status'])}</span></td>
          <td>{c['likes_count']} ❤️</td>
          <td>
            {status_buttons}
            {button_form(f"{back}/video-public", "Vidéo " + ("privée" if c['video_public'] else "publique"),
                         {"video_public": 0 if c['video_public'] else 1})}
            <form class="inline" method="post" action="{back}/correction">
              <select name="fields" multiple>
                <option value="song_title">Titre</option><option value="song_artist">Artiste</option>
                <option value="video">Vidéo</option><option value="photo">Photo</option>
              </select>
              <button type="submit">Demander une correction</button>
            </form>
            {button_form(f"{back}/delete", "Supprimer", confirm="Supprimer ce candidat ?")}
          </td>
        </tr>
        """

    filters = " | ".join(
        f'<a href="?status={s}">{s}</a>' for s in candidates.CANDIDATE_STATUSES
    )
    body = f"""
    <div class="card">
      <p><a href="?">Tous</a> | {filters}</p>
      <table>
        <thead><tr><th>Candidat</th><th>Catégorie</th><th>Chanson</th><th>Statut</th><th>Votes</th><th></th></tr></thead>
        <tbody>{rows or '<tr><td colspan="6" class="muted">Aucun candidat.</td></tr>'}</tbody>
      </table>
    </div>
    """
    return page(f"Candidats — {session['name']}", body, admin_nav(session_id))


def _candidate_session_url(candidate_id: int, section: str = "candidats") -> str:
    with db() as conn:
        row = conn.execute("SELECT session_id FROM candidates WHERE id=?", (candidate_id,)).fetchone()
    if not row:
        raise HTTPException(404, "Candidat introuvable.")
    return f"/admin/sessions/{row['session_id']}/{section}"


@app.post("/admin/candidates/{candidate_id}/status")
def admin_candidate_status(candidate_id: int, status: str = Form(...), admin: str = Depends(auth.require_admin)):
    return _done(lambda: candidates.update_candidate_status(candidate_id, status),
                 _candidate_session_url(candidate_id))


@app.post("/admin/candidates/{candidate_id}/video-public")
def admin_candidate_video(candidate_id: int, video_public: int = Form(...), admin: str = Depends(auth.require_admin)):
    return _done(lambda: candidates.toggle_video_public(candidate_id, bool(video_public)),
                 _candidate_session_url(candidate_id))


@app.post("/admin/candidates/{candidate_id}/mp3")
def admin_candidate_mp3(candidate_id: int, mp3_url: str = Form(...), admin: str = Depends(auth.require_admin)):
    return _done(lambda: candidates.save_mp3_url(candidate_id, mp3_url.strip()),
                 _candidate_session_url(candidate_id, "evenements"))


@app.post("/admin/candidates/{candidate_id}/correction")
def admin_candidate_correction(candidate_id: int, fields: List[str] = Form([]),
                               admin: str = Depends(auth.require_admin)):
    return _done(lambda: candidates.request_correction(candidate_id, fields), _candidate_session_url(candidate_id))


@app.post("/admin/candidates/{candidate_id}/delete")
def admin_candidate_delete(candidate_id: int, admin: str = Depends(auth.require_admin)):
    back = _candidate_session_url(candidate_id)
    return _done(lambda: candidates.delete_candidate(candidate_id), back)


# -----------------------
# Routes: Admin jury
# -----------------------
@app.get("/admin/sessions/{session_id}/jury", response_class=HTMLResponse)
def admin_jury(session_id: int, admin: str = Depends(auth.require_admin)):
    session = _session(session_id)
    config = load_json(session["config"])
    rows = ""
    for j in jury.list_jurors(session_id):
        back = f"/admin/jurors/{j['id']}"
        rows += f"""
        <tr>
          <td>{e(jury.juror_name(j))}<br/><span class="muted">{e(j['email'] or '')}</span></td>
          <td>{e(j['role'])}</td>
          <td><a href="/jury/{e(j['qr_token'])}">Lien</a></td>
          <td>{j['login_count']}</td>
          <td>{'✅' if j['is_active'] else '⏸'}</td>
          <td>
            {button_form(f"{back}/toggle", "Désactiver" if j['is_active'] else "Activer",
                         {"is_active": 0 if j['is_active'] else 1})}
            {button_form(f"{back}/invite", "Renvoyer l'invitation") if j['email'] else ''}
            {button_form(f"{back}/delete", "Supprimer", confirm="Supprimer ce juré ?")}
          </td>
        </tr>
        """
    role_options = "".join(f'<option value="{r}">{r}</option>' for r in jury.JUROR_ROLES)
    closed = config.get("jury_online_voting_closed")
    body = f"""
    <div class="card">
      <h3>Ajouter un juré</h3>
      <form method="post" action="/admin/sessions/{session_id}/jury/add">
        <div class="row">
          <input name="first_name" placeholder="Prénom" required />
          <input name="last_name" placeholder="Nom" />
          <input name="email" type="email" placeholder="Email (invitation)" />
          <select name="role">{role_options}</select>
        </div>
        <button type="submit">Ajouter</button>
      </form>
    </div>
    <div class="card">
      <p>Jury en ligne : <b>{'fermé' if closed else 'ouvert'}</b>
      {button_form(f"/admin/sessions/{session_id}/jury/online", "Rouvrir" if closed else "Clôturer",
                   {"closed": 0 if closed else 1})}</p>
      <table>
        <thead><tr><th>Juré</th><th>Rôle</th><th>Accès</th><th>Connexions</th><th>Actif</th><th></th></tr></thead>
        <tbody>{rows or '<tr><td colspan="6" class="muted">Aucun juré.</td></tr>'}</tbody>
      </table>
    </div>
    """
    return page(f"Jury — {session['name']}", body, admin_nav(session_id))


@app.post("/admin/sessions/{session_id}/jury/add")
def admin_jury_add(session_id: int, first_name: str = Form(...), last_name: str = Form(""), email: str = Form(""),
                   role: str = Form(...), admin: str = Depends(auth.require_admin)):
    return _done(lambda: jury.add_juror(session_id, first_name, last_name, role, email),
                 f"/admin/sessions/{session_id}/jury")


@app.post("/admin/sessions/{session_id}/jury/online")
def admin_jury_online(session_id: int, closed: int = Form(...), admin: str = Depends(auth.require_admin)):
    return _done(lambda: sessions.patch_session_config(session_id, jury_online_voting_closed=bool(closed)),
                 f"/admin/sessions/{session_id}/jury")


def _juror_session_url(juror_id: int) -> str:
    with db() as conn:
        row = conn.execute("SELECT session_id FROM jurors WHERE id=?", (juror_id,)).fetchone()
    if not row:
        raise HTTPException(404, "Juré non trouvé")
    return f"/admin/sessions/{row['session_id']}/jury"


@app.post("/admin/jurors/{juror_id}/toggle")
def admin_juror_toggle(juror_id: int, is_active: int = Form(...), admin: str = Depends(auth.require_admin)):
    return _done(lambda: jury.toggle_juror(juror_id, bool(is_active)), _juror_session_url(juror_id))


@app.post("/admin/jurors/{juror_id}/invite")
def admin_juror_invite(juror_id: int, admin: str = Depends(auth.require_admin)):
    return _done(lambda: jury.send_jury_invitation(juror_id), _juror_session_url(juror_id))


@app.post("/admin/jurors/{juror_id}/delete")
def admin_juror_delete(juror_id: int, admin: str = Depends(auth.require_admin)):
    back = _juror_session_url(juror_id)
    return _done(lambda: jury.delete_juror(juror_id), back)


# -----------------------
# Routes: Admin selection
# -----------------------
@app.get("/admin/sessions/{session_id}/selection", response_class=HTMLResponse)
def admin_selection(session_id: int, jury_weight: Optional[float] = None, admin: str = Depends(auth.require_admin)):
    session = _session(session_id)
    scored, config = scoring.load_online_scores(session_id, jury_weight)
    scored = scored.sort_values(["category", "CombinedScore"], ascending=[True, False], kind="mergesort")

    rows = ""
    for _, c in scored.iterrows():
        cid = int(c["id"])
        if c["status"] == "semifinalist":
            action = button_form(f"/admin/candidates/{cid}/semifinalist", "Retirer", {"selected": 0})
        else:
            action = button_form(f"/admin/candidates/{cid}/semifinalist", "Sélectionner", {"selected": 1})
        rows += (
            f"<tr><td>{e(c['first_name'])} {e(c['last_name'])}</td><td>{e(c['category'])}</td>"
            f"<td>{int(c['Oui'])} / {int(c['PeutEtre'])}</td><td>{c['JuryScore']}</td><td>{c['PublicScore']}</td>"
            f"<td><b>{c['CombinedScore']}</b></td><td>{e(c['status'])}</td><td>{action}</td></tr>"
        )

    semis = candidates.list_candidates(session_id, ("semifinalist", "finalist"))
    finalist_rows = "".join(
        f"<tr><td>{e(display_name(c))}</td><td>{e(c['category'])}</td><td>{e(c['status'])}</td><td>"
        + button_form(f"/admin/candidates/{c['id']}/finalist", "Retirer" if c["status"] == "finalist" else "Finaliste",
                      {"selected": 0 if c["status"] == "finalist" else 1})
        + "</td></tr>"
        for c in semis
    )
    selection_sent = config.get("selection_notifications_sent_at")
    finale_sent = config.get("finale_notifications_sent_at")
    weight = jury_weight if jury_weight is not None else config.get("jury_weight_percent", 60)

    body = f"""
    <div class="card">
      <h3>Présélection en ligne</h3>
      <form method="get" class="row">
        <label>Poids du jury (%) <input name="jury_weight" type="number" value="{weight}" /></label>
        <button type="submit">Recalculer</button>
      </form>
      <p>
        {button_form(f"/admin/sessions/{session_id}/selection/auto", "Sélection automatique", {"jury_weight": weight})}
        <a href="/admin/sessions/{session_id}/selection/previews">Aperçu des emails</a>
      </p>
      <table>
        <thead><tr><th>Candidat</th><th>Catégorie</th><th>Oui / Peut-être</th><th>Jury</th><th>Public</th>
        <th>Total</th><th>Statut</th><th></th></tr></thead>
        <tbody>{rows or '<tr><td colspan="8" class="muted">Aucun candidat.</td></tr>'}</tbody>
      </table>
      <p>{'Notifications envoyées le ' + e(selection_sent) if selection_sent else
          button_form(f"/admin/sessions/{session_id}/selection/notify", "Envoyer les notifications de sélection",
                      confirm="Envoyer les emails ? La liste sera verrouillée.")}</p>
    </div>
    <div class="card">
      <h3>Finalistes</h3>
      <table>
        <thead><tr><th>Candidat</th><th>Catégorie</th><th>Statut</th><th></th></tr></thead>
        <tbody>{finalist_rows or '<tr><td colspan="4" class="muted">Aucun demi-finaliste.</td></tr>'}</tbody>
      </table>
      <p>{'Notifications envoyées le ' + e(finale_sent) if finale_sent else
          button_form(f"/admin/sessions/{session_id}/finale/notify", "Envoyer les notifications de finale",
                      confirm="Envoyer les emails ? La liste sera verrouillée.")}</p>
    </div>
    """
    return page(f"Sélection — {session['name']}", body, admin_nav(session_id))


@app.post("/admin/sessions/{session_id}/selection/auto")
def admin_selection_auto(session_id: int, jury_weight: Optional[float] = Form(None),
                         admin: str = Depends(auth.require_admin)):
    return _done(lambda: scoring.auto_select_semifinalists(session_id, jury_weight),
                 f"/admin/sessions/{session_id}/selection")


def _notification_report(title: str, session_id: int, result: dict) -> HTMLResponse:
    rows = "".join(
        f"<tr><td>{e(r['name'])}</td><td>{e(r['email'])}</td>"
        f"<td class=\"{'danger' if r['status'] == 'failed' else 'ok'}\">{e(r['status'])}</td>"
        f"<td class=\"muted\">{e(r['detail'])}</td></tr>"
        for r in result["report"]
    )
    body = f"""
    <div class="card">
      <p>{result['delivered']} envoyé(s), {result['failed']} échec(s).</p>
      <table><thead><tr><th>Candidat</th><th>Email</th><th>Statut</th><th></th></tr></thead><tbody>{rows}</tbody></table>
      <p><a href="/admin/sessions/{session_id}/selection">← Retour</a></p>
    </div>
    """
    return page(title, body, admin_nav(session_id))


@app.post("/admin/sessions/{session_id}/selection/notify", response_class=HTMLResponse)
def admin_selection_notify(session_id: int, admin: str = Depends(auth.require_admin)):
    try:
        result = scoring.send_selection_notifications(session_id)
    except HTTPException as exc:
        return error_page(str(exc.detail), f"/admin/sessions/{session_id}/selection", exc.status_code)
    return _notification_report("Notifications de sélection", session_id, result)


@app.post("/admin/sessions/{session_id}/finale/notify", response_class=HTMLResponse)
def admin_finale_notify(session_id: int, admin: str = Depends(auth.require_admin)):
    try:
        result = scoring.send_finale_notifications(session_id)
    except HTTPException as exc:
        return error_page(str(exc.detail), f"/admin/sessions/{session_id}/selection", exc.status_code)
    return _notification_report("Notifications de finale", session_id, result)


@app.get("/admin/sessions/{session_id}/selection/previews", response_class=HTMLResponse)
def admin_selection_previews(session_id: int, admin: str = Depends(auth.require_admin)):
    previews = scoring.email_previews(session_id)
    # Rendered emails are our own templates, user values already escaped
    body = "".join(
        f'<div class="card"><h3>{e(p["subject"])}</h3>{p["html"]}</div>' for p in previews.values()
    )
    return page("Aperçu des emails", body, admin_nav(session_id))


@app.post("/admin/candidates/{candidate_id}/semifinalist")
def admin_candidate_semifinalist(candidate_id: int, selected: int = Form(...),
                                 admin: str = Depends(auth.require_admin)):
    action = scoring.promote_to_semifinalist if selected else scoring.remove_from_semifinalist
    return _done(lambda: action(candidate_id), _candidate_session_url(candidate_id, "selection"))


@app.post("/admin/candidates/{candidate_id}/finalist")
def admin_candidate_finalist(candidate_id: int, selected: int = Form(...), admin: str = Depends(auth.require_admin)):
    action = scoring.promote_to_finalist if selected else scoring.remove_from_finalist
    return _done(lambda: action(candidate_id), _candidate_session_url(candidate_id, "selection"))


# -----------------------
# Routes: Admin régie
# -----------------------
@app.get("/admin/sessions/{session_id}/evenements", response_class=HTMLResponse)
def admin_events(session_id: int, admin: str = Depends(auth.require_admin)):
    session = _session(session_id)
    rows = "".join(
        f"<tr><td>#{ev['id']}</td><td>{e(ev['event_type'])}</td><td>{e(ev['status'])}</td>"
        f"<td><a href=\"/admin/events/{ev['id']}\">Régie</a></td></tr>"
        for ev in regie.list_events(session_id)
    )
    type_options = "".join(f'<option value="{t}">{t}</option>' for t in regie.EVENT_TYPES)
    ranking_cards = ""
    for category, df in scoring.semifinal_rankings(session_id).items():
        ranking_cards += f"<h4>{e(category)}</h4>" + df_table(df, ["Name", "AvgStars", "ScoreCount", "status"])

    body = f"""
    <div class="card">
      <form method="post" action="/admin/sessions/{session_id}/events/create" class="row">
        <select name="event_type">{type_options}</select>
        <button type="submit">Créer un événement</button>
      </form>
      <p class="muted">Une finale est pré-remplie avec les finalistes (Enfant, Ado, Adulte).</p>
      <table>
        <thead><tr><th>ID</th><th>Type</th><th>Statut</th><th></th></tr></thead>
        <tbody>{rows or '<tr><td colspan="4" class="muted">Aucun événement.</td></tr>'}</tbody>
      </table>
    </div>
    <div class="card">
      <h3>Classement demi-finale</h3>
      {ranking_cards or '<p class="muted">Aucun demi-finaliste.</p>'}
    </div>
    """
    return page(f"Régie — {session['name']}", body, admin_nav(session_id))


@app.post("/admin/sessions/{session_id}/events/create")
def admin_event_create(session_id: int, event_type: str = Form(...), admin: str = Depends(auth.require_admin)):
    try:
        event_id = regie.create_event(session_id, event_type)
    except HTTPException as exc:
        return error_page(str(exc.detail), f"/admin/sessions/{session_id}/evenements", exc.status_code)
    return RedirectResponse(url=f"/admin/events/{event_id}", status_code=303)


@app.get("/admin/events/{event_id}", response_class=HTMLResponse)
def admin_event(event_id: int, admin: str = Depends(auth.require_admin)):
    state = regie.live_state(event_id)
    with db() as conn:
        event = regie.get_event(conn, event_id)
    session_id = event["session_id"]
    base = f"/admin/events/{event_id}"
    counts = votes.live_vote_counts(event_id)

    rows = ""
    for item in regie.lineup(event_id):
        cid = item["candidate_id"]
        actions = []
        if item["status"] == "pending":
            actions.append(button_form(f"{base}/call", "Sur scène", {"candidate_id": cid}))
        if item["status"] == "completed":
            actions.append(button_form(f"{base}/replay", "Rejouer", {"candidate_id": cid}))
        if item["status"] != "absent":
            actions.append(button_form(f"{base}/absent", "Absent", {"candidate_id": cid}))
        if event["event_type"] == "final":
            actions.append(button_form(f"{base}/reveal", "Révéler gagnant", {"candidate_id": cid},
                                       confirm="Révéler ce gagnant ?"))
        if item["mp3_url"]:
            mp3 = f'<a href="{e(item["mp3_url"])}">MP3</a>'
        else:
            mp3 = (
                f'<form class="inline" method="post" action="/admin/candidates/{cid}/mp3">'
                f'<input name="mp3_url" placeholder="URL MP3" required /><button type="submit">OK</button></form>'
            )
        rows += (
            f"<tr><td>{item['position']}</td><td>{e(display_name(item))} <span class=\"muted\">#{cid}</span></td><td>{e(item['category'])}</td>"
            f"<td>{e(item['song_title'])} {mp3}</td><td><span class=\"pill\">{e(item['status'])}</span></td>"
            f"<td>{counts.get(cid, 0)}</td><td>{' '.join(actions)}</td></tr>"
        )

    current = state["current"]
    stage = "<p class='muted'>Personne sur scène.</p>"
    if current:
        stage = f"""
        <h2>{e(current['name'])}</h2>
        <p class="muted">{e(current['category'])} — {e(current['song_title'])}</p>
        <p class="big chrono-{state['chrono_color']}">{state['performance_timer']}</p>
        <p>Vote : {'ouvert — ' + state['vote_timer'] if state['vote_phase'] else 'fermé'}</p>
        """
    nxt = state["next"]
    controls = " ".join([
        button_form(f"{base}/open", "Ouvrir le vote"),
        button_form(f"{base}/close", "Fermer le vote"),
        button_form(f"{base}/finish", "Fin de prestation"),
        button_form(f"{base}/next", "Suivant" + (f" ({nxt['name']})" if nxt else "")),
    ])
    status_options = "".join(
        f'<option value="{s}"{" selected" if s == event["status"] else ""}>{s}</option>' for s in regie.EVENT_STATUSES
    )

    results = ""
    if event["event_type"] == "final":
        try:
            results_df, _placements = scoring.final_rankings(event_id, event["current_category"])
            results = df_table(results_df, ["Rank", "Name", "Category", "JuryNormalized", "PublicNormalized",
                                            "SocialNormalized", "TotalScore", "SumPlacements"])
        except ValueError as exc:
            results = f'<p class="muted">{e(str(exc))}</p>'
        results = f"""
        <div class="card">
          <h3>Classement {e(event['current_category'] or '')}</h3>
          <p><a href="{base}/download/results">CSV résultats</a> | <a href="{base}/download/placements">CSV classements jurés</a></p>
          {results}
          {button_form(f"{base}/reset-winner", "Annuler la révélation") if state['winner_revealed'] else ''}
        </div>
        """

    body = f"""
    <div class="card">{stage}<p>{controls}</p></div>
    <div class="card">
      <form method="post" action="{base}/status" class="row">
        <select name="status">{status_options}</select><button type="submit">Statut</button>
      </form>
      <form method="post" action="{base}/category" class="row">
        <input name="category" value="{e(event['current_category'] or '')}" placeholder="Catégorie en cours" />
        <button type="submit">Catégorie</button>
      </form>
      <form method="post" action="{base}/checkin" class="row">
        <input name="candidate_id" type="number" placeholder="ID candidat" required />
        <input name="position" type="number" placeholder="Position (remplaçant)" />
        <button type="submit">Ajouter à la programmation</button>
      </form>
      <form method="post" action="{base}/lineup/reorder" class="row">
        <input name="order" placeholder="Ordre de passage (IDs candidats séparés par des virgules)" required />
        <button type="submit">Réordonner</button>
      </form>
    </div>
    <div class="card">
      <p>{state['completed']} / {state['total']} passage(s)</p>
      <table>
        <thead><tr><th>#</th><th>Candidat</th><th>Catégorie</th><th>Chanson</th><th>Statut</th><th>Votes</th><th></th></tr></thead>
        <tbody>{rows or '<tr><td colspan="7" class="muted">Programmation vide.</td></tr>'}</tbody>
      </table>
    </div>
    {results}
    <p>{button_form(f"{base}/delete", "Supprimer l'événement", confirm="Supprimer cet événement ?")}</p>
    """
    return page(f"Régie {event['event_type']} #{event_id}", body, admin_nav(session_id))


@app.post("/admin/events/{event_id}/{action}")
def admin_event_action(event_id: int, action: str, candidate_id: Optional[int] = Form(None),
                       status: str = Form(""), category: str = Form(""), position: Optional[int] = Form(None),
                       admin: str = Depends(auth.require_admin)):
    back = f"/admin/events/{event_id}"
    if action == "delete":
        with db() as conn:
            session_id = regie.get_event(conn, event_id)["session_id"]
        return _done(lambda: regie.delete_event(event_id), f"/admin/sessions/{session_id}/evenements")

    def checkin():
        if position:
            regie.add_replacement(event_id, candidate_id, position)
        else:
            regie.checkin_candidate(event_id, candidate_id)

    actions: Dict[str, Callable[[], object]] = {
        "call": lambda: regie.call_to_stage(event_id, candidate_id),
        "open": lambda: regie.open_voting(event_id),
        "close": lambda: regie.close_voting(event_id),
        "finish": lambda: regie.finish_performance(event_id),
        "next": lambda: regie.advance_to_next(event_id),
        "replay": lambda: regie.replay_candidate(event_id, candidate_id),
        "absent": lambda: regie.mark_absent(event_id, candidate_id),
        "reveal": lambda: regie.reveal_winner(event_id, candidate_id),
        "reset-winner": lambda: regie.reset_winner_reveal(event_id),
        "status": lambda: regie.update_event_status(event_id, status),
        "category": lambda: regie.set_current_category(event_id, category.strip()),
        "checkin": checkin,
    }
    if action not in actions:
        raise HTTPException(404, "Action inconnue.")
    if action in ("call", "replay", "absent", "reveal", "checkin") and not candidate_id:
        return error_page("Candidat manquant.", back)
    return _done(actions[action], back)


@app.post("/admin/events/{event_id}/lineup/reorder")
def admin_event_reorder(event_id: int, order: str = Form(...), admin: str = Depends(auth.require_admin)):
    back = f"/admin/events/{event_id}"
    try:
        candidate_ids = [int(v) for v in order.replace(";", ",").split(",") if v.strip()]
    except ValueError:
        return error_page("Ordre invalide : utilisez des numéros de candidats.", back)
    row_for = {item["candidate_id"]: item["id"] for item in regie.lineup(event_id)}
    unknown = [cid for cid in candidate_ids if cid not in row_for]
    if unknown:
        return error_page(f"Candidats absents de la programmation : {unknown}", back)
    lineup_ids = [row_for[cid] for cid in candidate_ids]
    return _done(lambda: regie.reorder_lineup(event_id, lineup_ids), f"/admin/events/{event_id}")


def _final_frames(event_id: int, category: str):
    try:
        return scoring.final_rankings(event_id, category or None)
    except ValueError:
        raise HTTPException(400, "Aucun candidat dans la programmation.")


@app.get("/admin/events/{event_id}/download/results")
def download_results(event_id: int, category: str = "", admin: str = Depends(auth.require_admin)):
    results_df, _placements_df = _final_frames(event_id, category)
    return Response(
        content=scoring.results_csv(results_df),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="event_{event_id}_results.csv"'},
    )


@app.get("/admin/events/{event_id}/download/placements")
def download_placements(event_id: int, category: str = "", admin: str = Depends(auth.require_admin)):
    _results_df, placements_df = _final_frames(event_id, category)
    return Response(
        content=scoring.placements_csv(placements_df),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="event_{event_id}_juror_placements.csv"'},
    )


# -----------------------
# Routes: Admin stats + communication
# -----------------------
@app.get("/admin/sessions/{session_id}/stats", response_class=HTMLResponse)
def admin_stats(session_id: int, days: int = 30, admin: str = Depends(auth.require_admin)):
    session = _session(session_id)
    funnel = "".join(
        f"<tr><td>{e(s['step'])}</td><td>{s['count']}</td><td>{'' if s['rate'] is None else str(s['rate']) + ' %'}</td></tr>"
        for s in analytics.registration_funnel(session_id)
    )
    body = f"""
    <div class="card"><h3>Par jour ({days} j)</h3>{df_table(analytics.daily_stats(session_id, days))}</div>
    <div class="card"><h3>Entonnoir d'inscription</h3>
      <table><thead><tr><th>Étape</th><th>Nombre</th><th>Conversion</th></tr></thead><tbody>{funnel}</tbody></table>
    </div>
    <div class="card"><h3>Pages</h3>{df_table(analytics.top_pages(session_id))}</div>
    <div class="card"><h3>Candidats</h3>{df_table(analytics.top_candidates(session_id))}</div>
    <div class="card"><h3>Provenance</h3>{df_table(analytics.referrer_breakdown(session_id))}</div>
    <div class="card"><h3>Jury</h3>{df_table(analytics.jury_engagement(session_id))}</div>
    """
    return page(f"Statistiques — {session['name']}", body, admin_nav(session_id))


@app.get("/admin/sessions/{session_id}/communication", response_class=HTMLResponse)
def admin_communication(session_id: int, admin: str = Depends(auth.require_admin)):
    session = _session(session_id)
    roles = "".join(f'<option value="{r}">{r}</option>' for r in ("all", *push.ROLES))
    segments = '<option value="">—</option>' + "".join(f'<option value="{s}">{s}</option>' for s in push.SEGMENTS)
    subscribers = len(sessions.active_subscribers(session_id))
    posts = "".join(
        f"<tr><td>{e(p['created_at'])}</td><td>{e(p['source'])}</td><td>{e(p['post_type'])}</td>"
        f"<td>{e(p['error'] or 'ok')}</td></tr>"
        for p in social.recent_posts(session_id)
    ) or '<tr><td colspan="4" class="muted">Aucune publication.</td></tr>'
    body = f"""
    <div class="card">
      <h3>Notification push</h3>
      <form method="post" action="/admin/sessions/{session_id}/push">
        <div class="row">
          <input name="title" placeholder="Titre" required />
          <input name="body" placeholder="Message" required />
          <select name="role">{roles}</select>
          <select name="segment">{segments}</select>
        </div>
        <button type="submit">Envoyer</button>
      </form>
    </div>
    <div class="card">
      <h3>Newsletter ({subscribers} abonné(s))</h3>
      <form method="post" action="/admin/sessions/{session_id}/newsletter">
        <input name="subject" placeholder="Sujet" required />
        <textarea name="body_html" rows="8" placeholder="Contenu HTML" required></textarea>
        <button type="submit">Envoyer</button>
      </form>
    </div>
    <div class="card">
      <h3>Réseaux sociaux</h3>
      <form method="post" action="/admin/sessions/{session_id}/social">
        <textarea name="message" rows="4" placeholder="Message" required></textarea>
        <div class="row">
          <input name="image_url" placeholder="URL de l'image (Instagram)" />
          <input name="link" placeholder="Lien" />
        </div>
        <button type="submit">Publier</button>
      </form>
      <table><tr><th>Date</th><th>Source</th><th>Type</th><th>Résultat</th></tr>{posts}</table>
    </div>
    """
    return page(f"Communication — {session['name']}", body, admin_nav(session_id))


def _result_page(title: str, session_id: int, lines: List[str]) -> HTMLResponse:
    items = "".join(f"<li>{e(line)}</li>" for line in lines)
    back = f'<p><a href="/admin/sessions/{session_id}/communication">← Retour</a></p>'
    return page(title, f'<div class="card"><ul>{items}</ul>{back}</div>', admin_nav(session_id))


@app.post("/admin/sessions/{session_id}/push", response_class=HTMLResponse)
def admin_push(session_id: int, title: str = Form(...), body: str = Form(...), role: str = Form("all"),
               segment: str = Form(""), admin: str = Depends(auth.require_admin)):
    try:
        result = push.send_push(session_id, {"title": title, "body": body}, role=role, segment=segment or None)
    except ValueError as exc:
        return error_page(str(exc), f"/admin/sessions/{session_id}/communication")
    return _result_page("Notification push", session_id,
                        [f"Envoyées : {result['sent']}", f"Échecs : {result['failed']}",
                         f"Expirées : {result['expired']}"])


@app.post("/admin/sessions/{session_id}/newsletter", response_class=HTMLResponse)
def admin_newsletter(session_id: int, subject: str = Form(...), body_html: str = Form(...),
                     admin: str = Depends(auth.require_admin)):
    try:
        result = sessions.send_newsletter(session_id, subject, body_html)
    except HTTPException as exc:
        return error_page(str(exc.detail), f"/admin/sessions/{session_id}/communication", exc.status_code)
    return _result_page("Newsletter", session_id, [f"Envoyés : {result['sent']}", f"Échecs : {result['failed']}"])


@app.post("/admin/sessions/{session_id}/social", response_class=HTMLResponse)
def admin_social(session_id: int, message: str = Form(...), image_url: str = Form(""), link: str = Form(""),
                 admin: str = Depends(auth.require_admin)):
    result = social.publish_everywhere(message, image_url.strip() or None, link.strip() or None)
    social.log_post(session_id, "manual", "admin", message, link.strip() or None, result)
    lines = [
        f"{network} : {r['error'] if 'error' in r else 'publié (' + str(r.get('id', '')) + ')'}"
        for network, r in result.items()
    ]
    return _result_page("Réseaux sociaux", session_id, lines)


# -----------------------
# Routes: Admin palmares
# -----------------------
@app.get("/admin/palmares", response_class=HTMLResponse)
def admin_palmares(admin: str = Depends(auth.require_admin)):
    forms = ""
    for w in candidates.winners():
        forms += f"""
        <div class="card">
          <p><b>{e(w['session_name'])}</b> <span class="pill">{e(w['category'] or '')}</span></p>
          <form method="post" action="/admin/palmares/{w['id']}">
            <div class="row">
              <input name="first_name" value="{e(w['first_name'])}" required />
              <input name="last_name" value="{e(w['last_name'])}" required />
              <input name="stage_name" value="{e(w['stage_name'] or '')}" placeholder="Nom de scène" />
            </div>
            <div class="row">
              <input name="song_title" value="{e(w['song_title'] or '')}" placeholder="Chanson" />
              <input name="song_artist" value="{e(w['song_artist'] or '')}" placeholder="Artiste" />
            </div>
            <button type="submit">Enregistrer</button>
          </form>
        </div>
        """
    return page("Palmarès", forms or '<div class="card"><p class="muted">Aucun lauréat.</p></div>', admin_nav())


@app.post("/admin/palmares/{candidate_id}")
def admin_update_winner(candidate_id: int, first_name: str = Form(...), last_name: str = Form(...),
                        stage_name: str = Form(""), song_title: str = Form(""), song_artist: str = Form(""),
                        admin: str = Depends(auth.require_admin)):
    return _done(
        lambda: candidates.update_winner(candidate_id, first_name, last_name, stage_name, song_title, song_artist),
        "/admin/palmares",
    )


# -----------------------
# Routes: Public
# -----------------------
TIMELINE = ["Bientôt", "Inscriptions", "Votes", "Demi-finale", "Finale"]


def _session_home(session) -> HTMLResponse:
    config = load_json(session["config"])
    step = timeline_step(session["status"])
    timeline = " → ".join(
        f"<b>{label}</b>" if i == step else f'<span class="muted">{label}</span>' for i, label in enumerate(TIMELINE)
    )
    slug = session["slug"]
    dates = []
    for key, label in (("registration_start", "Ouverture des inscriptions"), ("semifinal_date", "Demi-finale"),
                       ("final_date", "Finale")):
        if config.get(key):
            dates.append(f"<li>{label} : {e(format_date_fr(config[key]))}</li>")
    cta = ""
    if session["status"] == "registration_open":
        cta = f'<p><a class="pill" href="/{e(slug)}/inscription">S\'inscrire</a></p>'
    body = f"""
    <div class="card">
      <p>{timeline}</p>
      <p class="muted">{e(STATUS_LABELS.get(session['status'], ''))} — {e(session['city'])}</p>
      <ul>{''.join(dates)}</ul>
      {cta}
      <p><a href="/{e(slug)}/candidats">Les candidats</a> | <a href="/{e(slug)}/live">Live</a> | <a href="/jury">Jury</a></p>
    </div>
    <div class="card">
      <h3>Restez informé</h3>
      <form onsubmit="fetch('/api/subscribe', {{method: 'POST', headers: {{'Content-Type': 'application/json'}},
            body: JSON.stringify({{session_id: {session['id']}, email: this.email.value}})}})
            .then(r => r.json()).then(d => {{ this.innerHTML = '<p class=ok>Merci !</p>'; }}); return false;">
        <div class="row"><input name="email" type="email" placeholder="Votre email" required /></div>
        <button type="submit">M'abonner</button>
      </form>
    </div>
    """
    return page(session["name"], body)


@app.get("/", response_class=HTMLResponse)
def home():
    with db() as conn:
        session = active_session(conn)
    if not session:
        return page("ChanteEnScène", '<div class="card"><p class="muted">Aucune session en cours.</p></div>')
    return _session_home(session)


@app.get("/palmares", response_class=HTMLResponse)
def palmares():
    by_year: Dict[int, List[str]] = {}
    for w in candidates.winners(archived_only=True):
        song = f" — {e(w['song_title'])}" if w["song_title"] else ""
        by_year.setdefault(w["session_year"], []).append(
            f"<li><b>{e(display_name(w))}</b> <span class=\"pill\">{e(w['category'] or '')}</span>{song}</li>"
        )
    body = "".join(
        f'<div class="card"><h2>{year}</h2><ul>{"".join(items)}</ul></div>' for year, items in by_year.items()
    )
    return page("Palmarès", body or '<div class="card"><p class="muted">Aucun lauréat pour le moment.</p></div>')


@app.get("/corriger/{token}", response_class=HTMLResponse)
def correction_page(token: str):
    with db() as conn:
        candidate = conn.execute("SELECT * FROM candidates WHERE correction_token=?", (token,)).fetchone()
    if not candidate:
        return error_page("Lien de correction invalide.", status_code=404)
    labels = {"song_title": ("song_title", "Titre de la chanson"), "song_artist": ("song_artist", "Artiste"),
              "video": ("video_url", "URL de la vidéo"), "photo": ("photo_url", "URL de la photo")}
    inputs = ""
    for field in load_json(candidate["correction_fields"], []):
        column, label = labels[field]
        inputs += f'<label>{label} <input name="{column}" value="{e(candidate[column] or "")}" /></label><br/>'
    body = f"""
    <div class="card">
      <p>Bonjour {e(display_name(candidate))}, merci de corriger les informations suivantes :</p>
      <form method="post" action="/corriger/{e(token)}">{inputs}<button type="submit">Envoyer</button></form>
    </div>
    """
    return page("Correction de candidature", body)


@app.post("/corriger/{token}", response_class=HTMLResponse)
async def correction_submit(token: str, request: Request):
    form = await request.form()
    try:
        candidates.submit_correction(token, {k: str(v) for k, v in form.items()})
    except HTTPException as exc:
        return error_page(str(exc.detail), f"/corriger/{token}", exc.status_code)
    return page("Merci !", '<div class="card"><p class="ok">Vos corrections ont bien été enregistrées.</p></div>')


@app.get("/unsubscribe/{token}", response_class=HTMLResponse)
def unsubscribe(token: str):
    if sessions.unsubscribe(token):
        return page("Désinscription", '<div class="card"><p class="ok">Vous êtes désinscrit(e).</p></div>')
    return page("Désinscription", '<div class="card"><p class="muted">Lien invalide ou déjà utilisé.</p></div>')


def _stage_candidate_row(candidate_id: int):
    with db() as conn:
        row = conn.execute("SELECT * FROM candidates WHERE id=?", (candidate_id,)).fetchone()
    if not row or row["status"] not in ("semifinalist", "finalist"):
        raise HTTPException(404, "Candidat introuvable.")
    return row


@app.get("/upload-mp3/{candidate_id}", response_class=HTMLResponse)
def mp3_page(candidate_id: int):
    try:
        c = _stage_candidate_row(candidate_id)
    except HTTPException as exc:
        return error_page(str(exc.detail), status_code=exc.status_code)
    current = f'<p class="ok">Playback reçu : {e(c["mp3_url"])}</p>' if c["mp3_url"] else ""
    body = f"""
    <div class="card">
      <p>Bonjour {e(display_name(c))}, envoyez le lien de votre playback MP3 (instrumental de « {e(c['song_title'])} »).</p>
      {current}
      <form method="post" action="/upload-mp3/{candidate_id}">
        <div class="row"><input name="mp3_url" placeholder="https://..." required /></div>
        <button type="submit">Envoyer</button>
      </form>
    </div>
    """
    return page("Playback MP3", body)


@app.post("/upload-mp3/{candidate_id}", response_class=HTMLResponse)
def mp3_submit(candidate_id: int, mp3_url: str = Form(...)):
    back = f"/upload-mp3/{candidate_id}"
    url = mp3_url.strip()
    if not url.startswith(("http://", "https://")):
        return error_page("Lien invalide.", back)
    try:
        _stage_candidate_row(candidate_id)
        candidates.save_mp3_url(candidate_id, url)
    except HTTPException as exc:
        return error_page(str(exc.detail), back, exc.status_code)
    return page("Merci !", '<div class="card"><p class="ok">Votre playback a bien été enregistré.</p></div>')


@app.get("/{slug}", response_class=HTMLResponse)
def session_home(slug: str):
    return _session_home(_session_by_slug(slug))


@app.get("/{slug}/candidats", response_class=HTMLResponse)
def candidates_page(slug: str, category: str = ""):
    session = _session_by_slug(slug)
    rows = candidates.list_candidates(session["id"], candidates.PUBLIC_STATUSES, category or None)
    cards = "".join(
        f'<div class="card"><a href="/{e(slug)}/candidats/{e(c["slug"])}"><b>{e(display_name(c))}</b></a> '
        f'<span class="pill">{e(c["category"])}</span> <span class="muted">{e(c["song_title"])}</span> '
        f'— {c["likes_count"]} ❤️</div>'
        for c in rows
    )
    categories = " | ".join(
        f'<a href="?category={e(cat["name"])}">{e(cat["name"])}</a>'
        for cat in load_json(session["config"]).get("age_categories", [])
    )
    return page(f"Candidats — {session['name']}",
                f'<p><a href="?">Tous</a> | {categories}</p>{cards or "<p class=muted>Aucun candidat.</p>"}')


VOTE_SCRIPT = """
<script>
  async function deviceFingerprint() {
    const parts = [navigator.userAgent, navigator.language, screen.width + 'x' + screen.height,
                   screen.colorDepth, Intl.DateTimeFormat().resolvedOptions().timeZone,
                   navigator.hardwareConcurrency || ''];
    const data = new TextEncoder().encode(parts.join('|'));
    const hash = await crypto.subtle.digest('SHA-256', data);
    return Array.from(new Uint8Array(hash)).map(b => b.toString(16).padStart(2, '0')).join('');
  }
</script>
"""


@app.get("/{slug}/candidats/{candidate_slug}", response_class=HTMLResponse)
def candidate_profile(slug: str, candidate_slug: str):
    session = _session_by_slug(slug)
    c = candidates.candidate_by_slug(session["id"], candidate_slug)
    voting = session["status"] in ("registration_open", "registration_closed")
    video = f'<p><a href="{e(c["video_url"])}" target="_blank">Voir la vidéo</a></p>' if c["video_public"] and c["video_url"] else ""
    photo = f'<img src="{e(c["photo_url"])}" style="max-width:100%; border-radius:12px;" />' if c["photo_url"] else ""
    vote_button = ""
    if voting:
        vote_button = f"""
        <button id="voteBtn" onclick="vote()">❤️ Voter</button> <span id="likes">{c['likes_count']}</span>
        <p id="voteMsg" class="muted"></p>
        <script>
          async function vote() {{
            const res = await fetch('/api/vote', {{method: 'POST', headers: {{'Content-Type': 'application/json'}},
              body: JSON.stringify({{session_id: {session['id']}, candidate_id: {c['id']}, fingerprint: await deviceFingerprint()}})}});
            const data = await res.json();
            if (res.ok) {{ document.getElementById('likes').textContent = data.likes_count; document.getElementById('voteBtn').disabled = true; }}
            else {{ document.getElementById('voteMsg').textContent = data.detail; }}
          }}
        </script>
        """
    body = f"""
    {VOTE_SCRIPT}
    <div class="card" style="border-color: {e(c['accent_color'])};">
      {photo}
      <p><span class="pill">{e(c['category'])}</span> {e(c['city'] or '')}</p>
      <p>🎵 {e(c['song_title'])} — {e(c['song_artist'])}</p>
      <p>{e(c['bio'] or '')}</p>
      {video}
      {vote_button}
    </div>
    <p><a href="/{e(slug)}/candidats">← Tous les candidats</a></p>
    """
    return page(display_name(c), body)


@app.get("/{slug}/inscription", response_class=HTMLResponse)
def registration_page(slug: str):
    session = _session_by_slug(slug)
    if session["status"] != "registration_open":
        return page("Inscription", '<div class="card"><p class="muted">Les inscriptions ne sont pas ouvertes.</p></div>')
    body = f"""
    <div class="card">
      <form method="post" action="/{e(slug)}/inscription">
        <div class="row">
          <input name="first_name" placeholder="Prénom" required />
          <input name="last_name" placeholder="Nom" required />
          <input name="stage_name" placeholder="Nom de scène (optionnel)" />
        </div>
        <div class="row">
          <input name="email" type="email" placeholder="Email" required />
          <input name="phone" placeholder="Téléphone" />
          <label>Date de naissance <input name="date_of_birth" type="date" required /></label>
        </div>
        <div class="row">
          <input name="city" placeholder="Ville" />
          <input name="song_title" placeholder="Titre de la chanson" required />
          <input name="song_artist" placeholder="Artiste original" required />
        </div>
        <div class="row">
          <input name="photo_url" placeholder="URL de votre photo" required />
          <input name="video_url" placeholder="URL de votre vidéo" />
          <label><input name="video_public" type="checkbox" value="1" /> Vidéo publique</label>
        </div>
        <textarea name="bio" rows="3" placeholder="Quelques mots sur vous"></textarea>
        <button type="submit">Envoyer ma candidature</button>
      </form>
    </div>
    """
    return page(f"Inscription — {session['name']}", body)


@app.post("/{slug}/inscription", response_class=HTMLResponse)
async def registration_submit(slug: str, request: Request):
    session = _session_by_slug(slug)
    form = {k: str(v) for k, v in (await request.form()).items()}
    form["session_id"] = str(session["id"])
    try:
        candidates.register_candidate(form)
    except HTTPException as exc:
        return error_page(str(exc.detail), f"/{slug}/inscription", exc.status_code)
    return page("Merci !", '<div class="card"><p class="ok">Votre candidature a bien été envoyée. '
                           'Vous recevrez un email de confirmation.</p></div>')


@app.get("/{slug}/live", response_class=HTMLResponse)
def live_page(slug: str):
    session = _session_by_slug(slug)
    event = regie.latest_event(session["id"], "final")
    if not event:
        return page("Live", '<div class="card"><p class="muted">Aucun événement en direct.</p></div>')
    body = f"""
    {VOTE_SCRIPT}
    <div class="card" id="stage"><p class="muted">Chargement…</p></div>
    <script>
      let fp = null;
      async function refresh() {{
        fp = fp || await deviceFingerprint();
        const s = await (await fetch('/api/live/{event['id']}/state?fingerprint=' + fp)).json();
        const el = document.getElementById('stage');
        if (!s.current) {{ el.innerHTML = '<p class="muted">En attente du prochain candidat…</p>'; return; }}
        const voted = (s.voted_ids || []).includes(s.current.candidate_id);
        const name = document.createElement('h2'); name.textContent = s.current.name;
        el.innerHTML = ''; el.appendChild(name);
        const info = document.createElement('p');
        info.textContent = s.vote_phase ? 'Vote ouvert — ' + s.vote_timer : s.performance_timer;
        el.appendChild(info);
        if (s.is_voting_open && !voted) {{
          const b = document.createElement('button'); b.textContent = '❤️ Voter';
          b.onclick = async () => {{
            await fetch('/api/live-vote', {{method: 'POST', headers: {{'Content-Type': 'application/json'}},
              body: JSON.stringify({{event_id: {event['id']}, candidate_id: s.current.candidate_id, fingerprint: fp}})}});
            refresh();
          }};
          el.appendChild(b);
        }}
      }}
      refresh(); setInterval(refresh, 3000);
    </script>
    """
    return page(f"Live — {session['name']}", body)


# -----------------------
# Routes: Candidate self-service
# -----------------------
PROFILE_LABELS = {
    "stage_name": "Nom de scène", "bio": "Présentation", "accent_color": "Couleur", "song_title": "Chanson",
    "song_artist": "Artiste", "city": "Ville", "phone": "Téléphone", "youtube_url": "YouTube",
    "instagram_url": "Instagram", "tiktok_url": "TikTok", "website_url": "Site web",
}


@app.get("/{slug}/mon-profil", response_class=HTMLResponse)
def my_profile(slug: str, token: str = ""):
    session = _session_by_slug(slug)
    if not token:
        body = f"""
        <div class="card">
          <form method="get" action="/{e(slug)}/mon-profil">
            <input name="token" placeholder="Votre code candidat (ex. marie-dupont)" required />
            <button type="submit">Accéder à mon profil</button>
          </form>
        </div>
        """
        return page("Mon profil", body)
    try:
        c = candidates.profile_by_token(session["id"], token)
    except HTTPException as exc:
        return error_page(str(exc.detail), f"/{slug}/mon-profil", exc.status_code)

    fields = "".join(
        f'<label>{label} <input name="{field}" value="{e(c[field] or "")}" /></label>'
        for field, label in PROFILE_LABELS.items()
    )
    finale = ""
    if c["status"] in ("finalist", "winner"):
        songs = load_json(c["finale_songs"], [])
        rows = ""
        for i in range(candidates.MAX_FINALE_SONGS):
            song = songs[i] if i < len(songs) else {}
            rows += (
                f'<div class="row"><input name="title_{i}" value="{e(song.get("title", ""))}" placeholder="Titre" />'
                f'<input name="artist_{i}" value="{e(song.get("artist", ""))}" placeholder="Artiste" />'
                f'<input name="youtube_url_{i}" value="{e(song.get("youtube_url", ""))}" placeholder="Lien YouTube" /></div>'
            )
        finale = f"""
        <div class="card">
          <h3>Mes chansons pour la finale</h3>
          <form method="post" action="/{e(slug)}/mon-profil/finale">
            <input type="hidden" name="token" value="{e(token)}" />
            <input type="hidden" name="candidate_id" value="{c['id']}" />
            {rows}
            <input name="phone" value="{e(c['phone'] or '')}" placeholder="Téléphone (obligatoire)" required />
            <button type="submit">Enregistrer</button>
          </form>
        </div>
        """
    body = f"""
    <div class="card">
      <h3>{e(display_name(c))}</h3>
      <form method="post" action="/{e(slug)}/mon-profil">
        <input type="hidden" name="token" value="{e(token)}" />
        <input type="hidden" name="candidate_id" value="{c['id']}" />
        {fields}
        <button type="submit">Enregistrer</button>
      </form>
    </div>
    {finale}
    """
    return page("Mon profil", body)


@app.post("/{slug}/mon-profil", response_class=HTMLResponse)
async def my_profile_submit(slug: str, request: Request):
    _session_by_slug(slug)
    form = await request.form()
    token = str(form.get("token", ""))
    data = {field: str(form[field]) for field in candidates.PROFILE_FIELDS if field in form}
    back = f"/{slug}/mon-profil?token={quote(token)}"
    try:
        candidate_id = int(form.get("candidate_id", ""))
    except ValueError:
        return error_page("Candidat introuvable.", back, 404)
    return _done(lambda: candidates.update_candidate_profile(candidate_id, token, data), back)


@app.post("/{slug}/mon-profil/finale", response_class=HTMLResponse)
async def my_finale_songs(slug: str, request: Request):
    _session_by_slug(slug)
    form = await request.form()
    token = str(form.get("token", ""))
    back = f"/{slug}/mon-profil?token={quote(token)}"
    try:
        candidate_id = int(form.get("candidate_id", ""))
    except ValueError:
        return error_page("Candidat introuvable.", back, 404)
    songs = [
        {key: str(form.get(f"{key}_{i}", "")) for key in ("title", "artist", "youtube_url")}
        for i in range(candidates.MAX_FINALE_SONGS)
    ]
    return _done(
        lambda: candidates.update_finale_songs(candidate_id, token, songs, str(form.get("phone", ""))), back
    )


@app.get("/{slug}/checkin", response_class=HTMLResponse)
def self_checkin_page(slug: str):
    session = _session_by_slug(slug)
    event = regie.open_semifinal(session["id"])
    if not event:
        return page("Check-in", '<div class="card"><p class="muted">Le check-in de la demi-finale n\'est pas ouvert.</p></div>')
    done = set(regie.checked_in_ids(event["id"]))
    rows = ""
    for c in sorted(candidates.list_candidates(session["id"], ("semifinalist",)), key=lambda r: r["last_name"]):
        action = "✅ Présent" if c["id"] in done else button_form(
            f"/{slug}/checkin", "Je suis arrivé(e)", hidden={"candidate_id": c["id"]}
        )
        rows += f'<tr><td>{e(display_name(c))}</td><td>{e(c["category"] or "")}</td><td>{action}</td></tr>'
    body = f"""
    <div class="card">
      <h3>Check-in demi-finale</h3>
      <table>{rows or '<tr><td class="muted">Aucun demi-finaliste.</td></tr>'}</table>
    </div>
    """
    return page(f"Check-in — {session['name']}", body)


@app.post("/{slug}/checkin", response_class=HTMLResponse)
def self_checkin_submit(slug: str, candidate_id: int = Form(...)):
    session = _session_by_slug(slug)
    return _done(lambda: regie.self_checkin(session["id"], candidate_id), f"/{slug}/checkin")
