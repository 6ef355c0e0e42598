from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Dict, List, Mapping, Optional

import resend

from . import settings
from .utils import display_name, escape_html, format_date_fr

logger = logging.getLogger(__name__)

SELECTION_SUBJECT = "Félicitations ! Vous êtes sélectionné(e) pour la demi-finale — ChanteEnScène"
REJECTION_SUBJECT = "Merci pour votre participation — ChanteEnScène"
FINALE_SUBJECT = "Félicitations ! Vous êtes en FINALE — ChanteEnScène"
FINALE_REJECTION_SUBJECT = "Bravo pour votre demi-finale — ChanteEnScène"


# -----------------------
# Transport
# -----------------------
def send_email(to: str, subject: str, html: str) -> Dict[str, str]:
    """
    Send one transactional email through Resend.

    Returns {"status": "sent" | "simulated" | "failed", "detail": ...}.
    Without RESEND_API_KEY the send is only logged (local dev).
    """
    if not settings.RESEND_API_KEY:
        logger.info(f"[EMAIL - SIMULATED] {to} -> {subject}")
        return {"status": "simulated", "detail": "RESEND_API_KEY non configurée — email simulé"}

    resend.api_key = settings.RESEND_API_KEY
    try:
        resend.Emails.send({
            "from": settings.FROM_EMAIL,
            "to": [to],
            "subject": subject,
            "html": html,
        })
    except Exception as e:
        logger.error(f"Failed to send email to {to}: {e}")
        return {"status": "failed", "detail": str(e)}

    logger.info(f"Email sent to {to}: {subject}")
    return {"status": "sent", "detail": ""}


def send_smtp(to: str, subject: str, html: str, headers: Optional[Dict[str, str]] = None) -> Optional[str]:
    """Bulk sends (newsletter, reminders) go through SMTP. Returns an error message or None."""
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = settings.SMTP_FROM
    message["To"] = to
    for key, value in (headers or {}).items():
        message[key] = value
    message.set_content("Cet email nécessite un client compatible HTML.")
    message.add_alternative(html, subtype="html")

    try:
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
            server.starttls()
            if settings.SMTP_USER and settings.SMTP_PASS:
                server.login(settings.SMTP_USER, settings.SMTP_PASS)
            server.send_message(message)
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"SMTP error sending '{subject}' to {to}: {e}")
        return str(e)
    return None


# -----------------------
# Templates
# -----------------------
def _layout(inner: str, footer: str = "") -> str:
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; background: #0d0b1a; color: #ffffff; padding: 40px 30px; border-radius: 16px;">
      <h1 style="text-align: center; margin-bottom: 8px;">
        <span style="color: #ffffff;">Chant</span><span style="color: #7ec850;">En</span><span style="color: #e91e8c;">Scène</span>
      </h1>
      <p style="text-align: center; color: rgba(255,255,255,0.4); font-size: 12px; margin-bottom: 30px;">Concours de chant</p>
      {inner}
      <p style="color: rgba(255,255,255,0.4); font-size: 12px; margin-top: 30px; text-align: center;">
        {footer or "À très bientôt sur scène !<br/>L'équipe ChanteEnScène"}
      </p>
    </div>
    """


def _button(url: str, label: str) -> str:
    return (
        f'<div style="text-align: center; margin: 24px 0;"><a href="{escape_html(url)}" '
        f'style="display: inline-block; padding: 12px 32px; background: #e91e8c; color: #ffffff; '
        f'text-decoration: none; border-radius: 50px; font-weight: bold;">{escape_html(label)}</a></div>'
    )


def _p(text: str) -> str:
    return f'<p style="color: rgba(255,255,255,0.7); line-height: 1.6;">{text}</p>'


def registration_confirmation_email(candidate: Mapping, session_name: str) -> Dict[str, str]:
    name = escape_html(display_name(candidate))
    inner = (
        f'<h2 style="color: #7ec850; text-align: center;">Merci {name} !</h2>'
        + _p(f"Votre inscription à <strong>{escape_html(session_name)}</strong> a bien été reçue.")
        + _p(f"Chanson : <strong>{escape_html(candidate['song_title'])}</strong> — {escape_html(candidate['song_artist'])}")
        + _p("Notre équipe va examiner votre candidature. Vous recevrez un email dès sa validation.")
    )
    return {"subject": f"Inscription reçue — {session_name}", "html": _layout(inner)}


def candidate_approved_email(candidate: Mapping, session_name: str, profile_url: str) -> Dict[str, str]:
    name = escape_html(display_name(candidate))
    inner = (
        f'<h2 style="color: #7ec850; text-align: center;">Bravo {name} !</h2>'
        + _p(f"Votre candidature à <strong>{escape_html(session_name)}</strong> est validée. "
             "Votre profil est maintenant visible et le public peut voter pour vous.")
        + _button(profile_url, "Voir mon profil")
        + _p("Partagez votre page autour de vous pour récolter un maximum de votes !")
    )
    return {"subject": f"Votre candidature est validée — {session_name}", "html": _layout(inner)}


def correction_request_email(candidate: Mapping, fields: List[str], correction_url: str) -> Dict[str, str]:
    labels = {"song_title": "Titre de la chanson", "song_artist": "Artiste", "video": "Vidéo", "photo": "Photo"}
    items = "".join(f"<li>{escape_html(labels.get(f, f))}</li>" for f in fields)
    inner = (
        f'<h2 style="color: #f59e0b; text-align: center;">Bonjour {escape_html(display_name(candidate))},</h2>'
        + _p("Quelques éléments de votre candidature sont à corriger :")
        + f'<ul style="color: rgba(255,255,255,0.7);">{items}</ul>'
        + _button(correction_url, "Corriger ma candidature")
    )
    return {"subject": "Votre candidature — corrections demandées", "html": _layout(inner)}


def jury_invitation_email(juror_name: str, role: str, session_name: str, jury_url: str, login_url: str) -> Dict[str, str]:
    role_labels = {
        "online": "jury en ligne (présélection)",
        "semifinal": "jury de la demi-finale",
        "final": "jury de la finale",
    }
    inner = (
        f'<h2 style="color: #e91e8c; text-align: center;">Bonjour {escape_html(juror_name)} !</h2>'
        + _p(f"Vous êtes invité(e) à faire partie du <strong>{role_labels.get(role, role)}</strong> "
             f"de {escape_html(session_name)}.")
        + _button(jury_url, "Accéder à mon espace jury")
        + _p(f'Vous pourrez aussi vous reconnecter avec votre email sur <a href="{escape_html(login_url)}" '
             f'style="color: #e91e8c;">{escape_html(login_url)}</a>.')
    )
    return {"subject": f"Invitation jury — {session_name}", "html": _layout(inner)}


def selection_email(candidate: Mapping, config: Mapping) -> str:
    name = escape_html(display_name(candidate))
    upload_link = f"{settings.SITE_URL}/upload-mp3/{candidate['id']}" if "id" in candidate.keys() and candidate["id"] else ""
    date = format_date_fr(config["semifinal_date"]) if config.get("semifinal_date") else "Date à confirmer"
    time = config.get("semifinal_time") or "Horaire à confirmer"
    location = config.get("semifinal_location") or "Lieu à confirmer"
    inner = (
        f'<h2 style="color: #7ec850; text-align: center;">Félicitations {name} !</h2>'
        + _p('Vous avez été <strong style="color: #7ec850;">sélectionné(e) pour la demi-finale</strong> de ChanteEnScène !')
        + _p(f"Date : <strong>{escape_html(date)}</strong><br/>Heure : <strong>{escape_html(time)}</strong>"
             f"<br/>Lieu : <strong>{escape_html(location)}</strong>")
        + _p("Envoyez-nous votre <strong>playback MP3</strong> (instrumental de votre chanson).")
        + (_button(upload_link, "Envoyer mon MP3") if upload_link else "")
    )
    return _layout(inner)


def rejection_email(candidate: Mapping) -> str:
    name = escape_html(display_name(candidate))
    inner = (
        f'<h2 style="color: #e91e8c; text-align: center;">Merci {name} !</h2>'
        + _p("Nous vous remercions sincèrement pour votre participation à ChanteEnScène.")
        + _p("Le nombre de places en demi-finale étant limité, il ne nous a pas été possible "
             "de retenir toutes les candidatures cette fois-ci.")
        + _p("Continuez de chanter et retentez votre chance lors de nos prochaines éditions !")
    )
    return _layout(inner, "À bientôt !<br/>L'équipe ChanteEnScène")


def finale_email(candidate: Mapping, config: Mapping, session_slug: str) -> str:
    name = escape_html(display_name(candidate))
    profile_link = f"{settings.SITE_URL}/{session_slug}/candidats/{candidate['slug']}"
    date = format_date_fr(config["final_date"]) if config.get("final_date") else "Date à confirmer"
    location = config.get("final_location") or "Lieu à confirmer"
    inner = (
        f'<h2 style="color: #f5a623; text-align: center;">Félicitations {name} !</h2>'
        + _p('Vous êtes <strong style="color: #f5a623;">sélectionné(e) pour la grande FINALE</strong> de ChanteEnScène !')
        + _p(f"Date : <strong>{escape_html(date)}</strong><br/>Lieu : <strong>{escape_html(location)}</strong>")
        + _p("Choisissez vos morceaux pour la finale. Une répétition pourra être organisée, "
             "les détails vous seront communiqués prochainement.")
        + _button(profile_link, "Accéder à mon espace candidat")
    )
    return _layout(inner)


def finale_rejection_email(candidate: Mapping) -> str:
    name = escape_html(display_name(candidate))
    inner = (
        f'<h2 style="color: #7ec850; text-align: center;">Bravo {name} !</h2>'
        + _p("Merci pour votre superbe prestation en demi-finale.")
        + _p("Le jury a dû faire des choix difficiles et vous ne faites pas partie des finalistes cette année. "
             "Nous espérons vous revoir lors de la prochaine édition !")
    )
    return _layout(inner, "À bientôt !<br/>L'équipe ChanteEnScène")


def jury_recap_email(juror_name: str, session_name: str, total: int, voted: int, jury_url: str,
                     new_candidates: List[Mapping]) -> Dict[str, str]:
    remaining = max(0, total - voted)
    if remaining > 0:
        subject = f"{remaining} candidat{'s' if remaining > 1 else ''} en attente de votre vote — {session_name}"
    else:
        subject = f"Recap hebdo — {session_name}"
    rows = "".join(
        f"<li>{escape_html(c['name'])} — {escape_html(c['category'] or '')} — {escape_html(c['song_title'] or '')}</li>"
        for c in new_candidates[:5]
    )
    inner = (
        f'<h2 style="color: #ffffff;">Bonjour {escape_html(juror_name)} !</h2>'
        + _p(f"Vous avez évalué <strong>{voted}</strong> candidat(s) sur <strong>{total}</strong>.")
        + (f'<ul style="color: rgba(255,255,255,0.7);">{rows}</ul>' if rows else "")
        + _button(jury_url, "Continuer à évaluer")
    )
    return {"subject": subject, "html": _layout(inner)}


def inscription_reminder_email(session_name: str, days_left: int, opening_date: str, inscription_url: str,
                               unsubscribe_url: str) -> Dict[str, str]:
    if days_left == 0:
        subject = f"Les inscriptions sont ouvertes ! — {session_name}"
        headline = "Les inscriptions sont ouvertes !"
        cta = _button(inscription_url, "S'inscrire maintenant")
    else:
        subject = f"Les inscriptions ouvrent dans {days_left} jours ! — {session_name}"
        headline = f"Plus que {days_left} jours avant l'ouverture !"
        cta = _button(settings.SITE_URL, "Visiter le site")
    inner = (
        f'<h2 style="color: #7ec850; text-align: center;">{escape_html(headline)}</h2>'
        + _p(f"Ouverture des inscriptions : <strong>{escape_html(format_date_fr(opening_date))}</strong>")
        + cta
    )
    footer = (
        "Vous recevez cet email car vous êtes abonné aux actualités ChanteEnScène.<br/>"
        f'<a href="{escape_html(unsubscribe_url)}" style="color: rgba(255,255,255,0.4);">Se désinscrire</a>'
    )
    return {"subject": subject, "html": _layout(inner, footer)}


def newsletter_email(subject: str, body_html: str, unsubscribe_url: str) -> Dict[str, str]:
    footer = f'<a href="{escape_html(unsubscribe_url)}" style="color: rgba(255,255,255,0.4);">Se désinscrire</a>'
    return {"subject": subject, "html": _layout(body_html, footer)}


def admin_report_email(session_name: str, report: Mapping) -> Dict[str, str]:
    rows = "".join(
        f"<tr><td>{escape_html(str(k))}</td><td><strong>{escape_html(str(v))}</strong></td></tr>"
        for k, v in report.items()
        if not isinstance(v, (list, dict))
    )
    inner = (
        f'<h2 style="color: #ffffff;">Rapport — {escape_html(session_name)}</h2>'
        f'<table style="width: 100%; color: rgba(255,255,255,0.7);">{rows}</table>'
    )
    return {"subject": f"Rapport admin — {session_name}", "html": _layout(inner, "Rapport automatique")}


HEALTH_COLORS = {"ok": "#7ec850", "warn": "#f5a623", "ko": "#e53935"}


def health_check_email(checks: List[Mapping], summary: Mapping, global_status: str) -> Dict[str, str]:
    rows = "".join(
        f'<tr><td>{escape_html(c["category"])}</td><td>{escape_html(c["label"])}</td>'
        f'<td style="color: {HEALTH_COLORS[c["status"]]};"><strong>{escape_html(c["value"])}</strong></td>'
        f'<td>{escape_html(c.get("detail") or "")}</td></tr>'
        for c in checks
    )
    inner = (
        f'<h2 style="color: {HEALTH_COLORS[global_status]};">Checkup : {summary["ok"]}/{summary["total"]} OK</h2>'
        f'<table style="width: 100%; color: rgba(255,255,255,0.7);">{rows}</table>'
    )
    label = "OK" if global_status == "ok" else "attention requise"
    return {"subject": f"Checkup ChanteEnScène — {label}", "html": _layout(inner, "Checkup automatique")}
