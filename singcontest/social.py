from __future__ import annotations

import logging
import sqlite3
import time
from typing import Dict, List, Optional
from urllib.parse import urlparse

import requests

from . import settings
from .db import db
from .utils import now_iso

logger = logging.getLogger(__name__)

GRAPH_API = "https://graph.facebook.com/v24.0"
INSTAGRAM_API = "https://graph.instagram.com/v24.0"
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp")
REQUEST_TIMEOUT = 30


class SocialError(Exception):
    pass


def _json(resp: requests.Response, what: str) -> Dict:
    try:
        data = resp.json()
    except ValueError:
        resp.raise_for_status()
        raise SocialError(f"{what}: réponse non JSON ({resp.status_code})")
    if isinstance(data, dict) and "error" in data:
        error = data["error"]
        raise SocialError(f"{what}: {error.get('message', error) if isinstance(error, dict) else error}")
    resp.raise_for_status()
    return data


# -----------------------
# Facebook
# -----------------------
def get_facebook_page_id() -> str:
    token = settings.FACEBOOK_PAGE_TOKEN
    if not token:
        raise SocialError("FACEBOOK_PAGE_TOKEN manquant")
    resp = requests.get(f"{GRAPH_API}/me", params={"fields": "id,name", "access_token": token}, timeout=REQUEST_TIMEOUT)
    return _json(resp, "FB API")["id"]


def post_to_facebook(message: str, link: Optional[str] = None) -> Dict:
    token = settings.FACEBOOK_PAGE_TOKEN
    if not token:
        raise SocialError("FACEBOOK_PAGE_TOKEN manquant")
    page_id = get_facebook_page_id()
    body = {"message": message, "access_token": token}
    if link:
        body["link"] = link
    resp = requests.post(f"{GRAPH_API}/{page_id}/feed", json=body, timeout=REQUEST_TIMEOUT)
    return _json(resp, "FB Post")


def post_photo_to_facebook(image_url: str, caption: str) -> Dict:
    token = settings.FACEBOOK_PAGE_TOKEN
    if not token:
        raise SocialError("FACEBOOK_PAGE_TOKEN manquant")
    page_id = get_facebook_page_id()
    resp = requests.post(
        f"{GRAPH_API}/{page_id}/photos",
        json={"url": image_url, "caption": caption, "access_token": token},
        timeout=REQUEST_TIMEOUT,
    )
    return _json(resp, "FB Photo")


# -----------------------
# Instagram
# -----------------------
def post_to_instagram(image_url: str, caption: str, poll_interval: float = 3.0, max_polls: int = 10) -> Dict:
    """Create a media container, wait until Instagram has processed it, then publish."""
    token = settings.INSTAGRAM_TOKEN
    if not token:
        raise SocialError("INSTAGRAM_TOKEN manquant")
    account_id = settings.INSTAGRAM_ACCOUNT_ID
    if not account_id:
        raise SocialError("INSTAGRAM_ACCOUNT_ID manquant")

    created = _json(
        requests.post(
            f"{INSTAGRAM_API}/{account_id}/media",
            json={"image_url": image_url, "caption": caption, "access_token": token},
            timeout=REQUEST_TIMEOUT,
        ),
        "IG Media",
    )
    container_id = created.get("id")
    if not container_id:
        raise SocialError("IG Media: identifiant de conteneur manquant")

    for _ in range(max_polls):
        time.sleep(poll_interval)
        status = _json(
            requests.get(
                f"{INSTAGRAM_API}/{container_id}",
                params={"fields": "status_code", "access_token": token},
                timeout=REQUEST_TIMEOUT,
            ),
            "IG Status",
        )
        if status.get("status_code") == "FINISHED":
            break
        if status.get("status_code") == "ERROR":
            raise SocialError("IG Media: Erreur lors du traitement de l'image par Instagram")

    return _json(
        requests.post(
            f"{INSTAGRAM_API}/{account_id}/media_publish",
            json={"creation_id": container_id, "access_token": token},
            timeout=REQUEST_TIMEOUT,
        ),
        "IG Publish",
    )


# -----------------------
# Tokens
# -----------------------
def exchange_for_long_lived_token(short_lived_token: str) -> str:
    if not settings.META_APP_ID or not settings.META_APP_SECRET:
        raise SocialError("META_APP_ID ou META_APP_SECRET manquant")
    resp = requests.get(
        f"{GRAPH_API}/oauth/access_token",
        params={
            "grant_type": "fb_exchange_token",
            "client_id": settings.META_APP_ID,
            "client_secret": settings.META_APP_SECRET,
            "fb_exchange_token": short_lived_token,
        },
        timeout=REQUEST_TIMEOUT,
    )
    return _json(resp, "Token Exchange")["access_token"]


def get_long_lived_page_token(long_lived_user_token: str) -> str:
    resp = requests.get(f"{GRAPH_API}/me/accounts", params={"access_token": long_lived_user_token}, timeout=REQUEST_TIMEOUT)
    data = _json(resp, "Page Token")
    if not data.get("data"):
        raise SocialError("Aucune Page trouvée")
    return data["data"][0]["access_token"]


# -----------------------
# Combined publishing
# -----------------------
def validate_image_url(url: str) -> Optional[str]:
    """Return an error message when the URL is not a direct image link, else None."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "URL image invalide"
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return "URL image invalide"

    host = parsed.hostname
    path = parsed.path.lower()
    if host in ("imgur.com", "www.imgur.com") and ("/a/" in path or "/gallery/" in path):
        return ("URL imgur invalide : utilisez le lien direct de l'image, pas le lien de l'album. "
                "Le lien doit ressembler à https://i.imgur.com/xxxxxxx.png")

    known_host = (
        host == "i.imgur.com"
        or "postimg" in host
        or "cloudinary" in host
        or "blob.vercel-storage" in host
        or "chantenscene" in host
    )
    if not path.endswith(IMAGE_EXTENSIONS) and not known_host:
        return ("L'URL ne semble pas pointer vers une image directe. Assurez-vous que le lien se termine "
                "par .jpg, .png, etc. ou utilisez un hébergeur d'images (imgur, postimg.cc).")
    return None


def publish_everywhere(message: str, image_url: Optional[str] = None, link: Optional[str] = None) -> Dict[str, Dict]:
    """Post to Facebook and, when there is an image, to Instagram. Errors are reported per network."""
    if image_url:
        image_error = validate_image_url(image_url)
        if image_error:
            return {"facebook": {"error": image_error}, "instagram": {"error": image_error}}

    result: Dict[str, Dict] = {}
    try:
        if image_url:
            result["facebook"] = post_photo_to_facebook(image_url, message)
        else:
            result["facebook"] = post_to_facebook(message, link)
    except (SocialError, requests.RequestException) as e:
        logger.error(f"Facebook publish failed: {e}")
        result["facebook"] = {"error": str(e)}

    # Instagram only accepts image posts
    if image_url:
        try:
            result["instagram"] = post_to_instagram(image_url, message)
        except (SocialError, requests.RequestException) as e:
            logger.error(f"Instagram publish failed: {e}")
            result["instagram"] = {"error": str(e)}

    return result


# -----------------------
# Post log
# -----------------------
def log_post(session_id: int, post_type: str, source: str, message: str, link: Optional[str],
             result: Dict[str, Dict], created_at: Optional[str] = None) -> None:
    """Keep a trace of every publication attempt, successful or not."""
    facebook = result.get("facebook") or {}
    instagram = result.get("instagram") or {}
    error = facebook.get("error") or instagram.get("error")
    with db() as conn:
        conn.execute(
            """
            INSERT INTO social_posts_log(session_id, post_type, source, message, link, facebook_post_id,
                                         instagram_post_id, error, created_at)
            VALUES(?,?,?,?,?,?,?,?,?)
            """,
            (session_id, post_type, source, message, link, facebook.get("id"), instagram.get("id"), error,
             created_at or now_iso()),
        )


def recent_posts(session_id: int, limit: int = 20) -> List[sqlite3.Row]:
    with db() as conn:
        return conn.execute(
            "SELECT * FROM social_posts_log WHERE session_id=? ORDER BY created_at DESC, id DESC LIMIT ?",
            (session_id, limit),
        ).fetchall()
