from __future__ import annotations

import hmac
import sqlite3
from typing import List, Optional

from fastapi import HTTPException, Request

from . import settings
from .db import db, dump_json
from .utils import new_token, now_iso, sha256


# -----------------------
# Admins
# -----------------------
def create_admin_user(email: str, password: str, role: str = "admin", session_ids: Optional[List[int]] = None) -> None:
    with db() as conn:
        conn.execute(
            "INSERT INTO admin_users(email, pw_hash, role, session_ids) VALUES(?,?,?,?)",
            (email.strip().lower(), sha256(password), role, dump_json(session_ids) if session_ids else None),
        )


def login_admin(email: str, password: str) -> str:
    """Check credentials and return a fresh admin token for the cookie."""
    email = (email or "").strip().lower()
    ok = False
    if settings.ADMIN_PASSWORD and hmac.compare_digest(password.encode(), settings.ADMIN_PASSWORD.encode()):
        ok = True
        email = email or "admin"
    else:
        with db() as conn:
            row = conn.execute("SELECT pw_hash FROM admin_users WHERE email=?", (email,)).fetchone()
        ok = bool(row) and hmac.compare_digest(sha256(password), row["pw_hash"])
    if not ok:
        raise HTTPException(status_code=403, detail="Identifiants invalides.")

    token = new_token(24)
    with db() as conn:
        conn.execute("INSERT INTO admin_tokens(token, email, created_at) VALUES(?,?,?)", (token, email, now_iso()))
    return token


def logout_admin(token: Optional[str]) -> None:
    if token:
        with db() as conn:
            conn.execute("DELETE FROM admin_tokens WHERE token=?", (token,))


def require_admin(request: Request) -> str:
    """FastAPI dependency: returns the admin email or raises 403."""
    token = request.cookies.get(settings.ADMIN_COOKIE)
    if not token:
        raise HTTPException(status_code=403, detail="Non authentifié")
    with db() as conn:
        row = conn.execute("SELECT email FROM admin_tokens WHERE token=?", (token,)).fetchone()
    if not row:
        raise HTTPException(status_code=403, detail="Accès non autorisé")
    return row["email"]


# -----------------------
# Jurors
# -----------------------
def require_juror(token: str) -> sqlite3.Row:
    with db() as conn:
        row = conn.execute(
            "SELECT * FROM jurors WHERE qr_token=? AND is_active=1",
            (token,),
        ).fetchone()
    if not row:
        raise HTTPException(403, "Invalid juror session.")
    return row


# -----------------------
# Cron
# -----------------------
def require_cron(request: Request) -> None:
    expected = settings.CRON_SECRET
    header = request.headers.get("authorization", "")
    if not expected or not hmac.compare_digest(header.encode(), f"Bearer {expected}".encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")
