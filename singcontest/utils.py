from __future__ import annotations

import hashlib
import html
import re
import secrets
import unicodedata
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional
from zoneinfo import ZoneInfo

from . import settings

FR_DAYS = ["lundi", "mardi", "mercredi", "jeudi", "vendredi", "samedi", "dimanche"]
FR_MONTHS = [
    "janvier", "février", "mars", "avril", "mai", "juin",
    "juillet", "août", "septembre", "octobre", "novembre", "décembre",
]


def sha256(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def new_token(nbytes: int = 16) -> str:
    return secrets.token_urlsafe(nbytes)


def escape_html(s: Optional[str]) -> str:
    """Escape user text before it goes into a page or an email body."""
    return html.escape(s or "", quote=True)


def slugify(text: str) -> str:
    text = unicodedata.normalize("NFD", text.lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"[^a-z0-9]+", "-", text)
    return text.strip("-")


def display_name(row: Mapping) -> str:
    stage = row["stage_name"] if "stage_name" in row.keys() else None
    return stage or f"{row['first_name']} {row['last_name']}"


# -----------------------
# Clock
# -----------------------
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utcnow().isoformat(timespec="seconds")


def today_local() -> date:
    """Calendar date in the contest's timezone (Europe/Paris by default)."""
    return utcnow().astimezone(ZoneInfo(settings.TIMEZONE)).date()


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def parse_day(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return date.fromisoformat(value[:10])


def format_date_fr(value: str) -> str:
    d = parse_day(value)
    return f"{FR_DAYS[d.weekday()]} {d.day} {FR_MONTHS[d.month - 1]} {d.year}"


def format_timer(seconds: int) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


# -----------------------
# Age categories
# -----------------------
def calculate_age(birth_date: str, reference_date: str) -> int:
    birth = parse_day(birth_date)
    ref = parse_day(reference_date)
    age = ref.year - birth.year
    if (ref.month, ref.day) < (birth.month, birth.day):
        age -= 1
    return age


def get_category(birth_date: str, categories: Iterable[Dict], reference_date: str) -> Optional[str]:
    age = calculate_age(birth_date, reference_date)
    for c in categories:
        if c["min_age"] <= age <= c["max_age"]:
            return c["name"]
    return None


# -----------------------
# Device fingerprint
# -----------------------
def fingerprint_hash(parts: List[object]) -> str:
    """
    Hash the client-side device traits (user agent, language, screen size,
    colour depth, timezone, cores) into the voter fingerprint.
    """
    raw = "|".join(str(p) for p in parts)
    return sha256(raw)
