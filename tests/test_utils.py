from datetime import date

from singcontest.phases import due_status, next_status, phase_message, timeline_step
from singcontest.utils import calculate_age, escape_html, format_date_fr, format_timer, get_category, slugify

CATEGORIES = [
    {"name": "Enfant", "min_age": 6, "max_age": 12},
    {"name": "Ado", "min_age": 13, "max_age": 17},
    {"name": "Adulte", "min_age": 18, "max_age": 99},
]


def test_slugify_strips_accents_and_punctuation():
    assert slugify("Élodie  Béranger!") == "elodie-beranger"
    assert slugify("  --Zoé & Co-- ") == "zoe-co"


def test_escape_html():
    assert escape_html('<b>"x"</b>') == "&lt;b&gt;&quot;x&quot;&lt;/b&gt;"
    assert escape_html(None) == ""


def test_age_is_computed_at_reference_date():
    assert calculate_age("2010-06-15", "2026-06-14") == 15
    assert calculate_age("2010-06-15", "2026-06-15") == 16


def test_category_boundaries():
    assert get_category("2014-01-01", CATEGORIES, "2026-06-01") == "Enfant"
    assert get_category("2013-05-01", CATEGORIES, "2026-06-01") == "Ado"
    assert get_category("2008-06-01", CATEGORIES, "2026-06-01") == "Adulte"
    assert get_category("2022-01-01", CATEGORIES, "2026-06-01") is None


def test_format_timer_and_french_dates():
    assert format_timer(0) == "0:00"
    assert format_timer(185) == "3:05"
    assert format_timer(-4) == "0:00"
    assert format_date_fr("2026-06-20") == "samedi 20 juin 2026"


def test_status_progression():
    assert next_status("draft") == "registration_open"
    assert next_status("final") == "archived"
    assert next_status("archived") is None
    assert next_status("bogus") is None
    assert timeline_step("semifinal") == 3


def test_due_status_follows_configured_dates():
    config = {"registration_start": "2026-03-01", "registration_end": "2026-04-30"}
    assert due_status("draft", config, date(2026, 2, 28)) is None
    assert due_status("draft", config, date(2026, 3, 1)) == "registration_open"
    # Registrations close the day after the end date
    assert due_status("registration_open", config, date(2026, 4, 30)) is None
    assert due_status("registration_open", config, date(2026, 5, 1)) == "registration_closed"
    assert due_status("semifinal", config, date(2027, 1, 1)) is None


def test_phase_message_can_be_overridden():
    config = {"custom_phase_notifications": {"final": {"title": "Ce soir !", "body": "Rendez-vous à 20h"}}}
    assert phase_message("final", config)["title"] == "Ce soir !"
    assert phase_message("semifinal", config)["title"] == "La demi-finale commence !"
    assert phase_message("draft", {}) is None
