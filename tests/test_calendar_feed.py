from __future__ import annotations

import datetime

from conftest import MONDAY, shift_payload
import calendar_feed
from calendar_feed import employee_feed, feed_token, load_feed_secret, render_calendar, verify_feed_token
from publishing import publish_rota_week
from shifts import create_shift, mark_shift_sick

STAMP = datetime.datetime(2024, 6, 1, 12, 0, tzinfo=datetime.timezone.utc)


def _event(**overrides):
    shift = {
        "id": 5,
        "shift_date": "2024-06-08",
        "start_time": "18:00",
        "end_time": "02:00",
        "is_overnight": True,
        "unpaid_break_minutes": 30,
        "department": "bar",
        "status": "scheduled",
        "name": None,
        "notes": None,
        "paid_hours": 7.5,
    }
    shift.update(overrides)
    return shift


def test_tokens_are_per_employee() -> None:
    secret = b"s3cret"
    token = feed_token(4, secret)
    assert verify_feed_token(4, token, secret)
    assert not verify_feed_token(5, token, secret)
    assert not verify_feed_token(4, token, b"other")
    assert not verify_feed_token(4, "", secret)


def test_secret_sources(rota_db, monkeypatch) -> None:
    generated = load_feed_secret()
    assert calendar_feed.FEED_SECRET_FILE.read_text(encoding="utf-8").encode("utf-8") == generated
    assert load_feed_secret() == generated
    monkeypatch.setenv(calendar_feed.FEED_SECRET_ENV, "from-env")
    assert load_feed_secret() == b"from-env"


def test_overnight_event_ends_next_day() -> None:
    text = render_calendar([_event()], generated_at=STAMP)
    assert "DTSTART:20240608T180000\r\n" in text
    assert "DTEND:20240609T020000\r\n" in text
    assert "DTSTAMP:20240601T120000Z\r\n" in text
    assert "UID:shift-5@rota\r\n" in text
    assert "SUMMARY:Bar shift\r\n" in text
    assert text.startswith("BEGIN:VCALENDAR\r\n")
    assert text.endswith("END:VCALENDAR\r\n")


def test_text_is_escaped() -> None:
    text = render_calendar([_event(name="Close; bar, late", notes="line one\nline two")], generated_at=STAMP)
    assert "SUMMARY:Close\\; bar\\, late" in text
    assert "line one\\nline two" in text.replace("\r\n ", "")


def test_long_lines_fold_at_75_octets() -> None:
    text = render_calendar([_event(notes="x" * 200)], generated_at=STAMP)
    for line in text.split("\r\n"):
        assert len(line.encode("utf-8")) <= 75
    assert "\r\n x" in text


def test_sick_shift_is_labelled() -> None:
    text = render_calendar([_event(status="sick", name="Cellar")], generated_at=STAMP)
    assert "SUMMARY:Cellar (sick)" in text


def test_employee_feed_only_shows_published(rota_db) -> None:
    session = rota_db["session"]
    shift = create_shift(session, shift_payload(employee_id=3))
    today = MONDAY + datetime.timedelta(days=2)
    assert "BEGIN:VEVENT" not in employee_feed(session, 3, today=today)

    publish_rota_week(session, shift.week_id)
    mark_shift_sick(session, shift.id)
    text = employee_feed(session, 3, today=today, employee_name="Ana")
    assert text.count("BEGIN:VEVENT") == 1
    assert f"UID:shift-{shift.id}@rota" in text
    assert "X-WR-CALNAME:Rota - Ana" in text
    # Staff keep seeing the published copy until the next publish.
    assert "(sick)" not in text


def test_feed_window(rota_db) -> None:
    session = rota_db["session"]
    shift = create_shift(session, shift_payload(employee_id=3))
    publish_rota_week(session, shift.week_id)
    long_before = MONDAY - datetime.timedelta(days=90)
    assert "BEGIN:VEVENT" not in employee_feed(session, 3, today=long_before)
    long_after = MONDAY + datetime.timedelta(days=40)
    assert "BEGIN:VEVENT" not in employee_feed(session, 3, today=long_after)
