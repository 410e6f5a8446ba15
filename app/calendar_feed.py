from __future__ import annotations

import datetime
import hashlib
import hmac
import os
import secrets
from typing import Any, Dict, Iterable, List, Optional

from database import DATA_DIR, SHIFT_STATUS_SICK, shift_to_dict
from hours import shift_bounds
from publishing import employee_published_shifts

FEED_SECRET_FILE = DATA_DIR / "feed_secret"
FEED_SECRET_ENV = "ROTA_FEED_SECRET"
PRODID = "-//Rota//Staff Rota Feed//EN"
FEED_DAYS_BACK = 28
FEED_DAYS_AHEAD = 84


def load_feed_secret() -> bytes:
    """Signing key for feed links: the environment wins, then the key file, else a new key is written."""
    from_env = os.environ.get(FEED_SECRET_ENV)
    if from_env:
        return from_env.encode("utf-8")
    if FEED_SECRET_FILE.exists():
        stored = FEED_SECRET_FILE.read_text(encoding="utf-8").strip()
        if stored:
            return stored.encode("utf-8")
    generated = secrets.token_hex(32)
    FEED_SECRET_FILE.write_text(generated, encoding="utf-8")
    return generated.encode("utf-8")


def feed_token(employee_id: int, secret: Optional[bytes] = None) -> str:
    key = secret if secret is not None else load_feed_secret()
    return hmac.new(key, f"rota-feed:{int(employee_id)}".encode("utf-8"), hashlib.sha256).hexdigest()


def verify_feed_token(employee_id: int, token: Optional[str], secret: Optional[bytes] = None) -> bool:
    if not token:
        return False
    return hmac.compare_digest(feed_token(employee_id, secret), token)


def _escape(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def _fold(line: str) -> List[str]:
    """Split a content line into 75-octet pieces, continuation lines led by a space."""
    raw = line.encode("utf-8")
    if len(raw) <= 75:
        return [line]
    pieces: List[str] = []
    current = ""
    for char in line:
        if len((current + char).encode("utf-8")) > 75:
            pieces.append(current)
            current = " "
        current += char
    pieces.append(current)
    return pieces


def _stamp(value: datetime.datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc)
        return value.strftime("%Y%m%dT%H%M%SZ")
    return value.strftime("%Y%m%dT%H%M%S")


def _event_lines(shift: Dict[str, Any], stamp: datetime.datetime) -> List[str]:
    start, end = shift_bounds(
        datetime.date.fromisoformat(shift["shift_date"]),
        shift["start_time"],
        shift["end_time"],
        bool(shift.get("is_overnight")),
    )
    summary = shift.get("name") or f"{(shift.get('department') or 'Shift').title()} shift"
    if shift.get("status") == SHIFT_STATUS_SICK:
        summary = f"{summary} (sick)"
    details = [f"Department: {shift.get('department') or '-'}", f"Paid hours: {shift.get('paid_hours')}"]
    if shift.get("unpaid_break_minutes"):
        details.append(f"Unpaid break: {shift['unpaid_break_minutes']} min")
    if shift.get("notes"):
        details.append(shift["notes"])
    uid_source = shift.get("shift_id") or shift.get("id")
    return [
        "BEGIN:VEVENT",
        f"UID:shift-{uid_source}@rota",
        f"DTSTAMP:{_stamp(stamp)}",
        f"DTSTART:{_stamp(start)}",
        f"DTEND:{_stamp(end)}",
        f"SUMMARY:{_escape(summary)}",
        f"DESCRIPTION:{_escape(chr(10).join(details))}",
        "END:VEVENT",
    ]


def render_calendar(
    shifts: Iterable[Dict[str, Any]],
    *,
    calendar_name: str = "Rota",
    generated_at: Optional[datetime.datetime] = None,
) -> str:
    """iCalendar text for shift dicts. Start and end are floating local times."""
    stamp = generated_at or datetime.datetime.now(datetime.timezone.utc)
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        f"X-WR-CALNAME:{_escape(calendar_name)}",
    ]
    for shift in shifts:
        lines.extend(_event_lines(shift, stamp))
    lines.append("END:VCALENDAR")
    folded: List[str] = []
    for line in lines:
        folded.extend(_fold(line))
    return "\r\n".join(folded) + "\r\n"


def employee_feed(
    session,
    employee_id: int,
    *,
    today: Optional[datetime.date] = None,
    employee_name: Optional[str] = None,
) -> str:
    """Published shifts for one employee from four weeks back to twelve weeks ahead."""
    today = today or datetime.date.today()
    rows = employee_published_shifts(
        session,
        employee_id,
        today - datetime.timedelta(days=FEED_DAYS_BACK),
        today + datetime.timedelta(days=FEED_DAYS_AHEAD),
    )
    name = f"Rota - {employee_name}" if employee_name else "Rota"
    return render_calendar([shift_to_dict(row) for row in rows], calendar_name=name)
