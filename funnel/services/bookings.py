"""
Bookings: half-hour discovery-call slots and CSV export.
"""

import csv
import io
import logging
import re
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from funnel.models.booking import Booking
from funnel.services.activity import log_activity
from funnel.services.lead_capture import EMAIL_RE, PHONE_RE, WEBSITE_RE
from funnel.services.notify import send_booking_alert

logger = logging.getLogger("funnel.bookings")

SLOT_COUNT = 20
SLOT_MINUTES = 30
DAY_START_MINUTES = 9 * 60
MAX_GOALS_LENGTH = 1200

SLOT_TIMES = [
    f"{(DAY_START_MINUTES + i * SLOT_MINUTES) // 60:02d}:{(DAY_START_MINUTES + i * SLOT_MINUTES) % 60:02d}"
    for i in range(SLOT_COUNT)
]

CSV_HEADERS = [
    "id", "date", "time", "name", "email", "phone",
    "company", "website", "industry", "goals", "createdAt",
]

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^\d{2}:\d{2}$")


class SlotTakenError(ValueError):
    pass


def is_date_format(value: str) -> bool:
    return bool(value) and _DATE_RE.match(value) is not None


def is_time_format(value: str) -> bool:
    return bool(value) and _TIME_RE.match(value) is not None


def build_slot_key(day: str, time: str) -> str:
    return f"{day}T{time}"


def get_upcoming_dates(days: int = 14, today: Optional[date] = None) -> list[str]:
    start = today or date.today()
    return [(start + timedelta(days=i)).isoformat() for i in range(days)]


async def get_availability(db: AsyncSession, day: str) -> list[str]:
    """Free slot times for a date; an invalid date has none."""
    if not is_date_format(day):
        return []
    result = await db.execute(select(Booking.time).where(Booking.date == day))
    taken = set(result.scalars().all())
    return [t for t in SLOT_TIMES if t not in taken]


def validate_booking(data: dict) -> dict:
    """Clean a booking payload. Raises ValueError with a visitor-safe message."""
    day = (data.get("date") or "").strip()
    time = (data.get("time") or "").strip()
    name = (data.get("name") or "").strip()
    company = (data.get("company") or "").strip()
    email = (data.get("email") or "").strip()
    phone = (data.get("phone") or "").strip()
    website = (data.get("website") or "").strip()
    goals = (data.get("goals") or "").strip()

    if not is_date_format(day):
        raise ValueError("Invalid booking date format.")
    if not is_time_format(time) or time not in SLOT_TIMES:
        raise ValueError("Invalid booking time.")
    if not name or not company:
        raise ValueError("Name and company are required.")
    if not EMAIL_RE.match(email):
        raise ValueError("Valid email is required.")
    if not PHONE_RE.match(phone):
        raise ValueError("Valid phone is required.")
    if website and not WEBSITE_RE.match(website):
        raise ValueError("Website must start with http:// or https://")
    if len(goals) > MAX_GOALS_LENGTH:
        raise ValueError(f"Goals should be {MAX_GOALS_LENGTH} characters or fewer.")

    return {
        "date": day,
        "time": time,
        "slot_key": build_slot_key(day, time),
        "name": name,
        "company": company,
        "email": email.lower(),
        "phone": phone,
        "website": website or None,
        "industry": (data.get("industry") or "").strip() or None,
        "goals": goals or None,
    }


async def create_booking(db: AsyncSession, data: dict) -> Booking:
    clean = validate_booking(data)

    existing = await db.execute(select(Booking.id).where(Booking.slot_key == clean["slot_key"]))
    if existing.scalar_one_or_none():
        raise SlotTakenError("This slot is already booked.")

    booking = Booking(**clean)
    db.add(booking)
    try:
        await db.flush()
    except IntegrityError:
        # Lost a race for the same slot
        await db.rollback()
        raise SlotTakenError("This slot is already booked.")

    await log_activity(
        "booking", booking.id, "created",
        description=f"{booking.name} ({booking.company}) booked {booking.slot_key}",
        icon="📅", actor=f"lead:{booking.name}", db=db,
    )
    await db.commit()
    logger.info("📅 Booking %s created for %s", booking.id, booking.slot_key)
    await send_booking_alert(booking.name, booking.company, booking.email, booking.phone, booking.slot_key)
    return booking


async def list_bookings(db: AsyncSession) -> list[Booking]:
    result = await db.execute(select(Booking).order_by(Booking.slot_key))
    return list(result.scalars().all())


def to_csv(bookings: list[Booking]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    buf.write(",".join(CSV_HEADERS) + "\n")
    for b in bookings:
        writer.writerow([
            b.id,
            b.date,
            b.time,
            b.name,
            b.email,
            b.phone,
            b.company,
            b.website or "",
            b.industry or "",
            b.goals or "",
            b.created_at.isoformat() if b.created_at else "",
        ])
    return buf.getvalue().rstrip("\n")
