"""
Tests for services: lead capture, CRM forwarding, bookings, portal, admin auth, notifications.
"""

import csv
import hashlib
import io
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from sqlalchemy import select

from funnel.models.lead import Lead, PortalSession
from funnel.models.scan import SCAN_COMPLETE, SCAN_PROCESSING
from funnel.services.activity import count_by_action, log_activity
from funnel.services.admin_auth import (
    admin_session_token,
    is_admin_authorized,
    is_admin_password_configured,
    verify_admin_password,
)
from funnel.services.bookings import (
    CSV_HEADERS,
    SLOT_TIMES,
    build_slot_key,
    create_booking,
    get_availability,
    get_upcoming_dates,
    is_date_format,
    is_time_format,
    list_bookings,
    to_csv,
)
from funnel.services.lead_capture import (
    LeadValidationError,
    capture_lead,
    forward_to_crm,
    merge_audit_report,
    normalize_lead_payload,
    submit_contact_lead,
    validate_lead_payload,
)
from funnel.services.notify import _esc_md, send_audit_lead_alert, send_booking_alert
from funnel.services.portal import (
    create_portal_session_for_email,
    create_portal_session_for_lead,
    get_portal_payload,
    purge_expired_sessions,
)
from funnel.services.scan_engine import create_lead_and_scan, normalize_lead_scan_input, update_scan_status


def _fake_http(status: int = 200, error: Exception | None = None):
    """A stand-in for aiohttp.ClientSession whose post() answers with ``status``."""
    resp = MagicMock()
    resp.status = status
    request_cm = MagicMock()
    request_cm.__aenter__ = AsyncMock(return_value=resp)
    request_cm.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.post = MagicMock(return_value=request_cm, side_effect=error)
    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=session)
    session_cm.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=session_cm), session


CONTACT = {
    "name": "Jane Doe",
    "email": "Jane@Example.com",
    "phone": "+44 7700 900123",
    "company": "Acme Ltd",
    "website": "https://acme.example",
    "message": "We need a faster website with better lead capture.",
    "source": "",
}

BOOKING = {
    "date": "2030-01-02",
    "time": "09:30",
    "name": "Jane Doe",
    "email": "Jane@Example.com",
    "phone": "+44 7700 900123",
    "company": "Acme Ltd",
    "website": "https://acme.example",
    "industry": "Retail",
    "goals": 'More "qualified" leads',
}


# ── Lead capture ───────────────────────────────────────

class TestLeadValidation:
    def test_valid(self):
        lead = normalize_lead_payload(CONTACT)
        assert lead["email"] == "jane@example.com"
        assert validate_lead_payload(lead, require_message=True) == []

    def test_collects_every_error(self):
        lead = normalize_lead_payload({"email": "nope", "phone": "x", "website": "acme.example", "message": "short"})
        errors = validate_lead_payload(lead, require_message=True)
        assert "Name is required." in errors
        assert "A valid email is required." in errors
        assert "A valid phone number is required." in errors
        assert "Company is required." in errors
        assert "Website must start with http:// or https://." in errors
        assert "Message must contain at least 20 characters." in errors

    def test_optional_email(self):
        lead = normalize_lead_payload({**CONTACT, "email": ""})
        assert validate_lead_payload(lead, require_email=False) == []
        lead = normalize_lead_payload({**CONTACT, "email": "bad"})
        assert validate_lead_payload(lead, require_email=False) == [
            "Please provide a valid email address or leave it blank."
        ]


class TestMergeAuditReport:
    def test_keeps_latest_and_last_twelve(self):
        merged = None
        for i in range(15):
            merged = merge_audit_report(merged, {"overall": i}, f"2030-01-{i + 1:02d}")
        assert merged["latest"]["overall"] == 14
        assert len(merged["history"]) == 12
        assert merged["history"][0]["overall"] == 3

    def test_no_incoming_keeps_existing(self):
        existing = {"latest": {"overall": 1}, "history": []}
        assert merge_audit_report(existing, None, "now") is existing


class TestCaptureLead:
    async def test_create_then_upsert(self, db_session):
        lead, created = await capture_lead(db_session, {
            "name": "Jane", "email": "JANE@example.com", "phone": "07700900123",
            "business_name": "Acme", "website": "acme.example", "source": "newsletter",
            "consent_weekly": True, "audit_report": {"overall": 55},
        })
        assert created is True
        assert lead.email == "jane@example.com"
        assert lead.website_url == "https://acme.example/"
        assert lead.consent_weekly is True
        assert lead.audit_report["latest"]["overall"] == 55

        again, created = await capture_lead(db_session, {
            "email": "jane@example.com", "source": "tool", "audit_report": {"overall": 70},
        })
        assert created is False
        assert again.id == lead.id
        assert again.full_name == "Jane"
        assert again.business_name == "Acme"
        assert again.source == "tool"
        assert again.consent_weekly is True
        assert [h["overall"] for h in again.audit_report["history"]] == [55, 70]

        counts = await count_by_action(db_session, "lead")
        assert counts == {"created": 1, "updated": 1}

    async def test_rejects_bad_email(self, db_session):
        with pytest.raises(ValueError, match="valid email"):
            await capture_lead(db_session, {"email": "not-an-email"})

    async def test_free_text_website_kept(self, db_session):
        lead, _created = await capture_lead(db_session, {
            "email": "baker@example.com", "website": "my bakery site",
        })
        assert lead.website_url == "my bakery site"

    async def test_anonymous_lead(self, db_session):
        lead, created = await capture_lead(db_session, {"source": "popup"})
        assert created is True
        assert lead.full_name == "Unknown"
        assert lead.email is None


class TestContactLead:
    async def test_submit_without_crm(self, db_session):
        result = await submit_contact_lead(db_session, CONTACT)
        assert result["success"] is True
        assert result["crm_forwarded"] is False
        assert "not configured" in result["message"]

        lead = (await db_session.execute(select(Lead).where(Lead.id == result["lead_id"]))).scalar_one()
        assert lead.source == "website-form"
        assert lead.business_name == "Acme Ltd"

    async def test_submit_invalid(self, db_session):
        with pytest.raises(LeadValidationError) as exc:
            await submit_contact_lead(db_session, {**CONTACT, "message": "hi"})
        assert exc.value.errors == ["Message must contain at least 20 characters."]

    async def test_chatbot_needs_no_message(self, db_session):
        result = await submit_contact_lead(db_session, {**CONTACT, "message": "", "source": "chatbot"})
        assert result["success"] is True


class TestForwardToCrm:
    async def test_not_configured(self):
        forwarded, message = await forward_to_crm({"name": "Jane"})
        assert forwarded is False
        assert "not configured" in message

    async def test_forwarded(self, mock_settings):
        mock_settings.crm_webhook_url = "https://crm.example/hook"
        factory, session = _fake_http(200)
        with patch("funnel.services.lead_capture.aiohttp.ClientSession", factory):
            forwarded, message = await forward_to_crm({"name": "Jane"})
        assert forwarded is True
        url = session.post.call_args.args[0]
        body = session.post.call_args.kwargs["json"]
        assert url == "https://crm.example/hook"
        assert body["name"] == "Jane"
        assert "submitted_at" in body

    async def test_crm_rejects(self, mock_settings):
        mock_settings.crm_webhook_url = "https://crm.example/hook"
        factory, _session = _fake_http(500)
        with patch("funnel.services.lead_capture.aiohttp.ClientSession", factory):
            forwarded, message = await forward_to_crm({"name": "Jane"})
        assert forwarded is False
        assert "forwarding failed" in message

    async def test_network_error(self, mock_settings):
        mock_settings.crm_webhook_url = "https://crm.example/hook"
        factory, _session = _fake_http(error=aiohttp.ClientError("down"))
        with patch("funnel.services.lead_capture.aiohttp.ClientSession", factory):
            forwarded, _message = await forward_to_crm({"name": "Jane"})
        assert forwarded is False


# ── Bookings ───────────────────────────────────────────

class TestBookingHelpers:
    def test_slots(self):
        assert len(SLOT_TIMES) == 20
        assert SLOT_TIMES[0] == "09:00"
        assert SLOT_TIMES[1] == "09:30"
        assert SLOT_TIMES[-1] == "18:30"

    def test_formats(self):
        assert is_date_format("2030-01-02")
        assert not is_date_format("2030-1-2")
        assert not is_date_format("")
        assert is_time_format("09:30")
        assert not is_time_format("9:30")
        assert build_slot_key("2030-01-02", "09:30") == "2030-01-02T09:30"

    def test_upcoming_dates(self):
        assert get_upcoming_dates(3, today=date(2030, 1, 30)) == ["2030-01-30", "2030-01-31", "2030-02-01"]
        assert len(get_upcoming_dates()) == 14


class TestBookings:
    async def test_create_and_availability(self, db_session, mock_telegram):
        booking = await create_booking(db_session, BOOKING)
        assert booking.slot_key == "2030-01-02T09:30"
        assert booking.email == "jane@example.com"

        times = await get_availability(db_session, "2030-01-02")
        assert "09:30" not in times
        assert len(times) == 19
        assert len(await get_availability(db_session, "2030-01-03")) == 20
        assert await get_availability(db_session, "tomorrow") == []

    async def test_slot_taken(self, db_session):
        await create_booking(db_session, BOOKING)
        with pytest.raises(ValueError, match="This slot is already booked."):
            await create_booking(db_session, {**BOOKING, "name": "Someone Else"})

    @pytest.mark.parametrize("field,value,message", [
        ("date", "02/01/2030", "Invalid booking date format."),
        ("time", "08:00", "Invalid booking time."),
        ("time", "9:30", "Invalid booking time."),
        ("company", "", "Name and company are required."),
        ("email", "nope", "Valid email is required."),
        ("phone", "call me", "Valid phone is required."),
        ("website", "acme.example", "Website must start with http:// or https://"),
        ("goals", "x" * 1201, "Goals should be 1200 characters or fewer."),
    ])
    async def test_validation(self, db_session, field, value, message):
        with pytest.raises(ValueError) as exc:
            await create_booking(db_session, {**BOOKING, field: value})
        assert str(exc.value) == message

    @pytest.mark.parametrize("phone,valid", [
        ("(020) 7946-0018", True),
        ("+44 7700 900123", True),
        ("07700", False),
        ("0770 090 0123 ext 4", False),
    ])
    async def test_phone_rules_match_contact_form(self, db_session, phone, valid):
        errors = validate_lead_payload(normalize_lead_payload({**CONTACT, "phone": phone}))
        assert ("A valid phone number is required." not in errors) is valid
        if valid:
            booking = await create_booking(db_session, {**BOOKING, "phone": phone})
            assert booking.phone == phone
        else:
            with pytest.raises(ValueError, match="Valid phone is required."):
                await create_booking(db_session, {**BOOKING, "phone": phone})

    async def test_list_sorted_and_csv(self, db_session):
        await create_booking(db_session, {**BOOKING, "time": "11:00"})
        await create_booking(db_session, {**BOOKING, "time": "09:00"})
        bookings = await list_bookings(db_session)
        assert [b.time for b in bookings] == ["09:00", "11:00"]

        text = to_csv(bookings)
        lines = text.split("\n")
        assert lines[0] == ",".join(CSV_HEADERS)
        assert lines[0].endswith("createdAt")
        assert lines[1].startswith('"')
        assert '"More ""qualified"" leads"' in lines[1]

        rows = list(csv.reader(io.StringIO(text)))
        assert rows[1][CSV_HEADERS.index("goals")] == 'More "qualified" leads'

    async def test_booking_alert_sent(self, db_session, mock_settings, mock_telegram):
        mock_settings.telegram_bot_token = "123:abc"
        mock_settings.telegram_chat_id = "42"
        await create_booking(db_session, BOOKING)
        mock_telegram.assert_awaited_once()
        payload = mock_telegram.await_args.args[0]
        assert payload["chat_id"] == "42"
        assert "2030\\-01\\-02T09:30" in payload["text"]


# ── Portal ─────────────────────────────────────────────

async def _lead_with_scan(db, email="jane@example.com", complete=True):
    data = normalize_lead_scan_input({
        "full_name": "Jane Doe", "mobile_number": "07700900123", "business_name": "Acme",
        "website_url": "acme.example", "email": email,
    })
    lead, scan = await create_lead_and_scan(db, data)
    if complete:
        update_scan_status(scan, status=SCAN_PROCESSING)
        update_scan_status(scan, status=SCAN_COMPLETE, progress=100, scores={"overall": 66}, checks=[
            {"label": "Canonical tag", "category": "SEO", "status": "red", "fix": "Add it"},
            {"label": "HTTPS security", "category": "Trust", "status": "green", "fix": ""},
        ])
        await db.commit()
    return lead, scan


class TestPortal:
    async def test_unknown_lead(self, db_session):
        assert await create_portal_session_for_lead(db_session, "missing") is None
        assert await create_portal_session_for_email(db_session, "nobody@example.com") is None

    async def test_link_and_payload(self, db_session):
        lead, scan = await _lead_with_scan(db_session)
        link = await create_portal_session_for_email(db_session, "  JANE@example.com ")
        assert link["lead_id"] == lead.id
        assert len(link["token"]) == 48
        int(link["token"], 16)
        assert link["url"] == f"https://test.example/portal/{link['token']}"

        payload = await get_portal_payload(db_session, link["token"])
        assert payload["lead"]["id"] == lead.id
        assert payload["latest_scan"]["id"] == scan.id
        assert payload["latest_scan"]["overall_score"] == 66
        assert [f["label"] for f in payload["latest_scan"]["top_findings"]] == ["Canonical tag"]
        assert len(payload["scan_history"]) == 1

    async def test_history_spans_leads_with_same_email(self, db_session):
        first, _s1 = await _lead_with_scan(db_session)
        second, s2 = await _lead_with_scan(db_session, complete=False)
        link = await create_portal_session_for_lead(db_session, first.id)
        payload = await get_portal_payload(db_session, link["token"])
        assert len(payload["scan_history"]) == 2
        assert payload["latest_scan"]["id"] == s2.id

    async def test_unknown_token(self, db_session):
        assert await get_portal_payload(db_session, "nope") is None

    async def test_expired_sessions_purged(self, db_session):
        lead, _scan = await _lead_with_scan(db_session)
        db_session.add(PortalSession(
            lead_id=lead.id, token="e" * 48,
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        ))
        await db_session.commit()

        assert await get_portal_payload(db_session, "e" * 48) is None
        remaining = (await db_session.execute(select(PortalSession))).scalars().all()
        assert remaining == []
        assert await purge_expired_sessions(db_session) == 0


# ── Admin auth ─────────────────────────────────────────

class TestAdminAuth:
    def test_not_configured(self):
        assert is_admin_password_configured() is False
        assert admin_session_token() is None
        assert verify_admin_password("anything") is False
        assert is_admin_authorized("cookie", "token", "Bearer token") is False

    def test_password(self, mock_settings):
        mock_settings.admin_password = "s3cret"
        assert is_admin_password_configured() is True
        assert verify_admin_password("s3cret") is True
        assert verify_admin_password("  s3cret ") is True
        assert verify_admin_password("wrong") is False
        expected = hashlib.sha256(b"dba-admin-v1:s3cret").hexdigest()
        assert admin_session_token() == expected

    def test_cookie_and_tokens(self, mock_settings):
        mock_settings.admin_password = "s3cret"
        mock_settings.admin_token = "static-token"
        token = admin_session_token()
        assert is_admin_authorized(token, None, None) is True
        assert is_admin_authorized("forged", None, None) is False
        assert is_admin_authorized(None, "static-token", None) is True
        assert is_admin_authorized(None, None, "Bearer static-token") is True
        assert is_admin_authorized(None, None, "Basic static-token") is False
        assert is_admin_authorized(None, "wrong", "Bearer wrong") is False
        assert is_admin_authorized(None, "tökén", None) is False


# ── Notifications / activity ───────────────────────────

class TestNotify:
    def test_escape(self):
        assert _esc_md("a.b-c!") == "a\\.b\\-c\\!"

    async def test_skipped_when_unconfigured(self, mock_telegram):
        ok = await send_audit_lead_alert("Jane", "Acme", "https://a.com/", "Bad SEO", "0770", None, "s1")
        assert ok is False
        mock_telegram.assert_not_awaited()

    async def test_audit_alert(self, mock_settings, mock_telegram):
        mock_settings.telegram_bot_token = "123:abc"
        mock_settings.telegram_chat_id = "42"
        ok = await send_audit_lead_alert("Jane", "Acme", "https://a.com/", "Bad SEO", "0770", None, "s1")
        assert ok is True
        text = mock_telegram.await_args.args[0]["text"]
        assert "not provided" in text
        assert "https://test.example/tools/website-audit/results/s1" in text

    async def test_booking_alert(self, mock_settings, mock_telegram):
        mock_settings.telegram_bot_token = "123:abc"
        mock_settings.telegram_chat_id = "42"
        assert await send_booking_alert("Jane", "Acme", "j@a.com", "0770", "2030-01-02T09:00") is True


class TestActivity:
    async def test_log_without_session(self, background_sessions, session_factory):
        await log_activity("booking", "b1", "created", description="Booked")
        async with session_factory() as s:
            assert await count_by_action(s, "booking") == {"created": 1}
