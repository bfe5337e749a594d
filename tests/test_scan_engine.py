"""
Tests for the scan engine: intake, job creation, background execution, queue.
"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from funnel.models.scan import (
    SCAN_COMPLETE,
    SCAN_FAILED,
    SCAN_PROCESSING,
    SCAN_QUEUED,
    ScanTransitionError,
)
from funnel.services.activity import list_activities
from funnel.services.queue import ScanQueue
from funnel.services.scan_engine import (
    build_upgrade_cards,
    create_lead_and_scan,
    ensure_scan_progress,
    execute_scan,
    get_scan,
    normalize_lead_scan_input,
    recover_pending_scans,
    update_scan_status,
)

VALID_INPUT = {
    "full_name": "Jane Doe",
    "mobile_number": "+44 7700 900123",
    "business_name": "Sunrise Bakery",
    "website_url": "sunrise-bakery.co.uk",
    "reason": "Slow replies",
    "email": "Jane@Sunrise-Bakery.co.uk",
    "industry": "",
}


async def _queued_scan(db, **overrides):
    data = normalize_lead_scan_input({**VALID_INPUT, **overrides})
    return await create_lead_and_scan(db, data)


async def _reload(session_factory, scan_id):
    async with session_factory() as s:
        return await get_scan(s, scan_id)


class TestNormalizeInput:
    def test_valid(self):
        data = normalize_lead_scan_input(VALID_INPUT)
        assert data["website_url"] == "https://sunrise-bakery.co.uk/"
        assert data["email"] == "jane@sunrise-bakery.co.uk"
        assert data["industry"] == "General"
        assert data["reason"] == "Slow replies"
        assert data["competitors"] == []

    def test_unknown_reason_falls_back(self):
        data = normalize_lead_scan_input({**VALID_INPUT, "reason": "Something else"})
        assert data["reason"] == "All of it"

    def test_blank_email_allowed(self):
        assert normalize_lead_scan_input({**VALID_INPUT, "email": ""})["email"] is None

    @pytest.mark.parametrize("field,value,message", [
        ("full_name", "", "are required"),
        ("business_name", "  ", "are required"),
        ("mobile_number", "abc", "valid mobile number"),
        ("website_url", "", "Website URL is required."),
        ("website_url", "ftp://x.com", "HTTP or HTTPS"),
        ("email", "not-an-email", "valid email address"),
    ])
    def test_rejects(self, field, value, message):
        with pytest.raises(ValueError, match=message):
            normalize_lead_scan_input({**VALID_INPUT, field: value})

    def test_competitors_parsed(self):
        data = normalize_lead_scan_input({**VALID_INPUT, "competitors": "rival.com, www.other.com"})
        assert data["competitors"] == ["rival.com", "other.com"]


class TestCreateLeadAndScan:
    async def test_creates_queued_scan(self, db_session):
        lead, scan = await _queued_scan(db_session)
        assert scan.lead_id == lead.id
        assert scan.status == SCAN_QUEUED
        assert scan.progress == 4
        assert scan.website_url == "https://sunrise-bakery.co.uk/"
        assert scan.concern == "Slow replies"
        assert lead.source == "website-audit"

        actions = {a.action for a in await list_activities(db_session)}
        assert {"created", "queued"} <= actions


class TestUpdateScanStatus:
    async def test_backwards_rejected_before_other_fields(self, db_session):
        _lead, scan = await _queued_scan(db_session)
        update_scan_status(scan, status=SCAN_PROCESSING, progress=18)
        with pytest.raises(ScanTransitionError):
            update_scan_status(scan, status=SCAN_QUEUED, error_message="nope")
        assert scan.error_message is None
        assert scan.status == SCAN_PROCESSING

    async def test_unknown_field(self, db_session):
        _lead, scan = await _queued_scan(db_session)
        with pytest.raises(AttributeError):
            update_scan_status(scan, colour="blue")


class TestExecuteScan:
    async def test_success(self, db_session, background_sessions, sample_html):
        _lead, scan = await _queued_scan(db_session)

        with patch(
            "funnel.services.audit_engine.fetch_page",
            new_callable=AsyncMock,
            return_value=(sample_html, 200, None),
        ):
            await execute_scan(scan.id)

        done = await _reload(background_sessions, scan.id)
        assert done.status == SCAN_COMPLETE
        assert done.progress == 100
        assert done.started_at is not None
        assert done.completed_at is not None
        assert 0 <= done.scores["overall"] <= 100
        assert done.checks and all("status" in c for c in done.checks)
        assert len(done.insights) <= 4
        assert len(done.recommendations) <= 8
        assert done.narrative["executive_summary"]
        assert [c["service_slug"] for c in done.upgrade_cards][0] == "call-tracking-missed-call-capture"
        assert done.raw_result["normalized_url"] == "https://sunrise-bakery.co.uk/"
        modules = done.raw_result["recommended_modules"]
        assert 4 <= len(modules) <= 6
        assert modules[0]["phase"] == "Day 1-3"
        assert done.report_path and Path(done.report_path).is_file()

        async with background_sessions() as s:
            actions = [a.action for a in await list_activities(s, entity_id=scan.id)]
        assert "completed" in actions

    async def test_failure_marks_failed(self, db_session, background_sessions):
        _lead, scan = await _queued_scan(db_session)

        with patch("funnel.services.scan_engine.run_audit", new_callable=AsyncMock, side_effect=RuntimeError("boom")):
            await execute_scan(scan.id)

        failed = await _reload(background_sessions, scan.id)
        assert failed.status == SCAN_FAILED
        assert failed.progress == 100
        assert failed.error_message == "boom"
        assert failed.completed_at is not None

    async def test_pdf_failure_is_not_fatal(self, db_session, background_sessions, sample_html):
        _lead, scan = await _queued_scan(db_session)

        with patch(
            "funnel.services.audit_engine.fetch_page",
            new_callable=AsyncMock,
            return_value=(sample_html, 200, None),
        ), patch("funnel.services.scan_engine.render_report_pdf", side_effect=OSError("disk full")):
            await execute_scan(scan.id)

        done = await _reload(background_sessions, scan.id)
        assert done.status == SCAN_COMPLETE
        assert done.report_path is None

    async def test_terminal_scan_skipped(self, db_session, background_sessions):
        _lead, scan = await _queued_scan(db_session)
        update_scan_status(scan, status=SCAN_FAILED, progress=100, error_message="old")
        await db_session.commit()

        with patch("funnel.services.scan_engine.run_audit", new_callable=AsyncMock) as m:
            await execute_scan(scan.id)
        m.assert_not_awaited()

    async def test_unknown_scan(self, background_sessions):
        with patch("funnel.services.scan_engine.run_audit", new_callable=AsyncMock) as m:
            await execute_scan("does-not-exist")
        m.assert_not_awaited()


class TestUpgradeCards:
    def test_need_website(self):
        slugs = [c.service_slug for c in build_upgrade_cards("Need website")]
        assert slugs == ["website-starter-build", "booking-system-setup", "follow-up-automation", "crm-setup"]

    def test_bad_seo(self):
        slugs = [c.service_slug for c in build_upgrade_cards("Bad SEO")]
        assert slugs[0] == "seo-upgrade-pack"
        assert len(slugs) == 3

    def test_default(self):
        slugs = [c.service_slug for c in build_upgrade_cards("All of it")]
        assert slugs == ["website-pro-build", "follow-up-automation", "crm-setup"]


class TestProgressRecovery:
    async def test_ensure_progress_requeues_once(self, db_session, fresh_queue):
        _lead, scan = await _queued_scan(db_session)
        fresh_queue.set_processor(AsyncMock())

        assert await ensure_scan_progress(scan) is True
        assert await ensure_scan_progress(scan) is False
        await fresh_queue.drain()
        assert fresh_queue.processed == [scan.id]

    async def test_ensure_progress_ignores_terminal(self, db_session, fresh_queue):
        _lead, scan = await _queued_scan(db_session)
        update_scan_status(scan, status=SCAN_FAILED)
        assert await ensure_scan_progress(scan) is False
        assert fresh_queue.pending == 0

    async def test_recover_pending(self, db_session, background_sessions, fresh_queue):
        _l1, queued = await _queued_scan(db_session)
        _l2, processing = await _queued_scan(db_session)
        _l3, complete = await _queued_scan(db_session)
        update_scan_status(processing, status=SCAN_PROCESSING)
        update_scan_status(complete, status=SCAN_PROCESSING)
        update_scan_status(complete, status=SCAN_COMPLETE)
        await db_session.commit()

        seen: list[str] = []

        async def _record(scan_id):
            seen.append(scan_id)

        fresh_queue.set_processor(_record)
        assert await recover_pending_scans() == 2
        await fresh_queue.drain()
        assert sorted(seen) == sorted([queued.id, processing.id])


class TestScanQueue:
    async def test_fifo_and_dedup(self):
        queue = ScanQueue(max_concurrent=1)
        order: list[str] = []

        async def _process(scan_id):
            await asyncio.sleep(0)
            order.append(scan_id)

        queue.set_processor(_process)
        assert await queue.enqueue("a") is True
        assert await queue.enqueue("b") is True
        assert await queue.enqueue("a") is False
        await queue.drain()

        assert order == ["a", "b"]
        assert not queue.contains("a")
        assert queue.pending == 0

    async def test_processor_errors_do_not_stop_queue(self):
        queue = ScanQueue(max_concurrent=1)
        done: list[str] = []

        async def _process(scan_id):
            if scan_id == "bad":
                raise RuntimeError("bad scan")
            done.append(scan_id)

        queue.set_processor(_process)
        await queue.enqueue("bad")
        await queue.enqueue("good")
        await queue.drain()
        assert done == ["good"]
        assert queue.processed == ["bad", "good"]

    async def test_enqueue_right_after_worker_finishes(self):
        queue = ScanQueue(max_concurrent=1)
        seen: list[str] = []
        first_done = asyncio.Event()

        async def _process(scan_id):
            seen.append(scan_id)
            if scan_id == "a":
                first_done.set()

        async def _enqueue_next():
            await first_done.wait()
            await queue.enqueue("b")

        queue.set_processor(_process)
        follower = asyncio.create_task(_enqueue_next())
        await queue.enqueue("a")
        await follower
        await queue.drain()

        assert seen == ["a", "b"]
        assert queue.pending == 0
        assert not queue.contains("b")
