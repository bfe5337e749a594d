"""
API Routes: health, website-audit tool, lead capture.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from funnel.database import get_db
from funnel.schemas import (
    ContactLeadRequest,
    HealthResponse,
    LeadCaptureRequest,
    LeadSubmissionResponse,
    ScanStatusResponse,
    WebsiteAuditRequest,
    WebsiteAuditStartResponse,
)
from funnel.services.lead_capture import LeadValidationError, capture_lead, submit_contact_lead
from funnel.services.notify import send_audit_lead_alert
from funnel.services.queue import scan_queue
from funnel.services.report import read_report_pdf, render_report_html
from funnel.services.scan_engine import (
    create_lead_and_scan,
    ensure_scan_progress,
    get_scan,
    normalize_lead_scan_input,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


# ── Health ──────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        logger.error("Health check DB query failed: %s", e)
        database = "unavailable"
    return HealthResponse(
        status="ok" if database == "connected" else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        database=database,
        queued_scans=scan_queue.pending,
    )


# ── Website audit ───────────────────────────────────────

@router.post("/tools/website-audit/start", response_model=WebsiteAuditStartResponse, tags=["audit"])
async def start_website_audit(
    req: WebsiteAuditRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    try:
        data = normalize_lead_scan_input(req.model_dump())
    except ValueError as e:
        return _error(str(e))

    try:
        lead, scan = await create_lead_and_scan(db, data)
    except Exception as e:
        logger.error("Could not create website audit: %s", e)
        return _error("Unable to start website audit right now.", status_code=500)

    background_tasks.add_task(
        send_audit_lead_alert,
        full_name=lead.full_name,
        business_name=lead.business_name,
        website_url=scan.website_url,
        reason=lead.reason,
        mobile_number=lead.mobile_number or "",
        email=lead.email,
        scan_id=scan.id,
    )
    await scan_queue.enqueue(scan.id)

    return WebsiteAuditStartResponse(
        scan_id=scan.id,
        status_url=f"/api/v1/tools/website-audit/{scan.id}",
        results_url=f"/tools/website-audit/results/{scan.id}",
    )


@router.get("/tools/website-audit/{scan_id}", response_model=ScanStatusResponse, tags=["audit"])
async def get_website_audit(scan_id: str, db: AsyncSession = Depends(get_db)):
    scan = await get_scan(db, scan_id)
    if not scan:
        raise HTTPException(404, "Scan not found.")

    if not scan.is_terminal:
        await ensure_scan_progress(scan)

    data = scan.to_dict()
    return ScanStatusResponse(
        scan_id=scan.id,
        status=scan.status,
        progress=scan.progress,
        website_url=scan.website_url,
        concern=scan.concern,
        industry=scan.industry,
        scores=data["scores"],
        checks=data["checks"],
        insights=data["insights"],
        recommendations=data["recommendations"],
        narrative=data["narrative"],
        upgrade_cards=data["upgrade_cards"],
        recommended_modules=(scan.raw_result or {}).get("recommended_modules", []),
        error_message=scan.error_message,
        download_url=f"/api/v1/tools/website-audit/{scan.id}/download" if scan.report_path else None,
        report_url=f"/api/v1/tools/website-audit/{scan.id}/report" if scan.is_terminal else None,
        lead=scan.lead.to_summary() if scan.lead else None,
        created_at=data["created_at"],
        started_at=data["started_at"],
        completed_at=data["completed_at"],
    )


@router.get("/tools/website-audit/{scan_id}/download", tags=["audit"])
async def download_website_audit(scan_id: str, db: AsyncSession = Depends(get_db)):
    scan = await get_scan(db, scan_id)
    if not scan:
        raise HTTPException(404, "Scan not found.")

    pdf = read_report_pdf(scan)
    if pdf is None:
        raise HTTPException(404, "Report PDF not ready.")

    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="website-audit-{scan.id}.pdf"'},
    )


@router.get("/tools/website-audit/{scan_id}/report", response_class=HTMLResponse, tags=["audit"])
async def website_audit_report(scan_id: str, db: AsyncSession = Depends(get_db)):
    scan = await get_scan(db, scan_id)
    if not scan:
        raise HTTPException(404, "Scan not found.")
    return HTMLResponse(render_report_html(scan, scan.lead))


# ── Leads ───────────────────────────────────────────────

@router.post("/leads", tags=["leads"])
async def create_or_update_lead(req: LeadCaptureRequest, db: AsyncSession = Depends(get_db)):
    try:
        lead, created = await capture_lead(db, req.model_dump())
    except ValueError as e:
        return _error(str(e))
    return {"success": True, "created": created, "lead": lead.to_summary()}


@router.post("/lead", response_model=LeadSubmissionResponse, tags=["leads"])
async def submit_contact_form(req: ContactLeadRequest, db: AsyncSession = Depends(get_db)):
    try:
        result = await submit_contact_lead(db, req.model_dump())
    except LeadValidationError as e:
        return JSONResponse(
            LeadSubmissionResponse(
                success=False, message="Please correct the highlighted fields.", errors=e.errors
            ).model_dump(),
            status_code=400,
        )
    except ValueError as e:
        return JSONResponse(
            LeadSubmissionResponse(success=False, message=str(e), errors=[str(e)]).model_dump(),
            status_code=400,
        )
    return LeadSubmissionResponse(**result)
