"""
DBA Funnel: admin routes (leads, scans, bookings, analytics).

Everything except login/logout sits behind ``require_admin``.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from funnel.database import get_db
from funnel.models.booking import Booking
from funnel.models.lead import Lead
from funnel.models.scan import SCAN_COMPLETE, Scan
from funnel.schemas import AdminLoginRequest
from funnel.services.activity import count_by_action, list_activities
from funnel.services.admin_auth import (
    clear_admin_cookie,
    is_admin_password_configured,
    require_admin,
    set_admin_cookie,
    verify_admin_password,
)
from funnel.services.bookings import list_bookings, to_csv
from funnel.services.lead_capture import list_recent_leads
from funnel.services.portal import create_portal_session_for_lead
from funnel.services.scan_engine import list_recent_scans

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])
protected = APIRouter(dependencies=[Depends(require_admin)])


# ── Auth ────────────────────────────────────────────────

@router.post("/auth/login")
async def admin_login(req: AdminLoginRequest):
    if not is_admin_password_configured():
        return JSONResponse({"ok": False, "message": "ADMIN_PASSWORD is not configured."}, status_code=503)

    if not req.password.strip() or not verify_admin_password(req.password):
        logger.warning("Rejected admin login")
        return JSONResponse({"ok": False, "message": "Invalid admin password."}, status_code=401)

    response = JSONResponse({"ok": True})
    set_admin_cookie(response)
    logger.info("🔐 Admin logged in")
    return response


@router.post("/auth/logout")
async def admin_logout():
    response = JSONResponse({"ok": True})
    clear_admin_cookie(response)
    return response


# ── Leads ───────────────────────────────────────────────

@protected.get("/leads")
async def admin_list_leads(
    limit: int = Query(40, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    leads = await list_recent_leads(db, limit=limit)
    return {"leads": [lead.to_dict() for lead in leads], "total": len(leads)}


@protected.get("/leads/{lead_id}")
async def admin_get_lead(lead_id: str, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(Lead).where(Lead.id == lead_id).options(selectinload(Lead.scan))
    )
    lead = result.scalar_one_or_none()
    if not lead:
        raise HTTPException(404, "Lead not found.")

    activity = await list_activities(db, entity_id=lead.id, limit=100)
    if lead.scan:
        activity += await list_activities(db, entity_id=lead.scan.id, limit=100)
    activity.sort(key=lambda entry: entry.created_at, reverse=True)

    return {
        "lead": lead.to_dict(),
        "scan": lead.scan.to_dict() if lead.scan else None,
        "activity": [entry.to_dict() for entry in activity],
    }


@protected.post("/leads/{lead_id}/portal-link")
async def admin_portal_link(lead_id: str, db: AsyncSession = Depends(get_db)):
    link = await create_portal_session_for_lead(db, lead_id)
    if not link:
        raise HTTPException(404, "Lead not found.")
    return {"ok": True, **link}


# ── Scans ───────────────────────────────────────────────

@protected.get("/scans")
async def admin_list_scans(
    limit: int = Query(30, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    scans = await list_recent_scans(db, limit=limit)
    return {
        "scans": [
            {**scan.to_dict(), "lead": scan.lead.to_summary() if scan.lead else None}
            for scan in scans
        ],
        "total": len(scans),
    }


# ── Bookings ────────────────────────────────────────────

@protected.get("/bookings")
async def admin_list_bookings(
    format: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    bookings = await list_bookings(db)
    if format == "csv":
        return Response(
            content=to_csv(bookings),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": "attachment; filename=bookings-export.csv"},
        )
    return {"bookings": [b.to_dict() for b in bookings], "total": len(bookings)}


# ── Analytics / activity ────────────────────────────────

@protected.get("/analytics")
async def admin_analytics(db: AsyncSession = Depends(get_db)):
    total_leads = (await db.execute(select(func.count(Lead.id)))).scalar() or 0
    total_bookings = (await db.execute(select(func.count(Booking.id)))).scalar() or 0

    status_rows = await db.execute(select(Scan.status, func.count(Scan.id)).group_by(Scan.status))
    scans_by_status = {status: count for status, count in status_rows.all()}

    score_rows = await db.execute(select(Scan.scores).where(Scan.status == SCAN_COMPLETE))
    overall = [
        s["overall"] for s in score_rows.scalars().all()
        if isinstance(s, dict) and isinstance(s.get("overall"), (int, float))
    ]
    average = round(sum(overall) / len(overall), 1) if overall else None

    events = {entity: await count_by_action(db, entity) for entity in ("lead", "scan", "booking", "portal")}

    return {
        "leads": total_leads,
        "bookings": total_bookings,
        "scans": {"total": sum(scans_by_status.values()), "by_status": scans_by_status},
        "average_overall_score": average,
        "events": events,
    }


@protected.get("/activity")
async def admin_activity(
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    logs = await list_activities(db, entity_type=entity_type, entity_id=entity_id, limit=limit)
    return {"activities": [log.to_dict() for log in logs], "total": len(logs)}


router.include_router(protected)
