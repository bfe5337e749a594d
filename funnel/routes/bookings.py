"""
DBA Funnel: discovery-call booking routes.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from funnel.database import get_db
from funnel.schemas import BookingRequest
from funnel.services.bookings import create_booking, get_availability, get_upcoming_dates, is_date_format

logger = logging.getLogger(__name__)
router = APIRouter(tags=["bookings"])

BOOKING_WINDOW_DAYS = 21


@router.get("/book")
async def booking_availability(
    date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    db: AsyncSession = Depends(get_db),
):
    if not date:
        return {"dates": get_upcoming_dates(BOOKING_WINDOW_DAYS)}

    if not is_date_format(date):
        return JSONResponse({"error": "Invalid date format."}, status_code=400)

    return {"date": date, "times": await get_availability(db, date)}


@router.post("/book")
async def book_call(req: BookingRequest, db: AsyncSession = Depends(get_db)):
    try:
        booking = await create_booking(db, req.model_dump())
    except ValueError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)
    return {"success": True, "booking": booking.to_dict()}
