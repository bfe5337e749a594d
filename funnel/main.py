"""
FastAPI Application: entry point.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from funnel.config import settings
from funnel.database import async_session, close_db, init_db
from funnel.routes import router
from funnel.routes.admin import router as admin_router
from funnel.routes.bookings import router as bookings_router
from funnel.routes.portal import router as portal_router
from funnel.services.portal import purge_expired_sessions
from funnel.services.queue import scan_queue
from funnel.services.scan_engine import execute_scan, recover_pending_scans

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


async def periodic_portal_cleanup(interval: int = 3600) -> None:
    """Delete expired portal sessions every ``interval`` seconds."""
    while True:
        try:
            await asyncio.sleep(interval)
            async with async_session() as session:
                removed = await purge_expired_sessions(session)
                await session.commit()
            if removed:
                logger.info("🧹 Removed %d expired portal sessions", removed)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("Portal cleanup error: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hook."""
    logger.info("🚀 Starting DBA Funnel API v%s", VERSION)
    await init_db()
    logger.info("✅ Database ready")

    scan_queue.set_processor(execute_scan)
    await recover_pending_scans()

    cleanup_task = asyncio.create_task(
        periodic_portal_cleanup(interval=settings.portal_cleanup_interval)
    )

    yield

    # Shutdown
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass
    await close_db()
    logger.info("👋 Shutdown complete")


app = FastAPI(
    title="DBA Funnel API",
    description=(
        "Lead capture, website-audit scans, discovery-call bookings and "
        "the client portal for Digital Business Assets."
    ),
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")
app.include_router(bookings_router, prefix="/api/v1")
app.include_router(portal_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "DBA Funnel API",
        "version": VERSION,
        "docs": "/docs",
    }
