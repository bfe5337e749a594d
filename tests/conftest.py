"""
Shared test fixtures: async DB, mock settings, scan queue, FastAPI test client.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from funnel.database import Base, get_db
from funnel.main import app
from funnel.services.queue import ScanQueue


# ── Test Database (SQLite in-memory) ────────────────────

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture()
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def background_sessions(session_factory):
    """Point code that opens its own sessions at the test DB."""
    with patch("funnel.services.scan_engine.async_session", session_factory), \
         patch("funnel.services.activity.async_session", session_factory), \
         patch("funnel.main.async_session", session_factory):
        yield session_factory


@pytest_asyncio.fixture()
async def client(session_factory, background_sessions):
    """FastAPI test client with test DB injected."""

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Scan queue ──────────────────────────────────────────

@pytest.fixture(autouse=True)
def fresh_queue():
    """A private queue with no processor, patched at every import point."""
    queue = ScanQueue(max_concurrent=1)
    with patch("funnel.services.queue.scan_queue", queue), \
         patch("funnel.services.scan_engine.scan_queue", queue), \
         patch("funnel.routes.scan_queue", queue), \
         patch("funnel.main.scan_queue", queue):
        yield queue


# ── Sample data ─────────────────────────────────────────

SAMPLE_AUDIT_REQUEST = {
    "fullName": "Jane Doe",
    "mobileNumber": "+44 7700 900123",
    "businessName": "Sunrise Bakery",
    "websiteUrl": "sunrise-bakery.co.uk",
    "reason": "Bad SEO",
    "email": "Jane@Sunrise-Bakery.co.uk",
    "industry": "Local bakery",
}

SAMPLE_HTML = """<!doctype html>
<html>
<head>
  <title>Sunrise Bakery | Fresh bread and cakes in Leeds</title>
  <meta name="description" content="Handmade sourdough, celebration cakes and pastries baked fresh every morning in Leeds. Order online or book a tasting today.">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <meta property="og:title" content="Sunrise Bakery">
  <link rel="canonical" href="https://sunrise-bakery.co.uk/">
  <link rel="icon" href="/favicon.ico">
</head>
<body>
  <h1>Fresh bread, baked daily</h1>
  <a href="/order">Book now</a>
  <a href="tel:+441130000000">Call us</a>
  <a href="https://facebook.com/sunrisebakery">Facebook</a>
  <a href="https://instagram.com/sunrisebakery">Instagram</a>
  <p>Read our reviews from happy customers.</p>
  <address>1 Mill Road, Leeds</address>
  <a href="/privacy">Privacy</a>
  <img src="/a.jpg" loading="lazy">
  <script src="/app.js"></script>
</body>
</html>"""


@pytest.fixture
def sample_audit_request():
    return dict(SAMPLE_AUDIT_REQUEST)


@pytest.fixture
def sample_html():
    return SAMPLE_HTML


# ── Mock Telegram ───────────────────────────────────────

@pytest.fixture
def mock_telegram():
    with patch("funnel.services.notify._send_tg_message", new_callable=AsyncMock, return_value=True) as m:
        yield m


# ── Mock Settings ───────────────────────────────────────

@pytest.fixture(autouse=True)
def mock_settings(tmp_path):
    """Override settings for tests: patches at ALL import points."""
    mock_s = MagicMock()
    mock_s.database_url = TEST_DB_URL
    mock_s.site_url = "https://test.example"
    mock_s.cors_origin_list = ["*"]
    mock_s.admin_password = ""
    mock_s.admin_token = ""
    mock_s.admin_session_hours = 8
    mock_s.admin_cookie_secure = False
    mock_s.audit_fetch_timeout = 1.0
    mock_s.audit_max_html_chars = 420_000
    mock_s.pagespeed_api_key = ""
    mock_s.pagespeed_timeout = 1.0
    mock_s.scan_max_concurrent = 1
    mock_s.reports_dir = str(tmp_path / "audits")
    mock_s.portal_session_hours = 24
    mock_s.portal_history_limit = 20
    mock_s.portal_cleanup_interval = 3600
    mock_s.crm_webhook_url = ""
    mock_s.crm_timeout = 1.0
    mock_s.telegram_bot_token = ""
    mock_s.telegram_chat_id = ""

    with patch("funnel.config.settings", mock_s), \
         patch("funnel.services.audit_engine.settings", mock_s), \
         patch("funnel.services.pagespeed.settings", mock_s), \
         patch("funnel.services.report.settings", mock_s), \
         patch("funnel.services.lead_capture.settings", mock_s), \
         patch("funnel.services.portal.settings", mock_s), \
         patch("funnel.services.notify.settings", mock_s), \
         patch("funnel.services.admin_auth.settings", mock_s):
        yield mock_s
