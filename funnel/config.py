"""
DBA Funnel: configuration via environment variables.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """All settings read from env / .env file."""

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./funnel.db",
        description="Async SQLAlchemy DB URL",
    )

    # Public site
    site_url: str = Field(
        default="https://digitalbusinessassets.co.uk",
        description="Public base URL used for portal links and report URLs",
    )
    cors_origins: str = Field(default="*", description="Comma-separated allowed origins")

    # Admin surface
    admin_password: str = Field(default="", description="Password for the admin cookie login")
    admin_token: str = Field(default="", description="Static token for x-admin-token / Bearer auth")
    admin_session_hours: int = Field(default=8)
    admin_cookie_secure: bool = Field(default=False, description="Mark the admin cookie Secure (enable behind HTTPS)")

    # Audit engine
    audit_fetch_timeout: float = Field(default=4.5, description="Seconds before the page fetch gives up")
    audit_max_html_chars: int = Field(default=420_000)
    pagespeed_api_key: str = Field(default="", description="Google PageSpeed Insights key (optional)")
    pagespeed_timeout: float = Field(default=5.2)

    # Scan pipeline
    scan_max_concurrent: int = Field(default=2)
    reports_dir: str = Field(default="./.data/audits", description="Where PDF reports are written")

    # Portal
    portal_session_hours: int = Field(default=24)
    portal_history_limit: int = Field(default=20)
    portal_cleanup_interval: int = Field(
        default=3600, description="Seconds between expired-session sweeps"
    )

    # CRM forwarding (optional)
    crm_webhook_url: str = Field(default="")
    crm_timeout: float = Field(default=7.0)

    # Telegram
    telegram_bot_token: str = Field(default="")
    telegram_chat_id: str = Field(default="")

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
