"""
DBA Funnel: Telegram admin notifications.
"""

import re
import logging

import aiohttp

from funnel.config import settings

logger = logging.getLogger(__name__)


def _esc_md(s: str) -> str:
    """Escape MarkdownV2 special characters."""
    return re.sub(r"([_*\[\]()~`>#+\-=|{}.!\\])", r"\\\1", str(s))


def _configured() -> bool:
    return bool(settings.telegram_bot_token and settings.telegram_chat_id)


async def send_audit_lead_alert(
    full_name: str,
    business_name: str,
    website_url: str,
    reason: str,
    mobile_number: str,
    email: str | None,
    scan_id: str,
) -> bool:
    """Ping the admin chat when someone requests a website audit."""
    if not _configured():
        logger.warning("Telegram not configured, skipping audit lead alert")
        return False

    results_url = f"{settings.site_url}/tools/website-audit/results/{scan_id}"
    message = "\n".join([
        "🔎 *New website audit request*",
        "",
        f"👤 *Name:* {_esc_md(full_name)}",
        f"🏢 *Business:* {_esc_md(business_name)}",
        f"🌐 *Site:* {_esc_md(website_url)}",
        f"🎯 *Concern:* {_esc_md(reason)}",
        f"📱 *Mobile:* {_esc_md(mobile_number)}",
        f"📧 *Email:* {_esc_md(email or 'not provided')}",
        "",
        f"📊 [Results]({results_url})",
    ])
    return await _send_tg_message({"chat_id": settings.telegram_chat_id, "text": message, "parse_mode": "MarkdownV2"})


async def send_booking_alert(
    name: str,
    company: str,
    email: str,
    phone: str,
    slot_key: str,
) -> bool:
    """Ping the admin chat when a discovery call is booked."""
    if not _configured():
        logger.warning("Telegram not configured, skipping booking alert")
        return False

    message = "\n".join([
        "📅 *Discovery call booked\\!*",
        "",
        f"🕐 *Slot:* `{_esc_md(slot_key)}`",
        f"👤 *Name:* {_esc_md(name)}",
        f"🏢 *Company:* {_esc_md(company)}",
        f"📧 *Email:* {_esc_md(email)}",
        f"📱 *Phone:* {_esc_md(phone)}",
    ])
    return await _send_tg_message({"chat_id": settings.telegram_chat_id, "text": message, "parse_mode": "MarkdownV2"})


async def _send_tg_message(payload: dict) -> bool:
    """Low-level Telegram sendMessage wrapper."""
    token = settings.telegram_bot_token
    try:
        timeout = aiohttp.ClientTimeout(total=10)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            url = f"https://api.telegram.org/bot{token}/sendMessage"
            async with session.post(url, json=payload) as resp:
                if resp.status == 200:
                    logger.info("Telegram notification sent")
                    return True
                body = await resp.text()
                logger.error("Telegram API %s: %s", resp.status, body[:200])
                return False
    except Exception as e:
        logger.error("Telegram failed: %s", e)
        return False
