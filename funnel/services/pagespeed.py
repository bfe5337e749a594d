"""
PageSpeed Insights: optional lab metrics for the speed score.

Graceful no-op without PAGESPEED_API_KEY. Any failure returns None and the
audit falls back to the heuristic speed score.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from funnel.config import settings
from funnel.schemas.audit import PsiMetrics

logger = logging.getLogger("funnel.pagespeed")

PSI_ENDPOINT = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"


def parse_psi_response(data: dict) -> Optional[PsiMetrics]:
    """Pull performance score, LCP, CLS and INP out of a PSI v5 payload."""
    lighthouse = data.get("lighthouseResult") or {}
    performance = ((lighthouse.get("categories") or {}).get("performance") or {}).get("score")
    if not isinstance(performance, (int, float)):
        return None

    audits = lighthouse.get("audits") or {}

    def _numeric(key: str):
        value = (audits.get(key) or {}).get("numericValue")
        return value if isinstance(value, (int, float)) else None

    lcp = _numeric("largest-contentful-paint")
    cls = _numeric("cumulative-layout-shift")
    inp = _numeric("interaction-to-next-paint")

    return PsiMetrics(
        performance_score=max(0, min(100, round(performance * 100))),
        lcp_ms=round(lcp) if lcp is not None else None,
        cls=round(cls, 3) if cls is not None else None,
        inp_ms=round(inp) if inp is not None else None,
    )


async def fetch_pagespeed_metrics(url: str) -> Optional[PsiMetrics]:
    key = settings.pagespeed_api_key
    if not key:
        return None

    params = {"url": url, "strategy": "mobile", "category": "performance", "key": key}
    timeout = aiohttp.ClientTimeout(total=settings.pagespeed_timeout)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(PSI_ENDPOINT, params=params) as resp:
                if resp.status != 200:
                    logger.warning("PSI %s for %s", resp.status, url)
                    return None
                data = await resp.json()
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.warning("PSI request failed for %s: %s", url, e)
        return None

    return parse_psi_response(data)
