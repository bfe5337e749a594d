"""
Audit Engine: heuristic website grading.

Fetches one page, pulls regex signals out of the HTML and turns them into a
fixed list of scored checks across five categories (Speed, SEO, Conversion,
Trust, Visibility). No headless browser and no AI: the same HTML always
produces the same checks, and the same checks always produce the same scores.

Pipeline:
    normalize_url → fetch_signal → build_speed_heuristic (+ optional PSI)
    → build_checks → compute_scores → sort_findings → build_narrative
"""

import asyncio
import logging
import math
import re
from datetime import datetime, timezone
from typing import Iterable, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

import aiohttp

from funnel.config import settings
from funnel.schemas.audit import (
    CATEGORY_ORDER,
    AuditCheck,
    AuditResult,
    AuditScores,
    CategoryScore,
    CompetitorResult,
    Narrative,
    PsiMetrics,
)
from funnel.services.module_map import map_recommended_modules
from funnel.services.pagespeed import fetch_pagespeed_metrics

logger = logging.getLogger("funnel.audit")

# ─── Constants ─────────────────────────────────────────────────────────
DEFAULT_URL = "https://example.co.uk"
USER_AGENT = "DigitalBusinessAssetsAuditBot/2.0 (+https://digitalbusinessassets.co.uk)"
CTA_WINDOW = 2200
MAX_COMPETITORS = 3
TOP_FINDINGS = 10

CATEGORY_WEIGHTS = {
    "Speed": 0.20,
    "SEO": 0.25,
    "Conversion": 0.25,
    "Trust": 0.15,
    "Visibility": 0.15,
}

_STATUS_WEIGHT = {"red": 3, "amber": 2, "green": 1}
_IMPACT_WEIGHT = {"High": 3, "Med": 2, "Low": 1}

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_LOCAL_INDUSTRY_RE = re.compile(r"(local|service|trade|clinic|medical|dent|estate|beauty|legal)")
_SALES_GOAL_RE = re.compile(r"(sales|checkout|order|revenue|pricing)")


def _clamp(value: float, lo: float, hi: float):
    return max(lo, min(hi, value))


def _round(value: float) -> int:
    """Round half up (72.5 -> 73)."""
    return int(math.floor(value + 0.5))


def rag_from_score(score: int) -> str:
    if score >= 80:
        return "green"
    if score >= 50:
        return "amber"
    return "red"


# ─── URL handling ──────────────────────────────────────────────────────

def _parse_candidate(value: str):
    candidate = value if _SCHEME_RE.match(value) else f"https://{value}"
    parts = urlsplit(candidate)
    if not parts.hostname or any(ch.isspace() for ch in parts.netloc):
        raise ValueError(f"Invalid URL: {value!r}")
    return parts


def _unsplit(parts, scheme: Optional[str] = None) -> str:
    return urlunsplit((
        (scheme or parts.scheme).lower(),
        parts.netloc.lower(),
        parts.path or "/",
        parts.query,
        "",
    ))


def normalize_website_url(value: str) -> str:
    """Strict normalisation for form input: raises ValueError on bad input."""
    raw = (value or "").strip()
    if not raw:
        raise ValueError("Website URL is required.")
    if "://" in raw and not _SCHEME_RE.match(raw):
        raise ValueError("Website URL must use HTTP or HTTPS.")
    try:
        parts = _parse_candidate(raw)
    except ValueError:
        raise ValueError("Please enter a valid website URL.")
    return _unsplit(parts)


def normalize_url(value: str) -> str:
    """Lenient normalisation used inside the engine. Falls back to DEFAULT_URL."""
    raw = (value or "").strip()
    if not raw:
        return DEFAULT_URL
    try:
        return _unsplit(_parse_candidate(raw))
    except ValueError:
        return DEFAULT_URL


def to_https_fetch_url(url: str) -> str:
    try:
        return _unsplit(urlsplit(url), scheme="https")
    except ValueError:
        return DEFAULT_URL


def normalize_competitor_domain(value: str) -> str:
    raw = (value or "").strip()
    if not raw:
        return ""
    try:
        host = _parse_candidate(raw).hostname or ""
    except ValueError:
        return ""
    return re.sub(r"^www\.", "", host, flags=re.IGNORECASE).lower()


def parse_competitor_list(value: str | Iterable[str] | None) -> list[str]:
    """Comma or newline separated string, or a list → up to three unique bare domains, order kept."""
    if not value:
        return []
    items = re.split(r"[,\r\n]+", value) if isinstance(value, str) else list(value)
    domains: list[str] = []
    for item in items:
        domain = normalize_competitor_domain(item)
        if domain and domain not in domains:
            domains.append(domain)
    return domains[:MAX_COMPETITORS]


# ─── Signal extraction ─────────────────────────────────────────────────

def _text_or_empty(html: str, pattern: str) -> str:
    match = re.search(pattern, html, re.IGNORECASE | re.DOTALL)
    if not match or not match.group(1):
        return ""
    text = re.sub(r"<[^>]+>", " ", match.group(1))
    return re.sub(r"\s+", " ", text).strip()


def _content_meta(html: str, key: str, attr: str) -> str:
    escaped = re.escape(key)
    first = rf"""<meta[^>]*{attr}=["']{escaped}["'][^>]*content=["']([^"']*)["'][^>]*>"""
    second = rf"""<meta[^>]*content=["']([^"']*)["'][^>]*{attr}=["']{escaped}["'][^>]*>"""
    return _text_or_empty(html, first) or _text_or_empty(html, second)


def _count(html: str, pattern: str) -> int:
    return len(re.findall(pattern, html, re.IGNORECASE))


def _has(html: str, pattern: str) -> bool:
    return re.search(pattern, html, re.IGNORECASE) is not None


def _count_links(html: str, fetch_url: str) -> tuple[int, int]:
    host = urlsplit(fetch_url).hostname
    internal = external = 0
    for href in re.findall(r"""<a\b[^>]*href=["']([^"']+)["'][^>]*>""", html, re.IGNORECASE):
        if not href or href.startswith("#") or href.startswith("javascript:"):
            continue
        if href.startswith("/"):
            internal += 1
            continue
        try:
            target = urlsplit(urljoin(fetch_url, href)).hostname
        except ValueError:
            continue
        if target == host:
            internal += 1
        else:
            external += 1
    return internal, external


def empty_signal(normalized_url: str, is_https_input: bool, fetch_error: str | None = None) -> dict:
    """Signal set for a page we could not read."""
    return {
        "normalized_url": normalized_url,
        "fetch_url": to_https_fetch_url(normalized_url),
        "is_https_input": is_https_input,
        "title_text": "",
        "title_length": 0,
        "h1_text": "",
        "h1_count": 0,
        "meta_description_length": 0,
        "has_meta_description": False,
        "has_canonical": False,
        "has_robots_meta": False,
        "has_og_title": False,
        "has_og_description": False,
        "json_ld_count": 0,
        "internal_link_count": 0,
        "external_link_count": 0,
        "script_count": 0,
        "image_count": 0,
        "lazy_image_count": 0,
        "has_viewport_meta": False,
        "has_favicon": False,
        "has_email_contact": False,
        "has_phone_contact": False,
        "has_address_signal": False,
        "has_review_keywords": False,
        "has_policy_links": False,
        "has_primary_cta": False,
        "has_form": False,
        "has_booking_hint": False,
        "has_tel_link": False,
        "social_links": {
            "facebook": False,
            "instagram": False,
            "linkedin": False,
            "tiktok": False,
            "youtube": False,
        },
        "has_google_business_hint": False,
        "has_authority_baseline": False,
        "dom_estimate": 0,
        "html_bytes": 0,
        "fetch_succeeded": False,
        "fetch_error": fetch_error,
    }


def parse_html_signals(normalized_url: str, fetch_url: str, html: str, is_https_input: bool) -> dict:
    """Extract every audit signal from raw HTML. Pure, no I/O."""
    source = html[: settings.audit_max_html_chars]

    title_text = _text_or_empty(source, r"<title[^>]*>(.*?)</title>")
    h1_text = _text_or_empty(source, r"<h1[^>]*>(.*?)</h1>")
    meta_description = _content_meta(source, "description", "name")
    json_ld_count = _count(source, r"""<script[^>]*type=["']application/ld\+json["'][^>]*>""")
    internal_links, external_links = _count_links(source, fetch_url)

    has_review_keywords = _has(source, r"\b(review|reviews|testimonial|rated|star rating|case study)\b")

    first_chunk = source[:CTA_WINDOW].lower()
    has_primary_cta = re.search(
        r"(book now|get quote|get started|start free|talk to us|request demo|buy now|call now)",
        first_chunk,
    ) is not None

    return {
        "normalized_url": normalized_url,
        "fetch_url": fetch_url,
        "is_https_input": is_https_input,
        "title_text": title_text,
        "title_length": len(title_text),
        "h1_text": h1_text,
        "h1_count": _count(source, r"<h1\b"),
        "meta_description_length": len(meta_description),
        "has_meta_description": bool(meta_description),
        "has_canonical": _has(source, r"""<link[^>]*rel=["']canonical["'][^>]*>"""),
        "has_robots_meta": _has(source, r"""<meta[^>]*name=["']robots["'][^>]*>"""),
        "has_og_title": bool(_content_meta(source, "og:title", "property")),
        "has_og_description": bool(_content_meta(source, "og:description", "property")),
        "json_ld_count": json_ld_count,
        "internal_link_count": internal_links,
        "external_link_count": external_links,
        "script_count": _count(source, r"<script\b"),
        "image_count": _count(source, r"<img\b"),
        "lazy_image_count": _count(source, r"""<img[^>]*loading=["']lazy["'][^>]*>"""),
        "has_viewport_meta": _has(source, r"""<meta[^>]*name=["']viewport["'][^>]*>"""),
        "has_favicon": _has(source, r"""<link[^>]*rel=["'][^"']*icon[^"']*["'][^>]*>"""),
        "has_email_contact": _has(source, r"""href=["']mailto:|[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}"""),
        "has_phone_contact": _has(source, r"""href=["']tel:|(?:\+?\d[\d\s().-]{8,}\d)"""),
        "has_address_signal": _has(source, r"<address[\s>]|\b(?:street|st\.|road|rd\.|avenue|ave\.|postcode)\b"),
        "has_review_keywords": has_review_keywords,
        "has_policy_links": _has(source, r"\bprivacy\b|\bterms\b|\bcookie\b|refund|returns|cancellation"),
        "has_primary_cta": has_primary_cta,
        "has_form": _has(source, r"<form\b"),
        "has_booking_hint": _has(source, r"\b(book now|appointment|schedule|reserve|calendar)\b"),
        "has_tel_link": _has(source, r"""href=["']tel:"""),
        "social_links": {
            "facebook": _has(source, r"facebook\.com"),
            "instagram": _has(source, r"instagram\.com"),
            "linkedin": _has(source, r"linkedin\.com"),
            "tiktok": _has(source, r"tiktok\.com"),
            "youtube": _has(source, r"youtube\.com|youtu\.be"),
        },
        "has_google_business_hint": _has(
            source, r"google\.com/maps|g\.page|google business profile|google my business"
        ),
        "has_authority_baseline": external_links >= 3 or json_ld_count > 0 or has_review_keywords,
        "dom_estimate": _count(source, r"<[a-z][^>]*>"),
        "html_bytes": len(source),
        "fetch_succeeded": True,
        "fetch_error": None,
    }


# ─── Fetch ─────────────────────────────────────────────────────────────

async def fetch_page(url: str) -> tuple[str, int, Optional[str]]:
    """
    GET a page and return (html, status_code, error).
    Never raises: network failures and non-2xx answers come back as an error string.
    """
    timeout = aiohttp.ClientTimeout(total=settings.audit_fetch_timeout)
    headers = {"User-Agent": USER_AGENT, "Accept": "text/html,application/xhtml+xml"}
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, headers=headers, allow_redirects=True) as resp:
                if resp.status < 200 or resp.status >= 300:
                    return "", resp.status, f"HTTP {resp.status}"
                html = await resp.text(errors="replace")
                return html, resp.status, None
    except asyncio.TimeoutError:
        logger.warning("Audit fetch timed out for %s", url)
        return "", 0, "request timed out"
    except aiohttp.ClientError as e:
        logger.warning("Audit fetch failed for %s: %s", url, e)
        return "", 0, str(e) or "request failed"


async def fetch_signal(url: str) -> dict:
    normalized = normalize_url(url)
    is_https_input = urlsplit(normalized).scheme == "https"
    fetch_url = to_https_fetch_url(normalized)

    html, _status, error = await fetch_page(fetch_url)
    if error:
        return empty_signal(normalized, is_https_input, fetch_error=error)
    return parse_html_signals(normalized, fetch_url, html, is_https_input)


# ─── Speed heuristic ──────────────────────────────────────────────────

def build_speed_heuristic(signal: dict) -> dict:
    """Score 15-98 from page weight signals plus a 12-100 load complexity estimate."""
    score = 86.0
    scripts = signal["script_count"]
    images = signal["image_count"]
    dom = signal["dom_estimate"]

    score -= max(0, scripts - 10) * 1.8
    score -= max(0, images - 24) * 0.65
    score -= max(0, dom - 900) / 28

    if signal["html_bytes"] > 250_000:
        score -= 5
    if signal["html_bytes"] > 420_000:
        score -= 6

    lazy_ratio = signal["lazy_image_count"] / images if images > 0 else 0
    if images >= 18 and lazy_ratio < 0.35:
        score -= 8
    elif images > 0 and lazy_ratio >= 0.35:
        score += 3

    score += 2 if signal["has_viewport_meta"] else -10

    if not signal["fetch_succeeded"]:
        score -= 22

    complexity = _clamp(_round(scripts * 1.9 + images * 0.8 + dom / 140), 12, 100)

    return {
        "score": _clamp(_round(score), 15, 98),
        "estimated_load_complexity": complexity,
    }


def blend_speed_score(heuristic_score: int, psi: Optional[PsiMetrics]) -> int:
    if not psi:
        return heuristic_score
    return _clamp(_round(heuristic_score * 0.4 + psi.performance_score * 0.6), 0, 100)


# ─── Checks ────────────────────────────────────────────────────────────

def _check(id, category, label, status, score_delta, evidence, fix, effort, impact) -> AuditCheck:
    return AuditCheck(
        id=id,
        category=category,
        label=label,
        status=status,
        score_delta=score_delta,
        evidence=evidence,
        fix=fix,
        effort=effort,
        impact=impact,
    )


def _tiered(value, green_if, amber_if) -> str:
    if green_if(value):
        return "green"
    if amber_if(value):
        return "amber"
    return "red"


def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


def build_checks(
    signal: dict,
    speed_score: int,
    psi: Optional[PsiMetrics] = None,
    industry: str = "",
    goal: str = "",
) -> list[AuditCheck]:
    """The fixed heuristic list. Order is stable and part of the report layout."""
    local_like = _LOCAL_INDUSTRY_RE.search((industry or "").lower()) is not None
    sales_like = _SALES_GOAL_RE.search((goal or "").lower()) is not None
    s = signal
    checks: list[AuditCheck] = []

    # ── Trust: transport ──
    checks.append(_check(
        "https", "Trust", "HTTPS security",
        "green" if s["is_https_input"] else "red", 18,
        "Site URL is HTTPS." if s["is_https_input"] else "Input URL was not HTTPS.",
        "Use HTTPS as your primary canonical URL and redirect all HTTP traffic.",
        "S", "High",
    ))

    # ── Speed ──
    if psi:
        speed_evidence = f"PSI mobile performance {psi.performance_score}/100"
        if psi.lcp_ms:
            speed_evidence += f", LCP {psi.lcp_ms}ms"
        speed_evidence += "."
    else:
        speed_evidence = f"Heuristic score {speed_score}/100 from scripts, media, and DOM complexity."
    checks.append(_check(
        "speed-score", "Speed", "Page speed baseline",
        _tiered(speed_score, lambda v: v >= 80, lambda v: v >= 55),
        10 if speed_score >= 55 else 20,
        speed_evidence,
        "Reduce script weight, compress images, and simplify critical page structure above the fold.",
        "M", "High",
    ))

    scripts = s["script_count"]
    checks.append(_check(
        "script-weight", "Speed", "Script payload pressure",
        _tiered(scripts, lambda v: v <= 20, lambda v: v <= 35),
        8 if scripts <= 35 else 14,
        f"{scripts} script tags detected.",
        "Trim non-essential third-party scripts and defer non-critical JS.",
        "M", "High",
    ))

    images = s["image_count"]
    checks.append(_check(
        "image-weight", "Speed", "Media load pressure",
        _tiered(images, lambda v: v <= 40, lambda v: v <= 75),
        6 if images <= 75 else 12,
        f"{images} images detected, {s['lazy_image_count']} using lazy loading.",
        "Convert heavy images to optimized formats and lazy-load non-critical media.",
        "M", "Med",
    ))

    checks.append(_check(
        "viewport", "Speed", "Mobile viewport setup",
        "green" if s["has_viewport_meta"] else "red", 10,
        "Viewport meta is present." if s["has_viewport_meta"] else "Viewport meta tag not detected.",
        "Add a responsive viewport meta tag for mobile rendering.",
        "S", "Med",
    ))

    if psi and psi.lcp_ms:
        checks.append(_check(
            "lcp", "Speed", "Largest Contentful Paint",
            _tiered(psi.lcp_ms, lambda v: v <= 2500, lambda v: v <= 4000),
            5 if psi.lcp_ms <= 4000 else 10,
            f"LCP {psi.lcp_ms}ms (mobile).",
            "Improve server response, prioritize hero media, and reduce render-blocking assets.",
            "M", "High",
        ))

    if psi and psi.cls is not None:
        checks.append(_check(
            "cls", "Speed", "Layout stability (CLS)",
            _tiered(psi.cls, lambda v: v <= 0.1, lambda v: v <= 0.25),
            4 if psi.cls <= 0.25 else 8,
            f"CLS {psi.cls}.",
            "Reserve media dimensions and stabilize dynamic content insertion.",
            "S", "Med",
        ))

    if psi and psi.inp_ms:
        checks.append(_check(
            "inp", "Speed", "Interaction latency (INP)",
            _tiered(psi.inp_ms, lambda v: v <= 200, lambda v: v <= 500),
            4 if psi.inp_ms <= 500 else 8,
            f"INP {psi.inp_ms}ms.",
            "Reduce long JavaScript tasks and simplify interaction handlers.",
            "M", "Med",
        ))

    # ── SEO ──
    title_len = s["title_length"]
    checks.append(_check(
        "title-length", "SEO", "Title tag quality",
        "green" if 30 <= title_len <= 60 else "amber" if title_len > 0 else "red",
        6 if title_len > 0 else 12,
        f"{title_len} characters." if title_len else "No title text detected.",
        "Write a focused title between 30-60 characters with your core commercial intent.",
        "S", "High",
    ))

    desc_len = s["meta_description_length"]
    checks.append(_check(
        "meta-description", "SEO", "Meta description coverage",
        "green" if 120 <= desc_len <= 170 else "amber" if desc_len > 0 else "red",
        6 if desc_len > 0 else 12,
        f"{desc_len} characters." if desc_len else "No meta description detected.",
        "Add a 140-160 character value-focused description with a clear action cue.",
        "S", "High",
    ))

    checks.append(_check(
        "canonical", "SEO", "Canonical tag",
        "green" if s["has_canonical"] else "red", 10,
        "Canonical found." if s["has_canonical"] else "Canonical missing.",
        "Set canonical URLs on indexable pages to avoid duplicate indexing signals.",
        "S", "Med",
    ))

    h1_count = s["h1_count"]
    checks.append(_check(
        "h1", "SEO", "H1 structure",
        "green" if h1_count == 1 else "amber" if h1_count > 1 else "red",
        5 if h1_count > 1 else 10,
        "Single H1 detected." if h1_count == 1 else f"{h1_count} H1 tags detected.",
        "Keep exactly one clear H1 aligned with the main buyer intent for the page.",
        "S", "Med",
    ))

    json_ld = s["json_ld_count"]
    checks.append(_check(
        "json-ld", "SEO", "Structured data coverage",
        "green" if json_ld >= 1 else "amber", 6,
        f"{json_ld} JSON-LD scripts found." if json_ld else "No JSON-LD scripts found.",
        "Add Organization/Service/FAQ schema where relevant to improve machine readability.",
        "M", "Med",
    ))

    internal = s["internal_link_count"]
    checks.append(_check(
        "internal-links", "SEO", "Internal linking depth",
        _tiered(internal, lambda v: v >= 10, lambda v: v >= 5),
        5 if internal >= 5 else 10,
        f"{internal} internal links detected.",
        "Add contextual internal links from service, industry, and proof pages to money pages.",
        "M", "Med",
    ))

    checks.append(_check(
        "robots", "SEO", "Robots directives",
        "green" if s["has_robots_meta"] else "amber", 4,
        "Robots meta present." if s["has_robots_meta"] else "No robots meta detected.",
        "Set clear robots directives on key landing pages.",
        "S", "Low",
    ))

    # ── Conversion ──
    checks.append(_check(
        "cta-above-fold", "Conversion", "Primary call-to-action clarity",
        "green" if s["has_primary_cta"] else "red", 14,
        "CTA language appears above the fold." if s["has_primary_cta"]
        else "No clear primary CTA found in early page content.",
        "Lead the first screen with one action-focused CTA tied to your offer.",
        "S", "High",
    ))

    has_capture = s["has_form"] or s["has_booking_hint"] or s["has_tel_link"]
    checks.append(_check(
        "lead-capture", "Conversion", "Lead capture path",
        "green" if has_capture else "red", 14,
        "At least one direct capture path found (form, booking, or click-to-call)." if has_capture
        else "No direct lead capture mechanism detected.",
        "Add a visible form, booking action, or one-tap call path on key pages.",
        "S", "High",
    ))

    checks.append(_check(
        "booking-signal", "Conversion", "Booking intent signal",
        "green" if s["has_booking_hint"] else "red" if sales_like else "amber",
        10 if sales_like else 6,
        "Booking/appointment cues detected." if s["has_booking_hint"] else "No booking intent wording detected.",
        "Add booking language and urgency framing near service and pricing sections.",
        "S", "High" if sales_like else "Med",
    ))

    checks.append(_check(
        "click-to-call", "Conversion", "Click-to-call on mobile",
        "green" if s["has_tel_link"] else "red" if local_like else "amber",
        10 if local_like else 5,
        "Telephone action link found." if s["has_tel_link"] else "No click-to-call link detected.",
        "Add click-to-call and WhatsApp shortcuts for high-intent users.",
        "S", "High" if local_like else "Med",
    ))

    # ── Trust ──
    trust_count = sum([s["has_email_contact"], s["has_phone_contact"], s["has_address_signal"]])
    checks.append(_check(
        "contact-trust", "Trust", "Business contact trust signals",
        _tiered(trust_count, lambda v: v >= 2, lambda v: v == 1),
        8 if trust_count == 1 else 14,
        f"Detected signals: email {_yes_no(s['has_email_contact'])}, "
        f"phone {_yes_no(s['has_phone_contact'])}, address {_yes_no(s['has_address_signal'])}.",
        "Expose phone, email, and location trust markers near conversion CTAs.",
        "S", "High",
    ))

    checks.append(_check(
        "proof", "Trust", "Review and proof content",
        "green" if s["has_review_keywords"] else "amber", 6,
        "Review/testimonial cues detected." if s["has_review_keywords"]
        else "No clear review/testimonial cues detected.",
        "Add recent reviews and result-based proof blocks near buying decisions.",
        "S", "Med",
    ))

    checks.append(_check(
        "policies", "Trust", "Policy and legal reassurance",
        "green" if s["has_policy_links"] else "amber", 4,
        "Policy/legal links detected." if s["has_policy_links"]
        else "Policy/legal links not obvious in source HTML.",
        "Add privacy/terms and service policy links in footer and key forms.",
        "S", "Low",
    ))

    checks.append(_check(
        "favicon", "Trust", "Brand identity cues",
        "green" if s["has_favicon"] else "amber", 3,
        "Favicon link present." if s["has_favicon"] else "No favicon detected.",
        "Set a favicon and consistent brand marks for trust continuity.",
        "S", "Low",
    ))

    # ── Visibility ──
    og_both = s["has_og_title"] and s["has_og_description"]
    og_any = s["has_og_title"] or s["has_og_description"]
    checks.append(_check(
        "og", "Visibility", "Social preview metadata",
        "green" if og_both else "amber" if og_any else "red",
        6 if og_any else 12,
        "og:title + og:description detected." if og_both
        else "Only one Open Graph field detected." if og_any
        else "No Open Graph essentials detected.",
        "Set OG title and description for better share click-through and social relevance.",
        "S", "Med",
    ))

    social_count = sum(1 for present in s["social_links"].values() if present)
    checks.append(_check(
        "social-presence", "Visibility", "Social footprint",
        _tiered(social_count, lambda v: v >= 2, lambda v: v == 1),
        6 if social_count == 1 else 10,
        f"{social_count} social profile links detected.",
        "Link active social profiles to reinforce trust and discovery signals.",
        "S", "Med",
    ))

    checks.append(_check(
        "google-business", "Visibility", "Google Business visibility signal",
        "green" if s["has_google_business_hint"] else "amber" if local_like else "green",
        6 if local_like else 0,
        "Google Maps/Business hint detected." if s["has_google_business_hint"]
        else "No Google Business hint detected in page source.",
        "Connect and reference your Google Business Profile on local-facing pages.",
        "S", "Med" if local_like else "Low",
    ))

    checks.append(_check(
        "authority-baseline", "Visibility", "Authority baseline signals",
        "green" if s["has_authority_baseline"] else "amber", 5,
        f"Baseline signals found (external links {s['external_link_count']}, schema {json_ld})."
        if s["has_authority_baseline"] else "No clear authority baseline signals detected.",
        "Add citations, partnership mentions, and structured organization signals to strengthen authority baseline.",
        "M", "Med",
    ))

    if not s["fetch_succeeded"]:
        checks.append(_check(
            "fetch-access", "Visibility", "Live fetch accessibility",
            "amber", 8,
            f"Live fetch issue: {s['fetch_error']}." if s.get("fetch_error") else "Could not fetch page HTML.",
            "Ensure the homepage is publicly reachable over HTTPS and re-run the scan.",
            "S", "High",
        ))

    return checks


# ─── Scoring ───────────────────────────────────────────────────────────

def _as_checks(checks: Iterable[AuditCheck | dict]) -> list[AuditCheck]:
    return [c if isinstance(c, AuditCheck) else AuditCheck.model_validate(c) for c in checks]


def compute_scores(checks: Iterable[AuditCheck | dict]) -> AuditScores:
    """
    Category scores start at 100 and lose each non-green check's delta.
    Overall is the weighted blend. Accepts stored check dicts as well, so a
    saved scan can be re-scored from its own checks.
    """
    category_score = {category: 100.0 for category in CATEGORY_ORDER}
    for check in _as_checks(checks):
        if check.status == "green":
            continue
        category_score[check.category] -= check.score_delta

    final = {c: _clamp(_round(v), 0, 100) for c, v in category_score.items()}
    overall = _clamp(_round(sum(final[c] * w for c, w in CATEGORY_WEIGHTS.items())), 0, 100)

    return AuditScores(
        overall=overall,
        speed=final["Speed"],
        seo=final["SEO"],
        conversion=final["Conversion"],
        trust=final["Trust"],
        visibility=final["Visibility"],
    )


def category_breakdown(scores: AuditScores) -> list[CategoryScore]:
    values = {
        "Speed": scores.speed,
        "SEO": scores.seo,
        "Conversion": scores.conversion,
        "Trust": scores.trust,
        "Visibility": scores.visibility,
    }
    return [
        CategoryScore(category=c, score=values[c], rag=rag_from_score(values[c]))
        for c in CATEGORY_ORDER
    ]


def sort_findings(checks: Iterable[AuditCheck]) -> list[AuditCheck]:
    """Worst first: status, then impact, then score delta."""
    return sorted(
        checks,
        key=lambda c: (-_STATUS_WEIGHT[c.status], -_IMPACT_WEIGHT[c.impact], -c.score_delta),
    )


# ─── Narrative ─────────────────────────────────────────────────────────

_NARRATIVE_LABELS = (
    ("speed", "Speed"),
    ("seo", "Search visibility"),
    ("conversion", "Conversion path"),
    ("trust", "Trust layer"),
    ("visibility", "Visibility signals"),
)


def build_narrative(scores: AuditScores, top_findings: list[AuditCheck]) -> Narrative:
    weakest = sorted(
        ((getattr(scores, key), label) for key, label in _NARRATIVE_LABELS),
        key=lambda item: item[0],
    )
    labels = [label for _, label in weakest]
    critical = sum(1 for f in top_findings if f.status == "red")
    overall = scores.overall

    if overall >= 80:
        summary = (
            f"Your website baseline is solid ({overall}/100), but there are still revenue "
            f"gains available in {labels[0]} and {labels[1]}."
        )
    elif overall >= 55:
        summary = (
            f"Your website is currently leaking opportunities ({overall}/100). The biggest drag "
            f"is {labels[0].lower()}, followed by {labels[1].lower()}."
        )
    else:
        summary = (
            f"Your website has critical commercial gaps ({overall}/100) that are likely suppressing "
            f"leads and sales. Priority weaknesses are {labels[0].lower()} and {labels[1].lower()}."
        )

    if critical > 0:
        why = (
            f"You currently have {critical} high-severity issues. When response speed, trust, or "
            "conversion cues are weak, buyers leave quickly and competitors capture demand first."
        )
    else:
        why = (
            "The current gaps are mostly medium severity, but they still compound into lower lead "
            "quality, higher acquisition costs, and slower sales cycles."
        )

    next_steps = [f"{f.label}: {f.fix or 'Apply fix guidance.'}" for f in top_findings[:6]]
    return Narrative(executive_summary=summary, why_it_matters=why, next_steps=next_steps)


# ─── Competitors ───────────────────────────────────────────────────────

def build_competitor_comparison(domain: str, theirs: AuditScores, mine: AuditScores) -> CompetitorResult:
    rows = [
        ("Speed", theirs.speed, mine.speed),
        ("SEO", theirs.seo, mine.seo),
        ("Conversion", theirs.conversion, mine.conversion),
        ("Trust", theirs.trust, mine.trust),
        ("Visibility", theirs.visibility, mine.visibility),
    ]
    wins = sorted((r for r in rows if r[1] - r[2] >= 10), key=lambda r: r[2] - r[1])
    gaps = sorted((r for r in rows if r[2] - r[1] >= 10), key=lambda r: r[1] - r[2])
    return CompetitorResult(
        domain=domain,
        scores=theirs,
        top_wins=[f"{c}: {t} vs your {m}" for c, t, m in wins[:3]],
        top_gaps=[f"{c}: {m} vs your {t}" for c, t, m in gaps[:3]],
    )


# ─── Full audit ────────────────────────────────────────────────────────

async def run_audit(
    url: str,
    industry: str = "",
    goal: str = "",
    competitors: Optional[list[str]] = None,
    include_psi: bool = True,
) -> AuditResult:
    """Fetch, score and narrate one site. Competitors are audited without PSI."""
    normalized = normalize_url(url)
    signal = await fetch_signal(normalized)
    heuristic = build_speed_heuristic(signal)
    psi = await fetch_pagespeed_metrics(signal["fetch_url"]) if include_psi else None
    speed_score = blend_speed_score(heuristic["score"], psi)

    checks = build_checks(signal, speed_score, psi, industry, goal)
    scores = compute_scores(checks)
    top_findings = sort_findings(checks)[:TOP_FINDINGS]
    leak_types = [f.category.lower() for f in top_findings if f.status != "green"][:4]
    modules = map_recommended_modules(scores, leak_types, industry, goal)
    narrative = build_narrative(scores, top_findings)

    competitor_results: list[CompetitorResult] = []
    domains = parse_competitor_list(competitors)
    if domains:
        audits = await asyncio.gather(*[
            run_audit(f"https://{d}", industry, goal, include_psi=False) for d in domains
        ])
        competitor_results = [
            build_competitor_comparison(d, a.scores, scores) for d, a in zip(domains, audits)
        ]

    logger.info(
        "🔎 Audited %s → overall %d (fetch %s)",
        normalized, scores.overall, "ok" if signal["fetch_succeeded"] else signal["fetch_error"],
    )

    return AuditResult(
        url=normalized,
        industry=industry or None,
        goal=goal or None,
        generated_at=datetime.now(timezone.utc).isoformat(),
        scores=scores,
        categories=category_breakdown(scores),
        checks=checks,
        top_findings=top_findings,
        narrative=narrative,
        page_experience={
            "source": "hybrid" if psi else "heuristic",
            "script_count": signal["script_count"],
            "image_count": signal["image_count"],
            "dom_estimate": signal["dom_estimate"],
            "html_bytes": signal["html_bytes"],
            "estimated_load_complexity": heuristic["estimated_load_complexity"],
            "lcp_ms": psi.lcp_ms if psi else None,
            "cls": psi.cls if psi else None,
            "inp_ms": psi.inp_ms if psi else None,
            "psi_performance": psi.performance_score if psi else None,
        },
        visibility_signals={
            "social_links": signal["social_links"],
            "has_google_business_hint": signal["has_google_business_hint"],
            "has_og_title": signal["has_og_title"],
            "has_og_description": signal["has_og_description"],
        },
        competitors=competitor_results,
        recommended_modules=modules,
        fetch_error=signal.get("fetch_error"),
    )
