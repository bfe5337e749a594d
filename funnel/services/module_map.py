"""
Module Map: turns audit scores into a phased list of recommended service modules.

Each rule nominates a module with a priority. A module keeps its highest
priority, the top six are kept (padded to at least four), and position
decides the delivery phase.
"""

import re
from typing import Optional

from funnel.schemas.audit import AuditScores, RecommendedModule

MAX_MODULES = 6
MIN_MODULES = 4
DEFAULT_PRICE = "From £399"
DEFAULT_HREF = "/services"

_ECOM_RE = re.compile(r"(ecom|e-commerce|shop|store|retail|d2c)")
_LOCAL_RE = re.compile(r"(local|service|trade|clinic|medical|dent|estate|beauty|plumb|electric)")
_LEADS_GOAL_RE = re.compile(r"(lead|enquir|inbound|contact)")
_SALES_GOAL_RE = re.compile(r"(sale|sales|checkout|order|revenue|pricing)")


MODULES: dict[str, dict] = {
    "websiteStarter": {
        "title": "Website Starter Build",
        "service_slug": "website-starter-build",
        "why": "Stabilises trust and conversion basics quickly.",
        "action": "Launch a clean conversion-first baseline with clear CTA routing.",
    },
    "websitePro": {
        "title": "Website Pro Build",
        "service_slug": "website-pro-build",
        "why": "Improves speed, offer hierarchy, and conversion flow.",
        "action": "Rebuild key templates for faster load and stronger buyer intent.",
    },
    "seoSprint": {
        "title": "SEO Upgrade Pack",
        "service_slug": "seo-upgrade-pack",
        "why": "Targets qualified demand from high-intent search terms.",
        "action": "Refactor metadata, intent pages, and internal links for local rankings.",
    },
    "chatbot": {
        "title": "AI Chatbot Install",
        "service_slug": "ai-chatbot-install",
        "why": "Captures and qualifies leads 24/7 when your team is unavailable.",
        "action": "Install an always-on assistant for first response and qualification.",
    },
    "crm": {
        "title": "CRM Setup",
        "service_slug": "crm-setup",
        "why": "Prevents lead leakage by enforcing pipeline ownership.",
        "action": "Deploy stage tracking so every enquiry has a next action.",
    },
    "followUp": {
        "title": "Follow-up Automation",
        "service_slug": "follow-up-automation",
        "why": "Stops warm leads cooling after first contact.",
        "action": "Automate first touch, reminders, and reactivation sequences.",
    },
    "callRecovery": {
        "title": "Call Tracking + Missed Call Capture",
        "service_slug": "call-tracking-missed-call-capture",
        "why": "Recovers lost inbound demand from unanswered calls.",
        "action": "Route missed calls into instant text-back and callback workflows.",
    },
    "booking": {
        "title": "Booking System Setup",
        "service_slug": "booking-system-setup",
        "why": "Shortens the path from interest to confirmed booking.",
        "action": "Install booking paths with reminders to reduce no-shows.",
    },
    "whatsapp": {
        "title": "WhatsApp Business Setup",
        "service_slug": "whatsapp-business-setup",
        "why": "Opens a fast-response channel for high-intent prospects.",
        "action": "Add WhatsApp contact and response templates across high-intent pages.",
    },
    "ads": {
        "title": "Ads Launch Pack",
        "service_slug": "ads-launch-pack",
        "why": "Adds controlled demand capture once conversion foundations are ready.",
        "action": "Launch focused traffic campaigns tied to conversion-ready pages.",
    },
    "analytics": {
        "title": "Tracking & Analytics Layer",
        "service_slug": None,
        "href": "/services#tracking-analytics",
        "why": "Shows exactly where revenue is leaking by source and stage.",
        "action": "Instrument key events and reporting so optimisation is measurable.",
    },
}


_PADDING = ("websitePro", "seoSprint", "crm", "followUp")


def priority_phase(index: int) -> str:
    if index <= 1:
        return "Day 1-3"
    if index <= 3:
        return "Day 4-7"
    return "Day 8-14"


def map_recommended_modules(
    scores: AuditScores,
    leak_types: list[str],
    industry: str = "",
    goal: str = "",
) -> list[RecommendedModule]:
    industry_lower = (industry or "").lower()
    goal_lower = (goal or "").lower()

    # (module id, priority, why)
    candidates: list[tuple[str, int, Optional[str]]] = []

    def add(key: str, priority: int, why: Optional[str] = None) -> None:
        candidates.append((key, priority, why))

    if scores.speed < 60:
        add("websitePro", 98, "Raises site speed and improves first-page conversion momentum.")
    if scores.seo < 62:
        add("seoSprint", 96, "Targets higher-intent traffic that is more likely to book.")
    if scores.conversion < 60:
        add("websitePro", 95, "Sharpens above-the-fold offer and call-to-action clarity.")
        add("booking", 90, "Cuts friction between enquiry and confirmed booking.")
    if scores.trust < 60:
        add("chatbot", 88, "Maintains instant response coverage and buyer confidence.")

    if _LOCAL_RE.search(industry_lower):
        add("callRecovery", 94, "Recovers missed-call enquiries before competitors respond.")
        add("whatsapp", 86, "Lets urgent prospects contact you in one tap.")

    if _ECOM_RE.search(industry_lower):
        add("ads", 90, "Scales demand after conversion and checkout improvements are in place.")
        add("followUp", 86, "Recovers drop-offs with lifecycle and cart follow-up.")

    if _LEADS_GOAL_RE.search(goal_lower):
        add("crm", 92, "Ensures every lead is assigned, tracked, and followed up.")
        add("followUp", 89, "Protects warm leads with consistent response automation.")

    if _SALES_GOAL_RE.search(goal_lower):
        add("booking", 91, "Turns interest into booked buying conversations faster.")
        add("websitePro", 88, "Improves offer and pricing communication to lift close rate.")

    for needle, key, priority in (
        ("seo", "seoSprint", 84),
        ("conversion", "websitePro", 83),
        ("speed", "websitePro", 82),
        ("trust", "chatbot", 81),
    ):
        if any(needle in leak for leak in leak_types):
            add(key, priority)

    add("analytics", 74)
    add("crm", 73)
    add("websiteStarter", 70)

    best: dict[str, tuple[int, Optional[str]]] = {}
    for key, priority, why in candidates:
        if key not in best or best[key][0] < priority:
            best[key] = (priority, why)

    # sorted() is stable, so ties keep first-nominated order
    ordered = sorted(best.items(), key=lambda item: -item[1][0])[:MAX_MODULES]
    for key in _PADDING:
        if len(ordered) >= MIN_MODULES:
            break
        if key not in dict(ordered):
            ordered.append((key, (50, None)))

    modules = []
    for index, (key, (_priority, why)) in enumerate(ordered):
        module = MODULES[key]
        modules.append(RecommendedModule(
            id=key,
            title=module["title"],
            why=why or module["why"],
            action=module["action"],
            href=module.get("href", DEFAULT_HREF),
            service_slug=module["service_slug"],
            phase=priority_phase(index),
            price_label=DEFAULT_PRICE,
        ))
    return modules
