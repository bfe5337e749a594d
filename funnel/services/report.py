"""
Report rendering: printable HTML (Jinja2) and downloadable PDF (ReportLab).

Both renderers take the stored scan row, so a report can be rebuilt at any
time from what is in the database.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from xml.sax.saxutils import escape

from jinja2 import Environment, FileSystemLoader, select_autoescape
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import (
    HRFlowable,
    ListFlowable,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from funnel.config import settings
from funnel.models.lead import Lead
from funnel.models.scan import Scan
from funnel.services.audit_engine import rag_from_score

logger = logging.getLogger("funnel.report")

# ─── Template directory ────────────────────────────────────────────────
TEMPLATE_DIR = Path(__file__).parent.parent / "templates"

AGENCY_NAME = "Digital Business Assets"
RAG_COLOURS = {
    "green": colors.HexColor("#16a34a"),
    "amber": colors.HexColor("#d97706"),
    "red": colors.HexColor("#dc2626"),
}
GRID = colors.HexColor("#e5e7eb")
HEADER_BG = colors.HexColor("#111827")

_SCORE_ROWS = (
    ("Overall", "overall"),
    ("Speed", "speed"),
    ("SEO", "seo"),
    ("Conversion", "conversion"),
    ("Trust", "trust"),
    ("Visibility", "visibility"),
)


def _get_jinja_env() -> Environment:
    """Create a Jinja2 environment with the report templates directory."""
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def report_path_for(scan_id: str) -> Path:
    return Path(settings.reports_dir) / scan_id / "report.pdf"


def build_report_context(scan: Scan, lead: Optional[Lead]) -> dict:
    """Everything both renderers need, as plain data."""
    scores = scan.scores or {}
    checks = scan.checks or []
    findings = [c for c in checks if c.get("status") != "green"]
    status_order = {"red": 0, "amber": 1, "green": 2}
    findings.sort(key=lambda c: (status_order.get(c.get("status"), 3), -(c.get("score_delta") or 0)))

    return {
        "agency_name": AGENCY_NAME,
        "scan_id": scan.id,
        "website_url": scan.website_url,
        "business_name": lead.business_name if lead else "",
        "contact_name": lead.full_name if lead else "",
        "concern": scan.concern,
        "industry": scan.industry,
        "generated_at": (scan.completed_at or datetime.now(timezone.utc)).strftime("%d %b %Y"),
        "scores": [
            {"label": label, "score": scores.get(key), "rag": rag_from_score(scores.get(key) or 0)}
            for label, key in _SCORE_ROWS
            if scores.get(key) is not None
        ],
        "overall": scores.get("overall"),
        "narrative": scan.narrative or {},
        "findings": findings[:10],
        "passed": [c for c in checks if c.get("status") == "green"],
        "upgrade_cards": scan.upgrade_cards or [],
        "site_url": settings.site_url,
    }


# ─── HTML ──────────────────────────────────────────────────────────────

def render_report_html(scan: Scan, lead: Optional[Lead] = None) -> str:
    env = _get_jinja_env()
    template = env.get_template("report.html")
    return template.render(**build_report_context(scan, lead))


# ─── PDF ───────────────────────────────────────────────────────────────

def _styles() -> dict:
    base = getSampleStyleSheet()
    return {
        "Title": ParagraphStyle("Title", parent=base["Title"], fontSize=20, spaceAfter=6),
        "H2": ParagraphStyle("H2", parent=base["Heading2"], fontSize=13, spaceBefore=10, spaceAfter=4),
        "Body": ParagraphStyle("Body", parent=base["BodyText"], fontSize=9.5, leading=13),
        "Small": ParagraphStyle("Small", parent=base["BodyText"], fontSize=8, leading=10,
                                textColor=colors.HexColor("#6b7280")),
        "Cell": ParagraphStyle("Cell", parent=base["BodyText"], fontSize=8.5, leading=11),
    }


def _p(text, style) -> Paragraph:
    return Paragraph(escape(str(text or "")), style)


def _section(title: str, styles: dict) -> list:
    return [
        Paragraph(escape(title), styles["H2"]),
        HRFlowable(color=GRID, thickness=0.6, width="100%"),
        Spacer(1, 4),
    ]


def _header_table_style(extra: list | None = None) -> TableStyle:
    return TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), HEADER_BG),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 8.5),
        ("GRID", (0, 0), (-1, -1), 0.5, GRID),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("LEFTPADDING", (0, 0), (-1, -1), 5),
        ("RIGHTPADDING", (0, 0), (-1, -1), 5),
    ] + (extra or []))


def build_pdf_story(context: dict) -> list:
    styles = _styles()
    story: list = [
        Paragraph(escape(f"{context['agency_name']} Website Audit"), styles["Title"]),
        _p(context["website_url"], styles["Body"]),
    ]
    if context["business_name"]:
        story.append(_p(f"Prepared for {context['business_name']}", styles["Body"]))
    story.append(_p(f"Generated {context['generated_at']}  |  Focus: {context['concern']}", styles["Small"]))
    story.append(Spacer(1, 8))

    # Scores
    story += _section("Scores", styles)
    rows = [["Category", "Score", "Rating"]]
    row_styles = []
    for i, row in enumerate(context["scores"], start=1):
        rows.append([row["label"], f"{row['score']}/100", row["rag"].upper()])
        row_styles.append(("TEXTCOLOR", (2, i), (2, i), RAG_COLOURS[row["rag"]]))
    table = Table(rows, colWidths=[70 * mm, 40 * mm, 40 * mm])
    table.setStyle(_header_table_style(row_styles))
    story.append(table)

    # Narrative
    narrative = context["narrative"]
    if narrative:
        story += _section("Summary", styles)
        story.append(_p(narrative.get("executive_summary"), styles["Body"]))
        story.append(Spacer(1, 4))
        story.append(_p(narrative.get("why_it_matters"), styles["Body"]))

    # Findings
    if context["findings"]:
        story += _section("Top findings", styles)
        rows = [["Status", "Area", "Finding", "Fix"]]
        row_styles = []
        for i, check in enumerate(context["findings"], start=1):
            rows.append([
                check.get("status", "").upper(),
                check.get("category", ""),
                Paragraph(escape(f"{check.get('label', '')}: {check.get('evidence', '')}"), styles["Cell"]),
                Paragraph(escape(check.get("fix", "")), styles["Cell"]),
            ])
            row_styles.append(("TEXTCOLOR", (0, i), (0, i), RAG_COLOURS.get(check.get("status"), colors.black)))
        table = Table(rows, colWidths=[18 * mm, 24 * mm, 64 * mm, 64 * mm], repeatRows=1)
        table.setStyle(_header_table_style(row_styles))
        story.append(table)

    # Next steps
    steps = narrative.get("next_steps") if narrative else None
    if steps:
        story += _section("Next steps", styles)
        story.append(ListFlowable(
            [_p(step, styles["Body"]) for step in steps],
            bulletType="1",
        ))

    # Upgrade cards
    if context["upgrade_cards"]:
        story += _section("Recommended upgrades", styles)
        rows = [["Service", "Why", "Price"]]
        for card in context["upgrade_cards"]:
            rows.append([
                Paragraph(escape(card.get("title", "")), styles["Cell"]),
                Paragraph(escape(card.get("reason", "")), styles["Cell"]),
                card.get("from_price", ""),
            ])
        table = Table(rows, colWidths=[50 * mm, 90 * mm, 30 * mm])
        table.setStyle(_header_table_style())
        story.append(table)

    story.append(Spacer(1, 10))
    story.append(_p(
        f"Heuristic review of publicly served HTML. Book a walkthrough at {context['site_url']}/book",
        styles["Small"],
    ))
    return story


def render_report_pdf(scan: Scan, lead: Optional[Lead] = None, output_path: Optional[Path] = None) -> Path:
    """Write the PDF to ``output_path`` (default reports_dir/{id}/report.pdf) and return the path."""
    path = Path(output_path) if output_path else report_path_for(scan.id)
    path.parent.mkdir(parents=True, exist_ok=True)

    doc = SimpleDocTemplate(
        str(path),
        pagesize=A4,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=16 * mm,
        bottomMargin=16 * mm,
        title=f"Website audit {scan.website_url}",
        author=AGENCY_NAME,
    )
    doc.build(build_pdf_story(build_report_context(scan, lead)))
    logger.info("📄 Report written for scan %s → %s", scan.id, path)
    return path


def read_report_pdf(scan: Scan) -> Optional[bytes]:
    if not scan.report_path:
        return None
    path = Path(scan.report_path)
    if not path.is_file():
        return None
    return path.read_bytes()
