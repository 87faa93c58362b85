"""PDF rendering of report sections with reportlab."""

from __future__ import annotations

import io
from typing import Any
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

REPORT_TITLE = "Assessment Report"


def render_report_pdf(
    *,
    sections: list[dict[str, Any]],
    template_version: str,
    sections_version: str,
) -> bytes:
    """Render sections into PDF bytes.

    Output is built with ``invariant=True`` so equal inputs give equal bytes.
    """
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=50,
        leftMargin=50,
        topMargin=50,
        bottomMargin=50,
        title=REPORT_TITLE,
        invariant=True,
    )
    styles = getSampleStyleSheet()
    heading_style = ParagraphStyle(
        "SectionHeading",
        parent=styles["Heading2"],
        fontSize=14,
        spaceBefore=12,
        spaceAfter=6,
        textColor=colors.HexColor("#334155"),
    )
    normal_style = styles["Normal"]

    elements: list[Any] = [Paragraph(REPORT_TITLE, styles["Title"])]
    meta_table = Table(
        [["Template", template_version], ["Sections", sections_version]],
        colWidths=[1.4 * inch, 3.0 * inch],
    )
    meta_table.setStyle(
        TableStyle(
            [
                ("FONTSIZE", (0, 0), (-1, -1), 9),
                ("TEXTCOLOR", (0, 0), (-1, -1), colors.HexColor("#64748b")),
                ("BOX", (0, 0), (-1, -1), 0.5, colors.HexColor("#e2e8f0")),
            ]
        )
    )
    elements.append(meta_table)
    elements.append(Spacer(1, 12))

    for section in sections:
        elements.append(Paragraph(escape(str(section.get("title") or section.get("section_key") or "")), heading_style))
        elements.append(Paragraph(escape(str(section.get("draft") or "")), normal_style))

    doc.build(elements)
    return buffer.getvalue()
