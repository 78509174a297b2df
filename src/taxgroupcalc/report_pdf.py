import io
from typing import Any, List, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .schemas import dec_to_str, money_to_str
from .tax_engine import TaxCalculationResult


def _make_table(data: List[List[Any]], styles, col_widths: Optional[List[float]] = None) -> Table:
    """
    Grid table with a grey header row (data[0]).
    Cells are wrapped in Paragraphs so long tax names break instead of overflowing.
    Cell text is escaped: Paragraph parses its input as markup.
    """
    wrap_style = ParagraphStyle(
        "WrapSmall",
        parent=styles["Normal"],
        fontSize=9,
        leading=11,
        wordWrap="CJK",
    )
    wrapped = [[Paragraph("" if c is None else escape(str(c)), wrap_style) for c in row] for row in data]

    t = Table(wrapped, hAlign="LEFT", colWidths=col_widths, repeatRows=1)
    t.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.black),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
                ("TOPPADDING", (0, 0), (-1, -1), 3),
            ]
        )
    )
    return t


def build_calculation_pdf(
    result: TaxCalculationResult,
    title: str = "Tax Calculation",
    subtitle: Optional[str] = None,
) -> bytes:
    """
    Render a calculation as a one-page receipt:
      - title (usually the tax group name) + optional subtitle
      - totals table: base, tax, total, effective rate (%)
      - breakdown table in rule order

    Returns raw PDF bytes.
    """
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=0.5 * inch,
        rightMargin=0.5 * inch,
        topMargin=0.5 * inch,
        bottomMargin=0.5 * inch,
    )
    styles = getSampleStyleSheet()
    story = []

    story.append(Paragraph(escape(title), styles["Title"]))
    if subtitle:
        story.append(Paragraph(escape(subtitle), styles["Normal"]))
    story.append(Spacer(1, 12))

    story.append(Paragraph("Totals", styles["Heading2"]))
    totals = [
        ["Field", "Value"],
        ["Base amount", money_to_str(result.base_amount)],
        ["Tax amount", money_to_str(result.tax_amount)],
        ["Total amount", money_to_str(result.total_amount)],
        ["Effective rate", f"{result.effective_rate_display}%"],
    ]
    story.append(_make_table(totals, styles, col_widths=[2.0 * inch, 2.0 * inch]))
    story.append(Spacer(1, 10))

    story.append(Paragraph("Breakdown", styles["Heading2"]))
    if result.tax_breakdown:
        rows = [["#", "Tax", "Type", "Rate", "Amount", "Exempt"]]
        for i, e in enumerate(result.tax_breakdown, start=1):
            rows.append([
                i,
                e.tax_name,
                e.tax_type.value,
                dec_to_str(e.tax_rate),
                money_to_str(e.tax_amount),
                "yes" if e.is_exempt else "",
            ])
        widths = [0.4 * inch, 2.6 * inch, 1.1 * inch, 0.9 * inch, 1.1 * inch, 0.7 * inch]
        story.append(_make_table(rows, styles, col_widths=widths))
    else:
        story.append(Paragraph("No taxes applied.", styles["Normal"]))

    doc.build(story)
    return buffer.getvalue()
