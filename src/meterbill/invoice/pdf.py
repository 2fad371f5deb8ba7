"""A4 PDF export of tenant invoices with photo evidence."""

import base64
import binascii
import io
import logging
import re
from datetime import date
from pathlib import Path
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.platypus import (
    Image,
    KeepTogether,
    PageBreak,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from ..errors import ExportError
from ..models import InvoiceData, InvoiceLine
from .billing import format_money

logger = logging.getLogger(__name__)

MARGIN = 15 * mm
CONTENT_WIDTH = A4[0] - 2 * MARGIN
EVIDENCE_MAX_HEIGHT = 110 * mm


def file_stem(name: str) -> str:
    """Tenant name as a single path component: separators and spaces become _."""
    return re.sub(r'[\\/:*?"<>|\s]+', "_", name).strip("._") or "Tenant"


def default_filename(invoices: list[InvoiceData]) -> str:
    name = invoices[0].tenant.name if invoices else "Electricity"
    return f"Invoice_{file_stem(name)}.pdf"


def _styles():
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name="MBRight", parent=styles["Normal"], alignment=TA_RIGHT))
    styles.add(ParagraphStyle(name="MBCaption", parent=styles["Normal"], fontSize=9,
                              textColor=colors.grey))
    return styles


def _evidence_bytes(line: InvoiceLine) -> bytes:
    if line.image:
        return line.image
    if line.thumbnail:
        try:
            return base64.b64decode(line.thumbnail, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Ignoring invalid thumbnail for %s", line.meter_name)
    return b""


def _evidence_image(data: bytes) -> Image | None:
    """Scale a photo to the content width and evidence height limits."""
    try:
        width, height = ImageReader(io.BytesIO(data)).getSize()
    except Exception as e:
        # ImageReader surfaces decoder failures as assorted exception types
        logger.warning("Skipping unreadable evidence image: %s", e)
        return None
    scale = min(CONTENT_WIDTH / width, EVIDENCE_MAX_HEIGHT / height)
    return Image(io.BytesIO(data), width=width * scale, height=height * scale)


def _invoice_story(invoice: InvoiceData, currency: str, issued: date, styles) -> list:
    story = []

    header = Table(
        [[Paragraph("Electricity Invoice", styles["Title"]),
          Paragraph(f"Date: {issued.isoformat()}", styles["MBRight"])]],
        colWidths=[CONTENT_WIDTH * 0.65, CONTENT_WIDTH * 0.35],
    )
    header.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "MIDDLE")]))
    story.append(header)
    story.append(Spacer(1, 6))

    details = Table(
        [["Billed To:", invoice.tenant.name],
         ["Unit Price:", f"{format_money(invoice.unit_price, currency)} / kWh"]],
        colWidths=[80, CONTENT_WIDTH - 80],
    )
    details.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
        ("LEFTPADDING", (0, 0), (-1, -1), 0),
    ]))
    story.append(details)
    story.append(Spacer(1, 12))

    rows = [["Meter", "Start", "End", "Usage (kWh)", "Cost"]]
    for line in invoice.lines:
        start = line.result.start_reading
        end = line.result.end_reading
        rows.append([
            Paragraph(escape(line.meter_name or "-"), styles["Normal"]),
            f"{start.value:,}\n{start.date}",
            f"{end.value:,}\n{end.date}",
            f"{line.result.usage:,.2f}",
            format_money(line.cost),
        ])
    rows.append(["Total", "", "", f"{invoice.total_usage:,.2f}", format_money(invoice.subtotal)])

    lines_table = Table(rows, colWidths=[CONTENT_WIDTH * w for w in (0.26, 0.2, 0.2, 0.16, 0.18)],
                        repeatRows=1)
    lines_table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
        ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
        ("LINEABOVE", (0, -1), (-1, -1), 1, colors.black),
    ]))
    story.append(lines_table)
    story.append(Spacer(1, 12))

    vat_percent = f"{invoice.vat_rate * 100:.0f}%"
    totals = Table(
        [["Subtotal", format_money(invoice.subtotal, currency)],
         [f"VAT ({vat_percent})", format_money(invoice.vat, currency)],
         ["Total Due", format_money(invoice.total_due, currency)]],
        colWidths=[CONTENT_WIDTH * 0.75, CONTENT_WIDTH * 0.25],
    )
    totals.setStyle(TableStyle([
        ("ALIGN", (0, 0), (-1, -1), "RIGHT"),
        ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
        ("FONTSIZE", (0, -1), (-1, -1), 13),
        ("LINEABOVE", (0, -1), (-1, -1), 1, colors.black),
    ]))
    story.append(totals)

    evidence = [line for line in invoice.lines if _evidence_bytes(line)]
    if evidence:
        story.append(Spacer(1, 18))
        story.append(Paragraph("Evidence", styles["Heading2"]))
    for line in evidence:
        image = _evidence_image(_evidence_bytes(line))
        if image is None:
            continue
        caption = escape(line.meter_name or "Meter")
        if line.is_shared:
            caption += " (preview)"
        # KeepTogether moves caption and photo to a new page when they don't fit
        story.append(KeepTogether([
            Paragraph(caption, styles["Heading4"]),
            image,
            Paragraph(
                f"{escape(line.result.start_reading.date)} to {escape(line.result.end_reading.date)}",
                styles["MBCaption"],
            ),
            Spacer(1, 10),
        ]))
    return story


def render_invoices_pdf(
    invoices: list[InvoiceData], currency: str = "", issued: date | None = None
) -> bytes:
    """Render invoices into one A4 PDF, each tenant starting on a new page."""
    if not invoices:
        raise ExportError("No invoices to export")

    issued = issued or date.today()
    styles = _styles()
    story = []
    for idx, invoice in enumerate(invoices):
        if idx:
            story.append(PageBreak())
        story.extend(_invoice_story(invoice, currency, issued, styles))

    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf, pagesize=A4,
        leftMargin=MARGIN, rightMargin=MARGIN, topMargin=MARGIN, bottomMargin=MARGIN,
        title=f"Invoice {invoices[0].tenant.name}",
    )
    try:
        doc.build(story)
    except Exception as e:
        raise ExportError(f"Failed to generate PDF: {e}") from e
    return buf.getvalue()


def export_invoices_pdf(
    invoices: list[InvoiceData], path: Path | None = None, currency: str = ""
) -> Path:
    """Write the invoices PDF to path (default Invoice_<tenant>.pdf). Returns the path."""
    path = Path(path) if path else Path(default_filename(invoices))
    data = render_invoices_pdf(invoices, currency)
    try:
        path.write_bytes(data)
    except OSError as e:
        raise ExportError(f"Could not write {path}: {e}") from e
    logger.info("Wrote %s (%d bytes)", path, len(data))
    return path
