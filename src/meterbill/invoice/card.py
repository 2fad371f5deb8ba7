"""Printable bill notification card, one PNG per tenant."""

import io
from datetime import date
from pathlib import Path

from PIL import Image, ImageDraw, ImageFont

from ..errors import ExportError
from ..models import InvoiceData
from .billing import format_money
from .pdf import file_stem

CARD_SIZE = (720, 400)
ACCENT = (37, 99, 235)
TEXT = (17, 24, 39)
MUTED = (107, 114, 128)


def _font(size: int):
    return ImageFont.load_default(size=size)


def render_summary_card(invoice: InvoiceData, currency: str = "", issued: date | None = None) -> bytes:
    """Draw the amount-due card for one tenant. Returns PNG bytes."""
    issued = issued or date.today()
    width, height = CARD_SIZE

    img = Image.new("RGB", CARD_SIZE, (255, 255, 255))
    draw = ImageDraw.Draw(img)
    draw.rectangle([0, 0, width, 12], fill=ACCENT)

    draw.text((40, 48), "Electricity Bill", font=_font(22), fill=ACCENT)
    draw.text((40, 88), invoice.tenant.name, font=_font(34), fill=TEXT)
    draw.text(
        (40, 140),
        f"Your electricity bill for {issued.isoformat()} is ready.",
        font=_font(18),
        fill=MUTED,
    )

    draw.rounded_rectangle([40, 190, width - 40, 320], radius=16, fill=(243, 244, 246))
    draw.text((64, 206), "Amount due (incl. VAT)", font=_font(16), fill=MUTED)
    draw.text((64, 236), format_money(invoice.total_due, currency), font=_font(44), fill=TEXT)

    meters = ", ".join(line.meter_name for line in invoice.lines if line.meter_name)
    draw.text(
        (40, 344),
        f"{len(invoice.lines)} meter(s): {meters}"[:80],
        font=_font(14),
        fill=MUTED,
    )

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def export_summary_card(
    invoice: InvoiceData, directory: Path, currency: str = "", issued: date | None = None
) -> Path:
    """Write Bill_Card_<tenant>.png into directory. Returns the path."""
    directory = Path(directory)
    path = directory / f"Bill_Card_{file_stem(invoice.tenant.name)}.png"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(render_summary_card(invoice, currency, issued))
    except OSError as e:
        raise ExportError(f"Failed to create card: {e}") from e
    return path
