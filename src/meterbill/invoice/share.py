"""Share links: a tenant's invoice packed into a URL query parameter.

Payload format (compact keys keep links short)::

    {"t": tenant name, "p": unit price,
     "i": [{"n": meter, "s": start value, "sd": start date,
            "e": end value, "ed": end date, "u": usage, "img": thumbnail?}]}
"""

import json
import logging
from dataclasses import dataclass
from urllib.parse import parse_qs, quote, unquote, urlsplit

from ..errors import ShareLinkParseError
from ..imaging import THUMBNAIL_MAX_SIDE, THUMBNAIL_QUALITY, create_thumbnail
from ..models import (
    AnalysisItem,
    AnalysisResult,
    InvoiceData,
    MeterAssignment,
    Reading,
    Succeeded,
    Tenant,
)
from .billing import format_money

logger = logging.getLogger(__name__)

SHARE_PARAM = "share"
SHARED_TENANT_ID = "shared-tenant"
SHARED_TENANT_NAME = "Shared Invoice"
SHARED_PLACEHOLDER_NAME = "Image_Not_Available_In_Share_Mode"


@dataclass
class SharedInvoice:
    """Everything needed to bootstrap a read-only shared view."""

    tenant: Tenant
    items: list[AnalysisItem]
    unit_price: float | None


def build_share_payload(
    invoice: InvoiceData,
    include_thumbnails: bool = True,
    thumbnail_side: int = THUMBNAIL_MAX_SIDE,
    thumbnail_quality: int = THUMBNAIL_QUALITY,
) -> dict:
    items = []
    for line in invoice.lines:
        entry = {
            "n": line.meter_name,
            "s": line.result.start_reading.value,
            "sd": line.result.start_reading.date,
            "e": line.result.end_reading.value,
            "ed": line.result.end_reading.date,
            "u": line.result.usage,
        }
        if include_thumbnails:
            thumb = line.thumbnail or (
                create_thumbnail(line.image, thumbnail_side, thumbnail_quality) if line.image else ""
            )
            if thumb:
                entry["img"] = thumb
        items.append(entry)
    return {"t": invoice.tenant.name, "p": invoice.unit_price, "i": items}


def encode_share_param(payload: dict) -> str:
    return quote(json.dumps(payload, separators=(",", ":"), ensure_ascii=False), safe="")


def share_url(
    invoice: InvoiceData,
    base_url: str,
    include_thumbnails: bool = True,
    thumbnail_side: int = THUMBNAIL_MAX_SIDE,
    thumbnail_quality: int = THUMBNAIL_QUALITY,
) -> str:
    """Build the shareable link for one tenant's invoice."""
    payload = build_share_payload(invoice, include_thumbnails, thumbnail_side, thumbnail_quality)
    param = encode_share_param(payload)
    url = f"{base_url.rstrip('/')}/?{SHARE_PARAM}={param}"
    logger.debug("Share link for %s is %d characters", invoice.tenant.name, len(url))
    return url


def share_message(invoice: InvoiceData, url: str, currency: str = "") -> str:
    """Text to paste into a chat message alongside the link."""
    return (
        f"[Electricity Bill]\n"
        f"To: {invoice.tenant.name}\n"
        f"Amount: {format_money(invoice.total_due, currency)}\n\n"
        f"Link:\n{url}"
    )


def _extract_param(link: str) -> str:
    """Accept a full URL, a query string, or the bare parameter value."""
    link = link.strip()
    query = urlsplit(link).query if "://" in link or link.startswith("/") else link.lstrip("?")
    if f"{SHARE_PARAM}=" in query:
        values = parse_qs(query, keep_blank_values=True).get(SHARE_PARAM)
        if not values or not values[0]:
            raise ShareLinkParseError("Share link has an empty share parameter")
        # parse_qs already percent-decoded the value
        return values[0]
    if "://" in link:
        raise ShareLinkParseError("Link has no share parameter")
    return unquote(link)


def _number(entry: dict, key: str, idx: int) -> float:
    try:
        return float(entry[key])
    except (KeyError, TypeError, ValueError):
        raise ShareLinkParseError(f"Item {idx} has no numeric {key!r}")


def parse_share_link(link: str) -> SharedInvoice:
    """Rebuild a synthetic tenant and its successful items from a share link."""
    raw = _extract_param(link)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ShareLinkParseError(f"Share payload is not valid JSON: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("i"), list):
        raise ShareLinkParseError("Share payload has no item list")

    unit_price = None
    if data.get("p") is not None:
        try:
            unit_price = float(data["p"])
        except (TypeError, ValueError):
            raise ShareLinkParseError(f"Invalid unit price {data['p']!r}")

    items = []
    meters = []
    for idx, entry in enumerate(data["i"]):
        if not isinstance(entry, dict):
            raise ShareLinkParseError(f"Item {idx} is not an object")
        name = str(entry.get("n", ""))
        result = AnalysisResult(
            start_reading=Reading(date=str(entry.get("sd", "")), value=_number(entry, "s", idx)),
            end_reading=Reading(date=str(entry.get("ed", "")), value=_number(entry, "e", idx)),
        )
        meters.append(name)
        items.append(
            AnalysisItem(
                id=f"shared-{idx}",
                filename=SHARED_PLACEHOLDER_NAME,
                image=b"",
                state=Succeeded(result),
                assignment=MeterAssignment(tenant_id=SHARED_TENANT_ID, meter_name=name),
                thumbnail=str(entry.get("img") or ""),
                is_shared=True,
            )
        )

    tenant = Tenant(
        id=SHARED_TENANT_ID,
        name=str(data.get("t") or SHARED_TENANT_NAME),
        meters=tuple(meters),
    )
    return SharedInvoice(tenant=tenant, items=items, unit_price=unit_price)
