import base64
import io
import json
from decimal import Decimal
from urllib.parse import quote

import pytest
from PIL import Image

from helpers import make_image
from meterbill.errors import ShareLinkParseError
from meterbill.invoice.billing import compose_invoices
from meterbill.invoice.share import (
    SHARED_TENANT_ID,
    build_share_payload,
    parse_share_link,
    share_message,
    share_url,
)
from meterbill.models import AnalysisItem, AnalysisResult, MeterAssignment, Reading, Succeeded, Tenant

TENANT = Tenant(id="t1", name="A Corp & Sons", meters=("1F Main", "1F AC"))


def make_invoice(image=b"", thumbnail=""):
    items = [
        AnalysisItem(
            id="a",
            filename="a.jpg",
            image=image,
            thumbnail=thumbnail,
            state=Succeeded(AnalysisResult(
                Reading("2024-01-01 00:00", 694957.7), Reading("2024-02-01 00:00", 705310.2)
            )),
            assignment=MeterAssignment("t1", "1F Main"),
        ),
        AnalysisItem(
            id="b",
            filename="b.jpg",
            image=b"",
            state=Succeeded(AnalysisResult(
                Reading("2024-01-01 00:00", 12.3), Reading("2024-02-01 00:00", 45.67)
            )),
            assignment=MeterAssignment("t1", "1F AC"),
        ),
    ]
    [invoice] = compose_invoices(items, [TENANT], 150, Decimal("0.1"))
    return invoice


def test_payload_uses_compact_keys():
    payload = build_share_payload(make_invoice())
    assert payload["t"] == "A Corp & Sons"
    assert payload["p"] == 150
    assert payload["i"][0] == {
        "n": "1F Main",
        "s": 694957.7,
        "sd": "2024-01-01 00:00",
        "e": 705310.2,
        "ed": "2024-02-01 00:00",
        "u": 10352.5,
    }


def test_round_trip_rebuilds_shared_tenant_and_items():
    invoice = make_invoice()
    url = share_url(invoice, "https://bills.example.com/")
    assert url.startswith("https://bills.example.com/?share=")

    shared = parse_share_link(url)

    assert shared.tenant.id == SHARED_TENANT_ID
    assert shared.tenant.name == "A Corp & Sons"
    assert shared.tenant.meters == ("1F Main", "1F AC")
    assert shared.unit_price == 150
    for original, rebuilt in zip(invoice.lines, shared.items):
        assert rebuilt.status == "success"
        assert rebuilt.is_shared
        assert rebuilt.image == b""
        assert rebuilt.assignment.meter_name == original.meter_name
        assert rebuilt.assignment.tenant_id == SHARED_TENANT_ID
        assert rebuilt.result.start_reading == original.result.start_reading
        assert rebuilt.result.end_reading == original.result.end_reading
        assert rebuilt.result.usage == pytest.approx(original.result.usage)


def test_thumbnail_generated_from_image_and_carried_over():
    invoice = make_invoice(image=make_image((800, 600)))
    payload = build_share_payload(invoice)
    assert "img" in payload["i"][0]
    assert "img" not in payload["i"][1]  # no image to preview
    assert base64.b64decode(payload["i"][0]["img"])[:2] == b"\xff\xd8"

    shared = parse_share_link(share_url(invoice, "http://localhost:3000"))
    assert shared.items[0].thumbnail == payload["i"][0]["img"]
    assert shared.items[1].thumbnail == ""


def test_existing_thumbnail_preferred_and_can_be_left_out():
    invoice = make_invoice(image=make_image(), thumbnail="dGh1bWI=")
    assert build_share_payload(invoice)["i"][0]["img"] == "dGh1bWI="
    assert "img" not in build_share_payload(invoice, include_thumbnails=False)["i"][0]


def test_parse_accepts_bare_parameter_value():
    param = quote(json.dumps({"t": "B Corp", "p": 120, "i": []}))
    shared = parse_share_link(param)
    assert shared.tenant.name == "B Corp"
    assert shared.items == []
    assert shared.unit_price == 120


def test_parse_defaults_tenant_name_and_price():
    shared = parse_share_link("?share=" + quote(json.dumps({"i": [{"n": "M", "s": 1, "e": 3}]})))
    assert shared.tenant.name == "Shared Invoice"
    assert shared.unit_price is None
    assert shared.items[0].result.usage == 2.0
    assert shared.items[0].result.start_reading.date == ""


@pytest.mark.parametrize(
    "link",
    [
        "https://bills.example.com/?share=%7Bnot-json",
        "https://bills.example.com/?other=1",
        "https://bills.example.com/?share=",
        "?share=" + quote(json.dumps({"t": "x"})),
        "?share=" + quote(json.dumps({"t": "x", "i": [{"n": "M", "s": "abc", "e": 1}]})),
        "?share=" + quote(json.dumps({"t": "x", "i": ["nope"]})),
        "?share=" + quote(json.dumps({"p": "cheap", "i": []})),
    ],
)
def test_parse_rejects_bad_links(link):
    with pytest.raises(ShareLinkParseError):
        parse_share_link(link)


def test_share_message():
    invoice = make_invoice()
    msg = share_message(invoice, "https://x/?share=abc", "KRW")
    assert msg.startswith("[Electricity Bill]\nTo: A Corp & Sons\n")
    assert f"Amount: KRW {invoice.total_due:,}" in msg
    assert msg.endswith("Link:\nhttps://x/?share=abc")


def test_configured_thumbnail_side_bounds_share_thumbnail():
    invoice = make_invoice(image=make_image((1600, 900)))

    url = share_url(invoice, "https://bills.example.com", thumbnail_side=40, thumbnail_quality=10)

    shared = parse_share_link(url)
    thumb = Image.open(io.BytesIO(base64.b64decode(shared.items[0].thumbnail)))
    assert max(thumb.size) == 40
