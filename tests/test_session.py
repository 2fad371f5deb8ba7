import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from helpers import READINGS_JSON, gemini_error, gemini_reply, make_image, scripted
from meterbill.config import Settings
from meterbill.errors import (
    ImageDecodeError,
    InvalidCredential,
    MissingCredential,
    RateLimited,
    ReadOnlySessionError,
    UnknownItemError,
)
from meterbill.invoice.share import share_url
from meterbill.models import AnalysisResult, Reading
from meterbill.session import BillingSession

RESULT = AnalysisResult(Reading("2024-01-01 00:00", 694957.7), Reading("2024-02-01 00:00", 705310.2))


def fake_client(side_effect=None, max_concurrency=4):
    client = MagicMock()
    client.settings = Settings(api_key="k", max_concurrency=max_concurrency)
    client.analyze_image = AsyncMock(side_effect=side_effect, return_value=RESULT)
    return client


def run(coro):
    return asyncio.run(coro)


def test_analyze_item_success():
    session = BillingSession(client=fake_client())
    item = session.add_image("a.jpg", b"img")
    assert item.status == "idle"

    done = run(session.analyze_item(item.id))

    assert done.status == "success"
    assert done.result.usage == 10352.5
    session.client.analyze_image.assert_awaited_once_with(b"img")


def test_analyze_item_failure_keeps_user_message():
    session = BillingSession(client=fake_client(side_effect=RateLimited("HTTP 429 raw provider text")))
    item = session.add_image("a.jpg", b"img")

    failed = run(session.analyze_item(item.id))

    assert failed.status == "error"
    assert "Quota" in failed.error
    assert "raw provider text" not in failed.error
    assert session.credential_error is None


def test_image_decode_error_is_per_item():
    session = BillingSession(client=fake_client(side_effect=ImageDecodeError("bad")))
    item = session.add_image("a.txt", b"nope")
    assert run(session.analyze_item(item.id)).status == "error"


def test_analyze_item_ignores_success_and_in_flight_items():
    session = BillingSession(client=fake_client())
    item = session.add_image("a.jpg", b"img")
    run(session.analyze_item(item.id))
    run(session.analyze_item(item.id))
    assert session.client.analyze_image.await_count == 1


def test_no_second_request_while_analyzing():
    async def scenario():
        gate = asyncio.Event()

        async def slow(image):
            await gate.wait()
            return RESULT

        session = BillingSession(client=fake_client(side_effect=slow))
        item = session.add_image("a.jpg", b"img")
        first = asyncio.create_task(session.analyze_item(item.id))
        await asyncio.sleep(0)
        assert session.get_item(item.id).status == "analyzing"
        second = await session.analyze_item(item.id)
        assert second.status == "analyzing"
        gate.set()
        await first
        return session

    session = run(scenario())
    assert session.client.analyze_image.await_count == 1
    assert session.items[0].status == "success"


def test_error_items_can_be_retried():
    client = fake_client(side_effect=[RateLimited("x"), RESULT])
    session = BillingSession(client=client)
    item = session.add_image("a.jpg", b"img")

    assert run(session.analyze_item(item.id)).status == "error"
    assert run(session.analyze_item(item.id)).status == "success"


def test_removed_item_is_not_resurrected():
    async def scenario():
        gate = asyncio.Event()

        async def slow(image):
            await gate.wait()
            return RESULT

        session = BillingSession(client=fake_client(side_effect=slow))
        keep = session.add_image("keep.jpg", b"1")
        gone = session.add_image("gone.jpg", b"2")
        task = asyncio.create_task(session.analyze_item(gone.id))
        await asyncio.sleep(0)
        session.remove_item(gone.id)
        gate.set()
        outcome = await task
        return session, keep, outcome

    session, keep, outcome = run(scenario())
    assert outcome is None
    assert [i.id for i in session.items] == [keep.id]
    assert session.items[0].status == "idle"


def test_analyze_pending_runs_idle_and_error_items_with_bounded_concurrency():
    async def scenario():
        in_flight = 0
        peak = 0

        async def tracked(image):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return RESULT

        session = BillingSession(client=fake_client(side_effect=tracked, max_concurrency=2))
        for idx in range(5):
            session.add_image(f"{idx}.jpg", b"img")
        results = await session.analyze_pending()
        return session, results, peak

    session, results, peak = run(scenario())
    assert len(results) == 5
    assert all(i.status == "success" for i in session.items)
    assert peak == 2


def test_analyze_pending_checks_credential_once():
    client = fake_client()
    client.settings.api_key = ""
    session = BillingSession(client=client)
    session.add_image("a.jpg", b"img")
    session.add_image("b.jpg", b"img")

    with pytest.raises(MissingCredential):
        run(session.analyze_pending())
    client.analyze_image.assert_not_awaited()
    assert all(i.status == "idle" for i in session.items)


def test_invalid_credential_recorded_globally():
    session = BillingSession(client=fake_client(side_effect=InvalidCredential("API key not valid")))
    session.add_image("a.jpg", b"img")
    session.add_image("b.jpg", b"img")

    run(session.analyze_pending())

    assert "API key" in session.credential_error
    assert all(i.status == "error" for i in session.items)


def test_analyze_pending_end_to_end_with_real_client(make_client):
    handler = scripted([(429, gemini_error(429, "RESOURCE_EXHAUSTED", "quota")), (200, gemini_reply(READINGS_JSON))])
    session = BillingSession(client=make_client(handler))
    item = session.add_image("meter.png", make_image((600, 400)))

    run(session.analyze_pending())

    assert session.get_item(item.id).result.usage == 10352.5
    assert len(handler.calls) == 2


def test_update_reading_recomputes_usage_and_keeps_status():
    session = BillingSession(client=fake_client())
    item = session.add_image("a.jpg", b"img")
    run(session.analyze_item(item.id))

    edited = session.update_reading(item.id, "end", value=695000.0)

    assert edited.status == "success"
    assert edited.result.usage == 42.3
    assert edited.result.end_reading.date == "2024-02-01 00:00"


def test_update_reading_requires_result():
    session = BillingSession()
    item = session.add_image("a.jpg", b"img")
    with pytest.raises(ValueError):
        session.update_reading(item.id, "start", value=1.0)
    with pytest.raises(UnknownItemError):
        session.update_reading("missing", "start", value=1.0)


def test_invoices_follow_assignments_and_price():
    session = BillingSession(client=fake_client())
    item = session.add_image("a.jpg", b"img")
    run(session.analyze_item(item.id))
    assert session.invoices() == []

    session.assign(item.id, "t1", "1F Main")
    [invoice] = session.invoices()
    assert invoice.tenant.name == "A Corp"
    assert invoice.total_due == 1708162

    session.set_unit_price(100)
    assert session.invoices()[0].subtotal == 1035250


def test_tenant_crud():
    session = BillingSession(tenants=[])
    tenant = session.add_tenant()
    assert tenant.name == "New Company"
    assert tenant.id.startswith("t-")

    session.rename_tenant(tenant.id, "D Corp")
    session.add_meter(tenant.id, "  4F Lab ")
    session.add_meter(tenant.id, "4F Lab")
    session.add_meter(tenant.id, "   ")
    session.add_meter(tenant.id, "Roof")
    assert session.get_tenant(tenant.id).name == "D Corp"
    assert session.get_tenant(tenant.id).meters == ("4F Lab", "Roof")

    session.remove_meter(tenant.id, "4F Lab")
    assert session.get_tenant(tenant.id).meters == ("Roof",)

    session.remove_tenant(tenant.id)
    assert session.tenants == []
    with pytest.raises(UnknownItemError):
        session.get_tenant(tenant.id)


def test_default_tenants():
    session = BillingSession()
    assert [t.name for t in session.tenants] == ["A Corp", "B Corp", "C Corp"]


def test_remove_and_clear_items():
    session = BillingSession()
    a = session.add_image("a.jpg", b"1")
    session.add_image("b.jpg", b"2")
    session.remove_item(a.id)
    assert [i.filename for i in session.items] == ["b.jpg"]
    session.clear()
    assert session.items == []


def test_session_from_share_link_is_read_only():
    session = BillingSession(client=fake_client(), unit_price=120)
    item = session.add_image("a.jpg", b"")
    run(session.analyze_item(item.id))
    session.assign(item.id, "t2", "2F Office")
    [invoice] = session.invoices()

    shared = BillingSession.from_share_link(share_url(invoice, "https://bills.example.com"))

    assert shared.read_only
    assert shared.unit_price == 120
    assert [t.name for t in shared.tenants] == ["B Corp"]
    [shared_invoice] = shared.invoices()
    assert shared_invoice.total_due == invoice.total_due
    assert shared.items[0].is_shared

    with pytest.raises(ReadOnlySessionError):
        shared.add_tenant()
    with pytest.raises(ReadOnlySessionError):
        shared.update_reading(shared.items[0].id, "end", value=1.0)
    with pytest.raises(ReadOnlySessionError):
        run(shared.analyze_pending())


def test_non_object_reply_settles_items_as_errors(make_client):
    handler = scripted([(200, [])])
    session = BillingSession(client=make_client(handler))
    session.add_image("a.png", make_image((300, 200)))
    session.add_image("b.png", make_image((300, 200)))

    run(session.analyze_pending())

    assert [i.status for i in session.items] == ["error", "error"]
    assert [i.id for i in session.pending] == [i.id for i in session.items]


def test_unexpected_exception_fails_item_without_stopping_others():
    calls = []

    async def flaky(image):
        calls.append(image)
        if image == b"boom":
            raise RuntimeError("bug in extraction")
        return RESULT

    session = BillingSession(client=fake_client(side_effect=flaky))
    bad = session.add_image("bad.jpg", b"boom")
    good = session.add_image("good.jpg", b"img")

    run(session.analyze_pending())

    assert session.get_item(bad.id).status == "error"
    assert session.get_item(bad.id).error == "Failed to analyze the image."
    assert session.get_item(good.id).status == "success"
    assert session.credential_error is None
