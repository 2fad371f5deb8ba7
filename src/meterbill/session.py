"""In-memory billing session: photos, their analysis state, tenants and prices.

Every change to an item goes through ``_update``, which rebuilds the item
list with just that item replaced. Results that arrive for an item that has
since been removed are dropped.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable

from .config import DEFAULT_TENANTS, DEFAULT_UNIT_PRICE, DEFAULT_VAT_RATE
from .errors import (
    USER_MESSAGES,
    ErrorKind,
    ExtractionError,
    ImageDecodeError,
    ReadOnlySessionError,
    UnknownItemError,
)
from .extraction.client import GeminiClient
from .extraction.normalizer import describe_error
from .invoice.billing import compose_invoices
from .invoice.share import parse_share_link
from .models import (
    AnalysisItem,
    Analyzing,
    Failed,
    InvoiceData,
    MeterAssignment,
    Succeeded,
    Tenant,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex[:9]


class BillingSession:
    """Everything a landlord works with during one billing run."""

    def __init__(
        self,
        client: GeminiClient | None = None,
        tenants: Iterable[Tenant] | None = None,
        unit_price: float = DEFAULT_UNIT_PRICE,
        vat_rate: Decimal = DEFAULT_VAT_RATE,
        read_only: bool = False,
    ):
        self.client = client
        self.tenants: list[Tenant] = list(DEFAULT_TENANTS if tenants is None else tenants)
        self.items: list[AnalysisItem] = []
        self.unit_price = unit_price
        self.vat_rate = vat_rate
        self.read_only = read_only
        self.credential_error: str | None = None

    @classmethod
    def from_share_link(cls, link: str, vat_rate: Decimal = DEFAULT_VAT_RATE) -> "BillingSession":
        """Bootstrap a read-only session from a share link.

        Raises ShareLinkParseError if the link can't be decoded.
        """
        shared = parse_share_link(link)
        session = cls(
            tenants=[shared.tenant],
            unit_price=DEFAULT_UNIT_PRICE if shared.unit_price is None else shared.unit_price,
            vat_rate=vat_rate,
            read_only=True,
        )
        session.items = list(shared.items)
        return session

    def _check_writable(self) -> None:
        if self.read_only:
            raise ReadOnlySessionError("Shared invoices are read-only")

    # Items

    def get_item(self, item_id: str) -> AnalysisItem | None:
        return next((i for i in self.items if i.id == item_id), None)

    def _require_item(self, item_id: str) -> AnalysisItem:
        item = self.get_item(item_id)
        if item is None:
            raise UnknownItemError(f"No item with id {item_id!r}")
        return item

    def _update(self, item_id: str, change: Callable[[AnalysisItem], AnalysisItem]) -> bool:
        """Replace one item by id. Returns False if the item no longer exists."""
        found = False
        updated = []
        for item in self.items:
            if item.id == item_id:
                item = change(item)
                found = True
            updated.append(item)
        self.items = updated
        return found

    def add_image(self, filename: str, image: bytes) -> AnalysisItem:
        self._check_writable()
        item = AnalysisItem(id=_new_id(), filename=filename, image=image)
        self.items = [*self.items, item]
        return item

    def add_images(self, paths: Iterable[Path | str]) -> list[AnalysisItem]:
        """Add photos from disk as idle items."""
        return [self.add_image(Path(p).name, Path(p).read_bytes()) for p in paths]

    def remove_item(self, item_id: str) -> None:
        self._check_writable()
        self.items = [i for i in self.items if i.id != item_id]

    def clear(self) -> None:
        self._check_writable()
        self.items = []

    @property
    def pending(self) -> list[AnalysisItem]:
        return [i for i in self.items if i.status in ("idle", "error")]

    async def analyze_item(self, item_id: str) -> AnalysisItem | None:
        """Analyze one item.

        Items that already succeeded or are in flight are left alone. Returns
        the item as it stands afterwards, or None if it was removed meanwhile.
        """
        self._check_writable()
        item = self._require_item(item_id)
        if item.status in ("success", "analyzing"):
            return item
        if self.client is None:
            raise RuntimeError("Session has no extraction client")

        self._update(item_id, lambda i: replace(i, state=Analyzing()))
        try:
            result = await self.client.analyze_image(item.image)
        except (ExtractionError, ImageDecodeError) as e:
            message = describe_error(e)
            logger.warning("Analysis of %s failed: %s", item.filename, getattr(e, "detail", e))
            if isinstance(e, ExtractionError) and e.is_credential_error and not self.credential_error:
                self.credential_error = message
            state = Failed(message)
        except Exception:
            logger.exception("Unexpected error analyzing %s", item.filename)
            state = Failed(USER_MESSAGES[ErrorKind.UNKNOWN])
        else:
            state = Succeeded(result)

        if not self._update(item_id, lambda i: replace(i, state=state)):
            logger.debug("Dropping result for removed item %s", item_id)
        return self.get_item(item_id)

    async def analyze_pending(self) -> list[AnalysisItem]:
        """Analyze every idle or failed item, at most max_concurrency at once.

        The credential is checked once up front, so a missing key raises
        MissingCredential instead of failing each item.
        """
        self._check_writable()
        if self.client is None:
            raise RuntimeError("Session has no extraction client")
        self.client.settings.require_api_key()

        pending = self.pending
        if not pending:
            return []

        logger.info("Analyzing %d image(s)", len(pending))
        semaphore = asyncio.Semaphore(max(1, self.client.settings.max_concurrency))

        async def run(item: AnalysisItem) -> AnalysisItem | None:
            async with semaphore:
                return await self.analyze_item(item.id)

        results = await asyncio.gather(*(run(i) for i in pending))
        return [r for r in results if r is not None]

    def update_reading(
        self, item_id: str, which: str, value: float | None = None, date: str | None = None
    ) -> AnalysisItem:
        """Edit the start or end reading of a successful item; usage follows."""
        self._check_writable()
        item = self._require_item(item_id)
        if item.result is None:
            raise ValueError(f"Item {item_id!r} has no result to edit")
        edited = item.result.with_reading(which, value=value, date=date)
        self._update(item_id, lambda i: replace(i, state=Succeeded(edited)))
        return self.get_item(item_id)

    def assign(self, item_id: str, tenant_id: str, meter_name: str) -> AnalysisItem:
        self._check_writable()
        self._require_item(item_id)
        assignment = MeterAssignment(tenant_id=tenant_id, meter_name=meter_name)
        self._update(item_id, lambda i: replace(i, assignment=assignment))
        return self.get_item(item_id)

    # Tenants

    def get_tenant(self, tenant_id: str) -> Tenant:
        for tenant in self.tenants:
            if tenant.id == tenant_id:
                return tenant
        raise UnknownItemError(f"No tenant with id {tenant_id!r}")

    def _replace_tenant(self, tenant: Tenant) -> Tenant:
        self.tenants = [tenant if t.id == tenant.id else t for t in self.tenants]
        return tenant

    def add_tenant(self, name: str = "New Company") -> Tenant:
        self._check_writable()
        tenant = Tenant(id=f"t-{_new_id()}", name=name)
        self.tenants = [*self.tenants, tenant]
        return tenant

    def rename_tenant(self, tenant_id: str, name: str) -> Tenant:
        self._check_writable()
        return self._replace_tenant(replace(self.get_tenant(tenant_id), name=name))

    def remove_tenant(self, tenant_id: str) -> None:
        self._check_writable()
        self.tenants = [t for t in self.tenants if t.id != tenant_id]

    def add_meter(self, tenant_id: str, meter_name: str) -> Tenant:
        """Add a meter name to a tenant. Blank and duplicate names are ignored."""
        self._check_writable()
        tenant = self.get_tenant(tenant_id)
        name = meter_name.strip()
        if not name or name in tenant.meters:
            return tenant
        return self._replace_tenant(replace(tenant, meters=(*tenant.meters, name)))

    def remove_meter(self, tenant_id: str, meter_name: str) -> Tenant:
        self._check_writable()
        tenant = self.get_tenant(tenant_id)
        meters = tuple(m for m in tenant.meters if m != meter_name)
        return self._replace_tenant(replace(tenant, meters=meters))

    def set_unit_price(self, unit_price: float) -> None:
        self._check_writable()
        if unit_price < 0:
            raise ValueError("Unit price cannot be negative")
        self.unit_price = float(unit_price)

    # Invoices

    def invoices(self) -> list[InvoiceData]:
        """Current invoices, recomputed from items, tenants and prices."""
        return compose_invoices(self.items, self.tenants, self.unit_price, self.vat_rate)
