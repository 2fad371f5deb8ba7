"""Group analyzed readings by tenant and work out what each tenant owes.

All money amounts are whole currency units, floored at each step:

    line cost = floor(usage * unit_price)
    subtotal  = sum(line costs)
    vat       = floor(subtotal * vat_rate)
    total due = floor(subtotal * (1 + vat_rate))

Total due is computed from the subtotal, not as subtotal + vat, so the two
can differ by one unit when the VAT has a fractional part.
"""

from decimal import ROUND_FLOOR, Decimal
from typing import Iterable

from ..models import AnalysisItem, InvoiceData, InvoiceLine, Tenant


def _dec(value: float | int | Decimal) -> Decimal:
    # str() keeps the shortest decimal form of a float, e.g. 10352.5 not 10352.499999...
    return value if isinstance(value, Decimal) else Decimal(str(value))


def floor_money(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def line_cost(usage: float, unit_price: float) -> int:
    return floor_money(_dec(usage) * _dec(unit_price))


def vat_amount(subtotal: int, vat_rate: Decimal) -> int:
    return floor_money(_dec(subtotal) * _dec(vat_rate))


def total_due(subtotal: int, vat_rate: Decimal) -> int:
    return floor_money(_dec(subtotal) * (1 + _dec(vat_rate)))


def build_invoice(
    tenant: Tenant,
    items: Iterable[AnalysisItem],
    unit_price: float,
    vat_rate: Decimal,
) -> InvoiceData | None:
    """Build one tenant's invoice from its successful items, or None if it has none."""
    lines = tuple(
        InvoiceLine(
            meter_name=item.assignment.meter_name,
            result=item.result,
            cost=line_cost(item.result.usage, unit_price),
            image=item.image,
            thumbnail=item.thumbnail,
            is_shared=item.is_shared,
        )
        for item in items
        if item.result is not None and item.assignment.tenant_id == tenant.id
    )
    if not lines:
        return None

    subtotal = sum(line.cost for line in lines)
    total_usage = float(sum((_dec(line.result.usage) for line in lines), Decimal(0)))
    return InvoiceData(
        tenant=tenant,
        lines=lines,
        unit_price=unit_price,
        vat_rate=_dec(vat_rate),
        total_usage=round(total_usage, 2),
        subtotal=subtotal,
        vat=vat_amount(subtotal, vat_rate),
        total_due=total_due(subtotal, vat_rate),
    )


def compose_invoices(
    items: Iterable[AnalysisItem],
    tenants: Iterable[Tenant],
    unit_price: float,
    vat_rate: Decimal,
) -> list[InvoiceData]:
    """Invoices for every tenant with at least one assigned, successful reading.

    Follows tenant order; items assigned to unknown tenants are ignored.
    """
    items = list(items)
    invoices = []
    for tenant in tenants:
        invoice = build_invoice(tenant, items, unit_price, vat_rate)
        if invoice is not None:
            invoices.append(invoice)
    return invoices


def format_money(amount: int | float, currency: str = "") -> str:
    text = f"{amount:,.0f}" if float(amount).is_integer() else f"{amount:,.2f}"
    return f"{currency} {text}".strip()
