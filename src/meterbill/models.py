"""Data models for meter readings, tenants and analysis items."""

from dataclasses import dataclass, field, replace
from decimal import Decimal


def compute_usage(start_value: float, end_value: float) -> float:
    """Absolute difference between two readings, rounded to 2 decimal places."""
    return round(abs(end_value - start_value), 2)


@dataclass(frozen=True)
class Reading:
    """A single timestamped meter value."""

    date: str  # YYYY-MM-DD HH:MM
    value: float


@dataclass(frozen=True)
class AnalysisResult:
    """Start and end readings for one billing period.

    Usage is derived from the readings on every access, so editing a reading
    always yields a consistent usage figure.
    """

    start_reading: Reading
    end_reading: Reading

    @property
    def usage(self) -> float:
        return compute_usage(self.start_reading.value, self.end_reading.value)

    def with_reading(
        self, which: str, value: float | None = None, date: str | None = None
    ) -> "AnalysisResult":
        """Return a copy with the start or end reading edited."""
        if which not in ("start", "end"):
            raise ValueError(f"Unknown reading {which!r}, expected 'start' or 'end'")
        attr = f"{which}_reading"
        current: Reading = getattr(self, attr)
        edited = Reading(
            date=current.date if date is None else date,
            value=current.value if value is None else float(value),
        )
        return replace(self, **{attr: edited})


@dataclass(frozen=True)
class Tenant:
    """A billable company with its predefined meter names."""

    id: str
    name: str
    meters: tuple[str, ...] = ()


@dataclass(frozen=True)
class MeterAssignment:
    """Which tenant and meter an analyzed photo belongs to."""

    tenant_id: str = ""
    meter_name: str = ""


# Item states. Only Succeeded carries a result and only Failed a message.


@dataclass(frozen=True)
class Idle:
    status = "idle"


@dataclass(frozen=True)
class Analyzing:
    status = "analyzing"


@dataclass(frozen=True)
class Succeeded:
    result: AnalysisResult
    status = "success"


@dataclass(frozen=True)
class Failed:
    message: str
    status = "error"


ItemState = Idle | Analyzing | Succeeded | Failed


@dataclass(frozen=True)
class AnalysisItem:
    """An uploaded meter photo and everything known about it."""

    id: str
    filename: str
    image: bytes
    state: ItemState = field(default_factory=Idle)
    assignment: MeterAssignment = field(default_factory=MeterAssignment)
    thumbnail: str = ""  # base64 JPEG, used in share links and shared views
    is_shared: bool = False

    @property
    def status(self) -> str:
        return self.state.status

    @property
    def result(self) -> AnalysisResult | None:
        return self.state.result if isinstance(self.state, Succeeded) else None

    @property
    def error(self) -> str | None:
        return self.state.message if isinstance(self.state, Failed) else None


@dataclass(frozen=True)
class InvoiceLine:
    """One meter on a tenant's invoice."""

    meter_name: str
    result: AnalysisResult
    cost: int
    image: bytes = b""
    thumbnail: str = ""
    is_shared: bool = False


@dataclass(frozen=True)
class InvoiceData:
    """A tenant's invoice, derived from analysis items and prices."""

    tenant: Tenant
    lines: tuple[InvoiceLine, ...]
    unit_price: float
    vat_rate: Decimal
    total_usage: float
    subtotal: int
    vat: int
    total_due: int
