"""Settings and billing job loading.

Secrets come from the environment (optionally a .env file); everything else
comes from YAML files.
"""

import os
from dataclasses import dataclass, field, fields
from decimal import Decimal
from pathlib import Path

import yaml
from dotenv import load_dotenv

from .errors import MissingCredential
from .models import Tenant

# Checked in order; the first non-empty value wins
API_KEY_VARS = ("GEMINI_API_KEY", "API_KEY", "VITE_API_KEY")

DEFAULT_MODELS = ("gemini-3-flash-preview", "gemini-2.5-flash")
DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

DEFAULT_UNIT_PRICE = 150.0
DEFAULT_VAT_RATE = Decimal("0.1")
DEFAULT_CURRENCY = "KRW"
DEFAULT_BASE_URL = "http://localhost:3000"

DEFAULT_TENANTS = (
    Tenant(id="t1", name="A Corp", meters=("1F Main", "1F Server", "1F AC")),
    Tenant(id="t2", name="B Corp", meters=("2F Office", "2F Kitchen")),
    Tenant(id="t3", name="C Corp", meters=("3F Lab", "3F Warehouse", "Basement")),
)


def get_api_key() -> str:
    """Get the inference API key from the environment, or '' if unset."""
    for var in API_KEY_VARS:
        value = os.environ.get(var, "").strip()
        if value:
            return value
    return ""


@dataclass
class Settings:
    """Tunables for image preprocessing and the extraction client."""

    api_key: str = ""
    models: tuple[str, ...] = DEFAULT_MODELS
    api_base_url: str = DEFAULT_API_BASE
    request_timeout: float = 60.0
    max_attempts: int = 3  # per model
    initial_retry_delay: float = 2.0  # seconds, doubled after each retry
    fallback_delay: float = 1.0  # seconds before switching model
    max_concurrency: int = 4
    max_image_side: int = 1024
    image_quality: int = 70
    thumbnail_side: int = 120
    thumbnail_quality: int = 40

    def require_api_key(self) -> str:
        if not self.api_key or not self.api_key.strip():
            raise MissingCredential("API key is missing")
        return self.api_key.strip()

    def validate(self) -> None:
        """Raise ValueError for settings the extraction client can't run with."""
        if not self.models:
            raise ValueError("At least one model must be configured")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        for name in ("max_image_side", "thumbnail_side"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be a positive number of pixels")
        for name in ("image_quality", "thumbnail_quality"):
            if not 1 <= getattr(self, name) <= 95:
                raise ValueError(f"{name} must be between 1 and 95")


def load_settings(config_path: Path | None = None) -> Settings:
    """Build Settings from the environment plus an optional YAML override file.

    The YAML file may contain an ``extraction:`` mapping whose keys are
    Settings field names.
    """
    load_dotenv()
    settings = Settings(api_key=get_api_key())

    if config_path is None:
        return settings

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    overrides = data.get("extraction", {}) or {}
    known = {f.name for f in fields(Settings)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"Unknown extraction settings: {', '.join(sorted(unknown))}")

    for key, value in overrides.items():
        if key == "models":
            value = (value,) if isinstance(value, str) else tuple(value or ())
        setattr(settings, key, value)

    settings.validate()
    return settings


@dataclass
class PhotoAssignment:
    """A photo listed under a tenant's meter in a billing job."""

    tenant_id: str
    meter_name: str
    photo: Path


@dataclass
class BillingJob:
    """Tenants, prices and photos for one billing run."""

    unit_price: float = DEFAULT_UNIT_PRICE
    vat_rate: Decimal = DEFAULT_VAT_RATE
    currency: str = DEFAULT_CURRENCY
    base_url: str = DEFAULT_BASE_URL
    tenants: list[Tenant] = field(default_factory=lambda: list(DEFAULT_TENANTS))
    photos: list[PhotoAssignment] = field(default_factory=list)


def load_billing_job(config_path: Path) -> BillingJob:
    """Load a billing job from YAML.

    Example::

        unit_price: 150
        vat_rate: 0.1
        tenants:
          - name: A Corp
            meters:
              - name: 1F Main
                photo: photos/1f_main.jpg
              - name: 1F AC

    Photo paths are resolved relative to the YAML file.
    """
    config_path = Path(config_path)
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    job = BillingJob(
        unit_price=float(data.get("unit_price", DEFAULT_UNIT_PRICE)),
        vat_rate=Decimal(str(data.get("vat_rate", DEFAULT_VAT_RATE))),
        currency=str(data.get("currency", DEFAULT_CURRENCY)),
        base_url=str(data.get("base_url", DEFAULT_BASE_URL)).rstrip("/"),
    )

    if "tenants" not in data:
        return job

    tenants = []
    photos = []
    for idx, t in enumerate(data.get("tenants") or [], start=1):
        tenant_id = str(t.get("id") or f"t{idx}")
        meter_names = []
        for m in t.get("meters", []) or []:
            # Meters may be bare names or mappings with a photo
            if isinstance(m, str):
                m = {"name": m}
            name = str(m["name"]).strip()
            if name and name not in meter_names:
                meter_names.append(name)
            if m.get("photo"):
                photos.append(
                    PhotoAssignment(
                        tenant_id=tenant_id,
                        meter_name=name,
                        photo=(config_path.parent / m["photo"]).resolve(),
                    )
                )
        tenants.append(Tenant(id=tenant_id, name=str(t["name"]), meters=tuple(meter_names)))

    job.tenants = tenants
    job.photos = photos
    return job
