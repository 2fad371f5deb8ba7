"""Command-line interface for meter photo billing."""

import asyncio
import json
import logging
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import Settings, load_billing_job, load_settings
from .errors import ExportError, ExtractionError, ShareLinkParseError
from .extraction.client import GeminiClient
from .invoice.billing import format_money
from .invoice.card import export_summary_card
from .invoice.pdf import export_invoices_pdf
from .invoice.share import share_message, share_url
from .models import InvoiceData
from .session import BillingSession

console = Console()


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


@click.group()
@click.option("--settings", "settings_path", type=click.Path(exists=True),
              help="YAML file with extraction settings overrides")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx, settings_path, verbose):
    """Meter bill manager - read meter photos and bill tenants."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["settings_path"] = Path(settings_path) if settings_path else None


async def _analyze(session: BillingSession, settings) -> None:
    async with GeminiClient(settings) as client:
        session.client = client
        await session.analyze_pending()


def _load_settings(ctx) -> Settings:
    try:
        return load_settings(ctx.obj["settings_path"])
    except (ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid settings: {e}[/red]")
        raise SystemExit(1)


def _run_analysis(session: BillingSession, settings: Settings) -> bool:
    """Analyze all pending items. Returns False on a global credential failure."""
    try:
        asyncio.run(_analyze(session, settings))
    except ExtractionError as e:
        console.print(f"[red]{e.user_message}[/red]")
        return False
    if session.credential_error:
        console.print(f"[red]{session.credential_error}[/red]")
        return False
    return True


def _results_table(session: BillingSession) -> Table:
    table = Table(title="Meter Readings")
    table.add_column("Photo", style="cyan")
    table.add_column("Status")
    table.add_column("Start", justify="right")
    table.add_column("End", justify="right")
    table.add_column("Usage", justify="right")

    for item in session.items:
        if item.result:
            r = item.result
            table.add_row(
                item.filename,
                "[green]success[/green]",
                f"{r.start_reading.value:,} ({r.start_reading.date})",
                f"{r.end_reading.value:,} ({r.end_reading.date})",
                f"{r.usage:,.2f}",
            )
        else:
            table.add_row(item.filename, f"[red]{item.error or item.status}[/red]", "", "", "")
    return table


def _invoice_table(invoice: InvoiceData, currency: str) -> Table:
    table = Table(title=f"Invoice: {invoice.tenant.name}")
    table.add_column("Meter", style="cyan")
    table.add_column("Start", justify="right")
    table.add_column("End", justify="right")
    table.add_column("Usage (kWh)", justify="right")
    table.add_column("Cost", justify="right")

    for line in invoice.lines:
        table.add_row(
            line.meter_name,
            f"{line.result.start_reading.value:,}",
            f"{line.result.end_reading.value:,}",
            f"{line.result.usage:,.2f}",
            format_money(line.cost),
        )
    table.add_section()
    table.add_row("Subtotal", "", "", f"{invoice.total_usage:,.2f}",
                  format_money(invoice.subtotal, currency))
    table.add_row(f"VAT ({invoice.vat_rate * 100:.0f}%)", "", "", "",
                  format_money(invoice.vat, currency))
    table.add_row("[bold]Total Due[/bold]", "", "", "",
                  f"[bold]{format_money(invoice.total_due, currency)}[/bold]")
    return table


def _invoice_json(invoice: InvoiceData) -> dict:
    return {
        "tenant": invoice.tenant.name,
        "unit_price": invoice.unit_price,
        "lines": [
            {
                "meter": line.meter_name,
                "start": {"date": line.result.start_reading.date, "value": line.result.start_reading.value},
                "end": {"date": line.result.end_reading.date, "value": line.result.end_reading.value},
                "usage": line.result.usage,
                "cost": line.cost,
            }
            for line in invoice.lines
        ],
        "total_usage": invoice.total_usage,
        "subtotal": invoice.subtotal,
        "vat": invoice.vat,
        "total_due": invoice.total_due,
    }


def _export_pdf(invoices: list[InvoiceData], output: str | None, currency: str) -> None:
    try:
        path = export_invoices_pdf(invoices, Path(output) if output else None, currency)
        console.print(f"[green]PDF written to {path}[/green]")
    except ExportError as e:
        console.print(f"[red]{e}[/red]")


@cli.command()
@click.argument("photos", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def analyze(ctx, photos, as_json):
    """Read start/end meter values from one or more photos."""
    settings = _load_settings(ctx)
    session = BillingSession()
    session.add_images(photos)
    if not _run_analysis(session, settings):
        raise SystemExit(1)

    if as_json:
        data = [
            {
                "photo": item.filename,
                "status": item.status,
                "error": item.error,
                "startReading": vars(item.result.start_reading) if item.result else None,
                "endReading": vars(item.result.end_reading) if item.result else None,
                "usage": item.result.usage if item.result else None,
            }
            for item in session.items
        ]
        click.echo(json.dumps(data, indent=2))
    else:
        console.print(_results_table(session))


@cli.command()
@click.option("--config", "config_path", type=click.Path(exists=True), required=True,
              help="Billing job YAML (tenants, meters, photos, prices)")
@click.option("--output", type=click.Path(dir_okay=False), help="PDF path (default Invoice_<tenant>.pdf)")
@click.option("--cards", "cards_dir", type=click.Path(file_okay=False), help="Directory for summary card PNGs")
@click.option("--base-url", help="Origin for share links (overrides the job file)")
@click.option("--no-thumbnails", is_flag=True, help="Leave photo previews out of share links")
@click.option("--json", "as_json", is_flag=True, help="Output invoices as JSON")
@click.pass_context
def bill(ctx, config_path, output, cards_dir, base_url, no_thumbnails, as_json):
    """Analyze a billing job's photos and produce invoices."""
    settings = _load_settings(ctx)
    try:
        job = load_billing_job(Path(config_path))
    except (ValueError, KeyError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid billing job: {e}[/red]")
        raise SystemExit(1)
    if not job.photos:
        console.print("[yellow]No photos listed in the billing job[/yellow]")
        return

    session = BillingSession(tenants=job.tenants, unit_price=job.unit_price, vat_rate=job.vat_rate)
    for photo in job.photos:
        if not photo.photo.is_file():
            console.print(f"[yellow]Skipped missing photo {photo.photo}[/yellow]")
            continue
        item = session.add_image(photo.photo.name, photo.photo.read_bytes())
        session.assign(item.id, photo.tenant_id, photo.meter_name)

    if not _run_analysis(session, settings):
        raise SystemExit(1)

    failed = [i for i in session.items if i.status == "error"]
    for item in failed:
        console.print(f"[yellow]Skipped {item.filename}: {item.error}[/yellow]")

    invoices = session.invoices()
    if not invoices:
        console.print("[red]No successful readings to invoice[/red]")
        raise SystemExit(1)

    origin = base_url or job.base_url

    def link(invoice: InvoiceData) -> str:
        return share_url(
            invoice,
            origin,
            include_thumbnails=not no_thumbnails,
            thumbnail_side=settings.thumbnail_side,
            thumbnail_quality=settings.thumbnail_quality,
        )

    if as_json:
        data = [
            {**_invoice_json(inv), "share_url": link(inv)}
            for inv in invoices
        ]
        click.echo(json.dumps(data, indent=2))
    else:
        for invoice in invoices:
            console.print(_invoice_table(invoice, job.currency))
            url = link(invoice)
            console.print(share_message(invoice, url, job.currency), soft_wrap=True, markup=False)
            console.print()

    _export_pdf(invoices, output, job.currency)

    if cards_dir:
        for invoice in invoices:
            try:
                path = export_summary_card(invoice, Path(cards_dir), job.currency)
                console.print(f"[green]Card saved to {path}[/green]")
            except ExportError as e:
                console.print(f"[red]{e}[/red]")


@cli.command()
@click.argument("link")
@click.option("--output", type=click.Path(dir_okay=False), help="Also export the invoice as PDF")
@click.option("--currency", default="KRW", help="Currency label (default: KRW)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def shared(link, output, currency, as_json):
    """Open a shared invoice link in read-only mode."""
    try:
        session = BillingSession.from_share_link(link)
    except ShareLinkParseError as e:
        console.print(f"[red]Invalid shared link: {e}[/red]")
        raise SystemExit(1)

    invoices = session.invoices()
    if as_json:
        click.echo(json.dumps([_invoice_json(inv) for inv in invoices], indent=2))
    else:
        console.print("[yellow]Shared View Mode[/yellow]")
        for invoice in invoices:
            console.print(_invoice_table(invoice, currency))

    if output and invoices:
        _export_pdf(invoices, output, currency)


if __name__ == "__main__":
    cli()
