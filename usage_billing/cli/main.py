"""
CLI interface for usage billing onboarding.

Provides command-line access to blueprint validation, full runs, metric
queries, local revenue estimates and the ingestion ledger.
"""

import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from usage_billing.config.blueprint import load_blueprint
from usage_billing.config.loader import load_config
from usage_billing.core.errors import UsageBillingError
from usage_billing.core.metrics import GetMetricsRequest, MetricQuery, MetricsResponse
from usage_billing.core.models import parse_datetime
from usage_billing.core.pricing import estimate_plan_revenue
from usage_billing.core.workflow import UsageBillingWorkflow, WorkflowBlueprint, WorkflowResult
from usage_billing.demo.sms_pricing import build_sms_blueprint
from usage_billing.sdk.http_client import HttpBillingService
from usage_billing.storage.ledger import IngestionLedger

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Usage billing onboarding CLI."""
    _configure_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print("Usage billing - Use --help to see available commands")


def _load(blueprint: Optional[str], demo: bool) -> WorkflowBlueprint:
    if demo:
        return build_sms_blueprint()
    if not blueprint:
        raise typer.BadParameter("pass a blueprint file or --demo")
    return load_blueprint(blueprint)


@app.command()
def validate(
    blueprint: Optional[str] = typer.Argument(None, help="Blueprint YAML file"),
    demo: bool = typer.Option(False, "--demo", help="Use the built-in SMS pricing blueprint"),
):
    """Validate a blueprint locally without contacting the service."""
    try:
        onboarding = _load(blueprint, demo)
    except (ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid blueprint:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print("[green]✓[/] Blueprint is valid")
    console.print(f"Event schema: {onboarding.event_schema.name}")
    console.print(f"Usage meters: {', '.join(m.name for m in onboarding.usage_meters)}")
    console.print(f"Price plan: {onboarding.price_plan.name}")
    console.print(f"Customer: {onboarding.customer.id}")
    console.print(f"Events: {len(onboarding.events)}")
    sys.exit(EXIT_CODE_PASS)


async def _run_workflow(onboarding: WorkflowBlueprint, config_path: Optional[str]) -> WorkflowResult:
    config = load_config(config_path)
    ledger = IngestionLedger(config.ledger_path)
    async with HttpBillingService(
        base_url=config.client.base_url,
        api_token=config.client.api_token,
        timeout=config.client.request_timeout,
    ) as service:
        workflow = UsageBillingWorkflow(
            service,
            usage_wait=config.usage.to_strategy(),
            revenue_wait=config.revenue.to_strategy(),
            call_timeout=config.client.request_timeout,
            ledger=ledger,
        )
        return await workflow.run(onboarding)


@app.command()
def run(
    blueprint: Optional[str] = typer.Argument(None, help="Blueprint YAML file"),
    demo: bool = typer.Option(False, "--demo", help="Use the built-in SMS pricing blueprint"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Configuration YAML file"),
):
    """Create every entity of a blueprint, ingest its events and query metrics."""
    try:
        onboarding = _load(blueprint, demo)
        result = asyncio.run(_run_workflow(onboarding, config))
    except (UsageBillingError, ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_run_result(result)
    sys.exit(EXIT_CODE_PASS)


async def _fetch_metrics(request: GetMetricsRequest, config_path: Optional[str]) -> MetricsResponse:
    config = load_config(config_path)
    async with HttpBillingService(
        base_url=config.client.base_url,
        api_token=config.client.api_token,
        timeout=config.client.request_timeout,
    ) as service:
        return await service.get_metrics(request)


@app.command()
def metrics(
    metric: str = typer.Option("usage", "--metric", "-m", help="usage or revenue"),
    start: Optional[str] = typer.Option(None, "--start", help="ISO-8601 start (default: 1 day ago)"),
    end: Optional[str] = typer.Option(None, "--end", help="ISO-8601 end (default: now)"),
    period: str = typer.Option("DAY", "--period", "-p", help="Aggregation period"),
    customer: Optional[str] = typer.Option(None, "--customer", help="Filter by customer id"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Configuration YAML file"),
):
    """Run a single metrics query."""
    try:
        end_time = parse_datetime(end, "end") if end else datetime.now(timezone.utc)
        start_time = parse_datetime(start, "start") if start else end_time - timedelta(days=1)
        query_id = f"{metric.lower()}-metrics"
        if customer:
            query = MetricQuery.for_customer(query_id, metric, customer, period)
        else:
            query = MetricQuery(id=query_id, name=metric, aggregation_period=period)
        response = asyncio.run(
            _fetch_metrics(GetMetricsRequest(start_time, end_time, (query,)), config)
        )
    except (UsageBillingError, ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_metrics(f"{metric.capitalize()} Metrics", response)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def estimate(
    quantity: float = typer.Argument(..., help="Metered usage to price"),
    blueprint: Optional[str] = typer.Option(None, "--blueprint", "-b", help="Blueprint YAML file"),
    demo: bool = typer.Option(False, "--demo", help="Use the built-in SMS pricing blueprint"),
):
    """Estimate revenue for a usage quantity under the blueprint's price plan."""
    try:
        onboarding = _load(blueprint, demo)
        usage = {name: quantity for name in onboarding.price_plan.usage_meter_names}
        estimates = estimate_plan_revenue(onboarding.price_plan, usage)
    except (ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Revenue estimate for {quantity:,} units")
    table.add_column("Rate card")
    table.add_column("Amount", justify="right")
    for card_name, amount in estimates.items():
        table.add_row(card_name, _format_amount(amount))
    table.add_row("[bold]Total[/bold]", _format_amount(sum(estimates.values())))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def ledger(
    limit: int = typer.Option(20, "--limit", "-n", help="Rows to show"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Configuration YAML file"),
):
    """List recently ingested events."""
    try:
        app_config = load_config(config)
        records = IngestionLedger(app_config.ledger_path).recent(limit=limit)
    except (ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not records:
        console.print("[dim]No events ingested yet.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Ingested events")
    for column in ("Event id", "Schema", "Account", "Event time", "Status"):
        table.add_column(column)
    for record in records:
        table.add_row(
            record.event_id,
            record.schema_name,
            record.account_id,
            record.event_timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.status,
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _format_amount(amount: float) -> str:
    return f"{amount:,.2f}"


def _display_metrics(title: str, response: Optional[MetricsResponse]) -> None:
    if response is None or not response.results:
        console.print(f"\n[bold]{title}[/bold]: [dim]no data[/]")
        return
    table = Table(title=title)
    table.add_column("Query")
    table.add_column("Bucket")
    table.add_column("Value", justify="right")
    for result in response.results:
        if result.is_empty:
            table.add_row(result.id, "-", "0")
        for point in result.points:
            table.add_row(result.id, point.timestamp.date().isoformat(), f"{point.value:,.4g}")
    console.print(table)


def _display_run_result(result: WorkflowResult) -> None:
    console.print("\n[bold]Onboarding Result[/bold]")
    console.print("-" * 40)
    console.print(f"Event schema: {result.event_schema.name}")
    console.print(f"Usage meters: {', '.join(m.name for m in result.usage_meters)}")
    console.print(f"Price plan: {result.price_plan.name}")
    console.print(f"Customer: {result.customer.id}")
    until = result.association.effective_until
    console.print(
        f"Association: {result.association.effective_from.isoformat()} -> "
        f"{until.isoformat() if until else 'open-ended'}"
    )
    console.print(f"Events ingested: {len(result.ingest_results)}")

    _display_metrics("Usage Metrics", result.usage_metrics)
    _display_metrics("Revenue Metrics", result.revenue_metrics)

    for stage in result.pending:
        console.print(
            f"[yellow]Pending:[/] {stage.value} - metrics not yet available, query again later"
        )


if __name__ == "__main__":
    app()
