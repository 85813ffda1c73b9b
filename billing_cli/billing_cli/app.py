"""Billing CLI application -- Typer-based operator interface.

Each sweep command is a stateless entry point meant to be run by an
external timer (cron, a Kubernetes CronJob, ...).  Concurrent invocations
are safe: every item is claimed with a conditional update before it is
processed.  Human-readable output goes to *stderr* via Rich; ``--json``
writes the summary to *stdout* so pipelines can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

import typer
from rich.console import Console
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_cli.display import display_dunning_stats, display_proration, display_summary
from billing_engine.config import Settings, load_settings
from billing_engine.errors import BillingError
from billing_engine.models.subscription import ChangeType
from billing_engine.proration import format_proration_explanation, pause_credit, schedule_downgrade, upgrade_proration
from billing_engine.state.database import get_engine, get_session_factory, session_scope
from billing_engine.state.sqlite_adapter import create_local_tables
from billing_worker.clients.execution_client import HttpExecutionClient
from billing_worker.clients.notification_client import HttpNotificationSender
from billing_worker.config import WorkerSettings, load_worker_settings
from billing_worker.logging_setup import configure_logging
from billing_worker.services.dunning_engine import DunningEngine
from billing_worker.services.dunning_service import DunningService
from billing_worker.services.invoice_service import InvoiceService
from billing_worker.services.reconciliation_service import ReconciliationService
from billing_worker.services.redemption_service import RedemptionService
from billing_worker.services.scheduled_change_processor import ScheduledChangeProcessor
from billing_worker.services.settlement_executor import SettlementExecutor
from billing_worker.services.subscription_service import SubscriptionService

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="billing",
    help="Delegated-payment subscription billing: sweeps, reconciliation and previews.",
    no_args_is_help=True,
)
console = Console(stderr=True)

sweep_app = typer.Typer(
    name="sweep",
    help="Run one pass of a periodic billing sweep.",
    no_args_is_help=True,
)
app.add_typer(sweep_app, name="sweep")

reconcile_app = typer.Typer(
    name="reconcile",
    help="Close gaps left by interrupted settlements.",
    no_args_is_help=True,
)
app.add_typer(reconcile_app, name="reconcile")

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database URL; overrides BILLING_DATABASE_URL.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------


@dataclass
class _Runtime:
    settings: Settings
    worker_settings: WorkerSettings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    execution: HttpExecutionClient
    notifier: HttpNotificationSender
    invoices: InvoiceService
    executor: SettlementExecutor
    redemptions: RedemptionService
    subscriptions: SubscriptionService


def _load_settings() -> Settings:
    overrides: dict[str, Any] = {}
    if _database_url:
        overrides["database_url"] = _database_url
    settings = load_settings(**overrides)
    configure_logging(structured=settings.structured_logging, level=settings.log_level)
    return settings


@asynccontextmanager
async def _open_runtime() -> AsyncIterator[_Runtime]:
    settings = _load_settings()
    worker_settings = load_worker_settings()
    engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
    factory = get_session_factory(engine)

    execution_key = worker_settings.execution_api_key
    notification_key = worker_settings.notification_api_key
    execution = HttpExecutionClient(
        worker_settings.execution_service_url,
        api_key=execution_key.get_secret_value() if execution_key else None,
        timeout=worker_settings.execution_timeout,
        connect_retry=worker_settings.execution_connect_policy(),
    )
    notifier = HttpNotificationSender(
        worker_settings.notification_service_url,
        api_key=notification_key.get_secret_value() if notification_key else None,
        timeout=worker_settings.notification_timeout,
        retry=worker_settings.notification_retry_policy(),
    )
    invoices = InvoiceService(number_prefix=settings.invoice_number_prefix)
    executor = SettlementExecutor(factory, execution, invoice_service=invoices)
    redemptions = RedemptionService(
        factory,
        executor,
        batch_size=settings.sweep_batch_size,
        claim_ttl_seconds=settings.redemption_claim_ttl_seconds,
    )
    subscriptions = SubscriptionService(factory, executor=executor, redemptions=redemptions)
    try:
        yield _Runtime(
            settings=settings,
            worker_settings=worker_settings,
            engine=engine,
            session_factory=factory,
            execution=execution,
            notifier=notifier,
            invoices=invoices,
            executor=executor,
            redemptions=redemptions,
            subscriptions=subscriptions,
        )
    finally:
        await execution.close()
        await notifier.close()
        await engine.dispose()


def _run(job: Callable[[_Runtime], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    """Run *job* against a fresh runtime, mapping database outages to exit code 1."""

    async def _main() -> dict[str, Any]:
        async with _open_runtime() as runtime:
            return await job(runtime)

    try:
        return asyncio.run(_main())
    except (OperationalError, InterfaceError) as exc:
        console.print(f"[red]Database unavailable: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def _emit(title: str, summary: dict[str, Any]) -> None:
    if _json_output:
        sys.stdout.write(json.dumps(summary, indent=2, default=str) + "\n")
    else:
        display_summary(console, title, summary)


def _parse_day(value: str | None, label: str) -> datetime:
    """Parse ``YYYY-MM-DD`` (or a full ISO timestamp) into an aware UTC datetime."""
    if value is None:
        return datetime.now(UTC)
    try:
        if len(value) == 10:
            return datetime.combine(date.fromisoformat(value), time.min, tzinfo=UTC)
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid {label} '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the billing tables if they do not exist."""

    async def _job(runtime: _Runtime) -> dict[str, Any]:
        await create_local_tables(runtime.engine)
        return {"database_url": runtime.engine.url.render_as_string(hide_password=True), "created": True}

    result = _run(_job)
    if _json_output:
        sys.stdout.write(json.dumps(result) + "\n")
    else:
        console.print(f"[green]Tables ready[/green] at {result['database_url']}")


# ---------------------------------------------------------------------------
# sweep
# ---------------------------------------------------------------------------


@sweep_app.command("changes")
def sweep_changes(
    at: str | None = typer.Option(None, "--at", help="Process as of this time (ISO date or timestamp)."),
) -> None:
    """Apply due downgrades, cancellations and resumes."""
    now = _parse_day(at, "--at")

    async def _job(runtime: _Runtime) -> dict[str, Any]:
        processor = ScheduledChangeProcessor(
            runtime.session_factory,
            runtime.subscriptions,
            redemptions=runtime.redemptions,
            batch_size=runtime.settings.sweep_batch_size,
        )
        return await processor.process_due_changes(now)

    _emit("Scheduled changes", _run(_job))


@sweep_app.command("redemptions")
def sweep_redemptions(
    at: str | None = typer.Option(None, "--at", help="Process as of this time (ISO date or timestamp)."),
) -> None:
    """Settle recurring payments that have come due."""
    now = _parse_day(at, "--at")

    async def _job(runtime: _Runtime) -> dict[str, Any]:
        return await runtime.redemptions.process_due_subscriptions(now)

    _emit("Redemptions", _run(_job))


@sweep_app.command("dunning")
def sweep_dunning(
    at: str | None = typer.Option(None, "--at", help="Process as of this time (ISO date or timestamp)."),
) -> None:
    """Run due dunning attempts and final actions."""
    now = _parse_day(at, "--at")

    async def _job(runtime: _Runtime) -> dict[str, Any]:
        engine = DunningEngine(
            runtime.session_factory,
            redemptions=runtime.redemptions,
            executor=runtime.executor,
            notifier=runtime.notifier,
            batch_size=runtime.settings.sweep_batch_size,
        )
        return await engine.process_due_campaigns(now)

    _emit("Dunning", _run(_job))


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------


def _reconciliation(runtime: _Runtime) -> ReconciliationService:
    return ReconciliationService(
        runtime.session_factory,
        runtime.executor,
        runtime.execution,
        invoice_service=runtime.invoices,
        batch_size=runtime.settings.sweep_batch_size,
    )


@reconcile_app.command("bookkeeping")
def reconcile_bookkeeping() -> None:
    """Finish ledger writes for settlements that already went through."""

    async def _job(runtime: _Runtime) -> dict[str, Any]:
        return await _reconciliation(runtime).complete_pending_bookkeeping()

    _emit("Bookkeeping", _run(_job))


@reconcile_app.command("timeouts")
def reconcile_timeouts() -> None:
    """Look up submissions whose outcome is unknown after a timeout."""

    async def _job(runtime: _Runtime) -> dict[str, Any]:
        return await _reconciliation(runtime).resolve_timed_out_submissions()

    _emit("Timed-out submissions", _run(_job))


@reconcile_app.command("invoices")
def reconcile_invoices(
    older_than: int | None = typer.Option(
        None,
        "--older-than",
        min=0,
        help="Only payments older than this many minutes (default from WORKER_INVOICE_GRACE_MINUTES).",
    ),
) -> None:
    """Invoice settled payments that have no invoice."""

    async def _job(runtime: _Runtime) -> dict[str, Any]:
        minutes = older_than if older_than is not None else runtime.worker_settings.invoice_grace_minutes
        return await _reconciliation(runtime).invoice_unbilled_payments(timedelta(minutes=minutes))

    _emit("Invoices", _run(_job))


# ---------------------------------------------------------------------------
# dunning-stats
# ---------------------------------------------------------------------------


@app.command("dunning-stats")
def dunning_stats(
    workspace_id: str = typer.Argument(..., help="Workspace to report on."),
) -> None:
    """Show campaign counts and the recovery rate for a workspace."""

    async def _job(runtime: _Runtime) -> dict[str, Any]:
        async with session_scope(runtime.session_factory) as session:
            return await DunningService(session).stats(workspace_id)

    stats = _run(_job)
    if _json_output:
        sys.stdout.write(json.dumps(stats, indent=2) + "\n")
    else:
        display_dunning_stats(console, workspace_id, stats)


# ---------------------------------------------------------------------------
# preview
# ---------------------------------------------------------------------------


@app.command()
def preview(
    change_type: ChangeType = typer.Argument(..., help="upgrade | downgrade | cancel | pause."),
    period_start: str = typer.Option(..., "--period-start", help="Current period start (YYYY-MM-DD)."),
    period_end: str = typer.Option(..., "--period-end", help="Current period end (YYYY-MM-DD)."),
    current_amount: int = typer.Option(..., "--current-amount", min=0, help="Current price per period, in cents."),
    new_amount: int = typer.Option(0, "--new-amount", min=0, help="New price per period, in cents."),
    at: str | None = typer.Option(None, "--at", help="When the change happens (default: now)."),
    currency: str = typer.Option("USD", "--currency", help="Currency code for display."),
) -> None:
    """Compute a proration preview from arguments, without touching the database."""
    start = _parse_day(period_start, "--period-start")
    end = _parse_day(period_end, "--period-end")
    now = _parse_day(at, "--at")

    try:
        if change_type == ChangeType.UPGRADE:
            result = upgrade_proration(start, end, current_amount, new_amount, now)
            explanation = format_proration_explanation(result, currency)
        elif change_type == ChangeType.PAUSE:
            result = pause_credit(start, end, current_amount, now)
            explanation = format_proration_explanation(result, currency)
        else:
            result = None
            explanation = schedule_downgrade(end, change_type).message
    except BillingError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        payload = {
            "change_type": change_type.value,
            "proration": result.model_dump(mode="json") if result else None,
            "immediate_charge_cents": max(round(result.net_amount), 0) if result else 0,
            "explanation": explanation,
        }
        sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    else:
        display_proration(console, result, explanation, currency)
