from __future__ import annotations

import asyncio
from decimal import Decimal, InvalidOperation
import json
from pathlib import Path

from dotenv import load_dotenv
import typer

from finsync.adapters.cache import RecordingCacheInvalidator
from finsync.adapters.db.facade import DB
from finsync.categorize.categorizer import Categorizer
from finsync.categorize.receipt_analysis import ReceiptAnalyzer
from finsync.config import Settings, load_settings_from_env
from finsync.infra.clients.plaid import PlaidClient, PlaidClientError
from finsync.sync.orchestrator import SyncInProgressError, SyncOrchestrator
from finsync.sync.types import SyncOptions, SyncReport
from finsync.sync.webhooks import WebhookDispatcher
from finsync.transactions.splits import SplitError, SplitLine, split_transaction

app = typer.Typer(
    help="finsync: Plaid sync and AI categorization for personal finances.",
    no_args_is_help=True,
)


@app.callback()
def main_callback() -> None:
    """Load .env before any command runs."""
    load_dotenv()


def _settings() -> Settings:
    try:
        return load_settings_from_env()
    except ValueError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(1) from None


def _db(settings: Settings) -> DB:
    return DB(settings.database_url)


def _plaid_client() -> PlaidClient:
    try:
        return PlaidClient.from_env()
    except PlaidClientError as e:
        typer.echo(f"Error initializing Plaid client: {e}", err=True)
        raise typer.Exit(1) from None


def _categorizer(db: DB, settings: Settings) -> Categorizer:
    try:
        return Categorizer(
            db,
            model=settings.categorization_model,
            concurrency=settings.categorization_concurrency,
            confidence_threshold=settings.confidence_threshold,
        )
    except RuntimeError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None


def _orchestrator(db: DB, settings: Settings, *, categorize: bool) -> SyncOrchestrator:
    return SyncOrchestrator(
        db,
        _plaid_client(),
        RecordingCacheInvalidator(),
        categorizer=_categorizer(db, settings) if categorize else None,
        settings=settings,
    )


def _print_report(report: SyncReport) -> None:
    tx = report.transactions
    inv = report.investments
    typer.echo(f"Items synced: {report.items_synced}")
    typer.echo(
        f"Transactions: +{tx.transactions_added} ~{tx.transactions_modified} "
        f"-{tx.transactions_removed} ({tx.accounts_updated} accounts updated)"
    )
    typer.echo(
        f"Holdings: +{inv.holdings_added} ~{inv.holdings_updated} "
        f"-{inv.holdings_removed}; securities added: {inv.securities_added}; "
        f"investment transactions: {inv.investment_transactions_added}"
    )
    typer.echo(f"Categorized: {report.categorized}")
    for item_id in report.skipped_items:
        typer.echo(f"  skipped item {item_id}: sync already in progress")
    for failed in report.failed_items:
        typer.echo(f"  failed item {failed.item_id}: {failed.error}", err=True)


@app.command("init-db")
def init_db() -> None:
    """Create the database schema."""
    settings = _settings()
    _db(settings).create_schema()
    typer.echo(f"Schema created at {settings.database_url}")


@app.command("add-item")
def add_item(
    plaid_item_id: str = typer.Option(..., help="Plaid item_id"),
    access_token: str = typer.Option(..., help="Plaid access token for the item"),
    institution_id: str | None = typer.Option(None, help="Plaid institution id"),
    institution_name: str | None = typer.Option(None, help="Display name"),
) -> None:
    """Register an already-exchanged Plaid item."""
    db = _db(_settings())
    item = db.save_linked_item(
        plaid_item_id=plaid_item_id,
        access_token=access_token,
        institution_id=institution_id,
        institution_name=institution_name,
    )
    typer.echo(f"Saved item {item.item_id} ({plaid_item_id})")


@app.command("sync")
def sync(
    transactions: bool = typer.Option(
        True, "--transactions/--no-transactions", help="Sync bank transactions"
    ),
    investments: bool = typer.Option(
        True, "--investments/--no-investments", help="Sync holdings and trades"
    ),
    categorize: bool = typer.Option(
        True, "--categorize/--no-categorize", help="Categorize new transactions"
    ),
) -> None:
    """Sync every linked item from Plaid."""
    if not transactions and not investments:
        typer.echo("Nothing to sync.", err=True)
        raise typer.Exit(1)

    settings = _settings()
    db = _db(settings)
    orchestrator = _orchestrator(db, settings, categorize=categorize)
    options = SyncOptions(
        sync_transactions=transactions,
        sync_investments=investments,
        run_ai_categorization=categorize,
    )
    report = asyncio.run(orchestrator.sync_items(options))
    _print_report(report)
    if not report.ok:
        raise typer.Exit(1)


@app.command("categorize")
def categorize(
    transaction_ids: list[int] | None = typer.Argument(  # noqa: B008
        None, help="Transaction IDs; defaults to all uncategorized"
    ),
    limit: int | None = typer.Option(None, help="Maximum uncategorized to process"),
    recategorize: bool = typer.Option(
        False, "--recategorize", help="Also re-run already categorized transactions"
    ),
    skip_review_tag: bool = typer.Option(
        False, "--skip-review-tag", help="Do not tag results for review"
    ),
) -> None:
    """Categorize transactions with the LLM and apply confident results."""
    settings = _settings()
    db = _db(settings)
    ids = list(transaction_ids or db.list_uncategorized_transaction_ids(limit))
    if not ids:
        typer.echo("No transactions to categorize.")
        return

    categorizer = _categorizer(db, settings)
    results = asyncio.run(
        categorizer.categorize_transactions(ids, allow_recategorize=recategorize)
    )
    categories = db.fetch_category_options()
    for result in results:
        tags = categorizer.apply_categorization(
            result.transaction_id,
            result.category_id,
            result.subcategory_id,
            skip_review_tag=skip_review_tag,
            categories=categories,
        )
        suffix = f" [{', '.join(tags)}]" if tags else ""
        typer.echo(
            f"{result.transaction_id}: category {result.category_id}"
            f" (confidence {result.confidence:.0f}){suffix}"
        )
    typer.echo(f"Categorized {len(results)}/{len(ids)} transaction(s)")


@app.command("analyze-receipt")
def analyze_receipt(transaction_id: int) -> None:
    """Suggest a split, a better category, or confirm the current one."""
    settings = _settings()
    db = _db(settings)
    try:
        analyzer = ReceiptAnalyzer(db, model=settings.categorization_model)
    except RuntimeError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None

    analysis = asyncio.run(analyzer.analyze(transaction_id))
    if analysis is None:
        typer.echo("No usable analysis for this transaction.", err=True)
        raise typer.Exit(1)
    typer.echo(analysis.model_dump_json(indent=2))


def _parse_split_line(raw: str) -> SplitLine:
    """Parse ``AMOUNT:CATEGORY_ID[:SUBCATEGORY_ID[:NOTES]]``."""
    parts = raw.split(":", 3)
    try:
        amount = Decimal(parts[0])
        category_id = int(parts[1]) if len(parts) > 1 and parts[1] else None
        subcategory_id = int(parts[2]) if len(parts) > 2 and parts[2] else None
    except (InvalidOperation, ValueError) as e:
        raise typer.BadParameter(f"Invalid split line {raw!r}") from e
    notes = parts[3] if len(parts) > 3 else None
    return SplitLine(
        amount=amount,
        category_id=category_id,
        subcategory_id=subcategory_id,
        notes=notes,
    )


@app.command("split")
def split(
    transaction_id: int,
    lines: list[str] = typer.Argument(  # noqa: B008
        ..., help="Parts as AMOUNT:CATEGORY_ID[:SUBCATEGORY_ID[:NOTES]]"
    ),
    tag: str | None = typer.Option(None, help="Tag to attach to the parent"),
) -> None:
    """Split a transaction into categorized parts."""
    db = _db(_settings())
    try:
        child_ids = split_transaction(
            db,
            transaction_id,
            [_parse_split_line(line) for line in lines],
            tag_name=tag,
        )
    except SplitError as e:
        typer.echo(f"Cannot split: {e}", err=True)
        raise typer.Exit(1) from None
    typer.echo(f"Created {len(child_ids)} split(s): {child_ids}")


@app.command("webhook")
def webhook(
    payload_path: Path = typer.Argument(  # noqa: B008
        ..., help="Path to a webhook JSON body"
    ),
) -> None:
    """Process a saved Plaid webhook body."""
    settings = _settings()
    db = _db(settings)
    cache = RecordingCacheInvalidator()
    orchestrator = _orchestrator(db, settings, categorize=True)
    dispatcher = WebhookDispatcher(db, orchestrator, cache)

    payload = json.loads(payload_path.read_text())
    try:
        handled = asyncio.run(dispatcher.dispatch(payload))
    except (LookupError, SyncInProgressError) as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    typer.echo("Handled" if handled else "Ignored")


def main() -> None:
    app()
