from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta

import loguru
from loguru import logger

from finsync.adapters.cache import (
    INVESTMENT_TAGS,
    TRANSACTION_TAGS,
    CacheInvalidator,
    CacheTag,
)
from finsync.adapters.db.models import LinkedItem
from finsync.config import Settings
from finsync.sync.investments import InvestmentSyncEngine
from finsync.sync.ports import (
    ItemStore,
    PriceSource,
    Provider,
    SyncStore,
    TransactionCategorizer,
)
from finsync.sync.transactions import TransactionSyncEngine
from finsync.sync.types import (
    FailedItem,
    SyncOptions,
    SyncReport,
    TransactionSyncResult,
)


class SyncInProgressError(RuntimeError):
    """Another sync already holds the item's single-flight flag."""

    def __init__(self, item_id: int) -> None:
        super().__init__(f"Sync already in progress for item {item_id}")
        self.item_id = item_id


@contextmanager
def item_sync_lock(
    store: ItemStore, item_id: int, *, stale_after: timedelta | None = None
) -> Iterator[None]:
    """Hold the item's sync_in_progress flag for the duration of the block.

    A flag held for longer than ``stale_after`` is taken over.

    Raises:
        SyncInProgressError: If the flag is already held
    """
    if not store.try_acquire_sync_lock(item_id, stale_after=stale_after):
        raise SyncInProgressError(item_id)
    try:
        yield
    finally:
        store.release_sync_lock(item_id)


class OrchestratorLogger:
    """Handles all logging for the sync orchestrator."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def run_start(self, options: SyncOptions, item_count: int) -> None:
        if options.sync_transactions and options.sync_investments:
            sync_type = "full"
        elif options.sync_transactions:
            sync_type = "transactions"
        else:
            sync_type = "investments"
        self._logger.bind(sync_type=sync_type, items=item_count).info(
            "Starting {} sync for {} item(s)", sync_type, item_count
        )

    def item_start(self, item: LinkedItem) -> None:
        self._logger.bind(item_id=item.item_id).info(
            "Processing item {} ({})",
            item.item_id,
            item.institution_name or "Unknown Institution",
        )

    def item_busy(self, item_id: int) -> None:
        self._logger.bind(item_id=item_id).warning(
            "Skipping item {}: sync already in progress", item_id
        )

    def item_failed(self, item_id: int) -> None:
        self._logger.bind(item_id=item_id).exception(
            "Sync failed for item {}; continuing with remaining items", item_id
        )

    def categorization_start(self, count: int) -> None:
        self._logger.bind(count=count).info(
            "Starting AI categorization for {} new transaction(s)", count
        )

    def categorization_complete(self, applied: int, requested: int) -> None:
        self._logger.bind(applied=applied, requested=requested).info(
            "AI categorization applied to {}/{} transaction(s)", applied, requested
        )

    def categorization_failed(self, count: int) -> None:
        self._logger.bind(count=count).exception(
            "AI categorization failed for {} transaction(s); sync result kept", count
        )

    def run_complete(self, report: SyncReport) -> None:
        tx = report.transactions
        inv = report.investments
        self._logger.bind(
            items_synced=report.items_synced,
            items_failed=len(report.failed_items),
            items_skipped=len(report.skipped_items),
            transactions_added=tx.transactions_added,
            transactions_modified=tx.transactions_modified,
            transactions_removed=tx.transactions_removed,
            holdings_removed=inv.holdings_removed,
        ).info(
            "Sync complete: {} item(s) synced, {} failed, {} skipped; "
            "transactions +{} ~{} -{}; holdings +{} ~{} -{}",
            report.items_synced,
            len(report.failed_items),
            len(report.skipped_items),
            tx.transactions_added,
            tx.transactions_modified,
            tx.transactions_removed,
            inv.holdings_added,
            inv.holdings_updated,
            inv.holdings_removed,
        )


async def categorize_new_transactions(
    categorizer: TransactionCategorizer,
    transaction_ids: list[int],
    orchestrator_logger: OrchestratorLogger,
) -> int:
    """Run categorization, logging and absorbing any failure.

    Returns:
        Number of categorizations applied, 0 on failure
    """
    if not transaction_ids:
        return 0
    orchestrator_logger.categorization_start(len(transaction_ids))
    try:
        applied = await categorizer.categorize_and_apply(transaction_ids)
    except Exception:
        orchestrator_logger.categorization_failed(len(transaction_ids))
        return 0
    orchestrator_logger.categorization_complete(applied, len(transaction_ids))
    return applied


class SyncOrchestrator:
    """
    Runs the transaction and investment engines over every linked item.

    Each item is synced under its single-flight flag. With
    ``isolate_item_failures`` (the default) an item that raises is logged and
    recorded in the report while the remaining items continue.
    """

    def __init__(
        self,
        store: SyncStore,
        provider: Provider,
        cache: CacheInvalidator,
        *,
        categorizer: TransactionCategorizer | None = None,
        settings: Settings | None = None,
        transaction_engine: TransactionSyncEngine | None = None,
        investment_engine: InvestmentSyncEngine | None = None,
        price_source: PriceSource | None = None,
        orchestrator_logger: OrchestratorLogger | None = None,
    ) -> None:
        settings = settings or Settings()
        self._store = store
        self._cache = cache
        self._categorizer = categorizer
        self._isolate_item_failures = settings.isolate_item_failures
        self.lock_ttl = timedelta(minutes=settings.sync_lock_ttl_minutes)
        self._transaction_engine = transaction_engine or TransactionSyncEngine(
            provider,
            store,
            cache,
            historical_start_date=settings.historical_start_date,
            page_size=settings.transaction_page_size,
        )
        self._investment_engine = investment_engine or InvestmentSyncEngine(
            provider,
            store,
            historical_start_date=settings.historical_start_date,
            page_size=settings.transaction_page_size,
            price_source=price_source,
        )
        self._logger = orchestrator_logger or OrchestratorLogger()

    async def sync_items(self, options: SyncOptions | None = None) -> SyncReport:
        """
        Sync every linked item.

        Args:
            options: What to sync and whether to categorize new transactions

        Returns:
            SyncReport aggregating all items

        Raises:
            Exception: The first item failure, only when failures are not
                isolated
        """
        options = options or SyncOptions()
        report = SyncReport()
        items = self._store.list_linked_items()
        self._logger.run_start(options, len(items))

        for item in items:
            try:
                with item_sync_lock(
                    self._store, item.item_id, stale_after=self.lock_ttl
                ):
                    self._logger.item_start(item)
                    await self._sync_one(item, options, report)
                report.items_synced += 1
            except SyncInProgressError:
                self._logger.item_busy(item.item_id)
                report.skipped_items.append(item.item_id)
            except Exception as e:
                if not self._isolate_item_failures:
                    raise
                self._logger.item_failed(item.item_id)
                report.failed_items.append(
                    FailedItem(
                        item_id=item.item_id,
                        plaid_item_id=item.plaid_item_id,
                        error=str(e),
                    )
                )

        new_ids = report.transactions.new_transaction_ids
        if options.run_ai_categorization and self._categorizer is not None:
            report.categorized = await categorize_new_transactions(
                self._categorizer, new_ids, self._logger
            )

        self._cache.invalidate(self._tags_for(options))
        self._logger.run_complete(report)
        return report

    async def _sync_one(
        self, item: LinkedItem, options: SyncOptions, report: SyncReport
    ) -> None:
        if options.sync_transactions:
            result = await self._transaction_engine.sync_item_transactions(
                item.item_id, item.access_token, item.transactions_cursor
            )
            self._store.update_transactions_cursor(item.item_id, result.new_cursor)
            report.transactions.merge(result.stats)

        if options.sync_investments:
            stats = await self._investment_engine.sync_item_investments(
                item.item_id, item.access_token
            )
            report.investments.merge(stats)

    def _tags_for(self, options: SyncOptions) -> list[CacheTag]:
        tags: list[CacheTag] = []
        if options.sync_transactions:
            tags.extend(TRANSACTION_TAGS)
        if options.sync_investments:
            tags.extend(INVESTMENT_TAGS)
        return tags

    async def sync_item_transactions_with_categorization(
        self, item: LinkedItem
    ) -> TransactionSyncResult:
        """
        Sync one item's transactions, then categorize what was added.

        Categorization failures are logged and ignored. The caller persists
        the returned cursor.
        """
        result = await self._transaction_engine.sync_item_transactions(
            item.item_id, item.access_token, item.transactions_cursor
        )
        if self._categorizer is not None:
            await categorize_new_transactions(
                self._categorizer, result.stats.new_transaction_ids, self._logger
            )
        return result
