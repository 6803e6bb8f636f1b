from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import date

import loguru
from loguru import logger

from finsync.adapters.cache import ITEM_TAGS, CacheInvalidator
from finsync.adapters.db.models import ItemStatus
from finsync.infra.clients.plaid import (
    PlaidAccountModel,
    PlaidClientError,
    PlaidTransactionModel,
    RemovedTransaction,
)
from finsync.sync.builders import build_account_data, build_transaction_data
from finsync.sync.ports import TransactionProvider, TransactionStore
from finsync.sync.types import TransactionSyncResult, TransactionSyncStats

HISTORICAL_START_DATE = date(2024, 1, 1)
TRANSACTION_PAGE_SIZE = 500


class TransactionSyncLogger:
    """Handles all logging for the transaction sync engine."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def historical_start(self, item_id: int, start_date: date, end_date: date) -> None:
        self._logger.bind(item_id=item_id).info(
            "Fetching historical transactions {} to {} (item {})",
            start_date.isoformat(),
            end_date.isoformat(),
            item_id,
        )

    def historical_page(self, offset: int, fetched: int, total: int) -> None:
        self._logger.bind(offset=offset, fetched=fetched, total=total).debug(
            "Historical page at offset {}: {}/{} fetched", offset, fetched, total
        )

    def historical_complete(self, item_id: int, fetched: int, added: int) -> None:
        self._logger.bind(item_id=item_id, fetched=fetched, added=added).info(
            "Historical backfill complete: {} fetched, {} new", fetched, added
        )

    def fetch_start(self, cursor: str | None) -> None:
        cursor_label = cursor or "initial"
        self._logger.bind(cursor=cursor_label).info(
            "Fetching transactions from Plaid (cursor: {})", cursor_label
        )

    def fetch_complete(
        self, added_count: int, modified_count: int, removed_count: int, page_num: int
    ) -> None:
        self._logger.bind(
            added=added_count,
            modified=modified_count,
            removed=removed_count,
            page=page_num,
        ).info(
            "Plaid page {}: {} added, {} modified, {} removed",
            page_num,
            added_count,
            modified_count,
            removed_count,
        )

    def transaction_written(
        self, source: str, action: str, txn: PlaidTransactionModel
    ) -> None:
        self._logger.bind(
            source=source,
            action=action,
            transaction_id=txn.transaction_id,
            account_id=txn.account_id,
            amount=txn.amount,
            pending=txn.pending,
        ).debug(
            "{} [{}] {} | {} | {} (raw amount)",
            action,
            source,
            txn.date,
            txn.name,
            txn.amount,
        )

    def split_skipped(self, source: str, txn: PlaidTransactionModel) -> None:
        self._logger.bind(source=source, transaction_id=txn.transaction_id).debug(
            "Skipping split transaction [{}]: {} | {}", source, txn.date, txn.name
        )

    def removed(self, requested: int, deleted: int) -> None:
        if deleted:
            self._logger.bind(requested=requested, deleted=deleted).info(
                "Removed {} transaction(s) ({} requested, splits preserved)",
                deleted,
                requested,
            )

    def login_required(self, item_id: int, error: PlaidClientError) -> None:
        self._logger.bind(item_id=item_id, error_code=error.error_code).error(
            "Item {} requires re-authentication; status set to {}",
            item_id,
            ItemStatus.LOGIN_REQUIRED.value,
        )

    def sync_complete(self, item_id: int, stats: TransactionSyncStats) -> None:
        self._logger.bind(
            item_id=item_id,
            accounts=stats.accounts_updated,
            added=stats.transactions_added,
            modified=stats.transactions_modified,
            removed=stats.transactions_removed,
        ).info(
            "Transaction sync complete for item {}: {} added, {} modified, "
            "{} removed, {} accounts",
            item_id,
            stats.transactions_added,
            stats.transactions_modified,
            stats.transactions_removed,
            stats.accounts_updated,
        )


class TransactionSyncEngine:
    """
    Reconciles one linked item's Plaid transaction feed into the local ledger.

    A first sync (no cursor) backfills history through /transactions/get, then
    every sync walks /transactions/sync until ``has_more`` is false. Rows that
    are part of a user split are never overwritten or deleted.
    """

    def __init__(
        self,
        provider: TransactionProvider,
        store: TransactionStore,
        cache: CacheInvalidator,
        *,
        historical_start_date: date = HISTORICAL_START_DATE,
        page_size: int = TRANSACTION_PAGE_SIZE,
        today: Callable[[], date] = date.today,
        sync_logger: TransactionSyncLogger | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._cache = cache
        self._historical_start_date = historical_start_date
        self._page_size = page_size
        self._today = today
        self._logger = sync_logger or TransactionSyncLogger()

    async def sync_item_transactions(
        self,
        item_id: int,
        access_token: str,
        last_cursor: str | None,
    ) -> TransactionSyncResult:
        """
        Sync transactions for a single item.

        Args:
            item_id: Local item ID
            access_token: Plaid access token for the item
            last_cursor: Stored transactions cursor, None for a first sync

        Returns:
            TransactionSyncResult with exact stats and the cursor to persist

        Raises:
            ItemLoginRequiredError: After marking the item LOGIN_REQUIRED
            PlaidClientError: On any other provider failure
        """
        stats = TransactionSyncStats()
        accounts_written: set[str] = set()

        try:
            if not last_cursor:
                await self._sync_historical(
                    item_id, access_token, stats, accounts_written
                )
            new_cursor = await self._sync_incremental(
                item_id, access_token, last_cursor, stats, accounts_written
            )
        except PlaidClientError as e:
            if e.is_login_required:
                self._store.update_item_status(item_id, ItemStatus.LOGIN_REQUIRED)
                self._cache.invalidate(ITEM_TAGS)
                self._logger.login_required(item_id, e)
            raise

        self._logger.sync_complete(item_id, stats)
        return TransactionSyncResult(stats=stats, new_cursor=new_cursor)

    async def _sync_historical(
        self,
        item_id: int,
        access_token: str,
        stats: TransactionSyncStats,
        accounts_written: set[str],
    ) -> None:
        start_date = self._historical_start_date
        end_date = self._today()
        self._logger.historical_start(item_id, start_date, end_date)

        accounts: dict[str, PlaidAccountModel] = {}
        transactions: list[PlaidTransactionModel] = []
        offset = 0
        while True:
            page = self._provider.get_transactions(
                access_token,
                start_date=start_date,
                end_date=end_date,
                count=self._page_size,
                offset=offset,
            )
            for account in page.accounts:
                accounts[account.account_id] = account
            transactions.extend(page.transactions)
            self._logger.historical_page(
                offset, len(transactions), page.total_transactions
            )
            if not page.transactions or len(transactions) >= page.total_transactions:
                break
            offset += self._page_size

        self._upsert_accounts(
            item_id, list(accounts.values()), stats, accounts_written
        )

        added_before = stats.transactions_added
        for txn in transactions:
            existing = self._store.find_transaction_for_sync(txn.transaction_id)
            if existing is not None and existing.is_split_protected:
                self._logger.split_skipped("historical", txn)
                continue
            self._write_transaction(
                txn,
                existing_id=existing.transaction_id if existing else None,
                source="historical",
                stats=stats,
            )

        self._logger.historical_complete(
            item_id, len(transactions), stats.transactions_added - added_before
        )

    async def _sync_incremental(
        self,
        item_id: int,
        access_token: str,
        last_cursor: str | None,
        stats: TransactionSyncStats,
        accounts_written: set[str],
    ) -> str:
        cursor = last_cursor or None
        page_num = 0
        has_more = True

        while has_more:
            self._logger.fetch_start(cursor)
            page = self._provider.sync_transactions(
                access_token, cursor=cursor, count=self._page_size
            )
            page_num += 1
            self._logger.fetch_complete(
                len(page.added), len(page.modified), len(page.removed), page_num
            )

            self._upsert_accounts(item_id, page.accounts, stats, accounts_written)
            self._process_added(page.added, stats)
            self._process_modified(page.modified, stats)
            self._process_removed(page.removed, stats)

            cursor = page.next_cursor or cursor
            has_more = page.has_more

        return cursor or ""

    def _upsert_accounts(
        self,
        item_id: int,
        accounts: Sequence[PlaidAccountModel],
        stats: TransactionSyncStats,
        accounts_written: set[str],
    ) -> None:
        # Plaid repeats the item's accounts on every page; count each once.
        for account in accounts:
            self._store.upsert_account(item_id, build_account_data(account))
            if account.account_id not in accounts_written:
                accounts_written.add(account.account_id)
                stats.accounts_updated += 1

    def _process_added(
        self, added: Sequence[PlaidTransactionModel], stats: TransactionSyncStats
    ) -> None:
        for txn in added:
            existing = self._store.find_transaction_for_sync(txn.transaction_id)
            if existing is not None and existing.is_split_protected:
                self._logger.split_skipped("added", txn)
                continue
            self._write_transaction(
                txn,
                existing_id=existing.transaction_id if existing else None,
                source="added",
                stats=stats,
            )

    def _process_modified(
        self, modified: Sequence[PlaidTransactionModel], stats: TransactionSyncStats
    ) -> None:
        for txn in modified:
            existing = self._store.find_transaction_for_sync(txn.transaction_id)
            if existing is not None and existing.is_split_protected:
                self._logger.split_skipped("modified", txn)
                continue
            # A modification for a row we never stored is written as new.
            self._write_transaction(
                txn,
                existing_id=existing.transaction_id if existing else None,
                source="modified",
                stats=stats,
            )

    def _process_removed(
        self, removed: Sequence[RemovedTransaction], stats: TransactionSyncStats
    ) -> None:
        removed_ids = [r.transaction_id for r in removed if r.transaction_id]
        if not removed_ids:
            return
        deleted = self._store.delete_unprotected_transactions(removed_ids)
        stats.transactions_removed += deleted
        self._logger.removed(len(removed_ids), deleted)

    def _write_transaction(
        self,
        txn: PlaidTransactionModel,
        *,
        existing_id: int | None,
        source: str,
        stats: TransactionSyncStats,
    ) -> None:
        data = build_transaction_data(txn)
        if existing_id is None:
            transaction_id = self._store.insert_transaction(data)
            stats.transactions_added += 1
            stats.new_transaction_ids.append(transaction_id)
            self._logger.transaction_written(source, "NEW", txn)
        elif self._store.update_transaction_from_provider(existing_id, data):
            stats.transactions_modified += 1
            self._logger.transaction_written(source, "UPDATE", txn)
