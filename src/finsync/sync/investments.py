from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import date

import loguru
from loguru import logger

from finsync.infra.clients.plaid import (
    HoldingModel,
    InvestmentTransactionModel,
    SecurityModel,
)
from finsync.sync.builders import (
    build_account_data,
    build_holding_data,
    build_investment_transaction_data,
    build_security_data,
)
from finsync.sync.ports import InvestmentProvider, InvestmentStore, PriceSource
from finsync.sync.transactions import HISTORICAL_START_DATE, TRANSACTION_PAGE_SIZE
from finsync.sync.types import InvestmentSyncStats, PriceQuote


def holding_key(plaid_account_id: str, plaid_security_id: str) -> str:
    return f"{plaid_account_id}_{plaid_security_id}"


class InvestmentSyncLogger:
    """Handles all logging for the investment sync engine."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def sync_start(self, item_id: int) -> None:
        self._logger.bind(item_id=item_id).info(
            "Syncing investments for item {}", item_id
        )

    def security_added(self, security: SecurityModel) -> None:
        label = security.ticker_symbol or security.name or "Security"
        self._logger.bind(security_id=security.security_id).debug(
            "Security added: {}", label
        )

    def holding_removed(self, holding_id: int, key: str) -> None:
        self._logger.bind(holding_id=holding_id, key=key).debug(
            "Holding {} removed ({} absent from snapshot)", holding_id, key
        )

    def holding_skipped(self, holding: HoldingModel, reason: str) -> None:
        self._logger.bind(
            account_id=holding.account_id, security_id=holding.security_id
        ).warning("Skipping holding {}: {}", holding.security_id, reason)

    def price_preserved(self, holding: HoldingModel) -> None:
        self._logger.bind(
            account_id=holding.account_id, security_id=holding.security_id
        ).debug("Keeping stored price for {}; Plaid reported none", holding.security_id)

    def price_quoted(
        self, holding: HoldingModel, ticker: str, quote: PriceQuote
    ) -> None:
        self._logger.bind(
            account_id=holding.account_id, security_id=holding.security_id
        ).debug(
            "Using external price {} for {} as of {}", quote.price, ticker, quote.as_of
        )

    def price_lookup_failed(self, ticker: str) -> None:
        self._logger.bind(ticker=ticker).exception(
            "External price lookup failed for {}; falling back to stored price", ticker
        )

    def investment_transaction_added(self, txn: InvestmentTransactionModel) -> None:
        self._logger.bind(
            investment_transaction_id=txn.investment_transaction_id, type=txn.type
        ).debug(
            "Investment transaction added: {} | {} | {}",
            txn.date,
            txn.type,
            txn.name or "Investment Transaction",
        )

    def sync_complete(self, item_id: int, stats: InvestmentSyncStats) -> None:
        self._logger.bind(
            item_id=item_id,
            securities_added=stats.securities_added,
            holdings_added=stats.holdings_added,
            holdings_updated=stats.holdings_updated,
            holdings_removed=stats.holdings_removed,
            investment_transactions_added=stats.investment_transactions_added,
        ).info(
            "Investment sync complete for item {}: {} securities, holdings "
            "+{} ~{} -{}, {} investment transactions",
            item_id,
            stats.securities_added,
            stats.holdings_added,
            stats.holdings_updated,
            stats.holdings_removed,
            stats.investment_transactions_added,
        )


class InvestmentSyncEngine:
    """
    Reconciles one linked item's securities, holdings and investment
    transactions against the latest Plaid snapshot.

    Holdings are diffed against the full snapshot on every run, so anything
    Plaid no longer reports is deleted. A stored positive price survives a
    snapshot that reports no price. When a price source is given it is asked
    first for any holding Plaid reports without a price.
    """

    def __init__(
        self,
        provider: InvestmentProvider,
        store: InvestmentStore,
        *,
        historical_start_date: date = HISTORICAL_START_DATE,
        page_size: int = TRANSACTION_PAGE_SIZE,
        today: Callable[[], date] = date.today,
        price_source: PriceSource | None = None,
        sync_logger: InvestmentSyncLogger | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._price_source = price_source
        self._historical_start_date = historical_start_date
        self._page_size = page_size
        self._today = today
        self._logger = sync_logger or InvestmentSyncLogger()

    async def sync_item_investments(
        self, item_id: int, access_token: str
    ) -> InvestmentSyncStats:
        """
        Sync investments for a single item.

        Args:
            item_id: Local item ID
            access_token: Plaid access token for the item

        Returns:
            InvestmentSyncStats with exact tallies

        Raises:
            PlaidClientError: On any provider failure
        """
        stats = InvestmentSyncStats()
        self._logger.sync_start(item_id)

        snapshot = self._provider.get_investment_holdings(access_token)
        for account in snapshot.accounts:
            self._store.upsert_account(item_id, build_account_data(account))

        self._sync_securities(snapshot.securities, stats)
        self._remove_missing_holdings(item_id, snapshot.holdings, stats)
        tickers = {
            s.security_id: s.ticker_symbol
            for s in snapshot.securities
            if s.ticker_symbol
        }
        self._upsert_holdings(snapshot.holdings, tickers, stats)
        await self._sync_investment_transactions(access_token, stats)

        self._logger.sync_complete(item_id, stats)
        return stats

    def _sync_securities(
        self, securities: Sequence[SecurityModel], stats: InvestmentSyncStats
    ) -> None:
        for security in securities:
            outcome = self._store.upsert_security(build_security_data(security))
            if outcome.created:
                stats.securities_added += 1
                self._logger.security_added(security)

    def _remove_missing_holdings(
        self,
        item_id: int,
        holdings: Sequence[HoldingModel],
        stats: InvestmentSyncStats,
    ) -> None:
        snapshot_keys = {holding_key(h.account_id, h.security_id) for h in holdings}
        missing = [
            ref
            for ref in self._store.list_holdings_for_item(item_id)
            if holding_key(ref.plaid_account_id, ref.plaid_security_id)
            not in snapshot_keys
        ]
        if not missing:
            return
        stats.holdings_removed += self._store.delete_holdings(
            [ref.holding_id for ref in missing]
        )
        for ref in missing:
            self._logger.holding_removed(
                ref.holding_id,
                holding_key(ref.plaid_account_id, ref.plaid_security_id),
            )

    def _upsert_holdings(
        self,
        holdings: Sequence[HoldingModel],
        tickers: dict[str, str],
        stats: InvestmentSyncStats,
    ) -> None:
        for holding in holdings:
            account_id = self._store.get_account_id_by_plaid_id(holding.account_id)
            if account_id is None:
                self._logger.holding_skipped(holding, "unknown account")
                continue
            security_id = self._store.get_security_id_by_plaid_id(holding.security_id)
            if security_id is None:
                self._logger.holding_skipped(holding, "unknown security")
                continue

            existing = self._store.find_holding(account_id, security_id)
            fallback_price = existing.institution_price if existing else None
            fallback_as_of = existing.institution_price_as_of if existing else None
            quote = None
            if not holding.institution_price:
                quote = self._quote(holding, tickers.get(holding.security_id))
            if quote is not None:
                fallback_price, fallback_as_of = quote.price, quote.as_of

            data = build_holding_data(
                holding,
                account_id=account_id,
                security_id=security_id,
                existing_price=fallback_price,
                existing_price_as_of=fallback_as_of,
            )
            if quote is None and not holding.institution_price:
                if fallback_price is not None and fallback_price > 0:
                    self._logger.price_preserved(holding)

            outcome = self._store.upsert_holding(data)
            if outcome.created:
                stats.holdings_added += 1
            else:
                stats.holdings_updated += 1

    def _quote(self, holding: HoldingModel, ticker: str | None) -> PriceQuote | None:
        if self._price_source is None or not ticker:
            return None
        try:
            quote = self._price_source.latest_price(ticker)
        except Exception:
            self._logger.price_lookup_failed(ticker)
            return None
        if quote is None or quote.price <= 0:
            return None
        self._logger.price_quoted(holding, ticker, quote)
        return quote

    async def _sync_investment_transactions(
        self, access_token: str, stats: InvestmentSyncStats
    ) -> None:
        offset = 0
        fetched = 0
        while True:
            page = self._provider.get_investment_transactions(
                access_token,
                start_date=self._historical_start_date,
                end_date=self._today(),
                count=self._page_size,
                offset=offset,
            )
            for security in page.securities:
                outcome = self._store.upsert_security(build_security_data(security))
                if outcome.created:
                    stats.securities_added += 1
                    self._logger.security_added(security)

            for txn in page.investment_transactions:
                self._write_investment_transaction(txn, stats)

            fetched += len(page.investment_transactions)
            if (
                not page.investment_transactions
                or fetched >= page.total_investment_transactions
            ):
                break
            offset += self._page_size

    def _write_investment_transaction(
        self, txn: InvestmentTransactionModel, stats: InvestmentSyncStats
    ) -> None:
        account_id = self._store.get_account_id_by_plaid_id(txn.account_id)
        if account_id is None:
            return
        # Cash movements carry no security.
        security_id = (
            self._store.get_security_id_by_plaid_id(txn.security_id)
            if txn.security_id
            else None
        )
        outcome = self._store.upsert_investment_transaction(
            build_investment_transaction_data(
                txn, account_id=account_id, security_id=security_id
            )
        )
        if outcome.created:
            stats.investment_transactions_added += 1
            self._logger.investment_transaction_added(txn)
