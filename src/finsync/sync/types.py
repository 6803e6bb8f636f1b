from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal


@dataclass
class TransactionSyncStats:
    """Exact tallies of rows mutated during one transaction sync."""

    accounts_updated: int = 0
    transactions_added: int = 0
    transactions_modified: int = 0
    transactions_removed: int = 0
    new_transaction_ids: list[int] = field(default_factory=list)

    def merge(self, other: TransactionSyncStats) -> None:
        self.accounts_updated += other.accounts_updated
        self.transactions_added += other.transactions_added
        self.transactions_modified += other.transactions_modified
        self.transactions_removed += other.transactions_removed
        self.new_transaction_ids.extend(other.new_transaction_ids)


@dataclass
class TransactionSyncResult:
    stats: TransactionSyncStats
    new_cursor: str


@dataclass
class InvestmentSyncStats:
    """Exact tallies of rows mutated during one investment sync."""

    securities_added: int = 0
    holdings_added: int = 0
    holdings_updated: int = 0
    holdings_removed: int = 0
    investment_transactions_added: int = 0

    def merge(self, other: InvestmentSyncStats) -> None:
        self.securities_added += other.securities_added
        self.holdings_added += other.holdings_added
        self.holdings_updated += other.holdings_updated
        self.holdings_removed += other.holdings_removed
        self.investment_transactions_added += other.investment_transactions_added


@dataclass(frozen=True)
class PriceQuote:
    """A market price for one ticker from a source other than Plaid."""

    price: Decimal
    as_of: date


@dataclass(frozen=True)
class SyncOptions:
    sync_transactions: bool = True
    sync_investments: bool = True
    run_ai_categorization: bool = True


@dataclass(frozen=True)
class FailedItem:
    item_id: int
    plaid_item_id: str
    error: str


@dataclass
class SyncReport:
    """Aggregated outcome of one orchestrated pass over all linked items."""

    transactions: TransactionSyncStats = field(default_factory=TransactionSyncStats)
    investments: InvestmentSyncStats = field(default_factory=InvestmentSyncStats)
    items_synced: int = 0
    failed_items: list[FailedItem] = field(default_factory=list)
    skipped_items: list[int] = field(default_factory=list)
    categorized: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed_items
