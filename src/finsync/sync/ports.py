"""Collaborator contracts for the sync and categorization core.

The engines depend on these protocols rather than on concrete clients, so
tests can pass small fakes. `PlaidClient` and `DB` satisfy them as-is.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date, timedelta
from typing import Any, Protocol

from finsync.adapters.db.models import (
    Holding,
    HoldingRef,
    ItemStatus,
    LinkedItem,
    Transaction,
    UpsertOutcome,
)
from finsync.infra.clients.plaid import (
    InvestmentsHoldingsGetResponse,
    InvestmentsTransactionsGetResponse,
    TransactionsGetResponse,
    TransactionsSyncResponse,
)
from finsync.sync.types import PriceQuote


class TransactionProvider(Protocol):
    def get_transactions(
        self,
        access_token: str,
        *,
        start_date: date,
        end_date: date,
        count: int = ...,
        offset: int = ...,
    ) -> TransactionsGetResponse: ...

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = ...,
        count: int = ...,
    ) -> TransactionsSyncResponse: ...


class InvestmentProvider(Protocol):
    def get_investment_holdings(
        self, access_token: str
    ) -> InvestmentsHoldingsGetResponse: ...

    def get_investment_transactions(
        self,
        access_token: str,
        *,
        start_date: date,
        end_date: date,
        count: int = ...,
        offset: int = ...,
    ) -> InvestmentsTransactionsGetResponse: ...


class Provider(TransactionProvider, InvestmentProvider, Protocol):
    pass


class PriceSource(Protocol):
    """Latest market prices for holdings Plaid reports without one."""

    def latest_price(self, ticker: str) -> PriceQuote | None: ...


class TransactionStore(Protocol):
    def upsert_account(
        self, item_id: int, data: Mapping[str, Any]
    ) -> UpsertOutcome: ...

    def find_transaction_for_sync(self, external_id: str) -> Transaction | None: ...

    def insert_transaction(self, data: Mapping[str, Any]) -> int: ...

    def update_transaction_from_provider(
        self, transaction_id: int, data: Mapping[str, Any]
    ) -> bool: ...

    def delete_unprotected_transactions(self, external_ids: Sequence[str]) -> int: ...

    def update_item_status(self, item_id: int, status: ItemStatus) -> None: ...


class InvestmentStore(Protocol):
    def upsert_account(
        self, item_id: int, data: Mapping[str, Any]
    ) -> UpsertOutcome: ...

    def get_account_id_by_plaid_id(self, plaid_account_id: str) -> int | None: ...

    def upsert_security(self, data: Mapping[str, Any]) -> UpsertOutcome: ...

    def get_security_id_by_plaid_id(self, plaid_security_id: str) -> int | None: ...

    def list_holdings_for_item(self, item_id: int) -> list[HoldingRef]: ...

    def delete_holdings(self, holding_ids: Sequence[int]) -> int: ...

    def find_holding(self, account_id: int, security_id: int) -> Holding | None: ...

    def upsert_holding(self, data: Mapping[str, Any]) -> UpsertOutcome: ...

    def upsert_investment_transaction(
        self, data: Mapping[str, Any]
    ) -> UpsertOutcome: ...


class TransactionCategorizer(Protocol):
    async def categorize_and_apply(self, transaction_ids: Sequence[int]) -> int: ...


class ItemStore(Protocol):
    def list_linked_items(self) -> list[LinkedItem]: ...

    def get_linked_item(self, item_id: int) -> LinkedItem | None: ...

    def get_linked_item_by_plaid_id(self, plaid_item_id: str) -> LinkedItem | None: ...

    def update_item_status(self, item_id: int, status: ItemStatus) -> None: ...

    def update_transactions_cursor(self, item_id: int, cursor: str) -> None: ...

    def try_acquire_sync_lock(
        self, item_id: int, *, stale_after: timedelta | None = None
    ) -> bool: ...

    def release_sync_lock(self, item_id: int) -> None: ...


class SyncStore(ItemStore, TransactionStore, InvestmentStore, Protocol):
    pass
