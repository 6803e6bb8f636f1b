"""Tests for the multi-item sync orchestrator."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from finsync.adapters.cache import RecordingCacheInvalidator
from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import LinkedItem
from finsync.config import Settings
from finsync.sync.orchestrator import (
    SyncInProgressError,
    SyncOrchestrator,
    item_sync_lock,
)
from finsync.sync.types import (
    InvestmentSyncStats,
    SyncOptions,
    TransactionSyncResult,
    TransactionSyncStats,
)


def _result(new_ids: list[int], cursor: str) -> TransactionSyncResult:
    return TransactionSyncResult(
        stats=TransactionSyncStats(
            transactions_added=len(new_ids), new_transaction_ids=list(new_ids)
        ),
        new_cursor=cursor,
    )


class FakeTransactionEngine:
    def __init__(self, outcomes: dict[int, TransactionSyncResult | Exception]) -> None:
        self.outcomes = outcomes
        self.calls: list[tuple[int, str | None]] = []

    async def sync_item_transactions(
        self, item_id: int, access_token: str, last_cursor: str | None
    ) -> TransactionSyncResult:
        self.calls.append((item_id, last_cursor))
        outcome = self.outcomes[item_id]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeInvestmentEngine:
    def __init__(self, holdings_added: int = 0) -> None:
        self.holdings_added = holdings_added
        self.calls: list[int] = []

    async def sync_item_investments(
        self, item_id: int, access_token: str
    ) -> InvestmentSyncStats:
        self.calls.append(item_id)
        return InvestmentSyncStats(holdings_added=self.holdings_added)


class FakeCategorizer:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[list[int]] = []

    async def categorize_and_apply(self, transaction_ids: Sequence[int]) -> int:
        self.calls.append(list(transaction_ids))
        if self.error is not None:
            raise self.error
        return len(transaction_ids)


def _items(db: DB, count: int) -> list[LinkedItem]:
    return [
        db.save_linked_item(plaid_item_id=f"item-{n}", access_token=f"access-{n}")
        for n in range(1, count + 1)
    ]


def _orchestrator(
    db: DB,
    cache: RecordingCacheInvalidator,
    transaction_engine: FakeTransactionEngine,
    *,
    categorizer: FakeCategorizer | None = None,
    investment_engine: FakeInvestmentEngine | None = None,
    settings: Settings | None = None,
) -> SyncOrchestrator:
    investments = investment_engine or FakeInvestmentEngine()
    return SyncOrchestrator(
        db,
        object(),  # type: ignore[arg-type]
        cache,
        categorizer=categorizer,
        settings=settings,
        transaction_engine=transaction_engine,  # type: ignore[arg-type]
        investment_engine=investments,  # type: ignore[arg-type]
    )


TRANSACTIONS_ONLY = SyncOptions(sync_investments=False)


def test_categorizes_new_ids_from_all_items_once(
    db: DB, cache: RecordingCacheInvalidator
) -> None:
    # setup
    first, second = _items(db, 2)
    engine = FakeTransactionEngine(
        {first.item_id: _result([1, 2], "c-1"), second.item_id: _result([3], "c-2")}
    )
    categorizer = FakeCategorizer()

    # act
    report = asyncio.run(
        _orchestrator(db, cache, engine, categorizer=categorizer).sync_items(
            TRANSACTIONS_ONLY
        )
    )

    # assert
    assert categorizer.calls == [[1, 2, 3]]
    assert report.categorized == 3
    assert report.items_synced == 2
    assert report.transactions.transactions_added == 3
    assert report.ok


def test_persists_cursor_per_item(db: DB, cache: RecordingCacheInvalidator) -> None:
    # setup
    (item,) = _items(db, 1)
    engine = FakeTransactionEngine({item.item_id: _result([], "next-cursor")})

    # act
    asyncio.run(_orchestrator(db, cache, engine).sync_items(TRANSACTIONS_ONLY))

    # assert
    stored = db.get_linked_item(item.item_id)
    assert stored is not None
    assert stored.transactions_cursor == "next-cursor"
    assert stored.last_synced_at is not None
    assert engine.calls == [(item.item_id, None)]


def test_item_failure_is_isolated(db: DB, cache: RecordingCacheInvalidator) -> None:
    # setup
    failing, healthy = _items(db, 2)
    engine = FakeTransactionEngine(
        {
            failing.item_id: RuntimeError("provider exploded"),
            healthy.item_id: _result([7, 8], "c-2"),
        }
    )
    categorizer = FakeCategorizer()

    # act
    report = asyncio.run(
        _orchestrator(db, cache, engine, categorizer=categorizer).sync_items(
            TRANSACTIONS_ONLY
        )
    )

    # assert
    assert report.items_synced == 1
    assert [f.item_id for f in report.failed_items] == [failing.item_id]
    assert report.failed_items[0].error == "provider exploded"
    assert not report.ok
    assert categorizer.calls == [[7, 8]]
    failed_item = db.get_linked_item(failing.item_id)
    assert failed_item is not None
    assert failed_item.transactions_cursor is None
    assert failed_item.sync_in_progress is False
    assert cache.invalidated == {"transactions", "accounts", "dashboard"}


def test_item_failure_propagates_when_not_isolated(
    db: DB, cache: RecordingCacheInvalidator
) -> None:
    # setup
    (item,) = _items(db, 1)
    engine = FakeTransactionEngine({item.item_id: RuntimeError("boom")})
    settings = Settings(isolate_item_failures=False)

    # act
    with pytest.raises(RuntimeError, match="boom"):
        asyncio.run(
            _orchestrator(db, cache, engine, settings=settings).sync_items(
                TRANSACTIONS_ONLY
            )
        )

    # assert
    assert db.try_acquire_sync_lock(item.item_id) is True


def test_categorization_failure_does_not_fail_sync(
    db: DB, cache: RecordingCacheInvalidator
) -> None:
    # setup
    (item,) = _items(db, 1)
    engine = FakeTransactionEngine({item.item_id: _result([1], "c-1")})
    categorizer = FakeCategorizer(error=RuntimeError("llm down"))

    # act
    report = asyncio.run(
        _orchestrator(db, cache, engine, categorizer=categorizer).sync_items(
            TRANSACTIONS_ONLY
        )
    )

    # assert
    assert report.ok
    assert report.categorized == 0
    assert report.transactions.transactions_added == 1


def test_categorization_can_be_disabled(
    db: DB, cache: RecordingCacheInvalidator
) -> None:
    # setup
    (item,) = _items(db, 1)
    engine = FakeTransactionEngine({item.item_id: _result([1], "c-1")})
    categorizer = FakeCategorizer()
    options = SyncOptions(sync_investments=False, run_ai_categorization=False)

    # act
    asyncio.run(
        _orchestrator(db, cache, engine, categorizer=categorizer).sync_items(options)
    )

    # assert
    assert categorizer.calls == []


def test_busy_item_is_skipped(db: DB, cache: RecordingCacheInvalidator) -> None:
    # setup
    busy, free = _items(db, 2)
    assert db.try_acquire_sync_lock(busy.item_id)
    engine = FakeTransactionEngine(
        {busy.item_id: _result([1], "c-1"), free.item_id: _result([], "c-2")}
    )

    # act
    report = asyncio.run(
        _orchestrator(db, cache, engine).sync_items(TRANSACTIONS_ONLY)
    )

    # assert
    assert report.skipped_items == [busy.item_id]
    assert engine.calls == [(free.item_id, None)]
    assert report.items_synced == 1


def test_abandoned_lock_is_taken_over_after_ttl(
    db: DB, cache: RecordingCacheInvalidator
) -> None:
    """A sync that died three hours ago no longer blocks the item."""
    # setup
    (item,) = _items(db, 1)
    assert db.try_acquire_sync_lock(item.item_id)
    with db.session() as session:
        session.execute(
            update(LinkedItem)
            .where(LinkedItem.item_id == item.item_id)
            .values(sync_started_at=datetime.now(UTC) - timedelta(hours=3))
        )
    engine = FakeTransactionEngine({item.item_id: _result([], "c-1")})
    settings = Settings(sync_lock_ttl_minutes=120)

    # act
    report = asyncio.run(
        _orchestrator(db, cache, engine, settings=settings).sync_items(
            TRANSACTIONS_ONLY
        )
    )

    # assert
    assert report.skipped_items == []
    assert report.items_synced == 1
    stored = db.get_linked_item(item.item_id)
    assert stored is not None
    assert stored.sync_in_progress is False


def test_resaved_item_is_no_longer_skipped(
    db: DB, cache: RecordingCacheInvalidator
) -> None:
    # setup
    (item,) = _items(db, 1)
    assert db.try_acquire_sync_lock(item.item_id)
    db.save_linked_item(plaid_item_id=item.plaid_item_id, access_token="new")
    engine = FakeTransactionEngine({item.item_id: _result([], "c-1")})

    # act
    report = asyncio.run(
        _orchestrator(db, cache, engine).sync_items(TRANSACTIONS_ONLY)
    )

    # assert
    assert report.skipped_items == []
    assert report.items_synced == 1


def test_investments_only_invalidates_investment_tags(
    db: DB, cache: RecordingCacheInvalidator
) -> None:
    # setup
    (item,) = _items(db, 1)
    engine = FakeTransactionEngine({})
    investments = FakeInvestmentEngine(holdings_added=4)
    options = SyncOptions(sync_transactions=False)

    # act
    report = asyncio.run(
        _orchestrator(
            db, cache, engine, investment_engine=investments
        ).sync_items(options)
    )

    # assert
    assert engine.calls == []
    assert investments.calls == [item.item_id]
    assert report.investments.holdings_added == 4
    assert cache.invalidated == {"holdings", "investments", "accounts", "dashboard"}


def test_item_sync_lock_rejects_second_holder(db: DB) -> None:
    # setup
    (item,) = _items(db, 1)

    # act / assert
    with item_sync_lock(db, item.item_id):
        with pytest.raises(SyncInProgressError) as exc_info:
            with item_sync_lock(db, item.item_id):
                pass
        assert exc_info.value.item_id == item.item_id

    assert db.try_acquire_sync_lock(item.item_id) is True


def test_single_item_sync_with_categorization(
    db: DB, cache: RecordingCacheInvalidator
) -> None:
    # setup
    (item,) = _items(db, 1)
    engine = FakeTransactionEngine({item.item_id: _result([5, 6], "c-9")})
    categorizer = FakeCategorizer(error=RuntimeError("llm down"))
    orchestrator = _orchestrator(db, cache, engine, categorizer=categorizer)

    # act
    result = asyncio.run(orchestrator.sync_item_transactions_with_categorization(item))

    # assert
    assert result.new_cursor == "c-9"
    assert categorizer.calls == [[5, 6]]
    stored = db.get_linked_item(item.item_id)
    assert stored is not None
    assert stored.transactions_cursor is None
