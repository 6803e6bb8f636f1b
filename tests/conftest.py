"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
from decimal import Decimal
import itertools
from typing import Any

import pytest

from finsync.adapters.cache import RecordingCacheInvalidator
from finsync.adapters.db.facade import DB


@pytest.fixture
def db() -> DB:
    """Fresh in-memory database with the schema created.

    SQLite keeps one connection per thread for ``:memory:`` URLs, so every
    session opened by the facade in a test sees the same database.
    """
    database = DB("sqlite:///:memory:")
    database.create_schema()
    return database


@pytest.fixture
def cache() -> RecordingCacheInvalidator:
    return RecordingCacheInvalidator()


@pytest.fixture
def add_transaction(db: DB) -> Callable[..., int]:
    """Factory inserting transactions under a single seeded account.

    Each call gets its own external ID and a later display date than the one
    before, so newest-first queries return rows in reverse insertion order.
    """
    item = db.save_linked_item(plaid_item_id="item-seed", access_token="access-seed")
    db.upsert_account(
        item.item_id, {"plaid_account_id": "acc-seed", "name": "Checking"}
    )
    counter = itertools.count(1)

    def _add(
        *,
        name: str = "Blue Bottle Coffee",
        amount: str = "-12.50",
        merchant_name: str | None = None,
        **fields: Any,
    ) -> int:
        n = next(counter)
        data: dict[str, Any] = {
            "external_id": f"seed-{n}",
            "plaid_account_id": "acc-seed",
            "amount": Decimal(amount),
            "date": date(2024, 3, 1),
            "display_datetime": f"2024-03-01T00:{n:02d}:00Z",
            "name": name,
            "merchant_name": merchant_name,
            **fields,
        }
        return db.insert_transaction(data)

    return _add


@pytest.fixture(autouse=True)
def _no_openai_key(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests from constructing a real OpenAI client by accident."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
