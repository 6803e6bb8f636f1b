"""User-initiated transaction splits."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import loguru
from loguru import logger

from finsync.adapters.db.models import Transaction

SPLIT_SUM_TOLERANCE = Decimal("0.01")
AI_SPLIT_TAG = "ai-split"


class SplitError(ValueError):
    """The requested split cannot be applied."""


@dataclass(frozen=True)
class SplitLine:
    amount: Decimal
    category_id: int | None = None
    subcategory_id: int | None = None
    notes: str | None = None


class SplitStore(Protocol):
    def get_transaction(self, transaction_id: int) -> Transaction | None: ...

    def split_transaction(
        self,
        parent_id: int,
        children: Sequence[dict],
        *,
        tag_names: Sequence[str] = ...,
    ) -> list[int]: ...


def validate_split(parent: Transaction, lines: Sequence[SplitLine]) -> None:
    """
    Check that a split can be applied to ``parent``.

    Raises:
        SplitError: If the parent is already split or is itself a child, fewer
            than two lines are given, or the lines do not sum to the parent
            amount within one cent
    """
    if parent.is_split:
        raise SplitError(f"Transaction {parent.transaction_id} is already split")
    if parent.parent_transaction_id is not None:
        raise SplitError(
            f"Transaction {parent.transaction_id} is part of another split"
        )
    if len(lines) < 2:
        raise SplitError("A split needs at least two lines")

    total = sum((line.amount for line in lines), Decimal("0"))
    if abs(total - parent.amount) > SPLIT_SUM_TOLERANCE:
        raise SplitError(
            f"Split total {total} does not match transaction amount {parent.amount}"
        )


def split_transaction(
    store: SplitStore,
    parent_id: int,
    lines: Sequence[SplitLine],
    *,
    tag_name: str | None = None,
    logger_instance: loguru.Logger = logger,
) -> list[int]:
    """
    Break a transaction into child transactions with their own categories.

    Line amounts use the stored sign convention, so an expense is split into
    negative lines.

    Args:
        store: Persistence port
        parent_id: Local ID of the transaction to split
        lines: One entry per child
        tag_name: Optional tag for the parent, e.g. ``ai-split``

    Returns:
        Local IDs of the created children

    Raises:
        SplitError: If the transaction is unknown or the split is invalid
    """
    parent = store.get_transaction(parent_id)
    if parent is None:
        raise SplitError(f"Transaction {parent_id} not found")
    validate_split(parent, lines)

    children = [
        {
            "amount": line.amount,
            "category_id": line.category_id,
            "subcategory_id": line.subcategory_id,
            "notes": line.notes,
        }
        for line in lines
    ]
    child_ids = store.split_transaction(
        parent_id, children, tag_names=[tag_name] if tag_name else []
    )
    logger_instance.bind(transaction_id=parent_id, children=len(child_ids)).info(
        "Split transaction {} into {} part(s)", parent_id, len(child_ids)
    )
    return child_ids
