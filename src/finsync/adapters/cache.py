"""Tag-based cache invalidation for the read side.

The sync core only emits tags; whatever serves reads decides what a tag
maps to.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Literal, Protocol

import loguru
from loguru import logger

CacheTag = Literal[
    "transactions", "accounts", "holdings", "investments", "items", "dashboard"
]

TRANSACTION_TAGS: tuple[CacheTag, ...] = ("transactions", "accounts", "dashboard")
INVESTMENT_TAGS: tuple[CacheTag, ...] = (
    "holdings",
    "investments",
    "accounts",
    "dashboard",
)
ITEM_TAGS: tuple[CacheTag, ...] = ("items",)


class CacheInvalidator(Protocol):
    def invalidate(self, tags: Iterable[CacheTag]) -> None: ...


class RecordingCacheInvalidator:
    """Invalidator that logs and remembers every batch of tags it receives.

    Used by the CLI, where there is no read cache to evict, and by tests.
    """

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance
        self.calls: list[tuple[CacheTag, ...]] = []

    @property
    def invalidated(self) -> set[CacheTag]:
        return {tag for call in self.calls for tag in call}

    def invalidate(self, tags: Iterable[CacheTag]) -> None:
        batch = tuple(dict.fromkeys(tags))
        if not batch:
            return
        self.calls.append(batch)
        self._logger.bind(tags=list(batch)).debug(
            "Invalidated cache tags: {}", ", ".join(batch)
        )
