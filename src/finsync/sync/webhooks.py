"""Dispatch for Plaid webhook payloads.

TRANSACTIONS webhooks trigger a single-item sync with categorization. ITEM
webhooks only update the item's status.
"""

from __future__ import annotations

from typing import Any

import loguru
from loguru import logger
from pydantic import Field

from finsync.adapters.cache import ITEM_TAGS, TRANSACTION_TAGS, CacheInvalidator
from finsync.adapters.db.models import ItemStatus, LinkedItem
from finsync.infra.clients.plaid import PlaidBaseModel
from finsync.sync.orchestrator import SyncOrchestrator, item_sync_lock
from finsync.sync.ports import ItemStore
from finsync.sync.types import TransactionSyncResult

TRANSACTION_WEBHOOK_CODES = frozenset(
    {
        "SYNC_UPDATES_AVAILABLE",
        "DEFAULT_UPDATE",
        "INITIAL_UPDATE",
        "HISTORICAL_UPDATE",
        "TRANSACTIONS_REMOVED",
    }
)

ITEM_WEBHOOK_STATUS: dict[str, ItemStatus] = {
    "ERROR": ItemStatus.ERROR,
    "PENDING_EXPIRATION": ItemStatus.PENDING_EXPIRATION,
    "PENDING_DISCONNECT": ItemStatus.PENDING_DISCONNECT,
    "LOGIN_REPAIRED": ItemStatus.OK,
}


class WebhookError(PlaidBaseModel):
    error_code: str | None = None
    error_message: str | None = None


class PlaidWebhook(PlaidBaseModel):
    webhook_type: str
    webhook_code: str
    item_id: str | None = None
    error: WebhookError | None = None
    new_transactions: int | None = None
    removed_transactions: list[str] = Field(default_factory=list)
    reason: str | None = None


class WebhookLogger:
    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def received(self, webhook: PlaidWebhook) -> None:
        self._logger.bind(
            webhook_type=webhook.webhook_type,
            webhook_code=webhook.webhook_code,
            plaid_item_id=webhook.item_id,
        ).info(
            "Processing {} webhook {} for item {}",
            webhook.webhook_type,
            webhook.webhook_code,
            webhook.item_id,
        )

    def unhandled(self, webhook: PlaidWebhook) -> None:
        self._logger.bind(
            webhook_type=webhook.webhook_type, webhook_code=webhook.webhook_code
        ).info("Unhandled webhook {}.{}", webhook.webhook_type, webhook.webhook_code)

    def unknown_item(self, plaid_item_id: str | None) -> None:
        self._logger.bind(plaid_item_id=plaid_item_id).error(
            "Item not found: {}", plaid_item_id
        )

    def status_updated(
        self, item_id: int, status: ItemStatus, webhook: PlaidWebhook
    ) -> None:
        bound = self._logger.bind(
            item_id=item_id,
            status=status.value,
            error_code=webhook.error.error_code if webhook.error else None,
            reason=webhook.reason,
        )
        if status is ItemStatus.OK:
            bound.info("Item {} login repaired", item_id)
        else:
            bound.warning("Item {} status set to {}", item_id, status.value)

    def sync_complete(self, item_id: int, result: TransactionSyncResult) -> None:
        stats = result.stats
        self._logger.bind(
            item_id=item_id,
            added=stats.transactions_added,
            modified=stats.transactions_modified,
            removed=stats.transactions_removed,
        ).info(
            "Webhook sync complete for item {}: {} added, {} modified, {} removed",
            item_id,
            stats.transactions_added,
            stats.transactions_modified,
            stats.transactions_removed,
        )


class WebhookDispatcher:
    def __init__(
        self,
        store: ItemStore,
        orchestrator: SyncOrchestrator,
        cache: CacheInvalidator,
        *,
        webhook_logger: WebhookLogger | None = None,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._cache = cache
        self._logger = webhook_logger or WebhookLogger()

    async def dispatch(self, payload: PlaidWebhook | dict[str, Any]) -> bool:
        """
        Route a webhook to its handler.

        Args:
            payload: Parsed webhook or the raw JSON body

        Returns:
            True if the webhook was acted on, False if it was ignored

        Raises:
            LookupError: For a TRANSACTIONS webhook naming an unknown item
            SyncInProgressError: If the item is already being synced
        """
        if isinstance(payload, PlaidWebhook):
            webhook = payload
        else:
            webhook = PlaidWebhook.parse(payload)
        self._logger.received(webhook)

        if (
            webhook.webhook_type == "TRANSACTIONS"
            and webhook.webhook_code in TRANSACTION_WEBHOOK_CODES
        ):
            await self.handle_transaction_webhook(webhook)
            return True
        if (
            webhook.webhook_type == "ITEM"
            and webhook.webhook_code in ITEM_WEBHOOK_STATUS
        ):
            return self.handle_item_webhook(webhook)

        self._logger.unhandled(webhook)
        return False

    async def handle_transaction_webhook(
        self, webhook: PlaidWebhook
    ) -> TransactionSyncResult:
        item = self._find_item(webhook.item_id)
        if item is None:
            self._logger.unknown_item(webhook.item_id)
            raise LookupError(f"Item not found: {webhook.item_id}")

        orchestrator = self._orchestrator
        with item_sync_lock(
            self._store, item.item_id, stale_after=orchestrator.lock_ttl
        ):
            result = await orchestrator.sync_item_transactions_with_categorization(item)
            self._store.update_transactions_cursor(item.item_id, result.new_cursor)

        self._cache.invalidate(TRANSACTION_TAGS)
        self._logger.sync_complete(item.item_id, result)
        return result

    def handle_item_webhook(self, webhook: PlaidWebhook) -> bool:
        item = self._find_item(webhook.item_id)
        if item is None:
            self._logger.unknown_item(webhook.item_id)
            return False

        status = ITEM_WEBHOOK_STATUS[webhook.webhook_code]
        self._store.update_item_status(item.item_id, status)
        self._cache.invalidate(ITEM_TAGS)
        self._logger.status_updated(item.item_id, status, webhook)
        return True

    def _find_item(self, plaid_item_id: str | None) -> LinkedItem | None:
        if not plaid_item_id:
            return None
        return self._store.get_linked_item_by_plaid_id(plaid_item_id)
