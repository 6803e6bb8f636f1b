from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
import os
from typing import Any, Protocol

import loguru
from loguru import logger
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from finsync.adapters.db.models import (
    FOR_REVIEW_TAG,
    SIGN_REVIEW_TAG,
    CategoryOption,
    GroupType,
    SubcategoryOption,
    TransactionForCategorization,
    TransactionHistoryItem,
)
from finsync.categorize.context import (
    CategorizationContext,
    build_categorization_prompt,
    build_model_input,
)

DEFAULT_MODEL = "gpt-5-mini"
DEFAULT_CONCURRENCY = 5
CONFIDENCE_THRESHOLD = 60
SIMILAR_LIMIT = 50
HISTORY_LIMIT = 100


class CategorizationStore(Protocol):
    def get_transaction_for_categorization(
        self, transaction_id: int
    ) -> TransactionForCategorization | None: ...

    def fetch_category_options(self) -> list[CategoryOption]: ...

    def find_similar_transactions(
        self,
        *,
        exclude_transaction_id: int,
        name: str,
        merchant_name: str | None,
        limit: int = ...,
    ) -> list[TransactionHistoryItem]: ...

    def recent_categorized_transactions(
        self, limit: int = ...
    ) -> list[TransactionHistoryItem]: ...

    def apply_categorization(
        self,
        transaction_id: int,
        *,
        category_id: int,
        subcategory_id: int | None,
        tag_names: Sequence[str] = ...,
    ) -> None: ...


class CategorizationResult(BaseModel):
    """Structured answer requested from the LLM."""

    category_id: int | None = Field(
        None, description="The category ID, or null if uncertain"
    )
    subcategory_id: int | None = Field(
        None, description="The subcategory ID, or null if uncertain"
    )
    confidence: float = Field(..., ge=0, le=100, description="Confidence 0-100")
    reasoning: str = Field(..., description="Brief explanation for the decision")


@dataclass(frozen=True)
class Categorization:
    """A categorization that passed validation and may be applied."""

    transaction_id: int
    category_id: int
    subcategory_id: int | None
    confidence: float
    reasoning: str


def build_response_schema() -> dict[str, object]:
    """JSON schema for the Responses API text.format parameter."""
    return {
        "type": "json_schema",
        "name": "categorization",
        "schema": {
            "type": "object",
            "properties": {
                "category_id": {"type": ["integer", "null"]},
                "subcategory_id": {"type": ["integer", "null"]},
                "confidence": {"type": "number"},
                "reasoning": {"type": "string"},
            },
            "required": ["category_id", "subcategory_id", "confidence", "reasoning"],
            "additionalProperties": False,
        },
        "strict": True,
    }


def extract_json_object(response_text: str) -> str:
    start = response_text.find("{")
    end = response_text.rfind("}") + 1
    if start == -1 or end <= start:
        raise ValueError(f"Could not find JSON in response: {response_text[:200]}")
    return response_text[start:end]


def extract_response_text(resp: object) -> str:
    response_text: str | None = getattr(resp, "output_text", None)
    if response_text is None:
        response_text = str(resp)
    return response_text


def detect_sign_mismatch(amount: Decimal, group_type: GroupType | None) -> bool:
    """True when the amount's sign contradicts the category's group.

    Income should be positive and expenses negative.
    """
    if group_type is GroupType.INCOME and amount < 0:
        return True
    if group_type is GroupType.EXPENSES and amount > 0:
        return True
    return False


def validate_result(
    result: CategorizationResult,
    categories: Sequence[CategoryOption],
    *,
    threshold: float = CONFIDENCE_THRESHOLD,
) -> tuple[CategoryOption, SubcategoryOption | None] | None:
    """Apply the confidence gate and check ids against the taxonomy.

    Returns:
        (category, subcategory) when accepted, None when rejected. A
        subcategory outside the chosen category is dropped, not rejected.
    """
    if result.category_id is None or result.confidence <= threshold:
        return None
    category = next(
        (c for c in categories if c.category_id == result.category_id), None
    )
    if category is None:
        return None
    return category, category.find_subcategory(result.subcategory_id)


class CategorizerLogger:
    """Handles all logging for the categorizer with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def batch_start(self, total: int, window: int) -> None:
        self._logger.bind(total=total, window=window).info(
            "Categorizing {} transaction(s), {} at a time", total, window
        )

    def batch_complete(self, total: int, accepted: int) -> None:
        self._logger.bind(total=total, accepted=accepted).info(
            "Categorization complete: {}/{} accepted", accepted, total
        )

    def not_found(self, transaction_id: int) -> None:
        self._logger.bind(transaction_id=transaction_id).warning(
            "Transaction {} not found", transaction_id
        )

    def already_categorized(self, transaction_id: int) -> None:
        self._logger.bind(transaction_id=transaction_id).debug(
            "Transaction {} already categorized, skipping", transaction_id
        )

    def api_call(self, txn: TransactionForCategorization) -> None:
        self._logger.bind(
            transaction_id=txn.transaction_id, files=len(txn.files)
        ).debug(
            "Calling OpenAI for transaction {} ({} receipt file(s))",
            txn.transaction_id,
            len(txn.files),
        )

    def result(
        self, txn: TransactionForCategorization, result: CategorizationResult
    ) -> None:
        self._logger.bind(
            transaction_id=txn.transaction_id,
            category_id=result.category_id,
            subcategory_id=result.subcategory_id,
            confidence=result.confidence,
        ).debug(
            'AI categorization for "{}": category {} ({:.0f})',
            txn.name,
            result.category_id,
            result.confidence,
        )

    def rejected(self, transaction_id: int, result: CategorizationResult) -> None:
        self._logger.bind(
            transaction_id=transaction_id,
            category_id=result.category_id,
            confidence=result.confidence,
        ).warning(
            "Skipping auto-categorization of {} (category {}, confidence {:.0f})",
            transaction_id,
            result.category_id,
            result.confidence,
        )

    def failed(self, transaction_id: int) -> None:
        self._logger.bind(transaction_id=transaction_id).exception(
            "Error categorizing transaction {}", transaction_id
        )

    def sign_mismatch(self, transaction_id: int, category_id: int) -> None:
        self._logger.bind(
            transaction_id=transaction_id, category_id=category_id
        ).warning(
            "Sign mismatch detected for transaction {}", transaction_id
        )

    def applied(self, transaction_id: int, tags: Sequence[str]) -> None:
        self._logger.bind(transaction_id=transaction_id, tags=list(tags)).debug(
            "Applied categorization to transaction {} (tags: {})",
            transaction_id,
            ", ".join(tags) or "none",
        )


class Categorizer:
    """
    LLM-backed categorization for stored transactions.

    Every result passes a confidence gate and an id check against the
    taxonomy before it can be applied. Any error while categorizing one
    transaction is logged and turned into ``None``.
    """

    def __init__(
        self,
        store: CategorizationStore,
        *,
        client: Any | None = None,
        model: str = DEFAULT_MODEL,
        concurrency: int = DEFAULT_CONCURRENCY,
        confidence_threshold: int = CONFIDENCE_THRESHOLD,
        categorizer_logger: CategorizerLogger | None = None,
    ) -> None:
        self._store = store
        self._model = model
        self._concurrency = max(1, concurrency)
        self._confidence_threshold = confidence_threshold
        self._logger = categorizer_logger or CategorizerLogger()

        if client is None:
            api_key = os.environ.get("OPENAI_API_KEY", "").strip()
            if not api_key:
                raise RuntimeError("OPENAI_API_KEY is required to call OpenAI.")
            client = AsyncOpenAI(api_key=api_key)
        self._client = client

    def load_context(self) -> CategorizationContext:
        """Fetch the taxonomy and recent history shared by a batch."""
        return CategorizationContext(
            categories=self._store.fetch_category_options(),
            recent_history=self._store.recent_categorized_transactions(HISTORY_LIMIT),
        )

    async def categorize_transaction(
        self,
        transaction_id: int,
        *,
        allow_recategorize: bool = False,
        context: CategorizationContext | None = None,
    ) -> Categorization | None:
        """
        Suggest a category for one transaction.

        Args:
            transaction_id: Local transaction ID
            allow_recategorize: Also categorize rows that already have a category
            context: Pre-fetched taxonomy and history, loaded when omitted

        Returns:
            Categorization when the model is confident and the ids are valid,
            otherwise None
        """
        try:
            txn = self._store.get_transaction_for_categorization(transaction_id)
            if txn is None:
                self._logger.not_found(transaction_id)
                return None
            if txn.category_id is not None and not allow_recategorize:
                self._logger.already_categorized(transaction_id)
                return None

            context = context or self.load_context()
            similar = self._store.find_similar_transactions(
                exclude_transaction_id=txn.transaction_id,
                name=txn.name,
                merchant_name=txn.merchant_name,
                limit=SIMILAR_LIMIT,
            )
            prompt = build_categorization_prompt(txn, context, similar)

            self._logger.api_call(txn)
            response_text = await self._call_openai_api(
                build_model_input(prompt, txn.files)
            )
            result = CategorizationResult.model_validate_json(
                extract_json_object(response_text)
            )
            self._logger.result(txn, result)
        except Exception:
            self._logger.failed(transaction_id)
            return None

        accepted = validate_result(
            result, context.categories, threshold=self._confidence_threshold
        )
        if accepted is None:
            self._logger.rejected(transaction_id, result)
            return None

        category, subcategory = accepted
        return Categorization(
            transaction_id=transaction_id,
            category_id=category.category_id,
            subcategory_id=subcategory.subcategory_id if subcategory else None,
            confidence=result.confidence,
            reasoning=result.reasoning,
        )

    async def categorize_transactions(
        self,
        transaction_ids: Sequence[int],
        *,
        allow_recategorize: bool = False,
    ) -> list[Categorization]:
        """
        Categorize many transactions with a shared context.

        Calls run concurrently in fixed windows; each window finishes before
        the next starts.

        Returns:
            Accepted categorizations in input order
        """
        ids = list(transaction_ids)
        if not ids:
            return []

        context = self.load_context()
        self._logger.batch_start(len(ids), self._concurrency)

        accepted: list[Categorization] = []
        for start in range(0, len(ids), self._concurrency):
            window = ids[start : start + self._concurrency]
            results = await asyncio.gather(
                *(
                    self.categorize_transaction(
                        transaction_id,
                        allow_recategorize=allow_recategorize,
                        context=context,
                    )
                    for transaction_id in window
                )
            )
            accepted.extend(r for r in results if r is not None)

        self._logger.batch_complete(len(ids), len(accepted))
        return accepted

    def apply_categorization(
        self,
        transaction_id: int,
        category_id: int,
        subcategory_id: int | None,
        *,
        skip_review_tag: bool = False,
        categories: Sequence[CategoryOption] | None = None,
    ) -> list[str]:
        """
        Persist a category and attach review tags.

        ``for-review`` marks AI-made decisions unless suppressed.
        ``sign-review`` is added whenever the amount's sign contradicts the
        category's group.

        Returns:
            Names of the tags attached
        """
        tags: list[str] = [] if skip_review_tag else [FOR_REVIEW_TAG]

        txn = self._store.get_transaction_for_categorization(transaction_id)
        if categories is None:
            categories = self._store.fetch_category_options()
        category = next((c for c in categories if c.category_id == category_id), None)
        if txn is not None and category is not None:
            if detect_sign_mismatch(txn.amount, category.group_type):
                tags.append(SIGN_REVIEW_TAG)
                self._logger.sign_mismatch(transaction_id, category_id)

        self._store.apply_categorization(
            transaction_id,
            category_id=category_id,
            subcategory_id=subcategory_id,
            tag_names=tags,
        )
        self._logger.applied(transaction_id, tags)
        return tags

    async def categorize_and_apply(
        self,
        transaction_ids: Sequence[int],
        *,
        skip_review_tag: bool = False,
    ) -> int:
        """Categorize a batch and apply every accepted result.

        A result that fails to apply is logged and skipped; the rest of the
        batch is still applied.

        Returns:
            Number of categorizations applied
        """
        results = await self.categorize_transactions(transaction_ids)
        if not results:
            return 0
        categories = self._store.fetch_category_options()
        applied = 0
        for result in results:
            try:
                self.apply_categorization(
                    result.transaction_id,
                    result.category_id,
                    result.subcategory_id,
                    skip_review_tag=skip_review_tag,
                    categories=categories,
                )
            except Exception:
                self._logger.failed(result.transaction_id)
                continue
            applied += 1
        return applied

    async def _call_openai_api(self, model_input: str | list[dict[str, Any]]) -> str:
        resp = await self._client.responses.create(
            model=self._model,
            input=model_input,
            extra_body={"text": {"format": build_response_schema()}},
        )
        return extract_response_text(resp)
