"""Receipt "smart analysis": split, recategorize or confirm a transaction.

With receipts attached the model may propose splitting the transaction into
category groups. Without receipts only recategorize or confirm are accepted.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
import os
from typing import Annotated, Any, Literal

import loguru
from loguru import logger
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from finsync.adapters.db.models import CategoryOption, TransactionForCategorization
from finsync.categorize.categorizer import (
    DEFAULT_MODEL,
    HISTORY_LIMIT,
    SIMILAR_LIMIT,
    CategorizationStore,
    extract_json_object,
    extract_response_text,
)
from finsync.categorize.context import (
    build_categories_context,
    build_history_context,
    build_model_input,
    build_similar_transactions_context,
    format_amount,
    transaction_type,
)

SPLIT_TOLERANCE = Decimal("0.02")


class SuggestedSplit(BaseModel):
    category_id: int = Field(..., description="Exact category ID from the list")
    subcategory_id: int | None = Field(
        None, description="Exact subcategory ID, or null if none applies"
    )
    amount: float = Field(..., gt=0, description="Total for this category group")
    description: str = Field(..., description="Items in this group")
    reasoning: str = Field(..., description="Why these items share a category")


class SplitAnalysis(BaseModel):
    type: Literal["split"]
    splits: list[SuggestedSplit] = Field(..., min_length=2)
    confidence: float = Field(..., ge=0, le=100)
    notes: str | None = None


class RecategorizeAnalysis(BaseModel):
    type: Literal["recategorize"]
    category_id: int
    subcategory_id: int | None = None
    confidence: float = Field(..., ge=0, le=100)
    reasoning: str


class ConfirmAnalysis(BaseModel):
    type: Literal["confirm"]
    confidence: float = Field(..., ge=0, le=100)
    message: str


ReceiptAnalysis = Annotated[
    SplitAnalysis | RecategorizeAnalysis | ConfirmAnalysis,
    Field(discriminator="type"),
]


class ReceiptAnalysisEnvelope(BaseModel):
    result: ReceiptAnalysis


def _split_schema() -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "type": {"type": "string", "enum": ["split"]},
            "splits": {
                "type": "array",
                "minItems": 2,
                "items": {
                    "type": "object",
                    "properties": {
                        "category_id": {"type": "integer"},
                        "subcategory_id": {"type": ["integer", "null"]},
                        "amount": {"type": "number"},
                        "description": {"type": "string"},
                        "reasoning": {"type": "string"},
                    },
                    "required": [
                        "category_id",
                        "subcategory_id",
                        "amount",
                        "description",
                        "reasoning",
                    ],
                    "additionalProperties": False,
                },
            },
            "confidence": {"type": "number"},
            "notes": {"type": ["string", "null"]},
        },
        "required": ["type", "splits", "confidence", "notes"],
        "additionalProperties": False,
    }


def build_analysis_schema() -> dict[str, object]:
    """JSON schema for the Responses API text.format parameter.

    The union is wrapped in an object because the API requires an object at
    the top level.
    """
    recategorize = {
        "type": "object",
        "properties": {
            "type": {"type": "string", "enum": ["recategorize"]},
            "category_id": {"type": "integer"},
            "subcategory_id": {"type": ["integer", "null"]},
            "confidence": {"type": "number"},
            "reasoning": {"type": "string"},
        },
        "required": [
            "type",
            "category_id",
            "subcategory_id",
            "confidence",
            "reasoning",
        ],
        "additionalProperties": False,
    }
    confirm = {
        "type": "object",
        "properties": {
            "type": {"type": "string", "enum": ["confirm"]},
            "confidence": {"type": "number"},
            "message": {"type": "string"},
        },
        "required": ["type", "confidence", "message"],
        "additionalProperties": False,
    }
    return {
        "type": "json_schema",
        "name": "receipt_analysis",
        "schema": {
            "type": "object",
            "properties": {
                "result": {"anyOf": [_split_schema(), recategorize, confirm]}
            },
            "required": ["result"],
            "additionalProperties": False,
        },
        "strict": True,
    }


def describe_current_category(
    txn: TransactionForCategorization, categories: Sequence[CategoryOption]
) -> str:
    category = next(
        (c for c in categories if c.category_id == txn.category_id), None
    )
    if txn.category_id is None or category is None:
        return "None (Uncategorized)"
    label = f"{category.name} (ID: {category.category_id})"
    subcategory = category.find_subcategory(txn.subcategory_id)
    if subcategory is not None:
        label += f" > {subcategory.name} (ID: {subcategory.subcategory_id})"
    return label


def _details_block(txn: TransactionForCategorization, current: str) -> str:
    return "\n".join(
        [
            f"  Name: {txn.name}",
            f"  Merchant: {txn.merchant_name or 'N/A'}",
            f"  Total Amount: {format_amount(txn.amount)} "
            f"({transaction_type(txn.amount)})",
            f"  Date: {txn.date.isoformat()}",
            f"  Plaid Category: {txn.provider_category or 'N/A'} / "
            f"{txn.provider_subcategory or 'N/A'}",
            f"  Notes: {txn.notes or 'N/A'}",
            f"  Current Category: {current}",
        ]
    )


def build_analysis_prompt(
    txn: TransactionForCategorization,
    *,
    categories_context: str,
    similar_context: str,
    history_context: str,
    current_category: str,
) -> str:
    """Render the analysis prompt; receipts enable the split outcome."""
    total = format_amount(txn.amount)
    shared = f"""\
TRANSACTION DETAILS:
{_details_block(txn, current_category)}

AVAILABLE CATEGORIES:
{categories_context}

SIMILAR TRANSACTIONS (same merchant/amount/description):
{similar_context}

RECENT TRANSACTION HISTORY (Last {HISTORY_LIMIT} Transactions):
{history_context}
"""
    if txn.files:
        return f"""\
You are an expert financial receipt analyzer. Your task is to analyze receipt \
image(s) and determine the BEST action for this transaction.

{shared}
YOUR DECISION PROCESS:
1. Examine all items on the receipt(s) carefully
2. Identify distinct categories among the items:

   SCENARIO A: 2 or more distinct categories found on receipt
   -> Return type "split"
   -> Group items by category and sum amounts, one split per category
   -> MUST have at least 2 splits

   SCENARIO B: Only 1 category found on receipt
   -> Compare with the current category ({current_category})
   -> If a different category is more appropriate, return type "recategorize"
   -> Otherwise return type "confirm"

CRITICAL RULES:
- NEVER return a split with only 1 category
- Be conservative: only suggest changes with high confidence (>70%)
- Respect the user's categorization patterns from similar transactions
- Always use exact category/subcategory IDs from the available list
- For splits, the sum must equal the transaction total ({total})
- Include tax and fees proportionally in splits or as a separate category

Analyze the receipt(s) and provide your recommended action."""

    return f"""\
You are an expert financial transaction categorization analyst. Your task is \
to analyze transaction metadata and determine if a better category exists.

{shared}
YOUR DECISION PROCESS:
No receipt available - analyze based on transaction metadata only.

1. Examine transaction details (name, merchant, amount, plaid category)
2. Review similar transactions and prioritize the user's patterns
3. Determine the best action:

   SCENARIO A: Better category exists
   -> Return type "recategorize" with reasoning
   -> High confidence (>75%) required since there is no receipt to verify

   SCENARIO B: Current category is appropriate
   -> Return type "confirm"

CRITICAL RULES:
- WITHOUT a receipt, NEVER suggest a split
- Require high confidence (>75%) for recategorization without a receipt
- Always use exact category/subcategory IDs from the available list

Analyze the transaction and provide your recommended action."""


class ReceiptAnalyzerLogger:
    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def start(self, txn: TransactionForCategorization) -> None:
        mode = "with" if txn.files else "without"
        self._logger.bind(
            transaction_id=txn.transaction_id, files=len(txn.files)
        ).info(
            "Smart analysis {} receipt for transaction {}", mode, txn.transaction_id
        )

    def not_found(self, transaction_id: int) -> None:
        self._logger.bind(transaction_id=transaction_id).error(
            "Transaction {} not found", transaction_id
        )

    def split_without_receipt(self, transaction_id: int) -> None:
        self._logger.bind(transaction_id=transaction_id).error(
            "Model suggested a split for transaction {} without receipt files; "
            "rejecting",
            transaction_id,
        )

    def split_total_mismatch(
        self, transaction_id: int, total: Decimal, amount: Decimal
    ) -> None:
        self._logger.bind(
            transaction_id=transaction_id, split_total=str(total), amount=str(amount)
        ).warning(
            "Split amounts ({}) don't match transaction amount ({})",
            f"${total:.2f}",
            f"${amount:.2f}",
        )

    def invalid_category(self, transaction_id: int, category_id: int) -> None:
        self._logger.bind(
            transaction_id=transaction_id, category_id=category_id
        ).error("Invalid category ID {} returned by model", category_id)

    def invalid_subcategory(
        self, category: CategoryOption, subcategory_id: int
    ) -> None:
        self._logger.bind(
            category_id=category.category_id, subcategory_id=subcategory_id
        ).warning(
            'Invalid subcategory ID {} for category "{}", ignoring subcategory',
            subcategory_id,
            category.name,
        )

    def complete(self, transaction_id: int, analysis: BaseModel) -> None:
        outcome = getattr(analysis, "type", "unknown")
        confidence = getattr(analysis, "confidence", None)
        self._logger.bind(
            transaction_id=transaction_id, outcome=outcome, confidence=confidence
        ).info(
            "Smart analysis complete ({}) for transaction {}",
            outcome.upper(),
            transaction_id,
        )

    def failed(self, transaction_id: int) -> None:
        self._logger.bind(transaction_id=transaction_id).exception(
            "Error in smart receipt analysis for transaction {}", transaction_id
        )


class ReceiptAnalyzer:
    """Suggests whether to split, recategorize or keep a transaction's category."""

    def __init__(
        self,
        store: CategorizationStore,
        *,
        client: Any | None = None,
        model: str = DEFAULT_MODEL,
        analyzer_logger: ReceiptAnalyzerLogger | None = None,
    ) -> None:
        self._store = store
        self._model = model
        self._logger = analyzer_logger or ReceiptAnalyzerLogger()

        if client is None:
            api_key = os.environ.get("OPENAI_API_KEY", "").strip()
            if not api_key:
                raise RuntimeError("OPENAI_API_KEY is required to call OpenAI.")
            client = AsyncOpenAI(api_key=api_key)
        self._client = client

    async def analyze(
        self, transaction_id: int
    ) -> SplitAnalysis | RecategorizeAnalysis | ConfirmAnalysis | None:
        """
        Analyze a transaction and its attached receipts.

        Args:
            transaction_id: Local transaction ID

        Returns:
            The validated analysis, or None if the transaction is missing, the
            model failed, a split was proposed without receipts, or a
            category ID is unknown
        """
        try:
            txn = self._store.get_transaction_for_categorization(transaction_id)
            if txn is None:
                self._logger.not_found(transaction_id)
                return None

            self._logger.start(txn)
            categories = self._store.fetch_category_options()
            history = self._store.recent_categorized_transactions(HISTORY_LIMIT)
            similar = self._store.find_similar_transactions(
                exclude_transaction_id=txn.transaction_id,
                name=txn.name,
                merchant_name=txn.merchant_name,
                limit=SIMILAR_LIMIT,
            )
            prompt = build_analysis_prompt(
                txn,
                categories_context=build_categories_context(categories),
                similar_context=build_similar_transactions_context(similar),
                history_context=build_history_context(history),
                current_category=describe_current_category(txn, categories),
            )

            resp = await self._client.responses.create(
                model=self._model,
                input=build_model_input(prompt, txn.files),
                extra_body={"text": {"format": build_analysis_schema()}},
            )
            envelope = ReceiptAnalysisEnvelope.model_validate_json(
                extract_json_object(extract_response_text(resp))
            )
        except Exception:
            self._logger.failed(transaction_id)
            return None

        analysis = envelope.result
        if isinstance(analysis, SplitAnalysis):
            if not self._validate_split(txn, analysis, categories):
                return None
        elif isinstance(analysis, RecategorizeAnalysis):
            category = self._resolve_category(
                transaction_id, analysis.category_id, categories
            )
            if category is None:
                return None
            analysis.subcategory_id = self._resolve_subcategory(
                category, analysis.subcategory_id
            )

        self._logger.complete(transaction_id, analysis)
        return analysis

    def _validate_split(
        self,
        txn: TransactionForCategorization,
        analysis: SplitAnalysis,
        categories: Sequence[CategoryOption],
    ) -> bool:
        if not txn.files:
            self._logger.split_without_receipt(txn.transaction_id)
            return False

        amount = abs(txn.amount)
        total = sum((Decimal(str(s.amount)) for s in analysis.splits), Decimal("0"))
        difference = abs(total - amount)
        if difference > SPLIT_TOLERANCE:
            self._logger.split_total_mismatch(txn.transaction_id, total, amount)
            analysis.notes = (
                f"Warning: Split total (${total:.2f}) differs from transaction "
                f"amount (${amount:.2f}) by ${difference:.2f}. "
                "Please review carefully."
            )

        for split in analysis.splits:
            category = self._resolve_category(
                txn.transaction_id, split.category_id, categories
            )
            if category is None:
                return False
            split.subcategory_id = self._resolve_subcategory(
                category, split.subcategory_id
            )
        return True

    def _resolve_category(
        self,
        transaction_id: int,
        category_id: int,
        categories: Sequence[CategoryOption],
    ) -> CategoryOption | None:
        category = next((c for c in categories if c.category_id == category_id), None)
        if category is None:
            self._logger.invalid_category(transaction_id, category_id)
        return category

    def _resolve_subcategory(
        self, category: CategoryOption, subcategory_id: int | None
    ) -> int | None:
        if subcategory_id is None:
            return None
        if category.find_subcategory(subcategory_id) is None:
            self._logger.invalid_subcategory(category, subcategory_id)
            return None
        return subcategory_id
