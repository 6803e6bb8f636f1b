"""Prompt context for transaction categorization.

The taxonomy and recent history are fetched once per batch and shared; the
similar-transaction block is specific to each transaction.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from finsync.adapters.db.models import (
    CategoryOption,
    TransactionForCategorization,
    TransactionHistoryItem,
)

CLOUDINARY_UPLOAD_SEGMENT = "/upload/"
CLOUDINARY_PDF_TRANSFORM = "/upload/f_jpg,pg_1,q_auto,w_2000/"

INSTRUCTIONS = """\
1. Prioritize similar transactions - if there are transactions with the same \
merchant or description that have been categorized, use that pattern
2. Consider the transaction history to understand spending patterns
3. Use the Plaid category as a fallback reference only; it is often wrong
4. Consider the amount and transaction type (expense vs income)
5. Treat the user's notes as the strongest signal when present
6. Only assign a category if confidence > 60
7. If you can't match a subcategory but the category is clear, just use the \
category
8. Use exact category/subcategory IDs from the available categories list
9. Be conservative - when in doubt, return null values"""


@dataclass(frozen=True)
class CategorizationContext:
    categories: list[CategoryOption]
    recent_history: list[TransactionHistoryItem]

    def find_category(self, category_id: int | None) -> CategoryOption | None:
        if category_id is None:
            return None
        for category in self.categories:
            if category.category_id == category_id:
                return category
        return None


def format_amount(amount: Decimal) -> str:
    return f"${abs(amount):.2f}"


def transaction_type(amount: Decimal) -> str:
    # Stored amounts are negative for money leaving the account.
    return "expense" if amount < 0 else "income"


def _category_label(item: TransactionHistoryItem) -> str:
    label = f"{item.category_name or 'N/A'} (ID: {item.category_id or 'N/A'})"
    if item.subcategory_id is not None:
        label += f" > {item.subcategory_name} (ID: {item.subcategory_id})"
    return label


def build_categories_context(categories: Sequence[CategoryOption]) -> str:
    lines = []
    for category in categories:
        subs = ", ".join(
            f"{sub.name} (ID: {sub.subcategory_id})" for sub in category.subcategories
        )
        lines.append(
            f"{category.name} (ID: {category.category_id}): "
            f"[{subs or 'no subcategories'}]"
        )
    return "\n".join(lines)


def build_similar_transactions_context(
    similar: Sequence[TransactionHistoryItem],
) -> str:
    if not similar:
        return "  No similar transactions found"
    return "\n".join(
        f'  - "{item.name}" | {format_amount(item.amount)} | '
        f"Category: {_category_label(item)}"
        for item in similar
    )


def build_history_context(history: Sequence[TransactionHistoryItem]) -> str:
    if not history:
        return "  No recent history"
    return "\n".join(
        f'  - "{item.merchant_name or item.name}" | {format_amount(item.amount)} | '
        f"{_category_label(item)}"
        for item in history
    )


def build_transaction_details(txn: TransactionForCategorization) -> str:
    return "\n".join(
        [
            f"  Name: {txn.name}",
            f"  Merchant: {txn.merchant_name or 'N/A'}",
            f"  Amount: {format_amount(txn.amount)} ({transaction_type(txn.amount)})",
            f"  Date: {txn.date.isoformat()}",
            f"  Plaid Category: {txn.provider_category or 'N/A'} / "
            f"{txn.provider_subcategory or 'N/A'}",
            f"  Notes: {txn.notes or 'N/A'}",
        ]
    )


def build_categorization_prompt(
    txn: TransactionForCategorization,
    context: CategorizationContext,
    similar: Sequence[TransactionHistoryItem],
) -> str:
    """Render the single-transaction categorization prompt."""
    prompt = f"""\
You are a financial transaction categorization expert. Your task is to \
categorize this transaction based on available context.

TRANSACTION TO CATEGORIZE:
{build_transaction_details(txn)}

AVAILABLE CATEGORIES:
{build_categories_context(context.categories)}

SIMILAR TRANSACTIONS (same merchant/amount/description):
{build_similar_transactions_context(similar)}

RECENT TRANSACTION HISTORY:
{build_history_context(context.recent_history)}

INSTRUCTIONS:
{INSTRUCTIONS}

Provide your categorization decision with confidence and reasoning."""
    if txn.files:
        prompt += (
            f"\n\nATTACHED RECEIPT(S): {len(txn.files)} file(s) - Use these "
            "receipts to help categorize the transaction accurately."
        )
    return prompt


def is_pdf(url: str) -> bool:
    path = url.lower().split("?", 1)[0].split("#", 1)[0]
    return path.endswith(".pdf")


def prepare_file_for_vision(url: str) -> str:
    """Return a URL a vision model can read as an image.

    PDFs hosted on Cloudinary are rendered to a JPEG of their first page via
    a delivery transformation. Other URLs are returned unchanged.
    """
    if is_pdf(url) and "cloudinary.com" in url:
        return url.replace(CLOUDINARY_UPLOAD_SEGMENT, CLOUDINARY_PDF_TRANSFORM, 1)
    return url


def build_file_content(url: str) -> dict[str, Any]:
    prepared = prepare_file_for_vision(url)
    if is_pdf(url) and prepared == url:
        return {"type": "input_file", "file_url": url}
    return {"type": "input_image", "image_url": prepared}


def build_model_input(prompt: str, files: Sequence[str]) -> str | list[dict[str, Any]]:
    """Text-only input, or one multi-part user message when files are attached."""
    if not files:
        return prompt
    content: list[dict[str, Any]] = [{"type": "input_text", "text": prompt}]
    content.extend(build_file_content(url) for url in files)
    return [{"role": "user", "content": content}]
