"""Tests for categorization prompt rendering and file preparation."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from finsync.adapters.db.models import (
    CategoryOption,
    GroupType,
    SubcategoryOption,
    TransactionForCategorization,
    TransactionHistoryItem,
)
from finsync.categorize.context import (
    CategorizationContext,
    build_categorization_prompt,
    build_categories_context,
    build_file_content,
    build_model_input,
    build_similar_transactions_context,
    prepare_file_for_vision,
    transaction_type,
)


def _txn(files: list[str] | None = None) -> TransactionForCategorization:
    return TransactionForCategorization(
        transaction_id=1,
        name="SQ *BLUE BOTTLE",
        merchant_name="Blue Bottle",
        amount=Decimal("-6.75"),
        date=date(2024, 3, 1),
        provider_category="FOOD_AND_DRINK",
        provider_subcategory=None,
        notes="Team coffee",
        category_id=None,
        subcategory_id=None,
        files=files or [],
    )


def _history(name: str) -> TransactionHistoryItem:
    return TransactionHistoryItem(
        name=name,
        merchant_name=None,
        amount=Decimal("-4.50"),
        display_datetime="2024-02-01",
        category_id=3,
        category_name="Food",
        subcategory_id=7,
        subcategory_name="Coffee",
    )


FOOD = CategoryOption(
    category_id=3,
    name="Food",
    group_type=GroupType.EXPENSES,
    subcategories=[SubcategoryOption(subcategory_id=7, name="Coffee")],
)


def test_prompt_contains_every_section() -> None:
    # input
    context = CategorizationContext(categories=[FOOD], recent_history=[])

    # act
    prompt = build_categorization_prompt(_txn(), context, [_history("Blue Bottle")])

    # assert
    for heading in (
        "TRANSACTION TO CATEGORIZE:",
        "AVAILABLE CATEGORIES:",
        "SIMILAR TRANSACTIONS",
        "RECENT TRANSACTION HISTORY:",
        "INSTRUCTIONS:",
    ):
        assert heading in prompt
    assert "Amount: $6.75 (expense)" in prompt
    assert "Plaid Category: FOOD_AND_DRINK / N/A" in prompt
    assert "Notes: Team coffee" in prompt
    assert "Food (ID: 3) > Coffee (ID: 7)" in prompt
    assert "No recent history" in prompt
    assert "ATTACHED RECEIPT" not in prompt


def test_categories_context_lists_subcategories() -> None:
    # input
    empty = CategoryOption(category_id=4, name="Misc", group_type=None)

    # act
    text = build_categories_context([FOOD, empty])

    # assert
    assert text.splitlines() == [
        "Food (ID: 3): [Coffee (ID: 7)]",
        "Misc (ID: 4): [no subcategories]",
    ]


def test_similar_context_when_empty() -> None:
    assert build_similar_transactions_context([]) == "  No similar transactions found"


@pytest.mark.parametrize(
    ("amount", "expected"),
    [(Decimal("-1"), "expense"), (Decimal("1"), "income"), (Decimal("0"), "income")],
)
def test_transaction_type_follows_stored_sign(amount: Decimal, expected: str) -> None:
    assert transaction_type(amount) == expected


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        (
            "https://res.cloudinary.com/x/image/upload/v1/r.pdf",
            "https://res.cloudinary.com/x/image/upload/"
            "f_jpg,pg_1,q_auto,w_2000/v1/r.pdf",
        ),
        (
            "https://res.cloudinary.com/x/image/upload/v1/r.png",
            "https://res.cloudinary.com/x/image/upload/v1/r.png",
        ),
        ("https://files.example.com/r.pdf", "https://files.example.com/r.pdf"),
    ],
)
def test_prepare_file_for_vision(url: str, expected: str) -> None:
    assert prepare_file_for_vision(url) == expected


def test_pdf_outside_cloudinary_is_sent_as_file() -> None:
    assert build_file_content("https://files.example.com/r.PDF?sig=1") == {
        "type": "input_file",
        "file_url": "https://files.example.com/r.PDF?sig=1",
    }


def test_model_input_without_files_is_plain_prompt() -> None:
    assert build_model_input("prompt", []) == "prompt"


def test_model_input_with_files_is_one_user_message() -> None:
    # act
    model_input = build_model_input("prompt", ["https://files.example.com/a.jpg"])

    # assert
    assert model_input == [
        {
            "role": "user",
            "content": [
                {"type": "input_text", "text": "prompt"},
                {"type": "input_image", "image_url": "https://files.example.com/a.jpg"},
            ],
        }
    ]
