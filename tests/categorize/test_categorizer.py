"""Tests for the LLM transaction categorizer."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from decimal import Decimal
import json
from types import SimpleNamespace
from typing import Any

import pytest

from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import CategoryOption, GroupType
from finsync.categorize.categorizer import (
    CategorizationResult,
    Categorizer,
    detect_sign_mismatch,
    extract_json_object,
    validate_result,
)

AddTransaction = Callable[..., int]


class FakeResponses:
    def __init__(self, output_text: str = "", error: Exception | None = None) -> None:
        self.output_text = output_text
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.active = 0
        self.max_active = 0

    async def create(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(kwargs)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0)
            if self.error is not None:
                raise self.error
            return SimpleNamespace(output_text=self.output_text)
        finally:
            self.active -= 1


class FakeClient:
    def __init__(self, output_text: str = "", error: Exception | None = None) -> None:
        self.responses = FakeResponses(output_text, error)


def _answer(
    category_id: int | None,
    subcategory_id: int | None = None,
    confidence: float = 90,
) -> str:
    body = json.dumps(
        {
            "category_id": category_id,
            "subcategory_id": subcategory_id,
            "confidence": confidence,
            "reasoning": "Coffee shop purchase",
        }
    )
    return f"Here is my answer:\n{body}\n"


def _taxonomy(db: DB) -> tuple[CategoryOption, CategoryOption]:
    food = db.create_category(
        "Food", group_type=GroupType.EXPENSES, subcategories=["Coffee", "Groceries"]
    )
    salary = db.create_category("Salary", group_type=GroupType.INCOME)
    return food, salary


def _sub(category: CategoryOption, name: str) -> int:
    return next(s.subcategory_id for s in category.subcategories if s.name == name)


def _categorizer(db: DB, client: FakeClient, **kwargs: Any) -> Categorizer:
    return Categorizer(db, client=client, **kwargs)


class TestCategorizeTransaction:
    @pytest.mark.parametrize(
        ("confidence", "accepted"), [(60, False), (60.5, True), (61, True)]
    )
    def test_confidence_gate_is_strict(
        self,
        db: DB,
        add_transaction: AddTransaction,
        confidence: float,
        accepted: bool,
    ) -> None:
        # setup
        food, _ = _taxonomy(db)
        txn_id = add_transaction()
        client = FakeClient(_answer(food.category_id, confidence=confidence))

        # act
        result = asyncio.run(_categorizer(db, client).categorize_transaction(txn_id))

        # assert
        assert (result is not None) is accepted

    def test_accepted_result_carries_ids_and_reasoning(
        self, db: DB, add_transaction: AddTransaction
    ) -> None:
        # setup
        food, _ = _taxonomy(db)
        coffee = _sub(food, "Coffee")
        txn_id = add_transaction()
        client = FakeClient(_answer(food.category_id, coffee, confidence=92))

        # act
        result = asyncio.run(_categorizer(db, client).categorize_transaction(txn_id))

        # assert
        assert result is not None
        assert result.transaction_id == txn_id
        assert result.category_id == food.category_id
        assert result.subcategory_id == coffee
        assert result.confidence == 92
        assert result.reasoning == "Coffee shop purchase"

    @pytest.mark.parametrize("category_id", [None, 999])
    def test_missing_or_unknown_category_is_rejected(
        self, db: DB, add_transaction: AddTransaction, category_id: int | None
    ) -> None:
        # setup
        _taxonomy(db)
        txn_id = add_transaction()
        client = FakeClient(_answer(category_id))

        # act
        result = asyncio.run(_categorizer(db, client).categorize_transaction(txn_id))

        # assert
        assert result is None

    def test_subcategory_from_another_category_is_dropped(
        self, db: DB, add_transaction: AddTransaction
    ) -> None:
        # setup
        food, salary = _taxonomy(db)
        txn_id = add_transaction()
        client = FakeClient(_answer(salary.category_id, _sub(food, "Coffee")))

        # act
        result = asyncio.run(_categorizer(db, client).categorize_transaction(txn_id))

        # assert
        assert result is not None
        assert result.category_id == salary.category_id
        assert result.subcategory_id is None

    @pytest.mark.parametrize(
        "client",
        [
            FakeClient(error=RuntimeError("rate limited")),
            FakeClient("I cannot help with that"),
            FakeClient('{"category_id": "not a number"}'),
        ],
        ids=["api-error", "no-json", "bad-shape"],
    )
    def test_failures_yield_none(
        self, db: DB, add_transaction: AddTransaction, client: FakeClient
    ) -> None:
        # setup
        _taxonomy(db)
        txn_id = add_transaction()

        # act
        result = asyncio.run(_categorizer(db, client).categorize_transaction(txn_id))

        # assert
        assert result is None

    def test_unknown_transaction_yields_none(self, db: DB) -> None:
        # setup
        client = FakeClient(_answer(1))

        # act
        result = asyncio.run(_categorizer(db, client).categorize_transaction(404))

        # assert
        assert result is None
        assert client.responses.calls == []

    def test_already_categorized_is_skipped_without_model_call(
        self, db: DB, add_transaction: AddTransaction
    ) -> None:
        # setup
        food, salary = _taxonomy(db)
        txn_id = add_transaction(category_id=food.category_id)
        client = FakeClient(_answer(salary.category_id))
        categorizer = _categorizer(db, client)

        # act
        skipped = asyncio.run(categorizer.categorize_transaction(txn_id))
        forced = asyncio.run(
            categorizer.categorize_transaction(txn_id, allow_recategorize=True)
        )

        # assert
        assert skipped is None
        assert forced is not None
        assert forced.category_id == salary.category_id
        assert len(client.responses.calls) == 1

    def test_request_uses_strict_schema_and_text_input(
        self, db: DB, add_transaction: AddTransaction
    ) -> None:
        # setup
        food, _ = _taxonomy(db)
        txn_id = add_transaction(name="Blue Bottle Coffee #42")
        client = FakeClient(_answer(food.category_id))

        # act
        asyncio.run(
            _categorizer(db, client, model="gpt-test").categorize_transaction(txn_id)
        )

        # assert
        (call,) = client.responses.calls
        assert call["model"] == "gpt-test"
        text_format = call["extra_body"]["text"]["format"]
        assert text_format["type"] == "json_schema"
        assert text_format["strict"] is True
        assert isinstance(call["input"], str)
        assert "Blue Bottle Coffee #42" in call["input"]
        assert f"Food (ID: {food.category_id})" in call["input"]

    def test_receipts_are_sent_as_images(
        self, db: DB, add_transaction: AddTransaction
    ) -> None:
        # setup
        food, _ = _taxonomy(db)
        txn_id = add_transaction()
        db.attach_file(
            txn_id, "https://res.cloudinary.com/demo/image/upload/v1/receipt.pdf"
        )
        db.attach_file(txn_id, "https://files.example.com/photo.png")
        client = FakeClient(_answer(food.category_id))

        # act
        asyncio.run(_categorizer(db, client).categorize_transaction(txn_id))

        # assert
        (call,) = client.responses.calls
        (message,) = call["input"]
        assert message["role"] == "user"
        text, pdf, photo = message["content"]
        assert text["type"] == "input_text"
        assert "ATTACHED RECEIPT(S): 2 file(s)" in text["text"]
        assert pdf == {
            "type": "input_image",
            "image_url": "https://res.cloudinary.com/demo/image/upload/"
            "f_jpg,pg_1,q_auto,w_2000/v1/receipt.pdf",
        }
        assert photo == {
            "type": "input_image",
            "image_url": "https://files.example.com/photo.png",
        }


class TestCategorizeTransactions:
    def test_calls_run_in_bounded_windows(
        self, db: DB, add_transaction: AddTransaction
    ) -> None:
        # setup
        food, _ = _taxonomy(db)
        ids = [add_transaction() for _ in range(12)]
        client = FakeClient(_answer(food.category_id))

        # act
        results = asyncio.run(
            _categorizer(db, client, concurrency=5).categorize_transactions(ids)
        )

        # assert
        assert [r.transaction_id for r in results] == ids
        assert len(client.responses.calls) == 12
        assert client.responses.max_active == 5

    def test_empty_batch_makes_no_calls(self, db: DB) -> None:
        # setup
        client = FakeClient(_answer(1))

        # act
        results = asyncio.run(_categorizer(db, client).categorize_transactions([]))

        # assert
        assert results == []
        assert client.responses.calls == []

    def test_categorize_and_apply_persists_results(
        self, db: DB, add_transaction: AddTransaction
    ) -> None:
        # setup
        food, _ = _taxonomy(db)
        coffee = _sub(food, "Coffee")
        ids = [add_transaction(), add_transaction()]
        client = FakeClient(_answer(food.category_id, coffee))

        # act
        applied = asyncio.run(_categorizer(db, client).categorize_and_apply(ids))

        # assert
        assert applied == 2
        for txn_id in ids:
            txn = db.get_transaction(txn_id)
            assert txn is not None
            assert txn.category_id == food.category_id
            assert txn.subcategory_id == coffee
            assert db.tag_names_for_transaction(txn_id) == ["for-review"]

    def test_categorize_and_apply_continues_past_a_failed_apply(
        self, db: DB, add_transaction: AddTransaction, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """The first row disappears before its result is applied."""
        # setup
        food, _ = _taxonomy(db)
        ids = [add_transaction() for _ in range(3)]
        client = FakeClient(_answer(food.category_id))
        apply = db.apply_categorization

        def apply_unless_removed(transaction_id: int, **kwargs: Any) -> None:
            if transaction_id == ids[0]:
                raise LookupError(f"Transaction {transaction_id} not found")
            apply(transaction_id, **kwargs)

        monkeypatch.setattr(db, "apply_categorization", apply_unless_removed)

        # act
        applied = asyncio.run(_categorizer(db, client).categorize_and_apply(ids))

        # assert
        assert applied == 2
        category_ids = []
        for txn_id in ids:
            txn = db.get_transaction(txn_id)
            assert txn is not None
            category_ids.append(txn.category_id)
        assert category_ids == [None, food.category_id, food.category_id]

    def test_categorize_and_apply_with_nothing_accepted(
        self, db: DB, add_transaction: AddTransaction
    ) -> None:
        # setup
        _taxonomy(db)
        txn_id = add_transaction()
        client = FakeClient(_answer(None, confidence=10))

        # act
        applied = asyncio.run(_categorizer(db, client).categorize_and_apply([txn_id]))

        # assert
        assert applied == 0
        assert db.tag_names_for_transaction(txn_id) == []


class TestApplyCategorization:
    def test_expense_category_on_inflow_gets_sign_review(
        self, db: DB, add_transaction: AddTransaction
    ) -> None:
        """A refund (stored positive) put in an expense group is flagged."""
        # setup
        food, _ = _taxonomy(db)
        txn_id = add_transaction(amount="50.00")
        categorizer = _categorizer(db, FakeClient())

        # act
        tags = categorizer.apply_categorization(txn_id, food.category_id, None)

        # assert
        assert tags == ["for-review", "sign-review"]
        assert db.tag_names_for_transaction(txn_id) == ["for-review", "sign-review"]

    def test_matching_sign_only_gets_review_tag(
        self, db: DB, add_transaction: AddTransaction
    ) -> None:
        # setup
        food, _ = _taxonomy(db)
        txn_id = add_transaction(amount="-12.50")

        # act
        tags = _categorizer(db, FakeClient()).apply_categorization(
            txn_id, food.category_id, _sub(food, "Coffee")
        )

        # assert
        assert tags == ["for-review"]

    def test_skip_review_tag(self, db: DB, add_transaction: AddTransaction) -> None:
        # setup
        _, salary = _taxonomy(db)
        txn_id = add_transaction(amount="-100.00")

        # act
        tags = _categorizer(db, FakeClient()).apply_categorization(
            txn_id, salary.category_id, None, skip_review_tag=True
        )

        # assert
        assert tags == ["sign-review"]
        txn = db.get_transaction(txn_id)
        assert txn is not None
        assert txn.category_id == salary.category_id


@pytest.mark.parametrize(
    ("amount", "group_type", "expected"),
    [
        (Decimal("-10"), GroupType.INCOME, True),
        (Decimal("10"), GroupType.INCOME, False),
        (Decimal("10"), GroupType.EXPENSES, True),
        (Decimal("-10"), GroupType.EXPENSES, False),
        (Decimal("0"), GroupType.EXPENSES, False),
        (Decimal("-10"), GroupType.TRANSFER, False),
        (Decimal("10"), None, False),
    ],
)
def test_detect_sign_mismatch(
    amount: Decimal, group_type: GroupType | None, expected: bool
) -> None:
    assert detect_sign_mismatch(amount, group_type) is expected


def test_extract_json_object_strips_surrounding_prose() -> None:
    # input
    text = 'Sure! ```json\n{"a": {"b": 1}}\n``` Hope that helps.'

    # act / assert
    assert extract_json_object(text) == '{"a": {"b": 1}}'


def test_extract_json_object_without_braces_raises() -> None:
    with pytest.raises(ValueError, match="Could not find JSON"):
        extract_json_object("no structured output here")


def test_validate_result_keeps_valid_subcategory() -> None:
    # input
    category = CategoryOption(category_id=1, name="Food", group_type=None)
    result = CategorizationResult(
        category_id=1, subcategory_id=None, confidence=80, reasoning="r"
    )

    # act
    accepted = validate_result(result, [category])

    # assert
    assert accepted == (category, None)


def test_missing_api_key_is_an_error(db: DB) -> None:
    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        Categorizer(db)
