"""Pure mappings from Plaid records to local row data.

Every builder returns a plain dict of column values. Amounts are converted
through ``str`` so that binary float noise never reaches the ledger.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from finsync.infra.clients.plaid import (
    HoldingModel,
    InvestmentTransactionModel,
    PlaidAccountModel,
    PlaidTransactionModel,
    SecurityModel,
)

DEFAULT_ACCOUNT_NAME = "Account"


def to_decimal(value: float | int | str | None) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    return date.fromisoformat(value[:10])


def build_transaction_data(txn: PlaidTransactionModel) -> dict[str, Any]:
    """Map a Plaid transaction to Transaction column values.

    Plaid reports money leaving the account as a positive amount. The ledger
    stores expenses as negative, so the sign is inverted here and nowhere
    else.

    Args:
        txn: Transaction as returned by /transactions/get or /transactions/sync

    Returns:
        Dict keyed by Transaction columns plus ``plaid_account_id``
    """
    pfc = txn.personal_finance_category
    return {
        "external_id": txn.transaction_id,
        "plaid_account_id": txn.account_id,
        "amount": -Decimal(str(txn.amount)),
        "iso_currency_code": txn.iso_currency_code or None,
        "date": date.fromisoformat(txn.date),
        "authorized_date": _parse_date(txn.authorized_date),
        "display_datetime": txn.datetime or txn.date,
        "authorized_datetime": txn.authorized_datetime or None,
        "pending": txn.pending,
        "name": txn.name,
        "merchant_name": txn.merchant_name or None,
        "provider_category": pfc.primary if pfc else None,
        "provider_subcategory": pfc.detailed if pfc else None,
        "payment_channel": txn.payment_channel or None,
        "pending_transaction_id": txn.pending_transaction_id or None,
        "logo_url": txn.logo_url or None,
        "category_icon_url": txn.personal_finance_category_icon_url or None,
    }


def build_account_data(
    account: PlaidAccountModel, *, now: datetime | None = None
) -> dict[str, Any]:
    """Map a Plaid account to Account column values.

    ``name`` is only honoured by the store when the account is created.
    """
    balances = account.balances
    return {
        "plaid_account_id": account.account_id,
        "name": account.name or account.official_name or DEFAULT_ACCOUNT_NAME,
        "official_name": account.official_name or None,
        "mask": account.mask or None,
        "type": account.type,
        "subtype": account.subtype or None,
        "currency": balances.iso_currency_code or None,
        "current_balance": to_decimal(balances.current),
        "available_balance": to_decimal(balances.available),
        "credit_limit": to_decimal(balances.limit),
        "balance_updated_at": now or datetime.now(UTC),
    }


def build_security_data(security: SecurityModel) -> dict[str, Any]:
    return {
        "plaid_security_id": security.security_id,
        "name": security.name or None,
        "ticker_symbol": security.ticker_symbol or None,
        "type": security.type or None,
        "iso_currency_code": security.iso_currency_code or None,
    }


def build_holding_data(
    holding: HoldingModel,
    *,
    account_id: int,
    security_id: int,
    existing_price: Decimal | None = None,
    existing_price_as_of: date | None = None,
) -> dict[str, Any]:
    """Map a Plaid holding to Holding column values.

    When Plaid reports no price (null or zero) but the stored holding has a
    positive price, the stored price and its as-of date are kept.

    Args:
        holding: Holding from the latest snapshot
        account_id: Local account ID
        security_id: Local security ID
        existing_price: Price on the stored holding, if any
        existing_price_as_of: As-of date of the stored price

    Returns:
        Dict keyed by Holding columns
    """
    price = to_decimal(holding.institution_price)
    price_as_of = _parse_date(holding.institution_price_as_of)

    if existing_price is not None and existing_price > 0 and not price:
        price = existing_price
        price_as_of = existing_price_as_of

    return {
        "account_id": account_id,
        "security_id": security_id,
        "quantity": Decimal(str(holding.quantity)),
        "cost_basis": to_decimal(holding.cost_basis),
        "institution_price": price,
        "institution_price_as_of": price_as_of,
        "iso_currency_code": holding.iso_currency_code or None,
    }


def build_investment_transaction_data(
    txn: InvestmentTransactionModel,
    *,
    account_id: int,
    security_id: int | None,
) -> dict[str, Any]:
    # Amount keeps Plaid's sign; investment activity is not a spending entry.
    return {
        "plaid_investment_transaction_id": txn.investment_transaction_id,
        "account_id": account_id,
        "security_id": security_id,
        "type": txn.type,
        "subtype": txn.subtype or None,
        "amount": to_decimal(txn.amount),
        "price": to_decimal(txn.price),
        "quantity": to_decimal(txn.quantity),
        "fees": to_decimal(txn.fees),
        "iso_currency_code": txn.iso_currency_code or None,
        "date": date.fromisoformat(txn.date),
        "name": txn.name or None,
    }
