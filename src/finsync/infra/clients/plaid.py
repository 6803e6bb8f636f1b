from __future__ import annotations

from datetime import date
import json
import os
from typing import Any, Literal, Self, cast
import urllib.error
import urllib.request

from pydantic import BaseModel, Field

PlaidEnv = Literal["sandbox", "development", "production"]

ITEM_LOGIN_REQUIRED = "ITEM_LOGIN_REQUIRED"


class PlaidClientError(Exception):
    """Base error for Plaid client failures."""

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        error_type: str | None = None,
        error_message: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.error_type = error_type
        self.error_message = error_message
        self.status = status

    @property
    def is_login_required(self) -> bool:
        return self.error_code == ITEM_LOGIN_REQUIRED


class ItemLoginRequiredError(PlaidClientError):
    """The item's credentials expired; the user must re-authenticate."""


PLAID_ENV_MAP: dict[PlaidEnv, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}


class PlaidBaseModel(BaseModel):
    """Shared base for Plaid response models with a short parse alias."""

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class PersonalFinanceCategory(PlaidBaseModel):
    primary: str | None = None
    detailed: str | None = None
    confidence_level: str | None = None


class AccountBalances(PlaidBaseModel):
    current: float | None = None
    available: float | None = None
    limit: float | None = None
    iso_currency_code: str | None = None


class PlaidAccountModel(PlaidBaseModel):
    account_id: str
    name: str | None = None
    official_name: str | None = None
    mask: str | None = None
    type: str | None = None
    subtype: str | None = None
    balances: AccountBalances = Field(default_factory=AccountBalances)


class PlaidTransactionModel(PlaidBaseModel):
    transaction_id: str
    account_id: str
    amount: float
    iso_currency_code: str | None = None
    date: str
    authorized_date: str | None = None
    datetime: str | None = None
    authorized_datetime: str | None = None
    name: str
    merchant_name: str | None = None
    pending: bool = False
    pending_transaction_id: str | None = None
    payment_channel: str | None = None
    logo_url: str | None = None
    personal_finance_category: PersonalFinanceCategory | None = None
    personal_finance_category_icon_url: str | None = None


class RemovedTransaction(PlaidBaseModel):
    transaction_id: str
    account_id: str | None = None


class TransactionsGetResponse(PlaidBaseModel):
    accounts: list[PlaidAccountModel] = Field(default_factory=list)
    transactions: list[PlaidTransactionModel] = Field(default_factory=list)
    total_transactions: int = 0


class TransactionsSyncResponse(PlaidBaseModel):
    accounts: list[PlaidAccountModel] = Field(default_factory=list)
    added: list[PlaidTransactionModel] = Field(default_factory=list)
    modified: list[PlaidTransactionModel] = Field(default_factory=list)
    removed: list[RemovedTransaction] = Field(default_factory=list)
    next_cursor: str = ""
    has_more: bool = False


class SecurityModel(PlaidBaseModel):
    security_id: str
    name: str | None = None
    ticker_symbol: str | None = None
    type: str | None = None
    iso_currency_code: str | None = None
    close_price: float | None = None
    close_price_as_of: str | None = None


class HoldingModel(PlaidBaseModel):
    account_id: str
    security_id: str
    quantity: float
    cost_basis: float | None = None
    institution_price: float | None = None
    institution_price_as_of: str | None = None
    institution_value: float | None = None
    iso_currency_code: str | None = None


class InvestmentsHoldingsGetResponse(PlaidBaseModel):
    accounts: list[PlaidAccountModel] = Field(default_factory=list)
    holdings: list[HoldingModel] = Field(default_factory=list)
    securities: list[SecurityModel] = Field(default_factory=list)


class InvestmentTransactionModel(PlaidBaseModel):
    investment_transaction_id: str
    account_id: str
    security_id: str | None = None
    date: str
    name: str | None = None
    type: str
    subtype: str | None = None
    amount: float | None = None
    price: float | None = None
    quantity: float | None = None
    fees: float | None = None
    iso_currency_code: str | None = None


class InvestmentsTransactionsGetResponse(PlaidBaseModel):
    accounts: list[PlaidAccountModel] = Field(default_factory=list)
    investment_transactions: list[InvestmentTransactionModel] = Field(
        default_factory=list
    )
    securities: list[SecurityModel] = Field(default_factory=list)
    total_investment_transactions: int = 0


class ItemModel(PlaidBaseModel):
    item_id: str
    institution_id: str | None = None


class ItemGetResponse(PlaidBaseModel):
    item: ItemModel


class InstitutionModel(PlaidBaseModel):
    name: str | None = None


class InstitutionGetByIdResponse(PlaidBaseModel):
    institution: InstitutionModel | None = None


def error_from_response(status: int, body: str) -> PlaidClientError:
    """Build the most specific client error for a Plaid error payload."""
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        payload = None
    if not isinstance(payload, dict):
        return PlaidClientError(f"Plaid API error ({status}): {body}", status=status)

    error_code = payload.get("error_code")
    error_type = payload.get("error_type")
    message = payload.get("error_message") or body
    error_cls: type[PlaidClientError] = PlaidClientError
    if error_code == ITEM_LOGIN_REQUIRED:
        error_cls = ItemLoginRequiredError
    return error_cls(
        f"Plaid API error ({status}) {error_code or 'UNKNOWN'}: {message}",
        error_code=error_code,
        error_type=error_type,
        error_message=payload.get("error_message"),
        status=status,
    )


class PlaidClient:
    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        env: PlaidEnv = "sandbox",
    ) -> None:
        self._client_id = client_id
        self._secret = secret
        self._env = env

    @property
    def env(self) -> PlaidEnv:
        return self._env

    @classmethod
    def from_env(cls) -> PlaidClient:
        """Construct a PlaidClient from environment variables.

        Required:
        - PLAID_CLIENT_ID
        - PLAID_ENV (defaults to sandbox)
        - PLAID_<ENV>_SECRET (e.g. PLAID_SANDBOX_SECRET)
        """
        env_str = os.getenv("PLAID_ENV", "sandbox").lower()
        if env_str not in PLAID_ENV_MAP:
            raise PlaidClientError(
                f"Invalid PLAID_ENV={env_str!r}. "
                "Expected one of: sandbox, development, production."
            )
        env: PlaidEnv = env_str  # type: ignore[assignment]

        client_id = cls._getenv_or_die("PLAID_CLIENT_ID")
        secret = cls._getenv_or_die(f"PLAID_{env.upper()}_SECRET")
        return cls(client_id=client_id, secret=secret, env=env)

    @staticmethod
    def _getenv_or_die(name: str) -> str:
        value = os.getenv(name)
        if not value:
            raise PlaidClientError(f"Missing required environment variable: {name}")
        return value

    def _base_url(self) -> str:
        try:
            return PLAID_ENV_MAP[self._env]
        except KeyError as e:
            raise PlaidClientError(
                f"Unsupported Plaid environment: {self._env!r}"
            ) from e

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        try:
            return cast(dict[str, Any], json.loads(body))
        except json.JSONDecodeError as e:
            raise PlaidClientError(
                f"Failed to parse Plaid response as JSON: {e}: {body}"
            ) from e

    def _auth_payload(self, access_token: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "client_id": self._client_id,
            "secret": self._secret,
        }
        if access_token is not None:
            payload["access_token"] = access_token
        return payload

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = self._base_url().rstrip("/") + path
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(  # noqa: S310
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(req) as resp:  # noqa: S310 - external HTTPS
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:  # pragma: no cover - network-dependent
            err_body = e.read().decode("utf-8", "ignore")
            raise error_from_response(e.code, err_body) from e
        except urllib.error.URLError as e:  # pragma: no cover - network-dependent
            raise PlaidClientError(f"Network error calling Plaid API: {e}") from e

        return self._parse_json_response(body)

    # High-level APIs -----------------------------------------------------

    def get_transactions(
        self,
        access_token: str,
        *,
        start_date: date,
        end_date: date,
        count: int = 500,
        offset: int = 0,
    ) -> TransactionsGetResponse:
        """Return one page of /transactions/get for a date range."""
        payload = self._auth_payload(access_token)
        payload.update(
            {
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "options": {"count": count, "offset": offset},
            }
        )
        return TransactionsGetResponse.parse(self._post("/transactions/get", payload))

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 500,
    ) -> TransactionsSyncResponse:
        """Thin wrapper around Plaid's /transactions/sync endpoint."""
        payload = self._auth_payload(access_token)
        payload["count"] = count
        if cursor:
            payload["cursor"] = cursor
        return TransactionsSyncResponse.parse(
            self._post("/transactions/sync", payload)
        )

    def get_investment_holdings(
        self, access_token: str
    ) -> InvestmentsHoldingsGetResponse:
        """Return the current holdings snapshot with securities and accounts."""
        return InvestmentsHoldingsGetResponse.parse(
            self._post("/investments/holdings/get", self._auth_payload(access_token))
        )

    def get_investment_transactions(
        self,
        access_token: str,
        *,
        start_date: date,
        end_date: date,
        count: int = 500,
        offset: int = 0,
    ) -> InvestmentsTransactionsGetResponse:
        """Return one page of /investments/transactions/get for a date range."""
        payload = self._auth_payload(access_token)
        payload.update(
            {
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "options": {"count": count, "offset": offset},
            }
        )
        return InvestmentsTransactionsGetResponse.parse(
            self._post("/investments/transactions/get", payload)
        )

    def get_item_info(self, access_token: str) -> tuple[str, str | None, str | None]:
        """Return (item_id, institution_id, institution_name) for an access token."""
        item_resp = ItemGetResponse.parse(
            self._post("/item/get", self._auth_payload(access_token))
        )
        institution_id = item_resp.item.institution_id
        institution_name: str | None = None

        if institution_id:
            inst_payload = self._auth_payload()
            inst_payload.update(
                {"institution_id": institution_id, "country_codes": ["US"]}
            )
            inst_resp = InstitutionGetByIdResponse.parse(
                self._post("/institutions/get_by_id", inst_payload)
            )
            if inst_resp.institution and inst_resp.institution.name:
                institution_name = inst_resp.institution.name

        return item_resp.item.item_id, institution_id, institution_name
