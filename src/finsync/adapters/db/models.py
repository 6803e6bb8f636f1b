from __future__ import annotations

from dataclasses import dataclass, field
import datetime as dt
from decimal import Decimal
import enum

from sqlalchemy import (
    Boolean,
    Date,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

from finsync.adapters.db.types import ExactDecimal, UTCDateTime

FOR_REVIEW_TAG = "for-review"
SIGN_REVIEW_TAG = "sign-review"


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class ItemStatus(enum.StrEnum):
    OK = "OK"
    LOGIN_REQUIRED = "LOGIN_REQUIRED"
    ERROR = "ERROR"
    PENDING_EXPIRATION = "PENDING_EXPIRATION"
    PENDING_DISCONNECT = "PENDING_DISCONNECT"


class GroupType(enum.StrEnum):
    INCOME = "INCOME"
    EXPENSES = "EXPENSES"
    TRANSFER = "TRANSFER"


class LinkedItem(Base):
    """One authenticated connection to a financial institution."""

    __tablename__ = "linked_items"

    item_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plaid_item_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    institution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)
    transactions_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    investments_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[ItemStatus] = mapped_column(
        Enum(ItemStatus, native_enum=False), nullable=False, default=ItemStatus.OK
    )
    sync_in_progress: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("FALSE")
    )
    sync_started_at: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    last_synced_at: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    accounts: Mapped[list[Account]] = relationship(
        "Account", back_populates="item", cascade="all, delete-orphan"
    )


class Account(Base):
    """One bank or brokerage account under a linked item."""

    __tablename__ = "accounts"

    account_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    plaid_account_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("linked_items.item_id", ondelete="CASCADE"), nullable=False
    )
    # User-editable; set once at creation.
    name: Mapped[str] = mapped_column(String, nullable=False)
    official_name: Mapped[str | None] = mapped_column(String, nullable=True)
    mask: Mapped[str | None] = mapped_column(String, nullable=True)
    type: Mapped[str | None] = mapped_column(String, nullable=True)
    subtype: Mapped[str | None] = mapped_column(String, nullable=True)
    currency: Mapped[str | None] = mapped_column(String, nullable=True)
    current_balance: Mapped[Decimal | None] = mapped_column(ExactDecimal, nullable=True)
    available_balance: Mapped[Decimal | None] = mapped_column(
        ExactDecimal, nullable=True
    )
    credit_limit: Mapped[Decimal | None] = mapped_column(ExactDecimal, nullable=True)
    balance_updated_at: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    item: Mapped[LinkedItem] = relationship("LinkedItem", back_populates="accounts")


class Category(Base):
    """Top-level taxonomy node."""

    __tablename__ = "categories"

    category_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    group_type: Mapped[GroupType | None] = mapped_column(
        Enum(GroupType, native_enum=False), nullable=True
    )
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    subcategories: Mapped[list[Subcategory]] = relationship(
        "Subcategory",
        back_populates="category",
        cascade="all, delete-orphan",
        order_by="Subcategory.name",
    )


class Subcategory(Base):
    """Taxonomy leaf; belongs to exactly one category."""

    __tablename__ = "subcategories"
    __table_args__ = (
        UniqueConstraint("category_id", "name", name="uq_subcategories_category_name"),
    )

    subcategory_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    category_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("categories.category_id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String, nullable=False)

    category: Mapped[Category] = relationship(
        "Category", back_populates="subcategories"
    )


class Transaction(Base):
    """Ledger entry. Amount is negative for expenses and positive for income."""

    __tablename__ = "transactions"

    transaction_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    external_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    original_transaction_id: Mapped[str | None] = mapped_column(
        String, nullable=True, index=True
    )
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.account_id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(ExactDecimal, nullable=False)
    iso_currency_code: Mapped[str | None] = mapped_column(String, nullable=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    authorized_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    display_datetime: Mapped[str] = mapped_column(String, nullable=False)
    authorized_datetime: Mapped[str | None] = mapped_column(String, nullable=True)
    pending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    merchant_name: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_category: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_subcategory: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_channel: Mapped[str | None] = mapped_column(String, nullable=True)
    pending_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    logo_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    category_icon_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    category_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("categories.category_id"), nullable=True
    )
    subcategory_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("subcategories.subcategory_id"), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_split: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("FALSE")
    )
    parent_transaction_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("transactions.transaction_id"), nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    account: Mapped[Account] = relationship("Account")
    category: Mapped[Category | None] = relationship("Category")
    subcategory: Mapped[Subcategory | None] = relationship("Subcategory")
    tags: Mapped[list[Tag]] = relationship(
        "Tag", secondary="transaction_tags", back_populates="transactions"
    )
    files: Mapped[list[TransactionFile]] = relationship(
        "TransactionFile", back_populates="transaction", cascade="all, delete-orphan"
    )

    @property
    def is_split_protected(self) -> bool:
        return self.is_split or self.parent_transaction_id is not None


class TransactionFile(Base):
    """Receipt attachment stored by URL."""

    __tablename__ = "transaction_files"

    file_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("transactions.transaction_id", ondelete="CASCADE"),
        nullable=False,
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)

    transaction: Mapped[Transaction] = relationship(
        "Transaction", back_populates="files"
    )


class Tag(Base):
    """Tag model."""

    __tablename__ = "tags"

    tag_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    color: Mapped[str | None] = mapped_column(String, nullable=True)

    transactions: Mapped[list[Transaction]] = relationship(
        "Transaction", secondary="transaction_tags", back_populates="tags"
    )


class TransactionTag(Base):
    """Transaction-Tag junction table."""

    __tablename__ = "transaction_tags"

    transaction_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("transactions.transaction_id", ondelete="CASCADE"),
        primary_key=True,
    )
    tag_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tags.tag_id"), primary_key=True
    )


class Security(Base):
    """Security referenced by holdings and investment transactions."""

    __tablename__ = "securities"

    security_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    plaid_security_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    ticker_symbol: Mapped[str | None] = mapped_column(String, nullable=True)
    type: Mapped[str | None] = mapped_column(String, nullable=True)
    iso_currency_code: Mapped[str | None] = mapped_column(String, nullable=True)


class Holding(Base):
    """Quantity/price snapshot for one security in one account."""

    __tablename__ = "holdings"
    __table_args__ = (
        UniqueConstraint(
            "account_id", "security_id", name="uq_holdings_account_security"
        ),
    )

    holding_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.account_id", ondelete="CASCADE"), nullable=False
    )
    security_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("securities.security_id"), nullable=False
    )
    quantity: Mapped[Decimal] = mapped_column(ExactDecimal, nullable=False)
    cost_basis: Mapped[Decimal | None] = mapped_column(ExactDecimal, nullable=True)
    institution_price: Mapped[Decimal | None] = mapped_column(
        ExactDecimal, nullable=True
    )
    institution_price_as_of: Mapped[dt.date | None] = mapped_column(
        Date, nullable=True
    )
    iso_currency_code: Mapped[str | None] = mapped_column(String, nullable=True)

    account: Mapped[Account] = relationship("Account")
    security: Mapped[Security] = relationship("Security")


class InvestmentTransaction(Base):
    """Investment activity; amount keeps the provider's sign."""

    __tablename__ = "investment_transactions"

    investment_transaction_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    plaid_investment_transaction_id: Mapped[str] = mapped_column(
        String, unique=True, nullable=False
    )
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.account_id", ondelete="CASCADE"), nullable=False
    )
    security_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("securities.security_id"), nullable=True
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    subtype: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(ExactDecimal, nullable=True)
    price: Mapped[Decimal | None] = mapped_column(ExactDecimal, nullable=True)
    quantity: Mapped[Decimal | None] = mapped_column(ExactDecimal, nullable=True)
    fees: Mapped[Decimal | None] = mapped_column(ExactDecimal, nullable=True)
    iso_currency_code: Mapped[str | None] = mapped_column(String, nullable=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)


@dataclass(frozen=True)
class SubcategoryOption:
    subcategory_id: int
    name: str


@dataclass(frozen=True)
class CategoryOption:
    """Category with its subcategories, detached from the session."""

    category_id: int
    name: str
    group_type: GroupType | None
    subcategories: list[SubcategoryOption] = field(default_factory=list)

    def find_subcategory(self, subcategory_id: int | None) -> SubcategoryOption | None:
        if subcategory_id is None:
            return None
        for sub in self.subcategories:
            if sub.subcategory_id == subcategory_id:
                return sub
        return None


@dataclass(frozen=True)
class TransactionHistoryItem:
    """Categorized transaction used as prompt context."""

    name: str
    merchant_name: str | None
    amount: Decimal
    display_datetime: str
    category_id: int | None
    category_name: str | None
    subcategory_id: int | None
    subcategory_name: str | None


@dataclass(frozen=True)
class TransactionForCategorization:
    transaction_id: int
    name: str
    merchant_name: str | None
    amount: Decimal
    date: dt.date
    provider_category: str | None
    provider_subcategory: str | None
    notes: str | None
    category_id: int | None
    subcategory_id: int | None
    files: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class HoldingRef:
    """Existing holding keyed by provider account and security ids."""

    holding_id: int
    plaid_account_id: str
    plaid_security_id: str


@dataclass(frozen=True)
class UpsertOutcome:
    row_id: int
    created: bool
