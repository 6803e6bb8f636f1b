from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import create_engine, func, or_, update
from sqlalchemy.orm import Session, selectinload, sessionmaker

from finsync.adapters.db.models import (
    Account,
    Base,
    Category,
    CategoryOption,
    GroupType,
    Holding,
    HoldingRef,
    InvestmentTransaction,
    ItemStatus,
    LinkedItem,
    Security,
    Subcategory,
    SubcategoryOption,
    Tag,
    Transaction,
    TransactionFile,
    TransactionForCategorization,
    TransactionHistoryItem,
    TransactionTag,
    UpsertOutcome,
)

# Columns a provider refresh may overwrite. Everything else on a transaction
# (notes, category, split markers) belongs to the user.
PROVIDER_TRANSACTION_FIELDS = (
    "amount",
    "iso_currency_code",
    "date",
    "authorized_date",
    "display_datetime",
    "authorized_datetime",
    "pending",
    "name",
    "merchant_name",
    "provider_category",
    "provider_subcategory",
    "payment_channel",
    "pending_transaction_id",
    "logo_url",
    "category_icon_url",
)

SIMILAR_NAME_PREFIX_LENGTH = 10


def _history_item(txn: Transaction) -> TransactionHistoryItem:
    return TransactionHistoryItem(
        name=txn.name,
        merchant_name=txn.merchant_name,
        amount=txn.amount,
        display_datetime=txn.display_datetime,
        category_id=txn.category_id,
        category_name=txn.category.name if txn.category else None,
        subcategory_id=txn.subcategory_id,
        subcategory_name=txn.subcategory.name if txn.subcategory else None,
    )


def _category_option(category: Category) -> CategoryOption:
    return CategoryOption(
        category_id=category.category_id,
        name=category.name,
        group_type=category.group_type,
        subcategories=[
            SubcategoryOption(subcategory_id=sub.subcategory_id, name=sub.name)
            for sub in category.subcategories
        ],
    )


class DB:
    """Database service layer providing ORM models and helper methods."""

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///finsync.db")
        """
        self._url = url
        self._engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self._engine)

    # ------------------------------------------------------------------
    # Linked items
    # ------------------------------------------------------------------

    def save_linked_item(
        self,
        *,
        plaid_item_id: str,
        access_token: str,
        institution_id: str | None = None,
        institution_name: str | None = None,
    ) -> LinkedItem:
        """Save or update a linked item.

        Re-saving an existing item (re-authentication) replaces the access
        token, resets the status to OK and clears any sync_in_progress flag
        left behind by a sync that never finished.

        Args:
            plaid_item_id: Provider item ID
            access_token: Provider access token
            institution_id: Optional institution ID
            institution_name: Optional institution name

        Returns:
            Created or updated LinkedItem instance
        """
        with self.session() as session:  # type: Session
            item = (
                session.query(LinkedItem).filter_by(plaid_item_id=plaid_item_id).first()
            )
            if item is None:
                item = LinkedItem(
                    plaid_item_id=plaid_item_id,
                    access_token=access_token,
                    institution_id=institution_id,
                    institution_name=institution_name,
                    status=ItemStatus.OK,
                )
                session.add(item)
            else:
                item.access_token = access_token
                item.institution_id = institution_id or item.institution_id
                item.institution_name = institution_name or item.institution_name
                item.status = ItemStatus.OK
                item.sync_in_progress = False
                item.sync_started_at = None
            session.flush()
            session.refresh(item)
            session.expunge(item)
            return item

    def get_linked_item(self, item_id: int) -> LinkedItem | None:
        with self.session() as session:  # type: Session
            item = session.get(LinkedItem, item_id)
            if item:
                session.expunge(item)
            return item

    def get_linked_item_by_plaid_id(self, plaid_item_id: str) -> LinkedItem | None:
        with self.session() as session:  # type: Session
            item = (
                session.query(LinkedItem).filter_by(plaid_item_id=plaid_item_id).first()
            )
            if item:
                session.expunge(item)
            return item

    def list_linked_items(self) -> list[LinkedItem]:
        """List all linked items in creation order."""
        with self.session() as session:  # type: Session
            items = session.query(LinkedItem).order_by(LinkedItem.item_id).all()
            for item in items:
                session.expunge(item)
            return items

    def update_item_status(self, item_id: int, status: ItemStatus) -> None:
        with self.session() as session:  # type: Session
            session.execute(
                update(LinkedItem)
                .where(LinkedItem.item_id == item_id)
                .values(status=status)
            )

    def update_transactions_cursor(self, item_id: int, cursor: str) -> None:
        """Persist the transaction cursor and stamp the last successful sync."""
        with self.session() as session:  # type: Session
            session.execute(
                update(LinkedItem)
                .where(LinkedItem.item_id == item_id)
                .values(transactions_cursor=cursor, last_synced_at=datetime.now(UTC))
            )

    def try_acquire_sync_lock(
        self, item_id: int, *, stale_after: timedelta | None = None
    ) -> bool:
        """Set the item's sync_in_progress flag if it is not already set.

        The check and the write happen in a single UPDATE statement, so two
        concurrent callers cannot both observe the flag as free. A flag set
        more than ``stale_after`` ago belonged to a sync that died without
        releasing it and is taken over.

        Args:
            item_id: Local item ID
            stale_after: Age after which a held flag is considered abandoned,
                None to never take over a held flag

        Returns:
            True if this caller now holds the flag
        """
        now = datetime.now(UTC)
        available = LinkedItem.sync_in_progress.is_(False)
        if stale_after is not None:
            available = or_(
                available,
                LinkedItem.sync_started_at.is_(None),
                LinkedItem.sync_started_at < now - stale_after,
            )
        with self.session() as session:  # type: Session
            result = session.execute(
                update(LinkedItem)
                .where(LinkedItem.item_id == item_id, available)
                .values(sync_in_progress=True, sync_started_at=now)
            )
            return result.rowcount == 1

    def release_sync_lock(self, item_id: int) -> None:
        with self.session() as session:  # type: Session
            session.execute(
                update(LinkedItem)
                .where(LinkedItem.item_id == item_id)
                .values(sync_in_progress=False, sync_started_at=None)
            )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def upsert_account(self, item_id: int, data: Mapping[str, Any]) -> UpsertOutcome:
        """Insert or update an account keyed by its provider account ID.

        The display name is written only when the account is created; later
        passes never overwrite it.

        Args:
            item_id: Local item ID owning the account
            data: Account fields from build_account_data

        Returns:
            UpsertOutcome with the local account ID
        """
        with self.session() as session:  # type: Session
            account = (
                session.query(Account)
                .filter(Account.plaid_account_id == data["plaid_account_id"])
                .first()
            )
            created = account is None
            if account is None:
                account = Account(item_id=item_id, **data)
                session.add(account)
            else:
                for key, value in data.items():
                    if key not in ("name", "plaid_account_id"):
                        setattr(account, key, value)
            session.flush()
            return UpsertOutcome(row_id=account.account_id, created=created)

    def get_account_id_by_plaid_id(self, plaid_account_id: str) -> int | None:
        with self.session() as session:  # type: Session
            account = (
                session.query(Account)
                .filter(Account.plaid_account_id == plaid_account_id)
                .first()
            )
            return account.account_id if account else None

    def get_account(self, account_id: int) -> Account | None:
        with self.session() as session:  # type: Session
            account = session.get(Account, account_id)
            if account:
                session.expunge(account)
            return account

    # ------------------------------------------------------------------
    # Transactions (sync primitives)
    # ------------------------------------------------------------------

    def find_transaction_for_sync(self, external_id: str) -> Transaction | None:
        """Find the local row that owns a provider transaction ID.

        Matches either the live external ID or the original ID preserved on a
        split parent. When both exist the split parent wins.

        Args:
            external_id: Provider transaction ID

        Returns:
            Transaction instance or None if not found
        """
        with self.session() as session:  # type: Session
            transaction = (
                session.query(Transaction)
                .filter(
                    or_(
                        Transaction.external_id == external_id,
                        Transaction.original_transaction_id == external_id,
                    )
                )
                .order_by(Transaction.is_split.desc(), Transaction.transaction_id)
                .first()
            )
            if transaction:
                session.expunge(transaction)
            return transaction

    def insert_transaction(self, data: Mapping[str, Any]) -> int:
        """Insert a provider transaction.

        Args:
            data: Transaction fields from build_transaction_data, keyed with
                plaid_account_id instead of the local account ID

        Returns:
            Local transaction ID

        Raises:
            LookupError: If the provider account has not been synced
        """
        fields = dict(data)
        plaid_account_id = fields.pop("plaid_account_id")
        with self.session() as session:  # type: Session
            account = (
                session.query(Account)
                .filter(Account.plaid_account_id == plaid_account_id)
                .first()
            )
            if account is None:
                raise LookupError(f"Account {plaid_account_id} not found")
            transaction = Transaction(account_id=account.account_id, **fields)
            session.add(transaction)
            session.flush()
            return transaction.transaction_id

    def update_transaction_from_provider(
        self, transaction_id: int, data: Mapping[str, Any]
    ) -> bool:
        """Overwrite provider-owned fields of an existing transaction.

        Split-protected rows are left untouched.

        Args:
            transaction_id: Local transaction ID
            data: Transaction fields from build_transaction_data

        Returns:
            True if any provider field actually changed
        """
        with self.session() as session:  # type: Session
            transaction = session.get(Transaction, transaction_id)
            if transaction is None or transaction.is_split_protected:
                return False
            changed = False
            for key in PROVIDER_TRANSACTION_FIELDS:
                if key in data and getattr(transaction, key) != data[key]:
                    setattr(transaction, key, data[key])
                    changed = True
            return changed

    def delete_unprotected_transactions(self, external_ids: Sequence[str]) -> int:
        """Delete transactions by external ID, skipping split-protected rows.

        Args:
            external_ids: Provider transaction IDs reported as removed

        Returns:
            Number of rows actually deleted
        """
        if not external_ids:
            return 0

        with self.session() as session:  # type: Session
            transactions = (
                session.query(Transaction)
                .filter(
                    Transaction.external_id.in_(list(external_ids)),
                    Transaction.is_split.is_(False),
                    Transaction.parent_transaction_id.is_(None),
                )
                .all()
            )
            for transaction in transactions:
                session.delete(transaction)
            return len(transactions)

    def get_transaction(self, transaction_id: int) -> Transaction | None:
        """Fetch one transaction with its tags and files loaded."""
        with self.session() as session:  # type: Session
            transaction = (
                session.query(Transaction)
                .options(
                    selectinload(Transaction.tags), selectinload(Transaction.files)
                )
                .filter(Transaction.transaction_id == transaction_id)
                .first()
            )
            if transaction:
                session.expunge(transaction)
            return transaction

    def list_child_transactions(self, parent_transaction_id: int) -> list[Transaction]:
        with self.session() as session:  # type: Session
            children = (
                session.query(Transaction)
                .filter(Transaction.parent_transaction_id == parent_transaction_id)
                .order_by(Transaction.transaction_id)
                .all()
            )
            for child in children:
                session.expunge(child)
            return children

    def attach_file(self, transaction_id: int, url: str) -> TransactionFile:
        with self.session() as session:  # type: Session
            file = TransactionFile(transaction_id=transaction_id, url=url)
            session.add(file)
            session.flush()
            session.refresh(file)
            session.expunge(file)
            return file

    # ------------------------------------------------------------------
    # Categorization
    # ------------------------------------------------------------------

    def get_transaction_for_categorization(
        self, transaction_id: int
    ) -> TransactionForCategorization | None:
        with self.session() as session:  # type: Session
            transaction = (
                session.query(Transaction)
                .options(selectinload(Transaction.files))
                .filter(Transaction.transaction_id == transaction_id)
                .first()
            )
            if transaction is None:
                return None
            return TransactionForCategorization(
                transaction_id=transaction.transaction_id,
                name=transaction.name,
                merchant_name=transaction.merchant_name,
                amount=transaction.amount,
                date=transaction.date,
                provider_category=transaction.provider_category,
                provider_subcategory=transaction.provider_subcategory,
                notes=transaction.notes,
                category_id=transaction.category_id,
                subcategory_id=transaction.subcategory_id,
                files=[file.url for file in transaction.files],
            )

    def fetch_category_options(self) -> list[CategoryOption]:
        """Fetch the full taxonomy ordered for display.

        Returns:
            List of CategoryOption with subcategories sorted by name
        """
        with self.session() as session:  # type: Session
            categories = (
                session.query(Category)
                .options(selectinload(Category.subcategories))
                .order_by(Category.display_order, Category.name)
                .all()
            )
            return [_category_option(category) for category in categories]

    def create_category(
        self,
        name: str,
        *,
        group_type: GroupType | None = None,
        display_order: int = 0,
        subcategories: Iterable[str] = (),
    ) -> CategoryOption:
        with self.session() as session:  # type: Session
            category = Category(
                name=name, group_type=group_type, display_order=display_order
            )
            category.subcategories = [Subcategory(name=sub) for sub in subcategories]
            session.add(category)
            session.flush()
            return _category_option(category)

    def find_similar_transactions(
        self,
        *,
        exclude_transaction_id: int,
        name: str,
        merchant_name: str | None,
        limit: int = 50,
    ) -> list[TransactionHistoryItem]:
        """Find categorized transactions resembling the given one.

        A row is similar when its merchant matches exactly (case-insensitive)
        or its name contains the first ten characters of the given name.
        Split parents and uncategorized rows are excluded.

        Args:
            exclude_transaction_id: Transaction being categorized
            name: Transaction name
            merchant_name: Merchant name, if the provider supplied one
            limit: Maximum rows returned

        Returns:
            Newest-first list of TransactionHistoryItem
        """
        prefix = name[:SIMILAR_NAME_PREFIX_LENGTH].lower()
        matches = [Transaction.name.icontains(prefix, autoescape=True)]
        if merchant_name:
            matches.append(
                func.lower(Transaction.merchant_name) == merchant_name.lower()
            )

        with self.session() as session:  # type: Session
            rows = (
                session.query(Transaction)
                .options(
                    selectinload(Transaction.category),
                    selectinload(Transaction.subcategory),
                )
                .filter(
                    Transaction.transaction_id != exclude_transaction_id,
                    Transaction.category_id.is_not(None),
                    Transaction.is_split.is_(False),
                    or_(*matches),
                )
                .order_by(Transaction.display_datetime.desc())
                .limit(limit)
                .all()
            )
            return [_history_item(row) for row in rows]

    def recent_categorized_transactions(
        self, limit: int = 100
    ) -> list[TransactionHistoryItem]:
        with self.session() as session:  # type: Session
            rows = (
                session.query(Transaction)
                .options(
                    selectinload(Transaction.category),
                    selectinload(Transaction.subcategory),
                )
                .filter(
                    Transaction.category_id.is_not(None),
                    Transaction.is_split.is_(False),
                )
                .order_by(Transaction.display_datetime.desc())
                .limit(limit)
                .all()
            )
            return [_history_item(row) for row in rows]

    def list_uncategorized_transaction_ids(self, limit: int | None = None) -> list[int]:
        """IDs of uncategorized, non-split transactions, newest first."""
        with self.session() as session:  # type: Session
            query = (
                session.query(Transaction.transaction_id)
                .filter(
                    Transaction.category_id.is_(None),
                    Transaction.is_split.is_(False),
                )
                .order_by(Transaction.display_datetime.desc())
            )
            if limit is not None:
                query = query.limit(limit)
            return [row.transaction_id for row in query.all()]

    def get_or_create_tag(self, name: str, color: str | None = None) -> Tag:
        with self.session() as session:  # type: Session
            tag = self._get_or_create_tag(session, name, color)
            session.flush()
            session.refresh(tag)
            session.expunge(tag)
            return tag

    def _get_or_create_tag(
        self, session: Session, name: str, color: str | None = None
    ) -> Tag:
        tag = session.query(Tag).filter(Tag.name == name).first()
        if tag is None:
            tag = Tag(name=name, color=color)
            session.add(tag)
            session.flush()
        return tag

    def _attach_tags(
        self, session: Session, transaction_id: int, tag_names: Iterable[str]
    ) -> None:
        for tag_name in tag_names:
            tag = self._get_or_create_tag(session, tag_name)
            exists = (
                session.query(TransactionTag)
                .filter_by(transaction_id=transaction_id, tag_id=tag.tag_id)
                .first()
            )
            if exists is None:
                session.add(
                    TransactionTag(transaction_id=transaction_id, tag_id=tag.tag_id)
                )

    def apply_categorization(
        self,
        transaction_id: int,
        *,
        category_id: int,
        subcategory_id: int | None,
        tag_names: Sequence[str] = (),
    ) -> None:
        """Assign a category and attach tags in one unit of work.

        Args:
            transaction_id: Local transaction ID
            category_id: Category to assign
            subcategory_id: Subcategory to assign, or None
            tag_names: Tags to attach, created on first use

        Raises:
            LookupError: If the transaction does not exist
        """
        with self.session() as session:  # type: Session
            transaction = session.get(Transaction, transaction_id)
            if transaction is None:
                raise LookupError(f"Transaction {transaction_id} not found")
            transaction.category_id = category_id
            transaction.subcategory_id = subcategory_id
            self._attach_tags(session, transaction_id, tag_names)

    def tag_names_for_transaction(self, transaction_id: int) -> list[str]:
        with self.session() as session:  # type: Session
            rows = (
                session.query(Tag.name)
                .join(TransactionTag, TransactionTag.tag_id == Tag.tag_id)
                .filter(TransactionTag.transaction_id == transaction_id)
                .order_by(Tag.name)
                .all()
            )
            return [row.name for row in rows]

    # ------------------------------------------------------------------
    # Splits
    # ------------------------------------------------------------------

    def split_transaction(
        self,
        parent_id: int,
        children: Sequence[Mapping[str, Any]],
        *,
        tag_names: Sequence[str] = (),
    ) -> list[int]:
        """Mark a transaction as split and create its children.

        The parent keeps its external ID and also records it as
        original_transaction_id so sync can still find it. Children copy the
        parent's provider fields and carry their own amount, category and
        notes.

        Args:
            parent_id: Local ID of the transaction being split
            children: Dicts with amount, category_id, subcategory_id, notes
            tag_names: Tags to attach to the parent

        Returns:
            Local IDs of the created children, in input order

        Raises:
            LookupError: If the parent does not exist
        """
        with self.session() as session:  # type: Session
            parent = session.get(Transaction, parent_id)
            if parent is None:
                raise LookupError(f"Transaction {parent_id} not found")

            parent.is_split = True
            parent.original_transaction_id = parent.external_id

            created: list[Transaction] = []
            for child in children:
                row = Transaction(
                    external_id=None,
                    original_transaction_id=None,
                    account_id=parent.account_id,
                    amount=Decimal(child["amount"]),
                    iso_currency_code=parent.iso_currency_code,
                    date=parent.date,
                    authorized_date=parent.authorized_date,
                    display_datetime=parent.display_datetime,
                    authorized_datetime=parent.authorized_datetime,
                    pending=parent.pending,
                    name=parent.name,
                    merchant_name=parent.merchant_name,
                    provider_category=parent.provider_category,
                    provider_subcategory=parent.provider_subcategory,
                    payment_channel=parent.payment_channel,
                    logo_url=parent.logo_url,
                    category_icon_url=parent.category_icon_url,
                    category_id=child.get("category_id"),
                    subcategory_id=child.get("subcategory_id"),
                    notes=child.get("notes"),
                    parent_transaction_id=parent.transaction_id,
                )
                session.add(row)
                created.append(row)

            self._attach_tags(session, parent_id, tag_names)
            session.flush()
            return [row.transaction_id for row in created]

    # ------------------------------------------------------------------
    # Investments
    # ------------------------------------------------------------------

    def upsert_security(self, data: Mapping[str, Any]) -> UpsertOutcome:
        with self.session() as session:  # type: Session
            security = (
                session.query(Security)
                .filter(Security.plaid_security_id == data["plaid_security_id"])
                .first()
            )
            created = security is None
            if security is None:
                security = Security(**data)
                session.add(security)
            else:
                for key, value in data.items():
                    setattr(security, key, value)
            session.flush()
            return UpsertOutcome(row_id=security.security_id, created=created)

    def get_security_id_by_plaid_id(self, plaid_security_id: str) -> int | None:
        with self.session() as session:  # type: Session
            security = (
                session.query(Security)
                .filter(Security.plaid_security_id == plaid_security_id)
                .first()
            )
            return security.security_id if security else None

    def list_holdings_for_item(self, item_id: int) -> list[HoldingRef]:
        """List holdings under an item's accounts, keyed by provider IDs."""
        with self.session() as session:  # type: Session
            rows = (
                session.query(
                    Holding.holding_id,
                    Account.plaid_account_id,
                    Security.plaid_security_id,
                )
                .join(Account, Holding.account_id == Account.account_id)
                .join(Security, Holding.security_id == Security.security_id)
                .filter(Account.item_id == item_id)
                .order_by(Holding.holding_id)
                .all()
            )
            return [
                HoldingRef(
                    holding_id=row.holding_id,
                    plaid_account_id=row.plaid_account_id,
                    plaid_security_id=row.plaid_security_id,
                )
                for row in rows
            ]

    def delete_holdings(self, holding_ids: Sequence[int]) -> int:
        if not holding_ids:
            return 0

        with self.session() as session:  # type: Session
            return (
                session.query(Holding)
                .filter(Holding.holding_id.in_(list(holding_ids)))
                .delete(synchronize_session=False)
            )

    def find_holding(self, account_id: int, security_id: int) -> Holding | None:
        with self.session() as session:  # type: Session
            holding = (
                session.query(Holding)
                .filter_by(account_id=account_id, security_id=security_id)
                .first()
            )
            if holding:
                session.expunge(holding)
            return holding

    def upsert_holding(self, data: Mapping[str, Any]) -> UpsertOutcome:
        """Insert or update a holding keyed by (account_id, security_id).

        Args:
            data: Holding fields from build_holding_data, with local account
                and security IDs resolved

        Returns:
            UpsertOutcome with the local holding ID
        """
        with self.session() as session:  # type: Session
            holding = (
                session.query(Holding)
                .filter_by(
                    account_id=data["account_id"], security_id=data["security_id"]
                )
                .first()
            )
            created = holding is None
            if holding is None:
                holding = Holding(**data)
                session.add(holding)
            else:
                for key, value in data.items():
                    setattr(holding, key, value)
            session.flush()
            return UpsertOutcome(row_id=holding.holding_id, created=created)

    def upsert_investment_transaction(self, data: Mapping[str, Any]) -> UpsertOutcome:
        with self.session() as session:  # type: Session
            row = (
                session.query(InvestmentTransaction)
                .filter(
                    InvestmentTransaction.plaid_investment_transaction_id
                    == data["plaid_investment_transaction_id"]
                )
                .first()
            )
            created = row is None
            if row is None:
                row = InvestmentTransaction(**data)
                session.add(row)
            else:
                for key, value in data.items():
                    setattr(row, key, value)
            session.flush()
            return UpsertOutcome(
                row_id=row.investment_transaction_id, created=created
            )

    def list_investment_transactions(self) -> list[InvestmentTransaction]:
        with self.session() as session:  # type: Session
            rows = (
                session.query(InvestmentTransaction)
                .order_by(InvestmentTransaction.investment_transaction_id)
                .all()
            )
            for row in rows:
                session.expunge(row)
            return rows

    def list_holdings(self) -> list[Holding]:
        with self.session() as session:  # type: Session
            holdings = session.query(Holding).order_by(Holding.holding_id).all()
            for holding in holdings:
                session.expunge(holding)
            return holdings
