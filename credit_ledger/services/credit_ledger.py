"""
Credit ledger service.

Maintains per-user balances (with a frozen sub-balance) and the append-only
credit_transactions log. Every balance change commits together with exactly
one transaction row, and every row carries a unique reference_id so retried
webhooks and re-run backfills apply at most once.

Usage:
    ledger = CreditLedger(db)
    ledger.earn(user_id, 30, "bonus", "Signup bonus", reference_id=f"signup_{user_id}")
    if ledger.has_enough_credits(user_id, 5):
        ...run the job...
        ledger.spend(user_id, 5, "api_call", "Image generation", reference_id=f"task_{task_id}")
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from credit_ledger.core.errors import AccountNotFound, InsufficientCredits, InvalidAmount
from credit_ledger.db.base import utcnow
from credit_ledger.db.models.credit_account import CreditAccount
from credit_ledger.db.models.credit_transaction import CreditTransaction
from credit_ledger.db.upsert import insert_ignore
from credit_ledger.schemas.credits import (
    AdminMetadata,
    MetadataInput,
    deserialize_metadata,
    serialize_metadata,
)

logger = logging.getLogger(__name__)

# Counters are 32-bit integer columns
MAX_CREDIT_AMOUNT = 2**31 - 1


def _validate_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}")
    if amount > MAX_CREDIT_AMOUNT:
        raise InvalidAmount(f"Amount exceeds the maximum of {MAX_CREDIT_AMOUNT}, got {amount}")
    return amount


def signed_amount(transaction: CreditTransaction) -> int:
    """Balance effect of a transaction row: +earn, -spend, admin_adjust by direction."""
    if transaction.type == "earn":
        return transaction.amount
    if transaction.type == "spend":
        return -transaction.amount
    if transaction.type == "admin_adjust":
        direction = deserialize_metadata(transaction.metadata_json).get("direction")
        return -transaction.amount if direction == "debit" else transaction.amount
    # freeze / unfreeze move credits between spendable and held only
    return 0


class CreditLedger:
    """Balance + append-only ledger operations, bound to one database session."""

    def __init__(self, db: Session):
        self.db = db

    # ==========================================
    # ACCOUNTS
    # ==========================================

    def _ensure_account(self, user_id: str) -> None:
        now = utcnow()
        insert_ignore(
            self.db,
            CreditAccount,
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "balance": 0,
                "frozen_balance": 0,
                "total_earned": 0,
                "total_spent": 0,
                "created_at": now,
                "updated_at": now,
            },
            ["user_id"],
        )

    def get_account(self, user_id: str) -> Optional[CreditAccount]:
        return (
            self.db.query(CreditAccount)
            .filter(CreditAccount.user_id == user_id)
            .populate_existing()
            .first()
        )

    def get_or_create_account(self, user_id: str) -> CreditAccount:
        """
        Return the user's account, creating an empty one on first touch.

        Uses INSERT ... ON CONFLICT DO NOTHING so concurrent first calls for the
        same user converge on a single row.
        """
        self._ensure_account(user_id)
        self.db.commit()
        return self.get_account(user_id)

    def _current_balance(self, user_id: str) -> int:
        return int(
            self.db.query(CreditAccount.balance)
            .filter(CreditAccount.user_id == user_id)
            .scalar() or 0
        )

    def _spendable(self, user_id: str) -> int:
        row = (
            self.db.query(CreditAccount.balance, CreditAccount.frozen_balance)
            .filter(CreditAccount.user_id == user_id)
            .first()
        )
        if not row:
            return 0
        return int(row[0]) - int(row[1])

    # ==========================================
    # IDEMPOTENCY
    # ==========================================

    def find_by_reference(self, reference_id: str) -> Optional[CreditTransaction]:
        return (
            self.db.query(CreditTransaction)
            .filter(CreditTransaction.reference_id == reference_id)
            .first()
        )

    def has_reference_prefix(self, prefix: str, user_id: Optional[str] = None) -> bool:
        """Whether any transaction key starts with prefix (LIKE wildcards escaped)."""
        query = self.db.query(CreditTransaction.id).filter(
            CreditTransaction.reference_id.startswith(prefix, autoescape=True)
        )
        if user_id is not None:
            query = query.filter(CreditTransaction.user_id == user_id)
        return query.first() is not None

    def _record(
        self,
        *,
        user_id: str,
        type: str,
        amount: int,
        source: str,
        description: Optional[str],
        reference_id: str,
        metadata_json: Optional[str],
    ) -> CreditTransaction:
        transaction = CreditTransaction(
            id=str(uuid.uuid4()),
            user_id=user_id,
            type=type,
            amount=amount,
            balance_after=self._current_balance(user_id),
            source=source,
            description=description,
            reference_id=reference_id,
            metadata_json=metadata_json,
            created_at=utcnow(),
        )
        self.db.add(transaction)
        return transaction

    def _commit_or_existing(self, transaction: CreditTransaction, reference_id: str) -> CreditTransaction:
        """
        Commit the pending account update + transaction row together.

        A unique violation on reference_id means a concurrent call applied the
        same event first: roll back our balance change and return its row.
        """
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.find_by_reference(reference_id)
            if existing is not None:
                logger.info(f"Duplicate credit event ignored: reference_id={reference_id}")
                return existing
            raise
        self.db.refresh(transaction)
        return transaction

    # ==========================================
    # EARN / SPEND
    # ==========================================

    def earn(
        self,
        user_id: str,
        amount: int,
        source: str,
        description: Optional[str],
        reference_id: str,
        metadata: MetadataInput = None,
    ) -> CreditTransaction:
        """
        Credit a user's balance.

        Re-running with an already-used reference_id returns the original
        transaction and leaves the balance untouched.

        Raises:
            InvalidAmount: amount is not a positive integer up to MAX_CREDIT_AMOUNT, or the
                balance would overflow
        """
        amount = _validate_amount(amount)
        if not reference_id:
            raise ValueError("earn requires a reference_id")

        existing = self.find_by_reference(reference_id)
        if existing is not None:
            logger.info(f"Credits already granted: reference_id={reference_id}, user_id={user_id}")
            return existing

        metadata_json = serialize_metadata(source, metadata)

        self._ensure_account(user_id)
        updated = self.db.query(CreditAccount).filter(
            CreditAccount.user_id == user_id,
            CreditAccount.balance <= MAX_CREDIT_AMOUNT - amount,
            CreditAccount.total_earned <= MAX_CREDIT_AMOUNT - amount,
        ).update(
            {
                CreditAccount.balance: CreditAccount.balance + amount,
                CreditAccount.total_earned: CreditAccount.total_earned + amount,
                CreditAccount.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
        if not updated:
            self.db.rollback()
            raise InvalidAmount(f"Earning {amount} credits would overflow the account of user {user_id}")
        transaction = self._record(
            user_id=user_id,
            type="earn",
            amount=amount,
            source=source,
            description=description,
            reference_id=reference_id,
            metadata_json=metadata_json,
        )
        transaction = self._commit_or_existing(transaction, reference_id)

        logger.info(
            f"Credits earned: user_id={user_id}, amount={amount}, source={source}, "
            f"balance_after={transaction.balance_after}, reference_id={reference_id}"
        )
        return transaction

    def spend(
        self,
        user_id: str,
        amount: int,
        source: str,
        description: Optional[str],
        reference_id: Optional[str] = None,
        metadata: MetadataInput = None,
    ) -> CreditTransaction:
        """
        Debit a user's spendable balance (balance - frozen_balance).

        The balance check and the debit are one conditional UPDATE, so a
        concurrent spend can never push the spendable balance below zero.

        Raises:
            InvalidAmount: amount is not a positive integer
            InsufficientCredits: spendable balance is below amount
        """
        amount = _validate_amount(amount)

        if reference_id:
            existing = self.find_by_reference(reference_id)
            if existing is not None:
                logger.info(f"Spend already recorded: reference_id={reference_id}, user_id={user_id}")
                return existing
        else:
            reference_id = f"spend_{uuid.uuid4().hex}"

        metadata_json = serialize_metadata(source, metadata)

        self._ensure_account(user_id)
        updated = self.db.query(CreditAccount).filter(
            CreditAccount.user_id == user_id,
            CreditAccount.balance - CreditAccount.frozen_balance >= amount,
        ).update(
            {
                CreditAccount.balance: CreditAccount.balance - amount,
                CreditAccount.total_spent: CreditAccount.total_spent + amount,
                CreditAccount.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
        if not updated:
            available = self._spendable(user_id)
            self.db.rollback()
            logger.warning(
                f"Insufficient credits: user_id={user_id}, required={amount}, available={available}"
            )
            raise InsufficientCredits(user_id, amount, available)

        transaction = self._record(
            user_id=user_id,
            type="spend",
            amount=amount,
            source=source,
            description=description,
            reference_id=reference_id,
            metadata_json=metadata_json,
        )
        transaction = self._commit_or_existing(transaction, reference_id)

        logger.info(
            f"Credits spent: user_id={user_id}, amount={amount}, source={source}, "
            f"balance_after={transaction.balance_after}"
        )
        return transaction

    # ==========================================
    # FREEZE / UNFREEZE
    # ==========================================

    def freeze(
        self,
        user_id: str,
        amount: int,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        source: str = "admin",
    ) -> CreditTransaction:
        """
        Hold credits (e.g. pending refund or dispute) without changing balance.

        Raises:
            AccountNotFound: the user has never had an account
            InvalidAmount: the hold would exceed the balance
        """
        amount = _validate_amount(amount)
        if self.get_account(user_id) is None:
            raise AccountNotFound(f"No credit account for user {user_id}")
        reference_id = reference_id or f"freeze_{uuid.uuid4().hex}"

        updated = self.db.query(CreditAccount).filter(
            CreditAccount.user_id == user_id,
            CreditAccount.frozen_balance + amount <= CreditAccount.balance,
        ).update(
            {
                CreditAccount.frozen_balance: CreditAccount.frozen_balance + amount,
                CreditAccount.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
        if not updated:
            self.db.rollback()
            raise InvalidAmount(f"Cannot freeze {amount} credits: exceeds balance for user {user_id}")

        transaction = self._record(
            user_id=user_id,
            type="freeze",
            amount=amount,
            source=source,
            description=description or f"Froze {amount} credits",
            reference_id=reference_id,
            metadata_json=None,
        )
        transaction = self._commit_or_existing(transaction, reference_id)
        logger.info(f"Credits frozen: user_id={user_id}, amount={amount}")
        return transaction

    def unfreeze(
        self,
        user_id: str,
        amount: Optional[int] = None,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        source: str = "admin",
    ) -> Optional[CreditTransaction]:
        """
        Release held credits; amount=None releases the whole frozen balance.

        Returns None when releasing everything and nothing is frozen.

        Raises:
            AccountNotFound: the user has never had an account
            InvalidAmount: amount exceeds the current frozen balance
        """
        account = self.get_account(user_id)
        if account is None:
            raise AccountNotFound(f"No credit account for user {user_id}")

        if amount is None:
            amount = account.frozen_balance
            if amount == 0:
                logger.info(f"Nothing to unfreeze: user_id={user_id}")
                return None
        amount = _validate_amount(amount)
        reference_id = reference_id or f"unfreeze_{uuid.uuid4().hex}"

        updated = self.db.query(CreditAccount).filter(
            CreditAccount.user_id == user_id,
            CreditAccount.frozen_balance >= amount,
        ).update(
            {
                CreditAccount.frozen_balance: CreditAccount.frozen_balance - amount,
                CreditAccount.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
        if not updated:
            self.db.rollback()
            raise InvalidAmount(
                f"Cannot unfreeze {amount} credits: exceeds frozen balance for user {user_id}"
            )

        transaction = self._record(
            user_id=user_id,
            type="unfreeze",
            amount=amount,
            source=source,
            description=description or f"Released {amount} frozen credits",
            reference_id=reference_id,
            metadata_json=None,
        )
        transaction = self._commit_or_existing(transaction, reference_id)
        logger.info(f"Credits unfrozen: user_id={user_id}, amount={amount}")
        return transaction

    # ==========================================
    # ADMIN
    # ==========================================

    def admin_adjust(
        self,
        user_id: str,
        delta: int,
        description: str,
        reference_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditTransaction:
        """
        Signed manual correction. Never takes the balance below the frozen amount.

        Raises:
            InvalidAmount: delta is zero or the debit exceeds the spendable balance
        """
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise InvalidAmount(f"Adjustment must be a non-zero integer, got {delta!r}")
        if abs(delta) > MAX_CREDIT_AMOUNT:
            raise InvalidAmount(f"Adjustment exceeds the maximum of {MAX_CREDIT_AMOUNT}, got {delta}")
        if not reference_id:
            raise ValueError("admin_adjust requires a reference_id")

        existing = self.find_by_reference(reference_id)
        if existing is not None:
            return existing

        direction = "credit" if delta > 0 else "debit"
        amount = abs(delta)
        metadata_json = serialize_metadata(
            "admin", AdminMetadata(**{**(metadata or {}), "direction": direction})
        )

        self._ensure_account(user_id)
        query = self.db.query(CreditAccount).filter(CreditAccount.user_id == user_id)
        if direction == "debit":
            query = query.filter(CreditAccount.balance - CreditAccount.frozen_balance >= amount)
        else:
            query = query.filter(CreditAccount.balance <= MAX_CREDIT_AMOUNT - amount)
        updated = query.update(
            {
                CreditAccount.balance: CreditAccount.balance + delta,
                CreditAccount.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
        if not updated:
            available = self._spendable(user_id)
            self.db.rollback()
            if direction == "credit":
                raise InvalidAmount(f"Crediting {amount} credits would overflow the account of user {user_id}")
            raise InvalidAmount(
                f"Cannot debit {amount} credits from user {user_id}: spendable balance is {available}"
            )

        transaction = self._record(
            user_id=user_id,
            type="admin_adjust",
            amount=amount,
            source="admin",
            description=description,
            reference_id=reference_id,
            metadata_json=metadata_json,
        )
        transaction = self._commit_or_existing(transaction, reference_id)
        logger.warning(
            f"Admin credit adjustment: user_id={user_id}, delta={delta}, "
            f"balance_after={transaction.balance_after}, reference_id={reference_id}"
        )
        return transaction

    # ==========================================
    # READS
    # ==========================================

    def has_enough_credits(self, user_id: str, amount: int) -> bool:
        """
        Pre-check before starting expensive work.

        No lock is held afterwards; callers must still handle spend() raising
        InsufficientCredits.
        """
        return self._spendable(user_id) >= amount

    def get_balance(self, user_id: str) -> Dict[str, Any]:
        account = self.get_account(user_id)
        if account is None:
            return {
                "user_id": user_id,
                "balance": 0,
                "frozen_balance": 0,
                "spendable_balance": 0,
                "total_earned": 0,
                "total_spent": 0,
            }
        return {
            "user_id": user_id,
            "balance": account.balance,
            "frozen_balance": account.frozen_balance,
            "spendable_balance": account.spendable_balance,
            "total_earned": account.total_earned,
            "total_spent": account.total_spent,
        }

    def get_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        type: Optional[str] = None,
    ) -> List[CreditTransaction]:
        query = self.db.query(CreditTransaction).filter(CreditTransaction.user_id == user_id)
        if type:
            query = query.filter(CreditTransaction.type == type)
        return (
            query.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def replay_balance(self, user_id: str) -> int:
        """Rebuild the balance from the transaction log alone."""
        transactions = (
            self.db.query(CreditTransaction)
            .filter(CreditTransaction.user_id == user_id)
            .all()
        )
        return sum(signed_amount(transaction) for transaction in transactions)

    def verify_balance(self, user_id: str) -> bool:
        """True when the stored balance matches the replayed log."""
        replayed = self.replay_balance(user_id)
        stored = self._current_balance(user_id)
        if replayed != stored:
            logger.error(f"Ledger mismatch: user_id={user_id}, stored={stored}, replayed={replayed}")
            return False
        return True
