"""Credit ledger: the only code that changes an account balance."""
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from pydantic import BaseModel
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.exceptions import (
    AccountNotFoundError,
    InsufficientCreditError,
    InvalidAmountError,
    InvalidStateError,
    LedgerEntryNotFoundError,
)
from billing_core.metrics import (
    insufficient_credit_total,
    ledger_credited_amount_total,
    ledger_debited_amount_total,
    ledger_entries_total,
)
from billing_core.models.account import Account
from billing_core.models.ledger import LedgerEntry, LedgerEntryStatus, LedgerEntryType
from billing_core.schemas.ledger import (
    AdminAdjustmentMetadata,
    CreditCheck,
    CreditInfo,
    LedgerEntryRead,
    LedgerHistory,
    RefundMetadata,
    TopUpMetadata,
    TopUpOutcome,
    TopUpStatus,
    entry_type_for,
)
from billing_core.utils.dates import utcnow

logger = structlog.get_logger(__name__)

# Entry types that count as spending in the monthly summary
SPENDING_TYPES = (LedgerEntryType.SUBSCRIPTION, LedgerEntryType.UPGRADE)


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount)


class CreditLedger:
    """
    Service for crediting and debiting account balances.

    Every balance change locks the account row, writes the new balance and
    appends a COMPLETED ledger entry in the caller's transaction. The caller
    owns the commit (see run_in_transaction).
    """

    def __init__(self, db: AsyncSession):
        """Initialize ledger with database session."""
        self.db = db

    async def lock_account(self, account_id: UUID) -> Account:
        """
        Load an account with a row lock held until the transaction ends.

        Raises:
            AccountNotFoundError: If the account does not exist or was deleted
        """
        result = await self.db.execute(
            select(Account)
            .where(and_(Account.id == account_id, Account.deleted_at.is_(None)))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if not account:
            raise AccountNotFoundError(account_id)
        return account

    async def _find_by_idempotency_key(
        self, key: Optional[str], account_id: UUID, entry_type: LedgerEntryType, amount: int
    ) -> Optional[LedgerEntry]:
        """Entry already posted under key; it must describe the same account, type and amount."""
        if not key:
            return None
        result = await self.db.execute(select(LedgerEntry).where(LedgerEntry.idempotency_key == key))
        existing = result.scalar_one_or_none()
        if existing is None:
            return None
        if existing.account_id != account_id or existing.type != entry_type or existing.amount != amount:
            raise InvalidStateError(
                f"Idempotency key {key} was already used for a different ledger entry",
                {
                    "idempotency_key": key,
                    "entry_id": str(existing.id),
                    "account_id": str(existing.account_id),
                    "type": existing.type.value,
                    "amount": existing.amount,
                },
            )
        logger.info("ledger_entry_reused", entry_id=str(existing.id), idempotency_key=key)
        return existing

    def _post(
        self,
        account: Account,
        entry_type: LedgerEntryType,
        delta: int,
        description: str,
        metadata: Optional[BaseModel],
        **fields,
    ) -> LedgerEntry:
        """Apply delta to a locked account and append the matching entry."""
        balance_before = account.credit_balance
        balance_after = balance_before + delta
        account.credit_balance = balance_after
        account.ledger_sequence += 1

        entry = LedgerEntry(
            account_id=account.id,
            type=entry_type,
            status=LedgerEntryStatus.COMPLETED,
            amount=abs(delta),
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            extra_metadata=metadata.model_dump(mode="json") if metadata is not None else {},
            sequence=account.ledger_sequence,
            completed_at=utcnow(),
            **fields,
        )
        self.db.add(entry)

        ledger_entries_total.labels(type=entry_type.value, status=LedgerEntryStatus.COMPLETED.value).inc()
        if delta > 0:
            ledger_credited_amount_total.labels(type=entry_type.value).inc(delta)
        else:
            ledger_debited_amount_total.labels(type=entry_type.value).inc(-delta)
        return entry

    async def add_credit(
        self,
        account_id: UUID,
        amount: int,
        description: str,
        metadata: Optional[BaseModel] = None,
        count_as_top_up: Optional[bool] = None,
        idempotency_key: Optional[str] = None,
        subscription_id: Optional[UUID] = None,
        payment_method: Optional[str] = None,
        payment_reference: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Add credit to an account.

        Args:
            account_id: Account UUID
            amount: Positive amount to add
            description: Human readable reason
            metadata: Typed metadata; its type field decides the entry type
                (TOP_UP when omitted)
            count_as_top_up: Whether total_top_up grows; defaults to
                "entry type is TOP_UP"
            idempotency_key: Returns the existing entry instead of posting twice
            subscription_id: Subscription the entry relates to
            payment_method: Payment method of a direct top-up
            payment_reference: Gateway reference of a direct top-up

        Returns:
            The COMPLETED ledger entry

        Raises:
            InvalidAmountError: If amount is not a positive integer
            AccountNotFoundError: If the account does not exist
        """
        _check_amount(amount)
        entry_type = entry_type_for(metadata, LedgerEntryType.TOP_UP)
        if count_as_top_up is None:
            count_as_top_up = entry_type == LedgerEntryType.TOP_UP

        account = await self.lock_account(account_id)

        existing = await self._find_by_idempotency_key(idempotency_key, account_id, entry_type, amount)
        if existing:
            return existing

        entry = self._post(
            account,
            entry_type,
            amount,
            description,
            metadata,
            idempotency_key=idempotency_key,
            subscription_id=subscription_id,
            payment_method=payment_method,
            payment_reference=payment_reference,
        )
        if count_as_top_up:
            account.total_top_up += amount

        await self.db.flush()

        logger.info(
            "credit_added",
            account_id=str(account_id),
            entry_id=str(entry.id),
            type=entry_type.value,
            amount=amount,
            balance_after=entry.balance_after,
        )
        return entry

    async def deduct_credit(
        self,
        account_id: UUID,
        amount: int,
        description: str,
        metadata: Optional[BaseModel] = None,
        allow_negative: bool = False,
        idempotency_key: Optional[str] = None,
        subscription_id: Optional[UUID] = None,
        count_as_spent: bool = True,
    ) -> LedgerEntry:
        """
        Deduct credit from an account.

        Args:
            account_id: Account UUID
            amount: Positive amount to remove
            description: Human readable reason
            metadata: Typed metadata (SUBSCRIPTION entry when omitted)
            allow_negative: Let the balance go below zero (admin override)
            idempotency_key: Returns the existing entry instead of charging twice
            subscription_id: Subscription being charged
            count_as_spent: Whether total_spent grows

        Returns:
            The COMPLETED ledger entry

        Raises:
            InvalidAmountError: If amount is not a positive integer
            AccountNotFoundError: If the account does not exist
            InsufficientCreditError: If the balance does not cover amount
        """
        _check_amount(amount)
        entry_type = entry_type_for(metadata, LedgerEntryType.SUBSCRIPTION)

        account = await self.lock_account(account_id)

        existing = await self._find_by_idempotency_key(idempotency_key, account_id, entry_type, amount)
        if existing:
            return existing

        if account.credit_balance < amount and not allow_negative:
            insufficient_credit_total.inc()
            logger.info(
                "credit_deduction_rejected",
                account_id=str(account_id),
                amount=amount,
                balance=account.credit_balance,
            )
            raise InsufficientCreditError(required=amount, available=account.credit_balance)

        entry = self._post(
            account,
            entry_type,
            -amount,
            description,
            metadata,
            idempotency_key=idempotency_key,
            subscription_id=subscription_id,
        )
        if count_as_spent:
            account.total_spent += amount

        await self.db.flush()

        logger.info(
            "credit_deducted",
            account_id=str(account_id),
            entry_id=str(entry.id),
            type=entry_type.value,
            amount=amount,
            balance_after=entry.balance_after,
        )
        return entry

    async def refund_credit(
        self,
        account_id: UUID,
        amount: int,
        description: str,
        subscription_id: Optional[UUID] = None,
        reason: Optional[str] = None,
        days_remaining: Optional[int] = None,
    ) -> LedgerEntry:
        """Credit a refund. Refunds never count towards total_top_up."""
        return await self.add_credit(
            account_id,
            amount,
            description,
            metadata=RefundMetadata(subscription_id=subscription_id, reason=reason, days_remaining=days_remaining),
            count_as_top_up=False,
            subscription_id=subscription_id,
        )

    async def admin_adjust_credit(
        self,
        account_id: UUID,
        amount: int,
        reason: str,
        admin_id: Optional[str] = None,
        allow_negative: bool = False,
    ) -> LedgerEntry:
        """
        Apply a signed manual correction.

        Positive amounts add credit, negative amounts remove it. Neither side
        changes total_top_up or total_spent.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise InvalidAmountError(amount)

        metadata = AdminAdjustmentMetadata(admin_id=admin_id, reason=reason)
        description = f"Admin adjustment: {reason}"
        if amount > 0:
            entry = await self.add_credit(account_id, amount, description, metadata=metadata, count_as_top_up=False)
        else:
            entry = await self.deduct_credit(
                account_id,
                -amount,
                description,
                metadata=metadata,
                allow_negative=allow_negative,
                count_as_spent=False,
            )

        logger.info("credit_admin_adjusted", account_id=str(account_id), amount=amount, admin_id=admin_id)
        return entry

    async def get_balance(self, account_id: UUID) -> int:
        """Current balance, without locking."""
        result = await self.db.execute(
            select(Account.credit_balance).where(and_(Account.id == account_id, Account.deleted_at.is_(None)))
        )
        balance = result.scalar_one_or_none()
        if balance is None:
            raise AccountNotFoundError(account_id)
        return balance

    async def check_sufficient_credit(self, account_id: UUID, amount: int) -> CreditCheck:
        """Whether the balance covers amount. Advisory only; deduct re-checks under lock."""
        balance = await self.get_balance(account_id)
        return CreditCheck(
            account_id=account_id,
            sufficient=balance >= amount,
            balance=balance,
            required=amount,
            shortfall=max(0, amount - balance),
        )

    async def get_credit_info(self, account_id: UUID, recent: int = 10) -> CreditInfo:
        """
        Balance summary with spending for the current calendar month.

        Args:
            account_id: Account UUID
            recent: Number of latest entries to include

        Returns:
            CreditInfo for the account
        """
        result = await self.db.execute(
            select(Account).where(and_(Account.id == account_id, Account.deleted_at.is_(None)))
        )
        account = result.scalar_one_or_none()
        if not account:
            raise AccountNotFoundError(account_id)

        month_start = utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        spent_result = await self.db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                and_(
                    LedgerEntry.account_id == account_id,
                    LedgerEntry.type.in_(SPENDING_TYPES),
                    LedgerEntry.status == LedgerEntryStatus.COMPLETED,
                    LedgerEntry.created_at >= month_start,
                )
            )
        )

        entries_result = await self.db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.created_at.desc())
            .limit(recent)
        )

        return CreditInfo(
            account_id=account.id,
            balance=account.credit_balance,
            total_top_up=account.total_top_up,
            total_spent=account.total_spent,
            spent_this_month=spent_result.scalar_one(),
            recent_entries=[LedgerEntryRead.model_validate(e) for e in entries_result.scalars().all()],
        )

    async def get_history(
        self,
        account_id: UUID,
        page: int = 1,
        page_size: int = 20,
        entry_type: Optional[LedgerEntryType] = None,
        status: Optional[LedgerEntryStatus] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> LedgerHistory:
        """
        Paginated transaction history, newest first.

        Args:
            account_id: Account UUID
            page: 1-based page number
            page_size: Entries per page
            entry_type: Only this entry type
            status: Only this status
            start: Only entries created at or after this time
            end: Only entries created before this time

        Returns:
            LedgerHistory page
        """
        conditions = [LedgerEntry.account_id == account_id]
        if entry_type is not None:
            conditions.append(LedgerEntry.type == entry_type)
        if status is not None:
            conditions.append(LedgerEntry.status == status)
        if start is not None:
            conditions.append(LedgerEntry.created_at >= start)
        if end is not None:
            conditions.append(LedgerEntry.created_at < end)

        total_result = await self.db.execute(select(func.count(LedgerEntry.id)).where(and_(*conditions)))
        total = total_result.scalar_one()

        page = max(page, 1)
        result = await self.db.execute(
            select(LedgerEntry)
            .where(and_(*conditions))
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.sequence.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )

        return LedgerHistory(
            items=[LedgerEntryRead.model_validate(e) for e in result.scalars().all()],
            total=total,
            page=page,
            page_size=page_size,
        )

    async def create_pending_top_up(
        self,
        account_id: UUID,
        amount: int,
        payment_method: str,
        payment_reference: Optional[str] = None,
        description: Optional[str] = None,
        extra: Optional[dict] = None,
    ) -> LedgerEntry:
        """
        Record a gateway top-up that has not been paid yet.

        The entry is PENDING and does not touch the balance until
        finalize_top_up settles it.
        """
        _check_amount(amount)
        balance = await self.get_balance(account_id)

        metadata = TopUpMetadata(
            payment_method=payment_method,
            payment_reference=payment_reference,
            gateway_status="pending",
            extra=extra or {},
        )
        entry = LedgerEntry(
            account_id=account_id,
            type=LedgerEntryType.TOP_UP,
            status=LedgerEntryStatus.PENDING,
            amount=amount,
            balance_before=balance,
            balance_after=balance,
            description=description or f"Credit top-up via {payment_method}",
            extra_metadata=metadata.model_dump(mode="json"),
            payment_method=payment_method,
            payment_reference=payment_reference,
        )
        self.db.add(entry)
        await self.db.flush()

        ledger_entries_total.labels(type=LedgerEntryType.TOP_UP.value, status=LedgerEntryStatus.PENDING.value).inc()
        logger.info(
            "top_up_pending",
            account_id=str(account_id),
            entry_id=str(entry.id),
            amount=amount,
            payment_reference=payment_reference,
        )
        return entry

    async def _lock_entry(self, entry_id: UUID) -> LedgerEntry:
        result = await self.db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.id == entry_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if not entry:
            raise LedgerEntryNotFoundError(entry_id)
        return entry

    async def finalize_top_up(
        self,
        entry_id: UUID,
        outcome: TopUpOutcome,
        gateway_status: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Apply the gateway's final word on a pending top-up.

        A settled top-up credits the balance and counts towards total_top_up.
        A failed one is marked FAILED with no balance effect. Events for an
        entry that is no longer PENDING (duplicates, late events after a
        cancel) change nothing.

        Args:
            entry_id: Pending ledger entry UUID
            outcome: SETTLED or FAILED
            gateway_status: Raw gateway status, kept in metadata

        Returns:
            The ledger entry in its current state
        """
        entry = await self._lock_entry(entry_id)

        if entry.status != LedgerEntryStatus.PENDING:
            logger.info(
                "top_up_finalize_ignored",
                entry_id=str(entry_id),
                status=entry.status.value,
                outcome=outcome.value,
            )
            return entry

        metadata = dict(entry.extra_metadata or {})
        metadata["gateway_status"] = gateway_status or outcome.value
        now = utcnow()

        if outcome == TopUpOutcome.SETTLED:
            account = await self.lock_account(entry.account_id)
            entry.balance_before = account.credit_balance
            entry.balance_after = account.credit_balance + entry.amount
            account.credit_balance = entry.balance_after
            account.total_top_up += entry.amount
            account.ledger_sequence += 1
            entry.sequence = account.ledger_sequence
            entry.status = LedgerEntryStatus.COMPLETED
            ledger_credited_amount_total.labels(type=entry.type.value).inc(entry.amount)
        else:
            entry.status = LedgerEntryStatus.FAILED

        entry.extra_metadata = metadata
        entry.completed_at = now
        await self.db.flush()

        ledger_entries_total.labels(type=entry.type.value, status=entry.status.value).inc()
        logger.info(
            "top_up_finalized",
            entry_id=str(entry_id),
            account_id=str(entry.account_id),
            status=entry.status.value,
            amount=entry.amount,
            balance_after=entry.balance_after,
        )
        return entry

    async def cancel_pending_top_up(self, entry_id: UUID, account_id: UUID) -> LedgerEntry:
        """
        Cancel a pending top-up on behalf of its owner.

        Raises:
            LedgerEntryNotFoundError: If the entry does not exist or belongs
                to another account
            InvalidStateError: If the entry is no longer PENDING
        """
        entry = await self._lock_entry(entry_id)
        if entry.account_id != account_id:
            raise LedgerEntryNotFoundError(entry_id)
        if entry.status != LedgerEntryStatus.PENDING:
            raise InvalidStateError(
                f"Only pending top-ups can be cancelled, entry {entry_id} is {entry.status.value}",
                {"entry_id": str(entry_id), "status": entry.status.value},
            )

        entry.status = LedgerEntryStatus.CANCELLED
        entry.completed_at = utcnow()
        await self.db.flush()

        logger.info("top_up_cancelled", entry_id=str(entry_id), account_id=str(account_id))
        return entry

    async def get_top_up_status(self, entry_id: UUID, account_id: Optional[UUID] = None) -> TopUpStatus:
        """Status of a top-up, optionally restricted to its owner."""
        result = await self.db.execute(
            select(LedgerEntry).where(
                and_(LedgerEntry.id == entry_id, LedgerEntry.type == LedgerEntryType.TOP_UP)
            )
        )
        entry = result.scalar_one_or_none()
        if not entry or (account_id is not None and entry.account_id != account_id):
            raise LedgerEntryNotFoundError(entry_id)

        return TopUpStatus(
            entry_id=entry.id,
            account_id=entry.account_id,
            status=entry.status,
            amount=entry.amount,
            payment_reference=entry.payment_reference,
            created_at=entry.created_at,
            completed_at=entry.completed_at,
        )
