"""Integration tests for the credit ledger."""
import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import select

from billing_core.exceptions import (
    AccountNotFoundError,
    InsufficientCreditError,
    InvalidAmountError,
    InvalidStateError,
    LedgerEntryNotFoundError,
)
from billing_core.models import Account, LedgerEntry, LedgerEntryStatus, LedgerEntryType
from billing_core.schemas.ledger import TopUpOutcome
from billing_core.services.ledger_service import CreditLedger
from billing_core.unit_of_work import run_in_transaction


async def _entries(session_factory, account_id) -> list[LedgerEntry]:
    async with session_factory() as db:
        result = await db.execute(
            select(LedgerEntry).where(LedgerEntry.account_id == account_id).order_by(LedgerEntry.sequence)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_add_credit_updates_balance_and_top_up_total(session_factory, make_account, load) -> None:
    """Test that a top-up credits the balance and writes a completed entry."""
    account = await make_account()

    entry = await run_in_transaction(
        lambda db: CreditLedger(db).add_credit(account.id, 50000, "Top up via bank transfer"),
        session_factory=session_factory,
    )

    assert entry.type == LedgerEntryType.TOP_UP
    assert entry.status == LedgerEntryStatus.COMPLETED
    assert entry.amount == 50000
    assert entry.balance_before == 0
    assert entry.balance_after == 50000
    assert entry.sequence == 1

    stored = await load(Account, account.id)
    assert stored.credit_balance == 50000
    assert stored.total_top_up == 50000
    assert stored.total_spent == 0


@pytest.mark.asyncio
async def test_deduct_credit_rejects_insufficient_balance(session_factory, make_account, load) -> None:
    """Test that a debit larger than the balance fails and changes nothing."""
    account = await make_account(credit_balance=40000, total_top_up=40000)

    with pytest.raises(InsufficientCreditError) as exc_info:
        await run_in_transaction(
            lambda db: CreditLedger(db).deduct_credit(account.id, 50000, "Subscription: Pro"),
            session_factory=session_factory,
        )

    assert exc_info.value.required == 50000
    assert exc_info.value.available == 40000
    assert exc_info.value.context["shortfall"] == 10000

    stored = await load(Account, account.id)
    assert stored.credit_balance == 40000
    assert await _entries(session_factory, account.id) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -100, True, 12.5])
async def test_non_positive_amounts_are_rejected(session_factory, make_account, amount) -> None:
    """Test that amounts must be positive integers."""
    account = await make_account()

    with pytest.raises(InvalidAmountError):
        await run_in_transaction(
            lambda db: CreditLedger(db).add_credit(account.id, amount, "Bad amount"),
            session_factory=session_factory,
        )


@pytest.mark.asyncio
async def test_unknown_account_raises_not_found(session_factory) -> None:
    with pytest.raises(AccountNotFoundError):
        await run_in_transaction(
            lambda db: CreditLedger(db).add_credit(uuid4(), 1000, "Nobody"),
            session_factory=session_factory,
        )


@pytest.mark.asyncio
async def test_entries_form_a_balance_chain(session_factory, make_account, load) -> None:
    """Test that each entry's balance_before equals the previous balance_after."""
    account = await make_account()

    async def work(db):
        ledger = CreditLedger(db)
        await ledger.add_credit(account.id, 30000, "Top up")
        await ledger.deduct_credit(account.id, 12000, "Subscription: Basic")
        await ledger.refund_credit(account.id, 4000, "Prorated refund")
        await ledger.admin_adjust_credit(account.id, -2000, "Chargeback correction", admin_id="admin-1")

    await run_in_transaction(work, session_factory=session_factory)

    entries = await _entries(session_factory, account.id)
    assert [e.sequence for e in entries] == [1, 2, 3, 4]
    assert entries[0].balance_before == 0
    for previous, current in zip(entries, entries[1:]):
        assert current.balance_before == previous.balance_after
    assert [e.signed_amount for e in entries] == [30000, -12000, 4000, -2000]

    stored = await load(Account, account.id)
    assert stored.credit_balance == entries[-1].balance_after == 20000
    assert stored.ledger_sequence == 4
    # Refunds and admin adjustments leave the running totals alone
    assert stored.total_top_up == 30000
    assert stored.total_spent == 12000


@pytest.mark.asyncio
async def test_concurrent_deductions_never_overdraw(session_factory, make_account, load) -> None:
    """Test that two racing debits cannot both pass the balance check."""
    account = await make_account(credit_balance=50000, total_top_up=50000)

    async def charge():
        return await run_in_transaction(
            lambda db: CreditLedger(db).deduct_credit(account.id, 30000, "Subscription: Pro"),
            session_factory=session_factory,
        )

    results = await asyncio.gather(charge(), charge(), return_exceptions=True)

    successes = [r for r in results if isinstance(r, LedgerEntry)]
    failures = [r for r in results if isinstance(r, InsufficientCreditError)]
    assert len(successes) == 1
    assert len(failures) == 1

    stored = await load(Account, account.id)
    assert stored.credit_balance == 20000
    assert len(await _entries(session_factory, account.id)) == 1


@pytest.mark.asyncio
async def test_idempotency_key_returns_existing_entry(session_factory, make_account, load) -> None:
    account = await make_account(credit_balance=50000, total_top_up=50000)

    async def charge(db):
        return await CreditLedger(db).deduct_credit(
            account.id, 10000, "Auto-renewal", idempotency_key="renewal:test:2026-03-01"
        )

    first = await run_in_transaction(charge, session_factory=session_factory)
    second = await run_in_transaction(charge, session_factory=session_factory)

    assert first.id == second.id
    stored = await load(Account, account.id)
    assert stored.credit_balance == 40000


@pytest.mark.asyncio
async def test_idempotency_key_reuse_with_different_charge_is_rejected(session_factory, make_account, load) -> None:
    """Test that a key already bound to one charge cannot post a different one."""
    account = await make_account(credit_balance=50000, total_top_up=50000)
    other = await make_account(credit_balance=50000, total_top_up=50000)
    key = "renewal:test:2026-04-01"

    await run_in_transaction(
        lambda db: CreditLedger(db).deduct_credit(account.id, 10000, "Auto-renewal", idempotency_key=key),
        session_factory=session_factory,
    )

    with pytest.raises(InvalidStateError):
        await run_in_transaction(
            lambda db: CreditLedger(db).deduct_credit(account.id, 20000, "Auto-renewal", idempotency_key=key),
            session_factory=session_factory,
        )
    with pytest.raises(InvalidStateError):
        await run_in_transaction(
            lambda db: CreditLedger(db).add_credit(account.id, 10000, "Top up", idempotency_key=key),
            session_factory=session_factory,
        )
    with pytest.raises(InvalidStateError):
        await run_in_transaction(
            lambda db: CreditLedger(db).deduct_credit(other.id, 10000, "Auto-renewal", idempotency_key=key),
            session_factory=session_factory,
        )

    assert (await load(Account, account.id)).credit_balance == 40000
    assert (await load(Account, other.id)).credit_balance == 50000


@pytest.mark.asyncio
async def test_admin_adjustment_cannot_overdraw_without_override(session_factory, make_account, load) -> None:
    account = await make_account(credit_balance=1000, total_top_up=1000)

    with pytest.raises(InsufficientCreditError):
        await run_in_transaction(
            lambda db: CreditLedger(db).admin_adjust_credit(account.id, -5000, "Fraud reversal"),
            session_factory=session_factory,
        )

    entry = await run_in_transaction(
        lambda db: CreditLedger(db).admin_adjust_credit(account.id, -5000, "Fraud reversal", allow_negative=True),
        session_factory=session_factory,
    )

    assert entry.type == LedgerEntryType.ADMIN_ADJUSTMENT
    assert entry.balance_after == -4000
    assert entry.extra_metadata["reason"] == "Fraud reversal"
    stored = await load(Account, account.id)
    assert stored.credit_balance == -4000
    assert stored.total_spent == 0


@pytest.mark.asyncio
async def test_pending_top_up_settles_once(session_factory, make_account, load) -> None:
    """Test the gateway top-up flow: pending, settled, then a duplicate event."""
    account = await make_account(credit_balance=5000, total_top_up=5000)

    pending = await run_in_transaction(
        lambda db: CreditLedger(db).create_pending_top_up(account.id, 25000, "qris", payment_reference="ORDER-1"),
        session_factory=session_factory,
    )
    assert pending.status == LedgerEntryStatus.PENDING
    assert pending.sequence is None
    assert (await load(Account, account.id)).credit_balance == 5000

    settled = await run_in_transaction(
        lambda db: CreditLedger(db).finalize_top_up(pending.id, TopUpOutcome.SETTLED, "settlement"),
        session_factory=session_factory,
    )
    assert settled.status == LedgerEntryStatus.COMPLETED
    assert settled.balance_before == 5000
    assert settled.balance_after == 30000
    assert settled.sequence == 1
    assert settled.extra_metadata["gateway_status"] == "settlement"

    duplicate = await run_in_transaction(
        lambda db: CreditLedger(db).finalize_top_up(pending.id, TopUpOutcome.SETTLED, "settlement"),
        session_factory=session_factory,
    )
    assert duplicate.status == LedgerEntryStatus.COMPLETED

    stored = await load(Account, account.id)
    assert stored.credit_balance == 30000
    assert stored.total_top_up == 30000


@pytest.mark.asyncio
async def test_top_up_status_follows_the_entry(session_factory, make_account) -> None:
    """Test that the status lookup reflects settlement and hides other accounts' entries."""
    owner = await make_account()
    stranger = await make_account()
    pending = await run_in_transaction(
        lambda db: CreditLedger(db).create_pending_top_up(owner.id, 15000, "va", payment_reference="ORDER-7"),
        session_factory=session_factory,
    )

    async def status(account_id=None):
        async with session_factory() as db:
            return await CreditLedger(db).get_top_up_status(pending.id, account_id)

    before = await status(owner.id)
    assert before.status == LedgerEntryStatus.PENDING
    assert before.amount == 15000
    assert before.payment_reference == "ORDER-7"
    assert before.completed_at is None

    with pytest.raises(LedgerEntryNotFoundError):
        await status(stranger.id)
    with pytest.raises(LedgerEntryNotFoundError):
        async with session_factory() as db:
            await CreditLedger(db).get_top_up_status(uuid4())

    await run_in_transaction(
        lambda db: CreditLedger(db).finalize_top_up(pending.id, TopUpOutcome.SETTLED, "settlement"),
        session_factory=session_factory,
    )

    after = await status()
    assert after.status == LedgerEntryStatus.COMPLETED
    assert after.account_id == owner.id
    assert after.completed_at is not None


@pytest.mark.asyncio
async def test_failed_top_up_has_no_balance_effect(session_factory, make_account, load) -> None:
    account = await make_account()

    pending = await run_in_transaction(
        lambda db: CreditLedger(db).create_pending_top_up(account.id, 25000, "card"),
        session_factory=session_factory,
    )
    failed = await run_in_transaction(
        lambda db: CreditLedger(db).finalize_top_up(pending.id, TopUpOutcome.FAILED, "deny"),
        session_factory=session_factory,
    )

    assert failed.status == LedgerEntryStatus.FAILED
    assert failed.completed_at is not None
    assert (await load(Account, account.id)).credit_balance == 0


@pytest.mark.asyncio
async def test_cancel_pending_top_up(session_factory, make_account) -> None:
    """Test that only the owner can cancel, and only while pending."""
    owner = await make_account()
    stranger = await make_account()

    pending = await run_in_transaction(
        lambda db: CreditLedger(db).create_pending_top_up(owner.id, 10000, "ewallet"),
        session_factory=session_factory,
    )

    with pytest.raises(LedgerEntryNotFoundError):
        await run_in_transaction(
            lambda db: CreditLedger(db).cancel_pending_top_up(pending.id, stranger.id),
            session_factory=session_factory,
        )

    cancelled = await run_in_transaction(
        lambda db: CreditLedger(db).cancel_pending_top_up(pending.id, owner.id),
        session_factory=session_factory,
    )
    assert cancelled.status == LedgerEntryStatus.CANCELLED

    with pytest.raises(InvalidStateError):
        await run_in_transaction(
            lambda db: CreditLedger(db).cancel_pending_top_up(pending.id, owner.id),
            session_factory=session_factory,
        )

    # A late settlement after the cancel changes nothing
    late = await run_in_transaction(
        lambda db: CreditLedger(db).finalize_top_up(pending.id, TopUpOutcome.SETTLED),
        session_factory=session_factory,
    )
    assert late.status == LedgerEntryStatus.CANCELLED


@pytest.mark.asyncio
async def test_history_filters_and_paginates(session_factory, make_account) -> None:
    account = await make_account()

    async def work(db):
        ledger = CreditLedger(db)
        for _ in range(3):
            await ledger.add_credit(account.id, 10000, "Top up")
        await ledger.deduct_credit(account.id, 5000, "Subscription: Basic")

    await run_in_transaction(work, session_factory=session_factory)

    async with session_factory() as db:
        ledger = CreditLedger(db)
        page = await ledger.get_history(account.id, page=1, page_size=2)
        top_ups = await ledger.get_history(account.id, entry_type=LedgerEntryType.TOP_UP)
        info = await ledger.get_credit_info(account.id)
        check = await ledger.check_sufficient_credit(account.id, 40000)

    assert page.total == 4
    assert len(page.items) == 2
    assert page.total_pages == 2
    assert top_ups.total == 3
    assert all(item.type == LedgerEntryType.TOP_UP for item in top_ups.items)

    assert info.balance == 25000
    assert info.total_top_up == 30000
    assert info.spent_this_month == 5000
    assert len(info.recent_entries) == 4

    assert check.sufficient is False
    assert check.shortfall == 15000


@pytest.mark.parametrize(
    "gateway_status, expected",
    [
        ("settlement", TopUpOutcome.SETTLED),
        ("capture", TopUpOutcome.SETTLED),
        ("deny", TopUpOutcome.FAILED),
        ("expire", TopUpOutcome.FAILED),
        ("pending", None),
    ],
)
def test_gateway_status_mapping(gateway_status, expected) -> None:
    assert TopUpOutcome.from_gateway_status(gateway_status) == expected
