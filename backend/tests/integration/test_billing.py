"""Integration tests for auto-renewal, grace periods and billing reports."""
from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from billing_core.config import Settings
from billing_core.exceptions import InvalidGracePeriodError, InvalidStateError
from billing_core.integrations.notification_service import NotificationService
from billing_core.models import (
    Account,
    LedgerEntry,
    LedgerEntryType,
    Plan,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
)
from billing_core.schemas.subscription import RenewalOutcome
from billing_core.services.billing_service import BillingService
from billing_core.services.ledger_service import CreditLedger
from billing_core.services.renewal_service import renewal_idempotency_key
from billing_core.unit_of_work import run_in_transaction
from billing_core.utils.dates import utcnow

NOW = datetime(2026, 1, 31, 10, 0, 0)
PERIOD_END = datetime(2026, 1, 31, 9, 0, 0)


async def _history(session_factory, subscription_id) -> list[SubscriptionHistory]:
    async with session_factory() as db:
        result = await db.execute(
            select(SubscriptionHistory)
            .where(SubscriptionHistory.subscription_id == subscription_id)
            .order_by(SubscriptionHistory.created_at)
        )
        return list(result.scalars().all())


@pytest.fixture
def due_subscription(make_account, make_plan, make_subscription):
    """Factory for an ACTIVE subscription whose period ended an hour before NOW."""

    async def _make(balance: int, price: int = 50000, total_quota: int = 10, used_quota: int = 1, **overrides):
        account = await make_account(credit_balance=balance, total_top_up=balance)
        plan = await make_plan(monthly_price=price, total_quota=total_quota, used_quota=used_quota)
        subscription = await make_subscription(
            account,
            plan,
            start_date=datetime(2025, 12, 31, 9, 0),
            end_date=PERIOD_END,
            next_billing=PERIOD_END,
            **overrides,
        )
        return account, plan, subscription

    return _make


@pytest.mark.asyncio
async def test_due_subscription_is_renewed(billing: BillingService, session_factory, due_subscription, load) -> None:
    """Test that a funded subscription is charged and extended by one calendar month."""
    account, plan, subscription = await due_subscription(balance=100000)

    result = await billing.process_auto_renewals(NOW)

    assert result.processed == 1
    assert result.successful == 1
    assert result.failed == 0
    assert result.details["renewed"] == 1
    assert result.details["revenue"] == 50000

    stored = await load(Subscription, subscription.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.end_date == datetime(2026, 2, 28, 9, 0)
    assert stored.next_billing == stored.end_date
    assert stored.last_charge_amount == 50000
    assert (await load(Account, account.id)).credit_balance == 50000
    assert (await load(Plan, plan.id)).used_quota == 1

    async with session_factory() as db:
        entry = (
            await db.execute(
                select(LedgerEntry).where(
                    LedgerEntry.idempotency_key == renewal_idempotency_key(subscription.id, PERIOD_END)
                )
            )
        ).scalar_one()
    assert entry.type == LedgerEntryType.SUBSCRIPTION
    assert entry.extra_metadata["auto_renewal"] is True
    assert [h.event_type for h in await _history(session_factory, subscription.id)] == ["renewed"]


@pytest.mark.asyncio
async def test_repeated_sweep_charges_once(billing: BillingService, due_subscription, load) -> None:
    account, _, _ = await due_subscription(balance=100000)

    first = await billing.process_auto_renewals(NOW)
    second = await billing.process_auto_renewals(NOW)

    assert first.successful == 1
    assert second.processed == 0
    assert (await load(Account, account.id)).credit_balance == 50000


@pytest.mark.asyncio
async def test_overdue_subscription_restarts_period_from_now(
    billing: BillingService, make_account, make_plan, make_subscription, load
) -> None:
    """Test that a subscription several periods overdue is charged once and not due again."""
    now = datetime(2026, 1, 15, 10, 0)
    account = await make_account(credit_balance=500000)
    plan = await make_plan(monthly_price=100000, used_quota=1)
    subscription = await make_subscription(
        account,
        plan,
        start_date=datetime(2025, 10, 1),
        end_date=datetime(2025, 11, 1),
        next_billing=datetime(2025, 11, 1),
    )

    first = await billing.process_auto_renewals(now)
    second = await billing.process_auto_renewals(now)

    assert first.successful == 1
    assert second.processed == 0
    stored = await load(Subscription, subscription.id)
    assert stored.end_date == datetime(2026, 2, 15, 10, 0)
    assert stored.next_billing == stored.end_date
    assert (await load(Account, account.id)).credit_balance == 400000


@pytest.mark.asyncio
async def test_grace_period_then_top_up_then_renewal(
    billing: BillingService, session_factory, due_subscription, load
) -> None:
    """Test the insufficient credit path: grace, top-up, renewal when grace ends."""
    account, plan, subscription = await due_subscription(balance=40000)

    result = await billing.process_auto_renewals(NOW)

    assert result.details["grace_started"] == 1
    stored = await load(Subscription, subscription.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.grace_period_end == NOW + timedelta(days=7)
    assert stored.failed_charges == 1
    assert stored.holds_quota is True
    assert (await load(Account, account.id)).credit_balance == 40000

    # Still in grace: the daily sweep leaves it alone and the grace job waits
    assert (await billing.process_auto_renewals(NOW + timedelta(days=1))).processed == 0
    assert (await billing.process_grace_period_subscriptions(NOW + timedelta(days=3))).processed == 0

    await run_in_transaction(
        lambda db: CreditLedger(db).add_credit(account.id, 20000, "Top up"), session_factory=session_factory
    )

    grace = await billing.process_grace_period_subscriptions(NOW + timedelta(days=8))

    assert grace.processed == 1
    assert grace.details["renewed"] == 1
    stored = await load(Subscription, subscription.id)
    assert stored.grace_period_end is None
    assert stored.failed_charges == 0
    assert stored.end_date == datetime(2026, 2, 28, 9, 0)
    assert (await load(Account, account.id)).credit_balance == 10000
    assert (await load(Plan, plan.id)).used_quota == 1
    events = [h.event_type for h in await _history(session_factory, subscription.id)]
    assert events == ["grace_started", "renewed"]


@pytest.mark.asyncio
async def test_grace_period_ends_unpaid_and_expires(billing: BillingService, due_subscription, load) -> None:
    account, plan, subscription = await due_subscription(balance=40000)
    await billing.process_auto_renewals(NOW)

    result = await billing.process_grace_period_subscriptions(NOW + timedelta(days=8))

    assert result.details["expired"] == 1
    stored = await load(Subscription, subscription.id)
    assert stored.status == SubscriptionStatus.EXPIRED
    assert stored.auto_renew is False
    assert stored.holds_quota is False
    assert stored.grace_period_end is None
    assert (await load(Plan, plan.id)).used_quota == 0
    assert (await load(Account, account.id)).credit_balance == 40000


@pytest.mark.asyncio
async def test_grace_disabled_expires_immediately(session_factory, due_subscription, load) -> None:
    billing = BillingService(session_factory=session_factory, config=Settings(grace_period_enabled=False))
    _, plan, subscription = await due_subscription(balance=40000)

    result = await billing.process_auto_renewals(NOW)

    assert result.details["expired"] == 1
    assert (await load(Subscription, subscription.id)).status == SubscriptionStatus.EXPIRED
    assert (await load(Plan, plan.id)).used_quota == 0


@pytest.mark.asyncio
async def test_full_plan_renews_existing_holder(billing: BillingService, due_subscription, load) -> None:
    """Test that a subscription already holding a slot renews on a plan at 10/10."""
    _, plan, subscription = await due_subscription(balance=100000, total_quota=10, used_quota=10)

    result = await billing.process_auto_renewals(NOW)

    assert result.details["renewed"] == 1
    assert (await load(Plan, plan.id)).used_quota == 10
    assert (await load(Subscription, subscription.id)).holds_quota is True


@pytest.mark.asyncio
async def test_renewal_blocked_by_full_plan(billing: BillingService, session_factory, due_subscription, load) -> None:
    """Test that a subscription without a slot cannot renew onto a full plan."""
    account, plan, subscription = await due_subscription(
        balance=100000, total_quota=10, used_quota=10, holds_quota=False
    )

    result = await billing.process_auto_renewals(NOW)

    assert result.processed == 1
    assert result.failed == 1
    assert result.errors[0].code == "QUOTA_EXCEEDED"
    assert result.errors[0].item_id == str(subscription.id)

    stored = await load(Subscription, subscription.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.end_date == PERIOD_END
    assert (await load(Account, account.id)).credit_balance == 100000
    assert (await load(Plan, plan.id)).used_quota == 10
    assert [h.event_type for h in await _history(session_factory, subscription.id)] == ["renewal_blocked"]


@pytest.mark.asyncio
async def test_auto_renewal_can_be_disabled(session_factory, due_subscription) -> None:
    billing = BillingService(session_factory=session_factory, config=Settings(auto_renewal_enabled=False))
    await due_subscription(balance=100000)

    result = await billing.process_auto_renewals(NOW)

    assert result.processed == 0
    assert result.details["disabled"] is True


@pytest.mark.asyncio
async def test_notification_failures_do_not_fail_renewals(session_factory, due_subscription, load) -> None:
    """Test that a failing webhook is reported as a side effect error only."""
    notifier = NotificationService(
        webhook_url="http://notifications.test/hook",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    billing = BillingService(session_factory=session_factory, config=Settings(), notifier=notifier)
    _, _, subscription = await due_subscription(balance=100000)

    result = await billing.process_auto_renewals(NOW)

    assert result.successful == 1
    assert result.failed == 0
    operations = {error.operation for error in result.errors}
    assert operations == {"notify_renewal_success", "notify_billing_summary"}
    assert all(error.code == "EXTERNAL_DEPENDENCY_UNAVAILABLE" for error in result.errors)
    assert (await load(Subscription, subscription.id)).end_date == datetime(2026, 2, 28, 9, 0)


@pytest.mark.asyncio
async def test_recipient_lookup_failure_does_not_abort_sweep(billing: BillingService, due_subscription, load) -> None:
    """Test that a database error after a committed renewal leaves later items running."""
    first_account, _, first = await due_subscription(balance=100000)
    second_account, _, second = await due_subscription(balance=100000)
    lookups = []

    async def flaky_email(account_id):
        lookups.append(account_id)
        if len(lookups) == 1:
            raise OperationalError("SELECT accounts.email ...", {}, Exception("database is locked"))
        return "owner@example.com"

    billing._account_email = flaky_email

    result = await billing.process_auto_renewals(NOW)

    assert result.processed == 2
    assert result.successful == 2
    assert result.failed == 0
    assert [error.operation for error in result.errors] == ["lookup_account_email"]
    assert result.errors[0].code == "OperationalError"
    for account, subscription in ((first_account, first), (second_account, second)):
        assert (await load(Subscription, subscription.id)).end_date == datetime(2026, 2, 28, 9, 0)
        assert (await load(Account, account.id)).credit_balance == 50000


@pytest.mark.asyncio
async def test_set_grace_period_bounds(billing: BillingService, due_subscription) -> None:
    _, _, subscription = await due_subscription(balance=0)

    with pytest.raises(InvalidStateError):
        await billing.set_grace_period(subscription.id, 10)

    await billing.process_auto_renewals(NOW)

    for days in (0, 31):
        with pytest.raises(InvalidGracePeriodError):
            await billing.set_grace_period(subscription.id, days)

    before = utcnow()
    updated = await billing.set_grace_period(subscription.id, 14)
    assert updated.grace_period_end >= before + timedelta(days=14)


@pytest.mark.asyncio
async def test_expire_subscription_is_idempotent(billing: BillingService, due_subscription, load) -> None:
    _, plan, subscription = await due_subscription(balance=0)

    first = await billing.expire_subscription(subscription.id, "admin_request")
    second = await billing.expire_subscription(subscription.id, "admin_request")

    assert first.outcome == RenewalOutcome.EXPIRED
    assert [effect.operation for effect in first.side_effects] == ["terminate_instances", "notify_subscription_expired"]
    assert second.outcome == RenewalOutcome.SKIPPED
    assert (await load(Plan, plan.id)).used_quota == 0


@pytest.mark.asyncio
async def test_low_credit_and_grace_reports(
    billing: BillingService, make_account, make_plan, make_subscription
) -> None:
    now = utcnow()
    plan = await make_plan(monthly_price=50000, used_quota=3)
    poor = await make_account(credit_balance=10000)
    rich = await make_account(credit_balance=90000)
    in_grace = await make_account(credit_balance=0)

    low = await make_subscription(poor, plan, end_date=now + timedelta(days=2), next_billing=now + timedelta(days=2))
    await make_subscription(rich, plan, end_date=now + timedelta(days=2), next_billing=now + timedelta(days=2))
    grace = await make_subscription(
        in_grace,
        plan,
        end_date=now - timedelta(days=1),
        next_billing=now - timedelta(days=1),
        grace_period_end=now + timedelta(days=6),
        failed_charges=1,
    )

    warnings = await billing.get_low_credit_subscriptions(now)
    assert [w.subscription_id for w in warnings] == [low.id]
    assert warnings[0].shortfall == 40000
    assert warnings[0].email == poor.email

    reminders = await billing.get_subscriptions_in_grace_period()
    assert [r["subscription"].id for r in reminders] == [grace.id]
    assert reminders[0]["email"] == in_grace.email

    stats = await billing.get_billing_stats(now)
    assert stats.active_subscriptions == 3
    assert stats.subscriptions_in_grace == 1
    assert stats.auto_renewing_subscriptions == 3
    assert stats.monthly_recurring_credit == 150000


@pytest.mark.asyncio
async def test_billing_stats_counts_recent_renewals(billing: BillingService, make_account, make_plan, make_subscription) -> None:
    now = utcnow()
    account = await make_account(credit_balance=100000)
    plan = await make_plan(monthly_price=30000, used_quota=1)
    await make_subscription(account, plan, end_date=now - timedelta(hours=1), next_billing=now - timedelta(hours=1))

    await billing.process_auto_renewals()
    stats = await billing.get_billing_stats()

    assert stats.renewals_last_24h == 1
    assert stats.renewal_revenue_last_24h == 30000
    assert stats.renewals_due_next_24h == 0
