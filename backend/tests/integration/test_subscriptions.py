"""Integration tests for subscription purchase, upgrade and cancellation."""
from datetime import datetime

import pytest
from sqlalchemy import func, select

from billing_core.exceptions import InsufficientCreditError, InvalidStateError, QuotaExceededError
from billing_core.models import (
    Account,
    CouponRedemption,
    CouponType,
    DiscountType,
    LedgerEntry,
    LedgerEntryType,
    Plan,
    PlanType,
    Subscription,
    SubscriptionStatus,
)
from billing_core.services.account_service import AccountService
from billing_core.services.billing_service import BillingService
from billing_core.services.subscription_service import SubscriptionService
from billing_core.unit_of_work import run_in_transaction
from billing_core.utils.dates import add_months, utcnow

NOW = datetime(2026, 4, 1, 8, 0, 0)  # April has 30 days


@pytest.mark.asyncio
async def test_create_subscription_charges_and_allocates(
    session_factory, test_settings, make_account, make_plan, load
) -> None:
    """Test that buying a plan charges one month and takes a quota slot."""
    account = await make_account(credit_balance=100000, total_top_up=100000)
    plan = await make_plan(monthly_price=50000, total_quota=10, used_quota=0)

    change = await run_in_transaction(
        lambda db: SubscriptionService(db, test_settings).create_subscription(account.id, plan.id, now=NOW),
        session_factory=session_factory,
    )

    subscription = change.subscription
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.holds_quota is True
    assert subscription.end_date == add_months(NOW, 1)
    assert subscription.next_billing == subscription.end_date
    assert change.charged_amount == 50000

    assert (await load(Account, account.id)).credit_balance == 50000
    assert (await load(Plan, plan.id)).used_quota == 1
    entry = await load(LedgerEntry, change.ledger_entry_id)
    assert entry.type == LedgerEntryType.SUBSCRIPTION
    assert entry.subscription_id == subscription.id


@pytest.mark.asyncio
async def test_failed_purchase_rolls_back_quota(session_factory, test_settings, make_account, make_plan, load) -> None:
    """Test that an unaffordable purchase leaves quota and subscriptions untouched."""
    account = await make_account(credit_balance=10000, total_top_up=10000)
    plan = await make_plan(monthly_price=50000, total_quota=10, used_quota=4)

    with pytest.raises(InsufficientCreditError):
        await run_in_transaction(
            lambda db: SubscriptionService(db, test_settings).create_subscription(account.id, plan.id, now=NOW),
            session_factory=session_factory,
        )

    assert (await load(Plan, plan.id)).used_quota == 4
    async with session_factory() as db:
        count = await db.execute(select(func.count(Subscription.id)).where(Subscription.account_id == account.id))
        assert count.scalar_one() == 0


@pytest.mark.asyncio
async def test_full_plan_cannot_be_bought(session_factory, test_settings, make_account, make_plan) -> None:
    account = await make_account(credit_balance=100000, total_top_up=100000)
    plan = await make_plan(monthly_price=50000, total_quota=2, used_quota=2)

    with pytest.raises(QuotaExceededError):
        await run_in_transaction(
            lambda db: SubscriptionService(db, test_settings).create_subscription(account.id, plan.id, now=NOW),
            session_factory=session_factory,
        )


@pytest.mark.asyncio
async def test_one_live_subscription_per_service(session_factory, test_settings, make_account, make_plan) -> None:
    account = await make_account(credit_balance=200000, total_top_up=200000)
    plan = await make_plan(monthly_price=50000)

    async def buy(db):
        return await SubscriptionService(db, test_settings).create_subscription(account.id, plan.id, now=NOW)

    await run_in_transaction(buy, session_factory=session_factory)
    with pytest.raises(InvalidStateError):
        await run_in_transaction(buy, session_factory=session_factory)


@pytest.mark.asyncio
async def test_purchase_with_discount_coupon(
    session_factory, test_settings, make_account, make_plan, make_coupon, load
) -> None:
    account = await make_account(credit_balance=100000, total_top_up=100000)
    plan = await make_plan(monthly_price=50000)
    coupon = await make_coupon(
        type=CouponType.SUBSCRIPTION_DISCOUNT,
        discount_type=DiscountType.PERCENTAGE,
        discount_percent=25,
        credit_amount=None,
        max_uses=10,
    )

    change = await run_in_transaction(
        lambda db: SubscriptionService(db, test_settings).create_subscription(
            account.id, plan.id, coupon_code=coupon.code, now=NOW
        ),
        session_factory=session_factory,
    )

    assert change.charged_amount == 37500
    assert change.discount_amount == 12500
    assert (await load(Account, account.id)).credit_balance == 62500
    redemption = await load(CouponRedemption, change.redemption_id)
    assert redemption.subscription_id == change.subscription.id


@pytest.mark.asyncio
async def test_upgrade_charges_prorated_difference(
    session_factory, test_settings, make_account, make_service, make_plan, make_subscription, load
) -> None:
    """Test that an upgrade charges (new - old) * days_remaining // days_in_month."""
    service = await make_service()
    basic = await make_plan(service_id=service.id, plan_type=PlanType.BASIC, monthly_price=30000, used_quota=1)
    pro = await make_plan(service_id=service.id, plan_type=PlanType.PRO, monthly_price=60000, used_quota=0)
    account = await make_account(credit_balance=50000, total_top_up=50000)
    subscription = await make_subscription(
        account,
        basic,
        start_date=datetime(2026, 3, 16, 8, 0),
        end_date=datetime(2026, 4, 16, 8, 0),
        next_billing=datetime(2026, 4, 16, 8, 0),
    )

    change = await run_in_transaction(
        lambda db: SubscriptionService(db, test_settings).upgrade_subscription(subscription.id, pro.id, now=NOW),
        session_factory=session_factory,
    )

    assert change.charged_amount == 15000  # 30000 * 15 // 30
    assert change.subscription.plan_id == pro.id
    assert change.subscription.monthly_price == 60000
    assert (await load(Account, account.id)).credit_balance == 35000
    assert (await load(Plan, basic.id)).used_quota == 0
    assert (await load(Plan, pro.id)).used_quota == 1
    assert (await load(LedgerEntry, change.ledger_entry_id)).type == LedgerEntryType.UPGRADE


@pytest.mark.asyncio
async def test_downgrade_is_rejected(
    session_factory, test_settings, make_account, make_service, make_plan, make_subscription
) -> None:
    service = await make_service()
    pro = await make_plan(service_id=service.id, plan_type=PlanType.PRO, monthly_price=60000, used_quota=1)
    basic = await make_plan(service_id=service.id, plan_type=PlanType.BASIC, monthly_price=30000)
    subscription = await make_subscription(await make_account(credit_balance=100000), pro)

    with pytest.raises(InvalidStateError):
        await run_in_transaction(
            lambda db: SubscriptionService(db, test_settings).upgrade_subscription(subscription.id, basic.id),
            session_factory=session_factory,
        )


@pytest.mark.asyncio
async def test_cancel_refunds_unused_days(
    session_factory, test_settings, make_account, make_plan, make_subscription, load
) -> None:
    account = await make_account()
    plan = await make_plan(monthly_price=60000, used_quota=1)
    subscription = await make_subscription(
        account,
        plan,
        start_date=datetime(2026, 3, 16, 8, 0),
        end_date=datetime(2026, 4, 16, 8, 0),
        next_billing=datetime(2026, 4, 16, 8, 0),
    )

    result = await run_in_transaction(
        lambda db: SubscriptionService(db, test_settings).cancel_subscription(
            subscription.id, account.id, reason="moving provider", now=NOW
        ),
        session_factory=session_factory,
    )

    assert result.refund_amount == 30000  # 60000 * 15 // 30
    assert result.quota_released == 1
    assert result.subscription.status == SubscriptionStatus.CANCELLED
    assert result.subscription.next_billing is None
    stored = await load(Account, account.id)
    assert stored.credit_balance == 30000
    assert stored.total_top_up == 0
    assert (await load(Plan, plan.id)).used_quota == 0

    with pytest.raises(InvalidStateError):
        await run_in_transaction(
            lambda db: SubscriptionService(db, test_settings).cancel_subscription(subscription.id, now=NOW),
            session_factory=session_factory,
        )


@pytest.mark.asyncio
async def test_small_refunds_are_skipped(
    session_factory, billing: BillingService, make_account, make_plan, make_subscription, load
) -> None:
    """Test that refunds at or below the minimum are not paid and termination is reported."""
    account = await make_account()
    plan = await make_plan(monthly_price=20000, used_quota=1)
    subscription = await make_subscription(account, plan, end_date=utcnow())

    result = await billing.cancel_subscription(subscription.id, account.id, reason="no longer needed")

    assert result.refund_amount == 0
    assert result.refund_entry_id is None
    assert [effect.operation for effect in result.side_effects] == ["terminate_instances"]
    assert result.side_effects[0].ok is True
    assert (await load(Account, account.id)).credit_balance == 0


@pytest.mark.asyncio
async def test_delete_account_with_live_subscription_is_refused(
    session_factory, make_account, make_plan, make_subscription
) -> None:
    account = await make_account()
    await make_subscription(account, await make_plan(used_quota=1))

    with pytest.raises(InvalidStateError):
        await run_in_transaction(
            lambda db: AccountService(db).delete_account(account.id), session_factory=session_factory
        )
