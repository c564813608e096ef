"""Subscription renewal, grace period and expiration transitions.

A live subscription is in one of three states:

    ACTIVE (current)   next_billing in the future, no grace period
    ACTIVE (in grace)  renewal failed for lack of credit, grace_period_end set
    EXPIRED            terminal; quota released, auto_renew off

Every method here runs inside the caller's transaction with the
subscription row locked, and repeats of the same call for the same billing
cycle are no-ops.
"""
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.config import Settings, settings
from billing_core.exceptions import (
    InsufficientCreditError,
    InvalidGracePeriodError,
    InvalidStateError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
)
from billing_core.metrics import renewals_total, subscriptions_expired_total
from billing_core.models.plan import Plan
from billing_core.models.subscription import Subscription, SubscriptionHistory, SubscriptionStatus
from billing_core.schemas.ledger import SubscriptionChargeMetadata
from billing_core.schemas.subscription import RenewalOutcome, RenewalResult
from billing_core.services.ledger_service import CreditLedger
from billing_core.services.quota_service import QuotaManager
from billing_core.utils.dates import add_months, billing_cycle_key, utcnow

logger = structlog.get_logger(__name__)


def renewal_idempotency_key(subscription_id: UUID, period_end: datetime) -> str:
    """Ledger key for the charge that renews a subscription past period_end."""
    return f"renewal:{subscription_id}:{billing_cycle_key(period_end)}"


class RenewalStateMachine:
    """Drives one subscription through renewal, grace and expiry."""

    def __init__(self, db: AsyncSession, config: Optional[Settings] = None):
        """Initialize with database session and billing policy."""
        self.db = db
        self.settings = config or settings
        self.ledger = CreditLedger(db)
        self.quota = QuotaManager(db)

    async def lock_subscription(self, subscription_id: UUID) -> Subscription:
        """
        Load a subscription with a row lock.

        Raises:
            SubscriptionNotFoundError: If it does not exist
        """
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()
        if not subscription:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def _get_plan(self, plan_id: UUID) -> Plan:
        result = await self.db.execute(select(Plan).where(Plan.id == plan_id))
        plan = result.scalar_one_or_none()
        if not plan:
            raise PlanNotFoundError(plan_id)
        return plan

    def _record(
        self,
        subscription: Subscription,
        event_type: str,
        old_value: Optional[str],
        new_value: str,
        reason: Optional[str] = None,
    ) -> None:
        self.db.add(
            SubscriptionHistory(
                subscription_id=subscription.id,
                event_type=event_type,
                old_value=old_value,
                new_value=new_value,
                reason=reason,
            )
        )

    def _skip(self, subscription: Subscription, reason: str) -> RenewalResult:
        renewals_total.labels(outcome=RenewalOutcome.SKIPPED.value).inc()
        logger.info("renewal_skipped", subscription_id=str(subscription.id), reason=reason)
        return RenewalResult(
            subscription_id=subscription.id,
            account_id=subscription.account_id,
            outcome=RenewalOutcome.SKIPPED,
            reason=reason,
        )

    def clamp_grace_days(self, days: Optional[int] = None) -> int:
        """Grace length limited to the configured bounds."""
        days = self.settings.grace_period_days if days is None else days
        return max(self.settings.grace_period_min_days, min(self.settings.grace_period_max_days, days))

    async def attempt_renewal(self, subscription_id: UUID, now: Optional[datetime] = None) -> RenewalResult:
        """
        Renew a due subscription by charging one more month.

        Subscriptions that are not ACTIVE, not auto-renewing, already in
        grace or not yet due are skipped, which makes a repeated sweep a
        no-op.

        Args:
            subscription_id: Subscription to renew
            now: Evaluation time (defaults to current UTC time)

        Returns:
            RENEWED, GRACE_STARTED, EXPIRED (grace disabled) or SKIPPED

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
            QuotaExceededError: If the subscription lost its quota slot and
                the plan is full; nothing is changed
        """
        now = now or utcnow()
        subscription = await self.lock_subscription(subscription_id)

        if subscription.status != SubscriptionStatus.ACTIVE:
            return self._skip(subscription, f"status is {subscription.status.value}")
        if not subscription.auto_renew:
            return self._skip(subscription, "auto-renew disabled")
        if subscription.grace_period_end is not None:
            return self._skip(subscription, "in grace period")
        if subscription.next_billing is None or subscription.next_billing > now:
            return self._skip(subscription, "not due")

        return await self._charge(subscription, now, in_grace=False)

    async def retry_grace_renewal(self, subscription_id: UUID, now: Optional[datetime] = None) -> RenewalResult:
        """
        Settle a subscription whose grace period has ended.

        Renews when the balance now covers the price, otherwise expires.

        Returns:
            RENEWED, EXPIRED or SKIPPED (not in grace, or grace still running)
        """
        now = now or utcnow()
        subscription = await self.lock_subscription(subscription_id)

        if not subscription.in_grace_period:
            return self._skip(subscription, "not in grace period")
        if subscription.grace_period_end > now:
            return self._skip(subscription, "grace period still running")

        return await self._charge(subscription, now, in_grace=True)

    async def _charge(self, subscription: Subscription, now: datetime, in_grace: bool) -> RenewalResult:
        plan = await self._get_plan(subscription.plan_id)
        amount = plan.monthly_price
        period_end = subscription.end_date

        entry = None
        try:
            if amount > 0:
                entry = await self.ledger.deduct_credit(
                    subscription.account_id,
                    amount,
                    f"Auto-renewal: {plan.name}",
                    metadata=SubscriptionChargeMetadata(
                        subscription_id=subscription.id,
                        plan_id=plan.id,
                        billing_cycle=billing_cycle_key(period_end),
                        auto_renewal=True,
                    ),
                    idempotency_key=renewal_idempotency_key(subscription.id, period_end),
                    subscription_id=subscription.id,
                )
        except InsufficientCreditError as exc:
            if in_grace:
                return await self._expire(subscription, now, "grace_period_ended", plan=plan, balance=exc.available)
            if not self.settings.grace_period_enabled:
                return await self._expire(subscription, now, "insufficient_credit", plan=plan, balance=exc.available)
            return self._enter_grace(subscription, plan, now, exc)

        if not subscription.holds_quota:
            await self.quota.allocate(plan.id)
            subscription.holds_quota = True

        old_end = subscription.end_date
        new_end = add_months(period_end, 1)
        if new_end <= now:
            # More than a period overdue; restart the cycle so it is not due again
            new_end = add_months(now, 1)
        subscription.end_date = new_end
        subscription.next_billing = new_end
        subscription.last_billed = now
        subscription.last_charge_amount = amount
        subscription.monthly_price = amount
        subscription.failed_charges = 0
        subscription.grace_period_end = None
        self._record(
            subscription,
            "renewed",
            old_end.isoformat(),
            new_end.isoformat(),
            "grace period renewal" if in_grace else "auto-renewal",
        )
        await self.db.flush()

        renewals_total.labels(outcome=RenewalOutcome.RENEWED.value).inc()
        logger.info(
            "subscription_renewed",
            subscription_id=str(subscription.id),
            account_id=str(subscription.account_id),
            amount=amount,
            new_end_date=new_end.isoformat(),
            from_grace=in_grace,
        )
        return RenewalResult(
            subscription_id=subscription.id,
            account_id=subscription.account_id,
            plan_name=plan.name,
            outcome=RenewalOutcome.RENEWED,
            amount=amount,
            balance=entry.balance_after if entry else None,
            ledger_entry_id=entry.id if entry else None,
            new_end_date=new_end,
        )

    def _enter_grace(
        self, subscription: Subscription, plan: Plan, now: datetime, exc: InsufficientCreditError
    ) -> RenewalResult:
        grace_end = now + timedelta(days=self.clamp_grace_days())
        subscription.grace_period_end = grace_end
        subscription.failed_charges += 1
        self._record(subscription, "grace_started", None, grace_end.isoformat(), exc.message)

        renewals_total.labels(outcome=RenewalOutcome.GRACE_STARTED.value).inc()
        logger.info(
            "subscription_grace_started",
            subscription_id=str(subscription.id),
            account_id=str(subscription.account_id),
            required=exc.required,
            available=exc.available,
            grace_period_end=grace_end.isoformat(),
            failed_charges=subscription.failed_charges,
        )
        return RenewalResult(
            subscription_id=subscription.id,
            account_id=subscription.account_id,
            plan_name=plan.name,
            outcome=RenewalOutcome.GRACE_STARTED,
            amount=plan.monthly_price,
            balance=exc.available,
            grace_period_end=grace_end,
            reason=exc.message,
        )

    async def expire(
        self, subscription_id: UUID, reason: str = "expired", now: Optional[datetime] = None
    ) -> RenewalResult:
        """
        Move a subscription to EXPIRED and release its quota.

        Already expired or cancelled subscriptions are left alone.
        """
        subscription = await self.lock_subscription(subscription_id)
        return await self._expire(subscription, now or utcnow(), reason)

    async def _expire(
        self,
        subscription: Subscription,
        now: datetime,
        reason: str,
        plan: Optional[Plan] = None,
        balance: Optional[int] = None,
    ) -> RenewalResult:
        if subscription.status in (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED):
            return self._skip(subscription, f"already {subscription.status.value}")

        plan = plan or await self._get_plan(subscription.plan_id)
        if subscription.holds_quota:
            await self.quota.release(subscription.plan_id)
            subscription.holds_quota = False

        old_status = subscription.status
        subscription.status = SubscriptionStatus.EXPIRED
        subscription.auto_renew = False
        subscription.grace_period_end = None
        subscription.next_billing = None
        self._record(subscription, "status_change", old_status.value, SubscriptionStatus.EXPIRED.value, reason)
        await self.db.flush()

        renewals_total.labels(outcome=RenewalOutcome.EXPIRED.value).inc()
        subscriptions_expired_total.labels(reason=reason).inc()
        logger.info(
            "subscription_expired",
            subscription_id=str(subscription.id),
            account_id=str(subscription.account_id),
            reason=reason,
            at=now.isoformat(),
        )
        return RenewalResult(
            subscription_id=subscription.id,
            account_id=subscription.account_id,
            plan_name=plan.name,
            outcome=RenewalOutcome.EXPIRED,
            amount=plan.monthly_price,
            balance=balance,
            reason=reason,
        )

    async def set_grace_period(
        self, subscription_id: UUID, days: int, now: Optional[datetime] = None
    ) -> Subscription:
        """
        Change the grace window of a subscription already in grace.

        The new window runs from now.

        Raises:
            InvalidGracePeriodError: If days is outside the configured bounds
            InvalidStateError: If the subscription is not in grace
        """
        min_days = self.settings.grace_period_min_days
        max_days = self.settings.grace_period_max_days
        if days < min_days or days > max_days:
            raise InvalidGracePeriodError(days, min_days, max_days)

        subscription = await self.lock_subscription(subscription_id)
        if not subscription.in_grace_period:
            raise InvalidStateError(
                f"Subscription {subscription_id} is not in a grace period",
                {"subscription_id": str(subscription_id), "status": subscription.status.value},
            )

        old_end = subscription.grace_period_end
        subscription.grace_period_end = (now or utcnow()) + timedelta(days=days)
        self._record(
            subscription,
            "grace_period_set",
            old_end.isoformat(),
            subscription.grace_period_end.isoformat(),
            f"{days} days",
        )
        await self.db.flush()

        logger.info(
            "grace_period_set",
            subscription_id=str(subscription_id),
            days=days,
            grace_period_end=subscription.grace_period_end.isoformat(),
        )
        return subscription
