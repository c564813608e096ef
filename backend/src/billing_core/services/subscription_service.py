"""Subscription purchase, upgrade and cancellation."""
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.config import Settings, settings
from billing_core.exceptions import InvalidStateError, PlanNotFoundError, SubscriptionNotFoundError
from billing_core.models.plan import PLAN_TIER_RANK, Plan
from billing_core.models.subscription import (
    LIVE_SUBSCRIPTION_STATUSES,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
)
from billing_core.schemas.coupon import RedemptionContext
from billing_core.schemas.ledger import SubscriptionChargeMetadata, UpgradeMetadata
from billing_core.schemas.subscription import CancellationResult, SubscriptionChange, SubscriptionRead
from billing_core.services.coupon_service import CouponService
from billing_core.services.ledger_service import CreditLedger
from billing_core.services.quota_service import QuotaManager
from billing_core.services.renewal_service import RenewalStateMachine
from billing_core.utils.dates import add_months, days_in_month, days_remaining, utcnow

logger = structlog.get_logger(__name__)


class SubscriptionService:
    """
    Service for buying, upgrading and cancelling subscriptions.

    Each call is one unit of work: ledger, quota, coupon and subscription
    changes are flushed to the caller's session and committed together.
    """

    def __init__(self, db: AsyncSession, config: Optional[Settings] = None):
        """Initialize subscription service with database session."""
        self.db = db
        self.settings = config or settings
        self.ledger = CreditLedger(db)
        self.quota = QuotaManager(db)

    async def _get_plan(self, plan_id: UUID) -> Plan:
        result = await self.db.execute(select(Plan).where(Plan.id == plan_id))
        plan = result.scalar_one_or_none()
        if not plan:
            raise PlanNotFoundError(plan_id)
        return plan

    async def _create_history(
        self,
        subscription_id: UUID,
        event_type: str,
        old_value: Optional[str],
        new_value: str,
        reason: Optional[str] = None,
    ) -> None:
        self.db.add(
            SubscriptionHistory(
                subscription_id=subscription_id,
                event_type=event_type,
                old_value=old_value,
                new_value=new_value,
                reason=reason,
            )
        )

    async def get_live_subscription(self, account_id: UUID, service_id: UUID) -> Optional[Subscription]:
        """The account's ACTIVE or pending subscription of a service, if any."""
        result = await self.db.execute(
            select(Subscription).where(
                and_(
                    Subscription.account_id == account_id,
                    Subscription.service_id == service_id,
                    Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
                )
            )
        )
        return result.scalars().first()

    async def create_subscription(
        self,
        account_id: UUID,
        plan_id: UUID,
        coupon_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionChange:
        """
        Buy one month of a plan.

        Args:
            account_id: Buying account
            plan_id: Plan to subscribe to
            coupon_code: Optional discount or free-service coupon
            now: Start time (defaults to current UTC time)

        Returns:
            The new subscription and what was charged

        Raises:
            AccountNotFoundError: If the account does not exist
            PlanNotFoundError: If the plan does not exist
            InvalidStateError: If the plan is inactive or the account already
                subscribes to the service
            QuotaExceededError: If the plan is full
            CouponNotEligibleError: If the coupon cannot be used
            InsufficientCreditError: If the balance does not cover the price
        """
        now = now or utcnow()

        # Serializes purchases of the same account
        await self.ledger.lock_account(account_id)

        plan = await self._get_plan(plan_id)
        if not plan.is_active:
            raise InvalidStateError(f"Plan {plan_id} is not available", {"plan_id": str(plan_id)})

        existing = await self.get_live_subscription(account_id, plan.service_id)
        if existing:
            raise InvalidStateError(
                "You already have an active subscription for this service",
                {"subscription_id": str(existing.id), "service_id": str(plan.service_id)},
            )

        await self.quota.allocate(plan.id)

        redemption = None
        discount = 0
        if coupon_code:
            redemption = await CouponService(self.db).redeem(
                coupon_code,
                account_id,
                RedemptionContext(service_id=plan.service_id, plan_id=plan.id, reference_amount=plan.monthly_price),
            )
            discount = min(redemption.discount_amount or 0, plan.monthly_price)
        charge = plan.monthly_price - discount

        end_date = add_months(now, 1)
        subscription = Subscription(
            account_id=account_id,
            plan_id=plan.id,
            service_id=plan.service_id,
            status=SubscriptionStatus.ACTIVE,
            auto_renew=True,
            start_date=now,
            end_date=end_date,
            next_billing=end_date,
            last_billed=now,
            last_charge_amount=charge,
            monthly_price=plan.monthly_price,
            failed_charges=0,
            holds_quota=True,
        )
        self.db.add(subscription)
        await self.db.flush()

        entry = None
        if charge > 0:
            entry = await self.ledger.deduct_credit(
                account_id,
                charge,
                f"Subscription: {plan.name}",
                metadata=SubscriptionChargeMetadata(
                    subscription_id=subscription.id,
                    plan_id=plan.id,
                    coupon_code=redemption.coupon_code if redemption else None,
                    original_amount=plan.monthly_price,
                    discount_amount=discount,
                ),
                subscription_id=subscription.id,
            )

        if redemption:
            await CouponService(self.db).link_redemption_to_subscription(redemption.redemption_id, subscription.id)

        await self._create_history(subscription.id, "created", None, SubscriptionStatus.ACTIVE.value, plan.name)
        await self.db.flush()

        logger.info(
            "subscription_created",
            subscription_id=str(subscription.id),
            account_id=str(account_id),
            plan_id=str(plan.id),
            charged=charge,
            discount=discount,
        )
        return SubscriptionChange(
            subscription=SubscriptionRead.model_validate(subscription),
            charged_amount=charge,
            discount_amount=discount,
            ledger_entry_id=entry.id if entry else None,
            redemption_id=redemption.redemption_id if redemption else None,
        )

    async def upgrade_subscription(
        self,
        subscription_id: UUID,
        new_plan_id: UUID,
        now: Optional[datetime] = None,
    ) -> SubscriptionChange:
        """
        Move an active subscription to a higher tier of the same service.

        The price difference is charged for the days left in the current
        period: (new - old) * days_remaining // days_in_month.

        Raises:
            InvalidStateError: If the subscription is not ACTIVE, is in grace,
                or the new plan is not a higher tier of the same service
            QuotaExceededError: If the new plan is full
            InsufficientCreditError: If the balance does not cover the
                prorated cost
        """
        now = now or utcnow()
        subscription = await RenewalStateMachine(self.db, self.settings).lock_subscription(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE or subscription.in_grace_period:
            raise InvalidStateError(
                "Only active subscriptions that are paid up can be upgraded",
                {"subscription_id": str(subscription_id), "status": subscription.status.value},
            )

        current_plan = await self._get_plan(subscription.plan_id)
        new_plan = await self._get_plan(new_plan_id)
        if new_plan.service_id != current_plan.service_id:
            raise InvalidStateError("Cannot upgrade to a plan of another service", {"plan_id": str(new_plan_id)})
        if PLAN_TIER_RANK[new_plan.plan_type] <= PLAN_TIER_RANK[current_plan.plan_type]:
            raise InvalidStateError(
                f"Cannot upgrade from {current_plan.plan_type.value} to {new_plan.plan_type.value}",
                {"from": current_plan.plan_type.value, "to": new_plan.plan_type.value},
            )
        if not new_plan.is_active:
            raise InvalidStateError(f"Plan {new_plan_id} is not available", {"plan_id": str(new_plan_id)})

        remaining_days = days_remaining(subscription.end_date, now)
        month_days = days_in_month(now)
        cost = max(0, (new_plan.monthly_price - current_plan.monthly_price) * remaining_days // month_days)

        entry = None
        if cost > 0:
            entry = await self.ledger.deduct_credit(
                subscription.account_id,
                cost,
                f"Upgrade: {current_plan.name} to {new_plan.name}",
                metadata=UpgradeMetadata(
                    subscription_id=subscription.id,
                    from_plan_id=current_plan.id,
                    to_plan_id=new_plan.id,
                    days_remaining=remaining_days,
                    days_in_month=month_days,
                ),
                subscription_id=subscription.id,
            )

        await self.quota.allocate(new_plan.id)
        if subscription.holds_quota:
            await self.quota.release(current_plan.id)

        subscription.previous_plan_id = current_plan.id
        subscription.plan_id = new_plan.id
        subscription.monthly_price = new_plan.monthly_price
        subscription.upgraded_at = now
        subscription.holds_quota = True
        await self._create_history(subscription.id, "plan_change", current_plan.name, new_plan.name, "upgrade")
        await self.db.flush()

        logger.info(
            "subscription_upgraded",
            subscription_id=str(subscription.id),
            from_plan=str(current_plan.id),
            to_plan=str(new_plan.id),
            cost=cost,
            days_remaining=remaining_days,
        )
        return SubscriptionChange(
            subscription=SubscriptionRead.model_validate(subscription),
            charged_amount=cost,
            ledger_entry_id=entry.id if entry else None,
        )

    async def cancel_subscription(
        self,
        subscription_id: UUID,
        account_id: Optional[UUID] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CancellationResult:
        """
        Cancel a live subscription, refunding the unused part of the period.

        The refund is monthly_price * days_remaining // days_in_month and is
        only paid when it exceeds the configured minimum.

        Args:
            subscription_id: Subscription to cancel
            account_id: When given, the subscription must belong to it
            reason: Cancellation reason
            now: Cancellation time

        Raises:
            SubscriptionNotFoundError: If missing or owned by another account
            InvalidStateError: If already expired or cancelled
        """
        now = now or utcnow()
        subscription = await RenewalStateMachine(self.db, self.settings).lock_subscription(subscription_id)
        if account_id is not None and subscription.account_id != account_id:
            raise SubscriptionNotFoundError(subscription_id)
        if subscription.status not in LIVE_SUBSCRIPTION_STATUSES:
            raise InvalidStateError(
                f"Subscription {subscription_id} is already {subscription.status.value}",
                {"subscription_id": str(subscription_id), "status": subscription.status.value},
            )

        refund_amount = 0
        refund_entry = None
        remaining_days = days_remaining(subscription.end_date, now)
        if subscription.status == SubscriptionStatus.ACTIVE and not subscription.in_grace_period:
            refund_amount = subscription.monthly_price * remaining_days // days_in_month(now)
        if refund_amount > self.settings.refund_minimum_amount:
            refund_entry = await self.ledger.refund_credit(
                subscription.account_id,
                refund_amount,
                f"Prorated refund for cancelled subscription ({remaining_days} days)",
                subscription_id=subscription.id,
                reason=reason,
                days_remaining=remaining_days,
            )
        else:
            refund_amount = 0

        quota_released = 0
        if subscription.holds_quota:
            release = await self.quota.release(subscription.plan_id)
            quota_released = release.released
            subscription.holds_quota = False

        old_status = subscription.status
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.auto_renew = False
        subscription.grace_period_end = None
        subscription.next_billing = None
        subscription.cancelled_at = now
        subscription.cancellation_reason = reason
        await self._create_history(
            subscription.id, "status_change", old_status.value, SubscriptionStatus.CANCELLED.value, reason
        )
        await self.db.flush()

        logger.info(
            "subscription_cancelled",
            subscription_id=str(subscription_id),
            account_id=str(subscription.account_id),
            refund_amount=refund_amount,
            quota_released=quota_released,
        )
        return CancellationResult(
            subscription=SubscriptionRead.model_validate(subscription),
            refund_amount=refund_amount,
            refund_entry_id=refund_entry.id if refund_entry else None,
            quota_released=quota_released,
        )
