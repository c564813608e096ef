"""Batch entry points for renewals, grace periods and billing reports.

Each subscription is processed in its own unit of work, so one failure
never rolls back another. Notifications and instance termination run
after the commit and can only produce SideEffectResult failures.
"""
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.config import Settings, settings
from billing_core.database import AsyncSessionLocal
from billing_core.exceptions import QuotaExceededError
from billing_core.integrations.notification_service import NotificationService, notify_safely
from billing_core.integrations.provisioning import ProvisioningClient
from billing_core.metrics import (
    renewals_total,
    subscriptions_auto_renewing_gauge,
    subscriptions_in_grace_gauge,
)
from billing_core.models.account import Account
from billing_core.models.ledger import LedgerEntry, LedgerEntryStatus, LedgerEntryType
from billing_core.models.plan import Plan
from billing_core.models.subscription import Subscription, SubscriptionHistory, SubscriptionStatus
from billing_core.schemas.results import JobResult, SideEffectResult
from billing_core.schemas.subscription import (
    BillingStats,
    CancellationResult,
    LowCreditSubscription,
    RenewalOutcome,
    RenewalResult,
    SubscriptionRead,
)
from billing_core.services.renewal_service import RenewalStateMachine
from billing_core.services.subscription_service import SubscriptionService
from billing_core.unit_of_work import run_in_transaction
from billing_core.utils.dates import utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class BillingService:
    """Runs renewal sweeps and subscription lifecycle operations end to end."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        config: Optional[Settings] = None,
        notifier: Optional[NotificationService] = None,
        provisioner: Optional[ProvisioningClient] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.settings = config or settings
        self.notifier = notifier or NotificationService()
        self.provisioner = provisioner or ProvisioningClient()

    async def _run(self, work: Callable[[AsyncSession], Awaitable[T]], operation: str) -> T:
        return await run_in_transaction(work, session_factory=self.session_factory, operation=operation)

    async def _account_email(self, account_id: UUID) -> Optional[str]:
        async with self.session_factory() as db:
            result = await db.execute(select(Account.email).where(Account.id == account_id))
            return result.scalar_one_or_none()

    async def _terminate_instances(self, subscription_id: UUID, reason: str) -> SideEffectResult:
        operation = "terminate_instances"
        try:
            return SideEffectResult.success(
                operation, await self.provisioner.terminate_instances(subscription_id, reason)
            )
        except Exception as e:
            logger.warning("instances_termination_failed", subscription_id=str(subscription_id), error=str(e))
            return SideEffectResult.failure(operation, e)

    async def _after_transition(self, renewal: RenewalResult) -> RenewalResult:
        """Send the notification and run the provisioning call a committed transition needs."""
        if renewal.outcome == RenewalOutcome.SKIPPED or renewal.account_id is None:
            return renewal

        if renewal.outcome == RenewalOutcome.EXPIRED:
            renewal.side_effects.append(
                await self._terminate_instances(renewal.subscription_id, renewal.reason or "expired")
            )

        try:
            email = await self._account_email(renewal.account_id)
        except Exception as e:
            logger.warning("notification_recipient_lookup_failed", account_id=str(renewal.account_id), error=str(e))
            renewal.side_effects.append(SideEffectResult.failure("lookup_account_email", e))
            return renewal
        if not email:
            return renewal

        plan_name = renewal.plan_name or "Subscription"
        if renewal.outcome == RenewalOutcome.RENEWED:
            notification = self.notifier.send_renewal_success(email, plan_name, renewal.amount or 0, renewal.new_end_date)
            operation = "notify_renewal_success"
        elif renewal.outcome == RenewalOutcome.GRACE_STARTED:
            notification = self.notifier.send_renewal_failed(
                email, plan_name, renewal.amount or 0, renewal.balance or 0, renewal.grace_period_end
            )
            operation = "notify_renewal_failed"
        else:
            notification = self.notifier.send_subscription_expired(email, plan_name, renewal.reason or "expired")
            operation = "notify_subscription_expired"

        renewal.side_effects.append(await notify_safely(operation, notification))
        return renewal

    async def _record_renewal_blocked(self, subscription_id: UUID, exc: QuotaExceededError) -> None:
        async def work(db: AsyncSession) -> None:
            db.add(
                SubscriptionHistory(
                    subscription_id=subscription_id,
                    event_type="renewal_blocked",
                    old_value=None,
                    new_value=SubscriptionStatus.ACTIVE.value,
                    reason=exc.message,
                )
            )

        renewals_total.labels(outcome="blocked").inc()
        try:
            await self._run(work, "record_renewal_blocked")
        except Exception as e:
            logger.warning("renewal_blocked_record_failed", subscription_id=str(subscription_id), error=str(e))

    async def find_due_subscriptions(self, now: Optional[datetime] = None) -> list[UUID]:
        """ACTIVE auto-renewing subscriptions not in grace whose billing date has passed."""
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Subscription.id)
                .where(
                    and_(
                        Subscription.status == SubscriptionStatus.ACTIVE,
                        Subscription.auto_renew.is_(True),
                        Subscription.grace_period_end.is_(None),
                        Subscription.next_billing <= now,
                    )
                )
                .order_by(Subscription.next_billing)
            )
            return list(result.scalars().all())

    async def find_ended_grace_subscriptions(self, now: Optional[datetime] = None) -> list[UUID]:
        """ACTIVE subscriptions whose grace period has run out."""
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Subscription.id)
                .where(
                    and_(
                        Subscription.status == SubscriptionStatus.ACTIVE,
                        Subscription.grace_period_end.is_not(None),
                        Subscription.grace_period_end <= now,
                    )
                )
                .order_by(Subscription.grace_period_end)
            )
            return list(result.scalars().all())

    def _tally(self, result: JobResult, renewal: RenewalResult) -> None:
        result.successful += 1
        key = renewal.outcome.value
        result.details[key] = result.details.get(key, 0) + 1
        if renewal.outcome == RenewalOutcome.RENEWED:
            result.details["revenue"] = result.details.get("revenue", 0) + (renewal.amount or 0)
        for side_effect in renewal.side_effects:
            result.record_side_effect(side_effect, renewal.subscription_id)

    async def process_auto_renewals(self, now: Optional[datetime] = None) -> JobResult:
        """
        Renew every due subscription.

        Per-subscription errors are collected in the result and the sweep
        continues. A renewal blocked by a full plan leaves the subscription
        ACTIVE and records a renewal_blocked history event.

        Args:
            now: Evaluation time (defaults to current UTC time)

        Returns:
            JobResult with counts per outcome in details
        """
        now = now or utcnow()
        result = JobResult(job="daily-renewals", started_at=utcnow())

        if not self.settings.auto_renewal_enabled:
            logger.info("auto_renewal_disabled")
            result.details["disabled"] = True
            result.finished_at = utcnow()
            return result

        subscription_ids = await self.find_due_subscriptions(now)
        logger.info("auto_renewal_started", due=len(subscription_ids))

        for subscription_id in subscription_ids:
            result.processed += 1
            try:
                renewal = await self._run(
                    lambda db, sid=subscription_id: RenewalStateMachine(db, self.settings).attempt_renewal(sid, now),
                    "attempt_renewal",
                )
            except QuotaExceededError as exc:
                result.failed += 1
                result.record_error("renewal", exc, subscription_id)
                await self._record_renewal_blocked(subscription_id, exc)
                logger.warning("renewal_blocked", subscription_id=str(subscription_id), error=exc.message)
                continue
            except Exception as exc:
                result.failed += 1
                result.record_error("renewal", exc, subscription_id)
                logger.exception("renewal_failed", subscription_id=str(subscription_id), exc_info=exc)
                continue

            self._tally(result, await self._after_transition(renewal))

        result.finished_at = utcnow()
        logger.info(
            "auto_renewal_completed",
            processed=result.processed,
            successful=result.successful,
            failed=result.failed,
            **{k: v for k, v in result.details.items() if isinstance(v, int)},
        )

        summary = await notify_safely(
            "notify_billing_summary",
            self.notifier.send_billing_summary(
                {"job": result.job, "processed": result.processed, "failed": result.failed, **result.details}
            ),
        )
        result.record_side_effect(summary)
        return result

    async def process_grace_period_subscriptions(self, now: Optional[datetime] = None) -> JobResult:
        """
        Settle subscriptions whose grace period has ended.

        Each one is renewed if the balance now covers the price, otherwise
        expired with its quota released and its instances terminated.
        """
        now = now or utcnow()
        result = JobResult(job="grace-period", started_at=utcnow())

        subscription_ids = await self.find_ended_grace_subscriptions(now)
        logger.info("grace_period_processing_started", due=len(subscription_ids))

        for subscription_id in subscription_ids:
            result.processed += 1
            try:
                renewal = await self._run(
                    lambda db, sid=subscription_id: RenewalStateMachine(db, self.settings).retry_grace_renewal(
                        sid, now
                    ),
                    "retry_grace_renewal",
                )
            except Exception as exc:
                result.failed += 1
                result.record_error("grace_period", exc, subscription_id)
                logger.exception("grace_period_processing_failed", subscription_id=str(subscription_id), exc_info=exc)
                continue

            self._tally(result, await self._after_transition(renewal))

        result.finished_at = utcnow()
        logger.info(
            "grace_period_processing_completed",
            processed=result.processed,
            successful=result.successful,
            failed=result.failed,
        )
        return result

    async def expire_subscription(self, subscription_id: UUID, reason: str = "expired") -> RenewalResult:
        """Expire a subscription now and terminate its instances."""
        renewal = await self._run(
            lambda db: RenewalStateMachine(db, self.settings).expire(subscription_id, reason),
            "expire_subscription",
        )
        return await self._after_transition(renewal)

    async def set_grace_period(self, subscription_id: UUID, days: int) -> SubscriptionRead:
        """Admin override of the grace window of a subscription in grace."""
        subscription = await self._run(
            lambda db: RenewalStateMachine(db, self.settings).set_grace_period(subscription_id, days),
            "set_grace_period",
        )
        return SubscriptionRead.model_validate(subscription)

    async def cancel_subscription(
        self,
        subscription_id: UUID,
        account_id: Optional[UUID] = None,
        reason: Optional[str] = None,
    ) -> CancellationResult:
        """Cancel with prorated refund, then terminate the subscription's instances."""
        cancellation = await self._run(
            lambda db: SubscriptionService(db, self.settings).cancel_subscription(subscription_id, account_id, reason),
            "cancel_subscription",
        )
        cancellation.side_effects.append(
            await self._terminate_instances(subscription_id, reason or "subscription_cancelled")
        )
        return cancellation

    async def get_low_credit_subscriptions(
        self, now: Optional[datetime] = None, days: Optional[int] = None
    ) -> list[LowCreditSubscription]:
        """
        Auto-renewing subscriptions billed within the warning window whose
        account balance is below the plan price.
        """
        now = now or utcnow()
        window_end = now + timedelta(days=days if days is not None else self.settings.low_credit_warning_days)

        async with self.session_factory() as db:
            result = await db.execute(
                select(Subscription, Account, Plan)
                .join(Account, Account.id == Subscription.account_id)
                .join(Plan, Plan.id == Subscription.plan_id)
                .where(
                    and_(
                        Subscription.status == SubscriptionStatus.ACTIVE,
                        Subscription.auto_renew.is_(True),
                        Subscription.grace_period_end.is_(None),
                        Subscription.next_billing >= now,
                        Subscription.next_billing <= window_end,
                        Account.credit_balance < Plan.monthly_price,
                    )
                )
                .order_by(Subscription.next_billing)
            )
            rows = result.all()

        return [
            LowCreditSubscription(
                subscription_id=subscription.id,
                account_id=account.id,
                email=account.email,
                plan_name=plan.name,
                next_billing=subscription.next_billing,
                monthly_price=plan.monthly_price,
                balance=account.credit_balance,
                shortfall=plan.monthly_price - account.credit_balance,
            )
            for subscription, account, plan in rows
        ]

    async def get_subscriptions_in_grace_period(self) -> list[dict[str, Any]]:
        """Subscriptions in grace with the owner's email, soonest expiry first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Subscription, Account.email, Plan.name)
                .join(Account, Account.id == Subscription.account_id)
                .join(Plan, Plan.id == Subscription.plan_id)
                .where(
                    and_(
                        Subscription.status == SubscriptionStatus.ACTIVE,
                        Subscription.grace_period_end.is_not(None),
                    )
                )
                .order_by(Subscription.grace_period_end)
            )
            rows = result.all()

        return [
            {"subscription": SubscriptionRead.model_validate(subscription), "email": email, "plan_name": plan_name}
            for subscription, email, plan_name in rows
        ]

    async def get_billing_stats(self, now: Optional[datetime] = None) -> BillingStats:
        """Counts describing the renewal pipeline; also refreshes the Prometheus gauges."""
        now = now or utcnow()
        day_ago = now - timedelta(days=1)
        day_ahead = now + timedelta(days=1)
        active = Subscription.status == SubscriptionStatus.ACTIVE

        async with self.session_factory() as db:

            async def count(*conditions) -> int:
                result = await db.execute(select(func.count(Subscription.id)).where(and_(*conditions)))
                return result.scalar_one()

            active_count = await count(active)
            auto_renewing = await count(active, Subscription.auto_renew.is_(True))
            in_grace = await count(active, Subscription.grace_period_end.is_not(None))
            due_soon = await count(
                active,
                Subscription.auto_renew.is_(True),
                Subscription.grace_period_end.is_(None),
                Subscription.next_billing <= day_ahead,
            )

            expired_result = await db.execute(
                select(func.count(SubscriptionHistory.id)).where(
                    and_(
                        SubscriptionHistory.event_type == "status_change",
                        SubscriptionHistory.new_value == SubscriptionStatus.EXPIRED.value,
                        SubscriptionHistory.created_at >= day_ago,
                    )
                )
            )
            renewals_result = await db.execute(
                select(func.count(LedgerEntry.id), func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                    and_(
                        LedgerEntry.type == LedgerEntryType.SUBSCRIPTION,
                        LedgerEntry.status == LedgerEntryStatus.COMPLETED,
                        LedgerEntry.idempotency_key.like("renewal:%"),
                        LedgerEntry.created_at >= day_ago,
                    )
                )
            )
            mrc_result = await db.execute(
                select(func.coalesce(func.sum(Subscription.monthly_price), 0)).where(
                    and_(active, Subscription.auto_renew.is_(True))
                )
            )

            renewals_count, renewal_revenue = renewals_result.one()
            stats = BillingStats(
                generated_at=now,
                active_subscriptions=active_count,
                auto_renewing_subscriptions=auto_renewing,
                subscriptions_in_grace=in_grace,
                expired_last_24h=expired_result.scalar_one(),
                renewals_last_24h=renewals_count,
                renewal_revenue_last_24h=renewal_revenue,
                renewals_due_next_24h=due_soon,
                monthly_recurring_credit=mrc_result.scalar_one(),
            )

        subscriptions_in_grace_gauge.set(stats.subscriptions_in_grace)
        subscriptions_auto_renewing_gauge.set(stats.auto_renewing_subscriptions)
        return stats
