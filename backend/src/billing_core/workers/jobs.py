"""Scheduled billing jobs.

Every job takes the BillingService, returns a JobResult and can be re-run
safely: renewals skip subscriptions that are no longer due, grace
processing skips subscriptions already settled, and the notification jobs
only send messages.
"""
import enum
from typing import Awaitable, Callable

import structlog

from billing_core.config import Settings
from billing_core.integrations.notification_service import notify_safely
from billing_core.schemas.results import JobResult
from billing_core.services.billing_service import BillingService
from billing_core.utils.dates import utcnow

logger = structlog.get_logger(__name__)


class JobName(str, enum.Enum):
    """Jobs known to the billing scheduler."""

    DAILY_RENEWALS = "daily-renewals"
    GRACE_PERIOD = "grace-period"
    LOW_CREDIT_NOTIFICATIONS = "low-credit-notifications"
    GRACE_PERIOD_REMINDERS = "grace-period-reminders"
    BILLING_STATS = "billing-stats"


JobFunc = Callable[[BillingService], Awaitable[JobResult]]


async def run_daily_renewals(billing: BillingService) -> JobResult:
    """Renew every subscription that is due."""
    return await billing.process_auto_renewals()


async def run_grace_period(billing: BillingService) -> JobResult:
    """Renew or expire subscriptions whose grace period has ended."""
    return await billing.process_grace_period_subscriptions()


async def run_low_credit_notifications(billing: BillingService) -> JobResult:
    """Warn accounts whose balance will not cover a renewal in the next few days."""
    result = JobResult(job=JobName.LOW_CREDIT_NOTIFICATIONS.value, started_at=utcnow())

    if not billing.settings.low_credit_warning_enabled:
        result.details["disabled"] = True
        result.finished_at = utcnow()
        return result

    for item in await billing.get_low_credit_subscriptions():
        result.processed += 1
        sent = await notify_safely(
            "notify_low_credit",
            billing.notifier.send_low_credit_warning(
                item.email, item.balance, item.monthly_price, item.next_billing, item.plan_name
            ),
        )
        if sent.ok:
            result.successful += 1
        else:
            result.failed += 1
            result.record_side_effect(sent, item.subscription_id)

    result.details["warning_days"] = billing.settings.low_credit_warning_days
    result.finished_at = utcnow()
    logger.info("low_credit_notifications_sent", sent=result.successful, failed=result.failed)
    return result


async def run_grace_period_reminders(billing: BillingService) -> JobResult:
    """Remind every account with a subscription in grace."""
    result = JobResult(job=JobName.GRACE_PERIOD_REMINDERS.value, started_at=utcnow())

    for item in await billing.get_subscriptions_in_grace_period():
        subscription = item["subscription"]
        result.processed += 1
        sent = await notify_safely(
            "notify_grace_period_reminder",
            billing.notifier.send_grace_period_reminder(
                item["email"], item["plan_name"], subscription.monthly_price, subscription.grace_period_end
            ),
        )
        if sent.ok:
            result.successful += 1
        else:
            result.failed += 1
            result.record_side_effect(sent, subscription.id)

    result.finished_at = utcnow()
    logger.info("grace_period_reminders_sent", sent=result.successful, failed=result.failed)
    return result


async def run_billing_stats(billing: BillingService) -> JobResult:
    """Log the daily billing statistics. Nothing is persisted."""
    result = JobResult(job=JobName.BILLING_STATS.value, started_at=utcnow())

    stats = await billing.get_billing_stats()
    result.processed = 1
    result.successful = 1
    result.details = stats.model_dump(mode="json")
    result.finished_at = utcnow()

    logger.info("billing_stats", **result.details)
    return result


JOBS: dict[JobName, JobFunc] = {
    JobName.DAILY_RENEWALS: run_daily_renewals,
    JobName.GRACE_PERIOD: run_grace_period,
    JobName.LOW_CREDIT_NOTIFICATIONS: run_low_credit_notifications,
    JobName.GRACE_PERIOD_REMINDERS: run_grace_period_reminders,
    JobName.BILLING_STATS: run_billing_stats,
}


def cron_expression(job: JobName, config: Settings) -> str:
    """Configured cron expression of a job."""
    return {
        JobName.DAILY_RENEWALS: config.cron_daily_renewals,
        JobName.GRACE_PERIOD: config.cron_grace_period,
        JobName.LOW_CREDIT_NOTIFICATIONS: config.cron_low_credit_notifications,
        JobName.GRACE_PERIOD_REMINDERS: config.cron_grace_period_reminders,
        JobName.BILLING_STATS: config.cron_billing_stats,
    }[job]
