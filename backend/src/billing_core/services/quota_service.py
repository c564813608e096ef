"""Quota manager for plan capacity."""
from typing import Iterable
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.exceptions import (
    InvalidAmountError,
    InvalidQuotaBoundError,
    PlanNotFoundError,
    QuotaExceededError,
)
from billing_core.metrics import quota_allocations_total, quota_released_total
from billing_core.models.plan import Plan
from billing_core.models.subscription import Subscription
from billing_core.schemas.quota import (
    PlanQuota,
    QuotaAllocation,
    QuotaAvailability,
    QuotaOverview,
    QuotaRelease,
    QuotaStatistics,
    QuotaUpdate,
)

logger = structlog.get_logger(__name__)

NEAR_CAPACITY_PERCENT = 80


def _usage_percent(used: int, total: int) -> float:
    return round(used / total * 100, 2) if total else 0.0


class QuotaManager:
    """Service for allocating and releasing plan quota under a plan row lock."""

    def __init__(self, db: AsyncSession):
        """Initialize quota manager with database session."""
        self.db = db

    async def _get_plan(self, plan_id: UUID, lock: bool = False) -> Plan:
        query = select(Plan).where(Plan.id == plan_id).execution_options(populate_existing=True)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        plan = result.scalar_one_or_none()
        if not plan:
            raise PlanNotFoundError(plan_id)
        return plan

    async def check_availability(self, plan_id: UUID, requested: int = 1) -> QuotaAvailability:
        """
        Report whether a plan can take requested more subscriptions.

        Read-only: the answer may be stale by the time allocate runs.
        """
        plan = await self._get_plan(plan_id)
        remaining = plan.total_quota - plan.used_quota
        return QuotaAvailability(
            plan_id=plan.id,
            available=remaining >= requested,
            requested=requested,
            total_quota=plan.total_quota,
            used_quota=plan.used_quota,
            remaining=remaining,
        )

    async def allocate(self, plan_id: UUID, amount: int = 1) -> QuotaAllocation:
        """
        Take amount slots of a plan.

        Raises:
            PlanNotFoundError: If the plan does not exist
            QuotaExceededError: If used + amount would exceed total
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(amount)

        plan = await self._get_plan(plan_id, lock=True)
        remaining = plan.total_quota - plan.used_quota
        if amount > remaining:
            quota_allocations_total.labels(result="rejected").inc()
            logger.info("quota_allocation_rejected", plan_id=str(plan_id), requested=amount, remaining=remaining)
            raise QuotaExceededError(plan_id, requested=amount, remaining=remaining)

        plan.used_quota += amount
        await self.db.flush()

        quota_allocations_total.labels(result="allocated").inc()
        logger.info("quota_allocated", plan_id=str(plan_id), amount=amount, used_quota=plan.used_quota)
        return QuotaAllocation(
            plan_id=plan.id,
            allocated=amount,
            used_quota=plan.used_quota,
            remaining=plan.total_quota - plan.used_quota,
        )

    async def release(self, plan_id: UUID, amount: int = 1) -> QuotaRelease:
        """
        Give back up to amount slots.

        The release is clamped so used_quota never goes below zero; the
        result says how much was actually released.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(amount)

        plan = await self._get_plan(plan_id, lock=True)
        released = min(amount, plan.used_quota)
        message = None
        if released == 0:
            message = "No quota to release"
            logger.warning("quota_release_noop", plan_id=str(plan_id), requested=amount)
        else:
            plan.used_quota -= released
            await self.db.flush()
            quota_released_total.inc(released)
            logger.info("quota_released", plan_id=str(plan_id), released=released, used_quota=plan.used_quota)

        return QuotaRelease(
            plan_id=plan.id,
            requested=amount,
            released=released,
            used_quota=plan.used_quota,
            remaining=plan.total_quota - plan.used_quota,
            message=message,
        )

    async def update_total_quota(self, plan_id: UUID, total_quota: int) -> Plan:
        """
        Change a plan's capacity.

        Raises:
            InvalidQuotaBoundError: If total_quota is below the quota in use
        """
        plan = await self._get_plan(plan_id, lock=True)
        if total_quota < plan.used_quota:
            raise InvalidQuotaBoundError(
                [{"plan_id": str(plan.id), "total_quota": total_quota, "used_quota": plan.used_quota}]
            )

        old_total = plan.total_quota
        plan.total_quota = total_quota
        await self.db.flush()

        logger.info("plan_quota_updated", plan_id=str(plan_id), old_total=old_total, new_total=total_quota)
        return plan

    async def count_quota_holders(self, plan_id: UUID) -> int:
        """Number of subscriptions currently holding a slot of the plan."""
        result = await self.db.execute(
            select(func.count(Subscription.id)).where(
                Subscription.plan_id == plan_id,
                Subscription.holds_quota.is_(True),
            )
        )
        return result.scalar_one()

    async def bulk_update_quotas(self, updates: Iterable[QuotaUpdate], reconcile: bool = False) -> list[Plan]:
        """
        Update several plans at once, all or nothing.

        Every update is checked before any is written, and all violations
        are reported together.

        Args:
            updates: New totals per plan
            reconcile: First reset each plan's used_quota to the number of
                subscriptions holding a slot

        Returns:
            Updated plans, in request order

        Raises:
            PlanNotFoundError: If any plan does not exist
            InvalidQuotaBoundError: If any total is below the quota in use
        """
        updates = list(updates)
        # Lock plans in id order
        plans: dict[UUID, Plan] = {}
        for plan_id in sorted({u.plan_id for u in updates}, key=str):
            plans[plan_id] = await self._get_plan(plan_id, lock=True)

        used_by_plan: dict[UUID, int] = {}
        for plan_id, plan in plans.items():
            used_by_plan[plan_id] = await self.count_quota_holders(plan_id) if reconcile else plan.used_quota

        violations = [
            {"plan_id": str(u.plan_id), "total_quota": u.total_quota, "used_quota": used_by_plan[u.plan_id]}
            for u in updates
            if u.total_quota < used_by_plan[u.plan_id]
        ]
        if violations:
            raise InvalidQuotaBoundError(violations)

        for u in updates:
            plan = plans[u.plan_id]
            if reconcile and plan.used_quota != used_by_plan[u.plan_id]:
                logger.warning(
                    "plan_quota_reconciled",
                    plan_id=str(plan.id),
                    stored=plan.used_quota,
                    actual=used_by_plan[u.plan_id],
                )
            plan.total_quota = u.total_quota
            plan.used_quota = used_by_plan[u.plan_id]

        await self.db.flush()
        logger.info("plan_quotas_bulk_updated", count=len(updates), reconcile=reconcile)
        return [plans[u.plan_id] for u in updates]

    async def _active_plans(self, service_id: UUID | None = None) -> list[Plan]:
        query = select(Plan).where(Plan.is_active.is_(True))
        if service_id is not None:
            query = query.where(Plan.service_id == service_id)
        result = await self.db.execute(query.order_by(Plan.name))
        return list(result.scalars().all())

    async def get_quota_overview(self, service_id: UUID | None = None) -> QuotaOverview:
        """Per-plan quota of active plans, optionally for one service."""
        plans = await self._active_plans(service_id)
        total = sum(p.total_quota for p in plans)
        used = sum(p.used_quota for p in plans)
        return QuotaOverview(
            plans=[PlanQuota.model_validate(p) for p in plans],
            total_quota=total,
            used_quota=used,
            remaining=total - used,
            usage_percent=_usage_percent(used, total),
        )

    async def get_quota_statistics(self) -> QuotaStatistics:
        """
        Capacity health across active plans.

        A plan is near capacity at 80% usage. Health is critical when any
        plan is full, warning when any is near capacity.
        """
        plans = await self._active_plans()
        total = sum(p.total_quota for p in plans)
        used = sum(p.used_quota for p in plans)

        full = [p for p in plans if p.total_quota and p.used_quota >= p.total_quota]
        near = [
            p for p in plans
            if p not in full and _usage_percent(p.used_quota, p.total_quota) >= NEAR_CAPACITY_PERCENT
        ]

        if full:
            health = "critical"
        elif near:
            health = "warning"
        else:
            health = "healthy"

        return QuotaStatistics(
            total_plans=len(plans),
            total_quota=total,
            used_quota=used,
            remaining=total - used,
            usage_percent=_usage_percent(used, total),
            near_capacity_plans=[PlanQuota.model_validate(p) for p in near],
            full_plans=[PlanQuota.model_validate(p) for p in full],
            health=health,
        )
