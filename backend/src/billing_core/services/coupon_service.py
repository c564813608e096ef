"""Coupon validation and redemption."""
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.exceptions import (
    AlreadyRedeemedError,
    CouponNotEligibleError,
    CouponNotFoundError,
    PlanNotFoundError,
    RedemptionNotFoundError,
)
from billing_core.metrics import coupon_redemptions_total, coupon_rejections_total
from billing_core.models.coupon import Coupon, CouponRedemption, CouponStatus, CouponType, DiscountType
from billing_core.models.plan import Plan
from billing_core.schemas.coupon import (
    CouponCreate,
    CouponRead,
    CouponValidationResult,
    IneligibleReason,
    RedemptionContext,
    RedemptionRead,
    RedemptionResult,
    SubscriptionDiscount,
    WelcomeBonusStats,
)
from billing_core.schemas.ledger import CouponRedemptionMetadata
from billing_core.services.ledger_service import CreditLedger
from billing_core.utils.dates import utcnow

logger = structlog.get_logger(__name__)

CREDIT_COUPON_TYPES = (CouponType.CREDIT_TOPUP, CouponType.WELCOME_BONUS)

# Reasons that mean "this coupon is used up for you"
EXHAUSTED_REASONS = (IneligibleReason.USAGE_LIMIT_REACHED, IneligibleReason.ALREADY_REDEEMED)


def normalize_code(code: str) -> str:
    """Coupon codes are case-insensitive and stored upper-case."""
    return code.strip().upper()


def compute_discount(coupon: Coupon, reference_amount: int) -> int:
    """
    Discount a SUBSCRIPTION_DISCOUNT coupon gives on reference_amount.

    Percentages round down; fixed amounts are capped at the reference.
    """
    if coupon.discount_type == DiscountType.PERCENTAGE:
        return reference_amount * (coupon.discount_percent or 0) // 100
    return min(coupon.credit_amount or 0, reference_amount)


class CouponService:
    """
    Service for validating and redeeming promotional coupons.

    Redemption runs inside the caller's transaction with the coupon row
    locked, so the validity check and the use happen atomically.
    """

    def __init__(self, db: AsyncSession):
        """Initialize coupon service with database session."""
        self.db = db

    async def _get_coupon(self, code: str, lock: bool = False) -> Optional[Coupon]:
        query = select(Coupon).where(Coupon.code == normalize_code(code))
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def _redemption_count(self, coupon_id: UUID, account_id: UUID) -> int:
        result = await self.db.execute(
            select(func.count(CouponRedemption.id)).where(
                and_(CouponRedemption.coupon_id == coupon_id, CouponRedemption.account_id == account_id)
            )
        )
        return result.scalar_one()

    def _check(
        self,
        coupon: Coupon,
        user_redemptions: int,
        context: RedemptionContext,
        now: datetime,
    ) -> Optional[tuple[IneligibleReason, str]]:
        """First failing eligibility rule, or None when the coupon may be used."""
        if coupon.status == CouponStatus.USED_UP:
            return IneligibleReason.USAGE_LIMIT_REACHED, "Coupon usage limit exceeded"
        if coupon.status != CouponStatus.ACTIVE:
            return IneligibleReason.NOT_ACTIVE, "Coupon is not active"
        if coupon.valid_from and now < coupon.valid_from:
            return IneligibleReason.NOT_YET_VALID, "Coupon is not yet valid"
        if coupon.valid_until and now > coupon.valid_until:
            return IneligibleReason.EXPIRED, "Coupon has expired"
        if coupon.used_count >= coupon.max_uses:
            return IneligibleReason.USAGE_LIMIT_REACHED, "Coupon usage limit exceeded"
        # One redemption row per account, whatever max_uses_per_user says
        if user_redemptions >= min(coupon.max_uses_per_user, 1):
            return IneligibleReason.ALREADY_REDEEMED, "You have already redeemed this coupon"
        if coupon.service_id and context.service_id and coupon.service_id != context.service_id:
            return IneligibleReason.WRONG_SERVICE, f"Coupon is only valid for service {coupon.service_id}"
        return None

    def _potential_value(self, coupon: Coupon, context: RedemptionContext) -> Optional[int]:
        if coupon.type in CREDIT_COUPON_TYPES:
            return coupon.credit_amount
        if coupon.type == CouponType.SUBSCRIPTION_DISCOUNT:
            if context.reference_amount is None:
                return None
            return compute_discount(coupon, context.reference_amount)
        # FREE_SERVICE: worth one period of whatever plan it is applied to
        return context.reference_amount

    def _reject(self, code: str, reason: IneligibleReason, message: str) -> CouponNotEligibleError:
        coupon_rejections_total.labels(reason=reason.value).inc()
        logger.info("coupon_rejected", code=code, reason=reason.value)
        error_cls = AlreadyRedeemedError if reason in EXHAUSTED_REASONS else CouponNotEligibleError
        return error_cls(reason.value, message, {"code": code})

    async def validate(
        self,
        code: str,
        account_id: UUID,
        context: Optional[RedemptionContext] = None,
    ) -> CouponValidationResult:
        """
        Check whether an account may use a coupon, without using it.

        Checks run in order (existence, status, validity window, global
        cap, per-account cap, service scope) and the first failure is
        returned.

        Args:
            code: Coupon code, any case
            account_id: Account that wants to redeem
            context: Service, plan and reference amount the coupon targets

        Returns:
            Validation result with potential_value when valid
        """
        code = normalize_code(code)
        context = context or RedemptionContext()

        coupon = await self._get_coupon(code)
        if not coupon:
            return CouponValidationResult(
                valid=False, code=code, reason=IneligibleReason.NOT_FOUND, message="Invalid coupon code"
            )

        user_redemptions = await self._redemption_count(coupon.id, account_id)
        failure = self._check(coupon, user_redemptions, context, utcnow())
        if failure:
            reason, message = failure
            return CouponValidationResult(
                valid=False,
                code=code,
                reason=reason,
                message=message,
                coupon=CouponRead.model_validate(coupon),
            )

        return CouponValidationResult(
            valid=True,
            code=code,
            coupon=CouponRead.model_validate(coupon),
            potential_value=self._potential_value(coupon, context),
        )

    async def redeem(
        self,
        code: str,
        account_id: UUID,
        context: Optional[RedemptionContext] = None,
    ) -> RedemptionResult:
        """
        Redeem a coupon for an account.

        Credit coupons add credit through the ledger. Subscription discounts
        and free-service coupons record the granted amount; the caller
        charges the reduced price in the same transaction.

        Args:
            code: Coupon code, any case
            account_id: Redeeming account
            context: Required reference_amount for discounts and plan_id for
                free-service coupons

        Returns:
            RedemptionResult describing the granted value

        Raises:
            CouponNotFoundError: If the code does not exist
            AlreadyRedeemedError: If the account already used the coupon or
                it reached its global cap
            CouponNotEligibleError: For any other failed rule
        """
        code = normalize_code(code)
        context = context or RedemptionContext()

        # Account before coupon, the same order subscription purchases take
        unlocked = await self._get_coupon(code)
        if unlocked and unlocked.type in CREDIT_COUPON_TYPES:
            await CreditLedger(self.db).lock_account(account_id)

        coupon = await self._get_coupon(code, lock=True)
        if not coupon:
            coupon_rejections_total.labels(reason=IneligibleReason.NOT_FOUND.value).inc()
            raise CouponNotFoundError(code, f"Invalid coupon code {code}")

        user_redemptions = await self._redemption_count(coupon.id, account_id)
        failure = self._check(coupon, user_redemptions, context, utcnow())
        if failure:
            raise self._reject(code, *failure)

        credit_amount = None
        discount_amount = None
        final_amount = None
        if coupon.type == CouponType.SUBSCRIPTION_DISCOUNT:
            if context.reference_amount is None:
                raise self._reject(
                    code, IneligibleReason.MISSING_CONTEXT, "Discount coupons need the subscription price"
                )
            discount_amount = compute_discount(coupon, context.reference_amount)
            final_amount = max(0, context.reference_amount - discount_amount)
        elif coupon.type == CouponType.FREE_SERVICE:
            discount_amount = await self._free_service_value(coupon, code, context)
            final_amount = 0
        else:
            credit_amount = coupon.credit_amount

        redemption = CouponRedemption(
            coupon_id=coupon.id,
            account_id=account_id,
            redemption_type=coupon.type,
            credit_amount=credit_amount,
            discount_amount=discount_amount,
            subscription_id=context.subscription_id,
            extra_metadata={
                "coupon_code": code,
                "service_id": str(context.service_id) if context.service_id else None,
                "plan_id": str(context.plan_id) if context.plan_id else None,
                "reference_amount": context.reference_amount,
            },
            redeemed_at=utcnow(),
        )
        self.db.add(redemption)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            # A concurrent redemption by the same account committed first
            coupon_rejections_total.labels(reason=IneligibleReason.ALREADY_REDEEMED.value).inc()
            logger.info("coupon_redemption_conflict", code=code, account_id=str(account_id))
            raise AlreadyRedeemedError(
                IneligibleReason.ALREADY_REDEEMED.value,
                "You have already redeemed this coupon",
                {"code": code},
            ) from exc

        balance_after = None
        if credit_amount:
            entry = await CreditLedger(self.db).add_credit(
                account_id,
                credit_amount,
                f"Coupon {code}: {coupon.name}",
                metadata=CouponRedemptionMetadata(coupon_id=coupon.id, coupon_code=code, coupon_type=coupon.type.value),
                count_as_top_up=False,
            )
            redemption.ledger_entry_id = entry.id
            balance_after = entry.balance_after

        coupon.used_count += 1
        if coupon.used_count >= coupon.max_uses:
            coupon.status = CouponStatus.USED_UP
        await self.db.flush()

        coupon_redemptions_total.labels(type=coupon.type.value).inc()
        logger.info(
            "coupon_redeemed",
            code=code,
            account_id=str(account_id),
            type=coupon.type.value,
            credit_amount=credit_amount,
            discount_amount=discount_amount,
            used_count=coupon.used_count,
            status=coupon.status.value,
        )

        return RedemptionResult(
            redemption_id=redemption.id,
            coupon_id=coupon.id,
            coupon_code=code,
            coupon_type=coupon.type,
            credit_amount=credit_amount,
            discount_amount=discount_amount,
            ledger_entry_id=redemption.ledger_entry_id,
            balance_after=balance_after,
            final_amount=final_amount,
        )

    async def _free_service_value(self, coupon: Coupon, code: str, context: RedemptionContext) -> int:
        if context.plan_id is None:
            raise self._reject(code, IneligibleReason.MISSING_CONTEXT, "Free service coupons need a plan")
        result = await self.db.execute(select(Plan).where(Plan.id == context.plan_id))
        plan = result.scalar_one_or_none()
        if not plan:
            raise PlanNotFoundError(context.plan_id)
        if coupon.service_id and plan.service_id != coupon.service_id:
            raise self._reject(
                code, IneligibleReason.WRONG_SERVICE, f"Coupon is only valid for service {coupon.service_id}"
            )
        return plan.monthly_price

    async def calculate_subscription_discount(
        self,
        code: str,
        account_id: UUID,
        amount: int,
        service_id: Optional[UUID] = None,
    ) -> SubscriptionDiscount:
        """
        Preview the price after applying a discount coupon.

        Raises:
            CouponNotEligibleError: If the coupon is invalid or not a
                subscription discount
        """
        result = await self.validate(
            code, account_id, RedemptionContext(service_id=service_id, reference_amount=amount)
        )
        if not result.valid:
            raise CouponNotEligibleError(result.reason.value, result.message, {"code": result.code})
        if result.coupon.type != CouponType.SUBSCRIPTION_DISCOUNT:
            raise CouponNotEligibleError(
                IneligibleReason.MISSING_CONTEXT.value,
                "Coupon is not a subscription discount",
                {"code": result.code},
            )

        discount = result.potential_value or 0
        return SubscriptionDiscount(original_amount=amount, discount_amount=discount, final_amount=max(0, amount - discount))

    async def link_redemption_to_subscription(self, redemption_id: UUID, subscription_id: UUID) -> CouponRedemption:
        """Attach the subscription a redemption paid for, once it exists."""
        result = await self.db.execute(select(CouponRedemption).where(CouponRedemption.id == redemption_id))
        redemption = result.scalar_one_or_none()
        if not redemption:
            raise RedemptionNotFoundError(redemption_id)

        redemption.subscription_id = subscription_id
        await self.db.flush()
        return redemption

    async def get_redemption_history(self, account_id: UUID, limit: int = 50) -> list[RedemptionRead]:
        """Redemptions of an account, newest first."""
        result = await self.db.execute(
            select(CouponRedemption)
            .where(CouponRedemption.account_id == account_id)
            .order_by(CouponRedemption.redeemed_at.desc())
            .limit(limit)
        )
        return [RedemptionRead.model_validate(r) for r in result.scalars().all()]

    async def create_coupon(self, coupon_data: CouponCreate) -> Coupon:
        """Create a coupon. The code is stored upper-case."""
        coupon = Coupon(
            code=coupon_data.code,
            name=coupon_data.name,
            description=coupon_data.description,
            type=coupon_data.type,
            status=CouponStatus.ACTIVE,
            discount_type=coupon_data.discount_type,
            discount_percent=coupon_data.discount_percent,
            credit_amount=coupon_data.credit_amount,
            max_uses=coupon_data.max_uses,
            max_uses_per_user=coupon_data.max_uses_per_user,
            valid_from=coupon_data.valid_from or utcnow(),
            valid_until=coupon_data.valid_until,
            service_id=coupon_data.service_id,
        )
        self.db.add(coupon)
        await self.db.flush()
        await self.db.refresh(coupon)

        logger.info("coupon_created", code=coupon.code, type=coupon.type.value, max_uses=coupon.max_uses)
        return coupon

    async def bulk_update_status(self, coupon_ids: list[UUID], status: CouponStatus) -> int:
        """
        Set the status of several coupons.

        Returns:
            Number of coupons updated
        """
        if not coupon_ids:
            return 0
        result = await self.db.execute(
            update(Coupon)
            .where(Coupon.id.in_(coupon_ids))
            .values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        logger.info("coupons_status_updated", count=result.rowcount, status=status.value)
        return result.rowcount

    async def get_welcome_bonus_stats(self) -> WelcomeBonusStats:
        """Active welcome bonus coupons and what they have granted so far."""
        active_result = await self.db.execute(
            select(func.count(Coupon.id)).where(
                and_(Coupon.type == CouponType.WELCOME_BONUS, Coupon.status == CouponStatus.ACTIVE)
            )
        )
        redemption_result = await self.db.execute(
            select(
                func.count(CouponRedemption.id),
                func.coalesce(func.sum(CouponRedemption.credit_amount), 0),
            ).where(CouponRedemption.redemption_type == CouponType.WELCOME_BONUS)
        )
        total_redemptions, total_credit = redemption_result.one()
        return WelcomeBonusStats(
            active_coupons=active_result.scalar_one(),
            total_redemptions=total_redemptions,
            total_credit_granted=total_credit,
        )
