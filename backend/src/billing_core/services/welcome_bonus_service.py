"""Best-effort welcome bonus application for new accounts."""
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.database import AsyncSessionLocal
from billing_core.models.coupon import Coupon, CouponStatus, CouponType
from billing_core.schemas.coupon import WelcomeBonusResult
from billing_core.schemas.results import SideEffectResult
from billing_core.services.coupon_service import CouponService
from billing_core.unit_of_work import run_in_transaction
from billing_core.utils.dates import utcnow

logger = structlog.get_logger(__name__)


class WelcomeBonusService:
    """
    Applies every eligible WELCOME_BONUS coupon to a new account.

    Each coupon is redeemed in its own transaction so one failing coupon
    does not undo the others. Failures are reported, never raised.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or AsyncSessionLocal

    async def eligible_coupon_codes(self) -> list[str]:
        """Codes of ACTIVE, started, unexpired, not exhausted welcome bonuses, oldest first."""
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Coupon.code)
                .where(
                    and_(
                        Coupon.type == CouponType.WELCOME_BONUS,
                        Coupon.status == CouponStatus.ACTIVE,
                        Coupon.valid_from <= now,
                        or_(Coupon.valid_until.is_(None), Coupon.valid_until > now),
                        Coupon.used_count < Coupon.max_uses,
                    )
                )
                .order_by(Coupon.created_at.asc(), Coupon.code.asc())
            )
            return list(result.scalars().all())

    async def apply_welcome_bonuses(self, account_id: UUID) -> WelcomeBonusResult:
        """
        Redeem all eligible welcome bonuses for an account.

        Args:
            account_id: Newly created account

        Returns:
            Applied redemptions and per-coupon failures
        """
        outcome = WelcomeBonusResult(account_id=account_id)

        try:
            codes = await self.eligible_coupon_codes()
        except Exception as e:
            logger.exception("welcome_bonus_lookup_failed", account_id=str(account_id), exc_info=e)
            outcome.failures.append(SideEffectResult.failure("welcome_bonus_lookup", e))
            return outcome

        for code in codes:
            try:
                redemption = await run_in_transaction(
                    lambda db, code=code: CouponService(db).redeem(code, account_id),
                    session_factory=self.session_factory,
                    operation="welcome_bonus",
                )
                outcome.applied.append(redemption)
            except Exception as e:
                logger.warning(
                    "welcome_bonus_failed",
                    account_id=str(account_id),
                    code=code,
                    error=str(e),
                )
                outcome.failures.append(SideEffectResult.failure(f"welcome_bonus:{code}", e))

        logger.info(
            "welcome_bonuses_applied",
            account_id=str(account_id),
            applied=len(outcome.applied),
            failed=len(outcome.failures),
            total_credit=outcome.total_credit,
        )
        return outcome
