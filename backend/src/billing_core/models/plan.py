"""Plan model with a finite quota of concurrent subscriptions."""
import enum

from sqlalchemy import Boolean, CheckConstraint, Column, Enum as SQLEnum, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import relationship

from billing_core.models.base import Base


class PlanType(enum.Enum):
    """Plan tier."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


# Upgrades may only move to a higher rank
PLAN_TIER_RANK = {
    PlanType.FREE: 0,
    PlanType.BASIC: 1,
    PlanType.PRO: 2,
    PlanType.PREMIUM: 3,
    PlanType.ENTERPRISE: 4,
}


class Plan(Base):
    """
    Pricing plan of a service.

    total_quota caps the number of subscriptions that may hold the plan at
    the same time; used_quota counts the ones currently holding it.
    """

    __tablename__ = "plans"
    __table_args__ = (
        CheckConstraint("used_quota >= 0", name="ck_plans_used_quota_non_negative"),
        CheckConstraint("used_quota <= total_quota", name="ck_plans_used_quota_within_total"),
        CheckConstraint("monthly_price >= 0", name="ck_plans_monthly_price_non_negative"),
    )

    service_id = Column(Uuid, ForeignKey("services.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    plan_type = Column(SQLEnum(PlanType), nullable=False, default=PlanType.BASIC)
    monthly_price = Column(Integer, nullable=False)
    total_quota = Column(Integer, nullable=False)
    used_quota = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    # Relationships
    service = relationship("Service", back_populates="plans")
    subscriptions = relationship("Subscription", foreign_keys="Subscription.plan_id", back_populates="plan")

    @property
    def available_quota(self) -> int:
        """Slots left on this plan."""
        return self.total_quota - self.used_quota

    def __repr__(self) -> str:
        """String representation."""
        return f"<Plan(id={self.id}, name={self.name}, used={self.used_quota}/{self.total_quota})>"
