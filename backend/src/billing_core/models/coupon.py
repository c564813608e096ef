"""Promotional coupon and redemption models."""
import enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from billing_core.models.base import Base, JSONType
from billing_core.utils.dates import utcnow


class CouponType(enum.Enum):
    """What a coupon grants."""

    CREDIT_TOPUP = "credit_topup"
    SUBSCRIPTION_DISCOUNT = "subscription_discount"
    FREE_SERVICE = "free_service"
    WELCOME_BONUS = "welcome_bonus"


class CouponStatus(enum.Enum):
    """Coupon availability."""

    ACTIVE = "active"
    EXPIRED = "expired"
    DISABLED = "disabled"
    USED_UP = "used_up"


class DiscountType(enum.Enum):
    """How a subscription discount is computed."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class Coupon(Base):
    """
    Promotional coupon.

    used_count never exceeds max_uses; the redemption that reaches the cap
    flips the status to USED_UP.
    """

    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint("used_count >= 0", name="ck_coupons_used_count_non_negative"),
        CheckConstraint("used_count <= max_uses", name="ck_coupons_used_count_within_max"),
    )

    code = Column(String, nullable=False, unique=True, index=True)  # Stored upper-case
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    type = Column(SQLEnum(CouponType), nullable=False, index=True)
    status = Column(SQLEnum(CouponStatus), nullable=False, default=CouponStatus.ACTIVE, index=True)
    discount_type = Column(SQLEnum(DiscountType), nullable=True)
    discount_percent = Column(Integer, nullable=True)
    credit_amount = Column(Integer, nullable=True)
    max_uses = Column(Integer, nullable=False, default=1)
    used_count = Column(Integer, nullable=False, default=0)
    max_uses_per_user = Column(Integer, nullable=False, default=1)
    valid_from = Column(DateTime, nullable=False, default=utcnow)
    valid_until = Column(DateTime, nullable=True)  # NULL means no expiry
    service_id = Column(Uuid, ForeignKey("services.id"), nullable=True, index=True)

    # Relationships
    redemptions = relationship("CouponRedemption", back_populates="coupon")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Coupon(code={self.code}, type={self.type.value}, used={self.used_count}/{self.max_uses})>"


class CouponRedemption(Base):
    """One account's use of a coupon. At most one per coupon and account."""

    __tablename__ = "coupon_redemptions"
    __table_args__ = (
        UniqueConstraint("coupon_id", "account_id", name="uq_coupon_redemptions_coupon_account"),
    )

    coupon_id = Column(Uuid, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    redemption_type = Column(SQLEnum(CouponType), nullable=False)
    credit_amount = Column(Integer, nullable=True)
    discount_amount = Column(Integer, nullable=True)
    ledger_entry_id = Column(Uuid, ForeignKey("ledger_entries.id"), nullable=True)
    subscription_id = Column(Uuid, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)
    extra_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    redeemed_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    coupon = relationship("Coupon", back_populates="redemptions")

    def __repr__(self) -> str:
        """String representation."""
        return f"<CouponRedemption(coupon_id={self.coupon_id}, account_id={self.account_id})>"
