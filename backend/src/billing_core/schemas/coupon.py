"""Pydantic schemas for coupons and redemptions."""
import enum
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from billing_core.models.coupon import CouponStatus, CouponType, DiscountType
from billing_core.schemas.results import SideEffectResult


class IneligibleReason(str, enum.Enum):
    """Why a coupon cannot be used, in the order the checks run."""

    NOT_FOUND = "not_found"
    NOT_ACTIVE = "not_active"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    ALREADY_REDEEMED = "already_redeemed"
    WRONG_SERVICE = "wrong_service"
    MISSING_CONTEXT = "missing_context"


class RedemptionContext(BaseModel):
    """What the coupon is being applied to."""

    service_id: UUID | None = None
    plan_id: UUID | None = None
    subscription_id: UUID | None = None
    reference_amount: int | None = Field(default=None, ge=0, description="Price a discount is computed from")


class CouponCreate(BaseModel):
    """Schema for creating a coupon."""

    code: str = Field(..., min_length=3, max_length=64)
    name: str = Field(..., min_length=1)
    description: str | None = None
    type: CouponType
    discount_type: DiscountType | None = None
    discount_percent: int | None = Field(default=None, ge=1, le=100)
    credit_amount: int | None = Field(default=None, gt=0)
    max_uses: int = Field(default=1, ge=1)
    max_uses_per_user: int = Field(default=1, ge=1, le=1, description="Redemptions are unique per account")
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    service_id: UUID | None = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def check_type_fields(self) -> "CouponCreate":
        if self.type in (CouponType.CREDIT_TOPUP, CouponType.WELCOME_BONUS) and not self.credit_amount:
            raise ValueError(f"{self.type.value} coupons need a credit_amount")
        if self.type == CouponType.SUBSCRIPTION_DISCOUNT:
            if self.discount_type is None:
                raise ValueError("subscription discounts need a discount_type")
            if self.discount_type == DiscountType.PERCENTAGE and not self.discount_percent:
                raise ValueError("percentage discounts need a discount_percent")
            if self.discount_type == DiscountType.FIXED_AMOUNT and not self.credit_amount:
                raise ValueError("fixed discounts need a credit_amount")
        if self.type == CouponType.FREE_SERVICE and self.service_id is None:
            raise ValueError("free service coupons must be scoped to a service")
        if self.valid_from and self.valid_until and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self


class CouponRead(BaseModel):
    """Schema for returning coupon data."""

    id: UUID
    code: str
    name: str
    type: CouponType
    status: CouponStatus
    discount_type: DiscountType | None
    discount_percent: int | None
    credit_amount: int | None
    max_uses: int
    used_count: int
    max_uses_per_user: int
    valid_from: datetime
    valid_until: datetime | None
    service_id: UUID | None

    model_config = ConfigDict(from_attributes=True)


class CouponValidationResult(BaseModel):
    """Outcome of validating a code for an account."""

    valid: bool
    code: str
    reason: IneligibleReason | None = None
    message: str | None = None
    coupon: CouponRead | None = None
    potential_value: int | None = None


class RedemptionResult(BaseModel):
    """Outcome of a successful redemption."""

    success: bool = True
    redemption_id: UUID
    coupon_id: UUID
    coupon_code: str
    coupon_type: CouponType
    credit_amount: int | None = None
    discount_amount: int | None = None
    ledger_entry_id: UUID | None = None
    balance_after: int | None = None
    final_amount: int | None = Field(default=None, description="Price left to pay after a discount")


class SubscriptionDiscount(BaseModel):
    """Discount a coupon would apply to a subscription price."""

    original_amount: int
    discount_amount: int
    final_amount: int


class RedemptionRead(BaseModel):
    id: UUID
    coupon_id: UUID
    account_id: UUID
    redemption_type: CouponType
    credit_amount: int | None
    discount_amount: int | None
    subscription_id: UUID | None
    redeemed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WelcomeBonusResult(BaseModel):
    """Per-coupon results of applying welcome bonuses to a new account."""

    account_id: UUID
    applied: list[RedemptionResult] = Field(default_factory=list)
    failures: list[SideEffectResult] = Field(default_factory=list)

    @property
    def total_credit(self) -> int:
        return sum(r.credit_amount or 0 for r in self.applied)


class WelcomeBonusStats(BaseModel):
    active_coupons: int
    total_redemptions: int
    total_credit_granted: int

