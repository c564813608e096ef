"""Pydantic schemas for ledger entries and their typed metadata."""
import enum
from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from billing_core.models.ledger import LedgerEntryStatus, LedgerEntryType


class _EntryMetadata(BaseModel):
    """Fields shared by every metadata variant."""

    extra: dict[str, Any] = Field(default_factory=dict, description="Gateway or caller specific keys")


class TopUpMetadata(_EntryMetadata):
    type: Literal["top_up"] = "top_up"
    payment_method: str | None = None
    payment_reference: str | None = None
    gateway_status: str | None = None


class SubscriptionChargeMetadata(_EntryMetadata):
    type: Literal["subscription"] = "subscription"
    subscription_id: UUID
    plan_id: UUID
    billing_cycle: str | None = Field(default=None, description="Cycle being paid, e.g. 2025-03-01")
    auto_renewal: bool = False
    coupon_code: str | None = None
    original_amount: int | None = None
    discount_amount: int | None = None


class UpgradeMetadata(_EntryMetadata):
    type: Literal["upgrade"] = "upgrade"
    subscription_id: UUID
    from_plan_id: UUID
    to_plan_id: UUID
    days_remaining: int
    days_in_month: int


class RefundMetadata(_EntryMetadata):
    type: Literal["refund"] = "refund"
    subscription_id: UUID | None = None
    reason: str | None = None
    days_remaining: int | None = None


class AdminAdjustmentMetadata(_EntryMetadata):
    type: Literal["admin_adjustment"] = "admin_adjustment"
    admin_id: str | None = None
    reason: str


class CouponRedemptionMetadata(_EntryMetadata):
    type: Literal["coupon_redemption"] = "coupon_redemption"
    coupon_id: UUID
    coupon_code: str
    coupon_type: str


LedgerMetadata = Annotated[
    Union[
        TopUpMetadata,
        SubscriptionChargeMetadata,
        UpgradeMetadata,
        RefundMetadata,
        AdminAdjustmentMetadata,
        CouponRedemptionMetadata,
    ],
    Field(discriminator="type"),
]

ledger_metadata_adapter = TypeAdapter(LedgerMetadata)


def entry_type_for(
    metadata: BaseModel | None, default: LedgerEntryType = LedgerEntryType.TOP_UP
) -> LedgerEntryType:
    """Ledger entry type implied by a metadata object."""
    if metadata is None:
        return default
    return LedgerEntryType(metadata.type)


def parse_metadata(raw: dict[str, Any]) -> BaseModel:
    """Load stored metadata back into its typed model."""
    return ledger_metadata_adapter.validate_python(raw)


class LedgerEntryRead(BaseModel):
    """Schema for returning ledger entry data."""

    id: UUID
    account_id: UUID
    type: LedgerEntryType
    status: LedgerEntryStatus
    amount: int
    balance_before: int
    balance_after: int
    description: str
    extra_metadata: dict[str, Any] = Field(serialization_alias="metadata")
    sequence: int | None
    subscription_id: UUID | None
    payment_reference: str | None
    created_at: datetime
    completed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class LedgerHistory(BaseModel):
    """Schema for a paginated transaction history."""

    items: list[LedgerEntryRead]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size else 0


class CreditInfo(BaseModel):
    """Balance summary of an account."""

    account_id: UUID
    balance: int
    total_top_up: int
    total_spent: int
    spent_this_month: int
    recent_entries: list[LedgerEntryRead]


class TopUpOutcome(str, enum.Enum):
    """Final result of a gateway top-up."""

    SETTLED = "settled"
    FAILED = "failed"

    @classmethod
    def from_gateway_status(cls, status: str) -> "TopUpOutcome | None":
        """
        Map a gateway transaction status to an outcome.

        Returns None for statuses that are not final yet (e.g. pending).
        """
        status = status.lower()
        if status in ("settlement", "capture", "settled", "success"):
            return cls.SETTLED
        if status in ("cancel", "deny", "expire", "failure", "failed"):
            return cls.FAILED
        return None


class TopUpStatus(BaseModel):
    """Status of a gateway top-up as seen by the account owner."""

    entry_id: UUID
    account_id: UUID
    status: LedgerEntryStatus
    amount: int
    payment_reference: str | None
    created_at: datetime
    completed_at: datetime | None


class CreditCheck(BaseModel):
    """Whether a balance covers an amount."""

    account_id: UUID
    sufficient: bool
    balance: int
    required: int
    shortfall: int
