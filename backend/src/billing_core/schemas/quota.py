"""Pydantic schemas for plan quota operations."""
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class QuotaAvailability(BaseModel):
    """Read-only view of a plan's remaining capacity."""

    plan_id: UUID
    available: bool
    requested: int
    total_quota: int
    used_quota: int
    remaining: int


class QuotaAllocation(BaseModel):
    plan_id: UUID
    allocated: int
    used_quota: int
    remaining: int


class QuotaRelease(BaseModel):
    """Result of a release; released can be lower than requested, including 0."""

    plan_id: UUID
    requested: int
    released: int
    used_quota: int
    remaining: int
    message: str | None = None


class QuotaUpdate(BaseModel):
    """Admin request to change a plan's total quota."""

    plan_id: UUID
    total_quota: int = Field(..., ge=0)


class PlanQuota(BaseModel):
    """Quota state of one plan."""

    plan_id: UUID = Field(validation_alias="id")
    name: str
    service_id: UUID
    total_quota: int
    used_quota: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)

    @property
    def remaining(self) -> int:
        return self.total_quota - self.used_quota

    @property
    def usage_percent(self) -> float:
        return round(self.used_quota / self.total_quota * 100, 2) if self.total_quota else 0.0


class QuotaOverview(BaseModel):
    plans: list[PlanQuota]
    total_quota: int
    used_quota: int
    remaining: int
    usage_percent: float


class QuotaStatistics(BaseModel):
    """Aggregate capacity health across all active plans."""

    total_plans: int
    total_quota: int
    used_quota: int
    remaining: int
    usage_percent: float
    near_capacity_plans: list[PlanQuota]
    full_plans: list[PlanQuota]
    health: str  # healthy, warning, critical
