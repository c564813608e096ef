"""Result objects for best-effort side effects and batch operations."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from billing_core.exceptions import BillingError


class SideEffectResult(BaseModel):
    """
    Outcome of an effect that must never fail its caller.

    Welcome bonuses, notifications and instance termination report through
    this instead of raising.
    """

    ok: bool
    operation: str
    error: str | None = None
    error_code: str | None = None
    value: Any = None

    @classmethod
    def success(cls, operation: str, value: Any = None) -> "SideEffectResult":
        return cls(ok=True, operation=operation, value=value)

    @classmethod
    def failure(cls, operation: str, exc: BaseException) -> "SideEffectResult":
        code = exc.code if isinstance(exc, BillingError) else type(exc).__name__
        return cls(ok=False, operation=operation, error=str(exc), error_code=code)


class JobError(BaseModel):
    """One item that failed inside a job run."""

    item_id: str | None = None
    operation: str
    code: str
    message: str


class JobResult(BaseModel):
    """Summary of one scheduler job run."""

    job: str
    processed: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[JobError] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    finished_at: datetime | None = None

    def record_error(self, operation: str, exc: BaseException, item_id: Any = None) -> None:
        """Append a per-item error without counting it as a failed item."""
        code = exc.code if isinstance(exc, BillingError) else type(exc).__name__
        self.errors.append(
            JobError(
                item_id=str(item_id) if item_id is not None else None,
                operation=operation,
                code=code,
                message=str(exc),
            )
        )

    def record_side_effect(self, result: SideEffectResult, item_id: Any = None) -> None:
        """Append a failed side effect as an error entry."""
        if result.ok:
            return
        self.errors.append(
            JobError(
                item_id=str(item_id) if item_id is not None else None,
                operation=result.operation,
                code=result.error_code or "UNKNOWN",
                message=result.error or "",
            )
        )
