"""Domain errors raised by the billing core.

Every error carries a stable machine-readable code, a human message and a
context dict for structured logging:

    raise InsufficientCreditError(required=50000, available=40000)
"""
from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base class for every error the billing core raises on purpose."""

    code = "BILLING_ERROR"

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for job results and logs."""
        return {"code": self.code, "message": self.message, "context": self.context}


class NotFoundError(BillingError):
    """Referenced entity does not exist."""

    code = "NOT_FOUND"
    entity = "Entity"

    def __init__(self, entity_id: Any, message: str | None = None) -> None:
        self.entity_id = entity_id
        super().__init__(
            message or f"{self.entity} {entity_id} not found",
            {"entity": self.entity, "id": str(entity_id)},
        )


class AccountNotFoundError(NotFoundError):
    code = "ACCOUNT_NOT_FOUND"
    entity = "Account"


class PlanNotFoundError(NotFoundError):
    code = "PLAN_NOT_FOUND"
    entity = "Plan"


class SubscriptionNotFoundError(NotFoundError):
    code = "SUBSCRIPTION_NOT_FOUND"
    entity = "Subscription"


class CouponNotFoundError(NotFoundError):
    code = "COUPON_NOT_FOUND"
    entity = "Coupon"


class LedgerEntryNotFoundError(NotFoundError):
    code = "LEDGER_ENTRY_NOT_FOUND"
    entity = "Ledger entry"


class RedemptionNotFoundError(NotFoundError):
    code = "REDEMPTION_NOT_FOUND"
    entity = "Coupon redemption"


class InvalidAmountError(BillingError, ValueError):
    """Amount is not a positive integer."""

    code = "INVALID_AMOUNT"

    def __init__(self, amount: Any) -> None:
        super().__init__(f"Amount must be a positive integer, got {amount!r}", {"amount": amount})


class InsufficientCreditError(BillingError):
    """Balance does not cover a debit."""

    code = "INSUFFICIENT_CREDIT"

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credit: required {required}, available {available}",
            {"required": required, "available": available, "shortfall": required - available},
        )


class QuotaExceededError(BillingError):
    """Plan has no free slot left."""

    code = "QUOTA_EXCEEDED"

    def __init__(self, plan_id: Any, requested: int, remaining: int) -> None:
        self.plan_id = plan_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Insufficient quota: requested {requested}, remaining {remaining}",
            {"plan_id": str(plan_id), "requested": requested, "remaining": remaining},
        )


class InvalidQuotaBoundError(BillingError, ValueError):
    """A new total quota would fall below the quota in use."""

    code = "INVALID_QUOTA_BOUND"

    def __init__(self, violations: list[dict[str, Any]]) -> None:
        self.violations = violations
        if len(violations) == 1:
            v = violations[0]
            message = (
                f"Total quota {v['total_quota']} is below used quota {v['used_quota']} "
                f"for plan {v['plan_id']}"
            )
        else:
            message = f"{len(violations)} quota updates fall below used quota"
        super().__init__(message, {"violations": violations})


class CouponNotEligibleError(BillingError):
    """Coupon cannot be used for this account or context."""

    code = "COUPON_NOT_ELIGIBLE"

    def __init__(self, reason: str, message: str, context: dict[str, Any] | None = None) -> None:
        self.reason = reason
        super().__init__(message, {"reason": reason, **(context or {})})


class AlreadyRedeemedError(CouponNotEligibleError):
    """Coupon is exhausted, either for this account or globally."""

    code = "COUPON_ALREADY_REDEEMED"


class InvalidGracePeriodError(BillingError, ValueError):
    """Grace period length outside the configured bounds."""

    code = "INVALID_GRACE_PERIOD"

    def __init__(self, days: int, min_days: int, max_days: int) -> None:
        super().__init__(
            f"Grace period must be between {min_days} and {max_days} days, got {days}",
            {"days": days, "min_days": min_days, "max_days": max_days},
        )


class InvalidStateError(BillingError):
    """Operation is not allowed in the entity's current state."""

    code = "INVALID_STATE"


class UnknownJobError(BillingError):
    """Scheduler was asked to run a job it does not know."""

    code = "UNKNOWN_JOB"

    def __init__(self, name: str, known: list[str]) -> None:
        super().__init__(f"Unknown job {name!r}; known jobs: {', '.join(known)}", {"job": name, "known": known})


class ExternalDependencyUnavailableError(BillingError):
    """A collaborator outside the billing core could not be reached."""

    code = "EXTERNAL_DEPENDENCY_UNAVAILABLE"

    def __init__(self, dependency: str, message: str, context: dict[str, Any] | None = None) -> None:
        self.dependency = dependency
        super().__init__(message, {"dependency": dependency, **(context or {})})


class RetryableTransactionError(BillingError):
    """A transaction kept failing on transient database errors."""

    code = "RETRYABLE_TRANSACTION"

    def __init__(self, attempts: int, message: str) -> None:
        self.attempts = attempts
        super().__init__(f"Transaction failed after {attempts} attempts: {message}", {"attempts": attempts})
