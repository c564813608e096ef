"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter, Gauge, Histogram

# Ledger metrics
ledger_entries_total = Counter(
    "billing_ledger_entries_total",
    "Ledger entries written",
    labelnames=["type", "status"],
)

ledger_credited_amount_total = Counter(
    "billing_ledger_credited_amount_total",
    "Credit added to balances",
    labelnames=["type"],
)

ledger_debited_amount_total = Counter(
    "billing_ledger_debited_amount_total",
    "Credit removed from balances",
    labelnames=["type"],
)

insufficient_credit_total = Counter(
    "billing_insufficient_credit_total",
    "Debits rejected for insufficient balance",
)

# Quota metrics
quota_allocations_total = Counter(
    "billing_quota_allocations_total",
    "Quota allocation attempts",
    labelnames=["result"],  # allocated, rejected
)

quota_released_total = Counter(
    "billing_quota_released_total",
    "Quota slots released",
)

# Coupon metrics
coupon_redemptions_total = Counter(
    "billing_coupon_redemptions_total",
    "Successful coupon redemptions",
    labelnames=["type"],
)

coupon_rejections_total = Counter(
    "billing_coupon_rejections_total",
    "Coupon validations or redemptions that failed",
    labelnames=["reason"],
)

# Subscription lifecycle metrics
renewals_total = Counter(
    "billing_renewals_total",
    "Renewal attempts by outcome",
    labelnames=["outcome"],  # renewed, grace_started, expired, skipped, blocked
)

subscriptions_expired_total = Counter(
    "billing_subscriptions_expired_total",
    "Subscriptions moved to EXPIRED",
    labelnames=["reason"],
)

subscriptions_in_grace_gauge = Gauge(
    "billing_subscriptions_in_grace",
    "Subscriptions currently in a grace period",
)

subscriptions_auto_renewing_gauge = Gauge(
    "billing_subscriptions_auto_renewing",
    "Active subscriptions with auto-renewal enabled",
)

# Scheduler metrics
job_runs_total = Counter(
    "billing_job_runs_total",
    "Scheduler job runs",
    labelnames=["job", "status"],  # status: success, partial, error
)

job_duration_seconds = Histogram(
    "billing_job_duration_seconds",
    "Scheduler job run time",
    labelnames=["job"],
)

# Transaction retries
transaction_retries_total = Counter(
    "billing_transaction_retries_total",
    "Units of work retried after a transient database error",
    labelnames=["operation"],
)

# Account metrics
accounts_created_total = Counter(
    "billing_accounts_created_total",
    "Accounts created",
)
