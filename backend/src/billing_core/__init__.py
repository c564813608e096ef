"""Billing core: prepaid credit ledger, plan quotas, coupons and subscription renewals."""

__version__ = "0.1.0"
