"""Quota and feature-usage gate."""

from shopledger.quota.gate import ProductLimitCheck, QuotaGate, UsageCheck, current_period

__all__ = ["QuotaGate", "UsageCheck", "ProductLimitCheck", "current_period"]
