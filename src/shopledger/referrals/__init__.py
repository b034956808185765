"""Referral tier engine."""

from shopledger.referrals.tiers import ReferralTierEngine, TierEvaluation

__all__ = ["ReferralTierEngine", "TierEvaluation"]
