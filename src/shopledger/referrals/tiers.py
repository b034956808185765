"""Ambassador tiers earned through referrals.

Each tier is granted at most once per account. The grant row is written
before the reward, in the same unit of work, and its (account_id, tier) key
is unique, so re-running an evaluation after the count has grown further is
a no-op for tiers already held.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from shopledger.config import AppConfig, get_config
from shopledger.db.models import ReferralStatus, ReferralTier, SubscriptionEventType
from shopledger.errors import AccountNotFound
from shopledger.ledger.base import LedgerSession, LedgerStore, ReferralTierGrant
from shopledger.subscriptions.lifecycle import account_lock, apply_extension

logger = logging.getLogger(__name__)

TIER_ORDER = (ReferralTier.BRONZE, ReferralTier.SILVER, ReferralTier.GOLD)


@dataclass
class TierEvaluation:
    """What an evaluation found and granted."""

    rewarded_count: int
    tiers_reached: list[str] = field(default_factory=list)
    rewards_granted: list[str] = field(default_factory=list)
    existing_tiers: list[str] = field(default_factory=list)


class ReferralTierEngine:
    """Grants bronze/silver/gold rewards once each."""

    def __init__(self, store: LedgerStore, config: AppConfig | None = None):
        self.store = store
        self.config = config or get_config()

    async def evaluate(self, account_id: str, now: datetime | None = None) -> TierEvaluation:
        """
        Count rewarded referrals and grant any newly reached tiers.

        Args:
            account_id: Referrer to evaluate
            now: Evaluation time (UTC)

        Returns:
            TierEvaluation report

        Raises:
            AccountNotFound: If the account does not exist
        """
        now = now or datetime.now(timezone.utc)
        thresholds = self.config.referral_tier_thresholds

        async with self.store.unit_of_work(f"referrals:{account_id}", account_lock(account_id)) as session:
            account = await session.get_account(account_id)
            if account is None:
                raise AccountNotFound(account_id)

            count = await session.count_referrals(account_id, ReferralStatus.REWARDED.value)
            existing = {grant.tier for grant in await session.list_tier_grants(account_id)}
            evaluation = TierEvaluation(
                rewarded_count=count,
                existing_tiers=[t.value for t in TIER_ORDER if t.value in existing],
            )

            for tier in TIER_ORDER:
                if count < thresholds[tier.value]:
                    break
                evaluation.tiers_reached.append(tier.value)
                if tier.value in existing:
                    continue

                inserted = await session.insert_tier_grant(
                    ReferralTierGrant(account_id=account_id, tier=tier.value, claimed_at=now)
                )
                if not inserted:
                    continue

                await self._grant_reward(session, account_id, tier, now)
                evaluation.rewards_granted.append(tier.value)

        if evaluation.rewards_granted:
            logger.info(
                f"Referral tiers granted to {account_id}: {evaluation.rewards_granted} "
                f"({count} rewarded referrals)"
            )
        return evaluation

    async def _grant_reward(
        self, session: LedgerSession, account_id: str, tier: ReferralTier, now: datetime
    ) -> None:
        if tier == ReferralTier.BRONZE:
            await apply_extension(
                session,
                account_id,
                self.config.bronze_reward_days,
                now=now,
                event_type=SubscriptionEventType.AMBASSADOR_REWARD,
                notes="Bronze ambassador reward",
            )
        elif tier == ReferralTier.SILVER:
            storefront = await session.get_storefront_for_account(account_id)
            if storefront is None:
                logger.warning(f"Silver tier for {account_id}: no storefront to feature; grant recorded")
                return
            await session.feature_storefront(
                storefront.storefront_id,
                expires_at=now + timedelta(days=self.config.silver_feature_days),
                label="Ambassador",
                tagline=f"Featured for referring {self.config.referral_tier_thresholds['silver']}+ sellers",
            )
        elif tier == ReferralTier.GOLD:
            await session.set_reseller(account_id)
