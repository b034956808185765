"""Feature-usage gate and product limits.

The plan check runs before the numeric quota: a feature the effective plan
does not offer is blocked regardless of the counter. Counters are per
calendar month and only move forward through an atomic increment.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone

from shopledger.config import AppConfig, get_config
from shopledger.errors import AccountNotFound
from shopledger.ledger.base import LedgerStore, SubscriptionPlan
from shopledger.subscriptions.plans import resolve_effective_plan

logger = logging.getLogger(__name__)


@dataclass
class UsageCheck:
    """Answer to "can this account use feature X right now"."""

    can_use: bool
    blocked_by_plan: bool
    current_usage: int
    max_usage: float  # math.inf when unlimited
    plan_slug: str
    is_trial: bool = False


@dataclass
class ProductLimitCheck:
    """Answer to "can this account list another product"."""

    can_create: bool
    current_count: int
    max_allowed: float  # math.inf when unlimited
    plan_slug: str


def current_period(now: datetime | None = None) -> str:
    """Calendar-month usage period, e.g. '2024-06'."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m")


def feature_limit(plan: SubscriptionPlan, feature_name: str, ai_features: list[str]) -> tuple[bool, float]:
    """
    Resolve the plan's limit for a feature.

    Returns:
        (blocked_by_plan, max_usage)
    """
    if feature_name in ai_features and not plan.ai_features_enabled:
        return True, 0

    if feature_name not in plan.feature_limits:
        return True, 0

    limit = plan.feature_limits[feature_name]
    if limit is None:
        return False, math.inf
    if limit <= 0:
        return True, 0
    return False, limit


class QuotaGate:
    """Plan- and trial-aware feature gate."""

    def __init__(self, store: LedgerStore, config: AppConfig | None = None):
        self.store = store
        self.config = config or get_config()

    async def check_usage(
        self, account_id: str, feature_name: str, now: datetime | None = None
    ) -> UsageCheck:
        """
        Check whether an account may use a feature.

        Args:
            account_id: Account asking
            feature_name: Feature key as used in plan feature_limits
            now: Evaluation time (UTC)

        Returns:
            UsageCheck; a blocked feature is a result, not an exception

        Raises:
            AccountNotFound: If the account does not exist
            PlanNotFound: If the effective plan row is missing
        """
        now = now or datetime.now(timezone.utc)
        period = current_period(now)

        async with self.store.unit_of_work() as session:
            account = await session.get_account(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            plan, is_trial = await resolve_effective_plan(session, account, self.config, now)
            current = await session.get_usage(account_id, feature_name, period)

        blocked, max_usage = feature_limit(plan, feature_name, self.config.ai_features)
        can_use = not blocked and current < max_usage

        if blocked:
            logger.info(f"{feature_name} blocked by plan {plan.slug} for {account_id}")
        elif not can_use:
            logger.info(f"{feature_name} quota exhausted for {account_id}: {current}/{max_usage}")

        return UsageCheck(
            can_use=can_use,
            blocked_by_plan=blocked,
            current_usage=current,
            max_usage=max_usage,
            plan_slug=plan.slug,
            is_trial=is_trial,
        )

    async def increment_usage(
        self, account_id: str, feature_name: str, now: datetime | None = None
    ) -> int:
        """
        Count one confirmed use of a feature in the current period.

        Call only after the gated action actually ran.

        Returns:
            The counter value after the increment
        """
        period = current_period(now)
        async with self.store.unit_of_work() as session:
            account = await session.get_account(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            count = await session.increment_usage(account_id, feature_name, period)

        logger.debug(f"{feature_name} usage for {account_id} in {period}: {count}")
        return count

    async def check_product_limit(
        self, account_id: str, now: datetime | None = None
    ) -> ProductLimitCheck:
        """Check the effective plan's max_products against the storefront's catalog."""
        async with self.store.unit_of_work() as session:
            account = await session.get_account(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            plan, _ = await resolve_effective_plan(session, account, self.config, now)
            storefront = await session.get_storefront_for_account(account_id)
            count = await session.count_products(storefront.storefront_id) if storefront else 0

        max_allowed = math.inf if plan.max_products is None else plan.max_products
        return ProductLimitCheck(
            can_create=count < max_allowed,
            current_count=count,
            max_allowed=max_allowed,
            plan_slug=plan.slug,
        )
