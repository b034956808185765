"""Plan pricing and effective-plan resolution."""

import logging
from datetime import datetime
from decimal import Decimal

from shopledger.config import AppConfig
from shopledger.db.models import SubscriptionState
from shopledger.errors import PlanNotFound
from shopledger.ledger.base import Account, LedgerSession, SubscriptionPlan
from shopledger.subscriptions.lifecycle import derive_status

logger = logging.getLogger(__name__)


def price_for_cycle(plan: SubscriptionPlan, billing_cycle: str) -> Decimal:
    """
    Price of one payment on the given billing cycle.

    Raises:
        ValueError: If the plan has no price for the cycle
    """
    if billing_cycle == "monthly":
        return plan.price_monthly
    if billing_cycle == "yearly":
        if plan.price_yearly is None:
            raise ValueError(f"Plan {plan.slug} has no yearly price")
        return plan.price_yearly
    raise ValueError(f"Unknown billing cycle {billing_cycle!r}")


def effective_plan_slug(account: Account, config: AppConfig, now: datetime | None = None) -> tuple[str, bool]:
    """
    Plan whose limits apply to an account right now.

    Trial accounts are elevated to trial_plan_slug until the trial expires.
    A lapsed paid subscription falls back to default_plan_slug.

    Returns:
        (plan slug, is_trial)
    """
    status = derive_status(account, now)

    if status.state == SubscriptionState.TRIAL:
        return config.trial_plan_slug, True
    if status.state == SubscriptionState.ACTIVE:
        return account.plan_tier or config.default_plan_slug, False
    if account.is_subscribed:
        return config.default_plan_slug, False
    return account.plan_tier or config.default_plan_slug, False


async def resolve_effective_plan(
    session: LedgerSession,
    account: Account,
    config: AppConfig,
    now: datetime | None = None,
) -> tuple[SubscriptionPlan, bool]:
    """
    Load the effective plan row for an account.

    Raises:
        PlanNotFound: If the resolved slug has no subscription_plans row
    """
    slug, is_trial = effective_plan_slug(account, config, now)
    plan = await session.get_plan_by_slug(slug)
    if plan is None:
        logger.error(f"Plan {slug!r} resolved for account {account.account_id} does not exist")
        raise PlanNotFound(slug)
    return plan, is_trial
