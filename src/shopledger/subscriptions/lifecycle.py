"""Subscription expiry arithmetic, status derivation and extensions.

States: no subscription -> trial -> active -> expired, with active -> active
on renewal and trial -> active on conversion. There is no cancelled state;
access lapses once subscription_expires_at <= now.

Extensions are additive from the later of now and the current expiry, so
back-to-back renewals stack and a renewal after lapse never credits the
dead time in between.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from shopledger.config import AppConfig, get_config
from shopledger.db.models import SubscriptionEventType, SubscriptionState
from shopledger.errors import AccountNotFound
from shopledger.ledger.base import (
    Account,
    LedgerSession,
    LedgerStore,
    SubscriptionEvent,
    SubscriptionPlan,
)

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionStatus:
    """Derived subscription state for display and quota decisions."""

    state: SubscriptionState
    expires_at: datetime | None
    days_remaining: int
    plan_tier: str | None = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def account_lock(account_id: str) -> str:
    """Lock key serialising expiry mutations for one account."""
    return f"account:{account_id}"


def compute_new_expiry(current_expiry: datetime | None, added_days: int, now: datetime) -> datetime:
    """New expiry = max(now, current_expiry) + added_days."""
    if added_days <= 0:
        raise ValueError(f"added_days must be positive, got {added_days}")

    base = now
    if current_expiry is not None and current_expiry > now:
        base = current_expiry
    return base + timedelta(days=added_days)


def derive_status(account: Account, now: datetime | None = None) -> SubscriptionStatus:
    """
    Derive trial/active/expired for an account.

    Returns:
        expired if expiry is null or not in the future, otherwise active
        when paid and trial when not
    """
    now = now or utcnow()
    expires_at = account.subscription_expires_at

    if expires_at is None or expires_at <= now:
        return SubscriptionStatus(
            state=SubscriptionState.EXPIRED,
            expires_at=expires_at,
            days_remaining=0,
            plan_tier=account.plan_tier,
        )

    days_remaining = math.ceil((expires_at - now).total_seconds() / 86400)
    state = SubscriptionState.ACTIVE if account.is_subscribed else SubscriptionState.TRIAL
    return SubscriptionStatus(
        state=state,
        expires_at=expires_at,
        days_remaining=days_remaining,
        plan_tier=account.plan_tier,
    )


def days_for_cycle(billing_cycle: str, config: AppConfig | None = None) -> int:
    """
    Days of access bought by one payment on a billing cycle.

    Raises:
        ValueError: If the billing cycle is not configured
    """
    config = config or get_config()
    try:
        return config.billing_cycle_days[billing_cycle]
    except KeyError:
        raise ValueError(
            f"Unknown billing cycle {billing_cycle!r}; "
            f"expected one of {sorted(config.billing_cycle_days)}"
        ) from None


async def apply_extension(
    session: LedgerSession,
    account_id: str,
    added_days: int,
    *,
    now: datetime,
    event_type: SubscriptionEventType,
    payment_reference: str | None = None,
    plan: SubscriptionPlan | None = None,
    billing_cycle: str | None = None,
    amount: Decimal | None = None,
    notes: str | None = None,
) -> SubscriptionEvent:
    """
    Extend an account's paid access inside an open unit of work.

    Locks the account row, applies max(now, current) + added_days, marks the
    account as paid and appends the audit event.

    Raises:
        AccountNotFound: If the account does not exist (aborts the unit of work)
    """
    account = await session.get_account(account_id, for_update=True)
    if account is None:
        raise AccountNotFound(account_id)

    previous_expiry = account.subscription_expires_at
    new_expiry = compute_new_expiry(previous_expiry, added_days, now)

    await session.update_account_subscription(
        account_id,
        expires_at=new_expiry,
        is_subscribed=True,
        plan_id=plan.plan_id if plan else None,
        plan_tier=plan.slug if plan else None,
        subscription_type=billing_cycle,
    )

    event = await session.insert_subscription_event(
        SubscriptionEvent(
            account_id=account_id,
            event_type=event_type.value,
            previous_expiry_at=previous_expiry,
            new_expiry_at=new_expiry,
            created_at=now,
            payment_reference=payment_reference,
            plan_id=plan.plan_id if plan else None,
            amount=amount,
            notes=notes,
        )
    )

    logger.info(
        f"Extended subscription for {account_id} by {added_days}d "
        f"({event_type.value}): {previous_expiry} -> {new_expiry}"
    )
    return event


class SubscriptionManager:
    """Account-level subscription operations, each in its own unit of work."""

    def __init__(self, store: LedgerStore, config: AppConfig | None = None):
        self.store = store
        self.config = config or get_config()

    async def status(self, account_id: str, now: datetime | None = None) -> SubscriptionStatus:
        """Current derived status for an account."""
        async with self.store.unit_of_work() as session:
            account = await session.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return derive_status(account, now)

    async def extend(
        self,
        account_id: str,
        added_days: int,
        *,
        now: datetime | None = None,
        event_type: SubscriptionEventType = SubscriptionEventType.PAYMENT,
        notes: str | None = None,
    ) -> SubscriptionEvent:
        """Extend paid access outside of a payment (e.g. operator credit)."""
        now = now or utcnow()
        async with self.store.unit_of_work(account_lock(account_id)) as session:
            return await apply_extension(
                session,
                account_id,
                added_days,
                now=now,
                event_type=event_type,
                notes=notes,
            )

    async def grant_trial(
        self,
        account_id: str,
        days: int | None = None,
        now: datetime | None = None,
    ) -> SubscriptionEvent | None:
        """
        Start the signup trial.

        Only an account that never had an expiry date and is not paid gets a
        trial; otherwise nothing changes and None is returned.
        """
        now = now or utcnow()
        days = days or self.config.trial_days

        async with self.store.unit_of_work(account_lock(account_id)) as session:
            account = await session.get_account(account_id, for_update=True)
            if account is None:
                raise AccountNotFound(account_id)

            if account.subscription_expires_at is not None or account.is_subscribed:
                logger.info(f"Trial not granted to {account_id}: subscription history exists")
                return None

            new_expiry = now + timedelta(days=days)
            await session.update_account_subscription(
                account_id,
                expires_at=new_expiry,
                is_subscribed=False,
            )
            event = await session.insert_subscription_event(
                SubscriptionEvent(
                    account_id=account_id,
                    event_type=SubscriptionEventType.TRIAL_STARTED.value,
                    previous_expiry_at=None,
                    new_expiry_at=new_expiry,
                    created_at=now,
                    notes=f"{days}-day trial",
                )
            )

        logger.info(f"Granted {days}-day trial to {account_id} (expires {new_expiry})")
        return event

    async def history(self, account_id: str) -> list[SubscriptionEvent]:
        """Expiry-date audit trail, oldest first."""
        async with self.store.unit_of_work() as session:
            return await session.list_subscription_events(account_id)
