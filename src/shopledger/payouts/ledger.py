"""Seller balance and withdrawal requests.

Balance is derived, never stored:

    available = sum(net revenue) - sum(completed payouts) - sum(pending + processing payouts)

Pending and processing requests reserve funds the moment they are created.
Computing the balance and inserting the request happen inside one unit of
work holding the storefront's payout lock, so two concurrent requests cannot
both spend the same funds.

Payout state machine:

    pending -> processing -> completed
    pending | processing -> failed

completed and failed are terminal.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from shopledger.config import AppConfig, get_config
from shopledger.db.models import PayoutStatus, VerificationStatus
from shopledger.errors import (
    AccountNotFound,
    InvalidPayoutTransition,
    PayoutNotFound,
    StorefrontNotFound,
)
from shopledger.ledger.base import LedgerSession, LedgerStore, PayoutRequest
from shopledger.money import CENT
from shopledger.notifications import LoggingNotifier, Notifier, notify_safely

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[PayoutStatus, frozenset[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.PROCESSING, PayoutStatus.FAILED}),
    PayoutStatus.PROCESSING: frozenset({PayoutStatus.COMPLETED, PayoutStatus.FAILED}),
    PayoutStatus.COMPLETED: frozenset(),
    PayoutStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({PayoutStatus.COMPLETED, PayoutStatus.FAILED})
RESERVED_STATUSES = (PayoutStatus.PENDING, PayoutStatus.PROCESSING)


class PayoutOutcome(str, Enum):
    CREATED = "created"
    BELOW_MINIMUM = "below_minimum"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    VERIFICATION_REQUIRED = "verification_required"


@dataclass
class Balance:
    """Balance breakdown for a storefront."""

    total_revenue: Decimal
    total_withdrawn: Decimal  # completed payouts
    total_pending: Decimal  # pending + processing payouts

    @property
    def available(self) -> Decimal:
        return self.total_revenue - self.total_withdrawn - self.total_pending


@dataclass
class PayoutResult:
    outcome: PayoutOutcome
    payout: PayoutRequest | None = None
    available_balance: Decimal | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == PayoutOutcome.CREATED


@dataclass
class IdentityVerification:
    """Terminal result reported by the identity-verification collaborator."""

    status: VerificationStatus
    account_name: str | None = None


def payout_lock(storefront_id: str) -> str:
    return f"payout:{storefront_id}"


async def compute_balance(session: LedgerSession, storefront_id: str) -> Balance:
    """Derive a storefront's balance inside an open unit of work."""
    revenue = await session.sum_revenue(storefront_id)
    by_status = await session.sum_payouts_by_status(storefront_id)
    zero = Decimal("0")
    return Balance(
        total_revenue=revenue,
        total_withdrawn=by_status.get(PayoutStatus.COMPLETED.value, zero),
        total_pending=sum((by_status.get(s.value, zero) for s in RESERVED_STATUSES), zero),
    )


class PayoutLedger:
    """Withdrawal requests and their administrative lifecycle."""

    def __init__(
        self,
        store: LedgerStore,
        notifier: Notifier | None = None,
        config: AppConfig | None = None,
    ):
        self.store = store
        self.notifier = notifier or LoggingNotifier()
        self.config = config or get_config()

    async def balance(self, storefront_id: str) -> Balance:
        """Full balance breakdown for a storefront."""
        async with self.store.unit_of_work() as session:
            if await session.get_storefront(storefront_id) is None:
                raise StorefrontNotFound(storefront_id)
            return await compute_balance(session, storefront_id)

    async def available_balance(self, storefront_id: str) -> Decimal:
        """Funds eligible for withdrawal right now."""
        return (await self.balance(storefront_id)).available

    async def request_payout(
        self,
        storefront_id: str,
        amount: Decimal,
        bank_details: dict[str, Any],
        now: datetime | None = None,
    ) -> PayoutResult:
        """
        Create a pending payout request if policy and balance allow.

        Args:
            storefront_id: Storefront withdrawing
            amount: Amount in major units
            bank_details: Destination account (bank_code, account_number, ...)
            now: Request time (UTC)

        Returns:
            PayoutResult with CREATED, BELOW_MINIMUM, VERIFICATION_REQUIRED or
            INSUFFICIENT_BALANCE

        Raises:
            StorefrontNotFound: Unknown storefront
            ValueError: Amount is NaN, infinite or out of range
        """
        amount = Decimal(amount)
        if not amount.is_finite():
            raise ValueError(f"Payout amount must be finite, got {amount}")
        # Checked at the precision the ledger stores
        try:
            amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise ValueError(f"Payout amount out of range: {amount}") from None
        if amount < self.config.min_withdrawal:
            logger.warning(
                f"Payout of {amount} for {storefront_id} below minimum {self.config.min_withdrawal}"
            )
            return PayoutResult(outcome=PayoutOutcome.BELOW_MINIMUM)

        now = now or datetime.now(timezone.utc)

        async with self.store.unit_of_work(payout_lock(storefront_id)) as session:
            storefront = await session.get_storefront(storefront_id, for_update=True)
            if storefront is None:
                raise StorefrontNotFound(storefront_id)

            if self.config.payout_requires_kyc:
                owner = await session.get_account(storefront.account_id)
                if owner is None:
                    raise AccountNotFound(storefront.account_id)
                if owner.kyc_status != VerificationStatus.VERIFIED.value:
                    logger.warning(
                        f"Payout for {storefront_id} rejected: owner verification is {owner.kyc_status}"
                    )
                    return PayoutResult(outcome=PayoutOutcome.VERIFICATION_REQUIRED)

            balance = await compute_balance(session, storefront_id)
            if amount > balance.available:
                logger.warning(
                    f"Payout of {amount} for {storefront_id} exceeds available {balance.available}"
                )
                return PayoutResult(
                    outcome=PayoutOutcome.INSUFFICIENT_BALANCE,
                    available_balance=balance.available,
                )

            payout = await session.insert_payout_request(storefront_id, amount, bank_details, now)

        logger.info(f"Created payout request {payout.payout_id} for {storefront_id}: {amount}")
        return PayoutResult(
            outcome=PayoutOutcome.CREATED,
            payout=payout,
            available_balance=balance.available - amount,
        )

    async def payout_history(self, storefront_id: str) -> list[PayoutRequest]:
        """All payout requests for a storefront, newest first."""
        async with self.store.unit_of_work() as session:
            return await session.list_payout_requests(storefront_id=storefront_id, newest_first=True)

    async def list_pending_payouts(self) -> list[PayoutRequest]:
        """Requests awaiting operator action (pending or processing), oldest first."""
        async with self.store.unit_of_work() as session:
            return await session.list_payout_requests(statuses=[s.value for s in RESERVED_STATUSES])

    async def update_payout_status(
        self,
        payout_id: str,
        status: PayoutStatus | str,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> PayoutRequest:
        """
        Move a payout request forward in its state machine.

        Raises:
            PayoutNotFound: Unknown payout
            InvalidPayoutTransition: Transition not allowed (including out
                of a terminal state)
        """
        now = now or datetime.now(timezone.utc)

        async with self.store.unit_of_work(f"payout-request:{payout_id}") as session:
            payout = await session.get_payout_request(payout_id, for_update=True)
            if payout is None:
                raise PayoutNotFound(payout_id)

            try:
                requested = PayoutStatus(status)
            except ValueError:
                raise InvalidPayoutTransition(payout_id, payout.status, str(status)) from None

            current = PayoutStatus(payout.status)
            if requested not in ALLOWED_TRANSITIONS[current]:
                raise InvalidPayoutTransition(payout_id, current.value, requested.value)

            processed_at = now if requested in TERMINAL_STATUSES else None
            updated = await session.update_payout_request(payout_id, requested.value, processed_at, notes)

        logger.info(f"Payout {payout_id}: {current.value} -> {requested.value}")
        await notify_safely(self.notifier.payout_status_changed(updated), f"payout {payout_id}")
        return updated

    async def record_identity_verification(self, account_id: str, result: IdentityVerification) -> None:
        """Store the identity-verification result that gates payouts."""
        status = VerificationStatus(result.status)
        async with self.store.unit_of_work() as session:
            if await session.get_account(account_id) is None:
                raise AccountNotFound(account_id)
            await session.set_identity_verification(account_id, status.value, result.account_name)
        logger.info(f"Identity verification for {account_id}: {status.value}")
