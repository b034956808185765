"""Outbound notifications (email/SMS) at their interface.

Delivery itself lives outside this service. Dispatch happens after the
ledger unit of work has committed, and a failing notifier never undoes a
ledger mutation.
"""

import logging
from abc import ABC, abstractmethod
from typing import Awaitable

from shopledger.ledger.base import PayoutRequest

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Notification sink."""

    @abstractmethod
    async def payment_settled(self, payment_reference: str, subject_type: str, subject_id: str) -> None:
        """A payment was applied to an order or subscription."""

    @abstractmethod
    async def payout_status_changed(self, payout: PayoutRequest) -> None:
        """A payout request moved to a new status."""


class LoggingNotifier(Notifier):
    """Default notifier: records what would have been sent."""

    async def payment_settled(self, payment_reference: str, subject_type: str, subject_id: str) -> None:
        logger.info(f"Notify: payment {payment_reference} settled for {subject_type} {subject_id}")

    async def payout_status_changed(self, payout: PayoutRequest) -> None:
        logger.info(
            f"Notify: payout {payout.payout_id} for storefront {payout.storefront_id} "
            f"is now {payout.status}"
        )


async def notify_safely(notification: Awaitable[None], description: str) -> None:
    """Await a notification, logging instead of raising on failure."""
    try:
        await notification
    except Exception as e:
        # Ledger is source of truth; a lost notification is not a ledger error
        logger.error(f"Failed to send notification ({description}): {e}")
