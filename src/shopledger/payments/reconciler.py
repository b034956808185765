"""Payment reconciliation: apply each processor confirmation exactly once.

Both the synchronous verify path and the webhook path end here. A
confirmation is routed to an order or a subscription, and everything it
changes is written in one unit of work keyed on the payment reference. A
reference that already has a revenue row or subscription event is a no-op,
whatever status the later arrival claims.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from shopledger.config import AppConfig, get_config
from shopledger.db.models import PaymentStatus, SubjectType, SubscriptionEventType, TransactionType
from shopledger.errors import (
    LedgerInvariantError,
    MalformedPaymentEvent,
    OrderNotFound,
    StorefrontNotFound,
)
from shopledger.gateway.client import parse_metadata
from shopledger.ledger.base import LedgerSession, LedgerStore, RevenueTransaction, SubscriptionEvent
from shopledger.money import from_minor_units, percentage_of
from shopledger.notifications import LoggingNotifier, Notifier, notify_safely
from shopledger.payments.references import parse_reference
from shopledger.payments.signatures import verify_signature
from shopledger.subscriptions.lifecycle import account_lock, apply_extension, days_for_cycle

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    """How a confirmation was handled."""

    APPLIED = "applied"
    ALREADY_SETTLED = "already_settled"
    PAYMENT_NOT_SUCCESSFUL = "payment_not_successful"
    INVALID_SIGNATURE = "invalid_signature"
    AMOUNT_MISMATCH = "amount_mismatch"


@dataclass
class PaymentEvent:
    """A processor confirmation from either the verify or the webhook path.

    Attributes:
        payment_reference: Reference minted at initialize time
        processor_status: Processor's stated outcome ('success' to apply)
        amount: Amount charged, in minor units
        raw_metadata: Metadata as sent by the processor (dict or JSON string)
        signature: Webhook signature header; None on the verify path
        raw_body: Undecoded webhook body the signature covers
        currency: Currency charged, when the processor reports it
    """

    payment_reference: str
    processor_status: str
    amount: int
    raw_metadata: Any = field(default_factory=dict)
    signature: Optional[str] = None
    raw_body: Optional[bytes] = None
    currency: Optional[str] = None


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    payment_reference: str
    subject_type: SubjectType | None = None
    subject_id: str | None = None
    revenue_transaction: RevenueTransaction | None = None
    subscription_event: SubscriptionEvent | None = None

    @property
    def ok(self) -> bool:
        """True when the reference is settled (now or earlier)."""
        return self.outcome in (ReconcileOutcome.APPLIED, ReconcileOutcome.ALREADY_SETTLED)


@dataclass
class _Route:
    subject_type: SubjectType
    subject_id: str
    metadata: dict[str, Any]


def payment_lock(reference: str) -> str:
    return f"payment:{reference}"


class PaymentReconciler:
    """Single idempotent sink for payment confirmations."""

    def __init__(
        self,
        store: LedgerStore,
        notifier: Notifier | None = None,
        config: AppConfig | None = None,
        webhook_secret: str | None = None,
    ):
        self.store = store
        self.notifier = notifier or LoggingNotifier()
        self.config = config or get_config()
        if webhook_secret is None:
            webhook_secret = self.config.paystack_secret_key.get_secret_value()
        self.webhook_secret = webhook_secret

    def signature_valid(self, raw_body: bytes, signature: str | None) -> bool:
        """Check a webhook signature against the raw body."""
        return verify_signature(self.webhook_secret, raw_body, signature)

    def _route(self, event: PaymentEvent) -> _Route | None:
        metadata = parse_metadata(event.raw_metadata)
        parsed = parse_reference(event.payment_reference)

        subject_type = None
        raw_type = metadata.get("subject_type")
        if raw_type:
            try:
                subject_type = SubjectType(str(raw_type).lower())
            except ValueError:
                return None
        elif parsed is not None:
            subject_type = parsed.subject_type

        if subject_type == SubjectType.ORDER:
            subject_id = metadata.get("order_id")
        elif subject_type == SubjectType.SUBSCRIPTION:
            subject_id = metadata.get("account_id") or metadata.get("user_id")
        else:
            return None

        if not subject_id and parsed is not None and parsed.subject_type == subject_type:
            subject_id = parsed.subject_id
        if not subject_id:
            return None

        return _Route(subject_type=subject_type, subject_id=str(subject_id), metadata=metadata)

    async def reconcile(self, event: PaymentEvent, now: datetime | None = None) -> ReconcileResult:
        """
        Apply one confirmation to the ledger.

        Args:
            event: Processor confirmation
            now: Settlement time (UTC)

        Returns:
            ReconcileResult; rejections are outcomes, not exceptions

        Raises:
            LedgerInvariantError: If the confirmation cannot be applied
                (unknown order/account, unroutable reference). Nothing is
                committed.
        """
        reference = event.payment_reference

        if event.signature is not None and not self.signature_valid(event.raw_body or b"", event.signature):
            logger.warning(f"Rejected confirmation for {reference}: invalid signature")
            return ReconcileResult(outcome=ReconcileOutcome.INVALID_SIGNATURE, payment_reference=reference)

        now = now or datetime.now(timezone.utc)
        route = self._route(event)

        lock_keys = [payment_lock(reference)]
        if route is not None and route.subject_type == SubjectType.SUBSCRIPTION:
            lock_keys.append(account_lock(route.subject_id))

        try:
            async with self.store.unit_of_work(*lock_keys) as session:
                if await session.is_reference_settled(reference):
                    logger.info(f"Payment {reference} already settled; ignoring duplicate")
                    return ReconcileResult(
                        outcome=ReconcileOutcome.ALREADY_SETTLED,
                        payment_reference=reference,
                        subject_type=route.subject_type if route else None,
                        subject_id=route.subject_id if route else None,
                    )

                if event.processor_status != "success":
                    logger.info(f"Payment {reference} not successful ({event.processor_status}); no action")
                    return ReconcileResult(
                        outcome=ReconcileOutcome.PAYMENT_NOT_SUCCESSFUL,
                        payment_reference=reference,
                        subject_type=route.subject_type if route else None,
                        subject_id=route.subject_id if route else None,
                    )

                if route is None:
                    raise MalformedPaymentEvent(f"Cannot route payment {reference} to an order or subscription")

                if route.subject_type == SubjectType.ORDER:
                    result = await self._apply_order_payment(session, event, route, now)
                else:
                    result = await self._apply_subscription_payment(session, event, route, now)
        except LedgerInvariantError:
            logger.exception(f"Failed to reconcile payment {reference}; needs manual review")
            raise

        if result.outcome == ReconcileOutcome.APPLIED:
            await notify_safely(
                self.notifier.payment_settled(reference, route.subject_type.value, route.subject_id),
                f"payment {reference}",
            )
        return result

    async def _apply_order_payment(
        self,
        session: LedgerSession,
        event: PaymentEvent,
        route: _Route,
        now: datetime,
    ) -> ReconcileResult:
        reference = event.payment_reference
        order = await session.get_order(route.subject_id, for_update=True)
        if order is None:
            raise OrderNotFound(route.subject_id)

        storefront = await session.get_storefront(order.storefront_id)
        if storefront is None:
            raise StorefrontNotFound(order.storefront_id)

        gross = from_minor_units(event.amount)
        currency = event.currency or self.config.currency
        if currency.upper() != self.config.currency.upper() or gross < order.total_amount:
            logger.warning(
                f"Payment {reference} for order {order.order_id} does not cover it: "
                f"{gross} {currency} vs {order.total_amount} {self.config.currency}"
            )
            return ReconcileResult(
                outcome=ReconcileOutcome.AMOUNT_MISMATCH,
                payment_reference=reference,
                subject_type=SubjectType.ORDER,
                subject_id=order.order_id,
            )

        commission = storefront.commission_percentage
        if commission is None:
            commission = self.config.platform_commission_percentage
        platform_fee = percentage_of(gross, commission)

        txn = await session.insert_revenue_transaction(
            RevenueTransaction(
                storefront_id=storefront.storefront_id,
                order_id=order.order_id,
                amount=gross - platform_fee,
                currency=self.config.currency,
                payment_reference=reference,
                transaction_type=TransactionType.ORDER_PAYMENT.value,
                created_at=now,
                gross_amount=gross,
                platform_fee=platform_fee,
                platform_fee_percentage=commission,
            )
        )

        if order.payment_status == PaymentStatus.PAID.value:
            # Money was captured twice; keep the first reference on the order
            logger.warning(
                f"Order {order.order_id} already paid via {order.payment_reference}; "
                f"recorded {reference} as additional revenue"
            )
        else:
            await session.mark_order_paid(order.order_id, reference, now)

        logger.info(
            f"Applied payment {reference} to order {order.order_id}: gross {gross}, "
            f"fee {platform_fee} ({commission}%), net {txn.amount}"
        )
        return ReconcileResult(
            outcome=ReconcileOutcome.APPLIED,
            payment_reference=reference,
            subject_type=SubjectType.ORDER,
            subject_id=order.order_id,
            revenue_transaction=txn,
        )

    async def _apply_subscription_payment(
        self,
        session: LedgerSession,
        event: PaymentEvent,
        route: _Route,
        now: datetime,
    ) -> ReconcileResult:
        reference = event.payment_reference
        metadata = route.metadata
        billing_cycle = str(metadata.get("billing_cycle") or "monthly")

        plan = None
        plan_id = metadata.get("plan_id")
        if plan_id:
            plan = await session.get_plan(str(plan_id))
            if plan is None:
                logger.warning(f"Payment {reference} names unknown plan {plan_id}; extending without plan change")

        try:
            if metadata.get("subscription_days"):
                added_days = int(metadata["subscription_days"])
            else:
                added_days = days_for_cycle(billing_cycle, self.config)
            if added_days <= 0:
                raise ValueError(f"non-positive subscription_days {added_days}")
        except ValueError as e:
            raise MalformedPaymentEvent(f"Payment {reference} has no usable subscription length: {e}") from e

        subscription_event = await apply_extension(
            session,
            route.subject_id,
            added_days,
            now=now,
            event_type=SubscriptionEventType.PAYMENT,
            payment_reference=reference,
            plan=plan,
            billing_cycle=billing_cycle,
            amount=from_minor_units(event.amount),
        )

        logger.info(f"Applied payment {reference} to subscription of {route.subject_id} (+{added_days}d)")
        return ReconcileResult(
            outcome=ReconcileOutcome.APPLIED,
            payment_reference=reference,
            subject_type=SubjectType.SUBSCRIPTION,
            subject_id=route.subject_id,
            subscription_event=subscription_event,
        )
