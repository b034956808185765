"""Checkout: start payments at the processor and confirm them via verify."""

import logging
from dataclasses import dataclass

from shopledger.config import AppConfig, get_config
from shopledger.db.models import PaymentStatus, SubjectType
from shopledger.errors import AccountNotFound, OrderAlreadyPaid, OrderNotFound, PlanNotFound, StorefrontNotFound
from shopledger.gateway.client import PaystackClient
from shopledger.ledger.base import LedgerStore
from shopledger.money import to_minor_units
from shopledger.payments.reconciler import PaymentEvent, PaymentReconciler, ReconcileResult
from shopledger.payments.references import mint_reference
from shopledger.subscriptions.lifecycle import days_for_cycle
from shopledger.subscriptions.plans import price_for_cycle

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSession:
    """What the client needs to send the customer to the processor."""

    reference: str
    authorization_url: str
    access_code: str
    amount_minor_units: int
    payment_mode: str  # 'split' | 'direct' | 'subscription'


class CheckoutService:
    """Initialize order/subscription payments and run the verify path."""

    def __init__(
        self,
        store: LedgerStore,
        client: PaystackClient | None = None,
        reconciler: PaymentReconciler | None = None,
        config: AppConfig | None = None,
    ):
        self.store = store
        self.config = config or get_config()
        self.client = client or PaystackClient()
        self.reconciler = reconciler or PaymentReconciler(store, config=self.config)

    async def initialize_order_payment(
        self,
        order_id: str,
        customer_email: str,
        callback_url: str | None = None,
    ) -> CheckoutSession:
        """
        Start payment for an order.

        Routes through the storefront's split-payment subaccount when it has
        one, so the seller's share settles directly.

        Raises:
            OrderNotFound: Unknown order
            OrderAlreadyPaid: The order is already paid
            GatewayError: Processor call failed (retryable per attribute)
        """
        async with self.store.unit_of_work() as session:
            order = await session.get_order(order_id)
            if order is None:
                raise OrderNotFound(order_id)
            if order.payment_status == PaymentStatus.PAID.value:
                raise OrderAlreadyPaid(order_id)
            storefront = await session.get_storefront(order.storefront_id)
            if storefront is None:
                raise StorefrontNotFound(order.storefront_id)

        reference = mint_reference(SubjectType.ORDER, order_id)
        amount_minor = to_minor_units(order.total_amount)
        subaccount = storefront.payment_subaccount_reference
        payment_mode = "split" if subaccount else "direct"

        init = await self.client.initialize_transaction(
            email=customer_email,
            amount_minor_units=amount_minor,
            currency=self.config.currency,
            reference=reference,
            metadata={
                "subject_type": SubjectType.ORDER.value,
                "order_id": order_id,
                "storefront_id": storefront.storefront_id,
                "payment_mode": payment_mode,
            },
            callback_url=callback_url,
            subaccount=subaccount,
        )

        logger.info(f"Initialized {payment_mode} payment {reference} for order {order_id} ({amount_minor} minor units)")
        return CheckoutSession(
            reference=init.reference,
            authorization_url=init.authorization_url,
            access_code=init.access_code,
            amount_minor_units=amount_minor,
            payment_mode=payment_mode,
        )

    async def initialize_subscription_payment(
        self,
        account_id: str,
        plan_slug: str,
        billing_cycle: str = "monthly",
        callback_url: str | None = None,
    ) -> CheckoutSession:
        """
        Start payment for a subscription plan.

        Raises:
            AccountNotFound: Unknown account
            PlanNotFound: Unknown plan slug
            ValueError: Billing cycle not offered
            GatewayError: Processor call failed
        """
        async with self.store.unit_of_work() as session:
            account = await session.get_account(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            plan = await session.get_plan_by_slug(plan_slug)
            if plan is None:
                raise PlanNotFound(plan_slug)

        price = price_for_cycle(plan, billing_cycle)
        days = days_for_cycle(billing_cycle, self.config)
        reference = mint_reference(SubjectType.SUBSCRIPTION, account_id)
        amount_minor = to_minor_units(price)

        init = await self.client.initialize_transaction(
            email=account.email,
            amount_minor_units=amount_minor,
            currency=self.config.currency,
            reference=reference,
            metadata={
                "subject_type": SubjectType.SUBSCRIPTION.value,
                "account_id": account_id,
                "plan_id": plan.plan_id,
                "billing_cycle": billing_cycle,
                "subscription_days": days,
            },
            callback_url=callback_url,
        )

        logger.info(f"Initialized subscription payment {reference} for {account_id}: {plan.slug} {billing_cycle}")
        return CheckoutSession(
            reference=init.reference,
            authorization_url=init.authorization_url,
            access_code=init.access_code,
            amount_minor_units=amount_minor,
            payment_mode="subscription",
        )

    async def verify_payment(self, reference: str) -> ReconcileResult:
        """
        Synchronous confirmation path.

        Asks the processor for the outcome and reconciles it. A gateway
        failure raises before any ledger access, so the order stays pending.
        """
        verified = await self.client.verify_transaction(reference)
        return await self.reconciler.reconcile(
            PaymentEvent(
                payment_reference=verified.reference,
                processor_status=verified.status,
                amount=verified.amount,
                raw_metadata=verified.metadata,
                currency=verified.currency or None,
            )
        )
