"""Exception hierarchy.

Policy rejections (bad signature, below-minimum payout, insufficient balance,
feature blocked by plan, already-settled reference) are not exceptions; they
come back as typed results. What is raised here is either an upstream
failure the caller may retry, or a broken invariant that aborts the
enclosing unit of work.
"""


class ShopLedgerError(Exception):
    """Base class for all shopledger errors."""


class GatewayError(ShopLedgerError):
    """Payment processor call failed.

    Attributes:
        retryable: True for timeouts, transport errors and 5xx responses
        status: HTTP status returned by the processor, if any
    """

    def __init__(self, message: str, *, retryable: bool = True, status: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class LedgerInvariantError(ShopLedgerError):
    """A ledger mutation cannot be applied without breaking an invariant.

    Always fatal to the enclosing operation; the unit of work is rolled back
    and the failure is surfaced for manual reconciliation.
    """


class AccountNotFound(LedgerInvariantError):
    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class OrderNotFound(LedgerInvariantError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class StorefrontNotFound(LedgerInvariantError):
    def __init__(self, storefront_id: str):
        super().__init__(f"Storefront {storefront_id} not found")
        self.storefront_id = storefront_id


class PlanNotFound(LedgerInvariantError):
    def __init__(self, plan: str):
        super().__init__(f"Subscription plan {plan} not found")
        self.plan = plan


class PayoutNotFound(LedgerInvariantError):
    def __init__(self, payout_id: str):
        super().__init__(f"Payout request {payout_id} not found")
        self.payout_id = payout_id


class MalformedPaymentEvent(LedgerInvariantError):
    """Confirmation cannot be routed to an order or a subscription."""


class InvalidPayoutTransition(ShopLedgerError, ValueError):
    def __init__(self, payout_id: str, current: str, requested: str):
        super().__init__(
            f"Payout {payout_id} cannot move from {current!r} to {requested!r}"
        )
        self.payout_id = payout_id
        self.current = current
        self.requested = requested


class SubaccountAlreadySet(ShopLedgerError, ValueError):
    def __init__(self, storefront_id: str):
        super().__init__(f"Storefront {storefront_id} already has a payment subaccount")
        self.storefront_id = storefront_id


class OrderAlreadyPaid(ShopLedgerError, ValueError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} is already paid")
        self.order_id = order_id
