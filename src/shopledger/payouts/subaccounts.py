"""Split-payment subaccount setup for storefronts."""

import logging
from dataclasses import dataclass

from shopledger.config import AppConfig, get_config
from shopledger.errors import StorefrontNotFound, SubaccountAlreadySet
from shopledger.gateway.client import PaystackClient
from shopledger.ledger.base import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class SubaccountSetup:
    subaccount_code: str
    account_name: str


async def setup_subaccount(
    store: LedgerStore,
    storefront_id: str,
    business_name: str,
    bank_code: str,
    account_number: str,
    email: str | None = None,
    client: PaystackClient | None = None,
    config: AppConfig | None = None,
) -> SubaccountSetup:
    """
    Create the storefront's split-payment destination at the processor.

    The bank account is resolved first so a typo fails before anything is
    created. The platform keeps the storefront's commission percentage of
    every split payment.

    Raises:
        StorefrontNotFound: Unknown storefront
        SubaccountAlreadySet: The storefront already has a subaccount
        GatewayError: Processor call failed
    """
    config = config or get_config()
    client = client or PaystackClient()

    async with store.unit_of_work() as session:
        storefront = await session.get_storefront(storefront_id)
    if storefront is None:
        raise StorefrontNotFound(storefront_id)
    if storefront.payment_subaccount_reference is not None:
        raise SubaccountAlreadySet(storefront_id)

    resolved = await client.resolve_bank_account(account_number, bank_code)

    commission = storefront.commission_percentage
    if commission is None:
        commission = config.platform_commission_percentage

    code = await client.create_subaccount(
        business_name=business_name,
        settlement_bank=bank_code,
        account_number=account_number,
        percentage_charge=float(commission),
        primary_contact_email=email,
    )

    async with store.unit_of_work(f"storefront:{storefront_id}") as session:
        stored = await session.set_payment_subaccount(storefront_id, code, bank_code, account_number)
    if not stored:
        logger.error(f"Subaccount {code} created for {storefront_id} but another was stored first")
        raise SubaccountAlreadySet(storefront_id)

    logger.info(f"Storefront {storefront_id} now settles to subaccount {code} ({resolved.account_name})")
    return SubaccountSetup(subaccount_code=code, account_name=resolved.account_name)
