"""Bank listing with TTL cache and static fallback.

Bank lookups feed payout setup forms; when the processor is unavailable the
caller still gets a usable list instead of an error.
"""

import logging

from shopledger.config import get_config
from shopledger.errors import GatewayError
from shopledger.gateway.cache import get_cache
from shopledger.gateway.client import Bank, PaystackClient

logger = logging.getLogger(__name__)

FALLBACK_BANKS: tuple[Bank, ...] = (
    Bank(name="Access Bank", code="044"),
    Bank(name="Ecobank Nigeria", code="050"),
    Bank(name="Fidelity Bank", code="070"),
    Bank(name="First Bank of Nigeria", code="011"),
    Bank(name="First City Monument Bank", code="214"),
    Bank(name="Guaranty Trust Bank", code="058"),
    Bank(name="Keystone Bank", code="082"),
    Bank(name="Kuda Bank", code="50211"),
    Bank(name="Moniepoint MFB", code="50515"),
    Bank(name="OPay Digital Services Limited (OPay)", code="999992"),
    Bank(name="PalmPay", code="999991"),
    Bank(name="Polaris Bank", code="076"),
    Bank(name="Stanbic IBTC Bank", code="221"),
    Bank(name="Sterling Bank", code="232"),
    Bank(name="Union Bank of Nigeria", code="032"),
    Bank(name="United Bank For Africa", code="033"),
    Bank(name="Wema Bank", code="035"),
    Bank(name="Zenith Bank", code="057"),
)


async def list_banks(client: PaystackClient | None = None, country: str | None = None) -> list[Bank]:
    """
    List active banks for payout setup.

    Args:
        client: Paystack client (a default one is built from config)
        country: Country filter (defaults to paystack_bank_country)

    Returns:
        Active banks sorted by name. Served from cache within the TTL, and
        from FALLBACK_BANKS when the processor cannot be reached.
    """
    config = get_config()
    country = country or config.paystack_bank_country
    cache = get_cache()
    cache_key = f"banks:{country}"

    cached = cache.get(cache_key)
    if cached is not None:
        return list(cached)

    client = client or PaystackClient()
    try:
        banks = await client.list_banks(country)
    except GatewayError as e:
        logger.warning(f"Bank list unavailable ({e}); serving static fallback list")
        return list(FALLBACK_BANKS)

    active = sorted((bank for bank in banks if bank.active), key=lambda b: b.name)
    if not active:
        logger.warning(f"Processor returned no active banks for {country}; serving fallback list")
        return list(FALLBACK_BANKS)

    cache.set(cache_key, tuple(active), ttl_seconds=config.bank_list_cache_ttl_seconds)
    logger.info(f"Fetched {len(active)} active banks for {country}")
    return active
