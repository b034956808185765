"""Paystack HTTP API client.

Pure request/response translation: no ledger access, no retries. Every call
is bounded by ``paystack_timeout_seconds`` and fails closed with a
GatewayError.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp

from shopledger.config import get_config
from shopledger.errors import GatewayError

logger = logging.getLogger(__name__)


@dataclass
class TransactionInit:
    """Result of POST /transaction/initialize."""

    authorization_url: str
    access_code: str
    reference: str


@dataclass
class VerifiedTransaction:
    """Processor's view of a transaction (amount in minor units)."""

    reference: str
    status: str  # 'success' | 'failed' | 'abandoned' | ...
    amount: int
    currency: str
    metadata: dict[str, Any] = field(default_factory=dict)
    customer_email: str | None = None


@dataclass
class Bank:
    """Bank usable for settlement."""

    name: str
    code: str
    active: bool = True


@dataclass
class ResolvedAccount:
    """Bank account name as registered with the bank."""

    account_number: str
    account_name: str


def parse_metadata(raw: Any) -> dict[str, Any]:
    """Normalise Paystack metadata, which may arrive as a JSON string."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw:
        try:
            decoded = json.loads(raw)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


class PaystackClient:
    """Thin async wrapper around the Paystack REST API."""

    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
    ):
        config = get_config()
        self.secret_key = secret_key if secret_key is not None else config.paystack_secret_key.get_secret_value()
        self.base_url = (base_url or config.paystack_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or config.paystack_timeout_seconds

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Call the API and return the ``data`` member of the envelope.

        Raises:
            GatewayError: retryable on timeout, transport error or 5xx;
                          not retryable on 4xx or ``status: false``
        """
        if not self.secret_key:
            raise GatewayError("paystack_secret_key not configured", retryable=False)

        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method, url, params=params, json=payload, headers=headers
                ) as resp:
                    status = resp.status
                    text = await resp.text()
        except asyncio.TimeoutError as e:
            logger.warning(f"Paystack {method} {path} timed out after {self.timeout_seconds}s")
            raise GatewayError(f"Payment processor timed out on {path}") from e
        except aiohttp.ClientError as e:
            logger.warning(f"Paystack {method} {path} failed: {e}")
            raise GatewayError(f"Payment processor unreachable: {e}") from e

        try:
            body = json.loads(text) if text else {}
        except ValueError:
            body = {}

        if status >= 500:
            logger.warning(f"Paystack {method} {path} returned {status}")
            raise GatewayError(f"Payment processor error {status}", status=status)

        if status >= 400 or not body.get("status"):
            message = body.get("message") or f"HTTP {status}"
            logger.warning(f"Paystack {method} {path} rejected: {message}")
            raise GatewayError(message, retryable=False, status=status)

        return body.get("data")

    async def initialize_transaction(
        self,
        *,
        email: str,
        amount_minor_units: int,
        currency: str,
        reference: str,
        metadata: dict[str, Any],
        callback_url: str | None = None,
        subaccount: str | None = None,
    ) -> TransactionInit:
        """Start a transaction; the customer completes it at authorization_url."""
        payload: dict[str, Any] = {
            "email": email,
            "amount": amount_minor_units,
            "currency": currency,
            "reference": reference,
            "metadata": metadata,
        }
        if callback_url:
            payload["callback_url"] = callback_url
        if subaccount:
            # Seller's share settles straight to their bank; they bear the fees
            payload["subaccount"] = subaccount
            payload["bearer"] = "subaccount"

        data = await self._request("POST", "/transaction/initialize", payload=payload)
        return TransactionInit(
            authorization_url=data["authorization_url"],
            access_code=data["access_code"],
            reference=data["reference"],
        )

    async def verify_transaction(self, reference: str) -> VerifiedTransaction:
        """Fetch the processor's stated outcome for a reference."""
        data = await self._request("GET", f"/transaction/verify/{reference}")
        customer = data.get("customer") or {}
        return VerifiedTransaction(
            reference=data.get("reference", reference),
            status=data.get("status", ""),
            amount=int(data.get("amount") or 0),
            currency=data.get("currency", ""),
            metadata=parse_metadata(data.get("metadata")),
            customer_email=customer.get("email"),
        )

    async def list_banks(self, country: str) -> list[Bank]:
        """List banks for a country (inactive banks included)."""
        data = await self._request("GET", "/bank", params={"country": country, "perPage": 100})
        return [
            Bank(name=item["name"], code=item["code"], active=bool(item.get("active", True)))
            for item in data or []
        ]

    async def resolve_bank_account(self, account_number: str, bank_code: str) -> ResolvedAccount:
        """Resolve the registered name on a bank account."""
        data = await self._request(
            "GET",
            "/bank/resolve",
            params={"account_number": account_number, "bank_code": bank_code},
        )
        return ResolvedAccount(
            account_number=data.get("account_number", account_number),
            account_name=data["account_name"],
        )

    async def create_subaccount(
        self,
        *,
        business_name: str,
        settlement_bank: str,
        account_number: str,
        percentage_charge: float,
        primary_contact_email: str | None = None,
    ) -> str:
        """Create a split-payment subaccount and return its code."""
        payload: dict[str, Any] = {
            "business_name": business_name,
            "settlement_bank": settlement_bank,
            "account_number": account_number,
            "percentage_charge": percentage_charge,
        }
        if primary_contact_email:
            payload["primary_contact_email"] = primary_contact_email

        data = await self._request("POST", "/subaccount", payload=payload)
        return data["subaccount_code"]
