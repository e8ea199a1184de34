"""
Banking Provider

Capability interface for obtaining the virtual account a user pays fiat
into. The reconciliation core depends only on ``BankingProvider``; the
simulated provider is the default, and ``HttpBankingProvider`` talks to a
real provider API.
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from core.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class VirtualAccount:
    """Provider-issued account used to attribute an incoming transfer."""
    virtual_account: str
    bank_name: str
    account_name: str


class BankingProvider(ABC):

    @abstractmethod
    async def obtain_virtual_account(self, user_address: str) -> VirtualAccount:
        ...

    async def close(self):
        pass


class SimulatedBankingProvider(BankingProvider):
    """
    Stand-in provider for development and tests.

    Waits ``delay`` seconds to mimic the provider round trip and issues a
    dummy account number derived from the address.
    """

    def __init__(self, delay: float = 0.5, bank_name: str = "TEST BANK", account_name: str = "John Doe"):
        self.delay = delay
        self.bank_name = bank_name
        self.account_name = account_name

    async def obtain_virtual_account(self, user_address: str) -> VirtualAccount:
        if self.delay:
            await asyncio.sleep(self.delay)
        return VirtualAccount(
            virtual_account=f"VA{user_address[2:8]}{secrets.randbelow(10000)}",
            bank_name=self.bank_name,
            account_name=self.account_name,
        )


class HttpBankingProvider(BankingProvider):
    """
    Provider reached over HTTP.

    POST {base_url}/virtual-accounts with ``{"reference": <address>}``;
    the provider answers ``{"accountNumber", "bankName", "accountName"}``.
    """

    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
        )

    async def obtain_virtual_account(self, user_address: str) -> VirtualAccount:
        try:
            response = await self._client.post("/virtual-accounts", json={"reference": user_address})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Banking provider returned {e.response.status_code} for {user_address}")
            raise UpstreamUnavailableError("banking provider", f"HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Banking provider request failed: {e}")
            raise UpstreamUnavailableError("banking provider", str(e)) from e

        try:
            return VirtualAccount(
                virtual_account=str(data["accountNumber"]),
                bank_name=str(data["bankName"]),
                account_name=str(data.get("accountName", "")),
            )
        except (KeyError, TypeError) as e:
            raise UpstreamUnavailableError("banking provider", f"malformed response: {e}") from e

    async def close(self):
        await self._client.aclose()


def create_banking_provider(settings) -> BankingProvider:
    """Build the provider selected by BANKING_PROVIDER."""
    kind = settings.BANKING_PROVIDER.lower()
    if kind == "simulated":
        return SimulatedBankingProvider(delay=settings.BANKING_SIMULATED_DELAY)
    if kind == "http":
        if not settings.BANKING_PROVIDER_URL:
            raise ValueError("BANKING_PROVIDER_URL is required for the http banking provider")
        return HttpBankingProvider(
            settings.BANKING_PROVIDER_URL,
            settings.BANKING_PROVIDER_API_KEY,
            timeout=settings.BANKING_PROVIDER_TIMEOUT,
        )
    raise ValueError(f"Unknown BANKING_PROVIDER: {settings.BANKING_PROVIDER}")
