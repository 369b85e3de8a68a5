"""DefiLlama coins API client.

Prices balances with ``/prices/current/{chain:address,...}``. Tokens the API
does not know are simply left out of the result.
"""

import asyncio
from dataclasses import fields, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
import structlog
from tenacity import (
    RetryError,
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from indexer.common.config import settings
from services.balances.models import Balance, PricedBalance

logger = structlog.get_logger()

# Chain prefixes DefiLlama uses where they differ from ours
LLAMA_CHAIN_ALIASES = {
    "avalanche": "avax",
    "gnosis": "xdai",
}

MAX_COINS_PER_REQUEST = 100


def coin_id(chain: str, address: str) -> str:
    """DefiLlama coin key, e.g. "ethereum:0xc02a..." """
    return f"{LLAMA_CHAIN_ALIASES.get(chain, chain)}:{address.lower()}"


def to_decimal_amount(amount: int, decimals: int) -> Decimal:
    return Decimal(amount) / (Decimal(10) ** decimals)


class DefiLlamaPricingClient:
    """Async pricing collaborator backed by the DefiLlama coins API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        chunk_size: int = MAX_COINS_PER_REQUEST,
    ):
        """Initialize DefiLlama client.

        Args:
            base_url: API root (defaults to PRICES_BASE_URL)
            timeout: Request timeout in seconds
            chunk_size: Coins per request, bounded by URL length
        """
        self.base_url = (base_url or settings.prices_base_url).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.http_timeout)
        self.chunk_size = chunk_size
        self.logger = logger.bind(component="defillama_client")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
    )
    async def _fetch_chunk(self, coins: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        url = f"{self.base_url}/prices/current/{','.join(coins)}"
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url) as response:
                response.raise_for_status()
                data = await response.json()
                return data.get("coins", {})

    async def get_prices(self, coins: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Current price entries keyed by lower-cased coin id.

        Chunks that still fail after retries contribute no prices.
        """
        unique = sorted(set(coins))
        if not unique:
            return {}

        chunks = [unique[i:i + self.chunk_size] for i in range(0, len(unique), self.chunk_size)]
        responses = await asyncio.gather(
            *(self._fetch_chunk(chunk) for chunk in chunks),
            return_exceptions=True,
        )

        prices: Dict[str, Dict[str, Any]] = {}
        for chunk, response in zip(chunks, responses):
            if isinstance(response, (RetryError, aiohttp.ClientError, asyncio.TimeoutError)):
                self.logger.warning("prices_chunk_failed", num_coins=len(chunk), error=str(response))
                continue
            if isinstance(response, BaseException):
                raise response
            for key, entry in response.items():
                prices[key.lower()] = entry

        self.logger.debug("prices_fetched", requested=len(unique), priced=len(prices))
        return prices

    def _value(self, balance: Balance, prices: Dict[str, Dict[str, Any]]) -> Optional[PricedBalance]:
        entry = prices.get(coin_id(balance.chain, balance.address))
        if entry and entry.get("price") is not None and balance.amount is not None:
            decimals = balance.decimals if balance.decimals is not None else entry.get("decimals")
            if decimals is None:
                return None
            price = Decimal(str(entry["price"]))
            return _priced(balance, price, to_decimal_amount(balance.amount, decimals) * price)

        # Positions without a market price are worth their underlyings
        priced_underlyings = [
            self._value(u, prices) for u in balance.underlyings if u.amount is not None
        ]
        priced_underlyings = [u for u in priced_underlyings if u is not None]
        if not priced_underlyings:
            return None

        total = sum((u.balance_usd for u in priced_underlyings), Decimal(0))
        return replace(
            _priced(balance, None, total),
            underlyings=priced_underlyings,
        )

    async def price_balances(self, balances: Sequence[Balance]) -> List[PricedBalance]:
        """Annotate balances with unit price and USD value.

        Args:
            balances: Sanitized balances

        Returns:
            Priced balances in input order; balances that could not be valued
            are omitted
        """
        coins = [coin_id(b.chain, b.address) for b in balances]
        coins += [coin_id(u.chain, u.address) for b in balances for u in b.underlyings]
        prices = await self.get_prices(coins)

        priced = []
        for balance in balances:
            value = self._value(balance, prices)
            if value is not None:
                priced.append(value)
        return priced


def _priced(balance: Balance, price: Optional[Decimal], balance_usd: Decimal) -> PricedBalance:
    values = {f.name: getattr(balance, f.name) for f in fields(Balance)}
    return PricedBalance(price=price, balance_usd=balance_usd, **values)
