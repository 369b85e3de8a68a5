"""Tests for the DefiLlama pricing client."""

from decimal import Decimal

import aiohttp
import pytest
from unittest.mock import AsyncMock, patch

from services.balances.models import Balance, Category
from services.pricing.defillama_client import DefiLlamaPricingClient, coin_id, to_decimal_amount

USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
DAI = "0x6B175474E89094C44Da98b954EedeAC495271d0F"
LP = "0xB4e16d0168e52d35CaCD2c6185b44281Ec28C9Dc"


@pytest.fixture
def client():
    return DefiLlamaPricingClient(base_url="https://coins.example/")


def test_coin_id():
    """Test chain prefixes and lower-cased addresses"""
    assert coin_id("ethereum", USDC) == f"ethereum:{USDC.lower()}"
    assert coin_id("gnosis", USDC).startswith("xdai:")
    assert coin_id("avalanche", USDC).startswith("avax:")


def test_to_decimal_amount():
    assert to_decimal_amount(5_000_000, 6) == Decimal(5)


class TestGetPrices:
    """Test suite for get_prices"""

    @pytest.mark.asyncio
    async def test_chunks_unique_coins(self):
        """Test coins are de-duplicated and split by chunk size"""
        client = DefiLlamaPricingClient(base_url="https://coins.example", chunk_size=2)
        coins = [f"ethereum:0x{i:040x}" for i in range(5)]

        with patch.object(client, "_fetch_chunk", new_callable=AsyncMock, return_value={}) as mock_fetch:
            await client.get_prices(coins + coins[:2])

        sizes = sorted(len(call.args[0]) for call in mock_fetch.await_args_list)
        assert sizes == [1, 2, 2]

    @pytest.mark.asyncio
    async def test_failed_chunk_skipped(self):
        """Test a chunk failing after retries contributes no prices"""
        client = DefiLlamaPricingClient(base_url="https://coins.example", chunk_size=1)
        ok = {f"ethereum:{USDC.lower()}": {"price": 1.0, "decimals": 6}}

        async def fetch(chunk):
            if chunk[0].endswith(WETH.lower()):
                raise aiohttp.ClientError("502")
            return ok

        with patch.object(client, "_fetch_chunk", new_callable=AsyncMock, side_effect=fetch):
            prices = await client.get_prices([coin_id("ethereum", USDC), coin_id("ethereum", WETH)])

        assert list(prices) == [f"ethereum:{USDC.lower()}"]

    @pytest.mark.asyncio
    async def test_unexpected_error_raised(self, client):
        """Test programming errors are not swallowed"""
        with patch.object(client, "_fetch_chunk", new_callable=AsyncMock, side_effect=KeyError("coins")):
            with pytest.raises(KeyError):
                await client.get_prices([coin_id("ethereum", USDC)])

    @pytest.mark.asyncio
    async def test_no_coins_no_request(self, client):
        with patch.object(client, "_fetch_chunk", new_callable=AsyncMock) as mock_fetch:
            assert await client.get_prices([]) == {}

        mock_fetch.assert_not_awaited()


class TestPriceBalances:
    """Test suite for price_balances"""

    @pytest.mark.asyncio
    async def test_usd_value(self, client):
        """Test balance_usd is amount scaled by decimals times price"""
        prices = {f"ethereum:{USDC.lower()}": {"price": 1.0, "decimals": 6, "symbol": "USDC"}}
        balance = Balance(chain="ethereum", address=USDC, decimals=6, amount=5_000_000)

        with patch.object(client, "get_prices", new_callable=AsyncMock, return_value=prices):
            (result,) = await client.price_balances([balance])

        assert result.price == Decimal("1.0")
        assert result.balance_usd == Decimal(5)
        assert result.amount == 5_000_000

    @pytest.mark.asyncio
    async def test_decimals_from_price_entry(self, client):
        """Test missing decimals fall back to the price entry"""
        prices = {f"ethereum:{WETH.lower()}": {"price": 2000, "decimals": 18}}
        balance = Balance(chain="ethereum", address=WETH, amount=3 * 10**17)

        with patch.object(client, "get_prices", new_callable=AsyncMock, return_value=prices):
            (result,) = await client.price_balances([balance])

        assert result.balance_usd == Decimal(600)

    @pytest.mark.asyncio
    async def test_unpriced_omitted(self, client):
        """Test balances the API does not know are left out"""
        prices = {f"ethereum:{USDC.lower()}": {"price": 1.0}}
        balances = [
            Balance(chain="ethereum", address=USDC, decimals=6, amount=1),
            Balance(chain="ethereum", address=DAI, decimals=18, amount=1),
        ]

        with patch.object(client, "get_prices", new_callable=AsyncMock, return_value=prices):
            result = await client.price_balances(balances)

        assert [b.address for b in result] == [USDC]

    @pytest.mark.asyncio
    async def test_gnosis_alias_used(self, client):
        """Test gnosis balances are priced under the xdai prefix"""
        prices = {f"xdai:{USDC.lower()}": {"price": 1.0}}
        balance = Balance(chain="gnosis", address=USDC, decimals=6, amount=2_000_000)

        with patch.object(client, "get_prices", new_callable=AsyncMock, return_value=prices) as mock_prices:
            (result,) = await client.price_balances([balance])

        assert mock_prices.await_args.args[0] == [f"xdai:{USDC.lower()}"]
        assert result.balance_usd == Decimal(2)

    @pytest.mark.asyncio
    async def test_valued_through_underlyings(self, client):
        """Test a position without a market price is worth its underlyings"""
        prices = {
            f"ethereum:{USDC.lower()}": {"price": 1.0},
            f"ethereum:{WETH.lower()}": {"price": 2000},
        }
        lp = Balance(
            chain="ethereum",
            address=LP,
            decimals=18,
            amount=10**18,
            category=Category.LP,
            underlyings=[
                Balance(chain="ethereum", address=USDC, decimals=6, amount=1_000_000_000),
                Balance(chain="ethereum", address=WETH, decimals=18, amount=10**18),
                Balance(chain="ethereum", address=DAI, decimals=18, amount=None),
            ],
        )

        with patch.object(client, "get_prices", new_callable=AsyncMock, return_value=prices):
            (result,) = await client.price_balances([lp])

        assert result.price is None
        assert result.balance_usd == Decimal(3000)
        assert [u.balance_usd for u in result.underlyings] == [Decimal(1000), Decimal(2000)]


@pytest.mark.asyncio
async def test_fetch_chunk_request(client):
    """Test the request URL and response parsing"""
    response = AsyncMock()
    response.raise_for_status = lambda: None
    response.json = AsyncMock(return_value={"coins": {"ethereum:0xabc": {"price": 1}}})
    response.__aenter__.return_value = response

    session = AsyncMock()
    urls = []
    session.get = lambda url: urls.append(url) or response
    session.__aenter__.return_value = session

    with patch("services.pricing.defillama_client.aiohttp.ClientSession", return_value=session) as mock_session:
        coins = await client._fetch_chunk(["ethereum:0xabc", "base:0xdef"])

    assert coins == {"ethereum:0xabc": {"price": 1}}
    assert mock_session.called
    assert urls == ["https://coins.example/prices/current/ethereum:0xabc,base:0xdef"]
    assert response.json.await_count == 1
