"""Tests for the balances orchestrator."""

import asyncio
from dataclasses import fields
from decimal import Decimal

import pytest
from unittest.mock import AsyncMock, MagicMock
from web3 import Web3

from services.adapters import Adapter, AdapterNotFoundError, AdapterRegistry, ChainAdapter, GroupSpec
from services.balances.models import Balance, BalancesConfig, BalancesGroup, Contract, PricedBalance, balance_from_contract
from services.balances.orchestrator import BalancesOrchestrator
from services.multicall.calls import Call, CallResult

WALLET = "0x000000000000000000000000000000000000abcd"
USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"


class WalletAdapter(ChainAdapter):
    groups = {"tokens": GroupSpec()}

    async def get_contracts(self, ctx):
        return None


class HealthAdapter(ChainAdapter):
    """Reports a group metric alongside its balances."""

    groups = {"market": GroupSpec(many=False)}

    async def get_contracts(self, ctx):
        return None

    async def get_balances(self, ctx, contracts):
        balance = balance_from_contract(contracts["market"], 4)
        return BalancesConfig(groups=[BalancesGroup(balances=[balance], metrics={"healthFactor": 1.5})])


class ClashingMetricsAdapter(WalletAdapter):
    """Names its metrics like the group fields."""

    async def get_balances(self, ctx, contracts):
        balances = [balance_from_contract(c, 7) for c in contracts["tokens"]]
        return BalancesConfig(
            groups=[BalancesGroup(balances=balances, metrics={"balances": [], "chain": "fantom"})]
        )


class BrokenAdapter(WalletAdapter):
    async def get_balances(self, ctx, contracts):
        raise RuntimeError("rpc down")


class HangingAdapter(WalletAdapter):
    async def get_balances(self, ctx, contracts):
        await asyncio.sleep(10)


class DollarPricer:
    """Every raw unit is worth one dollar."""

    def __init__(self):
        self.calls = 0

    async def price_balances(self, balances):
        self.calls += 1
        out = []
        for b in balances:
            values = {f.name: getattr(b, f.name) for f in fields(Balance)}
            out.append(PricedBalance(price=Decimal(1), balance_usd=Decimal(b.amount), **values))
        return out


@pytest.fixture
def batcher():
    client = MagicMock()

    async def get_balance_of(owner, tokens):
        return [CallResult.ok(Call(target=token), 10) for token in tokens]

    client.get_balance_of = AsyncMock(side_effect=get_balance_of)
    return client


def stock(store, adapter_id, chain, key, *addresses):
    store.contracts[(adapter_id, chain, key)] = [
        Contract(chain=chain, address=a, symbol="TKN", decimals=0) for a in addresses
    ]


def make_orchestrator(adapters, store, batcher, **kwargs):
    return BalancesOrchestrator(
        AdapterRegistry(adapters),
        store,
        DollarPricer(),
        client_factory=lambda chain: batcher,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_response_shape(fake_store, batcher):
    """Test chains are priced and grouped, groups carry adapter metrics"""
    stock(fake_store, "wallet", "ethereum", "tokens", USDC, WETH)
    stock(fake_store, "wallet", "arbitrum", "tokens", USDC)
    stock(fake_store, "lending", "ethereum", "market", WETH)
    orchestrator = make_orchestrator(
        [
            Adapter(id="wallet", chains={"ethereum": WalletAdapter(), "arbitrum": WalletAdapter()}),
            Adapter(id="lending", chains={"ethereum": HealthAdapter()}),
        ],
        fake_store,
        batcher,
    )

    response = await orchestrator.get_balances(WALLET)

    assert response["partial"] is False
    assert [c["id"] for c in response["chains"]] == ["ethereum", "arbitrum"]
    assert response["chains"][0]["balanceUSD"] == 24.0
    assert response["chains"][0]["chainId"] == 1
    (lending,) = response["groups"]["lending"]
    assert lending["chain"] == "ethereum"
    assert lending["metrics"] == {"healthFactor": 1.5}
    assert lending["balances"][0]["amount"] == "4"
    assert sorted(g["chain"] for g in response["groups"]["wallet"]) == ["arbitrum", "ethereum"]
    assert "updated_at" in response


@pytest.mark.asyncio
async def test_checksummed_owner(fake_store, batcher):
    """Test the owner is passed to the batcher checksummed"""
    stock(fake_store, "wallet", "ethereum", "tokens", USDC)
    orchestrator = make_orchestrator([Adapter(id="wallet", chains={"ethereum": WalletAdapter()})], fake_store, batcher)

    await orchestrator.get_balances(WALLET)

    owner, _ = batcher.get_balance_of.await_args.args
    assert owner == Web3.to_checksum_address(WALLET)


@pytest.mark.asyncio
async def test_invalid_address(fake_store, batcher):
    orchestrator = make_orchestrator([Adapter(id="wallet", chains={"ethereum": WalletAdapter()})], fake_store, batcher)

    with pytest.raises(ValueError, match="Invalid address"):
        await orchestrator.get_balances("0x1234")


@pytest.mark.asyncio
async def test_unknown_adapter(fake_store, batcher):
    orchestrator = make_orchestrator([Adapter(id="wallet", chains={"ethereum": WalletAdapter()})], fake_store, batcher)

    with pytest.raises(AdapterNotFoundError):
        await orchestrator.get_balances(WALLET, adapter_ids=["missing"])


@pytest.mark.asyncio
async def test_failing_adapter_isolated(fake_store, batcher):
    """Test one adapter raising leaves the others in the response"""
    stock(fake_store, "wallet", "ethereum", "tokens", USDC)
    stock(fake_store, "broken", "ethereum", "tokens", WETH)
    orchestrator = make_orchestrator(
        [
            Adapter(id="wallet", chains={"ethereum": WalletAdapter()}),
            Adapter(id="broken", chains={"ethereum": BrokenAdapter()}),
        ],
        fake_store,
        batcher,
    )

    response = await orchestrator.get_balances(WALLET)

    assert list(response["groups"]) == ["wallet"]
    assert response["chains"][0]["balanceUSD"] == 10.0
    assert response["partial"] is False


@pytest.mark.asyncio
async def test_store_failure_isolated(fake_store, batcher):
    """Test a contracts read failing only drops that adapter chain"""
    stock(fake_store, "wallet", "ethereum", "tokens", USDC)
    stock(fake_store, "wallet", "base", "tokens", USDC)
    original = fake_store.select_contracts

    async def select_contracts(adapter_id, chain):
        if chain == "base":
            raise ConnectionError("replica down")
        return await original(adapter_id, chain)

    fake_store.select_contracts = select_contracts
    orchestrator = make_orchestrator(
        [Adapter(id="wallet", chains={"ethereum": WalletAdapter(), "base": WalletAdapter()})],
        fake_store,
        batcher,
    )

    response = await orchestrator.get_balances(WALLET)

    assert [c["id"] for c in response["chains"]] == ["ethereum"]


@pytest.mark.asyncio
async def test_client_failure_isolated(fake_store, batcher):
    """Test a chain without a usable RPC client only drops that chain"""
    stock(fake_store, "wallet", "ethereum", "tokens", USDC)
    stock(fake_store, "wallet", "polygon", "tokens", USDC)

    def client_factory(chain):
        if chain == "polygon":
            raise ValueError("RPC_URL_POLYGON must be set")
        return batcher

    orchestrator = BalancesOrchestrator(
        AdapterRegistry([Adapter(id="wallet", chains={"ethereum": WalletAdapter(), "polygon": WalletAdapter()})]),
        fake_store,
        DollarPricer(),
        client_factory=client_factory,
    )

    response = await orchestrator.get_balances(WALLET)

    assert [c["id"] for c in response["chains"]] == ["ethereum"]
    assert [g["chain"] for g in response["groups"]["wallet"]] == ["ethereum"]
    assert response["partial"] is False


@pytest.mark.asyncio
async def test_metrics_do_not_shadow_group_fields(fake_store, batcher):
    """Test metrics named like group fields leave chain and balances intact"""
    stock(fake_store, "clash", "ethereum", "tokens", USDC)
    orchestrator = make_orchestrator(
        [Adapter(id="clash", chains={"ethereum": ClashingMetricsAdapter()})], fake_store, batcher
    )

    response = await orchestrator.get_balances(WALLET)

    (group,) = response["groups"]["clash"]
    assert group["chain"] == "ethereum"
    assert [b["amount"] for b in group["balances"]] == ["7"]
    assert group["metrics"] == {"balances": [], "chain": "fantom"}


@pytest.mark.asyncio
async def test_deadline_returns_partial(fake_store, batcher):
    """Test adapters missing the deadline are dropped and partial is set"""
    stock(fake_store, "wallet", "ethereum", "tokens", USDC)
    stock(fake_store, "slow", "ethereum", "tokens", WETH)
    orchestrator = make_orchestrator(
        [
            Adapter(id="wallet", chains={"ethereum": WalletAdapter()}),
            Adapter(id="slow", chains={"ethereum": HangingAdapter()}),
        ],
        fake_store,
        batcher,
        timeout=0.1,
    )

    response = await asyncio.wait_for(orchestrator.get_balances(WALLET), timeout=2)

    assert response["partial"] is True
    assert list(response["groups"]) == ["wallet"]


@pytest.mark.asyncio
async def test_filters(fake_store, batcher):
    """Test adapter and chain filters restrict the work done"""
    stock(fake_store, "wallet", "ethereum", "tokens", USDC)
    stock(fake_store, "wallet", "arbitrum", "tokens", USDC)
    stock(fake_store, "other", "ethereum", "tokens", WETH)
    orchestrator = make_orchestrator(
        [
            Adapter(id="wallet", chains={"ethereum": WalletAdapter(), "arbitrum": WalletAdapter()}),
            Adapter(id="other", chains={"ethereum": WalletAdapter()}),
        ],
        fake_store,
        batcher,
    )

    response = await orchestrator.get_balances(WALLET, adapter_ids=["wallet"], chains=["arbitrum"])

    assert [c["id"] for c in response["chains"]] == ["arbitrum"]
    assert list(response["groups"]) == ["wallet"]
    assert batcher.get_balance_of.await_count == 1


@pytest.mark.asyncio
async def test_nothing_cached(fake_store, batcher):
    """Test adapters without stored contracts contribute nothing and cost no calls"""
    orchestrator = make_orchestrator([Adapter(id="wallet", chains={"ethereum": WalletAdapter()})], fake_store, batcher)

    response = await orchestrator.get_balances(WALLET)

    assert response["chains"] == []
    assert response["groups"] == {}
    batcher.get_balance_of.assert_not_awaited()
    assert orchestrator.pricer.calls == 0
