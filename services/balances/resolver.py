"""Balance resolution engine.

An adapter hands over a mapping of group key to contracts (one contract or a
list) and, optionally, one resolver per key. Every key is resolved in its own
task; a resolver that raises is logged and contributes nothing, its siblings
are unaffected. Keys without a resolver fall back to an ERC-20 ``balanceOf``
lookup through the call batcher.
"""

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from indexer.common.logging_setup import get_logger
from .context import BalancesContext
from .models import Balance, BalancesConfig, Category, Contract, balance_from_contract

logger = get_logger(__name__)

ResolverResult = Union[Balance, Sequence[Balance], None]
Resolver = Callable[[BalancesContext, Any], Union[ResolverResult, Awaitable[ResolverResult]]]


def _as_contracts(value: Any) -> List[Contract]:
    if value is None:
        return []
    if isinstance(value, Contract):
        return [value]
    return list(value)


def _as_balances(value: ResolverResult) -> List[Balance]:
    if value is None:
        return []
    if isinstance(value, Balance):
        return [value]
    return [balance for balance in value if balance is not None]


async def resolve_token_balances(
    ctx: BalancesContext,
    contracts: Sequence[Contract],
) -> List[Balance]:
    """Default strategy: balanceOf(ctx.address) on every contract.

    Contracts whose call failed are left out.
    """
    if not contracts:
        return []

    results = await ctx.client.get_balance_of(ctx.address, [c.address for c in contracts])

    balances = []
    for contract, result in zip(contracts, results):
        if not result.success:
            continue
        balances.append(
            balance_from_contract(
                contract,
                result.output,
                category=contract.category or Category.WALLET,
            )
        )
    return balances


async def _resolve_group(
    ctx: BalancesContext,
    key: str,
    value: Any,
    resolver: Optional[Resolver],
    results: Dict[str, List[Balance]],
) -> None:
    start_time = time.time()
    try:
        if resolver is None:
            out: Any = await resolve_token_balances(ctx, _as_contracts(value))
        else:
            out = resolver(ctx, value)
            if inspect.isawaitable(out):
                out = await out
        results[key] = _as_balances(out)
    except Exception as e:
        results[key] = []
        logger.log_operation(
            operation="resolve_group",
            params={"key": key},
            status="failed",
            error=f"{type(e).__name__}: {e}",
            duration_ms=int((time.time() - start_time) * 1000),
            adapter_id=ctx.adapter_id,
            chain=ctx.chain,
            message=f"Failed to resolve group {key}",
        )


async def resolve_balances(
    ctx: BalancesContext,
    contracts: Mapping[str, Any],
    resolvers: Optional[Mapping[str, Optional[Resolver]]] = None,
    timeout: Optional[float] = None,
) -> List[Balance]:
    """Resolve every group concurrently and flatten the balances.

    Args:
        ctx: Balances context (chain, account, adapter, call batcher)
        contracts: Group key to Contract or list of Contract
        resolvers: Group key to resolver; missing keys use the default strategy
        timeout: Deadline in seconds for the whole fan-out. Groups that did
            not finish in time are dropped, the others are returned.

    Returns:
        Balances of all groups, grouped in key order
    """
    resolvers = resolvers or {}
    keys = list(contracts.keys())
    results: Dict[str, List[Balance]] = {}
    start_time = time.time()

    try:
        async with asyncio.timeout(timeout):
            async with asyncio.TaskGroup() as tg:
                for key in keys:
                    tg.create_task(
                        _resolve_group(ctx, key, contracts[key], resolvers.get(key), results)
                    )
    except TimeoutError:
        pending = [key for key in keys if key not in results]
        logger.log_operation(
            operation="resolve_balances",
            params={"pending": pending},
            status="timeout",
            duration_ms=int((time.time() - start_time) * 1000),
            adapter_id=ctx.adapter_id,
            chain=ctx.chain,
            message=f"Deadline reached, dropping {len(pending)} unresolved groups",
        )

    return [balance for key in keys for balance in results.get(key, [])]


async def get_adapter_balances(
    ctx: BalancesContext,
    chain_adapter: Any,
    contracts: Mapping[str, Any],
    timeout: Optional[float] = None,
) -> BalancesConfig:
    """Run a chain adapter's get_balances, isolating its failures.

    Args:
        ctx: Balances context for the adapter and chain
        chain_adapter: ChainAdapter whose get_balances is called
        contracts: Cached contracts of the adapter on ctx.chain, by group key
        timeout: Deadline in seconds for this adapter

    Returns:
        The adapter's groups, or an empty BalancesConfig if it raised or
        missed the deadline
    """
    start_time = time.time()
    try:
        async with asyncio.timeout(timeout):
            config = await chain_adapter.get_balances(ctx, contracts)
    except Exception as e:
        logger.log_operation(
            operation="get_adapter_balances",
            status="failed",
            error=f"{type(e).__name__}: {e}",
            duration_ms=int((time.time() - start_time) * 1000),
            adapter_id=ctx.adapter_id,
            chain=ctx.chain,
        )
        return BalancesConfig()

    return config or BalancesConfig()
