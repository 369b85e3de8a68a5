"""Adapter interface.

An adapter supports one or more chains. For each chain it provides a
``ChainAdapter`` that declares its contract groups up front (``groups``),
returns the contracts to cache (``get_contracts``) and turns cached contracts
into balances (``get_balances``).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from services.balances.context import BalancesContext, BaseContext
from services.balances.models import BalancesConfig, BalancesGroup, Contract, ContractsConfig
from services.balances.resolver import Resolver, resolve_balances


class AdapterRegistrationError(ValueError):
    """Raised when an adapter or its declared groups are inconsistent."""
    pass


class AdapterNotFoundError(KeyError):
    pass


@dataclass(frozen=True)
class GroupSpec:
    """Declared shape of one contract group.

    Attributes:
        resolver: Turns the group value into balances; None uses the
            default ERC-20 balanceOf strategy
        many: True if the group holds a list of contracts, False for one
    """

    resolver: Optional[Resolver] = None
    many: bool = True


class ChainAdapter(ABC):
    """Per-chain half of an adapter."""

    groups: Dict[str, GroupSpec] = {}

    @abstractmethod
    async def get_contracts(self, ctx: BaseContext) -> ContractsConfig:
        """Declare the contracts to cache for this chain.

        ctx.revalidate_props carries the revalidate_props returned by the
        previous run on this chain (empty on the first run).
        """
        ...

    async def get_balances(
        self,
        ctx: BalancesContext,
        contracts: Mapping[str, object],
    ) -> BalancesConfig:
        """Resolve the cached contracts with the declared group resolvers.

        Adapters with group-level metrics (health factor, ...) override this
        and attach them to the returned group.
        """
        resolvers = {key: spec.resolver for key, spec in self.groups.items()}
        balances = await resolve_balances(ctx, contracts, resolvers)
        return BalancesConfig(groups=[BalancesGroup(balances=balances)])


@dataclass
class Adapter:
    id: str
    chains: Dict[str, ChainAdapter] = field(default_factory=dict)
    parent_id: Optional[str] = None

    def for_chain(self, chain: str) -> ChainAdapter:
        try:
            return self.chains[chain]
        except KeyError:
            raise AdapterNotFoundError(f"{self.id} does not support chain {chain}") from None


def validate_contracts_config(
    chain_adapter: ChainAdapter,
    chain: str,
    config: ContractsConfig,
) -> None:
    """Check a get_contracts result against the declared groups.

    Raises:
        AdapterRegistrationError: On undeclared keys, wrong cardinality or
            contracts from another chain
    """
    if config.revalidate is not None and config.revalidate <= 0:
        raise AdapterRegistrationError(f"revalidate must be positive, got {config.revalidate}")

    for key, value in config.contracts.items():
        spec = chain_adapter.groups.get(key)
        if spec is None:
            raise AdapterRegistrationError(f"Undeclared contracts group: {key}")

        if isinstance(value, Contract):
            if spec.many:
                raise AdapterRegistrationError(f"Group {key} expects a list of contracts")
            contracts = [value]
        else:
            if not spec.many:
                raise AdapterRegistrationError(f"Group {key} expects a single contract")
            contracts = list(value)

        for contract in contracts:
            if not isinstance(contract, Contract):
                raise AdapterRegistrationError(f"Group {key} holds a non-Contract value")
            if contract.chain != chain:
                raise AdapterRegistrationError(
                    f"Group {key}: contract {contract.address} is on {contract.chain}, expected {chain}"
                )
