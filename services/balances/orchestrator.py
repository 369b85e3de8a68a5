"""Balances request orchestrator.

Serves "what does this account hold": for every requested adapter and chain
it loads the committed contract set from the cache, resolves balances through
the adapter, and aggregates everything into a priced per-chain view. Every
(adapter, chain) runs concurrently under one request deadline; whatever has
not finished by then is left out of the response.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from web3 import Web3

from indexer.common.config import settings
from indexer.common.logging_setup import get_logger
from services.adapters.base import ChainAdapter
from services.adapters.registry import AdapterRegistry
from services.contracts.store import ContractStore
from services.multicall.client import MulticallClient
from .aggregation import PricingCollaborator, aggregate_balances
from .context import BalancesContext
from .models import BalancesConfig, Contract
from .resolver import get_adapter_balances

logger = get_logger(__name__)


def _declared_shape(chain_adapter: ChainAdapter, contracts: Dict[str, List[Contract]]) -> Dict[str, Any]:
    """Stored groups are lists; single-contract groups are handed over unwrapped"""
    shaped: Dict[str, Any] = {}
    for key, value in contracts.items():
        spec = chain_adapter.groups.get(key)
        shaped[key] = value[0] if spec is not None and not spec.many and value else value
    return shaped


class BalancesOrchestrator:
    """Orchestrator for the balances of one account across adapters and chains."""

    def __init__(
        self,
        registry: AdapterRegistry,
        store: ContractStore,
        pricer: PricingCollaborator,
        client_factory: Optional[Callable[[str], MulticallClient]] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize orchestrator.

        Args:
            registry: Registered adapters
            store: Contract cache storage (read side)
            pricer: Pricing collaborator
            client_factory: Builds the call batcher of a chain
                (default: MulticallClient.for_chain)
            timeout: Request deadline in seconds
        """
        self.registry = registry
        self.store = store
        self.pricer = pricer
        self.client_factory = client_factory or MulticallClient.for_chain
        self.timeout = timeout or settings.balances_timeout
        self._clients: Dict[str, MulticallClient] = {}

    def _client(self, chain: str) -> MulticallClient:
        if chain not in self._clients:
            self._clients[chain] = self.client_factory(chain)
        return self._clients[chain]

    def _select_pairs(
        self,
        adapter_ids: Optional[Sequence[str]],
        chains: Optional[Sequence[str]],
    ) -> List[Tuple[str, str]]:
        adapters = (
            [self.registry.get(adapter_id) for adapter_id in adapter_ids]
            if adapter_ids else self.registry.all()
        )
        return [
            (adapter.id, chain)
            for adapter in adapters
            for chain in adapter.chains
            if not chains or chain in chains
        ]

    async def _resolve_pair(
        self,
        address: str,
        adapter_id: str,
        chain: str,
        results: Dict[Tuple[str, str], BalancesConfig],
    ) -> None:
        """Resolve one adapter chain into results; failures leave no entry"""
        start_time = time.time()
        try:
            contracts = await self.store.select_contracts(adapter_id, chain)
            if not contracts:
                results[(adapter_id, chain)] = BalancesConfig()
                return

            chain_adapter = self.registry.get(adapter_id).for_chain(chain)
            ctx = BalancesContext(
                chain=chain,
                adapter_id=adapter_id,
                client=self._client(chain),
                address=address,
            )
            results[(adapter_id, chain)] = await get_adapter_balances(
                ctx,
                chain_adapter,
                _declared_shape(chain_adapter, contracts),
            )
        except Exception as e:
            logger.log_operation(
                operation="resolve_pair",
                status="failed",
                error=f"{type(e).__name__}: {e}",
                duration_ms=int((time.time() - start_time) * 1000),
                adapter_id=adapter_id,
                chain=chain,
            )

    async def get_balances(
        self,
        address: str,
        adapter_ids: Optional[Sequence[str]] = None,
        chains: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """Balances of an account.

        Args:
            address: Account address
            adapter_ids: Restrict to these adapters (default: all registered)
            chains: Restrict to these chains (default: every supported chain)

        Returns:
            Response with ``updated_at``, ``chains`` (priced, sorted, per
            chain), ``groups`` (raw groups and metrics per adapter) and
            ``partial`` (True if the deadline cut the request short)

        Raises:
            ValueError: If address is not a valid address
            AdapterNotFoundError: If an unknown adapter id is requested
        """
        if not Web3.is_address(address):
            raise ValueError(f"Invalid address: {address}")
        address = Web3.to_checksum_address(address)

        start_time = time.time()
        pairs = self._select_pairs(adapter_ids, chains)
        results: Dict[Tuple[str, str], BalancesConfig] = {}
        partial = False

        try:
            async with asyncio.timeout(self.timeout):
                async with asyncio.TaskGroup() as tg:
                    for adapter_id, chain in pairs:
                        tg.create_task(self._resolve_pair(address, adapter_id, chain, results))
        except TimeoutError:
            partial = True
            logger.log_operation(
                operation="get_balances",
                params={"pairs": len(pairs)},
                status="timeout",
                duration_ms=int((time.time() - start_time) * 1000),
                message=f"Deadline reached with {len(pairs) - len(results)} adapter chains pending",
            )

        groups: Dict[str, List[Dict[str, Any]]] = {}
        raw_balances = []
        for adapter_id, chain in pairs:
            config = results.get((adapter_id, chain))
            if config is None:
                continue
            for group in config.groups:
                if not group.balances:
                    continue
                raw_balances.extend(group.balances)
                groups.setdefault(adapter_id, []).append({
                    "chain": chain,
                    "balances": [balance.to_dict() for balance in group.balances],
                    "metrics": dict(group.metrics),
                })

        chain_balances = await aggregate_balances(raw_balances, self.pricer)

        logger.log_operation(
            operation="get_balances",
            params={"adapters": adapter_ids, "chains": chains},
            status="completed",
            duration_ms=int((time.time() - start_time) * 1000),
            message=(
                f"Resolved {len(raw_balances)} balances from {len(groups)} adapters "
                f"on {len(chain_balances)} chains"
            ),
        )

        return {
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "chains": [c.to_dict() for c in chain_balances],
            "groups": groups,
            "partial": partial,
        }
