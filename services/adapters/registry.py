"""Typed adapter registry, built once at startup."""

from importlib.metadata import entry_points
from typing import Dict, Iterable, List, Optional, Tuple

from indexer.common.chains import chain_by_id
from indexer.common.logging_setup import get_logger
from .base import Adapter, AdapterNotFoundError, AdapterRegistrationError, ChainAdapter, GroupSpec

logger = get_logger(__name__)

ENTRY_POINT_GROUP = "holdings_indexer.adapters"


class AdapterRegistry:
    """Registry of adapters keyed by id.

    Registration validates the adapter once, so the scheduler and the
    balances orchestrator only ever see well-formed adapters.
    """

    def __init__(self, adapters: Optional[Iterable[Adapter]] = None) -> None:
        self._adapters: Dict[str, Adapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: Adapter) -> Adapter:
        """Validate and add an adapter.

        Raises:
            AdapterRegistrationError: If the id is taken, a chain is unknown,
                or a group declaration is malformed
        """
        if not adapter.id:
            raise AdapterRegistrationError("Adapter must define an id")
        if adapter.id in self._adapters:
            raise AdapterRegistrationError(f"Adapter {adapter.id} is already registered")
        if not adapter.chains:
            raise AdapterRegistrationError(f"Adapter {adapter.id} supports no chain")

        for chain, chain_adapter in adapter.chains.items():
            if chain not in chain_by_id:
                raise AdapterRegistrationError(f"Adapter {adapter.id}: unknown chain {chain}")
            if not isinstance(chain_adapter, ChainAdapter):
                raise AdapterRegistrationError(
                    f"Adapter {adapter.id}[{chain}] must be a ChainAdapter, got {type(chain_adapter).__name__}"
                )
            for key, spec in chain_adapter.groups.items():
                if not isinstance(spec, GroupSpec):
                    raise AdapterRegistrationError(f"Adapter {adapter.id}[{chain}] group {key} must be a GroupSpec")
                if spec.resolver is not None and not callable(spec.resolver):
                    raise AdapterRegistrationError(f"Adapter {adapter.id}[{chain}] group {key} resolver is not callable")

        self._adapters[adapter.id] = adapter
        return adapter

    def get(self, adapter_id: str) -> Adapter:
        try:
            return self._adapters[adapter_id]
        except KeyError:
            raise AdapterNotFoundError(adapter_id) from None

    def all(self) -> List[Adapter]:
        return list(self._adapters.values())

    def ids(self) -> List[str]:
        return list(self._adapters.keys())

    def pairs(self) -> List[Tuple[str, str]]:
        """Every registered (adapter id, chain)"""
        return [(adapter.id, chain) for adapter in self._adapters.values() for chain in adapter.chains]

    def __contains__(self, adapter_id: str) -> bool:
        return adapter_id in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    @classmethod
    def load_entry_points(cls, group: str = ENTRY_POINT_GROUP) -> "AdapterRegistry":
        """Build a registry from adapters published as package entry points"""
        registry = cls()
        for ep in entry_points(group=group):
            adapter = ep.load()
            if callable(adapter) and not isinstance(adapter, Adapter):
                adapter = adapter()
            registry.register(adapter)
            logger.info(f"Registered adapter {adapter.id} ({', '.join(adapter.chains)})")
        return registry
