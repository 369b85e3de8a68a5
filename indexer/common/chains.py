"""Chain descriptors with lookup by canonical id and by numeric chain id.

The numeric chain id is what gets persisted; the canonical id is what adapters
and balances carry in memory.
"""

from dataclasses import dataclass
from typing import Dict, List, Union


class UnknownChainError(KeyError):
    """Raised when a chain id (canonical or numeric) is not supported."""
    pass


@dataclass(frozen=True)
class Chain:
    id: str
    chain_id: int
    name: str
    indexed: bool = False


CHAINS: List[Chain] = [
    Chain(id="ethereum", chain_id=1, name="Ethereum", indexed=True),
    Chain(id="optimism", chain_id=10, name="Optimism", indexed=False),
    Chain(id="bsc", chain_id=56, name="BNB Chain", indexed=False),
    Chain(id="gnosis", chain_id=100, name="Gnosis Chain", indexed=False),
    Chain(id="polygon", chain_id=137, name="Polygon", indexed=True),
    Chain(id="fantom", chain_id=250, name="Fantom", indexed=False),
    Chain(id="base", chain_id=8453, name="Base", indexed=True),
    Chain(id="arbitrum", chain_id=42161, name="Arbitrum One", indexed=True),
    Chain(id="avalanche", chain_id=43114, name="Avalanche", indexed=False),
]

chain_by_id: Dict[str, Chain] = {chain.id: chain for chain in CHAINS}
chain_by_chain_id: Dict[int, Chain] = {chain.chain_id: chain for chain in CHAINS}


def get_chain(key: Union[str, int]) -> Chain:
    """Resolve a chain from its canonical id ('arbitrum') or numeric id (42161)"""
    if isinstance(key, int):
        chain = chain_by_chain_id.get(key)
    elif key.isdigit():
        chain = chain_by_chain_id.get(int(key))
    else:
        chain = chain_by_id.get(key)

    if chain is None:
        raise UnknownChainError(key)
    return chain


def to_chain_id(chain: str) -> int:
    return get_chain(chain).chain_id


def from_chain_id(chain_id: int) -> str:
    return get_chain(int(chain_id)).id
