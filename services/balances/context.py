from dataclasses import dataclass, field
from typing import Any, Dict

from services.multicall.client import MulticallClient


@dataclass(frozen=True)
class BaseContext:
    """What an adapter gets when declaring contracts: the chain and its call batcher.

    ``revalidate_props`` holds what the previous revalidation of this adapter
    chain stored, so an adapter can resume paging where it stopped.
    """

    chain: str
    adapter_id: str
    client: MulticallClient
    revalidate_props: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BalancesContext(BaseContext):
    """BaseContext plus the account whose balances are being resolved."""

    address: str = ""
