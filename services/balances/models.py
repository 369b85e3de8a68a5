"""Contracts, balances and the shapes adapters exchange with the core."""

from dataclasses import dataclass, field, fields
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union


class Category(str, Enum):
    """Coarse tag on a contract or balance. The core does not interpret it."""

    WALLET = "wallet"
    LEND = "lend"
    BORROW = "borrow"
    FARM = "farm"
    STAKE = "stake"
    LP = "lp"
    VEST = "vest"
    LOCK = "lock"
    PERPETUAL = "perpetual"
    REWARD = "reward"
    FEES = "fees"


@dataclass(frozen=True)
class Contract:
    """An on-chain address declared by an adapter.

    Known fields are explicit; anything protocol-specific goes in ``data``.
    Instances are values: build new ones with ``dataclasses.replace``.
    """

    chain: str
    address: str
    name: Optional[str] = None
    display_name: Optional[str] = None
    symbol: Optional[str] = None
    decimals: Optional[int] = None
    category: Optional[Category] = None
    type: Optional[str] = None
    stable: Optional[bool] = None
    underlyings: List["Contract"] = field(default_factory=list)
    rewards: List["Contract"] = field(default_factory=list)
    proxy: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict view, used for JSON columns and API output"""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in ("underlyings", "rewards"):
                value = [item.to_dict() for item in value]
            elif isinstance(value, Category):
                value = value.value
            elif isinstance(value, Decimal):
                value = str(value)
            if value is None or value == [] or value == {}:
                continue
            out[f.name] = value
        return out

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Contract":
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        extra: Dict[str, Any] = dict(raw.get("data") or {})
        for key, value in raw.items():
            if key == "data":
                continue
            if key not in known:
                extra[key] = value
                continue
            if key in ("underlyings", "rewards"):
                value = [Contract.from_dict(item) for item in value or []]
            elif key == "category" and value is not None:
                value = Category(value)
            kwargs[key] = value
        return cls(data=extra, **kwargs)


@dataclass(frozen=True)
class Balance(Contract):
    """A contract with the amount held by one account.

    ``amount`` is a raw unsigned integer; ``None`` means it could not be
    resolved. Underlyings and rewards mirror the contract declaration.
    """

    amount: Optional[int] = None
    underlyings: List["Balance"] = field(default_factory=list)
    rewards: List["Balance"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if self.amount is not None:
            out["amount"] = str(self.amount)
        return out


@dataclass(frozen=True)
class PricedBalance(Balance):
    price: Optional[Decimal] = None
    balance_usd: Optional[Decimal] = None


@dataclass
class BalancesGroup:
    """Flat balances plus adapter-declared metrics (e.g. health_factor)."""

    balances: List[Balance] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BalancesConfig:
    groups: List[BalancesGroup] = field(default_factory=list)

    def flatten(self) -> List[Balance]:
        return [balance for group in self.groups for balance in group.balances]


ContractsValue = Union[Contract, Sequence[Contract]]


@dataclass
class ContractsConfig:
    """What an adapter declares for one chain.

    ``revalidate`` is the requested TTL in seconds; ``None`` means the set
    is considered stable.
    """

    contracts: Dict[str, ContractsValue] = field(default_factory=dict)
    revalidate: Optional[int] = None
    revalidate_props: Optional[Dict[str, Any]] = None
    props: Optional[Dict[str, Any]] = None

    def items(self):
        """(key, contract) pairs in declaration order"""
        for key, value in self.contracts.items():
            if isinstance(value, Contract):
                yield key, value
            else:
                for contract in value:
                    yield key, contract


def balance_from_contract(
    contract: Contract,
    amount: Optional[int],
    underlyings: Optional[Sequence[Balance]] = None,
    rewards: Optional[Sequence[Balance]] = None,
    category: Optional[Category] = None,
) -> Balance:
    """Build a Balance from a Contract.

    Underlyings and rewards not given explicitly are mirrored from the
    contract as unresolved balances, keeping cardinality and order.
    """
    if underlyings is None:
        underlyings = [balance_from_contract(u, None) for u in contract.underlyings]
    if rewards is None:
        rewards = [balance_from_contract(r, None) for r in contract.rewards]

    values = {f.name: getattr(contract, f.name) for f in fields(Contract)}
    values.update(
        amount=amount,
        underlyings=list(underlyings),
        rewards=list(rewards),
        category=category or contract.category,
    )
    return Balance(**values)
