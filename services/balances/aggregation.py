"""Balance aggregation and sanitization.

Raw balances coming out of the adapters are cleaned, merged, priced and
grouped by chain before they are returned to a caller:

1. drop balances with an unresolved or non-positive amount
2. merge balances of the same (chain, address, category) by summing amounts
3. price them with the pricing collaborator
4. drop what could not be priced
5. sort by USD value and group by chain, richest chain first
"""

import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from indexer.common.chains import get_chain
from indexer.common.logging_setup import get_logger
from .models import Balance, Category, PricedBalance

logger = get_logger(__name__)


class PricingCollaborator(Protocol):
    async def price_balances(self, balances: Sequence[Balance]) -> List[PricedBalance]:
        """Return the balances annotated with price and balance_usd.

        Balances that cannot be priced may be omitted or left without a price.
        """
        ...


@dataclass
class ChainBalances:
    chain: str
    chain_id: int
    balances: List[PricedBalance] = field(default_factory=list)
    balance_usd: Decimal = Decimal(0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.chain,
            "chainId": self.chain_id,
            "balanceUSD": float(self.balance_usd),
            "balances": [_priced_to_dict(b) for b in self.balances],
        }


def _priced_to_dict(balance: PricedBalance) -> Dict[str, Any]:
    out = balance.to_dict()
    if balance.price is not None:
        out["price"] = float(balance.price)
    if balance.balance_usd is not None:
        out["balanceUSD"] = float(balance.balance_usd)
    return out


def _dedup_key(balance: Balance) -> Tuple[str, str, Optional[Category]]:
    return balance.chain, balance.address.lower(), balance.category


def _add_amounts(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None:
        return b
    if b is None:
        return a
    return a + b


def _merge_underlyings(first: Sequence[Balance], second: Sequence[Balance]) -> List[Balance]:
    """Sum underlying amounts position by position when both sides list the same tokens"""
    if len(first) != len(second) or any(
        a.address.lower() != b.address.lower() for a, b in zip(first, second)
    ):
        return list(first)
    return [replace(a, amount=_add_amounts(a.amount, b.amount)) for a, b in zip(first, second)]


def sanitize_balances(balances: Sequence[Balance]) -> List[Balance]:
    """Drop empty balances and merge duplicates.

    Args:
        balances: Raw balances, any chain or group

    Returns:
        Balances with a positive amount, one per (chain, address, category),
        in first-seen order. Merged entries keep the fields of the first one,
        with amounts summed. Underlying amounts are summed too when both
        entries list the same underlyings in the same order.
    """
    merged: Dict[Tuple[str, str, Optional[Category]], Balance] = {}
    for balance in balances:
        if balance.amount is None or balance.amount <= 0:
            continue
        key = _dedup_key(balance)
        existing = merged.get(key)
        if existing is None:
            merged[key] = balance
        else:
            merged[key] = replace(
                existing,
                amount=existing.amount + balance.amount,
                underlyings=_merge_underlyings(existing.underlyings, balance.underlyings),
            )
    return list(merged.values())


def sanitize_priced_balances(balances: Sequence[PricedBalance]) -> List[PricedBalance]:
    """Keep only balances the pricer valued.

    ``price`` may be missing on positions valued through their underlyings,
    so only ``balance_usd`` is checked.
    """
    return [b for b in balances if b.balance_usd is not None and b.balance_usd > 0]


def sort_balances(balances: Sequence[PricedBalance]) -> List[PricedBalance]:
    """USD value descending, then raw amount descending, then address"""
    return sorted(
        balances,
        key=lambda b: (-(b.balance_usd or Decimal(0)), -(b.amount or 0), b.address.lower()),
    )


def sum_balances(balances: Sequence[PricedBalance]) -> Decimal:
    return sum((b.balance_usd or Decimal(0) for b in balances), Decimal(0))


def group_balances_by_chain(balances: Sequence[PricedBalance]) -> Dict[str, List[PricedBalance]]:
    grouped: Dict[str, List[PricedBalance]] = {}
    for balance in balances:
        grouped.setdefault(balance.chain, []).append(balance)
    return grouped


async def aggregate_balances(
    balances: Sequence[Balance],
    pricer: PricingCollaborator,
) -> List[ChainBalances]:
    """Sanitize, price, sort and group raw balances.

    Args:
        balances: Flat raw balances from every adapter and chain
        pricer: Pricing collaborator

    Returns:
        One ChainBalances per chain holding at least one valued balance,
        ordered by total USD value descending
    """
    start_time = time.time()

    sanitized = sanitize_balances(balances)
    priced = await pricer.price_balances(sanitized) if sanitized else []
    valued = sanitize_priced_balances(priced)

    chains = []
    for chain, chain_balances in group_balances_by_chain(valued).items():
        chains.append(
            ChainBalances(
                chain=chain,
                chain_id=get_chain(chain).chain_id,
                balances=sort_balances(chain_balances),
                balance_usd=sum_balances(chain_balances),
            )
        )
    chains.sort(key=lambda c: (-c.balance_usd, c.chain))

    logger.log_operation(
        operation="aggregate_balances",
        status="completed",
        duration_ms=int((time.time() - start_time) * 1000),
        message=(
            f"Aggregated {len(balances)} raw balances into {len(valued)} priced "
            f"balances on {len(chains)} chains"
        ),
    )
    return chains
