from .aggregation import (
    ChainBalances,
    PricingCollaborator,
    aggregate_balances,
    sanitize_balances,
    sanitize_priced_balances,
    sort_balances,
)
from .context import BalancesContext, BaseContext
from .models import (
    Balance,
    BalancesConfig,
    BalancesGroup,
    Category,
    Contract,
    ContractsConfig,
    PricedBalance,
    balance_from_contract,
)
from .resolver import get_adapter_balances, resolve_balances, resolve_token_balances

__all__ = [
    "Balance",
    "BalancesConfig",
    "BalancesContext",
    "BalancesGroup",
    "BaseContext",
    "Category",
    "ChainBalances",
    "Contract",
    "ContractsConfig",
    "PricedBalance",
    "PricingCollaborator",
    "aggregate_balances",
    "balance_from_contract",
    "get_adapter_balances",
    "resolve_balances",
    "resolve_token_balances",
    "sanitize_balances",
    "sanitize_priced_balances",
    "sort_balances",
]
