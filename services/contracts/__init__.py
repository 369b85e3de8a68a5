from .models import AdapterCacheEntry, CacheState, RevalidationReport, cache_state, expire_at
from .revalidation import RevalidationError, RevalidationScheduler
from .store import ContractStore, contract_to_row, row_to_contract

__all__ = [
    "AdapterCacheEntry",
    "CacheState",
    "ContractStore",
    "RevalidationError",
    "RevalidationReport",
    "RevalidationScheduler",
    "cache_state",
    "contract_to_row",
    "expire_at",
    "row_to_contract",
]
