"""Cache entries for adapter contract sets and their freshness state."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from indexer.common.chains import from_chain_id, to_chain_id


class CacheState(str, Enum):
    FRESH = "fresh"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


@dataclass
class AdapterCacheEntry:
    """One row of the adapters table: an (adapter, chain) contract set."""

    id: str
    chain: str
    parent_id: Optional[str] = None
    contracts_expire_at: Optional[datetime] = None
    contracts_revalidate_props: Dict[str, Any] = field(default_factory=dict)
    contracts_props: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AdapterCacheEntry":
        return cls(
            id=row["id"],
            parent_id=row.get("parent_id"),
            chain=from_chain_id(row["chain"]),
            contracts_expire_at=row.get("contracts_expire_at"),
            contracts_revalidate_props=row.get("contracts_revalidate_props") or {},
            contracts_props=row.get("contracts_props") or {},
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "chain": to_chain_id(self.chain),
            "contracts_expire_at": self.contracts_expire_at,
            "contracts_revalidate_props": self.contracts_revalidate_props or None,
            "contracts_props": self.contracts_props or None,
        }


@dataclass
class RevalidationReport:
    """Outcome of one scheduler cycle."""

    revalidated: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def expire_at(now: datetime, ttl: Optional[int]) -> Optional[datetime]:
    """now + ttl seconds, or None for a contract set that never expires"""
    if not ttl:
        return None
    return now + timedelta(seconds=ttl)


def cache_state(
    entry: Optional[AdapterCacheEntry],
    now: datetime,
    rescan_seconds: Optional[int] = None,
) -> CacheState:
    """Freshness of an (adapter, chain) cache entry.

    Entries without an expiry are fresh, unless ``rescan_seconds`` is given
    and they were last updated longer ago than that.
    """
    if entry is None:
        return CacheState.UNKNOWN

    if entry.contracts_expire_at is None:
        if rescan_seconds and entry.updated_at is not None:
            if entry.updated_at + timedelta(seconds=rescan_seconds) <= now:
                return CacheState.EXPIRED
        return CacheState.FRESH

    if entry.contracts_expire_at <= now:
        return CacheState.EXPIRED
    return CacheState.FRESH
