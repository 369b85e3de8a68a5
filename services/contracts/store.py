"""Contract cache storage.

Every adapter's declared contracts are stored in the ``contracts`` table, and
one ``adapters`` row per (adapter, chain) records when that set expires.
Replacing an adapter's contracts is a single transaction: readers see either
the previous set or the new one, never a mix.
"""

import json
import time
from datetime import datetime
from functools import partial
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool
from web3 import Web3

from indexer.common.chains import UnknownChainError, from_chain_id, to_chain_id
from indexer.common.config import settings
from indexer.common.db import async_connection
from indexer.common.logging_setup import get_logger
from services.balances.models import Category, Contract, ContractsConfig
from .models import AdapterCacheEntry, CacheState, cache_state, expire_at

logger = get_logger(__name__)

_json_dumps = partial(json.dumps, default=str)

CONTRACT_COLUMNS = (
    "name", "display_name", "chain", "address", "symbol", "decimals", "category",
    "adapter_id", "type", "stable", "rewards", "underlyings", "data",
)

# Fields that live in data on disk but are attributes in memory
_DATA_KEY = "key"
_DATA_PROXY = "proxy"


def strip_null_bytes(value: Any) -> Any:
    """Remove U+0000 from every string, recursively (text columns reject it)"""
    if isinstance(value, str):
        return value.replace("\x00", "")
    if isinstance(value, Mapping):
        return {strip_null_bytes(k): strip_null_bytes(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [strip_null_bytes(v) for v in value]
    return value


def address_to_bytes(address: str) -> bytes:
    if not Web3.is_address(address):
        raise ValueError(f"Invalid address: {address}")
    return Web3.to_bytes(hexstr=address)


def bytes_to_address(raw: bytes) -> str:
    return Web3.to_checksum_address(bytes(raw))


def contract_to_row(contract: Contract, adapter_id: str, key: str) -> Tuple[Any, ...]:
    """Storage form of a contract, in CONTRACT_COLUMNS order.

    Args:
        contract: Declared contract
        adapter_id: Owning adapter
        key: Group key the contract was declared under

    Returns:
        Row values with numeric chain, binary address and JSON columns
    """
    data = dict(contract.data)
    if contract.proxy:
        data[_DATA_PROXY] = contract.proxy
    data[_DATA_KEY] = key

    rewards = [r.to_dict() for r in contract.rewards] or None
    underlyings = [u.to_dict() for u in contract.underlyings] or None

    return (
        strip_null_bytes(contract.name),
        strip_null_bytes(contract.display_name),
        to_chain_id(contract.chain),
        address_to_bytes(contract.address),
        strip_null_bytes(contract.symbol),
        contract.decimals,
        contract.category.value if contract.category else None,
        adapter_id,
        strip_null_bytes(contract.type),
        contract.stable,
        Jsonb(strip_null_bytes(rewards), dumps=_json_dumps) if rewards else None,
        Jsonb(strip_null_bytes(underlyings), dumps=_json_dumps) if underlyings else None,
        Jsonb(strip_null_bytes(data), dumps=_json_dumps),
    )


def row_to_contract(row: Mapping[str, Any]) -> Tuple[str, Contract]:
    """(group key, Contract) from a contracts row"""
    data = dict(row.get("data") or {})
    key = data.pop(_DATA_KEY, "default")
    proxy = data.pop(_DATA_PROXY, None)

    contract = Contract(
        chain=from_chain_id(row["chain"]),
        address=bytes_to_address(row["address"]),
        name=row.get("name"),
        display_name=row.get("display_name"),
        symbol=row.get("symbol"),
        decimals=row.get("decimals"),
        category=Category(row["category"]) if row.get("category") else None,
        type=row.get("type"),
        stable=row.get("stable"),
        underlyings=[Contract.from_dict(u) for u in row.get("underlyings") or []],
        rewards=[Contract.from_dict(r) for r in row.get("rewards") or []],
        proxy=proxy,
        data=data,
    )
    return key, contract


DELETE_ADAPTER_CONTRACTS_SQL = "DELETE FROM contracts WHERE adapter_id = %s"

UPSERT_ADAPTER_SQL = """
INSERT INTO adapters (
    id, parent_id, chain, contracts_expire_at,
    contracts_revalidate_props, contracts_props, created_at, updated_at
) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (id, chain)
DO UPDATE SET
    parent_id = EXCLUDED.parent_id,
    contracts_expire_at = EXCLUDED.contracts_expire_at,
    contracts_revalidate_props = EXCLUDED.contracts_revalidate_props,
    contracts_props = EXCLUDED.contracts_props,
    updated_at = EXCLUDED.updated_at
"""


def build_insert_contracts_sql(num_rows: int) -> str:
    """Multi-row insert that ignores rows already present"""
    values_template = "(" + ", ".join(["%s"] * len(CONTRACT_COLUMNS)) + ")"
    values_clause = ", ".join([values_template] * num_rows)
    return (
        f"INSERT INTO contracts ({', '.join(CONTRACT_COLUMNS)}) "
        f"VALUES {values_clause} "
        f"ON CONFLICT DO NOTHING"
    )


class ContractStore:
    """Adapter contract sets on top of an async connection pool."""

    def __init__(self, pool: AsyncConnectionPool, insert_chunk_size: Optional[int] = None):
        """Initialize storage service.

        Args:
            pool: Async connection pool; one connection is taken per operation
            insert_chunk_size: Contract rows per INSERT statement
        """
        self.pool = pool
        self.insert_chunk_size = insert_chunk_size or settings.contracts_insert_chunk_size

    async def select_adapters(self) -> List[AdapterCacheEntry]:
        """All cache entries; rows on chains we no longer know are skipped"""
        async with async_connection(self.pool) as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT * FROM adapters")
                rows = await cur.fetchall()

        entries = []
        for row in rows:
            try:
                entries.append(AdapterCacheEntry.from_row(row))
            except UnknownChainError:
                logger.warning(f"Skipping adapter {row['id']} on unknown chain {row['chain']}")
        return entries

    async def select_adapter(self, adapter_id: str, chain: str) -> Optional[AdapterCacheEntry]:
        async with async_connection(self.pool) as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT * FROM adapters WHERE id = %s AND chain = %s",
                    (adapter_id, to_chain_id(chain)),
                )
                row = await cur.fetchone()
        return AdapterCacheEntry.from_row(row) if row else None

    async def select_stale_adapters(
        self,
        pairs: Sequence[Tuple[str, str]],
        now: datetime,
        rescan_seconds: Optional[int] = None,
    ) -> List[str]:
        """Adapter ids with at least one expired or never stored (adapter, chain).

        Args:
            pairs: Every registered (adapter id, chain)
            now: Reference time
            rescan_seconds: Age after which entries without expiry are redone

        Returns:
            Sorted distinct adapter ids
        """
        entries = {(entry.id, entry.chain): entry for entry in await self.select_adapters()}

        stale = set()
        for adapter_id, chain in pairs:
            state = cache_state(entries.get((adapter_id, chain)), now, rescan_seconds)
            if state != CacheState.FRESH:
                stale.add(adapter_id)
        return sorted(stale)

    async def select_contracts(self, adapter_id: str, chain: str) -> Dict[str, List[Contract]]:
        """Latest committed contracts of an adapter on a chain, by group key, in declaration order"""
        async with async_connection(self.pool) as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT * FROM contracts WHERE adapter_id = %s AND chain = %s ORDER BY id",
                    (adapter_id, to_chain_id(chain)),
                )
                rows = await cur.fetchall()

        contracts: Dict[str, List[Contract]] = {}
        for row in rows:
            key, contract = row_to_contract(row)
            contracts.setdefault(key, []).append(contract)
        return contracts

    async def replace_adapter_contracts(
        self,
        adapter_id: str,
        configs: Mapping[str, ContractsConfig],
        now: datetime,
        parent_id: Optional[str] = None,
    ) -> int:
        """Atomically replace every stored contract of an adapter.

        Deletes the adapter's contract rows, upserts one adapters row per
        chain and inserts the new rows in chunks, all in one transaction.
        Any failure rolls the whole replacement back.

        Args:
            adapter_id: Adapter being revalidated
            configs: Chain to the ContractsConfig declared for it
            now: Revalidation time, base of the expiry
            parent_id: Parent adapter id, defaults to adapter_id

        Returns:
            Number of contract rows inserted
        """
        start_time = time.time()

        entries = [
            AdapterCacheEntry(
                id=adapter_id,
                parent_id=parent_id or adapter_id,
                chain=chain,
                contracts_expire_at=expire_at(now, config.revalidate),
                contracts_revalidate_props=config.revalidate_props or {},
                contracts_props=config.props or {},
            )
            for chain, config in configs.items()
        ]

        rows = [
            contract_to_row(contract, adapter_id, key)
            for config in configs.values()
            for key, contract in config.items()
        ]

        total_inserted = 0

        async with async_connection(self.pool) as conn:
            async with conn.transaction():
                async with conn.cursor() as cur:
                    await cur.execute(DELETE_ADAPTER_CONTRACTS_SQL, (adapter_id,))

                    for entry in entries:
                        row = entry.to_row()
                        await cur.execute(
                            UPSERT_ADAPTER_SQL,
                            (
                                row["id"],
                                row["parent_id"],
                                row["chain"],
                                row["contracts_expire_at"],
                                Jsonb(row["contracts_revalidate_props"], dumps=_json_dumps)
                                if row["contracts_revalidate_props"] else None,
                                Jsonb(row["contracts_props"], dumps=_json_dumps)
                                if row["contracts_props"] else None,
                                now,
                                now,
                            ),
                        )

                    for i in range(0, len(rows), self.insert_chunk_size):
                        chunk = rows[i:i + self.insert_chunk_size]
                        flat_values = [value for row in chunk for value in row]
                        await cur.execute(build_insert_contracts_sql(len(chunk)), flat_values)
                        total_inserted += max(cur.rowcount, 0)

        logger.log_operation(
            operation="replace_adapter_contracts",
            params={"adapter_id": adapter_id, "chains": sorted(configs)},
            status="completed",
            duration_ms=int((time.time() - start_time) * 1000),
            adapter_id=adapter_id,
            message=f"Stored {total_inserted} contracts for {adapter_id}",
        )

        return total_inserted

    async def delete_adapter(self, adapter_id: str) -> None:
        """Remove an adapter's cache entries and contracts"""
        async with async_connection(self.pool) as conn:
            async with conn.transaction():
                async with conn.cursor() as cur:
                    await cur.execute(DELETE_ADAPTER_CONTRACTS_SQL, (adapter_id,))
                    await cur.execute("DELETE FROM adapters WHERE id = %s", (adapter_id,))

        logger.log_operation(
            operation="delete_adapter",
            status="completed",
            adapter_id=adapter_id,
        )
