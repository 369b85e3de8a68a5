import argparse
import asyncio
import json
import logging
import os

from .common.config import settings
from .common.db import (
    close_async_pool,
    close_pool,
    execute_with_retry,
    get_cursor,
    init_async_pool,
    test_connection,
)
from .common.logging_setup import setup_logging
from services.adapters.registry import AdapterRegistry
from services.balances.orchestrator import BalancesOrchestrator
from services.contracts.models import cache_state
from services.contracts.revalidation import RevalidationScheduler, utcnow
from services.contracts.store import ContractStore
from services.pricing.defillama_client import DefiLlamaPricingClient

CACHE_HEALTH_SQL = """
SELECT
    COUNT(*) AS cache_entries,
    COUNT(*) FILTER (WHERE contracts_expire_at <= NOW()) AS expired_entries,
    (SELECT COUNT(*) FROM contracts) AS contracts
FROM adapters
"""


def cmd_init_db(_: argparse.Namespace) -> None:
    setup_logging()
    logging.info("initializing database schema")
    schema_path = os.path.join(os.path.dirname(__file__), "..", "sql", "schema.sql")
    schema_path = os.path.abspath(schema_path)

    with open(schema_path, "r", encoding="utf-8") as f:
        sql = f.read()

    try:
        with get_cursor() as cur:
            cur.execute(sql)
    finally:
        close_pool()

    logging.info("schema applied")


def cmd_health(_: argparse.Namespace) -> None:
    setup_logging()
    logging.info("testing database connectivity")
    try:
        if not test_connection():
            raise SystemExit(1)
        rows = execute_with_retry(CACHE_HEALTH_SQL)
        logging.info({"db": "ok", "cache": rows[0] if rows else {}})
    finally:
        close_pool()


async def _adapters(_: argparse.Namespace) -> None:
    registry = AdapterRegistry.load_entry_points()
    pool = await init_async_pool()
    try:
        store = ContractStore(pool)
        entries = {(e.id, e.chain): e for e in await store.select_adapters()}
        now = utcnow()
        for adapter_id, chain in registry.pairs():
            entry = entries.get((adapter_id, chain))
            state = cache_state(entry, now, settings.default_rescan_seconds)
            expires = entry.contracts_expire_at.isoformat() if entry and entry.contracts_expire_at else "-"
            print(f"{adapter_id:<30} {chain:<12} {state.value:<8} {expires}")
    finally:
        await close_async_pool()


def cmd_adapters(args: argparse.Namespace) -> None:
    setup_logging()
    asyncio.run(_adapters(args))


async def _revalidate(args: argparse.Namespace) -> None:
    registry = AdapterRegistry.load_entry_points()
    pool = await init_async_pool()
    try:
        scheduler = RevalidationScheduler(registry, ContractStore(pool))
        if args.adapter:
            inserted = await scheduler.revalidate_adapter(args.adapter)
            logging.info({"adapter": args.adapter, "contracts": inserted})
        elif args.loop:
            await scheduler.run_forever(args.interval)
        else:
            report = await scheduler.run_cycle()
            logging.info({
                "revalidated": report.revalidated,
                "failed": report.failed,
                "skipped": report.skipped,
            })
    finally:
        await close_async_pool()


def cmd_revalidate(args: argparse.Namespace) -> None:
    setup_logging()
    asyncio.run(_revalidate(args))


async def _balances(args: argparse.Namespace) -> None:
    registry = AdapterRegistry.load_entry_points()
    pool = await init_async_pool()
    try:
        orchestrator = BalancesOrchestrator(
            registry,
            ContractStore(pool),
            DefiLlamaPricingClient(),
            timeout=args.timeout,
        )
        response = await orchestrator.get_balances(
            args.address,
            adapter_ids=args.adapter or None,
            chains=args.chain or None,
        )
        print(json.dumps(response, indent=2, default=str))
    finally:
        await close_async_pool()


def cmd_balances(args: argparse.Namespace) -> None:
    setup_logging()
    asyncio.run(_balances(args))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser("holdings-indexer CLI")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db").set_defaults(func=cmd_init_db)
    sub.add_parser("health").set_defaults(func=cmd_health)
    sub.add_parser("adapters").set_defaults(func=cmd_adapters)

    p_rev = sub.add_parser("revalidate")
    p_rev.add_argument("--adapter", help="revalidate this adapter only, even if fresh")
    p_rev.add_argument("--loop", action="store_true")
    p_rev.add_argument("--interval", type=float)
    p_rev.set_defaults(func=cmd_revalidate)

    p_bal = sub.add_parser("balances")
    p_bal.add_argument("address")
    p_bal.add_argument("--adapter", action="append")
    p_bal.add_argument("--chain", action="append")
    p_bal.add_argument("--timeout", type=float)
    p_bal.set_defaults(func=cmd_balances)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
