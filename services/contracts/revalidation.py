"""Revalidation scheduler for adapter contract sets.

Each cycle selects the adapters with an expired or missing cache entry on any
of their chains and runs one job per adapter: ``get_contracts`` on every chain,
then a single transactional replacement of everything stored for it. Jobs run
concurrently up to ``max_concurrency``; a failing job is rolled back and
reported without affecting the others.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from indexer.common.config import settings
from indexer.common.logging_setup import get_logger, log_summary
from services.adapters.base import validate_contracts_config
from services.adapters.registry import AdapterRegistry
from services.balances.context import BaseContext
from services.balances.models import ContractsConfig
from services.multicall.client import MulticallClient
from .models import RevalidationReport
from .store import ContractStore

logger = get_logger(__name__)
revalidation_logger = get_logger("revalidation")


class RevalidationError(Exception):
    """A revalidation job failed; nothing was written for the adapter."""

    def __init__(self, adapter_id: str, message: str):
        self.adapter_id = adapter_id
        super().__init__(f"{adapter_id}: {message}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RevalidationScheduler:
    """Keeps the contract cache of every registered adapter fresh."""

    def __init__(
        self,
        registry: AdapterRegistry,
        store: ContractStore,
        client_factory: Optional[Callable[[str], MulticallClient]] = None,
        max_concurrency: Optional[int] = None,
        job_timeout: Optional[float] = None,
        rescan_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize scheduler.

        Args:
            registry: Registered adapters
            store: Contract cache storage
            client_factory: Builds the call batcher of a chain
                (default: MulticallClient.for_chain)
            max_concurrency: Jobs running at the same time
            job_timeout: Seconds before a job is abandoned and rolled back
            rescan_seconds: Age after which contract sets without expiry are redone
            clock: Current time, timezone-aware
        """
        self.registry = registry
        self.store = store
        self.client_factory = client_factory or MulticallClient.for_chain
        self.max_concurrency = max_concurrency or settings.revalidate_max_concurrency
        self.job_timeout = job_timeout or settings.revalidate_job_timeout
        self.rescan_seconds = (
            settings.default_rescan_seconds if rescan_seconds is None else rescan_seconds
        )
        self.clock = clock

        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._in_flight: Set[str] = set()
        self._clients: Dict[str, MulticallClient] = {}
        self._cycles = 0

    def _client(self, chain: str) -> MulticallClient:
        if chain not in self._clients:
            self._clients[chain] = self.client_factory(chain)
        return self._clients[chain]

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    async def select_stale(self) -> List[str]:
        """Adapter ids whose contracts need to be (re)collected"""
        return await self.store.select_stale_adapters(
            self.registry.pairs(),
            self.clock(),
            self.rescan_seconds,
        )

    async def revalidate_adapter(self, adapter_id: str) -> int:
        """Collect and store the contracts of one adapter on all its chains.

        Args:
            adapter_id: Registered adapter id

        Returns:
            Number of contract rows inserted

        Raises:
            RevalidationError: If any chain fails to declare valid contracts
                or the replacement transaction fails
        """
        adapter = self.registry.get(adapter_id)
        now = self.clock()

        configs: Dict[str, ContractsConfig] = {}
        for chain, chain_adapter in adapter.chains.items():
            try:
                entry = await self.store.select_adapter(adapter.id, chain)
                ctx = BaseContext(
                    chain=chain,
                    adapter_id=adapter.id,
                    client=self._client(chain),
                    revalidate_props=entry.contracts_revalidate_props if entry else {},
                )
                config = await chain_adapter.get_contracts(ctx)
                validate_contracts_config(chain_adapter, chain, config)
            except Exception as e:
                raise RevalidationError(adapter_id, f"[{chain}] {type(e).__name__}: {e}") from e
            configs[chain] = config

        try:
            return await self.store.replace_adapter_contracts(
                adapter.id,
                configs,
                now,
                parent_id=adapter.parent_id,
            )
        except Exception as e:
            raise RevalidationError(adapter_id, f"{type(e).__name__}: {e}") from e

    async def _run_job(self, adapter_id: str, report: RevalidationReport) -> None:
        start_time = time.time()
        error = ""
        inserted = 0
        try:
            async with self._semaphore:
                async with asyncio.timeout(self.job_timeout):
                    inserted = await self.revalidate_adapter(adapter_id)
        except TimeoutError:
            error = f"timed out after {self.job_timeout}s"
        except Exception as e:
            error = str(e)
        finally:
            self._in_flight.discard(adapter_id)

        if error:
            report.failed[adapter_id] = error
        else:
            report.revalidated.append(adapter_id)

        revalidation_logger.log_operation(
            operation="revalidate_adapter",
            status="failed" if error else "completed",
            error=error,
            duration_ms=int((time.time() - start_time) * 1000),
            adapter_id=adapter_id,
            message="" if error else f"Revalidated {adapter_id}: {inserted} contracts",
        )

    async def run_cycle(self) -> RevalidationReport:
        """Revalidate every stale adapter once.

        Adapters with a job still running from an earlier cycle are skipped.

        Returns:
            Which adapters were revalidated, failed (with the error) or skipped
        """
        self._cycles += 1
        start_time = time.time()
        report = RevalidationReport()

        adapter_ids = await self.select_stale()
        if not adapter_ids:
            logger.debug("No stale adapters")
            return report

        async with asyncio.TaskGroup() as tg:
            for adapter_id in adapter_ids:
                if adapter_id in self._in_flight:
                    report.skipped.append(adapter_id)
                    continue
                self._in_flight.add(adapter_id)
                tg.create_task(self._run_job(adapter_id, report))

        report.revalidated.sort()

        if report.failed:
            logger.warning(
                f"Revalidation cycle {self._cycles}: {len(report.failed)} adapters failed "
                f"({', '.join(sorted(report.failed))})"
            )

        log_summary(
            "revalidation_scheduler",
            cycle=str(self._cycles),
            adapters_processed=len(report.revalidated),
            duration_seconds=time.time() - start_time,
        )
        return report

    async def run_forever(
        self,
        interval: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Run cycles every ``interval`` seconds until ``stop_event`` is set.

        A cycle that raises (e.g. database unavailable) is logged and the
        next one runs on schedule.
        """
        interval = interval or settings.revalidate_interval_seconds
        stop_event = stop_event or asyncio.Event()

        logger.info(f"Starting revalidation loop every {interval}s")

        while not stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error(f"Revalidation cycle failed: {type(e).__name__}: {e}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except TimeoutError:
                pass

        logger.info("Revalidation loop stopped")
