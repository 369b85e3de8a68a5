"""Multicall client for batching read calls.

Read calls are grouped into Multicall3 ``aggregate3`` requests (one ``eth_call``
per chunk) with ``allowFailure`` set on every call, so a revert only fails its
own result. Results always come back in the same order as the calls.
"""

import asyncio
from typing import Any, List, Optional, Sequence

import aiohttp
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)
from web3 import Web3

from indexer.common.config import settings
from .abi import ERC20_ABI, as_abi_function, decode_aggregate3, encode_aggregate3
from .calls import Call, CallResult

logger = structlog.get_logger()

# Multicall3 is deployed at the same address on every supported chain
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"


class MulticallError(Exception):
    """Raised when the node answers a JSON-RPC request with an error."""
    pass


class MulticallClient:
    """Async client batching read calls for one chain."""

    def __init__(
        self,
        rpc_url: str,
        chain: str = "ethereum",
        batch_size: Optional[int] = None,
        multicall_address: Optional[str] = None,
        rate_limit_semaphore: Optional[asyncio.Semaphore] = None,
        timeout: Optional[int] = None,
    ):
        """Initialize Multicall client.

        Args:
            rpc_url: JSON-RPC endpoint of the chain
            chain: Canonical chain id, used in logs
            batch_size: Maximum calls per aggregate request
            multicall_address: Multicall3 deployment (defaults to the canonical one)
            rate_limit_semaphore: Optional semaphore bounding in-flight requests
            timeout: Request timeout in seconds

        Raises:
            ValueError: If rpc_url is empty or batch_size is not positive
        """
        if not rpc_url:
            raise ValueError("rpc_url is required")

        self.rpc_url = rpc_url
        self.chain = chain
        self.batch_size = batch_size or settings.multicall_batch_size
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")

        self.multicall_address = Web3.to_checksum_address(
            multicall_address or settings.multicall_address or MULTICALL3_ADDRESS
        )
        self.rate_limit = rate_limit_semaphore or asyncio.Semaphore(15)
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.http_timeout)

        self.logger = logger.bind(component="multicall_client", chain=chain)

    @classmethod
    def for_chain(cls, chain: str, **kwargs: Any) -> "MulticallClient":
        """Build a client from RPC_URL_<CHAIN>"""
        return cls(settings.rpc_url(chain), chain=chain, **kwargs)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
        reraise=True,
    )
    async def _rpc_call(
        self,
        method: str,
        params: List[Any],
    ) -> Any:
        """Make a JSON-RPC call.

        Args:
            method: RPC method name (e.g., "eth_call")
            params: Method parameters

        Returns:
            RPC response result

        Raises:
            MulticallError: On RPC errors
            aiohttp.ClientError: On HTTP errors
        """
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params,
        }

        async with self.rate_limit:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.rpc_url, json=payload) as response:
                    response.raise_for_status()
                    data = await response.json()

                    if "error" in data:
                        error_msg = data["error"].get("message", "Unknown error")
                        self.logger.error("rpc_error", method=method, error=error_msg)
                        raise MulticallError(f"RPC error: {error_msg}")

                    return data.get("result")

    async def _eth_call(self, to: str, data: bytes, block: str = "latest") -> bytes:
        result = await self._rpc_call(
            "eth_call",
            [{"to": to, "data": "0x" + data.hex()}, block],
        )
        if not result or result == "0x":
            return b""
        return bytes.fromhex(result[2:] if result.startswith("0x") else result)

    async def call(
        self,
        target: str,
        abi: Any,
        params: Sequence[Any] = (),
        block: str = "latest",
    ) -> Any:
        """Single direct call. Unlike multicall, errors are raised."""
        fn = as_abi_function(abi)
        data = await self._eth_call(
            Web3.to_checksum_address(target), fn.encode(list(params)), block
        )
        return fn.decode(data)

    async def _execute_chunk(
        self,
        calls: Sequence[Call],
        abi: Any,
        block: str,
    ) -> List[CallResult]:
        """Run one aggregate3 round-trip and decode it call by call."""
        results: List[Optional[CallResult]] = [None] * len(calls)
        encoded: List[tuple] = []
        positions: List[int] = []

        for idx, call in enumerate(calls):
            try:
                fn = as_abi_function(call.abi or abi)
                encoded.append((Web3.to_checksum_address(call.target), fn.encode(list(call.params))))
                positions.append(idx)
            except Exception as e:
                results[idx] = CallResult.failed(call, f"encode error: {e}")

        if encoded:
            try:
                raw = await self._eth_call(self.multicall_address, encode_aggregate3(encoded), block)
                returned = decode_aggregate3(raw)
                if len(returned) != len(encoded):
                    raise MulticallError(
                        f"aggregate3 returned {len(returned)} results for {len(encoded)} calls"
                    )
            except Exception as e:
                self.logger.warning(
                    "multicall_chunk_failed",
                    num_calls=len(encoded),
                    error=str(e),
                )
                for idx in positions:
                    results[idx] = CallResult.failed(calls[idx], str(e))
                return results

            for idx, (success, return_data) in zip(positions, returned):
                call = calls[idx]
                if not success:
                    results[idx] = CallResult.failed(call, "execution reverted")
                    continue
                try:
                    output = as_abi_function(call.abi or abi).decode(return_data)
                    results[idx] = CallResult.ok(call, output)
                except Exception as e:
                    results[idx] = CallResult.failed(call, f"decode error: {e}")

        return results

    async def multicall(
        self,
        calls: Sequence[Call],
        abi: Any = None,
        block: str = "latest",
    ) -> List[CallResult]:
        """Execute calls in aggregate3 chunks of at most ``batch_size``.

        Args:
            calls: Calls to execute
            abi: ABI fragment used for calls that do not carry their own
            block: Block tag or hex number

        Returns:
            One CallResult per call, in input order
        """
        if not calls:
            return []

        chunks = [
            calls[i:i + self.batch_size]
            for i in range(0, len(calls), self.batch_size)
        ]

        log = self.logger.bind(num_calls=len(calls), num_chunks=len(chunks))
        log.debug("multicall_started")

        chunk_results = await asyncio.gather(
            *(self._execute_chunk(chunk, abi, block) for chunk in chunks)
        )

        results = [result for chunk in chunk_results for result in chunk]

        log.debug(
            "multicall_complete",
            num_failed=sum(1 for r in results if not r.success),
        )

        return results

    async def get_balance_of(
        self,
        owner: str,
        token_addresses: Sequence[str],
        block: str = "latest",
    ) -> List[CallResult]:
        """ERC-20 balanceOf(owner) for each token, in token order."""
        calls = [Call(target=token, params=(owner,)) for token in token_addresses]
        return await self.multicall(calls, abi=ERC20_ABI["balanceOf"], block=block)
