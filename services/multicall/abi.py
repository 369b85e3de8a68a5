"""ABI helpers for read calls.

Functions are described with JSON ABI fragments, the same shape web3 uses:

    {"name": "balanceOf", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]}
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector


def _canonical_type(param: Dict[str, Any]) -> str:
    """Collapse tuple components into their canonical type string"""
    abi_type = param["type"]
    if not abi_type.startswith("tuple"):
        return abi_type
    inner = ",".join(_canonical_type(c) for c in param.get("components", []))
    return f"({inner}){abi_type[len('tuple'):]}"


@dataclass(frozen=True)
class AbiFunction:
    name: str
    input_types: Tuple[str, ...]
    output_types: Tuple[str, ...]

    @classmethod
    def from_abi(cls, fragment: Dict[str, Any]) -> "AbiFunction":
        if fragment.get("type", "function") != "function":
            raise ValueError(f"Not a function fragment: {fragment.get('name')}")
        return cls(
            name=fragment["name"],
            input_types=tuple(_canonical_type(p) for p in fragment.get("inputs", [])),
            output_types=tuple(_canonical_type(p) for p in fragment.get("outputs", [])),
        )

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)

    def encode(self, params: Sequence[Any] = ()) -> bytes:
        """Selector followed by the ABI-encoded arguments"""
        if len(params) != len(self.input_types):
            raise ValueError(
                f"{self.signature} expects {len(self.input_types)} params, got {len(params)}"
            )
        return self.selector + encode(list(self.input_types), list(params))

    def decode(self, data: bytes) -> Any:
        """Decode return data; a single output is unwrapped"""
        if not data:
            raise ValueError(f"{self.name}: empty return data")
        values = decode(list(self.output_types), data)
        if len(values) == 1:
            return values[0]
        return values


def as_abi_function(abi: Any) -> AbiFunction:
    if isinstance(abi, AbiFunction):
        return abi
    return AbiFunction.from_abi(abi)


MULTICALL3_AGGREGATE3 = AbiFunction(
    name="aggregate3",
    input_types=("(address,bool,bytes)[]",),
    output_types=("(bool,bytes)[]",),
)

ERC20_ABI: Dict[str, Dict[str, Any]] = {
    "balanceOf": {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    "decimals": {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    "symbol": {
        "name": "symbol",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
}


def encode_aggregate3(calls: List[Tuple[str, bytes]]) -> bytes:
    """aggregate3((address target, bool allowFailure, bytes callData)[])"""
    return MULTICALL3_AGGREGATE3.encode([[(target, True, data) for target, data in calls]])


def decode_aggregate3(data: bytes) -> List[Tuple[bool, bytes]]:
    """Decode aggregate3 return data into (success, returnData) pairs"""
    return list(MULTICALL3_AGGREGATE3.decode(data))
