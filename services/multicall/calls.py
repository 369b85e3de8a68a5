from dataclasses import dataclass
from typing import Any, Optional, Tuple


@dataclass(frozen=True)
class Call:
    """A read call description. Nothing happens until it is batched."""

    target: str
    params: Tuple[Any, ...] = ()
    abi: Optional[Any] = None  # overrides the batch-wide ABI when set


@dataclass(frozen=True)
class CallResult:
    call: Call
    success: bool
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, call: Call, output: Any) -> "CallResult":
        return cls(call=call, success=True, output=output)

    @classmethod
    def failed(cls, call: Call, error: str) -> "CallResult":
        return cls(call=call, success=False, error=error)
