"""Batched read calls over Multicall3."""

from .abi import AbiFunction, ERC20_ABI
from .calls import Call, CallResult
from .client import MULTICALL3_ADDRESS, MulticallClient, MulticallError

__all__ = [
    'AbiFunction',
    'Call',
    'CallResult',
    'ERC20_ABI',
    'MULTICALL3_ADDRESS',
    'MulticallClient',
    'MulticallError',
]
