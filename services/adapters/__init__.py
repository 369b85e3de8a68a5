"""Adapter interface and registry."""

from .base import (
    Adapter,
    AdapterNotFoundError,
    AdapterRegistrationError,
    ChainAdapter,
    GroupSpec,
    validate_contracts_config,
)
from .registry import AdapterRegistry

__all__ = [
    'Adapter',
    'AdapterNotFoundError',
    'AdapterRegistrationError',
    'AdapterRegistry',
    'ChainAdapter',
    'GroupSpec',
    'validate_contracts_config',
]
