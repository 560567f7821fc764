"""Cloud machine-lifecycle adapters."""

from encodefleet.providers.base import (
    Machine,
    MachineCreated,
    MachineDeleted,
    MachineSpec,
    MachineStatus,
    ProviderAdapter,
)
from encodefleet.providers.registry import get_provider, register_provider

__all__ = [
    "Machine",
    "MachineCreated",
    "MachineDeleted",
    "MachineSpec",
    "MachineStatus",
    "ProviderAdapter",
    "get_provider",
    "register_provider",
]
