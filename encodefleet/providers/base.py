"""Provider adapter capability and the machine records it deals in."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol

from pydantic import BaseModel, Field


class MachineStatus(str, Enum):
    """Provider machine state, normalized across providers."""
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPING = "stopping"
    TERMINATED = "terminated"
    ERROR = "error"


class Machine(BaseModel):
    """A machine as listed by a provider."""
    id: str
    name: str
    status: MachineStatus
    size: Optional[str] = None
    region: Optional[str] = None
    created_at: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)
    provider: str


class MachineSpec(BaseModel):
    """What to provision for one worker."""
    name: str
    size: str
    region: str
    image: str
    tags: List[str] = Field(default_factory=list)
    user_data: Optional[str] = None
    ssh_keys: List[str] = Field(default_factory=list)
    client_token: Optional[str] = None  # provider-side idempotency token, where supported


class MachineCreated(BaseModel):
    id: str
    provider: str


class MachineDeleted(BaseModel):
    id: str
    provider: str


class ProviderAdapter(Protocol):
    """
    Machine-lifecycle capability. One implementation per cloud provider.

    Implementations raise ``TransientInfraError`` for timeouts, throttling and
    5xx responses, and ``ProvisioningFailure`` when the provider rejects the
    request outright. ``delete_machine`` on an already-gone machine succeeds.
    """

    name: str

    def create_machine(self, spec: MachineSpec) -> MachineCreated: ...

    def delete_machine(self, machine_ref: str) -> MachineDeleted: ...

    def list_machines(self) -> List[Machine]: ...

    def describe_machine(self, machine_ref: str) -> MachineStatus: ...
