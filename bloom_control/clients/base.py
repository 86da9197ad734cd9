"""
Contracts for the external collaborators the orchestrator drives.

The orchestrator only depends on these result contracts; concrete
implementations talk to a cloud provider, a DNS provider and the
instance itself.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..models.internal import RegionSpec


@dataclass
class ProvisionRequest:
    session_id: str
    region: RegionSpec
    idle_timeout: int
    webhook_url: str
    webhook_secret: str
    auto_shutdown: bool = True


@dataclass
class ProvisionResult:
    instance_id: str
    server_name: str


class BaseProvisioner(ABC):
    """Creates and deletes the remote instance."""

    @abstractmethod
    async def create_instance(self, request: ProvisionRequest) -> ProvisionResult:
        pass

    @abstractmethod
    async def delete_instance(self, instance_id: str) -> None:
        pass


class BaseDnsUpdater(ABC):
    """Points the public hostname at the instance."""

    @abstractmethod
    async def update_record(self, address: str) -> None:
        pass


class BaseInstanceMessenger(ABC):
    """Sends commands to the running instance."""

    @abstractmethod
    async def trigger_sync(self, address: str, commit_pending: bool = True) -> None:
        pass

    @abstractmethod
    async def send_task(
        self,
        address: str,
        task: str,
        mode: Optional[str] = None,
        task_id: Optional[str] = None,
        auto_shutdown: bool = False
    ) -> None:
        pass
