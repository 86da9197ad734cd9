"""
Client modules for storage and external services.
"""

from .redis import RedisClient
from .base import (
    BaseProvisioner,
    BaseDnsUpdater,
    BaseInstanceMessenger,
    ProvisionRequest,
    ProvisionResult
)
from .hetzner import HetznerProvisioner
from .cloudflare import CloudflareDns
from .instance import InstanceClient

__all__ = [
    "RedisClient",
    "BaseProvisioner",
    "BaseDnsUpdater",
    "BaseInstanceMessenger",
    "ProvisionRequest",
    "ProvisionResult",
    "HetznerProvisioner",
    "CloudflareDns",
    "InstanceClient"
]
