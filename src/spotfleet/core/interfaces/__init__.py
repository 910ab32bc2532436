"""Interfaces for the external collaborators of the fleet engine."""

from spotfleet.core.interfaces.cloud import CapacityProvider, InstanceInfo, SpotRequestInfo
from spotfleet.core.interfaces.notify import NotificationChannel
from spotfleet.core.interfaces.remote import CommandResult, RemoteExecutor
from spotfleet.core.interfaces.storage import BlobStore

__all__ = [
    "BlobStore",
    "CapacityProvider",
    "CommandResult",
    "InstanceInfo",
    "NotificationChannel",
    "RemoteExecutor",
    "SpotRequestInfo",
]
