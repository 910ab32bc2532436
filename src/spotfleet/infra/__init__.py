"""Infrastructure adapters (EC2, S3, SSH, notifications, on-disk state)."""

from spotfleet.infra.ec2 import Ec2CapacityProvider
from spotfleet.infra.fleet_store import FleetStore, load_profiles, resolve_profile
from spotfleet.infra.notify import EmailChannel, Notifier, SlackChannel
from spotfleet.infra.s3 import S3BlobStore
from spotfleet.infra.ssh import SshExecutor
from spotfleet.infra.state import LaunchRecord, OfflineAlertRegistry, RecoveryLockStore

__all__ = [
    # Cloud
    "Ec2CapacityProvider",
    "S3BlobStore",
    # Remote
    "SshExecutor",
    # Notifications
    "EmailChannel",
    "SlackChannel",
    "Notifier",
    # Descriptors
    "FleetStore",
    "load_profiles",
    "resolve_profile",
    # State
    "LaunchRecord",
    "OfflineAlertRegistry",
    "RecoveryLockStore",
]
