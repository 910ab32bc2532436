"""Control layer - provisioning, bring-up, recovery and monitoring."""

from spotfleet.control.bringup import InstanceBringup
from spotfleet.control.monitor import HealthMonitor
from spotfleet.control.provisioner import CapacityProvisioner
from spotfleet.control.recovery import RecoveryCoordinator, job_statuses

__all__ = [
    "CapacityProvisioner",
    "InstanceBringup",
    "RecoveryCoordinator",
    "HealthMonitor",
    "job_statuses",
]
