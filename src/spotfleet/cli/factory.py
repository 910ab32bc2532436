"""Wires Settings into the adapters and engine components."""

from spotfleet.app.config import AwsConfig, Settings
from spotfleet.control.bringup import InstanceBringup
from spotfleet.control.monitor import HealthMonitor
from spotfleet.control.provisioner import CapacityProvisioner
from spotfleet.control.recovery import RecoveryCoordinator
from spotfleet.core.errors import ConfigError
from spotfleet.core.models import Profile
from spotfleet.infra.ec2 import Ec2CapacityProvider, cloud_init_script
from spotfleet.infra.fleet_store import FleetStore, load_profiles, resolve_profile
from spotfleet.infra.notify import Notifier
from spotfleet.infra.s3 import S3BlobStore
from spotfleet.infra.ssh import SshExecutor
from spotfleet.infra.state import LaunchRecord, OfflineAlertRegistry, RecoveryLockStore


def require_launch_settings(aws: AwsConfig) -> None:
    """Raise ConfigError naming every missing launch setting."""
    missing = [
        name
        for name, value in (
            ("FLEET_KEY_NAME", aws.key_name),
            ("FLEET_SECURITY_GROUP", aws.security_group),
            ("FLEET_AMI_ID", aws.ami_id),
        )
        if not value
    ]
    if missing:
        raise ConfigError(f"{', '.join(missing)} not configured. Please configure fleet.env")


class FleetContext:
    """Everything one CLI invocation needs, built from Settings."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        state_dir = settings.fleet.state_dir

        self.provider = Ec2CapacityProvider(settings.aws)
        self.remote = SshExecutor(settings.ssh, settings.ssh_key_path())
        self.blobs = (
            S3BlobStore(settings.job.s3_bucket, settings.aws.region, settings.aws.endpoint_url)
            if settings.job.s3_bucket
            else None
        )
        self.store = FleetStore(settings.fleet.instances_file, settings.fleet.max_slot_num)
        self.locks = RecoveryLockStore(state_dir, settings.monitor.lock_stale_after)
        self.alerts = OfflineAlertRegistry(state_dir)
        self.launches = LaunchRecord(state_dir)
        self.notifier = Notifier.from_config(settings.notify)

        self.bringup = InstanceBringup(
            self.remote, settings.job, settings.sync, settings.ssh, blobs=self.blobs
        )
        self.provisioner = CapacityProvisioner(
            self.provider,
            user_data=cloud_init_script(settings.aws.user_data),
            fulfillment_timeout=settings.aws.fulfillment_timeout,
        )

    def profile(self, name: str | None = None) -> Profile:
        profiles = load_profiles(self.settings.fleet.profiles_file)
        return resolve_profile(profiles, name or self.settings.aws.profile)

    def recovery(
        self, profile_name: str | None = None, provisioning: bool = True
    ) -> RecoveryCoordinator:
        """Coordinator for recover (provisioning) or restart (existing instances)."""
        profile = None
        if provisioning:
            require_launch_settings(self.settings.aws)
            profile = self.profile(profile_name)
        return RecoveryCoordinator(
            self.store,
            self.provider,
            self.provisioner,
            self.bringup,
            self.locks,
            zones=self.settings.aws.zone_order(),
            profile=profile,
            project_tag=self.settings.aws.project_tag,
            max_instances=self.settings.fleet.max_instances,
        )

    def monitor(self, auto_recover: bool = False) -> HealthMonitor:
        return HealthMonitor(
            self.store,
            self.bringup,
            self.notifier,
            self.alerts,
            self.locks,
            config=self.settings.monitor,
            job=self.settings.job,
            project_tag=self.settings.aws.project_tag,
            state_dir=self.settings.fleet.state_dir,
            blobs=self.blobs,
            recovery=self.recovery() if auto_recover else None,
            auto_recover=auto_recover,
        )
