"""Application configuration using pydantic-settings.

Values come from the environment and, when present, from a dotenv file:
``FLEET_CONFIG`` names it explicitly, otherwise ``./fleet.env`` is read.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from dotenv import dotenv_values
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from spotfleet.core.domain.fleet import TimeoutLockPolicy


def _env_file() -> str | None:
    explicit = os.environ.get("FLEET_CONFIG")
    if explicit:
        return explicit
    if Path("fleet.env").is_file():
        return "fleet.env"
    return None


def _split_words(value: object) -> object:
    # fleet.env style: space separated lists ("us-east-1a us-east-1b")
    if isinstance(value, str):
        return value.split()
    return value


class _FleetSettings(BaseSettings):
    """Shared dotenv behaviour for every config section."""

    model_config = SettingsConfigDict(env_file=_env_file(), extra="ignore")


class AwsConfig(_FleetSettings):
    """Cloud control-plane configuration."""

    model_config = SettingsConfigDict(env_prefix="FLEET_")

    region: str = Field(default="us-east-1")
    # Ordered by preference, first entry is tried first
    availability_zones: Annotated[list[str], NoDecode] = Field(default_factory=list)
    ami_id: str = Field(default="")
    key_name: str = Field(default="")
    security_group: str = Field(default="")
    project_tag: str = Field(default="spot-fleet")
    profile: str = Field(default="default")
    user_data: str = Field(default="")  # appended to the base cloud-init script
    fulfillment_timeout: float = Field(default=60.0)  # seconds per zone
    endpoint_url: str | None = Field(default=None)

    @field_validator("availability_zones", mode="before")
    @classmethod
    def _parse_zones(cls, value: object) -> object:
        return _split_words(value)

    def zone_order(self) -> list[str]:
        """Zones to try, in priority order."""
        if self.availability_zones:
            return list(self.availability_zones)
        return [f"{self.region}{suffix}" for suffix in ("a", "b", "c")]


class FleetConfig(_FleetSettings):
    """Descriptor files, state directory and admission limits."""

    model_config = SettingsConfigDict(env_prefix="FLEET_")

    instances_file: Path = Field(default=Path("configs/instances.json"))
    profiles_file: Path = Field(default=Path("configs/profiles.json"))
    state_dir: Path = Field(default=Path(".state"))
    max_instances: int = Field(default=10)
    max_slot_num: int = Field(default=99)


class SshConfig(_FleetSettings):
    """Remote execution configuration."""

    model_config = SettingsConfigDict(env_prefix="FLEET_SSH_")

    user: str = Field(default="ubuntu")
    key_file: str = Field(default="")  # empty -> ~/.ssh/{FLEET_KEY_NAME}.pem
    connect_timeout: int = Field(default=10)  # seconds
    wait_attempts: int = Field(default=30)
    wait_interval: float = Field(default=5.0)  # seconds
    command_timeout: float = Field(default=120.0)  # seconds


class SyncConfig(_FleetSettings):
    """Workspace mirroring configuration."""

    model_config = SettingsConfigDict(env_prefix="FLEET_")

    sync_path: Path | None = Field(default=None)
    sync_exclude: Annotated[list[str], NoDecode] = Field(default=["target", ".git", "node_modules"])
    workspace: str = Field(default="/home/ubuntu/work")

    @field_validator("sync_exclude", mode="before")
    @classmethod
    def _parse_excludes(cls, value: object) -> object:
        return _split_words(value)


class JobConfig(_FleetSettings):
    """The long-running job started on every slot."""

    model_config = SettingsConfigDict(env_prefix="JOB_")

    name: str = Field(default="job")
    process_pattern: str = Field(default="")  # empty -> name
    start_cmd: str = Field(default="")
    setup_cmd: str = Field(default="")
    build_cmd: str = Field(default="")
    build_timeout: float = Field(default=1800.0)  # seconds

    # Toolchain needed by build_cmd, installed only when the check fails
    toolchain_check: str = Field(default="")
    toolchain_install: str = Field(default="")
    toolchain_install_timeout: float = Field(default=120.0)  # seconds

    s3_bucket: str = Field(default="")
    checkpoint_prefix: str = Field(default="checkpoint_")
    checkpoint_dir: str = Field(default="/home/ubuntu")
    log_pattern: str = Field(default="/home/ubuntu/job_%NUM%.log")

    success_pattern: str = Field(default="FOUND|SUCCESS|COMPLETE")
    progress_pattern: str = Field(default=r"Progress: [0-9.]+%|ETA: [0-9.]+h")
    result_prefix: str = Field(default="")
    result_pattern: str = Field(default="results")

    env_vars: Annotated[list[str], NoDecode] = Field(default_factory=list)
    verify_delay: float = Field(default=3.0)  # seconds between launch and pgrep

    @field_validator("env_vars", mode="before")
    @classmethod
    def _parse_env_vars(cls, value: object) -> object:
        return _split_words(value)

    @property
    def process_match(self) -> str:
        return self.process_pattern or self.name


class MonitorConfig(_FleetSettings):
    """Health monitor and auto-recovery configuration."""

    model_config = SettingsConfigDict(env_prefix="FLEET_")

    watch_interval: float = Field(default=300.0)  # seconds (5 minutes)
    recovery_timeout: float = Field(default=600.0)  # seconds (10 minutes)
    lock_stale_after: float = Field(default=7200.0)  # seconds (2 hours)
    timeout_lock_policy: TimeoutLockPolicy = Field(default=TimeoutLockPolicy.KEEP)
    log_tail_lines: int = Field(default=20)
    probe_timeout: float = Field(default=10.0)  # seconds per remote probe


class NotifyConfig(_FleetSettings):
    """Notification channels. Unset channels are silently skipped."""

    model_config = SettingsConfigDict(env_prefix="FLEET_")

    alert_email: str = Field(default="")
    smtp_host: str = Field(default="")
    smtp_port: int = Field(default=587)
    smtp_user: str = Field(default="")
    smtp_pass: str = Field(default="")
    smtp_from: str = Field(default="")
    # File with SMTP_USER= / SMTP_PASS= lines, overrides the two fields above
    smtp_credentials: Path | None = Field(default=None)
    slack_webhook: str = Field(default="")
    notify_timeout: float = Field(default=10.0)  # seconds

    @model_validator(mode="after")
    def _load_smtp_credentials(self) -> "NotifyConfig":
        if self.smtp_credentials is None or not self.smtp_credentials.is_file():
            return self
        values = dotenv_values(self.smtp_credentials)
        self.smtp_user = values.get("SMTP_USER") or values.get("FLEET_SMTP_USER") or self.smtp_user
        self.smtp_pass = values.get("SMTP_PASS") or values.get("FLEET_SMTP_PASS") or self.smtp_pass
        return self


class MetricsConfig(_FleetSettings):
    """Prometheus exporter configuration (watch mode only)."""

    model_config = SettingsConfigDict(env_prefix="METRICS_")

    enabled: bool = Field(default=False)
    port: int = Field(default=9108)


class LoggingConfig(_FleetSettings):
    """Logging configuration.

    Standard fields added to all JSON logs:
    - schema_version: Log schema version for backwards compatibility
    - service: Service name (spotfleet)

    Rate limiting:
    - Prevents log storms from a monitor loop repeating the same message
    - ERROR logs bypass rate limiting (always logged)
    """

    model_config = SettingsConfigDict(env_prefix="LOGGING_")

    level: str = Field(default="INFO")
    format: str = Field(default="json")  # json | text
    schema_version: str = Field(default="1.0")
    rate_limit_per_minute: int = Field(default=100)
    service_name: str = Field(default="spotfleet")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SPOTFLEET_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    aws: AwsConfig = Field(default_factory=AwsConfig)
    fleet: FleetConfig = Field(default_factory=FleetConfig)
    ssh: SshConfig = Field(default_factory=SshConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    job: JobConfig = Field(default_factory=JobConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def ssh_key_path(self) -> str:
        if self.ssh.key_file:
            return os.path.expanduser(self.ssh.key_file)
        return os.path.expanduser(f"~/.ssh/{self.aws.key_name}.pem")


@lru_cache
def get_settings() -> Settings:
    return Settings()
