"""Error handling module for spotfleet.

This module defines error codes and the exception taxonomy shared by the
provisioner, bring-up, recovery coordinator and monitor.

Propagation:
- CapacityProvisioner and InstanceBringup raise the first failing step
  and stop; they never retry internally.
- RecoveryCoordinator treats every downstream error as terminal for the
  attempt and always releases its lock before re-raising.
- HealthMonitor catches per-slot errors, logs/notifies, and carries on.

Usage:
    from spotfleet.core.errors import ConfigError, NoCapacityError

    raise ConfigError("FLEET_AMI_ID not configured")
    raise NoCapacityError(["us-east-1a", "us-east-1b"])
"""

from enum import Enum

from pydantic import BaseModel

from spotfleet.core.domain.fleet import BringupStage


class ErrorCode(str, Enum):
    """Error codes."""

    CONFIG_ERROR = "CONFIG_ERROR"
    PROVISIONING_ERROR = "PROVISIONING_ERROR"
    NO_CAPACITY = "NO_CAPACITY"
    CONNECTIVITY_ERROR = "CONNECTIVITY_ERROR"
    SYNC_ERROR = "SYNC_ERROR"
    BUILD_ERROR = "BUILD_ERROR"
    SETUP_ERROR = "SETUP_ERROR"
    START_ERROR = "START_ERROR"
    ADMISSION_REJECTED = "ADMISSION_REJECTED"
    ALREADY_RECOVERING = "ALREADY_RECOVERING"
    RECOVERY_TIMEOUT = "RECOVERY_TIMEOUT"


class ErrorDetail(BaseModel):
    """Error detail containing code and message."""

    code: str
    message: str
    stage: str | None = None


class FleetError(Exception):
    """Base exception for spotfleet.

    Attributes:
        code: The error code from ErrorCode enum
        message: Human-readable error message
    """

    def __init__(self, code: ErrorCode, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)

    def to_detail(self) -> ErrorDetail:
        """Convert exception to ErrorDetail model."""
        return ErrorDetail(code=self.code.value, message=self.message)


class ConfigError(FleetError):
    """Missing required setting or unknown slot. Fatal for the command."""

    def __init__(self, message: str = "Invalid configuration") -> None:
        super().__init__(ErrorCode.CONFIG_ERROR, message)


class ProvisioningError(FleetError):
    """Cloud API failure outside the per-zone fallback loop."""

    def __init__(self, message: str = "Provisioning failed") -> None:
        super().__init__(ErrorCode.PROVISIONING_ERROR, message)


class NoCapacityError(FleetError):
    """Every candidate zone was tried without fulfillment.

    Recoverable by the caller (retry/backoff); never retried internally.
    """

    def __init__(self, zones: list[str], message: str | None = None) -> None:
        self.zones = list(zones)
        super().__init__(
            ErrorCode.NO_CAPACITY,
            message or f"No spot capacity in any zone (tried: {', '.join(self.zones)})",
        )


class BringupError(FleetError):
    """A bring-up stage failed. ``stage`` names where the sequence stopped."""

    def __init__(self, code: ErrorCode, stage: BringupStage, message: str) -> None:
        self.stage = stage
        super().__init__(code, message)

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(code=self.code.value, message=self.message, stage=self.stage.value)


class ConnectivityError(BringupError):
    """Instance not reachable over SSH after the bounded wait."""

    def __init__(self, ip: str, message: str | None = None) -> None:
        self.ip = ip
        super().__init__(
            ErrorCode.CONNECTIVITY_ERROR,
            BringupStage.REACHABILITY,
            message or f"SSH not available on {ip}",
        )


class SyncError(BringupError):
    """Workspace mirroring failed."""

    def __init__(self, message: str = "Workspace sync failed") -> None:
        super().__init__(ErrorCode.SYNC_ERROR, BringupStage.SYNC, message)


class BuildError(BringupError):
    """Toolchain install or build command exited non-zero."""

    def __init__(self, message: str = "Build failed") -> None:
        super().__init__(ErrorCode.BUILD_ERROR, BringupStage.BUILD, message)


class SetupError(BringupError):
    """Checkpoint seeding or setup command failed."""

    def __init__(self, message: str = "Setup command failed") -> None:
        super().__init__(ErrorCode.SETUP_ERROR, BringupStage.SETUP, message)


class StartError(BringupError):
    """Job could not be launched, or was not found running afterwards."""

    def __init__(
        self,
        message: str = "Job process not running",
        stage: BringupStage = BringupStage.VERIFY,
    ) -> None:
        super().__init__(ErrorCode.START_ERROR, stage, message)


class AdmissionRejected(FleetError):
    """Fleet already at its concurrent-instance ceiling. No side effects."""

    def __init__(self, count: int, limit: int) -> None:
        self.count = count
        self.limit = limit
        super().__init__(
            ErrorCode.ADMISSION_REJECTED,
            f"Already at max instances ({count}/{limit})",
        )


class AlreadyRecovering(FleetError):
    """Another attempt holds the slot's recovery lock."""

    def __init__(self, num: int) -> None:
        self.num = num
        super().__init__(
            ErrorCode.ALREADY_RECOVERING,
            f"Slot {num} is already being recovered",
        )


class RecoveryTimeout(FleetError):
    """A bounded recovery attempt exceeded its wall-clock budget."""

    def __init__(self, num: int, timeout: float) -> None:
        self.num = num
        self.timeout = timeout
        super().__init__(
            ErrorCode.RECOVERY_TIMEOUT,
            f"Recovery of slot {num} timed out after {timeout:.0f}s",
        )
