"""Fleet domain enums."""

from enum import StrEnum


class SlotHealth(StrEnum):
    """Per-slot status reported by one monitor cycle."""

    UNCONFIGURED = "unconfigured"
    UNREACHABLE = "UNREACHABLE"
    SUCCESS = "SUCCESS"
    RUNNING = "running"
    NOT_RUNNING = "NOT RUNNING"
    UNKNOWN = "unknown"  # the check itself failed


class BringupStage(StrEnum):
    """Ordered bring-up stages. Failures name the stage they stopped at."""

    REACHABILITY = "reachability"
    SYNC = "sync"
    BUILD = "build"
    SETUP = "setup"
    START = "start"
    VERIFY = "verify"


class LaunchState(StrEnum):
    """Detached job state after bring-up.

    LAUNCHED: the start command was dispatched
    VERIFIED: the job process was observed in the remote process table
    """

    LAUNCHED = "launched"
    VERIFIED = "verified"


class RecoveryOutcome(StrEnum):
    """Outcome of a monitor-triggered recovery attempt."""

    RECOVERED = "recovered"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    SKIPPED = "skipped"  # auto-recover off, or slot already locked


class AlertKind(StrEnum):
    """Notification kinds emitted by the monitor."""

    OFFLINE = "offline"
    RECOVERED = "recovered"
    RECOVERY_TIMED_OUT = "recovery_timed_out"
    RECOVERY_FAILED = "recovery_failed"
    SUCCESS = "success"
    RESULTS = "results"


class TimeoutLockPolicy(StrEnum):
    """What happens to a slot's recovery lock when the attempt times out.

    KEEP: lock stays until manual cleanup or staleness eviction
    RELEASE: lock is released so the next cycle may retry
    """

    KEEP = "keep"
    RELEASE = "release"
