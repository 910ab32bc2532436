"""Domain enums."""

from spotfleet.core.domain.fleet import (
    AlertKind,
    BringupStage,
    LaunchState,
    RecoveryOutcome,
    SlotHealth,
    TimeoutLockPolicy,
)

__all__ = [
    "AlertKind",
    "BringupStage",
    "LaunchState",
    "RecoveryOutcome",
    "SlotHealth",
    "TimeoutLockPolicy",
]
