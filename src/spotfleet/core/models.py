"""Fleet data models.

Descriptor collections on disk use the short keys of the original fleet
files (``start``/``end``/``desc``, ``type``/``spot_price``); the models
accept both those and the field names.
"""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from spotfleet.core.domain.fleet import LaunchState, RecoveryOutcome, SlotHealth


class InstanceSlot(BaseModel):
    """A persistent job identity bound to (at most) one instance at a time.

    ``num`` never changes once created. ``ip`` is the only field recovery
    rewrites.
    """

    model_config = ConfigDict(populate_by_name=True)

    num: int = Field(ge=1)
    ip: str = ""
    range_start: int = Field(alias="start")
    range_end: int = Field(alias="end")
    description: str = Field(default="", alias="desc")

    @field_validator("ip", "description", mode="before")
    @classmethod
    def _null_as_empty(cls, value: object) -> object:
        return "" if value is None else value


class Profile(BaseModel):
    """Named provisioning profile."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    instance_type: str = Field(alias="type")
    price_ceiling: str = Field(alias="spot_price")

    @field_validator("price_ceiling", mode="before")
    @classmethod
    def _price_as_text(cls, value: object) -> object:
        # Price is passed to the API verbatim; accept 0.15 as well as "0.15"
        if isinstance(value, (int, float)):
            return str(value)
        return value


class AttemptOutcome(StrEnum):
    FULFILLED = "fulfilled"
    NO_CAPACITY = "no_capacity"
    API_ERROR = "api_error"


class ProvisioningAttempt(BaseModel):
    """One zone tried within a single provisioning call. Never persisted."""

    zone: str
    instance_type: str
    price_ceiling: str
    outcome: AttemptOutcome
    request_id: str | None = None
    status: str | None = None  # provider status code on failure
    cancelled: bool = False


class Fulfilled(BaseModel):
    """Live instance returned by a successful provisioning call."""

    instance_id: str
    ip: str
    zone: str
    attempts: list[ProvisioningAttempt] = Field(default_factory=list)


class BringupResult(BaseModel):
    """Bring-up result. ``state`` is VERIFIED only once the process was seen."""

    ip: str
    slot: int
    state: LaunchState
    pid: str = ""
    log_path: str = ""


class RecoveryResult(BaseModel):
    """A slot brought back by recover or restart."""

    num: int
    ip: str
    instance_id: str | None = None  # None for restart (existing instance)
    zone: str = ""
    pid: str = ""
    already_running: bool = False


class JobStatus(BaseModel):
    """One line of ``spotfleet recover status``."""

    num: int
    description: str = ""
    ip: str = ""
    reachable: bool = False
    pid: str = ""
    progress: str = ""

    def status_text(self) -> str:
        if not self.ip:
            return "NO IP CONFIGURED"
        if not self.reachable:
            return f"{self.ip} - UNREACHABLE"
        if self.pid:
            return f"{self.ip} - RUNNING (PID {self.pid}) {self.progress or 'unknown'}"
        return f"{self.ip} - REACHABLE but NO JOB RUNNING"


class SlotReport(BaseModel):
    """What one monitor cycle observed for one slot."""

    num: int
    description: str = ""
    ip: str = ""
    health: SlotHealth
    progress: str = ""
    success_output: str = ""
    recovery: RecoveryOutcome | None = None
    error: str | None = None

    def status_text(self) -> str:
        if self.health == SlotHealth.RUNNING and self.progress:
            return self.progress
        return self.health.value


class CycleReport(BaseModel):
    """Aggregate of one monitor cycle."""

    trace_id: str
    slots: list[SlotReport] = Field(default_factory=list)
    success_found: bool = False
    results_found: bool = False
    duration_ms: float = 0.0

    @property
    def completed(self) -> bool:
        """Overall completion signal for single-pass mode."""
        return self.success_found or self.results_found
