"""RecoveryCoordinator - re-provision and re-start a slot.

recover(num):
1. Slot lookup (unknown -> ConfigError)
2. Admission: live running/pending count vs. max, read fresh every call
3. Per-slot lock (held -> AlreadyRecovering)
4. CapacityProvisioner -> InstanceBringup
5. Persist the new IP
6. Release the lock

Errors from provisioning and bring-up propagate unchanged after the lock
is released. Cancellation (a caller-side timeout) leaves the lock in place;
the caller decides what happens to it.
"""

import asyncio
import logging
import time

from spotfleet.app.logging import set_trace_id
from spotfleet.app.metrics.collector import RECOVERY_DURATION, RECOVERY_TOTAL
from spotfleet.control.bringup import InstanceBringup
from spotfleet.control.provisioner import CapacityProvisioner
from spotfleet.core.errors import AdmissionRejected, AlreadyRecovering, ConfigError, FleetError
from spotfleet.core.interfaces.cloud import CapacityProvider
from spotfleet.core.logging_schema import LogEvent
from spotfleet.core.models import JobStatus, Profile, RecoveryResult
from spotfleet.infra.fleet_store import FleetStore
from spotfleet.infra.state import RecoveryLockStore

logger = logging.getLogger(__name__)


class RecoveryCoordinator:
    """Admission control + recovery lock around provision and bring-up."""

    def __init__(
        self,
        store: FleetStore,
        provider: CapacityProvider,
        provisioner: CapacityProvisioner,
        bringup: InstanceBringup,
        locks: RecoveryLockStore,
        *,
        zones: list[str],
        profile: Profile | None,
        project_tag: str,
        max_instances: int,
        pinned_zone: str | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._provisioner = provisioner
        self._bringup = bringup
        self._locks = locks
        self._zones = zones
        self._profile = profile
        self._project_tag = project_tag
        self._max_instances = max_instances
        self._pinned_zone = pinned_zone

    @property
    def locks(self) -> RecoveryLockStore:
        return self._locks

    async def check_admission(self, num: int) -> int:
        """Raise AdmissionRejected when the fleet is full. Returns the live count."""
        count = await self._provider.count_active(self._project_tag)
        if count >= self._max_instances:
            logger.warning(
                "Admission rejected",
                extra={
                    "event": LogEvent.ADMISSION_REJECTED,
                    "slot": num,
                    "count": count,
                    "limit": self._max_instances,
                },
            )
            raise AdmissionRejected(count, self._max_instances)
        logger.info(
            "Instance count: %d/%d",
            count,
            self._max_instances,
            extra={"event": LogEvent.ADMISSION_CHECKED, "slot": num},
        )
        return count

    async def recover(self, num: int) -> RecoveryResult:
        """Launch a replacement instance for ``num`` and start its job there."""
        slot = self._store.get(num)
        if self._profile is None:
            raise ConfigError("No provisioning profile configured")
        await self.check_admission(num)

        if not self._locks.try_acquire(num):
            raise AlreadyRecovering(num)

        started = time.monotonic()
        logger.info(
            "Recovering slot %d: %s (range %d - %d)",
            num,
            slot.description,
            slot.range_start,
            slot.range_end,
            extra={"event": LogEvent.RECOVERY_STARTED, "slot": num},
        )
        try:
            fulfilled = await self._provisioner.provision(
                self._zones,
                self._profile.instance_type,
                self._profile.price_ceiling,
                pinned_zone=self._pinned_zone,
                tags={
                    "Name": f"{self._project_tag}-{num}",
                    "Project": self._project_tag,
                    "Profile": self._profile.name,
                },
            )
            result = await self._bringup.bring_up(fulfilled.ip, slot)
            self._store.update_ip(num, fulfilled.ip)
        except asyncio.CancelledError:
            RECOVERY_TOTAL.labels(mode="recover", outcome="cancelled").inc()
            raise
        except Exception as exc:
            self._locks.release(num)
            RECOVERY_TOTAL.labels(mode="recover", outcome="failed").inc()
            self._log_failure(num, exc)
            raise

        self._locks.release(num)
        RECOVERY_TOTAL.labels(mode="recover", outcome="recovered").inc()
        RECOVERY_DURATION.labels(mode="recover").observe(time.monotonic() - started)
        logger.info(
            "Slot %d recovered at %s",
            num,
            fulfilled.ip,
            extra={
                "event": LogEvent.RECOVERY_SUCCESS,
                "slot": num,
                "ip": fulfilled.ip,
                "instance_id": fulfilled.instance_id,
                "zone": fulfilled.zone,
            },
        )
        return RecoveryResult(
            num=num,
            ip=fulfilled.ip,
            instance_id=fulfilled.instance_id,
            zone=fulfilled.zone,
            pid=result.pid,
        )

    async def restart(self, num: int, ip: str | None = None) -> RecoveryResult:
        """Start the job again on an existing instance.

        A no-op when the job process is already running there. A supplied
        ``ip`` that differs from the stored one is persisted after success.
        """
        slot = self._store.get(num)
        target = ip or slot.ip
        if not target:
            raise ConfigError(f"Job {num} has no IP on file; pass one explicitly")

        if not self._locks.try_acquire(num):
            raise AlreadyRecovering(num)

        started = time.monotonic()
        try:
            await self._bringup.wait_reachable(target)
            pid = await self._bringup.job_pid(target)
            if pid:
                logger.info(
                    "Job already running on %s (PID %s)",
                    target,
                    pid,
                    extra={"event": LogEvent.JOB_VERIFIED, "slot": num, "ip": target},
                )
                outcome = RecoveryResult(num=num, ip=target, pid=pid, already_running=True)
            else:
                logger.info("No job running, restarting", extra={"slot": num, "ip": target})
                result = await self._bringup.start_job(target, slot)
                outcome = RecoveryResult(num=num, ip=target, pid=result.pid)
            if ip and ip != slot.ip:
                self._store.update_ip(num, ip)
        except asyncio.CancelledError:
            RECOVERY_TOTAL.labels(mode="restart", outcome="cancelled").inc()
            raise
        except Exception as exc:
            self._locks.release(num)
            RECOVERY_TOTAL.labels(mode="restart", outcome="failed").inc()
            self._log_failure(num, exc)
            raise

        self._locks.release(num)
        RECOVERY_TOTAL.labels(mode="restart", outcome="recovered").inc()
        RECOVERY_DURATION.labels(mode="restart").observe(time.monotonic() - started)
        return outcome

    def _log_failure(self, num: int, exc: Exception) -> None:
        if isinstance(exc, FleetError):
            detail = exc.to_detail()
            logger.error(
                "Recovery of slot %d failed: %s",
                num,
                detail.message,
                extra={
                    "event": LogEvent.RECOVERY_FAILED,
                    "slot": num,
                    "error_code": detail.code,
                    "stage": detail.stage,
                },
            )
        else:
            logger.exception(
                "Recovery of slot %d failed",
                num,
                extra={"event": LogEvent.RECOVERY_FAILED, "slot": num},
            )


async def job_statuses(
    store: FleetStore, bringup: InstanceBringup, probe_timeout: float | None = None
) -> list[JobStatus]:
    """Job status for every slot on file (``spotfleet recover status``)."""
    set_trace_id()
    statuses = []
    for slot in store.slots:
        status = JobStatus(num=slot.num, description=slot.description, ip=slot.ip)
        if slot.ip and await bringup.is_reachable(slot.ip, probe_timeout):
            status.reachable = True
            status.pid = await bringup.job_pid(slot.ip)
            if status.pid:
                status.progress = await bringup.job_progress(slot.ip, slot.num)
        statuses.append(status)
    return statuses
