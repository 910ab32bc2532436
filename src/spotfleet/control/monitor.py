"""HealthMonitor - one health cycle over every slot, single pass or watch loop.

Cycle:
1. Evict stale recovery locks, reload the slot collection
2. Scan the result store prefix
3. Per slot: reachability, offline alert dedup, optional auto-recovery,
   success marker / progress / process check
4. One aggregated success notification

A failure in one slot (or in one step) is logged and the cycle carries on.
The watch loop stops only between cycles.
"""

import asyncio
import logging
import re
import time
from collections import Counter
from collections.abc import Callable
from pathlib import Path
from uuid import uuid4

from spotfleet.app.config import JobConfig, MonitorConfig
from spotfleet.app.logging import clear_trace_context, set_trace_id, tail_file, trace_file_log
from spotfleet.app.metrics.collector import (
    MONITOR_CYCLE_DURATION,
    MONITOR_SLOTS,
    REMOTE_PROBE_DURATION,
)
from spotfleet.control.bringup import InstanceBringup
from spotfleet.control.recovery import RecoveryCoordinator
from spotfleet.core.domain.fleet import AlertKind, RecoveryOutcome, SlotHealth, TimeoutLockPolicy
from spotfleet.core.errors import RecoveryTimeout
from spotfleet.core.interfaces.storage import BlobStore
from spotfleet.core.logging_schema import LogEvent
from spotfleet.core.models import CycleReport, InstanceSlot, SlotReport
from spotfleet.core.placeholders import checkpoint_file_name
from spotfleet.core.retryable import with_retry
from spotfleet.infra.fleet_store import FleetStore
from spotfleet.infra.notify import Notifier
from spotfleet.infra.state import OfflineAlertRegistry, RecoveryLockStore

logger = logging.getLogger(__name__)

NO_PROGRESS = "OFFLINE or no progress"


class HealthMonitor:
    """Health checks, alert dedup and auto-recovery for a fleet."""

    def __init__(
        self,
        store: FleetStore,
        bringup: InstanceBringup,
        notifier: Notifier,
        alerts: OfflineAlertRegistry,
        locks: RecoveryLockStore,
        *,
        config: MonitorConfig,
        job: JobConfig,
        project_tag: str,
        state_dir: Path,
        blobs: BlobStore | None = None,
        recovery: RecoveryCoordinator | None = None,
        auto_recover: bool = False,
    ) -> None:
        self._store = store
        self._bringup = bringup
        self._notifier = notifier
        self._alerts = alerts
        self._locks = locks
        self._config = config
        self._job = job
        self._project_tag = project_tag
        self._state_dir = Path(state_dir)
        self._blobs = blobs
        self._recovery = recovery
        self._auto_recover = auto_recover and recovery is not None
        self._results_notified: set[str] = set()
        self._stop = asyncio.Event()

    # =========================================================================
    # Watch loop
    # =========================================================================

    def request_stop(self) -> None:
        """Stop after the in-flight cycle (or right away while sleeping)."""
        self._stop.set()

    async def run(
        self,
        interval: float,
        on_cycle: Callable[[CycleReport, list[tuple[InstanceSlot, str]]], None] | None = None,
        max_cycles: int | None = None,
    ) -> None:
        """Repeat cycles every ``interval`` seconds until stopped."""
        logger.info(
            "Monitor started",
            extra={"event": LogEvent.APP_STARTED, "interval": interval, "auto_recover": self._auto_recover},
        )
        cycles = 0
        while not self._stop.is_set():
            try:
                report = await self.run_cycle()
                summary = await self.quick_summary()
            except Exception as exc:
                logger.exception(
                    "Monitor cycle failed: %s",
                    exc,
                    extra={"event": LogEvent.CYCLE_FAILED},
                )
            else:
                if on_cycle is not None:
                    on_cycle(report, summary)

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Monitor stopped", extra={"event": LogEvent.APP_STOPPED, "cycles": cycles})

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_cycle(self) -> CycleReport:
        """One pass over every slot. Only an unloadable collection raises."""
        trace_id = set_trace_id()
        started = time.monotonic()
        logger.info("Monitor cycle started", extra={"event": LogEvent.CYCLE_STARTED})

        try:
            self._locks.evict_stale()
            slots = self._store.load()

            report = CycleReport(trace_id=trace_id)
            report.results_found = await self._scan_results()

            successes: list[str] = []
            for slot in slots:
                report.slots.append(await self._check_slot_safe(slot, successes))

            if successes:
                report.success_found = True
                logger.info(
                    "Success markers found",
                    extra={"event": LogEvent.SUCCESS_FOUND, "slots": len(successes)},
                )
                await self._notifier.send(
                    AlertKind.SUCCESS,
                    f"[{self._project_tag}] Success Found!",
                    "\n\n".join(successes),
                )

            report.duration_ms = (time.monotonic() - started) * 1000
            MONITOR_CYCLE_DURATION.observe(report.duration_ms / 1000)
            self._record_health(report)
            logger.info(
                "Monitor cycle complete",
                extra={
                    "event": LogEvent.CYCLE_COMPLETE,
                    "slots": len(report.slots),
                    "duration_ms": round(report.duration_ms, 1),
                },
            )
            return report
        finally:
            clear_trace_context()

    def _record_health(self, report: CycleReport) -> None:
        counts = Counter(item.health for item in report.slots)
        for health in SlotHealth:
            MONITOR_SLOTS.labels(health=health.value).set(counts.get(health, 0))

    async def _check_slot_safe(self, slot: InstanceSlot, successes: list[str]) -> SlotReport:
        try:
            return await self._check_slot(slot, successes)
        except Exception as exc:
            logger.exception(
                "Slot check failed",
                extra={"event": LogEvent.SLOT_CHECK_FAILED, "slot": slot.num, "ip": slot.ip},
            )
            return SlotReport(
                num=slot.num,
                description=slot.description,
                ip=slot.ip,
                health=SlotHealth.UNKNOWN,
                error=str(exc),
            )

    async def _probe(self, ip: str) -> bool:
        started = time.monotonic()
        reachable = await self._bringup.is_reachable(ip, self._config.probe_timeout)
        REMOTE_PROBE_DURATION.labels(result="ok" if reachable else "unreachable").observe(
            time.monotonic() - started
        )
        return reachable

    async def _check_slot(self, slot: InstanceSlot, successes: list[str]) -> SlotReport:
        report = SlotReport(
            num=slot.num,
            description=slot.description,
            ip=slot.ip,
            health=SlotHealth.UNCONFIGURED,
        )
        if not slot.ip:
            return report

        if not await self._probe(slot.ip):
            logger.warning(
                "Slot unreachable",
                extra={"event": LogEvent.SLOT_UNREACHABLE, "slot": slot.num, "ip": slot.ip},
            )
            report.health = SlotHealth.UNREACHABLE
            report.recovery = await self._handle_offline(slot)
            return report

        if self._alerts.clear(slot.ip):
            logger.info(
                "Slot back online",
                extra={"event": LogEvent.SLOT_BACK_ONLINE, "slot": slot.num, "ip": slot.ip},
            )

        timeout = self._config.probe_timeout
        success = await self._bringup.success_output(slot.ip, slot.num, timeout=timeout)
        if success:
            report.health = SlotHealth.SUCCESS
            report.success_output = success
            successes.append(f"Instance {slot.num} ({slot.description}) - {slot.ip}:\n{success}")
            return report

        progress = await self._bringup.job_progress(slot.ip, slot.num, timeout=timeout)
        if progress:
            report.health = SlotHealth.RUNNING
            report.progress = progress
            return report

        pid = await self._bringup.job_pid(slot.ip)
        report.health = SlotHealth.RUNNING if pid else SlotHealth.NOT_RUNNING
        return report

    # =========================================================================
    # Offline handling
    # =========================================================================

    async def _handle_offline(self, slot: InstanceSlot) -> RecoveryOutcome | None:
        """Alert once per outage; optionally recover. None if already alerted."""
        if not self._alerts.add_if_absent(slot.ip):
            return None

        checkpoint = await self._last_checkpoint(slot.num)
        await self._notifier.send(
            AlertKind.OFFLINE,
            f"[ALERT] Instance {slot.num} OFFLINE - {slot.description}",
            f"Instance {slot.num} has gone OFFLINE (likely reclaimed).\n\n"
            f"Instance: {slot.num}\n"
            f"IP: {slot.ip}\n"
            f"Description: {slot.description}\n"
            f"Range: {slot.range_start} - {slot.range_end}\n"
            f"Last checkpoint: {checkpoint}\n\n"
            f"To resume, run:\n  spotfleet recover {slot.num}",
        )

        if not self._auto_recover:
            return RecoveryOutcome.SKIPPED
        if self._locks.is_locked(slot.num):
            logger.info(
                "Recovery already in progress, not triggering",
                extra={"event": LogEvent.LOCK_CONTENDED, "slot": slot.num},
            )
            return RecoveryOutcome.SKIPPED
        return await self._auto_recover_slot(slot)

    async def _last_checkpoint(self, num: int) -> str:
        if not (self._blobs and self._job.s3_bucket and self._job.checkpoint_prefix):
            return "unknown"
        key = checkpoint_file_name(self._job.checkpoint_prefix, num)
        try:
            value = await with_retry(lambda: self._blobs.get_text(key), max_retries=2)
        except Exception as exc:
            logger.warning(
                "Could not read checkpoint for alert",
                extra={"event": LogEvent.S3_ERROR, "slot": num, "key": key, "error": str(exc)},
            )
            return "unknown"
        return value or "unknown"

    def recovery_log_path(self, num: int) -> Path:
        return self._state_dir / f"recovery_{num}.log"

    async def _traced_recover(self, num: int, trace_id: str) -> str:
        # Scheduled as its own task; the trace id stays local to the attempt
        set_trace_id(trace_id)
        try:
            result = await self._recovery.recover(num)
        except Exception as exc:
            logger.error("Recovery attempt failed: %s", exc, extra={"slot": num})
            raise
        return result.ip

    async def _auto_recover_slot(self, slot: InstanceSlot) -> RecoveryOutcome:
        num = slot.num
        log_path = self.recovery_log_path(num)
        attempt_trace = f"recover-{num}-{uuid4().hex[:8]}"
        timeout = self._config.recovery_timeout
        logger.info(
            "Auto-recovering slot",
            extra={"event": LogEvent.RECOVERY_STARTED, "slot": num, "timeout_s": timeout},
        )

        with trace_file_log(log_path, attempt_trace):
            try:
                attempt = asyncio.create_task(self._traced_recover(num, attempt_trace))
                new_ip = await asyncio.wait_for(attempt, timeout)
            except asyncio.TimeoutError:
                return await self._recovery_timed_out(slot, timeout)
            except Exception:
                return await self._recovery_failed(slot)

        # The slot now points at a new instance; forget the old address
        self._alerts.clear(slot.ip)
        await self._notifier.send(
            AlertKind.RECOVERED,
            f"[RECOVERED] Instance {num} back online - {slot.description}",
            f"Instance {num} was automatically recovered.\n\n"
            f"Instance: {num}\n"
            f"New IP: {new_ip}\n"
            f"Description: {slot.description}\n\n"
            f"Recovery log: {log_path}",
        )
        return RecoveryOutcome.RECOVERED

    async def _recovery_timed_out(self, slot: InstanceSlot, timeout: float) -> RecoveryOutcome:
        error = RecoveryTimeout(slot.num, timeout)
        logger.error(
            error.message,
            extra={
                "event": LogEvent.RECOVERY_TIMEOUT,
                "slot": slot.num,
                "lock_policy": self._config.timeout_lock_policy.value,
            },
        )
        if self._config.timeout_lock_policy == TimeoutLockPolicy.RELEASE:
            self._locks.release(slot.num)

        tail = tail_file(self.recovery_log_path(slot.num), self._config.log_tail_lines)
        await self._notifier.send(
            AlertKind.RECOVERY_TIMED_OUT,
            f"[FAILED] Instance {slot.num} recovery timed out - {slot.description}",
            f"Auto-recovery timed out for instance {slot.num} "
            f"after {timeout / 60:.0f} minutes.\n\n"
            f"Last {self._config.log_tail_lines} lines of recovery log:\n{tail}\n\n"
            f"Manual recovery:\n  spotfleet recover {slot.num}",
        )
        return RecoveryOutcome.TIMED_OUT

    async def _recovery_failed(self, slot: InstanceSlot) -> RecoveryOutcome:
        tail = tail_file(self.recovery_log_path(slot.num), self._config.log_tail_lines)
        await self._notifier.send(
            AlertKind.RECOVERY_FAILED,
            f"[FAILED] Instance {slot.num} recovery failed - {slot.description}",
            f"Auto-recovery failed for instance {slot.num}.\n\n"
            f"Last {self._config.log_tail_lines} lines of recovery log:\n{tail}\n\n"
            f"Manual recovery:\n  spotfleet recover {slot.num}",
        )
        return RecoveryOutcome.FAILED

    # =========================================================================
    # Result store / summary
    # =========================================================================

    async def _scan_results(self) -> bool:
        """True when result objects exist. New ones are announced once."""
        if not (self._blobs and self._job.s3_bucket):
            return False
        try:
            keys = await self._blobs.list_keys(self._job.result_prefix)
        except Exception as exc:
            logger.warning(
                "Result scan failed",
                extra={"event": LogEvent.S3_ERROR, "error": str(exc)},
            )
            return False

        pattern = re.compile(self._job.result_pattern, re.IGNORECASE)
        matches = [key for key in keys if pattern.search(key)]
        if not matches:
            return False

        fresh = [key for key in matches if key not in self._results_notified]
        if fresh:
            logger.info(
                "Result objects found",
                extra={"event": LogEvent.RESULTS_FOUND, "keys": fresh},
            )
            sections = []
            for key in fresh:
                try:
                    body = await self._blobs.get_text(key)
                except Exception as exc:
                    body = f"(could not read: {exc})"
                sections.append(f"--- {key} ---\n{body}")
            await self._notifier.send(
                AlertKind.RESULTS,
                f"[{self._project_tag}] Results Found!",
                "Result files found in the result store:\n\n" + "\n\n".join(sections),
            )
            self._results_notified.update(fresh)
        return True

    async def quick_summary(self) -> list[tuple[InstanceSlot, str]]:
        """Progress token per slot, or NO_PROGRESS."""
        summary = []
        for slot in self._store.slots:
            status = ""
            if slot.ip:
                try:
                    status = await self._bringup.job_progress(
                        slot.ip, slot.num, timeout=self._config.probe_timeout
                    )
                except Exception as exc:
                    logger.debug("Summary probe failed for slot %d: %s", slot.num, exc)
            summary.append((slot, status or NO_PROGRESS))
        return summary
