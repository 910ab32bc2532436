"""Tests for HealthMonitor cycles, alert dedup and auto-recovery."""

from pathlib import Path

import pytest

from spotfleet.app.config import JobConfig, MonitorConfig
from spotfleet.app.logging import get_trace_id
from spotfleet.control.bringup import InstanceBringup
from spotfleet.control.monitor import NO_PROGRESS, HealthMonitor
from spotfleet.control.recovery import RecoveryCoordinator
from spotfleet.core.domain.fleet import RecoveryOutcome, SlotHealth, TimeoutLockPolicy
from spotfleet.core.interfaces.remote import CommandResult

SLOT_1_IP = "198.51.100.1"
SLOT_2_IP = "198.51.100.2"


@pytest.fixture
def make_monitor(store, bringup, notifier, alerts, locks, monitor_config, job_config, state_dir):
    def _make(
        recovery: RecoveryCoordinator | None = None,
        config: MonitorConfig | None = None,
        job: JobConfig | None = None,
        blobs=None,
    ) -> HealthMonitor:
        return HealthMonitor(
            store,
            bringup,
            notifier,
            alerts,
            locks,
            config=config or monitor_config,
            job=job or job_config,
            project_tag="spot-fleet",
            state_dir=state_dir,
            blobs=blobs,
            recovery=recovery,
            auto_recover=recovery is not None,
        )

    return _make


def _health(report, num: int) -> SlotHealth:
    return next(item.health for item in report.slots if item.num == num)


class TestSlotChecks:
    """Per-slot status derivation."""

    async def test_not_running(self, make_monitor) -> None:
        """Reachable, no success marker, no progress, no process."""
        report = await make_monitor().run_cycle()

        slot = next(item for item in report.slots if item.num == 2)
        assert slot.health == SlotHealth.NOT_RUNNING
        assert slot.status_text() == "NOT RUNNING"

    async def test_unconfigured_slot(self, make_monitor) -> None:
        report = await make_monitor().run_cycle()
        assert _health(report, 3) == SlotHealth.UNCONFIGURED

    async def test_running_with_progress(self, make_monitor, remote) -> None:
        remote.respond("tail -1", CommandResult(0, "Progress: 55.0%\n"))

        report = await make_monitor().run_cycle()

        slot = next(item for item in report.slots if item.num == 1)
        assert slot.health == SlotHealth.RUNNING
        assert slot.status_text() == "Progress: 55.0%"

    async def test_running_without_progress(self, make_monitor, remote) -> None:
        remote.respond("pgrep", CommandResult(0, "4242\n"))

        report = await make_monitor().run_cycle()

        assert _health(report, 1) == SlotHealth.RUNNING

    async def test_success_aggregated_into_one_notification(
        self, make_monitor, remote, channel
    ) -> None:
        remote.respond("grep -iE", CommandResult(0, "FOUND key 0x1f\n"))

        report = await make_monitor().run_cycle()

        assert report.success_found is True
        assert report.completed is True
        assert _health(report, 1) == SlotHealth.SUCCESS
        assert channel.subjects == ["[spot-fleet] Success Found!"]
        assert "Instance 1 (first range)" in channel.sent[0][1]
        assert "Instance 2 (second range)" in channel.sent[0][1]

    async def test_failing_probe_does_not_stop_cycle(
        self, make_monitor, bringup: InstanceBringup, monkeypatch
    ) -> None:
        original = bringup.is_reachable

        async def flaky(ip: str, timeout: float | None = None) -> bool:
            if ip == SLOT_1_IP:
                raise RuntimeError("ssh binary missing")
            return await original(ip, timeout)

        monkeypatch.setattr(bringup, "is_reachable", flaky)

        report = await make_monitor().run_cycle()

        assert _health(report, 1) == SlotHealth.UNKNOWN
        assert _health(report, 2) == SlotHealth.NOT_RUNNING


class TestOfflineDedup:
    """One notification per outage."""

    async def test_one_alert_across_cycles_then_again_after_recovery(
        self, make_monitor, remote, channel
    ) -> None:
        monitor = make_monitor()
        remote.unreachable.add(SLOT_1_IP)

        for _ in range(3):
            report = await monitor.run_cycle()
            assert _health(report, 1) == SlotHealth.UNREACHABLE
        assert len(channel.subjects) == 1
        assert channel.subjects[0].startswith("[ALERT] Instance 1 OFFLINE")

        remote.unreachable.discard(SLOT_1_IP)
        await monitor.run_cycle()
        assert len(channel.subjects) == 1

        remote.unreachable.add(SLOT_1_IP)
        await monitor.run_cycle()
        await monitor.run_cycle()
        assert len(channel.subjects) == 2

    async def test_offline_alert_carries_checkpoint(
        self, make_monitor, remote, channel, blobs
    ) -> None:
        blobs.objects["checkpoint_1.txt"] = "512"
        monitor = make_monitor(job=JobConfig(s3_bucket="fleet-bucket"), blobs=blobs)
        remote.unreachable.add(SLOT_1_IP)

        report = await monitor.run_cycle()

        body = channel.sent[0][1]
        assert "Last checkpoint: 512" in body
        assert "spotfleet recover 1" in body
        assert next(item for item in report.slots if item.num == 1).recovery == RecoveryOutcome.SKIPPED


class TestAutoRecovery:
    """Monitor-triggered recovery."""

    async def test_recovered(self, make_monitor, coordinator, remote, channel, store, locks, alerts, provider) -> None:
        """Offline slot recovered within the timeout."""
        remote.unreachable.add(SLOT_1_IP)
        remote.respond("pgrep", CommandResult(0, "4242\n"))
        monitor = make_monitor(recovery=coordinator)

        report = await monitor.run_cycle()

        assert [s.split(" ")[0] for s in channel.subjects] == ["[ALERT]", "[RECOVERED]"]
        assert provider.next_ip in channel.sent[1][1]
        assert store.get(1).ip == provider.next_ip
        assert locks.is_locked(1) is False
        assert SLOT_1_IP not in alerts
        assert next(item for item in report.slots if item.num == 1).recovery == RecoveryOutcome.RECOVERED

    async def test_attempt_trace_does_not_leak_into_cycle(
        self, make_monitor, coordinator, remote, bringup: InstanceBringup, monkeypatch
    ) -> None:
        """Slots checked after a recovery still log under the cycle's trace id."""
        remote.unreachable.add(SLOT_1_IP)
        remote.respond("pgrep", CommandResult(0, "4242\n"))
        seen: dict[str, str | None] = {}
        original = bringup.is_reachable

        async def recording(ip: str, timeout: float | None = None) -> bool:
            seen.setdefault(ip, get_trace_id())
            return await original(ip, timeout)

        monkeypatch.setattr(bringup, "is_reachable", recording)

        report = await make_monitor(recovery=coordinator).run_cycle()

        assert seen[SLOT_2_IP] == report.trace_id
        assert get_trace_id() is None

    async def test_timeout_keeps_lock_by_default(
        self, make_monitor, coordinator, remote, channel, locks, provider, state_dir: Path
    ) -> None:
        remote.unreachable.add(SLOT_1_IP)
        provider.request_delay = 1.0
        monitor = make_monitor(
            recovery=coordinator, config=MonitorConfig(recovery_timeout=0.05, probe_timeout=1.0)
        )

        report = await monitor.run_cycle()

        assert [s.split(" ")[0] for s in channel.subjects] == ["[ALERT]", "[FAILED]"]
        assert "timed out" in channel.subjects[1]
        assert "Manual recovery" in channel.sent[1][1]
        assert locks.is_locked(1) is True
        assert next(item for item in report.slots if item.num == 1).recovery == RecoveryOutcome.TIMED_OUT
        assert (state_dir / "recovery_1.log").exists()

    async def test_timeout_release_policy(
        self, make_monitor, coordinator, remote, locks, provider
    ) -> None:
        remote.unreachable.add(SLOT_1_IP)
        provider.request_delay = 1.0
        config = MonitorConfig(
            recovery_timeout=0.05, probe_timeout=1.0, timeout_lock_policy=TimeoutLockPolicy.RELEASE
        )

        await make_monitor(recovery=coordinator, config=config).run_cycle()

        assert locks.is_locked(1) is False

    async def test_failed_recovery_notifies_with_log_tail(
        self, make_monitor, coordinator, remote, channel, locks
    ) -> None:
        """No job process after launch: recovery fails, lock released."""
        remote.unreachable.add(SLOT_1_IP)
        monitor = make_monitor(recovery=coordinator)

        report = await monitor.run_cycle()

        assert "recovery failed" in channel.subjects[1]
        assert "Last 5 lines of recovery log" in channel.sent[1][1]
        assert locks.is_locked(1) is False
        assert next(item for item in report.slots if item.num == 1).recovery == RecoveryOutcome.FAILED

    async def test_locked_slot_not_recovered_twice(
        self, make_monitor, coordinator, remote, channel, locks, provider
    ) -> None:
        remote.unreachable.add(SLOT_1_IP)
        locks.try_acquire(1)

        report = await make_monitor(recovery=coordinator).run_cycle()

        assert provider.requests == []
        assert len(channel.subjects) == 1
        assert next(item for item in report.slots if item.num == 1).recovery == RecoveryOutcome.SKIPPED


class TestResultsAndSummary:
    async def test_results_announced_once(self, make_monitor, blobs, channel) -> None:
        blobs.objects["results/slot1.txt"] = "key=0x1f"
        monitor = make_monitor(job=JobConfig(s3_bucket="fleet-bucket"), blobs=blobs)

        first = await monitor.run_cycle()
        second = await monitor.run_cycle()

        assert first.results_found is True
        assert second.results_found is True
        assert channel.subjects == ["[spot-fleet] Results Found!"]
        assert "key=0x1f" in channel.sent[0][1]

    async def test_quick_summary(self, make_monitor, remote) -> None:
        remote.unreachable.add(SLOT_2_IP)
        remote.respond("tail -1", CommandResult(0, "ETA: 2.5h\n"))
        monitor = make_monitor()
        await monitor.run_cycle()

        summary = {slot.num: status for slot, status in await monitor.quick_summary()}

        assert summary == {1: "ETA: 2.5h", 2: NO_PROGRESS, 3: NO_PROGRESS}


class TestWatchLoop:
    async def test_stops_after_max_cycles(self, make_monitor) -> None:
        seen = []
        monitor = make_monitor()

        await monitor.run(0.0, on_cycle=lambda report, summary: seen.append(report), max_cycles=2)

        assert len(seen) == 2

    async def test_request_stop_between_cycles(self, make_monitor) -> None:
        monitor = make_monitor()
        seen = []

        def on_cycle(report, summary) -> None:
            seen.append(report)
            monitor.request_stop()

        await monitor.run(60.0, on_cycle=on_cycle)

        assert len(seen) == 1

    async def test_unloadable_collection_does_not_end_loop(
        self, make_monitor, instances_file: Path
    ) -> None:
        instances_file.write_text("{broken")
        monitor = make_monitor()

        await monitor.run(0.0, max_cycles=2)
