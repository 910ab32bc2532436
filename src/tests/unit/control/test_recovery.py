"""Tests for RecoveryCoordinator admission, locking, recover and restart."""

import asyncio

import pytest

from spotfleet.control.recovery import RecoveryCoordinator, job_statuses
from spotfleet.core.errors import (
    AdmissionRejected,
    AlreadyRecovering,
    ConfigError,
    NoCapacityError,
    StartError,
)
from spotfleet.core.interfaces.cloud import InstanceInfo
from spotfleet.core.interfaces.remote import CommandResult


def _running(n: int) -> list[InstanceInfo]:
    return [InstanceInfo(instance_id=f"i-{i}", state="running") for i in range(n)]


class TestAdmission:
    """Fleet-wide instance ceiling."""

    async def test_rejected_at_max_without_provisioning(
        self, coordinator: RecoveryCoordinator, provider, locks
    ) -> None:
        """At max=10 a recovery makes no provisioning calls and takes no lock."""
        provider.active = _running(10)

        with pytest.raises(AdmissionRejected):
            await coordinator.recover(1)

        assert provider.provisioning_calls == 0
        assert locks.held() == {}

    async def test_count_read_fresh_every_call(
        self, coordinator: RecoveryCoordinator, provider, remote
    ) -> None:
        remote.respond("pgrep", CommandResult(0, "4242\n"))
        provider.active = _running(9)
        await coordinator.recover(1)

        provider.active = _running(10)
        with pytest.raises(AdmissionRejected):
            await coordinator.recover(2)
        assert provider.list_calls == 2


class TestRecover:
    """Provision, bring up, persist."""

    async def test_success_updates_store_and_releases_lock(
        self, coordinator: RecoveryCoordinator, provider, remote, store, locks
    ) -> None:
        remote.respond("pgrep", CommandResult(0, "4242\n"))

        result = await coordinator.recover(1)

        assert result.ip == provider.next_ip
        assert result.zone == "us-east-1a"
        assert result.pid == "4242"
        assert store.get(1).ip == provider.next_ip
        assert locks.is_locked(1) is False
        assert provider.tagged[result.instance_id]["Name"] == "spot-fleet-1"

    async def test_failure_releases_lock(
        self, coordinator: RecoveryCoordinator, provider, store, locks
    ) -> None:
        provider.zone_results.clear()

        with pytest.raises(NoCapacityError):
            await coordinator.recover(2)

        assert locks.is_locked(2) is False
        assert store.get(2).ip == "198.51.100.2"

    async def test_bringup_failure_keeps_old_ip(
        self, coordinator: RecoveryCoordinator, store, locks
    ) -> None:
        """No pid after launch: the slot keeps pointing at the old instance."""
        with pytest.raises(StartError):
            await coordinator.recover(1)

        assert store.get(1).ip == "198.51.100.1"
        assert locks.is_locked(1) is False

    async def test_unknown_slot(self, coordinator: RecoveryCoordinator, provider) -> None:
        with pytest.raises(ConfigError):
            await coordinator.recover(42)
        assert provider.list_calls == 0

    async def test_concurrent_recover_same_slot(
        self, coordinator: RecoveryCoordinator, provider, remote
    ) -> None:
        """Exactly one attempt runs; the other sees AlreadyRecovering."""
        remote.respond("pgrep", CommandResult(0, "4242\n"))

        results = await asyncio.gather(
            coordinator.recover(1), coordinator.recover(1), return_exceptions=True
        )

        recovered = [r for r in results if not isinstance(r, Exception)]
        contended = [r for r in results if isinstance(r, AlreadyRecovering)]
        assert len(recovered) == 1
        assert len(contended) == 1
        assert provider.requests == ["us-east-1a"]

    async def test_held_lock_blocks(self, coordinator: RecoveryCoordinator, locks, provider) -> None:
        locks.try_acquire(3)

        with pytest.raises(AlreadyRecovering):
            await coordinator.recover(3)
        assert provider.requests == []

    async def test_stale_lock_does_not_block(
        self, coordinator: RecoveryCoordinator, locks, clock, remote
    ) -> None:
        remote.respond("pgrep", CommandResult(0, "4242\n"))
        locks.try_acquire(3)
        clock.advance(7200)

        result = await coordinator.recover(3)

        assert result.num == 3
        assert locks.is_locked(3) is False

    async def test_cancellation_keeps_lock(
        self, coordinator: RecoveryCoordinator, provider, locks
    ) -> None:
        """A caller-side timeout leaves the lock for the caller to handle."""
        provider.request_delay = 1.0

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(coordinator.recover(1), timeout=0.05)

        assert locks.is_locked(1) is True


class TestRestart:
    """Restart on an existing instance."""

    async def test_noop_when_already_running(
        self, coordinator: RecoveryCoordinator, remote, provider
    ) -> None:
        remote.respond("pgrep", CommandResult(0, "777\n"))

        result = await coordinator.restart(1)

        assert result.already_running is True
        assert result.pid == "777"
        assert remote.detached == []
        assert provider.requests == []

    async def test_starts_job_when_not_running(
        self, coordinator: RecoveryCoordinator, remote, locks
    ) -> None:
        remote.respond("pgrep", CommandResult(0, ""), CommandResult(0, "888\n"))

        result = await coordinator.restart(2)

        assert result.already_running is False
        assert result.pid == "888"
        assert remote.detached[0][0] == "198.51.100.2"
        assert locks.is_locked(2) is False

    async def test_explicit_ip_is_persisted(
        self, coordinator: RecoveryCoordinator, remote, store
    ) -> None:
        remote.respond("pgrep", CommandResult(0, "999\n"))

        await coordinator.restart(3, ip="203.0.113.77")

        assert store.get(3).ip == "203.0.113.77"

    async def test_slot_without_ip(self, coordinator: RecoveryCoordinator) -> None:
        with pytest.raises(ConfigError, match="no IP"):
            await coordinator.restart(3)

    async def test_restart_needs_no_profile(
        self, store, provider, provisioner, bringup, locks, remote
    ) -> None:
        coordinator = RecoveryCoordinator(
            store, provider, provisioner, bringup, locks,
            zones=[], profile=None, project_tag="spot-fleet", max_instances=10,
        )
        remote.respond("pgrep", CommandResult(0, "1\n"))

        assert (await coordinator.restart(1)).already_running is True
        with pytest.raises(ConfigError, match="profile"):
            await coordinator.recover(1)


class TestJobStatuses:
    async def test_status_per_slot(self, store, bringup, remote) -> None:
        remote.unreachable.add("198.51.100.2")
        remote.respond("pgrep", CommandResult(0, "4242\n"))
        remote.respond("tail -1", CommandResult(0, "Progress: 10.0%\n"))

        statuses = {s.num: s.status_text() for s in await job_statuses(store, bringup)}

        assert statuses == {
            1: "198.51.100.1 - RUNNING (PID 4242) Progress: 10.0%",
            2: "198.51.100.2 - UNREACHABLE",
            3: "NO IP CONFIGURED",
        }
