"""Shared fakes and fixtures for spotfleet unit tests."""

import asyncio
import json
from pathlib import Path

import pytest

from spotfleet.app.config import JobConfig, MonitorConfig, SshConfig, SyncConfig
from spotfleet.control.bringup import InstanceBringup
from spotfleet.control.provisioner import CapacityProvisioner
from spotfleet.control.recovery import RecoveryCoordinator
from spotfleet.core.interfaces.cloud import CapacityProvider, InstanceInfo, SpotRequestInfo
from spotfleet.core.interfaces.notify import NotificationChannel
from spotfleet.core.interfaces.remote import CommandResult, RemoteExecutor
from spotfleet.core.interfaces.storage import BlobStore
from spotfleet.core.models import Profile
from spotfleet.infra.fleet_store import FleetStore
from spotfleet.infra.notify import Notifier
from spotfleet.infra.state import OfflineAlertRegistry, RecoveryLockStore

NEW_IP = "203.0.113.50"
SLOT_1_IP = "198.51.100.1"
SLOT_2_IP = "198.51.100.2"


class FakeProvider(CapacityProvider):
    """In-memory capacity provider.

    ``zone_results`` maps zone -> "capacity" | "failed" | "reject";
    unlisted zones stay open (no capacity) until the caller gives up.
    """

    def __init__(self) -> None:
        self.zone_results: dict[str, str] = {}
        self.request_delay = 0.0
        self.requests: list[str] = []
        self.cancelled: list[str] = []
        self.tagged: dict[str, dict[str, str]] = {}
        self.terminated: list[str] = []
        self.active: list[InstanceInfo] = []
        self.list_calls = 0
        self.next_ip = NEW_IP
        self._zones: dict[str, str] = {}

    async def request_capacity(
        self, zone: str, instance_type: str, price_ceiling: str, user_data: str
    ) -> str:
        await asyncio.sleep(self.request_delay)
        self.requests.append(zone)
        if self.zone_results.get(zone) == "reject":
            raise RuntimeError("InvalidParameterValue")
        request_id = f"sir-{len(self.requests)}"
        self._zones[request_id] = zone
        return request_id

    async def describe_request(self, request_id: str) -> SpotRequestInfo:
        zone = self._zones[request_id]
        result = self.zone_results.get(zone)
        if result == "capacity":
            return SpotRequestInfo(request_id, "active", "fulfilled", f"i-{zone}")
        if result == "failed":
            return SpotRequestInfo(request_id, "failed", "bad-parameters")
        return SpotRequestInfo(request_id, "open", "capacity-not-available")

    async def cancel_request(self, request_id: str) -> None:
        self.cancelled.append(request_id)

    async def tag_instance(self, instance_id: str, tags: dict[str, str]) -> None:
        self.tagged[instance_id] = tags

    async def wait_running(self, instance_id: str) -> None:
        return None

    async def describe_instance(self, instance_id: str) -> InstanceInfo | None:
        return InstanceInfo(instance_id=instance_id, state="running", ip=self.next_ip)

    async def list_instances(
        self, project_tag: str, states: tuple[str, ...] | None = None
    ) -> list[InstanceInfo]:
        self.list_calls += 1
        return list(self.active)

    async def terminate(self, instance_id: str) -> None:
        self.terminated.append(instance_id)

    @property
    def provisioning_calls(self) -> int:
        return len(self.requests) + len(self.cancelled) + len(self.tagged)


class FakeRemote(RemoteExecutor):
    """Scripted remote executor.

    ``respond(fragment, *results)`` answers commands containing ``fragment``;
    several results are handed out in order, the last one repeats.
    """

    def __init__(self) -> None:
        self.unreachable: set[str] = set()
        self.commands: list[tuple[str, str]] = []
        self.detached: list[tuple[str, str, str]] = []
        self.synced: list[tuple[str, Path, str]] = []
        self.copied: list[tuple[str, list[Path], str]] = []
        self._rules: list[tuple[str, list[CommandResult]]] = []

    def respond(self, fragment: str, *results: CommandResult) -> None:
        self._rules.insert(0, (fragment, list(results)))

    def commands_for(self, ip: str) -> list[str]:
        return [command for target, command in self.commands if target == ip]

    async def run(self, ip: str, command: str, timeout: float | None = None) -> CommandResult:
        if ip in self.unreachable:
            raise OSError(f"ssh: connect to host {ip} port 22: Connection timed out")
        self.commands.append((ip, command))
        for fragment, results in self._rules:
            if fragment in command:
                return results.pop(0) if len(results) > 1 else results[0]
        return CommandResult(exit_code=0)

    async def run_detached(self, ip: str, command: str, log_path: str) -> CommandResult:
        self.detached.append((ip, command, log_path))
        return CommandResult(exit_code=0)

    async def sync(
        self, ip: str, local_path: Path, remote_path: str, excludes: list[str]
    ) -> CommandResult:
        self.synced.append((ip, local_path, remote_path))
        return CommandResult(exit_code=0)

    async def copy_files(self, ip: str, local_paths: list[Path], remote_dir: str) -> CommandResult:
        self.copied.append((ip, local_paths, remote_dir))
        return CommandResult(exit_code=0)


class FakeBlobs(BlobStore):
    def __init__(self) -> None:
        self.objects: dict[str, str] = {}
        self.fail_reads = False

    async def get_text(self, key: str) -> str:
        if self.fail_reads:
            raise RuntimeError("AccessDenied")
        return self.objects.get(key, "")

    async def put_text(self, key: str, body: str) -> None:
        self.objects[key] = body

    async def list_keys(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self.objects if key.startswith(prefix))


class RecordingChannel(NotificationChannel):
    name = "recording"

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    @property
    def configured(self) -> bool:
        return True

    async def send(self, subject: str, body: str) -> None:
        self.sent.append((subject, body))

    @property
    def subjects(self) -> list[str]:
        return [subject for subject, _ in self.sent]


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def pid_result(pid: str = "4242") -> CommandResult:
    return CommandResult(exit_code=0, stdout=f"{pid}\n")


def write_instances(path: Path, entries: list[dict]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"instances": entries}))
    return path


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def blobs() -> FakeBlobs:
    return FakeBlobs()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def notifier(channel: RecordingChannel) -> Notifier:
    return Notifier([channel])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def job_config() -> JobConfig:
    return JobConfig(
        name="worker",
        start_cmd="./worker --slot %NUM% --from %START% --to %END% --checkpoint %CHECKPOINT%",
        log_pattern="/home/ubuntu/job_%NUM%.log",
        verify_delay=0.0,
    )


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(sync_path=None, workspace="/home/ubuntu/work")


@pytest.fixture
def ssh_config() -> SshConfig:
    return SshConfig(wait_attempts=2, wait_interval=0.0, connect_timeout=1)


@pytest.fixture
def monitor_config() -> MonitorConfig:
    return MonitorConfig(recovery_timeout=5.0, probe_timeout=1.0, log_tail_lines=5)


@pytest.fixture
def profile() -> Profile:
    return Profile.model_validate({"name": "default", "type": "c7i.2xlarge", "spot_price": "0.15"})


@pytest.fixture
def instances_file(tmp_path: Path) -> Path:
    return write_instances(
        tmp_path / "configs" / "instances.json",
        [
            {"num": 1, "ip": SLOT_1_IP, "start": 0, "end": 1000, "desc": "first range"},
            {"num": 2, "ip": SLOT_2_IP, "start": 1000, "end": 2000, "desc": "second range"},
            {"num": 3, "ip": "", "start": 2000, "end": 3000, "desc": "not launched"},
        ],
    )


@pytest.fixture
def store(instances_file: Path) -> FleetStore:
    fleet_store = FleetStore(instances_file)
    fleet_store.load()
    return fleet_store


@pytest.fixture
def locks(state_dir: Path, clock: FakeClock) -> RecoveryLockStore:
    return RecoveryLockStore(state_dir, stale_after=7200, clock=clock)


@pytest.fixture
def alerts(state_dir: Path) -> OfflineAlertRegistry:
    return OfflineAlertRegistry(state_dir)


@pytest.fixture
def bringup(
    remote: FakeRemote, job_config: JobConfig, sync_config: SyncConfig, ssh_config: SshConfig
) -> InstanceBringup:
    return InstanceBringup(remote, job_config, sync_config, ssh_config, env={})


@pytest.fixture
def provisioner(provider: FakeProvider) -> CapacityProvisioner:
    return CapacityProvisioner(
        provider, fulfillment_timeout=0.05, poll_interval=0.01, address_timeout=0.05
    )


@pytest.fixture
def coordinator(
    store: FleetStore,
    provider: FakeProvider,
    provisioner: CapacityProvisioner,
    bringup: InstanceBringup,
    locks: RecoveryLockStore,
    profile: Profile,
) -> RecoveryCoordinator:
    provider.zone_results["us-east-1a"] = "capacity"
    return RecoveryCoordinator(
        store,
        provider,
        provisioner,
        bringup,
        locks,
        zones=["us-east-1a"],
        profile=profile,
        project_tag="spot-fleet",
        max_instances=10,
    )
