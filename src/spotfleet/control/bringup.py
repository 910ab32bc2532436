"""InstanceBringup - turn a reachable instance into one running the job.

Stages (strict order, first failure stops the sequence):
1. reachability - bounded SSH probe loop
2. sync        - mirror the local workspace (skipped when unconfigured)
3. build       - toolchain check-before-install, then the build command
4. setup       - checkpoint fetch/seed, then the setup command
5. start       - detached start command, output to the per-slot log
6. verify      - process table check after a short delay

``launch`` returns LAUNCHED once the start command is dispatched;
``verify`` upgrades it to VERIFIED only when the process is observed.
"""

import asyncio
import logging
import os
import shlex
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from pathlib import Path

from spotfleet.app.config import JobConfig, SshConfig, SyncConfig
from spotfleet.app.metrics.collector import BRINGUP_STAGE_FAILURES_TOTAL
from spotfleet.core.domain.fleet import BringupStage, LaunchState
from spotfleet.core.errors import (
    BringupError,
    BuildError,
    ConfigError,
    ConnectivityError,
    SetupError,
    StartError,
    SyncError,
)
from spotfleet.core.interfaces.remote import CommandResult, RemoteExecutor
from spotfleet.core.interfaces.storage import BlobStore
from spotfleet.core.logging_schema import LogEvent
from spotfleet.core.models import BringupResult, InstanceSlot
from spotfleet.core.placeholders import checkpoint_file_name, job_bindings, substitute
from spotfleet.core.retryable import retry_until

logger = logging.getLogger(__name__)

PATH_PREFIX = "export PATH=$HOME/.cargo/bin:$PATH"
AWS_CREDENTIAL_FILES = ("credentials", "config")


def _detail(result: CommandResult) -> str:
    return (result.stderr or result.stdout).strip()[-500:]


class InstanceBringup:
    """Runs the bring-up sequence for one slot on one instance."""

    def __init__(
        self,
        remote: RemoteExecutor,
        job: JobConfig,
        sync: SyncConfig,
        ssh: SshConfig,
        blobs: BlobStore | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._remote = remote
        self._job = job
        self._sync = sync
        self._ssh = ssh
        self._blobs = blobs
        self._env = os.environ if env is None else env

    # =========================================================================
    # Paths and bindings
    # =========================================================================

    def log_path(self, num: int) -> str:
        return substitute(self._job.log_pattern, {"NUM": str(num)})

    def checkpoint_path(self, num: int) -> str:
        name = checkpoint_file_name(self._job.checkpoint_prefix, num)
        return f"{self._job.checkpoint_dir.rstrip('/')}/{name}"

    def bindings(self, slot: InstanceSlot) -> dict[str, str]:
        return job_bindings(
            slot.num,
            slot.range_start,
            slot.range_end,
            checkpoint=self.checkpoint_path(slot.num),
            log=self.log_path(slot.num),
            workspace=self._sync.workspace,
        )

    def env_exports(self) -> str:
        """``export`` prefix forwarding the bucket and JOB_ENV_VARS."""
        exports = []
        if self._job.s3_bucket:
            exports.append(f"export JOB_S3_BUCKET={shlex.quote(self._job.s3_bucket)}")
        for name in self._job.env_vars:
            value = self._env.get(name)
            if value:
                exports.append(f"export {name}={shlex.quote(value)}")
        return "".join(f"{item} && " for item in exports)

    # =========================================================================
    # Sequence
    # =========================================================================

    @asynccontextmanager
    async def _stage(self, stage: BringupStage, slot: int, ip: str) -> AsyncIterator[None]:
        logger.info(
            "Bring-up stage started",
            extra={"event": LogEvent.STAGE_STARTED, "stage": stage.value, "slot": slot, "ip": ip},
        )
        try:
            yield
        except (BringupError, ConfigError) as exc:
            BRINGUP_STAGE_FAILURES_TOTAL.labels(stage=stage.value).inc()
            logger.error(
                "Bring-up stage failed: %s",
                exc.message,
                extra={
                    "event": LogEvent.STAGE_FAILED,
                    "stage": stage.value,
                    "slot": slot,
                    "ip": ip,
                    "error_code": exc.code.value,
                },
            )
            raise
        logger.info(
            "Bring-up stage complete",
            extra={"event": LogEvent.STAGE_COMPLETE, "stage": stage.value, "slot": slot, "ip": ip},
        )

    def _skipped(self, stage: BringupStage, slot: int, reason: str) -> None:
        logger.info(
            "Bring-up stage skipped: %s",
            reason,
            extra={"event": LogEvent.STAGE_SKIPPED, "stage": stage.value, "slot": slot},
        )

    async def bring_up(self, ip: str, slot: InstanceSlot) -> BringupResult:
        """Full sequence. Raises the first failing stage's error."""
        async with self._stage(BringupStage.REACHABILITY, slot.num, ip):
            await self.wait_reachable(ip)
        return await self.start_job(ip, slot)

    async def start_job(self, ip: str, slot: InstanceSlot) -> BringupResult:
        """Stages after reachability, for an instance already known reachable."""
        await self.sync_workspace(ip, slot.num)
        await self.build(ip, slot.num)
        await self.setup(ip, slot)
        launched = await self.launch(ip, slot)
        return await self.verify(launched)

    async def wait_reachable(self, ip: str) -> None:
        outcome = await retry_until(
            lambda: self._remote.probe(ip, timeout=self._ssh.connect_timeout + 5),
            interval=self._ssh.wait_interval,
            max_attempts=self._ssh.wait_attempts,
        )
        if not outcome.ok:
            raise ConnectivityError(
                ip, f"SSH not available on {ip} after {outcome.attempts} attempts"
            )

    async def sync_workspace(self, ip: str, num: int) -> None:
        if self._sync.sync_path is None:
            self._skipped(BringupStage.SYNC, num, "no sync path configured")
            return
        async with self._stage(BringupStage.SYNC, num, ip):
            result = await self._remote.sync(
                ip, Path(self._sync.sync_path), self._sync.workspace, self._sync.sync_exclude
            )
            if not result.ok:
                raise SyncError(f"Workspace sync failed: {_detail(result)}")

    async def build(self, ip: str, num: int) -> None:
        if not self._job.build_cmd:
            self._skipped(BringupStage.BUILD, num, "no build command configured")
            return
        async with self._stage(BringupStage.BUILD, num, ip):
            await self._ensure_toolchain(ip)
            result = await self._remote.run(
                ip,
                f"cd {self._sync.workspace} && {PATH_PREFIX} && {self._job.build_cmd}",
                timeout=self._job.build_timeout,
            )
            if not result.ok:
                raise BuildError(f"Build failed (exit {result.exit_code}): {_detail(result)}")

    async def _ensure_toolchain(self, ip: str) -> None:
        if not (self._job.toolchain_check and self._job.toolchain_install):
            return
        check = await self._remote.run(ip, f"{PATH_PREFIX} && {self._job.toolchain_check}")
        if check.ok:
            return
        logger.info("Installing toolchain", extra={"event": LogEvent.STAGE_STARTED, "ip": ip})
        install = await self._remote.run(
            ip, self._job.toolchain_install, timeout=self._job.toolchain_install_timeout
        )
        if not install.ok:
            raise BuildError(f"Toolchain install failed: {_detail(install)}")

    async def setup(self, ip: str, slot: InstanceSlot) -> None:
        async with self._stage(BringupStage.SETUP, slot.num, ip):
            await self._place_checkpoint(ip, slot)
            if not self._job.setup_cmd:
                return
            command = substitute(self._job.setup_cmd, self.bindings(slot))
            result = await self._remote.run(ip, f"cd {self._sync.workspace} && {command}")
            if not result.ok:
                raise SetupError(f"Setup command failed (exit {result.exit_code}): {_detail(result)}")

    async def _place_checkpoint(self, ip: str, slot: InstanceSlot) -> None:
        if not (self._blobs and self._job.s3_bucket and self._job.checkpoint_prefix):
            return
        key = checkpoint_file_name(self._job.checkpoint_prefix, slot.num)
        try:
            value = await self._blobs.get_text(key)
        except Exception as exc:
            # Seeding from range_start here would discard real progress
            raise SetupError(f"Could not read checkpoint {key}: {exc}") from exc
        if value:
            logger.info("Found stored checkpoint", extra={"slot": slot.num, "checkpoint": value})
        else:
            value = str(slot.range_start)
            logger.info("No checkpoint found, starting fresh", extra={"slot": slot.num})

        path = self.checkpoint_path(slot.num)
        result = await self._remote.run(
            ip, f"printf '%s\\n' {shlex.quote(value)} > {shlex.quote(path)}"
        )
        if not result.ok:
            raise SetupError(f"Could not write checkpoint {path}: {_detail(result)}")

    async def launch(self, ip: str, slot: InstanceSlot) -> BringupResult:
        """Dispatch the start command detached."""
        if not self._job.start_cmd:
            raise ConfigError("JOB_START_CMD not configured")
        log_path = self.log_path(slot.num)
        async with self._stage(BringupStage.START, slot.num, ip):
            command = substitute(self._job.start_cmd, self.bindings(slot))
            full = f"cd {self._sync.workspace} && {self.env_exports()}{PATH_PREFIX} && {command}"
            result = await self._remote.run_detached(ip, full, log_path)
            if not result.ok:
                raise StartError(
                    f"Could not dispatch start command: {_detail(result)}",
                    stage=BringupStage.START,
                )

        logger.info(
            "Job launched",
            extra={"event": LogEvent.JOB_LAUNCHED, "slot": slot.num, "ip": ip, "log": log_path},
        )
        return BringupResult(ip=ip, slot=slot.num, state=LaunchState.LAUNCHED, log_path=log_path)

    async def verify(self, launched: BringupResult) -> BringupResult:
        """Confirm the detached process is alive."""
        async with self._stage(BringupStage.VERIFY, launched.slot, launched.ip):
            await asyncio.sleep(self._job.verify_delay)
            pid = await self.job_pid(launched.ip)
            if not pid:
                raise StartError(
                    f"Job process not running, check log: {launched.log_path}"
                )

        logger.info(
            "Job verified",
            extra={"event": LogEvent.JOB_VERIFIED, "slot": launched.slot, "ip": launched.ip, "pid": pid},
        )
        return launched.model_copy(update={"state": LaunchState.VERIFIED, "pid": pid})

    # =========================================================================
    # Probes shared with recovery / status
    # =========================================================================

    async def is_reachable(self, ip: str, timeout: float | None = None) -> bool:
        return await self._remote.probe(ip, timeout=timeout)

    async def job_pid(self, ip: str) -> str:
        """First PID matching the job's process pattern, or ""."""
        result = await self._remote.run(
            ip, f"pgrep -f {shlex.quote(self._job.process_match)} || true"
        )
        pids = result.output.split()
        return pids[0] if pids else ""

    async def job_progress(self, ip: str, num: int, timeout: float | None = None) -> str:
        """Progress tokens from the last log line, space-joined. "" if none."""
        command = (
            f"tail -1 {shlex.quote(self.log_path(num))} 2>/dev/null "
            f"| grep -oE {shlex.quote(self._job.progress_pattern)} || true"
        )
        result = await self._remote.run(ip, command, timeout=timeout)
        return " ".join(result.output.split("\n")).strip() if result.ok else ""

    async def success_output(self, ip: str, num: int, timeout: float | None = None) -> str:
        """First success-marker lines of the job log, or ""."""
        command = (
            f"grep -iE {shlex.quote(self._job.success_pattern)} "
            f"{shlex.quote(self.log_path(num))} 2>/dev/null | head -5 || true"
        )
        result = await self._remote.run(ip, command, timeout=timeout)
        return result.output if result.ok else ""

    async def initial_setup(self, ip: str, num: int = 0) -> None:
        """Post-launch setup: reachability, AWS credentials, workspace."""
        await self.wait_reachable(ip)
        await self.copy_aws_credentials(ip)
        await self.sync_workspace(ip, num)

    async def copy_aws_credentials(self, ip: str) -> None:
        aws_dir = Path.home() / ".aws"
        files = [aws_dir / name for name in AWS_CREDENTIAL_FILES if (aws_dir / name).is_file()]
        if not files:
            return
        result = await self._remote.copy_files(ip, files, "~/.aws")
        if not result.ok:
            logger.warning("Could not copy AWS credentials", extra={"ip": ip, "error": _detail(result)})
