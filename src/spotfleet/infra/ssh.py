"""SSH/rsync remote executor.

Drives the system ``ssh``, ``scp`` and ``rsync`` binaries through asyncio
subprocesses. Every invocation is bounded: ConnectTimeout on the SSH side
and a wall-clock timeout around the subprocess.
"""

import asyncio
import logging
import shlex
from pathlib import Path

from spotfleet.app.config import SshConfig
from spotfleet.core.interfaces.remote import CommandResult, RemoteExecutor
from spotfleet.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

# Exit code reported for a local timeout (same convention as coreutils timeout)
TIMEOUT_EXIT_CODE = 124


class SshExecutor(RemoteExecutor):
    """RemoteExecutor over OpenSSH."""

    def __init__(self, config: SshConfig, key_path: str) -> None:
        self._config = config
        self._key_path = key_path

    def ssh_options(self) -> list[str]:
        return [
            "-i", self._key_path,
            "-o", "StrictHostKeyChecking=no",
            "-o", f"ConnectTimeout={self._config.connect_timeout}",
            "-o", "BatchMode=yes",
        ]

    def _target(self, ip: str) -> str:
        return f"{self._config.user}@{ip}"

    def interactive_args(self, ip: str) -> list[str]:
        """argv for an interactive session (used with os.execvp)."""
        return ["ssh", "-i", self._key_path, self._target(ip)]

    async def _exec(self, argv: list[str], timeout: float) -> CommandResult:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(
                "Remote command timed out",
                extra={"event": LogEvent.SSH_ERROR, "argv0": argv[0], "timeout_s": timeout},
            )
            return CommandResult(exit_code=TIMEOUT_EXIT_CODE, stderr="timeout")
        except asyncio.CancelledError:
            proc.kill()
            raise

        return CommandResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    async def run(self, ip: str, command: str, timeout: float | None = None) -> CommandResult:
        argv = ["ssh", *self.ssh_options(), self._target(ip), command]
        return await self._exec(argv, timeout or self._config.command_timeout)

    async def run_detached(self, ip: str, command: str, log_path: str) -> CommandResult:
        # All three std streams redirected so sshd can close the session at once
        remote = (
            f"nohup bash -c {shlex.quote(command)} "
            f"> {shlex.quote(log_path)} 2>&1 < /dev/null &"
        )
        return await self.run(ip, remote, timeout=self._config.connect_timeout + 20)

    async def sync(
        self, ip: str, local_path: Path, remote_path: str, excludes: list[str]
    ) -> CommandResult:
        mkdir = await self.run(ip, f"mkdir -p {shlex.quote(remote_path)}")
        if not mkdir.ok:
            return mkdir

        argv = ["rsync", "-az"]
        for pattern in excludes:
            argv.extend(["--exclude", pattern])
        argv.extend([
            "-e", shlex.join(["ssh", *self.ssh_options()]),
            f"{local_path}/",
            f"{self._target(ip)}:{remote_path}/",
        ])
        # Large trees: allow well beyond the per-command default
        return await self._exec(argv, self._config.command_timeout * 10)

    async def copy_files(self, ip: str, local_paths: list[Path], remote_dir: str) -> CommandResult:
        mkdir = await self.run(ip, f"mkdir -p {remote_dir}")
        if not mkdir.ok:
            return mkdir
        argv = [
            "scp",
            *self.ssh_options(),
            *(str(p) for p in local_paths),
            f"{self._target(ip)}:{remote_dir}/",
        ]
        return await self._exec(argv, self._config.command_timeout)
