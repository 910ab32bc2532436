"""Remote execution interface (command runner + file transfer)."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


@dataclass
class CommandResult:
    """Result of a remote command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return self.stdout.strip()


class RemoteExecutor(ABC):
    """Interface for running commands on fleet instances.

    Every call is bounded by the implementation's connect/command timeouts.

    Implementations: SshExecutor
    """

    @abstractmethod
    async def run(self, ip: str, command: str, timeout: float | None = None) -> CommandResult:
        """Run ``command`` and capture exit code and output."""
        ...

    @abstractmethod
    async def run_detached(self, ip: str, command: str, log_path: str) -> CommandResult:
        """Dispatch ``command`` so it survives the connection closing.

        stdout and stderr of the detached process go to ``log_path``.
        """
        ...

    @abstractmethod
    async def sync(
        self, ip: str, local_path: Path, remote_path: str, excludes: list[str]
    ) -> CommandResult:
        """Mirror ``local_path`` recursively into ``remote_path``."""
        ...

    @abstractmethod
    async def copy_files(self, ip: str, local_paths: list[Path], remote_dir: str) -> CommandResult:
        ...

    async def probe(self, ip: str, timeout: float | None = None) -> bool:
        """Minimal reachability check."""
        try:
            result = await self.run(ip, "true", timeout=timeout)
        except (OSError, TimeoutError):
            return False
        return result.ok
