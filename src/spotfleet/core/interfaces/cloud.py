"""Capacity provider interface for the cloud control plane."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class SpotRequestInfo:
    """Capacity request observation result."""

    request_id: str
    state: str  # open, active, failed, cancelled, closed
    status_code: str = ""
    instance_id: str | None = None

    @property
    def fulfilled(self) -> bool:
        return self.state == "active" and bool(self.instance_id)

    @property
    def terminal_failure(self) -> bool:
        return self.state in ("failed", "cancelled", "closed")


@dataclass
class InstanceInfo:
    """Instance observation result."""

    instance_id: str
    state: str
    ip: str | None = None
    zone: str = ""
    launch_time: str = ""
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.tags.get("Name", "")


class CapacityProvider(ABC):
    """Interface for one-time spot capacity operations.

    Implementations: Ec2CapacityProvider
    """

    @abstractmethod
    async def request_capacity(
        self,
        zone: str,
        instance_type: str,
        price_ceiling: str,
        user_data: str,
    ) -> str:
        """Submit one capacity request pinned to ``zone``.

        Returns:
            Request ID

        Raises:
            Exception: If the provider rejects the submission
        """
        ...

    @abstractmethod
    async def describe_request(self, request_id: str) -> SpotRequestInfo:
        """Poll a capacity request."""
        ...

    @abstractmethod
    async def cancel_request(self, request_id: str) -> None:
        """Cancel an outstanding capacity request."""
        ...

    @abstractmethod
    async def tag_instance(self, instance_id: str, tags: dict[str, str]) -> None:
        ...

    @abstractmethod
    async def wait_running(self, instance_id: str) -> None:
        """Block (bounded by the provider's waiter) until the instance runs."""
        ...

    @abstractmethod
    async def describe_instance(self, instance_id: str) -> InstanceInfo | None:
        """Single instance lookup. None if it no longer exists."""
        ...

    @abstractmethod
    async def list_instances(
        self, project_tag: str, states: tuple[str, ...] | None = None
    ) -> list[InstanceInfo]:
        """List instances tagged ``Project=project_tag`` in the given states."""
        ...

    async def count_active(self, project_tag: str) -> int:
        """Live count of running/pending fleet instances. Never cached."""
        return len(await self.list_instances(project_tag, ("running", "pending")))

    @abstractmethod
    async def terminate(self, instance_id: str) -> None:
        ...
