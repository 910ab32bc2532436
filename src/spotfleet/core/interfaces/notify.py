"""Notification channel interface."""

from abc import ABC, abstractmethod


class NotificationChannel(ABC):
    """A single alert transport.

    Implementations: EmailChannel, SlackChannel
    """

    name: str = "channel"

    @property
    @abstractmethod
    def configured(self) -> bool:
        """False when the channel has no destination; sending is then a no-op."""
        ...

    @abstractmethod
    async def send(self, subject: str, body: str) -> None:
        ...
