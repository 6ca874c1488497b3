"""The interface every email transport backend implements."""

from __future__ import annotations

from abc import ABC, abstractmethod

from anvil_notify.message import EmailMessage


class EmailSender(ABC):
    """Abstract email transport, so callers stay backend-agnostic."""

    @abstractmethod
    async def send(self, msg: EmailMessage) -> None:
        """Deliver ``msg`` or raise an :class:`~anvil_notify.errors.AppError`."""