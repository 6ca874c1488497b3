"""Registry of named sender accounts."""

from __future__ import annotations

import logging

from anvil_notify.sender import EmailSender

logger = logging.getLogger(__name__)


class SenderRegistry:
    """Maps account names to sender instances.

    Unknown names resolve to ``None`` so the caller can fall back to its
    global default sender instead of dropping the email.
    """

    def __init__(self) -> None:
        self._accounts: dict[str, EmailSender] = {}

    def register(self, name: str, sender: EmailSender) -> None:
        """Register (or replace) the sender for account ``name``."""
        self._accounts[name] = sender

    def resolve(self, account_name: str | None) -> EmailSender | None:
        """Return the sender for ``account_name``, or ``None`` if absent."""
        if account_name is None:
            return None
        sender = self._accounts.get(account_name)
        if sender is None:
            logger.warning(
                "sender_account %r not found in registry — falling back to global mailer",
                account_name,
            )
        return sender