import logging

from anvil_notify.registry import SenderRegistry
from anvil_notify.sender import EmailSender


class NullSender(EmailSender):
    async def send(self, msg):
        return None


def test_resolve_none_returns_none():
    registry = SenderRegistry()
    registry.register("transactional", NullSender())
    assert registry.resolve(None) is None


def test_resolve_registered_account():
    registry = SenderRegistry()
    sender = NullSender()
    registry.register("transactional", sender)
    assert registry.resolve("transactional") is sender


def test_unknown_account_returns_none_and_warns(caplog):
    registry = SenderRegistry()
    registry.register("transactional", NullSender())
    with caplog.at_level(logging.WARNING, logger="anvil_notify.registry"):
        assert registry.resolve("marketing") is None
    assert any("marketing" in r.getMessage() for r in caplog.records)


def test_register_replaces_existing_account():
    registry = SenderRegistry()
    first, second = NullSender(), NullSender()
    registry.register("transactional", first)
    registry.register("transactional", second)
    assert registry.resolve("transactional") is second


def test_accounts_are_independent():
    registry = SenderRegistry()
    a, b = NullSender(), NullSender()
    registry.register("a", a)
    registry.register("b", b)
    assert (registry.resolve("a"), registry.resolve("b")) == (a, b)