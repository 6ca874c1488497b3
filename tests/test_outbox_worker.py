import asyncio
import json
from datetime import datetime, timezone
from uuid import UUID, uuid4

import pytest

from anvil_notify.outbox_event import OutboxRow
from anvil_notify.outbox_worker import (
    MAX_IDLE_MULTIPLIER,
    EventPublisher,
    OutboxConfig,
    OutboxStore,
    OutboxWorker,
    next_idle_multiplier,
)

CREATED = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_row(payload=None, fail_count=0):
    if payload is None:
        payload = {
            "recipients": [{"email": "to@example.com", "name": "To"}],
            "payload": {"orderId": "42"},
            "cc": [{"email": "cc@example.com"}],
        }
    return OutboxRow(
        id=uuid4(),
        event_id=uuid4(),
        event_type="ORDER_CONFIRMATION",
        payload=payload,
        created_at=CREATED,
        fail_count=fail_count,
    )


class FakeStore(OutboxStore):
    def __init__(self, rows=(), fail_fetch=False, reap_result=0, fail_reap=False):
        self.pending = list(rows)
        self.fail_fetch = fail_fetch
        self.reap_result = reap_result
        self.fail_reap = fail_reap
        self.published: list[UUID] = []
        self.failures: list[tuple[UUID, int]] = []
        self.reap_calls: list[float] = []

    async def fetch_pending_batch(self, limit):
        if self.fail_fetch:
            raise RuntimeError("db down")
        batch, self.pending = self.pending[:limit], self.pending[limit:]
        return batch

    async def mark_published(self, row_id):
        self.published.append(row_id)

    async def record_publish_failure(self, row_id, max_failures):
        self.failures.append((row_id, max_failures))

    async def reap_stale_in_progress(self, timeout_secs):
        self.reap_calls.append(timeout_secs)
        if self.fail_reap:
            raise RuntimeError("db down")
        return self.reap_result


class FakePublisher(EventPublisher):
    def __init__(self, fail_publish=False, stay_connected=True, connect_failures=0, on_publish=None):
        self.fail_publish = fail_publish
        self.stay_connected = stay_connected
        self.connect_failures = connect_failures
        self.on_publish = on_publish
        self.connect_calls = 0
        self.messages: list[tuple[str, str, dict]] = []
        self._connected = False

    async def connect(self, exchange):
        self.connect_calls += 1
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ConnectionError("broker unavailable")
        self._connected = True

    async def publish(self, exchange, routing_key, body):
        if self.fail_publish:
            self._connected = self.stay_connected
            raise RuntimeError("publish failed")
        self.messages.append((exchange, routing_key, json.loads(body)))
        if self.on_publish is not None:
            self.on_publish()

    @property
    def connected(self):
        return self._connected


def fast_config(**overrides):
    values = dict(poll_interval_ms=1, batch_size=10)
    values.update(overrides)
    return OutboxConfig(**values)


def test_max_publish_failures_default_is_positive():
    assert OutboxConfig().max_publish_failures > 0


def test_max_publish_failures_default_matches_expected():
    assert OutboxConfig().max_publish_failures == 5


@pytest.mark.parametrize(
    "current, had_rows, expected",
    [(1, False, 2), (2, False, 4), (4, False, 8), (8, False, 8), (8, True, 1), (1, True, 1)],
)
def test_next_idle_multiplier(current, had_rows, expected):
    assert next_idle_multiplier(current, had_rows) == expected


def test_idle_multiplier_never_exceeds_cap():
    m = 1
    for _ in range(20):
        m = next_idle_multiplier(m, False)
    assert m == MAX_IDLE_MULTIPLIER


@pytest.mark.asyncio
async def test_poll_once_empty_batch_returns_false():
    store = FakeStore()
    publisher = FakePublisher()
    worker = OutboxWorker(fast_config(), store, publisher)
    assert await worker.poll_once() is False
    assert publisher.messages == []


@pytest.mark.asyncio
async def test_poll_once_publishes_and_marks_rows():
    rows = [make_row(), make_row()]
    store = FakeStore(rows)
    publisher = FakePublisher()
    cfg = fast_config(exchange="ex", routing_key="rk")
    worker = OutboxWorker(cfg, store, publisher)

    assert await worker.poll_once() is True
    assert store.published == [r.id for r in rows]
    assert [m[:2] for m in publisher.messages] == [("ex", "rk"), ("ex", "rk")]

    event = publisher.messages[0][2]
    assert event["event_id"] == str(rows[0].event_id)
    assert event["timestamp"] == CREATED.isoformat()
    assert "recipients" not in event
    email = event["channel_overrides"]["email"]
    assert email["recipients"][0]["email"] == "to@example.com"
    assert email["cc"][0]["email"] == "cc@example.com"


@pytest.mark.asyncio
async def test_poll_once_respects_batch_size():
    store = FakeStore([make_row() for _ in range(5)])
    publisher = FakePublisher()
    worker = OutboxWorker(fast_config(batch_size=2), store, publisher)
    assert await worker.poll_once() is True
    assert len(publisher.messages) == 2
    assert len(store.pending) == 3


@pytest.mark.asyncio
async def test_poll_once_fetch_error_is_treated_as_empty():
    worker = OutboxWorker(fast_config(), FakeStore(fail_fetch=True), FakePublisher())
    assert await worker.poll_once() is False


@pytest.mark.asyncio
async def test_poll_once_records_failure_and_continues_when_connected():
    rows = [make_row(), make_row()]
    store = FakeStore(rows)
    publisher = FakePublisher(fail_publish=True, stay_connected=True)
    worker = OutboxWorker(fast_config(max_publish_failures=7), store, publisher)

    assert await worker.poll_once() is True
    assert store.failures == [(rows[0].id, 7), (rows[1].id, 7)]
    assert store.published == []


@pytest.mark.asyncio
async def test_poll_once_raises_when_channel_disconnected():
    rows = [make_row(), make_row()]
    store = FakeStore(rows)
    publisher = FakePublisher(fail_publish=True, stay_connected=False)
    worker = OutboxWorker(fast_config(), store, publisher)

    with pytest.raises(RuntimeError, match="publish failed"):
        await worker.poll_once()
    assert store.failures == [(rows[0].id, 5)]


@pytest.mark.asyncio
async def test_poll_once_malformed_recipients_records_failure():
    bad = make_row(payload={"recipients": "not-a-list", "payload": {}})
    good = make_row()
    store = FakeStore([bad, good])
    publisher = FakePublisher()
    publisher._connected = True
    worker = OutboxWorker(fast_config(), store, publisher)

    assert await worker.poll_once() is True
    assert store.failures == [(bad.id, 5)]
    assert store.published == [good.id]


@pytest.mark.asyncio
async def test_reap_once_returns_count():
    store = FakeStore(reap_result=3)
    worker = OutboxWorker(fast_config(stale_lock_timeout_secs=60), store, FakePublisher())
    assert await worker.reap_once() == 3
    assert store.reap_calls == [60]


@pytest.mark.asyncio
async def test_reap_once_error_counts_as_zero():
    worker = OutboxWorker(fast_config(), FakeStore(fail_reap=True), FakePublisher())
    assert await worker.reap_once() == 0


@pytest.mark.asyncio
async def test_run_returns_immediately_when_already_shut_down():
    shutdown = asyncio.Event()
    shutdown.set()
    publisher = FakePublisher()
    worker = OutboxWorker(fast_config(), FakeStore([make_row()]), publisher)
    await asyncio.wait_for(worker.run(shutdown), timeout=2)
    assert publisher.connect_calls == 0
    assert publisher.messages == []


@pytest.mark.asyncio
async def test_run_publishes_until_shutdown():
    shutdown = asyncio.Event()
    rows = [make_row(), make_row()]
    store = FakeStore(rows)
    publisher = FakePublisher(
        on_publish=lambda: len(store.published) + 1 == len(rows) and shutdown.set()
    )
    worker = OutboxWorker(fast_config(), store, publisher)
    await asyncio.wait_for(worker.run(shutdown), timeout=5)
    assert len(publisher.messages) == 2
    assert publisher.connect_calls == 1


@pytest.mark.asyncio
async def test_run_reconnects_after_connect_failure():
    shutdown = asyncio.Event()
    store = FakeStore([make_row()])
    publisher = FakePublisher(connect_failures=2, on_publish=shutdown.set)
    worker = OutboxWorker(fast_config(), store, publisher, reconnect_delay=0.01)
    await asyncio.wait_for(worker.run(shutdown), timeout=5)
    assert publisher.connect_calls == 3
    assert len(publisher.messages) == 1


@pytest.mark.asyncio
async def test_run_starts_reaper():
    shutdown = asyncio.Event()
    store = FakeStore(reap_result=1)
    worker = OutboxWorker(
        fast_config(stale_lock_timeout_secs=0.02), store, FakePublisher()
    )
    task = asyncio.create_task(worker.run(shutdown))
    for _ in range(200):
        if store.reap_calls:
            break
        await asyncio.sleep(0.01)
    shutdown.set()
    await asyncio.wait_for(task, timeout=5)
    assert store.reap_calls[0] == 0.02