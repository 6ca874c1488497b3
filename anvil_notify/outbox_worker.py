"""Polling the business outbox table and publishing its events.

The worker claims batches of PENDING rows, turns each one into a
notification event and publishes it to the message broker. A row is marked
PUBLISHED only after the broker has accepted it. A crash in between
therefore leads to a duplicate publish, never to a lost event, and the
consumer's idempotency guard absorbs the duplicate. A background reaper
returns rows stranded IN_PROGRESS by a crashed worker to PENDING.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import UUID

from anvil_notify.outbox_event import OutboxRow, build_event

logger = logging.getLogger(__name__)

MAX_IDLE_MULTIPLIER = 8
"""Upper bound on how far the poll interval stretches while the outbox is empty."""

RECONNECT_DELAY_SECS = 2.0
"""Fixed pause before reconnecting to the broker after a failure."""


@dataclass
class OutboxConfig:
    """Settings for the outbox worker."""

    exchange: str = "notifications"
    routing_key: str = "notification.email"
    poll_interval_ms: int = 500
    batch_size: int = 50
    max_publish_failures: int = 5
    stale_lock_timeout_secs: float = 300.0


class OutboxStore(ABC):
    """Access to the business outbox table."""

    @abstractmethod
    async def fetch_pending_batch(self, limit: int) -> list[OutboxRow]:
        """Claim up to ``limit`` PENDING rows, oldest first, as IN_PROGRESS.

        Implementations must claim the rows atomically (for example with
        ``SELECT ... FOR UPDATE SKIP LOCKED`` inside one transaction) so
        two workers never pick the same row.
        """

    @abstractmethod
    async def mark_published(self, row_id: UUID) -> None:
        """Mark an IN_PROGRESS row PUBLISHED and clear its lock."""

    @abstractmethod
    async def record_publish_failure(self, row_id: UUID, max_failures: int) -> None:
        """Count one failure; back to PENDING, or FAILED once ``max_failures`` is reached."""

    @abstractmethod
    async def reap_stale_in_progress(self, timeout_secs: float) -> int:
        """Reset IN_PROGRESS rows locked longer than ``timeout_secs`` (or never) to PENDING.

        Returns the number of rows reset.
        """


class EventPublisher(ABC):
    """A connection to the message broker."""

    @abstractmethod
    async def connect(self, exchange: str) -> None:
        """Open a connection and declare the durable direct ``exchange``."""

    @abstractmethod
    async def publish(self, exchange: str, routing_key: str, body: bytes) -> None:
        """Publish a persistent JSON message and wait for the broker's confirm."""

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Whether the broker channel is still usable."""


def next_idle_multiplier(current: int, had_rows: bool) -> int:
    """Return the poll-interval multiplier after a poll.

    A batch with rows resets it to 1; an empty batch doubles it, up to
    :data:`MAX_IDLE_MULTIPLIER`.
    """
    if had_rows:
        return 1
    return min(current * 2, MAX_IDLE_MULTIPLIER)


async def _wait_for_shutdown(shutdown: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; return True if ``shutdown`` was set meanwhile."""
    try:
        await asyncio.wait_for(shutdown.wait(), timeout=max(seconds, 0))
    except asyncio.TimeoutError:
        return shutdown.is_set()
    return True


class OutboxWorker:
    """Moves events from the outbox table to the broker."""

    def __init__(
        self,
        config: OutboxConfig,
        store: OutboxStore,
        publisher: EventPublisher,
        reconnect_delay: float = RECONNECT_DELAY_SECS,
    ) -> None:
        self.config = config
        self.store = store
        self.publisher = publisher
        self.reconnect_delay = reconnect_delay

    async def poll_once(self) -> bool:
        """Publish one batch of pending rows.

        Returns True when the batch held rows and False when it was empty
        or could not be fetched (database errors are treated as transient).
        Raises the publish error when the broker channel is no longer
        connected, so the caller reconnects.
        """
        try:
            rows = await self.store.fetch_pending_batch(self.config.batch_size)
        except Exception:
            logger.exception("Outbox: failed to fetch batch")
            return False
        if not rows:
            return False

        logger.info("Outbox: processing batch of %d", len(rows))
        for row in rows:
            try:
                await self._publish_and_mark(row)
            except Exception as exc:
                logger.error("Failed to publish outbox row %s: %s", row.event_id, exc)
                try:
                    await self.store.record_publish_failure(
                        row.id, self.config.max_publish_failures
                    )
                except Exception:
                    logger.exception(
                        "Could not record publish failure for %s", row.event_id
                    )
                if not self.publisher.connected:
                    raise
        return True

    async def _publish_and_mark(self, row: OutboxRow) -> None:
        body = json.dumps(build_event(row)).encode("utf-8")
        if row.fail_count > 0:
            logger.warning(
                "Publishing outbox event %s (%s) that has previously failed %d time(s)",
                row.event_id,
                row.event_type,
                row.fail_count,
            )
        await self.publisher.publish(self.config.exchange, self.config.routing_key, body)
        await self.store.mark_published(row.id)
        logger.info("Published outbox event %s (%s)", row.event_id, row.event_type)

    async def reap_once(self) -> int:
        """Reset stale IN_PROGRESS rows once; return how many were reset.

        A failing query is logged and counts as zero rows.
        """
        timeout = self.config.stale_lock_timeout_secs
        try:
            count = await self.store.reap_stale_in_progress(timeout)
        except Exception:
            logger.exception("Reaper: failed to query stale rows")
            return 0
        if count:
            logger.warning(
                "Reaper: reset %d stale IN_PROGRESS rows to PENDING (timeout %ss) — "
                "a previous worker crashed mid-batch",
                count,
                timeout,
            )
        return count

    async def _run_reaper(self, shutdown: asyncio.Event) -> None:
        # Half the timeout bounds recovery at 1.5x the timeout.
        interval = self.config.stale_lock_timeout_secs / 2
        while not await _wait_for_shutdown(shutdown, interval):
            await self.reap_once()

    async def _poll_loop(self, shutdown: asyncio.Event) -> None:
        idle_multiplier = 1
        while not shutdown.is_set():
            had_rows = await self.poll_once()
            idle_multiplier = next_idle_multiplier(idle_multiplier, had_rows)
            wait = self.config.poll_interval_ms * idle_multiplier / 1000
            if await _wait_for_shutdown(shutdown, wait):
                return
        logger.info("Outbox worker: shutdown — stopping poll loop")

    async def run(self, shutdown: asyncio.Event) -> None:
        """Poll and publish until ``shutdown`` is set, reconnecting on failure."""
        reaper = asyncio.create_task(self._run_reaper(shutdown))
        try:
            while not shutdown.is_set():
                try:
                    await self.publisher.connect(self.config.exchange)
                    logger.info("Outbox worker broker ready (exchange %s)", self.config.exchange)
                    await self._poll_loop(shutdown)
                    logger.info("Outbox worker: exiting cleanly")
                    return
                except Exception as exc:
                    if shutdown.is_set():
                        logger.info("Outbox worker: exited after shutdown (%s)", exc)
                        return
                    logger.error(
                        "Outbox worker error — reconnecting in %ss: %s",
                        self.reconnect_delay,
                        exc,
                    )
                    if await _wait_for_shutdown(shutdown, self.reconnect_delay):
                        return
            logger.info("Outbox worker: shutdown requested")
        finally:
            reaper.cancel()
            try:
                await reaper
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Outbox reaper task failed")