# votestream/reconciler.py
"""
Reconciliation consumer: drains the vote stream into the record store.

Each loop iteration optionally runs a reclaim pass (at most once per
``reclaim_interval_seconds``) and then reads one bounded batch of new
entries. An entry is acked only after its row is written; anything that
fails stays pending and comes back through a later reclaim pass once it has
been idle for ``reclaim_min_idle_ms``.
"""
import asyncio
import logging
import os
import socket
import time
import uuid
from typing import Optional

from votestream.backoff import BackoffState
from votestream.config import Settings
from votestream.errors import EventLogError, ParseFailure, PersistFailure
from votestream.event_log import LogEntry, next_entry_id
from votestream.models import ReconcileStats, VoteEvent

logger = logging.getLogger(__name__)


def make_consumer_name(prefix: str) -> str:
    """Unique per running instance: host, pid, start time in ms and a random tag."""
    started_ms = int(time.time() * 1000)
    return f"{prefix}-{socket.gethostname()}-{os.getpid()}-{started_ms}-{uuid.uuid4().hex[:8]}"


class ReconciliationConsumer:
    def __init__(self, event_log, store, settings: Settings, name: Optional[str] = None):
        self.event_log = event_log
        self.store = store
        self.settings = settings
        self.name = name or make_consumer_name(settings.consumer_prefix)
        self.stats = ReconcileStats(consumer=self.name)
        self.backoff = BackoffState()
        self._stopping = asyncio.Event()
        self._group_ready = False

    @property
    def stream(self) -> str:
        return self.settings.stream_name

    @property
    def group(self) -> str:
        return self.settings.group_name

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        """Stop taking new work; the entry being processed still finishes."""
        if not self._stopping.is_set():
            logger.info(f"Consumer {self.name} stopping")
        self._stopping.set()

    async def process_entry(self, entry: LogEntry, delivery_count: int = 1) -> bool:
        """Persist one entry and ack it. Returns True only when acked."""
        try:
            event = VoteEvent.from_fields(entry.fields, entry_id=entry.entry_id)
        except ParseFailure as exc:
            self.stats.parse_failures += 1
            logger.warning(
                f"Unparseable entry {entry.entry_id} (delivery {delivery_count}) left pending: {exc}"
            )
            return False

        try:
            self.store.save_vote(event)
        except PersistFailure as exc:
            self.stats.persist_failures += 1
            logger.error(f"Entry {entry.entry_id} left pending: {exc}")
            return False

        try:
            await self.event_log.ack(self.stream, self.group, entry.entry_id)
        except EventLogError as exc:
            # Row is written; a later reclaim rewrites the same row and acks.
            logger.error(f"Ack of {entry.entry_id} failed, entry left pending: {exc}")
            return False

        self.stats.acked += 1
        logger.debug(f"Reconciled vote {event.vote_id} from entry {entry.entry_id}")
        return True

    async def reclaim_pending(self) -> int:
        """Claim and process pending entries idle past the threshold. Returns how many were claimed."""
        min_idle = self.settings.reclaim_min_idle_ms
        page_size = self.settings.pending_page_size
        start = "-"
        reclaimed = 0

        while not self.stopping:
            page = await self.event_log.list_pending(
                self.stream, self.group, start=start, end="+", count=page_size
            )
            if not page:
                break

            deliveries = {pending.entry_id: pending.delivery_count for pending in page}
            idle_ids = [pending.entry_id for pending in page if pending.idle_ms >= min_idle]
            if idle_ids:
                claimed = await self.event_log.claim(
                    self.stream, self.group, self.name, idle_ids, min_idle
                )
                for entry in claimed:
                    reclaimed += 1
                    await self.process_entry(entry, delivery_count=deliveries.get(entry.entry_id, 0) + 1)

            if len(page) < page_size:
                break
            start = next_entry_id(page[-1].entry_id)

        self.stats.reclaimed += reclaimed
        if reclaimed:
            logger.info(f"Consumer {self.name} reclaimed {reclaimed} pending entries")
        return reclaimed

    async def drain_new(self, block_ms: Optional[int] = None) -> int:
        """Read and process one batch of never-delivered entries."""
        entries = await self.event_log.read_group_new(
            self.stream,
            self.group,
            self.name,
            count=self.settings.read_batch_size,
            block_ms=self.settings.read_block_ms if block_ms is None else block_ms,
        )
        for entry in entries:
            await self.process_entry(entry)
        return len(entries)

    async def ensure_group(self) -> None:
        if not self._group_ready:
            await self.event_log.ensure_group(self.stream, self.group)
            self._group_ready = True

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        next_reclaim = 0.0
        self.stats.running = True
        logger.info(f"Consumer {self.name} started on {self.stream}/{self.group}")

        try:
            while not self.stopping:
                persist_failures = self.stats.persist_failures
                try:
                    await self.ensure_group()
                    if loop.time() >= next_reclaim:
                        await self.reclaim_pending()
                        next_reclaim = loop.time() + self.settings.reclaim_interval_seconds
                    if self.stopping:
                        break
                    await self.drain_new()
                except EventLogError as exc:
                    await self._back_off(f"event log unavailable: {exc}")
                    continue

                if self.stats.persist_failures > persist_failures:
                    await self._back_off("record store writes failing")
                else:
                    self.backoff.record_success()
        finally:
            self.stats.running = False
            logger.info(f"Consumer {self.name} stopped (acked={self.stats.acked})")

    async def _back_off(self, reason: str) -> None:
        delay = self.backoff.record_failure()
        logger.warning(f"Consumer {self.name} backing off {delay:.2f}s: {reason}")
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
