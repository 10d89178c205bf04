# votestream/event_log.py
"""
Durable event log on Redis Streams.

Entries are appended with XADD and drained by a consumer group. Redis keeps
the group cursor and the pending-entries list, so delivery is at-least-once
across consumer restarts. XCLAIM is the only arbitration between consumers
competing for the same abandoned entry.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from votestream.errors import EventLogError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogEntry:
    entry_id: str
    fields: Optional[Dict[str, str]]


@dataclass(frozen=True)
class PendingEntry:
    entry_id: str
    consumer: str
    idle_ms: int
    delivery_count: int


def next_entry_id(entry_id: str) -> str:
    """Smallest stream id strictly greater than ``entry_id``."""
    millis, _, seq = entry_id.partition("-")
    return f"{millis}-{int(seq or 0) + 1}"


def _as_entries(messages: Iterable) -> List[LogEntry]:
    entries = []
    for message in messages or []:
        # XCLAIM answers nil, or a nil id on Redis < 7, for entries trimmed from the stream
        if message is None:
            continue
        entry_id, fields = message
        if entry_id is None:
            continue
        entries.append(LogEntry(entry_id=entry_id, fields=dict(fields) if fields else None))
    return entries


class RedisEventLog:
    def __init__(self, client: Redis):
        self.client = client

    async def ensure_group(self, stream: str, group: str) -> None:
        """Create the consumer group (and the stream) unless it already exists."""
        try:
            await self.client.xgroup_create(stream, group, id="0", mkstream=True)
            logger.info(f"Created consumer group {group} on {stream}")
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise EventLogError(f"could not create group {group}: {exc}") from exc
        except RedisError as exc:
            raise EventLogError(f"could not create group {group}: {exc}") from exc

    async def append(self, stream: str, fields: Mapping[str, str]) -> str:
        try:
            return await self.client.xadd(stream, dict(fields))
        except RedisError as exc:
            raise EventLogError(f"append to {stream} failed: {exc}") from exc

    async def read_group_new(
        self, stream: str, group: str, consumer: str, count: int, block_ms: Optional[int] = None
    ) -> List[LogEntry]:
        """Deliver entries never delivered to ``group`` before."""
        try:
            response = await self.client.xreadgroup(
                group, consumer, {stream: ">"}, count=count, block=block_ms
            )
        except RedisError as exc:
            raise EventLogError(f"read from {stream} failed: {exc}") from exc

        entries: List[LogEntry] = []
        for _stream_name, messages in response or []:
            entries.extend(_as_entries(messages))
        return entries

    async def list_pending(
        self, stream: str, group: str, start: str = "-", end: str = "+", count: int = 50
    ) -> List[PendingEntry]:
        try:
            rows = await self.client.xpending_range(stream, group, min=start, max=end, count=count)
        except RedisError as exc:
            raise EventLogError(f"pending listing on {stream} failed: {exc}") from exc

        return [
            PendingEntry(
                entry_id=row["message_id"],
                consumer=row["consumer"],
                idle_ms=int(row["time_since_delivered"]),
                delivery_count=int(row["times_delivered"]),
            )
            for row in rows
        ]

    async def claim(
        self, stream: str, group: str, consumer: str, entry_ids: List[str], min_idle_ms: int
    ) -> List[LogEntry]:
        """Take over entries idle for at least ``min_idle_ms``; others are left alone."""
        if not entry_ids:
            return []
        try:
            messages = await self.client.xclaim(stream, group, consumer, min_idle_ms, entry_ids)
        except RedisError as exc:
            raise EventLogError(f"claim on {stream} failed: {exc}") from exc
        return _as_entries(messages)

    async def ack(self, stream: str, group: str, entry_id: str) -> bool:
        """Retire an entry. Acking an unknown or already-acked id is a no-op."""
        try:
            return bool(await self.client.xack(stream, group, entry_id))
        except RedisError as exc:
            raise EventLogError(f"ack of {entry_id} on {stream} failed: {exc}") from exc
