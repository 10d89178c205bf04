# tests/fakes.py
"""In-memory doubles for the event log, counters and hub, with a manual clock."""
import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Dict, List

from starlette.websockets import WebSocketDisconnect

from votestream.counters import resolve_totals
from votestream.errors import CounterStoreError, EventLogError
from votestream.event_log import LogEntry, PendingEntry
from votestream.models import VoteEvent

FIVE_MINUTES_MS = 5 * 60 * 1000


def _id_key(entry_id: str):
    if entry_id == "-":
        return (-1, -1)
    if entry_id == "+":
        return (float("inf"), float("inf"))
    millis, _, seq = entry_id.partition("-")
    return (int(millis), int(seq or 0))


class ManualClock:
    def __init__(self, now_ms: int = 1_000_000):
        self.now_ms = now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class MemoryEventLog:
    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.entries: Dict[str, Dict[str, Dict[str, str]]] = {}
        self.groups: Dict[tuple, dict] = {}
        self._seq = 0
        self.fail_appends = False
        self.fail_reads = 0

    async def ensure_group(self, stream, group):
        self.entries.setdefault(stream, {})
        self.groups.setdefault((stream, group), {"cursor": 0, "pending": {}})

    async def append(self, stream, fields):
        if self.fail_appends:
            raise EventLogError("log unreachable")
        self._seq += 1
        entry_id = f"{self._seq}-0"
        self.entries.setdefault(stream, {})[entry_id] = dict(fields)
        return entry_id

    async def read_group_new(self, stream, group, consumer, count, block_ms=None):
        if self.fail_reads:
            self.fail_reads -= 1
            raise EventLogError("log unreachable")
        state = self.groups[(stream, group)]
        ids = list(self.entries.get(stream, {}))[state["cursor"]:state["cursor"] + count]
        if not ids and block_ms:
            await asyncio.sleep(min(block_ms / 1000, 0.01))
            return []
        state["cursor"] += len(ids)
        for entry_id in ids:
            state["pending"][entry_id] = {"consumer": consumer, "delivered_at": self.clock.now_ms, "count": 1}
        return [LogEntry(entry_id, dict(self.entries[stream][entry_id])) for entry_id in ids]

    async def list_pending(self, stream, group, start="-", end="+", count=50):
        state = self.groups[(stream, group)]
        low, high = _id_key(start), _id_key(end)
        rows = [
            PendingEntry(
                entry_id=entry_id,
                consumer=info["consumer"],
                idle_ms=self.clock.now_ms - info["delivered_at"],
                delivery_count=info["count"],
            )
            for entry_id, info in sorted(state["pending"].items(), key=lambda item: _id_key(item[0]))
            if low <= _id_key(entry_id) <= high
        ]
        return rows[:count]

    async def claim(self, stream, group, consumer, entry_ids, min_idle_ms):
        state = self.groups[(stream, group)]
        claimed: List[LogEntry] = []
        for entry_id in entry_ids:
            info = state["pending"].get(entry_id)
            if info is None or self.clock.now_ms - info["delivered_at"] < min_idle_ms:
                continue
            info.update(consumer=consumer, delivered_at=self.clock.now_ms, count=info["count"] + 1)
            claimed.append(LogEntry(entry_id, dict(self.entries[stream][entry_id])))
        return claimed

    async def ack(self, stream, group, entry_id):
        return self.groups[(stream, group)]["pending"].pop(entry_id, None) is not None

    def pending_ids(self, stream, group) -> List[str]:
        return sorted(self.groups[(stream, group)]["pending"], key=_id_key)


class MemoryCounterStore:
    def __init__(self):
        self.counts: Dict[str, int] = {}
        self.names: Dict[str, str] = {}
        self.fail_increments = False

    async def increment(self, candidate_id):
        if self.fail_increments:
            raise CounterStoreError("counter store unreachable")
        self.counts[candidate_id] = self.counts.get(candidate_id, 0) + 1
        return self.counts[candidate_id]

    async def snapshot_all(self):
        return dict(self.counts)

    async def register_candidate(self, candidate):
        self.names[str(candidate.id)] = candidate.name

    async def current_totals(self):
        return resolve_totals(self.counts, self.names)

    async def rebuild(self, counts, names=None):
        self.counts = dict(counts)
        if names:
            self.names.update(names)


class MemorySubscription:
    def __init__(self, queue: asyncio.Queue):
        self.queue = queue

    def __aiter__(self):
        return self

    async def __anext__(self):
        payload = await self.queue.get()
        if payload is None:
            raise StopAsyncIteration
        return payload


class MemoryBroadcastHub:
    def __init__(self):
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.published: List[tuple] = []

    async def publish(self, channel, payload):
        self.published.append((channel, payload))
        queues = self.subscribers.get(channel, [])
        for queue in queues:
            queue.put_nowait(payload)
        return len(queues)

    @asynccontextmanager
    async def subscribe(self, channel):
        queue: asyncio.Queue = asyncio.Queue()
        self.subscribers.setdefault(channel, []).append(queue)
        try:
            yield MemorySubscription(queue)
        finally:
            self.subscribers[channel].remove(queue)

    def close_channel(self, channel):
        for queue in self.subscribers.get(channel, []):
            queue.put_nowait(None)


class RecordingWebSocket:
    def __init__(self, disconnect_after=None):
        self.sent: List[str] = []
        self.disconnect_after = disconnect_after
        self._closed = asyncio.Event()

    def client_disconnect(self):
        self._closed.set()

    async def receive(self):
        await self._closed.wait()
        return {"type": "websocket.disconnect", "code": 1000}

    async def send_text(self, text):
        if self.disconnect_after is not None and len(self.sent) >= self.disconnect_after:
            raise WebSocketDisconnect(code=1001)
        self.sent.append(text)


def create_mock_event(candidate_id=None) -> VoteEvent:
    return VoteEvent.mint(candidate_id or uuid.uuid4())
