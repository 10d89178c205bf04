# votestream/publisher.py
import asyncio
import logging
import uuid
from typing import Union

from votestream.broadcast import encode_totals
from votestream.errors import AppendFailure, CounterStoreError, EventLogError, ValidationFailure
from votestream.models import VoteEvent

logger = logging.getLogger(__name__)


def _coerce_candidate_id(candidate_id: Union[uuid.UUID, str]) -> uuid.UUID:
    if isinstance(candidate_id, uuid.UUID):
        return candidate_id
    try:
        return uuid.UUID(str(candidate_id))
    except ValueError as exc:
        raise ValidationFailure(f"not a candidate id: {candidate_id!r}") from exc


class IngestionPublisher:
    """
    Accepts a vote intent and makes it durable on the event log.

    Order per vote: append, then increment, then broadcast. Nothing after
    the append happens unless the append succeeded. Candidate existence is
    checked by the HTTP layer, not here.

    Increment, snapshot and publish run under one lock, so within a process
    subscribers always end on the newest totals. Publishers in separate
    processes can still interleave; the next vote corrects a stale snapshot.
    """

    def __init__(self, event_log, counters, hub, stream: str, channel: str):
        self.event_log = event_log
        self.counters = counters
        self.hub = hub
        self.stream = stream
        self.channel = channel
        self._broadcast_lock = asyncio.Lock()

    async def submit_vote(self, candidate_id: Union[uuid.UUID, str]) -> VoteEvent:
        event = VoteEvent.mint(_coerce_candidate_id(candidate_id))

        try:
            entry_id = await self.event_log.append(self.stream, event.to_fields())
        except EventLogError as exc:
            logger.error(f"Vote for {event.candidate_id} rejected, log append failed: {exc}")
            raise AppendFailure(str(exc)) from exc

        logger.debug(f"Vote {event.vote_id} appended as {entry_id}")

        async with self._broadcast_lock:
            try:
                await self.counters.increment(str(event.candidate_id))
                totals = await self.counters.current_totals()
            except CounterStoreError as exc:
                # The vote is durable on the log; counters can be rebuilt from the store.
                logger.error(f"Counter update for vote {event.vote_id} failed: {exc}")
                return event

            await self.hub.publish(self.channel, encode_totals(totals))
        return event
