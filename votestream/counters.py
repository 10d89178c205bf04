# votestream/counters.py
"""
Aggregate counters for the real-time read path.

Counts are bumped at ingress with HINCRBY, so they track accepted votes and
may run ahead of what reconciliation has written to the record store.
"""
import json
import logging
from typing import Dict, Mapping, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from votestream.errors import CounterStoreError
from votestream.models import Candidate

logger = logging.getLogger(__name__)


def resolve_totals(counts: Mapping[str, int], names: Mapping[str, str]) -> Dict[str, int]:
    """Turn id -> count into display name -> count.

    Ids without a registered name are left out; candidates sharing a
    display name are summed.
    """
    totals: Dict[str, int] = {}
    for candidate_id, count in counts.items():
        name = names.get(candidate_id)
        if name is None:
            logger.debug(f"No display name registered for candidate {candidate_id}")
            continue
        totals[name] = totals.get(name, 0) + count
    return totals


class RedisCounterStore:
    def __init__(self, client: Redis, totals_key: str, candidates_key: str):
        self.client = client
        self.totals_key = totals_key
        self.candidates_key = candidates_key

    async def increment(self, candidate_id: str) -> int:
        try:
            return await self.client.hincrby(self.totals_key, candidate_id, 1)
        except RedisError as exc:
            raise CounterStoreError(f"increment for {candidate_id} failed: {exc}") from exc

    async def snapshot_all(self) -> Dict[str, int]:
        try:
            raw = await self.client.hgetall(self.totals_key)
        except RedisError as exc:
            raise CounterStoreError(f"reading {self.totals_key} failed: {exc}") from exc
        return {candidate_id: int(count) for candidate_id, count in raw.items()}

    async def register_candidate(self, candidate: Candidate) -> None:
        try:
            await self.client.hset(self.candidates_key, str(candidate.id), candidate.model_dump_json())
        except RedisError as exc:
            raise CounterStoreError(f"registering {candidate.id} failed: {exc}") from exc

    async def candidate_names(self) -> Dict[str, str]:
        try:
            raw = await self.client.hgetall(self.candidates_key)
        except RedisError as exc:
            raise CounterStoreError(f"reading {self.candidates_key} failed: {exc}") from exc

        names = {}
        for candidate_id, document in raw.items():
            try:
                names[candidate_id] = json.loads(document)["name"]
            except (ValueError, KeyError, TypeError):
                logger.warning(f"Unreadable candidate document for {candidate_id}")
        return names

    async def current_totals(self) -> Dict[str, int]:
        counts = await self.snapshot_all()
        names = await self.candidate_names()
        return resolve_totals(counts, names)

    async def rebuild(self, counts: Mapping[str, int], names: Optional[Mapping[str, str]] = None) -> None:
        """Replace the counter hash with ``counts`` in one transaction."""
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.delete(self.totals_key)
                if counts:
                    pipe.hset(self.totals_key, mapping={key: int(value) for key, value in counts.items()})
                if names:
                    pipe.hset(self.candidates_key, mapping={
                        key: json.dumps({"id": key, "name": value}) for key, value in names.items()
                    })
                await pipe.execute()
        except RedisError as exc:
            raise CounterStoreError(f"rebuilding {self.totals_key} failed: {exc}") from exc
        logger.info(f"Rebuilt aggregate counters for {len(counts)} candidates")
