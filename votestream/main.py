# votestream/main.py
import asyncio
import logging
import uuid
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from redis.asyncio import Redis

from votestream.broadcast import RedisBroadcastHub, relay
from votestream.config import Settings, get_settings
from votestream.counters import RedisCounterStore
from votestream.errors import AppendFailure, CounterStoreError, PersistFailure, TransportFailure, ValidationFailure
from votestream.event_log import RedisEventLog
from votestream.logging_setup import configure_logging
from votestream.models import Candidate, CandidateIn, ReconcileStats, VoteAccepted, VoteIn
from votestream.publisher import IngestionPublisher
from votestream.reconciler import ReconciliationConsumer
from votestream.store import RecordStore

logger = logging.getLogger(__name__)


class VotingService:
    """
    Wires the ingestion side (log, counters, hub) to the reconciliation side
    (consumer, record store).

    Totals returned by ``current_totals`` count accepted votes, which may be
    ahead of what the record store holds until reconciliation catches up.
    """

    def __init__(self, settings: Settings, event_log, counters, hub, store: RecordStore,
                 consumer_name: Optional[str] = None, client: Optional[Redis] = None):
        self.settings = settings
        self.client = client
        self.event_log = event_log
        self.counters = counters
        self.hub = hub
        self.store = store
        self.publisher = IngestionPublisher(
            event_log, counters, hub, stream=settings.stream_name, channel=settings.channel_name
        )
        self.consumer = ReconciliationConsumer(event_log, store, settings, name=consumer_name)
        self._consumer_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "VotingService":
        client = Redis.from_url(settings.redis_url, decode_responses=True)
        return cls(
            settings,
            event_log=RedisEventLog(client),
            counters=RedisCounterStore(client, settings.totals_key, settings.candidates_key),
            hub=RedisBroadcastHub(client),
            store=RecordStore(settings.sqlite_path),
            client=client,
        )

    # --- Candidate registry ---

    async def create_candidate(self, name: str) -> Candidate:
        candidate = Candidate(id=uuid.uuid4(), name=name)
        self.store.insert_candidate(candidate)
        await self.counters.register_candidate(candidate)
        logger.info(f"Registered candidate {candidate.name} ({candidate.id})")
        return candidate

    def get_candidate(self, candidate_id: uuid.UUID) -> Optional[Candidate]:
        return self.store.get_candidate(candidate_id)

    def list_candidates(self) -> List[Candidate]:
        return self.store.list_candidates()

    # --- Votes ---

    async def submit_vote(self, candidate_id: uuid.UUID):
        return await self.publisher.submit_vote(candidate_id)

    async def current_totals(self) -> Dict[str, int]:
        return await self.counters.current_totals()

    async def rebuild_counters(self) -> Dict[str, int]:
        """Reset the aggregate counters from a full scan of the record store."""
        counts = self.store.count_by_candidate()
        names = {str(candidate.id): candidate.name for candidate in self.store.list_candidates()}
        await self.counters.rebuild(counts, names)
        return counts

    # --- Lifecycle ---

    def start(self) -> asyncio.Task:
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(self.consumer.run())
        return self._consumer_task

    async def shutdown(self) -> None:
        task = self._consumer_task
        self.consumer.stop()
        if task is not None:
            await self._await_consumer(task)
            self._consumer_task = None
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    async def _await_consumer(self, task: asyncio.Task) -> None:
        try:
            await asyncio.wait_for(task, timeout=self.settings.shutdown_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Consumer did not stop in time, cancelling")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


# --- FastAPI App Setup ---
app = FastAPI(title="Vote Ingestion and Reconciliation")

_service: Optional[VotingService] = None


def get_service() -> VotingService:
    global _service
    if _service is None:
        settings = get_settings()
        configure_logging(settings.log_level)
        _service = VotingService.from_settings(settings)
    return _service


@app.on_event("startup")
async def startup_event():
    get_service().start()


@app.on_event("shutdown")
async def shutdown_event():
    global _service
    if _service is not None:
        await _service.shutdown()
        _service = None


@app.get("/ping")
async def ping():
    return {"message": "pong"}


@app.post("/candidates", response_model=Candidate, status_code=201)
async def create_candidate(candidate: CandidateIn, service: VotingService = Depends(get_service)):
    try:
        return await service.create_candidate(candidate.name)
    except (PersistFailure, CounterStoreError) as exc:
        logger.error(f"Candidate registration failed: {exc}")
        raise HTTPException(status_code=503, detail="candidate registry unavailable")


@app.get("/candidates", response_model=List[Candidate])
async def list_candidates(service: VotingService = Depends(get_service)):
    return service.list_candidates()


@app.get("/candidates/{candidate_id}", response_model=Candidate)
async def get_candidate(candidate_id: uuid.UUID, service: VotingService = Depends(get_service)):
    candidate = service.get_candidate(candidate_id)
    if candidate is None:
        raise HTTPException(status_code=404, detail="candidate not found")
    return candidate


@app.post("/votes", response_model=VoteAccepted, status_code=202)
async def submit_vote(vote: VoteIn, service: VotingService = Depends(get_service)):
    if service.get_candidate(vote.candidate_id) is None:
        raise HTTPException(status_code=404, detail="candidate not found")
    try:
        event = await service.submit_vote(vote.candidate_id)
    except ValidationFailure as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except AppendFailure:
        raise HTTPException(status_code=503, detail="vote not recorded, try again")
    return VoteAccepted(vote_id=event.vote_id, candidate_id=event.candidate_id, time_bucket=event.time_bucket)


@app.get("/votes/totals", response_model=Dict[str, int])
async def current_totals(service: VotingService = Depends(get_service)):
    try:
        return await service.current_totals()
    except CounterStoreError as exc:
        logger.error(f"Totals unavailable: {exc}")
        raise HTTPException(status_code=503, detail="totals unavailable")


@app.post("/votes/rebuild", response_model=Dict[str, int])
async def rebuild_counters(service: VotingService = Depends(get_service)):
    try:
        return await service.rebuild_counters()
    except CounterStoreError as exc:
        logger.error(f"Counter rebuild failed: {exc}")
        raise HTTPException(status_code=503, detail="counter store unavailable")


@app.get("/stats", response_model=ReconcileStats)
async def get_stats(service: VotingService = Depends(get_service)):
    return service.consumer.stats


@app.websocket("/votes/live")
async def live_totals(websocket: WebSocket, service: VotingService = Depends(get_service)):
    await websocket.accept()
    try:
        async with service.hub.subscribe(service.settings.channel_name) as subscription:
            await relay(websocket, subscription)
    except TransportFailure as exc:
        logger.warning(f"Live subscription failed: {exc}")
    finally:
        await _close_quietly(websocket)


async def _close_quietly(websocket: WebSocket) -> None:
    try:
        await websocket.close()
    except (RuntimeError, WebSocketDisconnect):
        # already closed by the client
        pass


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
