# votestream/broadcast.py
"""
Broadcast hub over Redis pub/sub, plus the per-connection WebSocket relay.

Publishing is fire-and-forget. Each subscriber sees only payloads published
after its subscription was confirmed; there is no replay.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping

from redis.asyncio import Redis
from redis.exceptions import RedisError
from starlette.websockets import WebSocketDisconnect

from votestream.errors import TransportFailure

logger = logging.getLogger(__name__)

SUBSCRIBE_CONFIRM_TIMEOUT = 5.0


def encode_totals(totals: Mapping[str, int]) -> str:
    return json.dumps(dict(totals), sort_keys=True, separators=(",", ":"))


class RedisSubscription:
    def __init__(self, pubsub, channel: str):
        self._pubsub = pubsub
        self.channel = channel

    def __aiter__(self) -> AsyncIterator[str]:
        return self._messages()

    async def _messages(self) -> AsyncIterator[str]:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                data = message["data"]
                yield data.decode("utf-8") if isinstance(data, bytes) else data
        except RedisError as exc:
            raise TransportFailure(f"subscription to {self.channel} lost: {exc}") from exc


class RedisBroadcastHub:
    def __init__(self, client: Redis):
        self.client = client

    async def publish(self, channel: str, payload: str) -> int:
        """Returns the number of receivers; failures are logged, never raised."""
        try:
            return await self.client.publish(channel, payload)
        except RedisError as exc:
            logger.error(f"Broadcast on {channel} failed: {exc}")
            return 0

    @asynccontextmanager
    async def subscribe(self, channel: str):
        pubsub = self.client.pubsub()
        try:
            try:
                await pubsub.subscribe(channel)
                await self._wait_confirmed(pubsub, channel)
            except (RedisError, asyncio.TimeoutError) as exc:
                raise TransportFailure(f"could not subscribe to {channel}: {exc}") from exc
            yield RedisSubscription(pubsub, channel)
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except RedisError as exc:
                logger.debug(f"Ignoring error while closing subscription to {channel}: {exc}")

    @staticmethod
    async def _wait_confirmed(pubsub, channel: str) -> None:
        async def confirmed():
            while True:
                message = await pubsub.get_message(timeout=1.0)
                if message and message.get("type") == "subscribe":
                    return

        await asyncio.wait_for(confirmed(), timeout=SUBSCRIBE_CONFIRM_TIMEOUT)


async def _forward(websocket, subscription, counter: list) -> None:
    async for payload in subscription:
        await websocket.send_text(payload)
        counter[0] += 1


async def _wait_disconnect(websocket) -> None:
    while True:
        message = await websocket.receive()
        if message.get("type") == "websocket.disconnect":
            return


async def relay(websocket, subscription) -> int:
    """
    Forward every payload from ``subscription`` to ``websocket`` as text.

    Ends when the client goes away (even while the channel is idle) or the
    subscription fails. Neither case is raised: only this connection's relay
    is affected. Returns the number of payloads sent.
    """
    counter = [0]
    forwarder = asyncio.create_task(_forward(websocket, subscription, counter))
    watcher = asyncio.create_task(_wait_disconnect(websocket))
    try:
        done, _ = await asyncio.wait({forwarder, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        forwarder.cancel()
        watcher.cancel()
        results = await asyncio.gather(forwarder, watcher, return_exceptions=True)

    if watcher in done and not watcher.cancelled() and watcher.exception() is None:
        logger.info("Live client disconnected")

    for result in results:
        if isinstance(result, WebSocketDisconnect):
            logger.info("Live client disconnected")
        elif isinstance(result, TransportFailure):
            logger.warning(f"Relay stopped: {result}")
        elif isinstance(result, RuntimeError):
            # starlette raises RuntimeError when using a closed socket
            logger.info(f"Relay stopped, connection closed: {result}")
        elif isinstance(result, Exception):
            logger.error(f"Relay stopped unexpectedly: {result!r}")
    return counter[0]
