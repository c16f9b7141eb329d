import asyncio
import json
import logging
import redis.asyncio as redis
from adventure95.core.config import settings

logger = logging.getLogger(__name__)


def game_channel(game_id: int) -> str:
    return f"game:{game_id}"


class RedisClient:
    def __init__(self, url):
        self.redis_url = url
        self.redis_pool = None

    @property
    def enabled(self) -> bool:
        return self.redis_pool is not None

    async def connect(self):
        if not self.redis_url:
            logger.info("REDIS_URL is not set; progress events are disabled.")
            return
        self.redis_pool = redis.ConnectionPool.from_url(self.redis_url, decode_responses=True)

    async def close(self):
        if self.redis_pool:
            await self.redis_pool.disconnect()
            self.redis_pool = None

    async def publish(self, channel: str, message: dict):
        """
        Publishes a message to a Redis channel. Does nothing without a connection.
        """
        if not self.enabled:
            logger.debug(f"Skipping '{message.get('event')}' event on {channel}: no Redis connection")
            return
        try:
            async with redis.Redis(connection_pool=self.redis_pool) as r:
                await r.publish(channel, json.dumps(message, ensure_ascii=False))
        except redis.RedisError as e:
            # Progress events are advisory; the REST reply carries the real result
            logger.warning(f"Failed to publish to {channel}: {e}")

    async def listen(self, channel: str):
        """
        Listens to a Redis channel and yields messages.
        """
        async with redis.Redis(connection_pool=self.redis_pool) as r:
            pubsub = r.pubsub()
            await pubsub.subscribe(channel)
            try:
                while True:
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=20)
                    if message:
                        yield message['data']
                    await asyncio.sleep(0.01)
            finally:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()

redis_client = RedisClient(settings.REDIS_URL)


def format_sse(data: str) -> str:
    """
    Formats one pub/sub payload as an SSE message, naming the event after its "event" key.
    """
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        # If the message is not valid JSON, send it as a generic message.
        return f"event: message\ndata: {data}\n\n"
    event_name = payload.get("event", "message") if isinstance(payload, dict) else "message"
    return f"event: {event_name}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def sse_generator(game_id: int):
    """
    An async generator that listens to a game's channel and yields SSE-formatted messages.
    """
    if not redis_client.enabled:
        yield format_sse(json.dumps({"event": "error", "message": "Progress events are disabled"}))
        return
    async for message in redis_client.listen(game_channel(game_id)):
        yield format_sse(message)
