from __future__ import annotations

import hashlib
import json
import math
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

_OAUTH_STATE_PREFIX = "auth:oauth:"


class RedisCache:
    """Shared state that must agree across instances.

    Holds login/signup attempt counters, pending OAuth ``state`` values, and
    the pub/sub channel revocations travel on.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Ping with a throwaway sync client; raises if Redis is unreachable."""
        # the async pool must not be bound to whichever loop runs startup
        probe = Redis.from_url(self.redis_url, socket_connect_timeout=2)
        try:
            probe.ping()
        finally:
            probe.close()

    @staticmethod
    def _window_key(key: str, window_seconds: int, now: float) -> Tuple[str, int]:
        # hashed so emails and other caller parts cannot forge a neighbour's key
        digest = hashlib.sha256(key.encode()).hexdigest()[:32]
        window = int(now // window_seconds)
        reset_after = max(1, math.ceil((window + 1) * window_seconds - now))
        return f"rate:{digest}:{window}", reset_after

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Fixed-window counter: at most ``limit`` units per ``window_seconds``."""
        bucket, reset_after = self._window_key(key, window_seconds, time.time())
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incrby(bucket, max(1, cost))
            pipe.expire(bucket, window_seconds + 1)
            used, _ = await pipe.execute()
        used = int(used)
        allowed = used <= limit
        if return_remaining:
            return allowed, max(0, limit - used), 0 if allowed else reset_after
        return allowed

    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime
    ) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        ttl = max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))
        await self.client.set(
            _OAUTH_STATE_PREFIX + state,
            json.dumps({"provider": provider, "expires_at": expires_at.isoformat()}),
            ex=ttl,
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Consume a pending OAuth state; a second call for the same state gets ``None``."""
        raw = await self.client.getdel(_OAUTH_STATE_PREFIX + state)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return data["provider"], datetime.fromisoformat(data["expires_at"])
        except (ValueError, TypeError, KeyError):
            return None

    async def publish(self, channel: str, message: str) -> int:
        return await self.client.publish(channel, message)

    def pubsub(self):
        return self.client.pubsub()

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
